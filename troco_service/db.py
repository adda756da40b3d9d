from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from common.settings import settings


def make_engine(url: str = None):
    url = url or settings.sql_url
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")


def make_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)
