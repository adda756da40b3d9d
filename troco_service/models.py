from sqlalchemy import (Boolean, BigInteger, CheckConstraint, Column, Date, DateTime, ForeignKey, Integer,
                        String, func)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Monetary columns hold integer centavos


class AccountRow(Base):
    __tablename__ = "accounts"
    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    tax_id = Column(String(32), nullable=False, index=True)
    email = Column(String(255))
    phone = Column(String(32))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SubAccountRow(Base):
    __tablename__ = "sub_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_sub_accounts_balance"),
        CheckConstraint("reserved >= 0", name="ck_sub_accounts_reserved"),
        CheckConstraint("daily_used <= daily_limit", name="ck_sub_accounts_daily"),
    )
    id = Column(String(64), primary_key=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    company_name = Column(String(255), nullable=False)
    balance = Column(BigInteger, nullable=False, default=0)
    reserved = Column(BigInteger, nullable=False, default=0)
    daily_used = Column(BigInteger, nullable=False, default=0)
    daily_count = Column(Integer, nullable=False, default=0)
    daily_limit = Column(BigInteger, nullable=False)
    max_per_transaction = Column(BigInteger, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_reset = Column(Date, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())


class PixTransactionRow(Base):
    __tablename__ = "pix_transactions"
    id = Column(String(64), primary_key=True)
    sub_account_id = Column(String(64), ForeignKey("sub_accounts.id"), nullable=False, index=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False)
    pix_key = Column(String(255), nullable=False)
    pix_key_type = Column(String(16), nullable=False)
    amount = Column(BigInteger, nullable=False)
    description = Column(String(255), nullable=False, default="")
    status = Column(String(16), nullable=False, index=True)  # pending|processing|completed|failed|cancelled
    source = Column(String(16), nullable=False, default="web")  # web|arduino
    gateway_tx_id = Column(String(64), index=True)
    end_to_end_id = Column(String(64))
    error_message = Column(String(1000))
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))
    processed_at = Column(DateTime(timezone=True))


class EstablishmentRow(Base):
    __tablename__ = "establishments"
    id = Column(String(64), primary_key=True)
    code = Column(String(8), nullable=False, unique=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    sub_account_id = Column(String(64), ForeignKey("sub_accounts.id"), nullable=False)
    name = Column(String(255), nullable=False)
    tax_id = Column(String(32))
    is_active = Column(Boolean, nullable=False, default=True)
    last_seen = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
