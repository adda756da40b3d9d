import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    jwt_issuer: str = os.getenv("JWT_ISSUER", "troco-pix")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))

    # Ledger store: "sql" (MySQL in production, SQLite in tests) or "memory"
    ledger_backend: str = os.getenv("LEDGER_BACKEND", "sql")
    database_url: str = os.getenv("DATABASE_URL", "")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "troco")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))

    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    device_rate_limit_requests: int = int(os.getenv("DEVICE_RATE_LIMIT_REQUESTS", "30"))
    device_rate_limit_window_seconds: int = int(os.getenv("DEVICE_RATE_LIMIT_WINDOW_SECONDS", "60"))

    # Payment gateway: "mock" never moves money, "efi" talks to the bank over mTLS
    pix_gateway: str = os.getenv("PIX_GATEWAY", "mock")
    efi_bank_api_url: str = os.getenv("EFI_BANK_API_URL", "https://pix-h.api.efipay.com.br")
    efi_bank_client_id: str = os.getenv("EFI_BANK_CLIENT_ID", "")
    efi_bank_client_secret: str = os.getenv("EFI_BANK_CLIENT_SECRET", "")
    efi_bank_cert_path: str = os.getenv("EFI_BANK_CERT_PATH", "")
    efi_bank_key_path: str = os.getenv("EFI_BANK_KEY_PATH", "")
    efi_bank_cert_password: str = os.getenv("EFI_BANK_CERT_PASSWORD", "")
    efi_bank_ca_bundle: str = os.getenv("EFI_BANK_CA_BUNDLE", "")
    efi_bank_payer_key: str = os.getenv("EFI_BANK_PAYER_KEY", "")
    gateway_timeout_seconds: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))

    pix_max_retries: int = int(os.getenv("PIX_MAX_RETRIES", "3"))
    default_max_per_transaction: str = os.getenv("DEFAULT_MAX_PER_TRANSACTION", "99.99")
    default_daily_limit: str = os.getenv("DEFAULT_DAILY_LIMIT", "500.00")
    daily_reset_utc_offset_hours: int = int(os.getenv("DAILY_RESET_UTC_OFFSET_HOURS", "-3"))

    @property
    def sql_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"mysql+mysqldb://{self.mysql_user}:{self.mysql_password}@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"

settings = Settings()
