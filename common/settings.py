import os
from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    ledger_events_topic: str = os.getenv("LEDGER_EVENTS_TOPIC", "ledger_events")
    jwt_issuer: str = os.getenv("JWT_ISSUER", "coin-ledger")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))

    # DATABASE_URL wins over the MySQL parts when set
    database_url: Optional[str] = os.getenv("DATABASE_URL")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "coin_ledger")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))

    # Refund policy; 0 disables the age cutoff
    refund_max_age_days: int = int(os.getenv("REFUND_MAX_AGE_DAYS", "30"))
    min_reason_length: int = int(os.getenv("MIN_REASON_LENGTH", "5"))

    # Settlement
    platform_fee_percent: int = int(os.getenv("PLATFORM_FEE_PERCENT", "0"))

    # Dashboard views
    large_transaction_threshold: int = int(os.getenv("LARGE_TRANSACTION_THRESHOLD", "50"))
    short_call_seconds: int = int(os.getenv("SHORT_CALL_SECONDS", "10"))

    # Workers
    reconciliation_sample_size: int = int(os.getenv("RECONCILIATION_SAMPLE_SIZE", "50"))
    reconciliation_interval_seconds: float = float(os.getenv("RECONCILIATION_INTERVAL_SECONDS", "300"))
    outbox_poll_interval: float = float(os.getenv("OUTBOX_POLL_INTERVAL", "0.5"))

    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+mysqlconnector://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"
        )

settings = Settings()
