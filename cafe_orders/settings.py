"""
Cafe Orders Settings

Configuration management using pydantic settings.
Loads from environment variables with the CAFE_ prefix; the database URL,
the DB-only switch and the Stripe credentials are also read under their
conventional unprefixed names.
"""

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Service configuration settings.

    Environment variables:
    - DATABASE_URL: SQLAlchemy URL of the relational backend (optional; the
      flat-file store is used when empty or unusable)
    - USE_DB_ONLY: Refuse to start on the flat-file store (default: false)
    - CAFE_DATA_DIR: Directory holding pedidos.json and the daily archives
    - CAFE_STORAGE_TIMEOUT_SECS: Upper bound for a single storage call
    - CAFE_DB_CONNECT_DEADLINE_SECS: How long startup waits for the database
    - STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET: Payment processor credentials
    - CAFE_HTTP_*: Timeout, retry and circuit breaker knobs for outbound calls
    """

    model_config = SettingsConfigDict(
        env_prefix="CAFE_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # Storage
    database_url: str = Field(
        default="", validation_alias=AliasChoices("DATABASE_URL", "CAFE_DATABASE_URL", "database_url")
    )
    require_db: bool = Field(
        default=False, validation_alias=AliasChoices("USE_DB_ONLY", "CAFE_REQUIRE_DB", "require_db")
    )
    data_dir: Path = Path("data")
    storage_timeout_secs: float = 5.0
    db_connect_deadline_secs: float = 30.0

    # Payment processor
    stripe_secret_key: str = Field(
        default="", validation_alias=AliasChoices("STRIPE_SECRET_KEY", "CAFE_STRIPE_SECRET_KEY", "stripe_secret_key")
    )
    stripe_webhook_secret: str = Field(
        default="",
        validation_alias=AliasChoices("STRIPE_WEBHOOK_SECRET", "CAFE_STRIPE_WEBHOOK_SECRET", "stripe_webhook_secret"),
    )
    stripe_api_base: str = "https://api.stripe.com"
    webhook_tolerance_secs: int = 300
    currency: str = "clp"
    base_url: str = "http://localhost:3000"

    # Outbound HTTP (retries, circuit breaker)
    use_http_adapters: bool = True
    http_timeout_secs: float = 5.0
    http_retry_max: int = 3
    http_retry_backoff_base: float = 0.15
    http_retry_max_sleep: float = 0.5
    http_circuit_fail_threshold: int = 5
    http_circuit_reset_timeout: float = 30.0

    # Server
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 3000

    @property
    def orders_file(self) -> Path:
        return self.data_dir / "pedidos.json"

    @property
    def archive_dir(self) -> Path:
        return self.data_dir / "pedidos_archivados"


def get_settings() -> Settings:
    return Settings()
