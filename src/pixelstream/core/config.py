"""Application configuration using Pydantic BaseSettings."""

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application Database Configuration
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=50, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Upstream generation API
    generation_base_url: str = Field(
        default="https://gen.pollinations.ai", alias="GENERATION_BASE_URL"
    )
    generation_timeout_seconds: float = Field(default=120.0, alias="GENERATION_TIMEOUT_SECONDS")
    generation_max_retries: int = Field(default=3, ge=0, alias="GENERATION_MAX_RETRIES")
    generation_base_delay_seconds: float = Field(
        default=2.0, gt=0, alias="GENERATION_BASE_DELAY_SECONDS"
    )
    generation_max_delay_seconds: float = Field(
        default=30.0, gt=0, alias="GENERATION_MAX_DELAY_SECONDS"
    )

    # Stored API keys are AES-256-GCM encrypted with this key (64 hex chars)
    encryption_key: str = Field(default="", alias="ENCRYPTION_KEY")

    # Cloudflare R2 (S3-compatible) object storage
    r2_account_id: str = Field(default="", alias="R2_ACCOUNT_ID")
    r2_access_key_id: str = Field(default="", alias="R2_ACCESS_KEY_ID")
    r2_secret_access_key: str = Field(default="", alias="R2_SECRET_ACCESS_KEY")
    r2_bucket_name: str = Field(default="", alias="R2_BUCKET_NAME")
    r2_public_url: str = Field(default="", alias="R2_PUBLIC_URL")

    # Thumbnail extraction for video artifacts
    ffmpeg_path: str = Field(default="ffmpeg", alias="FFMPEG_PATH")

    # Batch worker
    batch_item_interval_seconds: float = Field(
        default=0.1, ge=0, alias="BATCH_ITEM_INTERVAL_SECONDS"
    )
    poll_interval_seconds: float = Field(default=0.1, gt=0, alias="POLL_INTERVAL_SECONDS")
    worker_batch_size: int = Field(default=20, ge=1, alias="WORKER_BATCH_SIZE")
    # Claims older than this belong to a dead dispatch and are returned to the queue
    stale_claim_seconds: float = Field(default=900, gt=0, alias="STALE_CLAIM_SECONDS")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def r2_endpoint_url(self) -> str:
        """S3 API endpoint for the configured R2 account."""
        return f"https://{self.r2_account_id}.r2.cloudflarestorage.com"

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if configuration is incomplete.
        Validation is skipped in test environments.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if len(self.encryption_key) != 64:
            missing.append(
                "ENCRYPTION_KEY: 64 hex characters (32 bytes) used to decrypt stored API keys"
            )

        r2_vars = {
            "R2_ACCOUNT_ID": self.r2_account_id,
            "R2_ACCESS_KEY_ID": self.r2_access_key_id,
            "R2_SECRET_ACCESS_KEY": self.r2_secret_access_key,
            "R2_BUCKET_NAME": self.r2_bucket_name,
            "R2_PUBLIC_URL": self.r2_public_url,
        }
        for name, value in r2_vars.items():
            if not value:
                missing.append(f"{name}: required for uploading generated media")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            error_msg += "\nPlease update your .env file and restart."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    if settings.app_env == "production":
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
    else:
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
