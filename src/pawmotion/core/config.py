"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./pawmotion.db", alias="DATABASE_URL"
    )
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Object storage (Supabase storage compatible)
    storage_base_url: str = Field(default="", alias="STORAGE_BASE_URL")
    storage_service_key: str = Field(default="", alias="STORAGE_SERVICE_KEY")
    storage_bucket: str = Field(default="videos", alias="STORAGE_BUCKET")
    storage_folder: str = Field(default="source-images", alias="STORAGE_FOLDER")
    max_source_image_bytes: int = Field(default=50 * 1024 * 1024, alias="MAX_SOURCE_IMAGE_BYTES")
    allowed_image_formats: str = Field(default="jpeg,png,webp,heic", alias="ALLOWED_IMAGE_FORMATS")
    # Photos are read only from SOURCE_IMAGE_ROOT/<owner_id>/ (empty disables the check)
    source_image_root: str = Field(default="var/source-images", alias="SOURCE_IMAGE_ROOT")

    # Video synthesis provider
    video_provider: str = Field(default="http", alias="VIDEO_PROVIDER")
    video_provider_base_url: str = Field(default="", alias="VIDEO_PROVIDER_BASE_URL")
    video_provider_api_key: str = Field(default="", alias="VIDEO_PROVIDER_API_KEY")
    video_model: str = Field(default="wan2.5-i2v-preview", alias="VIDEO_MODEL")
    video_duration_seconds: int = Field(default=5, alias="VIDEO_DURATION_SECONDS")
    video_resolution: str = Field(default="720P", alias="VIDEO_RESOLUTION")
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    replicate_video_model: str = Field(
        default="wan-video/wan-2.2-i2v-fast", alias="REPLICATE_VIDEO_MODEL"
    )
    provider_timeout_seconds: float = Field(default=30.0, alias="PROVIDER_TIMEOUT_SECONDS")

    # Purchase verification
    purchase_verification_url: str = Field(default="", alias="PURCHASE_VERIFICATION_URL")
    purchase_verification_key: str = Field(default="", alias="PURCHASE_VERIFICATION_KEY")

    # Upload / submission retry policy
    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS")
    retry_base_delay_seconds: float = Field(default=1.0, alias="RETRY_BASE_DELAY_SECONDS")
    retry_backoff_factor: float = Field(default=2.0, alias="RETRY_BACKOFF_FACTOR")
    retry_max_delay_seconds: float = Field(default=8.0, alias="RETRY_MAX_DELAY_SECONDS")

    # Poll policy
    poll_initial_delay_seconds: float = Field(default=5.0, alias="POLL_INITIAL_DELAY_SECONDS")
    poll_backoff_factor: float = Field(default=1.5, alias="POLL_BACKOFF_FACTOR")
    poll_max_delay_seconds: float = Field(default=60.0, alias="POLL_MAX_DELAY_SECONDS")
    poll_max_attempts: int = Field(default=120, alias="POLL_MAX_ATTEMPTS")
    job_timeout_seconds: int = Field(default=1800, alias="JOB_TIMEOUT_SECONDS")
    poll_lease_seconds: int = Field(default=120, alias="POLL_LEASE_SECONDS")
    # Uploads untouched for this long are treated as interrupted on recovery
    upload_stale_seconds: float = Field(default=300.0, alias="UPLOAD_STALE_SECONDS")

    # Worker
    worker_sweep_interval_seconds: float = Field(default=1.0, alias="WORKER_SWEEP_INTERVAL_SECONDS")
    worker_batch_size: int = Field(default=10, alias="WORKER_BATCH_SIZE")

    # Credits
    generation_credit_cost: int = Field(default=1, alias="GENERATION_CREDIT_COST")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def allowed_image_formats_list(self) -> list[str]:
        """Parse allowed source image encodings from comma-separated string."""
        return [fmt.strip().lower() for fmt in self.allowed_image_formats.split(",") if fmt.strip()]

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if provider or storage credentials
        are missing. Validation is skipped in test environments.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if not self.storage_base_url:
            missing.append("STORAGE_BASE_URL: Base URL of the object storage service")
        if not self.storage_service_key:
            missing.append("STORAGE_SERVICE_KEY: Service key with write access to the bucket")

        if self.video_provider == "replicate":
            if not self.replicate_api_token:
                missing.append(
                    "REPLICATE_API_TOKEN: Get your API token from "
                    "https://replicate.com/account/api-tokens"
                )
        elif self.video_provider == "http":
            if not self.video_provider_base_url:
                missing.append("VIDEO_PROVIDER_BASE_URL: Base URL of the video synthesis API")
            if not self.video_provider_api_key:
                missing.append("VIDEO_PROVIDER_API_KEY: API key for the video synthesis API")
        else:
            missing.append(f"VIDEO_PROVIDER: unsupported provider '{self.video_provider}'")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            raise ValueError(error_msg)

        return self


def _resolve_level(log_level: str) -> int:
    level = logging.getLevelName(log_level.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    if settings.app_env == "production":
        # JSON output for production (log aggregation)
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_resolve_level(settings.log_level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
