"""
Club Identity Core - Configuration Management

Centralized configuration for environment variables, CORS, and the identity
core's tunables. This module ensures:
- No hardcoded secrets
- Environment-specific settings (dev/staging/prod)
- Secure defaults
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="PostgreSQL connection URL (required when the sql store is used)"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="club")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="require")

    # ==================== IDENTITY STORE ====================
    IDENTITY_STORE_BACKEND: str = Field(
        default="memory",
        description="Document store backend: memory, sql"
    )

    # ==================== MEMBER IDS ====================
    MEMBER_ID_STRATEGY: str = Field(
        default="hash",
        description="Member id strategy: hash, sequential"
    )
    MEMBER_ID_PREFIX: str = Field(
        default="C",
        description="Type marker prepended to hashed member ids"
    )
    MEMBER_ID_LENGTH: int = Field(
        default=5,
        description="Number of base-34 characters after the prefix"
    )
    MEMBER_ID_MAX_ATTEMPTS: int = Field(
        default=5,
        description="Candidates tried before giving up on a free member id"
    )
    SEQUENTIAL_MEMBER_ID_PREFIX: str = Field(default="M")
    SEQUENTIAL_MEMBER_ID_WIDTH: int = Field(default=6)

    # ==================== LINKING ====================
    LINK_HOLD_TTL_SECONDS: int = Field(
        default=600,
        description="Lifetime of a provider hold between the two linking phases"
    )
    DEFAULT_PHONE_REGION: str = Field(
        default="MY",
        description="Region assumed for phone numbers typed without a country code"
    )

    # ==================== MERGING ====================
    MERGE_BATCH_SIZE: int = Field(
        default=100,
        description="Documents rewritten per batch during a merge"
    )
    MERGE_MAX_ATTEMPTS: int = Field(
        default=3,
        description="Consecutive failures before a merge job is escalated to an operator"
    )
    MERGE_RETRY_DELAYS: str = Field(
        default="60,300,900",
        description="Comma-separated retry delays in seconds (1 min, 5 min, 15 min)"
    )
    MERGE_WORKER_POLL_INTERVAL: int = Field(
        default=30,
        description="Seconds between merge worker polls"
    )

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="Club Identity Core API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list.

        Development also allows the local frontend origins.
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ]

        all_origins = set(origins)
        if not self.is_production:
            all_origins.update(dev_origins)

        return list(all_origins)

    @property
    def merge_retry_delays(self) -> List[int]:
        delays = [int(d.strip()) for d in self.MERGE_RETRY_DELAYS.split(",") if d.strip()]
        return delays or [60]

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if self.IDENTITY_STORE_BACKEND not in ("memory", "sql"):
            errors.append("IDENTITY_STORE_BACKEND must be 'memory' or 'sql'")

        if self.MEMBER_ID_STRATEGY not in ("hash", "sequential"):
            errors.append("MEMBER_ID_STRATEGY must be 'hash' or 'sequential'")

        if self.MEMBER_ID_MAX_ATTEMPTS < 1:
            errors.append("MEMBER_ID_MAX_ATTEMPTS must be at least 1")

        if self.is_production:
            if self.IDENTITY_STORE_BACKEND != "sql":
                errors.append("IDENTITY_STORE_BACKEND must be 'sql' in production")

            if not self.DATABASE_URL and not self.POSTGRES_HOST:
                errors.append("DATABASE_URL is required")

            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # Build from components if DATABASE_URL not set
        if self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD:
            ssl = f"?ssl={self.POSTGRES_SSLMODE}" if self.POSTGRES_SSLMODE else ""
            return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}{ssl}"

        raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Identity store: {settings.IDENTITY_STORE_BACKEND}, member ids: {settings.MEMBER_ID_STRATEGY}")

    errors = settings.validate_production_config()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise ValueError(f"Configuration invalid: {', '.join(errors)}")

    return settings


# ==================== CORS CONFIGURATION ====================

def get_cors_config() -> dict:
    """
    Get CORS middleware configuration.

    Returns configuration dict for CORSMiddleware.
    """
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": [
            "Content-Type",
            "Accept",
            "Origin",
            "X-Requested-With",
            "X-Request-ID",
            "X-Internal-Api-Key",
            "X-Service-Name",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,  # Cache preflight for 10 minutes
    }
