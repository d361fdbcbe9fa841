"""
BankRec Core - Configuration Management

Centralized configuration for environment variables and deployment settings.
This module ensures:
- No hardcoded secrets
- Environment-specific settings (dev/staging/prod)
- Matching weights and tolerances are tunable without code changes
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

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
        default="sqlite+aiosqlite:///./data/bankrec.db",
        description="Async SQLAlchemy URL (postgresql+asyncpg:// in production)"
    )
    DATABASE_ECHO: bool = Field(
        default=False,
        description="Echo SQL statements to the log"
    )
    DATABASE_SSL: bool = Field(
        default=False,
        description="Require SSL for PostgreSQL connections"
    )

    # ==================== AUTHENTICATION ====================
    INTERNAL_API_KEY: str = Field(
        default="",
        description="Primary internal service API key"
    )
    INTERNAL_API_KEYS: str = Field(
        default="",
        description="Comma-separated list of additional (legacy) API keys"
    )

    # ==================== OBSERVABILITY ====================
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )
    LOG_JSON: bool = Field(
        default=False,
        description="Emit JSON logs (always on in production)"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="BankRec Core API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    # ==================== MATCHING ====================
    RECON_WEIGHT_AMOUNT: float = Field(default=50, description="Max points for amount agreement")
    RECON_WEIGHT_DATE: float = Field(default=25, description="Max points for date proximity")
    RECON_WEIGHT_DESCRIPTION: float = Field(default=15, description="Max points for description overlap")
    RECON_WEIGHT_REFERENCE: float = Field(default=10, description="Bonus for a matching reference")
    RECON_AMOUNT_TOLERANCE_PERCENT: float = Field(
        default=10.0,
        description="Relative amount difference at which the amount factor reaches zero"
    )
    RECON_MAX_DATE_DIFFERENCE_DAYS: int = Field(
        default=14,
        description="Day difference at which the date factor reaches zero"
    )
    RECON_CANDIDATE_WINDOW_DAYS: int = Field(
        default=14,
        description="Initial +/- search window around the bank line date"
    )
    RECON_WIDENED_WINDOW_DAYS: int = Field(
        default=30,
        description="Search window used when too few candidates are found"
    )
    RECON_MIN_CANDIDATES: int = Field(
        default=3,
        description="Candidate count below which the search window is widened"
    )

    # ==================== BATCH / REPORTING ====================
    RECON_AUTO_MIN_CONFIDENCE: int = Field(
        default=90,
        description="Default confidence threshold for auto-reconciliation"
    )
    RECON_AUTO_MAX_ITEMS: int = Field(
        default=500,
        description="Maximum bank lines processed by one auto-reconciliation run"
    )
    RECON_BALANCE_TOLERANCE: int = Field(
        default=1,
        description="Discrepancy (minor units) strictly below which books are balanced"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def internal_api_keys(self) -> List[str]:
        keys = []
        if self.INTERNAL_API_KEY:
            keys.append(self.INTERNAL_API_KEY)
        if self.INTERNAL_API_KEYS:
            keys.extend([k.strip() for k in self.INTERNAL_API_KEYS.split(",") if k.strip()])
        return keys

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required")

        if self.is_production:
            if self.DATABASE_URL.startswith("sqlite"):
                errors.append("DATABASE_URL cannot use SQLite in production")

            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if not self.internal_api_keys:
                errors.append("INTERNAL_API_KEY is required in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        total_weight = (
            self.RECON_WEIGHT_AMOUNT + self.RECON_WEIGHT_DATE
            + self.RECON_WEIGHT_DESCRIPTION + self.RECON_WEIGHT_REFERENCE
        )
        if total_weight != 100:
            errors.append(f"RECON_WEIGHT_* must sum to 100 (got {total_weight})")

        if not 0 <= self.RECON_AUTO_MIN_CONFIDENCE <= 100:
            errors.append("RECON_AUTO_MIN_CONFIDENCE must be between 0 and 100")

        return errors

    def get_database_url(self) -> str:
        """Get the database URL, raising if none is configured"""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        raise ValueError("No database configuration found. Set DATABASE_URL.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug: {settings.debug_enabled}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment() -> dict:
    """
    Validate configuration for startup and the config status endpoint.

    Returns a status dict with validation results.
    """
    settings = get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
        "variables": {}
    }

    status["variables"]["DATABASE_URL"] = "✓ Set" if settings.DATABASE_URL else "✗ Missing"

    if settings.internal_api_keys:
        status["variables"]["INTERNAL_API_KEY"] = "✓ Set"
    else:
        status["warnings"].append("No internal API key configured; reconciliation endpoints will return 503")
        status["variables"]["INTERNAL_API_KEY"] = "⚠ Not set"

    if settings.DATABASE_URL.startswith("sqlite"):
        status["warnings"].append("Using SQLite storage (development only)")

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(errors)
        status["valid"] = False

    return status
