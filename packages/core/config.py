"""Centralized configuration via Pydantic Settings.

Size ceilings, scan windows, regex safety limits and the reclassifier
thresholds are product-tuned values; they live here so they can be
re-validated against real data without touching the parsers.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pipeline settings loaded from environment variables."""

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Python log level")
    LOG_JSON: bool = Field(default=True, description="Render logs as JSON")
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production",
    )

    # Ingestion
    MAX_UPLOAD_BYTES: int = Field(
        default=12 * 1024 * 1024,
        description="Payloads above this size are rejected before parsing",
    )
    HEADER_SCAN_ROWS: int = Field(
        default=20, description="Rows inspected per header scan window"
    )
    DELIMITER_SAMPLE_LINES: int = Field(
        default=50, description="Non-blank lines sampled for delimiter detection"
    )
    DEFAULT_CURRENCY: str = Field(default="NOK", description="Fallback currency")

    # Rule engine regex safety
    REGEX_MAX_LENGTH: int = Field(default=200)
    REGEX_MAX_GROUP_DEPTH: int = Field(default=3)
    REGEX_MAX_QUANTIFIERS: int = Field(default=10)
    REGEX_TIMEOUT_SECONDS: float = Field(default=0.1)

    # Auto-reclassifier
    RECLASSIFY_MIN_CONFIDENCE: float = Field(default=0.75)
    RECLASSIFY_MIN_MARGIN: float = Field(default=1.2)
    RECLASSIFY_MIN_DOCS: int = Field(default=10)
    RECLASSIFY_ALPHA: float = Field(default=1.0)
    RECLASSIFY_PAGE_SIZE: int = Field(default=200)
    RECLASSIFY_MAX_ROUNDS: int = Field(default=10)
    RECLASSIFY_FORCE_TRIGGER: int = Field(
        default=50,
        description="Residual Other volume that triggers the force phase",
    )

    @property
    def log_level(self) -> str:
        return self.LOG_LEVEL

    model_config = {"env_file": ".env", "extra": "ignore"}


def get_settings() -> Settings:
    """Factory for Settings: allows test override."""
    return Settings()
