"""Configuration management for the scanmark marking service.

This module uses Pydantic Settings to load configuration from environment
variables. All settings are validated at startup to catch configuration
errors early.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    The Gemini API key must be provided via environment variables or
    a .env file. Everything else has a working default.
    """

    # Gemini API Configuration
    gemini_api_key: str = Field(
        ...,
        description="Google Gemini API key for classification, OCR and marking"
    )

    # AI Model Configuration
    model_name: str = Field(
        default="gemini-3-flash-preview",
        description="Gemini model used when a request does not name one"
    )

    # Concurrency
    marking_concurrency: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Maximum marking calls in flight for one submission"
    )
    classification_concurrency: int = Field(
        default=8,
        ge=1,
        le=50,
        description="Maximum page classification / OCR calls in flight"
    )

    # Upload limits
    max_upload_pages: int = Field(
        default=50,
        ge=1,
        description="Maximum number of pages accepted per submission"
    )
    max_file_size_mb: int = Field(
        default=50,
        ge=1,
        description="Maximum size of a single uploaded file in MB"
    )
    pdf_render_dpi: int = Field(
        default=200,
        ge=72,
        le=600,
        description="Resolution used when rasterising PDF pages"
    )

    # Category override thresholds
    student_work_ratio: float = Field(
        default=0.9,
        description="questionAnswer share that flips remaining questionOnly pages"
    )
    student_work_min_pages: int = Field(
        default=5,
        ge=0,
        description="Non-meta pages required (exclusive) before the student-work rule applies"
    )
    safety_ratio: float = Field(
        default=0.5,
        description="questionAnswer share (exclusive) for the safety override"
    )
    safety_min_pages: int = Field(
        default=2,
        ge=0,
        description="Non-meta pages required (exclusive) before the safety rule applies"
    )

    # HTTP
    trusted_proxies: str = Field(
        default="",
        description="Comma-separated proxy IPs whose X-Forwarded-For is trusted"
    )
    log_level: str = Field(
        default="INFO",
        description="Root log level"
    )

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("gemini_api_key")
    @classmethod
    def validate_gemini_api_key(cls, v: str) -> str:
        """Validate that GEMINI_API_KEY is present and non-empty."""
        if not v or not v.strip():
            raise ValueError(
                "GEMINI_API_KEY must be set in environment variables. "
                "Get your API key from https://ai.google.dev/"
            )
        return v.strip()

    @field_validator("student_work_ratio", "safety_ratio")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        """Ratios are fractions of the non-meta page count."""
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"Override ratios must be between 0 and 1 (got: {v})")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Accept any standard logging level name, case-insensitively."""
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"LOG_LEVEL must be a standard logging level (got: {v})")
        return level


@lru_cache
def get_settings() -> Settings:
    """Get cached Settings instance.

    This function uses lru_cache to ensure settings are loaded only once
    and reused across the application lifetime.

    Returns:
        Settings: Validated application settings

    Raises:
        ValueError: If required environment variables are missing or invalid
    """
    return Settings()
