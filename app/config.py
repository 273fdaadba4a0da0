from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator, model_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./crm_segments.db"

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    SLOW_QUERY_THRESHOLD_MS: int = 500

    # Segmentation
    SEGMENT_MAX_FALLBACK_ROWS: int = 10000
    SEGMENT_QUERY_TIMEOUT_SECONDS: float = 30.0
    SEGMENT_PREVIEW_SAMPLE_SIZE: int = 5

    # Campaign delivery
    CAMPAIGN_SEND_DELAY_MS: int = 100
    DELIVERY_SUCCESS_RATE: float = 0.9
    DELIVERY_VENDOR_URL: str | None = None
    DELIVERY_VENDOR_API_KEY: str | None = None

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str | None = None

    @field_validator("SEGMENT_MAX_FALLBACK_ROWS", "SEGMENT_PREVIEW_SAMPLE_SIZE")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("DELIVERY_SUCCESS_RATE")
    @classmethod
    def must_be_probability(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be between 0 and 1")
        return v

    @model_validator(mode="after")
    def force_production_defaults(self) -> "Settings":
        """Debug output is never enabled in production or staging."""
        if self.is_production:
            self.DEBUG = False
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() in ("production", "staging")

    @property
    def sqlalchemy_echo(self) -> bool:
        """SQL echo leaks bound parameters, so only allow it in development."""
        return self.DEBUG and not self.is_production

    @property
    def log_level(self) -> str:
        if self.LOG_LEVEL:
            return self.LOG_LEVEL.upper()
        return "DEBUG" if self.DEBUG else "INFO"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
