"""
Growth Marts Pipeline
Centralized Configuration Management

Pydantic settings with environment variable support, validation and type
safety. The business constants used by cost allocation and payback math live
in ``PipelineSettings`` so they can be injected per run instead of being baked
into the mart builder.
"""

from datetime import date
from functools import lru_cache
from typing import Dict, Optional

from pydantic import AliasChoices, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational store configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(
        default="growth_marts",
        validation_alias=AliasChoices("POSTGRES_DATABASE", "database"),
        description="Database name",
    )
    user: str = Field(default="growth", description="Database user")
    password: SecretStr = Field(default=SecretStr("secure_password"), description="Database password")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Full URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL - uses DATABASE_URL if set, otherwise asyncpg from host/port"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class MonitoringSettings(BaseSettings):
    """Logging configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")


class PipelineSettings(BaseSettings):
    """
    Pipeline business constants.

    Category margins and cost rates are estimates; override them per store
    through PIPELINE_* variables.
    """

    model_config = SettingsConfigDict(env_prefix="PIPELINE_")

    category_margins: Dict[str, float] = Field(
        default={
            "apparel": 0.55,
            "electronics": 0.30,
            "beauty": 0.65,
            "home": 0.50,
            "food": 0.40,
        },
        description="Gross margin by product category, used for COGS estimation",
    )
    default_margin: float = Field(default=0.45, description="Margin for unknown categories and orders without line items")
    shipping_cost_rate: float = Field(default=0.08, description="Shipping cost as a fraction of net revenue")
    ops_cost_rate: float = Field(default=0.05, description="Fulfilment/packaging cost as a fraction of net revenue")
    payback_margin_rate: float = Field(default=0.35, description="Assumed contribution margin for payback days")

    ingest_batch_size: int = Field(default=500, description="Raw records written per transaction batch")
    date_seed_start: date = Field(default=date(2025, 1, 1), description="First day seeded into dim_date")
    date_seed_end: date = Field(default=date(2026, 12, 31), description="Last day seeded into dim_date")

    @field_validator("category_margins")
    @classmethod
    def validate_margins(cls, v: Dict[str, float]) -> Dict[str, float]:
        """Margins are fractions; categories are matched case-insensitively"""
        for category, margin in v.items():
            if not 0 <= margin <= 1:
                raise ValueError(f"Margin for '{category}' must be between 0 and 1")
        return {k.lower(): m for k, m in v.items()}

    @field_validator("ingest_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("ingest_batch_size must be positive")
        return v

    @model_validator(mode="after")
    def validate_date_range(self) -> "PipelineSettings":
        if self.date_seed_end < self.date_seed_start:
            raise ValueError("date_seed_end must not precede date_seed_start")
        return self

    def margin_for(self, category: Optional[str]) -> float:
        """Margin for a product category, falling back to the default margin"""
        if not category:
            return self.default_margin
        return self.category_margins.get(category.strip().lower(), self.default_margin)


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(default="growth-marts", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    version: str = Field(default="1.0.0", description="Application version")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
