from __future__ import annotations

from pydantic import AnyHttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"

    ASSET_STUDIO_DB_URL: str = "sqlite:///./asset_studio.db"
    ASSET_STUDIO_INTERNAL_API_TOKEN: str | None = None

    REPLICATE_API_TOKEN: str | None = None
    REPLICATE_BASE_URL: AnyHttpUrl = "https://api.replicate.com/v1"
    REPLICATE_REQUEST_TIMEOUT_SECONDS: float = 30.0
    REPLICATE_RETRIES: int = 0
    REPLICATE_WEBHOOK_URL: AnyHttpUrl | None = None
    REPLICATE_WEBHOOK_SECRET: str | None = None
    REPLICATE_ALLOW_UNSIGNED_WEBHOOKS: bool = False

    MODEL_CATALOG_TTL_SECONDS: float = 300.0
    SCHEMA_CACHE_MAX_ENTRIES: int = 256
    PREDICTION_POLL_INTERVAL_SECONDS: float = 1.5

    @field_validator("REPLICATE_API_TOKEN", "REPLICATE_WEBHOOK_SECRET", "ASSET_STUDIO_INTERNAL_API_TOKEN")
    @classmethod
    def blank_as_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("REPLICATE_RETRIES")
    @classmethod
    def validate_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("REPLICATE_RETRIES must be >= 0")
        return value

    @model_validator(mode="after")
    def validate_webhook_config(self) -> "Settings":
        if self.is_production and not self.REPLICATE_WEBHOOK_SECRET:
            if not self.REPLICATE_ALLOW_UNSIGNED_WEBHOOKS:
                raise ValueError(
                    "REPLICATE_WEBHOOK_SECRET is required when ENVIRONMENT=production "
                    "(set REPLICATE_ALLOW_UNSIGNED_WEBHOOKS=true to accept unsigned webhooks)"
                )
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.strip().lower() == "production"

    @property
    def replicate_base_url(self) -> str:
        return str(self.REPLICATE_BASE_URL).rstrip("/")

    @property
    def replicate_webhook_url(self) -> str | None:
        if not self.REPLICATE_WEBHOOK_URL:
            return None
        return str(self.REPLICATE_WEBHOOK_URL)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
