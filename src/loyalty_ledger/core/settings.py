from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./loyalty_ledger.db"
    database_echo: bool = False

    # Application URLs
    frontend_url: str = "http://localhost:3000"
    api_base_url: str = "http://localhost:8000"

    # Internal API security
    admin_api_key: str = ""

    # Points program
    points_enabled: bool = True
    points_conversion_rate: Decimal = Decimal("1")
    points_currency: str = "USD"
    points_calculation_method: Literal["fixed", "percentage"] = "fixed"
    points_per_dollar: Decimal = Decimal("1")
    points_percentage: Decimal = Decimal("0")
    points_max_redeemable_percentage: Decimal = Decimal("20")
    points_enable_expiry: bool = False
    points_expiry_days: int = Field(365, ge=1)
    points_expiry_grace_days: int = Field(30, ge=0)

    @field_validator("points_currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: object) -> str:
        if value is None:
            return "USD"
        return str(value).strip().upper() or "USD"

    # Expiry sweep scheduler
    expiry_scheduler_enabled: bool = False
    expiry_schedule_path: str = "config/schedules.toml"

    # Email / notification settings
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str | None = None
    points_notifications_enabled: bool = True


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
