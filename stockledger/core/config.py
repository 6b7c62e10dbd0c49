import logging

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "stockledger"
    env: str = "dev"

    # DATABASE
    database_url: str = "sqlite:///./stockledger.db"
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # LEDGER
    lock_timeout_seconds: float = Field(default=5.0, gt=0, le=300)
    default_min_stock: int = Field(default=10, ge=0)
    expiring_window_days: int = Field(default=30, ge=1, le=3650)
    fifo_skip_expired: bool = False
    system_user_id: str = "system"

    # LOGGING
    log_level: str = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: str | None) -> str:
        if value is None:
            return "INFO"
        cleaned = str(value).strip().upper()
        if not isinstance(logging.getLevelName(cleaned), int):
            raise ValueError(f"Unknown LOG_LEVEL: {value}")
        return cleaned

    @field_validator("system_user_id", mode="before")
    @classmethod
    def normalize_system_user_id(cls, value: str | None) -> str:
        cleaned = str(value or "").strip()
        if not cleaned:
            raise ValueError("SYSTEM_USER_ID cannot be blank")
        return cleaned

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
