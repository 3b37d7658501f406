"""
config/settings.py
Environment-driven settings for the booking core (pydantic-settings).
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Tour Booking Platform"
    APP_ENV: str = "development"        # development | test | staging | production
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Storage ──────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 50

    # ── Access tokens (verified only) ────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── Chapa ────────────────────────────────────────────────
    CHAPA_SECRET_KEY: str = ""
    CHAPA_WEBHOOK_SECRET: str = ""
    CHAPA_BASE_URL: str = "https://api.chapa.co/v1"
    PAYMENT_CURRENCY: str = "ETB"
    PAYMENT_GATEWAY_TIMEOUT_SECONDS: float = 10.0
    PAYMENT_GATEWAY_FAIL_MAX: int = 5
    PAYMENT_GATEWAY_RESET_TIMEOUT: int = 60
    GATEWAY_RETRY_AFTER_SECONDS: int = 30
    # Confirm bookings without a live gateway. Unset means on everywhere but production
    ALLOW_TEST_MODE_PAYMENTS: Optional[bool] = None

    # ── Public URLs ──────────────────────────────────────────
    APP_URL: str = ""
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # ── Policy ───────────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20
    REFUND_WINDOW_HOURS: float = 24.0

    @field_validator("APP_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("REFUND_WINDOW_HOURS")
    @classmethod
    def positive_window(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("REFUND_WINDOW_HOURS must be positive")
        return v

    @model_validator(mode="after")
    def environment_defaults(self) -> "Settings":
        if self.ALLOW_TEST_MODE_PAYMENTS is None:
            self.ALLOW_TEST_MODE_PAYMENTS = not self.is_production
        return self

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def payment_gateway_configured(self) -> bool:
        return bool(self.CHAPA_SECRET_KEY and self.APP_URL)


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
