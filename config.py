"""
Application configuration, loaded once at startup from the environment (or `.env`).
"""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

CURRENCIES = ("PKR", "USD", "EUR", "GBP")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "mongodb://localhost:27017/?replicaSet=rs0"
    DATABASE_NAME: str = "bazm_store"

    # Pricing
    DEFAULT_CURRENCY: str = "PKR"
    SHIPPING_FLAT_CENTS: int = 299
    FREE_SHIPPING_THRESHOLD_CENTS: Optional[int] = None

    # Checkout
    IDEMPOTENCY_TTL_HOURS: int = 24

    ADMIN_API_KEY: Optional[str] = None
    CORS_ORIGINS: list[str] = ["*"]

    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None
    PORT: int = 8000


@lru_cache
def get_settings() -> Settings:
    return Settings()
