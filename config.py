import logging
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """process settings, read from COMMISSIONS_* env vars or .env."""

    database_dsn: str = Field(
        default="dbname=commissions user=commissions password=secret host=localhost port=5432",
        description="libpq connection string for Postgres",
    )
    gateway_webhook_secret: str = Field(default="", description="secret used to sign gateway webhooks")
    gateway_key_secret: str = Field(default="", description="API key secret used for checkout signatures")
    minimum_withdrawal: Decimal = Field(default=Decimal("100"), description="smallest withdrawal a wallet owner may request")
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="COMMISSIONS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
