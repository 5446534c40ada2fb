# membership/config.py - engine settings loaded from the environment
import logging
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings. Every field can be overridden with a MEMBERSHIP_ env var."""

    # Point ledger
    POINT_EXPIRY_DAYS: Optional[int] = Field(
        default=None, ge=1, description="Days until earned points expire; never when unset"
    )
    BONUS_UNIT: int = Field(default=1_000_000, gt=0, description="Overpayment block that earns a bonus")
    BONUS_PER_UNIT: int = Field(default=100_000, ge=0, description="Bonus points per full block")

    # Transfers
    TRANSFER_FEE_RATIO: Decimal = Field(default=Decimal("0.10"), ge=0, le=1)

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")
    LOG_FORMAT: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # HTTP surface
    API_TITLE: str = Field(default="Membership Ledger API")
    API_VERSION: str = Field(default="1.0.0")
    CORS_ORIGINS: List[str] = Field(default=["*"])

    model_config = SettingsConfigDict(
        env_prefix="MEMBERSHIP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format=settings.LOG_FORMAT,
    )
