# backend/meetbook/core/config.py
import logging
import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import DEFAULT_CURRENCY, SUPPORTED_CURRENCIES

logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


class Settings(BaseSettings):
    """Runtime configuration for the booking and escrow core."""

    environment: Literal["development", "test", "staging", "production"] = Field(
        default="development",
        description="Deployment environment name",
    )
    database_url: str = Field(
        default="sqlite:///./meetbook.db",
        description="SQLAlchemy database URL (PostgreSQL in production)",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL used as Celery broker and result backend",
    )

    # Pricing
    platform_fee_rate: float = Field(
        default=0.15,
        description="Share of the subtotal retained by the platform and added to the total",
    )
    minimum_booking_hours: int = Field(
        default=1,
        description="Requests shorter than this are rejected outright",
        ge=1,
    )
    default_partner_minimum_hours: int = Field(
        default=3,
        description="Billing floor for partners that have not set their own minimum",
        ge=1,
    )
    max_booking_hours: int = Field(
        default=8,
        description="Longest meetup a requester may book in one booking",
        ge=1,
    )
    default_currency: str = Field(default=DEFAULT_CURRENCY)

    # Booking policy
    advance_booking_days: int = Field(
        default=30,
        description="How many days ahead a booking may be placed",
        ge=0,
    )
    cancellation_notice_hours: int = Field(
        default=24,
        description="Participants cannot cancel with fewer hours than this before start",
        ge=0,
    )
    slot_hold_ttl_minutes: int = Field(
        default=60,
        description="Grace period before an unconfirmed slot hold reverts to OPEN",
        ge=1,
    )
    require_declared_availability: bool = Field(
        default=False,
        description="Only allow holds inside an OPEN window declared by the partner",
    )

    # Escrow
    escrow_release_delay_hours: int = Field(
        default=24,
        description="Dispute window between completion and release of escrowed funds",
        ge=0,
    )
    escrow_claim_ttl_seconds: int = Field(
        default=300,
        description="Age after which an in-flight ledger claim is considered abandoned",
        ge=1,
    )
    escrow_sweep_batch: int = Field(
        default=50,
        description="Maximum escrow records processed per sweep",
        ge=1,
    )

    # Ledger
    ledger_base_url: str = Field(default="http://localhost:8081/v1")
    ledger_api_key: SecretStr = Field(default=SecretStr(""))
    ledger_timeout_seconds: float = Field(default=10.0, gt=0)
    ledger_fake: bool = Field(
        default=True,
        description="Use the in-process fake ledger instead of the HTTP ledger",
    )
    ledger_max_attempts: int = Field(
        default=5,
        description="Attempts before a ledger instruction is escalated for manual review",
        ge=1,
    )
    ledger_backoff_base: int = Field(
        default=30,
        description="Base backoff in seconds for ledger instruction retries",
        ge=1,
    )
    ledger_backoff_cap: int = Field(
        default=1800,
        description="Maximum backoff in seconds for ledger instruction retries",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("platform_fee_rate")
    @classmethod
    def validate_fee_rate(cls, v: float) -> float:
        if not 0 <= v < 1:
            raise ValueError("platform_fee_rate must be in [0, 1)")
        return v

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        normalized = v.strip().upper()
        if normalized not in SUPPORTED_CURRENCIES:
            raise ValueError(f"default_currency must be one of {', '.join(SUPPORTED_CURRENCIES)}")
        return normalized

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


settings = Settings()
