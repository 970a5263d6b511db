from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./storefront_rewards.db"
    database_echo: bool = False
    tracing_enabled: bool = False
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None

    # Internal API security (order fulfillment + operator tooling)
    checkout_api_key: str = ""

    # Reward catalog (tier table, badges, spin wheel, milestones)
    reward_catalog_path: str = "config/rewards.toml"
    spin_weight_tolerance: float = 0.01

    # Spend brackets
    bracket_cycle_size: int = Field(default=10, gt=0)

    # Referrals
    referral_min_order_amount: int = Field(default=100, ge=0)
    referral_max_per_customer: int = Field(default=10, gt=0)
    referral_free_deliveries: int = Field(default=5, gt=0)
    referral_first_purchase_only: bool = False

    # Redeemable credits (free delivery, discounts)
    reward_credit_ttl_days: int = 90

    # Rewards store redemptions (codes and issued credits expire together)
    reward_redemption_ttl_days: int = Field(default=30, gt=0)

    # Leaderboards
    leaderboard_default_limit: int = 10
    leaderboard_max_limit: int = 100

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        if isinstance(value, str) and value.startswith("postgres://"):
            return value.replace("postgres://", "postgresql+asyncpg://", 1)
        if isinstance(value, str) and value.startswith("postgresql://"):
            return value.replace("postgresql://", "postgresql+asyncpg://", 1)
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
