"""Engine configuration using Pydantic Settings."""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.core.domain.pricing_policy import PricingPolicy, SlotPricing

# Названия первых трёх тарифов, дальше "Tier <n>"
_SLOT_LABELS = {1: "Gold", 2: "Silver", 3: "Bronze"}


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(default="sqlite:///./territory_engine.db")
    db_echo: bool = Field(default=False)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Slots & pricing
    slot_count: int = Field(default=3, ge=1)
    currency: str = Field(default="GBP")
    rate_per_km2_per_month: Decimal = Field(default=Decimal("15"), ge=0)
    min_price_per_month: Decimal = Field(default=Decimal("1.00"), ge=0)
    rate_gold_per_km2_per_month: Decimal | None = Field(default=None, ge=0)
    rate_silver_per_km2_per_month: Decimal | None = Field(default=None, ge=0)
    rate_bronze_per_km2_per_month: Decimal | None = Field(default=None, ge=0)
    min_gold_price_per_month: Decimal | None = Field(default=None, ge=0)
    min_silver_price_per_month: Decimal | None = Field(default=None, ge=0)
    min_bronze_price_per_month: Decimal | None = Field(default=None, ge=0)

    # Geometry
    area_epsilon_km2: float = Field(default=1e-6, ge=0)
    min_purchasable_area_km2: float = Field(default=0.0, ge=0)

    # Allocation
    commit_retries: int = Field(default=1, ge=0)
    provisional_hold_minutes: int = Field(default=30, ge=1)

    # Lifecycle
    billing_interval_months: int = Field(default=1, ge=1)
    cancel_policy: Literal["period_end", "immediate"] = Field(default="period_end")
    renewal_reminder_lead_hours: int = Field(default=72, ge=1)
    renewal_reminder_window_minutes: int = Field(default=30, ge=1)
    renewal_grace_hours: int = Field(default=72, ge=0)

    def pricing_policy(self) -> PricingPolicy:
        """Immutable PricingPolicy для slot_count слотов."""
        overrides = {
            1: (self.rate_gold_per_km2_per_month, self.min_gold_price_per_month),
            2: (self.rate_silver_per_km2_per_month, self.min_silver_price_per_month),
            3: (self.rate_bronze_per_km2_per_month, self.min_bronze_price_per_month),
        }
        slots = []
        for slot in range(1, self.slot_count + 1):
            rate, floor = overrides.get(slot, (None, None))
            slots.append(
                SlotPricing(
                    slot=slot,
                    label=_SLOT_LABELS.get(slot, f"Tier {slot}"),
                    rate_per_km2=rate if rate is not None else self.rate_per_km2_per_month,
                    floor_price=floor if floor is not None else self.min_price_per_month,
                )
            )
        return PricingPolicy(currency=self.currency, slots=tuple(slots))


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
