"""
PricingPolicy — конфигурация цен по слотам

Immutable Pydantic модель: per-slot {rate_per_km2, floor_price}.
Не пользовательские данные — строится из Settings при старте.

Слоты нумеруются 1..N; каждый слот независимо эксклюзивен.
"""

from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from src.core.math.money import minor_digits


# =============================================================================
# SLOT PRICING
# =============================================================================


class SlotPricing(BaseModel):
    """
    Тариф одного слота.

    price = max(floor_price, area_km2 * rate_per_km2)
    """

    slot: int = Field(..., ge=1, description="Идентификатор слота (1 = Gold)")
    label: str = Field(..., min_length=1, description="Название тарифа")
    rate_per_km2: Decimal = Field(..., ge=0, description="Цена за km² в месяц")
    floor_price: Decimal = Field(..., ge=0, description="Минимальная цена в месяц")

    model_config = {"frozen": True}


# =============================================================================
# PRICING POLICY
# =============================================================================


class PricingPolicy(BaseModel):
    """
    Набор тарифов по слотам + валюта.

    Immutable модель (frozen=True). Слоты уникальны.
    """

    currency: str = Field(default="GBP", min_length=3, max_length=3)
    slots: tuple[SlotPricing, ...] = Field(..., min_length=1)

    model_config = {"frozen": True}

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Валюта должна иметь известный minor unit"""
        code = v.upper()
        minor_digits(code)
        return code

    @field_validator("slots")
    @classmethod
    def validate_unique_slots(cls, v: tuple[SlotPricing, ...]) -> tuple[SlotPricing, ...]:
        ids = [s.slot for s in v]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate slot ids in pricing policy: {ids}")
        return tuple(sorted(v, key=lambda s: s.slot))

    @property
    def slot_ids(self) -> tuple[int, ...]:
        return tuple(s.slot for s in self.slots)

    def has_slot(self, slot: int) -> bool:
        return slot in self.slot_ids

    def for_slot(self, slot: int) -> SlotPricing:
        """
        Тариф слота.

        Raises:
            KeyError: Если слот не сконфигурирован
        """
        for pricing in self.slots:
            if pricing.slot == slot:
                return pricing
        raise KeyError(f"Unknown slot: {slot}")
