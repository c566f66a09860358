"""
PricingEngine — цена остатка по площади и слоту

    price(area_km2, slot) = max(floor[slot], area_km2 * rate[slot])

округлённая до minor unit валюты (ROUND_HALF_UP). Детерминированная,
без скрытого состояния: одинаковая площадь даёт одинаковую цену в
preview и в commit.
"""

from dataclasses import dataclass
from decimal import Decimal

from src.core.domain.pricing_policy import PricingPolicy
from src.core.math.money import quantize_money, to_decimal
from src.core.math.numerical_safeguards import validate_non_negative


@dataclass(frozen=True)
class PriceQuote:
    """Разложение цены для диагностики и UI."""

    slot: int
    label: str
    area_km2: float
    raw_amount: Decimal  # area * rate, до floor и округления
    floor_price: Decimal
    monthly_price: Decimal
    floor_applied: bool
    currency: str


class PricingEngine:
    """Pure функция площадь + слот → месячная цена."""

    def __init__(self, policy: PricingPolicy):
        self.policy = policy

    @property
    def currency(self) -> str:
        return self.policy.currency

    def price(self, area_km2: float, slot: int) -> Decimal:
        """
        Месячная цена.

        Raises:
            ValueError: Если area_km2 < 0 / NaN или слот не сконфигурирован
        """
        return self.quote(area_km2, slot).monthly_price

    def quote(self, area_km2: float, slot: int) -> PriceQuote:
        """
        Цена с разложением (raw amount, применён ли floor).

        Raises:
            ValueError: Если area_km2 < 0 / NaN или слот не сконфигурирован
        """
        validate_non_negative(area_km2, "area_km2")
        if not self.policy.has_slot(slot):
            raise ValueError(f"Unknown slot: {slot}")

        pricing = self.policy.for_slot(slot)
        raw_amount = to_decimal(area_km2) * pricing.rate_per_km2
        floor_applied = raw_amount < pricing.floor_price
        monthly = pricing.floor_price if floor_applied else raw_amount

        return PriceQuote(
            slot=slot,
            label=pricing.label,
            area_km2=area_km2,
            raw_amount=raw_amount,
            floor_price=pricing.floor_price,
            monthly_price=quantize_money(monthly, self.policy.currency),
            floor_applied=floor_applied,
            currency=self.policy.currency,
        )
