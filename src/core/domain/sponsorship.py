"""
Sponsorship — эксклюзивная резервация под-региона территории

Immutable Pydantic снапшот строки sponsorships. Создаётся только через
AllocationTransaction; статус меняет только SubscriptionLifecycle.

Геометрия — точный проданный полигон, вычисленный в момент commit
(не в момент preview).
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# =============================================================================
# ENUMS
# =============================================================================


class SponsorshipStatus(str, Enum):
    """
    Статус резервации.

    - PENDING_PAYMENT: provisional, ждёт подтверждения шлюза (блокирует до hold_expires_at)
    - ACTIVE: оплачена, блокирует геометрию
    - CANCEL_AT_PERIOD_END: отмена запрошена, геометрия занята до period_end
    - CANCELED: немедленная отмена, геометрия освобождена
    - EXPIRED: период закончился без продления
    - RELEASED: provisional резервация не подтверждена (payment failed / hold expired)
    """

    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    CANCELED = "canceled"
    EXPIRED = "expired"
    RELEASED = "released"


# Статусы, исключающие геометрию из availability других арендаторов
BLOCKING_STATUSES: frozenset[SponsorshipStatus] = frozenset({
    SponsorshipStatus.PENDING_PAYMENT,
    SponsorshipStatus.ACTIVE,
    SponsorshipStatus.CANCEL_AT_PERIOD_END,
})

# Терминальные статусы: переходов дальше нет
TERMINAL_STATUSES: frozenset[SponsorshipStatus] = frozenset({
    SponsorshipStatus.CANCELED,
    SponsorshipStatus.EXPIRED,
    SponsorshipStatus.RELEASED,
})


# =============================================================================
# SPONSORSHIP MODEL
# =============================================================================


class Sponsorship(BaseModel):
    """
    Снапшот резервации.

    Инвариант цены: monthly_price == max(floor, area_km2 * rate) слота,
    округлённое до minor unit.
    """

    # Идентификация
    id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    territory_id: str = Field(..., min_length=1)
    slot: int = Field(..., ge=1)

    # Геометрия и цена
    geometry: dict[str, Any] = Field(..., description="GeoJSON проданного остатка")
    area_km2: float = Field(..., ge=0)
    monthly_price: Decimal = Field(..., ge=0)
    currency: str = Field(default="GBP", min_length=3, max_length=3)

    # Lifecycle
    status: SponsorshipStatus
    period_start: datetime | None = None
    period_end: datetime | None = None
    hold_expires_at: datetime | None = None

    # Трассировка
    idempotency_key: str = Field(..., min_length=1)
    territory_version: int = Field(..., ge=1)
    created_at: datetime

    model_config = {"frozen": True}

    def is_blocking(self, now: datetime) -> bool:
        """
        Геометрия исключена из availability других арендаторов.

        Provisional резервация перестаёт блокировать после hold_expires_at,
        даже если sweep её ещё не освободил.
        """
        if self.status not in BLOCKING_STATUSES:
            return False
        if self.status == SponsorshipStatus.PENDING_PAYMENT:
            return self.hold_expires_at is None or self.hold_expires_at > now
        return True
