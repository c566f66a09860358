"""
Результаты внешних операций Preview / Reserve / Expand

Immutable Pydantic модели — то, что уходит клиенту независимо от транспорта.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from .sponsorship import SponsorshipStatus


# Причины в PreviewResult.reason
REASON_SOLD_OUT = "sold_out"
REASON_BELOW_MINIMUM_AREA = "below_minimum_area"
REASON_ALREADY_HELD = "already_held"


class PreviewResult(BaseModel):
    """
    Advisory результат Preview.

    Никогда не используется как основа commit: Reserve пересчитывает
    остаток заново внутри транзакции.
    """

    territory_id: str | None = None
    territory_version: int | None = None
    tenant_id: str
    slot: int = Field(..., ge=1)

    area_km2: float = Field(..., ge=0)
    remainder_geometry: dict[str, Any] | None = None
    taken_geometry: dict[str, Any] | None = None  # уже занято другими резервациями слота
    monthly_price: Decimal = Field(..., ge=0)
    currency: str

    sold_out: bool
    reason: str | None = None

    model_config = {"frozen": True}


class ReservationResult(BaseModel):
    """Результат успешного Reserve / Expand."""

    reservation_id: str
    tenant_id: str
    territory_id: str
    slot: int = Field(..., ge=1)

    geometry: dict[str, Any]
    area_km2: float = Field(..., ge=0)
    monthly_price: Decimal = Field(..., ge=0)
    currency: str

    status: SponsorshipStatus
    hold_expires_at: datetime | None = None

    # True если вернули ранее закоммиченную резервацию по idempotency key
    idempotent_replay: bool = False

    model_config = {"frozen": True}
