"""
Domain models and value objects.

Contains fundamental domain entities: Territory, Sponsorship, PricingPolicy,
Preview / Reservation results.
"""

from src.core.domain.pricing_policy import PricingPolicy, SlotPricing
from src.core.domain.results import (
    REASON_ALREADY_HELD,
    REASON_BELOW_MINIMUM_AREA,
    REASON_SOLD_OUT,
    PreviewResult,
    ReservationResult,
)
from src.core.domain.sponsorship import (
    BLOCKING_STATUSES,
    TERMINAL_STATUSES,
    Sponsorship,
    SponsorshipStatus,
)
from src.core.domain.territory import Territory

__all__ = [
    # Pricing policy
    "PricingPolicy",
    "SlotPricing",
    # Sponsorship
    "Sponsorship",
    "SponsorshipStatus",
    "BLOCKING_STATUSES",
    "TERMINAL_STATUSES",
    # Territory
    "Territory",
    # Results
    "PreviewResult",
    "ReservationResult",
    "REASON_SOLD_OUT",
    "REASON_BELOW_MINIMUM_AREA",
    "REASON_ALREADY_HELD",
]
