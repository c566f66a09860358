"""Availability — покупаемый остаток территории для слота (advisory)."""

from .calculator import (
    AvailabilityCalculator,
    AvailabilityResult,
    CompetingReservationSource,
)

__all__ = [
    "AvailabilityCalculator",
    "AvailabilityResult",
    "CompetingReservationSource",
]
