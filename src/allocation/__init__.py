"""Allocation — Preview / Reserve / Expand с пересчётом остатка при commit."""

from .service import TerritoryAllocationService
from .transaction import AllocationConfig, AllocationTransaction

__all__ = [
    "AllocationConfig",
    "AllocationTransaction",
    "TerritoryAllocationService",
]
