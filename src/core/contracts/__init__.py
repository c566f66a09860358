"""
Contract Validation Module

Модуль для валидации входящих JSON контрактов движка.
"""

from .validators import (
    ContractValidator,
    PaymentEventValidator,
    PreviewRequestValidator,
    ReserveRequestValidator,
    SchemaLoader,
    TerritoryGeometryValidator,
    validate_payment_event,
    validate_preview_request,
    validate_reserve_request,
    validate_territory_geometry,
)

__all__ = [
    # Classes
    "SchemaLoader",
    "ContractValidator",
    "TerritoryGeometryValidator",
    "PreviewRequestValidator",
    "ReserveRequestValidator",
    "PaymentEventValidator",
    # Functions
    "validate_territory_geometry",
    "validate_preview_request",
    "validate_reserve_request",
    "validate_payment_event",
]
