"""Storage — SQLAlchemy модели, engine/session и репозитории."""

from .client import (
    create_db_engine,
    init_schema,
    is_serialization_failure,
    make_session_factory,
    read_scope,
    session_scope,
)
from .models import (
    Base,
    PaymentEventRecord,
    SlotGuard,
    SponsorshipRecord,
    TerritoryRecord,
)
from .repositories import (
    PaymentEventRepository,
    SponsorshipRepository,
    TerritoryRepository,
    new_id,
    to_domain_list,
)

__all__ = [
    # Client
    "create_db_engine",
    "make_session_factory",
    "session_scope",
    "read_scope",
    "init_schema",
    "is_serialization_failure",
    # Models
    "Base",
    "TerritoryRecord",
    "SponsorshipRecord",
    "SlotGuard",
    "PaymentEventRecord",
    # Repositories
    "TerritoryRepository",
    "SponsorshipRepository",
    "PaymentEventRepository",
    "new_id",
    "to_domain_list",
]
