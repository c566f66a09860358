"""
Storage Models

SQLAlchemy модели таблиц движка: территории, резервации (sponsorships),
slot guards (сериализация commit по слоту) и обработанные события шлюза.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime.

    SQLite возвращает naive значения: при чтении приклеиваем UTC, при
    записи приводим aware значения к UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetime is not allowed, use UTC-aware values")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class TerritoryRecord(Base):
    """Территория арендатора (перерисовка увеличивает version)."""

    __tablename__ = "territories"

    # Identity
    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    name = Column(String(255), nullable=False, default="Service area")

    # Geometry (нормализованный GeoJSON) + bbox
    geometry = Column(JSON, nullable=False)
    min_lon = Column(Float, nullable=False)
    min_lat = Column(Float, nullable=False)
    max_lon = Column(Float, nullable=False)
    max_lat = Column(Float, nullable=False)
    normalization_fixes = Column(JSON, nullable=False, default=list)

    version = Column(Integer, nullable=False, default=1)

    # Timestamps
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class SponsorshipRecord(Base):
    """
    Резервация под-региона территории.

    Геометрия — точный проданный остаток на момент commit; не меняется
    после вставки (кроме Expand, который пишет новый остаток под slot guard).
    """

    __tablename__ = "sponsorships"

    # Identity
    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    territory_id = Column(String(64), nullable=False, index=True)
    slot = Column(Integer, nullable=False)

    # Geometry + bbox prefilter
    geometry = Column(JSON, nullable=False)
    min_lon = Column(Float, nullable=False)
    min_lat = Column(Float, nullable=False)
    max_lon = Column(Float, nullable=False)
    max_lat = Column(Float, nullable=False)
    area_km2 = Column(Float, nullable=False)

    # Pricing
    monthly_price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="GBP")

    # Lifecycle
    status = Column(String(32), nullable=False, index=True)  # pending_payment, active, ...
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    period_start = Column(UTCDateTime, nullable=True)
    period_end = Column(UTCDateTime, nullable=True)
    hold_expires_at = Column(UTCDateTime, nullable=True)

    # Traceability
    idempotency_key = Column(String(255), nullable=False)
    territory_version = Column(Integer, nullable=False)

    # Timestamps
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_sponsorship_idempotency"),
        Index(
            "ix_sponsorship_slot_bbox",
            "slot",
            "status",
            "min_lon",
            "max_lon",
            "min_lat",
            "max_lat",
        ),
    )


class SlotGuard(Base):
    """
    Строка-замок на слот.

    Каждый Reserve / Expand / подтверждение после истечения hold берёт
    SELECT ... FOR UPDATE на строку своего слота.
    """

    __tablename__ = "slot_guards"

    slot = Column(Integer, primary_key=True)
    commits = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PaymentEventRecord(Base):
    """Обработанное событие шлюза (webhook идемпотентность по event id)."""

    __tablename__ = "payment_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(50), nullable=False)
    sponsorship_id = Column(String(64), nullable=False, index=True)
    outcome = Column(String(50), nullable=False)
    received_at = Column(UTCDateTime, default=utcnow, nullable=False)
