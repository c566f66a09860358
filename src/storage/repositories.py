"""
Repositories

Тонкий слой запросов поверх Session. Репозитории не коммитят: границу
транзакции задаёт вызывающий (AllocationTransaction / LifecycleService).
"""

from datetime import datetime, timedelta
from typing import Iterable
from uuid import uuid4

from sqlalchemy import and_, not_, or_, select
from sqlalchemy.orm import Session

from src.core.domain.sponsorship import (
    BLOCKING_STATUSES,
    Sponsorship,
    SponsorshipStatus,
)
from src.core.domain.territory import Territory
from src.core.errors import InvariantViolation, NotFoundError
from src.core.geometry import Geometry, GeometryEngine, NormalizedGeometry
from src.storage.models import (
    PaymentEventRecord,
    SlotGuard,
    SponsorshipRecord,
    TerritoryRecord,
)

_BLOCKING_VALUES = tuple(s.value for s in BLOCKING_STATUSES)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def _bbox_columns(geometry: Geometry) -> dict[str, float]:
    min_lon, min_lat, max_lon, max_lat = geometry.bounds
    return {"min_lon": min_lon, "min_lat": min_lat, "max_lon": max_lon, "max_lat": max_lat}


# =============================================================================
# TERRITORIES
# =============================================================================


class TerritoryRepository:
    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        tenant_id: str,
        normalized: NormalizedGeometry,
        name: str = "Service area",
    ) -> TerritoryRecord:
        record = TerritoryRecord(
            id=new_id("ter"),
            tenant_id=tenant_id,
            name=name,
            geometry=normalized.geometry.to_geojson(),
            normalization_fixes=list(normalized.fixes),
            version=1,
            **_bbox_columns(normalized.geometry),
        )
        self.session.add(record)
        self.session.flush()
        return record

    def redraw(self, record: TerritoryRecord, normalized: NormalizedGeometry) -> TerritoryRecord:
        """Новая геометрия и version + 1. Резервации не трогаются."""
        record.geometry = normalized.geometry.to_geojson()
        record.normalization_fixes = list(normalized.fixes)
        record.version = record.version + 1
        for column, value in _bbox_columns(normalized.geometry).items():
            setattr(record, column, value)
        self.session.flush()
        return record

    def get(self, territory_id: str) -> TerritoryRecord:
        """
        Raises:
            NotFoundError: Если территории нет
        """
        record = self.session.get(TerritoryRecord, territory_id)
        if record is None:
            raise NotFoundError(
                f"Territory {territory_id} not found",
                code="territory.not_found",
                meta={"territory_id": territory_id},
            )
        return record

    def get_owned(self, territory_id: str, tenant_id: str) -> TerritoryRecord:
        """Территория, принадлежащая арендатору (чужая неотличима от отсутствующей)."""
        record = self.get(territory_id)
        if record.tenant_id != tenant_id:
            raise NotFoundError(
                f"Territory {territory_id} not found",
                code="territory.not_found",
                meta={"territory_id": territory_id},
            )
        return record

    @staticmethod
    def to_domain(record: TerritoryRecord) -> Territory:
        return Territory(
            id=record.id,
            tenant_id=record.tenant_id,
            name=record.name,
            geometry=record.geometry,
            version=record.version,
            normalization_fixes=tuple(record.normalization_fixes or ()),
            updated_at=record.updated_at,
        )


# =============================================================================
# SPONSORSHIPS
# =============================================================================


class SponsorshipRepository:
    """Запросы по резервациям; реализует CompetingReservationSource."""

    def __init__(self, session: Session, geometry_engine: GeometryEngine | None = None):
        self.session = session
        self.geometry = geometry_engine or GeometryEngine()

    # -------------------------------------------------------------------------
    # Availability source
    # -------------------------------------------------------------------------

    def competing_geometries(
        self,
        slot: int,
        bbox: tuple[float, float, float, float],
        now: datetime,
        exclude_tenant_id: str | None = None,
        exclude_territory_id: str | None = None,
        exclude_sponsorship_id: str | None = None,
    ) -> list[Geometry]:
        """
        Геометрии блокирующих резерваций слота, чей bbox пересекает bbox.

        exclude_tenant_id + exclude_territory_id исключают собственное
        владение арендатора; exclude_sponsorship_id исключает одну строку.
        """
        min_lon, min_lat, max_lon, max_lat = bbox
        stmt = select(SponsorshipRecord.geometry).where(
            self._blocking_clause(now),
            SponsorshipRecord.slot == slot,
            SponsorshipRecord.min_lon <= max_lon,
            SponsorshipRecord.max_lon >= min_lon,
            SponsorshipRecord.min_lat <= max_lat,
            SponsorshipRecord.max_lat >= min_lat,
        )
        if exclude_tenant_id is not None and exclude_territory_id is not None:
            stmt = stmt.where(
                not_(
                    and_(
                        SponsorshipRecord.tenant_id == exclude_tenant_id,
                        SponsorshipRecord.territory_id == exclude_territory_id,
                    )
                )
            )
        if exclude_sponsorship_id is not None:
            stmt = stmt.where(SponsorshipRecord.id != exclude_sponsorship_id)
        return [self.geometry.from_geojson(raw) for raw in self.session.scalars(stmt)]

    @staticmethod
    def _blocking_clause(now: datetime):
        """Блокирующий статус; pending_payment — только пока hold не истёк."""
        return and_(
            SponsorshipRecord.status.in_(_BLOCKING_VALUES),
            or_(
                SponsorshipRecord.status != SponsorshipStatus.PENDING_PAYMENT.value,
                SponsorshipRecord.hold_expires_at.is_(None),
                SponsorshipRecord.hold_expires_at > now,
            ),
        )

    # -------------------------------------------------------------------------
    # Slot guard
    # -------------------------------------------------------------------------

    def lock_slot(self, slot: int) -> SlotGuard:
        """
        SELECT ... FOR UPDATE строки slot_guards.

        Raises:
            InvariantViolation: Если guard для слота не засеян
        """
        guard = self.session.scalars(
            select(SlotGuard).where(SlotGuard.slot == slot).with_for_update()
        ).first()
        if guard is None:
            raise InvariantViolation(
                f"Slot guard for slot {slot} is missing",
                code="allocation.slot_guard_missing",
                meta={"slot": slot},
            )
        return guard

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def add(self, record: SponsorshipRecord) -> SponsorshipRecord:
        self.session.add(record)
        self.session.flush()
        return record

    def get(self, sponsorship_id: str, for_update: bool = False) -> SponsorshipRecord:
        """
        Raises:
            NotFoundError: Если резервации нет
        """
        stmt = select(SponsorshipRecord).where(SponsorshipRecord.id == sponsorship_id)
        if for_update:
            stmt = stmt.with_for_update()
        record = self.session.scalars(stmt).first()
        if record is None:
            raise NotFoundError(
                f"Sponsorship {sponsorship_id} not found",
                code="sponsorship.not_found",
                meta={"sponsorship_id": sponsorship_id},
            )
        return record

    def get_by_idempotency_key(self, tenant_id: str, key: str) -> SponsorshipRecord | None:
        return self.session.scalars(
            select(SponsorshipRecord).where(
                SponsorshipRecord.tenant_id == tenant_id,
                SponsorshipRecord.idempotency_key == key,
            )
        ).first()

    def find_blocking_holding(
        self, tenant_id: str, territory_id: str, slot: int, now: datetime
    ) -> SponsorshipRecord | None:
        """Блокирующая резервация арендатора на (территория, слот)."""
        return self.session.scalars(
            select(SponsorshipRecord)
            .where(
                self._blocking_clause(now),
                SponsorshipRecord.tenant_id == tenant_id,
                SponsorshipRecord.territory_id == territory_id,
                SponsorshipRecord.slot == slot,
            )
            .order_by(SponsorshipRecord.created_at.desc())
        ).first()

    def holdings(
        self, tenant_id: str, now: datetime, slot: int | None = None
    ) -> list[SponsorshipRecord]:
        """Блокирующие резервации арендатора, новые первыми."""
        stmt = select(SponsorshipRecord).where(
            self._blocking_clause(now),
            SponsorshipRecord.tenant_id == tenant_id,
        )
        if slot is not None:
            stmt = stmt.where(SponsorshipRecord.slot == slot)
        stmt = stmt.order_by(SponsorshipRecord.created_at.desc())
        return list(self.session.scalars(stmt))

    def stale_holds(
        self, tenant_id: str, territory_id: str, slot: int, now: datetime
    ) -> list[SponsorshipRecord]:
        """Истёкшие provisional holds арендатора на (территория, слот)."""
        return list(
            self.session.scalars(
                select(SponsorshipRecord).where(
                    SponsorshipRecord.tenant_id == tenant_id,
                    SponsorshipRecord.territory_id == territory_id,
                    SponsorshipRecord.slot == slot,
                    SponsorshipRecord.status == SponsorshipStatus.PENDING_PAYMENT.value,
                    SponsorshipRecord.hold_expires_at.is_not(None),
                    SponsorshipRecord.hold_expires_at <= now,
                )
            )
        )

    def expired_holds(self, now: datetime) -> list[SponsorshipRecord]:
        return list(
            self.session.scalars(
                select(SponsorshipRecord).where(
                    SponsorshipRecord.status == SponsorshipStatus.PENDING_PAYMENT.value,
                    SponsorshipRecord.hold_expires_at.is_not(None),
                    SponsorshipRecord.hold_expires_at <= now,
                )
            )
        )

    def ended_periods(self, now: datetime, grace: timedelta) -> list[SponsorshipRecord]:
        """
        Резервации, чей период закончился: cancel_at_period_end после
        period_end, active без продления после period_end + grace.
        """
        return list(
            self.session.scalars(
                select(SponsorshipRecord).where(
                    SponsorshipRecord.period_end.is_not(None),
                    or_(
                        and_(
                            SponsorshipRecord.status
                            == SponsorshipStatus.CANCEL_AT_PERIOD_END.value,
                            SponsorshipRecord.period_end <= now,
                        ),
                        and_(
                            SponsorshipRecord.status == SponsorshipStatus.ACTIVE.value,
                            SponsorshipRecord.period_end <= now - grace,
                        ),
                    ),
                )
            )
        )

    def renewing_between(self, start: datetime, end: datetime) -> list[SponsorshipRecord]:
        """Активные, не отменяемые резервации с period_end в [start, end]."""
        return list(
            self.session.scalars(
                select(SponsorshipRecord)
                .where(
                    SponsorshipRecord.status == SponsorshipStatus.ACTIVE.value,
                    SponsorshipRecord.cancel_at_period_end.is_(False),
                    SponsorshipRecord.period_end >= start,
                    SponsorshipRecord.period_end <= end,
                )
                .order_by(SponsorshipRecord.period_end)
            )
        )

    @staticmethod
    def apply_geometry(record: SponsorshipRecord, geometry: Geometry) -> None:
        record.geometry = geometry.to_geojson()
        for column, value in _bbox_columns(geometry).items():
            setattr(record, column, value)

    @staticmethod
    def to_domain(record: SponsorshipRecord) -> Sponsorship:
        return Sponsorship(
            id=record.id,
            tenant_id=record.tenant_id,
            territory_id=record.territory_id,
            slot=record.slot,
            geometry=record.geometry,
            area_km2=record.area_km2,
            monthly_price=record.monthly_price,
            currency=record.currency,
            status=SponsorshipStatus(record.status),
            period_start=record.period_start,
            period_end=record.period_end,
            hold_expires_at=record.hold_expires_at,
            idempotency_key=record.idempotency_key,
            territory_version=record.territory_version,
            created_at=record.created_at,
        )


# =============================================================================
# PAYMENT EVENTS
# =============================================================================


class PaymentEventRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, event_id: str) -> PaymentEventRecord | None:
        return self.session.get(PaymentEventRecord, event_id)

    def record(
        self, event_id: str, event_type: str, sponsorship_id: str, outcome: str
    ) -> PaymentEventRecord:
        record = PaymentEventRecord(
            event_id=event_id,
            event_type=event_type,
            sponsorship_id=sponsorship_id,
            outcome=outcome,
        )
        self.session.add(record)
        self.session.flush()
        return record


def to_domain_list(records: Iterable[SponsorshipRecord]) -> list[Sponsorship]:
    return [SponsorshipRepository.to_domain(r) for r in records]
