"""
AllocationTransaction — единственная точка, где обеспечивается корректность
при конкуренции

Протокол Reserve(territory_id, slot, tenant_id, idempotency_key):
1. Транзакция (SERIALIZABLE / BEGIN IMMEDIATE) + SELECT FOR UPDATE slot guard
2. Idempotency key уже закоммичен → вернуть ту же резервацию
3. Пересчёт остатка ВНУТРИ транзакции против закоммиченного состояния
   (preview клиента никогда не используется)
4. Остаток <= epsilon → ConflictError
5. Вставка pending_payment строки: geometry = свежий остаток,
   price = PricingEngine.price(area, slot)
6. Re-check (subset + non-overlap) перед commit; commit. Serialization
   failure или пересечение на re-check → повтор всего пересчёта
   commit_retries раз, затем ConflictError. Не-subset остаётся
   InvariantViolation

Никаких in-process локов: вся корректность на границе транзакции БД.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from src.availability import AvailabilityCalculator
from src.config import Settings
from src.core.domain.results import ReservationResult
from src.core.domain.sponsorship import SponsorshipStatus
from src.core.errors import ConflictError, InvariantViolation, PolicyError, ValidationError
from src.core.geometry import Geometry, GeometryEngine
from src.pricing import PricingEngine
from src.storage.client import is_serialization_failure, session_scope
from src.storage.models import SponsorshipRecord
from src.storage.repositories import SponsorshipRepository, TerritoryRepository, new_id

logger = structlog.get_logger()

# Re-check перед commit нашёл пересечение: конкурентная запись, повторяемо
OVERLAP_DETECTED = "allocation.overlap_detected"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AllocationConfig:
    """Параметры commit пути."""

    min_purchasable_area_km2: float = 0.0
    commit_retries: int = 1
    provisional_hold: timedelta = timedelta(minutes=30)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AllocationConfig":
        return cls(
            min_purchasable_area_km2=settings.min_purchasable_area_km2,
            commit_retries=settings.commit_retries,
            provisional_hold=timedelta(minutes=settings.provisional_hold_minutes),
        )


class AllocationTransaction:
    """
    Reserve / Expand с пересчётом остатка внутри транзакции.

    Attributes:
        session_factory: фабрика сессий (одна транзакция на попытку)
        pricing: PricingEngine
        geometry: GeometryEngine
        config: AllocationConfig
        clock: источник "сейчас" (UTC-aware)
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        pricing: PricingEngine,
        geometry_engine: GeometryEngine | None = None,
        config: AllocationConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.pricing = pricing
        self.geometry = geometry_engine or GeometryEngine()
        self.availability = AvailabilityCalculator(self.geometry)
        self.config = config or AllocationConfig()
        self.clock = clock

    # =========================================================================
    # RESERVE
    # =========================================================================

    def reserve(
        self, territory_id: str, slot: int, tenant_id: str, idempotency_key: str
    ) -> ReservationResult:
        """
        Provisional резервация свежего остатка.

        Raises:
            ConflictError: остаток продан с момента preview (или исчерпаны повторы)
            PolicyError: у арендатора уже есть резервация на (территория, слот)
            ValidationError: idempotency key переиспользован для другого запроса
            NotFoundError: территория не найдена / не принадлежит арендатору
        """
        log = logger.bind(
            operation="reserve",
            territory_id=territory_id,
            slot=slot,
            tenant_id=tenant_id,
            idempotency_key=idempotency_key,
        )

        def attempt() -> ReservationResult:
            with session_scope(self.session_factory) as session:
                return self._reserve_in(session, territory_id, slot, tenant_id, idempotency_key)

        def on_duplicate_key() -> ReservationResult | None:
            # Параллельный повтор с тем же ключом закоммитился первым
            with session_scope(self.session_factory) as session:
                record = SponsorshipRepository(session).get_by_idempotency_key(
                    tenant_id, idempotency_key
                )
                if record is None:
                    return None
                _ensure_same_request(record, territory_id, slot)
                return _to_result(record, idempotent_replay=True)

        try:
            result = self._run_with_retries(attempt, on_duplicate_key, log)
        except ConflictError as exc:
            log.warning("Reservation rejected", code=exc.code, meta=exc.meta)
            raise
        log.info(
            "Reservation committed" if not result.idempotent_replay else "Reservation replayed",
            reservation_id=result.reservation_id,
            area_km2=result.area_km2,
            monthly_price=str(result.monthly_price),
        )
        return result

    def _reserve_in(
        self,
        session: Session,
        territory_id: str,
        slot: int,
        tenant_id: str,
        idempotency_key: str,
    ) -> ReservationResult:
        now = self.clock()
        sponsorships = SponsorshipRepository(session, self.geometry)
        guard = sponsorships.lock_slot(slot)

        existing = sponsorships.get_by_idempotency_key(tenant_id, idempotency_key)
        if existing is not None:
            _ensure_same_request(existing, territory_id, slot)
            return _to_result(existing, idempotent_replay=True)

        territory = TerritoryRepository(session).get_owned(territory_id, tenant_id)

        held = sponsorships.find_blocking_holding(tenant_id, territory_id, slot, now)
        if held is not None:
            raise PolicyError(
                "Tenant already holds this territory and slot; use expand instead",
                code="sponsorship.already_held",
                meta={"reservation_id": held.id, "territory_id": territory_id, "slot": slot},
            )

        # Истёкший hold того же владения не должен стать активным поверх новой строки
        for stale in sponsorships.stale_holds(tenant_id, territory_id, slot, now):
            stale.status = SponsorshipStatus.RELEASED.value
            stale.hold_expires_at = None

        territory_geometry = self.geometry.from_geojson(territory.geometry)
        availability = self.availability.compute(
            territory_geometry,
            slot,
            sponsorships,
            now,
            exclude_tenant_id=tenant_id,
            exclude_territory_id=territory_id,
        )
        if availability.sold_out:
            raise ConflictError(
                "Remainder was sold since the preview; request a fresh preview",
                code="allocation.sold_out",
                meta={"territory_id": territory_id, "slot": slot},
            )
        self._ensure_minimum_area(availability.area_km2, territory_id, slot)

        monthly_price = self.pricing.price(availability.area_km2, slot)
        record = SponsorshipRecord(
            id=new_id("spn"),
            tenant_id=tenant_id,
            territory_id=territory_id,
            slot=slot,
            area_km2=availability.area_km2,
            monthly_price=monthly_price,
            currency=self.pricing.currency,
            status=SponsorshipStatus.PENDING_PAYMENT.value,
            cancel_at_period_end=False,
            hold_expires_at=now + self.config.provisional_hold,
            idempotency_key=idempotency_key,
            territory_version=territory.version,
        )
        sponsorships.apply_geometry(record, availability.remainder)
        sponsorships.add(record)

        self._verify_before_commit(
            sponsorships, record, availability.remainder, territory_geometry, now
        )
        guard.commits = guard.commits + 1
        return _to_result(record)

    # =========================================================================
    # EXPAND
    # =========================================================================

    def expand(self, territory_id: str, slot: int, tenant_id: str) -> ReservationResult:
        """
        Расширить существующую резервацию до нового остатка территории
        (например после перерисовки или освобождения соседнего участка).

        Raises:
            PolicyError: нет резервации (sponsorship.not_held) или нет
                прироста площади (sponsorship.no_additional_area)
            ConflictError: исчерпаны повторы при serialization failure
        """
        log = logger.bind(
            operation="expand", territory_id=territory_id, slot=slot, tenant_id=tenant_id
        )

        def attempt() -> ReservationResult:
            with session_scope(self.session_factory) as session:
                return self._expand_in(session, territory_id, slot, tenant_id)

        result = self._run_with_retries(attempt, None, log)
        log.info(
            "Reservation expanded",
            reservation_id=result.reservation_id,
            area_km2=result.area_km2,
            monthly_price=str(result.monthly_price),
        )
        return result

    def _expand_in(
        self, session: Session, territory_id: str, slot: int, tenant_id: str
    ) -> ReservationResult:
        now = self.clock()
        sponsorships = SponsorshipRepository(session, self.geometry)
        guard = sponsorships.lock_slot(slot)

        territory = TerritoryRepository(session).get_owned(territory_id, tenant_id)
        record = sponsorships.find_blocking_holding(tenant_id, territory_id, slot, now)
        if record is None:
            raise PolicyError(
                "Tenant holds no reservation for this territory and slot",
                code="sponsorship.not_held",
                meta={"territory_id": territory_id, "slot": slot},
            )

        territory_geometry = self.geometry.from_geojson(territory.geometry)
        availability = self.availability.compute(
            territory_geometry,
            slot,
            sponsorships,
            now,
            exclude_tenant_id=tenant_id,
            exclude_territory_id=territory_id,
        )
        gain = availability.area_km2 - record.area_km2
        if availability.sold_out or gain <= self.geometry.area_eps_km2:
            raise PolicyError(
                "No additional area is available to expand into",
                code="sponsorship.no_additional_area",
                meta={
                    "reservation_id": record.id,
                    "current_area_km2": record.area_km2,
                    "available_area_km2": availability.area_km2,
                },
            )

        record.area_km2 = availability.area_km2
        record.monthly_price = self.pricing.price(availability.area_km2, slot)
        record.territory_version = territory.version
        sponsorships.apply_geometry(record, availability.remainder)
        session.flush()

        self._verify_before_commit(
            sponsorships, record, availability.remainder, territory_geometry, now
        )
        guard.commits = guard.commits + 1
        return _to_result(record)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _run_with_retries(
        self,
        attempt: Callable[[], ReservationResult],
        on_duplicate_key: Callable[[], ReservationResult | None] | None,
        log,
    ) -> ReservationResult:
        attempts = 1 + self.config.commit_retries
        for number in range(1, attempts + 1):
            try:
                return attempt()
            except IntegrityError:
                if on_duplicate_key is not None:
                    replay = on_duplicate_key()
                    if replay is not None:
                        return replay
                log.warning("Commit hit integrity conflict", attempt=number)
            except DBAPIError as exc:
                if not is_serialization_failure(exc):
                    raise
                log.warning("Commit serialization failure", attempt=number, error=str(exc.orig))
            except InvariantViolation as exc:
                if exc.code != OVERLAP_DETECTED:
                    raise
                log.warning("Commit re-check found overlap", attempt=number, meta=exc.meta)

        raise ConflictError(
            "Concurrent commit won the race; request a fresh preview",
            code="allocation.conflict",
            meta={"attempts": attempts},
        )

    def _ensure_minimum_area(self, area_km2: float, territory_id: str, slot: int) -> None:
        # Остаток сжался ниже минимума между preview и commit
        if area_km2 < self.config.min_purchasable_area_km2:
            raise ConflictError(
                "Remainder shrank below the minimum purchasable area",
                code="allocation.below_minimum_area",
                meta={
                    "territory_id": territory_id,
                    "slot": slot,
                    "area_km2": area_km2,
                    "min_area_km2": self.config.min_purchasable_area_km2,
                },
            )

    def _verify_before_commit(
        self,
        sponsorships: SponsorshipRepository,
        record: SponsorshipRecord,
        geometry: Geometry,
        territory_geometry: Geometry,
        now: datetime,
    ) -> None:
        """
        Subset территории + non-overlap с блокирующими резервациями слота.

        Raises:
            InvariantViolation: транзакция откатывается session_scope
        """
        if not self.geometry.covers(territory_geometry, geometry):
            raise InvariantViolation(
                "Reserved geometry is not a subset of its territory",
                code="allocation.not_subset",
                meta={"reservation_id": record.id},
            )

        competing = sponsorships.competing_geometries(
            slot=record.slot,
            bbox=geometry.bounds,
            now=now,
            exclude_tenant_id=record.tenant_id,
            exclude_territory_id=record.territory_id,
        )
        for other in competing:
            overlap = self.geometry.intersection_area(geometry, other)
            if overlap > self.geometry.area_eps_km2:
                raise InvariantViolation(
                    "Reserved geometry overlaps a blocking reservation",
                    code=OVERLAP_DETECTED,
                    meta={"reservation_id": record.id, "overlap_km2": overlap},
                )


def _ensure_same_request(record: SponsorshipRecord, territory_id: str, slot: int) -> None:
    if record.territory_id != territory_id or record.slot != slot:
        raise ValidationError(
            "Idempotency key was already used for a different reservation request",
            code="request.idempotency_key_reused",
            meta={"reservation_id": record.id},
        )


def _to_result(record: SponsorshipRecord, idempotent_replay: bool = False) -> ReservationResult:
    return ReservationResult(
        reservation_id=record.id,
        tenant_id=record.tenant_id,
        territory_id=record.territory_id,
        slot=record.slot,
        geometry=record.geometry,
        area_km2=record.area_km2,
        monthly_price=record.monthly_price,
        currency=record.currency,
        status=SponsorshipStatus(record.status),
        hold_expires_at=record.hold_expires_at,
        idempotent_replay=idempotent_replay,
    )
