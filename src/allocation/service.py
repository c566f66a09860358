"""
TerritoryAllocationService — внешние операции движка независимо от транспорта

- create_territory / redraw_territory / get_territory
- preview / preview_drawn — advisory, read-only
- reserve / expand — через AllocationTransaction
- holdings — блокирующие резервации арендатора

ValidationError и PolicyError выбрасываются здесь, синхронно, до начала
транзакции commit.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping

import structlog
from sqlalchemy.orm import Session, sessionmaker

from src.allocation.transaction import AllocationConfig, AllocationTransaction
from src.availability import AvailabilityCalculator, AvailabilityResult
from src.config import Settings, get_settings
from src.core.contracts import (
    ContractValidator,
    PreviewRequestValidator,
    ReserveRequestValidator,
    TerritoryGeometryValidator,
)
from src.core.domain.results import (
    REASON_ALREADY_HELD,
    REASON_BELOW_MINIMUM_AREA,
    REASON_SOLD_OUT,
    PreviewResult,
    ReservationResult,
)
from src.core.domain.sponsorship import Sponsorship
from src.core.domain.territory import Territory
from src.core.errors import PolicyError, ValidationError
from src.core.geometry import GeometryEngine, InvalidGeometry, NormalizedGeometry
from src.pricing import PricingEngine
from src.storage.client import read_scope, session_scope
from src.storage.repositories import (
    SponsorshipRepository,
    TerritoryRepository,
    to_domain_list,
)

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TerritoryAllocationService:
    """Фасад Preview / Reserve / Expand и управления территориями."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self.session_factory = session_factory
        self.clock = clock
        self.geometry = GeometryEngine(area_eps_km2=settings.area_epsilon_km2)
        self.availability = AvailabilityCalculator(self.geometry)
        self.pricing = PricingEngine(settings.pricing_policy())
        self.config = AllocationConfig.from_settings(settings)
        self.transaction = AllocationTransaction(
            session_factory,
            self.pricing,
            geometry_engine=self.geometry,
            config=self.config,
            clock=clock,
        )

        self._geometry_contract = TerritoryGeometryValidator()
        self._preview_contract = PreviewRequestValidator()
        self._reserve_contract = ReserveRequestValidator()

    # =========================================================================
    # TERRITORIES
    # =========================================================================

    def create_territory(
        self, tenant_id: str, geojson: Mapping[str, Any], name: str = "Service area"
    ) -> Territory:
        """
        Raises:
            ValidationError: геометрия некорректна
        """
        normalized = self._parse_geometry(geojson)
        with session_scope(self.session_factory) as session:
            record = TerritoryRepository(session).create(tenant_id, normalized, name=name)
            territory = TerritoryRepository.to_domain(record)

        logger.info(
            "Territory created",
            territory_id=territory.id,
            tenant_id=tenant_id,
            fixes=list(normalized.fixes),
        )
        return territory

    def redraw_territory(
        self, territory_id: str, tenant_id: str, geojson: Mapping[str, Any]
    ) -> Territory:
        """
        Новая геометрия, version + 1. Уже проданные резервации не меняются,
        outstanding preview становятся устаревшими.
        """
        normalized = self._parse_geometry(geojson)
        with session_scope(self.session_factory) as session:
            repo = TerritoryRepository(session)
            record = repo.redraw(repo.get_owned(territory_id, tenant_id), normalized)
            territory = TerritoryRepository.to_domain(record)

        logger.info("Territory redrawn", territory_id=territory_id, version=territory.version)
        return territory

    def get_territory(self, territory_id: str, tenant_id: str) -> Territory:
        with read_scope(self.session_factory) as session:
            repo = TerritoryRepository(session)
            return TerritoryRepository.to_domain(repo.get_owned(territory_id, tenant_id))

    # =========================================================================
    # PREVIEW
    # =========================================================================

    def preview(self, territory_id: str, slot: int, tenant_id: str) -> PreviewResult:
        """
        Остаток и цена для сохранённой территории. Advisory.

        Raises:
            ValidationError: запрос не соответствует контракту / неизвестный слот
            NotFoundError: территория не найдена
        """
        self._check_contract(
            self._preview_contract,
            {"territory_id": territory_id, "slot": slot, "tenant_id": tenant_id},
        )
        self._check_slot(slot)

        now = self.clock()
        with read_scope(self.session_factory) as session:
            territory = TerritoryRepository(session).get_owned(territory_id, tenant_id)
            territory_version = territory.version
            sponsorships = SponsorshipRepository(session, self.geometry)
            held = sponsorships.find_blocking_holding(tenant_id, territory_id, slot, now)
            availability = self.availability.compute(
                self.geometry.from_geojson(territory.geometry),
                slot,
                sponsorships,
                now,
                exclude_tenant_id=tenant_id,
                exclude_territory_id=territory_id,
            )

        logger.debug(
            "Preview computed",
            territory_id=territory_id,
            slot=slot,
            tenant_id=tenant_id,
            area_km2=availability.area_km2,
            competing=availability.intersecting_count,
        )
        return self._preview_result(
            availability,
            tenant_id,
            slot,
            territory_id=territory_id,
            territory_version=territory_version,
            already_held=held is not None,
        )

    def preview_drawn(
        self,
        geojson: Mapping[str, Any],
        slot: int,
        tenant_id: str,
        territory_id: str | None = None,
    ) -> PreviewResult:
        """
        Preview несохранённого полигона (live preview при рисовании).

        territory_id — сохранённая территория арендатора, которую он
        перерисовывает: её собственная резервация не вычитается из остатка,
        как и в preview сохранённой территории.

        Raises:
            ValidationError: некорректная геометрия / неизвестный слот
            NotFoundError: territory_id не принадлежит арендатору
        """
        self._check_slot(slot)
        normalized = self._parse_geometry(geojson)

        now = self.clock()
        with read_scope(self.session_factory) as session:
            if territory_id is not None:
                TerritoryRepository(session).get_owned(territory_id, tenant_id)
            availability = self.availability.compute(
                normalized.geometry,
                slot,
                SponsorshipRepository(session, self.geometry),
                now,
                exclude_tenant_id=tenant_id if territory_id is not None else None,
                exclude_territory_id=territory_id,
            )
        return self._preview_result(availability, tenant_id, slot, territory_id=territory_id)

    def _preview_result(
        self,
        availability: AvailabilityResult,
        tenant_id: str,
        slot: int,
        territory_id: str | None = None,
        territory_version: int | None = None,
        already_held: bool = False,
    ) -> PreviewResult:
        if availability.sold_out:
            return PreviewResult(
                territory_id=territory_id,
                territory_version=territory_version,
                tenant_id=tenant_id,
                slot=slot,
                area_km2=0.0,
                remainder_geometry=None,
                taken_geometry=availability.taken.to_geojson(),
                monthly_price=Decimal("0"),
                currency=self.pricing.currency,
                sold_out=True,
                reason=REASON_SOLD_OUT,
            )

        reason = None
        if already_held:
            reason = REASON_ALREADY_HELD
        elif availability.area_km2 < self.config.min_purchasable_area_km2:
            reason = REASON_BELOW_MINIMUM_AREA

        return PreviewResult(
            territory_id=territory_id,
            territory_version=territory_version,
            tenant_id=tenant_id,
            slot=slot,
            area_km2=availability.area_km2,
            remainder_geometry=availability.remainder.to_geojson(),
            taken_geometry=availability.taken.to_geojson(),
            monthly_price=self.pricing.price(availability.area_km2, slot),
            currency=self.pricing.currency,
            sold_out=False,
            reason=reason,
        )

    # =========================================================================
    # RESERVE / EXPAND
    # =========================================================================

    def reserve(
        self, territory_id: str, slot: int, tenant_id: str, idempotency_key: str
    ) -> ReservationResult:
        """
        Provisional резервация; активируется подтверждением шлюза.

        Raises:
            ValidationError: запрос не соответствует контракту / неизвестный слот
            PolicyError: остаток ниже минимальной площади / уже куплено
            ConflictError: остаток продан с момента preview
        """
        self._check_contract(
            self._reserve_contract,
            {
                "territory_id": territory_id,
                "slot": slot,
                "tenant_id": tenant_id,
                "idempotency_key": idempotency_key,
            },
        )
        self._check_slot(slot)
        self._check_minimum_area(territory_id, slot, tenant_id, idempotency_key)
        return self.transaction.reserve(territory_id, slot, tenant_id, idempotency_key)

    def expand(self, territory_id: str, slot: int, tenant_id: str) -> ReservationResult:
        self._check_contract(
            self._preview_contract,
            {"territory_id": territory_id, "slot": slot, "tenant_id": tenant_id},
        )
        self._check_slot(slot)
        return self.transaction.expand(territory_id, slot, tenant_id)

    def holdings(self, tenant_id: str, slot: int | None = None) -> list[Sponsorship]:
        """Блокирующие резервации арендатора ("my wins")."""
        with read_scope(self.session_factory) as session:
            records = SponsorshipRepository(session).holdings(tenant_id, self.clock(), slot=slot)
            return to_domain_list(records)

    # =========================================================================
    # INPUT VALIDATION
    # =========================================================================

    def _parse_geometry(self, geojson: Mapping[str, Any]) -> NormalizedGeometry:
        self._check_contract(self._geometry_contract, geojson)
        try:
            normalized = self.geometry.parse(geojson)
        except InvalidGeometry as exc:
            raise ValidationError(
                "Territory geometry is invalid",
                code="geometry.invalid",
                meta={"reasons": list(exc.reasons)},
            ) from exc

        if normalized.was_modified:
            logger.warning("Territory geometry normalized", fixes=list(normalized.fixes))
        return normalized

    def _check_contract(self, validator: ContractValidator, payload: Mapping[str, Any]) -> None:
        messages = validator.error_messages(dict(payload))
        if messages:
            raise ValidationError(
                f"Request does not match {validator.schema_name}",
                code="request.schema_violation",
                meta={"errors": messages},
            )

    def _check_slot(self, slot: int) -> None:
        if not self.pricing.policy.has_slot(slot):
            raise ValidationError(
                f"Unknown slot: {slot}",
                code="request.unknown_slot",
                meta={"slot": slot, "slots": list(self.pricing.policy.slot_ids)},
            )

    def _check_minimum_area(
        self, territory_id: str, slot: int, tenant_id: str, idempotency_key: str
    ) -> None:
        """Политика минимальной площади по advisory остатку (до транзакции)."""
        if self.config.min_purchasable_area_km2 <= 0:
            return
        with read_scope(self.session_factory) as session:
            replay = SponsorshipRepository(session).get_by_idempotency_key(
                tenant_id, idempotency_key
            )
        if replay is not None:
            return

        preview = self.preview(territory_id, slot, tenant_id)
        if preview.reason == REASON_BELOW_MINIMUM_AREA:
            raise PolicyError(
                "Available area is below the minimum purchasable area",
                code="policy.below_minimum_area",
                meta={
                    "area_km2": preview.area_km2,
                    "min_area_km2": self.config.min_purchasable_area_km2,
                },
            )
