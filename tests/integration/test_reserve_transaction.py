"""
Интеграционные тесты Preview / Reserve / Expand на SQLite.

Сценарий: территория 2 км × 2 км (4 km²), арендатор B держит левую
половину слота 1. Арендатор A видит ≈ 2 km² за £30.00; A и C
одновременно покупают остаток — ровно один успех, второй ConflictError.
"""

import threading
from decimal import Decimal

import pytest
from sqlalchemy import select

from src.allocation import TerritoryAllocationService
from src.allocation.transaction import AllocationTransaction
from src.core.domain import REASON_ALREADY_HELD, REASON_BELOW_MINIMUM_AREA, SponsorshipStatus
from src.core.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    PolicyError,
    ValidationError,
)
from src.lifecycle import CancelPolicy
from src.storage import SponsorshipRecord, SponsorshipRepository, session_scope
from tests.conftest import rect_km


def confirm(lifecycle, reservation_id):
    return lifecycle.handle_payment_event(
        {
            "event_id": f"evt_{reservation_id}",
            "kind": "payment_succeeded",
            "sponsorship_id": reservation_id,
            "occurred_at": "2026-03-01T12:00:00Z",
        }
    )


def blocking_geometries(service, session_factory, slot=1):
    with session_scope(session_factory) as session:
        rows = session.scalars(
            select(SponsorshipRecord).where(
                SponsorshipRecord.slot == slot,
                SponsorshipRecord.status.in_(["pending_payment", "active", "cancel_at_period_end"]),
            )
        ).all()
        return [service.geometry.from_geojson(r.geometry) for r in rows]


def assert_overlap_free(service, session_factory, slot=1):
    geometries = blocking_geometries(service, session_factory, slot)
    for i, a in enumerate(geometries):
        for b in geometries[i + 1:]:
            assert service.geometry.intersection_area(a, b) <= service.geometry.area_eps_km2


class _WithCompetitor:
    """Репозиторий, в котором на re-check появляется ещё одна резервация."""

    def __init__(self, repository, extra):
        self.repository = repository
        self.extra = extra

    def competing_geometries(self, **kwargs):
        return [*self.repository.competing_geometries(**kwargs), self.extra]


@pytest.fixture
def competitor_at_recheck(service, monkeypatch, right_half):
    """
    Конкурент, закоммиченный между пересчётом остатка и re-check.

    state["inject"] — сколько первых re-check увидят конкурента.
    """
    intruder = service.geometry.from_geojson(right_half)
    original = AllocationTransaction._verify_before_commit
    state = {"calls": 0, "inject": 1}

    def verify(self, sponsorships, *args):
        state["calls"] += 1
        if state["calls"] <= state["inject"]:
            sponsorships = _WithCompetitor(sponsorships, intruder)
        return original(self, sponsorships, *args)

    monkeypatch.setattr(AllocationTransaction, "_verify_before_commit", verify)
    return state


@pytest.fixture
def b_holds_left_half(service, lifecycle, left_half):
    territory = service.create_territory("tenant_b", left_half)
    reservation = service.reserve(territory.id, 1, "tenant_b", "b-1")
    confirm(lifecycle, reservation.reservation_id)
    return reservation


@pytest.fixture
def territory_a(service, square_2km):
    return service.create_territory("tenant_a", square_2km, name="A area")


@pytest.fixture
def territory_c(service, square_2km):
    return service.create_territory("tenant_c", square_2km, name="C area")


# =============================================================================
# PREVIEW
# =============================================================================


class TestPreview:
    def test_example_scenario_preview(self, service, b_holds_left_half, territory_a):
        preview = service.preview(territory_a.id, 1, "tenant_a")

        assert preview.area_km2 == pytest.approx(2.0, rel=1e-6)
        assert not preview.sold_out
        assert preview.monthly_price == Decimal("30.00")
        assert preview.currency == "GBP"
        assert preview.territory_version == 1
        assert preview.reason is None

    def test_other_slot_is_untouched(self, service, b_holds_left_half, territory_a):
        preview = service.preview(territory_a.id, 2, "tenant_a")
        assert preview.area_km2 == pytest.approx(4.0, rel=1e-6)
        assert preview.monthly_price == Decimal("60.00")

    def test_sold_out_preview(self, service, lifecycle, square_2km, territory_a):
        other = service.create_territory("tenant_b", square_2km)
        confirm(lifecycle, service.reserve(other.id, 1, "tenant_b", "b-all").reservation_id)

        preview = service.preview(territory_a.id, 1, "tenant_a")
        assert preview.sold_out
        assert preview.area_km2 == 0.0
        assert preview.monthly_price == Decimal("0")
        assert preview.reason == "sold_out"
        assert preview.remainder_geometry is None

    def test_preview_has_no_side_effects(self, service, session_factory, territory_a):
        for _ in range(3):
            service.preview(territory_a.id, 1, "tenant_a")
        assert blocking_geometries(service, session_factory) == []

    def test_preview_not_blocked_by_open_reserve(self, service, session_factory, territory_a):
        with session_scope(session_factory) as session:
            SponsorshipRepository(session).lock_slot(1)
            preview = service.preview(territory_a.id, 1, "tenant_a")
        assert preview.area_km2 == pytest.approx(4.0, rel=1e-6)

    def test_preview_drawn(self, service, b_holds_left_half, square_2km):
        preview = service.preview_drawn(square_2km, 1, "tenant_z")
        assert preview.territory_id is None
        assert preview.area_km2 == pytest.approx(2.0, rel=1e-6)

    def test_preview_shows_taken_area(self, service, b_holds_left_half, territory_a):
        preview = service.preview(territory_a.id, 1, "tenant_a")

        taken = service.geometry.from_geojson(preview.taken_geometry)
        remainder = service.geometry.from_geojson(preview.remainder_geometry)
        assert service.geometry.area(taken) == pytest.approx(2.0, rel=1e-6)
        assert service.geometry.intersection_area(taken, remainder) <= service.geometry.area_eps_km2

    def test_free_territory_has_nothing_taken(self, service, territory_a):
        assert service.preview(territory_a.id, 1, "tenant_a").taken_geometry is None

    def test_preview_drawn_over_own_holding(self, service, lifecycle, territory_a):
        held = service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        confirm(lifecycle, held.reservation_id)
        enlarged = rect_km(0, 0, 3, 2)

        redraw = service.preview_drawn(enlarged, 1, "tenant_a", territory_id=territory_a.id)
        assert redraw.territory_id == territory_a.id
        assert redraw.area_km2 == pytest.approx(6.0, rel=1e-6)
        assert redraw.taken_geometry is None

        fresh = service.preview_drawn(enlarged, 1, "tenant_a")
        assert fresh.area_km2 == pytest.approx(2.0, rel=1e-6)

    def test_preview_drawn_for_foreign_territory(self, service, square_2km, territory_a):
        with pytest.raises(NotFoundError):
            service.preview_drawn(square_2km, 1, "tenant_b", territory_id=territory_a.id)

    def test_preview_marks_already_held(self, service, territory_a):
        service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        preview = service.preview(territory_a.id, 1, "tenant_a")
        assert preview.reason == REASON_ALREADY_HELD
        assert preview.area_km2 == pytest.approx(4.0, rel=1e-6)

    def test_expired_hold_does_not_block(self, service, clock, left_half, territory_a):
        other = service.create_territory("tenant_b", left_half)
        service.reserve(other.id, 1, "tenant_b", "b-pending")
        assert service.preview(territory_a.id, 1, "tenant_a").area_km2 == pytest.approx(2.0, rel=1e-6)

        clock.advance(minutes=31)
        assert service.preview(territory_a.id, 1, "tenant_a").area_km2 == pytest.approx(4.0, rel=1e-6)

    def test_unknown_slot(self, service, territory_a):
        with pytest.raises(ValidationError) as exc_info:
            service.preview(territory_a.id, 4, "tenant_a")
        assert exc_info.value.code == "request.unknown_slot"

    def test_foreign_territory_not_found(self, service, territory_a):
        with pytest.raises(NotFoundError):
            service.preview(territory_a.id, 1, "tenant_b")


# =============================================================================
# RESERVE
# =============================================================================


class TestReserve:
    def test_reserve_takes_fresh_remainder(self, service, b_holds_left_half, territory_a, right_half):
        result = service.reserve(territory_a.id, 1, "tenant_a", "a-1")

        assert result.status == SponsorshipStatus.PENDING_PAYMENT
        assert result.hold_expires_at is not None
        assert result.area_km2 == pytest.approx(2.0, rel=1e-6)
        assert result.monthly_price == Decimal("30.00")

        sold = service.geometry.from_geojson(result.geometry)
        expected = service.geometry.parse(right_half).geometry
        symmetric = service.geometry.area(service.geometry.difference(sold, [expected])) + (
            service.geometry.area(service.geometry.difference(expected, [sold]))
        )
        assert symmetric <= service.geometry.area_eps_km2

    def test_stale_preview_conflicts(self, service, b_holds_left_half, territory_a, territory_c):
        preview = service.preview(territory_a.id, 1, "tenant_a")
        assert not preview.sold_out

        service.reserve(territory_c.id, 1, "tenant_c", "c-1")

        with pytest.raises(ConflictError) as exc_info:
            service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        assert exc_info.value.retryable
        assert exc_info.value.code == "allocation.sold_out"

    def test_commit_uses_recomputed_geometry_not_preview(
        self, service, b_holds_left_half, territory_a
    ):
        preview = service.preview(territory_a.id, 1, "tenant_a")

        corner = service.create_territory("tenant_c", rect_km(1, 1, 1, 1))
        service.reserve(corner.id, 1, "tenant_c", "c-corner")

        result = service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        assert preview.area_km2 == pytest.approx(2.0, rel=1e-6)
        assert result.area_km2 == pytest.approx(1.0, rel=1e-6)
        assert result.monthly_price == Decimal("15.00")

    def test_idempotent_retry(self, service, session_factory, territory_a):
        first = service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        second = service.reserve(territory_a.id, 1, "tenant_a", "a-1")

        assert second.reservation_id == first.reservation_id
        assert second.idempotent_replay
        assert not first.idempotent_replay
        assert len(blocking_geometries(service, session_factory)) == 1

    def test_idempotency_key_reuse_for_other_request(self, service, territory_a):
        service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        with pytest.raises(ValidationError) as exc_info:
            service.reserve(territory_a.id, 2, "tenant_a", "a-1")
        assert exc_info.value.code == "request.idempotency_key_reused"

    def test_duplicate_holding(self, service, territory_a):
        service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        with pytest.raises(PolicyError) as exc_info:
            service.reserve(territory_a.id, 1, "tenant_a", "a-2")
        assert exc_info.value.code == "sponsorship.already_held"

    def test_sold_out_reserve(self, service, lifecycle, square_2km, territory_a):
        other = service.create_territory("tenant_b", square_2km)
        confirm(lifecycle, service.reserve(other.id, 1, "tenant_b", "b-all").reservation_id)
        with pytest.raises(ConflictError):
            service.reserve(territory_a.id, 1, "tenant_a", "a-1")

    def test_invalid_request(self, service, territory_a):
        with pytest.raises(ValidationError) as exc_info:
            service.reserve(territory_a.id, 1, "tenant_a", "")
        assert exc_info.value.code == "request.schema_violation"

    def test_independent_slots(self, service, session_factory, territory_a, territory_c):
        service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        result = service.reserve(territory_c.id, 2, "tenant_c", "c-1")
        assert result.area_km2 == pytest.approx(4.0, rel=1e-6)
        assert_overlap_free(service, session_factory, slot=1)
        assert_overlap_free(service, session_factory, slot=2)

    def test_holdings(self, service, territory_a):
        service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        service.reserve(territory_a.id, 2, "tenant_a", "a-2")
        assert len(service.holdings("tenant_a")) == 2
        assert [h.slot for h in service.holdings("tenant_a", slot=2)] == [2]
        assert service.holdings("tenant_b") == []


class TestMinimumArea:
    @pytest.fixture
    def strict_service(self, session_factory, settings, clock):
        strict = settings.model_copy(update={"min_purchasable_area_km2": 3.0})
        return TerritoryAllocationService(session_factory, settings=strict, clock=clock)

    def test_policy_error_before_transaction(
        self, strict_service, b_holds_left_half, territory_a
    ):
        preview = strict_service.preview(territory_a.id, 1, "tenant_a")
        assert preview.reason == REASON_BELOW_MINIMUM_AREA

        with pytest.raises(PolicyError) as exc_info:
            strict_service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        assert exc_info.value.code == "policy.below_minimum_area"


# =============================================================================
# CONCURRENCY
# =============================================================================


class TestConcurrentReserve:
    def test_exactly_one_winner(
        self, service, session_factory, b_holds_left_half, territory_a, territory_c
    ):
        barrier = threading.Barrier(2)
        outcomes = {}

        def buy(tenant_id, territory_id):
            barrier.wait()
            try:
                outcomes[tenant_id] = service.reserve(territory_id, 1, tenant_id, f"{tenant_id}-1")
            except ConflictError as exc:
                outcomes[tenant_id] = exc

        threads = [
            threading.Thread(target=buy, args=("tenant_a", territory_a.id)),
            threading.Thread(target=buy, args=("tenant_c", territory_c.id)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        winners = [o for o in outcomes.values() if not isinstance(o, ConflictError)]
        losers = [o for o in outcomes.values() if isinstance(o, ConflictError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert winners[0].area_km2 == pytest.approx(2.0, rel=1e-6)
        assert_overlap_free(service, session_factory)


class TestCommitRecheck:
    def test_overlap_on_recheck_is_retried(self, service, territory_a, competitor_at_recheck):
        result = service.reserve(territory_a.id, 1, "tenant_a", "a-1")

        assert competitor_at_recheck["calls"] == 2
        assert result.area_km2 == pytest.approx(4.0, rel=1e-6)
        assert [s.id for s in service.holdings("tenant_a")] == [result.reservation_id]

    def test_persistent_overlap_becomes_conflict(
        self, service, session_factory, territory_a, competitor_at_recheck
    ):
        competitor_at_recheck["inject"] = 10

        with pytest.raises(ConflictError) as exc_info:
            service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        assert exc_info.value.code == "allocation.conflict"
        assert exc_info.value.meta["attempts"] == 2
        assert competitor_at_recheck["calls"] == 2
        assert blocking_geometries(service, session_factory) == []

    def test_not_subset_is_not_retried(self, service, monkeypatch, territory_a):
        calls = []

        def covers(container, geometry):
            calls.append(geometry)
            return False

        monkeypatch.setattr(service.geometry, "covers", covers)
        with pytest.raises(InvariantViolation) as exc_info:
            service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        assert exc_info.value.code == "allocation.not_subset"
        assert len(calls) == 1


# =============================================================================
# EXPAND / REDRAW
# =============================================================================


class TestExpandAndRedraw:
    def test_expand_after_neighbour_released(
        self, service, lifecycle, b_holds_left_half, territory_a
    ):
        held = service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        confirm(lifecycle, held.reservation_id)
        lifecycle.cancel(b_holds_left_half.reservation_id, "tenant_b", policy=CancelPolicy.IMMEDIATE)

        expanded = service.expand(territory_a.id, 1, "tenant_a")
        assert expanded.reservation_id == held.reservation_id
        assert expanded.area_km2 == pytest.approx(4.0, rel=1e-6)
        assert expanded.monthly_price == Decimal("60.00")
        assert expanded.status == SponsorshipStatus.ACTIVE

    def test_expand_without_gain(self, service, territory_a):
        service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        with pytest.raises(PolicyError) as exc_info:
            service.expand(territory_a.id, 1, "tenant_a")
        assert exc_info.value.code == "sponsorship.no_additional_area"

    def test_expand_without_holding(self, service, territory_a):
        with pytest.raises(PolicyError) as exc_info:
            service.expand(territory_a.id, 1, "tenant_a")
        assert exc_info.value.code == "sponsorship.not_held"

    def test_redraw_bumps_version_and_keeps_reservations(self, service, territory_a):
        held = service.reserve(territory_a.id, 1, "tenant_a", "a-1")
        redrawn = service.redraw_territory(territory_a.id, "tenant_a", rect_km(0, 0, 3, 2))

        assert redrawn.version == 2
        [holding] = service.holdings("tenant_a")
        assert holding.area_km2 == pytest.approx(held.area_km2)
        assert holding.territory_version == 1

        expanded = service.expand(territory_a.id, 1, "tenant_a")
        assert expanded.area_km2 == pytest.approx(6.0, rel=1e-6)


# =============================================================================
# TERRITORY INPUT
# =============================================================================


class TestTerritoryInput:
    def test_bowtie_rejected(self, service):
        bowtie = {"type": "Polygon", "coordinates": [[[0, 0], [0.01, 0.01], [0.01, 0], [0, 0.01], [0, 0]]]}
        with pytest.raises(ValidationError) as exc_info:
            service.create_territory("tenant_a", bowtie)
        assert exc_info.value.code == "geometry.invalid"
        assert "self_intersection" in exc_info.value.meta["reasons"]

    def test_non_polygon_rejected_by_contract(self, service):
        with pytest.raises(ValidationError) as exc_info:
            service.create_territory("tenant_a", {"type": "Point", "coordinates": [0, 0]})
        assert exc_info.value.code == "request.schema_violation"

    def test_fixes_are_recorded(self, service):
        ring = rect_km(0, 0, 1, 1)["coordinates"][0][:-1]
        territory = service.create_territory(
            "tenant_a", {"type": "Polygon", "coordinates": [list(reversed(ring))]}
        )
        assert "closed_ring" in territory.normalization_fixes
        assert "reoriented" in territory.normalization_fixes

    def test_get_territory(self, service, territory_a):
        loaded = service.get_territory(territory_a.id, "tenant_a")
        assert loaded.name == "A area"
        with pytest.raises(NotFoundError):
            service.get_territory("ter_missing", "tenant_a")
