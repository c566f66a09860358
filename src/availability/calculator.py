"""
AvailabilityCalculator — покупаемый остаток территории

    remainder = difference(territory, competing blocking reservations of slot)

Read-only, без side effects: безопасно вызывать сколько угодно раз и
конкурентно (live preview при рисовании). Результат ADVISORY — commit
никогда не опирается на него, AllocationTransaction пересчитывает остаток
внутри своей транзакции.

Исключение собственной резервации: резервации арендатора exclude_tenant_id,
вырезанные из той же территории exclude_territory_id, не считаются
конкурентами — продление / перерасчёт своего владения не блокируется
самим собой.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Sequence

from shapely.strtree import STRtree

from src.core.geometry import Geometry, GeometryEngine
from src.core.math.numerical_safeguards import is_negligible_area


class CompetingReservationSource(Protocol):
    """Источник геометрий блокирующих резерваций (репозиторий)."""

    def competing_geometries(
        self,
        slot: int,
        bbox: tuple[float, float, float, float],
        now: datetime,
        exclude_tenant_id: str | None = None,
        exclude_territory_id: str | None = None,
    ) -> list[Geometry]:
        ...


@dataclass(frozen=True)
class AvailabilityResult:
    """Результат расчёта остатка."""

    remainder: Geometry
    area_km2: float
    sold_out: bool
    taken: Geometry  # часть территории под конкурентами

    # Диагностика
    territory_area_km2: float
    competing_count: int  # после bbox-префильтра источника
    intersecting_count: int  # реально пересекающие территорию


class AvailabilityCalculator:
    """Расчёт остатка поверх GeometryEngine."""

    def __init__(self, geometry_engine: GeometryEngine | None = None):
        self.geometry = geometry_engine or GeometryEngine()

    def compute(
        self,
        territory_geometry: Geometry,
        slot: int,
        source: CompetingReservationSource,
        now: datetime,
        exclude_tenant_id: str | None = None,
        exclude_territory_id: str | None = None,
    ) -> AvailabilityResult:
        """
        Остаток территории для слота против текущего состояния source.

        Args:
            territory_geometry: геометрия территории (нормализованная)
            slot: слот
            source: источник блокирующих резерваций (в транзакции или нет)
            now: момент оценки (истёкшие provisional holds не блокируют)
            exclude_tenant_id: арендатор-запросчик
            exclude_territory_id: территория, чья собственная резервация исключается
        """
        if territory_geometry.is_empty:
            return self._sold_out(
                territory_area_km2=0.0,
                taken=Geometry.empty(),
                competing_count=0,
                intersecting_count=0,
            )

        competing = source.competing_geometries(
            slot=slot,
            bbox=territory_geometry.bounds,
            now=now,
            exclude_tenant_id=exclude_tenant_id,
            exclude_territory_id=exclude_territory_id,
        )
        return self.compute_against(territory_geometry, competing)

    def compute_against(
        self,
        territory_geometry: Geometry,
        competing: Sequence[Geometry],
    ) -> AvailabilityResult:
        """Остаток против явно заданного набора конкурентов (pure)."""
        territory_area = self.geometry.area(territory_geometry)
        if territory_geometry.is_empty:
            return self._sold_out(territory_area, Geometry.empty(), len(competing), 0)

        candidates = _intersecting_candidates(territory_geometry, competing)
        remainder = self.geometry.difference(territory_geometry, candidates)
        area = self.geometry.area(remainder)
        taken = self._taken(territory_geometry, candidates)

        if is_negligible_area(area, self.geometry.area_eps_km2):
            return self._sold_out(territory_area, taken, len(competing), len(candidates))

        return AvailabilityResult(
            remainder=remainder,
            area_km2=area,
            sold_out=False,
            taken=taken,
            territory_area_km2=territory_area,
            competing_count=len(competing),
            intersecting_count=len(candidates),
        )

    def _taken(self, territory: Geometry, candidates: Sequence[Geometry]) -> Geometry:
        if not candidates:
            return Geometry.empty()
        return self.geometry.intersection(territory, self.geometry.union(candidates))

    def _sold_out(
        self,
        territory_area_km2: float,
        taken: Geometry,
        competing_count: int,
        intersecting_count: int,
    ) -> AvailabilityResult:
        return AvailabilityResult(
            remainder=Geometry.empty(),
            area_km2=0.0,
            sold_out=True,
            taken=taken,
            territory_area_km2=territory_area_km2,
            competing_count=competing_count,
            intersecting_count=intersecting_count,
        )


def _intersecting_candidates(
    territory: Geometry, competing: Sequence[Geometry]
) -> list[Geometry]:
    """STRtree-префильтр: только конкуренты, реально пересекающие территорию."""
    present = [g for g in competing if not g.is_empty]
    if not present:
        return []

    tree = STRtree([g.shape for g in present])

    resolved = []
    for index in tree.query(territory.shape):
        geometry = present[int(index)]
        if geometry.shape.intersects(territory.shape):
            resolved.append(geometry)
    return resolved
