"""
GeometryEngine — polygon set algebra и площади на сфере

Pure, stateless, без I/O. Все операции разбирают все три варианта
Geometry (POLYGON / MULTIPOLYGON / EMPTY).

Операции:
- area(geometry)                  → km² (сферический избыток, не planar)
- difference(target, subtrahends) → Geometry (может быть multi-part или EMPTY)
- is_valid / validation_errors    → проверка входной геометрии
- normalize(raw)                  → замыкание колец, удаление дублей, winding order
- intersection_area, covers, union

Политика epsilon: части результата с площадью <= area_eps_km2 отбрасываются.
Остаток из одних slivers — это EMPTY ("sold out"), а не микрополигон
на продажу.
"""

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import shapely
from shapely.errors import GEOSException
from shapely.geometry import Polygon, shape as shapely_shape
from shapely.geometry.polygon import orient
from shapely.validation import explain_validity

from src.core.geometry.shapes import Geometry, GeometryKind
from src.core.math.numerical_safeguards import (
    AREA_EPS_KM2,
    is_negligible_area,
    is_valid_float,
    is_valid_lon_lat,
    points_equal,
)
from src.core.math.spherical import polygon_area_km2

# Максимальный охват по долготе (градусы), шире считается пересечением антимеридиана
MAX_LON_SPAN_DEG = 180.0

# Коды исправлений normalize
FIX_CLOSED_RING = "closed_ring"
FIX_REMOVED_DUPLICATES = "removed_duplicate_vertices"
FIX_REORIENTED = "reoriented"


Ring = list[tuple[float, float]]


class InvalidGeometry(ValueError):
    """Входная геометрия отклонена. `reasons` — машинные коды причин."""

    def __init__(self, reasons: Sequence[str]):
        self.reasons = tuple(dict.fromkeys(reasons))
        super().__init__(f"Invalid geometry: {', '.join(self.reasons)}")


@dataclass(frozen=True)
class NormalizedGeometry:
    """Результат normalize: геометрия + явный список применённых исправлений."""

    geometry: Geometry
    fixes: tuple[str, ...] = field(default_factory=tuple)

    @property
    def was_modified(self) -> bool:
        return bool(self.fixes)


class GeometryEngine:
    """
    Polygon/multipolygon set algebra на lon/lat.

    Attributes:
        area_eps_km2: порог площади, ниже которого геометрия пуста
    """

    def __init__(self, area_eps_km2: float = AREA_EPS_KM2):
        if area_eps_km2 < 0:
            raise ValueError(f"area_eps_km2 must be non-negative, got {area_eps_km2}")
        self.area_eps_km2 = area_eps_km2

    # =========================================================================
    # AREA
    # =========================================================================

    def area(self, geometry: Geometry) -> float:
        """
        Площадь геометрии на сфере (km²).

        EMPTY → 0.0; MULTIPOLYGON → сумма частей (части не пересекаются).
        """
        if geometry.kind == GeometryKind.EMPTY:
            return 0.0
        if geometry.kind in (GeometryKind.POLYGON, GeometryKind.MULTIPOLYGON):
            return sum(_polygon_area(p) for p in geometry.polygons())
        raise ValueError(f"Unknown geometry kind: {geometry.kind}")

    def is_empty(self, geometry: Geometry) -> bool:
        """Геометрия пуста с учётом epsilon."""
        return is_negligible_area(self.area(geometry), self.area_eps_km2)

    # =========================================================================
    # SET ALGEBRA
    # =========================================================================

    def difference(self, target: Geometry, subtrahends: Sequence[Geometry]) -> Geometry:
        """
        target минус объединение subtrahends.

        Returns:
            POLYGON / MULTIPOLYGON / EMPTY; части <= epsilon отброшены
        """
        if target.kind == GeometryKind.EMPTY:
            return Geometry.empty()
        if target.kind not in (GeometryKind.POLYGON, GeometryKind.MULTIPOLYGON):
            raise ValueError(f"Unknown geometry kind: {target.kind}")

        blockers = [s.shape for s in subtrahends if _has_shape(s)]
        if not blockers:
            return self._drop_slivers(target)

        blocker = _safe_union(blockers)
        try:
            result = target.shape.difference(blocker)
        except GEOSException:
            result = shapely.make_valid(target.shape).difference(shapely.make_valid(blocker))

        return self._drop_slivers(Geometry.from_shape(result))

    def union(self, geometries: Sequence[Geometry]) -> Geometry:
        """Объединение геометрий (EMPTY игнорируются)."""
        shapes = [g.shape for g in geometries if _has_shape(g)]
        if not shapes:
            return Geometry.empty()
        return self._drop_slivers(Geometry.from_shape(_safe_union(shapes)))

    def intersection(self, a: Geometry, b: Geometry) -> Geometry:
        if not (_has_shape(a) and _has_shape(b)):
            return Geometry.empty()
        return Geometry.from_shape(a.shape.intersection(b.shape))

    def intersection_area(self, a: Geometry, b: Geometry) -> float:
        """Площадь пересечения (km²). Для проверки инварианта non-overlap."""
        return self.area(self.intersection(a, b))

    def covers(self, outer: Geometry, inner: Geometry) -> bool:
        """
        inner ⊆ outer с точностью до epsilon: area(inner - outer) <= eps.
        """
        if inner.kind == GeometryKind.EMPTY:
            return True
        if outer.kind == GeometryKind.EMPTY:
            return self.is_empty(inner)
        leftover = self.difference(inner, [outer])
        return is_negligible_area(self.area(leftover), self.area_eps_km2)

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def parse(self, raw: Any, auto_close: bool = True) -> NormalizedGeometry:
        """
        Валидация + нормализация входного GeoJSON (Polygon / MultiPolygon /
        Feature с такой геометрией).

        Args:
            raw: GeoJSON mapping
            auto_close: замыкать незамкнутые кольца (исправление попадает
                в NormalizedGeometry.fixes); False → незамкнутое кольцо
                отклоняется

        Raises:
            InvalidGeometry: с кодами причин
        """
        polygons = _extract_rings(raw)

        reasons: list[str] = []
        for rings in polygons:
            for ring in rings:
                reasons.extend(_ring_errors(ring, require_closed=not auto_close))
        if reasons:
            raise InvalidGeometry(reasons)

        normalized = self._normalize_rings(polygons)

        shape_reasons = self.shape_errors(normalized.geometry)
        if shape_reasons:
            raise InvalidGeometry(shape_reasons)

        return normalized

    def validation_errors(self, raw: Any, require_closed: bool = True) -> list[str]:
        """Коды причин отклонения ([] для валидной геометрии)."""
        try:
            self.parse(raw, auto_close=not require_closed)
        except InvalidGeometry as exc:
            return list(exc.reasons)
        return []

    def is_valid(self, geometry: Geometry | Mapping[str, Any]) -> bool:
        """
        Геометрия пригодна для продажи.

        Geometry проверяется топологически; сырой GeoJSON — полностью,
        включая требование замкнутых колец.
        """
        if isinstance(geometry, Geometry):
            return not self.shape_errors(geometry)
        return not self.validation_errors(geometry, require_closed=True)

    def shape_errors(self, geometry: Geometry) -> list[str]:
        """Топологические проверки уже построенной геометрии."""
        if geometry.kind == GeometryKind.EMPTY:
            return ["empty_geometry"]
        if geometry.kind not in (GeometryKind.POLYGON, GeometryKind.MULTIPOLYGON):
            raise ValueError(f"Unknown geometry kind: {geometry.kind}")

        reasons: list[str] = []
        if not geometry.shape.is_valid:
            explanation = explain_validity(geometry.shape)
            if "Self-intersection" in explanation:
                reasons.append("self_intersection")
            elif "Too few points" in explanation:
                reasons.append("too_few_vertices")
            else:
                reasons.append("invalid_topology")

        min_lon, _, max_lon, _ = geometry.bounds
        if max_lon - min_lon > MAX_LON_SPAN_DEG:
            reasons.append("antimeridian_unsupported")

        if not reasons and self.is_empty(geometry):
            reasons.append("degenerate_area")

        return reasons

    # =========================================================================
    # NORMALIZATION
    # =========================================================================

    def normalize(self, raw: Any) -> NormalizedGeometry:
        """
        Замыкание колец, удаление повторяющихся вершин, winding order
        (exterior CCW, holes CW). Топологию не проверяет — см. parse.

        Raises:
            InvalidGeometry: если структура не разбирается или у кольца
                меньше 3 различных вершин
        """
        return self._normalize_rings(_extract_rings(raw))

    def from_geojson(self, raw: Mapping[str, Any] | None) -> Geometry:
        """
        Загрузка уже нормализованной (персистентной) геометрии.
        None → EMPTY.
        """
        if raw is None:
            return Geometry.empty()
        return Geometry.from_shape(shapely_shape(raw))

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _normalize_rings(self, polygons: list[list[Ring]]) -> NormalizedGeometry:
        fixes: list[str] = []
        shapes: list[Polygon] = []

        for rings in polygons:
            cleaned: list[Ring] = []
            for ring in rings:
                deduped = _dedupe_consecutive(ring)
                if len(deduped) != len(ring):
                    fixes.append(FIX_REMOVED_DUPLICATES)
                if not points_equal(deduped[0], deduped[-1]):
                    deduped = deduped + [deduped[0]]
                    fixes.append(FIX_CLOSED_RING)
                else:
                    deduped[-1] = deduped[0]
                if len(deduped) < 4:
                    raise InvalidGeometry(["too_few_vertices"])
                cleaned.append(deduped)

            polygon = Polygon(cleaned[0], cleaned[1:])
            oriented = orient(polygon, sign=1.0)
            if _ring_order_changed(polygon, oriented):
                fixes.append(FIX_REORIENTED)
            shapes.append(oriented)

        return NormalizedGeometry(
            geometry=Geometry.from_polygons(shapes),
            fixes=tuple(dict.fromkeys(fixes)),
        )

    def _drop_slivers(self, geometry: Geometry) -> Geometry:
        if geometry.kind == GeometryKind.EMPTY:
            return geometry
        kept = [
            p for p in geometry.polygons()
            if not is_negligible_area(_polygon_area(p), self.area_eps_km2)
        ]
        return Geometry.from_polygons(kept)


# =============================================================================
# MODULE HELPERS
# =============================================================================


def _has_shape(geometry: Geometry) -> bool:
    if geometry.kind == GeometryKind.EMPTY:
        return False
    if geometry.kind in (GeometryKind.POLYGON, GeometryKind.MULTIPOLYGON):
        return True
    raise ValueError(f"Unknown geometry kind: {geometry.kind}")


def _polygon_area(polygon: Polygon) -> float:
    return polygon_area_km2(
        list(polygon.exterior.coords),
        [list(interior.coords) for interior in polygon.interiors],
    )


def _safe_union(shapes: list):
    try:
        return shapely.union_all(shapes)
    except GEOSException:
        return shapely.union_all([shapely.make_valid(s) for s in shapes])


def _extract_rings(raw: Any) -> list[list[Ring]]:
    """GeoJSON → список полигонов, каждый — список колец (exterior первым)."""
    if not isinstance(raw, Mapping):
        raise InvalidGeometry(["not_a_geojson_object"])

    geom_type = raw.get("type")
    if geom_type == "Feature":
        return _extract_rings(raw.get("geometry"))

    coordinates = raw.get("coordinates")
    if geom_type == "Polygon":
        polygons_raw = [coordinates]
    elif geom_type == "MultiPolygon":
        polygons_raw = coordinates
    else:
        raise InvalidGeometry(["unsupported_geometry_type"])

    if not isinstance(polygons_raw, list) or not polygons_raw:
        raise InvalidGeometry(["missing_coordinates"])

    polygons: list[list[Ring]] = []
    for rings_raw in polygons_raw:
        if not isinstance(rings_raw, list) or not rings_raw:
            raise InvalidGeometry(["missing_coordinates"])
        rings: list[Ring] = []
        for ring_raw in rings_raw:
            if not isinstance(ring_raw, list) or not ring_raw:
                raise InvalidGeometry(["missing_coordinates"])
            rings.append([_position(p) for p in ring_raw])
        polygons.append(rings)
    return polygons


def _position(raw: Any) -> tuple[float, float]:
    if not isinstance(raw, (list, tuple)) or len(raw) < 2:
        raise InvalidGeometry(["malformed_position"])
    lon, lat = raw[0], raw[1]
    for value in (lon, lat):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidGeometry(["malformed_position"])
    return float(lon), float(lat)


def _ring_errors(ring: Ring, require_closed: bool) -> list[str]:
    reasons: list[str] = []
    for lon, lat in ring:
        if not (is_valid_float(lon) and is_valid_float(lat)):
            reasons.append("non_finite_coordinate")
            return reasons
        if not is_valid_lon_lat(lon, lat):
            reasons.append("coordinate_out_of_range")
            return reasons

    if require_closed and not points_equal(ring[0], ring[-1]):
        reasons.append("unclosed_ring")

    distinct = set(ring)
    if len(distinct) < 3:
        reasons.append("too_few_vertices")
    return reasons


def _dedupe_consecutive(ring: Ring) -> Ring:
    result: Ring = []
    for point in ring:
        if result and points_equal(result[-1], point):
            continue
        result.append(point)
    return result


def _ring_order_changed(before: Polygon, after: Polygon) -> bool:
    if before.exterior.is_ccw != after.exterior.is_ccw:
        return True
    return any(
        b.is_ccw != a.is_ccw for b, a in zip(before.interiors, after.interiors)
    )
