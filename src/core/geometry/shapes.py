"""
Geometry — tagged variant {Polygon, MultiPolygon, Empty}

Immutable обёртка над shapely-геометрией. Форма определяется явным
тегом `kind`, а не по типу загруженных полей: каждая операция
GeometryEngine разбирает все три варианта.

Инварианты варианта:
- POLYGON      → shape is shapely Polygon, не пустой
- MULTIPOLYGON → shape is shapely MultiPolygon, >= 2 частей
- EMPTY        → shape is None
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from shapely.geometry import GeometryCollection, MultiPolygon, Polygon, mapping
from shapely.geometry.base import BaseGeometry


class GeometryKind(str, Enum):
    """Тег варианта геометрии (значения совпадают с GeoJSON type)."""

    POLYGON = "Polygon"
    MULTIPOLYGON = "MultiPolygon"
    EMPTY = "Empty"


@dataclass(frozen=True)
class Geometry:
    """
    Полигональная геометрия в координатах lon/lat.

    Attributes:
        kind: тег варианта
        shape: shapely Polygon / MultiPolygon, None для EMPTY
    """

    kind: GeometryKind
    shape: BaseGeometry | None = None

    def __post_init__(self):
        if self.kind == GeometryKind.EMPTY:
            if self.shape is not None:
                raise ValueError("EMPTY geometry must not carry a shape")
        elif self.kind == GeometryKind.POLYGON:
            if not isinstance(self.shape, Polygon) or self.shape.is_empty:
                raise ValueError("POLYGON geometry requires a non-empty shapely Polygon")
        elif self.kind == GeometryKind.MULTIPOLYGON:
            if not isinstance(self.shape, MultiPolygon) or len(self.shape.geoms) < 2:
                raise ValueError("MULTIPOLYGON geometry requires a MultiPolygon with >= 2 parts")
        else:
            raise ValueError(f"Unknown geometry kind: {self.kind}")

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def empty(cls) -> "Geometry":
        return cls(kind=GeometryKind.EMPTY)

    @classmethod
    def from_polygons(cls, polygons: list[Polygon]) -> "Geometry":
        """Сборка варианта из списка частей (пустые части отбрасываются)."""
        parts = [p for p in polygons if p is not None and not p.is_empty]
        if not parts:
            return cls.empty()
        if len(parts) == 1:
            return cls(kind=GeometryKind.POLYGON, shape=parts[0])
        return cls(kind=GeometryKind.MULTIPOLYGON, shape=MultiPolygon(parts))

    @classmethod
    def from_shape(cls, shape: BaseGeometry | None) -> "Geometry":
        """
        Сборка варианта из результата shapely-операции.

        Результат clipping может оказаться GeometryCollection с вырожденными
        LineString/Point частями — остаются только полигональные части.
        """
        return cls.from_polygons(polygonal_parts(shape))

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def is_empty(self) -> bool:
        return self.kind == GeometryKind.EMPTY

    def polygons(self) -> list[Polygon]:
        """Части геометрии как список shapely Polygon."""
        if self.kind == GeometryKind.EMPTY:
            return []
        if self.kind == GeometryKind.POLYGON:
            return [self.shape]
        if self.kind == GeometryKind.MULTIPOLYGON:
            return list(self.shape.geoms)
        raise ValueError(f"Unknown geometry kind: {self.kind}")

    @property
    def bounds(self) -> tuple[float, float, float, float] | None:
        """(min_lon, min_lat, max_lon, max_lat), None для EMPTY."""
        if self.kind == GeometryKind.EMPTY:
            return None
        return tuple(self.shape.bounds)

    def to_geojson(self) -> dict[str, Any] | None:
        """
        GeoJSON mapping (списки, не tuples). EMPTY → None.
        """
        if self.kind == GeometryKind.EMPTY:
            return None
        return _listify(mapping(self.shape))


def polygonal_parts(shape: BaseGeometry | None) -> list[Polygon]:
    """Рекурсивно извлекает непустые Polygon из любой shapely-геометрии."""
    if shape is None or shape.is_empty:
        return []
    if isinstance(shape, Polygon):
        return [shape]
    if isinstance(shape, (MultiPolygon, GeometryCollection)):
        parts: list[Polygon] = []
        for geom in shape.geoms:
            parts.extend(polygonal_parts(geom))
        return parts
    # LineString / Point: вырожденные остатки clipping
    return []


def _listify(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _listify(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_listify(v) for v in value]
    return value
