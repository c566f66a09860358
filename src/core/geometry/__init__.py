"""
Geometry Layer

Pure polygon set algebra на lon/lat: tagged variant Geometry и
GeometryEngine (площадь на сфере, difference, валидация, нормализация).
Без состояния, без I/O.
"""

from src.core.geometry.engine import (
    FIX_CLOSED_RING,
    FIX_REMOVED_DUPLICATES,
    FIX_REORIENTED,
    GeometryEngine,
    InvalidGeometry,
    NormalizedGeometry,
)
from src.core.geometry.shapes import Geometry, GeometryKind, polygonal_parts

__all__ = [
    "Geometry",
    "GeometryKind",
    "GeometryEngine",
    "InvalidGeometry",
    "NormalizedGeometry",
    "polygonal_parts",
    "FIX_CLOSED_RING",
    "FIX_REMOVED_DUPLICATES",
    "FIX_REORIENTED",
]
