"""
Numerical Safeguards — epsilon-примитивы для площадей и координат

Модуль обеспечивает численную устойчивость геометрических расчётов:
- Epsilon-пороги для площадей (km²), ниже которых остаток считается пустым
- NaN/Inf проверки координат до того, как они попадут в polygon clipping
- Epsilon-сравнения вершин и площадей

КРИТИЧЕСКИЕ ИНВАРИАНТЫ:
1. Площадь <= AREA_EPS_KM2 трактуется как ноль ("sold out"), а не как sliver
2. NaN/Inf никогда не попадают в геометрию (валидация fail-fast)
3. Все операции детерминированы и воспроизводимы
"""

import math
from typing import Final

# =============================================================================
# EPSILON-ПАРАМЕТРЫ
# =============================================================================

# Порог площади (km²): остаток меньше порога считается пустым.
# 1e-6 km² = 1 m², на порядки выше шума polygon clipping на lon/lat.
AREA_EPS_KM2: Final[float] = 1e-6

# Epsilon для сравнения координат (градусы)
COORD_EPS_DEG: Final[float] = 1e-12

# Допустимые диапазоны WGS84
LON_MIN: Final[float] = -180.0
LON_MAX: Final[float] = 180.0
LAT_MIN: Final[float] = -90.0
LAT_MAX: Final[float] = 90.0


# =============================================================================
# NaN/Inf ПРОВЕРКИ
# =============================================================================


def is_valid_float(value: float) -> bool:
    """
    Проверка, является ли float валидным (не NaN, не Inf).

    Args:
        value: Проверяемое значение

    Returns:
        True если значение finite
    """
    return math.isfinite(value)


def is_valid_lon_lat(lon: float, lat: float) -> bool:
    """Координата finite и лежит в диапазоне WGS84."""
    if not (is_valid_float(lon) and is_valid_float(lat)):
        return False
    return LON_MIN <= lon <= LON_MAX and LAT_MIN <= lat <= LAT_MAX


# =============================================================================
# EPSILON-ПОРОГИ
# =============================================================================


def points_equal(
    a: tuple[float, float], b: tuple[float, float], tol: float = COORD_EPS_DEG
) -> bool:
    """Совпадение двух вершин до COORD_EPS_DEG по каждой оси."""
    return abs(a[0] - b[0]) <= tol and abs(a[1] - b[1]) <= tol


def is_negligible_area(area_km2: float, eps: float = AREA_EPS_KM2) -> bool:
    """
    Площадь пренебрежимо мала (пустой остаток).

    NaN трактуется как пустая площадь: невалидный результат нельзя продать.

    Examples:
        >>> is_negligible_area(0.0)
        True
        >>> is_negligible_area(5e-7)
        True
        >>> is_negligible_area(2.0)
        False
    """
    if not is_valid_float(area_km2):
        return True
    return area_km2 <= eps


# =============================================================================
# ВАЛИДАЦИЯ
# =============================================================================


def validate_non_negative(value: float, name: str) -> None:
    """
    Валидация, что значение неотрицательное.

    Raises:
        ValueError: Если value < 0 или NaN/Inf
    """
    if not is_valid_float(value):
        raise ValueError(f"{name} must be a valid float (not NaN/Inf), got {value}")

    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
