"""
Spherical Area — площадь полигонов на сфере

Координаты — lon/lat (WGS84, градусы), поэтому planar shoelace неприменим.
Используется формула сферического избытка (Chamberlain & Duquette, 2007)
на сфере радиуса WGS84 equatorial radius:

    A = R² / 2 * Σ (λ[i+1] - λ[i-1]) * sin(φ[i])

Площадь полигона = |exterior| - Σ |holes|. Результат в km².
"""

import math
from typing import Final, Sequence

# Радиус сферы (метры)
EARTH_RADIUS_M: Final[float] = 6378137.0

M2_PER_KM2: Final[float] = 1_000_000.0

# Длина одного градуса дуги большого круга на этой сфере (km)
KM_PER_DEGREE: Final[float] = EARTH_RADIUS_M * math.pi / 180.0 / 1000.0


def ring_area_m2(coords: Sequence[Sequence[float]]) -> float:
    """
    Площадь кольца (m², со знаком по направлению обхода).

    Args:
        coords: вершины кольца (lon, lat); замкнутое кольцо допустимо,
            последняя вершина-дубликат не влияет на результат

    Returns:
        Площадь в m²; положительная для обхода по часовой стрелке
        в проекции (lon, lat), отрицательная для обратного.
        Для вырожденных колец (< 3 вершин) — 0.0
    """
    points = list(coords)
    if len(points) > 1 and tuple(points[0]) == tuple(points[-1]):
        points = points[:-1]

    n = len(points)
    if n < 3:
        return 0.0

    total = 0.0
    for i in range(n):
        lower = points[i - 1]
        middle = points[i]
        upper = points[(i + 1) % n]
        total += (math.radians(upper[0]) - math.radians(lower[0])) * math.sin(
            math.radians(middle[1])
        )

    return total * EARTH_RADIUS_M * EARTH_RADIUS_M / 2.0


def polygon_area_km2(
    exterior: Sequence[Sequence[float]],
    holes: Sequence[Sequence[Sequence[float]]] = (),
) -> float:
    """
    Площадь полигона с дырами (km², всегда неотрицательная).

    Examples:
        >>> side = 2.0 / KM_PER_DEGREE
        >>> round(polygon_area_km2([(0, 0), (side, 0), (side, side), (0, side)]), 3)
        4.0
    """
    area = abs(ring_area_m2(exterior))
    for hole in holes:
        area -= abs(ring_area_m2(hole))
    return max(area, 0.0) / M2_PER_KM2


def km_to_degrees(distance_km: float) -> float:
    """Длина дуги большого круга (km) → градусы."""
    return distance_km / KM_PER_DEGREE
