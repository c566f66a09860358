"""
Core math modules

Численные примитивы с гарантией стабильности: epsilon-защиты площадей,
денежное округление, площадь на сфере.
"""

# Numerical Safeguards
from src.core.math.numerical_safeguards import (
    # Epsilon constants
    AREA_EPS_KM2,
    COORD_EPS_DEG,
    # NaN/Inf
    is_valid_float,
    is_valid_lon_lat,
    # Epsilon comparisons
    is_negligible_area,
    points_equal,
    # Validation
    validate_non_negative,
)

# Money
from src.core.math.money import (
    CURRENCY_MINOR_DIGITS,
    minor_digits,
    quantize_money,
    to_decimal,
)

# Spherical area
from src.core.math.spherical import (
    EARTH_RADIUS_M,
    KM_PER_DEGREE,
    km_to_degrees,
    polygon_area_km2,
    ring_area_m2,
)

__all__ = [
    # Numerical Safeguards: Epsilon constants
    "AREA_EPS_KM2",
    "COORD_EPS_DEG",
    # Numerical Safeguards: NaN/Inf
    "is_valid_float",
    "is_valid_lon_lat",
    # Numerical Safeguards: Epsilon comparisons
    "is_negligible_area",
    "points_equal",
    # Numerical Safeguards: Validation
    "validate_non_negative",
    # Money
    "CURRENCY_MINOR_DIGITS",
    "minor_digits",
    "quantize_money",
    "to_decimal",
    # Spherical area
    "EARTH_RADIUS_M",
    "KM_PER_DEGREE",
    "km_to_degrees",
    "polygon_area_km2",
    "ring_area_m2",
]
