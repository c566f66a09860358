"""
Тесты для модуля Numerical Safeguards

Проверяет:
1. NaN/Inf проверки и диапазоны координат
2. Epsilon-сравнение вершин
3. Порог пренебрежимой площади
4. Валидацию параметров
"""

import math

import pytest

from src.core.math.numerical_safeguards import (
    AREA_EPS_KM2,
    COORD_EPS_DEG,
    is_negligible_area,
    is_valid_float,
    is_valid_lon_lat,
    points_equal,
    validate_non_negative,
)


# =============================================================================
# NaN/Inf
# =============================================================================


class TestFloatValidity:
    def test_finite_values_are_valid(self):
        assert is_valid_float(0.0)
        assert is_valid_float(-1e300)

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_values_are_invalid(self, value):
        assert not is_valid_float(value)


class TestLonLat:
    def test_range_bounds_inclusive(self):
        assert is_valid_lon_lat(180.0, 90.0)
        assert is_valid_lon_lat(-180.0, -90.0)

    def test_out_of_range(self):
        assert not is_valid_lon_lat(180.0001, 0.0)
        assert not is_valid_lon_lat(0.0, -90.5)

    def test_nan_coordinate(self):
        assert not is_valid_lon_lat(math.nan, 0.0)


# =============================================================================
# СРАВНЕНИЯ
# =============================================================================


class TestComparisons:
    def test_points_equal_within_tolerance(self):
        assert points_equal((10.0, 20.0), (10.0 + COORD_EPS_DEG / 2, 20.0))
        assert not points_equal((10.0, 20.0), (10.0, 20.0 + 1e-9))


class TestNegligibleArea:
    def test_zero_and_tiny_are_negligible(self):
        assert is_negligible_area(0.0)
        assert is_negligible_area(AREA_EPS_KM2)
        assert is_negligible_area(AREA_EPS_KM2 / 10)

    def test_real_area_is_not_negligible(self):
        assert not is_negligible_area(2.0)
        assert not is_negligible_area(AREA_EPS_KM2 * 10)

    def test_nan_is_treated_as_empty(self):
        assert is_negligible_area(float("nan"))

    def test_custom_epsilon(self):
        assert is_negligible_area(0.5, eps=1.0)
        assert not is_negligible_area(0.5, eps=0.1)


# =============================================================================
# ВАЛИДАЦИЯ
# =============================================================================


class TestValidation:
    def test_validate_non_negative(self):
        validate_non_negative(0.0, "area_km2")
        with pytest.raises(ValueError, match="area_km2 must be non-negative"):
            validate_non_negative(-0.1, "area_km2")
        with pytest.raises(ValueError, match="not NaN/Inf"):
            validate_non_negative(float("nan"), "area_km2")
