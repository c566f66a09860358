"""Общие fixtures: геометрии в километрах, управляемые часы, SQLite база."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.allocation import TerritoryAllocationService
from src.config import Settings
from src.core.math.spherical import km_to_degrees
from src.lifecycle import LifecycleConfig, LifecycleService
from src.storage import create_db_engine, init_schema, make_session_factory


# =============================================================================
# GEOMETRY HELPERS
# =============================================================================


def rect_km(x_km: float, y_km: float, width_km: float, height_km: float) -> dict:
    """
    GeoJSON прямоугольник у экватора, смещения и размеры в км.

    У экватора 1° долготы ≈ 1° широты, поэтому площадь ≈ width * height.
    """
    x0, y0 = km_to_degrees(x_km), km_to_degrees(y_km)
    x1, y1 = km_to_degrees(x_km + width_km), km_to_degrees(y_km + height_km)
    return {
        "type": "Polygon",
        "coordinates": [[[x0, y0], [x1, y0], [x1, y1], [x0, y1], [x0, y0]]],
    }


@pytest.fixture
def square_2km():
    """Территория 2 км × 2 км (≈ 4 km²)."""
    return rect_km(0, 0, 2, 2)


@pytest.fixture
def left_half():
    return rect_km(0, 0, 1, 2)


@pytest.fixture
def right_half():
    return rect_km(1, 0, 1, 2)


# =============================================================================
# CLOCK
# =============================================================================


class FakeClock:
    """Часы, которые двигает тест."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'territory_engine.db'}",
        slot_count=3,
        currency="GBP",
        rate_per_km2_per_month=Decimal("15"),
        min_price_per_month=Decimal("1.00"),
        provisional_hold_minutes=30,
        cancel_policy="period_end",
    )


@pytest.fixture
def engine(settings):
    db_engine = create_db_engine(settings.database_url, echo=False)
    init_schema(db_engine, settings)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def service(session_factory, settings, clock):
    return TerritoryAllocationService(session_factory, settings=settings, clock=clock)


@pytest.fixture
def lifecycle(session_factory, settings, clock, service):
    return LifecycleService(
        session_factory,
        geometry_engine=service.geometry,
        config=LifecycleConfig.from_settings(settings),
        clock=clock,
    )
