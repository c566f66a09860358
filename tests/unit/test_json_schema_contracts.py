"""
Tests for JSON Schema Contract Validators

- Валидность самих схем
- Валидация правильных данных
- Детекция нарушений required полей и типов
- Детекция нарушений constraints (min/enum/format)
"""

import pytest
from jsonschema import ValidationError

from src.core.contracts import (
    PaymentEventValidator,
    PreviewRequestValidator,
    ReserveRequestValidator,
    SchemaLoader,
    TerritoryGeometryValidator,
    validate_payment_event,
    validate_reserve_request,
    validate_territory_geometry,
)
from tests.conftest import rect_km


# =============================================================================
# FIXTURES - VALID DATA SAMPLES
# =============================================================================


@pytest.fixture
def valid_reserve_request():
    return {
        "territory_id": "ter_1",
        "slot": 1,
        "tenant_id": "tenant_a",
        "idempotency_key": "checkout-42",
    }


@pytest.fixture
def valid_payment_event():
    return {
        "event_id": "evt_1",
        "kind": "payment_succeeded",
        "sponsorship_id": "spn_1",
        "occurred_at": "2026-03-01T12:00:00Z",
        "amount_minor": 3000,
        "currency": "GBP",
    }


# =============================================================================
# SCHEMA LOADER
# =============================================================================


def test_schema_loader_loads_all_schemas():
    loader = SchemaLoader()
    for name in ("territory_geometry", "preview_request", "reserve_request", "payment_event"):
        schema = loader.load_schema(name)
        assert schema["$schema"].startswith("https://json-schema.org/draft/2020-12")


def test_schema_loader_caches_schemas():
    loader = SchemaLoader()
    assert loader.load_schema("reserve_request") is loader.load_schema("reserve_request")


def test_schema_loader_raises_on_missing_schema():
    with pytest.raises(FileNotFoundError):
        SchemaLoader().load_schema("does_not_exist")


# =============================================================================
# TERRITORY GEOMETRY
# =============================================================================


def test_territory_geometry_accepts_polygon():
    validate_territory_geometry(rect_km(0, 0, 1, 1))


def test_territory_geometry_accepts_multipolygon_and_feature():
    validator = TerritoryGeometryValidator()
    multi = {
        "type": "MultiPolygon",
        "coordinates": [rect_km(0, 0, 1, 1)["coordinates"], rect_km(3, 0, 1, 1)["coordinates"]],
    }
    assert validator.is_valid(multi)
    assert validator.is_valid({"type": "Feature", "properties": {}, "geometry": rect_km(0, 0, 1, 1)})


def test_territory_geometry_rejects_point():
    with pytest.raises(ValidationError):
        validate_territory_geometry({"type": "Point", "coordinates": [0, 0]})


def test_territory_geometry_rejects_out_of_range_longitude():
    bad = {"type": "Polygon", "coordinates": [[[0, 0], [200, 0], [200, 1], [0, 0]]]}
    assert not TerritoryGeometryValidator().is_valid(bad)


def test_territory_geometry_rejects_short_ring():
    bad = {"type": "Polygon", "coordinates": [[[0, 0], [1, 1]]]}
    assert not TerritoryGeometryValidator().is_valid(bad)


# =============================================================================
# REQUESTS
# =============================================================================


def test_reserve_request_accepts_valid_data(valid_reserve_request):
    validate_reserve_request(valid_reserve_request)


def test_reserve_request_rejects_missing_idempotency_key(valid_reserve_request):
    del valid_reserve_request["idempotency_key"]
    messages = ReserveRequestValidator().error_messages(valid_reserve_request)
    assert any("idempotency_key" in m for m in messages)


def test_reserve_request_rejects_slot_zero(valid_reserve_request):
    valid_reserve_request["slot"] = 0
    assert not ReserveRequestValidator().is_valid(valid_reserve_request)


def test_preview_request_rejects_extra_fields():
    request = {"territory_id": "t", "slot": 1, "tenant_id": "a", "geometry": {}}
    assert not PreviewRequestValidator().is_valid(request)


def test_preview_request_rejects_string_slot():
    request = {"territory_id": "t", "slot": "1", "tenant_id": "a"}
    messages = PreviewRequestValidator().error_messages(request)
    assert messages and messages[0].startswith("slot:")


# =============================================================================
# PAYMENT EVENTS
# =============================================================================


def test_payment_event_accepts_valid_data(valid_payment_event):
    validate_payment_event(valid_payment_event)


def test_payment_event_accepts_null_optional_fields(valid_payment_event):
    valid_payment_event["amount_minor"] = None
    valid_payment_event["currency"] = None
    assert PaymentEventValidator().is_valid(valid_payment_event)


def test_payment_event_rejects_unknown_kind(valid_payment_event):
    valid_payment_event["kind"] = "refund_issued"
    assert not PaymentEventValidator().is_valid(valid_payment_event)


def test_payment_event_rejects_negative_amount(valid_payment_event):
    valid_payment_event["amount_minor"] = -1
    assert not PaymentEventValidator().is_valid(valid_payment_event)
