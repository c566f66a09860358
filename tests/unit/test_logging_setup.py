"""Тесты конфигурации structlog."""

import json

import pytest
import structlog

from src.config import Settings
from src.core.logging_setup import configure_logging


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


def test_json_logging(capsys):
    configure_logging(Settings(_env_file=None, log_format="json", log_level="INFO"))
    structlog.get_logger("test").info("Reservation committed", reservation_id="spn_1")

    line = capsys.readouterr().out.strip().splitlines()[-1]
    payload = json.loads(line)
    assert payload["event"] == "Reservation committed"
    assert payload["reservation_id"] == "spn_1"
    assert payload["level"] == "info"
    assert "timestamp" in payload


def test_level_filtering(capsys):
    configure_logging(Settings(_env_file=None, log_format="json", log_level="WARNING"))
    structlog.get_logger("test").info("hidden")
    assert capsys.readouterr().out == ""
