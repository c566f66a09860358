"""Тесты Settings: значения по умолчанию, env overrides, PricingPolicy."""

from datetime import timedelta
from decimal import Decimal

import pytest

from src.config import Settings
from src.lifecycle import LifecycleConfig


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.slot_count == 3
        assert settings.currency == "GBP"
        assert settings.area_epsilon_km2 == 1e-6
        assert settings.cancel_policy == "period_end"
        assert settings.renewal_grace_hours == 72

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("SLOT_COUNT", "1")
        monkeypatch.setenv("PROVISIONAL_HOLD_MINUTES", "5")
        settings = Settings(_env_file=None)
        assert settings.slot_count == 1
        assert settings.provisional_hold_minutes == 5

    def test_renewal_grace_reaches_lifecycle_config(self, monkeypatch):
        monkeypatch.setenv("RENEWAL_GRACE_HOURS", "24")
        config = LifecycleConfig.from_settings(Settings(_env_file=None))
        assert config.renewal_grace == timedelta(hours=24)

    def test_invalid_cancel_policy(self):
        with pytest.raises(ValueError):
            Settings(_env_file=None, cancel_policy="whenever")


class TestPricingPolicyFromSettings:
    def test_uniform_rates(self):
        policy = Settings(_env_file=None).pricing_policy()
        assert policy.slot_ids == (1, 2, 3)
        assert [s.label for s in policy.slots] == ["Gold", "Silver", "Bronze"]
        assert all(s.rate_per_km2 == Decimal("15") for s in policy.slots)
        assert all(s.floor_price == Decimal("1.00") for s in policy.slots)

    def test_per_tier_override(self):
        settings = Settings(
            _env_file=None,
            rate_silver_per_km2_per_month=Decimal("9"),
            min_bronze_price_per_month=Decimal("2.50"),
        )
        policy = settings.pricing_policy()
        assert policy.for_slot(2).rate_per_km2 == Decimal("9")
        assert policy.for_slot(3).floor_price == Decimal("2.50")
        assert policy.for_slot(1).rate_per_km2 == Decimal("15")

    def test_slots_beyond_three_get_generic_label(self):
        policy = Settings(_env_file=None, slot_count=5).pricing_policy()
        assert policy.for_slot(5).label == "Tier 5"
