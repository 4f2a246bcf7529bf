"""Unit tests for metering_core.config."""

from __future__ import annotations

from decimal import Decimal

import pytest
from metering_core.config import DEFAULT_COMPUTE_WEIGHTS, MeteringEnv, Settings, load_settings
from pydantic import ValidationError


class TestSettingsDefaults:
    def test_default_env(self):
        assert Settings().env == MeteringEnv.DEV

    def test_default_database_url_is_local_sqlite(self):
        assert Settings().database_url.startswith("sqlite+aiosqlite")

    def test_default_rates(self):
        settings = Settings()
        assert settings.rate_traffic_gb == Decimal("0.10")
        assert settings.rate_storage_gb_month == Decimal("0.05")
        assert settings.rate_compute_unit == Decimal("0.001")

    def test_default_weights_are_a_copy(self):
        settings = Settings()
        settings.compute_weights["task_read"] = 99.0
        assert DEFAULT_COMPUTE_WEIGHTS["task_read"] == 0.5

    def test_default_retry_and_cooldown(self):
        settings = Settings()
        assert settings.aggregation_max_retries == 5
        assert settings.alert_cooldown_seconds == 3600
        assert settings.allow_pay_from_draft is False


class TestSettingsFromEnvironment:
    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("METERING_RATE_TRAFFIC_GB", "0.25")
        monkeypatch.setenv("METERING_ALLOW_PAY_FROM_DRAFT", "true")
        settings = Settings()
        assert settings.rate_traffic_gb == Decimal("0.25")
        assert settings.allow_pay_from_draft is True

    def test_weights_from_json(self, monkeypatch):
        monkeypatch.setenv("METERING_COMPUTE_WEIGHTS", '{"render": 4.0}')
        settings = Settings()
        assert settings.compute_weights["render"] == 4.0
        assert settings.compute_weights["default"] == 1.0


class TestSettingsValidation:
    def test_negative_rate_rejected(self):
        with pytest.raises(ValidationError):
            Settings(rate_storage_gb_month=Decimal("-0.01"))

    def test_negative_weight_rejected(self):
        with pytest.raises(ValidationError):
            Settings(compute_weights={"default": 1.0, "bad": -1.0})

    def test_zero_retries_rejected(self):
        with pytest.raises(ValidationError):
            Settings(aggregation_max_retries=0)

    def test_load_settings_overrides(self):
        settings = load_settings(alert_cooldown_seconds=60)
        assert settings.alert_cooldown_seconds == 60
