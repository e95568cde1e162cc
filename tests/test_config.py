"""Tests for configuration validation and environment settings."""

import pytest
from pydantic import ValidationError

from scrapecascade.config import (
    BudgetConfig,
    CacheConfig,
    CascadeConfig,
    ProviderConfig,
    Settings,
)


class TestValidation:
    def test_max_age_cannot_exceed_ttl(self):
        with pytest.raises(ValidationError, match="max_age_ms"):
            CacheConfig(ttl_ms=1000, max_age_ms=2000)

    def test_hourly_cannot_exceed_daily(self):
        with pytest.raises(ValidationError, match="hourly_limit"):
            BudgetConfig(hourly_limit=20, daily_limit=10, monthly_limit=100)

    def test_daily_cannot_exceed_monthly(self):
        with pytest.raises(ValidationError, match="daily_limit"):
            BudgetConfig(hourly_limit=1, daily_limit=200, monthly_limit=100)

    def test_alert_threshold_range(self):
        with pytest.raises(ValidationError, match="alert threshold"):
            BudgetConfig(alert_thresholds=(50, 120))

    def test_negative_cost_rejected(self):
        with pytest.raises(ValidationError):
            ProviderConfig(name="x", cost_per_request=-1)

    def test_duplicate_provider_names(self):
        with pytest.raises(ValidationError, match="duplicate provider names: a"):
            CascadeConfig(providers=(ProviderConfig(name="a"), ProviderConfig(name="a")))

    def test_configs_are_frozen(self):
        config = CacheConfig()
        with pytest.raises(ValidationError):
            config.ttl_ms = 5

    def test_provider_lookup(self):
        config = CascadeConfig()
        assert config.provider("scrapingbee").kind == "scrapingbee"
        assert config.provider("missing") is None


class TestCostUnits:
    def test_usd_cost_passthrough(self):
        assert ProviderConfig(name="x", cost_per_request=0.02).usd_cost == 0.02

    def test_credits_converted(self):
        config = ProviderConfig(name="x", cost_per_request=50, cost_unit="credits")
        assert config.usd_cost == pytest.approx(0.05)
        assert config.to_usd(10) == pytest.approx(0.01)

    def test_default_cascade_order(self):
        names = [p.name for p in sorted(CascadeConfig().providers, key=lambda p: p.priority)]
        assert names == ["flaresolverr", "scrapingbee", "scrapfly"]


class TestSettings:
    def test_paid_providers_disabled_without_keys(self):
        config = Settings(_env_file=None, SCRAPINGBEE_API_KEY="", SCRAPFLY_API_KEY="").to_engine_config()
        enabled = {p.name: p.enabled for p in config.providers}
        assert enabled == {"flaresolverr": True, "scrapingbee": False, "scrapfly": False}

    def test_keys_enable_paid_providers(self):
        config = Settings(
            _env_file=None,
            SCRAPINGBEE_API_KEY="bee-key",
            SCRAPFLY_API_KEY="fly-key",
            USD_PER_CREDIT=0.002,
        ).to_engine_config()
        bee = config.provider("scrapingbee")
        assert bee.enabled
        assert bee.api_key == "bee-key"
        assert bee.usd_cost == pytest.approx(25 * 0.002)
        assert bee.to_usd(bee.max_cost) == pytest.approx(31 * 0.002)
        assert config.provider("scrapfly").enabled

    def test_budget_and_cache_settings_flow_through(self):
        config = Settings(
            _env_file=None,
            BUDGET_HOURLY_LIMIT=0.5,
            BUDGET_DAILY_LIMIT=5,
            BUDGET_MONTHLY_LIMIT=50,
            CACHE_STALE_POLICY="serve_stale",
            CACHE_TTL_MS=10_000,
            CACHE_MAX_AGE_MS=5_000,
        ).to_engine_config()
        assert config.budget.hourly_limit == 0.5
        assert config.cache.stale_policy == "serve_stale"
        assert config.cache.max_age_ms == 5_000

    def test_invalid_settings_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, BUDGET_HOURLY_LIMIT=50, BUDGET_DAILY_LIMIT=10).to_engine_config()
