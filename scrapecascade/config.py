import logging
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

_logger = logging.getLogger(__name__)

# ScrapingBee and Scrapfly both bill in credits; 1000 credits per dollar.
DEFAULT_USD_PER_CREDIT = 0.001


class ProviderConfig(BaseModel):
    """Static configuration for one provider.

    `cost_per_request` is expressed in `cost_unit`; `usd_cost` is the
    canonical dollar figure every other component works with.
    """

    name: str
    kind: Literal["flaresolverr", "scrapingbee", "scrapfly", "custom"] = "custom"
    priority: int = 1
    cost_per_request: float = Field(default=0.0, ge=0)
    cost_unit: Literal["usd", "credits"] = "usd"
    usd_per_credit: float = Field(default=DEFAULT_USD_PER_CREDIT, gt=0)
    max_cost: float | None = Field(default=None, ge=0)
    enabled: bool = True
    max_retries: int = Field(default=0, ge=0)
    timeout_ms: int = Field(default=60000, gt=0)
    initial_success_rate: float = Field(default=0.8, ge=0, le=1)
    initial_latency_ms: float = Field(default=5000.0, ge=0)
    endpoint: str = ""
    api_key: str = ""

    model_config = {"frozen": True}

    @property
    def usd_cost(self) -> float:
        if self.cost_unit == "credits":
            return self.cost_per_request * self.usd_per_credit
        return self.cost_per_request

    def to_usd(self, amount: float) -> float:
        """Convert an amount reported in this provider's unit into USD."""
        if self.cost_unit == "credits":
            return amount * self.usd_per_credit
        return amount


class CacheConfig(BaseModel):
    enabled: bool = True
    max_entries: int = Field(default=1000, gt=0)
    ttl_ms: int = Field(default=3_600_000, gt=0)
    max_age_ms: int = Field(default=3_600_000, gt=0)
    stale_policy: Literal["refetch", "serve_stale"] = "refetch"

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_age(self):
        if self.max_age_ms > self.ttl_ms:
            raise ValueError(
                f"cache max_age_ms ({self.max_age_ms}) must not exceed ttl_ms ({self.ttl_ms})"
            )
        return self


class DedupConfig(BaseModel):
    window_ms: int = Field(default=5000, gt=0)
    grace_ms: int = Field(default=50, ge=0)

    model_config = {"frozen": True}


class RateLimitConfig(BaseModel):
    tokens_per_interval: int = Field(default=60, gt=0)
    interval_ms: int = Field(default=60000, gt=0)
    max_burst: int = Field(default=10, ge=1)

    model_config = {"frozen": True}


class BudgetConfig(BaseModel):
    hourly_limit: float = Field(default=1.0, ge=0)
    daily_limit: float = Field(default=10.0, ge=0)
    monthly_limit: float = Field(default=100.0, ge=0)
    alert_thresholds: tuple[float, ...] = (50, 75, 90, 100)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_limits(self):
        if self.hourly_limit > self.daily_limit:
            raise ValueError("hourly_limit must not exceed daily_limit")
        if self.daily_limit > self.monthly_limit:
            raise ValueError("daily_limit must not exceed monthly_limit")
        for threshold in self.alert_thresholds:
            if not 0 < threshold <= 100:
                raise ValueError(f"alert threshold {threshold} outside (0, 100]")
        return self


class PerformanceConfig(BaseModel):
    ema_alpha: float = Field(default=0.1, gt=0, le=1)
    circuit_breaker_threshold: float = Field(default=0.5, ge=0, le=1)
    circuit_breaker_timeout_ms: int = Field(default=60000, gt=0)
    blacklist_threshold: int = Field(default=5, ge=1)
    blacklist_cooldown_ms: int = Field(default=300_000, gt=0)
    retry_delay_ms: int = Field(default=1000, ge=0)

    model_config = {"frozen": True}


def default_providers() -> tuple[ProviderConfig, ...]:
    return (
        ProviderConfig(
            name="flaresolverr",
            kind="flaresolverr",
            priority=1,
            cost_per_request=0.0,
            max_retries=2,
            timeout_ms=60000,
            initial_success_rate=0.7,
            initial_latency_ms=5000,
            endpoint="http://localhost:8191/v1",
        ),
        ProviderConfig(
            name="scrapingbee",
            kind="scrapingbee",
            priority=2,
            cost_per_request=25,
            # 1 base + 5 render_js + 10 premium + 15 stealth
            max_cost=31,
            cost_unit="credits",
            max_retries=3,
            timeout_ms=90000,
            initial_success_rate=0.9,
            initial_latency_ms=8000,
            endpoint="https://app.scrapingbee.com/api/v1",
        ),
        ProviderConfig(
            name="scrapfly",
            kind="scrapfly",
            priority=3,
            cost_per_request=50,
            cost_unit="credits",
            max_retries=3,
            timeout_ms=120000,
            initial_success_rate=0.95,
            initial_latency_ms=10000,
            endpoint="https://api.scrapfly.io/scrape",
        ),
    )


class CascadeConfig(BaseModel):
    """Immutable engine configuration, validated once at construction."""

    providers: tuple[ProviderConfig, ...] = Field(default_factory=default_providers)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_providers(self):
        names = [p.name for p in self.providers]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"duplicate provider names: {', '.join(sorted(duplicates))}")
        return self

    def provider(self, name: str) -> ProviderConfig | None:
        for p in self.providers:
            if p.name == name:
                return p
        return None


class Settings(BaseSettings):
    # App
    APP_NAME: str = "scrapecascade"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Redis (state snapshots only; the engine runs without it)
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20
    SNAPSHOT_ENABLED: bool = False
    SNAPSHOT_TTL_SECONDS: int = 60 * 60 * 24 * 31

    # Providers. A paid provider is only enabled when its API key is set
    FLARESOLVERR_URL: str = "http://localhost:8191/v1"
    FLARESOLVERR_ENABLED: bool = True
    SCRAPINGBEE_API_KEY: str = ""
    SCRAPINGBEE_CREDITS_PER_REQUEST: float = 25
    SCRAPINGBEE_MAX_CREDITS_PER_REQUEST: float = 31
    SCRAPFLY_API_KEY: str = ""
    SCRAPFLY_CREDITS_PER_REQUEST: float = 50
    USD_PER_CREDIT: float = DEFAULT_USD_PER_CREDIT

    # Cache
    CACHE_ENABLED: bool = True
    CACHE_MAX_ENTRIES: int = 1000
    CACHE_TTL_MS: int = 3_600_000
    CACHE_MAX_AGE_MS: int = 3_600_000
    CACHE_STALE_POLICY: Literal["refetch", "serve_stale"] = "refetch"

    # Dedup
    DEDUP_WINDOW_MS: int = 5000

    # Rate limiting
    RATE_LIMIT_TOKENS_PER_INTERVAL: int = 60
    RATE_LIMIT_INTERVAL_MS: int = 60000
    RATE_LIMIT_MAX_BURST: int = 10

    # Budget (USD)
    BUDGET_HOURLY_LIMIT: float = 1.0
    BUDGET_DAILY_LIMIT: float = 10.0
    BUDGET_MONTHLY_LIMIT: float = 100.0
    BUDGET_ALERT_THRESHOLDS: list[float] = [50, 75, 90, 100]

    # Reliability
    CIRCUIT_BREAKER_THRESHOLD: float = 0.5
    CIRCUIT_BREAKER_TIMEOUT_MS: int = 60000
    BLACKLIST_THRESHOLD: int = 5
    BLACKLIST_COOLDOWN_MS: int = 300_000
    RETRY_DELAY_MS: int = 1000

    # Sentry
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.2
    SENTRY_ENVIRONMENT: str = "development"

    # Logging
    LOG_FORMAT: str = "json"  # "json" for production, "text" for development
    LOG_LEVEL: str = "INFO"

    # Metrics
    METRICS_ENABLED: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def to_engine_config(self) -> CascadeConfig:
        """Build the validated engine configuration from environment settings."""
        defaults = {p.name: p for p in default_providers()}
        providers = [
            defaults["flaresolverr"].model_copy(
                update={"endpoint": self.FLARESOLVERR_URL, "enabled": self.FLARESOLVERR_ENABLED}
            ),
            defaults["scrapingbee"].model_copy(
                update={
                    "api_key": self.SCRAPINGBEE_API_KEY,
                    "enabled": bool(self.SCRAPINGBEE_API_KEY),
                    "cost_per_request": self.SCRAPINGBEE_CREDITS_PER_REQUEST,
                    "max_cost": self.SCRAPINGBEE_MAX_CREDITS_PER_REQUEST,
                    "usd_per_credit": self.USD_PER_CREDIT,
                }
            ),
            defaults["scrapfly"].model_copy(
                update={
                    "api_key": self.SCRAPFLY_API_KEY,
                    "enabled": bool(self.SCRAPFLY_API_KEY),
                    "cost_per_request": self.SCRAPFLY_CREDITS_PER_REQUEST,
                    "usd_per_credit": self.USD_PER_CREDIT,
                }
            ),
        ]
        if not self.SCRAPINGBEE_API_KEY and not self.SCRAPFLY_API_KEY:
            _logger.warning(
                "No premium provider API key set, cascade will only use FlareSolverr. "
                "Set SCRAPINGBEE_API_KEY or SCRAPFLY_API_KEY to enable paid fallbacks."
            )

        return CascadeConfig(
            providers=tuple(
                # model_copy skips validation; round-trip to re-validate
                ProviderConfig.model_validate(p.model_dump())
                for p in providers
            ),
            cache=CacheConfig(
                enabled=self.CACHE_ENABLED,
                max_entries=self.CACHE_MAX_ENTRIES,
                ttl_ms=self.CACHE_TTL_MS,
                max_age_ms=self.CACHE_MAX_AGE_MS,
                stale_policy=self.CACHE_STALE_POLICY,
            ),
            dedup=DedupConfig(window_ms=self.DEDUP_WINDOW_MS),
            rate_limit=RateLimitConfig(
                tokens_per_interval=self.RATE_LIMIT_TOKENS_PER_INTERVAL,
                interval_ms=self.RATE_LIMIT_INTERVAL_MS,
                max_burst=self.RATE_LIMIT_MAX_BURST,
            ),
            budget=BudgetConfig(
                hourly_limit=self.BUDGET_HOURLY_LIMIT,
                daily_limit=self.BUDGET_DAILY_LIMIT,
                monthly_limit=self.BUDGET_MONTHLY_LIMIT,
                alert_thresholds=tuple(self.BUDGET_ALERT_THRESHOLDS),
            ),
            performance=PerformanceConfig(
                circuit_breaker_threshold=self.CIRCUIT_BREAKER_THRESHOLD,
                circuit_breaker_timeout_ms=self.CIRCUIT_BREAKER_TIMEOUT_MS,
                blacklist_threshold=self.BLACKLIST_THRESHOLD,
                blacklist_cooldown_ms=self.BLACKLIST_COOLDOWN_MS,
                retry_delay_ms=self.RETRY_DELAY_MS,
            ),
        )


settings = Settings()
