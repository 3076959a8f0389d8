"""
Billing Engine Settings

Tunables for retries, usage thresholds, win-back campaigns and caching,
loaded from environment variables.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Outbound delivery retry policy"""
    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")


@dataclass
class BillingSettings:
    """Billing engine configuration"""
    retry: RetryConfig = field(default_factory=RetryConfig)

    # Outbound webhooks
    request_timeout: float = 10.0
    sweep_batch_size: int = 100
    sweep_concurrency: int = 5
    sweep_interval: float = 30.0
    user_agent: str = "Billing-Platform-Webhook/1.0"

    # Usage thresholds (percent of the current tier limit)
    usage_warning_threshold: float = 75.0
    usage_exceeded_threshold: float = 100.0
    usage_reconcile_interval: float = 3600.0

    # Win-back campaigns
    win_back_reasons: FrozenSet[str] = frozenset({"too_expensive", "missing_features"})
    win_back_step_days: Tuple[int, ...] = (1, 7, 15)
    win_back_offer_valid_days: int = 30

    # Rate cache
    rate_cache_ttl: int = 300
    rate_cache_backend: str = "memory"
    redis_url: Optional[str] = None

    def __post_init__(self):
        if self.usage_warning_threshold > self.usage_exceeded_threshold:
            raise ValueError("Warning threshold cannot exceed the exceeded threshold")
        if self.sweep_concurrency < 1:
            raise ValueError("sweep_concurrency must be at least 1")
        if self.usage_reconcile_interval <= 0:
            raise ValueError("usage_reconcile_interval must be positive")
        if self.rate_cache_backend not in ("memory", "redis"):
            raise ValueError(f"Unknown rate cache backend: {self.rate_cache_backend}")
        if self.rate_cache_backend == "redis" and not self.redis_url:
            raise ValueError("Redis rate cache requires REDIS_URL")


def _csv(value: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def load_billing_settings() -> BillingSettings:
    """Load settings from environment variables"""
    settings = BillingSettings(
        retry=RetryConfig(
            max_attempts=int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "3")),
            initial_delay=float(os.getenv("WEBHOOK_INITIAL_DELAY", "1.0")),
            backoff_multiplier=float(os.getenv("WEBHOOK_BACKOFF_MULTIPLIER", "2.0")),
            max_delay=float(os.getenv("WEBHOOK_MAX_DELAY", "60.0"))
        ),
        request_timeout=float(os.getenv("WEBHOOK_TIMEOUT", "10.0")),
        sweep_batch_size=int(os.getenv("WEBHOOK_SWEEP_BATCH_SIZE", "100")),
        sweep_concurrency=int(os.getenv("WEBHOOK_SWEEP_CONCURRENCY", "5")),
        sweep_interval=float(os.getenv("WEBHOOK_SWEEP_INTERVAL", "30.0")),
        usage_warning_threshold=float(os.getenv("USAGE_WARNING_THRESHOLD", "75")),
        usage_exceeded_threshold=float(os.getenv("USAGE_EXCEEDED_THRESHOLD", "100")),
        usage_reconcile_interval=float(os.getenv("USAGE_RECONCILE_INTERVAL", "3600")),
        win_back_reasons=frozenset(_csv(os.getenv("WIN_BACK_REASONS", "too_expensive,missing_features"))),
        win_back_step_days=tuple(int(day) for day in _csv(os.getenv("WIN_BACK_STEP_DAYS", "1,7,15"))),
        win_back_offer_valid_days=int(os.getenv("WIN_BACK_OFFER_VALID_DAYS", "30")),
        rate_cache_ttl=int(os.getenv("RATE_CACHE_TTL", "300")),
        rate_cache_backend=os.getenv("RATE_CACHE_BACKEND", "memory").lower(),
        redis_url=os.getenv("REDIS_URL")
    )

    logger.info(
        f"Loaded billing settings: max_attempts={settings.retry.max_attempts}, "
        f"cache_backend={settings.rate_cache_backend}"
    )
    return settings
