"""
Rate Cache

Small time-bounded read cache for pricing tier lookups.
Each service instance owns its cache; entries expire after an injected TTL
and can be invalidated explicitly. A miss or expiry always reloads from the
source of truth.
"""

import logging
import pickle
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

import redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


_MISSING = object()


class CacheBackend(ABC):
    """Storage for cache entries"""

    @abstractmethod
    def get(self, key: str) -> Any:
        """Return the stored value or the module sentinel when absent/expired"""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float) -> None:
        """Store a value for ``ttl`` seconds"""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Drop one entry"""

    @abstractmethod
    def clear(self) -> None:
        """Drop every entry"""


class MemoryCacheBackend(CacheBackend):
    """Process-local backend with an injectable monotonic clock"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return _MISSING
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return _MISSING
            return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisCacheBackend(CacheBackend):
    """
    Shared backend on Redis. Values are pickled; expiry is delegated to
    Redis (``SETEX``). Redis errors degrade to cache misses.
    """

    def __init__(self, client: redis.Redis, key_prefix: str = "billing:rates:"):
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "billing:rates:") -> "RedisCacheBackend":
        return cls(redis.Redis.from_url(url), key_prefix=key_prefix)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def get(self, key: str) -> Any:
        try:
            data = self.client.get(self._key(key))
        except RedisError as e:
            logger.warning(f"Cache GET failed for {key}: {e}")
            return _MISSING
        if data is None:
            return _MISSING
        return pickle.loads(data)

    def set(self, key: str, value: Any, ttl: float) -> None:
        try:
            self.client.setex(self._key(key), max(1, int(ttl)), pickle.dumps(value))
        except RedisError as e:
            logger.warning(f"Cache SET failed for {key}: {e}")

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except RedisError as e:
            logger.warning(f"Cache DELETE failed for {key}: {e}")

    def clear(self) -> None:
        try:
            keys = list(self.client.scan_iter(match=f"{self.key_prefix}*"))
            if keys:
                self.client.delete(*keys)
        except RedisError as e:
            logger.warning(f"Cache CLEAR failed: {e}")


class RateCache:
    """
    TTL cache in front of a loader.

    Args:
        ttl_seconds: Lifetime of an entry
        backend: Storage backend, in-memory by default
    """

    def __init__(self, ttl_seconds: float = 300, backend: Optional[CacheBackend] = None):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.backend = backend or MemoryCacheBackend()
        self.stats = {"hits": 0, "misses": 0}

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        """Return the cached value, loading and storing it on a miss"""
        value = self.backend.get(key)
        if value is not _MISSING:
            self.stats["hits"] += 1
            return value

        self.stats["misses"] += 1
        value = loader()
        self.backend.set(key, value, self.ttl_seconds)
        return value

    def invalidate(self, key: str) -> None:
        self.backend.delete(key)

    def clear(self) -> None:
        self.backend.clear()


@dataclass(frozen=True)
class TierSnapshot:
    """Detached copy of a pricing tier, safe to cache and share"""
    id: str
    min_quantity: int
    max_quantity: Optional[int]
    infinite: bool
    flat_fee: int
    unit_price: Decimal

    @classmethod
    def from_tier(cls, tier: Any) -> "TierSnapshot":
        return cls(
            id=tier.id,
            min_quantity=tier.min_quantity,
            max_quantity=tier.max_quantity,
            infinite=bool(tier.infinite),
            flat_fee=tier.flat_fee or 0,
            unit_price=Decimal(tier.unit_price or 0)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "min_quantity": self.min_quantity,
            "max_quantity": self.max_quantity,
            "infinite": self.infinite,
            "flat_fee": self.flat_fee,
            "unit_price": str(self.unit_price)
        }


def build_rate_cache(settings) -> RateCache:
    """Create the cache configured in ``BillingSettings``"""
    if settings.rate_cache_backend == "redis":
        backend = RedisCacheBackend.from_url(settings.redis_url)
    else:
        backend = MemoryCacheBackend()
    return RateCache(ttl_seconds=settings.rate_cache_ttl, backend=backend)
