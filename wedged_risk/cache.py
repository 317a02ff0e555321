"""
Time-boxed memoization for risk data.

Entries are keyed by a structured CacheKey (category + typed subject) and expire
per category. Concurrent misses on one key share a single in-flight
computation, and a failed recomputation serves the previous value when one
exists.
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
import structlog

from .config import Settings
from .error_handling import NotFound
from .models import AssetPairKey, Timeframe

logger = structlog.get_logger()


class CacheCategory(str, Enum):
    PRICE = "price"
    ACCOUNT_HEALTH = "account_health"
    POOL_RISK = "pool_risk"
    ANALYTICS = "analytics"
    POOL_METADATA = "pool_metadata"
    VOLATILITY = "volatility"
    CORRELATION = "correlation"


# Key subjects
@dataclass(frozen=True)
class PoolId:
    pool_id: int


@dataclass(frozen=True)
class CorrelationPair:
    pair_a: AssetPairKey
    pair_b: AssetPairKey

    @classmethod
    def of(cls, pair_a: AssetPairKey, pair_b: AssetPairKey) -> "CorrelationPair":
        if str(pair_b) < str(pair_a):
            pair_a, pair_b = pair_b, pair_a
        return cls(pair_a, pair_b)

    def involves(self, asset: str) -> bool:
        return self.pair_a.involves(asset) or self.pair_b.involves(asset)


@dataclass(frozen=True)
class UserAssetKey:
    user: str
    asset: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "user", self.user.lower())
        if self.asset is not None:
            object.__setattr__(self, "asset", self.asset.lower())


@dataclass(frozen=True)
class PoolTimeframe:
    pool_id: int
    timeframe: Timeframe


@dataclass(frozen=True)
class ProtocolScope:
    name: str


Subject = Union[PoolId, AssetPairKey, CorrelationPair, UserAssetKey, PoolTimeframe, ProtocolScope]


@dataclass(frozen=True)
class CacheKey:
    category: CacheCategory
    subject: Subject

    @classmethod
    def price(cls, pair: AssetPairKey) -> "CacheKey":
        return cls(CacheCategory.PRICE, pair)

    @classmethod
    def volatility(cls, pair: AssetPairKey) -> "CacheKey":
        return cls(CacheCategory.VOLATILITY, pair)

    @classmethod
    def correlation(cls, pair_a: AssetPairKey, pair_b: AssetPairKey) -> "CacheKey":
        return cls(CacheCategory.CORRELATION, CorrelationPair.of(pair_a, pair_b))

    @classmethod
    def pool_risk(cls, pool_id: int) -> "CacheKey":
        return cls(CacheCategory.POOL_RISK, PoolId(pool_id))

    @classmethod
    def pool_history(cls, pool_id: int, timeframe: Timeframe) -> "CacheKey":
        return cls(CacheCategory.ANALYTICS, PoolTimeframe(pool_id, timeframe))

    @classmethod
    def account_health(cls, user: str, asset: Optional[str] = None) -> "CacheKey":
        return cls(CacheCategory.ACCOUNT_HEALTH, UserAssetKey(user, asset))

    @classmethod
    def analytics(cls, scope: str) -> "CacheKey":
        return cls(CacheCategory.ANALYTICS, ProtocolScope(scope))

    @classmethod
    def pool_metadata(cls, scope: Union[int, str]) -> "CacheKey":
        subject = PoolId(scope) if isinstance(scope, int) else ProtocolScope(scope)
        return cls(CacheCategory.POOL_METADATA, subject)

    def concerns_pool(self, pool_id: int) -> bool:
        return isinstance(self.subject, (PoolId, PoolTimeframe)) and self.subject.pool_id == pool_id

    def concerns_user(self, user: str) -> bool:
        return isinstance(self.subject, UserAssetKey) and self.subject.user == user.lower()

    def concerns_asset(self, asset: str) -> bool:
        subject = self.subject
        if isinstance(subject, (AssetPairKey, CorrelationPair)):
            return subject.involves(asset)
        if isinstance(subject, UserAssetKey):
            return subject.asset == asset.lower()
        return False

    def __str__(self) -> str:
        return f"{self.category.value}:{self.subject}"


@dataclass
class CacheEntry:
    value: Any
    stored_at: float


def default_ttls(settings: Settings) -> Dict[CacheCategory, float]:
    return {
        CacheCategory.PRICE: settings.PRICE_TTL_SECONDS,
        CacheCategory.ACCOUNT_HEALTH: settings.ACCOUNT_HEALTH_TTL_SECONDS,
        CacheCategory.POOL_RISK: settings.POOL_RISK_TTL_SECONDS,
        CacheCategory.ANALYTICS: settings.ANALYTICS_TTL_SECONDS,
        CacheCategory.POOL_METADATA: settings.POOL_METADATA_TTL_SECONDS,
        CacheCategory.VOLATILITY: settings.VOLATILITY_TTL_SECONDS,
        CacheCategory.CORRELATION: settings.CORRELATION_TTL_SECONDS,
    }


class RiskCache:
    """Per-key memoization with category TTLs, single-flight population and stale fallback"""

    def __init__(
        self,
        ttls: Optional[Dict[CacheCategory, float]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.ttls = dict(ttls) if ttls is not None else default_ttls(Settings())
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._in_flight: Dict[CacheKey, asyncio.Task] = {}
        self._lock = asyncio.Lock()

        self.hits = 0
        self.misses = 0
        self.stale_served = 0

    def ttl_for(self, category: CacheCategory) -> float:
        return self.ttls[category]

    def _is_fresh(self, entry: CacheEntry, ttl: float) -> bool:
        return self._clock() - entry.stored_at < ttl

    async def get_or_compute(
        self,
        key: CacheKey,
        compute_fn: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
        force: bool = False
    ) -> Any:
        """Return the fresh cached value for ``key`` or compute and store it.

        ``force`` skips the freshness check but still joins a computation that
        is already running. Callers await the shared task through a shield, so
        a caller that gives up does not cancel population for the others.
        """
        ttl = self.ttl_for(key.category) if ttl is None else ttl

        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not force and self._is_fresh(entry, ttl):
                self.hits += 1
                return entry.value

            task = self._in_flight.get(key)
            if task is None:
                self.misses += 1
                task = asyncio.ensure_future(self._populate(key, compute_fn))
                task.add_done_callback(_consume_result)
                self._in_flight[key] = task

        return await asyncio.shield(task)

    async def _populate(self, key: CacheKey, compute_fn: Callable[[], Awaitable[Any]]) -> Any:
        current = asyncio.current_task()
        try:
            value = await compute_fn()
        except NotFound:
            raise
        except Exception as e:
            entry = self._entries.get(key)
            if entry is None:
                raise
            self.stale_served += 1
            logger.warning("Serving stale cache entry after compute failure", key=str(key), error=str(e))
            return entry.value
        else:
            async with self._lock:
                # An invalidation while computing discards this result
                if self._in_flight.get(key) is current:
                    self._entries[key] = CacheEntry(value=value, stored_at=self._clock())
            return value
        finally:
            if self._in_flight.get(key) is current:
                del self._in_flight[key]

    def get(self, key: CacheKey) -> Optional[Any]:
        """Fresh value for ``key`` without computing, or None"""
        entry = self._entries.get(key)
        if entry is None or not self._is_fresh(entry, self.ttl_for(key.category)):
            return None
        return entry.value

    def set(self, key: CacheKey, value: Any):
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def values(self, category: CacheCategory) -> List[Any]:
        """Every stored value in a category, including expired ones"""
        return [entry.value for key, entry in self._entries.items() if key.category == category]

    # Invalidation
    def invalidate(self, key: CacheKey) -> bool:
        self._in_flight.pop(key, None)
        return self._entries.pop(key, None) is not None

    def invalidate_where(self, predicate: Callable[[CacheKey], bool]) -> int:
        keys = [key for key in self._entries if predicate(key)]
        for key in keys:
            del self._entries[key]
        for key in [key for key in self._in_flight if predicate(key)]:
            del self._in_flight[key]
        return len(keys)

    def invalidate_pool(self, pool_id: int) -> int:
        removed = self.invalidate_where(lambda key: key.concerns_pool(pool_id))
        logger.info("Invalidated pool cache entries", pool_id=pool_id, removed=removed)
        return removed

    def invalidate_user(self, user: str) -> int:
        removed = self.invalidate_where(lambda key: key.concerns_user(user))
        logger.info("Invalidated user cache entries", user=user, removed=removed)
        return removed

    def invalidate_asset(self, asset: str) -> int:
        return self.invalidate_where(lambda key: key.concerns_asset(asset))

    def invalidate_category(self, category: CacheCategory) -> int:
        return self.invalidate_where(lambda key: key.category == category)

    def clear(self):
        count = len(self._entries)
        self._entries.clear()
        self._in_flight.clear()
        logger.info("Cache cleared", removed=count)

    def stats(self) -> Dict[str, Any]:
        per_category = {category.value: 0 for category in CacheCategory}
        for key in self._entries:
            per_category[key.category.value] += 1

        return {
            "count": len(self._entries),
            "per_category": per_category,
            "hits": self.hits,
            "misses": self.misses,
            "stale_served": self.stale_served,
            "in_flight": len(self._in_flight),
        }

    def __len__(self) -> int:
        return len(self._entries)


def _consume_result(task: asyncio.Task):
    # Mark the failure retrieved when no caller is left awaiting it
    if not task.cancelled():
        task.exception()
