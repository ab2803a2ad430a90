"""Rate-limited, cached access to per-address balances and token lists."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Hashable, List, Mapping, Protocol

from .cache import Clock, TTLCache
from .config import PricingSettings
from .models import TokenBalance
from .single_flight import SingleFlight

logger = logging.getLogger(__name__)

NAMESPACE = "wallet"


class RateLimitedError(RuntimeError):
    """An endpoint is backing off and there is no cached value to serve."""

    def __init__(self, endpoint: str, retry_after: float) -> None:
        super().__init__(f"Rate limited: {endpoint}. Wait {max(0, round(retry_after))}s")
        self.endpoint = endpoint
        self.retry_after = retry_after


class WalletDataSource(Protocol):
    async def get_balance(self, address: str) -> int: ...

    async def get_tokens(self, address: str) -> List[TokenBalance]: ...


@dataclass(frozen=True, slots=True)
class RateLimit:
    max_requests: int
    window: float
    backoff: float
    max_backoff: float


DEFAULT_LIMITS: Dict[str, RateLimit] = {
    "balance": RateLimit(20, 60.0, 0.5, 10.0),
    "tokens": RateLimit(15, 60.0, 0.5, 15.0),
}


@dataclass(slots=True)
class _Tracker:
    requests: Deque[float] = field(default_factory=deque)
    last_request: float = 0.0
    backoff_until: float = 0.0
    failures: int = 0

    def prune(self, now: float, window: float) -> None:
        while self.requests and now - self.requests[0] >= window:
            self.requests.popleft()


class RateLimitedWalletClient:
    """Wrap a :class:`WalletDataSource` with caching, dedup and back-off.

    Fresh responses are cached per endpoint TTL.  Concurrent identical calls
    share one request.  Successful calls count against a sliding window per
    endpoint; failures put the endpoint into exponential back-off.  While an
    endpoint is limited the last known value is served, or
    :class:`RateLimitedError` raised when there is none.
    """

    def __init__(
        self,
        inner: WalletDataSource,
        *,
        clock: Clock | None = None,
        limits: Mapping[str, RateLimit] | None = None,
        settings: PricingSettings | None = None,
        cache: TTLCache | None = None,
        flights: SingleFlight | None = None,
    ) -> None:
        self.inner = inner
        self.settings = settings or PricingSettings()
        self.cache = cache if cache is not None else TTLCache(clock=clock)
        self.clock: Clock = clock or self.cache.clock
        self.flights = flights or SingleFlight()
        self.limits: Dict[str, RateLimit] = dict(DEFAULT_LIMITS if limits is None else limits)
        self.ttls: Dict[str, float] = {
            "balance": self.settings.balance_cache_ttl,
            "tokens": self.settings.tokens_cache_ttl,
        }
        self._trackers: Dict[str, _Tracker] = {}
        self._last_values: Dict[Hashable, Any] = {}

    async def get_balance(self, address: str) -> int:
        return await self._call("balance", address, lambda: self.inner.get_balance(address))

    async def get_tokens(self, address: str) -> List[TokenBalance]:
        return await self._call("tokens", address, lambda: self.inner.get_tokens(address))

    def _tracker(self, endpoint: str) -> _Tracker:
        tracker = self._trackers.get(endpoint)
        if tracker is None:
            tracker = self._trackers[endpoint] = _Tracker()
        return tracker

    def can_request(self, endpoint: str) -> bool:
        limit = self.limits.get(endpoint)
        if limit is None:
            return True
        tracker = self._tracker(endpoint)
        now = self.clock()
        if now < tracker.backoff_until:
            return False
        tracker.prune(now, limit.window)
        return len(tracker.requests) < limit.max_requests

    def _wait_time(self, endpoint: str) -> float:
        limit = self.limits[endpoint]
        tracker = self._tracker(endpoint)
        now = self.clock()
        if now < tracker.backoff_until:
            return tracker.backoff_until - now
        if tracker.requests:
            return max(0.0, tracker.requests[0] + limit.window - now)
        return 0.0

    def _record(self, endpoint: str, success: bool) -> None:
        limit = self.limits.get(endpoint)
        if limit is None:
            return
        tracker = self._tracker(endpoint)
        now = self.clock()
        tracker.last_request = now
        if success:
            tracker.requests.append(now)
            tracker.failures = 0
            return
        tracker.failures += 1
        backoff = min(limit.backoff * (2 ** (tracker.failures - 1)), limit.max_backoff)
        tracker.backoff_until = now + backoff
        logger.warning("Wallet API: %s failed, backing off for %.1fs", endpoint, backoff)

    async def _call(self, endpoint: str, address: str, fetch: Callable[[], Awaitable[Any]]) -> Any:
        key = (NAMESPACE, endpoint, address)
        cached = self.cache.entry(key)
        if cached is not None:
            logger.debug("Wallet API: cache hit for %s:%s", endpoint, address)
            return cached.value
        if self.flights.in_flight(key):
            return await self.flights.resolve(key, fetch)
        if not self.can_request(endpoint):
            if key in self._last_values:
                logger.info("Wallet API: %s limited; serving stale %s", endpoint, address)
                return self._last_values[key]
            raise RateLimitedError(endpoint, self._wait_time(endpoint))
        return await self.flights.resolve(key, lambda: self._fetch(endpoint, key, fetch))

    async def _fetch(self, endpoint: str, key: Hashable, fetch: Callable[[], Awaitable[Any]]) -> Any:
        try:
            result = await fetch()
        except Exception as exc:
            self._record(endpoint, False)
            if getattr(exc, "status", None) == 429 and key in self._last_values:
                logger.info("Wallet API: 429 from %s; serving stale value", endpoint)
                return self._last_values[key]
            raise
        self._record(endpoint, True)
        self.cache.set(key, result, self.ttls.get(endpoint, self.settings.balance_cache_ttl))
        self._last_values[key] = result
        return result

    def rate_limit_status(self) -> Dict[str, Any]:
        endpoints: Dict[str, Any] = {}
        now = self.clock()
        for endpoint, tracker in self._trackers.items():
            limit = self.limits.get(endpoint)
            if limit is None:
                continue
            tracker.prune(now, limit.window)
            endpoints[endpoint] = {
                "requests_in_window": len(tracker.requests),
                "max_requests": limit.max_requests,
                "backoff_remaining": max(0.0, tracker.backoff_until - now),
                "failures": tracker.failures,
                "can_request": self.can_request(endpoint),
            }
        return {
            "endpoints": endpoints,
            "cache_size": len(self.cache.keys(NAMESPACE)),
            "pending_requests": self.flights.pending(),
        }

    def clear(self) -> None:
        self._trackers.clear()
        self._last_values.clear()
        self.cache.clear_namespace(NAMESPACE)


__all__ = [
    "DEFAULT_LIMITS",
    "RateLimit",
    "RateLimitedError",
    "RateLimitedWalletClient",
    "WalletDataSource",
]
