"""Price resolution: cache -> primary -> secondary -> stale/estimate."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Protocol

from . import token_mappings
from .cache import Clock, TTLCache
from .config import PricingSettings
from .logging_utils import warn_once_per
from .models import NativePriceSnapshot, PriceSource, TokenPrice
from .providers.base import ProviderQuote
from .single_flight import SingleFlight

logger = logging.getLogger(__name__)

NAMESPACE = "price"
CHANGE_NAMESPACE = "price-change"

_AUTH_COOLDOWN = 300.0
_RATE_LIMIT_COOLDOWN = 10.0


class PriceProvider(Protocol):
    name: str

    async def get_native_price(self) -> ProviderQuote | None: ...

    async def get_token_price(self, token_id: str) -> ProviderQuote | None: ...

    # optional; adapters without it are queried one token at a time
    async def get_token_prices(self, token_ids: List[str]) -> Dict[str, ProviderQuote]: ...


@dataclass(slots=True)
class ProviderHealth:
    name: str
    cooldown_until: float = 0.0
    consecutive_failures: int = 0
    last_status: int | None = None
    healthy: bool = True

    def in_cooldown(self, now: float) -> bool:
        return now < self.cooldown_until

    def record_success(self) -> None:
        self.cooldown_until = 0.0
        self.consecutive_failures = 0
        self.last_status = None
        self.healthy = True

    def record_failure(self, status: int | None, now: float, *, cooldown: float | None = None) -> float:
        self.consecutive_failures += 1
        self.last_status = status
        self.healthy = False
        base = min(8.0, 0.5 * (2 ** (self.consecutive_failures - 1)))
        duration = cooldown if cooldown is not None else base
        self.cooldown_until = max(self.cooldown_until, now + duration)
        return duration

    def clear(self) -> None:
        self.record_success()


@dataclass(slots=True)
class ProviderStats:
    name: str
    successes: int = 0
    failures: int = 0
    empty: int = 0
    skipped: int = 0
    last_latency_ms: float | None = None
    last_error_status: int | None = None
    last_error: str | None = None

    def record_success(self, latency_ms: float, *, empty: bool = False) -> None:
        self.successes += 1
        if empty:
            self.empty += 1
        self.last_latency_ms = latency_ms
        self.last_error_status = None
        self.last_error = None

    def record_failure(self, status: int | None, latency_ms: float, error: BaseException) -> None:
        self.failures += 1
        self.last_latency_ms = latency_ms
        self.last_error_status = status
        self.last_error = str(error)


@dataclass(slots=True)
class _ProviderState:
    health: ProviderHealth
    stats: ProviderStats = field(init=False)

    def __post_init__(self) -> None:
        self.stats = ProviderStats(self.health.name)


def _provider_name(provider: Any) -> str:
    return getattr(provider, "name", None) or type(provider).__name__.lower()


class PriceResolver:
    """Resolve USD prices for the native coin and arbitrary tokens.

    Lookups never raise: every token id handed in comes back with exactly one
    :class:`TokenPrice`, degrading to the last verified price (``stale=True``)
    and then to a zero-priced ``estimate`` when no provider answers.  The
    native coin is additionally funnelled through :class:`SingleFlight` so
    concurrent callers share one upstream round-trip.
    """

    def __init__(
        self,
        primary: Any | None = None,
        secondary: Any | None = None,
        *,
        cache: TTLCache | None = None,
        flights: SingleFlight | None = None,
        clock: Clock | None = None,
        settings: PricingSettings | None = None,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or PricingSettings()
        self.clock: Clock = clock or (cache.clock if cache is not None else time.monotonic)
        self.cache = cache if cache is not None else TTLCache(clock=self.clock)
        self.flights = flights or SingleFlight()
        self.primary = primary
        self.secondary = secondary
        self._wall_clock = wall_clock
        self._last_known: Dict[str, TokenPrice] = {}
        self._providers: Dict[str, _ProviderState] = {}
        for provider in (primary, secondary):
            if provider is not None:
                name = _provider_name(provider)
                self._providers[name] = _ProviderState(ProviderHealth(name))

    @property
    def native_symbol(self) -> str:
        return self.settings.native_symbol

    def _canonical(self, token_id: str) -> str:
        return self.native_symbol if token_mappings.is_native(token_id) else token_id

    # cache helpers ----------------------------------------------------------
    def _cached(self, token_id: str) -> TokenPrice | None:
        price = self.cache.get((NAMESPACE, token_id))
        if price is not None:
            logger.debug("Prices: cache hit for %s", token_id)
        return price

    def _store(self, price: TokenPrice) -> TokenPrice:
        self.cache.set((NAMESPACE, price.token_id), price, self.settings.price_cache_ttl)
        self._last_known[price.token_id] = price
        return price

    def _from_quote(
        self,
        token_id: str,
        quote: ProviderQuote,
        source: PriceSource,
        native_usd: float | None,
    ) -> TokenPrice:
        price = TokenPrice.quoted(
            token_id,
            quote.symbol or token_id[:8].upper(),
            quote.price_usd,
            source,
            quote.as_of,
            volume_24h=quote.volume_24h,
            change_24h=quote.change_24h,
        )
        return price.with_native(native_usd)

    def _fallback(self, token_id: str) -> TokenPrice:
        last = self._last_known.get(token_id)
        if last is not None:
            logger.info("Prices: serving stale %s price from %.0f", token_id, last.last_updated)
            return last.as_stale()
        symbol = self.native_symbol if token_id == self.native_symbol else token_id[:8].upper()
        estimate = TokenPrice.estimate(token_id, symbol, self._wall_clock())
        if token_id != self.native_symbol:
            self.cache.set((NAMESPACE, token_id), estimate, self.settings.estimate_ttl)
        logger.info("Prices: no price data for %s; using zero estimate", token_id)
        return estimate

    # provider plumbing ------------------------------------------------------
    def _state(self, name: str) -> _ProviderState:
        state = self._providers.get(name)
        if state is None:
            state = self._providers[name] = _ProviderState(ProviderHealth(name))
        return state

    async def _call(self, provider: Any | None, method: str, *args: Any) -> Any:
        """Invoke an adapter method, mapping every failure to ``None``."""

        if provider is None:
            return None
        name = _provider_name(provider)
        fetch = getattr(provider, method, None)
        if fetch is None:
            # an unsupported operation is not a provider failure
            logger.debug("Prices: %s provider has no %s", name, method)
            return None
        state = self._state(name)
        start = self.clock()
        if self.settings.provider_cooldown and state.health.in_cooldown(start):
            state.stats.skipped += 1
            logger.debug("Prices: skipping %s provider due to cooldown", name)
            return None
        try:
            result = await fetch(*args)
        except Exception as exc:  # noqa: BLE001 - any adapter failure means "try the next source"
            self._record_failure(state, exc, (self.clock() - start) * 1000.0)
            return None
        latency_ms = (self.clock() - start) * 1000.0
        state.health.record_success()
        state.stats.record_success(latency_ms, empty=not result)
        return result

    def _record_failure(self, state: _ProviderState, exc: BaseException, latency_ms: float) -> None:
        name = state.health.name
        status = getattr(exc, "status", None)
        if not isinstance(status, int):
            status = None
        cooldown: float | None = None
        if status in (401, 403):
            cooldown = _AUTH_COOLDOWN
        elif status == 429:
            cooldown = getattr(exc, "retry_after", None) or _RATE_LIMIT_COOLDOWN
        state.stats.record_failure(status, latency_ms, exc)
        if not self.settings.provider_cooldown:
            state.health.consecutive_failures += 1
            state.health.last_status = status
        else:
            duration = state.health.record_failure(status, self.clock(), cooldown=cooldown)
            logger.debug("Prices: %s cooling down for %.1fs", name, duration)
        warn_once_per(
            1.0,
            f"prices-failure:{name}:{status or exc.__class__.__name__}",
            "Prices: %s failure %s",
            name,
            exc,
            logger=logger,
        )

    # native coin ------------------------------------------------------------
    async def get_native_price(self) -> TokenPrice:
        symbol = self.native_symbol
        cached = self._cached(symbol)
        if cached is not None:
            return cached
        try:
            return await self.flights.resolve((NAMESPACE, symbol), self._resolve_native)
        except Exception:
            logger.exception("Prices: unexpected error resolving %s", symbol)
            return self._fallback(symbol)

    async def _resolve_native(self) -> TokenPrice:
        symbol = self.native_symbol
        cached = self._cached(symbol)
        if cached is not None:
            return cached
        quote = await self._call(self.primary, "get_native_price")
        if quote is not None and quote.price_usd > 0:
            logger.info("Prices: %s $%s via %s", symbol, quote.price_usd, _provider_name(self.primary))
            return self._store(self._from_quote(symbol, quote, PriceSource.PRIMARY, quote.price_usd))
        logger.info("Prices: primary has no %s price, trying secondary", symbol)
        quote = await self._call(self.secondary, "get_native_price")
        if quote is not None and quote.price_usd > 0:
            logger.info("Prices: %s $%s via %s", symbol, quote.price_usd, _provider_name(self.secondary))
            return self._store(self._from_quote(symbol, quote, PriceSource.SECONDARY, quote.price_usd))
        return self._fallback(symbol)

    async def get_alph_price(self) -> float:
        price = await self.get_native_price()
        return price.price_usd

    async def _native_usd(self) -> float | None:
        price = await self.get_native_price()
        return price.price_usd if price.price_usd > 0 else None

    async def get_alph_price_with_change(self) -> NativePriceSnapshot:
        """Native price plus its 24h change, for dashboard headers.

        The change comes from the resolved quote when the provider supplied
        one, otherwise from the secondary provider (cached like prices).
        """

        price = await self.get_native_price()
        change = price.change_24h
        if change is None and price.price_usd > 0:
            key = (CHANGE_NAMESPACE, self.native_symbol)
            entry = self.cache.entry(key)
            if entry is not None:
                change = entry.value
            else:
                quote = await self._call(self.secondary, "get_native_price")
                if quote is not None and quote.change_24h is not None:
                    change = quote.change_24h
                    self.cache.set(key, change, self.settings.price_cache_ttl)
        return NativePriceSnapshot(price.price_usd, change, price.last_updated)

    # arbitrary tokens -------------------------------------------------------
    async def get_token_price(self, token_id: str, native_price: float | None = None) -> TokenPrice:
        if token_mappings.is_native(token_id):
            return await self.get_native_price()
        cached = self._cached(token_id)
        if cached is not None:
            return cached
        try:
            return await self.flights.resolve(
                (NAMESPACE, token_id), lambda: self._resolve_token(token_id, native_price)
            )
        except Exception:
            logger.exception("Prices: unexpected error resolving %s", token_id)
            return self._fallback(token_id)

    async def _resolve_token(self, token_id: str, native_price: float | None) -> TokenPrice:
        cached = self._cached(token_id)
        if cached is not None:
            return cached
        native_usd = native_price if native_price and native_price > 0 else await self._native_usd()
        quote = await self._call(self.primary, "get_token_price", token_id)
        if quote is not None and quote.price_usd > 0:
            return self._store(self._from_quote(token_id, quote, PriceSource.PRIMARY, native_usd))
        if self.secondary is not None and token_mappings.get_coingecko_id(token_id):
            logger.info("Prices: primary has no price for %s, trying secondary", token_id)
            quote = await self._call(self.secondary, "get_token_price", token_id)
            if quote is not None and quote.price_usd > 0:
                return self._store(self._from_quote(token_id, quote, PriceSource.SECONDARY, native_usd))
        return self._fallback(token_id)

    async def get_multiple_token_prices(self, token_ids: Iterable[str]) -> Dict[str, TokenPrice]:
        """Resolve many tokens at once; result keys mirror the requested ids.

        Cached entries are served first, the native coin is resolved once, the
        rest go through a single primary batch call (per-token lookups when the
        adapter has no batch endpoint), mapped leftovers through the secondary
        provider, and anything still unpriced becomes a stale or zero estimate.
        """

        requested: List[str] = list(dict.fromkeys(token_ids))
        results: Dict[str, TokenPrice] = {}
        native_ids: List[str] = []
        others: List[str] = []
        for token_id in requested:
            cached = self._cached(self._canonical(token_id))
            if cached is not None:
                results[token_id] = cached
            elif token_mappings.is_native(token_id):
                native_ids.append(token_id)
            else:
                others.append(token_id)
        if results:
            logger.info(
                "Prices: cache satisfied %d token(s); %d to fetch",
                len(results),
                len(native_ids) + len(others),
            )
        if native_ids or others:
            try:
                native = await self.get_native_price()
                for token_id in native_ids:
                    results[token_id] = native
                if others:
                    native_usd = native.price_usd if native.price_usd > 0 else None
                    results.update(await self._resolve_batch(others, native_usd))
            except Exception:
                logger.exception("Prices: batch resolution failed")
        for token_id in requested:
            if token_id not in results:
                results[token_id] = self._fallback(token_id)
        return {token_id: results[token_id] for token_id in requested}

    async def _resolve_batch(self, token_ids: List[str], native_usd: float | None) -> Dict[str, TokenPrice]:
        resolved: Dict[str, TokenPrice] = {}
        if self.primary is not None and not hasattr(self.primary, "get_token_prices"):
            singles = await asyncio.gather(
                *(self._call(self.primary, "get_token_price", token_id) for token_id in token_ids)
            )
            quotes = {token_id: quote for token_id, quote in zip(token_ids, singles) if quote is not None}
        else:
            quotes = await self._call(self.primary, "get_token_prices", token_ids) or {}
        for token_id in token_ids:
            quote = quotes.get(token_id)
            if quote is not None and quote.price_usd > 0:
                resolved[token_id] = self._store(
                    self._from_quote(token_id, quote, PriceSource.PRIMARY, native_usd)
                )
        missing = [
            token_id
            for token_id in token_ids
            if token_id not in resolved and token_mappings.get_coingecko_id(token_id)
        ]
        if missing and self.secondary is not None:
            logger.info("Prices: trying secondary for %d token(s)", len(missing))
            outcomes = await asyncio.gather(
                *(self._call(self.secondary, "get_token_price", token_id) for token_id in missing)
            )
            for token_id, quote in zip(missing, outcomes):
                if quote is not None and quote.price_usd > 0:
                    resolved[token_id] = self._store(
                        self._from_quote(token_id, quote, PriceSource.SECONDARY, native_usd)
                    )
        logger.info("Prices: fetched %d/%d token(s) via providers", len(resolved), len(token_ids))
        return resolved

    # housekeeping -----------------------------------------------------------
    def clear(self) -> None:
        self.cache.clear_namespace(NAMESPACE)
        self.cache.clear_namespace(CHANGE_NAMESPACE)
        self._last_known.clear()
        for state in self._providers.values():
            state.health.clear()
        logger.info("Prices: caches cleared")

    def cache_stats(self) -> Dict[str, Any]:
        stats = self.cache.stats(NAMESPACE)
        return {
            "token_prices": stats["live"],
            "expired": stats["expired"],
            "native_cached": self.cache.entry((NAMESPACE, self.native_symbol)) is not None,
            "native_in_flight": self.flights.in_flight((NAMESPACE, self.native_symbol)),
            "in_flight": self.flights.pending(),
            "last_known": len(self._last_known),
        }

    def provider_health(self) -> Dict[str, Dict[str, Any]]:
        now = self.clock()
        snapshot: Dict[str, Dict[str, Any]] = {}
        for name, state in self._providers.items():
            health, stats = state.health, state.stats
            snapshot[name] = {
                "cooldown_remaining": max(0.0, health.cooldown_until - now),
                "consecutive_failures": health.consecutive_failures,
                "last_status": health.last_status,
                "healthy": health.healthy and not health.in_cooldown(now),
                "successes": stats.successes,
                "failures": stats.failures,
                "empty": stats.empty,
                "skipped": stats.skipped,
                "last_latency_ms": stats.last_latency_ms,
                "last_error_status": stats.last_error_status,
                "last_error": stats.last_error,
            }
        return snapshot


__all__ = ["PriceProvider", "PriceResolver", "ProviderHealth", "ProviderStats"]
