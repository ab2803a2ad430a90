"""Wire the pricing and portfolio components together."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterable, Sequence

from .cache import Clock, TTLCache
from .config import PricingSettings, load_settings
from .http import close_session
from .logging_utils import suppressed_warnings
from .lp_detection import LPDetector
from .lp_pricing import LPValuator, PoolReserveSource
from .models import NativePriceSnapshot, PoolValuation, PortfolioSnapshot, TokenPrice
from .portfolio import PortfolioAggregator
from .prices import PriceResolver
from .providers import CoinGeckoClient, MobulaClient
from .single_flight import SingleFlight
from .wallet_client import RateLimitedWalletClient, WalletDataSource

logger = logging.getLogger(__name__)


class PortfolioService:
    """Outbound interface used by dashboards and widgets.

    One :class:`TTLCache` and one :class:`SingleFlight` are shared by every
    component, each under its own key namespace.
    """

    def __init__(
        self,
        resolver: PriceResolver,
        valuator: LPValuator,
        detector: LPDetector,
        aggregator: PortfolioAggregator,
        *,
        cache: TTLCache,
        flights: SingleFlight,
        wallet_client: RateLimitedWalletClient | None = None,
    ) -> None:
        self.resolver = resolver
        self.valuator = valuator
        self.detector = detector
        self.aggregator = aggregator
        self.cache = cache
        self.flights = flights
        self.wallet_client = wallet_client

    @classmethod
    def from_settings(
        cls,
        source: WalletDataSource,
        settings: PricingSettings | None = None,
        *,
        clock: Clock = time.monotonic,
        primary: Any | None = None,
        secondary: Any | None = None,
        reserves: PoolReserveSource | None = None,
        rate_limit: bool = True,
    ) -> "PortfolioService":
        settings = settings or load_settings()
        cache = TTLCache(clock=clock)
        flights = SingleFlight()
        resolver = PriceResolver(
            primary if primary is not None else MobulaClient(settings),
            secondary if secondary is not None else CoinGeckoClient(settings),
            cache=cache,
            flights=flights,
            clock=clock,
            settings=settings,
        )
        valuator = LPValuator(resolver, reserves=reserves, cache=cache, clock=clock, settings=settings)
        detector = LPDetector(cache=cache, clock=clock, ttl=settings.lp_detection_ttl)
        wallet_client = None
        if rate_limit:
            wallet_client = RateLimitedWalletClient(
                source, clock=clock, settings=settings, cache=cache, flights=flights
            )
            source = wallet_client
        aggregator = PortfolioAggregator(
            source,
            resolver,
            valuator,
            detector=detector,
            clock=clock,
            settings=settings,
            cache=cache,
            flights=flights,
        )
        return cls(
            resolver,
            valuator,
            detector,
            aggregator,
            cache=cache,
            flights=flights,
            wallet_client=wallet_client,
        )

    async def get_alph_price(self) -> float:
        return await self.resolver.get_alph_price()

    async def get_alph_price_with_change(self) -> NativePriceSnapshot:
        return await self.resolver.get_alph_price_with_change()

    async def get_token_price(self, token_id: str) -> TokenPrice:
        return await self.resolver.get_token_price(token_id)

    async def get_multiple_token_prices(self, token_ids: Iterable[str]) -> Dict[str, TokenPrice]:
        return await self.resolver.get_multiple_token_prices(token_ids)

    async def value_lp_token(
        self,
        token_id: str,
        raw_amount: int,
        pool_address: str | None = None,
        underlying: Sequence[str] | None = None,
    ) -> PoolValuation:
        if pool_address is None and underlying is None:
            pool = self.detector.resolve_pool_info(token_id)
            if pool is not None:
                pool_address = pool.pool_address
                underlying = (pool.token0, pool.token1)
        return await self.valuator.value_of(token_id, raw_amount, pool_address, underlying)

    async def aggregate(self, wallets: Iterable[Any]) -> PortfolioSnapshot:
        return await self.aggregator.aggregate(wallets)

    def cache_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "cache": self.cache.stats(),
            "prices": self.resolver.cache_stats(),
            "lp_detection": self.detector.cache_stats(),
            "lp_pricing": len(self.valuator.cache_snapshot()),
            "in_flight": self.flights.pending(),
            "providers": self.resolver.provider_health(),
            "suppressed_warnings": suppressed_warnings(),
        }
        if self.wallet_client is not None:
            stats["wallet_api"] = self.wallet_client.rate_limit_status()
        return stats

    def clear_caches(self) -> None:
        self.resolver.clear()
        self.valuator.clear()
        self.detector.clear()
        self.aggregator.invalidate()
        if self.wallet_client is not None:
            self.wallet_client.clear()
        removed = self.cache.cleanup_expired()
        logger.info("Service: caches cleared (%d expired entries dropped)", removed)

    async def aclose(self) -> None:
        await close_session()


__all__ = ["PortfolioService"]
