"""USD valuation of liquidity-pool token positions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Protocol, Sequence

from . import token_mappings
from .cache import Clock, TTLCache
from .config import PricingSettings
from .models import AssetClass, AssetShare, PoolValuation, ValuationSource
from .units import to_units

logger = logging.getLogger(__name__)

NAMESPACE = "lp"

CALCULATED_LABEL = "Alephium DEX"
ESTIMATED_LABEL = "Unknown DEX"
UNKNOWN_SYMBOL = "UNKNOWN"

# heuristic unit prices relative to the native coin
MAPPED_NATIVE_MULTIPLE = 0.5
UNKNOWN_NATIVE_MULTIPLE = 0.1
UNPAIRED_NATIVE_MULTIPLE = 0.5


@dataclass(frozen=True, slots=True)
class PoolReserves:
    reserve0: int
    reserve1: int
    total_supply: int
    decimals0: int = 18
    decimals1: int = 18


class PoolReserveSource(Protocol):
    async def get_reserves(self, pool_address: str) -> PoolReserves | None: ...


class UnavailableReserveSource:
    """Reserve source for deployments without on-chain pool reads."""

    async def get_reserves(self, pool_address: str) -> PoolReserves | None:
        logger.debug("LP pricing: no reserve data source for pool %s", pool_address)
        return None


def classify_asset(symbol: str, native_symbol: str = token_mappings.NATIVE_TOKEN_ID) -> AssetClass:
    cleaned = (symbol or "").strip().upper()
    if cleaned == native_symbol.upper() or token_mappings.is_native(cleaned):
        return AssetClass.NATIVE
    if token_mappings.is_stablecoin_symbol(cleaned):
        return AssetClass.STABLECOIN
    if token_mappings.is_token_mapped(symbol) or token_mappings.is_token_mapped(cleaned):
        return AssetClass.MAPPED
    return AssetClass.UNKNOWN


def estimated_unit_price(asset_class: AssetClass, native_price: float) -> float:
    if asset_class is AssetClass.STABLECOIN:
        return 1.0
    if asset_class is AssetClass.NATIVE:
        return native_price
    if asset_class is AssetClass.MAPPED:
        return native_price * MAPPED_NATIVE_MULTIPLE
    return native_price * UNKNOWN_NATIVE_MULTIPLE


class LPValuator:
    """Value LP positions from pool reserves when possible, else by heuristic.

    Reserve-based (``calculated``) valuations are cached per whole LP token
    and rescaled linearly for other amounts until they expire.  Heuristic
    (``estimated``) valuations are recomputed on every call and never cached,
    so an estimate can never be served where a calculated value is expected.
    """

    def __init__(
        self,
        resolver: Any,
        *,
        reserves: PoolReserveSource | None = None,
        cache: TTLCache | None = None,
        clock: Clock | None = None,
        settings: PricingSettings | None = None,
    ) -> None:
        self.settings = settings or PricingSettings()
        self.resolver = resolver
        self.reserves: PoolReserveSource = reserves or UnavailableReserveSource()
        self.cache = cache if cache is not None else TTLCache(clock=clock)
        self.unit_base = 10 ** self.settings.lp_unit_decimals

    def _units(self, raw_amount: int) -> float:
        return float(to_units(int(raw_amount), self.settings.lp_unit_decimals))

    async def value_of(
        self,
        token_id: str,
        raw_amount: int,
        pool_address: str | None = None,
        underlying: Sequence[str] | None = None,
        *,
        dex_name: str | None = None,
    ) -> PoolValuation:
        cached = self.cache.get((NAMESPACE, token_id))
        if cached is not None:
            logger.debug("LP pricing: scaling cached unit value for %s", token_id)
            return cached.scaled(self._units(raw_amount))
        native_price = await self.resolver.get_alph_price()
        try:
            if pool_address and underlying and len(underlying) == 2:
                per_unit = await self._from_reserves(token_id, pool_address, underlying, dex_name)
                if per_unit is not None:
                    self.update_cache(token_id, per_unit)
                    return per_unit.scaled(self._units(raw_amount))
        except Exception:
            logger.exception("LP pricing: reserve valuation failed for %s", token_id)
        return self.estimate(token_id, raw_amount, native_price, underlying)

    async def unit_value(
        self,
        token_id: str,
        pool_address: str | None = None,
        underlying: Sequence[str] | None = None,
    ) -> PoolValuation:
        """Valuation of exactly one whole LP token."""

        return await self.value_of(token_id, self.unit_base, pool_address, underlying)

    async def _from_reserves(
        self,
        token_id: str,
        pool_address: str,
        underlying: Sequence[str],
        dex_name: str | None,
    ) -> PoolValuation | None:
        reserves = await self.reserves.get_reserves(pool_address)
        if reserves is None or reserves.total_supply <= 0:
            return None
        prices = await self.resolver.get_multiple_token_prices(list(underlying))
        price0 = prices.get(underlying[0])
        price1 = prices.get(underlying[1])
        if price0 is None or price1 is None or price0.price_usd <= 0 or price1.price_usd <= 0:
            logger.info("LP pricing: underlying of %s unpriced; estimating instead", token_id)
            return None
        # share of each reserve backing one whole LP token
        share = Decimal(self.unit_base) / Decimal(reserves.total_supply)
        amount0 = to_units(reserves.reserve0, reserves.decimals0) * share
        amount1 = to_units(reserves.reserve1, reserves.decimals1) * share
        value0 = float(amount0) * price0.price_usd
        value1 = float(amount1) * price1.price_usd
        return PoolValuation(
            token_id,
            value0 + value1,
            AssetShare(price0.symbol, float(amount0), value0),
            AssetShare(price1.symbol, float(amount1), value1),
            ValuationSource.CALCULATED,
            dex_name or CALCULATED_LABEL,
        )

    def estimate(
        self,
        token_id: str,
        raw_amount: int,
        native_price: float,
        underlying: Sequence[str] | None = None,
    ) -> PoolValuation:
        units = self._units(raw_amount)
        if underlying and len(underlying) == 2:
            symbol0, symbol1 = underlying[0], underlying[1]
            price0 = estimated_unit_price(classify_asset(symbol0, self.settings.native_symbol), native_price)
            price1 = estimated_unit_price(classify_asset(symbol1, self.settings.native_symbol), native_price)
            total = units * (price0 + price1) / 2
        else:
            symbol0 = symbol1 = UNKNOWN_SYMBOL
            total = units * native_price * UNPAIRED_NATIVE_MULTIPLE
        half = total * 0.5
        return PoolValuation(
            token_id,
            total,
            AssetShare(symbol0, units * 0.5, half),
            AssetShare(symbol1, units * 0.5, half),
            ValuationSource.ESTIMATED,
            ESTIMATED_LABEL,
        )

    def update_cache(self, token_id: str, per_unit: PoolValuation) -> None:
        self.cache.set((NAMESPACE, token_id), per_unit, self.settings.lp_cache_ttl)

    def cache_snapshot(self) -> Dict[str, PoolValuation]:
        snapshot: Dict[str, PoolValuation] = {}
        for key in self.cache.keys(NAMESPACE):
            value = self.cache.get(key)
            if value is not None:
                snapshot[key[1]] = value
        return snapshot

    def cleanup_expired(self) -> int:
        return self.cache.cleanup_expired()

    def clear(self) -> None:
        self.cache.clear_namespace(NAMESPACE)


__all__ = [
    "LPValuator",
    "PoolReserveSource",
    "PoolReserves",
    "UnavailableReserveSource",
    "classify_asset",
    "estimated_unit_price",
]
