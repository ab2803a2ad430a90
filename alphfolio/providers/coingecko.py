"""CoinGecko adapter (secondary market-data provider)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List

import aiohttp
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .. import token_mappings
from ..config import PricingSettings
from ..http import request_json
from .base import ProviderQuote, acquire_session, coerce_float

logger = logging.getLogger(__name__)

PROVIDER = "coingecko"


class SimplePrice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    usd: float | None = None
    usd_24h_change: float | None = None
    last_updated_at: float | None = None

    @field_validator("usd", "usd_24h_change", "last_updated_at", mode="before")
    @classmethod
    def _numeric(cls, value: Any) -> float | None:
        return coerce_float(value)


class CoinGeckoMarket(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    symbol: str = ""
    name: str | None = None
    current_price: float | None = None
    price_change_percentage_24h: float | None = None
    market_cap_rank: int | None = None
    total_volume: float | None = None

    @field_validator("current_price", "price_change_percentage_24h", "total_volume", mode="before")
    @classmethod
    def _numeric(cls, value: Any) -> float | None:
        return coerce_float(value)


@dataclass(frozen=True, slots=True)
class PricePoint:
    timestamp_ms: int
    price: float


def history_interval(days: int) -> str:
    """Coarser sampling for longer ranges keeps the payload small."""

    if days > 30:
        return "daily"
    if days > 7:
        return "4h"
    return "1h"


class CoinGeckoClient:
    """Query CoinGecko by provider coin id.

    Token ids are translated through :mod:`alphfolio.token_mappings`; an
    unmapped token is ``None`` without any request being made.
    """

    name = PROVIDER

    def __init__(
        self,
        settings: PricingSettings | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        now: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or PricingSettings()
        self._session = session
        self._now = now

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        session = await acquire_session(self._session, self.settings.http_timeout)
        return await request_json(
            session,
            f"{self.settings.coingecko_base_url}{path}",
            PROVIDER,
            params=params,
            attempts=self.settings.retry_attempts,
            backoff=self.settings.retry_backoff,
        )

    async def simple_price(self, coin_id: str) -> SimplePrice | None:
        payload = await self._get(
            "/simple/price",
            {
                "ids": coin_id,
                "vs_currencies": "usd",
                "include_24hr_change": "true",
                "include_last_updated_at": "true",
            },
        )
        if not isinstance(payload, dict):
            return None
        entry = payload.get(coin_id)
        if not isinstance(entry, dict):
            return None
        try:
            price = SimplePrice.model_validate(entry)
        except ValidationError as exc:
            logger.debug("CoinGecko: malformed simple/price entry for %s: %s", coin_id, exc)
            return None
        if price.usd is None or price.usd <= 0:
            return None
        return price

    async def markets(self, coin_ids: Iterable[str]) -> Dict[str, CoinGeckoMarket]:
        ids = [cid for cid in dict.fromkeys(coin_ids) if cid]
        if not ids:
            return {}
        payload = await self._get(
            "/coins/markets",
            {
                "vs_currency": "usd",
                "ids": ",".join(ids),
                "order": "market_cap_desc",
                "per_page": str(len(ids)),
                "page": "1",
                "sparkline": "false",
                "price_change_percentage": "24h",
            },
        )
        if not isinstance(payload, list):
            return {}
        result: Dict[str, CoinGeckoMarket] = {}
        for raw in payload:
            if not isinstance(raw, dict):
                continue
            try:
                market = CoinGeckoMarket.model_validate(raw)
            except ValidationError as exc:
                logger.debug("CoinGecko: skipping malformed market entry: %s", exc)
                continue
            result[market.id] = market
        return result

    def _quote_from_simple(self, token_id: str, symbol: str, price: SimplePrice) -> ProviderQuote:
        return ProviderQuote(
            token_id=token_id,
            symbol=symbol,
            price_usd=float(price.usd or 0.0),
            provider=PROVIDER,
            as_of=price.last_updated_at or self._now(),
            change_24h=price.usd_24h_change,
        )

    async def get_token_price(self, token_id: str) -> ProviderQuote | None:
        mapping = token_mappings.get_mapping(token_id)
        if mapping is None:
            return None
        price = await self.simple_price(mapping.coingecko_id)
        if price is None:
            return None
        return self._quote_from_simple(token_id, mapping.symbol, price)

    async def get_native_price(self) -> ProviderQuote | None:
        return await self.get_token_price(self.settings.native_symbol)

    async def get_token_prices(self, token_ids: Iterable[str]) -> Dict[str, ProviderQuote]:
        """Batch variant backed by ``/coins/markets``; unmapped ids are skipped."""

        mapped = {}
        for token_id in dict.fromkeys(token_ids):
            mapping = token_mappings.get_mapping(token_id)
            if mapping is not None:
                mapped[token_id] = mapping
        if not mapped:
            return {}
        markets = await self.markets(m.coingecko_id for m in mapped.values())
        quotes: Dict[str, ProviderQuote] = {}
        for token_id, mapping in mapped.items():
            market = markets.get(mapping.coingecko_id)
            if market is None or not market.current_price or market.current_price <= 0:
                continue
            quotes[token_id] = ProviderQuote(
                token_id=token_id,
                symbol=mapping.symbol,
                price_usd=market.current_price,
                provider=PROVIDER,
                as_of=self._now(),
                volume_24h=market.total_volume,
                change_24h=market.price_change_percentage_24h,
            )
        return quotes

    async def price_history(self, coin_id: str = "alephium", days: int = 7) -> List[PricePoint]:
        payload = await self._get(
            f"/coins/{coin_id}/market_chart",
            {"vs_currency": "usd", "days": str(days), "interval": history_interval(days)},
        )
        if not isinstance(payload, dict):
            return []
        points: List[PricePoint] = []
        for row in payload.get("prices") or []:
            if not isinstance(row, (list, tuple)) or len(row) < 2:
                continue
            ts = coerce_float(row[0])
            price = coerce_float(row[1])
            if ts is None or price is None:
                continue
            points.append(PricePoint(int(ts), price))
        return points


__all__ = ["CoinGeckoClient", "CoinGeckoMarket", "PricePoint", "SimplePrice", "history_interval"]
