"""Mobula market-query adapter (primary price aggregator)."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Sequence

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..config import PricingSettings
from ..http import request_json
from .base import ProviderQuote, acquire_session, coerce_float

logger = logging.getLogger(__name__)

PROVIDER = "mobula"
QUERY_PATH = "/market/query/token"


class MobulaPairToken(BaseModel):
    model_config = ConfigDict(extra="ignore")

    address: str | None = None
    symbol: str | None = None
    price: float | None = None


class MobulaPair(BaseModel):
    model_config = ConfigDict(extra="ignore")

    address: str | None = None
    liquidity: float = 0.0
    price: float = 0.0
    volume24h: float | None = None
    token0: MobulaPairToken | None = None
    token1: MobulaPairToken | None = None

    @field_validator("liquidity", "price", mode="before")
    @classmethod
    def _numeric_or_zero(cls, value: Any) -> float:
        return coerce_float(value) or 0.0


class MobulaToken(BaseModel):
    model_config = ConfigDict(extra="ignore")

    symbol: str = ""
    name: str | None = None
    address: str | None = None
    blockchain: str | None = None
    decimals: int | None = None
    price: float | None = None
    volume_24h: float | None = None
    coingecko_id: str | None = None
    pairs: List[MobulaPair] = Field(default_factory=list)

    @field_validator("price", "volume_24h", mode="before")
    @classmethod
    def _numeric(cls, value: Any) -> float | None:
        return coerce_float(value)

    @field_validator("pairs", mode="before")
    @classmethod
    def _pairs_list(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []

    def best_pair(self) -> MobulaPair | None:
        if not self.pairs:
            return None
        best = self.pairs[0]
        for pair in self.pairs[1:]:
            if pair.liquidity > best.liquidity:
                best = pair
        return best

    def best_price(self) -> float | None:
        """Direct quote when positive, else the deepest pair's price."""

        if self.price is not None and self.price > 0:
            return self.price
        pair = self.best_pair()
        if pair is not None and pair.price > 0:
            return pair.price
        return None


def _token_entries(payload: Any) -> List[MobulaToken]:
    if isinstance(payload, dict):
        data = payload.get("data")
    else:
        data = payload
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return []
    tokens: List[MobulaToken] = []
    for raw in data:
        if not isinstance(raw, dict):
            continue
        try:
            tokens.append(MobulaToken.model_validate(raw))
        except ValidationError as exc:
            logger.debug("Mobula: skipping malformed entry: %s", exc)
    return tokens


class MobulaClient:
    """Query Mobula by chain + symbol or chain + address.

    Every ``get_*`` method returns ``None`` (or omits the key) when Mobula has
    no usable price and raises :class:`~alphfolio.http.UpstreamError` only for
    transport or HTTP failures.
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

    def _headers(self) -> Dict[str, str] | None:
        key = self.settings.mobula_api_key
        return {"Authorization": key} if key else None

    async def query_token(
        self,
        *,
        symbol: str | None = None,
        address: str | None = None,
        limit: int = 1,
    ) -> List[MobulaToken]:
        params: Dict[str, Any] = {"blockchain": self.settings.blockchain}
        if symbol:
            params["symbol"] = symbol
        if address:
            params["address"] = address
        params["limit"] = str(limit)
        session = await acquire_session(self._session, self.settings.http_timeout)
        payload = await request_json(
            session,
            f"{self.settings.mobula_base_url}{QUERY_PATH}",
            PROVIDER,
            params=params,
            headers=self._headers(),
            attempts=self.settings.retry_attempts,
            backoff=self.settings.retry_backoff,
        )
        return _token_entries(payload)

    def _quote(self, token_id: str, token: MobulaToken) -> ProviderQuote | None:
        price = token.best_price()
        if price is None:
            return None
        pair = token.best_pair()
        return ProviderQuote(
            token_id=token_id,
            symbol=token.symbol or token_id[:8].upper(),
            price_usd=price,
            provider=PROVIDER,
            as_of=self._now(),
            volume_24h=token.volume_24h,
            liquidity=pair.liquidity if pair is not None else None,
        )

    async def get_native_price(self) -> ProviderQuote | None:
        symbol = self.settings.native_symbol
        tokens = await self.query_token(symbol=symbol, limit=1)
        if not tokens:
            logger.info("Mobula: no %s price data found", symbol)
            return None
        return self._quote(symbol, tokens[0])

    async def get_token_price(self, address: str) -> ProviderQuote | None:
        tokens = await self.query_token(address=address, limit=1)
        if not tokens:
            return None
        return self._quote(address, tokens[0])

    async def get_token_prices(self, addresses: Iterable[str]) -> Dict[str, ProviderQuote]:
        """Price many tokens with a single market query.

        Mobula has no multi-address filter, so the chain's top
        ``mobula_batch_limit`` tokens are fetched and matched by address.
        """

        wanted: Sequence[str] = [addr for addr in dict.fromkeys(addresses) if addr]
        if not wanted:
            return {}
        tokens = await self.query_token(limit=self.settings.mobula_batch_limit)
        by_address = {token.address: token for token in tokens if token.address}
        quotes: Dict[str, ProviderQuote] = {}
        for address in wanted:
            token = by_address.get(address)
            if token is None:
                continue
            quote = self._quote(address, token)
            if quote is not None:
                quotes[address] = quote
        logger.debug("Mobula: batch matched %d/%d token(s)", len(quotes), len(wanted))
        return quotes


__all__ = ["MobulaClient", "MobulaPair", "MobulaToken"]
