from __future__ import annotations

from typing import Any, Dict, List

import aiohttp
import orjson
import pytest

from alphfolio.config import PricingSettings
from alphfolio.http import UpstreamError
from alphfolio.providers.coingecko import CoinGeckoClient, history_interval
from alphfolio.providers.mobula import MobulaClient, MobulaToken

ABX_ID = "27aa562d592758d73b33ef11ac5b574aea843a3e315a8d1bdef714c3d6a52cd5"


class _DummyResponse:
    def __init__(
        self,
        payload: Any,
        *,
        status: int = 200,
        headers: Dict[str, str] | None = None,
    ):
        self._payload = payload
        self.status = status
        self.headers = headers or {}

    async def __aenter__(self) -> "_DummyResponse":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def read(self) -> bytes:
        return orjson.dumps(self._payload)

    async def text(self) -> str:
        return orjson.dumps(self._payload).decode()


class _DummySession:
    def __init__(self, responses: List[Any]):
        self._responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def get(self, url: str, *, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {}), "headers": dict(headers or {})})
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


def _settings(**overrides) -> PricingSettings:
    return PricingSettings(retry_backoff=0.0, **overrides)


@pytest.mark.asyncio
async def test_mobula_native_price_prefers_direct_quote():
    session = _DummySession(
        [_DummyResponse({"data": [{"symbol": "ALPH", "price": 2.0, "volume_24h": 1234.5, "pairs": []}]})]
    )
    client = MobulaClient(_settings(), session=session)

    quote = await client.get_native_price()

    assert quote.price_usd == 2.0
    assert quote.token_id == "ALPH"
    assert quote.volume_24h == 1234.5
    call = session.calls[0]
    assert call["url"] == "https://api.mobula.io/api/1/market/query/token"
    assert call["params"] == {"blockchain": "alephium", "symbol": "ALPH", "limit": "1"}


@pytest.mark.asyncio
async def test_mobula_falls_back_to_deepest_pair():
    payload = {
        "data": [
            {
                "symbol": "ABX",
                "address": ABX_ID,
                "price": 0,
                "pairs": [
                    {"liquidity": 100, "price": 0.5},
                    {"liquidity": 5000, "price": 0.42},
                    {"liquidity": "oops", "price": 9.0},
                ],
            }
        ]
    }
    client = MobulaClient(_settings(), session=_DummySession([_DummyResponse(payload)]))

    quote = await client.get_token_price(ABX_ID)

    assert quote.price_usd == 0.42
    assert quote.liquidity == 5000
    assert quote.symbol == "ABX"


@pytest.mark.asyncio
async def test_mobula_no_data_is_none_not_error():
    client = MobulaClient(_settings(), session=_DummySession([_DummyResponse({"data": []})]))
    assert await client.get_token_price("deadbeef") is None


def test_mobula_token_without_any_price():
    token = MobulaToken.model_validate({"symbol": "X", "price": None, "pairs": [{"liquidity": 1, "price": 0}]})
    assert token.best_price() is None


@pytest.mark.asyncio
async def test_mobula_server_errors_are_retried_then_raised():
    session = _DummySession([_DummyResponse({}, status=502), _DummyResponse({}, status=503)])
    client = MobulaClient(_settings(retry_attempts=2), session=session)

    with pytest.raises(UpstreamError) as excinfo:
        await client.get_native_price()

    assert excinfo.value.status == 503
    assert excinfo.value.provider == "mobula"
    assert len(session.calls) == 2


@pytest.mark.asyncio
async def test_mobula_client_errors_are_not_retried():
    session = _DummySession([_DummyResponse({}, status=429, headers={"Retry-After": "7"})])
    client = MobulaClient(_settings(retry_attempts=3), session=session)

    with pytest.raises(UpstreamError) as excinfo:
        await client.get_native_price()

    assert excinfo.value.status == 429
    assert excinfo.value.retry_after == 7.0
    assert len(session.calls) == 1


@pytest.mark.asyncio
async def test_network_failure_surfaces_without_status():
    session = _DummySession(
        [aiohttp.ClientConnectionError("reset"), aiohttp.ClientConnectionError("reset")]
    )
    client = MobulaClient(_settings(retry_attempts=2), session=session)

    with pytest.raises(UpstreamError) as excinfo:
        await client.get_token_price(ABX_ID)

    assert excinfo.value.status is None


@pytest.mark.asyncio
async def test_mobula_batch_is_one_query_filtered_by_address():
    payload = {
        "data": [
            {"symbol": "ABX", "address": ABX_ID, "price": 0.4},
            {"symbol": "OTHER", "address": "not-requested", "price": 9.0},
            {"symbol": "NOPRICE", "address": "aa", "price": 0},
        ]
    }
    session = _DummySession([_DummyResponse(payload)])
    client = MobulaClient(_settings(mobula_api_key="secret"), session=session)

    quotes = await client.get_token_prices([ABX_ID, "aa", "missing", ABX_ID])

    assert set(quotes) == {ABX_ID}
    assert quotes[ABX_ID].price_usd == 0.4
    assert len(session.calls) == 1
    assert session.calls[0]["params"] == {"blockchain": "alephium", "limit": "100"}
    assert session.calls[0]["headers"] == {"Authorization": "secret"}


@pytest.mark.asyncio
async def test_coingecko_simple_price_for_mapped_token():
    payload = {"alphbanx": {"usd": 0.05, "usd_24h_change": -1.5, "last_updated_at": 1700000000}}
    session = _DummySession([_DummyResponse(payload)])
    client = CoinGeckoClient(_settings(), session=session)

    quote = await client.get_token_price(ABX_ID)

    assert quote.price_usd == 0.05
    assert quote.symbol == "ABX"
    assert quote.change_24h == -1.5
    assert quote.as_of == 1700000000
    assert session.calls[0]["url"].endswith("/simple/price")
    assert session.calls[0]["params"]["ids"] == "alphbanx"
    assert session.calls[0]["params"]["include_24hr_change"] == "true"


@pytest.mark.asyncio
async def test_coingecko_unmapped_token_makes_no_request():
    session = _DummySession([])
    client = CoinGeckoClient(_settings(), session=session)

    assert await client.get_token_price("unmapped-token") is None
    assert session.calls == []


@pytest.mark.asyncio
async def test_coingecko_missing_entry_is_none():
    client = CoinGeckoClient(_settings(), session=_DummySession([_DummyResponse({})]))
    assert await client.get_native_price() is None


@pytest.mark.asyncio
async def test_coingecko_markets_batch():
    payload = [
        {"id": "alephium", "symbol": "alph", "current_price": 2.0, "price_change_percentage_24h": 3.0},
        {"id": "alphbanx", "symbol": "abx", "current_price": None},
        {"symbol": "broken"},
    ]
    session = _DummySession([_DummyResponse(payload)])
    client = CoinGeckoClient(_settings(), session=session)

    quotes = await client.get_token_prices(["ALPH", ABX_ID, "unmapped"])

    assert set(quotes) == {"ALPH"}
    assert quotes["ALPH"].change_24h == 3.0
    assert session.calls[0]["params"]["ids"] == "alephium,alphbanx"


@pytest.mark.asyncio
async def test_coingecko_price_history():
    payload = {"prices": [[1700000000000, 1.9], [1700003600000, 2.1], ["bad"]]}
    session = _DummySession([_DummyResponse(payload)])
    client = CoinGeckoClient(_settings(), session=session)

    points = await client.price_history("alephium", days=14)

    assert [(p.timestamp_ms, p.price) for p in points] == [(1700000000000, 1.9), (1700003600000, 2.1)]
    assert session.calls[0]["url"].endswith("/coins/alephium/market_chart")
    assert session.calls[0]["params"]["interval"] == "4h"


@pytest.mark.parametrize("days, interval", [(1, "1h"), (7, "1h"), (8, "4h"), (30, "4h"), (31, "daily")])
def test_history_interval(days, interval):
    assert history_interval(days) == interval
