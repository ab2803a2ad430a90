from decimal import Decimal

import pytest

from alphfolio.cache import TTLCache
from alphfolio.config import PricingSettings
from alphfolio.lp_detection import LPDetector
from alphfolio.lp_pricing import LPValuator
from alphfolio.models import PriceSource, TokenBalance, WalletRef
from alphfolio.portfolio import PortfolioAggregator
from alphfolio.prices import PriceResolver
from alphfolio.units import usd_value
from doubles import FakeProvider, FakeWalletSource

ONE = 10**18
ABX_ID = "27aa562d592758d73b33ef11ac5b574aea843a3e315a8d1bdef714c3d6a52cd5"


class _BrokenResolver:
    async def get_multiple_token_prices(self, token_ids):
        raise RuntimeError("resolver unavailable")


def _aggregator(clock, source, primary=None, **kwargs):
    primary = primary or FakeProvider("mobula", native=2.0, prices={ABX_ID: 0.4})
    cache = TTLCache(clock=clock)
    settings = PricingSettings()
    resolver = PriceResolver(primary, cache=cache, clock=clock, settings=settings, wall_clock=clock)
    valuator = LPValuator(resolver, cache=cache, settings=settings)
    detector = LPDetector({}, cache=cache)
    return PortfolioAggregator(
        source,
        resolver,
        valuator,
        detector=detector,
        clock=clock,
        settings=settings,
        cache=cache,
        wall_clock=clock,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_native_balances_are_summed_and_valued(clock):
    source = FakeWalletSource({"W1": ONE, "W2": ONE // 2})
    aggregator = _aggregator(clock, source)

    snapshot = await aggregator.aggregate(["W1", "W2"])

    assert snapshot.balances == {"W1": Decimal("1"), "W2": Decimal("0.5")}
    assert snapshot.native_total == 3 * ONE // 2
    assert snapshot.native_price.source is PriceSource.PRIMARY
    assert snapshot.native_usd == pytest.approx(3.0)
    assert snapshot.total_usd == pytest.approx(3.0)
    assert snapshot.errors == {}
    assert not snapshot.from_cache
    assert snapshot.wallets == ("W1", "W2")


@pytest.mark.asyncio
async def test_token_amounts_are_summed_exactly(clock):
    source = FakeWalletSource(
        {"W1": 0, "W2": 0},
        {
            "W1": [TokenBalance(ABX_ID, 123456789012345678, symbol="ABX")],
            "W2": [TokenBalance(ABX_ID, 1, symbol="ABX")],
        },
    )
    aggregator = _aggregator(clock, source)

    snapshot = await aggregator.aggregate(["W1", "W2"])

    holding = snapshot.holdings[ABX_ID]
    assert holding.amount == 123456789012345679
    assert holding.formatted_amount == "0.123456789012345679"
    assert holding.usd_value == usd_value(123456789012345679, 18, 0.4)
    assert holding.price_source == "primary-aggregator"
    assert [(c.address, c.amount) for c in holding.contributors] == [
        ("W1", 123456789012345678),
        ("W2", 1),
    ]
    assert [h.amount for h in holding.wallet_holdings()] == [123456789012345678, 1]


@pytest.mark.asyncio
async def test_partial_wallet_failure_keeps_other_data(clock):
    source = FakeWalletSource(
        {"W1": ONE, "W2": ONE, "W3": 0},
        {
            "W1": [TokenBalance(ABX_ID, ONE)],
            "W2": [TokenBalance(ABX_ID, ONE)],
            "W3": [TokenBalance("tok3", 2 * ONE)],
        },
        failing_tokens=["W2"],
    )
    primary = FakeProvider("mobula", native=2.0, prices={ABX_ID: 0.4, "tok3": 1.5})
    aggregator = _aggregator(clock, source, primary)

    snapshot = await aggregator.aggregate(["W1", "W2", "W3"])

    assert snapshot.errors == {"W2": "Tokens: tokens unavailable for W2"}
    assert snapshot.native_total == 2 * ONE
    assert snapshot.holdings[ABX_ID].amount == ONE
    assert snapshot.holdings["tok3"].usd_value == pytest.approx(3.0)
    assert snapshot.total_usd == pytest.approx(7.4)


@pytest.mark.asyncio
async def test_malformed_amounts_only_fail_their_wallet(clock):
    source = FakeWalletSource(
        {"W1": ONE, "W2": "-7", "W3": str(ONE)},
        {
            "W1": [TokenBalance(ABX_ID, ONE)],
            "W2": [TokenBalance(ABX_ID, "lots")],
            "W3": [TokenBalance("tok3", str(2 * ONE))],
        },
    )
    primary = FakeProvider("mobula", native=2.0, prices={ABX_ID: 0.4, "tok3": 1.5})
    aggregator = _aggregator(clock, source, primary)

    snapshot = await aggregator.aggregate(["W1", "W2", "W3"])

    assert set(snapshot.errors) == {"W2"}
    assert snapshot.errors["W2"].startswith("Balance: ")
    assert "Tokens: " in snapshot.errors["W2"]
    assert snapshot.native_amounts == {"W1": ONE, "W3": ONE}
    assert snapshot.holdings[ABX_ID].amount == ONE
    assert snapshot.holdings["tok3"].amount == 2 * ONE
    assert snapshot.total_usd == pytest.approx(7.4)


@pytest.mark.asyncio
async def test_snapshot_reused_during_cooldown(clock):
    source = FakeWalletSource({"W1": ONE, "W2": ONE})
    aggregator = _aggregator(clock, source)
    first = await aggregator.aggregate(["W1", "W2"])
    calls = len(source.calls)

    clock.advance(9)
    second = await aggregator.aggregate([WalletRef("W2"), {"address": "W1"}])

    assert second.from_cache
    assert second.total_usd == first.total_usd
    assert len(source.calls) == calls

    clock.advance(2)
    third = await aggregator.aggregate(["W1", "W2"])
    assert not third.from_cache
    assert len(source.calls) == 2 * calls


@pytest.mark.asyncio
async def test_cooldown_grows_when_nothing_loads(clock):
    source = FakeWalletSource(failing_balance=["W1"], failing_tokens=["W1"])
    aggregator = _aggregator(clock, source)

    snapshot = await aggregator.aggregate(["W1"])

    assert snapshot.errors["W1"].startswith("Balance: ")
    assert "Tokens: " in snapshot.errors["W1"]
    key = aggregator.wallet_key([WalletRef("W1")])
    assert aggregator.cooldown_for(key) == pytest.approx(15.0)

    source.failing_balance.clear()
    source.failing_tokens.clear()
    clock.advance(15)
    await aggregator.aggregate(["W1"])
    assert aggregator.cooldown_for(key) == pytest.approx(10.0)


@pytest.mark.asyncio
async def test_duplicate_wallets_fetched_once(clock):
    source = FakeWalletSource({"W1": ONE})
    aggregator = _aggregator(clock, source)

    snapshot = await aggregator.aggregate(["W1", WalletRef("W1"), {"address": "W1"}])

    assert snapshot.wallets == ("W1",)
    assert source.calls.count(("balance", "W1")) == 1


@pytest.mark.asyncio
async def test_same_address_on_two_networks_counts_twice(clock):
    mainnet = FakeWalletSource({"W1": ONE}, {"W1": [TokenBalance(ABX_ID, ONE)]})
    testnet = FakeWalletSource({"W1": 3 * ONE}, {"W1": [TokenBalance(ABX_ID, 2 * ONE)]})
    aggregator = _aggregator(clock, mainnet, network_sources={"testnet": testnet})

    snapshot = await aggregator.aggregate(["W1", {"address": "W1", "network": "testnet"}, WalletRef("W1")])

    assert snapshot.wallets == ("W1", "W1@testnet")
    assert snapshot.native_amounts == {"W1": ONE, "W1@testnet": 3 * ONE}
    assert snapshot.holdings[ABX_ID].amount == 3 * ONE
    assert mainnet.calls.count(("balance", "W1")) == 1
    assert testnet.calls.count(("balance", "W1")) == 1


@pytest.mark.asyncio
async def test_callers_cannot_change_the_cached_snapshot(clock):
    source = FakeWalletSource({"W1": 0}, {"W1": [TokenBalance(ABX_ID, ONE)]})
    aggregator = _aggregator(clock, source)

    first = await aggregator.aggregate(["W1"])
    first.holdings[ABX_ID].merge("W9", ONE)
    first.errors["W9"] = "edited"
    second = await aggregator.aggregate(["W1"])
    second.holdings[ABX_ID].merge("W9", ONE)
    third = await aggregator.aggregate(["W1"])

    assert third.from_cache
    assert third.holdings[ABX_ID].amount == ONE
    assert [c.address for c in third.holdings[ABX_ID].contributors] == ["W1"]
    assert third.errors == {}


@pytest.mark.asyncio
async def test_nft_has_no_usd_value(clock):
    primary = FakeProvider("mobula", native=2.0)
    source = FakeWalletSource(
        {"W1": 0},
        {"W1": [TokenBalance("nft-1", 1, decimals=0, is_nft=True, token_uri="ipfs://x", symbol="PUNK")]},
    )
    aggregator = _aggregator(clock, source, primary)

    snapshot = await aggregator.aggregate(["W1"])

    holding = snapshot.holdings["nft-1"]
    assert holding.is_nft
    assert holding.usd_value is None
    assert holding.price_source is None
    assert holding.token_uri == "ipfs://x"
    assert primary.count("batch") == 0
    assert snapshot.total_usd == 0.0


@pytest.mark.asyncio
async def test_lp_positions_use_pool_valuation(clock):
    primary = FakeProvider("mobula", native=2.0)
    source = FakeWalletSource(
        {"W1": 0},
        {"W1": [TokenBalance("lp-1", 2 * ONE, symbol="ABX-LP", name="AlphBanx LP")]},
    )
    aggregator = _aggregator(clock, source, primary)

    snapshot = await aggregator.aggregate(["W1"])

    holding = snapshot.holdings["lp-1"]
    assert holding.is_lp
    assert holding.price_source == "estimated"
    assert holding.unit_price == pytest.approx(1.0)
    assert holding.usd_value == pytest.approx(2.0)
    assert primary.count("batch") == 0


@pytest.mark.asyncio
async def test_aggregate_never_raises(clock):
    source = FakeWalletSource({"W1": ONE})
    aggregator = _aggregator(clock, source)
    good = await aggregator.aggregate(["W1"])

    aggregator.resolver = _BrokenResolver()
    aggregator.invalidate(["W1"])
    fallback = await aggregator.aggregate(["W1"])
    assert fallback.from_cache
    assert fallback.total_usd == good.total_usd

    empty = await aggregator.aggregate(["W9", "W1"])
    assert empty.holdings == {}
    assert empty.errors == {"*": "resolver unavailable"}
