from types import SimpleNamespace

import pytest

from alphfolio.cache import TTLCache
from alphfolio.lp_detection import LPDetector, PoolInfo, match_pattern

POOL = PoolInfo("pool-1", "ALPH", "USDT", "ALPH", "USDT", "Alephium DEX")


def _detector(clock, registry=None):
    return LPDetector({} if registry is None else registry, cache=TTLCache(clock=clock), ttl=600)


@pytest.mark.parametrize(
    "symbol, name, expected",
    [
        ("ALPH-USDT", "Alephium Tether", ("ALEPHIUM_DEX", "Alephium DEX")),
        ("alph_usdc", "whatever", ("ALEPHIUM_DEX", "Alephium DEX")),
        ("LP-ALPH-ABX", "Pair", ("UNISWAP_V2_STYLE", "Uniswap V2 Style")),
        ("SLP_WETH", "Sushi", ("UNISWAP_V2_STYLE", "Uniswap V2 Style")),
        ("ABX-LP", "AlphBanx", ("GENERIC_LP", "Unknown DEX")),
        ("FOO", "Foo_POOL", ("GENERIC_LP", "Unknown DEX")),
        ("ABX", "AlphBanx", None),
    ],
)
def test_match_pattern(symbol, name, expected):
    assert match_pattern(symbol, name) == expected


def test_registry_entry_wins(clock):
    detector = _detector(clock, {"lp-token": POOL})

    info = detector.detect("lp-token")

    assert info.is_lp_token
    assert info.pool_info is POOL
    assert info.underlying_tokens == ("ALPH", "USDT")
    assert info.display_symbol == "ALPH-USDT"
    assert info.display_name == "ALPH/USDT LP"
    assert detector.resolve_pool_info("lp-token") is POOL


def test_pattern_match_builds_display_symbol(clock):
    detector = _detector(clock)

    info = detector.detect("t1", {"symbol": "ALPH-USDT", "name": "Alephium Tether"})
    assert info.is_lp_token
    assert info.dex_protocol == "Alephium DEX"
    assert info.display_symbol == "ALPH-USDT-LP"
    assert info.display_name == "Alephium Tether (LP Token)"

    info = detector.detect("t2", SimpleNamespace(symbol="LP-ALPH-ABX", name="Pair token"))
    assert info.display_symbol == "LP-ALPH-ABX"


@pytest.mark.parametrize(
    "metadata",
    [
        None,
        {"symbol": "LP", "name": "Some pool"},
        {"symbol": "ABX-LP", "name": "AB"},
        {"symbol": "TOKEN-1-LP", "name": "Placeholder"},
        {"symbol": "ABX", "name": "AlphBanx"},
    ],
)
def test_not_lp(clock, metadata):
    assert not _detector(clock).detect("t", metadata).is_lp_token


def test_nft_is_never_lp_and_never_cached(clock):
    detector = _detector(clock)

    info = detector.detect("nft", {"symbol": "ABX-LP", "name": "AlphBanx LP"}, is_nft=True)

    assert not info.is_lp_token
    assert detector.cache_stats()["total_entries"] == 0


def test_results_cached_until_ttl(clock):
    registry = {}
    detector = _detector(clock, registry)
    assert not detector.detect("late").is_lp_token

    registry["late"] = POOL
    clock.advance(599)
    assert not detector.detect("late").is_lp_token

    clock.advance(2)
    assert detector.detect("late").is_lp_token


def test_cache_stats_and_cleanup(clock):
    detector = _detector(clock)
    detector.detect("a", {"symbol": "ABX-LP", "name": "AlphBanx LP"})
    clock.advance(300)
    detector.detect("b", {"symbol": "ABX", "name": "AlphBanx"})
    clock.advance(301)

    assert detector.cache_stats() == {
        "total_entries": 2,
        "valid_entries": 1,
        "expired_entries": 1,
        "valid_ratio": 0.5,
    }
    assert detector.cleanup_expired() == 1
    detector.clear()
    assert detector.cache_stats()["total_entries"] == 0


def test_display_info(clock):
    detector = _detector(clock)

    lp = detector.display_info("t1", {"symbol": "ABX-LP", "name": "AlphBanx LP"})
    assert lp.is_lp_token
    assert lp.display_symbol == "ABX-LP"
    assert lp.dex_protocol == "Unknown DEX"

    plain = detector.display_info("abcdef0123", {"symbol": "", "name": ""})
    assert not plain.is_lp_token
    assert plain.display_name == "abcdef0123"
    assert plain.display_symbol == "abcdef"
