"""Recognise liquidity-pool tokens from registry entries and symbol patterns."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Pattern, Sequence, Tuple

from .cache import Clock, TTLCache

logger = logging.getLogger(__name__)

NAMESPACE = "lp-detect"
DEFAULT_TTL = 600.0


@dataclass(frozen=True, slots=True)
class PoolInfo:
    pool_address: str
    token0: str
    token1: str
    token0_symbol: str
    token1_symbol: str
    dex_name: str
    pool_type: str = "LP"
    fee: float | None = None


@dataclass(frozen=True, slots=True)
class LPTokenInfo:
    token_id: str
    is_lp_token: bool
    pool_info: PoolInfo | None = None
    underlying_tokens: Tuple[str, ...] = ()
    dex_protocol: str | None = None
    display_name: str | None = None
    display_symbol: str | None = None


@dataclass(frozen=True, slots=True)
class DisplayInfo:
    display_name: str
    display_symbol: str
    is_lp_token: bool
    dex_protocol: str | None = None


def _compile(*patterns: str) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# most specific group first
DEX_PATTERNS: Sequence[Tuple[str, str, Tuple[Pattern[str], ...]]] = (
    ("ALEPHIUM_DEX", "Alephium DEX", _compile(r"^ALPH[-_]USDT$", r"^ALPH[-_]USDC$", r"^ALPH[-_]DAI$")),
    (
        "UNISWAP_V2_STYLE",
        "Uniswap V2 Style",
        _compile(r"^LP[-_]", r"^UniV2[-_]", r"^PancakeLP[-_]", r"^SLP[-_]"),
    ),
    ("GENERIC_LP", "Unknown DEX", _compile(r"[-_]LP$", r"[-_]POOL$", r"^LP[-_]\w{3,8}[-_]\w{3,8}$")),
)

# token id -> pool; populated from DEX listings as they become available
KNOWN_LP_TOKENS: Dict[str, PoolInfo] = {}


def _meta_value(metadata: Any, key: str) -> str:
    if metadata is None:
        return ""
    if isinstance(metadata, Mapping):
        value = metadata.get(key)
    else:
        value = getattr(metadata, key, None)
    return value if isinstance(value, str) else ""


def match_pattern(symbol: str, name: str) -> Tuple[str, str] | None:
    """Return ``(group, dex_name)`` of the first pattern matching symbol or name."""

    for group, dex_name, patterns in DEX_PATTERNS:
        for pattern in patterns:
            if pattern.search(symbol) or pattern.search(name):
                return group, dex_name
    return None


class LPDetector:
    """Cached LP-token classification.

    NFTs are never LP tokens and are not cached.  Everything else is looked
    up in the registry first and then matched against :data:`DEX_PATTERNS`
    using the token's symbol and name.
    """

    def __init__(
        self,
        registry: Mapping[str, PoolInfo] | None = None,
        *,
        cache: TTLCache | None = None,
        clock: Clock | None = None,
        ttl: float = DEFAULT_TTL,
    ) -> None:
        self.registry = KNOWN_LP_TOKENS if registry is None else registry
        self.cache = cache if cache is not None else TTLCache(clock=clock)
        self.ttl = ttl

    def detect(self, token_id: str, metadata: Any = None, is_nft: bool = False) -> LPTokenInfo:
        if is_nft:
            return LPTokenInfo(token_id, False)
        key = (NAMESPACE, token_id)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("LP detection: cache hit for %s", token_id)
            return cached
        info = self._detect(token_id, metadata)
        self.cache.set(key, info, self.ttl)
        return info

    def _detect(self, token_id: str, metadata: Any) -> LPTokenInfo:
        pool = self.registry.get(token_id)
        if pool is not None:
            return LPTokenInfo(
                token_id,
                True,
                pool_info=pool,
                underlying_tokens=(pool.token0, pool.token1),
                dex_protocol=pool.dex_name,
                display_name=f"{pool.token0_symbol}/{pool.token1_symbol} LP",
                display_symbol=f"{pool.token0_symbol}-{pool.token1_symbol}",
            )
        if metadata is None:
            return LPTokenInfo(token_id, False)
        symbol = _meta_value(metadata, "symbol")
        name = _meta_value(metadata, "name")
        if len(symbol) < 3 or len(name) < 3:
            return LPTokenInfo(token_id, False)
        # placeholder symbols handed out to unnamed tokens and NFTs
        if symbol.startswith("TOKEN-") and len(symbol) < 12:
            return LPTokenInfo(token_id, False)
        matched = match_pattern(symbol, name)
        if matched is None:
            return LPTokenInfo(token_id, False)
        group, dex_name = matched
        logger.debug("LP detection: %s (%s/%s) matched %s", token_id, symbol, name, group)
        return LPTokenInfo(
            token_id,
            True,
            dex_protocol=dex_name,
            display_name=f"{name} (LP Token)",
            display_symbol=symbol if "LP" in symbol else f"{symbol}-LP",
        )

    def resolve_pool_info(self, token_id: str) -> PoolInfo | None:
        return self.registry.get(token_id)

    def display_info(self, token_id: str, metadata: Any = None, is_nft: bool = False) -> DisplayInfo:
        info = self.detect(token_id, metadata, is_nft)
        name = _meta_value(metadata, "name")
        symbol = _meta_value(metadata, "symbol")
        if info.is_lp_token:
            return DisplayInfo(
                info.display_name or f"{name or token_id} (LP Token)",
                info.display_symbol or f"{symbol or 'LP'}-LP",
                True,
                info.dex_protocol,
            )
        return DisplayInfo(name or token_id, symbol or token_id[:6], False)

    def cache_stats(self) -> Dict[str, Any]:
        stats = self.cache.stats(NAMESPACE)
        checked = stats["live"] + stats["expired"]
        return {
            "total_entries": stats["entries"],
            "valid_entries": stats["live"],
            "expired_entries": stats["expired"],
            "valid_ratio": stats["live"] / checked if checked else 0.0,
        }

    def cleanup_expired(self) -> int:
        return self.cache.cleanup_expired()

    def clear(self) -> None:
        self.cache.clear_namespace(NAMESPACE)


__all__ = [
    "DEX_PATTERNS",
    "DisplayInfo",
    "KNOWN_LP_TOKENS",
    "LPDetector",
    "LPTokenInfo",
    "PoolInfo",
    "match_pattern",
]
