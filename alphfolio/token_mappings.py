"""Static token id -> secondary-provider coin id registry."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, List

import orjson

logger = logging.getLogger(__name__)

NATIVE_TOKEN_ID = "ALPH"
DEFAULT_DECIMALS = 18

STABLECOIN_SYMBOLS = frozenset({"USDT", "USDC", "DAI", "BUSD"})


@dataclass(frozen=True, slots=True)
class TokenMapping:
    token_id: str
    coingecko_id: str
    symbol: str
    name: str
    decimals: int = DEFAULT_DECIMALS
    is_stablecoin: bool = False


_STATIC_MAPPINGS: Dict[str, TokenMapping] = {
    m.token_id: m
    for m in (
        TokenMapping(NATIVE_TOKEN_ID, "alephium", "ALPH", "Alephium"),
        TokenMapping(
            "27aa562d592758d73b33ef11ac5b574aea843a3e315a8d1bdef714c3d6a52cd5",
            "alphbanx",
            "ABX",
            "AlphBanx",
        ),
        # bridged stablecoins are keyed by symbol until they carry a fixed id
        TokenMapping("USDT", "tether", "USDT", "Tether USD", 6, True),
        TokenMapping("USDC", "usd-coin", "USDC", "USD Coin", 6, True),
    )
}


def _load_runtime_mappings(blob: str | None) -> Dict[str, TokenMapping]:
    """Parse ``{token_id: {"coingecko_id": ..., ...}}`` overrides."""

    if not blob:
        return {}
    try:
        raw = orjson.loads(blob)
    except orjson.JSONDecodeError:
        logger.warning("TOKEN_MAPPINGS_JSON is not valid JSON; ignoring")
        return {}
    if not isinstance(raw, dict):
        return {}
    mappings: Dict[str, TokenMapping] = {}
    for token_id, entry in raw.items():
        token_id = str(token_id).strip()
        if not token_id:
            continue
        if isinstance(entry, str):
            entry = {"coingecko_id": entry}
        if not isinstance(entry, dict) or not entry.get("coingecko_id"):
            continue
        try:
            decimals = int(entry.get("decimals", DEFAULT_DECIMALS))
        except (TypeError, ValueError):
            decimals = DEFAULT_DECIMALS
        symbol = str(entry.get("symbol") or token_id[:8].upper())
        mappings[token_id] = TokenMapping(
            token_id,
            str(entry["coingecko_id"]),
            symbol,
            str(entry.get("name") or symbol),
            decimals,
            bool(entry.get("is_stablecoin", symbol.upper() in STABLECOIN_SYMBOLS)),
        )
    return mappings


TOKEN_MAPPINGS: Dict[str, TokenMapping] = {
    **_STATIC_MAPPINGS,
    **_load_runtime_mappings(os.environ.get("TOKEN_MAPPINGS_JSON")),
}


def load_extra_mappings(blob: str | None) -> int:
    """Merge runtime overrides into :data:`TOKEN_MAPPINGS`; return how many."""

    extra = _load_runtime_mappings(blob)
    TOKEN_MAPPINGS.update(extra)
    return len(extra)


def reset_mappings() -> None:
    TOKEN_MAPPINGS.clear()
    TOKEN_MAPPINGS.update(_STATIC_MAPPINGS)


def is_native(token_id: str | None) -> bool:
    return bool(token_id) and token_id.strip().upper() == NATIVE_TOKEN_ID


def get_mapping(token_id: str) -> TokenMapping | None:
    if is_native(token_id):
        return TOKEN_MAPPINGS.get(NATIVE_TOKEN_ID)
    return TOKEN_MAPPINGS.get(token_id)


def get_coingecko_id(token_id: str) -> str | None:
    mapping = get_mapping(token_id)
    return mapping.coingecko_id if mapping else None


def get_token_decimals(token_id: str, default: int = DEFAULT_DECIMALS) -> int:
    mapping = get_mapping(token_id)
    return mapping.decimals if mapping else default


def is_token_mapped(token_id_or_symbol: str | None) -> bool:
    if not token_id_or_symbol:
        return False
    if get_mapping(token_id_or_symbol) is not None:
        return True
    wanted = token_id_or_symbol.strip().upper()
    return any(m.symbol.upper() == wanted for m in TOKEN_MAPPINGS.values())


def is_stablecoin_symbol(symbol: str | None) -> bool:
    return bool(symbol) and symbol.strip().upper() in STABLECOIN_SYMBOLS


def all_coingecko_ids() -> List[str]:
    seen: Dict[str, None] = {}
    for mapping in TOKEN_MAPPINGS.values():
        seen.setdefault(mapping.coingecko_id, None)
    return list(seen)


__all__ = [
    "NATIVE_TOKEN_ID",
    "STABLECOIN_SYMBOLS",
    "TOKEN_MAPPINGS",
    "TokenMapping",
    "all_coingecko_ids",
    "get_coingecko_id",
    "get_mapping",
    "get_token_decimals",
    "is_native",
    "is_stablecoin_symbol",
    "is_token_mapped",
    "load_extra_mappings",
    "reset_mappings",
]
