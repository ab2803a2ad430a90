"""Shared record and helpers for the upstream adapters."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

import aiohttp

from ..http import get_session


@dataclass(frozen=True, slots=True)
class ProviderQuote:
    """Provider-neutral price record produced by every adapter."""

    token_id: str
    symbol: str
    price_usd: float
    provider: str
    as_of: float
    volume_24h: float | None = None
    change_24h: float | None = None
    liquidity: float | None = None


async def acquire_session(
    session: aiohttp.ClientSession | None,
    timeout: float | None = None,
) -> aiohttp.ClientSession:
    if session is not None:
        return session
    return await get_session(timeout)


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(numeric) or math.isinf(numeric):
        return None
    return numeric
