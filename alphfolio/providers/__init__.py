"""Upstream price provider adapters."""

from .base import ProviderQuote
from .coingecko import CoinGeckoClient
from .mobula import MobulaClient

__all__ = ["CoinGeckoClient", "MobulaClient", "ProviderQuote"]
