"""Token price resolution and multi-wallet portfolio valuation."""

from .cache import TTLCache
from .config import PricingSettings, load_settings
from .lp_detection import LPDetector
from .lp_pricing import LPValuator
from .models import (
    Confidence,
    ConsolidatedHolding,
    PoolValuation,
    PortfolioSnapshot,
    PriceSource,
    TokenBalance,
    TokenPrice,
    ValuationSource,
    WalletRef,
)
from .portfolio import PortfolioAggregator
from .prices import PriceResolver
from .service import PortfolioService
from .single_flight import SingleFlight

__version__ = "0.1.0"

__all__ = [
    "Confidence",
    "ConsolidatedHolding",
    "LPDetector",
    "LPValuator",
    "PoolValuation",
    "PortfolioAggregator",
    "PortfolioService",
    "PortfolioSnapshot",
    "PriceResolver",
    "PriceSource",
    "PricingSettings",
    "SingleFlight",
    "TTLCache",
    "TokenBalance",
    "TokenPrice",
    "ValuationSource",
    "WalletRef",
    "load_settings",
]
