"""Records shared by the price, LP and portfolio layers."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Tuple

from .units import format_amount, to_units, usd_value


class PriceSource(str, Enum):
    PRIMARY = "primary-aggregator"
    SECONDARY = "secondary-provider"
    ESTIMATE = "estimate"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ValuationSource(str, Enum):
    CALCULATED = "calculated"
    ESTIMATED = "estimated"


class AssetClass(str, Enum):
    NATIVE = "native"
    STABLECOIN = "stablecoin"
    MAPPED = "mapped"
    UNKNOWN = "unknown"


CONFIDENCE_BY_SOURCE: Dict[PriceSource, Confidence] = {
    PriceSource.PRIMARY: Confidence.HIGH,
    PriceSource.SECONDARY: Confidence.MEDIUM,
    PriceSource.ESTIMATE: Confidence.LOW,
}


@dataclass(frozen=True, slots=True)
class TokenPrice:
    """A resolved USD price for one token.

    ``confidence=HIGH`` is never paired with ``source=ESTIMATE`` and a zero
    price always carries ``confidence=LOW``; both are checked on construction.
    ``stale`` marks a previously verified price served after every live
    source failed.
    """

    token_id: str
    symbol: str
    price_usd: float
    source: PriceSource
    confidence: Confidence
    last_updated: float
    volume_24h: float | None = None
    price_in_native: float | None = None
    change_24h: float | None = None
    stale: bool = False

    def __post_init__(self) -> None:
        if self.price_usd < 0:
            raise ValueError(f"negative price for {self.token_id}: {self.price_usd}")
        if self.confidence is Confidence.HIGH and self.source is PriceSource.ESTIMATE:
            raise ValueError("an estimate cannot carry high confidence")
        if self.price_usd == 0 and self.confidence is not Confidence.LOW:
            raise ValueError("a zero price must carry low confidence")

    @classmethod
    def quoted(
        cls,
        token_id: str,
        symbol: str,
        price_usd: float,
        source: PriceSource,
        last_updated: float,
        **extra,
    ) -> "TokenPrice":
        confidence = CONFIDENCE_BY_SOURCE[source] if price_usd > 0 else Confidence.LOW
        return cls(token_id, symbol, float(price_usd), source, confidence, last_updated, **extra)

    @classmethod
    def estimate(cls, token_id: str, symbol: str, last_updated: float) -> "TokenPrice":
        return cls(
            token_id,
            symbol,
            0.0,
            PriceSource.ESTIMATE,
            Confidence.LOW,
            last_updated,
            price_in_native=0.0,
        )

    @property
    def is_verified(self) -> bool:
        return self.source is not PriceSource.ESTIMATE and not self.stale

    def with_native(self, native_price: float | None) -> "TokenPrice":
        if not native_price or native_price <= 0:
            return replace(self, price_in_native=None)
        return replace(self, price_in_native=self.price_usd / native_price)

    def as_stale(self) -> "TokenPrice":
        return replace(self, stale=True, confidence=Confidence.LOW)


@dataclass(frozen=True, slots=True)
class NativePriceSnapshot:
    price: float
    change_24h: float | None
    last_updated: float


@dataclass(frozen=True, slots=True)
class AssetShare:
    symbol: str
    amount: float
    value_usd: float


@dataclass(frozen=True, slots=True)
class PoolValuation:
    token_id: str
    total_value_usd: float
    asset_a: AssetShare
    asset_b: AssetShare
    source: ValuationSource
    pool_label: str

    @property
    def breakdown(self) -> Dict[str, AssetShare]:
        return {"assetA": self.asset_a, "assetB": self.asset_b}

    @property
    def is_estimated(self) -> bool:
        return self.source is ValuationSource.ESTIMATED

    def scaled(self, ratio: float) -> "PoolValuation":
        """Linear rescale of every monetary and amount field by ``ratio``."""

        return replace(
            self,
            total_value_usd=self.total_value_usd * ratio,
            asset_a=AssetShare(self.asset_a.symbol, self.asset_a.amount * ratio, self.asset_a.value_usd * ratio),
            asset_b=AssetShare(self.asset_b.symbol, self.asset_b.amount * ratio, self.asset_b.value_usd * ratio),
        )


@dataclass(frozen=True, slots=True)
class TokenBalance:
    """One token entry as reported by the wallet data source."""

    token_id: str
    amount: int
    decimals: int = 18
    is_nft: bool = False
    token_uri: str | None = None
    symbol: str | None = None
    name: str | None = None


@dataclass(frozen=True, slots=True)
class WalletRef:
    address: str
    network: str = "mainnet"

    @property
    def label(self) -> str:
        """Snapshot key: the bare address on mainnet, ``address@network`` elsewhere."""
        return self.address if self.network == "mainnet" else f"{self.address}@{self.network}"


@dataclass(frozen=True, slots=True)
class WalletContribution:
    address: str
    amount: int


@dataclass(slots=True)
class WalletHolding:
    address: str
    token_id: str
    amount: int
    decimals: int
    formatted_amount: str
    usd_value: float | None
    price_source: str | None


@dataclass(slots=True)
class ConsolidatedHolding:
    """A token summed across every wallet that holds it.

    ``amount`` is always the exact integer sum of ``contributors``;
    :meth:`merge` updates the sum and re-derives ``formatted_amount`` and
    ``usd_value`` from it in one step.
    """

    token_id: str
    symbol: str
    name: str
    decimals: int
    unit_price: float | None
    price_source: str | None
    is_nft: bool = False
    is_lp: bool = False
    token_uri: str | None = None
    amount: int = 0
    formatted_amount: str = "0"
    usd_value: float | None = None
    contributors: List[WalletContribution] = field(default_factory=list)

    def merge(self, address: str, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"negative amount {amount} for {self.token_id}")
        self.amount += amount
        self.contributors.append(WalletContribution(address, amount))
        self._recompute()

    def _recompute(self) -> None:
        self.formatted_amount = format_amount(self.amount, self.decimals)
        if self.is_nft or self.unit_price is None:
            self.usd_value = None
        else:
            self.usd_value = usd_value(self.amount, self.decimals, self.unit_price)

    @property
    def units(self) -> Decimal:
        return to_units(self.amount, self.decimals)

    def wallet_holdings(self) -> List[WalletHolding]:
        holdings = []
        for contrib in self.contributors:
            value = None
            if not self.is_nft and self.unit_price is not None:
                value = usd_value(contrib.amount, self.decimals, self.unit_price)
            holdings.append(
                WalletHolding(
                    contrib.address,
                    self.token_id,
                    contrib.amount,
                    self.decimals,
                    format_amount(contrib.amount, self.decimals),
                    value,
                    self.price_source,
                )
            )
        return holdings


@dataclass(frozen=True, slots=True)
class PortfolioSnapshot:
    """Consolidated view over a set of wallets.

    ``balances`` are native-coin amounts in whole units per address;
    ``native_amounts`` keeps the raw minor units they were derived from.
    """

    balances: Dict[str, Decimal]
    native_amounts: Dict[str, int]
    native_total: int
    native_price: TokenPrice | None
    native_usd: float
    holdings: Dict[str, ConsolidatedHolding]
    total_usd: float
    errors: Dict[str, str]
    fetched_at: float
    from_cache: bool = False
    wallets: Tuple[str, ...] = ()

    def cached(self) -> "PortfolioSnapshot":
        return self.copy(from_cache=True)

    def copy(self, *, from_cache: bool | None = None) -> "PortfolioSnapshot":
        """Copy whose holdings and maps can be changed without touching this snapshot."""
        holdings = {
            token_id: replace(holding, contributors=list(holding.contributors))
            for token_id, holding in self.holdings.items()
        }
        return replace(
            self,
            balances=dict(self.balances),
            native_amounts=dict(self.native_amounts),
            holdings=holdings,
            errors=dict(self.errors),
            from_cache=self.from_cache if from_cache is None else from_cache,
        )


__all__ = [
    "AssetClass",
    "AssetShare",
    "CONFIDENCE_BY_SOURCE",
    "Confidence",
    "ConsolidatedHolding",
    "NativePriceSnapshot",
    "PoolValuation",
    "PortfolioSnapshot",
    "PriceSource",
    "TokenBalance",
    "TokenPrice",
    "ValuationSource",
    "WalletContribution",
    "WalletHolding",
    "WalletRef",
]
