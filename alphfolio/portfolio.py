"""Consolidate balances and token holdings across many wallets."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Tuple

from .cache import Clock, TTLCache
from .config import PricingSettings
from .lp_detection import LPDetector, LPTokenInfo
from .models import ConsolidatedHolding, PortfolioSnapshot, TokenBalance, TokenPrice, WalletRef
from .single_flight import SingleFlight
from .units import parse_raw_amount, to_units, usd_value

logger = logging.getLogger(__name__)

NAMESPACE = "portfolio"

WalletKey = Tuple[str, Tuple[Tuple[str, str], ...]]


@dataclass(slots=True)
class _WalletResult:
    ref: WalletRef
    balance: int | None = None
    tokens: List[TokenBalance] | None = None
    errors: List[str] = field(default_factory=list)

    @property
    def has_data(self) -> bool:
        return self.balance is not None or self.tokens is not None


def _as_wallet_ref(wallet: Any) -> WalletRef:
    if isinstance(wallet, WalletRef):
        return wallet
    if isinstance(wallet, str):
        return WalletRef(wallet)
    if isinstance(wallet, Mapping):
        return WalletRef(str(wallet["address"]), str(wallet.get("network") or "mainnet"))
    raise TypeError(f"unsupported wallet reference {wallet!r}")


def _error_text(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class PortfolioAggregator:
    """Build :class:`PortfolioSnapshot` views over a set of wallets.

    Each refresh fetches every wallet concurrently, prices the distinct
    tokens once and rebuilds every :class:`ConsolidatedHolding` from scratch.
    Snapshots are reused for a cooldown window per wallet set; the window
    grows by ``aggregate_backoff_factor`` after refreshes where no wallet
    produced any data.  :meth:`aggregate` never raises.
    """

    def __init__(
        self,
        source: Any,
        resolver: Any,
        valuator: Any,
        *,
        detector: LPDetector | None = None,
        clock: Clock | None = None,
        settings: PricingSettings | None = None,
        cache: TTLCache | None = None,
        flights: SingleFlight | None = None,
        wall_clock: Callable[[], float] = time.time,
        network_sources: Mapping[str, Any] | None = None,
    ) -> None:
        self.source = source
        self.network_sources: Dict[str, Any] = dict(network_sources or {})
        self.resolver = resolver
        self.valuator = valuator
        self.settings = settings or PricingSettings()
        self.cache = cache if cache is not None else TTLCache(clock=clock)
        self.clock: Clock = clock or self.cache.clock
        self.detector = detector
        self.flights = flights or SingleFlight()
        self._wall_clock = wall_clock
        self._failures: Dict[WalletKey, int] = {}
        self._last: Dict[WalletKey, PortfolioSnapshot] = {}

    @staticmethod
    def wallet_key(refs: Sequence[WalletRef]) -> WalletKey:
        return NAMESPACE, tuple(sorted({(ref.address, ref.network) for ref in refs}))

    def cooldown_for(self, key: WalletKey) -> float:
        failures = self._failures.get(key, 0)
        multiplier = min(self.settings.aggregate_backoff_factor ** failures, self.settings.aggregate_max_backoff)
        return self.settings.aggregate_cooldown * multiplier

    async def aggregate(self, wallets: Iterable[Any]) -> PortfolioSnapshot:
        refs = list({(ref.address, ref.network): ref for ref in map(_as_wallet_ref, wallets)}.values())
        key = self.wallet_key(refs)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Portfolio: serving cached snapshot for %d wallet(s)", len(refs))
            return cached.cached()
        try:
            snapshot = await self.flights.resolve(key, lambda: self._refresh(key, refs))
            # the cached snapshot is shared by every waiter; hand each its own copy
            return snapshot.copy()
        except Exception as exc:
            logger.exception("Portfolio: refresh failed for %d wallet(s)", len(refs))
            last = self._last.get(key)
            if last is not None:
                return last.cached()
            return self._empty(refs, {"*": _error_text(exc)})

    def invalidate(self, wallets: Iterable[Any] | None = None) -> None:
        if wallets is None:
            self.cache.clear_namespace(NAMESPACE)
            self._failures.clear()
            return
        key = self.wallet_key([_as_wallet_ref(w) for w in wallets])
        self.cache.pop(key)
        self._failures.pop(key, None)

    # refresh ----------------------------------------------------------------
    async def _fetch_wallet(self, ref: WalletRef) -> _WalletResult:
        result = _WalletResult(ref)
        source = self.network_sources.get(ref.network, self.source)
        balance, tokens = await asyncio.gather(
            source.get_balance(ref.address),
            source.get_tokens(ref.address),
            return_exceptions=True,
        )
        if isinstance(balance, BaseException):
            result.errors.append(f"Balance: {_error_text(balance)}")
        else:
            try:
                result.balance = parse_raw_amount(balance)
            except ValueError as exc:
                result.errors.append(f"Balance: {exc}")
        if isinstance(tokens, BaseException):
            result.errors.append(f"Tokens: {_error_text(tokens)}")
        else:
            try:
                result.tokens = [
                    replace(token, amount=parse_raw_amount(token.amount)) for token in tokens or ()
                ]
            except ValueError as exc:
                result.errors.append(f"Tokens: {exc}")
        if result.errors:
            logger.warning("Portfolio: wallet %s failed: %s", ref.label, "; ".join(result.errors))
        return result

    async def _refresh(self, key: WalletKey, refs: List[WalletRef]) -> PortfolioSnapshot:
        cached = self.cache.get(key)
        if cached is not None:
            return cached.cached()
        results = await asyncio.gather(*(self._fetch_wallet(ref) for ref in refs))
        snapshot = await self._build(refs, results)
        if refs and not any(result.has_data for result in results):
            self._failures[key] = self._failures.get(key, 0) + 1
        else:
            self._failures.pop(key, None)
        window = self.cooldown_for(key)
        self.cache.set(key, snapshot, window)
        self._last[key] = snapshot
        logger.info(
            "Portfolio: refreshed %d wallet(s), %d holding(s), total $%.2f; next refresh in %.1fs",
            len(refs),
            len(snapshot.holdings),
            snapshot.total_usd,
            window,
        )
        return snapshot

    async def _build(self, refs: List[WalletRef], results: List[_WalletResult]) -> PortfolioSnapshot:
        native = self.settings.native_symbol
        decimals = self.settings.native_decimals
        errors = {r.ref.label: "; ".join(r.errors) for r in results if r.errors}

        native_amounts = {r.ref.label: r.balance for r in results if r.balance is not None}
        native_total = sum(native_amounts.values())
        balances: Dict[str, Decimal] = {
            address: to_units(amount, decimals) for address, amount in native_amounts.items()
        }

        first_seen: Dict[str, TokenBalance] = {}
        for result in results:
            for token in result.tokens or ():
                first_seen.setdefault(token.token_id, token)

        lp_info: Dict[str, LPTokenInfo] = {}
        regular: List[str] = []
        for token_id, token in first_seen.items():
            if token.is_nft:
                continue
            info = self._detect(token)
            if info is not None and info.is_lp_token:
                lp_info[token_id] = info
            else:
                regular.append(token_id)

        prices: Dict[str, TokenPrice] = await self.resolver.get_multiple_token_prices([native, *regular])
        native_price = prices.get(native)
        lp_prices = await self._lp_unit_prices(lp_info, first_seen)

        holdings: Dict[str, ConsolidatedHolding] = {}
        for result in results:
            for token in result.tokens or ():
                holding = holdings.get(token.token_id)
                if holding is None:
                    holding = holdings[token.token_id] = self._new_holding(
                        first_seen[token.token_id], prices, lp_prices, lp_info
                    )
                holding.merge(result.ref.label, token.amount)

        native_usd = 0.0
        if native_price is not None:
            native_usd = usd_value(native_total, decimals, native_price.price_usd)
        total_usd = native_usd + sum(h.usd_value for h in holdings.values() if h.usd_value is not None)
        return PortfolioSnapshot(
            balances=balances,
            native_amounts=native_amounts,
            native_total=native_total,
            native_price=native_price,
            native_usd=native_usd,
            holdings=holdings,
            total_usd=total_usd,
            errors=errors,
            fetched_at=self._wall_clock(),
            wallets=tuple(ref.label for ref in refs),
        )

    def _detect(self, token: TokenBalance) -> LPTokenInfo | None:
        if self.detector is None:
            return None
        metadata = {"symbol": token.symbol or "", "name": token.name or ""}
        return self.detector.detect(token.token_id, metadata, token.is_nft)

    async def _lp_unit_prices(
        self,
        lp_info: Dict[str, LPTokenInfo],
        tokens: Dict[str, TokenBalance],
    ) -> Dict[str, Tuple[float, str]]:
        if not lp_info:
            return {}
        ids = list(lp_info)

        async def _one(token_id: str):
            info = lp_info[token_id]
            pool = info.pool_info
            return await self.valuator.unit_value(
                token_id,
                pool.pool_address if pool is not None else None,
                list(info.underlying_tokens) or None,
            )

        valuations = await asyncio.gather(*(_one(token_id) for token_id in ids))
        unit_prices: Dict[str, Tuple[float, str]] = {}
        for token_id, valuation in zip(ids, valuations):
            # unit_value prices lp_unit_decimals raw units; rescale to one whole token
            shift = tokens[token_id].decimals - self.settings.lp_unit_decimals
            unit_price = float(Decimal(repr(valuation.total_value_usd)).scaleb(shift))
            unit_prices[token_id] = (unit_price, valuation.source.value)
        return unit_prices

    def _new_holding(
        self,
        token: TokenBalance,
        prices: Dict[str, TokenPrice],
        lp_prices: Dict[str, Tuple[float, str]],
        lp_info: Dict[str, LPTokenInfo],
    ) -> ConsolidatedHolding:
        unit_price: float | None = None
        source: str | None = None
        symbol = token.symbol
        if token.is_nft:
            pass
        elif token.token_id in lp_prices:
            unit_price, source = lp_prices[token.token_id]
            info = lp_info[token.token_id]
            symbol = symbol or info.display_symbol
        else:
            price = prices.get(token.token_id)
            if price is not None:
                unit_price = price.price_usd
                source = price.source.value
                symbol = symbol or price.symbol
        symbol = symbol or token.token_id[:8].upper()
        return ConsolidatedHolding(
            token_id=token.token_id,
            symbol=symbol,
            name=token.name or symbol,
            decimals=token.decimals,
            unit_price=unit_price,
            price_source=source,
            is_nft=token.is_nft,
            is_lp=token.token_id in lp_info,
            token_uri=token.token_uri,
        )

    def _empty(self, refs: List[WalletRef], errors: Dict[str, str]) -> PortfolioSnapshot:
        return PortfolioSnapshot(
            balances={},
            native_amounts={},
            native_total=0,
            native_price=None,
            native_usd=0.0,
            holdings={},
            total_usd=0.0,
            errors=errors,
            fetched_at=self._wall_clock(),
            wallets=tuple(ref.label for ref in refs),
        )


__all__ = ["PortfolioAggregator"]
