"""Per-symbol contract metadata cache and order rounding helpers."""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Iterable
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal

from autonomous_trading.errors import ContractSpecsUnavailable
from autonomous_trading.exchange.client import ExchangeClient
from autonomous_trading.exchange.models import ContractInfo
from autonomous_trading.types import ContractSpec
from autonomous_trading.utils.logging import get_logger

_MAX_DECIMALS = 18


class RefreshTracker:
    """Single-flight bookkeeping for cache refreshes."""

    def __init__(self, ttl_sec: float) -> None:
        self._ttl_sec = ttl_sec
        self.last_refresh: float | None = None
        self.in_progress = False

    def should_refresh(self, now: float, missing: bool) -> bool:
        if missing or self.last_refresh is None:
            return True
        return now - self.last_refresh >= self._ttl_sec

    def mark_refreshing(self) -> bool:
        """Claim the refresh slot. False when another caller holds it."""
        if self.in_progress:
            return False
        self.in_progress = True
        return True

    def mark_refreshed(self, now: float) -> None:
        self.last_refresh = now
        self.in_progress = False

    def mark_failed(self) -> None:
        # last_refresh stays put so the next cycle retries
        self.in_progress = False

    def reset(self) -> None:
        self.last_refresh = None
        self.in_progress = False


class ContractSpecCache:
    """TTL and missing-key driven cache of exchange contract specs."""

    def __init__(
        self,
        exchange: ExchangeClient,
        *,
        ttl_sec: float = 1800.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exchange = exchange
        self._clock = clock
        self._specs: dict[str, ContractSpec] = {}
        self._tracker = RefreshTracker(ttl_sec)
        self._logger = get_logger("autonomous_trading.exec.contract_specs")

    @property
    def tracker(self) -> RefreshTracker:
        return self._tracker

    @property
    def symbols(self) -> set[str]:
        return set(self._specs)

    def get(self, symbol: str) -> ContractSpec | None:
        return self._specs.get(symbol)

    def missing(self, symbols: Iterable[str]) -> list[str]:
        return [symbol for symbol in symbols if symbol not in self._specs]

    async def load(self) -> int:
        """Fetch and store all contracts. Raises on any failure."""
        contracts = await self._exchange.get_contracts()
        if not contracts:
            raise ContractSpecsUnavailable("empty_contract_list")

        parsed: dict[str, ContractSpec] = {}
        for info in contracts:
            try:
                parsed[info.symbol] = parse_contract_spec(info)
            except ValueError as exc:
                self._logger.warning("contract_spec_invalid", symbol=info.symbol, error=str(exc))
        if not parsed:
            raise ContractSpecsUnavailable(f"no_parsable_contracts: {len(contracts)} received")

        self._specs.update(parsed)
        self._tracker.mark_refreshed(self._clock())
        self._logger.info("contract_specs_loaded", count=len(parsed), skipped=len(contracts) - len(parsed))
        return len(parsed)

    async def refresh_if_needed(self, required: Iterable[str] = ()) -> bool:
        """Refresh when a required symbol is absent or the cache aged out.

        Never raises. Returns True only when this call performed a successful
        refresh; losing the single-flight race or failing returns False.
        """
        missing = self.missing(required)
        if not self._tracker.should_refresh(self._clock(), bool(missing)):
            return False
        if not self._tracker.mark_refreshing():
            self._logger.debug("contract_refresh_in_progress")
            return False

        try:
            await self.load()
        except Exception as exc:  # noqa: BLE001 - callers proceed with existing specs.
            self._tracker.mark_failed()
            self._logger.warning("contract_refresh_failed", error=str(exc), missing=missing)
            return False

        still_missing = self.missing(required)
        if still_missing:
            self._logger.warning("contract_specs_missing_after_refresh", symbols=still_missing)
        return True

    def clear(self) -> None:
        self._specs.clear()
        self._tracker.reset()


def parse_contract_spec(info: ContractInfo) -> ContractSpec:
    """Convert a contract listing entry. Raises ValueError on bad data."""
    symbol = info.symbol
    if not symbol.startswith("cmt_") or not symbol.endswith("usdt") or len(symbol) <= 8:
        raise ValueError(f"invalid_symbol_format: {symbol}")

    price_decimals = _parse_decimals(info.tick_size, "tick_size")
    size_decimals = _parse_decimals(info.size_increment, "size_increment")
    if info.price_end_step <= 0:
        raise ValueError(f"invalid_price_end_step: {info.price_end_step}")

    # priceEndStep is frequently 1 for every contract; the decimal count wins
    expected_tick = 10.0**-price_decimals
    tick_size = info.price_end_step
    if tick_size == 1 or abs(tick_size - expected_tick) > expected_tick * 0.5:
        tick_size = expected_tick

    min_order_size = _parse_positive(info.min_order_size, "minOrderSize")
    max_order_size = _parse_positive(info.max_order_size, "maxOrderSize")
    max_position_size = _parse_positive(info.max_position_size, "maxPositionSize")
    if max_order_size < min_order_size:
        raise ValueError(f"max_order_below_min: {max_order_size} < {min_order_size}")

    min_leverage = _parse_leverage(info.min_leverage, 1)
    max_leverage = _parse_leverage(info.max_leverage, 500)
    if max_leverage < min_leverage:
        min_leverage, max_leverage = max_leverage, min_leverage

    return ContractSpec(
        symbol=symbol,
        tick_size=tick_size,
        price_decimals=price_decimals,
        size_step=min_order_size,
        size_decimals=size_decimals,
        min_order_size=min_order_size,
        max_order_size=max_order_size,
        max_position_size=max_position_size,
        min_leverage=min_leverage,
        max_leverage=max_leverage,
    )


def round_to_step(size: float, spec: ContractSpec) -> str:
    """Floor a size to the contract step."""
    if not math.isfinite(size) or size <= 0:
        raise ValueError(f"invalid_size: {size}")
    step = Decimal(str(spec.size_step))
    rounded = (Decimal(str(size)) / step).to_integral_value(rounding=ROUND_FLOOR) * step
    if rounded < step:
        raise ValueError(f"size_below_step: {size} < {spec.size_step}")
    decimals = max(spec.size_decimals, _decimal_places(step))
    return f"{rounded:.{decimals}f}"


def round_to_tick(price: float, spec: ContractSpec) -> str:
    """Round a price to the nearest contract tick."""
    if not math.isfinite(price) or price <= 0:
        raise ValueError(f"invalid_price: {price}")
    tick = Decimal(str(spec.tick_size))
    rounded = (Decimal(str(price)) / tick).to_integral_value(rounding=ROUND_HALF_UP) * tick
    return f"{rounded:.{spec.price_decimals}f}"


def _parse_decimals(raw: str, field: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid_{field}: {raw!r}") from exc
    if value < 0 or value > _MAX_DECIMALS:
        raise ValueError(f"invalid_{field}: {value}")
    return value


def _parse_positive(raw: str, field: str) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid_{field}: {raw!r}") from exc
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"invalid_{field}: {raw!r}")
    return value


def _parse_leverage(raw: object, default: int) -> int:
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if not math.isfinite(value) or value < 1:
        return default
    return int(value)


def _decimal_places(value: Decimal) -> int:
    exponent = value.normalize().as_tuple().exponent
    return -exponent if isinstance(exponent, int) and exponent < 0 else 0
