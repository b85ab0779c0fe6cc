"""Market-wide circuit breaker: BTC crash, funding extremes, portfolio drawdown."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import pandas as pd  # type: ignore[import-untyped]

from autonomous_trading.config import Settings
from autonomous_trading.exchange.client import ExchangeClient
from autonomous_trading.exchange.models import Candle
from autonomous_trading.journal.store import TradeStore
from autonomous_trading.types import CircuitBreakerLevel, CircuitBreakerStatus
from autonomous_trading.utils.logging import get_logger, log_guard_event

BTC_SYMBOL = "cmt_btcusdt"
FUNDING_SYMBOLS = ("cmt_btcusdt", "cmt_ethusdt")

BTC_DROP_THRESHOLDS = (
    (CircuitBreakerLevel.RED, 20.0),
    (CircuitBreakerLevel.ORANGE, 15.0),
    (CircuitBreakerLevel.YELLOW, 10.0),
)
FUNDING_THRESHOLDS = (
    (CircuitBreakerLevel.ORANGE, 0.4),
    (CircuitBreakerLevel.YELLOW, 0.25),
)
DRAWDOWN_THRESHOLDS = (
    (CircuitBreakerLevel.RED, 25.0),
    (CircuitBreakerLevel.ORANGE, 15.0),
    (CircuitBreakerLevel.YELLOW, 10.0),
)

_LEVERAGE_CAPS = {
    CircuitBreakerLevel.RED: 1,
    CircuitBreakerLevel.ORANGE: 2,
    CircuitBreakerLevel.YELLOW: 3,
}


def btc_drop_pct(candles: list[Candle]) -> float | None:
    """Percent change from the first open to the last close of hourly candles."""
    if len(candles) < 4:
        return None
    frame = pd.DataFrame(
        [{"timestamp": c.timestamp_ms, "open": c.open, "close": c.close} for c in candles]
    ).sort_values("timestamp")
    start = float(frame["open"].iloc[0])
    end = float(frame["close"].iloc[-1])
    if start <= 0 or pd.isna(start) or pd.isna(end):
        return None
    return (end - start) / start * 100.0


def drawdown_pct(values: list[float]) -> float | None:
    """Drawdown of the latest value from the running peak, in percent."""
    series = pd.Series(values, dtype="float64").dropna()
    series = series[series > 0]
    if len(series) < 2:
        return None
    peak = float(series.max())
    return max(0.0, (peak - float(series.iloc[-1])) / peak * 100.0)


class CircuitBreakerMonitor:
    """Cached circuit breaker check with a single in-flight evaluation."""

    def __init__(
        self,
        exchange: ExchangeClient,
        store: TradeStore,
        settings: Settings,
        *,
        cache_sec: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exchange = exchange
        self._store = store
        self._settings = settings
        self._cache_sec = cache_sec
        self._clock = clock
        self._cached: CircuitBreakerStatus | None = None
        self._in_flight: asyncio.Task[CircuitBreakerStatus] | None = None
        self._logger = get_logger("autonomous_trading.risk.circuit_breaker")

    async def check(self) -> CircuitBreakerStatus:
        now = self._clock()
        if self._cached is not None and now - self._cached.checked_at < self._cache_sec:
            return self._cached
        if self._in_flight is None:
            self._in_flight = asyncio.ensure_future(self._check_guarded())
        task = self._in_flight
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._in_flight is task:
                self._in_flight = None

    def max_leverage(self, level: CircuitBreakerLevel) -> int:
        cap = _LEVERAGE_CAPS.get(level)
        if cap is None:
            return self._settings.max_leverage
        return min(cap, self._settings.max_leverage)

    def reset(self) -> None:
        self._cached = None
        if self._in_flight is not None and not self._in_flight.done():
            self._in_flight.cancel()
        self._in_flight = None

    async def _check_guarded(self) -> CircuitBreakerStatus:
        try:
            status = await self._evaluate()
        except Exception as exc:  # noqa: BLE001 - a failed check degrades to YELLOW.
            self._logger.error("circuit_breaker_check_failed", error=str(exc))
            status = CircuitBreakerStatus(
                level=CircuitBreakerLevel.YELLOW,
                reason=f"Circuit breaker check error: {exc}",
                checked_at=self._clock(),
            )
        self._cached = status
        if status.level != CircuitBreakerLevel.NONE:
            log_guard_event(
                self._logger,
                check="circuit_breaker",
                action=status.level.value,
                reason=status.reason,
            )
        return status

    async def _evaluate(self) -> CircuitBreakerStatus:
        candles = await self._exchange.get_candles(BTC_SYMBOL, "1h", 5)
        btc_drop = btc_drop_pct(candles)
        candidates: list[CircuitBreakerStatus] = []

        if btc_drop is not None:
            for level, threshold in BTC_DROP_THRESHOLDS:
                if btc_drop <= -threshold:
                    candidates.append(
                        self._status(level, f"BTC dropped {abs(btc_drop):.1f}% in 4 hours", btc_drop_4h=btc_drop)
                    )
                    break
        if candidates and candidates[0].level == CircuitBreakerLevel.RED:
            return candidates[0]

        funding = await self._max_abs_funding()
        for level, threshold in FUNDING_THRESHOLDS:
            if funding >= threshold:
                candidates.append(
                    self._status(level, f"Extreme funding rate: {funding * 100:.3f}%", funding_rate_extreme=funding)
                )
                break

        since = self._clock() - 24 * 3600
        drawdown = drawdown_pct([row["total_value"] for row in self._store.load_snapshots(since=since)])
        if drawdown is not None:
            for level, threshold in DRAWDOWN_THRESHOLDS:
                if drawdown >= threshold:
                    candidates.append(
                        self._status(
                            level,
                            f"Portfolio down {drawdown:.1f}% in 24 hours",
                            portfolio_drawdown_24h=drawdown,
                        )
                    )
                    break

        if not candidates:
            return self._status(CircuitBreakerLevel.NONE, "All systems normal", btc_drop_4h=btc_drop)
        return max(candidates, key=lambda status: status.level.severity)

    async def _max_abs_funding(self) -> float:
        results = await asyncio.gather(
            *(self._exchange.get_funding_rate(symbol) for symbol in FUNDING_SYMBOLS),
            return_exceptions=True,
        )
        rates = [abs(result.rate) for result in results if not isinstance(result, BaseException)]
        return max(rates, default=0.0)

    def _status(self, level: CircuitBreakerLevel, reason: str, **fields: float | None) -> CircuitBreakerStatus:
        return CircuitBreakerStatus(level=level, reason=reason, checked_at=self._clock(), **fields)
