from __future__ import annotations

import asyncio
import math
import time

import pytest

from autonomous_trading.config import Settings
from autonomous_trading.exchange.models import Candle
from autonomous_trading.journal.store import TradeStore
from autonomous_trading.risk.circuit_breaker import CircuitBreakerMonitor, btc_drop_pct, drawdown_pct
from autonomous_trading.types import CircuitBreakerLevel
from conftest import FakeExchange


class _Clock:
    def __init__(self) -> None:
        self.now = time.time()

    def __call__(self) -> float:
        return self.now


def _candles(first_open: float, last_close: float) -> list[Candle]:
    start = 1_700_000_000_000
    rows = [Candle(start + i * 3_600_000, first_open, first_open, first_open, first_open, 10.0) for i in range(5)]
    rows[-1] = Candle(start + 4 * 3_600_000, first_open, first_open, last_close, last_close, 10.0)
    return list(reversed(rows))


def _monitor(settings: Settings, exchange: FakeExchange) -> tuple[CircuitBreakerMonitor, TradeStore, _Clock]:
    clock = _Clock()
    store = TradeStore(settings.journal_dir)
    return CircuitBreakerMonitor(exchange, store, settings, cache_sec=60.0, clock=clock), store, clock


def test_btc_drop_pct_sorts_candles() -> None:
    assert btc_drop_pct(_candles(100.0, 85.0)) == pytest.approx(-15.0)
    assert btc_drop_pct(_candles(100.0, 85.0)[:3]) is None


def test_drawdown_pct_from_running_peak() -> None:
    assert drawdown_pct([100.0, 120.0, 90.0]) == pytest.approx(25.0)
    assert drawdown_pct([0.0, math.nan, 100.0, 80.0]) == pytest.approx(20.0)
    assert drawdown_pct([100.0, 110.0]) == 0.0
    assert drawdown_pct([100.0]) is None


@pytest.mark.asyncio
async def test_calm_market_is_none(settings: Settings, exchange: FakeExchange) -> None:
    monitor, _, _ = _monitor(settings, exchange)
    status = await monitor.check()
    assert status.level == CircuitBreakerLevel.NONE
    assert status.reason == "All systems normal"


@pytest.mark.asyncio
async def test_btc_crash_is_red_and_short_circuits(settings: Settings, exchange: FakeExchange) -> None:
    exchange.candles = _candles(100.0, 79.0)
    monitor, _, _ = _monitor(settings, exchange)
    status = await monitor.check()
    assert status.level == CircuitBreakerLevel.RED
    assert status.btc_drop_4h == pytest.approx(-21.0)
    assert "get_funding_rate" not in exchange.calls


@pytest.mark.asyncio
async def test_extreme_funding_is_orange(settings: Settings, exchange: FakeExchange) -> None:
    exchange.funding["cmt_ethusdt"] = -0.45
    monitor, _, _ = _monitor(settings, exchange)
    status = await monitor.check()
    assert status.level == CircuitBreakerLevel.ORANGE
    assert status.funding_rate_extreme == pytest.approx(0.45)


@pytest.mark.asyncio
async def test_most_severe_signal_wins(settings: Settings, exchange: FakeExchange) -> None:
    exchange.candles = _candles(100.0, 88.0)
    exchange.funding["cmt_btcusdt"] = 0.3
    monitor, store, clock = _monitor(settings, exchange)
    store.write_snapshot(clock.now - 7_200, total_value=1_000.0, balance=1_000.0, position_count=0)
    store.write_snapshot(clock.now - 120, total_value=840.0, balance=840.0, position_count=0)

    status = await monitor.check()
    assert status.level == CircuitBreakerLevel.ORANGE
    assert status.reason.startswith("Portfolio down 16.0%")


@pytest.mark.asyncio
async def test_result_is_cached(settings: Settings, exchange: FakeExchange) -> None:
    monitor, _, clock = _monitor(settings, exchange)
    await monitor.check()
    await monitor.check()
    assert exchange.calls.count("get_candles") == 1

    clock.now += 61
    await monitor.check()
    assert exchange.calls.count("get_candles") == 2


@pytest.mark.asyncio
async def test_concurrent_checks_share_one_evaluation(settings: Settings, exchange: FakeExchange) -> None:
    monitor, _, _ = _monitor(settings, exchange)
    first, second = await asyncio.gather(monitor.check(), monitor.check())
    assert first is second
    assert exchange.calls.count("get_candles") == 1


@pytest.mark.asyncio
async def test_check_error_degrades_to_yellow(settings: Settings, exchange: FakeExchange) -> None:
    exchange.fail.add("get_candles")
    monitor, _, _ = _monitor(settings, exchange)
    status = await monitor.check()
    assert status.level == CircuitBreakerLevel.YELLOW
    assert status.reason.startswith("Circuit breaker check error")


def test_max_leverage_per_level(settings: Settings, exchange: FakeExchange) -> None:
    monitor, _, _ = _monitor(settings, exchange)
    assert monitor.max_leverage(CircuitBreakerLevel.RED) == 1
    assert monitor.max_leverage(CircuitBreakerLevel.ORANGE) == 2
    assert monitor.max_leverage(CircuitBreakerLevel.YELLOW) == 3
    assert monitor.max_leverage(CircuitBreakerLevel.NONE) == settings.max_leverage

    capped, _, _ = _monitor(settings.model_copy(update={"max_leverage": 2}), exchange)
    assert capped.max_leverage(CircuitBreakerLevel.YELLOW) == 2
