from __future__ import annotations

import pytest

from autonomous_trading.errors import ContractSpecsUnavailable
from autonomous_trading.exec.contract_specs import (
    ContractSpecCache,
    parse_contract_spec,
    round_to_step,
    round_to_tick,
)
from conftest import FakeExchange, contract_info


class _Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_parse_contract_spec_uses_decimal_count_for_tick() -> None:
    spec = parse_contract_spec(contract_info("cmt_btcusdt"))
    assert spec.tick_size == pytest.approx(0.1)
    assert spec.price_decimals == 1
    assert spec.size_step == 0.001
    assert spec.max_leverage == 125


def test_parse_contract_spec_rejects_bad_symbol() -> None:
    with pytest.raises(ValueError, match="invalid_symbol_format"):
        parse_contract_spec(contract_info("btcusdt"))


def test_parse_contract_spec_rejects_max_below_min() -> None:
    info = contract_info("cmt_btcusdt")
    info.max_order_size = "0.0001"
    with pytest.raises(ValueError, match="max_order_below_min"):
        parse_contract_spec(info)


def test_rounding_helpers() -> None:
    spec = parse_contract_spec(contract_info("cmt_btcusdt"))
    assert round_to_step(0.0039, spec) == "0.003"
    assert round_to_tick(50_000.04, spec) == "50000.0"
    assert round_to_tick(50_000.05, spec) == "50000.1"
    with pytest.raises(ValueError, match="size_below_step"):
        round_to_step(0.0004, spec)
    with pytest.raises(ValueError, match="invalid_price"):
        round_to_tick(float("nan"), spec)


@pytest.mark.asyncio
async def test_load_skips_unparsable_contracts() -> None:
    exchange = FakeExchange()
    exchange.contracts.append(contract_info("garbage"))
    cache = ContractSpecCache(exchange)
    assert await cache.load() == 2
    assert cache.symbols == {"cmt_btcusdt", "cmt_ethusdt"}


@pytest.mark.asyncio
async def test_load_raises_on_empty_listing() -> None:
    exchange = FakeExchange()
    exchange.contracts = []
    with pytest.raises(ContractSpecsUnavailable):
        await ContractSpecCache(exchange).load()


@pytest.mark.asyncio
async def test_refresh_is_noop_when_fresh_and_complete() -> None:
    exchange = FakeExchange()
    clock = _Clock()
    cache = ContractSpecCache(exchange, ttl_sec=1800, clock=clock)
    await cache.load()
    exchange.calls.clear()

    clock.now += 60
    assert await cache.refresh_if_needed(["cmt_btcusdt"]) is False
    assert exchange.calls == []


@pytest.mark.asyncio
async def test_refresh_when_symbol_missing_or_expired() -> None:
    exchange = FakeExchange()
    clock = _Clock()
    cache = ContractSpecCache(exchange, ttl_sec=1800, clock=clock)
    await cache.load()

    assert await cache.refresh_if_needed(["cmt_solusdt"]) is True
    clock.now += 1801
    assert await cache.refresh_if_needed(["cmt_btcusdt"]) is True
    assert exchange.calls.count("get_contracts") == 3


@pytest.mark.asyncio
async def test_failed_refresh_keeps_timestamp_and_never_raises() -> None:
    exchange = FakeExchange()
    clock = _Clock()
    cache = ContractSpecCache(exchange, ttl_sec=1800, clock=clock)
    await cache.load()
    loaded_at = cache.tracker.last_refresh

    exchange.fail.add("get_contracts")
    clock.now += 1801
    assert await cache.refresh_if_needed() is False
    assert cache.tracker.last_refresh == loaded_at
    assert not cache.tracker.in_progress
    assert cache.get("cmt_btcusdt") is not None


@pytest.mark.asyncio
async def test_refresh_loses_single_flight_race() -> None:
    exchange = FakeExchange()
    cache = ContractSpecCache(exchange)
    assert cache.tracker.mark_refreshing()
    assert await cache.refresh_if_needed(["cmt_btcusdt"]) is False
    assert exchange.calls == []


def test_clear_resets_tracker() -> None:
    cache = ContractSpecCache(FakeExchange())
    cache.tracker.mark_refreshed(10.0)
    cache.clear()
    assert cache.tracker.last_refresh is None
    assert cache.symbols == set()
