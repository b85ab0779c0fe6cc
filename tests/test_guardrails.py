from __future__ import annotations

import math
import time

from autonomous_trading.config import Settings
from autonomous_trading.risk.guardrails import (
    DIRECT_MANAGE_TOKENS,
    FULL_PIPELINE_TOKENS,
    LIGHTWEIGHT_TOKENS,
    GuardrailEngine,
)
from autonomous_trading.risk.urgency import thresholds_from_style
from autonomous_trading.types import PreflightAction
from conftest import market, snapshot


def _engine(**overrides: object) -> tuple[GuardrailEngine, Settings]:
    settings = Settings(journal_dir="data/journal", approved_symbols=["cmt_btcusdt", "cmt_ethusdt"], **overrides)
    return GuardrailEngine(settings), settings


def _preflight(engine: GuardrailEngine, settings: Settings, **kwargs: object):
    params = {"balance": 1_000.0, "weekly_pnl_pct": 0.0, "positions": []}
    params.update(kwargs)
    return engine.preflight(
        params["balance"],  # type: ignore[arg-type]
        params["weekly_pnl_pct"],  # type: ignore[arg-type]
        params["positions"],  # type: ignore[arg-type]
        thresholds_from_style(settings.style_params),
    )


def test_preflight_skips_just_below_minimum_balance() -> None:
    engine, settings = _engine()
    result = _preflight(engine, settings, balance=settings.min_balance_to_trade - 0.01)
    assert result.action == PreflightAction.SKIP_CYCLE
    assert result.verdict.reason == "insufficient balance"
    assert result.verdict.estimated_cost_saved == FULL_PIPELINE_TOKENS


def test_preflight_skips_nan_balance() -> None:
    engine, settings = _engine()
    result = _preflight(engine, settings, balance=math.nan)
    assert result.action == PreflightAction.SKIP_CYCLE


def test_preflight_runs_when_balance_unknown() -> None:
    engine, settings = _engine()
    result = _preflight(engine, settings, balance=None, positions=None)
    assert result.can_run_pipeline


def test_preflight_skips_on_weekly_drawdown() -> None:
    engine, settings = _engine()
    result = _preflight(engine, settings, weekly_pnl_pct=-(settings.max_weekly_drawdown_pct + 0.5))
    assert result.action == PreflightAction.SKIP_CYCLE
    assert result.verdict.reason == "weekly drawdown limit exceeded"


def test_preflight_reports_open_direction() -> None:
    engine, settings = _engine(max_concurrent_positions=5)
    longs = [snapshot("cmt_btcusdt", "LONG"), snapshot("cmt_ethusdt", "LONG")]
    result = _preflight(engine, settings, positions=longs)
    assert result.can_run_pipeline
    assert result.available_directions == ["SHORT"]
    assert "SHORT only" in result.verdict.reason


def test_preflight_direct_manage_for_very_urgent() -> None:
    engine, settings = _engine()
    positions = [
        snapshot("cmt_btcusdt", "LONG", pnl_pct=1.0),
        snapshot("cmt_ethusdt", "SHORT", pnl_pct=-4.0),
        snapshot("cmt_solusdt", "LONG", pnl_pct=0.2),
    ]
    result = _preflight(engine, settings, positions=positions)
    assert result.action == PreflightAction.DIRECT_MANAGE
    assert result.urgent_position is positions[1]
    assert result.verdict.estimated_cost_saved == FULL_PIPELINE_TOKENS - DIRECT_MANAGE_TOKENS
    assert result.verdict.reason.startswith("At limits, cmt_ethusdt")


def test_preflight_lightweight_for_moderate() -> None:
    engine, settings = _engine()
    positions = [
        snapshot("cmt_btcusdt", "LONG", pnl_pct=3.5),
        snapshot("cmt_ethusdt", "SHORT", pnl_pct=0.1),
        snapshot("cmt_solusdt", "LONG", pnl_pct=0.2),
    ]
    result = _preflight(engine, settings, positions=positions)
    assert result.action == PreflightAction.LIGHTWEIGHT_DEBATE
    assert result.verdict.estimated_cost_saved == FULL_PIPELINE_TOKENS - LIGHTWEIGHT_TOKENS


def test_preflight_skips_when_capped_and_calm() -> None:
    engine, settings = _engine()
    positions = [snapshot(s, "LONG", pnl_pct=0.1) for s in ("cmt_btcusdt", "cmt_ethusdt", "cmt_solusdt")]
    result = _preflight(engine, settings, positions=positions)
    assert result.action == PreflightAction.SKIP_CYCLE
    assert result.verdict.reason == "At limits, no urgent positions"


def test_hard_guards_order_and_names() -> None:
    engine, settings = _engine()
    now = time.time()
    btc = market("cmt_btcusdt", fetched_at=now)

    full = [snapshot(s) for s in ("cmt_btcusdt", "cmt_ethusdt", "cmt_solusdt")]
    assert engine.check_hard_guards("cmt_btcusdt", "LONG", btc, 0.0, -50.0, full).check == "max_positions"

    verdict = engine.check_hard_guards("cmt_btcusdt", "LONG", btc, math.nan, 0.0, [])
    assert (verdict.check, verdict.reason) == ("balance", "invalid balance data")

    verdict = engine.check_hard_guards("cmt_btcusdt", "LONG", btc, 5.0, 0.0, [])
    assert verdict.reason == "insufficient balance"

    verdict = engine.check_hard_guards("cmt_btcusdt", "LONG", btc, 1_000.0, -11.0, [])
    assert verdict.check == "weekly_drawdown"


def test_same_direction_cap_blocks_with_three_longs() -> None:
    engine, _ = _engine(max_concurrent_positions=5)
    longs = [
        snapshot("cmt_solusdt", "LONG", pnl_pct=1.0),
        snapshot("cmt_xrpusdt", "LONG", pnl_pct=-6.0),
        snapshot("cmt_adausdt", "LONG", pnl_pct=2.0),
    ]
    btc = market("cmt_btcusdt", fetched_at=time.time())
    verdict = engine.check_hard_guards("cmt_btcusdt", "LONG", btc, 1_000.0, 0.0, longs)
    assert not verdict.allowed
    assert verdict.check == "same_direction"
    assert engine.select_fallback(longs) is longs[1]


def test_funding_against_direction_blocks() -> None:
    engine, settings = _engine()
    btc = market("cmt_btcusdt", fetched_at=time.time(), funding=settings.max_funding_against * 2)
    long_verdict = engine.check_hard_guards("cmt_btcusdt", "LONG", btc, 1_000.0, 0.0, [])
    short_verdict = engine.check_hard_guards("cmt_btcusdt", "SHORT", btc, 1_000.0, 0.0, [])
    assert long_verdict.reason == "extreme funding rate"
    assert short_verdict.allowed


def test_missing_market_blocks() -> None:
    engine, _ = _engine()
    verdict = engine.check_hard_guards("cmt_btcusdt", "LONG", None, 1_000.0, 0.0, [])
    assert verdict.reason == "missing market data"


def test_duplicate_same_direction_blocks_but_hedge_allowed() -> None:
    engine, _ = _engine()
    btc = market("cmt_btcusdt", fetched_at=time.time())
    existing = [snapshot("cmt_btcusdt", "LONG")]
    assert engine.check_hard_guards("cmt_btcusdt", "LONG", btc, 1_000.0, 0.0, existing).check == "duplicate_position"
    assert engine.check_hard_guards("cmt_btcusdt", "SHORT", btc, 1_000.0, 0.0, existing).allowed


def test_unapproved_symbol_blocks() -> None:
    engine, _ = _engine()
    doge = market("cmt_dogeusdt", price=0.1, fetched_at=time.time())
    verdict = engine.check_hard_guards("cmt_dogeusdt", "LONG", doge, 1_000.0, 0.0, [])
    assert verdict.reason == "unapproved symbol"


def test_final_gate_checks() -> None:
    engine, settings = _engine()
    now = time.time()
    base = {
        "source_id": "jim",
        "positions": [],
        "weekly_pnl_pct": 0.0,
        "last_trade_time": {},
        "daily_trade_count": 0,
        "now": now,
    }
    assert engine.final_gate(**base).allowed

    full = [snapshot(s) for s in ("cmt_btcusdt", "cmt_ethusdt", "cmt_solusdt")]
    assert engine.final_gate(**{**base, "positions": full}).check == "max_concurrent_positions"
    assert engine.final_gate(**{**base, "weekly_pnl_pct": -20.0}).check == "weekly_drawdown"
    assert engine.final_gate(**{**base, "source_id": "nobody"}).check == "invalid_source"

    cooling = engine.final_gate(**{**base, "last_trade_time": {"jim": now - 60}})
    assert cooling.check == "trade_cooldown"
    assert "must wait 14 min" in cooling.reason
    other_source = engine.final_gate(**{**base, "source_id": "ray", "last_trade_time": {"jim": now - 60}})
    assert other_source.allowed

    assert engine.final_gate(**{**base, "daily_trade_count": settings.max_daily_trades}).check == "max_daily_trades"
    assert engine.final_gate(**{**base, "daily_trade_count": None}).check == "max_daily_trades"


def test_select_fallback_prefers_urgent_then_abs_pnl() -> None:
    engine, _ = _engine()
    calm_big = snapshot("cmt_btcusdt", pnl_pct=4.9)
    urgent = snapshot("cmt_ethusdt", pnl_pct=-5.5)
    calm_small = snapshot("cmt_solusdt", pnl_pct=1.0)
    assert engine.select_fallback([calm_small, calm_big, urgent]) is urgent
    assert engine.select_fallback([calm_small, calm_big]) is calm_big
    assert engine.select_fallback([]) is None
