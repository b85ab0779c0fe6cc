import math

from autonomous_trading.config import Settings
from autonomous_trading.risk.urgency import classify, rank_by_urgency, thresholds_from_style
from autonomous_trading.types import UrgencyLevel, UrgencyThresholds
from conftest import snapshot

THRESHOLDS = UrgencyThresholds(
    take_profit_upper_pct=7.0,
    take_profit_partial_pct=3.0,
    stop_loss_pct=3.0,
    max_hold_hours=12.0,
)


def test_thresholds_follow_trading_style() -> None:
    thresholds = thresholds_from_style(Settings(journal_dir="data/journal").style_params)
    assert thresholds.take_profit_upper_pct == 7.0
    assert thresholds.take_profit_partial_pct == 3.0
    assert thresholds.stop_loss_pct == 3.0
    assert thresholds.max_hold_hours == 12.0


def test_classify_rules_in_order() -> None:
    assert classify(snapshot(pnl_pct=7.5), THRESHOLDS).level == UrgencyLevel.VERY_URGENT
    assert classify(snapshot(pnl_pct=-3.0), THRESHOLDS).level == UrgencyLevel.VERY_URGENT
    assert classify(snapshot(pnl_pct=0.5, hold_hours=12.0), THRESHOLDS).level == UrgencyLevel.VERY_URGENT
    assert classify(snapshot(pnl_pct=3.5), THRESHOLDS).level == UrgencyLevel.MODERATE
    assert classify(snapshot(pnl_pct=-1.6), THRESHOLDS).level == UrgencyLevel.MODERATE
    assert classify(snapshot(pnl_pct=0.0, hold_hours=9.5), THRESHOLDS).level == UrgencyLevel.MODERATE
    assert classify(snapshot(pnl_pct=1.0, hold_hours=2.0), THRESHOLDS).level == UrgencyLevel.LOW


def test_stop_loss_reason_mentions_threshold() -> None:
    urgency = classify(snapshot(pnl_pct=-4.2), THRESHOLDS)
    assert "stop loss" in urgency.reason


def test_non_finite_inputs_are_neutral() -> None:
    position = snapshot(pnl_pct=math.nan, hold_hours=math.inf)
    assert classify(position, THRESHOLDS).level == UrgencyLevel.LOW


def test_urgency_is_monotonic_in_abs_pnl() -> None:
    for sign in (1.0, -1.0):
        previous_rank = UrgencyLevel.LOW.rank
        for step in range(0, 200):
            pnl = sign * step * 0.05
            rank = classify(snapshot(pnl_pct=pnl, hold_hours=0.0), THRESHOLDS).level.rank
            assert rank <= previous_rank
            previous_rank = rank


def test_rank_by_urgency_orders_by_level_then_abs_pnl() -> None:
    low = snapshot("cmt_solusdt", pnl_pct=0.5)
    moderate = snapshot("cmt_ethusdt", pnl_pct=-2.0)
    urgent_small = snapshot("cmt_btcusdt", pnl_pct=-3.5)
    urgent_big = snapshot("cmt_xrpusdt", pnl_pct=9.0)

    ranked = rank_by_urgency([low, moderate, urgent_small, urgent_big], THRESHOLDS)
    assert [position.symbol for position, _ in ranked] == [
        "cmt_xrpusdt",
        "cmt_btcusdt",
        "cmt_ethusdt",
        "cmt_solusdt",
    ]


def test_untracked_hold_time_never_raises_urgency() -> None:
    untracked = snapshot(pnl_pct=0.1, hold_hours=24.0, hold_known=False)
    assert classify(untracked, THRESHOLDS).level == UrgencyLevel.LOW
    assert classify(snapshot(pnl_pct=-3.5, hold_hours=24.0, hold_known=False), THRESHOLDS).level == (
        UrgencyLevel.VERY_URGENT
    )
