"""Position urgency triage from P&L tiers and hold time."""

from __future__ import annotations

import math

from autonomous_trading.config import StyleParams
from autonomous_trading.types import PositionSnapshot, PositionUrgency, UrgencyLevel, UrgencyThresholds

_FALLBACK_TP_UPPER = 5.0
_FALLBACK_TP_PARTIAL = 2.0
_FALLBACK_STOP_LOSS = 5.0
_FALLBACK_MAX_HOLD = 12.0


def thresholds_from_style(params: StyleParams) -> UrgencyThresholds:
    """Upper tier is the 75% partial target, partial tier the 25% one."""
    return UrgencyThresholds(
        take_profit_upper_pct=_positive_or(params.partial75_pct, _FALLBACK_TP_UPPER),
        take_profit_partial_pct=_positive_or(params.partial25_pct, _FALLBACK_TP_PARTIAL),
        stop_loss_pct=_positive_or(params.stop_loss_pct, _FALLBACK_STOP_LOSS),
        max_hold_hours=_positive_or(params.max_hold_hours, _FALLBACK_MAX_HOLD),
    )


def classify(position: PositionSnapshot, thresholds: UrgencyThresholds) -> PositionUrgency:
    """First matching rule wins. An untracked hold time never raises urgency."""
    pnl = _finite_or_zero(position.unrealized_pnl_pct)
    hold = _finite_or_zero(position.hold_time_hours) if position.hold_time_known else 0.0
    tp_upper = _positive_or(thresholds.take_profit_upper_pct, _FALLBACK_TP_UPPER)
    tp_partial = _positive_or(thresholds.take_profit_partial_pct, _FALLBACK_TP_PARTIAL)
    stop_loss = _positive_or(thresholds.stop_loss_pct, _FALLBACK_STOP_LOSS)
    max_hold = _positive_or(thresholds.max_hold_hours, _FALLBACK_MAX_HOLD)

    if pnl >= tp_upper:
        return PositionUrgency(UrgencyLevel.VERY_URGENT, f"P&L {pnl:+.2f}% >= TP4 ({tp_upper:g}%)")
    if pnl <= -stop_loss:
        return PositionUrgency(UrgencyLevel.VERY_URGENT, f"P&L {pnl:+.2f}% <= stop loss (-{stop_loss:g}%)")
    if hold >= max_hold:
        return PositionUrgency(UrgencyLevel.VERY_URGENT, f"Hold {hold:.1f}h >= max hold ({max_hold:g}h)")
    if pnl >= tp_partial:
        return PositionUrgency(UrgencyLevel.MODERATE, f"P&L {pnl:+.2f}% >= TP2 ({tp_partial:g}%)")
    if pnl <= -stop_loss / 2:
        return PositionUrgency(UrgencyLevel.MODERATE, f"P&L {pnl:+.2f}% <= half stop loss (-{stop_loss / 2:g}%)")
    if hold >= max_hold * 0.75:
        return PositionUrgency(UrgencyLevel.MODERATE, f"Hold {hold:.1f}h >= 75% of max hold ({max_hold * 0.75:g}h)")
    return PositionUrgency(UrgencyLevel.LOW, "Within normal parameters")


def rank_by_urgency(
    positions: list[PositionSnapshot],
    thresholds: UrgencyThresholds,
) -> list[tuple[PositionSnapshot, PositionUrgency]]:
    """Most urgent first; ties broken by larger |P&L %|."""
    ranked = [(position, classify(position, thresholds)) for position in positions]
    ranked.sort(key=lambda item: (item[1].level.rank, -abs(_finite_or_zero(item[0].unrealized_pnl_pct))))
    return ranked


def _finite_or_zero(value: float) -> float:
    return value if isinstance(value, (int, float)) and math.isfinite(value) else 0.0


def _positive_or(value: float, fallback: float) -> float:
    if isinstance(value, (int, float)) and math.isfinite(value) and value > 0:
        return float(value)
    return fallback
