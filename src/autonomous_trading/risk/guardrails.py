"""Hard risk guardrails applied independent of any decision service output."""

from __future__ import annotations

import math

from autonomous_trading.config import Settings
from autonomous_trading.risk.urgency import rank_by_urgency
from autonomous_trading.types import (
    GuardrailVerdict,
    MarketData,
    PositionSnapshot,
    PreflightAction,
    PreflightResult,
    Side,
    UrgencyLevel,
    UrgencyThresholds,
)
from autonomous_trading.utils.logging import get_logger, log_guard_event

# Rough token cost of each pipeline variant, reported as "cost saved".
FULL_PIPELINE_TOKENS = 8000
LIGHTWEIGHT_TOKENS = 3000
DIRECT_MANAGE_TOKENS = 500

FALLBACK_URGENT_PNL_PCT = 5.0


class GuardrailEngine:
    """Rule-based safety checks for preflight, candidate screening and execution."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._logger = get_logger("autonomous_trading.risk.guardrails")

    # ---- preflight ----

    def preflight(
        self,
        balance: float | None,
        weekly_pnl_pct: float | None,
        positions: list[PositionSnapshot] | None,
        thresholds: UrgencyThresholds,
    ) -> PreflightResult:
        """Decide whether the full decision pipeline is worth running this cycle.

        ``None`` for balance or positions means the fetch failed; the pipeline
        then runs and the later guards make the call.
        """
        if balance is None:
            return _run("Balance unavailable, running full pipeline")

        if not math.isfinite(balance) or balance < self._settings.min_balance_to_trade:
            return self._skip(
                "insufficient balance",
                check="balance",
                current=balance,
                limit=self._settings.min_balance_to_trade,
            )

        limit = self._settings.max_weekly_drawdown_pct
        if weekly_pnl_pct is not None and math.isfinite(weekly_pnl_pct) and weekly_pnl_pct < -limit:
            return self._skip(
                "weekly drawdown limit exceeded",
                check="weekly_drawdown",
                current=weekly_pnl_pct,
                limit=-limit,
            )

        if positions is None:
            return _run("Positions unavailable, running full pipeline")

        long_count, short_count = _direction_counts(positions)
        max_same = self._settings.max_same_direction_positions
        long_capped = long_count >= max_same
        short_capped = short_count >= max_same
        fully_capped = len(positions) >= self._settings.max_concurrent_positions or (long_capped and short_capped)

        if not fully_capped:
            directions: list[Side] = []
            if not long_capped:
                directions.append("LONG")
            if not short_capped:
                directions.append("SHORT")
            if long_capped:
                label = "SHORT only"
            elif short_capped:
                label = "LONG only"
            else:
                label = "both directions"
            result = _run(f"Within limits, {label} available")
            result.positions = positions
            result.available_directions = directions
            return result

        ranked = rank_by_urgency(positions, thresholds)
        for position, urgency in ranked:
            if urgency.level == UrgencyLevel.VERY_URGENT:
                return PreflightResult(
                    action=PreflightAction.DIRECT_MANAGE,
                    verdict=GuardrailVerdict(
                        allowed=False,
                        reason=f"At limits, {position.symbol} {urgency.reason}",
                        estimated_cost_saved=FULL_PIPELINE_TOKENS - DIRECT_MANAGE_TOKENS,
                        check="preflight_urgency",
                    ),
                    urgent_position=position,
                    urgency=urgency,
                    positions=positions,
                )
        for position, urgency in ranked:
            if urgency.level == UrgencyLevel.MODERATE:
                return PreflightResult(
                    action=PreflightAction.LIGHTWEIGHT_DEBATE,
                    verdict=GuardrailVerdict(
                        allowed=False,
                        reason=f"At limits, {position.symbol} {urgency.reason}",
                        estimated_cost_saved=FULL_PIPELINE_TOKENS - LIGHTWEIGHT_TOKENS,
                        check="preflight_urgency",
                    ),
                    urgent_position=position,
                    urgency=urgency,
                    positions=positions,
                )

        result = self._skip("At limits, no urgent positions", check="preflight_urgency")
        result.positions = positions
        return result

    # ---- candidate screening ----

    def check_hard_guards(
        self,
        symbol: str,
        direction: Side,
        market: MarketData | None,
        balance: float,
        weekly_pnl_pct: float | None,
        positions: list[PositionSnapshot],
    ) -> GuardrailVerdict:
        """Run the seven ordered guards for a new-position candidate.

        The first failure wins. ``check`` names the failed guard so callers can
        reroute ``max_positions`` and ``same_direction`` to position management.
        """
        settings = self._settings

        if len(positions) >= settings.max_concurrent_positions:
            return self._block(
                "max positions",
                check="max_positions",
                current=len(positions),
                limit=settings.max_concurrent_positions,
            )

        if not math.isfinite(balance) or balance < 0:
            return self._block("invalid balance data", check="balance", current=balance)
        if balance < settings.min_balance_to_trade:
            return self._block(
                "insufficient balance",
                check="balance",
                current=balance,
                limit=settings.min_balance_to_trade,
            )

        if weekly_pnl_pct is not None and math.isfinite(weekly_pnl_pct):
            if weekly_pnl_pct < -settings.max_weekly_drawdown_pct:
                return self._block(
                    "drawdown limit exceeded",
                    check="weekly_drawdown",
                    current=weekly_pnl_pct,
                    limit=-settings.max_weekly_drawdown_pct,
                )

        same_direction = [position for position in positions if position.side == direction]
        if len(same_direction) >= settings.max_same_direction_positions:
            return self._block(
                "directional limit",
                check="same_direction",
                current=len(same_direction),
                limit=settings.max_same_direction_positions,
            )

        if market is None:
            return self._block("missing market data", check="funding")
        rate = market.funding_rate if market.funding_rate is not None else 0.0
        if math.isfinite(rate):
            against = (direction == "LONG" and rate > 0) or (direction == "SHORT" and rate < 0)
            if against and abs(rate) > settings.max_funding_against:
                return self._block(
                    "extreme funding rate",
                    check="funding",
                    current=rate,
                    limit=settings.max_funding_against,
                )

        normalized = symbol.lower()
        if any(p.symbol.lower() == normalized and p.side == direction for p in positions):
            return self._block("duplicate position", check="duplicate_position")

        if normalized not in settings.approved_symbols:
            return self._block("unapproved symbol", check="allowlist")

        return GuardrailVerdict(allowed=True, reason="all guards passed")

    # ---- execution gate ----

    def final_gate(
        self,
        *,
        source_id: str,
        positions: list[PositionSnapshot],
        weekly_pnl_pct: float,
        last_trade_time: dict[str, float],
        daily_trade_count: int | None,
        now: float,
    ) -> GuardrailVerdict:
        """Last checks before an order is built. A failure is an expected outcome."""
        settings = self._settings

        if len(positions) >= settings.max_concurrent_positions:
            return self._block(
                f"Max concurrent positions: {len(positions)}/{settings.max_concurrent_positions}",
                check="max_concurrent_positions",
                current=len(positions),
                limit=settings.max_concurrent_positions,
            )

        if math.isfinite(weekly_pnl_pct) and weekly_pnl_pct < -settings.max_weekly_drawdown_pct:
            return self._block(
                f"Weekly drawdown: {weekly_pnl_pct:.2f}% exceeds -{settings.max_weekly_drawdown_pct:g}%",
                check="weekly_drawdown",
                current=weekly_pnl_pct,
                limit=-settings.max_weekly_drawdown_pct,
            )

        if source_id not in settings.decision_sources:
            return self._block(f"Invalid decision source: {source_id}", check="invalid_source")

        elapsed = now - last_trade_time.get(source_id, 0.0)
        if elapsed < settings.min_trade_interval_sec:
            remaining = settings.min_trade_interval_sec - elapsed
            return self._block(
                f"Trade cooldown: {source_id} must wait {math.ceil(remaining / 60)} min",
                check="trade_cooldown",
                current=elapsed,
                limit=settings.min_trade_interval_sec,
            )

        # An unknown count is treated as the cap.
        count = daily_trade_count if daily_trade_count is not None else settings.max_daily_trades
        if count >= settings.max_daily_trades:
            return self._block(
                f"Max daily trades: {count}/{settings.max_daily_trades}",
                check="max_daily_trades",
                current=count,
                limit=settings.max_daily_trades,
            )

        return GuardrailVerdict(allowed=True, reason="safety checks passed")

    # ---- fallback selection ----

    def select_fallback(self, positions: list[PositionSnapshot]) -> PositionSnapshot | None:
        """Pick a position to manage instead of opening a new one.

        Positions beyond the urgent |P&L| mark come first, then larger |P&L|.
        """
        if not positions:
            return None

        def key(position: PositionSnapshot) -> tuple[int, float]:
            pnl = abs(position.unrealized_pnl_pct) if math.isfinite(position.unrealized_pnl_pct) else 0.0
            return (0 if pnl > FALLBACK_URGENT_PNL_PCT else 1, -pnl)

        return sorted(positions, key=key)[0]

    def _skip(
        self,
        reason: str,
        *,
        check: str,
        current: float | None = None,
        limit: float | None = None,
    ) -> PreflightResult:
        log_guard_event(self._logger, check=check, action="skip_cycle", reason=reason, current=current)
        return PreflightResult(
            action=PreflightAction.SKIP_CYCLE,
            verdict=GuardrailVerdict(
                allowed=False,
                reason=reason,
                estimated_cost_saved=FULL_PIPELINE_TOKENS,
                check=check,
                current=current,
                limit=limit,
            ),
        )

    def _block(
        self,
        reason: str,
        *,
        check: str,
        current: float | None = None,
        limit: float | None = None,
    ) -> GuardrailVerdict:
        log_guard_event(self._logger, check=check, action="block", reason=reason, current=current, limit=limit)
        return GuardrailVerdict(allowed=False, reason=reason, check=check, current=current, limit=limit)


def _run(reason: str) -> PreflightResult:
    return PreflightResult(
        action=PreflightAction.RUN_STAGE_2,
        verdict=GuardrailVerdict(allowed=True, reason=reason),
        available_directions=["LONG", "SHORT"],
    )


def _direction_counts(positions: list[PositionSnapshot]) -> tuple[int, int]:
    long_count = sum(1 for position in positions if position.side == "LONG")
    return long_count, len(positions) - long_count
