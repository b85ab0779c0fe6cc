"""Position management: ask the decision service, then validate and apply its action."""

from __future__ import annotations

import math
import time
import uuid
from collections.abc import Callable

from autonomous_trading.ai.decision_client import DecisionService
from autonomous_trading.ai.schemas import ManagementDecision
from autonomous_trading.config import Settings
from autonomous_trading.errors import DecisionPayloadError, DecisionServiceError, ExchangeError
from autonomous_trading.exchange.client import ExchangeClient
from autonomous_trading.exchange.models import PlanOrder
from autonomous_trading.exec.contract_specs import ContractSpecCache, round_to_step
from autonomous_trading.journal.store import TradeStore
from autonomous_trading.types import ManagementOutcome, MarketData, PositionSnapshot, TradeRecord, TradingCycle
from autonomous_trading.utils.logging import get_logger

ADD_MARGIN_MUST_CLOSE_PCT = -7.0
ADD_MARGIN_MIN_PNL_PCT = -3.0
ADD_MARGIN_MAX_VALUE_RATIO = 0.5
STOP_LOOSEN_RATIO = 0.05

_CLOSING_TYPES = {"CLOSE_FULL", "CLOSE_PARTIAL", "TAKE_PARTIAL"}


class ManageTargetError(Exception):
    """A MANAGE directive could not be resolved to one open position."""

    def __init__(self, reason: str, candidates: list[str] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.candidates = candidates or []


def route_manage_symbol(symbol: str, positions: list[PositionSnapshot]) -> PositionSnapshot:
    """Resolve a MANAGE target symbol to an open position.

    Exact (case-insensitive) match first, then a fuzzy match on the symbol
    without its ``cmt_`` prefix. Raises ManageTargetError when nothing or
    more than one position matches.
    """
    wanted = symbol.lower()
    for position in positions:
        if position.symbol.lower() == wanted:
            return position

    term = _strip_prefix(wanted)
    candidates = [
        position
        for position in positions
        if _fuzzy_match(_strip_prefix(position.symbol.lower()), term)
    ]
    if len(candidates) == 1:
        return candidates[0]
    if len(candidates) > 1:
        suffixed = [p for p in candidates if _strip_prefix(p.symbol.lower()).endswith(term)]
        if len(suffixed) == 1:
            return suffixed[0]
        raise ManageTargetError("ambiguous position match", [p.symbol for p in candidates])
    raise ManageTargetError("position not found")


class PositionManager:
    """Apply management decisions to open positions."""

    def __init__(
        self,
        exchange: ExchangeClient,
        contracts: ContractSpecCache,
        store: TradeStore,
        decisions: DecisionService,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exchange = exchange
        self._contracts = contracts
        self._store = store
        self._decisions = decisions
        self._settings = settings
        self._clock = clock
        self._logger = get_logger("autonomous_trading.exec.management")

    async def manage(
        self,
        position: PositionSnapshot,
        market_data: dict[str, MarketData],
        cycle: TradingCycle,
        *,
        reason_prefix: str = "MANAGE",
    ) -> ManagementOutcome:
        """Ask for a management decision on ``position`` and apply it."""
        market = market_data.get(position.symbol)
        if market is not None:
            position.reprice(market.current_price)
        if not math.isfinite(position.size) or position.size <= 0:
            cycle.errors.append(f"Invalid position size for {position.symbol}")
            return ManagementOutcome(executed=False, symbol=position.symbol, error="invalid position size")

        self._logger.info(
            "position_management_start",
            symbol=position.symbol,
            side=position.side,
            pnl_pct=round(position.unrealized_pnl_pct, 2),
            entry=position.entry_price,
            current=position.current_price,
        )
        try:
            decision = await self._decisions.run_position_management(position, market_data)
        except DecisionPayloadError as exc:
            cycle.errors.append("Invalid management decision")
            self._logger.error("management_decision_invalid", symbol=position.symbol, error=str(exc))
            return ManagementOutcome(executed=False, symbol=position.symbol, error="invalid management decision")
        except DecisionServiceError as exc:
            cycle.errors.append(f"Management decision failed for {position.symbol}")
            self._logger.error("management_decision_failed", symbol=position.symbol, error=str(exc))
            return ManagementOutcome(executed=False, symbol=position.symbol, error="management decision failed")

        return await self.execute_action(position, decision, cycle, reason_prefix=reason_prefix)

    async def manage_best(
        self,
        candidates: list[PositionSnapshot],
        market_data: dict[str, MarketData],
        cycle: TradingCycle,
        *,
        reason_prefix: str = "FALLBACK",
    ) -> ManagementOutcome:
        """Manage the first of ``candidates``; callers order them by their own heuristic."""
        if not candidates:
            self._logger.warning("no_positions_to_manage", reason_prefix=reason_prefix)
            return ManagementOutcome(executed=False, error="no positions to manage")
        return await self.manage(candidates[0], market_data, cycle, reason_prefix=reason_prefix)

    async def execute_action(
        self,
        position: PositionSnapshot,
        decision: ManagementDecision,
        cycle: TradingCycle,
        *,
        reason_prefix: str = "MANAGE",
    ) -> ManagementOutcome:
        """Validate and apply one management action.

        Validation and exchange failures are recorded on the cycle and
        reported in the outcome rather than raised.
        """
        manage_type = decision.manage_type
        self._logger.info(
            "management_decision",
            symbol=position.symbol,
            manage_type=manage_type,
            conviction=decision.conviction,
            reason=decision.reason,
        )

        if self._settings.effective_dry_run:
            self._logger.info("dry_run_management", symbol=position.symbol, manage_type=manage_type)
            cycle.trades_executed += 1
            return ManagementOutcome(
                executed=True,
                symbol=position.symbol,
                manage_type=manage_type,
                details="dry run",
            )

        closed_size = 0.0
        try:
            if manage_type == "CLOSE_FULL":
                await self._exchange.close_all_positions(position.symbol)
                details = "Full position closed"
                closed_size = position.size
            elif manage_type in {"CLOSE_PARTIAL", "TAKE_PARTIAL"}:
                details, closed_size = await self._close_partial(position, decision)
            elif manage_type == "TIGHTEN_STOP":
                details = await self._tighten_stop(position, decision.new_stop_loss)
            elif manage_type == "ADJUST_TP":
                details = await self._adjust_take_profit(position, decision.new_take_profit)
            elif manage_type == "ADD_MARGIN":
                details = await self._add_margin(position, decision.margin_amount)
            else:
                raise ValueError(f"Unknown management action: {manage_type}")
        except (ValueError, ExchangeError) as exc:
            self._logger.error("management_action_failed", symbol=position.symbol, manage_type=manage_type, error=str(exc))
            cycle.errors.append(f"Failed to execute {manage_type}: {exc}")
            return ManagementOutcome(executed=False, symbol=position.symbol, manage_type=manage_type, error=str(exc))

        self._logger.info("management_action_applied", symbol=position.symbol, manage_type=manage_type, details=details)
        cycle.trades_executed += 1
        self._record(position, manage_type, details, closed_size, reason_prefix)
        return ManagementOutcome(executed=True, symbol=position.symbol, manage_type=manage_type, details=details)

    async def _close_partial(self, position: PositionSnapshot, decision: ManagementDecision) -> tuple[str, float]:
        percent = decision.close_percent
        if percent is None or not math.isfinite(percent) or percent < 1 or percent > 99:
            raise ValueError(f"Invalid closePercent: {percent}. Must be between 1 and 99")
        if decision.manage_type == "TAKE_PARTIAL" and position.unrealized_pnl_pct < 0:
            self._logger.warning(
                "take_partial_on_losing_position",
                symbol=position.symbol,
                pnl_pct=round(position.unrealized_pnl_pct, 2),
            )

        spec = self._contracts.get(position.symbol)
        if spec is None:
            raise ValueError(f"Contract specs unavailable for {position.symbol}")
        size_text = round_to_step(position.size * percent / 100, spec)
        size = float(size_text)
        if not math.isfinite(size) or size <= 0:
            raise ValueError(f"Calculated size too small: {size_text}")
        if size >= position.size:
            raise ValueError(f"Calculated size exceeds position: {size_text} >= {position.size}. Use CLOSE_FULL instead.")

        await self._exchange.close_partial_position(position.symbol, position.side, size_text)
        if decision.manage_type == "TAKE_PARTIAL":
            return f"Took {percent:g}% profit ({size_text} units)", size
        return f"Closed {percent:g}% of position ({size_text} units)", size

    async def _tighten_stop(self, position: PositionSnapshot, stop: float | None) -> str:
        if stop is None or not math.isfinite(stop) or stop <= 0:
            raise ValueError(f"Invalid newStopLoss: {stop}")
        if position.side == "LONG" and stop >= position.current_price:
            raise ValueError(f"Stop loss for LONG must be below current price: {stop} >= {position.current_price}")
        if position.side == "SHORT" and stop <= position.current_price:
            raise ValueError(f"Stop loss for SHORT must be above current price: {stop} <= {position.current_price}")

        loosening = (
            stop < position.entry_price * (1 - STOP_LOOSEN_RATIO)
            if position.side == "LONG"
            else stop > position.entry_price * (1 + STOP_LOOSEN_RATIO)
        )
        if loosening:
            self._logger.warning("stop_loss_loosening", symbol=position.symbol, stop=stop, entry=position.entry_price)

        existing = await self._find_plan_order(position, "loss_plan")
        if existing is not None:
            await self._exchange.modify_tp_sl_order(order_id=existing.order_id, trigger_price=stop)
            return f"Modified stop loss to {stop}"
        await self._exchange.place_tp_sl_order(
            symbol=position.symbol,
            plan_type="loss_plan",
            trigger_price=stop,
            size=await self._fresh_size(position),
            position_side=position.side.lower(),
        )
        return f"Placed new stop loss at {stop}"

    async def _adjust_take_profit(self, position: PositionSnapshot, take: float | None) -> str:
        if take is None or not math.isfinite(take) or take <= 0:
            raise ValueError(f"Invalid newTakeProfit: {take}")
        if position.side == "LONG" and take <= position.current_price:
            raise ValueError(f"Take profit for LONG must be above current price: {take} <= {position.current_price}")
        if position.side == "SHORT" and take >= position.current_price:
            raise ValueError(f"Take profit for SHORT must be below current price: {take} >= {position.current_price}")

        existing = await self._find_plan_order(position, "profit_plan")
        if existing is not None:
            await self._exchange.modify_tp_sl_order(order_id=existing.order_id, trigger_price=take)
            return f"Modified take profit to {take}"
        await self._exchange.place_tp_sl_order(
            symbol=position.symbol,
            plan_type="profit_plan",
            trigger_price=take,
            size=await self._fresh_size(position),
            position_side=position.side.lower(),
        )
        return f"Placed new take profit at {take}"

    async def _add_margin(self, position: PositionSnapshot, amount: float | None) -> str:
        if amount is None or not math.isfinite(amount) or amount <= 0:
            raise ValueError(f"Invalid marginAmount: {amount}")
        pnl = position.unrealized_pnl_pct
        if not math.isfinite(pnl):
            raise ValueError(f"ADD_MARGIN forbidden: invalid P&L value ({pnl})")
        if pnl < ADD_MARGIN_MUST_CLOSE_PCT:
            raise ValueError(f"ADD_MARGIN forbidden: P&L {pnl:.2f}% < {ADD_MARGIN_MUST_CLOSE_PCT:g}%. Must close position instead.")
        if pnl < ADD_MARGIN_MIN_PNL_PCT:
            raise ValueError(f"ADD_MARGIN forbidden: P&L {pnl:.2f}% < {ADD_MARGIN_MIN_PNL_PCT:g}%")
        if position.margin_mode != "ISOLATED":
            raise ValueError(f"ADD_MARGIN only allowed for isolated positions. Current mode: {position.margin_mode}")
        if not position.isolated_position_id:
            raise ValueError(f"Missing isolatedPositionId for {position.symbol}")
        max_margin = position.size * position.current_price * ADD_MARGIN_MAX_VALUE_RATIO
        if amount > max_margin:
            raise ValueError(f"Margin amount {amount} exceeds 50% of position value ({max_margin:.2f})")

        await self._exchange.adjust_position_margin(isolated_position_id=position.isolated_position_id, amount=amount)
        return f"Added {amount:g} USDT margin to isolated position"

    async def _find_plan_order(self, position: PositionSnapshot, plan_type: str) -> PlanOrder | None:
        try:
            orders = await self._exchange.get_current_plan_orders(position.symbol)
        except ExchangeError as exc:
            self._logger.warning("plan_orders_fetch_failed", symbol=position.symbol, error=str(exc))
            return None
        side = position.side.lower()
        for order in orders:
            if order.plan_type == plan_type and order.position_side == side and order.order_id:
                return order
        return None

    async def _fresh_size(self, position: PositionSnapshot) -> float:
        try:
            fresh = await self._exchange.get_position(position.symbol)
        except ExchangeError as exc:
            self._logger.warning("fresh_position_fetch_failed", symbol=position.symbol, error=str(exc))
            return position.size
        if fresh is not None and math.isfinite(fresh.size) and fresh.size > 0:
            return fresh.size
        return position.size

    def _record(
        self,
        position: PositionSnapshot,
        manage_type: str,
        details: str,
        closed_size: float,
        reason_prefix: str,
    ) -> None:
        if manage_type == "CLOSE_FULL":
            realized = position.unrealized_pnl
        elif manage_type in _CLOSING_TYPES and position.size > 0:
            realized = position.unrealized_pnl * closed_size / position.size
        else:
            realized = 0.0

        entry_side = "BUY" if position.side == "LONG" else "SELL"
        try:
            entry = self._store.latest_entry(position.symbol, entry_side, with_champion=True)
            record = TradeRecord(
                id=uuid.uuid4().hex,
                symbol=position.symbol,
                side="SELL" if position.side == "LONG" else "BUY",
                size=closed_size if manage_type in _CLOSING_TYPES else position.size,
                price=position.current_price,
                status="FILLED",
                reason=f"{reason_prefix}: {manage_type} - {details}",
                executed_at=self._clock(),
                champion_id=entry.champion_id if entry else None,
                realized_pnl=realized,
            )
            self._store.save_trade(record)
        except Exception as exc:  # noqa: BLE001 - the action already happened on the exchange.
            self._logger.error("management_trade_persist_failed", symbol=position.symbol, error=str(exc))


def _strip_prefix(symbol: str) -> str:
    return symbol[4:] if symbol.startswith("cmt_") else symbol


def _fuzzy_match(candidate: str, term: str) -> bool:
    if not candidate or not term:
        return False
    return candidate.endswith(term) or term.endswith(candidate) or term in candidate or candidate in term

