"""Turn an approved decision into one exchange order."""

from __future__ import annotations

import math
import time
import uuid
from collections.abc import Callable

from autonomous_trading.ai.schemas import ChampionAnalysis, RiskCouncilDecision
from autonomous_trading.config import Settings, StyleParams
from autonomous_trading.errors import ExchangeError
from autonomous_trading.events import EngineEvent, EventBus
from autonomous_trading.exchange.client import ExchangeClient
from autonomous_trading.exec.contract_specs import ContractSpecCache, round_to_step, round_to_tick
from autonomous_trading.journal.store import TradeStore
from autonomous_trading.types import (
    ExecutionOrder,
    ExecutionResult,
    MarketData,
    SharedPortfolio,
    Side,
    TradeRecord,
    TradingCycle,
)
from autonomous_trading.utils.logging import get_logger, log_order_execution


def recompute_price_targets(
    entry: float,
    take_profit: float,
    stop_loss: float,
    fresh_price: float,
    direction: Side,
    *,
    tolerance: float,
    style: StyleParams,
) -> tuple[float, float]:
    """Reapply the percentage distance of (take, stop) from ``entry`` to ``fresh_price``.

    Falls back to the style's default target pair when the moved targets end
    up on the wrong side of the fresh price.
    """
    take_pct = (take_profit - entry) / entry
    stop_pct = (stop_loss - entry) / entry
    new_take = fresh_price * (1 + take_pct)
    new_stop = fresh_price * (1 + stop_pct)

    if direction == "LONG":
        valid = new_take > fresh_price * (1 + tolerance) and new_stop < fresh_price * (1 - tolerance)
    else:
        valid = new_take < fresh_price * (1 - tolerance) and new_stop > fresh_price * (1 + tolerance)
    if valid:
        return new_take, new_stop
    return default_price_targets(fresh_price, direction, style)


def default_price_targets(price: float, direction: Side, style: StyleParams) -> tuple[float, float]:
    take_pct = style.target_profit_pct / 100
    stop_pct = style.stop_loss_pct / 100
    if direction == "LONG":
        return price * (1 + take_pct), price * (1 - stop_pct)
    return price * (1 - take_pct), price * (1 + stop_pct)


class ExecutionCoordinator:
    """Size, normalize and place an approved trade."""

    def __init__(
        self,
        exchange: ExchangeClient,
        contracts: ContractSpecCache,
        store: TradeStore,
        bus: EventBus,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exchange = exchange
        self._contracts = contracts
        self._store = store
        self._bus = bus
        self._settings = settings
        self._clock = clock
        self._logger = get_logger("autonomous_trading.exec.coordinator")

    async def execute(
        self,
        *,
        source_id: str,
        market: MarketData,
        champion: ChampionAnalysis,
        risk: RiskCouncilDecision,
        balance: float,
        portfolio: SharedPortfolio,
        cycle: TradingCycle,
        leverage_cap: int | None = None,
    ) -> ExecutionResult:
        """Place the order. Aborts return a result; exchange failures raise."""
        settings = self._settings
        symbol = market.symbol
        now = self._clock()

        age = market.age(now)
        if age > settings.max_market_data_age_sec:
            cycle.errors.append(f"Stale market data: {int(age)}s old (max: {settings.max_market_data_age_sec:g}s)")
            self._logger.error("market_data_stale", symbol=symbol, age_sec=round(age, 1))
            return ExecutionResult(status="aborted", reason="stale market data")
        if age > settings.warn_market_data_age_sec:
            self._logger.warning("market_data_aging", symbol=symbol, age_sec=round(age, 1))

        direction: Side = "LONG" if champion.is_bullish else "SHORT"
        adjustments = risk.adjustments
        size_score = adjustments.position_size if adjustments and adjustments.position_size else champion.position_size
        leverage = int(adjustments.leverage) if adjustments and adjustments.leverage else settings.default_leverage
        leverage = min(leverage, settings.max_leverage, leverage_cap or settings.max_leverage)
        stop_loss = adjustments.stop_loss if adjustments and adjustments.stop_loss else champion.price_target.bear
        take_profit = champion.price_target.base

        if not math.isfinite(balance) or balance < settings.min_balance_to_trade:
            cycle.errors.append(f"Insufficient balance: {balance:.2f} < {settings.min_balance_to_trade:g}")
            return ExecutionResult(status="aborted", reason="insufficient balance")

        price = market.current_price
        if not math.isfinite(price) or price <= 0:
            cycle.errors.append("Invalid market price")
            return ExecutionResult(status="aborted", reason="invalid market price")

        position_pct = min(settings.max_position_size_pct, size_score / 10 * settings.max_position_size_pct)
        size = balance * position_pct / 100 / price
        if not math.isfinite(size) or size <= 0:
            cycle.errors.append("Invalid position size")
            return ExecutionResult(status="aborted", reason="invalid position size")

        spec = self._contracts.get(symbol)
        if spec is None:
            self._logger.warning("contract_spec_missing_before_order", symbol=symbol)
            await self._contracts.refresh_if_needed([symbol])
            spec = self._contracts.get(symbol)
        if spec is None:
            cycle.errors.append(f"Contract specs unavailable for {symbol}")
            self._logger.error("contract_specs_unavailable", symbol=symbol)
            return ExecutionResult(status="aborted", reason="contract specs unavailable")

        if size < spec.min_order_size:
            cycle.errors.append(f"Position size below minimum for {symbol}")
            return ExecutionResult(status="rejected", reason="size below minimum")
        if size > spec.max_order_size:
            self._logger.warning("order_size_capped", symbol=symbol, size=size, max_size=spec.max_order_size)
            size = spec.max_order_size

        try:
            order = ExecutionOrder(
                symbol=symbol,
                direction=direction,
                size=round_to_step(size, spec),
                price=round_to_tick(price, spec),
                take_profit=round_to_tick(take_profit, spec),
                stop_loss=round_to_tick(stop_loss, spec),
                client_order_id=f"collab_{source_id}_{int(now * 1000)}",
                leverage=leverage,
            )
        except ValueError as exc:
            cycle.errors.append(f"Order normalization failed: {exc}")
            return ExecutionResult(status="aborted", reason=str(exc))

        if settings.effective_dry_run:
            log_order_execution(
                self._logger,
                order,
                status="dry_run",
                position_pct=round(position_pct, 2),
                take_profit=order.take_profit,
                stop_loss=order.stop_loss,
            )
            self._bus.publish(
                EngineEvent.TRADE_EXECUTED,
                {"symbol": symbol, "direction": direction, "champion": champion.analyst_id, "dry_run": True},
            )
            return ExecutionResult(status="dry_run", order=order, dry_run=True)

        try:
            ack = await self._exchange.place_order(order.to_payload())
        except ExchangeError as exc:
            cycle.errors.append(f"Trade execution failed: {exc}")
            log_order_execution(self._logger, order, status="failed", error=str(exc))
            raise

        log_order_execution(self._logger, order, status="filled", order_id=ack.order_id)
        self._record_entry(order, ack.order_id, price, champion, now)

        portfolio.last_trade_time[source_id] = now
        portfolio.total_trades += 1
        cycle.trades_executed += 1
        self._bus.publish(
            EngineEvent.TRADE_EXECUTED,
            {
                "symbol": symbol,
                "direction": direction,
                "champion": champion.analyst_id,
                "order_id": ack.order_id,
                "size": order.size,
                "leverage": leverage,
                "dry_run": False,
            },
        )
        return ExecutionResult(status="filled", order=order, order_id=ack.order_id)

    def _record_entry(
        self,
        order: ExecutionOrder,
        order_id: str,
        price: float,
        champion: ChampionAnalysis,
        now: float,
    ) -> None:
        record = TradeRecord(
            id=uuid.uuid4().hex,
            symbol=order.symbol,
            side="BUY" if order.direction == "LONG" else "SELL",
            size=float(order.size),
            price=price,
            status="FILLED",
            reason=f"[{champion.name or champion.analyst_id}] {champion.thesis}",
            executed_at=now,
            champion_id=champion.analyst_id,
            confidence=champion.confidence,
            client_order_id=order.client_order_id,
            exchange_order_id=order_id,
        )
        try:
            self._store.save_trade(record)
        except Exception as exc:  # noqa: BLE001 - the order is already on the exchange.
            self._logger.error("trade_persist_failed", symbol=order.symbol, order_id=order_id, error=str(exc))
