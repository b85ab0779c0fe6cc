"""One decision-execute-reconcile cycle."""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from time import perf_counter
from typing import TypeVar

from autonomous_trading.ai.decision_client import DecisionService
from autonomous_trading.ai.schemas import ChampionAnalysis, OpportunitySelection
from autonomous_trading.config import Settings
from autonomous_trading.errors import CycleStageError, DecisionPayloadError, DecisionServiceError, ExchangeError
from autonomous_trading.events import EngineEvent, EventBus
from autonomous_trading.exchange.client import ExchangeClient
from autonomous_trading.exchange.models import FundingRate, Ticker
from autonomous_trading.exec.contract_specs import ContractSpecCache
from autonomous_trading.exec.coordinator import ExecutionCoordinator, recompute_price_targets
from autonomous_trading.exec.management import ManageTargetError, PositionManager, route_manage_symbol
from autonomous_trading.exec.reconciler import StateReconciler
from autonomous_trading.risk.circuit_breaker import BTC_SYMBOL, CircuitBreakerMonitor
from autonomous_trading.risk.guardrails import GuardrailEngine
from autonomous_trading.risk.urgency import rank_by_urgency, thresholds_from_style
from autonomous_trading.types import (
    CircuitBreakerLevel,
    CircuitBreakerStatus,
    GuardrailVerdict,
    MarketData,
    PositionSnapshot,
    PreflightAction,
    SharedPortfolio,
    Side,
    TradingCycle,
)
from autonomous_trading.utils.logging import (
    bind_cycle_context,
    bind_source_context,
    clear_cycle_context,
    get_logger,
    log_cycle_summary,
    log_guard_event,
)

T = TypeVar("T")

_FALLBACK_LABELS = {
    "max_positions": ("max positions", "max positions reached"),
    "same_direction": ("directional limit", "directional limit reached"),
}


def market_data_from(ticker: Ticker, funding: FundingRate | None, fetched_at: float) -> MarketData:
    return MarketData(
        symbol=ticker.symbol,
        current_price=ticker.last,
        fetched_at=fetched_at,
        high_24h=ticker.high_24h,
        low_24h=ticker.low_24h,
        volume_24h=ticker.volume_24h,
        change_24h=ticker.change_24h,
        mark_price=ticker.mark_price,
        index_price=ticker.index_price,
        best_bid=ticker.best_bid,
        best_ask=ticker.best_ask,
        funding_rate=funding.rate if funding is not None else None,
    )


class DecisionPipeline:
    """Sequences preflight, decision stages, guardrails, execution and reconciliation."""

    def __init__(
        self,
        *,
        exchange: ExchangeClient,
        decisions: DecisionService,
        contracts: ContractSpecCache,
        guardrails: GuardrailEngine,
        circuit_breaker: CircuitBreakerMonitor,
        coordinator: ExecutionCoordinator,
        manager: PositionManager,
        reconciler: StateReconciler,
        bus: EventBus,
        settings: Settings,
        portfolio: SharedPortfolio,
        is_running: Callable[[], bool] = lambda: True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exchange = exchange
        self._decisions = decisions
        self._contracts = contracts
        self._guardrails = guardrails
        self._breaker = circuit_breaker
        self._coordinator = coordinator
        self._manager = manager
        self._reconciler = reconciler
        self._bus = bus
        self._settings = settings
        self._portfolio = portfolio
        self._is_running = is_running
        self._clock = clock
        self._logger = get_logger("autonomous_trading.pipeline")
        self.current_cycle: TradingCycle | None = None
        self.total_debates_run = 0
        self.total_tokens_saved = 0

    async def run_cycle(self, cycle_number: int) -> TradingCycle:
        """Run one cycle. The cycle is always sealed and emitted, even when this raises."""
        bind_cycle_context(cycle_number)
        try:
            return await self._run_cycle(cycle_number)
        finally:
            clear_cycle_context()

    async def _run_cycle(self, cycle_number: int) -> TradingCycle:
        started = perf_counter()
        cycle = TradingCycle(cycle_number=cycle_number, start_time=self._clock())
        self.current_cycle = cycle
        self._bus.publish(EngineEvent.CYCLE_START, {"cycle_number": cycle_number})

        try:
            status = await self._run_stages(cycle)
        except CycleStageError as exc:
            cycle.errors.append(exc.reason)
            await self._reconcile()
            self._finish_cycle(cycle, started, status=exc.reason)
            raise
        except Exception as exc:
            cycle.errors.append(str(exc) or type(exc).__name__)
            self._finish_cycle(cycle, started, status="error")
            raise
        await self._reconcile()
        return self._finish_cycle(cycle, started, status=status)

    async def fetch_market_data(self, symbols: list[str]) -> dict[str, MarketData]:
        """Fetch ticker and funding per symbol concurrently; failed symbols are dropped."""
        results = await asyncio.gather(*(self._fetch_market(symbol) for symbol in symbols), return_exceptions=True)
        market: dict[str, MarketData] = {}
        for symbol, result in zip(symbols, results):
            if isinstance(result, BaseException):
                self._logger.warning("market_data_fetch_failed", symbol=symbol, error=str(result))
                continue
            if math.isfinite(result.current_price) and result.current_price > 0:
                market[symbol] = result
        return market

    # ---- stages ----

    async def _run_stages(self, cycle: TradingCycle) -> str:
        settings = self._settings
        await self._contracts.refresh_if_needed(settings.approved_symbols)

        market = await self.fetch_market_data(settings.approved_symbols)
        if not market:
            cycle.errors.append("No market data available")
            return "no data"

        leverage_cap: int | None = None
        if settings.enable_circuit_breakers and BTC_SYMBOL in market:
            breaker = await self._breaker.check()
            if breaker.level == CircuitBreakerLevel.RED:
                await self._emergency_close(cycle, breaker)
                return "circuit breaker RED - emergency close"
            if breaker.level != CircuitBreakerLevel.NONE:
                self._logger.warning("circuit_breaker_alert", level=breaker.level.value, reason=breaker.reason)
            leverage_cap = self._breaker.max_leverage(breaker.level)

        balance = await self._try_balance()
        positions = await self._try_positions()
        weekly = self._reconciler.recent_pnl(balance).week if balance is not None else None
        thresholds = thresholds_from_style(settings.style_params)

        preflight = self._guardrails.preflight(balance, weekly, positions, thresholds)
        if not preflight.can_run_pipeline:
            self.total_tokens_saved += preflight.verdict.estimated_cost_saved
            self._logger.info(
                "preflight_shortcut",
                action=preflight.action.value,
                reason=preflight.verdict.reason,
                tokens_saved=preflight.verdict.estimated_cost_saved,
                total_tokens_saved=self.total_tokens_saved,
            )
            if preflight.action == PreflightAction.SKIP_CYCLE:
                return f"skipped: {preflight.verdict.reason}"

            label = "direct" if preflight.action == PreflightAction.DIRECT_MANAGE else "lightweight"
            if not preflight.positions:
                return f"{label} manage: no position"
            ranked = [position for position, _ in rank_by_urgency(preflight.positions, thresholds)]
            outcome = await self._manager.manage_best(ranked, market, cycle, reason_prefix="FALLBACK")
            if outcome.executed:
                return f"{label}-managed {outcome.symbol}"
            return f"{label} manage failed"

        if not self._is_running():
            return "stopped by user"

        selection = await self._stage(
            "opportunity selection",
            self._decisions.select_opportunity(market, positions or []),
        )
        cycle.debates_run += 1
        bind_source_context(selection.source_id)
        symbol = selection.symbol.lower()
        cycle.symbols_analyzed.append(symbol)
        self._bus.publish(
            EngineEvent.COIN_SELECTED,
            {"symbol": symbol, "action": selection.action, "source_id": selection.source_id},
        )

        if positions is None:
            positions = await self._try_positions()
            if positions is None:
                cycle.errors.append("Position refresh failed")
                return "position refresh failed"

        if selection.action == "MANAGE":
            return await self._route_manage(selection, positions, market, cycle)

        direction: Side = selection.action
        guard_balance = balance if balance is not None else math.nan
        verdict = self._guardrails.check_hard_guards(
            symbol, direction, market.get(symbol), guard_balance, weekly, positions
        )
        if not verdict.allowed:
            return await self._handle_block(verdict, direction, positions, market, cycle)

        entry_market = await self._refresh_market(symbol, market[symbol])
        if not self._is_running():
            return "stopped by user"

        championship = await self._stage(
            "championship",
            self._decisions.run_deep_analysis(
                symbol,
                entry_market,
                {"source_id": selection.source_id, "rationale": selection.rationale, "direction": direction},
            ),
        )
        cycle.debates_run += 1
        champion = championship.champion
        self._bus.publish(
            EngineEvent.TOURNAMENT_COMPLETE,
            {"symbol": symbol, "champion": champion.analyst_id, "confidence": champion.confidence},
        )

        if champion.confidence < settings.min_confidence_to_trade:
            self._logger.info(
                "champion_confidence_low",
                confidence=champion.confidence,
                threshold=settings.min_confidence_to_trade,
            )
            return "low confidence"
        if champion.recommendation == "hold":
            return "champion recommends hold"

        champion_direction: Side = "LONG" if champion.is_bullish else "SHORT"
        fresh_market = await self._refresh_market(symbol, entry_market)
        champion = self._retarget(champion, entry_market.current_price, fresh_market.current_price, champion_direction)
        championship = championship.model_copy(update={"champion": champion})

        verdict = self._guardrails.check_hard_guards(
            symbol, champion_direction, fresh_market, guard_balance, weekly, positions
        )
        if not verdict.allowed:
            return await self._handle_block(verdict, champion_direction, positions, market, cycle)

        if not self._is_running():
            return "stopped by user"

        recent = self._reconciler.recent_pnl(guard_balance)
        risk = await self._stage(
            "risk council",
            self._decisions.run_risk_council(championship, fresh_market, guard_balance, positions, recent),
        )
        if risk.warnings:
            self._logger.warning("risk_council_warnings", warnings=risk.warnings)
        self._bus.publish(
            EngineEvent.RISK_COUNCIL_DECISION,
            {"approved": risk.approved, "veto_reason": risk.veto_reason, "warnings": list(risk.warnings)},
        )
        if not risk.approved:
            self._logger.info("risk_council_veto", reason=risk.veto_reason)
            return "vetoed by risk council"

        gate = self._guardrails.final_gate(
            source_id=champion.analyst_id,
            positions=positions,
            weekly_pnl_pct=self._reconciler.recent_pnl(guard_balance).week,
            last_trade_time=self._portfolio.last_trade_time,
            daily_trade_count=self._reconciler.daily_trade_count(),
            now=self._clock(),
        )
        if not gate.allowed:
            cycle.errors.append(gate.reason)
            self._bus.publish(
                EngineEvent.SAFETY_CHECK_FAILED,
                {"check": gate.check, "current": gate.current, "limit": gate.limit, "reason": gate.reason},
            )
            return f"safety check failed: {gate.check}"

        result = await self._coordinator.execute(
            source_id=champion.analyst_id,
            market=fresh_market,
            champion=champion,
            risk=risk,
            balance=guard_balance,
            portfolio=self._portfolio,
            cycle=cycle,
            leverage_cap=leverage_cap,
        )
        if result.executed:
            return "entry complete"
        return f"execution aborted: {result.reason}"

    async def _route_manage(
        self,
        selection: OpportunitySelection,
        positions: list[PositionSnapshot],
        market: dict[str, MarketData],
        cycle: TradingCycle,
    ) -> str:
        if self._settings.enable_circuit_breakers:
            breaker = await self._breaker.check()
            if breaker.level == CircuitBreakerLevel.RED:
                await self._emergency_close(cycle, breaker)
                return "circuit breaker RED - emergency close"

        try:
            target = route_manage_symbol(selection.symbol, positions)
        except ManageTargetError as exc:
            self._logger.warning(
                "manage_target_unresolved",
                symbol=selection.symbol,
                reason=exc.reason,
                candidates=exc.candidates,
            )
            if exc.candidates:
                cycle.errors.append(f"Ambiguous position match for {selection.symbol}: {', '.join(exc.candidates)}")
            return exc.reason

        outcome = await self._manager.manage(target, market, cycle, reason_prefix="MANAGE")
        if outcome.manage_type is None:
            return outcome.error or "management failed"
        return f"managed {target.symbol}: {outcome.manage_type}"

    async def _handle_block(
        self,
        verdict: GuardrailVerdict,
        direction: Side,
        positions: list[PositionSnapshot],
        market: dict[str, MarketData],
        cycle: TradingCycle,
    ) -> str:
        labels = _FALLBACK_LABELS.get(verdict.check or "")
        if labels is None:
            return f"{verdict.reason} (early exit)"

        if verdict.check == "same_direction":
            candidates = [position for position in positions if position.side == direction]
        else:
            candidates = positions
        chosen = self._guardrails.select_fallback(candidates)
        if chosen is None:
            return f"{labels[1]} (early exit)"

        outcome = await self._manager.manage(chosen, market, cycle, reason_prefix="FALLBACK")
        if outcome.executed:
            return f"auto-managed {outcome.symbol} ({labels[0]} fallback)"
        return f"{labels[1]} (early exit)"

    async def _emergency_close(self, cycle: TradingCycle, status: CircuitBreakerStatus) -> None:
        log_guard_event(self._logger, check="circuit_breaker", action="emergency_close", reason=status.reason)
        positions = await self._try_positions()
        if positions is None:
            symbols: list[str | None] = [None]
        else:
            symbols = sorted({position.symbol for position in positions})
        for symbol in symbols:
            if self._settings.effective_dry_run:
                self._logger.warning("dry_run_emergency_close", symbol=symbol)
                continue
            try:
                await self._exchange.close_all_positions(symbol)
            except ExchangeError as exc:
                self._logger.error("emergency_close_failed", symbol=symbol, error=str(exc))
        self._portfolio.positions = []
        cycle.errors.append(f"RED ALERT: {status.reason} - All positions closed")
        self._bus.publish(EngineEvent.EMERGENCY_CLOSE, {"reason": status.reason})

    # ---- helpers ----

    async def _stage(self, name: str, call: Awaitable[T]) -> T:
        """Await a decision stage, mapping any failure to a counted cycle abort."""
        try:
            return await call
        except DecisionPayloadError as exc:
            self._logger.error("decision_stage_invalid", stage=name, error=str(exc))
            raise CycleStageError(f"invalid {name} result") from exc
        except DecisionServiceError as exc:
            self._logger.error("decision_stage_failed", stage=name, error=str(exc))
            raise CycleStageError(f"{name} failed") from exc

    async def _fetch_market(self, symbol: str) -> MarketData:
        ticker, funding = await asyncio.gather(
            self._exchange.get_ticker(symbol),
            self._exchange.get_funding_rate(symbol),
            return_exceptions=True,
        )
        if isinstance(ticker, BaseException):
            raise ticker
        if isinstance(funding, BaseException):
            self._logger.debug("funding_rate_fetch_failed", symbol=symbol, error=str(funding))
            funding = None
        return market_data_from(ticker, funding, self._clock())

    async def _refresh_market(self, symbol: str, previous: MarketData) -> MarketData:
        """Re-fetch one symbol before a costly stage; keep the old data on failure."""
        try:
            fresh = await self._fetch_market(symbol)
        except ExchangeError as exc:
            self._logger.warning("market_refresh_failed", symbol=symbol, error=str(exc))
            return previous
        if not math.isfinite(fresh.current_price) or fresh.current_price <= 0:
            return previous
        if previous.current_price > 0:
            moved = abs(fresh.current_price - previous.current_price) / previous.current_price * 100
            if moved > self._settings.price_move_log_pct:
                self._logger.info(
                    "price_moved",
                    symbol=symbol,
                    moved_pct=round(moved, 3),
                    previous=previous.current_price,
                    current=fresh.current_price,
                    previous_age_sec=round(previous.age(self._clock()), 1),
                )
        return fresh

    def _retarget(self, champion: ChampionAnalysis, entry: float, fresh: float, direction: Side) -> ChampionAnalysis:
        if entry <= 0 or fresh <= 0:
            return champion
        take, stop = recompute_price_targets(
            entry,
            champion.price_target.base,
            champion.price_target.bear,
            fresh,
            direction,
            tolerance=self._settings.target_tolerance,
            style=self._settings.style_params,
        )
        self._logger.info(
            "price_targets_recomputed",
            take_profit=round(take, 6),
            stop_loss=round(stop, 6),
            original_take_profit=champion.price_target.base,
            original_stop_loss=champion.price_target.bear,
        )
        target = champion.price_target.model_copy(update={"base": take, "bear": stop})
        return champion.model_copy(update={"price_target": target})

    async def _reconcile(self) -> None:
        """Post-cycle sync, run once on every shortcut and completed path."""
        try:
            await self._reconciler.update_leaderboard(self._portfolio)
        except Exception as exc:  # noqa: BLE001 - reconciliation retries next cycle.
            self._logger.error("reconcile_failed", error=str(exc))

    async def _try_balance(self) -> float | None:
        try:
            return await self._reconciler.fetch_balance()
        except ExchangeError as exc:
            self._logger.warning("balance_fetch_failed", error=str(exc))
            return None

    async def _try_positions(self) -> list[PositionSnapshot] | None:
        try:
            return await self._reconciler.fetch_positions()
        except ExchangeError as exc:
            self._logger.warning("positions_fetch_failed", error=str(exc))
            return None

    def _finish_cycle(self, cycle: TradingCycle, started: float, *, status: str) -> TradingCycle:
        elapsed_ms = (perf_counter() - started) * 1000
        cycle.end_time = self._clock()
        cycle.status = status
        self.total_debates_run += cycle.debates_run
        log_cycle_summary(
            self._logger,
            cycle_number=cycle.cycle_number,
            status=status,
            trades=cycle.trades_executed,
            debates=cycle.debates_run,
            elapsed_ms=elapsed_ms,
            errors=len(cycle.errors),
        )
        self._bus.publish(EngineEvent.CYCLE_COMPLETE, cycle.to_payload())
        return cycle

