"""Lifecycle controller: start, cycle loop with backoff, stop and cleanup."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from autonomous_trading.ai.decision_client import DecisionService
from autonomous_trading.config import Settings
from autonomous_trading.errors import EngineStartupError
from autonomous_trading.events import EngineEvent, EventBus
from autonomous_trading.exchange.client import ExchangeClient
from autonomous_trading.exec.contract_specs import ContractSpecCache
from autonomous_trading.exec.coordinator import ExecutionCoordinator
from autonomous_trading.exec.management import PositionManager
from autonomous_trading.exec.reconciler import StateReconciler
from autonomous_trading.journal.store import JournalStore, TradeStore
from autonomous_trading.pipeline import DecisionPipeline
from autonomous_trading.risk.circuit_breaker import CircuitBreakerMonitor
from autonomous_trading.risk.guardrails import GuardrailEngine
from autonomous_trading.types import EngineStatus, SharedPortfolio, TradingCycle
from autonomous_trading.utils.backoff import BackoffPolicy, startup_retrying
from autonomous_trading.utils.logging import get_logger
from autonomous_trading.utils.market_hours import dynamic_cycle_interval

SHARED_PORTFOLIO_ID = "shared"


class TradingEngine:
    """Owns the components of one trading process and drives the cycle loop.

    One cycle runs at a time. ``start()`` is safe to call concurrently,
    ``stop()`` cancels the pending sleep, and ``cleanup()`` resets every
    counter and cache so a later ``start()`` begins from a clean slate.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        exchange: ExchangeClient,
        decisions: DecisionService,
        bus: EventBus | None = None,
        store: TradeStore | None = None,
        journal: JournalStore | None = None,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._logger = get_logger("autonomous_trading.engine")
        self._backoff = backoff or BackoffPolicy()

        self.bus = bus or EventBus()
        self.store = store or TradeStore(settings.journal_dir)
        self.journal = journal or JournalStore(settings.journal_dir)
        self.bus.subscribe(self.journal.on_event)

        self.portfolio = SharedPortfolio(portfolio_id=SHARED_PORTFOLIO_ID)
        self.contracts = ContractSpecCache(exchange, ttl_sec=settings.contract_refresh_sec, clock=clock)
        self.circuit_breaker = CircuitBreakerMonitor(exchange, self.store, settings, clock=clock)
        self.reconciler = StateReconciler(exchange, self.store, self.bus, settings, clock=clock)
        self.pipeline = DecisionPipeline(
            exchange=exchange,
            decisions=decisions,
            contracts=self.contracts,
            guardrails=GuardrailEngine(settings),
            circuit_breaker=self.circuit_breaker,
            coordinator=ExecutionCoordinator(exchange, self.contracts, self.store, self.bus, settings, clock=clock),
            manager=PositionManager(exchange, self.contracts, self.store, decisions, settings, clock=clock),
            reconciler=self.reconciler,
            bus=self.bus,
            settings=settings,
            portfolio=self.portfolio,
            is_running=lambda: self._running or self._single_run,
            clock=clock,
        )

        self._running = False
        self._single_run = False
        self._cleaning = False
        self._starting: asyncio.Future[None] | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._sleep_task: asyncio.Future[None] | None = None
        self._cycle_count = 0
        self._consecutive_failures = 0
        self._next_cycle_at: float | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    # ---- lifecycle ----

    async def start(self) -> None:
        """Load contract metadata, then launch the cycle loop.

        A concurrent second call waits for the first and re-checks state
        instead of starting a second loop.
        """
        if self._running:
            self._logger.warning("engine_already_running")
            return
        if self._starting is not None:
            await asyncio.shield(self._starting)
            if not self._running:
                raise EngineStartupError("concurrent start failed")
            return

        starting: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._starting = starting
        try:
            await self._prepare()
            self._running = True
            self._loop_task = asyncio.create_task(self._run_loop(), name="trading-engine-loop")
            self.bus.publish(
                EngineEvent.STARTED,
                {"dry_run": self._settings.effective_dry_run, "mode": self._settings.mode.value},
            )
            self._logger.info(
                "engine_started",
                mode=self._settings.mode.value,
                dry_run=self._settings.effective_dry_run,
                symbols=self._settings.approved_symbols,
                cycle_interval_sec=self._settings.cycle_interval_sec,
            )
        finally:
            starting.set_result(None)
            self._starting = None

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._next_cycle_at = None
        if self._sleep_task is not None and not self._sleep_task.done():
            self._sleep_task.cancel()
        self.bus.publish(EngineEvent.STOPPED, {"cycle_count": self._cycle_count})
        self._logger.info("engine_stopped", cycle_count=self._cycle_count)

    async def wait(self) -> None:
        """Block until the cycle loop exits."""
        if self._loop_task is not None:
            await self._loop_task

    async def cleanup(self) -> None:
        """Stop, wait briefly for the loop, and reset all state."""
        if self._cleaning:
            self._logger.debug("cleanup_in_progress")
            return
        self._cleaning = True
        try:
            self.stop()
            task = self._loop_task
            if task is not None and not task.done():
                try:
                    await asyncio.wait_for(asyncio.shield(task), timeout=self._settings.cleanup_timeout_sec)
                except asyncio.TimeoutError:
                    self._logger.warning("cleanup_timeout", timeout_sec=self._settings.cleanup_timeout_sec)
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)
                except Exception as exc:  # noqa: BLE001 - cleanup always completes the reset.
                    self._logger.error("cleanup_loop_error", error=str(exc))
        finally:
            self._reset_state()
            self._cleaning = False
            self._logger.info("engine_cleaned_up")

    async def run_once(self) -> TradingCycle:
        """Run a single cycle outside the loop. Errors propagate to the caller."""
        if not self.contracts.symbols:
            await self._prepare()
        self._single_run = True
        try:
            self._cycle_count += 1
            return await self.pipeline.run_cycle(self._cycle_count)
        finally:
            self._single_run = False

    def get_status(self) -> EngineStatus:
        next_cycle_in = 0.0
        if self._running and self._next_cycle_at is not None:
            next_cycle_in = max(0.0, self._next_cycle_at - self._clock())
        return EngineStatus(
            is_running=self._running,
            cycle_count=self._cycle_count,
            dry_run=self._settings.effective_dry_run,
            current_cycle=self.pipeline.current_cycle,
            total_debates_run=self.pipeline.total_debates_run,
            total_tokens_saved=self.pipeline.total_tokens_saved,
            shared_portfolio={
                "portfolio_id": self.portfolio.portfolio_id,
                "balance": self.portfolio.balance,
                "total_value": self.portfolio.total_value,
                "total_trades": self.portfolio.total_trades,
                "position_count": self.portfolio.position_count,
            },
            next_cycle_in=next_cycle_in,
        )

    # ---- internals ----

    async def _prepare(self) -> None:
        try:
            async for attempt in startup_retrying(self._settings.startup_contract_attempts):
                with attempt:
                    await self.contracts.load()
        except Exception as exc:
            self._logger.error(
                "contract_specs_startup_failed",
                attempts=self._settings.startup_contract_attempts,
                error=str(exc),
            )
            raise EngineStartupError(f"contract metadata unavailable: {exc}") from exc

        missing = self.contracts.missing(self._settings.approved_symbols)
        if missing:
            self._logger.warning("approved_symbols_without_specs", symbols=missing)
        self._restore_portfolio()

    def _restore_portfolio(self) -> None:
        """Rebuild cooldown timers and counters from persisted history."""
        try:
            mirror = self.store.load_portfolio()
            since = self._clock() - self._settings.min_trade_interval_sec
            recent = self.store.list_trades(since=since, status="FILLED", entries_only=True)
        except Exception as exc:  # noqa: BLE001 - a cold portfolio is still safe to trade.
            self._logger.warning("portfolio_restore_failed", error=str(exc))
            return
        if mirror is not None:
            self.portfolio.total_trades = int(mirror.get("total_trades", 0))
            self.portfolio.balance = float(mirror.get("balance", 0.0))
            self.portfolio.total_value = float(mirror.get("total_value", 0.0))
        for record in recent:
            if record.champion_id:
                previous = self.portfolio.last_trade_time.get(record.champion_id, 0.0)
                self.portfolio.last_trade_time[record.champion_id] = max(previous, record.executed_at)

    async def _run_loop(self) -> None:
        settings = self._settings
        while self._running:
            started = time.monotonic()
            self._cycle_count += 1
            try:
                await self.pipeline.run_cycle(self._cycle_count)
                self._consecutive_failures = 0
            except Exception as exc:  # noqa: BLE001 - counted toward the failure limit.
                self._consecutive_failures += 1
                self._logger.error(
                    "cycle_failed",
                    cycle_number=self._cycle_count,
                    consecutive_failures=self._consecutive_failures,
                    error=str(exc),
                )
                if self._consecutive_failures >= settings.max_consecutive_failures:
                    self._logger.critical(
                        "consecutive_failure_limit_reached",
                        failures=self._consecutive_failures,
                        limit=settings.max_consecutive_failures,
                    )
                    self.stop()
                    break

            if not self._running:
                break

            interval = settings.cycle_interval_sec
            if settings.dynamic_interval:
                interval = dynamic_cycle_interval(interval)
            delay = self._backoff.sleep_for(interval, time.monotonic() - started, self._consecutive_failures)
            self._next_cycle_at = self._clock() + delay
            self._logger.debug("next_cycle_scheduled", delay_sec=round(delay, 1), failures=self._consecutive_failures)

            self._sleep_task = asyncio.ensure_future(asyncio.sleep(delay))
            try:
                await self._sleep_task
            except asyncio.CancelledError:
                if self._running:
                    raise
                break
            finally:
                self._sleep_task = None

    def _reset_state(self) -> None:
        if self._sleep_task is not None and not self._sleep_task.done():
            self._sleep_task.cancel()
        self._running = False
        self._single_run = False
        self._starting = None
        self._loop_task = None
        self._sleep_task = None
        self._next_cycle_at = None
        self._cycle_count = 0
        self._consecutive_failures = 0
        self.pipeline.current_cycle = None
        self.pipeline.total_debates_run = 0
        self.pipeline.total_tokens_saved = 0
        self.portfolio.last_trade_time.clear()
        self.circuit_breaker.reset()
        self.reconciler.reset()
        self.contracts.clear()
