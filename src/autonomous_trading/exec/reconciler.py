"""Re-sync local state with the exchange after each cycle."""

from __future__ import annotations

import asyncio
import math
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from autonomous_trading.config import Settings
from autonomous_trading.errors import ExchangeError
from autonomous_trading.events import EngineEvent, EventBus
from autonomous_trading.exchange.client import ExchangeClient
from autonomous_trading.exchange.models import ExchangePosition, HistoryOrder
from autonomous_trading.journal.store import TradeStore
from autonomous_trading.types import PositionSnapshot, RecentPnl, SharedPortfolio, TradeRecord
from autonomous_trading.utils.logging import get_logger

DEFAULT_HOLD_HOURS = 24.0
HISTORY_PAGE_SIZE = 50
AUTO_CLOSE_REASON = "AUTO: SL/TP triggered on exchange"


class StateReconciler:
    """Balance, positions, realized P&L and performance snapshots."""

    def __init__(
        self,
        exchange: ExchangeClient,
        store: TradeStore,
        bus: EventBus,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exchange = exchange
        self._store = store
        self._bus = bus
        self._settings = settings
        self._clock = clock
        self._logger = get_logger("autonomous_trading.exec.reconciler")
        self._pnl_cache: tuple[float, RecentPnl] | None = None
        self._last_prune = 0.0
        self._snapshot_failures = 0

    # ---- exchange reads ----

    async def fetch_balance(self) -> float:
        """Available USDT balance. NaN when the exchange omits it."""
        assets = await self._exchange.get_account_assets()
        return assets.available

    async def fetch_positions(self) -> list[PositionSnapshot]:
        return await self.build_positions(await self._exchange.get_positions())

    async def build_positions(self, raw_positions: list[ExchangePosition]) -> list[PositionSnapshot]:
        """Snapshot exchange positions, priced with concurrently fetched tickers."""
        symbols = sorted({position.symbol for position in raw_positions})
        results = await asyncio.gather(
            *(self._exchange.get_ticker(symbol) for symbol in symbols),
            return_exceptions=True,
        )
        prices: dict[str, float] = {}
        for symbol, result in zip(symbols, results):
            if isinstance(result, BaseException):
                self._logger.debug("position_ticker_failed", symbol=symbol, error=str(result))
                continue
            if math.isfinite(result.last) and result.last > 0:
                prices[symbol] = result.last

        now = self._clock()
        snapshots = []
        for raw in raw_positions:
            entry_price = raw.entry_price
            hold_hours = self._hold_time_hours(raw, now)
            snapshot = PositionSnapshot(
                symbol=raw.symbol,
                side="LONG" if raw.side == "LONG" else "SHORT",
                size=raw.size,
                entry_price=entry_price,
                current_price=entry_price,
                unrealized_pnl=raw.unrealized_pnl,
                unrealized_pnl_pct=raw.unrealized_pnl / raw.open_value * 100 if raw.open_value > 0 else 0.0,
                hold_time_hours=DEFAULT_HOLD_HOURS if hold_hours is None else hold_hours,
                hold_time_known=hold_hours is not None,
                margin_mode="ISOLATED" if raw.is_isolated else "CROSS",
                isolated_position_id=raw.isolated_position_id,
                leverage=raw.leverage if raw.leverage > 0 else float(self._settings.default_leverage),
            )
            if raw.symbol in prices and entry_price > 0:
                snapshot.reprice(prices[raw.symbol])
            snapshots.append(snapshot)
        return snapshots

    def _hold_time_hours(self, raw: ExchangePosition, now: float) -> float | None:
        """Hours since the matching stored entry; None when no entry is on record."""
        entry_side = "BUY" if raw.side == "LONG" else "SELL"
        try:
            entry = self._store.latest_entry(raw.symbol, entry_side)
        except Exception as exc:  # noqa: BLE001 - an unreadable store reads as untracked.
            self._logger.debug("hold_time_lookup_failed", symbol=raw.symbol, error=str(exc))
            return None
        if entry is None:
            return None
        return max(0.0, (now - entry.executed_at) / 3600)

    # ---- persisted history ----

    def recent_pnl(self, balance: float, *, use_cache: bool = True) -> RecentPnl:
        """Realized P&L over the last day and week as percent of balance."""
        now = self._clock()
        if use_cache and self._pnl_cache is not None:
            cached_at, value = self._pnl_cache
            if now - cached_at < self._settings.weekly_pnl_cache_sec:
                return value

        try:
            day = self._store.realized_pnl_since(now - 86_400)
            week = self._store.realized_pnl_since(now - 7 * 86_400)
        except Exception as exc:  # noqa: BLE001 - unknown history reads as flat.
            self._logger.warning("recent_pnl_failed", error=str(exc))
            return RecentPnl()

        safe_balance = balance if math.isfinite(balance) and balance > 0 else 1.0
        value = RecentPnl(
            day=_finite_or_zero(day / safe_balance * 100),
            week=_finite_or_zero(week / safe_balance * 100),
        )
        self._pnl_cache = (now, value)
        return value

    def daily_trade_count(self) -> int | None:
        """FILLED trades since UTC midnight; None when the store cannot be read."""
        midnight = datetime.fromtimestamp(self._clock(), tz=timezone.utc).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        try:
            return self._store.daily_filled_count(midnight.timestamp())
        except Exception as exc:  # noqa: BLE001 - the gate treats an unknown count as the cap.
            self._logger.error("daily_trade_count_failed", error=str(exc))
            return None

    # ---- reconciliation ----

    async def sync_closed_orders(self) -> int:
        """Record exchange-side SL/TP closes the loop did not execute itself.

        Each exchange order id is recorded at most once. Never raises.
        """
        now = self._clock()
        try:
            since = now - self._settings.reconcile_lookback_days * 86_400
            entries = self._store.list_trades(since=since, status="FILLED", entries_only=True)
            seen = self._store.realized_order_ids()
        except Exception as exc:  # noqa: BLE001 - reconciliation retries next cycle.
            self._logger.warning("closed_order_sync_failed", error=str(exc))
            return 0
        if not entries:
            return 0

        synced = 0
        for symbol in sorted({entry.symbol for entry in entries}):
            symbol_entries = [entry for entry in entries if entry.symbol == symbol]
            try:
                orders = await self._exchange.get_history_orders(symbol, HISTORY_PAGE_SIZE)
                for order in orders:
                    record = self._closure_record(order, symbol_entries, seen, now)
                    if record is None:
                        continue
                    self._store.save_trade(record)
                    seen.add(order.order_id)
                    synced += 1
                    self._logger.info(
                        "closed_order_synced",
                        symbol=symbol,
                        side=record.side,
                        realized_pnl=round(order.total_profits, 4),
                        champion_id=record.champion_id,
                    )
            except Exception as exc:  # noqa: BLE001 - one symbol must not block the rest.
                self._logger.debug("closed_order_sync_symbol_failed", symbol=symbol, error=str(exc))

        if synced:
            self._logger.info("closed_orders_synced", count=synced)
        return synced

    def _closure_record(
        self,
        order: HistoryOrder,
        entries: list[TradeRecord],
        seen: set[str],
        now: float,
    ) -> TradeRecord | None:
        if order.status != "filled" or not order.order_id or order.order_id in seen:
            return None
        if not math.isfinite(order.total_profits):
            return None
        side = order.side.upper()
        if side not in {"BUY", "SELL"}:
            return None

        matching = [entry for entry in entries if entry.side != side]
        if not matching:
            return None
        order_size = order.filled_qty if order.filled_qty > 0 else order.size
        best = min(matching, key=lambda entry: abs(entry.size - order_size))

        close_size = order_size if order_size > 0 else best.size
        close_price = order.close_price
        if not math.isfinite(close_price) or close_price <= 0:
            return None

        return TradeRecord(
            id=uuid.uuid4().hex,
            symbol=order.symbol or best.symbol,
            side="BUY" if side == "BUY" else "SELL",
            size=close_size,
            price=close_price,
            status="FILLED",
            reason=AUTO_CLOSE_REASON,
            executed_at=order.created_at if order.create_time > 0 else now,
            champion_id=best.champion_id,
            exchange_order_id=order.order_id,
            realized_pnl=order.total_profits,
        )

    async def update_leaderboard(self, portfolio: SharedPortfolio) -> None:
        """Sync closes, refresh the shared portfolio and write a snapshot. Never raises."""
        await self.sync_closed_orders()

        try:
            balance = await self.fetch_balance()
            positions = await self.fetch_positions()
        except ExchangeError as exc:
            self._logger.warning("leaderboard_update_failed", error=str(exc))
            return

        unrealized = sum(p.unrealized_pnl for p in positions if math.isfinite(p.unrealized_pnl))
        total_value = balance + unrealized
        portfolio.positions = positions
        portfolio.balance = balance
        if not math.isfinite(total_value):
            self._logger.error("portfolio_value_invalid", balance=balance, unrealized=unrealized)
            return
        portfolio.total_value = total_value

        try:
            self._store.update_portfolio_balance(portfolio)
            now = self._clock()
            if self._store.write_snapshot(
                now,
                total_value=total_value,
                balance=balance,
                position_count=len(positions),
            ):
                self._snapshot_failures = 0
            if now - self._last_prune > self._settings.snapshot_prune_interval_sec:
                removed = self._store.prune_snapshots(now - self._settings.snapshot_retention_days * 86_400)
                self._last_prune = now
                if removed:
                    self._logger.info("snapshots_pruned", count=removed)
        except Exception as exc:  # noqa: BLE001 - snapshot failures never stop trading.
            self._snapshot_failures += 1
            self._logger.error(
                "snapshot_write_failed",
                failures=self._snapshot_failures,
                threshold=self._settings.snapshot_failure_alert_threshold,
                error=str(exc),
            )
            if self._snapshot_failures >= self._settings.snapshot_failure_alert_threshold:
                self._bus.publish(EngineEvent.SNAPSHOT_FAILURE, {"count": self._snapshot_failures})

    def reset(self) -> None:
        self._pnl_cache = None
        self._last_prune = 0.0
        self._snapshot_failures = 0


def _finite_or_zero(value: float) -> float:
    return value if math.isfinite(value) else 0.0
