"""Shared domain types for the trading cycle engine."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

Side = Literal["LONG", "SHORT"]
MarginMode = Literal["CROSS", "ISOLATED"]


class UrgencyLevel(str, Enum):
    """Triage tag for an open position."""

    VERY_URGENT = "VERY_URGENT"
    MODERATE = "MODERATE"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]


_URGENCY_RANK = {
    UrgencyLevel.VERY_URGENT: 0,
    UrgencyLevel.MODERATE: 1,
    UrgencyLevel.LOW: 2,
}


class PreflightAction(str, Enum):
    """What the cycle should do after the cheap preflight checks."""

    RUN_STAGE_2 = "RUN_STAGE_2"
    DIRECT_MANAGE = "DIRECT_MANAGE"
    LIGHTWEIGHT_DEBATE = "LIGHTWEIGHT_DEBATE"
    SKIP_CYCLE = "SKIP_CYCLE"


class CircuitBreakerLevel(str, Enum):
    """Market-wide alert level, ordered by severity."""

    NONE = "NONE"
    YELLOW = "YELLOW"
    ORANGE = "ORANGE"
    RED = "RED"

    @property
    def severity(self) -> int:
        return _BREAKER_SEVERITY[self]


_BREAKER_SEVERITY = {
    CircuitBreakerLevel.NONE: 0,
    CircuitBreakerLevel.YELLOW: 1,
    CircuitBreakerLevel.ORANGE: 2,
    CircuitBreakerLevel.RED: 3,
}


@dataclass(slots=True)
class MarketData:
    """Ticker and funding state for one symbol at fetch time (epoch seconds)."""

    symbol: str
    current_price: float
    fetched_at: float
    high_24h: float = 0.0
    low_24h: float = 0.0
    volume_24h: float = 0.0
    change_24h: float = 0.0
    mark_price: float = 0.0
    index_price: float = 0.0
    best_bid: float = 0.0
    best_ask: float = 0.0
    funding_rate: float | None = None

    def age(self, now: float) -> float:
        return max(0.0, now - self.fetched_at)

    def to_payload(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "current_price": self.current_price,
            "high_24h": self.high_24h,
            "low_24h": self.low_24h,
            "volume_24h": self.volume_24h,
            "change_24h": self.change_24h,
            "mark_price": self.mark_price,
            "index_price": self.index_price,
            "best_bid": self.best_bid,
            "best_ask": self.best_ask,
            "funding_rate": self.funding_rate,
            "fetched_at": self.fetched_at,
        }


@dataclass(slots=True)
class PositionSnapshot:
    """Open position rebuilt from the exchange for the current cycle."""

    symbol: str
    side: Side
    size: float
    entry_price: float
    current_price: float
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    hold_time_hours: float = 0.0
    hold_time_known: bool = True
    margin_mode: MarginMode = "CROSS"
    isolated_position_id: int | None = None
    leverage: float = 3.0

    def reprice(self, price: float) -> None:
        """Recompute P&L against a fresher price."""
        if not math.isfinite(price) or price <= 0:
            return
        self.current_price = price
        direction = 1.0 if self.side == "LONG" else -1.0
        self.unrealized_pnl = (price - self.entry_price) * self.size * direction
        open_value = self.size * self.entry_price
        self.unrealized_pnl_pct = self.unrealized_pnl / open_value * 100 if open_value > 0 else 0.0

    def to_payload(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "size": self.size,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "unrealized_pnl": self.unrealized_pnl,
            "unrealized_pnl_pct": self.unrealized_pnl_pct,
            "hold_time_hours": self.hold_time_hours,
            "margin_mode": self.margin_mode,
            "isolated_position_id": self.isolated_position_id,
        }


@dataclass(slots=True)
class UrgencyThresholds:
    """P&L tiers (percent) and hold limit (hours) used by triage."""

    take_profit_upper_pct: float
    take_profit_partial_pct: float
    stop_loss_pct: float
    max_hold_hours: float


@dataclass(slots=True)
class PositionUrgency:
    """Triage outcome for one position."""

    level: UrgencyLevel
    reason: str


@dataclass(slots=True)
class GuardrailVerdict:
    """Uniform result of a preflight shortcut or a safety gate."""

    allowed: bool
    reason: str = ""
    estimated_cost_saved: int = 0
    check: str | None = None
    current: float | None = None
    limit: float | None = None


@dataclass(slots=True)
class PreflightResult:
    """Preflight verdict plus the routing decision for this cycle."""

    action: PreflightAction
    verdict: GuardrailVerdict
    urgent_position: PositionSnapshot | None = None
    urgency: PositionUrgency | None = None
    positions: list[PositionSnapshot] = field(default_factory=list)
    available_directions: list[Side] = field(default_factory=list)

    @property
    def can_run_pipeline(self) -> bool:
        return self.action == PreflightAction.RUN_STAGE_2


@dataclass(slots=True)
class ContractSpec:
    """Exchange sizing and precision metadata for one symbol."""

    symbol: str
    tick_size: float
    price_decimals: int
    size_step: float
    size_decimals: int
    min_order_size: float
    max_order_size: float
    max_position_size: float
    min_leverage: int = 1
    max_leverage: int = 100


@dataclass(slots=True)
class ExecutionOrder:
    """Normalized order ready for submission."""

    symbol: str
    direction: Side
    size: str
    price: str
    take_profit: str
    stop_loss: str
    client_order_id: str
    leverage: int

    def to_payload(self) -> dict[str, str]:
        return {
            "symbol": self.symbol,
            "client_oid": self.client_order_id,
            "size": self.size,
            "type": "1" if self.direction == "LONG" else "2",
            "order_type": "2",
            "match_price": "1",
            "price": self.price,
            "presetTakeProfitPrice": self.take_profit,
            "presetStopLossPrice": self.stop_loss,
        }


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one execution attempt."""

    status: str
    reason: str = ""
    order: ExecutionOrder | None = None
    order_id: str | None = None
    dry_run: bool = False

    @property
    def executed(self) -> bool:
        return self.status in {"filled", "dry_run"}


@dataclass(slots=True)
class ManagementOutcome:
    """Outcome of one position-management attempt."""

    executed: bool
    symbol: str | None = None
    manage_type: str | None = None
    details: str = ""
    error: str | None = None


@dataclass(slots=True)
class TradingCycle:
    """Record of one loop iteration, sealed at cycle end."""

    cycle_number: int
    start_time: float
    end_time: float | None = None
    symbols_analyzed: list[str] = field(default_factory=list)
    trades_executed: int = 0
    debates_run: int = 0
    errors: list[str] = field(default_factory=list)
    status: str = "running"

    def to_payload(self) -> dict[str, Any]:
        return {
            "cycle_number": self.cycle_number,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "symbols_analyzed": list(self.symbols_analyzed),
            "trades_executed": self.trades_executed,
            "debates_run": self.debates_run,
            "errors": list(self.errors),
            "status": self.status,
        }


@dataclass(slots=True)
class TradeRecord:
    """Persisted trade row. Entry trades carry no realized P&L."""

    id: str
    symbol: str
    side: Literal["BUY", "SELL"]
    size: float
    price: float
    status: str
    reason: str
    executed_at: float
    champion_id: str | None = None
    confidence: float | None = None
    client_order_id: str | None = None
    exchange_order_id: str | None = None
    realized_pnl: float | None = None

    @property
    def is_entry(self) -> bool:
        return self.realized_pnl is None and not self.reason.startswith("MANAGE:")


@dataclass(slots=True)
class RecentPnl:
    """Realized P&L as percent of balance."""

    day: float = 0.0
    week: float = 0.0


@dataclass(slots=True)
class SharedPortfolio:
    """The single portfolio all decision sources trade from."""

    portfolio_id: str
    balance: float = 0.0
    total_value: float = 0.0
    total_trades: int = 0
    positions: list[PositionSnapshot] = field(default_factory=list)
    last_trade_time: dict[str, float] = field(default_factory=dict)

    @property
    def position_count(self) -> int:
        return len(self.positions)


@dataclass(slots=True)
class CircuitBreakerStatus:
    """Result of a market-wide circuit breaker check."""

    level: CircuitBreakerLevel
    reason: str
    checked_at: float
    btc_drop_4h: float | None = None
    funding_rate_extreme: float | None = None
    portfolio_drawdown_24h: float | None = None


@dataclass(slots=True)
class EngineStatus:
    """Point-in-time view of the engine for observers."""

    is_running: bool
    cycle_count: int
    dry_run: bool
    current_cycle: TradingCycle | None
    total_debates_run: int
    total_tokens_saved: int
    shared_portfolio: dict[str, Any]
    next_cycle_in: float
