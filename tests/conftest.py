from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from autonomous_trading.ai.schemas import (
    ChampionAnalysis,
    ChampionshipResult,
    ManagementDecision,
    OpportunitySelection,
    PriceTarget,
    RiskCouncilDecision,
)
from autonomous_trading.config import Settings
from autonomous_trading.errors import ExchangeAPIError
from autonomous_trading.exchange.models import (
    AccountAssets,
    Candle,
    ContractInfo,
    ExchangePosition,
    FundingRate,
    HistoryOrder,
    OrderAck,
    PlanOrder,
    Ticker,
)
from autonomous_trading.types import MarketData, PositionSnapshot, TradingCycle

SYMBOLS = ["cmt_btcusdt", "cmt_ethusdt"]


def contract_info(symbol: str) -> ContractInfo:
    return ContractInfo(
        symbol=symbol,
        tick_size="1",
        price_end_step=1,
        size_increment="3",
        min_order_size="0.001",
        max_order_size="100",
        max_position_size="1000",
        min_leverage=1,
        max_leverage=125,
    )


def exchange_position(
    symbol: str,
    side: str,
    *,
    size: float = 1.0,
    entry: float = 100.0,
    pnl: float = 0.0,
    margin_mode: str = "CROSS",
    isolated_position_id: int | None = None,
) -> ExchangePosition:
    return ExchangePosition(
        symbol=symbol,
        side=side,
        size=size,
        leverage=3,
        open_value=size * entry,
        margin_mode=margin_mode,
        unrealized_pnl=pnl,
        isolated_position_id=isolated_position_id,
    )


def snapshot(
    symbol: str = "cmt_btcusdt",
    side: str = "LONG",
    *,
    size: float = 1.0,
    entry: float = 100.0,
    current: float | None = None,
    pnl_pct: float = 0.0,
    hold_hours: float = 1.0,
    hold_known: bool = True,
    margin_mode: str = "CROSS",
    isolated_position_id: int | None = None,
) -> PositionSnapshot:
    price = current if current is not None else entry
    return PositionSnapshot(
        symbol=symbol,
        side=side,  # type: ignore[arg-type]
        size=size,
        entry_price=entry,
        current_price=price,
        unrealized_pnl=size * entry * pnl_pct / 100,
        unrealized_pnl_pct=pnl_pct,
        hold_time_hours=hold_hours,
        hold_time_known=hold_known,
        margin_mode=margin_mode,  # type: ignore[arg-type]
        isolated_position_id=isolated_position_id,
    )


def market(
    symbol: str = "cmt_btcusdt", price: float = 50_000.0, *, fetched_at: float, funding: float = 0.0001
) -> MarketData:
    return MarketData(symbol=symbol, current_price=price, fetched_at=fetched_at, funding_rate=funding)


def champion(
    *,
    analyst_id: str = "jim",
    recommendation: str = "buy",
    confidence: float = 75.0,
    take: float = 55_000.0,
    stop: float = 48_000.0,
    position_size: float = 5.0,
) -> ChampionAnalysis:
    return ChampionAnalysis(
        analyst_id=analyst_id,
        name=analyst_id.title(),
        confidence=confidence,
        thesis="trend continuation",
        recommendation=recommendation,  # type: ignore[arg-type]
        price_target=PriceTarget(base=take, bear=stop),
        position_size=position_size,
    )


def new_cycle(number: int = 1) -> TradingCycle:
    return TradingCycle(cycle_number=number, start_time=0.0)


class FakeExchange:
    """In-memory exchange. Names in ``fail`` raise ExchangeAPIError."""

    def __init__(self) -> None:
        self.prices: dict[str, float] = {"cmt_btcusdt": 50_000.0, "cmt_ethusdt": 3_000.0}
        self.funding: dict[str, float] = {}
        self.candles: list[Candle] = []
        self.contracts: list[ContractInfo] = [contract_info(symbol) for symbol in SYMBOLS]
        self.available = 1_000.0
        self.positions: list[ExchangePosition] = []
        self.history: dict[str, list[HistoryOrder]] = {}
        self.plan_orders: list[PlanOrder] = []
        self.fail: set[str] = set()
        self.calls: list[str] = []
        self.placed_orders: list[dict[str, str]] = []
        self.closed: list[str | None] = []
        self.partial_closes: list[tuple[str, str, str]] = []
        self.tp_sl_orders: list[dict[str, Any]] = []
        self.modified: list[tuple[str, float]] = []
        self.margin_adjustments: list[tuple[int, float]] = []

    def _hit(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise ExchangeAPIError(f"{name} failed")

    async def get_ticker(self, symbol: str) -> Ticker:
        self._hit("get_ticker")
        if symbol not in self.prices:
            raise ExchangeAPIError(f"unknown symbol {symbol}")
        price = self.prices[symbol]
        return Ticker(
            symbol=symbol,
            last=price,
            best_bid=price,
            best_ask=price,
            high_24h=price,
            low_24h=price,
            volume_24h=1_000.0,
            change_24h=0.0,
            mark_price=price,
            index_price=price,
            timestamp_ms=0,
        )

    async def get_funding_rate(self, symbol: str) -> FundingRate:
        self._hit("get_funding_rate")
        return FundingRate(symbol=symbol, rate=self.funding.get(symbol, 0.0001), collect_cycle_min=480, timestamp_ms=0)

    async def get_candles(self, symbol: str, granularity: str = "1h", limit: int = 100) -> list[Candle]:
        self._hit("get_candles")
        return list(self.candles)

    async def get_contracts(self) -> list[ContractInfo]:
        self._hit("get_contracts")
        return list(self.contracts)

    async def get_account_assets(self) -> AccountAssets:
        self._hit("get_account_assets")
        return AccountAssets(margin_coin="USDT", available=self.available, equity=self.available, locked=0.0)

    async def get_positions(self) -> list[ExchangePosition]:
        self._hit("get_positions")
        return list(self.positions)

    async def get_position(self, symbol: str) -> ExchangePosition | None:
        self._hit("get_position")
        return next((p for p in self.positions if p.symbol == symbol), None)

    async def place_order(self, payload: dict[str, str]) -> OrderAck:
        self._hit("place_order")
        self.placed_orders.append(payload)
        return OrderAck(order_id=f"order-{len(self.placed_orders)}", client_oid=payload.get("client_oid"))

    async def close_all_positions(self, symbol: str | None = None) -> list[dict[str, Any]]:
        self._hit("close_all_positions")
        self.closed.append(symbol)
        return []

    async def close_partial_position(self, symbol: str, side: str, size: str) -> OrderAck:
        self._hit("close_partial_position")
        self.partial_closes.append((symbol, side, size))
        return OrderAck(order_id="partial-1")

    async def get_current_plan_orders(self, symbol: str | None = None) -> list[PlanOrder]:
        self._hit("get_current_plan_orders")
        return [order for order in self.plan_orders if symbol is None or order.symbol == symbol]

    async def place_tp_sl_order(self, **kwargs: Any) -> list[dict[str, Any]]:
        self._hit("place_tp_sl_order")
        self.tp_sl_orders.append(kwargs)
        return [{}]

    async def modify_tp_sl_order(self, *, order_id: str, trigger_price: float) -> dict[str, Any]:
        self._hit("modify_tp_sl_order")
        self.modified.append((order_id, trigger_price))
        return {}

    async def adjust_position_margin(self, *, isolated_position_id: int, amount: float) -> dict[str, Any]:
        self._hit("adjust_position_margin")
        self.margin_adjustments.append((isolated_position_id, amount))
        return {}

    async def get_history_orders(self, symbol: str, limit: int = 50) -> list[HistoryOrder]:
        self._hit("get_history_orders")
        return list(self.history.get(symbol, []))


class FakeDecisionService:
    """Returns canned stage results. Stage names in ``errors`` raise instead."""

    def __init__(self) -> None:
        self.selection = OpportunitySelection(
            source_id="jim", symbol="cmt_btcusdt", action="LONG", rationale="breakout"
        )
        self.championship = ChampionshipResult(champion=champion(), participants=["jim", "ray"])
        self.risk = RiskCouncilDecision(approved=True)
        self.management = ManagementDecision(manage_type="CLOSE_FULL", conviction=8, reason="lock in gains")
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.managed: list[str] = []

    def _hit(self, stage: str) -> None:
        self.calls.append(stage)
        if stage in self.errors:
            raise self.errors[stage]

    async def select_opportunity(
        self, market_data: dict[str, MarketData], positions: list[PositionSnapshot]
    ) -> OpportunitySelection:
        self._hit("selection")
        return self.selection

    async def run_deep_analysis(
        self, symbol: str, market: MarketData, context: dict[str, Any]
    ) -> ChampionshipResult:
        self._hit("analysis")
        return self.championship

    async def run_risk_council(
        self,
        decision: ChampionshipResult,
        market: MarketData,
        balance: float,
        positions: list[PositionSnapshot],
        recent_pnl: Any,
    ) -> RiskCouncilDecision:
        self._hit("risk_council")
        return self.risk

    async def run_position_management(
        self, position: PositionSnapshot, market_data: dict[str, MarketData]
    ) -> ManagementDecision:
        self._hit("management")
        self.managed.append(position.symbol)
        return self.management


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(journal_dir=tmp_path, approved_symbols=SYMBOLS)


@pytest.fixture
def live_settings(tmp_path: Path) -> Settings:
    return Settings(mode="live", journal_dir=tmp_path, approved_symbols=SYMBOLS)


@pytest.fixture
def exchange() -> FakeExchange:
    return FakeExchange()


@pytest.fixture
def decisions() -> FakeDecisionService:
    return FakeDecisionService()
