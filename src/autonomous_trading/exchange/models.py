"""Typed records normalized from raw exchange payloads."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if math.isfinite(parsed) else default


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


@dataclass(slots=True)
class Ticker:
    symbol: str
    last: float
    best_bid: float
    best_ask: float
    high_24h: float
    low_24h: float
    volume_24h: float
    change_24h: float
    mark_price: float
    index_price: float
    timestamp_ms: int

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "Ticker":
        last = _to_float(raw.get("last"))
        return cls(
            symbol=str(raw.get("symbol", "")),
            last=last,
            best_bid=_to_float(raw.get("best_bid")),
            best_ask=_to_float(raw.get("best_ask")),
            high_24h=_to_float(raw.get("high_24h")),
            low_24h=_to_float(raw.get("low_24h")),
            volume_24h=_to_float(raw.get("volume_24h")),
            change_24h=_to_float(raw.get("priceChangePercent")),
            mark_price=_to_float(raw.get("markPrice"), last),
            index_price=_to_float(raw.get("indexPrice"), last),
            timestamp_ms=_to_int(raw.get("timestamp")),
        )


@dataclass(slots=True)
class FundingRate:
    symbol: str
    rate: float
    collect_cycle_min: int
    timestamp_ms: int

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "FundingRate":
        return cls(
            symbol=str(raw.get("symbol", "")),
            rate=_to_float(raw.get("fundingRate")),
            collect_cycle_min=_to_int(raw.get("collectCycle"), 480),
            timestamp_ms=_to_int(raw.get("timestamp")),
        )


@dataclass(slots=True)
class Candle:
    timestamp_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_row(cls, row: list[Any]) -> "Candle | None":
        """Row layout: ts, open, high, low, close, base volume, quote volume."""
        if not isinstance(row, list) or len(row) < 7:
            return None
        timestamp_ms = _to_int(row[0])
        if timestamp_ms <= 0:
            return None
        return cls(
            timestamp_ms=timestamp_ms,
            open=_to_float(row[1]),
            high=_to_float(row[2]),
            low=_to_float(row[3]),
            close=_to_float(row[4]),
            volume=_to_float(row[6]),
        )


@dataclass(slots=True)
class ContractInfo:
    """Raw contract listing entry. Decimal counts arrive as strings."""

    symbol: str
    tick_size: str
    price_end_step: float
    size_increment: str
    min_order_size: str
    max_order_size: str
    max_position_size: str
    min_leverage: Any = 1
    max_leverage: Any = 500

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "ContractInfo":
        return cls(
            symbol=str(raw.get("symbol", "")),
            tick_size=str(raw.get("tick_size", "")),
            price_end_step=_to_float(raw.get("priceEndStep"), -1.0),
            size_increment=str(raw.get("size_increment", "")),
            min_order_size=str(raw.get("minOrderSize", "")),
            max_order_size=str(raw.get("maxOrderSize", "")),
            max_position_size=str(raw.get("maxPositionSize", "")),
            min_leverage=raw.get("minLeverage", 1),
            max_leverage=raw.get("maxLeverage", 500),
        )


@dataclass(slots=True)
class AccountAssets:
    margin_coin: str
    available: float
    equity: float
    locked: float

    @classmethod
    def from_raw(cls, raw: Any) -> "AccountAssets":
        """Accepts the per-coin list, preferring the USDT entry."""
        entry: dict[str, Any] = {}
        if isinstance(raw, list):
            entry = next((item for item in raw if item.get("coinName") == "USDT"), raw[0] if raw else {})
        elif isinstance(raw, dict):
            entry = raw
        return cls(
            margin_coin=str(entry.get("coinName") or entry.get("marginCoin") or "USDT"),
            available=_to_float(entry.get("available"), math.nan),
            equity=_to_float(entry.get("equity")),
            locked=_to_float(entry.get("frozen") or entry.get("locked")),
        )


@dataclass(slots=True)
class ExchangePosition:
    symbol: str
    side: str
    size: float
    leverage: float
    open_value: float
    margin_mode: str
    unrealized_pnl: float
    id: int | None = None
    isolated_position_id: int | None = None
    margin_size: float = 0.0
    liquidation_price: float = 0.0

    @property
    def entry_price(self) -> float:
        if self.size <= 0 or self.open_value <= 0:
            return 0.0
        return self.open_value / self.size

    @property
    def is_isolated(self) -> bool:
        return self.margin_mode.upper() == "ISOLATED"

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "ExchangePosition":
        """Raises ValueError when a required field is missing or invalid."""
        symbol = raw.get("symbol")
        if not symbol or not isinstance(symbol, str):
            raise ValueError("position_missing_symbol")
        size = _to_float(raw.get("size"), -1.0)
        if size <= 0:
            raise ValueError(f"position_invalid_size: {symbol}")
        leverage = _to_float(raw.get("leverage"), -1.0)
        if leverage <= 0:
            raise ValueError(f"position_invalid_leverage: {symbol}")
        side = str(raw.get("side") or "").upper()
        if side not in {"LONG", "SHORT"}:
            raise ValueError(f"position_invalid_side: {symbol}")
        isolated_id = raw.get("isolated_position_id")
        return cls(
            symbol=symbol,
            side=side,
            size=size,
            leverage=leverage,
            open_value=_to_float(raw.get("open_value")),
            margin_mode="ISOLATED" if str(raw.get("margin_mode", "")).upper() == "ISOLATED" else "CROSS",
            unrealized_pnl=_to_float(raw.get("unrealizePnl")),
            id=_to_int(raw["id"]) if raw.get("id") is not None else None,
            isolated_position_id=_to_int(isolated_id) if isolated_id else None,
            margin_size=_to_float(raw.get("marginSize")),
            liquidation_price=_to_float(raw.get("liquidatePrice")),
        )


@dataclass(slots=True)
class PlanOrder:
    order_id: str
    symbol: str
    plan_type: str
    position_side: str
    trigger_price: float
    size: float

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "PlanOrder":
        return cls(
            order_id=str(raw.get("orderId") or raw.get("order_id") or ""),
            symbol=str(raw.get("symbol", "")),
            plan_type=str(raw.get("planType") or raw.get("plan_type") or ""),
            position_side=str(raw.get("positionSide") or raw.get("position_side") or "").lower(),
            trigger_price=_to_float(raw.get("triggerPrice") or raw.get("trigger_price")),
            size=_to_float(raw.get("size")),
        )


@dataclass(slots=True)
class HistoryOrder:
    order_id: str
    client_oid: str
    symbol: str
    size: float
    filled_qty: float
    price: float
    price_avg: float
    status: str
    type: str
    side: str
    create_time: int
    total_profits: float

    @property
    def close_price(self) -> float:
        return self.price_avg if self.price_avg > 0 else self.price

    @property
    def created_at(self) -> float:
        """Epoch seconds. The exchange mixes millisecond and second stamps."""
        if self.create_time > 1_577_836_800_000:
            return self.create_time / 1000
        return float(self.create_time)

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "HistoryOrder":
        return cls(
            order_id=str(raw.get("orderId") or raw.get("order_id") or ""),
            client_oid=str(raw.get("clientOid") or ""),
            symbol=str(raw.get("symbol", "")),
            size=_to_float(raw.get("size")),
            filled_qty=_to_float(raw.get("filledQty")),
            price=_to_float(raw.get("price")),
            price_avg=_to_float(raw.get("priceAvg")),
            status=str(raw.get("status", "")).lower(),
            type=str(raw.get("type", "")),
            side=str(raw.get("side", "")),
            create_time=_to_int(raw.get("createTime")),
            total_profits=_to_float(raw.get("totalProfits"), math.nan),
        )


@dataclass(slots=True)
class OrderAck:
    order_id: str
    client_oid: str | None = None

    @classmethod
    def from_raw(cls, raw: Any) -> "OrderAck":
        if isinstance(raw, list):
            raw = raw[0] if raw else {}
        if not isinstance(raw, dict):
            return cls(order_id="")
        order_id = raw.get("order_id") or raw.get("orderId") or ""
        return cls(order_id=str(order_id), client_oid=raw.get("client_oid"))
