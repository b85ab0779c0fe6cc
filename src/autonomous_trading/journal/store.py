"""JSONL stores for trades, portfolio snapshots and engine events."""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from autonomous_trading.events import EngineEvent
from autonomous_trading.types import SharedPortfolio, TradeRecord

_ALLOWED_EVENT_TYPES = {event.value for event in EngineEvent}


class TradeStore:
    """Append-only trade history plus portfolio mirror and snapshots."""

    def __init__(self, journal_dir: Path) -> None:
        self._journal_dir = journal_dir
        self._journal_dir.mkdir(parents=True, exist_ok=True)
        self._trades_file = journal_dir / "trades.jsonl"
        self._snapshots_file = journal_dir / "snapshots.jsonl"
        self._portfolio_file = journal_dir / "portfolio.json"

    # ---- trades ----

    def save_trade(self, record: TradeRecord) -> None:
        with self._trades_file.open("a", encoding="utf-8") as f:
            f.write(json.dumps(asdict(record), ensure_ascii=True) + "\n")

    def list_trades(
        self,
        *,
        since: float | None = None,
        symbol: str | None = None,
        side: str | None = None,
        status: str | None = None,
        entries_only: bool = False,
        realized_only: bool = False,
    ) -> list[TradeRecord]:
        """Return matching trades, oldest first."""
        rows: list[TradeRecord] = []
        for record in self._read_trades():
            if since is not None and record.executed_at < since:
                continue
            if symbol is not None and record.symbol != symbol:
                continue
            if side is not None and record.side != side:
                continue
            if status is not None and record.status != status:
                continue
            if entries_only and not record.is_entry:
                continue
            if realized_only and record.realized_pnl is None:
                continue
            rows.append(record)
        return rows

    def latest_entry(self, symbol: str, side: str, *, with_champion: bool = False) -> TradeRecord | None:
        """Most recent open FILLED entry trade for a symbol and entry side."""
        candidates = [
            record
            for record in self.list_trades(symbol=symbol, side=side, status="FILLED", entries_only=True)
            if not with_champion or record.champion_id
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda record: record.executed_at)

    def realized_order_ids(self) -> set[str]:
        return {
            record.exchange_order_id
            for record in self._read_trades()
            if record.realized_pnl is not None and record.exchange_order_id
        }

    def daily_filled_count(self, since: float) -> int:
        return len(self.list_trades(since=since, status="FILLED"))

    def realized_pnl_since(self, since: float) -> float:
        return sum(record.realized_pnl or 0.0 for record in self.list_trades(since=since, realized_only=True))

    # ---- portfolio mirror ----

    def update_portfolio_balance(self, portfolio: SharedPortfolio) -> None:
        payload = {
            "portfolio_id": portfolio.portfolio_id,
            "balance": portfolio.balance,
            "total_value": portfolio.total_value,
            "total_trades": portfolio.total_trades,
            "position_count": portfolio.position_count,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        tmp_file = self._portfolio_file.with_suffix(".tmp")
        tmp_file.write_text(json.dumps(payload, ensure_ascii=True, indent=2), encoding="utf-8")
        tmp_file.replace(self._portfolio_file)

    def load_portfolio(self) -> dict[str, Any] | None:
        if not self._portfolio_file.exists():
            return None
        return json.loads(self._portfolio_file.read_text(encoding="utf-8"))

    # ---- performance snapshots ----

    def write_snapshot(self, timestamp: float, *, total_value: float, balance: float, position_count: int) -> bool:
        """Write one snapshot per rounded minute. Returns False for a duplicate."""
        minute = int(timestamp // 60 * 60)
        if any(int(row["timestamp"]) == minute for row in self.load_snapshots(since=minute)):
            return False
        row = {
            "timestamp": minute,
            "total_value": total_value,
            "balance": balance,
            "position_count": position_count,
        }
        with self._snapshots_file.open("a", encoding="utf-8") as f:
            f.write(json.dumps(row, ensure_ascii=True) + "\n")
        return True

    def load_snapshots(self, since: float | None = None) -> list[dict[str, Any]]:
        if not self._snapshots_file.exists():
            return []
        rows = []
        for line in self._snapshots_file.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            row = json.loads(line)
            if since is None or row["timestamp"] >= since:
                rows.append(row)
        return rows

    def prune_snapshots(self, older_than: float) -> int:
        """Delete snapshots strictly older than ``older_than``. Returns the count removed."""
        rows = self.load_snapshots()
        kept = [row for row in rows if row["timestamp"] >= older_than]
        removed = len(rows) - len(kept)
        if removed:
            tmp_file = self._snapshots_file.with_suffix(".tmp")
            tmp_file.write_text("".join(json.dumps(row, ensure_ascii=True) + "\n" for row in kept), encoding="utf-8")
            tmp_file.replace(self._snapshots_file)
        return removed

    def _read_trades(self) -> list[TradeRecord]:
        if not self._trades_file.exists():
            return []
        records = []
        for line in self._trades_file.read_text(encoding="utf-8").splitlines():
            if line.strip():
                records.append(TradeRecord(**json.loads(line)))
        return records


class JournalStore:
    """Append-only JSONL event store, one file per UTC day."""

    def __init__(self, journal_dir: Path) -> None:
        self._journal_dir = journal_dir / "events"
        self._journal_dir.mkdir(parents=True, exist_ok=True)

    def append(self, event_type: str, payload: dict[str, Any]) -> None:
        """Append one event line to daily JSONL file."""
        if event_type not in _ALLOWED_EVENT_TYPES:
            raise ValueError(f"unsupported_event_type: {event_type}")
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        file_path = self._file_path_for_day(datetime.now(timezone.utc).date())
        with file_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")

    def on_event(self, event: EngineEvent, payload: dict[str, Any]) -> None:
        """EventBus subscriber."""
        self.append(event.value, payload)

    def load_recent(self, limit: int) -> list[dict[str, Any]]:
        """Load recent events from the most recent journal files."""
        if limit <= 0:
            return []

        rows: list[dict[str, Any]] = []
        files = sorted(self._journal_dir.glob("*.jsonl"), reverse=True)
        for file in files:
            lines = file.read_text(encoding="utf-8").splitlines()
            for line in reversed(lines):
                if not line.strip():
                    continue
                rows.append(json.loads(line))
                if len(rows) >= limit:
                    return list(reversed(rows))
        return list(reversed(rows))

    def _file_path_for_day(self, day: date) -> Path:
        return self._journal_dir / f"{day.isoformat()}.jsonl"
