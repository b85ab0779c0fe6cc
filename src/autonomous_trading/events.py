"""Typed signal channel the engine publishes to."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from autonomous_trading.utils.logging import get_logger

Subscriber = Callable[["EngineEvent", dict[str, Any]], None]


class EngineEvent(str, Enum):
    """Signals emitted for external observers."""

    STARTED = "started"
    STOPPED = "stopped"
    CYCLE_START = "cycle_start"
    CYCLE_COMPLETE = "cycle_complete"
    COIN_SELECTED = "coin_selected"
    TOURNAMENT_COMPLETE = "tournament_complete"
    RISK_COUNCIL_DECISION = "risk_council_decision"
    TRADE_EXECUTED = "trade_executed"
    SAFETY_CHECK_FAILED = "safety_check_failed"
    EMERGENCY_CLOSE = "emergency_close"
    SNAPSHOT_FAILURE = "snapshot_failure"


class EventBus:
    """Synchronous fan-out to subscribers.

    A failing subscriber is logged and skipped; publishing never raises.
    """

    def __init__(self) -> None:
        self._subscribers: dict[EngineEvent | None, list[Subscriber]] = {}
        self._logger = get_logger("autonomous_trading.events")

    def subscribe(self, callback: Subscriber, event: EngineEvent | None = None) -> None:
        """Register for one event, or for every event when ``event`` is None."""
        self._subscribers.setdefault(event, []).append(callback)

    def unsubscribe(self, callback: Subscriber, event: EngineEvent | None = None) -> None:
        callbacks = self._subscribers.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def publish(self, event: EngineEvent, payload: dict[str, Any] | None = None) -> None:
        body = dict(payload or {})
        body.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        for callback in [*self._subscribers.get(event, []), *self._subscribers.get(None, [])]:
            try:
                callback(event, body)
            except Exception as exc:  # noqa: BLE001 - observers must not break the loop.
                self._logger.warning("event_subscriber_failed", event_name=event.value, error=str(exc))

    def clear(self) -> None:
        self._subscribers.clear()
