"""按 UTC 时段判断市场活跃度，并据此调整循环间隔。"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from autonomous_trading.utils.logging import get_logger

Region = Literal["ASIA", "EUROPE", "US"]
ActivityLevel = Literal["low", "medium", "high", "peak"]

_DEFAULT_BASE_SEC = 300.0
_MIN_INTERVAL_SEC = 1.0
_MAX_INTERVAL_SEC = 3600.0

_INTERVAL_MULTIPLIER: dict[str, float] = {
    "peak": 0.5,
    "high": 0.75,
    "medium": 1.0,
    "low": 2.0,
}


@dataclass(frozen=True, slots=True)
class MarketActivity:
    """当前交易时段。"""

    region: Region
    level: ActivityLevel


def current_market_activity(now: datetime | None = None) -> MarketActivity:
    """返回给定 UTC 时刻的市场活跃度。

    时段（UTC）：亚洲 0:00-6:00，欧洲 8:00-16:30，美国 14:30-21:00。
    欧美重叠时段 14:30-16:30 为峰值。
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    minutes = now.hour * 60 + now.minute

    if 14 * 60 + 30 <= minutes < 16 * 60 + 30:
        return MarketActivity("US", "peak")
    if 0 <= minutes < 6 * 60:
        return MarketActivity("ASIA", "high" if 1 <= now.hour < 5 else "medium")
    if 8 * 60 <= minutes < 16 * 60 + 30:
        return MarketActivity("EUROPE", "high" if 9 <= now.hour < 15 else "medium")
    if 16 * 60 + 30 <= minutes < 21 * 60:
        return MarketActivity("US", "high")
    return MarketActivity("US", "low")


def dynamic_cycle_interval(base_sec: float, now: datetime | None = None) -> float:
    """按活跃度缩放基础间隔（秒），结果限制在 1 秒到 1 小时之间。"""
    if not math.isfinite(base_sec) or base_sec <= 0:
        get_logger("autonomous_trading.utils.market_hours").warning(
            "invalid_base_interval",
            base_sec=base_sec,
            fallback_sec=_DEFAULT_BASE_SEC,
        )
        base_sec = _DEFAULT_BASE_SEC

    activity = current_market_activity(now)
    interval = base_sec * _INTERVAL_MULTIPLIER.get(activity.level, 1.0)
    return max(_MIN_INTERVAL_SEC, min(_MAX_INTERVAL_SEC, interval))
