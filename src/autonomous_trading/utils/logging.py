"""结构化日志配置模块。

使用 structlog 提供结构化日志支持，支持 JSON 和控制台两种输出格式。
每条日志都带有运行模式；循环内的日志通过 contextvars 自动附带
cycle_number 与 source_id。
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from autonomous_trading.config import LogFormat, Settings, get_settings
from autonomous_trading.types import ExecutionOrder


def run_mode_processor(settings: Settings) -> Processor:
    """返回为每条日志补充 mode / dry_run 字段的处理器。"""
    mode = settings.mode.value
    dry_run = settings.effective_dry_run

    def add_run_mode(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("mode", mode)
        event_dict.setdefault("dry_run", dry_run)
        return event_dict

    return add_run_mode


def setup_logging(settings: Settings | None = None) -> None:
    """配置结构化日志系统。

    Args:
        settings: 生效的配置（例如已应用 --dry-run）。为 None 时使用全局配置。
    """
    settings = settings or get_settings()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        run_mode_processor(settings),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_format == LogFormat.JSON:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """获取结构化日志记录器。"""
    return structlog.get_logger(name)


def bind_cycle_context(cycle_number: int) -> None:
    """进入新循环：清空上一轮上下文并绑定循环编号。"""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(cycle_number=cycle_number)


def bind_source_context(source_id: str) -> None:
    """绑定当前循环选中的决策来源。"""
    structlog.contextvars.bind_contextvars(source_id=source_id)


def clear_cycle_context() -> None:
    structlog.contextvars.unbind_contextvars("cycle_number", "source_id")


# 便捷日志函数
def log_decision_call(
    logger: structlog.stdlib.BoundLogger,
    *,
    stage: str,
    success: bool,
    latency_ms: float,
    **kwargs: Any,
) -> None:
    """记录决策服务调用。"""
    level = "info" if success else "warning"
    getattr(logger, level)(
        "decision_call",
        stage=stage,
        success=success,
        latency_ms=round(latency_ms, 2),
        **kwargs,
    )


def log_order_execution(
    logger: structlog.stdlib.BoundLogger,
    order: ExecutionOrder,
    *,
    status: str,
    order_id: str | None = None,
    **kwargs: Any,
) -> None:
    """记录下单结果（失败时为 warning）。"""
    level = "warning" if status == "failed" else "info"
    getattr(logger, level)(
        "order_execution",
        symbol=order.symbol,
        direction=order.direction,
        size=order.size,
        price=order.price,
        leverage=order.leverage,
        client_order_id=order.client_order_id,
        order_id=order_id,
        status=status,
        **kwargs,
    )


def log_guard_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    check: str,
    action: str,
    reason: str,
    **kwargs: Any,
) -> None:
    """记录护栏拦截、跳过循环与熔断动作。"""
    logger.warning(
        "guard_triggered",
        check=check,
        action=action,
        reason=reason,
        **{key: value for key, value in kwargs.items() if value is not None},
    )


def log_cycle_summary(
    logger: structlog.stdlib.BoundLogger,
    *,
    cycle_number: int,
    status: str,
    trades: int,
    debates: int,
    elapsed_ms: float,
    **kwargs: Any,
) -> None:
    """记录单次循环摘要。"""
    logger.info(
        "cycle_complete",
        cycle_number=cycle_number,
        status=status,
        trades=trades,
        debates=debates,
        elapsed_ms=round(elapsed_ms, 2),
        **kwargs,
    )
