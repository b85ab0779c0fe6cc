"""CLI 入口模块 - 自主交易循环引擎命令行接口。"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import TypeVar

import click

from autonomous_trading import __version__
from autonomous_trading.ai.decision_client import DecisionServiceClient
from autonomous_trading.config import Settings, get_settings
from autonomous_trading.engine import TradingEngine
from autonomous_trading.errors import EngineStartupError
from autonomous_trading.exchange.client import WeexClient
from autonomous_trading.types import TradingCycle
from autonomous_trading.utils.logging import get_logger, setup_logging

T = TypeVar("T")


async def _with_engine(settings: Settings, body: Callable[[TradingEngine], Awaitable[T]]) -> T:
    """创建客户端与引擎，执行 body 后关闭客户端。"""
    exchange = WeexClient(settings)
    decisions = DecisionServiceClient(settings)
    try:
        engine = TradingEngine(settings, exchange=exchange, decisions=decisions)
        return await body(engine)
    finally:
        await decisions.aclose()
        await exchange.aclose()


def _prepare_settings(dry_run: bool) -> Settings:
    settings = get_settings()
    if dry_run:
        settings = settings.model_copy(update={"dry_run": True})
    # 确保目录存在
    settings.ensure_directories()
    return settings


def _require_live_config(settings: Settings) -> None:
    """实盘模式下缺少密钥时直接退出。"""
    if not settings.is_live_mode:
        return
    missing = settings.validate_for_live()
    if missing:
        get_logger("autonomous_trading.main").error(
            "missing_required_config",
            missing_keys=missing,
            hint="请在 .env 文件中配置必要的 API 密钥",
        )
        sys.exit(1)


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Autonomous Trading - 永续合约自主决策-执行-对账循环引擎。

    每个周期：预检 → 决策服务分阶段调用 → 硬性风控 → 下单 → 对账。
    """
    if version:
        click.echo(f"autonomous-trading version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，不向交易所下单",
)
def once(dry_run: bool) -> None:
    """执行单次交易周期。"""
    settings = _prepare_settings(dry_run)
    setup_logging(settings)
    logger = get_logger("autonomous_trading.main")

    logger.info(
        "starting_single_run",
        mode=settings.mode.value,
        dry_run=settings.effective_dry_run,
        timestamp=datetime.now().isoformat(),
    )
    _require_live_config(settings)

    async def _body(engine: TradingEngine) -> TradingCycle:
        try:
            return await engine.run_once()
        finally:
            await engine.cleanup()

    try:
        cycle = asyncio.run(_with_engine(settings, _body))
        logger.info(
            "run_completed",
            status=cycle.status,
            trades=cycle.trades_executed,
            debates=cycle.debates_run,
            errors=cycle.errors,
        )
    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)
    except EngineStartupError as e:
        logger.error("engine_startup_failed", error=str(e))
        sys.exit(1)
    except Exception as e:
        logger.exception("run_failed", error=str(e))
        sys.exit(1)


@cli.command()
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，不向交易所下单",
)
def run(dry_run: bool) -> None:
    """启动循环引擎，直到 Ctrl+C 或连续失败熔断。"""
    settings = _prepare_settings(dry_run)
    setup_logging(settings)
    logger = get_logger("autonomous_trading.main")

    logger.info(
        "starting_engine",
        mode=settings.mode.value,
        dry_run=settings.effective_dry_run,
        cycle_interval_sec=settings.cycle_interval_sec,
    )
    _require_live_config(settings)

    async def _body(engine: TradingEngine) -> int:
        try:
            await engine.start()
            await engine.wait()
            return engine.get_status().cycle_count
        finally:
            await engine.cleanup()

    try:
        cycles = asyncio.run(_with_engine(settings, _body))
        logger.info("engine_exited", total_cycles=cycles)
    except KeyboardInterrupt:
        logger.info("engine_interrupted", message="User stopped engine")
        sys.exit(0)
    except EngineStartupError as e:
        logger.error("engine_startup_failed", error=str(e))
        sys.exit(1)


@cli.command()
def status() -> None:
    """显示系统状态和配置摘要。"""
    settings = get_settings()
    setup_logging(settings)

    click.echo("=" * 50)
    click.echo("Autonomous Trading - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo(f"   Dry run: {'Yes' if settings.effective_dry_run else 'No'}")
    click.echo(f"   Trading style: {settings.trading_style.value}")
    click.echo(f"   Symbols: {', '.join(settings.approved_symbols)}")
    click.echo()

    # API 配置状态
    click.echo("[API Configuration]")
    exchange_status = "[OK] Configured" if settings.exchange_api_key else "[--] Not configured"
    click.echo(f"   Exchange API: {exchange_status}")
    click.echo(f"   Exchange URL: {settings.exchange_base_url}")
    click.echo(f"   Decision service: {settings.decision_service_url}")
    click.echo()

    # 风控参数
    click.echo("[Risk Parameters]")
    click.echo(f"   Max concurrent positions: {settings.max_concurrent_positions}")
    click.echo(f"   Max same direction: {settings.max_same_direction_positions}")
    click.echo(f"   Max weekly drawdown: {settings.max_weekly_drawdown_pct}%")
    click.echo(f"   Max daily trades: {settings.max_daily_trades}")
    click.echo(f"   Trade cooldown: {settings.min_trade_interval_sec:g}s")
    click.echo(f"   Leverage: {settings.default_leverage}x (max {settings.max_leverage}x)")
    click.echo(f"   Circuit breakers: {'On' if settings.enable_circuit_breakers else 'Off'}")
    click.echo()

    # 调度
    click.echo("[Scheduling]")
    click.echo(f"   Cycle interval: {settings.cycle_interval_sec:g}s")
    click.echo(f"   Dynamic interval: {'Yes' if settings.dynamic_interval else 'No'}")
    click.echo(f"   Failure limit: {settings.max_consecutive_failures}")
    click.echo()

    # 日志配置
    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo()

    # 验证状态
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not place orders")

    click.echo()
    click.echo("=" * 50)


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("autonomous_trading.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Environment settings"),
        ("httpx", "HTTP client"),
        ("pandas", "Data processing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    # 检查配置文件
    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


# 支持 python -m autonomous_trading.main 调用
if __name__ == "__main__":
    cli()
