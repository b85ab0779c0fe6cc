"""配置加载模块 - 从环境变量和 .env 文件加载引擎配置。"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_APPROVED_SYMBOLS = [
    "cmt_btcusdt",
    "cmt_ethusdt",
    "cmt_solusdt",
    "cmt_dogeusdt",
    "cmt_xrpusdt",
    "cmt_adausdt",
    "cmt_bnbusdt",
    "cmt_ltcusdt",
]

DEFAULT_DECISION_SOURCES = ["jim", "ray", "karen", "quant"]


class RunMode(str, Enum):
    """运行模式枚举。"""

    PAPER = "paper"  # 仅模拟（强制 dry run）
    LIVE = "live"  # 实盘


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class TradingStyle(str, Enum):
    """交易风格枚举。"""

    SCALP = "scalp"
    SWING = "swing"


@dataclass(frozen=True, slots=True)
class StyleParams:
    """交易风格对应的止盈止损与持仓时间参数（百分比 / 小时）。"""

    target_profit_pct: float
    stop_loss_pct: float
    max_hold_hours: float
    breakeven_pct: float
    partial25_pct: float
    partial50_pct: float
    partial75_pct: float


_STYLE_PARAMS = {
    TradingStyle.SCALP: StyleParams(
        target_profit_pct=5.0,
        stop_loss_pct=3.0,
        max_hold_hours=12.0,
        breakeven_pct=2.0,
        partial25_pct=3.0,
        partial50_pct=5.0,
        partial75_pct=7.0,
    ),
    TradingStyle.SWING: StyleParams(
        target_profit_pct=10.0,
        stop_loss_pct=5.0,
        max_hold_hours=48.0,
        breakeven_pct=3.0,
        partial25_pct=5.0,
        partial50_pct=8.0,
        partial75_pct=10.0,
    ),
}


class Settings(BaseSettings):
    """引擎配置设置。

    从环境变量和 .env 文件加载配置。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="运行模式: paper 或 live")
    dry_run: bool = Field(default=False, description="试运行，不向交易所下单")

    # ==================== 交易所 API ====================
    exchange_base_url: str = Field(
        default="https://api-contract.weex.com",
        description="交易所 REST 地址",
    )
    exchange_api_key: str = Field(default="", description="交易所 API Key")
    exchange_api_secret: str = Field(default="", description="交易所 API Secret")
    exchange_passphrase: str = Field(default="", description="交易所 API Passphrase")
    exchange_timeout: int = Field(default=30, ge=1, le=180, description="交易所请求超时（秒）")

    # ==================== 决策服务 ====================
    decision_service_url: str = Field(
        default="http://localhost:8400",
        description="决策服务地址",
    )
    decision_service_api_key: str = Field(default="", description="决策服务 API Key")
    decision_service_timeout: int = Field(
        default=120,
        ge=1,
        le=900,
        description="决策服务调用超时（秒）",
    )

    # ==================== 循环调度 ====================
    cycle_interval_sec: float = Field(
        default=600.0,
        ge=10.0,
        le=86_400.0,
        description="基础循环间隔（秒）",
    )
    dynamic_interval: bool = Field(default=True, description="按市场活跃度调整循环间隔")
    max_consecutive_failures: int = Field(
        default=10,
        ge=1,
        le=100,
        description="连续失败停机阈值",
    )
    startup_contract_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="启动时获取合约信息的最大尝试次数",
    )
    cleanup_timeout_sec: float = Field(
        default=5.0,
        ge=0.1,
        le=60.0,
        description="清理时等待主循环退出的超时（秒）",
    )

    # ==================== 交易门槛 ====================
    min_balance_to_trade: float = Field(default=10.0, ge=0.0, description="最低可交易余额（USDT）")
    max_daily_trades: int = Field(default=20, ge=1, le=500, description="每日最大成交次数")
    min_trade_interval_sec: float = Field(
        default=900.0,
        ge=0.0,
        le=86_400.0,
        description="同一决策来源的最小交易间隔（秒）",
    )
    min_confidence_to_trade: float = Field(
        default=60.0,
        ge=0.0,
        le=100.0,
        description="冠军最低置信度（百分比）",
    )
    max_position_size_pct: float = Field(
        default=30.0,
        ge=1.0,
        le=100.0,
        description="单笔仓位上限（账户余额百分比）",
    )
    enable_circuit_breakers: bool = Field(default=True, description="启用市场熔断检查")

    # ==================== 风控参数 ====================
    max_concurrent_positions: int = Field(default=3, ge=1, le=20, description="最大同时持仓数")
    max_same_direction_positions: int = Field(
        default=2,
        ge=1,
        le=20,
        description="同方向最大持仓数",
    )
    max_weekly_drawdown_pct: float = Field(
        default=10.0,
        ge=1.0,
        le=50.0,
        description="周最大回撤停机阈值（百分比）",
    )
    max_funding_against: float = Field(
        default=0.05,
        ge=0.0,
        le=1.0,
        description="逆向资金费率上限（绝对值）",
    )
    max_leverage: int = Field(default=5, ge=1, le=20, description="最大杠杆")
    default_leverage: int = Field(default=3, ge=1, le=20, description="默认杠杆")

    # ==================== 数据新鲜度 ====================
    max_market_data_age_sec: float = Field(
        default=60.0,
        ge=1.0,
        le=600.0,
        description="下单前行情最大允许年龄（秒）",
    )
    warn_market_data_age_sec: float = Field(
        default=30.0,
        ge=1.0,
        le=600.0,
        description="行情年龄告警阈值（秒）",
    )
    price_move_log_pct: float = Field(
        default=0.1,
        ge=0.0,
        le=10.0,
        description="刷新行情时记录价格变动的阈值（百分比）",
    )
    target_tolerance: float = Field(
        default=0.0001,
        ge=0.0,
        le=0.01,
        description="止盈止损方向校验容差（比例）",
    )

    # ==================== 交易风格 ====================
    trading_style: TradingStyle = Field(default=TradingStyle.SCALP, description="交易风格")

    # ==================== 交易标的 ====================
    approved_symbols: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_APPROVED_SYMBOLS),
        description="允许交易的合约列表",
    )
    decision_sources: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_DECISION_SOURCES),
        description="已知的决策来源（分析师）",
    )

    # ==================== 缓存与保留 ====================
    contract_refresh_sec: float = Field(
        default=1800.0,
        ge=60.0,
        le=86_400.0,
        description="合约信息缓存有效期（秒）",
    )
    weekly_pnl_cache_sec: float = Field(default=60.0, ge=0.0, le=3600.0, description="周盈亏缓存（秒）")
    snapshot_retention_days: int = Field(default=7, ge=1, le=365, description="绩效快照保留天数")
    snapshot_prune_interval_sec: float = Field(
        default=3600.0,
        ge=60.0,
        le=86_400.0,
        description="快照清理最小间隔（秒）",
    )
    snapshot_failure_alert_threshold: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="快照写入失败告警阈值",
    )
    reconcile_lookback_days: int = Field(default=7, ge=1, le=90, description="平仓同步回溯天数")

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 数据存储 ====================
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="交易记录与事件日志存储目录",
    )

    @field_validator("journal_dir", mode="before")
    @classmethod
    def parse_journal_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    @field_validator("approved_symbols", "decision_sources", mode="before")
    @classmethod
    def parse_csv_list(cls, v: str | list[str]) -> list[str]:
        """支持逗号分隔的环境变量写法。"""
        if isinstance(v, str):
            return [item.strip().lower() for item in v.split(",") if item.strip()]
        return [str(item).lower() for item in v]

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def is_paper_mode(self) -> bool:
        """是否为模拟模式。"""
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        """是否为实盘模式。"""
        return self.mode == RunMode.LIVE

    @property
    def effective_dry_run(self) -> bool:
        """模拟模式下始终不下单。"""
        return self.dry_run or self.is_paper_mode

    @property
    def style_params(self) -> StyleParams:
        """当前交易风格的参数。"""
        return _STYLE_PARAMS[self.trading_style]

    def validate_for_live(self) -> list[str]:
        """验证实盘模式的必要配置，返回缺失项列表。"""
        missing = []
        if not self.exchange_api_key:
            missing.append("EXCHANGE_API_KEY")
        if not self.exchange_api_secret:
            missing.append("EXCHANGE_API_SECRET")
        if not self.exchange_passphrase:
            missing.append("EXCHANGE_PASSPHRASE")
        if not self.decision_service_url:
            missing.append("DECISION_SERVICE_URL")
        return missing


# 全局配置实例（延迟初始化）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
