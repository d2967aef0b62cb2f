"""配置加载模块 - 从环境变量和 .env 文件加载配置。

风控参数 (RiskParameters) 在进程启动时加载一次，运行期间不可变，不支持热加载。
"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from perp_trader.errors import FatalConfigError


class RunMode(str, Enum):
    """运行模式枚举。"""

    PAPER = "paper"  # 纸交易
    LIVE = "live"  # 实盘


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class RiskParameters(BaseModel):
    """进程级风控参数（不可变）。

    百分比字段的单位见各字段说明：ROE 百分比 = 价格变动百分比 × 杠杆；
    USDT 字段为绝对金额，两种单位不要互相换算。
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    # ==================== 仓位与信心 ====================
    max_positions: int = Field(default=10, ge=1, le=50, description="最大同时持仓数")
    min_confidence: float = Field(default=0.68, gt=0.0, le=1.0, description="最低 AI 信心")
    max_leverage: int = Field(default=15, ge=1, le=18, description="常规杠杆上限")
    default_leverage: int = Field(default=10, ge=1, le=18, description="信号未给出杠杆时的默认值")
    high_confidence_threshold: float = Field(default=0.85, gt=0.0, lt=1.0)
    high_confidence_min_leverage: int = Field(default=10, ge=1, le=18)
    high_confidence_max_leverage: int = Field(default=18, ge=1, le=18)
    high_confidence_balance_usage: float = Field(
        default=0.25,
        gt=0.0,
        le=1.0,
        description="高信心交易可用余额比例",
    )
    risk_per_trade: float = Field(default=0.02, gt=0.0, le=1.0, description="单笔可用余额比例")
    min_balance_per_position: float = Field(default=3.0, ge=0.0, description="开仓最低可用余额 (USDT)")

    # ==================== 下单约束 ====================
    min_notional_value: float = Field(default=5.5, gt=0.0, description="最小名义价值 (USDT)")
    max_fee_to_notional_ratio: float = Field(default=0.02, gt=0.0, le=1.0)
    round_trip_fee_rate: float = Field(default=0.001, ge=0.0, lt=1.0, description="往返手续费率")
    min_order_fee_usdt: float = Field(default=0.05, ge=0.0, description="单边最低手续费估计 (USDT)")

    # ==================== 初始止损止盈 ====================
    standard_stop_loss_percent: float = Field(default=2.0, gt=0.0, lt=100.0)
    standard_take_profit_percent: float = Field(default=4.0, gt=0.0)

    # ==================== 剥头皮 ====================
    scalper_enabled: bool = True
    scalper_skip_oracle_validation: bool = True
    scalper_max_leverage: int = Field(default=15, ge=1, le=18)
    scalper_max_positions: int = Field(default=3, ge=0)
    scalper_stop_loss: float = Field(default=3.0, gt=0.0, lt=100.0, description="价格百分比")
    scalper_profit_target: float = Field(default=4.5, gt=0.0, description="价格百分比")
    scalper_min_pullback: float = Field(default=4.0, ge=0.0)
    scalper_max_pullback: float = Field(default=9.0, ge=0.0)
    scalper_min_rsi: float = Field(default=70.0, ge=0.0, le=100.0)
    scalper_max_rsi: float = Field(default=80.0, ge=0.0, le=100.0)

    # ==================== 保本止损 ====================
    break_even_enabled: bool = True
    break_even_profit_trigger: float = Field(default=5.0, ge=0.0, description="ROE 百分比")
    break_even_time_in_profit: float = Field(default=3600.0, ge=0.0, description="秒")
    break_even_min_profit_usdt: float = Field(default=0.25, ge=0.0, description="USDT")

    # ==================== 利润保护 ====================
    profit_protection_enabled: bool = True
    profit_protection_trigger: float = Field(default=2.0, ge=0.0, description="ROE 百分比")
    profit_protection_lock_percent: float = Field(default=50.0, gt=0.0, le=100.0)
    profit_protection_min_distance: float = Field(default=1.0, ge=0.0, description="价格百分比")

    # ==================== 移动止损 ====================
    trailing_stop_enabled: bool = True
    trailing_stop_trigger: float = Field(default=5.0, ge=0.0, description="ROE 百分比")
    trailing_stop_profit_lock: float = Field(default=0.80, gt=0.0, le=1.0)

    # ==================== 动态止盈 ====================
    dynamic_tp_enabled: bool = True
    tp_update_interval: int = Field(default=2, ge=1, description="循环次数")

    # ==================== 持仓时间 ====================
    min_position_hold_time: float = Field(default=600.0, ge=0.0, description="秒")
    max_position_hold_time: float = Field(default=14_400.0, gt=0.0, description="秒")

    # ==================== 仓位轮换 ====================
    position_rotation_enabled: bool = False
    min_rotation_hold_time: float = Field(default=3600.0, ge=0.0, description="秒")
    rotation_max_profit_threshold: float = Field(default=5.0, description="ROE 百分比")
    rotation_min_score_required: float = Field(default=99.0, ge=0.0, le=100.0)

    # ==================== 循环与重试 ====================
    loop_interval: float = Field(default=60.0, gt=0.0, description="无持仓时循环间隔（秒）")
    loop_interval_with_positions: float = Field(
        default=15.0,
        gt=0.0,
        description="有持仓时循环间隔（秒）",
    )
    max_retries: int = Field(default=3, ge=1, le=10)
    reentry_cooldown_cycles: int = Field(default=10, ge=0)
    oracle_failure_threshold: int = Field(default=3, ge=1)
    oracle_reconnect_interval: float = Field(default=300.0, gt=0.0, description="秒")

    @model_validator(mode="after")
    def check_consistency(self) -> "RiskParameters":
        """校验参数表的内部一致性。"""
        if self.high_confidence_min_leverage > self.high_confidence_max_leverage:
            raise ValueError("high_confidence_min_leverage exceeds high_confidence_max_leverage")
        if self.scalper_min_pullback > self.scalper_max_pullback:
            raise ValueError("scalper_min_pullback exceeds scalper_max_pullback")
        if self.scalper_min_rsi > self.scalper_max_rsi:
            raise ValueError("scalper_min_rsi exceeds scalper_max_rsi")
        if self.min_position_hold_time > self.max_position_hold_time:
            raise ValueError("min_position_hold_time exceeds max_position_hold_time")
        return self


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置。风控参数使用 RISK__ 前缀，
    例如 RISK__MAX_POSITIONS=5。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="运行模式: paper 或 live")

    # ==================== AsterDex API ====================
    asterdex_api_key: str = Field(default="", description="AsterDex API Key")
    asterdex_api_secret: str = Field(default="", description="AsterDex API Secret")
    asterdex_base_url: str = Field(
        default="https://fapi.asterdex.com",
        description="AsterDex 合约 API 地址",
    )
    http_timeout: float = Field(default=10.0, gt=0.0, le=60.0, description="交易所请求超时（秒）")

    # ==================== DeepSeek API ====================
    deepseek_api_key: str = Field(default="", description="DeepSeek API Key")
    deepseek_model: str = Field(default="deepseek-chat", description="DeepSeek 模型名称")
    deepseek_timeout: int = Field(default=30, description="LLM 调用超时（秒）")

    # ==================== 行情与扫描 ====================
    trading_pairs: list[str] = Field(
        default_factory=lambda: [
            "BTCUSDT",
            "ETHUSDT",
            "SOLUSDT",
            "XRPUSDT",
            "DOGEUSDT",
            "BNBUSDT",
            "ASTERUSDT",
            "WLDUSDT",
        ],
        description="扫描的交易对",
    )
    scanner_top_results: int = Field(default=5, ge=1, le=50, description="扫描器保留的候选数量")
    paper_initial_equity: float = Field(default=1_000.0, gt=0.0, description="纸交易初始资金")

    # ==================== 风控参数 ====================
    risk: RiskParameters = Field(default_factory=RiskParameters)

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
    state_dir: Path = Field(
        default=Path("data/state"),
        description="状态投影输出目录 (positions.json 等)",
    )
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="事件日志存储目录",
    )

    @field_validator("state_dir", "journal_dir", mode="before")
    @classmethod
    def parse_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def is_paper_mode(self) -> bool:
        """是否为纸交易模式。"""
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        """是否为实盘模式。"""
        return self.mode == RunMode.LIVE

    def validate_for_live(self) -> list[str]:
        """验证实盘模式的必要配置，返回缺失项列表。"""
        missing = []
        if not self.asterdex_api_key:
            missing.append("ASTERDEX_API_KEY")
        if not self.asterdex_api_secret:
            missing.append("ASTERDEX_API_SECRET")
        if not self.deepseek_api_key:
            missing.append("DEEPSEEK_API_KEY")
        return missing

    def require_live_credentials(self) -> None:
        """实盘模式缺少凭证时抛出 FatalConfigError。"""
        if not self.is_live_mode:
            return
        missing = self.validate_for_live()
        if missing:
            raise FatalConfigError(f"missing_required_config: {', '.join(missing)}")


def load_settings(**overrides: object) -> Settings:
    """构建配置实例，参数校验失败时转换为 FatalConfigError。"""
    try:
        return Settings(**overrides)  # type: ignore[arg-type]
    except ValidationError as exc:
        raise FatalConfigError(f"invalid_configuration: {exc.errors()[0]['msg']}") from exc


# 全局配置实例（延迟初始化，进程内只加载一次）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
