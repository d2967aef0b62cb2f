"""CLI 入口模块 - 永续合约仓位与风控生命周期引擎命令行接口。"""

import sys
from datetime import datetime
from pathlib import Path

import click

from perp_trader import __version__
from perp_trader.config import Settings, get_settings
from perp_trader.engine import build_engine
from perp_trader.errors import FatalConfigError
from perp_trader.scheduler import ControlLoop
from perp_trader.utils.logging import get_logger, setup_logging


def _load_or_exit() -> Settings:
    """加载配置，失败时以退出码 1 结束进程。"""
    try:
        settings = get_settings()
    except FatalConfigError as exc:
        click.echo(f"[ERROR] {exc}", err=True)
        sys.exit(1)
    return settings


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Perp Trader - 杠杆永续合约的仓位与风控生命周期引擎。

    扫描候选 → 信号决策 → 仓位计算 → 分阶段止损 → 状态投影
    """
    if version:
        click.echo(f"perp-trader version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，使用纸交易所，不发送真实订单",
)
def once(dry_run: bool) -> None:
    """执行单次交易循环。"""
    settings = _load_or_exit()
    setup_logging()
    logger = get_logger("perp_trader.main")
    settings.ensure_directories()

    logger.info(
        "starting_single_run",
        mode=settings.mode.value,
        dry_run=dry_run,
        timestamp=datetime.now().isoformat(),
    )

    try:
        engine = build_engine(settings, dry_run=dry_run)
    except FatalConfigError as exc:
        logger.error("fatal_config", error=str(exc), hint="请在 .env 文件中配置必要的 API 密钥")
        sys.exit(1)

    result = engine.run_cycle()
    logger.info(
        "run_completed",
        status=result.status,
        elapsed_ms=round(result.elapsed_ms, 2),
        open_positions=result.open_positions,
        orders=len(result.orders),
        warnings=result.warnings,
        errors=result.errors,
    )
    if result.status == "failed":
        sys.exit(1)


@cli.command()
@click.option(
    "--max-cycles",
    "-n",
    type=int,
    default=None,
    help="最多执行的循环次数（默认无限）",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，使用纸交易所，不发送真实订单",
)
def loop(max_cycles: int | None, dry_run: bool) -> None:
    """循环执行交易循环。

    有持仓时使用较短间隔。收到 SIGINT/SIGTERM 后完成当前循环再退出。
    """
    settings = _load_or_exit()
    setup_logging()
    logger = get_logger("perp_trader.main")
    settings.ensure_directories()

    logger.info(
        "starting_loop",
        mode=settings.mode.value,
        max_cycles=max_cycles,
        dry_run=dry_run,
        interval=settings.risk.loop_interval,
        interval_with_positions=settings.risk.loop_interval_with_positions,
    )

    try:
        engine = build_engine(settings, dry_run=dry_run)
    except FatalConfigError as exc:
        logger.error("fatal_config", error=str(exc), hint="请在 .env 文件中配置必要的 API 密钥")
        sys.exit(1)

    control = ControlLoop(engine, settings.risk, max_cycles=max_cycles)
    control.install_signal_handlers()
    control.run()


@cli.command()
def status() -> None:
    """显示系统状态和配置摘要。"""
    settings = _load_or_exit()
    setup_logging()
    risk = settings.risk

    click.echo("=" * 50)
    click.echo("Perp Trader - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo()

    # API 配置状态
    click.echo("[API Configuration]")
    aster_status = "[OK] Configured" if settings.asterdex_api_key else "[--] Not configured"
    deepseek_status = "[OK] Configured" if settings.deepseek_api_key else "[--] Not configured"
    click.echo(f"   AsterDex API: {aster_status}")
    click.echo(f"   DeepSeek API: {deepseek_status}")
    click.echo(f"   LLM Model: {settings.deepseek_model}")
    click.echo(f"   Trading pairs: {', '.join(settings.trading_pairs)}")
    click.echo()

    # 风控参数
    click.echo("[Risk Parameters]")
    click.echo(f"   Max positions: {risk.max_positions}")
    click.echo(f"   Min confidence: {risk.min_confidence}")
    click.echo(f"   Leverage: default {risk.default_leverage}x, max {risk.max_leverage}x")
    click.echo(f"   Risk per trade: {risk.risk_per_trade * 100:.1f}% of available balance")
    click.echo(f"   Break-even trigger: {risk.break_even_profit_trigger}% ROE")
    click.echo(f"   Profit protection trigger: {risk.profit_protection_trigger}% ROE")
    click.echo(f"   Trailing trigger: {risk.trailing_stop_trigger}% ROE")
    click.echo(f"   Max hold time: {risk.max_position_hold_time / 3600:.1f} h")
    click.echo(f"   Rotation: {'enabled' if risk.position_rotation_enabled else 'disabled'}")
    click.echo()

    # 日志配置
    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo(f"   State dir: {settings.state_dir}")
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
        click.echo("[INFO] Paper mode does not require exchange credentials")

    click.echo()
    click.echo("=" * 50)


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("perp_trader.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Environment settings"),
        ("httpx", "HTTP client"),
        ("pandas", "Data processing"),
        ("numpy", "Numerical computing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
        ("binance", "Market data client"),
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


# 支持 python -m perp_trader.main 调用
if __name__ == "__main__":
    cli()
