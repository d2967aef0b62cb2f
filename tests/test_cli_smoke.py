from pathlib import Path

from click.testing import CliRunner

from perp_trader.config import RiskParameters, Settings
from perp_trader.errors import FatalConfigError
from perp_trader.main import cli
from perp_trader.types import CycleResult


class _FakeEngine:
    def run_cycle(self) -> CycleResult:
        return CycleResult(status="no_candidates", cycle=1, elapsed_ms=1.0)


def _use_settings(monkeypatch: object, tmp_path: Path) -> Settings:
    settings = Settings(  # type: ignore[call-arg]
        _env_file=None,
        state_dir=tmp_path / "state",
        journal_dir=tmp_path / "journal",
        risk=RiskParameters(loop_interval=0.01, loop_interval_with_positions=0.01),
    )
    for target in ("perp_trader.main.get_settings", "perp_trader.utils.logging.get_settings"):
        monkeypatch.setattr(target, lambda: settings)  # type: ignore[attr-defined]
    return settings


def test_cli_once_smoke(monkeypatch: object, tmp_path: Path) -> None:
    calls: list[bool] = []

    def _fake_build(settings: Settings, dry_run: bool = False) -> _FakeEngine:
        calls.append(dry_run)
        return _FakeEngine()

    _use_settings(monkeypatch, tmp_path)
    monkeypatch.setattr("perp_trader.main.build_engine", _fake_build)  # type: ignore[attr-defined]
    runner = CliRunner()
    result = runner.invoke(cli, ["once", "--dry-run"])
    assert result.exit_code == 0
    assert calls == [True]


def test_cli_loop_respects_max_cycles(monkeypatch: object, tmp_path: Path) -> None:
    _use_settings(monkeypatch, tmp_path)
    monkeypatch.setattr(  # type: ignore[attr-defined]
        "perp_trader.main.build_engine",
        lambda settings, dry_run=False: _FakeEngine(),
    )
    monkeypatch.setattr(  # type: ignore[attr-defined]
        "perp_trader.main.ControlLoop.install_signal_handlers",
        lambda self: None,
    )
    result = CliRunner().invoke(cli, ["loop", "--max-cycles", "2", "--dry-run"])
    assert result.exit_code == 0


def test_cli_fatal_config_exits_nonzero(monkeypatch: object) -> None:
    def _broken() -> Settings:
        raise FatalConfigError("invalid_configuration: max_leverage")

    monkeypatch.setattr("perp_trader.main.get_settings", _broken)  # type: ignore[attr-defined]
    result = CliRunner().invoke(cli, ["once"])
    assert result.exit_code == 1


def test_cli_status_lists_risk_parameters(monkeypatch: object, tmp_path: Path) -> None:
    _use_settings(monkeypatch, tmp_path)
    result = CliRunner().invoke(cli, ["status"])
    assert result.exit_code == 0
    assert "Max positions: 10" in result.output
    assert "[PAPER]" in result.output
