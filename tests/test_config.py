from __future__ import annotations

import pytest
from pydantic import ValidationError

from perp_trader.config import RiskParameters, RunMode, load_settings
from perp_trader.errors import FatalConfigError


def test_risk_parameter_defaults() -> None:
    params = RiskParameters()
    assert params.max_positions == 10
    assert params.min_confidence == 0.68
    assert params.break_even_min_profit_usdt == 0.25
    assert params.trailing_stop_profit_lock == 0.8


def test_risk_parameters_are_immutable() -> None:
    params = RiskParameters()
    with pytest.raises(ValidationError):
        params.max_positions = 3  # type: ignore[misc]


def test_nested_env_overrides_risk(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RISK__MAX_POSITIONS", "4")
    monkeypatch.setenv("RISK__MIN_CONFIDENCE", "0.75")
    settings = load_settings(_env_file=None)
    assert settings.risk.max_positions == 4
    assert settings.risk.min_confidence == 0.75


def test_invalid_risk_parameters_are_fatal(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RISK__MAX_LEVERAGE", "40")
    with pytest.raises(FatalConfigError):
        load_settings(_env_file=None)


def test_inconsistent_risk_parameters_are_fatal() -> None:
    with pytest.raises(FatalConfigError):
        load_settings(
            _env_file=None,
            risk={"high_confidence_min_leverage": 18, "high_confidence_max_leverage": 10},
        )


def test_live_mode_requires_credentials() -> None:
    settings = load_settings(_env_file=None, mode=RunMode.LIVE)
    assert set(settings.validate_for_live()) == {
        "ASTERDEX_API_KEY",
        "ASTERDEX_API_SECRET",
        "DEEPSEEK_API_KEY",
    }
    with pytest.raises(FatalConfigError):
        settings.require_live_credentials()


def test_paper_mode_needs_no_credentials() -> None:
    settings = load_settings(_env_file=None)
    assert settings.is_paper_mode
    settings.require_live_credentials()
