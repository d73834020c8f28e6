"""Tests for settings loading."""

from decimal import Decimal
from pathlib import Path

import pytest

from agentmarket.config import Settings, load_settings


def test_defaults(tmp_path: Path) -> None:
    settings = load_settings(env={}, data_dir=tmp_path)
    assert settings.data_dir == tmp_path
    assert settings.max_concurrent == 10
    assert settings.probe_timeout == 5.0
    assert settings.per_call_budget is None
    assert settings.config_path == tmp_path / "config.toml"


def test_toml_file(tmp_path: Path) -> None:
    (tmp_path / "config.toml").write_text(
        "[agentmarket]\n"
        "max_concurrent = 4\n"
        'per_call_budget = "$0.25"\n'
        "weight_price = 0.5\n"
        'wallet_label = "ops"\n'
    )
    settings = load_settings(env={}, data_dir=tmp_path)
    assert settings.max_concurrent == 4
    assert settings.per_call_budget == Decimal("0.25")
    assert settings.weight_price == 0.5
    assert settings.extra == {"wallet_label": "ops"}


def test_env_overrides_file(tmp_path: Path) -> None:
    (tmp_path / "config.toml").write_text("max_concurrent = 4\n")
    env = {"AGENTMARKET_MAX_CONCURRENT": "7", "AGENTMARKET_ORCHESTRATION_TIMEOUT": "30"}
    settings = load_settings(env=env, data_dir=tmp_path)
    assert settings.max_concurrent == 7
    assert settings.orchestration_timeout == 30.0


def test_explicit_overrides_win(tmp_path: Path) -> None:
    env = {"AGENTMARKET_LOG_LEVEL": "DEBUG", "AGENTMARKET_DATA_DIR": str(tmp_path / "other")}
    settings = load_settings(env=env, data_dir=tmp_path, log_level="WARNING")
    assert settings.log_level == "WARNING"
    assert settings.data_dir == tmp_path


def test_invalid_file(tmp_path: Path) -> None:
    (tmp_path / "config.toml").write_text("max_concurrent = \n")
    with pytest.raises(ValueError):
        load_settings(env={}, data_dir=tmp_path)


def test_validation() -> None:
    with pytest.raises(ValueError):
        Settings(max_concurrent=0)
    with pytest.raises(ValueError):
        Settings(request_timeout=0)


def test_spending_limits(tmp_path: Path) -> None:
    (tmp_path / "config.toml").write_text('daily_limit = "$5.00"\n')
    env = {"AGENTMARKET_MONTHLY_LIMIT": "50"}
    settings = load_settings(env=env, data_dir=tmp_path)
    assert settings.daily_limit == Decimal("5.00")
    assert settings.monthly_limit == Decimal("50")
    assert load_settings(env={}, data_dir=tmp_path / "empty").monthly_limit is None


@pytest.mark.parametrize("limit", ["-1", "NaN", "Infinity"])
def test_spending_limit_must_be_finite(limit: str) -> None:
    with pytest.raises(ValueError):
        Settings(daily_limit=Decimal(limit))
