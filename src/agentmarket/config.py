"""Runtime settings: defaults, then ``config.toml``, then ``AGENTMARKET_*`` env vars."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

DEFAULT_DATA_DIR = Path.home() / ".agentmarket"
ENV_PREFIX = "AGENTMARKET_"


@dataclass(frozen=True)
class Settings:
    """Tunable runtime parameters."""

    data_dir: Path = DEFAULT_DATA_DIR
    max_concurrent: int = 10
    probe_timeout: float = 5.0  # seconds
    request_timeout: float = 30.0  # seconds
    signing_timeout: float = 60.0  # seconds; wallets may wait on human approval
    orchestration_timeout: float | None = None
    per_call_budget: Decimal | None = None
    approval_threshold: Decimal | None = None
    daily_limit: Decimal | None = None  # spend across orchestrations since local midnight
    monthly_limit: Decimal | None = None  # spend since the first of the month
    weight_health: float = 0.4
    weight_rating: float = 0.3
    weight_price: float = 0.2
    weight_response_time: float = 0.1
    log_level: str = "INFO"
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {self.max_concurrent}")
        for name in ("probe_timeout", "request_timeout", "signing_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)}")
        for name in ("daily_limit", "monthly_limit"):
            limit = getattr(self, name)
            if limit is not None and not (limit.is_finite() and limit >= 0):
                raise ValueError(f"{name} must be a finite amount >= 0, got {limit}")

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.toml"


_COERCE = {
    "data_dir": lambda v: Path(v).expanduser(),
    "max_concurrent": int,
    "probe_timeout": float,
    "request_timeout": float,
    "signing_timeout": float,
    "orchestration_timeout": lambda v: None if v in ("", None) else float(v),
    "per_call_budget": lambda v: None if v in ("", None) else _to_decimal(v),
    "approval_threshold": lambda v: None if v in ("", None) else _to_decimal(v),
    "daily_limit": lambda v: None if v in ("", None) else _to_decimal(v),
    "monthly_limit": lambda v: None if v in ("", None) else _to_decimal(v),
    "weight_health": float,
    "weight_rating": float,
    "weight_price": float,
    "weight_response_time": float,
    "log_level": str,
}


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value).lstrip("$"))
    except InvalidOperation as e:
        raise ValueError(f"not a decimal amount: {value!r}") from e


def _read_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"invalid config file {path}: {e}") from e
    # Allow either a flat file or an [agentmarket] table
    return data.get("agentmarket", data)


def load_settings(
    config_path: Path | None = None,
    env: dict[str, str] | None = None,
    **overrides: Any,
) -> Settings:
    """
    Build Settings from defaults, a TOML file and the environment.

    Args:
        config_path: Explicit config file (default: ``<data_dir>/config.toml``)
        env: Environment mapping (default: ``os.environ``)
        overrides: Final keyword overrides, e.g. from CLI options

    Returns:
        Settings instance
    """
    env = dict(os.environ) if env is None else env
    known = {f.name for f in fields(Settings)} - {"extra"}

    values: dict[str, Any] = {}
    data_dir = overrides.get("data_dir") or env.get(f"{ENV_PREFIX}DATA_DIR")
    if data_dir:
        values["data_dir"] = _COERCE["data_dir"](data_dir)

    path = config_path or Path(values.get("data_dir", DEFAULT_DATA_DIR)) / "config.toml"
    extra: dict[str, Any] = {}
    for key, value in _read_toml(path).items():
        if key in known:
            values[key] = _COERCE[key](value)
        else:
            extra[key] = value

    for key in known:
        raw = env.get(f"{ENV_PREFIX}{key.upper()}")
        if raw is not None:
            values[key] = _COERCE[key](raw)

    for key, value in overrides.items():
        if value is not None and key in known:
            values[key] = _COERCE[key](value) if not isinstance(value, Path | Decimal) else value

    return replace(Settings(), extra=extra, **values)
