"""Harness configuration.

Defaults match the values the harness was tuned with; every field can be
overridden from the environment (``SIMHARNESS_*``) or a YAML file.

Usage:
    from simharness.config import HarnessConfig

    config = HarnessConfig.from_env()
    config = HarnessConfig.from_yaml("config/simharness.yaml")
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from simharness.errors import ConfigurationError

ENV_PREFIX = "SIMHARNESS_"

DEFAULT_DB_PATH = "data/simulation/simulation.db"
DEFAULT_MAX_RUNS = 500


@dataclass(frozen=True)
class HarnessConfig:
    """Tunable limits and intervals for one harness instance."""

    db_path: str = DEFAULT_DB_PATH
    max_runs: int = DEFAULT_MAX_RUNS

    # Run monitor
    history_size: int = 50
    report_history_window: int = 10
    unattended: bool = False

    # Invariant registry; both sets are opt-in
    check_card_conservation: bool = False
    check_effects: bool = False

    # Violation registry
    sample_reports: int = 5

    # Background sync
    sync_interval_seconds: float = 30.0
    initial_sync_delay_seconds: float = 5.0
    min_occurrences_to_sync: int = 2
    immediate_report_threshold: int = 3
    sync_submission_delay_seconds: float = 0.1

    # Session orchestrator
    settle_delay_seconds: float = 1.0

    # Remote reporting sink
    remote_url: str | None = None
    remote_api_key: str | None = None
    remote_timeout_seconds: float = 10.0

    def validate(self) -> "HarnessConfig":
        """Raise ConfigurationError on impossible values, else return self."""
        positive_ints = (
            "max_runs",
            "history_size",
            "report_history_window",
            "sample_reports",
            "min_occurrences_to_sync",
            "immediate_report_threshold",
        )
        for name in positive_ints:
            value = getattr(self, name)
            if value < 1:
                raise ConfigurationError(
                    f"{name} must be >= 1",
                    context={name: value},
                )
        non_negative = (
            "initial_sync_delay_seconds",
            "sync_submission_delay_seconds",
            "settle_delay_seconds",
        )
        for name in non_negative:
            value = getattr(self, name)
            if value < 0:
                raise ConfigurationError(
                    f"{name} must be >= 0",
                    context={name: value},
                )
        if self.sync_interval_seconds <= 0:
            raise ConfigurationError(
                "sync_interval_seconds must be > 0",
                context={"sync_interval_seconds": self.sync_interval_seconds},
            )
        if self.remote_timeout_seconds <= 0:
            raise ConfigurationError(
                "remote_timeout_seconds must be > 0",
                context={"remote_timeout_seconds": self.remote_timeout_seconds},
            )
        if self.report_history_window > self.history_size:
            raise ConfigurationError(
                "report_history_window cannot exceed history_size",
                context={
                    "report_history_window": self.report_history_window,
                    "history_size": self.history_size,
                },
            )
        return self

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "HarnessConfig":
        """Build a config from ``SIMHARNESS_<FIELD>`` environment variables."""
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            overrides[f.name] = _coerce(f.name, f.type, raw)
        return cls(**overrides).validate()

    @classmethod
    def from_yaml(cls, path: str | Path) -> "HarnessConfig":
        """Build a config from a YAML mapping of field names to values.

        Unknown keys are rejected so typos do not silently fall back to
        defaults.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(
                "Config file not found", context={"path": str(path)}
            )
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                "Config file must contain a mapping", context={"path": str(path)}
            )
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ConfigurationError(
                f"Unknown config keys: {', '.join(unknown)}",
                context={"path": str(path)},
            )
        values = {
            key: _coerce(key, known[key].type, value) if isinstance(value, str) else value
            for key, value in data.items()
        }
        return cls(**values).validate()

    def with_overrides(self, **overrides: Any) -> "HarnessConfig":
        return replace(self, **overrides).validate()


def _coerce(name: str, type_name: Any, raw: str) -> Any:
    # Dataclass field types are strings under `from __future__ import annotations`.
    type_str = str(type_name)
    try:
        if type_str == "bool":
            return raw.strip().lower() in {"1", "true", "yes", "on"}
        if type_str == "int":
            return int(raw)
        if type_str == "float":
            return float(raw)
    except ValueError as exc:
        raise ConfigurationError(
            f"Invalid value for {name}: {raw!r}", context={"field": name}
        ) from exc
    return raw
