"""
YAML settings loader.

Parses a settings document into ``KernelSettings``. Unknown sections or
keys are rejected so a typo cannot silently fall back to a default.

Error handling:
    * Missing file, malformed YAML, wrong types and unknown keys all raise
      ``ConfigurationError`` naming the source.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from fieldservice_config.schema import (
    DatabaseSettings,
    DispatcherSettings,
    KernelSettings,
    PaymentSettings,
)
from fieldservice_kernel.exceptions import ConfigurationError

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

_SECTIONS: dict[str, type] = {
    "database": DatabaseSettings,
    "dispatcher": DispatcherSettings,
    "payments": PaymentSettings,
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Raises:
        ConfigurationError: unreadable file, invalid YAML or a non-mapping
            document.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigurationError(
            f"Cannot read settings file: {exc}", source=str(path)
        ) from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(
            f"Invalid YAML in settings file: {exc}", source=str(path)
        ) from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigurationError(
            "Settings file must contain a mapping at the top level",
            source=str(path),
        )
    return dict(data)


def merge_settings(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Section-wise merge: override keys replace base keys one level deep."""
    merged: dict[str, Any] = {k: (dict(v) if isinstance(v, Mapping) else v) for k, v in base.items()}
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def _build_section(name: str, cls: type, data: Any, source: str | None) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Section '{name}' must be a mapping", source=source)
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in '{name}': {', '.join(sorted(unknown))}", source=source
        )
    values = dict(data)
    if "default_days_overdue" in values and isinstance(values["default_days_overdue"], list):
        values["default_days_overdue"] = tuple(values["default_days_overdue"])
    try:
        return cls(**values)
    except ConfigurationError as exc:
        raise ConfigurationError(str(exc), source=source) from exc


def parse_settings(data: Mapping[str, Any], source: str | None = None) -> KernelSettings:
    unknown = set(data) - set(_SECTIONS) - {"log_level"}
    if unknown:
        raise ConfigurationError(
            f"Unknown settings sections: {', '.join(sorted(unknown))}", source=source
        )
    sections = {
        name: _build_section(name, cls, data.get(name), source)
        for name, cls in _SECTIONS.items()
    }
    try:
        return KernelSettings(log_level=data.get("log_level", "INFO"), **sections)
    except ConfigurationError as exc:
        raise ConfigurationError(str(exc), source=source) from exc
