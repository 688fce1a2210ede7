"""
fieldservice_config -- single public entrypoint for runtime settings.

Responsibility:
    ``get_active_settings()`` is the ONLY reader of settings files and
    environment variables. The kernel never imports this package: callers
    pass the relevant settings values into the kernel's constructors.

Sources, lowest precedence first:
    1. ``defaults.yaml`` shipped with the package
    2. the file named by ``config_path`` or ``FIELDSERVICE_CONFIG``
    3. ``DATABASE_URL`` (database.url) and ``WORKER_POLL_MS``
       (dispatcher.poll_interval_seconds, in milliseconds)

Failure modes:
    - ``ConfigurationError`` for unreadable files, invalid YAML, unknown
      keys and out-of-range values.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from fieldservice_config.loader import (
    DEFAULTS_PATH,
    load_yaml_file,
    merge_settings,
    parse_settings,
)
from fieldservice_config.schema import (
    DatabaseSettings,
    DispatcherSettings,
    KernelSettings,
    PaymentSettings,
)
from fieldservice_kernel.exceptions import ConfigurationError
from fieldservice_kernel.logging_config import get_logger

logger = get_logger("config")

CONFIG_PATH_ENV = "FIELDSERVICE_CONFIG"
DATABASE_URL_ENV = "DATABASE_URL"
WORKER_POLL_MS_ENV = "WORKER_POLL_MS"

__all__ = [
    "DatabaseSettings",
    "DispatcherSettings",
    "KernelSettings",
    "PaymentSettings",
    "get_active_settings",
]


def _env_overrides(environ: Mapping[str, str]) -> dict:
    overrides: dict = {}
    url = environ.get(DATABASE_URL_ENV)
    if url:
        overrides["database"] = {"url": url}
    poll_ms = environ.get(WORKER_POLL_MS_ENV)
    if poll_ms:
        try:
            seconds = int(poll_ms) / 1000
        except ValueError as exc:
            raise ConfigurationError(
                f"{WORKER_POLL_MS_ENV} must be an integer, got {poll_ms!r}",
                source=WORKER_POLL_MS_ENV,
            ) from exc
        overrides["dispatcher"] = {"poll_interval_seconds": seconds}
    return overrides


def get_active_settings(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> KernelSettings:
    """The ONLY public settings entrypoint.

    Args:
        config_path: settings file layered over the defaults. Falls back to
            ``$FIELDSERVICE_CONFIG``.
        environ: environment mapping; ``os.environ`` when omitted.
    """
    env = os.environ if environ is None else environ
    data = load_yaml_file(DEFAULTS_PATH)
    sources = [str(DEFAULTS_PATH)]

    path = config_path or env.get(CONFIG_PATH_ENV)
    if path:
        data = merge_settings(data, load_yaml_file(Path(path)))
        sources.append(str(path))

    overrides = _env_overrides(env)
    if overrides:
        data = merge_settings(data, overrides)
        sources.append("environment")

    settings = parse_settings(data, source=sources[-1])
    logger.info(
        "settings_loaded",
        extra={
            "sources": sources,
            "database_dialect": settings.database.url.split(":", 1)[0],
            "poll_interval_seconds": settings.dispatcher.poll_interval_seconds,
        },
    )
    return settings
