"""
Settings schema.

Frozen dataclasses built by the loader from YAML plus environment
overrides. Each validates itself in ``__post_init__`` so an invalid value
fails at load time, never at first use.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from fieldservice_kernel.domain.automation_config import (
    DEFAULT_DAYS_OVERDUE_STEPS,
    DEFAULT_HOURS_BEFORE,
    InvoiceFollowupConfig,
    VisitReminderConfig,
)
from fieldservice_kernel.exceptions import ConfigurationError, ValidationError

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def _require_positive(section: str, name: str, value: Any, allow_zero: bool = False) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{section}.{name} must be a number, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigurationError(f"{section}.{name} must be positive, got {value!r}")


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///fieldservice.db"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 5
    pool_timeout: int = 30
    pool_recycle: int = 1800

    def __post_init__(self) -> None:
        if not isinstance(self.url, str) or not self.url.strip():
            raise ConfigurationError("database.url must be a non-empty string")
        _require_positive("database", "pool_size", self.pool_size)
        _require_positive("database", "max_overflow", self.max_overflow, allow_zero=True)
        _require_positive("database", "pool_timeout", self.pool_timeout)
        _require_positive("database", "pool_recycle", self.pool_recycle)

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


@dataclass(frozen=True)
class DispatcherSettings:
    poll_interval_seconds: float = 30
    backoff_seconds: int = 3600
    default_hours_before: int = DEFAULT_HOURS_BEFORE
    default_days_overdue: tuple[int, ...] = DEFAULT_DAYS_OVERDUE_STEPS

    def __post_init__(self) -> None:
        _require_positive("dispatcher", "poll_interval_seconds", self.poll_interval_seconds)
        _require_positive("dispatcher", "backoff_seconds", self.backoff_seconds)
        if not isinstance(self.default_days_overdue, (list, tuple)):
            raise ConfigurationError("dispatcher.default_days_overdue must be a list")
        # Same rules as stored automation configs.
        try:
            VisitReminderConfig(hours_before=self.default_hours_before)
            followup = InvoiceFollowupConfig(
                days_overdue_steps=tuple(self.default_days_overdue)
            )
        except ValidationError as exc:
            raise ConfigurationError(f"dispatcher defaults: {exc}") from exc
        object.__setattr__(self, "default_days_overdue", followup.days_overdue_steps)

    @property
    def backoff(self) -> timedelta:
        return timedelta(seconds=self.backoff_seconds)

    def config_defaults(self) -> dict[str, Any]:
        """Fallbacks for automation configs that omit a field."""
        return {
            "hours_before": self.default_hours_before,
            "days_overdue_steps": self.default_days_overdue,
        }


@dataclass(frozen=True)
class PaymentSettings:
    duplicate_window_seconds: int = 60
    max_idempotency_key_length: int = 128

    def __post_init__(self) -> None:
        _require_positive("payments", "duplicate_window_seconds", self.duplicate_window_seconds)
        _require_positive(
            "payments", "max_idempotency_key_length", self.max_idempotency_key_length
        )
        if self.max_idempotency_key_length > 128:
            raise ConfigurationError(
                "payments.max_idempotency_key_length cannot exceed the column size (128)"
            )

    @property
    def duplicate_window(self) -> timedelta:
        return timedelta(seconds=self.duplicate_window_seconds)


@dataclass(frozen=True)
class KernelSettings:
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    payments: PaymentSettings = field(default_factory=PaymentSettings)
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        level = str(self.log_level).upper()
        if level not in _LOG_LEVELS:
            raise ConfigurationError(
                f"log_level must be one of {sorted(_LOG_LEVELS)}, got {self.log_level!r}"
            )
        object.__setattr__(self, "log_level", level)
