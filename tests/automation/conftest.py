"""Fixtures for dispatcher and automation admin tests."""

import pytest
from sqlalchemy import select

from fieldservice_automation.services import AutomationDispatcher, AutomationService
from fieldservice_config.schema import DispatcherSettings
from fieldservice_kernel.models import AuditLogEntry


@pytest.fixture
def dispatcher_settings() -> DispatcherSettings:
    return DispatcherSettings(poll_interval_seconds=0.05, backoff_seconds=3600)


@pytest.fixture
def dispatcher(session_factory, clock, dispatcher_settings) -> AutomationDispatcher:
    return AutomationDispatcher(session_factory, clock=clock, settings=dispatcher_settings)


@pytest.fixture
def make_automation(run, owner):
    """Create an automation through AutomationService; returns its id."""

    def _make(automation_type, config=None, ctx=None, enabled=True, name=None):
        summary = run(
            ctx or owner,
            lambda h: AutomationService(h).create_automation(
                name or f"{automation_type} automation",
                automation_type,
                config,
                enabled=enabled,
            ),
        )
        return summary.automation_id

    return _make


@pytest.fixture
def audit_entries(run, owner):
    """``audit_entries(entity_type, ctx=owner)`` -- entries oldest first."""

    def _entries(entity_type, ctx=None):
        return run(
            ctx or owner,
            lambda h: h.session.execute(
                select(AuditLogEntry)
                .where(AuditLogEntry.entity_type == entity_type)
                .order_by(AuditLogEntry.created_at, AuditLogEntry.automation_step)
            ).scalars().all(),
        )

    return _entries
