"""
Pytest fixtures for the field service test suite.

Provides:
- An isolated, file-backed SQLite engine and session factory per test
- A DeterministicClock shared by every unit in a test
- Two seeded tenants with owner, admin and tech contexts
- Helpers to run code inside a TransactionalUnit
- Structured log capture

SQLite has no FOR UPDATE and no row-level security; the PostgreSQL policy
layer is covered by tests that compile its DDL.
"""

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from io import StringIO
from typing import Any
from uuid import UUID, uuid4

import pytest

from fieldservice_kernel.db.engine import (
    create_engine_from_url,
    create_session_factory,
    create_tables,
)
from fieldservice_kernel.domain.clock import DeterministicClock
from fieldservice_kernel.domain.tenancy import Role, TenantContext
from fieldservice_kernel.domain.types import EntityType
from fieldservice_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from fieldservice_kernel.models import Tenant
from fieldservice_kernel.services import (
    EstimateService,
    InvoiceService,
    JobService,
    TransactionalUnit,
    TransitionService,
)
from tests.factories import lines

T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)

PROVISIONING_ACTOR_ID = UUID("11111111-1111-1111-1111-111111111111")


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture fieldservice logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, ...):
            ...
            logs = captured_logs()
            assert any(r["message"] == "payment_recorded" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("fieldservice")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    engine = create_engine_from_url(f"sqlite:///{tmp_path / 'fieldservice.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(T0)


@pytest.fixture
def unit(session_factory, clock) -> TransactionalUnit:
    return TransactionalUnit(session_factory, clock)


def _seed_tenant(session_factory, name: str, slug: str) -> UUID:
    # Tenant is not tenant-scoped, so an unbound session may insert it.
    session = session_factory()
    try:
        tenant = Tenant(
            id=uuid4(),
            name=name,
            slug=slug,
            created_by_id=PROVISIONING_ACTOR_ID,
            created_at=T0,
            updated_at=T0,
        )
        session.add(tenant)
        session.commit()
        return tenant.id
    finally:
        session.close()


@pytest.fixture
def tenant_id(session_factory) -> UUID:
    return _seed_tenant(session_factory, "Acme Plumbing", "acme")


@pytest.fixture
def other_tenant_id(session_factory) -> UUID:
    return _seed_tenant(session_factory, "Bolt Electric", "bolt")


@pytest.fixture
def owner(tenant_id) -> TenantContext:
    return TenantContext(tenant_id=tenant_id, actor_id=uuid4(), role=Role.OWNER)


@pytest.fixture
def admin(tenant_id) -> TenantContext:
    return TenantContext(tenant_id=tenant_id, actor_id=uuid4(), role=Role.ADMIN)


@pytest.fixture
def tech(tenant_id) -> TenantContext:
    return TenantContext(tenant_id=tenant_id, actor_id=uuid4(), role=Role.TECH)


@pytest.fixture
def other_owner(other_tenant_id) -> TenantContext:
    return TenantContext(tenant_id=other_tenant_id, actor_id=uuid4(), role=Role.OWNER)


@pytest.fixture
def run(unit) -> Callable[..., Any]:
    """``run(ctx, fn)`` -- shorthand for ``unit.run``."""
    return unit.run


# =============================================================================
# Record builders
# =============================================================================


@pytest.fixture
def make_sent_invoice(run, owner, clock):
    """
    Create and send an invoice; returns its id.

    ``total_cents`` becomes a single line of quantity 1.
    """

    def _make(
        total_cents: int = 10_000,
        due_in: timedelta | None = timedelta(days=30),
        ctx: TenantContext | None = None,
    ) -> UUID:
        ctx = ctx or owner
        due_date = clock.now() + due_in if due_in is not None else None

        def _create(handle):
            created = InvoiceService(handle).create_invoice(
                client_id=uuid4(),
                line_items=lines(("Service call", 1, total_cents)),
                due_date=due_date,
            )
            TransitionService(handle).transition(
                EntityType.INVOICE, created.entity_id, "sent"
            )
            return created.entity_id

        return run(ctx, _create)

    return _make


@pytest.fixture
def make_job(run, owner):
    def _make(title: str = "Replace water heater", ctx: TenantContext | None = None) -> UUID:
        return run(
            ctx or owner,
            lambda h: JobService(h).create_job(client_id=uuid4(), title=title).entity_id,
        )

    return _make


@pytest.fixture
def make_visit(run, owner, make_job, clock):
    def _make(
        starts_in: timedelta = timedelta(hours=12),
        assigned_user_id: UUID | None = None,
        ctx: TenantContext | None = None,
    ) -> UUID:
        ctx = ctx or owner
        job_id = make_job(ctx=ctx)
        start = clock.now() + starts_in
        return run(
            ctx,
            lambda h: JobService(h)
            .schedule_visit(job_id, start, start + timedelta(hours=2), assigned_user_id)
            .entity_id,
        )

    return _make


@pytest.fixture
def make_approved_estimate(run, owner):
    def _make(items=None, ctx: TenantContext | None = None) -> UUID:
        items = items or lines(("Labor", "2.5", 8_000), ("Parts", 1, 12_345))

        def _create(handle):
            created = EstimateService(handle).create_estimate(
                client_id=uuid4(), line_items=items
            )
            transitions = TransitionService(handle)
            transitions.transition(EntityType.ESTIMATE, created.entity_id, "sent")
            transitions.transition(EntityType.ESTIMATE, created.entity_id, "approved")
            return created.entity_id

        return run(ctx or owner, _create)

    return _make
