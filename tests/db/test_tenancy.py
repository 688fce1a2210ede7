"""
Tests for session-level tenant isolation.

An unbound session fails closed, the system scope reads across tenants but
cannot write, and a tenant-bound session neither sees nor writes another
tenant's rows.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select, update

from fieldservice_kernel.db.tenancy import (
    SYSTEM_SCOPE,
    bind_system_scope,
    bind_tenant_context,
    bound_scope,
)
from fieldservice_kernel.domain.types import JobStatus
from fieldservice_kernel.exceptions import NotFoundError, TenantIsolationError
from fieldservice_kernel.models import Job, Tenant


class TestUnboundSession:

    def test_tenant_rows_inaccessible(self, session_factory, make_job):
        make_job()
        with session_factory() as session:
            with pytest.raises(TenantIsolationError):
                session.execute(select(Job)).scalars().all()

    def test_tenant_table_readable(self, session_factory, tenant_id, other_tenant_id):
        with session_factory() as session:
            ids = set(session.execute(select(Tenant.id)).scalars())
        assert ids == {tenant_id, other_tenant_id}

    def test_blocked_read_logged(self, session_factory, captured_logs):
        with session_factory() as session:
            with pytest.raises(TenantIsolationError):
                session.execute(select(Job)).all()
        blocked = [r for r in captured_logs() if r["message"] == "tenant_isolation_blocked"]
        assert blocked[0]["reason"] == "no_scope_bound"


class TestSystemScope:

    def test_reads_every_tenant(self, session_factory, make_job, other_owner):
        make_job()
        make_job(ctx=other_owner)
        with session_factory() as session:
            bind_system_scope(session)
            assert bound_scope(session) is SYSTEM_SCOPE
            jobs = session.execute(select(Job)).scalars().all()
        assert len({job.tenant_id for job in jobs}) == 2

    def test_cannot_insert(self, session_factory, tenant_id, clock):
        with session_factory() as session:
            bind_system_scope(session)
            session.add(
                Job(
                    tenant_id=tenant_id,
                    client_id=uuid4(),
                    title="Injected",
                    status=JobStatus.DRAFT,
                    created_by_id=uuid4(),
                    created_at=clock.now(),
                    updated_at=clock.now(),
                )
            )
            with pytest.raises(TenantIsolationError, match="require a bound tenant"):
                session.flush()

    def test_cannot_bulk_update(self, session_factory, make_job):
        make_job()
        with session_factory() as session:
            bind_system_scope(session)
            with pytest.raises(TenantIsolationError, match="read-only"):
                session.execute(update(Job).values(title="Renamed"))


class TestTenantBoundSession:

    def test_reads_only_own_rows(self, run, owner, other_owner, make_job):
        own = make_job()
        make_job(ctx=other_owner)
        jobs = run(owner, lambda h: h.session.execute(select(Job)).scalars().all())
        assert [job.id for job in jobs] == [own]

    def test_other_tenant_row_not_found(self, run, owner, other_owner, make_job):
        job_id = make_job(ctx=other_owner)
        with pytest.raises(NotFoundError):
            run(owner, lambda h: h.get(Job, job_id))
        assert run(owner, lambda h: h.session.get(Job, job_id)) is None

    def test_cannot_insert_for_other_tenant(self, run, owner, other_tenant_id):
        def _insert(h):
            job = h.stamp_new(Job(client_id=uuid4(), title="Misfiled", status=JobStatus.DRAFT))
            job.tenant_id = other_tenant_id
            h.session.flush()

        with pytest.raises(TenantIsolationError, match="does not belong"):
            run(owner, _insert)

    def test_cannot_move_row_to_other_tenant(self, run, owner, other_tenant_id, make_job):
        job_id = make_job()

        def _move(h):
            h.get(Job, job_id).tenant_id = other_tenant_id
            h.session.flush()

        with pytest.raises(TenantIsolationError):
            run(owner, _move)

    def test_new_rows_default_to_bound_tenant(self, session_factory, owner, clock):
        with session_factory() as session:
            bind_tenant_context(session, owner)
            job = Job(
                client_id=uuid4(),
                title="Implicit tenant",
                status=JobStatus.DRAFT,
                created_by_id=owner.actor_id,
                created_at=clock.now(),
                updated_at=clock.now(),
            )
            session.add(job)
            session.flush()
            assert job.tenant_id == owner.tenant_id
            session.rollback()
