"""
TransactionalUnit -- the only way the core mutates storage.

Responsibility:
    Open a session from an injected factory, bind the caller's TenantContext
    to it, run the caller's function against a ``UnitHandle`` and commit or
    roll back as one unit.

Architecture position:
    Kernel > Services. Constructed with a session factory (from
    ``db.engine.create_session_factory``), never with a global.

Invariants enforced:
    - All-or-nothing: any exception raised by ``fn`` rolls back everything
      ``fn`` wrote and is re-raised unchanged.
    - Identity binding: the tenant, actor, role and trace id are bound to the
      session before its first statement (db/tenancy.py), so the isolation
      listeners and PostgreSQL RLS see them.
    - Row locks: ``UnitHandle.get_for_update`` issues SELECT ... FOR UPDATE,
      held until the unit ends.

Failure modes:
    - NotFoundError from ``get`` / ``get_for_update`` when the row is absent
      or belongs to another tenant (indistinguishable by design).
"""

from collections.abc import Callable
from functools import cached_property
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from fieldservice_kernel.db.tenancy import bind_tenant_context
from fieldservice_kernel.domain.clock import Clock, SystemClock
from fieldservice_kernel.domain.tenancy import TenantContext
from fieldservice_kernel.exceptions import NotFoundError
from fieldservice_kernel.logging_config import LogContext, get_logger

logger = get_logger("services.unit")

T = TypeVar("T")
ModelT = TypeVar("ModelT")


class UnitHandle:
    """
    Everything a unit of work may touch.

    Services receive the handle, not the raw session factory, so they
    cannot open a second transaction behind the unit's back.
    """

    def __init__(self, session: Session, context: TenantContext, clock: Clock):
        self.session = session
        self.context = context
        self.clock = clock

    def now(self):
        return self.clock.now()

    def get(
        self,
        model: type[ModelT],
        entity_id: UUID,
        *,
        for_update: bool = False,
        label: str | None = None,
    ) -> ModelT:
        """Load a tenant-owned row by id or raise NotFoundError."""
        if not isinstance(entity_id, UUID):
            try:
                entity_id = UUID(str(entity_id))
            except ValueError as exc:
                raise NotFoundError(label or model.__tablename__, entity_id) from exc
        stmt = select(model).where(
            model.id == entity_id,
            model.tenant_id == self.context.tenant_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        row = self.session.execute(stmt).scalar_one_or_none()
        if row is None:
            raise NotFoundError(label or model.__tablename__, entity_id)
        return row

    def get_for_update(
        self, model: type[ModelT], entity_id: UUID, *, label: str | None = None
    ) -> ModelT:
        """Load and lock a row for the rest of the unit."""
        return self.get(model, entity_id, for_update=True, label=label)

    def stamp_new(self, row: Any) -> Any:
        """Fill tenant, creator and creation time on a new row and add it."""
        row.tenant_id = self.context.tenant_id
        row.created_by_id = self.context.actor_id
        row.created_at = self.now()
        row.updated_at = row.created_at
        self.session.add(row)
        return row

    def touch(self, row: Any) -> None:
        row.updated_by_id = self.context.actor_id

    @cached_property
    def ledger(self):
        from fieldservice_kernel.services.audit_ledger import AuditLedger

        return AuditLedger(self)


class TransactionalUnit:
    """
    Runs a function inside one atomic, tenant-bound transaction.

    Contract:
        ``run(context, fn)`` returns ``fn(handle)`` after commit, or re-raises
        whatever ``fn`` raised after rollback. Sessions are never shared
        between runs.
    """

    def __init__(self, session_factory: sessionmaker, clock: Clock | None = None):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    @property
    def clock(self) -> Clock:
        return self._clock

    def run(self, context: TenantContext, fn: Callable[[UnitHandle], T]) -> T:
        session = self._session_factory()
        bind_tenant_context(session, context)
        with LogContext.bind(**context.log_fields()):
            try:
                result = fn(UnitHandle(session, context, self._clock))
                session.commit()
            except Exception as exc:
                session.rollback()
                logger.warning(
                    "unit_rolled_back",
                    extra={
                        "error_type": type(exc).__name__,
                        "error_code": getattr(exc, "code", None),
                    },
                )
                raise
            finally:
                session.close()
            logger.debug("unit_committed")
        return result
