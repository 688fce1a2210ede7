"""
Session-Level Tenant Isolation (Layer 1 of 2).

===============================================================================
WHY THIS EXISTS
===============================================================================

Every query in the services layer already filters on ``tenant_id``. These
listeners make a forgotten filter harmless:

  Layer 1: THIS FILE (SQLAlchemy session events)
    - do_orm_execute: adds ``tenant_id = :bound`` to every ORM statement
      touching a TenantScoped entity
    - before_flush: rejects inserts, updates and deletes of rows that do not
      belong to the bound tenant
    - after_begin: copies the identity into PostgreSQL session settings

  Layer 2: db/policies.py (PostgreSQL row-level security)
    - Filters on ``current_setting('app.current_tenant_id')`` in the database,
      independent of application code

===============================================================================
SCOPES
===============================================================================

A session is bound to exactly one of:

    TenantContext   -- reads and writes limited to that tenant
    SYSTEM_SCOPE    -- cross-tenant reads only (dispatcher discovery)
    nothing         -- tenant-owned entities are inaccessible

An unbound session fails closed: touching a TenantScoped entity raises
TenantIsolationError rather than silently returning all tenants.
"""

from itertools import chain

from sqlalchemy import event, text
from sqlalchemy.orm import ORMExecuteState, Session, sessionmaker, with_loader_criteria
from sqlalchemy.orm.attributes import get_history

from fieldservice_kernel.db.base import TenantScoped
from fieldservice_kernel.domain.tenancy import TenantContext
from fieldservice_kernel.exceptions import TenantIsolationError
from fieldservice_kernel.logging_config import get_logger

logger = get_logger("db.tenancy")

SCOPE_KEY = "fieldservice_scope"


class _SystemScope:
    """Read-only cross-tenant scope."""

    def __repr__(self) -> str:
        return "SYSTEM_SCOPE"


SYSTEM_SCOPE = _SystemScope()


def bind_tenant_context(session: Session, context: TenantContext) -> None:
    """Bind ``context`` to ``session``. Must happen before the first statement."""
    session.info[SCOPE_KEY] = context


def bind_system_scope(session: Session) -> None:
    session.info[SCOPE_KEY] = SYSTEM_SCOPE


def bound_scope(session: Session) -> TenantContext | _SystemScope | None:
    return session.info.get(SCOPE_KEY)


def _touches_tenant_data(state: ORMExecuteState) -> bool:
    return any(
        isinstance(m.class_, type) and issubclass(m.class_, TenantScoped)
        for m in state.all_mappers
    )


def _apply_tenant_criteria(state: ORMExecuteState) -> None:
    """Scope every ORM SELECT/UPDATE/DELETE to the bound tenant."""
    if not (state.is_select or state.is_update or state.is_delete):
        return
    if state.is_column_load or state.is_relationship_load:
        # Criteria from the originating statement propagate to these loads.
        return

    scope = bound_scope(state.session)
    if scope is SYSTEM_SCOPE:
        if not state.is_select and _touches_tenant_data(state):
            raise TenantIsolationError(
                "System scope is read-only for tenant-owned rows"
            )
        return
    if scope is None:
        if _touches_tenant_data(state):
            logger.error(
                "tenant_isolation_blocked",
                extra={"operation": "read", "reason": "no_scope_bound"},
            )
            raise TenantIsolationError(
                "No tenant bound to session; tenant-owned rows are inaccessible"
            )
        return

    tenant_id = scope.tenant_id
    state.statement = state.statement.options(
        with_loader_criteria(
            TenantScoped,
            lambda cls: cls.tenant_id == tenant_id,
            include_aliases=True,
        )
    )


def _check_tenant_writes(session: Session, flush_context, instances) -> None:
    """Reject flushes of rows outside the bound tenant."""
    scope = bound_scope(session)
    for obj in chain(session.new, session.dirty, session.deleted):
        if not isinstance(obj, TenantScoped):
            continue
        entity = type(obj).__name__
        if not isinstance(scope, TenantContext):
            logger.error(
                "tenant_isolation_blocked",
                extra={"operation": "write", "entity_type": entity, "scope": repr(scope)},
            )
            raise TenantIsolationError(
                "Writes to tenant-owned rows require a bound tenant",
                entity_type=entity,
            )
        if obj in session.new and obj.tenant_id is None:
            obj.tenant_id = scope.tenant_id
        if obj.tenant_id != scope.tenant_id or (
            obj in session.dirty and get_history(obj, "tenant_id").deleted
        ):
            logger.error(
                "tenant_isolation_blocked",
                extra={
                    "operation": "write",
                    "entity_type": entity,
                    "entity_id": str(obj.id) if obj.id else None,
                },
            )
            raise TenantIsolationError(
                f"{entity} does not belong to the bound tenant",
                entity_type=entity,
            )


_SET_CONTEXT_SQL = text(
    "SELECT set_config('app.current_tenant_id', :tenant_id, true), "
    "set_config('app.current_actor_id', :actor_id, true), "
    "set_config('app.current_role', :role, true), "
    "set_config('app.trace_id', :trace_id, true)"
)

_SET_SYSTEM_SQL = text("SELECT set_config('app.system_scope', 'on', true)")


def _set_storage_context(session: Session, transaction, connection) -> None:
    """Expose the bound identity to PostgreSQL RLS for this transaction."""
    if connection.dialect.name != "postgresql":
        return
    scope = bound_scope(session)
    if isinstance(scope, TenantContext):
        connection.execute(
            _SET_CONTEXT_SQL,
            {
                "tenant_id": str(scope.tenant_id),
                "actor_id": str(scope.actor_id),
                "role": scope.role.value,
                "trace_id": scope.trace_id,
            },
        )
    elif scope is SYSTEM_SCOPE:
        connection.execute(_SET_SYSTEM_SQL)


def install_tenant_isolation(factory: sessionmaker) -> None:
    """Attach the isolation listeners to sessions produced by ``factory``."""
    if event.contains(factory, "do_orm_execute", _apply_tenant_criteria):
        return
    event.listen(factory, "do_orm_execute", _apply_tenant_criteria)
    event.listen(factory, "before_flush", _check_tenant_writes)
    event.listen(factory, "after_begin", _set_storage_context)
