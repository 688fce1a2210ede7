"""
Module: fieldservice_kernel.db.policies
Responsibility: Generate and install the PostgreSQL half of the storage
    enforcement (Layer 2 of 2): row-level security on every tenant-owned
    table and triggers mirroring the ORM guards in db/guards.py.
Architecture position: Kernel > DB. Reads domain/workflow.py (transition
    tables) and db/guards.py (frozen-field sets); emits SQL only.

Invariants enforced (PostgreSQL only):
    - Tenant isolation: USING / WITH CHECK on
      ``tenant_id = current_setting('app.current_tenant_id', true)``.
      An unbound connection sees zero rows.
    - System scope (``app.system_scope = 'on'``) may SELECT across tenants.
    - Payments may only be deleted by the owner role.
    - Status edges and storage-enforced guards, compiled from WORKFLOWS.
    - Frozen fields on estimates and invoices, append-only audit entries and
      payments, draft-only job deletion.

Failure modes:
    - Trigger violations RAISE with SQLSTATE P0001 and a message prefixed by
      the matching exception code (INVALID_TRANSITION, PRECONDITION_FAILED,
      IMMUTABLE_ENTITY). SQLAlchemy surfaces them as DBAPIError subclasses.
"""

from sqlalchemy import text
from sqlalchemy.engine import Engine

from fieldservice_kernel.db.base import Base, TenantScoped
from fieldservice_kernel.db.guards import (
    ESTIMATE_SENT_MUTABLE,
    INVOICE_OPEN_MUTABLE,
    INVOICE_OPEN_STATUSES,
    METADATA_COLUMNS,
)
from fieldservice_kernel.domain.workflow import (
    TRANSITION_REGISTRY,
    WORKFLOWS,
    Workflow,
)
from fieldservice_kernel.logging_config import get_logger

logger = get_logger("db.policies")

# SQL form of each storage-enforced guard predicate, evaluated on NEW.
GUARD_SQL: dict[str, str] = {
    "assignee_present": "NEW.assigned_user_id IS NOT NULL",
}

TENANT_SETTING = "current_setting('app.current_tenant_id', true)"
ROLE_SETTING = "current_setting('app.current_role', true)"
SYSTEM_SETTING = "current_setting('app.system_scope', true)"


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _in_list(values) -> str:
    return ", ".join(_quote(v) for v in sorted(values))


def _raise(code: str, message_sql: str) -> str:
    return (
        f"RAISE EXCEPTION USING MESSAGE = {_quote(code + ': ')} || {message_sql}, "
        "ERRCODE = 'P0001';"
    )


def tenant_scoped_tables() -> list[str]:
    """Names of every table mapped on the TenantScoped mixin."""
    import fieldservice_kernel.models  # noqa: F401

    return sorted(
        mapper.local_table.name
        for mapper in Base.registry.mappers
        if issubclass(mapper.class_, TenantScoped)
    )


# =============================================================================
# Row-level security
# =============================================================================


def rls_statements() -> list[str]:
    statements: list[str] = []
    for table in tenant_scoped_tables():
        predicate = f"tenant_id = {TENANT_SETTING}"
        statements += [
            f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
            f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
            f"DROP POLICY IF EXISTS tenant_isolation_{table} ON {table}",
            (
                f"CREATE POLICY tenant_isolation_{table} ON {table} "
                f"USING ({predicate}) WITH CHECK ({predicate})"
            ),
            f"DROP POLICY IF EXISTS system_read_{table} ON {table}",
            (
                f"CREATE POLICY system_read_{table} ON {table} FOR SELECT "
                f"USING ({SYSTEM_SETTING} = 'on')"
            ),
        ]
    statements += [
        "DROP POLICY IF EXISTS payments_delete_owner ON payments",
        (
            "CREATE POLICY payments_delete_owner ON payments AS RESTRICTIVE "
            f"FOR DELETE USING ({ROLE_SETTING} = 'owner')"
        ),
    ]
    return statements


# =============================================================================
# Transition triggers
# =============================================================================


def transition_function_sql(workflow: Workflow) -> str:
    """PL/pgSQL function enforcing ``workflow``'s storage edges and guards."""
    edges = TRANSITION_REGISTRY.storage_edges(workflow.entity_type)
    clauses = [
        f"(OLD.status = {_quote(frm)} AND NEW.status IN ({_in_list(tos)}))"
        for frm, tos in sorted(edges.items())
        if tos
    ]
    edge_check = " OR ".join(clauses) if clauses else "FALSE"

    guard_checks: list[str] = []
    for t in workflow.transitions:
        if t.guard is None or not t.guard.storage_enforced:
            continue
        if t.guard.name not in GUARD_SQL:
            raise ValueError(f"No SQL form for storage guard {t.guard.name!r}")
        guard_checks.append(
            f"    IF OLD.status = {_quote(t.from_state)} AND "
            f"NEW.status = {_quote(t.to_state)} AND NOT "
            f"({GUARD_SQL[t.guard.name]}) THEN\n"
            f"        {_raise('PRECONDITION_FAILED', _quote(t.guard.description))}\n"
            "    END IF;"
        )

    initial = _quote(workflow.initial_state)
    return f"""
CREATE OR REPLACE FUNCTION fs_check_{workflow.name}_transition()
RETURNS trigger AS $$
BEGIN
    IF TG_OP = 'INSERT' THEN
        IF NEW.status <> {initial} THEN
            {_raise('INVALID_TRANSITION', f"'new {workflow.name} must start in ' || {initial}")}
        END IF;
        RETURN NEW;
    END IF;
    IF NEW.status IS NOT DISTINCT FROM OLD.status THEN
        RETURN NEW;
    END IF;
    IF NOT ({edge_check}) THEN
        {_raise('INVALID_TRANSITION', "OLD.status || ' -> ' || NEW.status")}
    END IF;
{chr(10).join(guard_checks)}
    RETURN NEW;
END;
$$ LANGUAGE plpgsql
""".strip()


def transition_trigger_statements(workflow: Workflow) -> list[str]:
    table = workflow.table_name
    return [
        transition_function_sql(workflow),
        f"DROP TRIGGER IF EXISTS trg_{table}_transition ON {table}",
        (
            f"CREATE TRIGGER trg_{table}_transition "
            f"BEFORE INSERT OR UPDATE ON {table} FOR EACH ROW "
            f"EXECUTE FUNCTION fs_check_{workflow.name}_transition()"
        ),
    ]


# =============================================================================
# Frozen-field and append-only triggers
# =============================================================================


def _changed_outside(table_name: str, mutable: frozenset[str]) -> str:
    table = Base.metadata.tables[table_name]
    checks = [
        f"NEW.{col.name} IS DISTINCT FROM OLD.{col.name}"
        for col in table.columns
        if col.name not in mutable and col.name not in METADATA_COLUMNS
    ]
    return " OR ".join(checks)


def frozen_field_statements() -> list[str]:
    import fieldservice_kernel.models  # noqa: F401

    estimate_terminal = TRANSITION_REGISTRY.workflow("estimate").terminal_states
    invoice_terminal = TRANSITION_REGISTRY.workflow("invoice").terminal_states
    return [
        f"""
CREATE OR REPLACE FUNCTION fs_check_estimate_frozen()
RETURNS trigger AS $$
BEGIN
    IF OLD.status IN ({_in_list(estimate_terminal)})
       AND ({_changed_outside('estimates', frozenset())}) THEN
        {_raise('IMMUTABLE_ENTITY', "'estimate is ' || OLD.status")}
    END IF;
    IF OLD.status = 'sent'
       AND ({_changed_outside('estimates', ESTIMATE_SENT_MUTABLE)}) THEN
        {_raise('IMMUTABLE_ENTITY', "'only internal notes may change on a sent estimate'")}
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql
""".strip(),
        "DROP TRIGGER IF EXISTS trg_estimates_frozen ON estimates",
        (
            "CREATE TRIGGER trg_estimates_frozen BEFORE UPDATE ON estimates "
            "FOR EACH ROW EXECUTE FUNCTION fs_check_estimate_frozen()"
        ),
        f"""
CREATE OR REPLACE FUNCTION fs_check_invoice_frozen()
RETURNS trigger AS $$
BEGIN
    IF OLD.status IN ({_in_list(invoice_terminal)})
       AND ({_changed_outside('invoices', frozenset())}) THEN
        {_raise('IMMUTABLE_ENTITY', "'invoice is ' || OLD.status")}
    END IF;
    IF OLD.status IN ({_in_list(INVOICE_OPEN_STATUSES)})
       AND ({_changed_outside('invoices', INVOICE_OPEN_MUTABLE)}) THEN
        {_raise('IMMUTABLE_ENTITY', "'invoice fields are frozen once sent'")}
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql
""".strip(),
        "DROP TRIGGER IF EXISTS trg_invoices_frozen ON invoices",
        (
            "CREATE TRIGGER trg_invoices_frozen BEFORE UPDATE ON invoices "
            "FOR EACH ROW EXECUTE FUNCTION fs_check_invoice_frozen()"
        ),
        """
CREATE OR REPLACE FUNCTION fs_block_audit_mutation()
RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION USING MESSAGE = 'IMMUTABLE_ENTITY: audit log entries are append-only',
        ERRCODE = 'P0001';
END;
$$ LANGUAGE plpgsql
""".strip(),
        "DROP TRIGGER IF EXISTS trg_audit_log_entries_immutable ON audit_log_entries",
        (
            "CREATE TRIGGER trg_audit_log_entries_immutable "
            "BEFORE UPDATE OR DELETE ON audit_log_entries "
            "FOR EACH ROW EXECUTE FUNCTION fs_block_audit_mutation()"
        ),
        f"""
CREATE OR REPLACE FUNCTION fs_check_payment_mutation()
RETURNS trigger AS $$
DECLARE
    invoice_status text;
BEGIN
    IF TG_OP = 'UPDATE' THEN
        {_raise('IMMUTABLE_ENTITY', "'payments are append-only'")}
    END IF;
    SELECT status INTO invoice_status FROM invoices WHERE id = OLD.invoice_id;
    IF invoice_status IN ({_in_list(invoice_terminal)}) THEN
        {_raise('IMMUTABLE_ENTITY', "'cannot delete a payment on a ' || invoice_status || ' invoice'")}
    END IF;
    RETURN OLD;
END;
$$ LANGUAGE plpgsql
""".strip(),
        "DROP TRIGGER IF EXISTS trg_payments_append_only ON payments",
        (
            "CREATE TRIGGER trg_payments_append_only BEFORE UPDATE OR DELETE "
            "ON payments FOR EACH ROW EXECUTE FUNCTION fs_check_payment_mutation()"
        ),
        f"""
CREATE OR REPLACE FUNCTION fs_check_job_delete()
RETURNS trigger AS $$
BEGIN
    IF OLD.status <> 'draft' THEN
        {_raise('IMMUTABLE_ENTITY', "'only draft jobs can be deleted (current status: ' || OLD.status || ')'")}
    END IF;
    RETURN OLD;
END;
$$ LANGUAGE plpgsql
""".strip(),
        "DROP TRIGGER IF EXISTS trg_jobs_delete ON jobs",
        (
            "CREATE TRIGGER trg_jobs_delete BEFORE DELETE ON jobs "
            "FOR EACH ROW EXECUTE FUNCTION fs_check_job_delete()"
        ),
    ]


# =============================================================================
# Install / uninstall
# =============================================================================


def storage_policy_statements() -> list[str]:
    """Every DDL statement, in install order."""
    statements: list[str] = []
    for workflow in WORKFLOWS:
        statements += transition_trigger_statements(workflow)
    statements += frozen_field_statements()
    statements += rls_statements()
    return statements


def install_storage_policies(engine: Engine) -> None:
    """Install triggers and RLS policies. No-op on non-PostgreSQL engines."""
    if engine.dialect.name != "postgresql":
        logger.info(
            "storage_policies_skipped", extra={"dialect": engine.dialect.name}
        )
        return
    statements = storage_policy_statements()
    with engine.begin() as conn:
        for sql in statements:
            conn.execute(text(sql))
    logger.info("storage_policies_installed", extra={"statements": len(statements)})


def uninstall_storage_policies(engine: Engine) -> None:
    """Drop everything ``install_storage_policies`` created."""
    if engine.dialect.name != "postgresql":
        return
    statements: list[str] = []
    for workflow in WORKFLOWS:
        statements += [
            f"DROP TRIGGER IF EXISTS trg_{workflow.table_name}_transition "
            f"ON {workflow.table_name}",
            f"DROP FUNCTION IF EXISTS fs_check_{workflow.name}_transition()",
        ]
    statements += [
        "DROP TRIGGER IF EXISTS trg_estimates_frozen ON estimates",
        "DROP TRIGGER IF EXISTS trg_invoices_frozen ON invoices",
        "DROP TRIGGER IF EXISTS trg_audit_log_entries_immutable ON audit_log_entries",
        "DROP TRIGGER IF EXISTS trg_payments_append_only ON payments",
        "DROP TRIGGER IF EXISTS trg_jobs_delete ON jobs",
        "DROP FUNCTION IF EXISTS fs_check_estimate_frozen()",
        "DROP FUNCTION IF EXISTS fs_check_invoice_frozen()",
        "DROP FUNCTION IF EXISTS fs_block_audit_mutation()",
        "DROP FUNCTION IF EXISTS fs_check_payment_mutation()",
        "DROP FUNCTION IF EXISTS fs_check_job_delete()",
        "DROP POLICY IF EXISTS payments_delete_owner ON payments",
    ]
    for table in tenant_scoped_tables():
        statements += [
            f"DROP POLICY IF EXISTS tenant_isolation_{table} ON {table}",
            f"DROP POLICY IF EXISTS system_read_{table} ON {table}",
            f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY",
            f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY",
        ]
    with engine.begin() as conn:
        for sql in statements:
            conn.execute(text(sql))
    logger.info("storage_policies_uninstalled")
