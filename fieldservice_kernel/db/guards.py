"""
ORM-Level Storage Guards (Layer 1 of 2).

===============================================================================
WHY THIS EXISTS
===============================================================================

Services validate every transition and edit before touching a row. These
listeners re-check the same rules at flush time so that a service bug, a
script or a test fixture cannot write a state the workflows forbid:

  Layer 1: THIS FILE (SQLAlchemy mapper events)
    - Fires before the SQL reaches the database, on every dialect

  Layer 2: db/policies.py (PostgreSQL triggers)
    - Fires in the database, catching raw SQL and bulk statements

Both layers read the transition tables from domain/workflow.py. Neither
hand-codes an edge.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity               | Rule
---------------------|--------------------------------------------------------
Job/Visit/Estimate/  | Inserted in the initial status; status changes only
Invoice              | along a storage edge; storage-enforced guards hold
Job                  | Deleted only in draft
Estimate             | Sent: only internal_notes and status change.
                     | Terminal: nothing changes
Invoice              | Sent/partial/overdue: only status, paid_cents, paid_at.
                     | Paid/void: nothing changes
Line items           | Written only while the parent is draft; total matches
                     | round(quantity x unit price)
Payment              | Never updated; deleted only while invoice non-terminal
AuditLogEntry        | Never updated or deleted
AutomationDefinition | Config parses as the variant for its type

updated_at / updated_by_id are metadata and may always change.

===============================================================================
USAGE
===============================================================================

Registered by ``create_session_factory``. To disable (TESTS ONLY):

    unregister_storage_guards()
    ...
    register_storage_guards()
"""

from sqlalchemy import event, inspect, select
from sqlalchemy.orm.attributes import get_history

from fieldservice_kernel.domain.line_items import line_item_total
from fieldservice_kernel.domain.types import (
    EstimateStatus,
    InvoiceStatus,
    JobStatus,
)
from fieldservice_kernel.domain.workflow import TRANSITION_REGISTRY
from fieldservice_kernel.exceptions import (
    ImmutableEntityError,
    InvalidTransitionError,
    PreconditionFailedError,
    ValidationError,
)
from fieldservice_kernel.logging_config import get_logger

logger = get_logger("db.guards")

METADATA_COLUMNS = frozenset({"updated_at", "updated_by_id"})

ESTIMATE_SENT_MUTABLE = frozenset({"status", "internal_notes"})
INVOICE_OPEN_MUTABLE = frozenset({"status", "paid_cents", "paid_at"})
INVOICE_OPEN_STATUSES = frozenset(
    {InvoiceStatus.SENT.value, InvoiceStatus.PARTIAL.value, InvoiceStatus.OVERDUE.value}
)


def _value(status) -> str:
    return getattr(status, "value", status)


def _blocked(entity_type: str, entity_id, operation: str, reason: str) -> None:
    logger.error(
        "storage_guard_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id) if entity_id is not None else None,
            "operation": operation,
            "reason": reason,
        },
    )


def _changed_columns(target) -> set[str]:
    state = inspect(target)
    changed: set[str] = set()
    for attr in state.mapper.column_attrs:
        if attr.key in METADATA_COLUMNS:
            continue
        if state.attrs[attr.key].history.has_changes():
            changed.add(attr.key)
    return changed


def _previous_status(target) -> str:
    hist = get_history(target, "status")
    if hist.deleted:
        return _value(hist.deleted[0])
    return _value(target.status)


# =============================================================================
# Workflow status edges
# =============================================================================


def _workflow_for(target):
    from fieldservice_kernel.models import Estimate, Invoice, Job, Visit

    mapping = {Job: "job", Visit: "visit", Estimate: "estimate", Invoice: "invoice"}
    return TRANSITION_REGISTRY.workflow(mapping[type(target)])


def _check_initial_status(mapper, connection, target):
    wf = _workflow_for(target)
    status = _value(target.status) if target.status is not None else wf.initial_state
    if status != wf.initial_state:
        _blocked(wf.name, target.id, "INSERT", "non_initial_status")
        raise InvalidTransitionError(
            wf.name,
            "(new)",
            status,
            (wf.initial_state,),
            message=(
                f"New {wf.name} must start in '{wf.initial_state}', "
                f"not '{status}'"
            ),
        )


def _check_status_transition(mapper, connection, target):
    hist = get_history(target, "status")
    if not (hist.deleted and hist.added):
        return
    old, new = _value(hist.deleted[0]), _value(hist.added[0])
    if old == new:
        return
    wf = _workflow_for(target)
    state = {column: getattr(target, column) for column in wf.guard_columns}
    try:
        TRANSITION_REGISTRY.check_storage_transition(
            wf.entity_type, old, new, state
        )
    except (InvalidTransitionError, PreconditionFailedError) as exc:
        _blocked(wf.name, target.id, "UPDATE", exc.code)
        raise


# =============================================================================
# Frozen fields
# =============================================================================


def _check_job_delete(mapper, connection, target):
    status = _previous_status(target)
    if status != JobStatus.DRAFT.value:
        _blocked("job", target.id, "DELETE", "not_draft")
        raise ImmutableEntityError(
            "job",
            target.id,
            f"Only draft jobs can be deleted (current status: {status})",
        )


def _check_estimate_fields(mapper, connection, target):
    previous = _previous_status(target)
    if previous == EstimateStatus.DRAFT.value:
        return
    changed = _changed_columns(target)
    if TRANSITION_REGISTRY.is_terminal("estimate", previous):
        frozen = changed
    else:
        frozen = changed - ESTIMATE_SENT_MUTABLE
    if frozen:
        _blocked("estimate", target.id, "UPDATE", "frozen_fields")
        raise ImmutableEntityError(
            "estimate",
            target.id,
            f"Cannot modify {', '.join(sorted(frozen))} on a {previous} estimate",
        )


def _check_invoice_fields(mapper, connection, target):
    previous = _previous_status(target)
    if previous == InvoiceStatus.DRAFT.value:
        return
    changed = _changed_columns(target)
    if previous in INVOICE_OPEN_STATUSES:
        frozen = changed - INVOICE_OPEN_MUTABLE
    else:
        frozen = changed
    if frozen:
        _blocked("invoice", target.id, "UPDATE", "frozen_fields")
        raise ImmutableEntityError(
            "invoice",
            target.id,
            f"Cannot modify {', '.join(sorted(frozen))} on a {previous} invoice",
        )


def _parent_status(connection, table, parent_id) -> str | None:
    status = connection.execute(
        select(table.c.status).where(table.c.id == str(parent_id))
    ).scalar()
    return None if status is None else _value(status)


def _make_line_item_guard(parent_model_name: str, parent_column: str, label: str, operation: str):
    def _guard(mapper, connection, target):
        from fieldservice_kernel import models

        parent = getattr(models, parent_model_name)
        parent_id = getattr(target, parent_column)
        if operation != "DELETE" and target.total_cents != line_item_total(
            target.quantity, target.unit_price_cents
        ):
            _blocked(f"{label}_line_item", target.id, operation, "total_mismatch")
            raise ValidationError(
                "Line item total must equal round(quantity x unit price)",
                field="total_cents",
            )
        status = _parent_status(connection, parent.__table__, parent_id)
        if status is not None and status != "draft":
            _blocked(f"{label}_line_item", target.id, operation, "parent_not_draft")
            raise ImmutableEntityError(
                label,
                parent_id,
                f"Line items can only change while the {label} is draft "
                f"(current status: {status})",
            )

    _guard.__name__ = f"_check_{label}_line_item_{operation.lower()}"
    return _guard


_estimate_line_insert = _make_line_item_guard("Estimate", "estimate_id", "estimate", "INSERT")
_estimate_line_update = _make_line_item_guard("Estimate", "estimate_id", "estimate", "UPDATE")
_estimate_line_delete = _make_line_item_guard("Estimate", "estimate_id", "estimate", "DELETE")
_invoice_line_insert = _make_line_item_guard("Invoice", "invoice_id", "invoice", "INSERT")
_invoice_line_update = _make_line_item_guard("Invoice", "invoice_id", "invoice", "UPDATE")
_invoice_line_delete = _make_line_item_guard("Invoice", "invoice_id", "invoice", "DELETE")


# =============================================================================
# Append-only ledgers
# =============================================================================


def _check_payment_update(mapper, connection, target):
    if _changed_columns(target):
        _blocked("payment", target.id, "UPDATE", "append_only")
        raise ImmutableEntityError(
            "payment", target.id, "Payments are append-only and cannot be modified"
        )


def _check_payment_delete(mapper, connection, target):
    from fieldservice_kernel.models import Invoice

    status = _parent_status(connection, Invoice.__table__, target.invoice_id)
    if TRANSITION_REGISTRY.is_terminal("invoice", status):
        _blocked("payment", target.id, "DELETE", "invoice_terminal")
        raise ImmutableEntityError(
            "payment",
            target.id,
            f"Cannot delete a payment on a {status} invoice",
        )


def _check_audit_entry_update(mapper, connection, target):
    _blocked("audit_log_entry", target.id, "UPDATE", "append_only")
    raise ImmutableEntityError(
        "audit_log_entry", target.id, "Audit log entries cannot be modified"
    )


def _check_audit_entry_delete(mapper, connection, target):
    _blocked("audit_log_entry", target.id, "DELETE", "append_only")
    raise ImmutableEntityError(
        "audit_log_entry", target.id, "Audit log entries cannot be deleted"
    )


def _check_automation_config(mapper, connection, target):
    try:
        target.typed_config()
    except ValidationError:
        _blocked("automation", target.id, "WRITE", "invalid_config")
        raise


# =============================================================================
# Registration
# =============================================================================


def _listeners():
    from fieldservice_kernel.models import (
        AuditLogEntry,
        AutomationDefinition,
        Estimate,
        EstimateLineItem,
        Invoice,
        InvoiceLineItem,
        Job,
        Payment,
        Visit,
    )

    listeners = []
    for model in (Job, Visit, Estimate, Invoice):
        listeners.append((model, "before_insert", _check_initial_status))
        listeners.append((model, "before_update", _check_status_transition))
    listeners += [
        (Job, "before_delete", _check_job_delete),
        (Estimate, "before_update", _check_estimate_fields),
        (Invoice, "before_update", _check_invoice_fields),
        (EstimateLineItem, "before_insert", _estimate_line_insert),
        (EstimateLineItem, "before_update", _estimate_line_update),
        (EstimateLineItem, "before_delete", _estimate_line_delete),
        (InvoiceLineItem, "before_insert", _invoice_line_insert),
        (InvoiceLineItem, "before_update", _invoice_line_update),
        (InvoiceLineItem, "before_delete", _invoice_line_delete),
        (Payment, "before_update", _check_payment_update),
        (Payment, "before_delete", _check_payment_delete),
        (AuditLogEntry, "before_update", _check_audit_entry_update),
        (AuditLogEntry, "before_delete", _check_audit_entry_delete),
        (AutomationDefinition, "before_insert", _check_automation_config),
        (AutomationDefinition, "before_update", _check_automation_config),
    ]
    return listeners


def register_storage_guards() -> None:
    """Register all storage guard listeners (idempotent)."""
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)
    logger.debug("storage_guards_registered")


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_storage_guards() -> None:
    """Remove all storage guard listeners. FOR TESTING ONLY."""
    for target, name, fn in _listeners():
        _safe_remove_listener(target, name, fn)
