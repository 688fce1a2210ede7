"""
Workflow definitions and the transition registry
(``fieldservice_kernel.domain.workflow``).

Responsibility
--------------
One declarative table per entity type describing the legal status edges and
the guards attached to them. The same ``WORKFLOWS`` tuple feeds:

* ``TransitionRegistry`` -- the application-side check used by services;
* ``fieldservice_kernel.db.guards`` -- the ORM flush-time check;
* ``fieldservice_kernel.db.policies`` -- the PostgreSQL trigger DDL.

Nothing else encodes the tables, so the layers cannot drift apart.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects. ZERO I/O.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` is a member of ``states``.
* Terminal states have no outgoing public transitions.
* Reconciliation-only edges are never returned by ``allowed()``.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from fieldservice_kernel.domain.types import (
    EntityType,
    EstimateStatus,
    InvoiceStatus,
    JobStatus,
    VisitStatus,
)
from fieldservice_kernel.exceptions import (
    InvalidTransitionError,
    PreconditionFailedError,
)


@dataclass(frozen=True)
class Guard:
    """A condition that must hold before a transition fires.

    Contract: frozen, descriptive only. The registry evaluates the predicate
    registered under ``name``. ``description`` is the rejection message.
    ``storage_enforced`` guards are also checked at flush time and compiled
    into the PostgreSQL triggers.
    """

    name: str
    description: str
    storage_enforced: bool = True


@dataclass(frozen=True)
class Transition:
    """A legal status edge.

    ``reconciliation_only`` edges exist only so payment reconciliation can
    undo its own derived status. They are accepted by the storage layer and
    by ``require_transition(..., via_reconciliation=True)`` but are not part
    of the public ``allowed()`` set.
    """

    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    reconciliation_only: bool = False


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for one entity type."""

    entity_type: EntityType
    name: str
    description: str
    status_enum: type[Enum]
    table_name: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()
    # Columns a guard predicate reads; mirrored into trigger DDL.
    guard_columns: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(
                f"{self.name}: initial state {self.initial_state!r} not in states"
            )
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(
                    f"{self.name}: transition {t.from_state}->{t.to_state} "
                    "references an unknown state"
                )
            if t.from_state in self.terminal_states and not t.reconciliation_only:
                raise ValueError(
                    f"{self.name}: terminal state {t.from_state!r} has an "
                    "outgoing transition"
                )


# =============================================================================
# Guards
# =============================================================================

ASSIGNEE_PRESENT = Guard(
    name="assignee_present",
    description="Visit must have an assigned tech before transitioning to arrived",
)

PAYMENT_DERIVED = Guard(
    name="payment_derived",
    description=(
        "Invoice status 'partial' and 'paid' are derived from recorded "
        "payments; record a payment instead"
    ),
    storage_enforced=False,
)


def _assignee_present(state: Mapping[str, Any]) -> bool:
    return state.get("assigned_user_id") is not None


def _payment_derived(state: Mapping[str, Any]) -> bool:
    return bool(state.get("via_reconciliation"))


GUARD_PREDICATES: dict[str, Callable[[Mapping[str, Any]], bool]] = {
    ASSIGNEE_PRESENT.name: _assignee_present,
    PAYMENT_DERIVED.name: _payment_derived,
}


# =============================================================================
# Workflow tables
# =============================================================================

_J = JobStatus
_V = VisitStatus
_E = EstimateStatus
_I = InvoiceStatus


JOB_WORKFLOW = Workflow(
    entity_type=EntityType.JOB,
    name="job",
    description="Job lifecycle from draft through invoicing",
    status_enum=JobStatus,
    table_name="jobs",
    initial_state=_J.DRAFT.value,
    states=tuple(s.value for s in JobStatus),
    transitions=(
        Transition(_J.DRAFT.value, _J.QUOTED.value, "quote"),
        Transition(_J.DRAFT.value, _J.SCHEDULED.value, "schedule"),
        Transition(_J.QUOTED.value, _J.SCHEDULED.value, "schedule"),
        Transition(_J.QUOTED.value, _J.DRAFT.value, "revert_to_draft"),
        Transition(_J.SCHEDULED.value, _J.IN_PROGRESS.value, "start"),
        Transition(_J.SCHEDULED.value, _J.CANCELLED.value, "cancel"),
        Transition(_J.IN_PROGRESS.value, _J.COMPLETED.value, "complete"),
        Transition(_J.IN_PROGRESS.value, _J.CANCELLED.value, "cancel"),
        Transition(_J.COMPLETED.value, _J.INVOICED.value, "invoice"),
        Transition(_J.CANCELLED.value, _J.DRAFT.value, "reopen"),
    ),
    terminal_states=(_J.INVOICED.value,),
)

VISIT_WORKFLOW = Workflow(
    entity_type=EntityType.VISIT,
    name="visit",
    description="On-site visit lifecycle",
    status_enum=VisitStatus,
    table_name="visits",
    initial_state=_V.SCHEDULED.value,
    states=tuple(s.value for s in VisitStatus),
    transitions=(
        Transition(
            _V.SCHEDULED.value, _V.ARRIVED.value, "arrive", guard=ASSIGNEE_PRESENT
        ),
        Transition(_V.SCHEDULED.value, _V.CANCELLED.value, "cancel"),
        Transition(_V.ARRIVED.value, _V.IN_PROGRESS.value, "start"),
        Transition(_V.ARRIVED.value, _V.CANCELLED.value, "cancel"),
        Transition(_V.IN_PROGRESS.value, _V.COMPLETED.value, "complete"),
    ),
    terminal_states=(_V.COMPLETED.value, _V.CANCELLED.value),
    guard_columns=("assigned_user_id",),
)

ESTIMATE_WORKFLOW = Workflow(
    entity_type=EntityType.ESTIMATE,
    name="estimate",
    description="Estimate lifecycle from draft to a customer decision",
    status_enum=EstimateStatus,
    table_name="estimates",
    initial_state=_E.DRAFT.value,
    states=tuple(s.value for s in EstimateStatus),
    transitions=(
        Transition(_E.DRAFT.value, _E.SENT.value, "send"),
        Transition(_E.SENT.value, _E.APPROVED.value, "approve"),
        Transition(_E.SENT.value, _E.DECLINED.value, "decline"),
        Transition(_E.SENT.value, _E.EXPIRED.value, "expire"),
    ),
    terminal_states=(
        _E.APPROVED.value,
        _E.DECLINED.value,
        _E.EXPIRED.value,
    ),
)

INVOICE_WORKFLOW = Workflow(
    entity_type=EntityType.INVOICE,
    name="invoice",
    description="Invoice lifecycle; partial and paid are payment-derived",
    status_enum=InvoiceStatus,
    table_name="invoices",
    initial_state=_I.DRAFT.value,
    states=tuple(s.value for s in InvoiceStatus),
    transitions=(
        Transition(_I.DRAFT.value, _I.SENT.value, "send"),
        Transition(_I.DRAFT.value, _I.VOID.value, "void"),
        Transition(
            _I.SENT.value, _I.PARTIAL.value, "apply_payment", guard=PAYMENT_DERIVED
        ),
        Transition(
            _I.SENT.value, _I.PAID.value, "apply_payment", guard=PAYMENT_DERIVED
        ),
        Transition(_I.SENT.value, _I.OVERDUE.value, "mark_overdue"),
        Transition(_I.SENT.value, _I.VOID.value, "void"),
        Transition(
            _I.PARTIAL.value, _I.PAID.value, "apply_payment", guard=PAYMENT_DERIVED
        ),
        Transition(_I.PARTIAL.value, _I.OVERDUE.value, "mark_overdue"),
        Transition(_I.PARTIAL.value, _I.VOID.value, "void"),
        Transition(
            _I.OVERDUE.value, _I.PARTIAL.value, "apply_payment", guard=PAYMENT_DERIVED
        ),
        Transition(
            _I.OVERDUE.value, _I.PAID.value, "apply_payment", guard=PAYMENT_DERIVED
        ),
        Transition(_I.OVERDUE.value, _I.VOID.value, "void"),
        Transition(
            _I.PARTIAL.value,
            _I.SENT.value,
            "reverse_payment",
            reconciliation_only=True,
        ),
    ),
    terminal_states=(_I.PAID.value, _I.VOID.value),
)


WORKFLOWS: tuple[Workflow, ...] = (
    JOB_WORKFLOW,
    VISIT_WORKFLOW,
    ESTIMATE_WORKFLOW,
    INVOICE_WORKFLOW,
)


# =============================================================================
# Registry
# =============================================================================


def _value(status: Any) -> str:
    return status.value if isinstance(status, Enum) else str(status)


class TransitionRegistry:
    """
    O(1) lookups over the workflow tables.

    Contract:
        Built once from a tuple of ``Workflow`` definitions; never reloaded.
        Status arguments may be enum members or their string values.
        Returned status sets contain members of the workflow's status enum.
    """

    def __init__(self, workflows: tuple[Workflow, ...] = WORKFLOWS):
        self._workflows: dict[str, Workflow] = {}
        self._public: dict[str, dict[str, frozenset[Enum]]] = {}
        self._storage: dict[str, dict[str, frozenset[str]]] = {}
        self._edges: dict[tuple[str, str, str], Transition] = {}

        for wf in workflows:
            key = wf.entity_type.value
            self._workflows[key] = wf
            public: dict[str, set[Enum]] = {s: set() for s in wf.states}
            storage: dict[str, set[str]] = {s: set() for s in wf.states}
            for t in wf.transitions:
                storage[t.from_state].add(t.to_state)
                if not t.reconciliation_only:
                    public[t.from_state].add(wf.status_enum(t.to_state))
                self._edges[(key, t.from_state, t.to_state)] = t
            self._public[key] = {s: frozenset(v) for s, v in public.items()}
            self._storage[key] = {s: frozenset(v) for s, v in storage.items()}

    def workflow(self, entity_type: EntityType | str) -> Workflow:
        return self._workflows[_value(entity_type)]

    def allowed(
        self, entity_type: EntityType | str, from_status: Any
    ) -> frozenset[Enum]:
        """Legal next statuses. Terminal and unknown statuses map to an empty set."""
        return self._public[_value(entity_type)].get(_value(from_status), frozenset())

    def can_transition(
        self, entity_type: EntityType | str, from_status: Any, to_status: Any
    ) -> bool:
        return _value(to_status) in {
            s.value for s in self.allowed(entity_type, from_status)
        }

    def is_terminal(self, entity_type: EntityType | str, status: Any) -> bool:
        return _value(status) in self.workflow(entity_type).terminal_states

    def storage_edges(
        self, entity_type: EntityType | str
    ) -> dict[str, frozenset[str]]:
        """Edge map enforced at the storage layer, reconciliation edges included."""
        return dict(self._storage[_value(entity_type)])

    def require_transition(
        self,
        entity_type: EntityType | str,
        from_status: Any,
        to_status: Any,
        state: Mapping[str, Any] | None = None,
        *,
        via_reconciliation: bool = False,
    ) -> Transition:
        """
        Validate an edge and its guard.

        Raises:
            InvalidTransitionError: (from, to) is not an edge.
            PreconditionFailedError: the edge's guard rejected ``state``.
        """
        et = _value(entity_type)
        frm, to = _value(from_status), _value(to_status)
        transition = self._edges.get((et, frm, to))
        if transition is None or (
            transition.reconciliation_only and not via_reconciliation
        ):
            raise InvalidTransitionError(
                et,
                frm,
                to,
                frozenset(s.value for s in self.allowed(et, frm)),
            )
        self._check_guard(
            transition, {**(state or {}), "via_reconciliation": via_reconciliation}
        )
        return transition

    def check_storage_transition(
        self,
        entity_type: EntityType | str,
        from_status: Any,
        to_status: Any,
        state: Mapping[str, Any] | None = None,
    ) -> None:
        """Flush-time check: storage edges and storage-enforced guards only."""
        et = _value(entity_type)
        frm, to = _value(from_status), _value(to_status)
        if to not in self._storage[et].get(frm, frozenset()):
            raise InvalidTransitionError(et, frm, to, self._storage[et].get(frm, ()))
        transition = self._edges[(et, frm, to)]
        if transition.guard is not None and transition.guard.storage_enforced:
            self._check_guard(transition, state or {})

    @staticmethod
    def _check_guard(transition: Transition, state: Mapping[str, Any]) -> None:
        guard = transition.guard
        if guard is None:
            return
        if not GUARD_PREDICATES[guard.name](state):
            raise PreconditionFailedError(guard.description, guard=guard.name)


TRANSITION_REGISTRY = TransitionRegistry()
