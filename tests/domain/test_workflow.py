"""
Tests for the workflow tables and TransitionRegistry.

Covers:
- allowed(): exact public edge sets per entity type
- terminal statuses have no outgoing edges
- guards: visit arrival needs an assignee, invoice partial/paid are
  payment-derived
- reconciliation-only edge (partial -> sent) hidden from the public API
- storage edges include the reconciliation edge
- every (from, to) pair outside the public table is rejected
"""

import itertools

import pytest

from fieldservice_kernel.domain.types import (
    EntityType,
    EstimateStatus,
    InvoiceStatus,
    JobStatus,
    VisitStatus,
)
from fieldservice_kernel.domain.workflow import (
    ASSIGNEE_PRESENT,
    PAYMENT_DERIVED,
    TRANSITION_REGISTRY,
    WORKFLOWS,
    Transition,
    Workflow,
)
from fieldservice_kernel.exceptions import (
    InvalidTransitionError,
    PreconditionFailedError,
)


class TestAllowedTransitions:

    @pytest.mark.parametrize(
        "status, expected",
        [
            (JobStatus.DRAFT, {JobStatus.QUOTED, JobStatus.SCHEDULED}),
            (JobStatus.QUOTED, {JobStatus.SCHEDULED, JobStatus.DRAFT}),
            (JobStatus.SCHEDULED, {JobStatus.IN_PROGRESS, JobStatus.CANCELLED}),
            (JobStatus.IN_PROGRESS, {JobStatus.COMPLETED, JobStatus.CANCELLED}),
            (JobStatus.COMPLETED, {JobStatus.INVOICED}),
            (JobStatus.INVOICED, set()),
            (JobStatus.CANCELLED, {JobStatus.DRAFT}),
        ],
    )
    def test_job_edges(self, status, expected):
        assert TRANSITION_REGISTRY.allowed(EntityType.JOB, status) == expected

    @pytest.mark.parametrize(
        "status, expected",
        [
            (VisitStatus.SCHEDULED, {VisitStatus.ARRIVED, VisitStatus.CANCELLED}),
            (VisitStatus.ARRIVED, {VisitStatus.IN_PROGRESS, VisitStatus.CANCELLED}),
            (VisitStatus.IN_PROGRESS, {VisitStatus.COMPLETED}),
            (VisitStatus.COMPLETED, set()),
            (VisitStatus.CANCELLED, set()),
        ],
    )
    def test_visit_edges(self, status, expected):
        assert TRANSITION_REGISTRY.allowed("visit", status) == expected

    def test_estimate_edges(self):
        assert TRANSITION_REGISTRY.allowed("estimate", "draft") == {EstimateStatus.SENT}
        assert TRANSITION_REGISTRY.allowed("estimate", "sent") == {
            EstimateStatus.APPROVED,
            EstimateStatus.DECLINED,
            EstimateStatus.EXPIRED,
        }
        for terminal in ("approved", "declined", "expired"):
            assert TRANSITION_REGISTRY.allowed("estimate", terminal) == frozenset()

    def test_invoice_edges_exclude_reconciliation_edge(self):
        assert TRANSITION_REGISTRY.allowed("invoice", "partial") == {
            InvoiceStatus.PAID,
            InvoiceStatus.OVERDUE,
            InvoiceStatus.VOID,
        }
        assert TRANSITION_REGISTRY.allowed("invoice", "draft") == {
            InvoiceStatus.SENT,
            InvoiceStatus.VOID,
        }

    def test_unknown_status_has_no_edges(self):
        assert TRANSITION_REGISTRY.allowed("job", "archived") == frozenset()

    def test_terminal_states_have_no_public_edges(self):
        for wf in WORKFLOWS:
            for state in wf.terminal_states:
                assert TRANSITION_REGISTRY.allowed(wf.entity_type, state) == frozenset()
                assert TRANSITION_REGISTRY.is_terminal(wf.entity_type, state)


class TestRequireTransition:

    def test_illegal_edge_lists_allowed_statuses(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            TRANSITION_REGISTRY.require_transition("job", "draft", "completed")
        assert exc_info.value.allowed == ("quoted", "scheduled")
        assert exc_info.value.code == "INVALID_TRANSITION"

    def test_visit_arrival_requires_assignee(self):
        with pytest.raises(PreconditionFailedError) as exc_info:
            TRANSITION_REGISTRY.require_transition(
                "visit", "scheduled", "arrived", {"assigned_user_id": None}
            )
        assert exc_info.value.guard == ASSIGNEE_PRESENT.name
        assert str(exc_info.value) == (
            "Visit must have an assigned tech before transitioning to arrived"
        )

    def test_visit_arrival_with_assignee(self):
        transition = TRANSITION_REGISTRY.require_transition(
            "visit", "scheduled", "arrived", {"assigned_user_id": "tech-1"}
        )
        assert transition.action == "arrive"

    def test_manual_paid_is_rejected(self):
        with pytest.raises(PreconditionFailedError) as exc_info:
            TRANSITION_REGISTRY.require_transition("invoice", "sent", "paid")
        assert exc_info.value.guard == PAYMENT_DERIVED.name

    def test_reconciliation_may_set_paid(self):
        TRANSITION_REGISTRY.require_transition(
            "invoice", "sent", "paid", via_reconciliation=True
        )

    def test_partial_to_sent_only_via_reconciliation(self):
        with pytest.raises(InvalidTransitionError):
            TRANSITION_REGISTRY.require_transition("invoice", "partial", "sent")
        TRANSITION_REGISTRY.require_transition(
            "invoice", "partial", "sent", via_reconciliation=True
        )

    def test_can_transition_accepts_enum_or_string(self):
        assert TRANSITION_REGISTRY.can_transition(
            EntityType.ESTIMATE, EstimateStatus.SENT, "approved"
        )
        assert not TRANSITION_REGISTRY.can_transition("estimate", "approved", "sent")


class TestStorageEdges:

    def test_storage_edges_include_reconciliation_edge(self):
        edges = TRANSITION_REGISTRY.storage_edges("invoice")
        assert "sent" in edges["partial"]

    def test_storage_check_skips_non_storage_guards(self):
        # payment_derived is not storage-enforced; the reconciler writes it
        TRANSITION_REGISTRY.check_storage_transition("invoice", "sent", "paid")

    def test_storage_check_enforces_assignee(self):
        with pytest.raises(PreconditionFailedError):
            TRANSITION_REGISTRY.check_storage_transition(
                "visit", "scheduled", "arrived", {"assigned_user_id": None}
            )

    def test_storage_check_rejects_unknown_edge(self):
        with pytest.raises(InvalidTransitionError):
            TRANSITION_REGISTRY.check_storage_transition("invoice", "paid", "sent")


class TestWorkflowDefinition:

    def test_transition_to_unknown_state_rejected(self):
        with pytest.raises(ValueError, match="unknown state"):
            Workflow(
                entity_type=EntityType.JOB,
                name="broken",
                description="",
                status_enum=JobStatus,
                table_name="jobs",
                initial_state="draft",
                states=("draft",),
                transitions=(Transition("draft", "done", "finish"),),
            )

    def test_terminal_state_with_outgoing_edge_rejected(self):
        with pytest.raises(ValueError, match="terminal state"):
            Workflow(
                entity_type=EntityType.JOB,
                name="broken",
                description="",
                status_enum=JobStatus,
                table_name="jobs",
                initial_state="draft",
                states=("draft", "invoiced"),
                transitions=(Transition("invoiced", "draft", "reopen"),),
                terminal_states=("invoiced",),
            )


# Public edges written out independently of WORKFLOWS, so a table edit that
# adds or drops an edge shows up here.
PUBLIC_EDGES = {
    EntityType.JOB: {
        ("draft", "quoted"), ("draft", "scheduled"),
        ("quoted", "scheduled"), ("quoted", "draft"),
        ("scheduled", "in_progress"), ("scheduled", "cancelled"),
        ("in_progress", "completed"), ("in_progress", "cancelled"),
        ("completed", "invoiced"),
        ("cancelled", "draft"),
    },
    EntityType.VISIT: {
        ("scheduled", "arrived"), ("scheduled", "cancelled"),
        ("arrived", "in_progress"), ("arrived", "cancelled"),
        ("in_progress", "completed"),
    },
    EntityType.ESTIMATE: {
        ("draft", "sent"),
        ("sent", "approved"), ("sent", "declined"), ("sent", "expired"),
    },
    EntityType.INVOICE: {
        ("draft", "sent"), ("draft", "void"),
        ("sent", "partial"), ("sent", "paid"), ("sent", "overdue"), ("sent", "void"),
        ("partial", "paid"), ("partial", "overdue"), ("partial", "void"),
        ("overdue", "partial"), ("overdue", "paid"), ("overdue", "void"),
    },
}

ALL_PAIRS = [
    pytest.param(wf.entity_type, frm, to, id=f"{wf.name}:{frm}->{to}")
    for wf in WORKFLOWS
    for frm, to in itertools.product(wf.states, wf.states)
]


class TestEveryStatusPair:

    def test_every_workflow_is_listed(self):
        assert {wf.entity_type for wf in WORKFLOWS} == set(PUBLIC_EDGES)

    @pytest.mark.parametrize("entity_type, from_status, to_status", ALL_PAIRS)
    def test_pair(self, entity_type, from_status, to_status):
        is_edge = (from_status, to_status) in PUBLIC_EDGES[entity_type]
        assert TRANSITION_REGISTRY.can_transition(
            entity_type, from_status, to_status
        ) is is_edge
        if not is_edge:
            with pytest.raises(InvalidTransitionError) as exc_info:
                TRANSITION_REGISTRY.require_transition(
                    entity_type, from_status, to_status, {"assigned_user_id": "tech-1"}
                )
            assert exc_info.value.code == "INVALID_TRANSITION"
