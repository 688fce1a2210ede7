"""
Tests for TransitionService.

Covers:
- legal edges applied with their timestamps (visit arrived/completed,
  estimate sent, invoice sent)
- illegal edges and failed guards leave the record unchanged
- manual partial/paid rejected; reconciliation owns them
- audit entry with old and new status, trace id from the unit
- unknown entity types and statuses are validation errors
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from fieldservice_kernel.domain.types import EntityType, JobStatus, VisitStatus
from fieldservice_kernel.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from fieldservice_kernel.models import Estimate, Invoice, Job, Visit
from fieldservice_kernel.selectors.audit_selector import AuditSelector
from fieldservice_kernel.services import EstimateService, TransitionService
from tests.factories import lines


def _transition(run, ctx, entity_type, entity_id, to_status, **kwargs):
    return run(
        ctx,
        lambda h: TransitionService(h).transition(entity_type, entity_id, to_status, **kwargs),
    )


class TestJobTransitions:

    def test_full_lifecycle(self, run, owner, make_job):
        job_id = make_job()
        for status in ("scheduled", "in_progress", "completed", "invoiced"):
            _transition(run, owner, "job", job_id, status)
        job = run(owner, lambda h: h.get(Job, job_id))
        assert job.status is JobStatus.INVOICED

    def test_result_reports_edge(self, run, owner, make_job):
        job_id = make_job()
        result = _transition(run, owner, EntityType.JOB, job_id, JobStatus.QUOTED)
        assert (result.from_status, result.to_status) == ("draft", "quoted")
        assert result.entity_type is EntityType.JOB

    def test_illegal_edge_rejected(self, run, owner, make_job):
        job_id = make_job()
        with pytest.raises(InvalidTransitionError) as exc_info:
            _transition(run, owner, "job", job_id, "completed")
        assert exc_info.value.allowed == ("quoted", "scheduled")
        job = run(owner, lambda h: h.get(Job, job_id))
        assert job.status is JobStatus.DRAFT

    def test_invoiced_job_is_terminal(self, run, owner, make_job):
        job_id = make_job()
        for status in ("scheduled", "in_progress", "completed", "invoiced"):
            _transition(run, owner, "job", job_id, status)
        with pytest.raises(InvalidTransitionError):
            _transition(run, owner, "job", job_id, "cancelled")

    def test_other_tenant_job_not_found(self, run, owner, other_owner, make_job):
        job_id = make_job(ctx=other_owner)
        with pytest.raises(NotFoundError):
            _transition(run, owner, "job", job_id, "scheduled")


class TestVisitTransitions:

    def test_arrival_without_assignee_rejected(self, run, owner, make_visit):
        visit_id = make_visit()
        with pytest.raises(PreconditionFailedError) as exc_info:
            _transition(run, owner, "visit", visit_id, "arrived")
        assert exc_info.value.code == "PRECONDITION_FAILED"
        visit = run(owner, lambda h: h.get(Visit, visit_id))
        assert visit.status is VisitStatus.SCHEDULED
        assert visit.arrived_at is None

    def test_arrival_and_completion_stamp_times(self, run, owner, make_visit, clock):
        visit_id = make_visit(assigned_user_id=uuid4())
        _transition(run, owner, "visit", visit_id, "arrived")
        arrived = clock.now()
        clock.advance(hours=2)
        _transition(run, owner, "visit", visit_id, "in_progress")
        _transition(run, owner, "visit", visit_id, "completed", tech_notes="Replaced valve")

        visit = run(owner, lambda h: h.get(Visit, visit_id))
        assert visit.status is VisitStatus.COMPLETED
        assert visit.arrived_at == arrived
        assert visit.completed_at == clock.now()
        assert visit.tech_notes == "Replaced valve"

    def test_tech_notes_only_on_visits(self, run, owner, make_job):
        job_id = make_job()
        with pytest.raises(ValidationError, match="only be recorded on visits"):
            _transition(run, owner, "job", job_id, "scheduled", tech_notes="hi")


class TestDocumentTransitions:

    def test_estimate_send_stamps_sent_at(self, run, owner, clock):
        ref = run(
            owner,
            lambda h: EstimateService(h).create_estimate(uuid4(), lines(("Labor", 1, 100))),
        )
        clock.advance(minutes=5)
        _transition(run, owner, "estimate", ref.entity_id, "sent")
        estimate = run(owner, lambda h: h.get(Estimate, ref.entity_id))
        assert estimate.sent_at == clock.now()

    def test_manual_paid_rejected(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice()
        with pytest.raises(PreconditionFailedError, match="derived from recorded payments"):
            _transition(run, owner, "invoice", invoice_id, "paid")

    def test_sent_invoice_cannot_return_to_draft(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice()
        with pytest.raises(InvalidTransitionError):
            _transition(run, owner, "invoice", invoice_id, "draft")

    def test_invoice_can_go_overdue_then_void(self, run, owner, make_sent_invoice, clock):
        invoice_id = make_sent_invoice(due_in=timedelta(days=-1))
        _transition(run, owner, "invoice", invoice_id, "overdue")
        _transition(run, owner, "invoice", invoice_id, "void")
        invoice = run(owner, lambda h: h.get(Invoice, invoice_id))
        assert invoice.status.value == "void"


class TestValidationAndAudit:

    def test_unknown_entity_type(self, run, owner):
        with pytest.raises(ValidationError, match="Unknown entity type"):
            _transition(run, owner, "payment", uuid4(), "sent")

    def test_unknown_status(self, run, owner, make_job):
        job_id = make_job()
        with pytest.raises(ValidationError, match="Unknown job status"):
            _transition(run, owner, "job", job_id, "archived")

    def test_audit_entry_written(self, run, owner, make_job, clock):
        job_id = make_job()
        clock.advance(seconds=1)
        _transition(run, owner, "job", job_id, "quoted")
        timeline = run(owner, lambda h: AuditSelector(h.session).entity_timeline("job", job_id))

        assert [e.action.value for e in timeline] == ["insert", "update"]
        update = timeline[-1]
        assert update.old_value == {"status": "draft"}
        assert update.new_value == {"status": "quoted"}
        assert update.actor_id == owner.actor_id
        assert update.trace_id == owner.trace_id

    def test_transition_logged(self, run, owner, make_job, captured_logs):
        job_id = make_job()
        _transition(run, owner, "job", job_id, "scheduled")
        applied = [r for r in captured_logs() if r["message"] == "transition_applied"]
        assert applied[0]["to_status"] == "scheduled"
        assert applied[0]["entity_id"] == str(job_id)
