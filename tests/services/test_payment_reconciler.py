"""
Tests for PaymentReconciler.

Covers:
- exact remaining balance pays the invoice; one cent more is rejected with
  the remaining balance in the message
- idempotency keys: one stored row, replay returns the first id after the
  status and amount checks but before the duplicate window, keys are
  scoped per invoice
- duplicate-submission window (same amount and method within 60s)
- non-payable statuses rejected
- delete_payment(): owner only, recompute from remaining payments in any
  order, partial -> sent, paid_at cleared, terminal invoice rejected
- audit entries: payment insert/delete always, invoice update only on a
  status change
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from fieldservice_kernel.domain.types import InvoiceStatus, PaymentMethod
from fieldservice_kernel.exceptions import (
    ConflictError,
    ImmutableEntityError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from fieldservice_kernel.models import AuditLogEntry, Invoice, Payment
from fieldservice_kernel.selectors.invoice_selector import InvoiceSelector
from fieldservice_kernel.services import (
    InvoiceService,
    PaymentReconciler,
    TransitionService,
)
from tests.factories import lines


def _pay(run, ctx, invoice_id, amount, method="card", **kwargs):
    return run(
        ctx,
        lambda h: PaymentReconciler(h).record_payment(invoice_id, amount, method, **kwargs),
    )


def _delete(run, ctx, payment_id):
    return run(ctx, lambda h: PaymentReconciler(h).delete_payment(payment_id))


def _invoice(run, ctx, invoice_id) -> Invoice:
    return run(ctx, lambda h: h.get(Invoice, invoice_id))


def _payment_count(run, ctx, invoice_id) -> int:
    return run(
        ctx,
        lambda h: h.session.execute(
            select(func.count(Payment.id)).where(Payment.invoice_id == invoice_id)
        ).scalar_one(),
    )


def _audit(run, ctx, entity_type):
    return run(
        ctx,
        lambda h: h.session.execute(
            select(AuditLogEntry)
            .where(AuditLogEntry.entity_type == entity_type)
            .order_by(AuditLogEntry.created_at)
        ).scalars().all(),
    )


class TestRecordPayment:

    def test_exact_remaining_pays_invoice(self, run, owner, make_sent_invoice, clock):
        invoice_id = make_sent_invoice(10_000)
        _pay(run, owner, invoice_id, 4_000)
        clock.advance(seconds=1)
        result = _pay(run, owner, invoice_id, 6_000)

        assert result.created
        assert result.invoice_status is InvoiceStatus.PAID
        assert result.invoice_paid_cents == 10_000
        assert result.amount_due_cents == 0
        invoice = _invoice(run, owner, invoice_id)
        assert invoice.status is InvoiceStatus.PAID
        assert invoice.paid_at == clock.now()

    def test_one_cent_over_rejected_with_balance(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice(10_000)
        _pay(run, owner, invoice_id, 4_000)
        with pytest.raises(ValidationError) as exc_info:
            _pay(run, owner, invoice_id, 6_001, method="cash")
        assert "(6000)" in str(exc_info.value)
        assert _payment_count(run, owner, invoice_id) == 1

    def test_partial_payment(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice(10_000)
        result = _pay(run, owner, invoice_id, 2_500)
        assert result.invoice_status is InvoiceStatus.PARTIAL
        invoice = _invoice(run, owner, invoice_id)
        assert (invoice.paid_cents, invoice.paid_at) == (2_500, None)

    def test_overdue_invoice_accepts_payment(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice(10_000, due_in=timedelta(days=-3))
        run(owner, lambda h: TransitionService(h).transition("invoice", invoice_id, "overdue"))
        result = _pay(run, owner, invoice_id, 1_000)
        assert result.invoice_status is InvoiceStatus.PARTIAL

    def test_draft_invoice_rejected(self, run, owner):
        created = run(
            owner,
            lambda h: InvoiceService(h).create_invoice(uuid4(), lines(("Call", 1, 5_000))),
        )
        with pytest.raises(InvalidTransitionError, match="status 'draft'"):
            _pay(run, owner, created.entity_id, 1_000)

    def test_paid_invoice_rejected(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice(5_000)
        _pay(run, owner, invoice_id, 5_000)
        with pytest.raises(InvalidTransitionError, match="status 'paid'"):
            _pay(run, owner, invoice_id, 1, method="cash")

    def test_unknown_invoice(self, run, owner):
        with pytest.raises(NotFoundError):
            _pay(run, owner, uuid4(), 100)

    def test_other_tenant_invoice_not_found(self, run, owner, other_owner, make_sent_invoice):
        invoice_id = make_sent_invoice(ctx=other_owner)
        with pytest.raises(NotFoundError):
            _pay(run, owner, invoice_id, 100)

    def test_unknown_method(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice()
        with pytest.raises(ValidationError, match="Allowed: cash, check, card"):
            _pay(run, owner, invoice_id, 100, method="bitcoin")

    def test_received_at_and_notes_stored(self, run, owner, make_sent_invoice, clock):
        invoice_id = make_sent_invoice()
        received = clock.now() - timedelta(days=2)
        result = _pay(
            run, owner, invoice_id, 100, method=PaymentMethod.CHECK,
            received_at=received, notes="check #1042",
        )
        payment = run(owner, lambda h: h.get(Payment, result.payment_id))
        assert payment.received_at == received
        assert payment.notes == "check #1042"
        assert payment.created_at == clock.now()


class TestIdempotency:

    def test_same_key_stores_one_row(self, run, owner, make_sent_invoice, clock):
        invoice_id = make_sent_invoice(10_000)
        first = _pay(run, owner, invoice_id, 3_000, idempotency_key="req-1")
        clock.advance(seconds=5)
        second = _pay(run, owner, invoice_id, 3_000, idempotency_key="req-1")

        assert first.created and not second.created
        assert second.payment_id == first.payment_id
        assert _payment_count(run, owner, invoice_id) == 1
        assert _invoice(run, owner, invoice_id).paid_cents == 3_000

    def test_replay_on_paid_invoice_rejected(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice(10_000)
        _pay(run, owner, invoice_id, 10_000, idempotency_key="req-1")
        with pytest.raises(InvalidTransitionError, match="status 'paid'"):
            _pay(run, owner, invoice_id, 10_000, idempotency_key="req-1")
        assert _payment_count(run, owner, invoice_id) == 1

    def test_replay_over_remaining_balance_rejected(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice(10_000)
        _pay(run, owner, invoice_id, 6_000, idempotency_key="req-1")
        with pytest.raises(ValidationError, match="4000"):
            _pay(run, owner, invoice_id, 6_000, idempotency_key="req-1")
        assert _payment_count(run, owner, invoice_id) == 1

    def test_replay_skips_duplicate_window(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice(10_000)
        first = _pay(run, owner, invoice_id, 2_000, idempotency_key="req-1")
        replay = _pay(run, owner, invoice_id, 2_000, idempotency_key="req-1")
        assert not replay.created
        assert replay.payment_id == first.payment_id

    def test_key_is_trimmed(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice()
        first = _pay(run, owner, invoice_id, 100, idempotency_key=" req-1 ")
        replay = _pay(run, owner, invoice_id, 100, idempotency_key="req-1")
        assert replay.payment_id == first.payment_id

    def test_key_scoped_to_invoice(self, run, owner, make_sent_invoice):
        a = make_sent_invoice()
        b = make_sent_invoice()
        first = _pay(run, owner, a, 100, idempotency_key="req-1")
        second = _pay(run, owner, b, 100, idempotency_key="req-1")
        assert second.created
        assert second.payment_id != first.payment_id

    @pytest.mark.parametrize("key", ["", "   ", "k" * 129])
    def test_invalid_keys(self, run, owner, make_sent_invoice, key):
        invoice_id = make_sent_invoice()
        with pytest.raises(ValidationError) as exc_info:
            _pay(run, owner, invoice_id, 100, idempotency_key=key)
        assert exc_info.value.field == "idempotency_key"

    def test_replay_logged(self, run, owner, make_sent_invoice, captured_logs):
        invoice_id = make_sent_invoice()
        _pay(run, owner, invoice_id, 100, idempotency_key="req-1")
        _pay(run, owner, invoice_id, 100, idempotency_key="req-1")
        messages = [r["message"] for r in captured_logs()]
        assert messages.count("payment_recorded") == 1
        assert messages.count("payment_idempotent_replay") == 1


class TestDuplicateWindow:

    def test_same_amount_and_method_within_window(self, run, owner, make_sent_invoice, clock):
        invoice_id = make_sent_invoice(10_000)
        first = _pay(run, owner, invoice_id, 1_000)
        clock.advance(seconds=59)
        with pytest.raises(ConflictError) as exc_info:
            _pay(run, owner, invoice_id, 1_000)
        assert exc_info.value.existing_id == str(first.payment_id)
        assert "within the last 60 seconds" in str(exc_info.value)

    def test_after_window(self, run, owner, make_sent_invoice, clock):
        invoice_id = make_sent_invoice(10_000)
        _pay(run, owner, invoice_id, 1_000)
        clock.advance(seconds=60)
        assert _pay(run, owner, invoice_id, 1_000).created

    def test_different_method_not_duplicate(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice(10_000)
        _pay(run, owner, invoice_id, 1_000, method="card")
        assert _pay(run, owner, invoice_id, 1_000, method="cash").created

    def test_distinct_keys_still_checked(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice(10_000)
        _pay(run, owner, invoice_id, 1_000, idempotency_key="a")
        with pytest.raises(ConflictError):
            _pay(run, owner, invoice_id, 1_000, idempotency_key="b")

    def test_window_is_configurable(self, run, owner, make_sent_invoice, clock):
        invoice_id = make_sent_invoice(10_000)
        _pay(run, owner, invoice_id, 1_000)
        clock.advance(seconds=10)
        result = run(
            owner,
            lambda h: PaymentReconciler(h, duplicate_window=timedelta(seconds=5))
            .record_payment(invoice_id, 1_000, "card"),
        )
        assert result.created


class TestDeletePayment:

    @pytest.mark.parametrize("delete_first", [True, False])
    def test_recompute_from_remaining_in_any_order(
        self, run, owner, make_sent_invoice, clock, delete_first
    ):
        invoice_id = make_sent_invoice(10_000)
        a = _pay(run, owner, invoice_id, 3_000)
        clock.advance(seconds=1)
        b = _pay(run, owner, invoice_id, 6_000, method="cash")

        victim, remaining = (a, 6_000) if delete_first else (b, 3_000)
        result = _delete(run, owner, victim.payment_id)

        assert not result.created
        assert result.invoice_paid_cents == remaining
        assert result.invoice_status is InvoiceStatus.PARTIAL
        balance = run(owner, lambda h: InvoiceSelector(h.session).balance(invoice_id))
        assert balance.is_consistent
        assert balance.payment_count == 1
        assert balance.amount_due_cents == 10_000 - remaining

    def test_last_payment_deleted_returns_to_sent(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice(10_000)
        payment = _pay(run, owner, invoice_id, 2_000)
        result = _delete(run, owner, payment.payment_id)
        assert result.invoice_status is InvoiceStatus.SENT
        assert result.invoice_paid_cents == 0

    def test_emptied_overdue_invoice_returns_to_sent(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice(10_000, due_in=timedelta(days=-1))
        run(owner, lambda h: TransitionService(h).transition("invoice", invoice_id, "overdue"))
        payment = _pay(run, owner, invoice_id, 2_000)
        assert payment.invoice_status is InvoiceStatus.PARTIAL
        result = _delete(run, owner, payment.payment_id)
        # partial -> sent is the only way back; overdue is re-marked separately
        assert result.invoice_status is InvoiceStatus.SENT

    def test_paid_invoice_payment_cannot_be_deleted(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice(5_000)
        payment = _pay(run, owner, invoice_id, 5_000)
        with pytest.raises(ImmutableEntityError, match="paid invoice"):
            _delete(run, owner, payment.payment_id)
        assert _payment_count(run, owner, invoice_id) == 1

    @pytest.mark.parametrize("role_fixture", ["admin", "tech"])
    def test_only_owner_may_delete(self, request, run, owner, make_sent_invoice, role_fixture):
        ctx = request.getfixturevalue(role_fixture)
        invoice_id = make_sent_invoice()
        payment = _pay(run, owner, invoice_id, 100)
        with pytest.raises(PermissionDeniedError) as exc_info:
            _delete(run, ctx, payment.payment_id)
        assert exc_info.value.role == role_fixture

    def test_unknown_payment(self, run, owner):
        with pytest.raises(NotFoundError):
            _delete(run, owner, uuid4())


class TestPaymentAudit:

    def test_status_change_writes_invoice_entry(self, run, owner, make_sent_invoice, clock):
        invoice_id = make_sent_invoice(10_000)
        clock.advance(seconds=1)
        _pay(run, owner, invoice_id, 4_000)

        payments = _audit(run, owner, "payment")
        assert len(payments) == 1
        assert payments[0].new_value["amount_cents"] == 4_000
        assert payments[0].new_value["method"] == "card"

        invoice_updates = [
            e for e in _audit(run, owner, "invoice") if e.action.value == "update"
        ]
        # one from the send, one from the payment
        assert invoice_updates[-1].old_value == {"status": "sent", "paid_cents": 0}
        assert invoice_updates[-1].new_value == {"status": "partial", "paid_cents": 4_000}

    def test_no_invoice_entry_without_status_change(self, run, owner, make_sent_invoice, clock):
        invoice_id = make_sent_invoice(10_000)
        _pay(run, owner, invoice_id, 1_000)
        before = len(_audit(run, owner, "invoice"))
        clock.advance(seconds=1)
        _pay(run, owner, invoice_id, 2_000)
        assert len(_audit(run, owner, "invoice")) == before
        assert len(_audit(run, owner, "payment")) == 2

    def test_delete_writes_snapshot(self, run, owner, make_sent_invoice):
        invoice_id = make_sent_invoice(10_000)
        payment = _pay(run, owner, invoice_id, 1_000, idempotency_key="req-9")
        _delete(run, owner, payment.payment_id)
        deleted = [e for e in _audit(run, owner, "payment") if e.action.value == "delete"]
        assert len(deleted) == 1
        assert deleted[0].entity_id == payment.payment_id
        assert deleted[0].old_value["idempotency_key"] == "req-9"
        assert deleted[0].new_value is None
