"""
PaymentReconciler -- payments in, invoice status and balance out.

Responsibility:
    Validate a proposed payment against the invoice, collapse retries that
    carry the same idempotency key, reject quick duplicate submissions, and
    derive the invoice's paid amount and status from the full payment set.

Architecture position:
    Kernel > Services. Pure rules live in domain/reconciliation.py; this
    service loads, locks and persists.

Invariants enforced:
    - The invoice row is locked (FOR UPDATE) before its balance is read, so
      concurrent payments against one invoice serialize.
    - ``paid_cents`` is always ``sum(payments)``, recomputed from source rows
      after every insert or delete. Deletion order never matters.
    - Status and amount are checked first, then a replayed idempotency key
      returns the original payment without the duplicate-window check or
      any write.
    - Audit: one entry per payment insert/delete; one invoice entry only
      when the status actually changed.

Failure modes:
    - InvalidTransitionError: invoice not payable (draft, paid, void).
    - ValidationError: bad amount, method or key; amount over the balance.
    - ConflictError: same amount and method within the duplicate window.
    - PermissionDeniedError: non-owner deleting a payment.
    - ImmutableEntityError: deleting a payment on a paid or void invoice.
"""

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import func, select

from fieldservice_kernel.domain.dtos import PaymentResult
from fieldservice_kernel.domain.reconciliation import (
    PAYABLE_STATUSES,
    TERMINAL_INVOICE_STATUSES,
    derive_status,
    validate_payment_amount,
)
from fieldservice_kernel.domain.tenancy import Role
from fieldservice_kernel.domain.types import (
    AuditAction,
    AuditEntityType,
    EntityType,
    InvoiceStatus,
    PaymentMethod,
)
from fieldservice_kernel.domain.workflow import TRANSITION_REGISTRY
from fieldservice_kernel.exceptions import (
    ConflictError,
    ImmutableEntityError,
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from fieldservice_kernel.logging_config import get_logger
from fieldservice_kernel.models import Invoice, Payment
from fieldservice_kernel.services.base import BaseService

if TYPE_CHECKING:
    from fieldservice_kernel.services.transactional_unit import UnitHandle

logger = get_logger("services.payments")

DEFAULT_DUPLICATE_WINDOW = timedelta(seconds=60)
DEFAULT_MAX_IDEMPOTENCY_KEY_LENGTH = 128


class PaymentReconciler(BaseService):
    """
    Records and deletes payments within one unit of work.

    Settings are plain values so the kernel does not depend on the config
    package; the caller passes ``PaymentSettings`` fields in.
    """

    def __init__(
        self,
        handle: "UnitHandle",
        duplicate_window: timedelta = DEFAULT_DUPLICATE_WINDOW,
        max_idempotency_key_length: int = DEFAULT_MAX_IDEMPOTENCY_KEY_LENGTH,
    ):
        super().__init__(handle)
        self._duplicate_window = duplicate_window
        self._max_key_length = max_idempotency_key_length

    # -------------------------------------------------------------------------
    # Record
    # -------------------------------------------------------------------------

    def record_payment(
        self,
        invoice_id: UUID,
        amount_cents: int,
        method: PaymentMethod | str,
        idempotency_key: str | None = None,
        received_at: datetime | None = None,
        notes: str | None = None,
    ) -> PaymentResult:
        method = self._coerce_method(method)
        key = self._normalize_key(idempotency_key)

        invoice = self.handle.get_for_update(Invoice, invoice_id, label="invoice")

        if invoice.status not in PAYABLE_STATUSES:
            raise InvalidTransitionError(
                EntityType.INVOICE.value,
                invoice.status.value,
                InvoiceStatus.PAID.value,
                message=(
                    f"Cannot record payment on invoice with status "
                    f"'{invoice.status.value}'"
                ),
            )

        paid_before = self._sum_payments(invoice.id)
        validate_payment_amount(amount_cents, invoice.total_cents, paid_before)

        if key is not None:
            prior = self._find_by_key(invoice.id, key)
            if prior is not None:
                logger.info(
                    "payment_idempotent_replay",
                    extra={
                        "payment_id": str(prior.id),
                        "invoice_id": str(invoice.id),
                        "idempotency_key": key,
                    },
                )
                return self._result(prior.id, False, invoice)

        now = self.handle.now()
        duplicate_id = self._find_recent_duplicate(invoice.id, amount_cents, method, now)
        if duplicate_id is not None:
            logger.warning(
                "payment_duplicate_rejected",
                extra={
                    "invoice_id": str(invoice.id),
                    "existing_payment_id": str(duplicate_id),
                    "amount_cents": amount_cents,
                    "method": method.value,
                },
            )
            raise ConflictError(
                "Duplicate payment detected. A payment with the same amount and "
                f"method was recorded within the last "
                f"{int(self._duplicate_window.total_seconds())} seconds.",
                existing_id=duplicate_id,
            )

        payment = self.handle.stamp_new(
            Payment(
                invoice_id=invoice.id,
                amount_cents=amount_cents,
                method=method,
                received_at=received_at or now,
                notes=notes,
                idempotency_key=key,
            )
        )
        self.session.flush()

        old_status, old_paid = self._reconcile(invoice)

        self.handle.ledger.record(
            AuditEntityType.PAYMENT.value,
            payment.id,
            AuditAction.INSERT,
            new_value={
                "invoice_id": invoice.id,
                "amount_cents": payment.amount_cents,
                "method": payment.method,
                "received_at": payment.received_at,
                "idempotency_key": key,
            },
        )
        self._audit_invoice_change(invoice, old_status, old_paid)

        logger.info(
            "payment_recorded",
            extra={
                "payment_id": str(payment.id),
                "invoice_id": str(invoice.id),
                "amount_cents": amount_cents,
                "method": method.value,
                "invoice_status": invoice.status.value,
                "paid_cents": invoice.paid_cents,
            },
        )
        return self._result(payment.id, True, invoice)

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete_payment(self, payment_id: UUID) -> PaymentResult:
        """
        Remove a payment and recompute the invoice from what remains.

        The invoice is locked before the payment so lock order matches
        ``record_payment``.
        """
        if self.context.role is not Role.OWNER:
            raise PermissionDeniedError(self.context.role.value, "delete payments")

        invoice_id = self.handle.get(Payment, payment_id, label="payment").invoice_id
        invoice = self.handle.get_for_update(Invoice, invoice_id, label="invoice")
        payment = self.handle.get_for_update(Payment, payment_id, label="payment")

        if invoice.status in TERMINAL_INVOICE_STATUSES:
            raise ImmutableEntityError(
                EntityType.INVOICE.value,
                invoice.id,
                f"Cannot delete a payment on a {invoice.status.value} invoice",
            )

        snapshot = {
            "invoice_id": invoice.id,
            "amount_cents": payment.amount_cents,
            "method": payment.method,
            "received_at": payment.received_at,
            "idempotency_key": payment.idempotency_key,
        }
        self.session.delete(payment)
        self.session.flush()

        old_status, old_paid = self._reconcile(invoice)

        self.handle.ledger.record(
            AuditEntityType.PAYMENT.value,
            payment_id,
            AuditAction.DELETE,
            old_value=snapshot,
        )
        self._audit_invoice_change(invoice, old_status, old_paid)

        logger.info(
            "payment_deleted",
            extra={
                "payment_id": str(payment_id),
                "invoice_id": str(invoice.id),
                "invoice_status": invoice.status.value,
                "paid_cents": invoice.paid_cents,
            },
        )
        return self._result(payment_id, False, invoice)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _reconcile(self, invoice: Invoice) -> tuple[InvoiceStatus, int]:
        """Recompute paid and status from the payment rows; return the old pair."""
        old_status, old_paid = invoice.status, invoice.paid_cents
        paid = self._sum_payments(invoice.id)
        new_status = derive_status(invoice.total_cents, paid, old_status)
        if new_status is not old_status:
            TRANSITION_REGISTRY.require_transition(
                EntityType.INVOICE,
                old_status,
                new_status,
                via_reconciliation=True,
            )

        invoice.paid_cents = paid
        invoice.status = new_status
        if new_status is InvoiceStatus.PAID:
            if old_status is not InvoiceStatus.PAID:
                invoice.paid_at = self.handle.now()
        elif invoice.paid_at is not None:
            invoice.paid_at = None
        self.handle.touch(invoice)
        self.session.flush()
        return old_status, old_paid

    def _audit_invoice_change(
        self, invoice: Invoice, old_status: InvoiceStatus, old_paid: int
    ) -> None:
        if invoice.status is old_status:
            return
        self.handle.ledger.record(
            EntityType.INVOICE.value,
            invoice.id,
            AuditAction.UPDATE,
            old_value={"status": old_status.value, "paid_cents": old_paid},
            new_value={"status": invoice.status.value, "paid_cents": invoice.paid_cents},
        )
        logger.info(
            "invoice_status_derived",
            extra={
                "invoice_id": str(invoice.id),
                "from_status": old_status.value,
                "to_status": invoice.status.value,
                "paid_cents": invoice.paid_cents,
            },
        )

    def _sum_payments(self, invoice_id: UUID) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(Payment.amount_cents), 0)).where(
                Payment.tenant_id == self.context.tenant_id,
                Payment.invoice_id == invoice_id,
            )
        ).scalar_one()
        return int(total)

    def _find_by_key(self, invoice_id: UUID, key: str) -> Payment | None:
        return self.session.execute(
            select(Payment).where(
                Payment.tenant_id == self.context.tenant_id,
                Payment.invoice_id == invoice_id,
                Payment.idempotency_key == key,
            )
        ).scalar_one_or_none()

    def _find_recent_duplicate(
        self,
        invoice_id: UUID,
        amount_cents: int,
        method: PaymentMethod,
        now: datetime,
    ) -> UUID | None:
        return self.session.execute(
            select(Payment.id)
            .where(
                Payment.tenant_id == self.context.tenant_id,
                Payment.invoice_id == invoice_id,
                Payment.amount_cents == amount_cents,
                Payment.method == method,
                Payment.created_at > now - self._duplicate_window,
            )
            .limit(1)
        ).scalar_one_or_none()

    @staticmethod
    def _coerce_method(method: Any) -> PaymentMethod:
        try:
            return PaymentMethod(getattr(method, "value", method))
        except ValueError as exc:
            allowed = ", ".join(m.value for m in PaymentMethod)
            raise ValidationError(
                f"Unknown payment method {method!r}. Allowed: {allowed}",
                field="method",
            ) from exc

    def _normalize_key(self, key: str | None) -> str | None:
        if key is None:
            return None
        if not isinstance(key, str) or not key.strip():
            raise ValidationError(
                "Idempotency key must be a non-empty string", field="idempotency_key"
            )
        key = key.strip()
        if len(key) > self._max_key_length:
            raise ValidationError(
                f"Idempotency key must be at most {self._max_key_length} characters",
                field="idempotency_key",
            )
        return key

    @staticmethod
    def _result(payment_id: UUID, created: bool, invoice: Invoice) -> PaymentResult:
        return PaymentResult(
            payment_id=payment_id,
            created=created,
            invoice_status=invoice.status,
            invoice_paid_cents=invoice.paid_cents,
            invoice_total_cents=invoice.total_cents,
        )
