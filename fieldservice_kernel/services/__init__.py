"""Kernel services. Every write runs inside a TransactionalUnit."""

from fieldservice_kernel.services.audit_ledger import AuditLedger
from fieldservice_kernel.services.estimate_service import EstimateService
from fieldservice_kernel.services.invoice_service import InvoiceService
from fieldservice_kernel.services.job_service import JobService
from fieldservice_kernel.services.payment_reconciler import PaymentReconciler
from fieldservice_kernel.services.transactional_unit import (
    TransactionalUnit,
    UnitHandle,
)
from fieldservice_kernel.services.transition_service import TransitionService

__all__ = [
    "AuditLedger",
    "EstimateService",
    "InvoiceService",
    "JobService",
    "PaymentReconciler",
    "TransactionalUnit",
    "TransitionService",
    "UnitHandle",
]
