"""ORM models for the field service kernel."""

from fieldservice_kernel.models.audit_log import AuditLogEntry
from fieldservice_kernel.models.automation import AutomationDefinition
from fieldservice_kernel.models.estimate import Estimate, EstimateLineItem
from fieldservice_kernel.models.invoice import Invoice, InvoiceLineItem, Payment
from fieldservice_kernel.models.job import Job, Visit
from fieldservice_kernel.models.tenant import Tenant

__all__ = [
    "AuditLogEntry",
    "AutomationDefinition",
    "Estimate",
    "EstimateLineItem",
    "Invoice",
    "InvoiceLineItem",
    "Job",
    "Payment",
    "Tenant",
    "Visit",
]
