"""Read-only query selectors for reporting and UI collaborators."""

from fieldservice_kernel.selectors.audit_selector import (
    AuditSelector,
    AuditTimelineEntry,
    AutomationEventStats,
)
from fieldservice_kernel.selectors.invoice_selector import (
    InvoiceBalance,
    InvoiceSelector,
)

__all__ = [
    "AuditSelector",
    "AuditTimelineEntry",
    "AutomationEventStats",
    "InvoiceBalance",
    "InvoiceSelector",
]
