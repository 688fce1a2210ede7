"""
Shared enumerations for field-service records.

All enums are ``str, Enum`` so their values persist as plain strings and
compare equal to the stored text.
"""

from enum import Enum


class EntityType(str, Enum):
    """Record types that carry a workflow status."""

    JOB = "job"
    VISIT = "visit"
    ESTIMATE = "estimate"
    INVOICE = "invoice"


class JobStatus(str, Enum):
    DRAFT = "draft"
    QUOTED = "quoted"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    INVOICED = "invoiced"
    CANCELLED = "cancelled"


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class VisitStatus(str, Enum):
    SCHEDULED = "scheduled"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EstimateStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    APPROVED = "approved"
    DECLINED = "declined"
    EXPIRED = "expired"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    VOID = "void"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CHECK = "check"
    CARD = "card"
    TRANSFER = "transfer"
    OTHER = "other"


class AuditAction(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class AutomationType(str, Enum):
    VISIT_REMINDER = "visit_reminder"
    INVOICE_FOLLOWUP = "invoice_followup"


class AuditEntityType(str, Enum):
    """
    Audit ``entity_type`` values that are not workflow records.

    Automation side effects are recorded under their own entity types so the
    dedupe lookup never collides with ordinary record history.
    """

    PAYMENT = "payment"
    AUTOMATION = "automation"
    AUTOMATION_RUN = "automation_run"
    VISIT_REMINDER = "visit_reminder"
    INVOICE_FOLLOWUP = "invoice_followup"
