"""Automation handlers, one per AutomationType."""

from fieldservice_automation.handlers.base import (
    AutomationHandler,
    HandlerRegistry,
    default_handler_registry,
)
from fieldservice_automation.handlers.invoice_followup import InvoiceFollowupHandler
from fieldservice_automation.handlers.visit_reminder import VisitReminderHandler

__all__ = [
    "AutomationHandler",
    "HandlerRegistry",
    "InvoiceFollowupHandler",
    "VisitReminderHandler",
    "default_handler_registry",
]
