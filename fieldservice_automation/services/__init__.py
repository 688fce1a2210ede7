"""Automation services: the polling dispatcher and the admin service."""

from fieldservice_automation.services.automation_service import AutomationService
from fieldservice_automation.services.dispatcher import AutomationDispatcher

__all__ = ["AutomationDispatcher", "AutomationService"]
