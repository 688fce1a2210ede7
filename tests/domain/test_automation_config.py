"""
Tests for typed automation configs.

Covers:
- parse_automation_config(): variant per type, defaults layering, unknown
  keys and types rejected, range checks
- config_for(): a variant for the wrong type is rejected
- TenantContext: system actor and manager roles
"""

from uuid import uuid4

import pytest

from fieldservice_kernel.domain.automation_config import (
    DEFAULT_DAYS_OVERDUE_STEPS,
    InvoiceFollowupConfig,
    VisitReminderConfig,
    config_for,
    parse_automation_config,
)
from fieldservice_kernel.domain.tenancy import SYSTEM_ACTOR_ID, Role, TenantContext
from fieldservice_kernel.domain.types import AutomationType
from fieldservice_kernel.exceptions import InvalidAutomationConfigError


class TestParseAutomationConfig:

    def test_visit_reminder_defaults(self):
        config = parse_automation_config("visit_reminder", {})
        assert config == VisitReminderConfig(hours_before=24)

    def test_invoice_followup_defaults(self):
        config = parse_automation_config(AutomationType.INVOICE_FOLLOWUP, None)
        assert config.days_overdue_steps == DEFAULT_DAYS_OVERDUE_STEPS

    def test_caller_defaults_fill_missing_keys(self):
        config = parse_automation_config(
            "visit_reminder", {}, {"hours_before": 4, "days_overdue_steps": (1,)}
        )
        assert config == VisitReminderConfig(hours_before=4)

    def test_stored_value_wins_over_defaults(self):
        config = parse_automation_config(
            "visit_reminder", {"hours_before": 48}, {"hours_before": 4}
        )
        assert config.hours_before == 48

    def test_steps_are_sorted_and_deduplicated(self):
        config = parse_automation_config(
            "invoice_followup", {"days_overdue_steps": [30, 7, 7, 14]}
        )
        assert config.days_overdue_steps == (7, 14, 30)
        assert config.to_json() == {"days_overdue_steps": [7, 14, 30]}

    def test_fields_of_other_variant_rejected(self):
        with pytest.raises(InvalidAutomationConfigError, match="unknown keys"):
            parse_automation_config("visit_reminder", {"days_overdue_steps": [7]})

    def test_unknown_type_rejected(self):
        with pytest.raises(InvalidAutomationConfigError, match="unknown automation type"):
            parse_automation_config("sms_blast", {})

    def test_non_mapping_rejected(self):
        with pytest.raises(InvalidAutomationConfigError):
            parse_automation_config("visit_reminder", [24])

    @pytest.mark.parametrize("hours", [0, -1, 24 * 14 + 1, "24", True])
    def test_hours_before_range(self, hours):
        with pytest.raises(InvalidAutomationConfigError) as exc_info:
            VisitReminderConfig(hours_before=hours)
        assert exc_info.value.code == "INVALID_AUTOMATION_CONFIG"

    @pytest.mark.parametrize("steps", [(), (0,), (366,), ("7",), "7"])
    def test_days_overdue_range(self, steps):
        with pytest.raises(InvalidAutomationConfigError):
            InvoiceFollowupConfig(days_overdue_steps=steps)


class TestConfigFor:

    def test_matching_variant_passes(self):
        config = VisitReminderConfig(hours_before=2)
        assert config_for("visit_reminder", config) is config

    def test_mismatched_variant_rejected(self):
        with pytest.raises(InvalidAutomationConfigError, match="invoice_followup variant"):
            config_for("visit_reminder", InvoiceFollowupConfig())


class TestTenantContext:

    def test_system_context_defaults_actor(self):
        ctx = TenantContext.system(uuid4())
        assert ctx.actor_id == SYSTEM_ACTOR_ID
        assert ctx.is_system and ctx.is_manager

    def test_role_coerced_from_string(self):
        ctx = TenantContext(tenant_id=uuid4(), actor_id=uuid4(), role="tech")
        assert ctx.role is Role.TECH
        assert not ctx.is_manager

    def test_tenant_must_be_uuid(self):
        with pytest.raises(TypeError):
            TenantContext(tenant_id="acme", actor_id=uuid4(), role=Role.OWNER)

    def test_log_fields_are_strings(self):
        ctx = TenantContext(tenant_id=uuid4(), actor_id=uuid4(), role=Role.ADMIN)
        fields = ctx.log_fields()
        assert fields["role"] == "admin"
        assert fields["tenant_id"] == str(ctx.tenant_id)
