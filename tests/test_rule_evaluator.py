"""Rule Evaluator: field requirements, visible actions, SLA, approval and messages."""
import logging
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from case_governor.models import (
    ApprovalStatus,
    CaseSnapshot,
    RelatedRecordSet,
    Severity,
    SlaStatus,
    Task,
)
from case_governor.rules import BusinessCalendar, RuleEvaluator, RuleSet, SlaPolicy

from conftest import FRIDAY_MORNING, MONDAY_MORNING, RULE_RECORDS, SLA_BUSINESS_DAYS


def snapshot(**fields) -> CaseSnapshot:
    fields.setdefault("id", "500T")
    return CaseSnapshot(**fields)


# =============================================================================
# Field requirements
# =============================================================================

def test_new_service_requires_asset_service_date_and_po(evaluator):
    case = snapshot(service_type="New Service", asset_id=None, service_date=None)

    required = evaluator.evaluate_field_requirements(case)

    assert {field for field, flag in required.items() if flag} == {"asset_id", "service_date", "customer_po"}
    assert required["sla_override_reason"] is False


def test_requirement_is_or_across_rules(evaluator):
    case = snapshot(service_type="Repair", chargeable="Yes")

    required = evaluator.evaluate_field_requirements(case)

    assert required["customer_po"] is True
    assert required["asset_id"] is False


def test_field_to_field_comparison_requires_override_reason(evaluator):
    case = snapshot(service_date=date(2024, 3, 5), sla_due_date=date(2024, 3, 6))

    required = evaluator.evaluate_field_requirements(case)

    assert required["sla_override_reason"] is True
    assert required["sla_override_comment"] is True


def test_unevaluable_rule_is_skipped_and_logged(evaluator, caplog):
    case = snapshot(service_type="New Service")

    with caplog.at_level(logging.WARNING, logger="case_governor.rules.evaluator"):
        required = evaluator.evaluate_field_requirements(case)

    # service_date is empty, so the lt comparison cannot run
    assert required["sla_override_reason"] is False
    assert required["asset_id"] is True
    assert any("sla-override-reason" in r.getMessage() for r in caplog.records)


# =============================================================================
# Visible actions
# =============================================================================

def test_visible_actions_last_matching_rule_wins(evaluator):
    open_case = snapshot(status="In Progress", asset_id="02iA")
    approved = snapshot(status="In Progress", asset_id="02iA", approval_status="approved")

    assert evaluator.evaluate_visible_actions(open_case) == (
        "addquote",
        "creatependinginfotask",
        "initiateworkorder",
        "progresscase",
    )
    # hide (order 20) runs after show (order 10) although declared first
    assert "addquote" not in evaluator.evaluate_visible_actions(approved)


def test_visible_actions_read_related_records(evaluator):
    case = snapshot(status="In Progress")
    related = RelatedRecordSet(open_tasks={"00TA": Task(id="00TA", subject="Confirm pickup")})

    assert "creatependinginfotask" in evaluator.evaluate_visible_actions(case)
    assert "creatependinginfotask" not in evaluator.evaluate_visible_actions(case, related)


def test_closed_case_shows_no_lifecycle_actions(evaluator):
    case = snapshot(status="Closed", work_order_id="0WOA")

    assert evaluator.evaluate_visible_actions(case) == ("creatependinginfotask",)


def test_visible_actions_and_approval_are_deterministic(rule_set):
    case = snapshot(status="In Progress", value=Decimal("75000"), risk_flag=True, asset_id="02iA")
    first = RuleEvaluator(rule_set, clock=lambda: FRIDAY_MORNING)
    second = RuleEvaluator(rule_set, clock=lambda: MONDAY_MORNING)

    assert first.evaluate_visible_actions(case) == second.evaluate_visible_actions(case)
    assert first.evaluate_approval(case) == second.evaluate_approval(case)


# =============================================================================
# Approval
# =============================================================================

def test_value_over_threshold_requires_pending_approval(evaluator):
    case = snapshot(value=Decimal("60000"))

    approval = evaluator.evaluate_approval(case)

    assert approval.required is True
    assert approval.status == ApprovalStatus.PENDING
    assert approval.triggering_rule == "high-value-threshold"


def test_first_matching_approval_rule_is_reported(evaluator):
    case = snapshot(value=Decimal("100"), risk_flag=True, priority="Critical")

    assert evaluator.evaluate_approval(case).triggering_rule == "risk-flag"


def test_recorded_approval_outcome_is_carried_through(evaluator):
    approved = snapshot(value=Decimal("60000"), approval_status="approved")
    rejected = snapshot(priority="Critical", approval_status="rejected")

    assert evaluator.evaluate_approval(approved).status == ApprovalStatus.APPROVED
    assert evaluator.evaluate_approval(rejected).status == ApprovalStatus.REJECTED


def test_no_approval_when_nothing_matches(evaluator):
    approval = evaluator.evaluate_approval(snapshot(value=Decimal("50000")))

    assert approval.required is False
    assert approval.status == ApprovalStatus.NONE
    assert approval.triggering_rule is None


# =============================================================================
# SLA
# =============================================================================

def test_emergency_created_friday_is_due_monday_and_at_risk_that_morning(evaluator):
    case = snapshot(service_type="Emergency", created_at=FRIDAY_MORNING)

    sla = evaluator.evaluate_sla(case, MONDAY_MORNING)

    assert sla.due_date == date(2024, 3, 4)
    assert sla.status == SlaStatus.AT_RISK
    assert sla.business_days == 1
    assert sla.source == "service_type"


def test_sla_breached_after_cutoff_while_open(evaluator):
    case = snapshot(service_type="Emergency", created_at=FRIDAY_MORNING)
    evening = datetime(2024, 3, 4, 18, 0, tzinfo=timezone.utc)

    assert evaluator.evaluate_sla(case, evening).status == SlaStatus.BREACHED
    closed = snapshot(service_type="Emergency", created_at=FRIDAY_MORNING, status="Closed")
    assert evaluator.evaluate_sla(closed, evening).status == SlaStatus.ON_TRACK


def test_sla_on_track_before_lead_time(evaluator):
    case = snapshot(service_type="Repair", created_at=FRIDAY_MORNING)

    sla = evaluator.evaluate_sla(case, MONDAY_MORNING)

    assert sla.due_date == date(2024, 3, 6)
    assert sla.status == SlaStatus.ON_TRACK


def test_sla_skips_holidays():
    policy = SlaPolicy(business_days_by_service_type=SLA_BUSINESS_DAYS, holidays=frozenset({date(2024, 3, 4)}))
    evaluator = RuleEvaluator(RuleSet.from_records(RULE_RECORDS, sla_policy=policy))
    case = snapshot(service_type="Emergency", created_at=FRIDAY_MORNING)

    assert evaluator.evaluate_sla(case, MONDAY_MORNING).due_date == date(2024, 3, 5)


def test_persisted_sla_date_overrides_computed_one(evaluator):
    case = snapshot(service_type="Emergency", created_at=FRIDAY_MORNING, sla_due_date=date(2024, 3, 8))

    sla = evaluator.evaluate_sla(case, MONDAY_MORNING)

    assert sla.due_date == date(2024, 3, 8)
    assert sla.source == "override"
    assert sla.status == SlaStatus.ON_TRACK


def test_sla_rule_overrides_service_type_table():
    records = RULE_RECORDS + [
        {
            "rule_id": "critical-same-day",
            "category": "sla",
            "condition": {"op": "eq", "field": "priority", "value": "Critical"},
            "business_days": 0,
        }
    ]
    evaluator = RuleEvaluator(
        RuleSet.from_records(records, sla_policy=SlaPolicy(business_days_by_service_type=SLA_BUSINESS_DAYS))
    )
    case = snapshot(service_type="Repair", priority="Critical", created_at=FRIDAY_MORNING)

    sla = evaluator.evaluate_sla(case, FRIDAY_MORNING)

    assert sla.due_date == date(2024, 3, 1)
    assert sla.source == "rule:critical-same-day"


def test_no_sla_without_offset_or_creation_time(evaluator):
    assert evaluator.evaluate_sla(snapshot(service_type="Unknown"), MONDAY_MORNING).due_date is None
    pending = evaluator.evaluate_sla(snapshot(service_type="Repair"), MONDAY_MORNING)
    assert pending.due_date is None
    assert pending.business_days == 3


def test_sla_uses_business_timezone():
    policy = SlaPolicy(business_days_by_service_type=SLA_BUSINESS_DAYS, timezone="America/Chicago")
    evaluator = RuleEvaluator(RuleSet.from_records(RULE_RECORDS, sla_policy=policy))
    # Saturday 02:00 UTC is still Friday evening in Chicago
    created = datetime(2024, 3, 2, 2, 0, tzinfo=timezone.utc)
    case = snapshot(service_type="Emergency", created_at=created)

    assert evaluator.evaluate_sla(case, MONDAY_MORNING).due_date == date(2024, 3, 4)


def test_calendar_is_injectable(rule_set):
    calendar = BusinessCalendar(weekend_days=frozenset({6}))
    evaluator = RuleEvaluator(rule_set, calendar=calendar)
    case = snapshot(service_type="Emergency", created_at=FRIDAY_MORNING)

    assert evaluator.evaluate_sla(case, FRIDAY_MORNING).due_date == date(2024, 3, 2)


# =============================================================================
# Messages and combined result
# =============================================================================

def test_messages_report_blank_required_fields_and_message_rules(evaluator):
    case = snapshot(service_type="New Service", customer_po="PO-1")

    messages = evaluator.evaluate_messages(case)

    assert [m.rule_id for m in messages] == ["new-service-fields", "missing-required-information"]
    assert messages[0].severity == Severity.ERROR


def test_no_requirement_message_once_fields_are_filled(evaluator):
    case = snapshot(
        service_type="New Service",
        asset_id="02iA",
        service_date=date(2024, 3, 8),
        customer_po="PO-1",
        required_information="Gate code",
    )

    assert evaluator.evaluate_messages(case) == []


def test_evaluate_combines_all_categories(evaluator):
    case = snapshot(
        service_type="Emergency",
        value=Decimal("60000"),
        created_at=FRIDAY_MORNING,
        asset_id="02iA",
    )

    result = evaluator.evaluate(case)

    assert result.approval.triggering_rule == "high-value-threshold"
    assert result.sla_status == SlaStatus.AT_RISK
    assert result.is_visible("progresscase")
    assert result.action_required is False
    assert [m.rule_id for m in result.messages] == ["missing-required-information"]


@pytest.mark.parametrize(
    "service_type, expected",
    [("New Service", True), ("Repair", False), (None, False)],
)
def test_action_required_follows_error_messages(evaluator, service_type, expected):
    result = evaluator.evaluate(snapshot(service_type=service_type, required_information="x"))

    assert result.action_required is expected
