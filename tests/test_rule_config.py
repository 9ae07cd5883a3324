"""Rule records: condition compilation and load-time validation."""
from datetime import date
from decimal import Decimal

import pytest

from case_governor.errors import RuleConfigurationError
from case_governor.models import RuleCategory
from case_governor.rules import ConditionUnevaluable, RuleSet, parse_condition


# =============================================================================
# Conditions
# =============================================================================

def test_none_condition_always_matches():
    assert parse_condition(None).evaluate({}) is True
    assert parse_condition({"op": "always"}).evaluate({"x": 1}) is True


def test_comparisons_coerce_configured_operands():
    values = {"value": Decimal("60000"), "service_date": date(2024, 3, 5)}

    assert parse_condition({"op": "gt", "field": "value", "value": 50000.5}).evaluate(values)
    assert parse_condition({"op": "gte", "field": "value", "value": "60000"}).evaluate(values)
    assert parse_condition({"op": "lt", "field": "service_date", "value": "2024-03-06"}).evaluate(values)
    assert not parse_condition({"op": "lte", "field": "service_date", "value": "2024-03-04"}).evaluate(values)


def test_field_ref_compares_two_fields():
    condition = parse_condition({"op": "lt", "field": "service_date", "field_ref": "sla_due_date"})

    assert condition.referenced_fields() == {"service_date", "sla_due_date"}
    assert condition.evaluate({"service_date": date(2024, 3, 5), "sla_due_date": date(2024, 3, 6)})
    assert not condition.evaluate({"service_date": date(2024, 3, 7), "sla_due_date": date(2024, 3, 6)})


def test_membership_and_blank_checks():
    values = {"priority": "High", "asset_id": "", "subject": "Missed pickup"}

    assert parse_condition({"op": "in", "field": "priority", "value": ["High", "Critical"]}).evaluate(values)
    assert parse_condition({"op": "not_in", "field": "priority", "value": ["Low"]}).evaluate(values)
    assert parse_condition({"op": "is_blank", "field": "asset_id"}).evaluate(values)
    assert parse_condition({"op": "not_blank", "field": "subject"}).evaluate(values)
    assert parse_condition({"op": "contains", "field": "subject", "value": "pickup"}).evaluate(values)


def test_boolean_composition():
    condition = parse_condition(
        {
            "op": "any",
            "conditions": [
                {"op": "eq", "field": "risk_flag", "value": True},
                {"op": "not", "condition": {"op": "eq", "field": "status", "value": "New"}},
            ],
        }
    )

    assert condition.referenced_fields() == {"risk_flag", "status"}
    assert condition.evaluate({"risk_flag": False, "status": "Closed"})
    assert not condition.evaluate({"risk_flag": False, "status": "New"})


def test_ordered_comparison_against_missing_value_is_unevaluable():
    condition = parse_condition({"op": "gt", "field": "value", "value": 10})

    with pytest.raises(ConditionUnevaluable):
        condition.evaluate({"value": None})


def test_mismatched_types_are_unevaluable():
    condition = parse_condition({"op": "gt", "field": "service_date", "value": "not-a-date"})

    with pytest.raises(ConditionUnevaluable):
        condition.evaluate({"service_date": date(2024, 3, 1)})


@pytest.mark.parametrize(
    "raw",
    [
        "service_type == 'New Service'",
        {"op": "matches", "field": "subject", "value": ".*"},
        {"op": "eq", "value": 1},
        {"op": "eq", "field": "status"},
        {"op": "in", "field": "status", "value": "Open"},
        {"op": "all", "conditions": []},
    ],
)
def test_malformed_conditions_are_configuration_errors(raw):
    with pytest.raises(RuleConfigurationError):
        parse_condition(raw, rule_id="bad")


# =============================================================================
# Rule sets
# =============================================================================

def test_unknown_field_is_rejected_at_load():
    records = [
        {
            "rule_id": "needs-color",
            "category": "field_requirement",
            "condition": {"op": "eq", "field": "service_type", "value": "Repair"},
            "target_fields": ["truck_color"],
        }
    ]

    with pytest.raises(RuleConfigurationError) as exc_info:
        RuleSet.from_records(records)

    assert exc_info.value.rule_id == "needs-color"
    assert "truck_color" in exc_info.value.message


def test_unknown_condition_field_is_rejected_at_load():
    records = [{"rule_id": "r1", "category": "approval", "condition": {"op": "gt", "field": "amount", "value": 1}}]

    with pytest.raises(RuleConfigurationError):
        RuleSet.from_records(records)


@pytest.mark.parametrize(
    "record",
    [
        {"rule_id": "r1", "category": "field_requirement"},
        {"rule_id": "r1", "category": "visible_action"},
        {"rule_id": "r1", "category": "sla"},
        {"rule_id": "r1", "category": "message"},
        {"rule_id": "r1", "category": "escalation"},
        {"rule_id": "r1", "category": "approval", "threshold": 5},
        {"rule_id": "r1", "category": "approval", "target_object": "Quote"},
    ],
)
def test_malformed_records_are_rejected(record):
    with pytest.raises(RuleConfigurationError):
        RuleSet.from_records([record])


def test_duplicate_rule_ids_are_rejected():
    record = {"rule_id": "dup", "category": "approval", "condition": {"op": "eq", "field": "risk_flag", "value": True}}

    with pytest.raises(RuleConfigurationError):
        RuleSet.from_records([record, dict(record)])


def test_rules_are_ordered_by_order_then_declaration_and_inactive_dropped():
    records = [
        {"rule_id": "c", "category": "approval", "order": 5},
        {"rule_id": "a", "category": "approval", "order": 1},
        {"rule_id": "off", "category": "approval", "order": 0, "active": False},
        {"rule_id": "b", "category": "approval", "order": 1},
    ]

    rule_set = RuleSet.from_records(records)

    assert [r.rule_id for r in rule_set.for_category(RuleCategory.APPROVAL)] == ["a", "b", "c"]
    assert len(rule_set) == 4
    assert rule_set.for_category(RuleCategory.SLA) == ()


def test_virtual_fields_are_accepted():
    records = [
        {
            "rule_id": "no-open-tasks",
            "category": "message",
            "condition": {"op": "all", "conditions": [
                {"op": "eq", "field": "is_open", "value": True},
                {"op": "eq", "field": "open_task_count", "value": 0},
            ]},
            "message": "No open tasks on an open case",
            "severity": "warning",
        }
    ]

    assert len(RuleSet.from_records(records)) == 1
