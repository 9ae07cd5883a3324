"""
Test configuration and fixtures.

Provides:
- A small case dataset served by an in-memory record gateway
- A rule set covering every rule category
- Store, evaluator and aggregator wired with a fixed clock
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import pytest

from case_governor.aggregator import PageDataAggregator
from case_governor.config import GovernorSettings, reset_settings
from case_governor.context import ContextStore, InMemoryRecordGateway
from case_governor.errors import PersistenceError
from case_governor.models import EntityType
from case_governor.rules import RuleEvaluator, RuleSet, SlaPolicy


# 2024-03-01 is a Friday
FRIDAY_MORNING = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
MONDAY_MORNING = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)

SLA_BUSINESS_DAYS = {"Emergency": 1, "Repair": 3, "New Service": 5}

RULE_RECORDS = [
    # Field requirements
    {
        "rule_id": "new-service-fields",
        "category": "field_requirement",
        "condition": {"op": "eq", "field": "service_type", "value": "New Service"},
        "target_fields": ["asset_id", "service_date", "customer_po"],
        "message": "Asset, service date and PO are required for new service",
        "severity": "error",
    },
    {
        "rule_id": "po-required-chargeable",
        "category": "field_requirement",
        "condition": {"op": "eq", "field": "chargeable", "value": "Yes"},
        "target_fields": ["customer_po"],
        "severity": "warning",
    },
    {
        "rule_id": "sla-override-reason",
        "category": "field_requirement",
        "condition": {"op": "lt", "field": "service_date", "field_ref": "sla_due_date"},
        "target_fields": ["sla_override_reason", "sla_override_comment"],
        "message": "Service date is before the SLA date: give an override reason",
        "severity": "error",
    },
    # Approval triggers, in declaration order
    {
        "rule_id": "high-value-threshold",
        "category": "approval",
        "condition": {"op": "gt", "field": "value", "value": 50000},
        "message": "NTE Approval Needed",
    },
    {
        "rule_id": "risk-flag",
        "category": "approval",
        "condition": {"op": "eq", "field": "risk_flag", "value": True},
    },
    {
        "rule_id": "critical-priority",
        "category": "approval",
        "condition": {"op": "eq", "field": "priority", "value": "Critical"},
    },
    # Visible actions
    {
        "rule_id": "show-progress-case",
        "category": "visible_action",
        "action_id": "progresscase",
        "condition": {"op": "eq", "field": "is_open", "value": True},
        "order": 10,
    },
    {
        "rule_id": "hide-add-quote-when-approved",
        "category": "visible_action",
        "action_id": "addquote",
        "effect": "hide",
        "condition": {"op": "eq", "field": "approval_status", "value": "approved"},
        "order": 20,
    },
    {
        "rule_id": "show-add-quote",
        "category": "visible_action",
        "action_id": "addquote",
        "condition": {"op": "eq", "field": "is_open", "value": True},
        "order": 10,
    },
    {
        "rule_id": "show-initiate-work-order",
        "category": "visible_action",
        "action_id": "initiateworkorder",
        "condition": {
            "op": "all",
            "conditions": [
                {"op": "not_blank", "field": "asset_id"},
                {"op": "is_blank", "field": "work_order_id"},
            ],
        },
        "order": 10,
    },
    {
        "rule_id": "show-pending-info-task",
        "category": "visible_action",
        "action_id": "creatependinginfotask",
        "condition": {"op": "eq", "field": "open_task_count", "value": 0},
        "order": 30,
    },
    # Messages
    {
        "rule_id": "missing-required-information",
        "category": "message",
        "condition": {"op": "is_blank", "field": "required_information"},
        "message": "Required information has not been captured",
        "severity": "info",
    },
]


def case_record(**overrides: Any) -> Dict[str, Any]:
    record = {
        "id": "500A",
        "case_number": "00012345",
        "status": "In Progress",
        "service_type": "Repair",
        "priority": "Normal",
        "value": "1200",
        "client_id": "001C",
        "location_id": "001L",
        "vendor_id": "001V",
        "contact_id": "003A",
        "asset_id": "02iA",
        "task_ids": ["00TA", "00TB"],
        "quote_ids": ["0Q0A"],
        "work_order_ids": ["0WOA"],
        "related_case_ids": ["500B"],
        "created_at": FRIDAY_MORNING.isoformat(),
        "customer_po": "PO-100",
        "required_information": "Gate code 4411",
    }
    record.update(overrides)
    return record


def dataset() -> Dict[EntityType, Dict[str, Dict[str, Any]]]:
    return {
        EntityType.CASE: {
            "500A": case_record(),
            "500B": case_record(id="500B", case_number="00012346", related_case_ids=[], task_ids=[]),
        },
        EntityType.ACCOUNT: {
            "001C": {"name": "Acme Retail", "role": "client"},
            "001L": {"name": "Acme Store 17", "role": "location", "parent_id": "001C"},
            "001V": {"name": "Hauling Co", "role": "vendor"},
        },
        EntityType.CONTACT: {
            "003A": {"name": "Dana Reyes", "email": "dana@example.com", "account_id": "001C"},
            "003B": {"name": "Sam Ortiz", "account_id": "001C"},
            "003C": {"name": "Lee Park", "account_id": "001L"},
        },
        EntityType.ASSET: {
            "02iA": {"name": "8YD Front Load", "location_id": "001L", "equipment_type": "Front Load"},
        },
        EntityType.TASK: {
            "00TA": {"subject": "Confirm pickup", "status": "Open", "case_id": "500A"},
            "00TB": {"subject": "Call vendor", "status": "Completed", "case_id": "500A"},
        },
        EntityType.QUOTE: {
            "0Q0A": {"name": "Repair quote", "status": "Draft", "amount": "950.00", "case_id": "500A"},
        },
        EntityType.WORK_ORDER: {
            "0WOA": {"number": "WO-1", "status": "Scheduled", "case_id": "500A"},
        },
    }


class FlakyGateway(InMemoryRecordGateway):
    """In-memory gateway that fails reads of chosen entity types."""

    def __init__(self, records=None, latency: float = 0.0):
        super().__init__(records, latency=latency)
        self.failures: Dict[EntityType, int] = {}

    def fail(self, entity_type: EntityType, times: Optional[int] = None) -> None:
        """Fail the next ``times`` reads of ``entity_type`` (forever when None)."""
        self.failures[entity_type] = -1 if times is None else times

    async def fetch(self, entity_type: EntityType, ids: Sequence[str]):
        remaining = self.failures.get(entity_type, 0)
        if remaining:
            if remaining > 0:
                self.failures[entity_type] = remaining - 1
            self.fetch_calls.append((entity_type, tuple(ids)))
            raise PersistenceError(f"{entity_type.value} backend unavailable")
        return await super().fetch(entity_type, ids)


class FakeMonotonic:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _isolated_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> GovernorSettings:
    return GovernorSettings(cache_ttl_seconds=30, consumer_wait_seconds=0.05)


@pytest.fixture
def gateway() -> FlakyGateway:
    return FlakyGateway(dataset())


@pytest.fixture
def rule_set() -> RuleSet:
    return RuleSet.from_records(RULE_RECORDS, sla_policy=SlaPolicy(business_days_by_service_type=SLA_BUSINESS_DAYS))


@pytest.fixture
def evaluator(rule_set) -> RuleEvaluator:
    return RuleEvaluator(rule_set, clock=lambda: MONDAY_MORNING)


@pytest.fixture
def store(gateway, settings) -> ContextStore:
    return ContextStore(gateway, settings=settings)


@pytest.fixture
def aggregator(store, evaluator) -> PageDataAggregator:
    return PageDataAggregator(store, evaluator, clock=lambda: MONDAY_MORNING)
