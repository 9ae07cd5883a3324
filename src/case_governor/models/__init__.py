"""
Shared data models for the case data governor.

Pydantic models for entity snapshots, rule configuration and results, and the
versioned PageData schema distributed to page consumers.
"""

from case_governor.models.records import (
    Account,
    AccountRole,
    ApprovalStatus,
    Asset,
    CaseSnapshot,
    Contact,
    EntityType,
    Quote,
    RecordModel,
    Task,
    WorkOrder,
    parse_entity,
)
from case_governor.models.rules import (
    ActionEffect,
    ApprovalResult,
    RuleCategory,
    RuleDefinition,
    RuleMessage,
    RuleResult,
    Severity,
    SlaResult,
    SlaStatus,
)
from case_governor.models.page_data import (
    SCHEMA_VERSION,
    BroadcastEventType,
    BroadcastMessage,
    BuildOptions,
    PageData,
    RelatedRecordSet,
    RelatedSection,
)

__all__ = [
    # Records
    "Account", "AccountRole", "ApprovalStatus", "Asset", "CaseSnapshot",
    "Contact", "EntityType", "Quote", "RecordModel", "Task", "WorkOrder",
    "parse_entity",
    # Rules
    "ActionEffect", "ApprovalResult", "RuleCategory", "RuleDefinition",
    "RuleMessage", "RuleResult", "Severity", "SlaResult", "SlaStatus",
    # Page data
    "SCHEMA_VERSION", "BroadcastEventType", "BroadcastMessage", "BuildOptions",
    "PageData", "RelatedRecordSet", "RelatedSection",
]
