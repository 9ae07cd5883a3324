"""PageData - the unit of distribution - and the broadcast wire message.

PageData is versioned (SCHEMA_VERSION) and always complete: either every
requested part was assembled, or the build failed and no PageData exists.
Related records that could not be loaded are listed in
RelatedRecordSet.unavailable_sections rather than silently dropped.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from case_governor.models.records import (
    Account,
    Asset,
    CaseSnapshot,
    Contact,
    EntityType,
    Quote,
    Task,
    WorkOrder,
)
from case_governor.models.rules import RuleResult

SCHEMA_VERSION = "1.0"


def _every_type() -> Tuple[EntityType, ...]:
    return tuple(sorted(EntityType, key=lambda t: t.value))


class RelatedSection(str, Enum):
    """Sections of the related-record set, also used as refresh scopes."""

    CASE = "case"
    ACCOUNTS = "accounts"
    CONTACT = "contact"
    ASSET = "asset"
    TASKS = "tasks"
    RELATED_CASES = "related_cases"
    QUOTES = "quotes"
    WORK_ORDERS = "work_orders"
    RULES = "rules"


class RelatedRecordSet(BaseModel):
    """Related records of one case, each collection keyed by record id."""

    model_config = ConfigDict(frozen=True)

    clients: Dict[str, Account] = Field(default_factory=dict)
    locations: Dict[str, Account] = Field(default_factory=dict)
    vendors: Dict[str, Account] = Field(default_factory=dict)
    contacts: Dict[str, Contact] = Field(default_factory=dict)
    assets: Dict[str, Asset] = Field(default_factory=dict)
    open_tasks: Dict[str, Task] = Field(default_factory=dict)
    related_cases: Dict[str, CaseSnapshot] = Field(default_factory=dict)
    quotes: Dict[str, Quote] = Field(default_factory=dict)
    work_orders: Dict[str, WorkOrder] = Field(default_factory=dict)

    unavailable_sections: Tuple[RelatedSection, ...] = Field(
        default=(),
        description="Sections that failed to load and are represented as empty",
    )

    @property
    def is_degraded(self) -> bool:
        return bool(self.unavailable_sections)


class BuildOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    include_related: bool = True
    evaluate_rules: bool = True


class PageData(BaseModel):
    """
    Everything a case page renders, produced in one build.

    generated_at and sequence strictly increase per case_id across successive
    builds; consumers order by (generated_at, sequence) and discard anything
    not newer than what they already applied.
    """

    model_config = ConfigDict(frozen=True)

    schema_version: str = SCHEMA_VERSION
    case_id: str
    case_snapshot: CaseSnapshot
    related_records: RelatedRecordSet = Field(default_factory=RelatedRecordSet)
    rule_result: Optional[RuleResult] = None
    options: BuildOptions = Field(default_factory=BuildOptions)
    access_scope: Tuple[EntityType, ...] = Field(
        default_factory=_every_type,
        description="Entity types the caller this was built for may read",
    )

    generated_at: datetime
    sequence: int = Field(..., ge=1)
    correlation_id: str

    @model_validator(mode="after")
    def validate_consistency(self):
        """The snapshot must be the case the PageData is about."""
        if self.case_snapshot.id != self.case_id:
            raise ValueError(
                f"case_snapshot.id {self.case_snapshot.id} does not match case_id {self.case_id}"
            )
        if self.options.evaluate_rules and self.rule_result is None:
            raise ValueError("rule_result is required when rules were evaluated")
        return self

    @property
    def ordering_key(self) -> Tuple[datetime, int]:
        return (self.generated_at, self.sequence)

    def is_newer_than(self, other: Optional["PageData"]) -> bool:
        if other is None:
            return True
        return self.ordering_key > other.ordering_key

    def same_content_as(self, other: "PageData") -> bool:
        """Compare everything except the publication stamp."""
        stamp = {"generated_at", "sequence", "correlation_id"}
        return self.model_dump(exclude=stamp) == other.model_dump(exclude=stamp)


# ============================================================
# Broadcast wire message
# ============================================================

class BroadcastEventType(str, Enum):
    """Message kinds carried on the case data channel."""

    LOAD = "load"
    REFRESH = "refresh"
    ERROR = "error"
    REFRESH_REQUEST = "refresh_request"
    TEARDOWN = "teardown"

    @property
    def carries_page_data(self) -> bool:
        return self in (BroadcastEventType.LOAD, BroadcastEventType.REFRESH)


class BroadcastMessage(BaseModel):
    """
    One message on the case data channel.

    page_data is the serialized PageData JSON so that every subscriber gets its
    own copy by value. Messages sent by a hub carry its hub_id and the access
    scope it builds for; a teardown message retires that hub_id.
    """

    model_config = ConfigDict(frozen=True)

    case_id: str
    event_type: BroadcastEventType
    page_data: Optional[str] = None
    section: Optional[str] = None
    error_message: Optional[str] = None
    hub_id: Optional[str] = None
    access_scope: Optional[Tuple[EntityType, ...]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def validate_payload(self):
        if self.event_type.carries_page_data and not self.page_data:
            raise ValueError(f"{self.event_type.value} messages must carry page_data")
        if not self.event_type.carries_page_data and self.page_data:
            raise ValueError(f"{self.event_type.value} messages must not carry page_data")
        if self.event_type == BroadcastEventType.TEARDOWN and not self.hub_id:
            raise ValueError("teardown messages must name the hub")
        return self

    @classmethod
    def for_page_data(
        cls,
        event_type: BroadcastEventType,
        page_data: PageData,
        section: Optional[str] = None,
        hub_id: Optional[str] = None,
    ) -> "BroadcastMessage":
        return cls(
            case_id=page_data.case_id,
            event_type=event_type,
            page_data=page_data.model_dump_json(),
            section=section,
            hub_id=hub_id,
            access_scope=page_data.access_scope,
        )

    def decode_page_data(self) -> Optional[PageData]:
        if not self.page_data:
            return None
        return PageData.model_validate_json(self.page_data)
