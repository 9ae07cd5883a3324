"""Rule configuration: validated, compiled rule sets and the SLA policy.

Rule records are validated once, when the RuleSet is built. Anything that
would otherwise fail on every evaluation - unknown fields, unsupported
operators, missing payload - is a RuleConfigurationError here rather than a
runtime error later.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from case_governor.config.settings import GovernorSettings
from case_governor.errors import RuleConfigurationError
from case_governor.models.records import CaseSnapshot
from case_governor.models.rules import RuleCategory, RuleDefinition
from case_governor.rules.calendar import BusinessCalendar
from case_governor.rules.expressions import Condition, parse_condition

logger = logging.getLogger(__name__)

# Derived values rules may read in addition to stored fields
VIRTUAL_FIELDS = frozenset({"is_open", "open_task_count"})

CASE_FIELDS: FrozenSet[str] = frozenset(CaseSnapshot.model_fields) | VIRTUAL_FIELDS

SUPPORTED_TARGETS = frozenset({"case"})


class SlaPolicy(BaseModel):
    """SLA inputs that are configuration, not code."""

    model_config = ConfigDict(frozen=True)

    business_days_by_service_type: Dict[str, int] = Field(default_factory=dict)
    default_business_days: Optional[int] = Field(default=None, ge=0)
    cutoff_hour: int = Field(default=17, ge=0, le=23)
    at_risk_lead: timedelta = timedelta(hours=24)
    timezone: str = "UTC"
    holidays: FrozenSet[date] = Field(default_factory=frozenset)

    @classmethod
    def from_settings(cls, settings: GovernorSettings, **overrides) -> "SlaPolicy":
        values = {
            "cutoff_hour": settings.sla_cutoff_hour,
            "at_risk_lead": settings.sla_at_risk_lead,
            "timezone": settings.timezone,
            "holidays": settings.holidays,
        }
        values.update(overrides)
        return cls(**values)

    @property
    def calendar(self) -> BusinessCalendar:
        return BusinessCalendar.from_dates(self.holidays)


@dataclass(frozen=True)
class CompiledRule:
    definition: RuleDefinition
    condition: Condition
    position: int

    @property
    def rule_id(self) -> str:
        return self.definition.rule_id

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.definition.order, self.position)


RuleRecord = Union[RuleDefinition, Mapping]


class RuleSet:
    """An ordered, validated collection of rules plus the SLA policy.

    Evaluation order within a category is (order, declaration position); it is
    stable and part of the contract.

    Usage:
        rules = RuleSet.from_records([
            {"rule_id": "new-service-fields", "category": "field_requirement",
             "condition": {"op": "eq", "field": "service_type", "value": "New Service"},
             "target_fields": ["asset_id", "service_date", "customer_po"]},
        ])
    """

    def __init__(self, rules: Iterable[CompiledRule], sla_policy: Optional[SlaPolicy] = None):
        self.rules: Tuple[CompiledRule, ...] = tuple(rules)
        self.sla_policy = sla_policy or SlaPolicy()
        self._by_category: Dict[RuleCategory, Tuple[CompiledRule, ...]] = {
            category: tuple(
                sorted(
                    (r for r in self.rules if r.definition.category == category and r.definition.active),
                    key=lambda r: r.sort_key,
                )
            )
            for category in RuleCategory
        }

    @classmethod
    def from_records(
        cls,
        records: Iterable[RuleRecord],
        sla_policy: Optional[SlaPolicy] = None,
    ) -> "RuleSet":
        """Validate and compile rule records.

        Raises:
            RuleConfigurationError: On malformed records, duplicate ids or unknown fields
        """
        compiled: List[CompiledRule] = []
        seen = set()

        for position, record in enumerate(records):
            definition = cls._validate_record(record, position)
            if definition.rule_id in seen:
                raise RuleConfigurationError(f"Duplicate rule id: {definition.rule_id}", definition.rule_id)
            seen.add(definition.rule_id)

            if definition.target_object.lower() not in SUPPORTED_TARGETS:
                raise RuleConfigurationError(
                    f"Unsupported target object: {definition.target_object}", definition.rule_id
                )

            condition = parse_condition(definition.condition, definition.rule_id)
            referenced = set(condition.referenced_fields()) | set(definition.target_fields)
            unknown = sorted(referenced - CASE_FIELDS)
            if unknown:
                raise RuleConfigurationError(
                    f"Rule {definition.rule_id} references unknown case fields: {unknown}",
                    definition.rule_id,
                )

            compiled.append(CompiledRule(definition=definition, condition=condition, position=position))

        rule_set = cls(compiled, sla_policy=sla_policy)
        logger.info(
            f"Compiled rule set: {len(compiled)} rules, "
            f"{sum(1 for r in compiled if r.definition.active)} active"
        )
        return rule_set

    @staticmethod
    def _validate_record(record: RuleRecord, position: int) -> RuleDefinition:
        if isinstance(record, RuleDefinition):
            return record
        try:
            return RuleDefinition.model_validate(record)
        except ValidationError as e:
            rule_id = record.get("rule_id") if isinstance(record, Mapping) else None
            raise RuleConfigurationError(
                f"Invalid rule record at position {position}: {e.errors()[0]['msg']}", rule_id
            ) from e

    def for_category(self, category: RuleCategory) -> Tuple[CompiledRule, ...]:
        """Active rules of one category in evaluation order."""
        return self._by_category[category]

    def __len__(self) -> int:
        return len(self.rules)
