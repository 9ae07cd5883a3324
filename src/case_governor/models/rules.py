"""Rule configuration records and rule evaluation results.

Rules are externally supplied, declarative records. They are validated here
(shape only) and compiled into a RuleSet by case_governor.rules.config, which
also checks every referenced field against the CaseSnapshot schema.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from case_governor.models.records import ApprovalStatus


class RuleCategory(str, Enum):
    """The rule families the evaluator understands."""

    FIELD_REQUIREMENT = "field_requirement"
    VISIBLE_ACTION = "visible_action"
    APPROVAL = "approval"
    SLA = "sla"
    MESSAGE = "message"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ActionEffect(str, Enum):
    SHOW = "show"
    HIDE = "hide"


class SlaStatus(str, Enum):
    ON_TRACK = "onTrack"
    AT_RISK = "atRisk"
    BREACHED = "breached"


class RuleDefinition(BaseModel):
    """
    One declarative rule record.

    Category-specific payload:
    - field_requirement: ``target_fields`` to mark required when the condition holds
    - visible_action: ``action_id`` and ``effect`` (show / hide)
    - sla: ``business_days`` offset applied when the condition holds
    - approval, message: condition only
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_id: str = Field(..., min_length=1)
    category: RuleCategory
    target_object: str = Field(default="Case", description="Object type the rule reads")
    condition: Any = Field(default=None, description="Tagged predicate record; None means always")
    message: Optional[str] = None
    severity: Severity = Severity.INFO
    active: bool = True
    order: int = 0

    target_fields: Tuple[str, ...] = ()
    action_id: Optional[str] = None
    effect: ActionEffect = ActionEffect.SHOW
    business_days: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def validate_payload(self):
        """Each category must carry the payload it needs."""
        if self.category == RuleCategory.FIELD_REQUIREMENT and not self.target_fields:
            raise ValueError(f"Rule {self.rule_id}: field_requirement rules need 'target_fields'")
        if self.category == RuleCategory.VISIBLE_ACTION and not self.action_id:
            raise ValueError(f"Rule {self.rule_id}: visible_action rules need 'action_id'")
        if self.category == RuleCategory.SLA and self.business_days is None:
            raise ValueError(f"Rule {self.rule_id}: sla rules need 'business_days'")
        if self.category == RuleCategory.MESSAGE and not self.message:
            raise ValueError(f"Rule {self.rule_id}: message rules need 'message'")
        return self


# ============================================================
# Results
# ============================================================

class RuleMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    message: str
    severity: Severity


class SlaResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    due_date: Optional[date] = None
    due_at: Optional[datetime] = Field(default=None, description="Due date at the business cutoff")
    status: SlaStatus = SlaStatus.ON_TRACK
    business_days: Optional[int] = None
    source: str = Field(default="none", description="override | rule:<id> | service_type | default | none")


class ApprovalResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    required: bool = False
    status: ApprovalStatus = ApprovalStatus.NONE
    triggering_rule: Optional[str] = None


class RuleResult(BaseModel):
    """Combined output of all rule categories for one snapshot."""

    model_config = ConfigDict(frozen=True)

    required_fields: Dict[str, bool] = Field(default_factory=dict)
    visible_actions: Tuple[str, ...] = Field(default=(), description="Sorted set of visible action ids")
    sla: SlaResult = Field(default_factory=SlaResult)
    approval: ApprovalResult = Field(default_factory=ApprovalResult)
    messages: List[RuleMessage] = Field(default_factory=list)

    @property
    def sla_status(self) -> SlaStatus:
        return self.sla.status

    @property
    def action_required(self) -> bool:
        return any(m.severity == Severity.ERROR for m in self.messages)

    def is_visible(self, action_id: str) -> bool:
        return action_id in self.visible_actions
