"""Rule Evaluator - pure functions from a case snapshot to a RuleResult.

Evaluation never performs I/O and never reads the wall clock except through
the explicit ``now`` argument (or the injected clock when ``now`` is
omitted). Rules that cannot be evaluated against a snapshot are skipped,
logged and treated as non-matching; they never fail the whole evaluation.
"""

import logging
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from case_governor.errors import RuleEvaluationSkipped
from case_governor.models.page_data import RelatedRecordSet
from case_governor.models.records import ApprovalStatus, CaseSnapshot
from case_governor.models.rules import (
    ActionEffect,
    ApprovalResult,
    RuleCategory,
    RuleMessage,
    RuleResult,
    SlaResult,
    SlaStatus,
)
from case_governor.rules.calendar import BusinessCalendar
from case_governor.rules.config import CompiledRule, RuleSet
from case_governor.rules.expressions import ConditionUnevaluable, is_blank

logger = logging.getLogger(__name__)

_CARRIED_APPROVAL = (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def snapshot_values(snapshot: CaseSnapshot, related: Optional[RelatedRecordSet] = None) -> Dict[str, Any]:
    """Flatten a snapshot (plus derived values) into the mapping conditions read."""
    values = {name: getattr(snapshot, name) for name in type(snapshot).model_fields}
    values["is_open"] = snapshot.is_open
    values["open_task_count"] = len(related.open_tasks) if related is not None else 0
    return values


class RuleEvaluator:
    """
    Evaluates a RuleSet against case snapshots.

    Usage:
        evaluator = RuleEvaluator(RuleSet.from_records(records, sla_policy=policy))
        result = evaluator.evaluate(snapshot, related, now=datetime.now(timezone.utc))
        if result.approval.required:
            ...
    """

    def __init__(
        self,
        rule_set: RuleSet,
        calendar: Optional[BusinessCalendar] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.rule_set = rule_set
        self.policy = rule_set.sla_policy
        self.calendar = calendar or self.policy.calendar
        self.tz = timezone.utc if self.policy.timezone.upper() == "UTC" else ZoneInfo(self.policy.timezone)
        self._clock = clock

    # ========================================================================
    # Combined evaluation
    # ========================================================================

    def evaluate(
        self,
        snapshot: CaseSnapshot,
        related: Optional[RelatedRecordSet] = None,
        now: Optional[datetime] = None,
    ) -> RuleResult:
        """Run every rule category against one snapshot."""
        values = snapshot_values(snapshot, related)
        now = now or self._clock()
        requirements = self._requirement_matches(values)

        return RuleResult(
            required_fields=self._field_requirements(requirements),
            visible_actions=self._visible_actions(values),
            sla=self.evaluate_sla(snapshot, now, related),
            approval=self._approval(snapshot, values),
            messages=self._messages(values, requirements),
        )

    # ========================================================================
    # Rule categories
    # ========================================================================

    def evaluate_field_requirements(
        self, snapshot: CaseSnapshot, related: Optional[RelatedRecordSet] = None
    ) -> Dict[str, bool]:
        """Map every rule-targeted field to whether it is required.

        Several rules may target the same field; the result is their OR.
        """
        values = snapshot_values(snapshot, related)
        return self._field_requirements(self._requirement_matches(values))

    def evaluate_visible_actions(
        self, snapshot: CaseSnapshot, related: Optional[RelatedRecordSet] = None
    ) -> Tuple[str, ...]:
        """Visible action ids, sorted.

        Rules run in (order, declaration) order and each one shows or hides an
        action; the last matching rule for an action id wins.
        """
        return self._visible_actions(snapshot_values(snapshot, related))

    def evaluate_sla(
        self,
        snapshot: CaseSnapshot,
        now: datetime,
        related: Optional[RelatedRecordSet] = None,
    ) -> SlaResult:
        """Compute the due date and compliance status at ``now``.

        Precedence: persisted sla_due_date, first matching sla rule, the
        service-type table, then the policy default. Without any of these (or
        without a creation time to count from) no due date is reported.
        """
        if snapshot.sla_due_date is not None:
            return self._sla_status(snapshot, snapshot.sla_due_date, now, None, "override")

        business_days, source = self._sla_offset(snapshot, related)
        if business_days is None:
            return SlaResult()

        if snapshot.created_at is None:
            logger.debug(f"Case {snapshot.id} has no created_at; SLA due date not computed")
            return SlaResult(business_days=business_days, source=source)

        start = self._local(snapshot.created_at).date()
        due_date = self.calendar.add_business_days(start, business_days)
        return self._sla_status(snapshot, due_date, now, business_days, source)

    def evaluate_approval(
        self, snapshot: CaseSnapshot, related: Optional[RelatedRecordSet] = None
    ) -> ApprovalResult:
        """Approval is required if any approval rule matches.

        triggering_rule is the first match in evaluation order.
        """
        return self._approval(snapshot, snapshot_values(snapshot, related))

    def evaluate_messages(
        self, snapshot: CaseSnapshot, related: Optional[RelatedRecordSet] = None
    ) -> List[RuleMessage]:
        values = snapshot_values(snapshot, related)
        return self._messages(values, self._requirement_matches(values))

    # ========================================================================
    # Internals
    # ========================================================================

    def _matches(self, rule: CompiledRule, values: Dict[str, Any]) -> bool:
        try:
            return bool(rule.condition.evaluate(values))
        except (ConditionUnevaluable, ValueError, TypeError) as e:
            skipped = RuleEvaluationSkipped(rule.rule_id, str(e))
            logger.warning(f"[RuleEvaluator] {skipped.message} (case {values.get('id')})")
            return False

    def _requirement_matches(self, values: Dict[str, Any]) -> List[Tuple[CompiledRule, bool]]:
        return [
            (rule, self._matches(rule, values))
            for rule in self.rule_set.for_category(RuleCategory.FIELD_REQUIREMENT)
        ]

    def _field_requirements(self, requirements: List[Tuple[CompiledRule, bool]]) -> Dict[str, bool]:
        required: Dict[str, bool] = {}
        for rule, matched in requirements:
            for field_name in rule.definition.target_fields:
                required[field_name] = required.get(field_name, False) or matched
        return required

    def _visible_actions(self, values: Dict[str, Any]) -> Tuple[str, ...]:
        state: Dict[str, bool] = {}
        for rule in self.rule_set.for_category(RuleCategory.VISIBLE_ACTION):
            if self._matches(rule, values):
                state[rule.definition.action_id] = rule.definition.effect == ActionEffect.SHOW
        return tuple(sorted(action for action, visible in state.items() if visible))

    def _approval(self, snapshot: CaseSnapshot, values: Dict[str, Any]) -> ApprovalResult:
        for rule in self.rule_set.for_category(RuleCategory.APPROVAL):
            if self._matches(rule, values):
                status = snapshot.approval_status
                if status not in _CARRIED_APPROVAL:
                    status = ApprovalStatus.PENDING
                return ApprovalResult(required=True, status=status, triggering_rule=rule.rule_id)
        return ApprovalResult()

    def _messages(
        self, values: Dict[str, Any], requirements: List[Tuple[CompiledRule, bool]]
    ) -> List[RuleMessage]:
        messages: List[RuleMessage] = []

        # Requirement rules report only while a required field is still blank
        for rule, matched in requirements:
            blank = [f for f in rule.definition.target_fields if is_blank(values.get(f))]
            if not blank or not matched:
                continue
            text = rule.definition.message or f"Required: {', '.join(blank)}"
            messages.append(RuleMessage(rule_id=rule.rule_id, message=text, severity=rule.definition.severity))

        for rule in self.rule_set.for_category(RuleCategory.MESSAGE):
            if self._matches(rule, values):
                messages.append(
                    RuleMessage(
                        rule_id=rule.rule_id,
                        message=rule.definition.message,
                        severity=rule.definition.severity,
                    )
                )
        return messages

    def _sla_offset(
        self, snapshot: CaseSnapshot, related: Optional[RelatedRecordSet]
    ) -> Tuple[Optional[int], str]:
        values = snapshot_values(snapshot, related)
        for rule in self.rule_set.for_category(RuleCategory.SLA):
            if self._matches(rule, values):
                return rule.definition.business_days, f"rule:{rule.rule_id}"

        table = self.policy.business_days_by_service_type
        if snapshot.service_type in table:
            return table[snapshot.service_type], "service_type"

        if self.policy.default_business_days is not None:
            return self.policy.default_business_days, "default"

        return None, "none"

    def _sla_status(
        self,
        snapshot: CaseSnapshot,
        due_date: date,
        now: datetime,
        business_days: Optional[int],
        source: str,
    ) -> SlaResult:
        due_at = datetime.combine(due_date, time(hour=self.policy.cutoff_hour), tzinfo=self.tz)
        now = self._local(now)

        if not snapshot.is_open:
            status = SlaStatus.ON_TRACK
        elif now > due_at:
            status = SlaStatus.BREACHED
        elif now >= due_at - self.policy.at_risk_lead:
            status = SlaStatus.AT_RISK
        else:
            status = SlaStatus.ON_TRACK

        return SlaResult(
            due_date=due_date,
            due_at=due_at,
            status=status,
            business_days=business_days,
            source=source,
        )

    def _local(self, moment: datetime) -> datetime:
        """Express a moment in the business timezone; naive values are taken as local."""
        if moment.tzinfo is None:
            return moment.replace(tzinfo=self.tz)
        return moment.astimezone(self.tz)
