"""Rule Evaluator - declarative business rules over case snapshots."""

from case_governor.rules.calendar import BusinessCalendar
from case_governor.rules.config import CompiledRule, RuleSet, SlaPolicy
from case_governor.rules.evaluator import RuleEvaluator, snapshot_values
from case_governor.rules.expressions import ConditionUnevaluable, parse_condition

__all__ = [
    "BusinessCalendar",
    "CompiledRule",
    "ConditionUnevaluable",
    "RuleEvaluator",
    "RuleSet",
    "SlaPolicy",
    "parse_condition",
    "snapshot_values",
]
