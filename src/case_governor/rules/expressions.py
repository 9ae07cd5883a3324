"""Tagged predicate records and their interpreter.

A condition is a plain record tagged by ``op``:

    {"op": "eq", "field": "service_type", "value": "New Service"}
    {"op": "gt", "field": "value", "value": 50000}
    {"op": "lt", "field": "service_date", "field_ref": "sla_due_date"}
    {"op": "in", "field": "priority", "value": ["High", "Critical"]}
    {"op": "is_blank", "field": "asset_id"}
    {"op": "all", "conditions": [...]}   {"op": "any", "conditions": [...]}
    {"op": "not", "condition": {...}}

``None`` (or ``{"op": "always"}``) matches everything.

Ordered comparisons and ``contains`` cannot evaluate against a missing
(None) operand or mismatched types; they raise ConditionUnevaluable, which
the evaluator turns into a skipped, non-matching rule.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple

from case_governor.errors import RuleConfigurationError


class ConditionUnevaluable(Exception):
    """A condition could not be evaluated against this snapshot."""


_ORDERED: Dict[str, Callable[[Any, Any], bool]] = {
    "gt": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
}

_EQUALITY = {"eq", "ne"}
_MEMBERSHIP = {"in", "not_in"}
_UNARY = {"is_blank", "not_blank"}


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _coerce(field_value: Any, operand: Any) -> Any:
    """Bring a configured operand to the field's type where that is unambiguous."""
    operand = _plain(operand)
    if isinstance(operand, str):
        try:
            if isinstance(field_value, datetime):
                return datetime.fromisoformat(operand)
            if isinstance(field_value, date):
                return date.fromisoformat(operand)
        except ValueError as e:
            raise ConditionUnevaluable(f"{operand!r} is not an ISO date") from e
        if isinstance(field_value, Decimal):
            try:
                return Decimal(operand)
            except InvalidOperation:
                return operand
    if isinstance(field_value, Decimal) and isinstance(operand, float):
        return Decimal(str(operand))
    return operand


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (tuple, list, set, frozenset, dict)):
        return not value
    return False


class Condition:
    """Base class for compiled conditions."""

    def evaluate(self, values: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    def referenced_fields(self) -> FrozenSet[str]:
        return frozenset()


@dataclass(frozen=True)
class Always(Condition):
    def evaluate(self, values: Mapping[str, Any]) -> bool:
        return True


@dataclass(frozen=True)
class Predicate(Condition):
    op: str
    field: str
    value: Any = None
    field_ref: Optional[str] = None

    def referenced_fields(self) -> FrozenSet[str]:
        if self.field_ref:
            return frozenset({self.field, self.field_ref})
        return frozenset({self.field})

    def _operand(self, values: Mapping[str, Any]) -> Any:
        if self.field_ref:
            return _plain(values.get(self.field_ref))
        return self.value

    def evaluate(self, values: Mapping[str, Any]) -> bool:
        left = _plain(values.get(self.field))

        if self.op == "is_blank":
            return is_blank(left)
        if self.op == "not_blank":
            return not is_blank(left)

        if self.op in _MEMBERSHIP:
            options = [_coerce(left, v) for v in (self.value or ())]
            found = left in options
            return found if self.op == "in" else not found

        right = self._operand(values)
        if self.field_ref is None:
            right = _coerce(left, right)

        if self.op in _EQUALITY:
            return (left == right) if self.op == "eq" else (left != right)

        if left is None or right is None:
            missing = self.field if left is None else (self.field_ref or "value")
            raise ConditionUnevaluable(f"'{missing}' is empty for '{self.op}'")

        if self.op == "contains":
            try:
                return right in left
            except TypeError as e:
                raise ConditionUnevaluable(f"'{self.field}' does not support contains: {e}") from e

        try:
            return _ORDERED[self.op](left, right)
        except TypeError as e:
            raise ConditionUnevaluable(f"cannot compare '{self.field}' with {right!r}: {e}") from e


@dataclass(frozen=True)
class AllOf(Condition):
    conditions: Tuple[Condition, ...]

    def evaluate(self, values: Mapping[str, Any]) -> bool:
        return all(c.evaluate(values) for c in self.conditions)

    def referenced_fields(self) -> FrozenSet[str]:
        return frozenset().union(*(c.referenced_fields() for c in self.conditions))


@dataclass(frozen=True)
class AnyOf(Condition):
    conditions: Tuple[Condition, ...]

    def evaluate(self, values: Mapping[str, Any]) -> bool:
        return any(c.evaluate(values) for c in self.conditions)

    def referenced_fields(self) -> FrozenSet[str]:
        return frozenset().union(*(c.referenced_fields() for c in self.conditions))


@dataclass(frozen=True)
class Not(Condition):
    condition: Condition

    def evaluate(self, values: Mapping[str, Any]) -> bool:
        return not self.condition.evaluate(values)

    def referenced_fields(self) -> FrozenSet[str]:
        return self.condition.referenced_fields()


ALWAYS = Always()

SUPPORTED_OPS = frozenset(
    set(_ORDERED) | _EQUALITY | _MEMBERSHIP | _UNARY | {"contains", "all", "any", "not", "always"}
)


def parse_condition(raw: Any, rule_id: Optional[str] = None) -> Condition:
    """Compile a tagged predicate record.

    Raises:
        RuleConfigurationError: If the record is malformed
    """
    if raw is None:
        return ALWAYS
    if not isinstance(raw, Mapping):
        raise RuleConfigurationError(f"Condition must be a mapping, got {type(raw).__name__}", rule_id)

    op = raw.get("op")
    if op not in SUPPORTED_OPS:
        raise RuleConfigurationError(f"Unsupported condition op: {op!r}", rule_id)

    if op == "always":
        return ALWAYS

    if op in ("all", "any"):
        children = raw.get("conditions")
        if not isinstance(children, (list, tuple)) or not children:
            raise RuleConfigurationError(f"'{op}' needs a non-empty 'conditions' list", rule_id)
        compiled = tuple(parse_condition(c, rule_id) for c in children)
        return AllOf(compiled) if op == "all" else AnyOf(compiled)

    if op == "not":
        return Not(parse_condition(raw.get("condition"), rule_id))

    field = raw.get("field")
    if not isinstance(field, str) or not field:
        raise RuleConfigurationError(f"'{op}' needs a 'field'", rule_id)

    if op in _UNARY:
        return Predicate(op=op, field=field)

    if op in _MEMBERSHIP:
        options = raw.get("value")
        if not isinstance(options, (list, tuple, set, frozenset)):
            raise RuleConfigurationError(f"'{op}' needs a list 'value'", rule_id)
        return Predicate(op=op, field=field, value=tuple(options))

    field_ref = raw.get("field_ref")
    if field_ref is None and "value" not in raw:
        raise RuleConfigurationError(f"'{op}' needs 'value' or 'field_ref'", rule_id)
    return Predicate(op=op, field=field, value=raw.get("value"), field_ref=field_ref)
