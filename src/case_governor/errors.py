"""Error taxonomy for the case data governor.

Fatal errors propagate to the caller:
- NotFoundError: the requested record does not exist
- AccessDeniedError: the caller may not read the record (no field values attached)
- AggregationFailed: the case snapshot itself could not be loaded
- PersistenceError: the persistence boundary failed at the transport level
- RuleConfigurationError: a rule record is malformed or references an unknown field
- HubStateError: illegal Distribution Hub transition

Non-fatal conditions are raised and caught internally, then logged:
- RuleEvaluationSkipped: one rule could not evaluate; treated as non-matching
- StaleDataDiscarded: a consumer received PageData older than what it applied
"""

from typing import Any, Dict, Optional


class CaseGovernorError(Exception):
    """Base exception with a stable error code for API responses."""

    code: str = "CG_INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details if details is not None else {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(CaseGovernorError):
    code = "CG_NOT_FOUND"

    def __init__(self, entity_type: str, record_id: str) -> None:
        super().__init__(
            f"{entity_type} {record_id} not found",
            details={"entity_type": entity_type, "record_id": record_id},
        )
        self.entity_type = entity_type
        self.record_id = record_id


class AccessDeniedError(CaseGovernorError):
    """Raised without any field data; only the type and id are reported."""

    code = "CG_ACCESS_DENIED"

    def __init__(self, entity_type: str, record_id: Optional[str] = None) -> None:
        target = f"{entity_type} {record_id}" if record_id else entity_type
        super().__init__(
            f"Read access denied for {target}",
            details={"entity_type": entity_type, "record_id": record_id},
        )
        self.entity_type = entity_type
        self.record_id = record_id


class PersistenceError(CaseGovernorError):
    code = "CG_PERSISTENCE_ERROR"


class AggregationFailed(CaseGovernorError):
    code = "CG_AGGREGATION_FAILED"

    def __init__(self, case_id: str, cause: BaseException) -> None:
        super().__init__(
            f"Could not build page data for case {case_id}: {cause}",
            details={"case_id": case_id, "cause": type(cause).__name__},
        )
        self.case_id = case_id
        self.cause = cause


class RuleConfigurationError(CaseGovernorError):
    code = "CG_RULE_CONFIGURATION"

    def __init__(self, message: str, rule_id: Optional[str] = None) -> None:
        super().__init__(message, details={"rule_id": rule_id})
        self.rule_id = rule_id


class HubStateError(CaseGovernorError):
    code = "CG_HUB_STATE"


class RuleEvaluationSkipped(CaseGovernorError):
    code = "CG_RULE_SKIPPED"

    def __init__(self, rule_id: str, reason: str) -> None:
        super().__init__(f"Rule {rule_id} skipped: {reason}", details={"rule_id": rule_id})
        self.rule_id = rule_id
        self.reason = reason


class StaleDataDiscarded(CaseGovernorError):
    code = "CG_STALE_DATA"

    def __init__(self, case_id: str, received: Any, applied: Any) -> None:
        super().__init__(
            f"Discarded page data for case {case_id}: received {received}, already applied {applied}",
            details={"case_id": case_id},
        )
        self.case_id = case_id
