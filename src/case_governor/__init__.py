"""Case Data Governor

Cached, single-fetch/many-consumer distribution of case page data with
declarative business rule evaluation.
"""

__version__ = "1.0.0"

# Export models and errors first (no dependencies)
from case_governor.models import (
    BuildOptions, CaseSnapshot, EntityType, PageData, RelatedRecordSet, RuleResult,
)
from case_governor.errors import (
    AccessDeniedError,
    AggregationFailed,
    CaseGovernorError,
    NotFoundError,
    RuleConfigurationError,
)

# Export settings (models only)
from case_governor.config import (
    GovernorSettings,
    get_settings,
    reset_settings,
)

_LAZY = {
    "CaseDataGovernorService": "case_governor.service",
    "ContextStore": "case_governor.context",
    "PageDataAggregator": "case_governor.aggregator",
    "RuleEvaluator": "case_governor.rules",
    "RuleSet": "case_governor.rules",
    "DistributionHub": "case_governor.distribution",
    "ConsumerAdapter": "case_governor.distribution",
}


# Lazy import for the runtime components; they pull in httpx, redis and fastapi
def __getattr__(name):
    """Lazy import for runtime components."""
    if name in _LAZY:
        import importlib
        module = importlib.import_module(_LAZY[name])
        return getattr(module, name)
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    # Models
    "BuildOptions", "CaseSnapshot", "EntityType", "PageData", "RelatedRecordSet", "RuleResult",
    # Errors
    "AccessDeniedError", "AggregationFailed", "CaseGovernorError", "NotFoundError",
    "RuleConfigurationError",
    # Settings
    "GovernorSettings", "get_settings", "reset_settings",
    # Runtime (lazy loaded)
    "CaseDataGovernorService", "ContextStore", "PageDataAggregator", "RuleEvaluator", "RuleSet",
    "DistributionHub", "ConsumerAdapter",
]
