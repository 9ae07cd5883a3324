"""Governor settings.

Settings are driven by environment variables so the same code runs under
docker-compose, Kubernetes and local development without changes. Explicit
keyword arguments override the environment.

Environment Variables:
    CASE_GOVERNOR_CACHE_TTL_SECONDS: Default cache TTL (default: 30)
    CASE_GOVERNOR_CACHE_TTL_<ENTITY>: Per-entity override, e.g. CASE_GOVERNOR_CACHE_TTL_QUOTE=10
    CASE_GOVERNOR_CONSUMER_WAIT_SECONDS: Consumer wait before fallback (default: 1.5)
    CASE_GOVERNOR_CHANNEL_NAME: Broadcast topic name (default: "case-data-channel")
    CASE_GOVERNOR_RECORD_SERVICE_URL: Record service base URL
    CASE_GOVERNOR_RECORD_SERVICE_TIMEOUT: Record service timeout in seconds (default: 30)
    CASE_GOVERNOR_SLA_CUTOFF_HOUR: Hour of day an SLA due date falls due (default: 17)
    CASE_GOVERNOR_SLA_AT_RISK_HOURS: Lead time before due that counts as at risk (default: 24)
    CASE_GOVERNOR_TIMEZONE: Business timezone (default: "UTC")
    CASE_GOVERNOR_HOLIDAYS: Comma-separated ISO dates
"""

import logging
import os
from datetime import date, timedelta
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, Field, field_validator

from case_governor.models.records import EntityType

logger = logging.getLogger(__name__)

ENV_PREFIX = "CASE_GOVERNOR_"


def _parse_holidays(raw: str) -> FrozenSet[date]:
    holidays = set()
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            holidays.add(date.fromisoformat(item))
        except ValueError:
            logger.warning(f"Ignoring invalid holiday date in {ENV_PREFIX}HOLIDAYS: {item}")
    return frozenset(holidays)


class GovernorSettings(BaseModel):
    """Runtime configuration for the Context Store, evaluator and distribution layer."""

    cache_ttl_seconds: float = Field(default=30.0, gt=0)
    cache_ttl_overrides: Dict[EntityType, float] = Field(default_factory=dict)

    consumer_wait_seconds: float = Field(default=1.5, gt=0)
    channel_name: str = "case-data-channel"

    record_service_url: str = "http://record-service:8000"
    record_service_timeout: float = 30.0

    sla_cutoff_hour: int = Field(default=17, ge=0, le=23)
    sla_at_risk_hours: float = Field(default=24.0, ge=0)
    timezone: str = "UTC"
    holidays: FrozenSet[date] = Field(default_factory=frozenset)

    @field_validator("cache_ttl_overrides")
    @classmethod
    def validate_overrides(cls, value):
        for entity_type, ttl in value.items():
            if ttl <= 0:
                raise ValueError(f"TTL for {entity_type} must be positive")
        return value

    @property
    def sla_at_risk_lead(self) -> timedelta:
        return timedelta(hours=self.sla_at_risk_hours)

    def ttl_for(self, entity_type: EntityType) -> float:
        return self.cache_ttl_overrides.get(entity_type, self.cache_ttl_seconds)

    @classmethod
    def from_env(cls, **overrides) -> "GovernorSettings":
        """Build settings from CASE_GOVERNOR_* environment variables."""
        values = {}

        simple = {
            "cache_ttl_seconds": "CACHE_TTL_SECONDS",
            "consumer_wait_seconds": "CONSUMER_WAIT_SECONDS",
            "channel_name": "CHANNEL_NAME",
            "record_service_url": "RECORD_SERVICE_URL",
            "record_service_timeout": "RECORD_SERVICE_TIMEOUT",
            "sla_cutoff_hour": "SLA_CUTOFF_HOUR",
            "sla_at_risk_hours": "SLA_AT_RISK_HOURS",
            "timezone": "TIMEZONE",
        }
        for field_name, env_key in simple.items():
            env_value = os.getenv(ENV_PREFIX + env_key)
            if env_value:
                values[field_name] = env_value

        ttl_overrides = {}
        for entity_type in EntityType:
            env_key = f"{ENV_PREFIX}CACHE_TTL_{entity_type.value.upper()}"
            env_ttl = os.getenv(env_key)
            if env_ttl:
                try:
                    ttl_overrides[entity_type] = float(env_ttl)
                except ValueError:
                    logger.warning(f"Invalid TTL in {env_key}: {env_ttl}")
        if ttl_overrides:
            values["cache_ttl_overrides"] = ttl_overrides

        holidays = os.getenv(ENV_PREFIX + "HOLIDAYS")
        if holidays:
            values["holidays"] = _parse_holidays(holidays)

        values.update(overrides)
        settings = cls(**values)
        logger.info(
            f"GovernorSettings loaded: ttl={settings.cache_ttl_seconds}s, "
            f"consumer_wait={settings.consumer_wait_seconds}s, "
            f"channel={settings.channel_name}, holidays={len(settings.holidays)}"
        )
        return settings


# Singleton instance for global access
_settings_instance: Optional[GovernorSettings] = None


def get_settings() -> GovernorSettings:
    """Get or create the process-wide GovernorSettings instance."""
    global _settings_instance

    if _settings_instance is None:
        _settings_instance = GovernorSettings.from_env()

    return _settings_instance


def reset_settings():
    """Reset the process-wide settings (used by tests and reconfiguration)."""
    global _settings_instance
    _settings_instance = None
    logger.warning("GovernorSettings instance reset")
