from datetime import date, timedelta

import pytest
from pydantic import ValidationError

from case_governor.config import GovernorSettings, get_settings, reset_settings
from case_governor.models import EntityType
from case_governor.rules import SlaPolicy


def test_defaults():
    settings = GovernorSettings()

    assert settings.cache_ttl_seconds == 30
    assert settings.consumer_wait_seconds == 1.5
    assert settings.channel_name == "case-data-channel"
    assert settings.sla_at_risk_lead == timedelta(hours=24)


def test_from_env(monkeypatch):
    monkeypatch.setenv("CASE_GOVERNOR_CACHE_TTL_SECONDS", "12")
    monkeypatch.setenv("CASE_GOVERNOR_CACHE_TTL_QUOTE", "4")
    monkeypatch.setenv("CASE_GOVERNOR_CACHE_TTL_TASK", "soon")
    monkeypatch.setenv("CASE_GOVERNOR_HOLIDAYS", "2024-12-25, not-a-date,2024-12-26,")
    monkeypatch.setenv("CASE_GOVERNOR_TIMEZONE", "America/Chicago")

    settings = GovernorSettings.from_env()

    assert settings.ttl_for(EntityType.QUOTE) == 4
    assert settings.ttl_for(EntityType.TASK) == 12
    assert settings.ttl_for(EntityType.CASE) == 12
    assert settings.holidays == frozenset({date(2024, 12, 25), date(2024, 12, 26)})
    assert settings.timezone == "America/Chicago"


def test_explicit_overrides_win(monkeypatch):
    monkeypatch.setenv("CASE_GOVERNOR_CONSUMER_WAIT_SECONDS", "3")

    assert GovernorSettings.from_env(consumer_wait_seconds=0.2).consumer_wait_seconds == 0.2


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        GovernorSettings(cache_ttl_overrides={EntityType.CASE: 0})
    with pytest.raises(ValidationError):
        GovernorSettings(sla_cutoff_hour=24)


def test_get_settings_is_a_singleton(monkeypatch):
    monkeypatch.setenv("CASE_GOVERNOR_CHANNEL_NAME", "pages")

    first = get_settings()

    assert get_settings() is first
    assert first.channel_name == "pages"
    reset_settings()
    assert get_settings() is not first


def test_sla_policy_from_settings():
    settings = GovernorSettings(sla_cutoff_hour=12, sla_at_risk_hours=4, holidays=[date(2024, 3, 4)])

    policy = SlaPolicy.from_settings(settings, default_business_days=2)

    assert policy.cutoff_hour == 12
    assert policy.at_risk_lead == timedelta(hours=4)
    assert policy.default_business_days == 2
    assert policy.calendar.is_holiday(date(2024, 3, 4))
