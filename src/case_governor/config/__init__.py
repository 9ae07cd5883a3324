"""Configuration Module"""

from case_governor.config.settings import GovernorSettings, get_settings, reset_settings

__all__ = [
    "GovernorSettings",
    "get_settings",
    "reset_settings",
]
