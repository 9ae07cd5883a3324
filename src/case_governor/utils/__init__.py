"""Utility Functions"""

from case_governor.utils.resilience import (
    create_custom_retry,
    record_read_retry,
)

__all__ = [
    "create_custom_retry",
    "record_read_retry",
]
