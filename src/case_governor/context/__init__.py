"""Context Store - cached, single-flight record reads."""

from case_governor.context.cache import CacheEntry, RecordCache
from case_governor.context.gateway import InMemoryRecordGateway, RecordGateway, WriteResult
from case_governor.context.store import ContextStore, StoreStats

__all__ = [
    "CacheEntry",
    "ContextStore",
    "InMemoryRecordGateway",
    "RecordCache",
    "RecordGateway",
    "StoreStats",
    "WriteResult",
]
