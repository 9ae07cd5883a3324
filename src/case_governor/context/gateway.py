"""Persistence boundary used by the Context Store.

The governor only reads. Writes are issued by page consumers through the same
gateway and are followed by a refresh request; the gateway exposes them so a
consumer and the store can share one persistence client.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from case_governor.models.records import EntityType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteResult:
    success: bool
    errors: List[str] = field(default_factory=list)


@runtime_checkable
class RecordGateway(Protocol):
    """Read/write interface supplied by the external persistence system.

    fetch() always takes a sequence of ids and returns the raw records that
    exist; ids with no record are simply absent from the result.
    """

    async def fetch(self, entity_type: EntityType, ids: Sequence[str]) -> List[Dict[str, Any]]:
        ...

    async def write(self, entity_type: EntityType, patch: Dict[str, Any]) -> WriteResult:
        ...


class InMemoryRecordGateway:
    """Dictionary-backed gateway for local development and tests.

    Usage:
        gateway = InMemoryRecordGateway({
            EntityType.CASE: {"500A": {"id": "500A", "status": "New"}},
        })
        records = await gateway.fetch(EntityType.CASE, ["500A"])
    """

    def __init__(
        self,
        records: Optional[Mapping[EntityType, Mapping[str, Dict[str, Any]]]] = None,
        latency: float = 0.0,
    ):
        self._records: Dict[EntityType, Dict[str, Dict[str, Any]]] = {
            entity_type: {} for entity_type in EntityType
        }
        for entity_type, by_id in (records or {}).items():
            for record_id, record in by_id.items():
                self._records[entity_type][record_id] = dict(record, id=record_id)
        self.latency = latency
        self.fetch_calls: List[tuple] = []
        self.write_calls: List[tuple] = []

    def put(self, entity_type: EntityType, record: Dict[str, Any]) -> None:
        self._records[entity_type][record["id"]] = dict(record)

    async def fetch(self, entity_type: EntityType, ids: Sequence[str]) -> List[Dict[str, Any]]:
        self.fetch_calls.append((entity_type, tuple(ids)))
        if self.latency:
            await asyncio.sleep(self.latency)
        store = self._records[entity_type]
        return [copy.deepcopy(store[i]) for i in ids if i in store]

    async def write(self, entity_type: EntityType, patch: Dict[str, Any]) -> WriteResult:
        self.write_calls.append((entity_type, dict(patch)))
        record_id = patch.get("id")
        if not record_id:
            return WriteResult(success=False, errors=["patch must include 'id'"])
        existing = self._records[entity_type].get(record_id)
        if existing is None:
            return WriteResult(success=False, errors=[f"{entity_type.value} {record_id} not found"])
        self._records[entity_type][record_id] = {**existing, **patch}
        logger.debug(f"Wrote {entity_type.value} {record_id}: {sorted(patch)}")
        return WriteResult(success=True)
