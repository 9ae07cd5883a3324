"""Context Store - the single source of truth for record reads.

Reads go cache first; misses are fetched from the persistence gateway in one
bulk call and stored with the entity type's TTL. Concurrent readers of the
same uncached key join the fetch already in flight instead of starting
another one (single-flight per key).

All cache mutation happens here, between suspension points, on the event
loop thread; the Aggregator and the hub only read through this class.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from case_governor.auth.access import AccessPolicy
from case_governor.auth.request_context import RequestContext
from case_governor.config.settings import GovernorSettings, get_settings
from case_governor.context.cache import RecordCache
from case_governor.context.gateway import RecordGateway, WriteResult
from case_governor.errors import AccessDeniedError, NotFoundError, PersistenceError
from case_governor.models.records import EntityType, RecordModel, parse_entity

logger = logging.getLogger(__name__)

CacheKey = Tuple[EntityType, str]


@dataclass
class StoreStats:
    hits: int = 0
    misses: int = 0
    joined: int = 0
    bulk_fetches: int = 0


def _consume_exception(future: asyncio.Future) -> None:
    # Mark the exception retrieved; joiners may not exist for this key
    if not future.cancelled():
        future.exception()


class ContextStore:
    """Cached, access-checked reads of case-page entities.

    Usage:
        store = ContextStore(gateway=RecordServiceClient(), settings=settings)
        case = await store.get_by_id(EntityType.CASE, "500A", context=ctx)
        contacts = await store.get_many_by_ids(EntityType.CONTACT, {"003A", "003B"})
        store.invalidate(EntityType.CASE, "500A")
    """

    def __init__(
        self,
        gateway: RecordGateway,
        settings: Optional[GovernorSettings] = None,
        access_policy: Optional[AccessPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.access_policy = access_policy or AccessPolicy.allow_all()
        self._cache: RecordCache[RecordModel] = RecordCache(clock=clock)
        self._inflight: Dict[CacheKey, asyncio.Future] = {}
        self.stats = StoreStats()

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_by_id(
        self,
        entity_type: EntityType,
        record_id: str,
        context: Optional[RequestContext] = None,
    ) -> RecordModel:
        """Return one record.

        Raises:
            AccessDeniedError: If the caller may not read this entity type
            NotFoundError: If the backing store has no such record
        """
        self._check_access(context, entity_type, record_id)
        records = await self._load(entity_type, {record_id})
        record = records.get(record_id)
        if record is None:
            raise NotFoundError(entity_type.value, record_id)
        return record

    async def get_many_by_ids(
        self,
        entity_type: EntityType,
        ids: Iterable[str],
        context: Optional[RequestContext] = None,
    ) -> Dict[str, RecordModel]:
        """Return every existing record among ``ids``; missing ids are absent.

        Raises:
            AccessDeniedError: If the caller may not read this entity type
        """
        self._check_access(context, entity_type)
        wanted = {i for i in ids if i}
        if not wanted:
            return {}
        return await self._load(entity_type, wanted)

    # ========================================================================
    # Invalidation and write-through
    # ========================================================================

    def invalidate(self, entity_type: EntityType, record_id: str) -> None:
        """Drop the cache entry and detach any fetch in flight; idempotent."""
        key = (entity_type, record_id)
        self._cache.invalidate(key)
        self._inflight.pop(key, None)
        logger.debug(f"[ContextStore] Invalidated {entity_type.value} {record_id}")

    def invalidate_many(self, entity_type: EntityType, ids: Iterable[str]) -> None:
        for record_id in ids:
            if record_id:
                self.invalidate(entity_type, record_id)

    def clear(self) -> None:
        self._cache.clear()
        self._inflight.clear()

    async def write_through(self, entity_type: EntityType, patch: dict) -> WriteResult:
        """Write via the gateway and invalidate the record on success.

        Used by page consumers; the governor itself never writes.
        """
        result = await self.gateway.write(entity_type, patch)
        record_id = patch.get("id")
        if result.success and record_id:
            self.invalidate(entity_type, record_id)
        elif not result.success:
            logger.info(f"[ContextStore] Write to {entity_type.value} {record_id} rejected: {result.errors}")
        return result

    def is_cached(self, entity_type: EntityType, record_id: str) -> bool:
        return (entity_type, record_id) in self._cache

    def peek(self, entity_type: EntityType, record_id: str) -> Optional[RecordModel]:
        """Cached value without fetching or access checks; for invalidation planning only."""
        return self._cache.get((entity_type, record_id))

    # ========================================================================
    # Internals
    # ========================================================================

    def _check_access(
        self,
        context: Optional[RequestContext],
        entity_type: EntityType,
        record_id: Optional[str] = None,
    ) -> None:
        if not self.access_policy.can_read(context, entity_type):
            raise AccessDeniedError(entity_type.value, record_id)

    async def _load(self, entity_type: EntityType, ids: Set[str]) -> Dict[str, RecordModel]:
        result: Dict[str, RecordModel] = {}
        joined: Dict[str, asyncio.Future] = {}
        missing: List[str] = []

        for record_id in sorted(ids):
            key = (entity_type, record_id)
            cached = self._cache.get(key)
            if cached is not None:
                self.stats.hits += 1
                result[record_id] = cached
                continue
            inflight = self._inflight.get(key)
            if inflight is not None:
                self.stats.joined += 1
                joined[record_id] = inflight
                continue
            missing.append(record_id)

        if missing:
            self.stats.misses += len(missing)
            fetched = await self._fetch(entity_type, missing)
            result.update(fetched)

        for record_id, future in joined.items():
            # shield: a cancelled joiner must not cancel the owner's fetch
            record = await asyncio.shield(future)
            if record is not None:
                result[record_id] = record

        return result

    async def _fetch(self, entity_type: EntityType, missing: List[str]) -> Dict[str, RecordModel]:
        """Issue one bulk fetch for ``missing`` and publish the results to joiners."""
        loop = asyncio.get_running_loop()
        futures: Dict[str, asyncio.Future] = {}
        generations: Dict[str, int] = {}

        # Register before the first await so concurrent readers can join
        for record_id in missing:
            key = (entity_type, record_id)
            future = loop.create_future()
            future.add_done_callback(_consume_exception)
            futures[record_id] = future
            generations[record_id] = self._cache.track(key)
            self._inflight[key] = future

        self.stats.bulk_fetches += 1
        logger.debug(f"[ContextStore] Bulk fetch {entity_type.value}: {len(missing)} ids")

        try:
            try:
                raw_records = await self.gateway.fetch(entity_type, missing)
                records = self._parse(entity_type, raw_records)
            except Exception as exc:
                for future in futures.values():
                    if not future.done():
                        future.set_exception(exc)
                raise
            except BaseException:
                for future in futures.values():
                    future.cancel()
                raise
            finally:
                for record_id, future in futures.items():
                    key = (entity_type, record_id)
                    if self._inflight.get(key) is future:
                        del self._inflight[key]

            ttl = self.settings.ttl_for(entity_type)
            result: Dict[str, RecordModel] = {}
            for record_id in missing:
                record = records.get(record_id)
                if record is not None:
                    self._cache.put((entity_type, record_id), record, ttl, generation=generations[record_id])
                    result[record_id] = record
                futures[record_id].set_result(record)
            return result
        finally:
            for record_id in missing:
                self._cache.release((entity_type, record_id))

    @staticmethod
    def _parse(entity_type: EntityType, raw_records: List[dict]) -> Dict[str, RecordModel]:
        records: Dict[str, RecordModel] = {}
        for payload in raw_records:
            try:
                record = parse_entity(entity_type, payload)
            except ValidationError as e:
                record_id = payload.get("id") if isinstance(payload, dict) else None
                raise PersistenceError(
                    f"Malformed {entity_type.value} record {record_id}",
                    details={"errors": e.error_count()},
                ) from e
            records[record.id] = record
        return records
