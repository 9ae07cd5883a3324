"""Aggregator - builds one complete PageData per case.

The case snapshot is read first; related-record sections are then loaded in
parallel through the Context Store. A failed case read fails the whole
build (AggregationFailed). A failed related section degrades: it is
represented as empty and listed in unavailable_sections.

Concurrent builds of the same case with the same options for callers with
the same read permissions share one in-flight build (single-flight per
case). Builds of one case are serialized so that their publication stamps
follow build order.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple

from case_governor.auth.request_context import RequestContext
from case_governor.context.store import ContextStore
from case_governor.errors import AggregationFailed, CaseGovernorError
from case_governor.models.page_data import BuildOptions, PageData, RelatedRecordSet, RelatedSection
from case_governor.models.records import AccountRole, CaseSnapshot, EntityType
from case_governor.rules.evaluator import RuleEvaluator

logger = logging.getLogger(__name__)

BuildKey = Tuple[str, BuildOptions, FrozenSet[EntityType]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ids(*values) -> List[str]:
    """Non-empty ids, de-duplicated, in first-seen order."""
    seen: Dict[str, None] = {}
    for value in values:
        if isinstance(value, (tuple, list)):
            for item in value:
                if item:
                    seen.setdefault(item, None)
        elif value:
            seen.setdefault(value, None)
    return list(seen)


def section_targets(snapshot: CaseSnapshot) -> Dict[RelatedSection, Tuple[EntityType, List[str]]]:
    """Entity type and record ids behind each related section of a case."""
    return {
        RelatedSection.ACCOUNTS: (
            EntityType.ACCOUNT,
            _ids(snapshot.client_id, snapshot.location_id, snapshot.vendor_id),
        ),
        RelatedSection.CONTACT: (EntityType.CONTACT, _ids(snapshot.contact_id)),
        RelatedSection.ASSET: (EntityType.ASSET, _ids(snapshot.asset_id)),
        RelatedSection.TASKS: (EntityType.TASK, _ids(snapshot.task_ids)),
        RelatedSection.RELATED_CASES: (
            EntityType.CASE,
            _ids(snapshot.parent_id, snapshot.related_case_ids),
        ),
        RelatedSection.QUOTES: (EntityType.QUOTE, _ids(snapshot.quote_id, snapshot.quote_ids)),
        RelatedSection.WORK_ORDERS: (
            EntityType.WORK_ORDER,
            _ids(snapshot.work_order_id, snapshot.work_order_ids),
        ),
    }


def parse_section(raw: Optional[str]) -> Optional[RelatedSection]:
    """Map a refresh section name to a RelatedSection; None means full reload."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, RelatedSection):
        return raw
    try:
        return RelatedSection(raw.lower())
    except ValueError:
        logger.warning(f"Unknown refresh section '{raw}', treating as full reload")
        return None


class PublishTimeline:
    """Issues (generated_at, sequence) stamps that strictly increase per case.

    The wall clock may stand still or step backwards between builds; stamps
    never do. One timeline is shared by every producer of PageData for a
    page so that hub and fallback builds are mutually ordered.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._last: Dict[str, Tuple[datetime, int]] = {}

    def stamp(self, case_id: str) -> Tuple[datetime, int]:
        now = self._clock()
        last = self._last.get(case_id)
        if last is None:
            stamp = (now, 1)
        else:
            last_at, last_seq = last
            if now <= last_at:
                now = last_at + timedelta(microseconds=1)
            stamp = (now, last_seq + 1)
        self._last[case_id] = stamp
        return stamp

    def last(self, case_id: str) -> Optional[Tuple[datetime, int]]:
        return self._last.get(case_id)


class PageDataAggregator:
    """
    Builds PageData for a case from the Context Store and the Rule Evaluator.

    Usage:
        aggregator = PageDataAggregator(store, evaluator)
        page = await aggregator.build_page_data("500A", context=ctx)
        if page.related_records.is_degraded:
            ...
    """

    def __init__(
        self,
        store: ContextStore,
        evaluator: RuleEvaluator,
        timeline: Optional[PublishTimeline] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.evaluator = evaluator
        self.timeline = timeline or PublishTimeline(clock=clock)
        self._clock = clock
        self._inflight: Dict[BuildKey, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self.builds_started = 0

    async def build_page_data(
        self,
        case_id: str,
        options: Optional[BuildOptions] = None,
        context: Optional[RequestContext] = None,
        join_inflight: bool = True,
    ) -> PageData:
        """Build (or join an in-flight build of) the PageData for ``case_id``.

        Args:
            case_id: Case to build
            options: Which parts to include; defaults to everything
            context: Caller identity for access checks
            join_inflight: False forces a fresh build, e.g. after invalidation

        Raises:
            AggregationFailed: If the case snapshot could not be loaded
        """
        options = options or BuildOptions()
        key: BuildKey = (case_id, options, self.store.access_policy.readable_types(context))

        existing = self._inflight.get(key)
        if join_inflight and existing is not None:
            logger.debug(f"[Aggregator] Joining in-flight build for case {case_id}")
            return await asyncio.shield(existing)

        task = asyncio.ensure_future(self._build_serialized(case_id, options, context))
        self._inflight[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return await asyncio.shield(task)

    def invalidate_section(self, case_id: str, section: Optional[RelatedSection]) -> None:
        """Invalidate the cached records a refresh of ``section`` depends on.

        The case record itself is always invalidated, except for a
        rules-only refresh. A full reload (``section`` None) also drops
        every related record the cached snapshot points at.
        """
        if section == RelatedSection.RULES:
            return

        snapshot = self.store.peek(EntityType.CASE, case_id)
        self.store.invalidate(EntityType.CASE, case_id)
        if snapshot is None or section == RelatedSection.CASE:
            return

        for target_section, (entity_type, ids) in section_targets(snapshot).items():
            if section is None or section == target_section:
                self.store.invalidate_many(entity_type, ids)

    # ========================================================================
    # Internals
    # ========================================================================

    def _forget(self, key: BuildKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            task.exception()

    async def _build_serialized(
        self, case_id: str, options: BuildOptions, context: Optional[RequestContext]
    ) -> PageData:
        # The lock lives only while some build of the case holds or awaits it
        lock = self._locks.get(case_id)
        if lock is None:
            lock = self._locks[case_id] = asyncio.Lock()
        self._lock_users[case_id] = self._lock_users.get(case_id, 0) + 1
        try:
            async with lock:
                return await self._build(case_id, options, context)
        finally:
            remaining = self._lock_users[case_id] - 1
            if remaining:
                self._lock_users[case_id] = remaining
            else:
                del self._lock_users[case_id]
                del self._locks[case_id]

    async def _build(
        self, case_id: str, options: BuildOptions, context: Optional[RequestContext]
    ) -> PageData:
        self.builds_started += 1
        correlation_id = (context.correlation_id if context else None) or str(uuid.uuid4())
        logger.info(f"[Aggregator] Building page data for case {case_id} ({correlation_id})")

        try:
            snapshot = await self.store.get_by_id(EntityType.CASE, case_id, context)
        except Exception as e:
            logger.error(f"[Aggregator] Case {case_id} unavailable: {type(e).__name__}")
            raise AggregationFailed(case_id, e) from e

        related = RelatedRecordSet()
        if options.include_related:
            related = await self._load_related(snapshot, context)

        rule_result = None
        if options.evaluate_rules:
            rule_result = self.evaluator.evaluate(snapshot, related, now=self._clock())

        generated_at, sequence = self.timeline.stamp(case_id)
        return PageData(
            case_id=case_id,
            case_snapshot=snapshot,
            related_records=related,
            rule_result=rule_result,
            options=options,
            access_scope=self.store.access_policy.scope(context),
            generated_at=generated_at,
            sequence=sequence,
            correlation_id=correlation_id,
        )

    async def _load_related(
        self, snapshot: CaseSnapshot, context: Optional[RequestContext]
    ) -> RelatedRecordSet:
        targets = section_targets(snapshot)
        sections = list(targets)
        loads: List[Awaitable[Dict[str, Any]]] = [
            self.store.get_many_by_ids(entity_type, ids, context)
            for entity_type, ids in targets.values()
        ]
        results = await asyncio.gather(*loads, return_exceptions=True)

        loaded: Dict[RelatedSection, Dict[str, Any]] = {}
        unavailable: List[RelatedSection] = []
        for section, result in zip(sections, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                detail = result.code if isinstance(result, CaseGovernorError) else type(result).__name__
                logger.warning(
                    f"[Aggregator] Section {section.value} unavailable for case {snapshot.id}: {detail}"
                )
                unavailable.append(section)
                loaded[section] = {}
            else:
                loaded[section] = result

        accounts = loaded[RelatedSection.ACCOUNTS]

        def by_role(account_id: Optional[str]) -> Dict[str, Any]:
            if account_id and account_id in accounts:
                return {account_id: accounts[account_id]}
            return {}

        roles = snapshot.account_ids()
        return RelatedRecordSet(
            clients=by_role(roles[AccountRole.CLIENT]),
            locations=by_role(roles[AccountRole.LOCATION]),
            vendors=by_role(roles[AccountRole.VENDOR]),
            contacts=loaded[RelatedSection.CONTACT],
            assets=loaded[RelatedSection.ASSET],
            open_tasks={k: t for k, t in loaded[RelatedSection.TASKS].items() if t.is_open},
            related_cases=loaded[RelatedSection.RELATED_CASES],
            quotes=loaded[RelatedSection.QUOTES],
            work_orders=loaded[RelatedSection.WORK_ORDERS],
            unavailable_sections=tuple(unavailable),
        )
