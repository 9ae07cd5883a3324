"""Consumer Adapter - how a page component receives PageData.

A consumer subscribes to the case's broadcast messages and starts a bounded
wait. Data from the hub cancels the wait. If the wait expires first, or the
hub reports an error, the consumer builds the PageData itself through the
same Aggregator the hub uses. Whatever the source, a PageData is applied
only if it is newer than the one already applied, so late hub data still
replaces an older fallback result and stale deliveries are discarded.

A consumer only takes PageData built for its own access scope. Data a hub
built for a caller with other read rights is never applied; the consumer
rebuilds in its own scope instead. Hubs are tracked by hub_id from the
messages they send and forgotten on their teardown message.
"""

import asyncio
import logging
from typing import Callable, Optional, Set

from case_governor.aggregator import PageDataAggregator, parse_section
from case_governor.auth.request_context import RequestContext
from case_governor.config.settings import get_settings
from case_governor.context.gateway import WriteResult
from case_governor.distribution.channel import BroadcastChannel, Subscription
from case_governor.errors import AggregationFailed, StaleDataDiscarded
from case_governor.models.page_data import (
    BroadcastEventType,
    BroadcastMessage,
    BuildOptions,
    PageData,
)
from case_governor.models.records import EntityType

logger = logging.getLogger(__name__)

SOURCE_HUB = "hub"
SOURCE_FALLBACK = "fallback"


class ConsumerAdapter:
    """
    One page component's view of a case.

    Usage:
        consumer = ConsumerAdapter("500A", channel, aggregator, on_apply=render)
        await consumer.mount()
        ...
        await consumer.write(EntityType.CASE, {"id": "500A", "customer_po": "PO-1"}, section="case")
        await consumer.unmount()
    """

    def __init__(
        self,
        case_id: str,
        channel: BroadcastChannel,
        aggregator: PageDataAggregator,
        wait_seconds: Optional[float] = None,
        options: Optional[BuildOptions] = None,
        context: Optional[RequestContext] = None,
        on_apply: Optional[Callable[[PageData], None]] = None,
        name: str = "consumer",
    ):
        self.case_id = case_id
        self.channel = channel
        self.aggregator = aggregator
        self.wait_seconds = wait_seconds if wait_seconds is not None else get_settings().consumer_wait_seconds
        self.options = options or BuildOptions()
        self.context = context
        self.on_apply = on_apply
        self.name = name

        self.access_scope = aggregator.store.access_policy.scope(context)

        self.has_received_governor_data = False
        self.fallback_count = 0
        self.discarded_count = 0
        self.out_of_scope_count = 0
        self.last_error: Optional[AggregationFailed] = None

        self._page: Optional[PageData] = None
        self._subscription: Optional[Subscription] = None
        self._timer: Optional[asyncio.Task] = None
        self._mounted = False
        self._hubs: Set[str] = set()

    @property
    def hub_detected(self) -> bool:
        """True while at least one live hub serving this consumer's scope has been seen."""
        return bool(self._hubs)

    @property
    def page_data(self) -> Optional[PageData]:
        return self._page

    @property
    def is_mounted(self) -> bool:
        return self._mounted

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def mount(self) -> None:
        """Subscribe to the case and start the wait timer; idempotent."""
        if self._mounted:
            return
        self._mounted = True
        self._subscription = await self.channel.subscribe(self.case_id, self._on_message)
        if not self.has_received_governor_data:
            self._timer = asyncio.ensure_future(self._wait_for_hub())

    async def unmount(self) -> None:
        """Stop the timer and the subscription; idempotent."""
        if not self._mounted:
            return
        self._mounted = False
        self._cancel_timer()
        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None
        logger.debug(f"[Consumer:{self.name}] Unmounted from case {self.case_id}")

    async def wait_until_ready(self) -> Optional[PageData]:
        """Wait for the pending timer or fallback, if any, and return the applied PageData."""
        if self._timer is not None and asyncio.current_task() is not self._timer:
            await asyncio.wait({self._timer})
        return self._page

    # ========================================================================
    # Applying data
    # ========================================================================

    def apply(self, page: PageData, source: str = SOURCE_HUB) -> bool:
        """Apply ``page`` if it is newer than the applied one.

        Returns:
            True if applied, False if discarded as stale, duplicate or
            built for another access scope
        """
        if page.case_id != self.case_id:
            return False
        if tuple(page.access_scope) != self.access_scope:
            self.out_of_scope_count += 1
            logger.info(
                f"[Consumer:{self.name}] Discarding page data for case {self.case_id} "
                f"built for another access scope"
            )
            return False
        if not page.is_newer_than(self._page):
            if source == SOURCE_HUB and page.ordering_key == self._page.ordering_key:
                # Hub republished the build this consumer already joined
                self.has_received_governor_data = True
                self._cancel_timer()
            self.discarded_count += 1
            stale = StaleDataDiscarded(self.case_id, page.ordering_key, self._page.ordering_key)
            logger.info(f"[Consumer:{self.name}] {stale.message}")
            return False

        self._page = page
        if source == SOURCE_HUB:
            self.has_received_governor_data = True
            self._cancel_timer()
        if self.on_apply is not None:
            self.on_apply(page)
        return True

    async def _on_message(self, message: BroadcastMessage) -> None:
        if message.event_type == BroadcastEventType.REFRESH_REQUEST:
            return
        if message.event_type == BroadcastEventType.TEARDOWN:
            self._hubs.discard(message.hub_id)
            return

        if message.access_scope is not None and tuple(message.access_scope) != self.access_scope:
            # Another caller's hub has (re)built the case; rebuild in our own scope
            self.out_of_scope_count += 1
            logger.info(
                f"[Consumer:{self.name}] Ignoring {message.event_type.value} for case {self.case_id} "
                f"from a hub with another access scope; building directly"
            )
            self._cancel_timer()
            await self.fallback()
            return

        if message.hub_id:
            self._hubs.add(message.hub_id)
        if message.event_type == BroadcastEventType.ERROR:
            logger.warning(
                f"[Consumer:{self.name}] Hub error for case {self.case_id}: {message.error_message}; falling back"
            )
            self._cancel_timer()
            await self.fallback()
            return

        page = message.decode_page_data()
        if page is not None:
            self.apply(page, SOURCE_HUB)

    # ========================================================================
    # Fallback and writes
    # ========================================================================

    async def fallback(self, join_inflight: bool = True) -> Optional[PageData]:
        """Build the PageData directly through the Aggregator and apply it."""
        self.fallback_count += 1
        try:
            page = await self.aggregator.build_page_data(
                self.case_id,
                self.options,
                context=self.context,
                join_inflight=join_inflight,
            )
        except AggregationFailed as e:
            self.last_error = e
            logger.warning(f"[Consumer:{self.name}] Fallback failed: {e.message}")
            return None
        self.last_error = None
        self.apply(page, SOURCE_FALLBACK)
        return self._page

    async def after_write(self, section: Optional[str] = None) -> Optional[PageData]:
        """Bring the page up to date after a local write.

        With a hub on the page the hub is asked to refresh and republish;
        without one the consumer rebuilds on its own. Never both.
        """
        if self.hub_detected:
            await self.channel.publish(
                BroadcastMessage(
                    case_id=self.case_id,
                    event_type=BroadcastEventType.REFRESH_REQUEST,
                    section=section,
                )
            )
            return None

        self.aggregator.invalidate_section(self.case_id, parse_section(section))
        return await self.fallback(join_inflight=False)

    async def write(
        self, entity_type: EntityType, patch: dict, section: Optional[str] = None
    ) -> WriteResult:
        """Write through the Context Store, then refresh on success."""
        result = await self.aggregator.store.write_through(entity_type, patch)
        if result.success:
            await self.after_write(section)
        return result

    # ========================================================================
    # Internals
    # ========================================================================

    async def _wait_for_hub(self) -> None:
        await asyncio.sleep(self.wait_seconds)
        if self.has_received_governor_data or not self._mounted:
            return
        logger.info(
            f"[Consumer:{self.name}] No hub data for case {self.case_id} after {self.wait_seconds}s; falling back"
        )
        await self.fallback()

    def _cancel_timer(self) -> None:
        timer = self._timer
        if timer is None or timer.done():
            return
        if asyncio.current_task() is timer:
            return
        timer.cancel()
