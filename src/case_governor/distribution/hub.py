"""Distribution Hub - one per mounted case page.

State machine:

    Idle -> Loading -> Published -> RefreshPending -> Published ... -> TornDown
                   \\-> Failed (error broadcast) -> RefreshPending ...

The hub builds PageData through the Aggregator and publishes it on the
broadcast channel. A fatal build failure publishes an ``error`` message with
no page data. Refresh requests arrive either as direct calls or as
``refresh_request`` messages on the channel from consumers that wrote.

Every message the hub sends names it (hub_id) and the access scope it builds
for. Teardown announces the hub_id as retired so that consumers stop
treating the page as hub-served.
"""

import logging
import uuid
from enum import Enum
from typing import Optional

from case_governor.aggregator import PageDataAggregator, parse_section
from case_governor.auth.request_context import RequestContext
from case_governor.distribution.channel import BroadcastChannel, Subscription
from case_governor.errors import AggregationFailed, HubStateError
from case_governor.models.page_data import (
    BroadcastEventType,
    BroadcastMessage,
    BuildOptions,
    PageData,
)

logger = logging.getLogger(__name__)


class HubState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PUBLISHED = "published"
    REFRESH_PENDING = "refresh_pending"
    FAILED = "failed"
    TORN_DOWN = "torn_down"


class DistributionHub:
    """
    Loads a case page once and broadcasts it to every consumer on the page.

    Usage:
        hub = DistributionHub("500A", aggregator, channel, context=ctx)
        await hub.on_mount()
        ...
        await hub.on_refresh_request("contact")
        await hub.on_teardown()
    """

    def __init__(
        self,
        case_id: str,
        aggregator: PageDataAggregator,
        channel: BroadcastChannel,
        options: Optional[BuildOptions] = None,
        context: Optional[RequestContext] = None,
    ):
        self.case_id = case_id
        self.aggregator = aggregator
        self.channel = channel
        self.options = options or BuildOptions()
        self.context = context
        self.hub_id = f"hub-{uuid.uuid4().hex[:12]}"
        self.access_scope = aggregator.store.access_policy.scope(context)
        self.state = HubState.IDLE
        self.last_published: Optional[PageData] = None
        self._subscription: Optional[Subscription] = None

    @property
    def is_torn_down(self) -> bool:
        return self.state == HubState.TORN_DOWN

    async def on_mount(self) -> Optional[PageData]:
        """Subscribe for refresh requests, build and publish the initial PageData.

        Returns:
            The published PageData, or None if the build failed or the hub
            was torn down meanwhile

        Raises:
            HubStateError: If the hub was already torn down
        """
        if self.state == HubState.TORN_DOWN:
            raise HubStateError(f"Hub for case {self.case_id} is torn down")
        if self.state != HubState.IDLE:
            logger.debug(f"[Hub] Case {self.case_id} already mounted ({self.state.value})")
            return self.last_published

        self.state = HubState.LOADING
        self._subscription = await self.channel.subscribe(self.case_id, self._on_message)
        return await self._build_and_publish(BroadcastEventType.LOAD, None, join_inflight=True)

    async def on_refresh_request(self, section: Optional[str] = None) -> Optional[PageData]:
        """Invalidate the section's source data and republish a complete PageData.

        ``section`` None (or an unknown name) is a full reload.

        Raises:
            HubStateError: If the hub was never mounted or is torn down
        """
        if self.state in (HubState.IDLE, HubState.TORN_DOWN):
            raise HubStateError(f"Cannot refresh hub for case {self.case_id} in state {self.state.value}")

        scope = parse_section(section)
        self.state = HubState.REFRESH_PENDING
        logger.info(f"[Hub] Refresh for case {self.case_id}: {scope.value if scope else 'full reload'}")

        self.aggregator.invalidate_section(self.case_id, scope)
        return await self._build_and_publish(
            BroadcastEventType.REFRESH,
            scope.value if scope else None,
            join_inflight=False,
        )

    async def on_teardown(self) -> None:
        """Release the channel subscription and retire the hub; idempotent."""
        if self.state == HubState.TORN_DOWN:
            return
        was_mounted = self.state != HubState.IDLE
        self.state = HubState.TORN_DOWN
        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None
        if was_mounted:
            await self.channel.publish(
                BroadcastMessage(
                    case_id=self.case_id,
                    event_type=BroadcastEventType.TEARDOWN,
                    hub_id=self.hub_id,
                    access_scope=self.access_scope,
                )
            )
        logger.info(f"[Hub] Torn down for case {self.case_id}")

    async def _build_and_publish(
        self,
        event_type: BroadcastEventType,
        section: Optional[str],
        join_inflight: bool,
    ) -> Optional[PageData]:
        try:
            page = await self.aggregator.build_page_data(
                self.case_id,
                self.options,
                context=self.context,
                join_inflight=join_inflight,
            )
        except AggregationFailed as e:
            if self.is_torn_down:
                return None
            self.state = HubState.FAILED
            logger.warning(f"[Hub] {e.message}")
            await self.channel.publish(
                BroadcastMessage(
                    case_id=self.case_id,
                    event_type=BroadcastEventType.ERROR,
                    error_message=e.message,
                    hub_id=self.hub_id,
                    access_scope=self.access_scope,
                )
            )
            return None

        if self.is_torn_down:
            logger.debug(f"[Hub] Discarding build for case {self.case_id} after teardown")
            return None

        await self.channel.publish(BroadcastMessage.for_page_data(event_type, page, section, hub_id=self.hub_id))
        self.last_published = page
        self.state = HubState.PUBLISHED
        logger.info(
            f"[Hub] Published {event_type.value} for case {self.case_id} "
            f"(sequence {page.sequence}, {page.correlation_id})"
        )
        return page

    async def _on_message(self, message: BroadcastMessage) -> None:
        if message.event_type != BroadcastEventType.REFRESH_REQUEST:
            return
        if self.state in (HubState.IDLE, HubState.TORN_DOWN):
            return
        await self.on_refresh_request(message.section)

