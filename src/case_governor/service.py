"""Case data governor service - the consumer-facing query surface.

Wires one Context Store, one Rule Evaluator, one Aggregator (with its
publish timeline) and one broadcast channel together, and hands out hubs
and consumers that share them.
"""

import logging
from typing import Iterable, Mapping, Optional

from case_governor.aggregator import PageDataAggregator, parse_section
from case_governor.auth.access import AccessPolicy
from case_governor.auth.request_context import RequestContext
from case_governor.clients.record_service_client import RecordServiceClient
from case_governor.config.settings import GovernorSettings, get_settings
from case_governor.context.gateway import RecordGateway
from case_governor.context.store import ContextStore
from case_governor.distribution.channel import BroadcastChannel, InMemoryBroadcastChannel
from case_governor.distribution.consumer import ConsumerAdapter
from case_governor.distribution.hub import DistributionHub
from case_governor.models.page_data import BroadcastEventType, BroadcastMessage, BuildOptions, PageData
from case_governor.rules.config import RuleSet, SlaPolicy
from case_governor.rules.evaluator import RuleEvaluator

logger = logging.getLogger(__name__)


class CaseDataGovernorService:
    """
    Usage:
        service = CaseDataGovernorService.create(rule_records, settings=settings)
        page = await service.get_page_data("500A", context=ctx)
        await service.request_refresh("500A", section="contact")
    """

    def __init__(
        self,
        store: ContextStore,
        aggregator: PageDataAggregator,
        channel: BroadcastChannel,
        settings: Optional[GovernorSettings] = None,
    ):
        self.store = store
        self.aggregator = aggregator
        self.channel = channel
        self.settings = settings or get_settings()

    @classmethod
    def create(
        cls,
        rule_records: Iterable[Mapping],
        settings: Optional[GovernorSettings] = None,
        gateway: Optional[RecordGateway] = None,
        channel: Optional[BroadcastChannel] = None,
        access_policy: Optional[AccessPolicy] = None,
        sla_business_days: Optional[Mapping[str, int]] = None,
        default_business_days: Optional[int] = None,
    ) -> "CaseDataGovernorService":
        """Build a service from settings and plain rule records.

        Without a gateway the HTTP record service client is used; without a
        channel an in-process channel is used.
        """
        settings = settings or get_settings()
        gateway = gateway or RecordServiceClient(
            base_url=settings.record_service_url,
            timeout=settings.record_service_timeout,
        )
        policy = SlaPolicy.from_settings(
            settings,
            business_days_by_service_type=dict(sla_business_days or {}),
            default_business_days=default_business_days,
        )
        rule_set = RuleSet.from_records(rule_records, sla_policy=policy)
        store = ContextStore(gateway, settings=settings, access_policy=access_policy)
        aggregator = PageDataAggregator(store, RuleEvaluator(rule_set))
        channel = channel or InMemoryBroadcastChannel(settings.channel_name)
        return cls(store, aggregator, channel, settings=settings)

    async def get_page_data(
        self,
        case_id: str,
        context: Optional[RequestContext] = None,
        options: Optional[BuildOptions] = None,
    ) -> PageData:
        """Direct path: build (or join a build of) the case's PageData.

        Raises:
            AggregationFailed: If the case snapshot could not be loaded
        """
        return await self.aggregator.build_page_data(case_id, options, context=context)

    async def request_refresh(self, case_id: str, section: Optional[str] = None) -> None:
        """Fire-and-forget refresh signal.

        The section's cached source data is invalidated at once, so the next
        direct read is fresh even when no hub is listening; a mounted hub
        rebuilds and republishes on the request message.
        """
        self.aggregator.invalidate_section(case_id, parse_section(section))
        await self.channel.publish(
            BroadcastMessage(
                case_id=case_id,
                event_type=BroadcastEventType.REFRESH_REQUEST,
                section=section,
            )
        )

    def create_hub(
        self,
        case_id: str,
        context: Optional[RequestContext] = None,
        options: Optional[BuildOptions] = None,
    ) -> DistributionHub:
        return DistributionHub(case_id, self.aggregator, self.channel, options=options, context=context)

    def create_consumer(
        self,
        case_id: str,
        context: Optional[RequestContext] = None,
        **kwargs,
    ) -> ConsumerAdapter:
        kwargs.setdefault("wait_seconds", self.settings.consumer_wait_seconds)
        return ConsumerAdapter(case_id, self.channel, self.aggregator, context=context, **kwargs)
