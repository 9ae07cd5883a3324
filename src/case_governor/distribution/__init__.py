"""Distribution layer - broadcast channel, hub and consumer adapter."""

from case_governor.distribution.channel import (
    BroadcastChannel,
    InMemoryBroadcastChannel,
    RedisBroadcastChannel,
    Subscription,
)
from case_governor.distribution.consumer import ConsumerAdapter
from case_governor.distribution.hub import DistributionHub, HubState

__all__ = [
    "BroadcastChannel",
    "ConsumerAdapter",
    "DistributionHub",
    "HubState",
    "InMemoryBroadcastChannel",
    "RedisBroadcastChannel",
    "Subscription",
]
