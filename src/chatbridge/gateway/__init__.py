"""Gateway: event bus, channel resolution, ingestion, change feed, relay."""

from chatbridge.gateway.bus import Bus
from chatbridge.gateway.channels import ChannelResolver, channels_from_config, sync_channels
from chatbridge.gateway.feed import ChangeFeed, parse_change
from chatbridge.gateway.ingest import IngestionPipeline
from chatbridge.gateway.lifecycle import LifecyclePropagator
from chatbridge.gateway.relay import Relay
from chatbridge.gateway.tasks import TaskPool

__all__ = [
    "Bus",
    "ChangeFeed",
    "ChannelResolver",
    "IngestionPipeline",
    "LifecyclePropagator",
    "Relay",
    "TaskPool",
    "channels_from_config",
    "parse_change",
    "sync_channels",
]
