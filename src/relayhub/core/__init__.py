"""Core layer: relay pool, subscription multiplexing, event merging and batching.

Sits at the top of the DAG, depending on ``relayhub.models`` and
``relayhub.utils``.

Attributes:
    ConnectionPool: One socket per relay, connection-state tracking and
        listener fan-out. See [ConnectionPool][relayhub.core.pool.ConnectionPool].
    SubscriptionMultiplexer: Opens a filter on every connected relay and
        extends it to relays that connect later.
        See [SubscriptionMultiplexer][relayhub.core.multiplexer.SubscriptionMultiplexer].
    EventMerger: Deduplicated, ``created_at``-ordered feed with loading state.
        See [EventMerger][relayhub.core.merger.EventMerger].
    BatchFetchQueue: Debounced coalescing of single-key lookups.
        See [BatchFetchQueue][relayhub.core.batch.BatchFetchQueue].
    ProfileLoader: Kind-0 specialisation of the batch queue.
        See [ProfileLoader][relayhub.core.profiles.ProfileLoader].
    RelayHub: Caller-facing session object tying everything together.
        See [RelayHub][relayhub.core.client.RelayHub].
    Logger: Structured key=value / JSON logger.
        See [Logger][relayhub.core.logger.Logger].
    MetricsServer: Prometheus ``/metrics`` endpoint.
        See [MetricsServer][relayhub.core.metrics.MetricsServer].

Examples:
    ```python
    from relayhub.core import RelayHub

    async with RelayHub.from_dict({"pool": {"relays": ["wss://nos.lol"]}}) as hub:
        feed = hub.subscribe({"kinds": [1], "limit": 10})
    ```
"""

from .batch import BatchConfig, BatchFetchQueue, ResolvedStore
from .client import FeedSubscription, RelayHub, RelayHubConfig
from .exceptions import (
    ConfigurationError,
    ConnectivityError,
    InvalidFilterError,
    MalformedPayloadError,
    ProtocolError,
    PublishingError,
    RelayHubError,
    RelaySSLError,
    RelayTimeoutError,
)
from .listeners import ListenerSet
from .logger import Logger, StructuredFormatter, format_kv_pairs
from .merger import EventFeed, EventMerger
from .metrics import MetricsConfig, MetricsServer
from .multiplexer import RelaySubscription, SubscriptionHandle, SubscriptionMultiplexer
from .pool import ConnectionPool, PoolConfig, PublishAck, RelayTimeoutsConfig
from .profiles import ProfileLoader, ProfileLookup
from .yaml import load_yaml


__all__ = [
    "BatchConfig",
    "BatchFetchQueue",
    "ConfigurationError",
    "ConnectionPool",
    "ConnectivityError",
    "EventFeed",
    "EventMerger",
    "FeedSubscription",
    "InvalidFilterError",
    "ListenerSet",
    "Logger",
    "MalformedPayloadError",
    "MetricsConfig",
    "MetricsServer",
    "PoolConfig",
    "ProfileLoader",
    "ProfileLookup",
    "ProtocolError",
    "PublishAck",
    "PublishingError",
    "RelayHub",
    "RelayHubConfig",
    "RelayHubError",
    "RelaySSLError",
    "RelaySubscription",
    "RelayTimeoutError",
    "RelayTimeoutsConfig",
    "ResolvedStore",
    "StructuredFormatter",
    "SubscriptionHandle",
    "SubscriptionMultiplexer",
    "format_kv_pairs",
    "load_yaml",
]
