"""Pure frozen dataclasses with zero I/O for relays, events, filters and profiles.

The models layer is the bottom of the dependency DAG. It does not import
any other relayhub package, and every model uses
``@dataclass(frozen=True, slots=True)``. All validation happens in
``__post_init__`` so invalid instances never escape the constructor, which
lets the core layer treat every model it holds as well formed.

Attributes:
    Relay: Validated relay URL with RFC 3986 normalization and
        [NetworkType][relayhub.models.constants.NetworkType] detection.
    Event: Immutable NIP-01 event record.
    Filter: Value-comparable subscription filter.
    ProfileMetadata: Parsed kind-0 profile record.
    RelayState: Connection state tracked by the pool.
    FetchState: Lifecycle of a key in the batch fetch queue.

See Also:
    [relayhub.models.relay][]: Relay URL validation and network detection.
    [relayhub.models.event][]: Event record and wire conversion.
    [relayhub.models.filter][]: Filter normalization and emptiness.
    [relayhub.models.profile][]: Profile metadata record.
    [relayhub.models.constants][]: Shared enumerations.
"""

from .constants import EVENT_KIND_MAX, EventKind, FetchState, NetworkType, RelayState
from .event import Event
from .filter import Filter
from .profile import ProfileMetadata
from .relay import Relay


__all__ = [
    "EVENT_KIND_MAX",
    "Event",
    "EventKind",
    "FetchState",
    "Filter",
    "NetworkType",
    "ProfileMetadata",
    "Relay",
    "RelayState",
]
