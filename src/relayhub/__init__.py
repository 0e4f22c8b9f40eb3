r"""relayhub -- multi-relay Nostr publish/subscribe client core.

Keeps connections to a set of relays, multiplexes subscriptions across all
of them, merges the resulting streams into one deduplicated feed and
publishes to every connected relay. Single-key lookups such as profile
metadata are coalesced into debounced batch subscriptions.

Architecture follows a layered DAG where imports flow strictly downward:

```text
          core          Pool, multiplexer, merger, batch queue, client facade
         /    \
     utils     |        nostr-sdk relay socket, nostr-sdk key helpers
         \    /
         models         Pure frozen dataclasses (zero I/O)
```

Note:
    For lightweight usage, import directly from subpackages::

        from relayhub.models import Filter
        from relayhub.core import RelayHub

    Top-level imports (``from relayhub import RelayHub``) use lazy loading
    and resolve on first access.
"""

import importlib
from importlib.metadata import version as _get_version


__version__ = _get_version("relayhub")

__all__ = [
    "BatchFetchQueue",
    "ConnectionPool",
    "Event",
    "EventMerger",
    "FetchState",
    "Filter",
    "Logger",
    "NetworkType",
    "PoolConfig",
    "ProfileLoader",
    "ProfileMetadata",
    "Relay",
    "RelayHub",
    "RelayHubConfig",
    "RelayState",
    "SubscriptionMultiplexer",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BatchFetchQueue": ("relayhub.core", "BatchFetchQueue"),
    "ConnectionPool": ("relayhub.core", "ConnectionPool"),
    "EventMerger": ("relayhub.core", "EventMerger"),
    "Logger": ("relayhub.core", "Logger"),
    "PoolConfig": ("relayhub.core", "PoolConfig"),
    "ProfileLoader": ("relayhub.core", "ProfileLoader"),
    "RelayHub": ("relayhub.core", "RelayHub"),
    "RelayHubConfig": ("relayhub.core", "RelayHubConfig"),
    "SubscriptionMultiplexer": ("relayhub.core", "SubscriptionMultiplexer"),
    "Event": ("relayhub.models", "Event"),
    "FetchState": ("relayhub.models", "FetchState"),
    "Filter": ("relayhub.models", "Filter"),
    "NetworkType": ("relayhub.models", "NetworkType"),
    "ProfileMetadata": ("relayhub.models", "ProfileMetadata"),
    "Relay": ("relayhub.models", "Relay"),
    "RelayState": ("relayhub.models", "RelayState"),
}


def __getattr__(name: str) -> object:
    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        module = importlib.import_module(module_path)
        value = getattr(module, attr_name)
        globals()[name] = value  # Cache for subsequent access
        return value
    raise AttributeError(f"module 'relayhub' has no attribute {name!r}")


def __dir__() -> list[str]:
    return __all__
