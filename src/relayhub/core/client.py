"""
Caller-facing relay client.

[RelayHub][relayhub.core.client.RelayHub] wires one
[ConnectionPool][relayhub.core.pool.ConnectionPool], one
[SubscriptionMultiplexer][relayhub.core.multiplexer.SubscriptionMultiplexer]
and one [ProfileLoader][relayhub.core.profiles.ProfileLoader] into a
session object. Nothing is global: two hubs never share timers, feeds or
stores.

The surface is deliberately small:

* ``connect(urls)`` and ``publish(event)``
* ``subscribe(filter, on_event=..., on_subscribe=..., on_done=...)``
  returning a [FeedSubscription][relayhub.core.client.FeedSubscription]
  with ``is_loading``, ``events`` and ``unsubscribe()``
* ``fetch_profile(pubkey)`` returning a
  [ProfileLookup][relayhub.core.profiles.ProfileLookup]

Examples:
    ```python
    async with RelayHub.from_yaml("relayhub.yaml") as hub:
        await hub.wait_until_ready(timeout=5)
        feed = hub.subscribe({"kinds": [1], "limit": 20}, on_done=lambda: print("loaded"))
        await asyncio.sleep(2)
        for event in feed.events:
            print(hub.fetch_profile(event.pubkey).data, event.content)
    ```
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

import nostr_sdk
from pydantic import BaseModel, Field

from relayhub.models.event import Event
from relayhub.models.filter import Filter
from relayhub.models.relay import Relay  # noqa: TC001
from relayhub.utils.transport import PublishResult  # noqa: TC001

from .batch import BatchConfig
from .exceptions import ConnectivityError, InvalidFilterError, PublishingError
from .listeners import Unregister
from .logger import Logger
from .merger import EventMerger
from .metrics import MetricsConfig, MetricsServer
from .multiplexer import SubscriptionHandle, SubscriptionMultiplexer
from .pool import ConnectionPool, PoolConfig, PublishAck, SocketFactory
from .profiles import ProfileLoader, ProfileLookup
from .yaml import load_yaml


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RelayHubConfig(BaseModel):
    """Top-level client configuration.

    See Also:
        [PoolConfig][relayhub.core.pool.PoolConfig]: Relays and socket options.
        [BatchConfig][relayhub.core.batch.BatchConfig]: Profile batching.
        [MetricsConfig][relayhub.core.metrics.MetricsConfig]: ``/metrics`` endpoint.
    """

    pool: PoolConfig = Field(default_factory=PoolConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


# ---------------------------------------------------------------------------
# Feed Subscription
# ---------------------------------------------------------------------------


class FeedSubscription:
    """Merged, deduplicated view of one subscription.

    ``is_loading`` is ``True`` whenever the pool has never connected to a
    relay, whatever the subscription. Once the pool is up it stays
    ``True`` only while the subscription is active and no relay has sent
    end-of-stored-events yet, so a subscription that opened nothing
    (empty filter, or ``enabled=False``) stops loading with the pool.
    """

    def __init__(self, handle: SubscriptionHandle | None, merger: EventMerger) -> None:
        self._handle = handle
        self._merger = merger

    @property
    def is_loading(self) -> bool:
        if self._merger.pool.is_loading:
            return True
        return self._handle is not None and self._handle.is_active and not self._merger.is_done

    @property
    def events(self) -> tuple[Event, ...]:
        return self._merger.events

    @property
    def handle(self) -> SubscriptionHandle | None:
        return self._handle

    def unsubscribe(self) -> None:
        """Stop the subscription. Events already in the feed stay readable."""
        if self._handle is not None:
            self._handle.unsubscribe()

    def __repr__(self) -> str:
        return f"FeedSubscription(events={len(self.events)}, loading={self.is_loading})"


def _check_callback(name: str, callback: Callable[..., Any] | None) -> None:
    if callback is not None and not callable(callback):
        raise TypeError(f"{name} must be callable, got {type(callback).__name__}")


# ---------------------------------------------------------------------------
# RelayHub
# ---------------------------------------------------------------------------


class RelayHub:
    """Multi-relay publish/subscribe session.

    Args:
        config: Client configuration. Defaults to no relays and metrics off.
        socket_factory: Passed to the
            [ConnectionPool][relayhub.core.pool.ConnectionPool]; tests use it
            to inject in-memory sockets.
    """

    def __init__(
        self,
        config: RelayHubConfig | None = None,
        *,
        socket_factory: SocketFactory | None = None,
    ) -> None:
        self._config = config or RelayHubConfig()
        self._pool = ConnectionPool(self._config.pool, socket_factory=socket_factory)
        self._multiplexer = SubscriptionMultiplexer(self._pool)
        self._profiles = ProfileLoader(self._multiplexer, self._config.batch)
        self._metrics_server = MetricsServer(self._config.metrics)
        self._logger = Logger("relayhub.client")

    @classmethod
    def from_yaml(cls, config_path: str, **kwargs: Any) -> RelayHub:
        """Create a hub from a YAML configuration file.

        Raises:
            FileNotFoundError: If the file does not exist.
            ConfigurationError: If the file is not a YAML mapping.
            pydantic.ValidationError: If the configuration is invalid.
        """
        return cls.from_dict(load_yaml(config_path), **kwargs)

    @classmethod
    def from_dict(cls, data: dict[str, Any], **kwargs: Any) -> RelayHub:
        """Create a hub from a dictionary matching [RelayHubConfig][relayhub.core.client.RelayHubConfig]."""
        return cls(RelayHubConfig(**data), **kwargs)

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def connect(self, urls: list[str] | str | None = None) -> list[Relay]:
        """Connect to *urls* (defaults to the configured relays).

        See [ConnectionPool.connect()][relayhub.core.pool.ConnectionPool.connect].
        """
        return self._pool.connect(urls)

    async def wait_until_ready(self, timeout: float | None = None) -> bool:  # noqa: ASYNC109
        return await self._pool.wait_until_ready(timeout)

    def on_connect(self, callback: Callable[[Relay], Any]) -> Unregister:
        return self._pool.on_connect(callback)

    def on_disconnect(self, callback: Callable[[Relay], Any]) -> Unregister:
        return self._pool.on_disconnect(callback)

    def on_error(self, callback: Callable[[Relay, ConnectivityError], Any]) -> Unregister:
        return self._pool.on_error(callback)

    @property
    def connected_relays(self) -> tuple[Relay, ...]:
        return self._pool.connected_relays

    @property
    def is_loading(self) -> bool:
        """``True`` until the pool has connected to at least one relay."""
        return self._pool.is_loading

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    @staticmethod
    def _coerce_event(event: Event | Mapping[str, Any] | nostr_sdk.Event) -> Event:
        if isinstance(event, Event):
            return event
        try:
            if isinstance(event, nostr_sdk.Event):
                return Event.from_nostr(event)
            return Event.from_dict(event)
        except (TypeError, ValueError) as e:
            raise PublishingError(f"cannot publish invalid event: {e}") from e

    def publish(self, event: Event | Mapping[str, Any] | nostr_sdk.Event) -> list[PublishAck]:
        """Send *event* to every connected relay.

        Accepts an [Event][relayhub.models.event.Event], its NIP-01 dict
        form or a signed ``nostr_sdk.Event``.

        Returns:
            One [PublishAck][relayhub.core.pool.PublishAck] per connected relay.

        Raises:
            PublishingError: If *event* cannot be converted.
        """
        return self._pool.publish(self._coerce_event(event))

    async def broadcast(
        self,
        event: Event | Mapping[str, Any] | nostr_sdk.Event,
        *,
        timeout: float | None = None,  # noqa: ASYNC109
    ) -> dict[str, PublishResult]:
        """Publish *event* and wait for every relay's ``OK``.

        Raises:
            PublishingError: If *event* is invalid or no relay is connected.
        """
        return await self._pool.broadcast(self._coerce_event(event), timeout=timeout)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    @staticmethod
    def _coerce_filter(filter: Filter | Mapping[str, Any]) -> Filter:  # noqa: A002
        if isinstance(filter, Filter):
            return filter
        if not isinstance(filter, Mapping):
            raise InvalidFilterError(
                f"filter must be a Filter or a mapping, got {type(filter).__name__}"
            )
        try:
            return Filter.from_dict(filter)
        except (TypeError, ValueError) as e:
            raise InvalidFilterError(f"invalid filter: {e}") from e

    def subscribe(
        self,
        filter: Filter | Mapping[str, Any],  # noqa: A002
        *,
        on_event: Callable[[Event], Any] | None = None,
        on_subscribe: Callable[[Relay], Any] | None = None,
        on_done: Callable[[], Any] | None = None,
        enabled: bool = True,
    ) -> FeedSubscription:
        """Subscribe to *filter* on every connected relay, now and later.

        Args:
            filter: A [Filter][relayhub.models.filter.Filter] or its NIP-01 dict.
            on_event: Called once per new event id, in arrival order.
            on_subscribe: Called each time the filter is opened on a relay.
            on_done: Called once, on the first end-of-stored-events.
            enabled: When ``False`` nothing is opened.

        Raises:
            InvalidFilterError: If *filter* cannot be parsed.
            TypeError: If a callback is not callable.
        """
        flt = self._coerce_filter(filter)
        _check_callback("on_event", on_event)
        _check_callback("on_subscribe", on_subscribe)
        _check_callback("on_done", on_done)

        merger = EventMerger(self._pool)
        if not enabled:
            return FeedSubscription(None, merger)

        def handle_event(event: Event, _relay: Relay) -> None:
            if merger.ingest(event) and on_event is not None:
                on_event(event)

        def handle_eose(_relay: Relay) -> None:
            if merger.mark_done() and on_done is not None:
                on_done()

        handle = self._multiplexer.subscribe(
            flt, on_event=handle_event, on_eose=handle_eose, on_subscribe=on_subscribe
        )
        self._logger.debug("feed_subscribed", sub_id=handle.id, filter=flt.canonical())
        return FeedSubscription(handle, merger)

    # -------------------------------------------------------------------------
    # Profiles
    # -------------------------------------------------------------------------

    def fetch_profile(self, pubkey: str) -> ProfileLookup:
        """Batch-request the kind-0 profile of *pubkey* (hex or npub).

        Raises:
            ValueError: If *pubkey* is not a valid key.
        """
        return self._profiles.fetch(pubkey)

    @property
    def profiles(self) -> ProfileLoader:
        return self._profiles

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def multiplexer(self) -> SubscriptionMultiplexer:
        return self._multiplexer

    @property
    def config(self) -> RelayHubConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Close subscriptions, sockets and the metrics server. Idempotent."""
        self._profiles.close()
        self._multiplexer.close()
        await self._pool.close()
        await self._metrics_server.stop()
        self._logger.debug("client_closed")

    async def __aenter__(self) -> RelayHub:
        """Start the metrics server (if enabled) and connect to the configured relays."""
        await self._metrics_server.start()
        self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any | None,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"RelayHub(pool={self._pool!r})"
