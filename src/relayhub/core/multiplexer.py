"""
Subscription multiplexer.

Turns one logical subscription (a [Filter][relayhub.models.filter.Filter])
into one relay subscription per connected relay, and keeps that true as
the connected set changes: a relay that connects later gets the same
filter automatically, a relay that disconnects loses its per-relay state
so a reconnect starts clean.

Relay subscriptions are keyed by the filter's canonical serialization.
Handles whose filters are equal share one relay subscription per relay:
the first handle sends the ``REQ``, later ones join it and get the events
already received replayed to them, and the ``CLOSE`` goes out only when
the last of them unsubscribes.

Event payloads are decoded into [Event][relayhub.models.event.Event] here,
once, and handed to every sharing handle's listeners. Payloads that do not
decode are logged and dropped without affecting any other relay or handle.

See Also:
    [ConnectionPool][relayhub.core.pool.ConnectionPool]: Source of connect,
        disconnect and message notifications.
    [EventMerger][relayhub.core.merger.EventMerger]: Typical consumer of a
        handle's events.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from relayhub.models.event import Event
from relayhub.models.filter import Filter  # noqa: TC001
from relayhub.models.relay import Relay  # noqa: TC001

from .listeners import ListenerSet, Unregister
from .logger import Logger
from .metrics import EVENTS_RECEIVED


if TYPE_CHECKING:
    from .pool import ConnectionPool


@dataclass(slots=True)
class RelaySubscription:
    """State of one filter's subscription on one relay.

    Attributes:
        relay_url: Normalised relay URL.
        opened_at: Unix time at which the ``REQ`` was sent.
        event_count: Valid events received on this relay.
        eose: Whether the relay sent end-of-stored-events.
    """

    relay_url: str
    opened_at: float
    event_count: int = 0
    eose: bool = False


class _SharedSubscription:
    """One relay subscription id shared by every handle with an equal filter."""

    __slots__ = ("events", "filter", "finished", "handles", "id", "key", "subscriptions")

    def __init__(self, filter: Filter, sub_id: str) -> None:  # noqa: A002
        self.id = sub_id
        self.filter = filter
        self.key = filter.canonical()
        self.handles: list[SubscriptionHandle] = []
        self.subscriptions: dict[str, RelaySubscription] = {}
        self.events: list[tuple[Event, Relay]] = []
        self.finished: dict[str, Relay] = {}


class SubscriptionHandle:
    """Caller-side handle for a multiplexed subscription.

    The handle's ``id`` is the subscription id used on every relay; two
    handles with equal filters have the same ``id``. Listeners registered
    with ``on_event``, ``on_eose`` and ``on_subscribe`` are fanned out to
    in registration order.

    A handle created for an empty filter is inactive from the start: it
    never opens anything and never emits.
    """

    def __init__(self, multiplexer: SubscriptionMultiplexer, filter: Filter, sub_id: str) -> None:  # noqa: A002
        self.id = sub_id
        self.filter = filter
        self._multiplexer = multiplexer
        self._shared: _SharedSubscription | None = None
        self._active = not filter.is_empty
        self._done = False
        logger = multiplexer._logger.bind(sub_id=sub_id)
        self._event_listeners = ListenerSet("event", logger)
        self._eose_listeners = ListenerSet("eose", logger)
        self._subscribe_listeners = ListenerSet("subscribe", logger)

    @property
    def is_active(self) -> bool:
        """``False`` once unsubscribed, or if the filter was empty."""
        return self._active

    @property
    def is_done(self) -> bool:
        """``True`` once any relay sent end-of-stored-events (or closed the subscription)."""
        return self._done

    @property
    def relays(self) -> tuple[str, ...]:
        """URLs of the relays this handle is currently open on."""
        if self._shared is None:
            return ()
        return tuple(self._shared.subscriptions)

    def subscription(self, url: str) -> RelaySubscription | None:
        if self._shared is None:
            return None
        return self._shared.subscriptions.get(url)

    def on_event(self, callback: Callable[[Event, Relay], Any]) -> Unregister:
        """Call *callback(event, relay)* for every decoded event."""
        return self._event_listeners.add(callback)

    def on_eose(self, callback: Callable[[Relay], Any]) -> Unregister:
        """Call *callback(relay)* when a relay finishes its stored events."""
        return self._eose_listeners.add(callback)

    def on_subscribe(self, callback: Callable[[Relay], Any]) -> Unregister:
        """Call *callback(relay)* each time the filter is opened on a relay."""
        return self._subscribe_listeners.add(callback)

    def unsubscribe(self) -> None:
        """Leave the subscription; the last handle out closes it on every relay. Idempotent."""
        self._multiplexer.unsubscribe(self)

    def _emit_eose(self, relay: Relay) -> None:
        self._done = True
        self._eose_listeners.emit(relay)

    def __repr__(self) -> str:
        return (
            f"SubscriptionHandle(id={self.id}, active={self._active}, "
            f"relays={len(self.relays)}, done={self._done})"
        )


class SubscriptionMultiplexer:
    """Opens and tracks per-relay subscriptions for logical handles.

    Args:
        pool: Pool whose connected relays receive the subscriptions.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool
        self._by_key: dict[str, _SharedSubscription] = {}
        self._by_id: dict[str, _SharedSubscription] = {}
        self._logger = Logger("relayhub.multiplexer")
        self._unregister: list[Unregister] = [
            pool.on_connect(self._handle_connect),
            pool.on_disconnect(self._handle_disconnect),
            pool.on_event(self._handle_event),
            pool.on_eose(self._handle_eose),
            pool.on_closed(self._handle_closed),
        ]

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    def subscribe(
        self,
        filter: Filter,  # noqa: A002
        *,
        on_event: Callable[[Event, Relay], Any] | None = None,
        on_eose: Callable[[Relay], Any] | None = None,
        on_subscribe: Callable[[Relay], Any] | None = None,
    ) -> SubscriptionHandle:
        """Open *filter* on every connected relay, or join it if already open.

        Callbacks passed here are registered before any relay is
        contacted, so ``on_subscribe`` sees the relays opened right away.
        When an equal filter is already open, the new handle receives the
        events, end-of-stored-events and subscribe notifications seen so
        far before this call returns. An empty filter returns an inactive
        handle and opens nothing.
        """
        shared = self._by_key.get(filter.canonical()) if not filter.is_empty else None
        handle = SubscriptionHandle(
            self, filter, shared.id if shared is not None else secrets.token_hex(8)
        )
        if on_event is not None:
            handle.on_event(on_event)
        if on_eose is not None:
            handle.on_eose(on_eose)
        if on_subscribe is not None:
            handle.on_subscribe(on_subscribe)

        if not handle.is_active:
            self._logger.debug("subscription_suppressed", filter=filter.canonical())
            return handle

        if shared is not None:
            self._join(shared, handle)
            return handle

        shared = _SharedSubscription(filter, handle.id)
        shared.handles.append(handle)
        handle._shared = shared
        self._by_key[shared.key] = shared
        self._by_id[shared.id] = shared
        for relay in self._pool.connected_relays:
            self._open(shared, relay)
        self._logger.debug(
            "subscription_created", sub_id=handle.id, relays=len(shared.subscriptions)
        )
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Detach *handle*; close the relay subscriptions once no handle is left.

        Safe to call when relays have already disconnected, and more than once.
        """
        if not handle._active:
            return
        handle._active = False
        shared, handle._shared = handle._shared, None
        if shared is None:
            return
        shared.handles.remove(handle)
        if shared.handles:
            self._logger.debug(
                "subscription_left", sub_id=shared.id, remaining=len(shared.handles)
            )
            return

        self._by_key.pop(shared.key, None)
        self._by_id.pop(shared.id, None)
        for url in tuple(shared.subscriptions):
            self._pool.close_subscription(url, shared.id)
        shared.subscriptions.clear()
        shared.events.clear()
        shared.finished.clear()
        self._logger.debug("subscription_closed", sub_id=shared.id)

    def active_subscriptions(self) -> tuple[SubscriptionHandle, ...]:
        return tuple(handle for shared in self._by_key.values() for handle in shared.handles)

    def close(self) -> None:
        """Unsubscribe every handle and detach from the pool."""
        for handle in self.active_subscriptions():
            self.unsubscribe(handle)
        for unregister in self._unregister:
            unregister()
        self._unregister.clear()

    def _join(self, shared: _SharedSubscription, handle: SubscriptionHandle) -> None:
        shared.handles.append(handle)
        handle._shared = shared
        self._logger.debug(
            "subscription_joined", sub_id=shared.id, handles=len(shared.handles)
        )
        for relay in self._pool.connected_relays:
            if relay.url in shared.subscriptions:
                handle._subscribe_listeners.emit(relay)
        for event, relay in tuple(shared.events):
            if not handle._active:
                return
            handle._event_listeners.emit(event, relay)
        for relay in tuple(shared.finished.values()):
            if not handle._active:
                return
            handle._emit_eose(relay)

    # -------------------------------------------------------------------------
    # Pool Notifications
    # -------------------------------------------------------------------------

    def _open(self, shared: _SharedSubscription, relay: Relay) -> None:
        if relay.url in shared.subscriptions:
            return
        if self._pool.open_subscription(relay.url, shared.id, shared.filter):
            shared.subscriptions[relay.url] = RelaySubscription(relay.url, time.time())
            for handle in tuple(shared.handles):
                handle._subscribe_listeners.emit(relay)

    def _handle_connect(self, relay: Relay) -> None:
        for shared in tuple(self._by_key.values()):
            self._open(shared, relay)

    def _handle_disconnect(self, relay: Relay) -> None:
        for shared in self._by_key.values():
            shared.subscriptions.pop(relay.url, None)
            shared.finished.pop(relay.url, None)

    def _handle_event(self, relay: Relay, sub_id: str, payload: Any) -> None:
        shared = self._by_id.get(sub_id)
        if shared is None:
            return
        subscription = shared.subscriptions.get(relay.url)
        if subscription is None:
            return
        try:
            event = payload if isinstance(payload, Event) else Event.from_dict(payload)
        except (TypeError, ValueError) as e:
            self._logger.warning(
                "event_malformed", relay=relay.url, sub_id=sub_id, error=str(e)
            )
            return
        subscription.event_count += 1
        EVENTS_RECEIVED.inc()
        shared.events.append((event, relay))
        for handle in tuple(shared.handles):
            if handle._active:
                handle._event_listeners.emit(event, relay)

    def _handle_eose(self, relay: Relay, sub_id: str) -> None:
        shared = self._by_id.get(sub_id)
        if shared is None:
            return
        subscription = shared.subscriptions.get(relay.url)
        if subscription is None or subscription.eose:
            return
        subscription.eose = True
        shared.finished[relay.url] = relay
        for handle in tuple(shared.handles):
            if handle._active:
                handle._emit_eose(relay)

    def _handle_closed(self, relay: Relay, sub_id: str, reason: str) -> None:
        shared = self._by_id.get(sub_id)
        if shared is None:
            return
        subscription = shared.subscriptions.pop(relay.url, None)
        if subscription is None:
            return
        self._logger.info(
            "subscription_closed_by_relay", relay=relay.url, sub_id=sub_id, reason=reason
        )
        if not subscription.eose:
            shared.finished[relay.url] = relay
            for handle in tuple(shared.handles):
                if handle._active:
                    handle._emit_eose(relay)
