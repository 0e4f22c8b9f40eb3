"""
Relay connection pool.

Owns one [RelaySocket][relayhub.utils.transport.RelaySocket] per relay URL,
tracks each relay's [RelayState][relayhub.models.constants.RelayState] and
maintains the set of currently connected relays. Socket notifications are
fanned out to registered listeners, which is how the
[SubscriptionMultiplexer][relayhub.core.multiplexer.SubscriptionMultiplexer]
learns about new relays and incoming events.

Connection failures are never fatal: the failing relay moves to ``ERROR``
or ``DISCONNECTED``, listeners are told through ``on_error`` and every
other relay carries on. Reconnection policy is left to the caller, who
may call [connect()][relayhub.core.pool.ConnectionPool.connect] again.

Examples:
    ```python
    pool = ConnectionPool(PoolConfig(relays=["wss://relay.damus.io", "wss://nos.lol"]))
    pool.on_connect(lambda relay: print("up", relay.url))
    pool.connect()
    await pool.wait_until_ready(timeout=5)

    for ack in pool.publish(event):
        print(ack.relay.url, await ack.future)
    await pool.close()
    ```

See Also:
    [PoolConfig][relayhub.core.pool.PoolConfig]: Relay list, timeouts and
        TLS options.
    [NostrRelaySocket][relayhub.utils.transport.NostrRelaySocket]:
        Default socket implementation.
"""

from __future__ import annotations

import asyncio
import contextlib
import ssl
from collections.abc import Callable, Iterable
from typing import Any, NamedTuple

from pydantic import BaseModel, Field, field_validator

from relayhub.models.constants import RelayState
from relayhub.models.event import Event  # noqa: TC001
from relayhub.models.filter import Filter  # noqa: TC001
from relayhub.models.relay import Relay
from relayhub.utils.transport import (
    NostrRelaySocket,
    PublishResult,
    RelaySocket,
    RelaySocketHandler,
)

from .exceptions import ConnectivityError, PublishingError, RelaySSLError, RelayTimeoutError
from .listeners import ListenerSet, Unregister
from .logger import Logger
from .metrics import EVENTS_PUBLISHED, RELAY_ERRORS, RELAYS_CONNECTED, SUBSCRIPTIONS_OPENED
from .yaml import load_yaml


SocketFactory = Callable[[Relay, RelaySocketHandler], RelaySocket]


# ---------------------------------------------------------------------------
# Configuration Models
# ---------------------------------------------------------------------------


class RelayTimeoutsConfig(BaseModel):
    """Per-relay socket timeouts (in seconds).

    See Also:
        [PoolConfig][relayhub.core.pool.PoolConfig]: Parent configuration that
            embeds this model.
    """

    connect: float = Field(default=10.0, ge=0.1, description="WebSocket handshake timeout")
    close: float = Field(default=5.0, ge=0.1, description="Graceful close timeout")


class PoolConfig(BaseModel):
    """Configuration for the relay connection pool.

    ``relays`` is validated and normalised eagerly: every entry must parse
    as a [Relay][relayhub.models.relay.Relay], and spellings of the same
    relay collapse to one entry.

    See Also:
        [RelayTimeoutsConfig][relayhub.core.pool.RelayTimeoutsConfig]: Socket
            timeouts.
        [ConnectionPool][relayhub.core.pool.ConnectionPool]: The pool class
            that consumes this configuration.
    """

    relays: list[str] = Field(default_factory=list, description="Relay URLs to connect to")
    timeouts: RelayTimeoutsConfig = Field(default_factory=RelayTimeoutsConfig)
    heartbeat: float = Field(default=30.0, ge=1.0, description="Seconds between relay liveness checks")
    allow_insecure: bool = Field(
        default=False, description="Retry without TLS verification when a certificate check fails"
    )

    @field_validator("relays")
    @classmethod
    def normalize_relays(cls, v: list[str]) -> list[str]:
        """Validate every URL and drop duplicates, keeping first-seen order."""
        return list(dict.fromkeys(Relay(url).url for url in v))


# ---------------------------------------------------------------------------
# Pool Class
# ---------------------------------------------------------------------------


class PublishAck(NamedTuple):
    """Acknowledgement handle for one relay of a publish.

    Attributes:
        relay: Relay the event was sent to.
        future: Resolves to the relay's
            [PublishResult][relayhub.utils.transport.PublishResult].
    """

    relay: Relay
    future: asyncio.Future[PublishResult]


class _RelayEntry:
    __slots__ = ("logger", "relay", "socket", "state")

    def __init__(self, relay: Relay, socket: RelaySocket, logger: Logger) -> None:
        self.relay = relay
        self.socket = socket
        self.logger = logger
        self.state = RelayState.PENDING


def _classify_error(relay: Relay, error: BaseException) -> ConnectivityError:
    """Wrap a raw socket error into the matching connectivity error."""
    if isinstance(error, ConnectivityError):
        return error
    if isinstance(error, TimeoutError):
        error_cls: type[ConnectivityError] = RelayTimeoutError
    elif isinstance(error, ssl.SSLError):
        error_cls = RelaySSLError
    else:
        error_cls = ConnectivityError
    wrapped = error_cls(f"{relay.url}: {str(error) or type(error).__name__}", relay=relay.url)
    wrapped.__cause__ = error
    return wrapped


class ConnectionPool:
    """Set of relay connections with state tracking and listener fan-out.

    The pool implements the
    [RelaySocketHandler][relayhub.utils.transport.RelaySocketHandler]
    protocol for its own sockets. All state changes happen on the event
    loop, so readers always see a consistent snapshot.

    Listener registration methods (``on_connect``, ``on_disconnect``,
    ``on_error``, ``on_event``, ``on_eose``, ``on_closed``) validate the
    callback immediately, support any number of listeners and return a
    function that removes the listener again. A listener that raises is
    logged and does not stop the others.

    Args:
        config: Pool configuration. Defaults to an empty relay list.
        socket_factory: Builds the socket for a relay. Defaults to
            [NostrRelaySocket][relayhub.utils.transport.NostrRelaySocket]
            configured from *config*.
    """

    def __init__(
        self,
        config: PoolConfig | None = None,
        socket_factory: SocketFactory | None = None,
    ) -> None:
        self._config = config or PoolConfig()
        self._socket_factory = socket_factory or self._default_socket_factory
        self._entries: dict[str, _RelayEntry] = {}
        self._connected: dict[str, Relay] = {}
        self._logger = Logger("relayhub.pool")
        self._listeners: dict[str, ListenerSet] = {
            name: ListenerSet(name, self._logger)
            for name in ("connect", "disconnect", "error", "event", "eose", "closed")
        }
        self._ever_connected = False
        self._state_changed = asyncio.Event()

    @classmethod
    def from_yaml(cls, config_path: str) -> ConnectionPool:
        """Create a pool from a YAML configuration file."""
        return cls.from_dict(load_yaml(config_path))

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> ConnectionPool:
        """Create a pool from a dictionary matching [PoolConfig][relayhub.core.pool.PoolConfig]."""
        return cls(config=PoolConfig(**config_dict))

    def _default_socket_factory(self, relay: Relay, handler: RelaySocketHandler) -> RelaySocket:
        return NostrRelaySocket(
            relay,
            handler,
            connect_timeout=self._config.timeouts.connect,
            close_timeout=self._config.timeouts.close,
            heartbeat=self._config.heartbeat,
            allow_insecure=self._config.allow_insecure,
        )

    # -------------------------------------------------------------------------
    # Connection Lifecycle
    # -------------------------------------------------------------------------

    def connect(self, urls: Iterable[str | Relay] | str | None = None) -> list[Relay]:
        """Start a connection attempt for every relay that is not already up.

        Idempotent per relay: a relay that is ``PENDING`` or ``CONNECTED``
        is left alone and never gets a second socket. A relay that is
        ``DISCONNECTED`` or ``ERROR`` is restarted on its existing socket.
        Invalid URLs are logged and skipped.

        Does not wait for the connections; listen with
        [on_connect()][relayhub.core.pool.ConnectionPool.on_connect] or
        await [wait_until_ready()][relayhub.core.pool.ConnectionPool.wait_until_ready].

        Args:
            urls: Relay URLs. Defaults to ``config.relays``.

        Returns:
            The relays for which a connection attempt was started.
        """
        targets: Iterable[str | Relay] = self._config.relays if urls is None else urls
        if isinstance(targets, str | Relay):
            targets = [targets]

        started: list[Relay] = []
        for url in targets:
            try:
                relay = url if isinstance(url, Relay) else Relay(url)
            except (TypeError, ValueError) as e:
                self._logger.warning("relay_url_invalid", url=url, error=str(e))
                continue

            entry = self._entries.get(relay.url)
            if entry is None:
                entry = _RelayEntry(
                    relay,
                    self._socket_factory(relay, self),
                    self._logger.bind(relay=relay.url),
                )
                self._entries[relay.url] = entry
            elif entry.state in (RelayState.PENDING, RelayState.CONNECTED):
                continue

            entry.state = RelayState.PENDING
            entry.logger.debug("relay_connecting", network=relay.network)
            started.append(relay)
            entry.socket.start()

        self._state_changed.set()
        return started

    async def wait_until_ready(self, timeout: float | None = None) -> bool:  # noqa: ASYNC109
        """Wait until at least one relay is connected or none is pending.

        Returns:
            ``True`` if at least one relay is connected when the wait ends.
        """

        async def _wait() -> None:
            while not self._connected and any(
                e.state == RelayState.PENDING for e in self._entries.values()
            ):
                self._state_changed.clear()
                await self._state_changed.wait()

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(_wait(), timeout=timeout)
        return bool(self._connected)

    async def close(self) -> None:
        """Close every socket. Idempotent.

        Relays that were connected are reported to ``on_disconnect``
        listeners. Relays stay known to the pool and can be reconnected.
        """
        for entry in list(self._entries.values()):
            await entry.socket.close()
            if entry.state == RelayState.CONNECTED:
                self.handle_disconnect(entry.relay)
            elif entry.state == RelayState.PENDING:
                entry.state = RelayState.DISCONNECTED
        self._state_changed.set()
        if self._entries:
            self._logger.info("pool_closed", relays=len(self._entries))

    # -------------------------------------------------------------------------
    # Listener Registration
    # -------------------------------------------------------------------------

    def _emit(self, name: str, *args: Any) -> None:
        self._listeners[name].emit(*args)

    def on_connect(self, callback: Callable[[Relay], Any]) -> Unregister:
        """Call *callback(relay)* each time a relay becomes connected."""
        return self._listeners["connect"].add(callback)

    def on_disconnect(self, callback: Callable[[Relay], Any]) -> Unregister:
        """Call *callback(relay)* each time a connected relay drops."""
        return self._listeners["disconnect"].add(callback)

    def on_error(self, callback: Callable[[Relay, ConnectivityError], Any]) -> Unregister:
        """Call *callback(relay, error)* on socket errors."""
        return self._listeners["error"].add(callback)

    def on_event(self, callback: Callable[[Relay, str, Any], Any]) -> Unregister:
        """Call *callback(relay, sub_id, payload)* for every received event payload."""
        return self._listeners["event"].add(callback)

    def on_eose(self, callback: Callable[[Relay, str], Any]) -> Unregister:
        """Call *callback(relay, sub_id)* on end-of-stored-events."""
        return self._listeners["eose"].add(callback)

    def on_closed(self, callback: Callable[[Relay, str, str], Any]) -> Unregister:
        """Call *callback(relay, sub_id, reason)* when a relay closes a subscription."""
        return self._listeners["closed"].add(callback)

    # -------------------------------------------------------------------------
    # Socket Notifications
    # -------------------------------------------------------------------------

    def handle_connect(self, relay: Relay) -> None:
        entry = self._entries.get(relay.url)
        if entry is None or entry.state == RelayState.CONNECTED:
            return
        entry.state = RelayState.CONNECTED
        self._connected[relay.url] = relay
        self._ever_connected = True
        self._state_changed.set()
        RELAYS_CONNECTED.set(len(self._connected))
        entry.logger.info("relay_connected", connected=len(self._connected))
        self._emit("connect", relay)

    def handle_disconnect(self, relay: Relay) -> None:
        entry = self._entries.get(relay.url)
        if entry is None:
            return
        was_connected = entry.state == RelayState.CONNECTED
        entry.state = RelayState.DISCONNECTED
        self._connected.pop(relay.url, None)
        self._state_changed.set()
        RELAYS_CONNECTED.set(len(self._connected))
        if was_connected:
            entry.logger.info("relay_disconnected", connected=len(self._connected))
            self._emit("disconnect", relay)

    def handle_error(self, relay: Relay, error: BaseException) -> None:
        entry = self._entries.get(relay.url)
        if entry is None:
            return
        classified = _classify_error(relay, error)
        if entry.state == RelayState.PENDING:
            entry.state = RelayState.ERROR
            self._state_changed.set()
        RELAY_ERRORS.labels(error=type(classified).__name__).inc()
        entry.logger.warning(
            "relay_error", error_type=type(classified).__name__, error=str(error) or repr(error)
        )
        self._emit("error", relay, classified)

    def handle_event(self, relay: Relay, sub_id: str, payload: Any) -> None:
        self._emit("event", relay, sub_id, payload)

    def handle_eose(self, relay: Relay, sub_id: str) -> None:
        self._emit("eose", relay, sub_id)

    def handle_closed(self, relay: Relay, sub_id: str, reason: str) -> None:
        entry = self._entries.get(relay.url)
        if entry is not None:
            entry.logger.debug("subscription_closed_by_relay", sub_id=sub_id, reason=reason)
        self._emit("closed", relay, sub_id, reason)

    # -------------------------------------------------------------------------
    # Relay Operations
    # -------------------------------------------------------------------------

    def publish(self, event: Event) -> list[PublishAck]:
        """Send *event* to every connected relay.

        Relays that are not connected are skipped silently, so this never
        waits on a down relay. A relay whose send fails is logged and left
        out of the result.

        Returns:
            One [PublishAck][relayhub.core.pool.PublishAck] per relay the
            event was handed to.
        """
        acks: list[PublishAck] = []
        for relay in self.connected_relays:
            entry = self._entries[relay.url]
            try:
                future = entry.socket.publish(event)
            except OSError as e:
                entry.logger.warning("publish_failed", event_id=event.id, error=str(e))
                continue
            acks.append(PublishAck(relay, future))
        EVENTS_PUBLISHED.inc(len(acks))
        self._logger.debug("event_published", event_id=event.id, relays=len(acks))
        return acks

    async def broadcast(
        self,
        event: Event,
        *,
        timeout: float | None = None,  # noqa: ASYNC109
    ) -> dict[str, PublishResult]:
        """Publish *event* and wait for every relay's answer.

        Relays that do not answer within *timeout* are reported as
        ``PublishResult(False, "timeout")``.

        Raises:
            PublishingError: If no relay is connected.
        """
        acks = self.publish(event)
        if not acks:
            raise PublishingError(f"no connected relay to publish event {event.id}")

        async def _outcome(ack: PublishAck) -> PublishResult:
            try:
                return await asyncio.wait_for(ack.future, timeout=timeout)
            except TimeoutError:
                return PublishResult(False, "timeout")

        results = await asyncio.gather(*(_outcome(ack) for ack in acks))
        return {ack.relay.url: result for ack, result in zip(acks, results, strict=True)}

    def open_subscription(self, url: str, sub_id: str, filter: Filter) -> bool:  # noqa: A002
        """Open *sub_id* for *filter* on one relay.

        Returns:
            ``False`` (without raising) if the relay is not connected or
            the send fails.
        """
        entry = self._entries.get(url)
        if entry is None or entry.state != RelayState.CONNECTED:
            return False
        try:
            entry.socket.subscribe(sub_id, filter)
        except OSError as e:
            entry.logger.warning("subscribe_failed", sub_id=sub_id, error=str(e))
            return False
        SUBSCRIPTIONS_OPENED.inc()
        entry.logger.debug("subscription_opened", sub_id=sub_id)
        return True

    def close_subscription(self, url: str, sub_id: str) -> bool:
        """Close *sub_id* on one relay. A no-op on a disconnected relay."""
        entry = self._entries.get(url)
        if entry is None or entry.state != RelayState.CONNECTED:
            return False
        try:
            entry.socket.unsubscribe(sub_id)
        except OSError as e:
            entry.logger.debug("unsubscribe_failed", sub_id=sub_id, error=str(e))
            return False
        return True

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def connected_relays(self) -> tuple[Relay, ...]:
        """Snapshot of the connected relays, in connection order."""
        return tuple(self._connected.values())

    @property
    def relays(self) -> tuple[Relay, ...]:
        """Every relay the pool has seen, connected or not."""
        return tuple(entry.relay for entry in self._entries.values())

    def state(self, url: str) -> RelayState | None:
        """Return the state of a relay, or ``None`` if the pool does not know it."""
        entry = self._entries.get(url)
        if entry is None:
            with contextlib.suppress(TypeError, ValueError):
                entry = self._entries.get(Relay(url).url)
        return entry.state if entry is not None else None

    def is_connected(self, url: str) -> bool:
        return self.state(url) == RelayState.CONNECTED

    @property
    def is_loading(self) -> bool:
        """``True`` until the pool has connected to at least one relay."""
        return not self._ever_connected

    @property
    def config(self) -> PoolConfig:
        """The pool configuration (read-only)."""
        return self._config

    # -------------------------------------------------------------------------
    # Context Manager
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> ConnectionPool:
        """Start connecting to the configured relays on context entry."""
        self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any | None,
    ) -> None:
        """Close every socket on context exit."""
        await self.close()

    def __repr__(self) -> str:
        return f"ConnectionPool(relays={len(self._entries)}, connected={len(self._connected)})"
