"""Relay sockets backed by nostr-sdk clients.

Defines the boundary between the coordination core and the wire: a
[RelaySocket][relayhub.utils.transport.RelaySocket] owns one connection to
one relay, accepts send primitives (publish, subscribe, unsubscribe) and
reports everything that happens on the connection to a
[RelaySocketHandler][relayhub.utils.transport.RelaySocketHandler].

The concrete [NostrRelaySocket][relayhub.utils.transport.NostrRelaySocket]
runs one ``nostr_sdk.Client`` per relay. Message encoding, the WebSocket
session and ``OK`` bookkeeping all belong to nostr-sdk; this module only
translates between the client and the handler callbacks.

Attributes:
    RelaySocket: Abstract socket interface consumed by the pool.
    RelaySocketHandler: Notification protocol implemented by the pool.
    NostrRelaySocket: nostr-sdk implementation, one client per relay.
    InsecureWebSocketTransport: aiohttp transport with TLS verification off.
    PublishResult: Outcome of a single publish on a single relay.

Note:
    Clearnet connections are always attempted with full TLS verification
    first. Only when that fails with a certificate error and
    ``allow_insecure=True`` is the connection retried through
    [InsecureWebSocketTransport][relayhub.utils.transport.InsecureWebSocketTransport].

    The socket does not reconnect on its own. After a disconnect the pool
    may call [start()][relayhub.utils.transport.RelaySocket.start] again on
    the same instance, which builds a fresh client. No subscription state
    is carried across sessions.

See Also:
    [relayhub.core.pool.ConnectionPool][relayhub.core.pool.ConnectionPool]:
        Owns one socket per relay and implements the handler protocol.
    [relayhub.models.relay.Relay][relayhub.models.relay.Relay]: The relay
        identity every notification carries.

Examples:
    ```python
    socket = NostrRelaySocket(Relay("wss://relay.damus.io"), handler)
    socket.start()
    socket.subscribe("feed", Filter(kinds=[1], limit=20))
    ack = await socket.publish(event)
    await socket.close()
    ```
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import timedelta
from datetime import timedelta as Duration  # noqa: N812
from typing import TYPE_CHECKING, Any, Final, NamedTuple, Protocol

import aiohttp
from nostr_sdk import (
    Client,
    ClientBuilder,
    ConnectionMode,
    CustomWebSocketTransport,
    HandleNotification,
    NostrSdkError,
    RelayMessage,
    RelayUrl,
    WebSocketAdapter,
    WebSocketAdapterWrapper,
    WebSocketMessage,
    uniffi_set_event_loop,
)

from relayhub.models.event import Event
from relayhub.models.relay import Relay  # noqa: TC001


if TYPE_CHECKING:
    from nostr_sdk import Event as NostrEvent

    from relayhub.models.filter import Filter


DEFAULT_CONNECT_TIMEOUT: Final[float] = 10.0
DEFAULT_CLOSE_TIMEOUT: Final[float] = 5.0
DEFAULT_HEARTBEAT: Final[float] = 30.0


logger = logging.getLogger("relayhub.utils.transport")


class PublishResult(NamedTuple):
    """Relay answer to a published event.

    Attributes:
        accepted: ``True`` if the relay accepted the event.
        message: Reason given by the relay on rejection, or
            ``"disconnected"`` if the connection dropped before an answer.
    """

    accepted: bool
    message: str


class RelaySocketHandler(Protocol):
    """Receiver of lifecycle and message notifications from a socket.

    Every method is called from the event loop that runs the socket and
    must not block. ``handle_event`` receives either an already decoded
    [Event][relayhub.models.event.Event] or a raw NIP-01 mapping.
    """

    def handle_connect(self, relay: Relay) -> None: ...

    def handle_disconnect(self, relay: Relay) -> None: ...

    def handle_error(self, relay: Relay, error: BaseException) -> None: ...

    def handle_event(self, relay: Relay, sub_id: str, payload: Any) -> None: ...

    def handle_eose(self, relay: Relay, sub_id: str) -> None: ...

    def handle_closed(self, relay: Relay, sub_id: str, reason: str) -> None: ...


class RelaySocket(ABC):
    """One logical connection to one relay.

    Send primitives raise ``OSError`` when the socket is not connected;
    they never wait for a connection.
    """

    def __init__(self, relay: Relay, handler: RelaySocketHandler) -> None:
        self.relay = relay
        self._handler = handler

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the socket currently has an open connection."""

    @abstractmethod
    def start(self) -> None:
        """Begin a connection attempt in the background (no-op while running)."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and stop the background task."""

    @abstractmethod
    def publish(self, event: Event) -> asyncio.Future[PublishResult]:
        """Send *event* and return a future for the relay's answer."""

    @abstractmethod
    def subscribe(self, sub_id: str, filter: Filter) -> None:  # noqa: A002
        """Open subscription *sub_id* for *filter*."""

    @abstractmethod
    def unsubscribe(self, sub_id: str) -> None:
        """Close subscription *sub_id*."""


# ---------------------------------------------------------------------------
# SSL Error Detection
# ---------------------------------------------------------------------------

# Multi-word patterns only: single words like "verify" also show up in
# unrelated DNS errors.
_SSL_ERROR_PATTERNS: tuple[str, ...] = (
    "ssl certificate",
    "certificate verify",
    "certificate has expired",
    "self signed certificate",
    "self-signed certificate",
    "unable to get local issuer",
    "x509",
    "tlsv1 alert",
    "ssl handshake",
    "tls handshake failed",
    "certificate_unknown",
    "certificate_expired",
    "ssl error",
    "tls error",
    "cert verify failed",
)


def _is_ssl_error(error_message: str) -> bool:
    """Check if an error message indicates an SSL/TLS certificate error."""
    error_lower = error_message.lower()
    return any(pattern in error_lower for pattern in _SSL_ERROR_PATTERNS)


def _connect_error(relay: Relay, error_message: str) -> OSError:
    """Turn a nostr-sdk connection failure message into an exception."""
    if _is_ssl_error(error_message):
        return ssl.SSLCertVerificationError(
            f"SSL certificate verification failed for {relay.url}: {error_message}"
        )
    if "timeout" in error_message.lower() or "timed out" in error_message.lower():
        return TimeoutError(f"Connection timeout: {relay.url} ({error_message})")
    return OSError(f"Connection failed: {relay.url} ({error_message})")


# ---------------------------------------------------------------------------
# Insecure WebSocket Transport
# ---------------------------------------------------------------------------

_WS_RECV_TIMEOUT = 60.0
_WS_CLOSE_TIMEOUT = 5.0


class InsecureWebSocketAdapter(WebSocketAdapter):
    """aiohttp WebSocket adapter for nostr-sdk with TLS verification off.

    Warning:
        The adapter's session accepts any certificate. It is only used
        after a verified connection failed with a certificate error.
    """

    def __init__(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        session: aiohttp.ClientSession,
        recv_timeout: float = _WS_RECV_TIMEOUT,
        close_timeout: float = _WS_CLOSE_TIMEOUT,
    ) -> None:
        self._ws = ws
        self._session = session
        self._recv_timeout = recv_timeout
        self._close_timeout = close_timeout

    async def send(self, msg: WebSocketMessage) -> None:
        if msg.is_text():
            await self._ws.send_str(msg.text)
        elif msg.is_binary():
            await self._ws.send_bytes(msg.bytes)
        elif msg.is_ping():
            await self._ws.ping(msg.bytes)
        elif msg.is_pong():
            await self._ws.pong(msg.bytes)

    async def recv(self) -> WebSocketMessage | None:
        """Return the next message, or ``None`` once the connection is gone."""
        try:
            msg = await asyncio.wait_for(self._ws.receive(), timeout=self._recv_timeout)
        except TimeoutError:
            return None

        if msg.type == aiohttp.WSMsgType.TEXT:
            return WebSocketMessage.TEXT(msg.data)
        if msg.type == aiohttp.WSMsgType.BINARY:
            return WebSocketMessage.BINARY(msg.data)
        if msg.type == aiohttp.WSMsgType.PING:
            return WebSocketMessage.PING(msg.data)
        if msg.type == aiohttp.WSMsgType.PONG:
            return WebSocketMessage.PONG(msg.data)
        return None

    async def close_connection(self) -> None:
        # aiohttp raises a variety of errors while tearing down a dead socket
        with contextlib.suppress(Exception):
            await asyncio.wait_for(self._ws.close(), timeout=self._close_timeout)
        with contextlib.suppress(Exception):
            await asyncio.wait_for(self._session.close(), timeout=self._close_timeout)


class InsecureWebSocketTransport(CustomWebSocketTransport):
    """nostr-sdk WebSocket transport that skips certificate verification.

    Plugged into a client with ``ClientBuilder.websocket_transport()``.
    ``uniffi_set_event_loop()`` must have been called on the running loop
    before the client connects.
    """

    def __init__(
        self,
        recv_timeout: float = _WS_RECV_TIMEOUT,
        close_timeout: float = _WS_CLOSE_TIMEOUT,
    ) -> None:
        self._recv_timeout = recv_timeout
        self._close_timeout = close_timeout

    async def connect(
        self,
        url: str,
        _mode: ConnectionMode,
        timeout: Duration,  # noqa: ASYNC109
    ) -> WebSocketAdapterWrapper:
        """Open a WebSocket to *url* without certificate verification.

        Raises:
            OSError: On any connection failure, including timeouts.
        """
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE

        connector = aiohttp.TCPConnector(ssl=ssl_context)
        client_timeout = aiohttp.ClientTimeout(total=timeout.total_seconds())
        session = aiohttp.ClientSession(connector=connector, timeout=client_timeout)

        try:
            ws = await session.ws_connect(url)
        except TimeoutError:
            await session.close()
            logger.debug("insecure_ws_timeout url=%s", url)
            raise OSError(f"Connection timeout: {url}") from None
        except asyncio.CancelledError:
            await session.close()
            raise
        except (aiohttp.ClientError, OSError) as e:
            await session.close()
            logger.debug("insecure_ws_connect_failed url=%s error=%s", url, str(e))
            raise OSError(f"Connection failed: {e}") from e

        adapter = InsecureWebSocketAdapter(
            ws, session, recv_timeout=self._recv_timeout, close_timeout=self._close_timeout
        )
        return WebSocketAdapterWrapper(adapter)

    def support_ping(self) -> bool:
        return True


def create_client(*, allow_insecure: bool = False) -> Client:
    """Build a read-only nostr-sdk client.

    Events handed to [NostrRelaySocket.publish()][relayhub.utils.transport.NostrRelaySocket.publish]
    are already signed, so the client carries no signer.

    Args:
        allow_insecure: Use [InsecureWebSocketTransport][relayhub.utils.transport.InsecureWebSocketTransport].
            Must be called from inside the running event loop.
    """
    builder = ClientBuilder()
    if allow_insecure:
        # Required for custom WebSocket transport UniFFI callbacks
        uniffi_set_event_loop(asyncio.get_running_loop())
        builder = builder.websocket_transport(InsecureWebSocketTransport())
    return builder.build()


# ---------------------------------------------------------------------------
# nostr-sdk Relay Socket
# ---------------------------------------------------------------------------


class _NotificationHandler(HandleNotification):
    """Forwards every relay message of one client to its socket."""

    def __init__(self, socket: NostrRelaySocket) -> None:
        self._socket = socket

    async def handle(self, relay_url: Any, subscription_id: str, event: NostrEvent) -> None:
        # Deduplicated by the client; events are taken from handle_msg
        return

    async def handle_msg(self, relay_url: Any, msg: RelayMessage) -> None:
        self._socket._dispatch(msg.as_enum())


class NostrRelaySocket(RelaySocket):
    """Relay socket that drives one ``nostr_sdk.Client`` for one relay.

    A connection session is one background task. It builds a client,
    connects it (falling back to the insecure transport on certificate
    errors when allowed), starts the client's notification loop, reports
    ``handle_connect`` and then checks every *heartbeat* seconds that the
    relay is still connected. When the relay drops or the socket is
    closed the client is shut down and ``handle_disconnect`` is reported.

    Relay messages are mapped onto the handler:

    * ``EVENT`` -> ``handle_event`` with an [Event][relayhub.models.event.Event]
    * ``EOSE`` -> ``handle_eose``
    * ``CLOSED`` -> ``handle_closed``
    * ``NOTICE`` -> logged

    Subscribe and unsubscribe requests are sent in call order by a single
    request task, so a ``CLOSE`` never overtakes its ``REQ``. Publishes
    run concurrently, each resolving its own future from the client's
    send output.

    Args:
        relay: Relay to connect to.
        handler: Receiver of notifications.
        connect_timeout: Seconds allowed for each connection attempt.
        close_timeout: Seconds allowed for the client shutdown.
        heartbeat: Seconds between relay liveness checks.
        allow_insecure: Retry through the insecure transport when TLS
            verification fails.
    """

    def __init__(
        self,
        relay: Relay,
        handler: RelaySocketHandler,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT,
        heartbeat: float = DEFAULT_HEARTBEAT,
        allow_insecure: bool = False,
    ) -> None:
        super().__init__(relay, handler)
        self._connect_timeout = connect_timeout
        self._close_timeout = close_timeout
        self._heartbeat = heartbeat
        self._allow_insecure = allow_insecure
        self._task: asyncio.Task[None] | None = None
        self._client: Client | None = None
        self._relay_url: RelayUrl | None = None
        self._requests: asyncio.Queue[Callable[[], Awaitable[None]]] | None = None
        self._publishes: set[asyncio.Task[None]] = set()
        self._pending: set[asyncio.Future[PublishResult]] = set()

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"relay-socket:{self.relay.url}"
        )

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, TimeoutError):
            await asyncio.wait_for(task, timeout=self._close_timeout * 2)

    def publish(self, event: Event) -> asyncio.Future[PublishResult]:
        client = self._require_client()
        future: asyncio.Future[PublishResult] = asyncio.get_running_loop().create_future()
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)
        task = asyncio.create_task(self._send_event(client, event, future))
        self._publishes.add(task)
        task.add_done_callback(self._publishes.discard)
        return future

    def subscribe(self, sub_id: str, filter: Filter) -> None:  # noqa: A002
        client = self._require_client()
        self._enqueue(lambda: self._subscribe(client, sub_id, filter))

    def unsubscribe(self, sub_id: str) -> None:
        client = self._require_client()
        self._enqueue(lambda: self._unsubscribe(client, sub_id))

    # -- requests ---------------------------------------------------------

    def _require_client(self) -> Client:
        if self._client is None:
            raise OSError(f"relay not connected: {self.relay.url}")
        return self._client

    def _enqueue(self, request: Callable[[], Awaitable[None]]) -> None:
        if self._requests is None:
            raise OSError(f"relay not connected: {self.relay.url}")
        self._requests.put_nowait(request)

    async def _request_loop(self, requests: asyncio.Queue[Callable[[], Awaitable[None]]]) -> None:
        while True:
            request = await requests.get()
            await request()

    async def _send_event(
        self, client: Client, event: Event, future: asyncio.Future[PublishResult]
    ) -> None:
        try:
            output = await client.send_event(event.to_nostr())
        except (OSError, TimeoutError, NostrSdkError) as e:
            logger.debug("send_event_failed relay=%s event_id=%s error=%s", self.relay.url, event.id, e)
            result = PublishResult(False, str(e))
        else:
            if self._relay_url in output.success:
                result = PublishResult(True, "")
            else:
                reason = output.failed.get(self._relay_url) if output.failed else None
                result = PublishResult(False, str(reason) if reason else "no response from relay")
        if not future.done():
            future.set_result(result)

    async def _subscribe(self, client: Client, sub_id: str, filter: Filter) -> None:  # noqa: A002
        try:
            await client.subscribe_with_id(sub_id, filter.to_nostr(), None)
        except (OSError, TimeoutError, NostrSdkError) as e:
            logger.debug("subscribe_failed relay=%s sub_id=%s error=%s", self.relay.url, sub_id, e)
            self._handler.handle_closed(self.relay, sub_id, f"error: {e}")

    async def _unsubscribe(self, client: Client, sub_id: str) -> None:
        try:
            await client.unsubscribe(sub_id)
        except (OSError, TimeoutError, NostrSdkError) as e:
            logger.debug("unsubscribe_failed relay=%s sub_id=%s error=%s", self.relay.url, sub_id, e)

    # -- session ----------------------------------------------------------

    async def _try_connect(self, client: Client, relay_url: RelayUrl) -> str | None:
        """Connect *client*; return ``None`` on success or the failure message."""
        await client.add_relay(relay_url)
        output = await client.try_connect(timedelta(seconds=self._connect_timeout))
        if relay_url in output.success:
            return None
        with contextlib.suppress(Exception):
            await client.shutdown()
        return str(output.failed.get(relay_url, "Unknown error"))

    async def _connect(self, relay_url: RelayUrl) -> Client:
        """Return a connected client, trying verified TLS first.

        Raises:
            ssl.SSLCertVerificationError: TLS failed and insecure fallback is off.
            TimeoutError: The relay did not answer in time.
            OSError: Any other connection failure.
        """
        logger.debug("relay_connecting relay=%s", self.relay.url)
        client = create_client()
        error_message = await self._try_connect(client, relay_url)
        if error_message is None:
            return client
        logger.debug("connect_failed relay=%s error=%s", self.relay.url, error_message)

        if not (self._allow_insecure and _is_ssl_error(error_message)):
            raise _connect_error(self.relay, error_message)

        logger.debug("ssl_fallback_insecure relay=%s error=%s", self.relay.url, error_message)
        client = create_client(allow_insecure=True)
        error_message = await self._try_connect(client, relay_url)
        if error_message is None:
            return client
        raise _connect_error(self.relay, error_message)

    async def _run(self) -> None:
        relay_url = RelayUrl.parse(self.relay.url)
        try:
            client = await self._connect(relay_url)
        except (OSError, TimeoutError, NostrSdkError) as e:
            self._handler.handle_error(self.relay, e)
            return

        try:
            await self._serve(client, relay_url)
        except (OSError, TimeoutError, NostrSdkError) as e:
            self._handler.handle_error(self.relay, e)
        finally:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(client.shutdown(), timeout=self._close_timeout)

    async def _serve(self, client: Client, relay_url: RelayUrl) -> None:
        # Notification callbacks are scheduled on this loop
        uniffi_set_event_loop(asyncio.get_running_loop())
        requests: asyncio.Queue[Callable[[], Awaitable[None]]] = asyncio.Queue()
        notifications = asyncio.create_task(client.handle_notifications(_NotificationHandler(self)))
        request_loop = asyncio.create_task(self._request_loop(requests))
        self._client = client
        self._relay_url = relay_url
        self._requests = requests
        logger.debug("relay_session_open relay=%s", self.relay.url)
        self._handler.handle_connect(self.relay)
        try:
            relay = await client.relay(relay_url)
            while not notifications.done():
                await asyncio.wait({notifications}, timeout=self._heartbeat)
                if not relay.is_connected():
                    break
        finally:
            self._client = None
            self._requests = None
            for task in (notifications, request_loop, *self._publishes):
                task.cancel()
            for task in (notifications, request_loop):
                with contextlib.suppress(asyncio.CancelledError, OSError, NostrSdkError):
                    await task
            self._fail_pending("disconnected")
            logger.debug("relay_session_closed relay=%s", self.relay.url)
            self._handler.handle_disconnect(self.relay)

    def _dispatch(self, message: Any) -> None:
        """Map one ``RelayMessageEnum`` onto the handler."""
        if message.is_event_msg():
            try:
                event = Event.from_nostr(message.event)
            except (TypeError, ValueError) as e:
                logger.debug(
                    "event_rejected relay=%s sub_id=%s error=%s",
                    self.relay.url,
                    message.subscription_id,
                    e,
                )
                return
            self._handler.handle_event(self.relay, message.subscription_id, event)
        elif message.is_end_of_stored_events():
            self._handler.handle_eose(self.relay, message.subscription_id)
        elif message.is_closed():
            self._handler.handle_closed(self.relay, message.subscription_id, message.message)
        elif message.is_notice():
            logger.info("relay_notice relay=%s message=%s", self.relay.url, message.message)

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, set()
        for future in pending:
            if not future.done():
                future.set_result(PublishResult(False, reason))
