"""
Pytest configuration and shared fixtures for relayhub tests.

Provides:
- FakeRelaySocket: in-memory socket driven by the test instead of a relay
- FakeSocketFactory: records one FakeRelaySocket per relay URL
- Pool, multiplexer and event fixtures built on top of them
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import json
import logging
from collections.abc import Callable
from typing import Any

import pytest
from nostr_sdk import Keys

from relayhub.core.multiplexer import SubscriptionMultiplexer
from relayhub.core.pool import ConnectionPool, PoolConfig
from relayhub.models import Event, Filter, Relay
from relayhub.utils.transport import PublishResult, RelaySocket, RelaySocketHandler


RELAY_A = "wss://relay-a.example.com"
RELAY_B = "wss://relay-b.example.com"
RELAY_C = "wss://relay-c.example.com"

SIG = "ef" * 64


# ============================================================================
# Logging Configuration
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def setup_logging() -> None:
    """Configure logging for tests."""
    logging.basicConfig(level=logging.DEBUG)


# ============================================================================
# Fake Socket
# ============================================================================


class FakeRelaySocket(RelaySocket):
    """RelaySocket whose wire is the test itself.

    ``start()`` only records the call. The test decides when the relay
    connects, what it sends and when it drops.
    """

    def __init__(self, relay: Relay, handler: RelaySocketHandler) -> None:
        super().__init__(relay, handler)
        self.connected = False
        self.starts = 0
        self.closes = 0
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.requested: list[str] = []
        self.unsubscribed: list[str] = []
        self.published: list[dict[str, Any]] = []
        self.pending: dict[str, asyncio.Future[PublishResult]] = {}
        self.fail_sends = False

    @property
    def is_connected(self) -> bool:
        return self.connected

    def start(self) -> None:
        self.starts += 1

    async def close(self) -> None:
        self.closes += 1
        self.connected = False

    def _check(self) -> None:
        if not self.connected or self.fail_sends:
            raise OSError(f"relay not connected: {self.relay.url}")

    def publish(self, event: Event) -> asyncio.Future[PublishResult]:
        self._check()
        future: asyncio.Future[PublishResult] = asyncio.get_running_loop().create_future()
        self.published.append(event.to_dict())
        self.pending[event.id] = future
        return future

    def subscribe(self, sub_id: str, filter: Filter) -> None:  # noqa: A002
        self._check()
        self.subscriptions[sub_id] = filter.to_dict()
        self.requested.append(sub_id)

    def unsubscribe(self, sub_id: str) -> None:
        self._check()
        self.unsubscribed.append(sub_id)
        self.subscriptions.pop(sub_id, None)

    # -- driven by tests --------------------------------------------------

    def simulate_connect(self) -> None:
        self.connected = True
        self._handler.handle_connect(self.relay)

    def simulate_disconnect(self) -> None:
        self.connected = False
        self.subscriptions.clear()
        for future in self.pending.values():
            if not future.done():
                future.set_result(PublishResult(False, "disconnected"))
        self.pending.clear()
        self._handler.handle_disconnect(self.relay)

    def simulate_error(self, error: BaseException) -> None:
        self._handler.handle_error(self.relay, error)

    def emit_event(self, sub_id: str, payload: Any) -> None:
        self._handler.handle_event(self.relay, sub_id, payload)

    def emit_eose(self, sub_id: str) -> None:
        self._handler.handle_eose(self.relay, sub_id)

    def emit_closed(self, sub_id: str, reason: str = "") -> None:
        self._handler.handle_closed(self.relay, sub_id, reason)

    def ack(self, event_id: str, accepted: bool = True, message: str = "") -> None:
        future = self.pending.pop(event_id)
        future.set_result(PublishResult(accepted, message))

    @property
    def last_sub_id(self) -> str:
        return list(self.subscriptions)[-1]


class FakeSocketFactory:
    """Socket factory that keeps every socket it builds, keyed by URL."""

    def __init__(self) -> None:
        self.sockets: dict[str, FakeRelaySocket] = {}
        self.created = 0

    def __call__(self, relay: Relay, handler: RelaySocketHandler) -> FakeRelaySocket:
        socket = FakeRelaySocket(relay, handler)
        self.sockets[relay.url] = socket
        self.created += 1
        return socket

    def __getitem__(self, url: str) -> FakeRelaySocket:
        return self.sockets[Relay(url).url]


# ============================================================================
# Pool Fixtures
# ============================================================================


@pytest.fixture
def socket_factory() -> FakeSocketFactory:
    return FakeSocketFactory()


@pytest.fixture
def pool(socket_factory: FakeSocketFactory) -> ConnectionPool:
    """Pool configured with relays A and B, not yet connected."""
    return ConnectionPool(PoolConfig(relays=[RELAY_A, RELAY_B]), socket_factory=socket_factory)


@pytest.fixture
def multiplexer(pool: ConnectionPool) -> SubscriptionMultiplexer:
    return SubscriptionMultiplexer(pool)


@pytest.fixture
def connected_pool(pool: ConnectionPool, socket_factory: FakeSocketFactory) -> ConnectionPool:
    """Pool with relays A and B both connected."""
    pool.connect()
    socket_factory[RELAY_A].simulate_connect()
    socket_factory[RELAY_B].simulate_connect()
    return pool


# ============================================================================
# Event Fixtures
# ============================================================================


_ids = itertools.count()


def make_event_dict(
    *,
    created_at: int = 1_700_000_000,
    kind: int = 1,
    pubkey: str = "cd" * 32,
    content: str = "hello",
    tags: list[list[str]] | None = None,
    event_id: str | None = None,
) -> dict[str, Any]:
    """Build a NIP-01 event dict with a unique id unless one is given."""
    return {
        "id": event_id or hashlib.sha256(f"event-{next(_ids)}".encode()).hexdigest(),
        "pubkey": pubkey,
        "created_at": created_at,
        "kind": kind,
        "tags": tags or [],
        "content": content,
        "sig": SIG,
    }


def make_event(**kwargs: Any) -> Event:
    return Event.from_dict(make_event_dict(**kwargs))


def make_profile_dict(pubkey: str, created_at: int = 1_700_000_000, **content: Any) -> dict[str, Any]:
    """Build a kind-0 event dict whose content is *content* as JSON."""
    return make_event_dict(
        kind=0, pubkey=pubkey, created_at=created_at, content=json.dumps(content)
    )


@pytest.fixture
def event_factory() -> Callable[..., Event]:
    return make_event


@pytest.fixture
def pubkey() -> str:
    """A valid secp256k1 public key in hex."""
    return Keys.generate().public_key().to_hex()


@pytest.fixture
def other_pubkey() -> str:
    return Keys.generate().public_key().to_hex()
