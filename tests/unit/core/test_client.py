"""
Unit tests for core.client module.

Tests:
- Configuration loading (dict, YAML)
- subscribe(): merged feed, dedup across relays, ordering, loading state
- Callback contracts (on_event once per id, on_done once, on_subscribe per relay)
- Filter and callback validation
- publish() / broadcast() coercion and relay selection
- fetch_profile() batching
- close() and the async context manager
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from conftest import RELAY_A, RELAY_B, RELAY_C, FakeSocketFactory, make_event, make_profile_dict
from nostr_sdk import EventBuilder, Keys, Kind

from relayhub.core.client import FeedSubscription, RelayHub, RelayHubConfig
from relayhub.core.exceptions import InvalidFilterError, PublishingError
from relayhub.core.pool import PoolConfig
from relayhub.models import Event, Filter
from relayhub.utils.transport import PublishResult


@pytest.fixture
def hub(socket_factory: FakeSocketFactory) -> RelayHub:
    config = RelayHubConfig(pool=PoolConfig(relays=[RELAY_A, RELAY_B]), batch={"debounce": 0.05})
    return RelayHub(config, socket_factory=socket_factory)


@pytest.fixture
def connected_hub(hub: RelayHub, socket_factory: FakeSocketFactory) -> RelayHub:
    hub.connect()
    socket_factory[RELAY_A].simulate_connect()
    socket_factory[RELAY_B].simulate_connect()
    return hub


# ============================================================================
# Configuration Tests
# ============================================================================


class TestConfiguration:
    def test_defaults(self) -> None:
        hub = RelayHub()
        assert hub.config.pool.relays == []
        assert hub.config.batch.debounce == 0.1
        assert hub.config.metrics.enabled is False

    def test_from_dict(self, socket_factory) -> None:
        hub = RelayHub.from_dict(
            {"pool": {"relays": [RELAY_A]}, "batch": {"debounce": 0.5}},
            socket_factory=socket_factory,
        )
        assert hub.config.pool.relays == [RELAY_A]
        assert hub.profiles.queue.config.debounce == 0.5

    def test_from_yaml(self, tmp_path) -> None:
        path = tmp_path / "relayhub.yaml"
        path.write_text(f"pool:\n  relays: [\"{RELAY_C}\"]\nmetrics:\n  enabled: false\n")
        hub = RelayHub.from_yaml(str(path))
        assert hub.config.pool.relays == [RELAY_C]


# ============================================================================
# Subscribe Tests
# ============================================================================


class TestSubscribe:
    """Merged feed behaviour."""

    def test_duplicate_across_relays_appears_once(self, connected_hub, socket_factory) -> None:
        received: list[Event] = []
        feed = connected_hub.subscribe({"kinds": [1]}, on_event=received.append)
        sub_id = feed.handle.id
        payload = make_event(created_at=100).to_dict()

        socket_factory[RELAY_A].emit_event(sub_id, payload)
        socket_factory[RELAY_B].emit_event(sub_id, payload)

        assert len(feed.events) == 1
        assert len(received) == 1

    def test_feed_sorted_newest_first(self, connected_hub, socket_factory) -> None:
        feed = connected_hub.subscribe({"kinds": [1]})
        sub_id = feed.handle.id
        old = make_event(created_at=100)
        new = make_event(created_at=300)
        tie_first = make_event(created_at=200)
        tie_second = make_event(created_at=200)

        socket_factory[RELAY_A].emit_event(sub_id, old.to_dict())
        socket_factory[RELAY_B].emit_event(sub_id, tie_first.to_dict())
        socket_factory[RELAY_A].emit_event(sub_id, new.to_dict())
        socket_factory[RELAY_A].emit_event(sub_id, tie_second.to_dict())

        assert feed.events == (new, tie_first, tie_second, old)

    def test_loading_until_first_eose(self, connected_hub, socket_factory) -> None:
        done: list[bool] = []
        feed = connected_hub.subscribe({"kinds": [1]}, on_done=lambda: done.append(True))
        assert feed.is_loading

        socket_factory[RELAY_A].emit_eose(feed.handle.id)
        socket_factory[RELAY_B].emit_eose(feed.handle.id)

        assert not feed.is_loading
        assert done == [True]

    def test_loading_while_pool_never_connected(self, hub, socket_factory) -> None:
        hub.connect()
        feed = hub.subscribe({"kinds": [1]})
        assert feed.is_loading
        assert hub.is_loading

        socket_factory[RELAY_A].simulate_connect()
        socket_factory[RELAY_A].emit_eose(feed.handle.id)

        assert not feed.is_loading

    def test_late_relay_auto_subscribed(self, hub, socket_factory) -> None:
        hub.connect()
        socket_factory[RELAY_A].simulate_connect()
        subscribed: list[str] = []
        feed = hub.subscribe({"kinds": [1]}, on_subscribe=lambda r: subscribed.append(r.url))

        socket_factory[RELAY_B].simulate_connect()

        assert subscribed == [RELAY_A, RELAY_B]
        assert feed.handle.id in socket_factory[RELAY_B].subscriptions

    def test_unsubscribe_keeps_events(self, connected_hub, socket_factory) -> None:
        feed = connected_hub.subscribe({"kinds": [1]})
        sub_id = feed.handle.id
        socket_factory[RELAY_A].emit_event(sub_id, make_event().to_dict())

        feed.unsubscribe()
        feed.unsubscribe()
        socket_factory[RELAY_A].emit_event(sub_id, make_event().to_dict())

        assert len(feed.events) == 1
        assert not feed.is_loading
        assert socket_factory[RELAY_A].unsubscribed == [sub_id]

    def test_independent_feeds(self, connected_hub, socket_factory) -> None:
        first = connected_hub.subscribe({"kinds": [1]})
        second = connected_hub.subscribe({"kinds": [0]})
        socket_factory[RELAY_A].emit_event(first.handle.id, make_event().to_dict())
        assert len(first.events) == 1
        assert second.events == ()

    def test_equal_filters_share_relay_subscription(self, connected_hub, socket_factory) -> None:
        first = connected_hub.subscribe({"kinds": [1, 0]})
        socket_factory[RELAY_A].emit_event(first.handle.id, make_event().to_dict())
        second = connected_hub.subscribe({"kinds": [0, 1]})
        socket_factory[RELAY_A].emit_event(first.handle.id, make_event().to_dict())

        assert socket_factory[RELAY_A].requested == [first.handle.id]
        assert len(first.events) == 2
        assert second.events == first.events

        first.unsubscribe()
        assert socket_factory[RELAY_A].unsubscribed == []
        second.unsubscribe()
        assert socket_factory[RELAY_A].unsubscribed == [first.handle.id]

    def test_empty_filter_opens_nothing(self, connected_hub, socket_factory) -> None:
        feed = connected_hub.subscribe({"authors": []})
        assert not feed.is_loading
        assert feed.events == ()
        assert socket_factory[RELAY_A].subscriptions == {}

    def test_disabled(self, connected_hub, socket_factory) -> None:
        feed = connected_hub.subscribe({"kinds": [1]}, enabled=False)
        assert feed.handle is None
        assert not feed.is_loading
        feed.unsubscribe()
        assert socket_factory[RELAY_A].subscriptions == {}

    @pytest.mark.parametrize(
        ("filter_data", "enabled"), [({"authors": []}, True), ({"kinds": [1]}, False)]
    )
    def test_idle_feed_loading_follows_pool(
        self, hub, socket_factory, filter_data, enabled
    ) -> None:
        feed = hub.subscribe(filter_data, enabled=enabled)
        assert feed.is_loading

        hub.connect()
        assert feed.is_loading

        socket_factory[RELAY_A].simulate_connect()
        assert not feed.is_loading
        assert socket_factory[RELAY_A].requested == []

    def test_accepts_filter_object(self, connected_hub, socket_factory) -> None:
        feed = connected_hub.subscribe(Filter(kinds=[1], limit=3))
        assert socket_factory[RELAY_A].subscriptions[feed.handle.id] == {"kinds": [1], "limit": 3}

    def test_repr(self, connected_hub) -> None:
        feed = connected_hub.subscribe({"kinds": [1]})
        assert repr(feed) == "FeedSubscription(events=0, loading=True)"
        assert isinstance(feed, FeedSubscription)


class TestSubscribeValidation:
    @pytest.mark.parametrize(
        "bad",
        [{"kinds": "1"}, {"unknown": 1}, {"limit": -5}, ["kinds"], None],
    )
    def test_invalid_filter(self, connected_hub, bad) -> None:
        with pytest.raises(InvalidFilterError):
            connected_hub.subscribe(bad)

    def test_invalid_filter_is_value_error(self, connected_hub) -> None:
        with pytest.raises(ValueError):
            connected_hub.subscribe({"kinds": [-1]})

    @pytest.mark.parametrize("name", ["on_event", "on_subscribe", "on_done"])
    def test_non_callable_callback(self, connected_hub, socket_factory, name) -> None:
        with pytest.raises(TypeError, match=name):
            connected_hub.subscribe({"kinds": [1]}, **{name: "nope"})
        assert socket_factory[RELAY_A].subscriptions == {}


# ============================================================================
# Publish Tests
# ============================================================================


class TestPublish:
    async def test_publish_after_relay_disconnects(self, connected_hub, socket_factory) -> None:
        socket_factory[RELAY_A].simulate_disconnect()

        acks = connected_hub.publish(make_event())

        assert [ack.relay.url for ack in acks] == [RELAY_B]

    async def test_publish_dict(self, connected_hub, socket_factory) -> None:
        event = make_event()
        acks = connected_hub.publish(event.to_dict())
        assert len(acks) == 2
        assert socket_factory[RELAY_A].published == [event.to_dict()]

    async def test_publish_nostr_sdk_event(self, connected_hub, socket_factory) -> None:
        signed = EventBuilder(Kind(1), "signed note").sign_with_keys(Keys.generate())
        connected_hub.publish(signed)
        assert socket_factory[RELAY_A].published[0]["id"] == signed.id().to_hex()

    async def test_publish_invalid_event(self, connected_hub) -> None:
        with pytest.raises(PublishingError, match="invalid event"):
            connected_hub.publish({"id": "nope"})

    async def test_broadcast(self, connected_hub, socket_factory) -> None:
        event = make_event()

        async def answer() -> None:
            await asyncio.sleep(0)
            socket_factory[RELAY_A].ack(event.id)
            socket_factory[RELAY_B].ack(event.id, False, "duplicate: already have it")

        task = asyncio.create_task(answer())
        results = await connected_hub.broadcast(event, timeout=1)
        await task

        assert results[RELAY_A] == PublishResult(True, "")
        assert results[RELAY_B].message.startswith("duplicate")

    async def test_broadcast_nothing_connected(self, hub) -> None:
        with pytest.raises(PublishingError):
            await hub.broadcast(make_event())


# ============================================================================
# Profile Tests
# ============================================================================


class TestFetchProfile:
    async def test_batched_lookup(self, connected_hub, socket_factory, pubkey, other_pubkey) -> None:
        assert connected_hub.fetch_profile(pubkey).is_loading
        connected_hub.fetch_profile(other_pubkey)

        await asyncio.sleep(0.15)

        socket = socket_factory[RELAY_A]
        assert len(socket.subscriptions) == 1
        socket.emit_event(socket.last_sub_id, make_profile_dict(pubkey, name="dave"))
        socket.emit_eose(socket.last_sub_id)

        found = connected_hub.fetch_profile(pubkey)
        missing = connected_hub.fetch_profile(other_pubkey)
        assert found.data.name == "dave"
        assert not found.is_loading
        assert missing.data is None
        assert not missing.is_loading
        assert connected_hub.profiles.queue.subscriptions_issued == 1

    def test_invalid_pubkey(self, connected_hub) -> None:
        with pytest.raises(ValueError):
            connected_hub.fetch_profile("npub1bogus")


# ============================================================================
# Lifecycle Tests
# ============================================================================


class TestLifecycle:
    async def test_close(self, connected_hub, socket_factory) -> None:
        feed = connected_hub.subscribe({"kinds": [1]})
        disconnected: list[str] = []
        connected_hub.on_disconnect(lambda relay: disconnected.append(relay.url))

        await connected_hub.close()

        assert not feed.handle.is_active
        assert connected_hub.connected_relays == ()
        assert sorted(disconnected) == [RELAY_A, RELAY_B]

    async def test_context_manager_connects_and_closes(self, socket_factory) -> None:
        config = RelayHubConfig(pool=PoolConfig(relays=[RELAY_A]))
        async with RelayHub(config, socket_factory=socket_factory) as hub:
            assert socket_factory[RELAY_A].starts == 1
            socket_factory[RELAY_A].simulate_connect()
            assert await hub.wait_until_ready(timeout=1)
        assert socket_factory[RELAY_A].closes == 1

    async def test_metrics_server_started_when_enabled(self, socket_factory) -> None:
        config = RelayHubConfig(metrics={"enabled": True, "port": 9400})
        with (
            patch("relayhub.core.client.MetricsServer.start", new_callable=AsyncMock) as start,
            patch("relayhub.core.client.MetricsServer.stop", new_callable=AsyncMock) as stop,
        ):
            async with RelayHub(config, socket_factory=socket_factory):
                start.assert_awaited_once()
            stop.assert_awaited_once()

    def test_connection_listeners(self, hub, socket_factory) -> None:
        events: list[str] = []
        hub.on_connect(lambda relay: events.append(f"up {relay.url}"))
        hub.on_error(lambda relay, error: events.append(f"error {type(error).__name__}"))
        hub.connect()

        socket_factory[RELAY_A].simulate_connect()
        socket_factory[RELAY_B].simulate_error(TimeoutError())

        assert events == [f"up {RELAY_A}", "error RelayTimeoutError"]
        assert [r.url for r in hub.connected_relays] == [RELAY_A]
        assert not hub.is_loading
