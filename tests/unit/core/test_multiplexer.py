"""
Unit tests for core.multiplexer module.

Tests:
- Subscribing on every connected relay with one shared subscription id
- Equal filters sharing one reference-counted relay subscription
- Late-joining relays receive open subscriptions
- Disconnect clears per-relay state; reconnect reopens
- Event decoding, malformed payload isolation and routing
- EOSE / CLOSED handling and the done flag
- Unsubscribe idempotency and empty-filter suppression
"""

from conftest import RELAY_A, RELAY_B, make_event_dict

from relayhub.core.multiplexer import SubscriptionMultiplexer
from relayhub.models import Event, Filter


NOTES = Filter(kinds=[1], limit=20)


# ============================================================================
# Subscribe Tests
# ============================================================================


class TestSubscribe:
    """Opening subscriptions across relays."""

    def test_opens_on_every_connected_relay(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        handle = mux.subscribe(NOTES)

        assert handle.is_active
        assert set(handle.relays) == {RELAY_A, RELAY_B}
        for url in (RELAY_A, RELAY_B):
            assert socket_factory[url].subscriptions[handle.id] == NOTES.to_dict()

    def test_sub_ids_unique_per_filter(self, connected_pool) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        assert mux.subscribe(NOTES).id != mux.subscribe(Filter(kinds=[0])).id

    def test_no_relays_connected_yet(self, multiplexer, pool, socket_factory) -> None:
        pool.connect()
        handle = multiplexer.subscribe(NOTES)
        assert handle.is_active
        assert handle.relays == ()
        assert socket_factory[RELAY_A].subscriptions == {}

    def test_on_subscribe_per_relay(self, connected_pool) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        seen: list[str] = []
        mux.subscribe(NOTES, on_subscribe=lambda relay: seen.append(relay.url))
        assert sorted(seen) == [RELAY_A, RELAY_B]

    def test_empty_filter_suppressed(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        handle = mux.subscribe(Filter(authors=[]))

        assert not handle.is_active
        assert handle.relays == ()
        assert socket_factory[RELAY_A].subscriptions == {}
        assert mux.active_subscriptions() == ()

    def test_empty_filter_not_opened_on_late_relay(self, multiplexer, pool, socket_factory) -> None:
        pool.connect()
        handle = multiplexer.subscribe(Filter(kinds=[]))
        socket_factory[RELAY_A].simulate_connect()
        assert handle.relays == ()

    def test_send_failure_leaves_relay_out(self, connected_pool, socket_factory) -> None:
        socket_factory[RELAY_A].fail_sends = True
        mux = SubscriptionMultiplexer(connected_pool)
        handle = mux.subscribe(NOTES)
        assert handle.relays == (RELAY_B,)


class TestRelayChurn:
    """Relays connecting and disconnecting under open subscriptions."""

    def test_late_relay_gets_subscription(self, multiplexer, pool, socket_factory) -> None:
        pool.connect()
        socket_factory[RELAY_A].simulate_connect()
        subscribed: list[str] = []
        handle = multiplexer.subscribe(NOTES, on_subscribe=lambda r: subscribed.append(r.url))

        socket_factory[RELAY_B].simulate_connect()

        assert subscribed == [RELAY_A, RELAY_B]
        assert socket_factory[RELAY_B].subscriptions[handle.id] == NOTES.to_dict()

    def test_disconnect_clears_relay_state(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        handle = mux.subscribe(NOTES)
        socket_factory[RELAY_A].emit_eose(handle.id)

        socket_factory[RELAY_A].simulate_disconnect()

        assert handle.relays == (RELAY_B,)
        assert handle.subscription(RELAY_A) is None

    def test_reconnect_reopens_clean(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        handle = mux.subscribe(NOTES)
        socket = socket_factory[RELAY_A]
        socket.emit_eose(handle.id)
        socket.simulate_disconnect()

        connected_pool.connect([RELAY_A])
        socket.simulate_connect()

        sub = handle.subscription(RELAY_A)
        assert sub is not None
        assert sub.eose is False
        assert sub.event_count == 0
        assert handle.id in socket.subscriptions

    def test_unsubscribed_handle_not_reopened(self, multiplexer, pool, socket_factory) -> None:
        pool.connect()
        handle = multiplexer.subscribe(NOTES)
        handle.unsubscribe()
        socket_factory[RELAY_A].simulate_connect()
        assert socket_factory[RELAY_A].subscriptions == {}


# ============================================================================
# Message Routing Tests
# ============================================================================


class TestEvents:
    """Event decoding and routing."""

    def test_event_decoded_and_delivered(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        received: list[tuple[Event, str]] = []
        handle = mux.subscribe(NOTES, on_event=lambda e, r: received.append((e, r.url)))
        payload = make_event_dict()

        socket_factory[RELAY_B].emit_event(handle.id, payload)

        assert len(received) == 1
        event, url = received[0]
        assert isinstance(event, Event)
        assert event.id == payload["id"]
        assert url == RELAY_B
        assert handle.subscription(RELAY_B).event_count == 1

    def test_same_event_from_two_relays_delivered_twice(
        self, connected_pool, socket_factory
    ) -> None:
        """Deduplication is the merger's job, not the multiplexer's."""
        mux = SubscriptionMultiplexer(connected_pool)
        received: list[str] = []
        handle = mux.subscribe(NOTES, on_event=lambda e, r: received.append(r.url))
        payload = make_event_dict()

        socket_factory[RELAY_A].emit_event(handle.id, payload)
        socket_factory[RELAY_B].emit_event(handle.id, payload)

        assert received == [RELAY_A, RELAY_B]

    def test_malformed_payload_dropped(self, connected_pool, socket_factory, caplog) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        received: list[Event] = []
        handle = mux.subscribe(NOTES, on_event=lambda e, r: received.append(e))
        bad = make_event_dict()
        del bad["sig"]

        socket_factory[RELAY_A].emit_event(handle.id, bad)
        socket_factory[RELAY_A].emit_event(handle.id, "not an object")
        socket_factory[RELAY_A].emit_event(handle.id, make_event_dict())

        assert len(received) == 1
        assert handle.subscription(RELAY_A).event_count == 1
        assert sum(r.message == "event_malformed" for r in caplog.records) == 2

    def test_unknown_sub_id_ignored(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        received: list[Event] = []
        mux.subscribe(NOTES, on_event=lambda e, r: received.append(e))
        socket_factory[RELAY_A].emit_event("someone-else", make_event_dict())
        assert received == []

    def test_routed_to_matching_handle_only(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        first: list[Event] = []
        second: list[Event] = []
        h1 = mux.subscribe(NOTES, on_event=lambda e, r: first.append(e))
        mux.subscribe(Filter(kinds=[0]), on_event=lambda e, r: second.append(e))

        socket_factory[RELAY_A].emit_event(h1.id, make_event_dict())

        assert len(first) == 1
        assert second == []

    def test_events_after_unsubscribe_ignored(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        received: list[Event] = []
        handle = mux.subscribe(NOTES, on_event=lambda e, r: received.append(e))
        handle.unsubscribe()

        socket_factory[RELAY_A].emit_event(handle.id, make_event_dict())

        assert received == []

    def test_listener_failure_isolated(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        received: list[Event] = []

        def broken(_event, _relay):
            raise RuntimeError("consumer bug")

        handle = mux.subscribe(NOTES, on_event=broken)
        handle.on_event(lambda e, r: received.append(e))

        socket_factory[RELAY_A].emit_event(handle.id, make_event_dict())

        assert len(received) == 1


class TestEose:
    """End-of-stored-events and relay-side closes."""

    def test_eose_once_per_relay(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        seen: list[str] = []
        handle = mux.subscribe(NOTES, on_eose=lambda r: seen.append(r.url))
        assert not handle.is_done

        socket_factory[RELAY_A].emit_eose(handle.id)
        socket_factory[RELAY_A].emit_eose(handle.id)
        socket_factory[RELAY_B].emit_eose(handle.id)

        assert seen == [RELAY_A, RELAY_B]
        assert handle.is_done
        assert handle.subscription(RELAY_A).eose

    def test_closed_before_eose_counts_as_done(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        seen: list[str] = []
        handle = mux.subscribe(NOTES, on_eose=lambda r: seen.append(r.url))

        socket_factory[RELAY_A].emit_closed(handle.id, "error: too many subscriptions")

        assert seen == [RELAY_A]
        assert handle.is_done
        assert handle.relays == (RELAY_B,)

    def test_closed_after_eose_not_repeated(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        seen: list[str] = []
        handle = mux.subscribe(NOTES, on_eose=lambda r: seen.append(r.url))

        socket_factory[RELAY_A].emit_eose(handle.id)
        socket_factory[RELAY_A].emit_closed(handle.id, "")

        assert seen == [RELAY_A]

    def test_events_after_relay_close_ignored(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        received: list[Event] = []
        handle = mux.subscribe(NOTES, on_event=lambda e, r: received.append(e))
        socket_factory[RELAY_A].emit_closed(handle.id, "")
        socket_factory[RELAY_A].emit_event(handle.id, make_event_dict())
        assert received == []


# ============================================================================
# Unsubscribe Tests
# ============================================================================


class TestUnsubscribe:
    """Unsubscribe and teardown."""

    def test_closes_on_every_relay(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        handle = mux.subscribe(NOTES)

        handle.unsubscribe()

        assert not handle.is_active
        assert handle.relays == ()
        assert socket_factory[RELAY_A].unsubscribed == [handle.id]
        assert socket_factory[RELAY_B].unsubscribed == [handle.id]
        assert mux.active_subscriptions() == ()

    def test_idempotent(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        handle = mux.subscribe(NOTES)
        handle.unsubscribe()
        mux.unsubscribe(handle)
        assert socket_factory[RELAY_A].unsubscribed == [handle.id]

    def test_after_relay_disconnected(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        handle = mux.subscribe(NOTES)
        socket_factory[RELAY_A].simulate_disconnect()

        handle.unsubscribe()

        assert socket_factory[RELAY_A].unsubscribed == []
        assert socket_factory[RELAY_B].unsubscribed == [handle.id]

    def test_close_detaches_from_pool(self, multiplexer, pool, socket_factory) -> None:
        pool.connect()
        handle = multiplexer.subscribe(NOTES)

        multiplexer.close()
        socket_factory[RELAY_A].simulate_connect()

        assert not handle.is_active
        assert socket_factory[RELAY_A].subscriptions == {}
        assert len(pool._listeners["connect"]) == 0

    def test_repr(self, connected_pool) -> None:
        handle = SubscriptionMultiplexer(connected_pool).subscribe(NOTES)
        assert repr(handle) == f"SubscriptionHandle(id={handle.id}, active=True, relays=2, done=False)"


# ============================================================================
# Shared Subscription Tests
# ============================================================================


class TestSharedFilters:
    """Handles with structurally equal filters share one relay subscription."""

    def test_equal_filters_send_one_request(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        first = mux.subscribe(Filter(kinds=[1, 0]))
        second = mux.subscribe(Filter.from_dict({"kinds": [0, 1]}))

        assert first.id == second.id
        assert first is not second
        for url in (RELAY_A, RELAY_B):
            assert socket_factory[url].requested == [first.id]
        assert mux.active_subscriptions() == (first, second)

    def test_events_fan_out_to_every_handle(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        first: list[Event] = []
        second: list[Event] = []
        handle = mux.subscribe(NOTES, on_event=lambda e, r: first.append(e))
        mux.subscribe(Filter(limit=20, kinds=[1]), on_event=lambda e, r: second.append(e))

        socket_factory[RELAY_A].emit_event(handle.id, make_event_dict())

        assert len(first) == 1
        assert first == second
        assert handle.subscription(RELAY_A).event_count == 1

    def test_close_sent_after_last_handle_leaves(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        first = mux.subscribe(NOTES)
        second = mux.subscribe(NOTES)

        first.unsubscribe()

        assert not first.is_active
        assert second.is_active
        assert socket_factory[RELAY_A].unsubscribed == []
        assert second.relays == (RELAY_A, RELAY_B)

        second.unsubscribe()

        assert socket_factory[RELAY_A].unsubscribed == [second.id]
        assert socket_factory[RELAY_B].unsubscribed == [second.id]
        assert mux.active_subscriptions() == ()

    def test_left_handle_gets_no_events(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        left: list[Event] = []
        first = mux.subscribe(NOTES, on_event=lambda e, r: left.append(e))
        second = mux.subscribe(NOTES)
        first.unsubscribe()

        socket_factory[RELAY_A].emit_event(second.id, make_event_dict())

        assert left == []

    def test_late_handle_gets_replay(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        first = mux.subscribe(NOTES)
        payload = make_event_dict()
        socket_factory[RELAY_A].emit_event(first.id, payload)
        socket_factory[RELAY_A].emit_eose(first.id)

        received: list[tuple[str, str]] = []
        finished: list[str] = []
        opened: list[str] = []
        second = mux.subscribe(
            NOTES,
            on_event=lambda e, r: received.append((e.id, r.url)),
            on_eose=lambda r: finished.append(r.url),
            on_subscribe=lambda r: opened.append(r.url),
        )

        assert received == [(payload["id"], RELAY_A)]
        assert finished == [RELAY_A]
        assert opened == [RELAY_A, RELAY_B]
        assert second.is_done
        assert socket_factory[RELAY_A].requested == [first.id]

    def test_resubscribe_after_close_opens_fresh(self, connected_pool, socket_factory) -> None:
        mux = SubscriptionMultiplexer(connected_pool)
        first = mux.subscribe(NOTES)
        socket_factory[RELAY_A].emit_event(first.id, make_event_dict())
        first.unsubscribe()

        received: list[Event] = []
        second = mux.subscribe(NOTES, on_event=lambda e, r: received.append(e))

        assert second.id != first.id
        assert received == []
        assert socket_factory[RELAY_A].requested == [first.id, second.id]

    def test_late_relay_opened_once_for_shared_filter(
        self, multiplexer, pool, socket_factory
    ) -> None:
        pool.connect()
        first = multiplexer.subscribe(NOTES)
        multiplexer.subscribe(NOTES)

        socket_factory[RELAY_A].simulate_connect()

        assert socket_factory[RELAY_A].requested == [first.id]
