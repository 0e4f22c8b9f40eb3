"""
Debounced batch fetch queue.

Collapses many single-key lookups into one multi-key subscription. Each
key moves through [FetchState][relayhub.models.constants.FetchState]::

    UNREQUESTED -> QUEUED -> IN_FLIGHT -> RESOLVED

[request()][relayhub.core.batch.BatchFetchQueue.request] queues a key and
restarts a trailing debounce timer. When the timer fires with no further
requests, every queued key moves to ``IN_FLIGHT`` at once and exactly one
subscription is opened for the whole batch. A key that is ``IN_FLIGHT`` or
``RESOLVED`` is never queued again, so N callers asking for the same key
cost one round trip.

Results land in a [ResolvedStore][relayhub.core.batch.ResolvedStore]
(last writer wins). Readers poll it: there is no per-request future.

Examples:
    ```python
    queue = BatchFetchQueue(
        multiplexer,
        build_filter=lambda keys: Filter(kinds=[3], authors=keys),
        extract=lambda event: (event.pubkey, event.tags),
        name="contacts",
    )
    for pubkey in pubkeys:
        queue.request(pubkey)   # one subscription after 100 ms of quiet
    ```

See Also:
    [ProfileLoader][relayhub.core.profiles.ProfileLoader]: Kind-0 metadata
        specialisation of this queue.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Iterator
from functools import partial
from typing import TYPE_CHECKING, Generic, TypeVar

from pydantic import BaseModel, Field

from relayhub.models.constants import FetchState
from relayhub.models.event import Event  # noqa: TC001
from relayhub.models.filter import Filter  # noqa: TC001
from relayhub.models.relay import Relay  # noqa: TC001

from .exceptions import MalformedPayloadError
from .logger import Logger
from .metrics import BATCH_FLUSHES, BATCH_SIZE


if TYPE_CHECKING:
    from .multiplexer import SubscriptionHandle, SubscriptionMultiplexer


V = TypeVar("V")


class BatchConfig(BaseModel):
    """Batch fetch queue settings.

    See Also:
        [BatchFetchQueue][relayhub.core.batch.BatchFetchQueue]: The queue
            that consumes this configuration.
    """

    debounce: float = Field(
        default=0.1, gt=0.0, le=60.0, description="Quiet period before a flush (seconds)"
    )


class ResolvedStore(Generic[V]):
    """Key to last-resolved-value mapping shared by every reader.

    Writes replace the previous value. ``snapshot()`` returns a copy, so
    iteration never sees a concurrent write.
    """

    __slots__ = ("_values",)

    def __init__(self) -> None:
        self._values: dict[str, V] = {}

    def set(self, key: str, value: V) -> None:
        self._values[key] = value

    def get(self, key: str, default: V | None = None) -> V | None:
        return self._values.get(key, default)

    def snapshot(self) -> dict[str, V]:
        return dict(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(tuple(self._values))

    def __len__(self) -> int:
        return len(self._values)


class BatchFetchQueue(Generic[V]):
    """Coalesces key lookups into debounced batch subscriptions.

    The queue owns its timer, key states, store and batch handles; create
    one per session and pass it where it is needed.

    A key is requested from the relays at most once per queue: repeating
    it after its batch has been flushed is a no-op, even in a later
    debounce window and even if the batch found nothing. A repeated key is
    never re-issued within one session; create a new queue to look keys
    up again.

    Each batch subscription is closed as soon as every relay it is open
    on has sent end-of-stored-events (or closed it), so finished batches
    hold no live subscription. Resolved values and key states are kept.

    Args:
        multiplexer: Opens the batch subscriptions.
        build_filter: Builds the filter for a list of keys.
        extract: Maps an incoming event to ``(key, value)``. May raise
            [MalformedPayloadError][relayhub.core.exceptions.MalformedPayloadError]
            to drop the event.
        config: Debounce settings.
        name: Label for logs and the ``queue`` metric label.

    Note:
        ``request()`` must be called from a running event loop, which
        schedules the debounce timer.
    """

    def __init__(
        self,
        multiplexer: SubscriptionMultiplexer,
        build_filter: Callable[[list[str]], Filter],
        extract: Callable[[Event], tuple[str, V]],
        config: BatchConfig | None = None,
        name: str = "batch",
    ) -> None:
        self._multiplexer = multiplexer
        self._build_filter = build_filter
        self._extract = extract
        self._config = config or BatchConfig()
        self._name = name
        self._states: dict[str, FetchState] = {}
        self._queued: dict[str, None] = {}
        self._batches: dict[str, SubscriptionHandle] = {}
        self._handles: list[SubscriptionHandle] = []
        self._store: ResolvedStore[V] = ResolvedStore()
        self._timer: asyncio.TimerHandle | None = None
        self._changed = asyncio.Event()
        self._subscriptions_issued = 0
        self._logger = Logger("relayhub.batch").bind(queue=name)

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def request(self, key: str) -> FetchState:
        """Ask for *key*.

        A no-op for keys already ``IN_FLIGHT`` or ``RESOLVED``. Otherwise
        the key is queued and the debounce timer restarts.

        Returns:
            The key's state after the call.
        """
        state = self.state(key)
        if state in (FetchState.IN_FLIGHT, FetchState.RESOLVED):
            return state
        self._queued[key] = None
        self._states[key] = FetchState.QUEUED
        self._restart_timer()
        return FetchState.QUEUED

    def _restart_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self._config.debounce, self.flush)

    def flush(self) -> SubscriptionHandle | None:
        """Move every queued key to ``IN_FLIGHT`` and open one subscription.

        Called by the debounce timer; may be called directly to skip the
        wait. Returns ``None`` if nothing was queued.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._queued:
            return None

        keys = list(self._queued)
        self._queued.clear()
        for key in keys:
            self._states[key] = FetchState.IN_FLIGHT

        handle = self._multiplexer.subscribe(self._build_filter(keys), on_event=self._handle_event)
        handle.on_eose(partial(self._handle_eose, handle))
        self._handles.append(handle)
        for key in keys:
            self._batches[key] = handle
        self._subscriptions_issued += 1
        self._changed.set()
        self._close_if_finished(handle)

        BATCH_FLUSHES.labels(queue=self._name).inc()
        BATCH_SIZE.labels(queue=self._name).observe(len(keys))
        self._logger.debug("batch_flushed", keys=len(keys), sub_id=handle.id)
        return handle

    async def resolve(self, key: str, *, timeout: float | None = None) -> V | None:  # noqa: ASYNC109
        """Request *key* and wait until it resolves or its batch finishes loading.

        Returns:
            The resolved value, or ``None`` if nothing arrived in time.
        """
        self.request(key)

        async def _wait() -> None:
            while self.is_loading(key):
                self._changed.clear()
                await self._changed.wait()

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(_wait(), timeout=timeout)
        return self._store.get(key)

    # -------------------------------------------------------------------------
    # Subscription Callbacks
    # -------------------------------------------------------------------------

    def _handle_event(self, event: Event, relay: Relay) -> None:
        try:
            key, value = self._extract(event)
        except MalformedPayloadError as e:
            self._logger.warning(
                "payload_malformed", relay=relay.url, event_id=event.id, error=str(e)
            )
            return
        if self._states.get(key) not in (FetchState.IN_FLIGHT, FetchState.RESOLVED):
            self._logger.debug("unrequested_key_dropped", key=key, event_id=event.id)
            return
        self._store.set(key, value)
        self._states[key] = FetchState.RESOLVED
        self._changed.set()

    def _handle_eose(self, handle: SubscriptionHandle, _relay: Relay) -> None:
        self._changed.set()
        self._close_if_finished(handle)

    def _close_if_finished(self, handle: SubscriptionHandle) -> None:
        """Close *handle* once every relay it is open on has finished its stored events."""
        if not handle.is_active or not handle.is_done:
            return
        for url in handle.relays:
            subscription = handle.subscription(url)
            if subscription is not None and not subscription.eose:
                return
        handle.unsubscribe()
        with contextlib.suppress(ValueError):
            self._handles.remove(handle)
        self._logger.debug("batch_finished", sub_id=handle.id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def state(self, key: str) -> FetchState:
        return self._states.get(key, FetchState.UNREQUESTED)

    def get(self, key: str) -> V | None:
        """Return the resolved value for *key*, or ``None``."""
        return self._store.get(key)

    def is_loading(self, key: str) -> bool:
        """Whether a result for *key* may still arrive from its first load.

        ``True`` while queued, and while in flight until the batch
        subscription reports end-of-stored-events.
        """
        state = self.state(key)
        if state == FetchState.QUEUED:
            return True
        if state == FetchState.IN_FLIGHT:
            handle = self._batches.get(key)
            return handle is not None and handle.is_active and not handle.is_done
        return False

    @property
    def store(self) -> ResolvedStore[V]:
        return self._store

    @property
    def pending(self) -> tuple[str, ...]:
        """Keys queued for the next flush."""
        return tuple(self._queued)

    @property
    def subscriptions_issued(self) -> int:
        """Number of batch subscriptions opened so far."""
        return self._subscriptions_issued

    @property
    def config(self) -> BatchConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Cancel the timer and close every batch subscription.

        Queued keys are dropped back to ``UNREQUESTED``; resolved values
        stay readable.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for key in self._queued:
            self._states.pop(key, None)
        self._queued.clear()
        for handle in self._handles:
            handle.unsubscribe()
        self._handles.clear()
        self._changed.set()

    def __repr__(self) -> str:
        return (
            f"BatchFetchQueue(name={self._name}, queued={len(self._queued)}, "
            f"resolved={len(self._store)}, subscriptions={self._subscriptions_issued})"
        )
