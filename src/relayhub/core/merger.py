"""
Deduplicated, time-ordered event feed.

[EventFeed][relayhub.core.merger.EventFeed] is the data structure: an id
index for deduplication plus a sorted key list kept with ``bisect``, so
each insertion is one lookup and one ordered insert rather than a full
re-sort. The order is ``created_at`` descending, ties broken by the order
in which the events were first seen.

[EventMerger][relayhub.core.merger.EventMerger] adds the loading state a
caller sees: loading until the pool has connected at least once *and* one
relay has sent end-of-stored-events for the subscription.

Examples:
    ```python
    feed = EventFeed()
    feed.add(older)
    feed.add(newer)
    feed.add(newer)       # False: already present
    [e.id for e in feed.events]   # [newer.id, older.id]
    ```
"""

from __future__ import annotations

from bisect import bisect_left
from typing import TYPE_CHECKING

from relayhub.models.event import Event  # noqa: TC001

from .metrics import EVENTS_DEDUPLICATED


if TYPE_CHECKING:
    from .pool import ConnectionPool


class EventFeed:
    """Ordered event collection with no two entries sharing an id.

    ``events`` returns an immutable tuple snapshot, rebuilt lazily after an
    insertion, so readers never observe a partially updated feed.
    """

    __slots__ = ("_by_id", "_events", "_keys", "_seq", "_snapshot")

    def __init__(self) -> None:
        self._by_id: dict[str, Event] = {}
        self._keys: list[tuple[int, int]] = []
        self._events: list[Event] = []
        self._seq = 0
        self._snapshot: tuple[Event, ...] | None = ()

    def add(self, event: Event) -> bool:
        """Insert *event* unless its id is already present.

        Returns:
            ``True`` if the event was inserted.
        """
        if event.id in self._by_id:
            return False
        self._by_id[event.id] = event
        key = (-event.created_at, self._seq)
        self._seq += 1
        index = bisect_left(self._keys, key)
        self._keys.insert(index, key)
        self._events.insert(index, event)
        self._snapshot = None
        return True

    @property
    def events(self) -> tuple[Event, ...]:
        if self._snapshot is None:
            self._snapshot = tuple(self._events)
        return self._snapshot

    def get(self, event_id: str) -> Event | None:
        return self._by_id.get(event_id)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)


class EventMerger:
    """Merges events from every relay of one subscription into one feed.

    Args:
        pool: Pool whose loading state is folded into
            [is_loading][relayhub.core.merger.EventMerger.is_loading].
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool
        self._feed = EventFeed()
        self._done = False

    def ingest(self, event: Event) -> bool:
        """Add *event* to the feed; duplicates are counted and dropped.

        Returns:
            ``True`` if the event was new.
        """
        if self._feed.add(event):
            return True
        EVENTS_DEDUPLICATED.inc()
        return False

    def mark_done(self) -> bool:
        """Record end-of-stored-events.

        Returns:
            ``True`` only on the first call.
        """
        if self._done:
            return False
        self._done = True
        return True

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def is_done(self) -> bool:
        return self._done

    @property
    def is_loading(self) -> bool:
        return self._pool.is_loading or not self._done

    @property
    def events(self) -> tuple[Event, ...]:
        return self._feed.events

    @property
    def feed(self) -> EventFeed:
        return self._feed
