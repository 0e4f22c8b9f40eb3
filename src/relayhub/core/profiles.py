"""
Batched kind-0 profile loading.

[ProfileLoader][relayhub.core.profiles.ProfileLoader] is the batch fetch
queue specialised for profile metadata: the key is an author pubkey, the
filter for a batch is ``{"kinds": [0], "authors": [...]}``, and the value is
a [ProfileMetadata][relayhub.models.profile.ProfileMetadata] parsed from
the event's JSON content. Events whose content is not a JSON object are
dropped as malformed.

Examples:
    ```python
    loader = ProfileLoader(multiplexer)
    lookup = loader.fetch("npub1...")
    lookup.is_loading   # True until the batch finishes loading
    lookup.data         # ProfileMetadata or None
    ```
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, NamedTuple

from relayhub.models.constants import EventKind, FetchState
from relayhub.models.filter import Filter
from relayhub.models.profile import ProfileMetadata
from relayhub.utils.keys import decode_pubkey, encode_npub

from .batch import BatchConfig, BatchFetchQueue
from .exceptions import MalformedPayloadError


if TYPE_CHECKING:
    from relayhub.models.event import Event

    from .multiplexer import SubscriptionMultiplexer


class ProfileLookup(NamedTuple):
    """Level-triggered view of one profile lookup.

    Attributes:
        is_loading: Whether a result may still arrive.
        data: The latest resolved profile, or ``None``.
    """

    is_loading: bool
    data: ProfileMetadata | None


def profile_filter(pubkeys: list[str]) -> Filter:
    """Return the kind-0 filter for a batch of hex pubkeys."""
    return Filter(kinds=[EventKind.SET_METADATA], authors=pubkeys)


def parse_profile(event: Event) -> tuple[str, ProfileMetadata]:
    """Parse a kind-0 event into ``(pubkey, ProfileMetadata)``.

    Raises:
        MalformedPayloadError: If the event is not kind 0 or its content is
            not a JSON object.
    """
    if event.kind != EventKind.SET_METADATA:
        raise MalformedPayloadError(f"expected kind 0, got kind {event.kind}")
    try:
        content = json.loads(event.content)
    except json.JSONDecodeError as e:
        raise MalformedPayloadError(f"profile content is not JSON: {e}") from e
    if not isinstance(content, dict):
        raise MalformedPayloadError(
            f"profile content must be a JSON object, got {type(content).__name__}"
        )
    try:
        profile = ProfileMetadata.from_content(
            event.pubkey, encode_npub(event.pubkey), content, created_at=event.created_at
        )
    except (TypeError, ValueError) as e:
        raise MalformedPayloadError(f"invalid profile for {event.pubkey}: {e}") from e
    return event.pubkey, profile


class ProfileLoader:
    """Batches profile lookups by author pubkey.

    Pubkeys may be given as hex or ``npub``; they are normalised to hex
    before queueing, so both spellings share one request.

    Args:
        multiplexer: Opens the batch subscriptions.
        config: Debounce settings.
    """

    def __init__(
        self,
        multiplexer: SubscriptionMultiplexer,
        config: BatchConfig | None = None,
    ) -> None:
        self._queue: BatchFetchQueue[ProfileMetadata] = BatchFetchQueue(
            multiplexer,
            build_filter=profile_filter,
            extract=parse_profile,
            config=config,
            name="profiles",
        )

    def request(self, pubkey: str) -> FetchState:
        """Queue a lookup for *pubkey*.

        Raises:
            ValueError: If *pubkey* is not a valid hex or npub key.
        """
        return self._queue.request(decode_pubkey(pubkey))

    def fetch(self, pubkey: str) -> ProfileLookup:
        """Request *pubkey* and return its current lookup state.

        Call again to observe progress; repeated calls do not issue new
        subscriptions.

        Raises:
            ValueError: If *pubkey* is not a valid hex or npub key.
        """
        key = decode_pubkey(pubkey)
        self._queue.request(key)
        return ProfileLookup(self._queue.is_loading(key), self._queue.get(key))

    def get(self, pubkey: str) -> ProfileMetadata | None:
        return self._queue.get(decode_pubkey(pubkey))

    async def resolve(
        self,
        pubkey: str,
        *,
        timeout: float | None = None,  # noqa: ASYNC109
    ) -> ProfileMetadata | None:
        """Request *pubkey* and wait for its profile or the end of loading."""
        return await self._queue.resolve(decode_pubkey(pubkey), timeout=timeout)

    @property
    def queue(self) -> BatchFetchQueue[ProfileMetadata]:
        return self._queue

    def close(self) -> None:
        self._queue.close()
