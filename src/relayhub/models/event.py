"""
Immutable Nostr event record.

Events arrive from relays as NIP-01 JSON objects and are converted once, at
the edge, into a frozen [Event][relayhub.models.event.Event]. Nothing
downstream mutates them. Signatures are carried but never verified; that is
left to the caller.

See Also:
    [relayhub.core.merger][]: Deduplicates events by
        [Event.id][relayhub.models.event.Event] and orders them by
        ``created_at``.
    [relayhub.core.pool.ConnectionPool.publish][]: Sends
        [Event.to_dict()][relayhub.models.event.Event.to_dict] to every
        connected relay.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from nostr_sdk import Event as NostrEvent

from ._validation import (
    str_tuple,
    validate_hex,
    validate_instance,
    validate_int,
    validate_str_no_null,
)
from .constants import EVENT_KIND_MAX


@dataclass(frozen=True, slots=True)
class Event:
    """Immutable Nostr event.

    Validation runs in ``__post_init__`` so malformed relay payloads never
    escape the constructor.

    Attributes:
        id: 32-byte event id as lowercase hex.
        pubkey: 32-byte author public key as lowercase hex.
        created_at: Unix timestamp of creation.
        kind: Event kind in ``[0, 65535]``.
        tags: Tag arrays as a tuple of string tuples.
        content: Raw content string.
        sig: 64-byte Schnorr signature as lowercase hex (not verified).

    Raises:
        TypeError: If a field has the wrong type.
        ValueError: If a field is out of range or badly encoded.

    Examples:
        ```python
        event = Event.from_dict(
            {
                "id": "ab" * 32,
                "pubkey": "cd" * 32,
                "created_at": 1700000000,
                "kind": 1,
                "tags": [["t", "nostr"]],
                "content": "hello",
                "sig": "ef" * 64,
            }
        )
        event.to_dict()["tags"]  # [['t', 'nostr']]
        ```
    """

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: tuple[tuple[str, ...], ...]
    content: str
    sig: str

    def __post_init__(self) -> None:
        validate_hex(self.id, "id", 64)
        validate_hex(self.pubkey, "pubkey", 64)
        validate_int(self.created_at, "created_at")
        validate_int(self.kind, "kind", maximum=EVENT_KIND_MAX)
        validate_instance(self.tags, tuple, "tags")
        for tag in self.tags:
            validate_instance(tag, tuple, "tag")
            for value in tag:
                validate_str_no_null(value, "tag value")
        validate_str_no_null(self.content, "content")
        validate_hex(self.sig, "sig", 128)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Event:
        """Build an event from a NIP-01 JSON object.

        Args:
            data: Decoded ``EVENT`` payload as received from a relay.

        Returns:
            A validated [Event][relayhub.models.event.Event].

        Raises:
            TypeError: If *data* is not a mapping or a field has the wrong type.
            ValueError: If a required field is missing or invalid.
        """
        validate_instance(data, Mapping, "event")
        try:
            raw_tags = data["tags"]
            if isinstance(raw_tags, str) or not isinstance(raw_tags, list | tuple):
                raise TypeError(f"tags must be a list, got {type(raw_tags).__name__}")
            return cls(
                id=data["id"],
                pubkey=data["pubkey"],
                created_at=data["created_at"],
                kind=data["kind"],
                tags=tuple(str_tuple(tag, "tag") for tag in raw_tags),
                content=data["content"],
                sig=data["sig"],
            )
        except KeyError as e:
            raise ValueError(f"event is missing field {e.args[0]!r}") from None

    @classmethod
    def from_nostr(cls, nostr_event: NostrEvent) -> Event:
        """Build an event from a signed ``nostr_sdk.Event``.

        Lets callers build and sign events with nostr-sdk's ``EventBuilder``
        and hand them to [ConnectionPool.publish()][relayhub.core.pool.ConnectionPool.publish].
        """
        return cls(
            id=nostr_event.id().to_hex(),
            pubkey=nostr_event.author().to_hex(),
            created_at=nostr_event.created_at().as_secs(),
            kind=nostr_event.kind().as_u16(),
            tags=tuple(tuple(tag.as_vec()) for tag in nostr_event.tags().to_vec()),
            content=nostr_event.content(),
            sig=nostr_event.signature(),
        )

    def to_nostr(self) -> NostrEvent:
        """Return the event as a ``nostr_sdk.Event`` ready to send.

        Raises:
            NostrSdkError: If nostr-sdk rejects the event.
        """
        return NostrEvent.from_json(json.dumps(self.to_dict()))

    def to_dict(self) -> dict[str, Any]:
        """Return the NIP-01 wire representation."""
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
            "sig": self.sig,
        }
