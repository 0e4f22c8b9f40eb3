"""
Parsed kind-0 profile metadata.

A [ProfileMetadata][relayhub.models.profile.ProfileMetadata] is the resolved
record stored by the profile loader for each author pubkey. Only string
fields of the kind-0 JSON content are kept; everything else is ignored.

See Also:
    [relayhub.core.profiles][]: Batches pubkey lookups and builds these
        records from incoming kind-0 events.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any

from ._validation import validate_hex, validate_instance


@dataclass(frozen=True, slots=True)
class ProfileMetadata:
    """Display metadata for a single author.

    Attributes:
        pubkey: Author public key as lowercase hex.
        npub: Bech32 (``npub1...``) encoding of *pubkey*.
        created_at: Timestamp of the kind-0 event the record was built from.
        name: Short handle.
        display_name: Human-readable display name.
        picture: Avatar URL.
        banner: Banner image URL.
        about: Free-form biography.
        website: Personal website URL.
        lud06: LNURL-pay address.
        lud16: Lightning address.
        nip05: NIP-05 internet identifier.
    """

    pubkey: str
    npub: str
    created_at: int = 0
    name: str | None = None
    display_name: str | None = None
    picture: str | None = None
    banner: str | None = None
    about: str | None = None
    website: str | None = None
    lud06: str | None = None
    lud16: str | None = None
    nip05: str | None = None

    def __post_init__(self) -> None:
        validate_hex(self.pubkey, "pubkey", 64)
        validate_instance(self.npub, str, "npub")

    @classmethod
    def from_content(
        cls, pubkey: str, npub: str, content: Mapping[str, Any], created_at: int = 0
    ) -> ProfileMetadata:
        """Build a record from decoded kind-0 content.

        Non-string values and unknown keys are dropped. ``displayName``
        is accepted as a legacy alias of ``display_name``.
        """
        validate_instance(content, Mapping, "content")
        known = {f.name for f in fields(cls)} - {"pubkey", "npub", "created_at"}
        values = {k: v for k, v in content.items() if k in known and isinstance(v, str)}
        legacy = content.get("displayName")
        if "display_name" not in values and isinstance(legacy, str):
            values["display_name"] = legacy
        return cls(pubkey=pubkey, npub=npub, created_at=created_at, **values)

    @property
    def label(self) -> str:
        """Best available human label, falling back to a shortened npub."""
        return self.display_name or self.name or f"{self.npub[:12]}..."
