"""Nostr public key encoding helpers.

Thin wrappers around ``nostr_sdk.PublicKey`` that convert between the
64-character hex form used on the wire and the bech32 ``npub1...`` form
shown to people. Both functions normalise failures to ``ValueError`` so
callers do not need to import ``nostr_sdk`` to handle them.

See Also:
    [relayhub.core.profiles.ProfileLoader][relayhub.core.profiles.ProfileLoader]:
        Accepts either key form and stores the npub on each resolved
        [ProfileMetadata][relayhub.models.profile.ProfileMetadata].

Examples:
    ```python
    npub = encode_npub("3bf0c63fcb93463407af97a5e5ee64fa883d107ef9e558472c4eb9aaaefa459d")
    decode_pubkey(npub)  # '3bf0c63f...'
    ```
"""

from __future__ import annotations

from nostr_sdk import NostrSdkError, PublicKey


def _parse(value: str) -> PublicKey:
    if not isinstance(value, str):
        raise TypeError(f"public key must be a str, got {type(value).__name__}")
    try:
        return PublicKey.parse(value.strip())
    except NostrSdkError as e:
        raise ValueError(f"invalid public key: {value!r}") from e


def encode_npub(pubkey: str) -> str:
    """Return the bech32 ``npub`` encoding of a public key.

    Raises:
        ValueError: If *pubkey* is not a valid public key.
    """
    return _parse(pubkey).to_bech32()


def decode_pubkey(value: str) -> str:
    """Return the lowercase hex form of a hex or ``npub`` public key.

    Raises:
        ValueError: If *value* is not a valid public key in either form.
    """
    return _parse(value).to_hex()
