"""Relay transport and Nostr key helpers.

The utils layer sits between [relayhub.models][relayhub.models] and
[relayhub.core][relayhub.core]. It owns everything that touches the wire or
the nostr-sdk bindings, so the core layer can be tested against an
in-memory socket.

Attributes:
    transport: [RelaySocket][relayhub.utils.transport.RelaySocket] boundary
        and [NostrRelaySocket][relayhub.utils.transport.NostrRelaySocket], which
        drives one nostr-sdk client per relay.
    keys: Hex and bech32 ``npub`` conversion built on ``nostr_sdk.PublicKey``.

Note:
    The utils layer has **zero** imports from ``relayhub.core``.
"""
