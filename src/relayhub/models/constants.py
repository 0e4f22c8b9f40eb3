"""Shared constants for the models layer.

Defines the enumerations used by more than one module. Keeping them here
avoids import cycles between ``relayhub.models``, ``relayhub.utils`` and
``relayhub.core``.

See Also:
    [relayhub.models.relay][]: Uses [NetworkType][relayhub.models.constants.NetworkType]
        to classify relay URLs during construction.
    [relayhub.core.pool][]: Tracks each relay with a
        [RelayState][relayhub.models.constants.RelayState].
    [relayhub.core.batch][]: Moves lookup keys through
        [FetchState][relayhub.models.constants.FetchState].
"""

from __future__ import annotations

from enum import IntEnum, StrEnum


class NetworkType(StrEnum):
    """Network type enum for relay classification.

    Each relay URL is classified into exactly one network type during
    [Relay][relayhub.models.relay.Relay] construction. Clearnet relays are
    forced onto ``wss://``, overlay networks onto ``ws://``. Local relays
    keep the scheme they were given so development relays on
    ``ws://localhost`` work.

    Attributes:
        CLEARNET: Public internet relay using ``wss://``.
        TOR: Tor hidden service identified by a ``.onion`` hostname.
        I2P: I2P eepsite identified by a ``.i2p`` hostname.
        LOKI: Lokinet service identified by a ``.loki`` hostname.
        LOCAL: Loopback, private or reserved address.
        UNKNOWN: Hostname that could not be classified (rejected).
    """

    CLEARNET = "clearnet"
    TOR = "tor"
    I2P = "i2p"
    LOKI = "loki"
    LOCAL = "local"
    UNKNOWN = "unknown"


class RelayState(StrEnum):
    """Connection state of a relay inside the pool.

    ``PENDING`` is entered when a connection attempt starts, ``CONNECTED``
    on the socket's connect notification, ``DISCONNECTED`` when the socket
    drops and ``ERROR`` when the attempt fails before connecting. Only
    ``CONNECTED`` relays are part of the pool's connected set.
    """

    PENDING = "pending"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class FetchState(StrEnum):
    """Lifecycle of a single key in the batch fetch queue.

    Keys only move forward: ``UNREQUESTED -> QUEUED -> IN_FLIGHT -> RESOLVED``.
    A key that reached ``IN_FLIGHT`` is never queued again.
    """

    UNREQUESTED = "unrequested"
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    RESOLVED = "resolved"


class EventKind(IntEnum):
    """Well-known Nostr event kinds.

    Attributes:
        SET_METADATA: Kind 0 -- user profile metadata (NIP-01).
        TEXT_NOTE: Kind 1 -- short text note (NIP-01).
        CONTACTS: Kind 3 -- contact list (NIP-02).
        RELAY_LIST: Kind 10002 -- relay list metadata (NIP-65).
    """

    SET_METADATA = 0
    TEXT_NOTE = 1
    CONTACTS = 3
    RELAY_LIST = 10_002


EVENT_KIND_MAX = 65_535
