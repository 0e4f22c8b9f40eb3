"""relayhub exception hierarchy.

Typed exceptions for every error category the coordination layer can meet.
None of them is fatal to the connection pool: relay failures degrade to
fewer connected relays, payload failures to fewer resolved keys.

Exception hierarchy:

```text
RelayHubError (base -- never raised directly)
├── ConfigurationError       -- config validation, bad YAML
├── ConnectivityError        -- relay unreachable or dropped (also a builtin ConnectionError)
│   ├── RelayTimeoutError    -- connection attempt timed out
│   └── RelaySSLError        -- certificate or handshake issues
├── ProtocolError            -- unexpected data from a relay
│   └── MalformedPayloadError  -- event payload fails to decode for a consumer
├── InvalidFilterError       -- filter cannot be parsed
└── PublishingError          -- event broadcast failures
```

See Also:
    [ConnectionPool][relayhub.core.pool.ConnectionPool]: Wraps socket
        errors into [ConnectivityError][relayhub.core.exceptions.ConnectivityError]
        subclasses before handing them to ``on_error`` listeners.
    [BatchFetchQueue][relayhub.core.batch.BatchFetchQueue]: Drops events whose
        extractor raises [MalformedPayloadError][relayhub.core.exceptions.MalformedPayloadError].
"""

from __future__ import annotations

import builtins


class RelayHubError(Exception):
    """Base exception for all relayhub errors.

    Never raised directly -- always use a specific subclass.

    See Also:
        [ConfigurationError][relayhub.core.exceptions.ConfigurationError]:
            Invalid or missing configuration.
        [ConnectivityError][relayhub.core.exceptions.ConnectivityError]:
            Relay/network connectivity failures.
        [ProtocolError][relayhub.core.exceptions.ProtocolError]: Unexpected
            relay data.
        [InvalidFilterError][relayhub.core.exceptions.InvalidFilterError]:
            Unparseable subscription filter.
        [PublishingError][relayhub.core.exceptions.PublishingError]: Event
            broadcast failures.
    """


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(RelayHubError):
    """Invalid or missing configuration (YAML, CLI flags).

    See Also:
        [load_yaml()][relayhub.core.yaml.load_yaml]: YAML loading function
            that raises this on unreadable files.
    """


# ---------------------------------------------------------------------------
# Connectivity
# ---------------------------------------------------------------------------


class ConnectivityError(RelayHubError, builtins.ConnectionError):
    """Relay unreachable or dropped.

    Non-fatal: the relay stays in the pool and may reconnect later. Also a
    builtin ``ConnectionError``, so generic network handlers catch it.

    Attributes:
        relay: URL of the relay the error belongs to, if known.
    """

    def __init__(self, message: str, *, relay: str | None = None) -> None:
        super().__init__(message)
        self.relay = relay


class RelayTimeoutError(ConnectivityError):
    """Connection attempt timed out.

    See Also:
        [RelaySSLError][relayhub.core.exceptions.RelaySSLError]: Sibling
            for TLS/SSL failures.
    """


class RelaySSLError(ConnectivityError):
    """TLS/SSL certificate or handshake failure.

    See Also:
        [RelayTimeoutError][relayhub.core.exceptions.RelayTimeoutError]:
            Sibling for timeout failures.
    """


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ProtocolError(RelayHubError):
    """A relay sent data that does not follow the protocol."""


class MalformedPayloadError(ProtocolError):
    """An event payload fails to decode for a higher-level consumer.

    Raised by batch-queue extractors (e.g. kind-0 content that is not a
    JSON object). The queue catches it and drops the offending event.
    """


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class InvalidFilterError(RelayHubError, ValueError):
    """A subscription filter could not be parsed.

    Only raised for filters that are malformed. A well-formed but empty
    filter (e.g. ``{"authors": []}``) is not an error: it silently opens
    no subscription.
    """


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


class PublishingError(RelayHubError):
    """Failed to broadcast an event to any relay.

    See Also:
        [ConnectivityError][relayhub.core.exceptions.ConnectivityError]:
            Lower-level errors that may cause publishing failures.
    """
