"""
Validated Nostr relay URL with network type detection.

Parses and normalizes WebSocket relay URLs (``ws://`` or ``wss://``) so
that every spelling of the same relay maps to one identity key. The network
type (clearnet, Tor, I2P, Lokinet, local) is detected from the hostname and
the scheme is enforced per network.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from ipaddress import IPv4Network, IPv6Network, ip_address, ip_network
from typing import Any, ClassVar

from rfc3986 import uri_reference
from rfc3986.exceptions import UnpermittedComponentError, ValidationError
from rfc3986.validators import Validator

from .constants import NetworkType


@dataclass(frozen=True, slots=True)
class Relay:
    """Immutable representation of a Nostr relay endpoint.

    The scheme is enforced per network:

    * **clearnet** -- ``wss://`` (TLS required on the public internet)
    * **tor / i2p / loki** -- ``ws://`` (encryption handled by the overlay)
    * **local** -- kept as given, for development relays

    Equality and hashing use only the normalized ``url``, so
    ``Relay("wss://Relay.Example.com/")`` and ``Relay("wss://relay.example.com")``
    are the same relay.

    Attributes:
        url: Fully normalized URL including scheme.
        network: Detected ``NetworkType`` enum value.
        scheme: URL scheme (``ws`` or ``wss``).
        host: Hostname or IP address (brackets stripped for IPv6).
        port: Explicit port number, or ``None`` when using the default.
        path: URL path component, or ``None``.

    Raises:
        ValueError: If the URL is malformed, uses an unsupported scheme,
            has an unclassifiable host, or contains null bytes.

    Examples:
        ```python
        relay = Relay("wss://relay.damus.io/")
        relay.url       # 'wss://relay.damus.io'
        relay.network   # NetworkType.CLEARNET

        Relay("ws://localhost:7777").url   # 'ws://localhost:7777'
        Relay("wss://abc123.onion").scheme # 'ws'
        ```
    """

    raw_url: str = field(repr=False, compare=False)

    url: str = field(init=False)
    network: NetworkType = field(init=False, compare=False)
    scheme: str = field(init=False, compare=False)
    host: str = field(init=False, compare=False)
    port: int | None = field(init=False, compare=False)
    path: str | None = field(init=False, compare=False)

    _PORT_WS: ClassVar[int] = 80
    _PORT_WSS: ClassVar[int] = 443

    _NETWORK_TLDS: ClassVar[dict[str, NetworkType]] = {
        ".onion": NetworkType.TOR,
        ".i2p": NetworkType.I2P,
        ".loki": NetworkType.LOKI,
    }

    # Loopback, private and link-local ranges
    _LOCAL_NETWORKS: ClassVar[list[IPv4Network | IPv6Network]] = [
        ip_network("0.0.0.0/8"),
        ip_network("10.0.0.0/8"),
        ip_network("100.64.0.0/10"),
        ip_network("127.0.0.0/8"),
        ip_network("169.254.0.0/16"),
        ip_network("172.16.0.0/12"),
        ip_network("192.168.0.0/16"),
        ip_network("::1/128"),
        ip_network("fc00::/7"),
        ip_network("fe80::/10"),
    ]

    def __post_init__(self) -> None:
        if not isinstance(self.raw_url, str):
            raise TypeError(f"Relay URL must be a str, got {type(self.raw_url).__name__}")
        if "\x00" in self.raw_url:
            raise ValueError("Relay URL contains null bytes")

        parsed = self._parse(self.raw_url)

        if parsed["network"] == NetworkType.UNKNOWN:
            raise ValueError(f"Invalid host: '{parsed['host']}'")

        # Bypass frozen restriction to set computed fields
        object.__setattr__(self, "url", f"{parsed['scheme']}://{parsed['url_without_scheme']}")
        object.__setattr__(self, "network", parsed["network"])
        object.__setattr__(self, "scheme", parsed["scheme"])
        object.__setattr__(self, "host", parsed["host"])
        object.__setattr__(self, "port", parsed["port"])
        object.__setattr__(self, "path", parsed["path"])

    def __str__(self) -> str:
        return self.url

    @staticmethod
    def _detect_network(host: str) -> NetworkType:
        """Classify a hostname into a network type.

        Checks overlay network TLDs first, then local names and IPs, and
        finally validates standard domain name format.
        """
        if not host:
            return NetworkType.UNKNOWN

        host_bare = host.lower().strip("[]")

        for tld, network in Relay._NETWORK_TLDS.items():
            if host_bare.endswith(tld):
                return network

        if host_bare in ("localhost", "localhost.localdomain"):
            return NetworkType.LOCAL

        try:
            ip = ip_address(host_bare)
        except ValueError:
            pass
        else:
            is_local = any(ip in net for net in Relay._LOCAL_NETWORKS)
            return NetworkType.LOCAL if is_local else NetworkType.CLEARNET

        if "." not in host_bare:
            return NetworkType.UNKNOWN

        labels = host_bare.split(".")
        valid = all(
            label and not label.startswith("-") and not label.endswith("-") for label in labels
        )
        return NetworkType.CLEARNET if valid else NetworkType.UNKNOWN

    @staticmethod
    def _parse(raw: str) -> dict[str, Any]:
        """Parse and normalize a raw relay URL string.

        Raises:
            ValueError: If the scheme is not ``ws``/``wss`` or the URI is invalid.
        """
        uri = uri_reference(raw.strip()).normalize()

        validator = (
            Validator()
            .require_presence_of("scheme", "host")
            .allow_schemes("ws", "wss")
            .check_validity_of("scheme", "host", "port", "path")
        )

        try:
            validator.validate(uri)
        except UnpermittedComponentError:
            raise ValueError("Invalid scheme: must be ws or wss") from None
        except ValidationError as e:
            raise ValueError(f"Invalid URL: {e}") from None

        if uri.query:
            raise ValueError(f"Relay URL must not contain a query string: ?{uri.query}")
        if uri.fragment:
            raise ValueError(f"Relay URL must not contain a fragment: #{uri.fragment}")

        port = int(uri.port) if uri.port else None
        host = uri.host.strip("[]")

        # Collapse duplicate slashes and strip trailing slash
        path = uri.path or ""
        while "//" in path:
            path = path.replace("//", "/")
        path = path.rstrip("/") or None

        network = Relay._detect_network(host)
        if network == NetworkType.CLEARNET:
            scheme = "wss"
        elif network == NetworkType.LOCAL:
            scheme = uri.scheme
        else:
            scheme = "ws"

        formatted_host = f"[{host}]" if ":" in host else host

        # Omit the port when it matches the default for the scheme
        default_port = Relay._PORT_WSS if scheme == "wss" else Relay._PORT_WS
        if port and port != default_port:
            url_without_scheme = f"{formatted_host}:{port}{path or ''}"
        else:
            url_without_scheme = f"{formatted_host}{path or ''}"

        return {
            "url_without_scheme": url_without_scheme,
            "scheme": scheme,
            "host": host,
            "port": port,
            "path": path,
            "network": network,
        }
