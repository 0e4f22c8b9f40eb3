"""
Prometheus metrics for the relay coordination layer.

Metric objects are module-level singletons registered on the default
``prometheus_client`` registry. The pool, multiplexer, merger and batch
queue update them as a side effect of normal operation; nothing needs to
be enabled for collection.

The optional [MetricsServer][relayhub.core.metrics.MetricsServer] exposes
them over HTTP (via aiohttp) for Prometheus scraping. It is started by
[RelayHub][relayhub.core.client.RelayHub] when ``metrics.enabled`` is set.

Architecture:
    RELAYS_CONNECTED:       Gauge of relays currently in the connected set.
    RELAY_ERRORS:           Connection errors by error class.
    EVENTS_RECEIVED:        Events accepted from relays (before dedup).
    EVENTS_DEDUPLICATED:    Events dropped because the feed already had the id.
    SUBSCRIPTIONS_OPENED:   Per-relay subscriptions opened.
    EVENTS_PUBLISHED:       Per-relay publish attempts.
    BATCH_FLUSHES:          Debounce flushes by queue name.
    BATCH_SIZE:             Keys per flush, by queue name.
"""

from __future__ import annotations

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MetricsConfig(BaseModel):
    """Configuration for the Prometheus metrics endpoint.

    The endpoint is only started when ``enabled`` is True.
    """

    enabled: bool = Field(default=False, description="Serve metrics over HTTP")
    port: int = Field(default=8000, ge=1024, le=65535, description="Metrics HTTP port")
    host: str = Field(default="127.0.0.1", description="Metrics HTTP bind address")
    path: str = Field(default="/metrics", pattern=r"^/", description="Metrics endpoint path")


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------

RELAYS_CONNECTED = Gauge(
    "relayhub_relays_connected",
    "Number of relays currently connected",
)

RELAY_ERRORS = Counter(
    "relayhub_relay_errors_total",
    "Relay connection errors",
    ["error"],
)

EVENTS_PUBLISHED = Counter(
    "relayhub_events_published_total",
    "Events sent to a relay (one per relay per publish)",
)


# ---------------------------------------------------------------------------
# Subscriptions and feed
# ---------------------------------------------------------------------------

SUBSCRIPTIONS_OPENED = Counter(
    "relayhub_subscriptions_opened_total",
    "Per-relay subscriptions opened",
)

EVENTS_RECEIVED = Counter(
    "relayhub_events_received_total",
    "Valid events received from relays, before deduplication",
)

EVENTS_DEDUPLICATED = Counter(
    "relayhub_events_deduplicated_total",
    "Events dropped because an event with the same id was already in the feed",
)


# ---------------------------------------------------------------------------
# Batch fetch
# ---------------------------------------------------------------------------

BATCH_FLUSHES = Counter(
    "relayhub_batch_flushes_total",
    "Debounced batch flushes (one subscription each)",
    ["queue"],
)

BATCH_SIZE = Histogram(
    "relayhub_batch_size",
    "Number of keys per batch flush",
    ["queue"],
    buckets=(1, 2, 5, 10, 25, 50, 100, 250, 500),
)


# ---------------------------------------------------------------------------
# HTTP Server
# ---------------------------------------------------------------------------


class MetricsServer:
    """Async HTTP server exposing a Prometheus-compatible endpoint.

    Example:
        server = MetricsServer(MetricsConfig(enabled=True, port=8001))
        await server.start()
        # ... client runs ...
        await server.stop()
    """

    def __init__(self, config: MetricsConfig) -> None:
        self._config = config
        self._runner: web.AppRunner | None = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        """Start listening for scrape requests (no-op when disabled or running).

        Raises:
            OSError: If the port is already in use or binding fails.
        """
        if not self._config.enabled or self._runner is not None:
            return

        app = web.Application()
        app.router.add_get(self._config.path, self._handle_metrics)

        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner

    async def stop(self) -> None:
        """Stop the HTTP server. Idempotent."""
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()

    @staticmethod
    async def _handle_metrics(_request: web.Request) -> web.Response:
        return web.Response(
            body=generate_latest(),
            headers={"Content-Type": CONTENT_TYPE_LATEST},
        )
