"""Command-line entry point for relayhub.

Connects to a set of relays and runs one of three commands, writing JSON
lines to standard output and structured logs to standard error.

Examples:
    ```bash
    python -m relayhub --relay wss://relay.damus.io stream --filter '{"kinds": [1], "limit": 5}'
    python -m relayhub --config relayhub.yaml stream --follow
    python -m relayhub --relay wss://nos.lol profile npub1... 3bf0c63f...
    python -m relayhub --relay wss://nos.lol publish signed_event.json
    ```
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from relayhub.core.client import FeedSubscription, RelayHub, RelayHubConfig
from relayhub.core.exceptions import ConfigurationError, InvalidFilterError, PublishingError
from relayhub.core.logger import Logger, StructuredFormatter
from relayhub.core.yaml import load_yaml
from relayhub.models.event import Event


DEFAULT_FILTER: dict[str, Any] = {"kinds": [1], "limit": 20}

logger = Logger("relayhub.cli")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="relayhub",
        description="Multi-relay Nostr publish/subscribe client",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="YAML config file (pool, batch and metrics sections)",
    )
    parser.add_argument(
        "--relay",
        action="append",
        default=[],
        dest="relays",
        metavar="URL",
        help="Relay URL; repeat for several (overrides pool.relays from --config)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="Seconds to wait for connections and results (default: 10)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Log level (default: WARNING)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    stream = commands.add_parser("stream", help="Print events matching a filter")
    stream.add_argument(
        "--filter",
        type=json.loads,
        default=DEFAULT_FILTER,
        help='NIP-01 filter as JSON (default: \'{"kinds": [1], "limit": 20}\')',
    )
    stream.add_argument(
        "--follow",
        action="store_true",
        help="Keep printing live events until interrupted",
    )

    profile = commands.add_parser("profile", help="Fetch kind-0 profiles in one batch")
    profile.add_argument("pubkeys", nargs="+", help="Hex or npub public keys")

    publish = commands.add_parser("publish", help="Publish a signed event")
    publish.add_argument(
        "event",
        nargs="?",
        type=Path,
        help="File holding the event JSON (default: read standard input)",
    )

    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    """Install a ``StructuredFormatter`` on a stderr root handler."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level))


def build_config(args: argparse.Namespace) -> RelayHubConfig:
    """Merge the YAML config file and ``--relay`` flags into a config.

    Raises:
        FileNotFoundError: If ``--config`` names a missing file.
        ConfigurationError: If the file is not a YAML mapping.
        pydantic.ValidationError: If a value is invalid.
    """
    data: dict[str, Any] = load_yaml(args.config) if args.config else {}
    if args.relays:
        pool = data.get("pool") or {}
        data["pool"] = {**pool, "relays": args.relays}
    return RelayHubConfig(**data)


def _print_json(value: Any) -> None:
    print(json.dumps(value, ensure_ascii=False), flush=True)


async def run_stream(hub: RelayHub, args: argparse.Namespace) -> int:
    """Print every new event as a JSON line.

    Without ``--follow``, returns once every subscribed relay has sent
    end-of-stored-events or the timeout expires.
    """
    finished = asyncio.Event()

    def all_relays_done(_relay: Any = None) -> None:
        handle = feed.handle
        if handle is None:
            return
        subs = [handle.subscription(url) for url in handle.relays]
        if all(s is not None and s.eose for s in subs):
            finished.set()

    feed: FeedSubscription = hub.subscribe(
        args.filter,
        on_event=lambda event: _print_json(event.to_dict()),
    )
    if feed.handle is None or not feed.handle.is_active:
        logger.warning("filter_matches_nothing", filter=json.dumps(args.filter))
        return 0
    feed.handle.on_eose(all_relays_done)

    if args.follow:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        await stop.wait()
    else:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(finished.wait(), timeout=args.timeout)

    feed.unsubscribe()
    logger.info("stream_finished", events=len(feed.events))
    return 0


async def run_profile(hub: RelayHub, args: argparse.Namespace) -> int:
    """Resolve every requested profile through one batch and print them."""
    try:
        for pubkey in args.pubkeys:
            hub.profiles.request(pubkey)
    except ValueError as e:
        logger.error("invalid_pubkey", error=str(e))
        return 2

    profiles = await asyncio.gather(
        *(hub.profiles.resolve(pubkey, timeout=args.timeout) for pubkey in args.pubkeys)
    )
    for pubkey, profile in zip(args.pubkeys, profiles, strict=True):
        _print_json(
            {
                "query": pubkey,
                "profile": dataclasses.asdict(profile) if profile is not None else None,
            }
        )
    return 0 if all(p is not None for p in profiles) else 1


async def run_publish(hub: RelayHub, args: argparse.Namespace) -> int:
    """Publish a signed event and print each relay's answer."""
    raw = args.event.read_text(encoding="utf-8") if args.event else sys.stdin.read()
    try:
        event = Event.from_dict(json.loads(raw))
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        logger.error("invalid_event", error=str(e))
        return 2

    try:
        results = await hub.broadcast(event, timeout=args.timeout)
    except PublishingError as e:
        logger.error("publish_failed", error=str(e))
        return 1

    _print_json(
        {url: {"accepted": r.accepted, "message": r.message} for url, r in results.items()}
    )
    return 0 if any(r.accepted for r in results.values()) else 1


COMMANDS = {
    "stream": run_stream,
    "profile": run_profile,
    "publish": run_publish,
}


async def main(argv: list[str] | None = None) -> int:
    """Parse args, connect to the relays and run the selected command."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = build_config(args)
    except (FileNotFoundError, ConfigurationError, ValidationError) as e:
        logger.error("config_invalid", error=str(e))
        return 2

    if not config.pool.relays:
        logger.error("no_relays", hint="pass --relay or set pool.relays in --config")
        return 2

    try:
        async with RelayHub(config) as hub:
            if not await hub.wait_until_ready(timeout=args.timeout):
                logger.error("no_relay_connected", relays=len(config.pool.relays))
                return 1
            return await COMMANDS[args.command](hub, args)
    except InvalidFilterError as e:
        logger.error("invalid_filter", error=str(e))
        return 2
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 130


def cli() -> None:
    """Synchronous entry point for console_scripts."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
