"""matrix-sync CLI: run the sync loop and inspect rooms."""

from __future__ import annotations

import argparse
import dataclasses
import functools
import json
import signal
import sys
from typing import Any

import anyio

from . import __version__
from .client import MatrixClient
from .config import MatrixSyncSettings, load_settings
from .errors import ConfigError, MatrixError
from .events import ALL_CHANNELS
from .logging import bind_context, clear_context, configure_logging, get_logger

logger = get_logger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="matrix-sync")
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to matrix-sync.toml (default: ~/.matrix-sync/matrix-sync.toml)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Minimum log level (default: %(default)s)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=False,
        help="Render logs as JSON lines.",
    )

    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Start syncing and log every emitted notification")

    history = sub.add_parser(
        "upgrade-history",
        help="Print the upgrade chain of a room as JSON",
    )
    history.add_argument("room", help="Room ID or alias")

    bounds = sub.add_parser(
        "power-bounds",
        help="Print how far this account may change a user's power level",
    )
    bounds.add_argument("room", help="Room ID or alias")
    bounds.add_argument("target_user", help="User ID whose level would change")

    return parser


def _log_emission(channel: str, *args: Any) -> None:
    room_id = args[0] if args and isinstance(args[0], str) else None
    event = next((a for a in reversed(args) if isinstance(a, dict)), None)
    logger.info(
        "matrix.sync.emitted",
        channel=channel,
        room_id=room_id,
        event_type=event.get("type") if event else None,
        event_id=event.get("event_id") if event else None,
    )


async def _run_sync(settings: MatrixSyncSettings) -> int:
    client = MatrixClient.from_settings(settings)
    for channel in ALL_CHANNELS:
        client.on(channel, functools.partial(_log_emission, channel))
    try:
        await client.start(settings.sync_filter)
        with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
            async for signum in signals:
                logger.info("matrix.cli.signal", signal=int(signum))
                client.stop()
                break
        await client.wait_stopped()
    finally:
        await client.close()
    return 0


async def _upgrade_history(settings: MatrixSyncSettings, room: str) -> int:
    client = MatrixClient.from_settings(settings)
    try:
        room_id = await client.resolve_room(room)
        history = await client.get_room_upgrade_history(room_id)
    finally:
        await client.close()
    print(json.dumps(dataclasses.asdict(history), indent=2))
    return 0


async def _power_bounds(
    settings: MatrixSyncSettings, room: str, target_user: str
) -> int:
    client = MatrixClient.from_settings(settings)
    try:
        room_id = await client.resolve_room(room)
        bounds = await client.calculate_power_level_change_bounds_on(
            target_user, room_id
        )
    finally:
        await client.close()
    print(json.dumps(dataclasses.asdict(bounds)))
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, json=args.json_logs)

    try:
        settings, cfg_path = load_settings(args.config)
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(2) from exc
    logger.debug("matrix.cli.config_loaded", path=str(cfg_path))
    bind_context(
        command=args.cmd,
        homeserver=settings.homeserver_url,
        user_id=settings.user_id,
    )

    try:
        if args.cmd == "run":
            rc = anyio.run(_run_sync, settings)
        elif args.cmd == "upgrade-history":
            rc = anyio.run(_upgrade_history, settings, args.room)
        elif args.cmd == "power-bounds":
            rc = anyio.run(_power_bounds, settings, args.room, args.target_user)
        else:
            parser.error(f"unknown command: {args.cmd}")
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(2) from exc
    except MatrixError as exc:
        logger.error(
            "matrix.cli.failed",
            error=str(exc),
            error_type=exc.__class__.__name__,
        )
        raise SystemExit(1) from exc
    finally:
        clear_context()
    raise SystemExit(rc)


if __name__ == "__main__":  # pragma: no cover
    main(sys.argv[1:])
