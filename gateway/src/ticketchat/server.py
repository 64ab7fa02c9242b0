"""Command line entry points for the chat gateway."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, TextIO

from aiohttp import web

from .directory import Event, SQLiteDirectory, TicketRecord, UserProfile
from .http_transport import create_app
from .sqlite_backend import SQLiteBackend


logger = logging.getLogger(__name__)


def seed(payload: Dict[str, Any], directory) -> Dict[str, int]:
    """Load storefront records into a local directory.

    ``payload`` holds optional ``events``, ``profiles`` and ``tickets`` lists
    whose items use the same field names as the records.
    """

    counts = {"events": 0, "profiles": 0, "tickets": 0}
    for item in payload.get("events", []):
        directory.upsert_event(Event(**item))
        counts["events"] += 1
    for item in payload.get("profiles", []):
        directory.upsert_profile(UserProfile(**item))
        counts["profiles"] += 1
    for item in payload.get("tickets", []):
        directory.add_ticket(TicketRecord(**item))
        counts["tickets"] += 1
    return counts


def _run_seed(args: argparse.Namespace, output: TextIO) -> int:
    handle = args.file or sys.stdin
    try:
        payload = json.load(handle)
    finally:
        if args.file is not None:
            args.file.close()
    if not isinstance(payload, dict):
        raise ValueError("seed file must contain a JSON object")
    backend = SQLiteBackend(args.db)
    try:
        counts = seed(payload, SQLiteDirectory(backend))
    finally:
        backend.close()
    logger.info("seeded %s", counts)
    output.write(json.dumps(counts) + "\n")
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    app = create_app(ping_interval_s=args.ping_interval, db_path=args.db)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Event chat gateway CLI")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp chat server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between websocket heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")

    seed_parser = subparsers.add_parser("seed", help="Load events, profiles and tickets into a SQLite database")
    seed_parser.add_argument("--db", type=str, required=True, help="Path to SQLite database")
    seed_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON seed file; defaults to stdin",
    )

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "seed":
        return _run_seed(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
