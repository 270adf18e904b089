"""CLI entry point for offsync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import load_config
from .errors import SyncError
from .service import SyncService
from .sync import ResolutionStrategy, SyncResult

STRATEGIES = [s.value for s in ResolutionStrategy]


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def _print_results(results: list[SyncResult], as_json: bool) -> None:
    if as_json:
        print(json.dumps([r.to_dict() for r in results], indent=2))
        return

    if not results:
        print("Nothing to sync")
        return

    for r in results:
        line = f"#{r.change_id} {r.action} {r.resource_type}"
        if r.record_id:
            line += f" {r.record_id}"
        if r.success:
            line += ": ok"
        else:
            line += f": FAILED ({r.error_code}: {r.error})"
        print(line)

        for conflict in r.conflicts:
            print(
                f"    conflict on {conflict.field}: client={conflict.client_value!r} "
                f"server={conflict.server_value!r} -> {conflict.resolution.value}"
            )
        if r.unresolved:
            print("    needs manual review")
        if r.remap:
            for temp_id, server_id in r.remap.items():
                print(f"    {temp_id} -> {server_id}")

    succeeded = sum(1 for r in results if r.success)
    print(f"{succeeded}/{len(results)} changes applied")


def cmd_enqueue(args: argparse.Namespace) -> int:
    """Queue a change from the command line."""
    config = load_config(args.config)

    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as e:
        print(f"Error: payload is not valid JSON: {e}", file=sys.stderr)
        return 1

    enqueued_at = datetime.fromisoformat(args.enqueued_at) if args.enqueued_at else None

    service = SyncService.from_config(config)
    try:
        change_id = service.enqueue(
            args.user, args.resource, args.action, payload, args.client_id, enqueued_at
        )
    except SyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        service.close()

    print(change_id)
    return 0


def cmd_drain(args: argparse.Namespace) -> int:
    """Drain (or retry) a user's queue."""
    config = load_config(args.config)

    service = SyncService.from_config(config)
    try:
        if args.command == "retry":
            results = service.retry(args.user, args.strategy, args.deadline)
        else:
            results = service.drain(args.user, args.strategy, args.deadline)
    except SyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        service.close()

    _print_results(results, args.json)
    return 0 if all(r.success for r in results) else 2


def cmd_status(args: argparse.Namespace) -> int:
    """Show a user's queue counts."""
    config = load_config(args.config)

    service = SyncService.from_config(config)
    try:
        counts = service.status(args.user)
    finally:
        service.close()

    if args.json:
        print(json.dumps({"user_id": args.user, **counts}, indent=2))
    else:
        print(f"Sync status for {args.user}")
        print(f"  Pending:   {counts['pending']}")
        print(f"  Completed: {counts['completed']}")
        print(f"  Failed:    {counts['failed']}")
        print(f"  Total:     {counts['total']}")
        if counts["unresolved"]:
            print(f"  Awaiting conflict review: {counts['unresolved']}")

    return 0


def cmd_purge(args: argparse.Namespace) -> int:
    """Delete completed changes."""
    config = load_config(args.config)

    service = SyncService.from_config(config)
    try:
        if args.all:
            deleted = service.purge_completed(args.user)
        elif args.older_than:
            deleted = service.purge_completed(
                args.user, datetime.fromisoformat(args.older_than)
            )
        else:
            deleted = service.purge_expired(args.user)
    finally:
        service.close()

    print(f"Purged {deleted} completed changes")
    return 0


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the HTTP API."""
    config = load_config(args.config)

    from .api import create_app

    import uvicorn

    host = args.host or config.api.host
    port = args.port or config.api.port

    service = SyncService.from_config(config)
    app = create_app(config, service)

    print(f"Starting offsync node: {config.node.name}")
    print(f"Resources: {', '.join(service.registry.resource_types)}")
    print(f"URL: http://{host}:{port}")

    try:
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        service.close()

    return 0


def _add_strategy(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-s", "--strategy",
        required=True,
        choices=STRATEGIES,
        help="Conflict resolution strategy",
    )
    parser.add_argument(
        "--deadline",
        type=float,
        default=None,
        help="Stop starting new changes after this many seconds",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results as JSON",
    )


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="offsync",
        description="Replay offline client changes with conflict resolution",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("-p", "--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument("--host", type=str, default=None, help="Host to bind")
    serve_parser.set_defaults(func=cmd_serve)

    # Enqueue command
    enqueue_parser = subparsers.add_parser("enqueue", help="Queue an offline change")
    enqueue_parser.add_argument("user", help="User id")
    enqueue_parser.add_argument("resource", help="Resource type, e.g. earnings")
    enqueue_parser.add_argument("action", choices=["create", "update", "delete"])
    enqueue_parser.add_argument("payload", help="Payload as JSON")
    enqueue_parser.add_argument("--client-id", default="cli", help="Originating client id")
    enqueue_parser.add_argument(
        "--enqueued-at",
        default=None,
        help="ISO timestamp the change was made locally (default: now)",
    )
    enqueue_parser.set_defaults(func=cmd_enqueue)

    # Drain and retry commands
    drain_parser = subparsers.add_parser("drain", help="Apply a user's pending changes")
    drain_parser.add_argument("user", help="User id")
    _add_strategy(drain_parser)
    drain_parser.set_defaults(func=cmd_drain)

    retry_parser = subparsers.add_parser("retry", help="Re-queue failed changes and drain")
    retry_parser.add_argument("user", help="User id")
    _add_strategy(retry_parser)
    retry_parser.set_defaults(func=cmd_drain)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show queue counts for a user")
    status_parser.add_argument("user", help="User id")
    status_parser.add_argument("--json", action="store_true", help="Output status as JSON")
    status_parser.set_defaults(func=cmd_status)

    # Purge command
    purge_parser = subparsers.add_parser("purge", help="Delete completed changes")
    purge_parser.add_argument("user", help="User id")
    purge_group = purge_parser.add_mutually_exclusive_group()
    purge_group.add_argument(
        "--older-than",
        default=None,
        help="ISO timestamp; only purge changes processed before it",
    )
    purge_group.add_argument(
        "--all",
        action="store_true",
        help="Purge every completed change regardless of age",
    )
    purge_parser.set_defaults(func=cmd_purge)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.log_json)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
