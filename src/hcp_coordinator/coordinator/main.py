"""CLI entrypoint for the coordinator.

Operational commands only: agents and humans talk to the HTTP API.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from pydantic import ValidationError

from hcp_coordinator import __version__
from hcp_coordinator.coordinator.config import CoordinatorSettings
from hcp_coordinator.coordinator.lifecycle.errors import (
    ConcurrentModification,
    InvalidTransition,
    RequestNotFound,
)
from hcp_coordinator.coordinator.lifecycle.models import ActorType
from hcp_coordinator.coordinator.lifecycle.service import CoordinationService
from hcp_coordinator.coordinator.logging import configure_logging
from hcp_coordinator.coordinator.storage.audit_log import AuditQuery
from hcp_coordinator.coordinator.storage.database import open_database

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hcp",
        description="Human Coordination Protocol coordinator",
    )
    parser.add_argument("--version", action="version", version=f"hcp-coordinator {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the database file and schema")

    serve = subparsers.add_parser("serve", help="Run the HTTP API (uvicorn)")
    serve.add_argument("--host", default=None, help="Bind address (defaults to HCP_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Port (defaults to HCP_PORT)")

    subparsers.add_parser(
        "scan-timeouts",
        help="Run one timeout scan and apply fallback policies to expired requests",
    )

    show = subparsers.add_parser(
        "show",
        help="Print one request as JSON (a waiting response is marked delivered)",
    )
    show.add_argument("request_id", help="Coordination request id")
    show.add_argument(
        "--reader",
        default="cli",
        help="Actor recorded if reading delivers the response",
    )

    audit = subparsers.add_parser("audit", help="Print audit events as JSON lines")
    audit.add_argument("--request-id", default=None, help="Only events for this request")
    audit.add_argument("--event-type", default=None, help="Only events of this type")
    audit.add_argument("--limit", type=int, default=100, help="Maximum number of events")
    audit.add_argument("--offset", type=int, default=0, help="Number of events to skip")

    cancel = subparsers.add_parser("cancel", help="Cancel a request that is still in flight")
    cancel.add_argument("request_id", help="Coordination request id")
    cancel.add_argument("--actor", default="operator", help="Actor recorded in the audit trail")

    return parser


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from hcp_coordinator.server.config import ServerSettings

    server_settings = ServerSettings()
    uvicorn.run(
        "hcp_coordinator.server.app:create_app",
        factory=True,
        host=args.host or server_settings.host,
        port=args.port or server_settings.port,
        log_config=None,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = CoordinatorSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "init-db":
            db = open_database(settings.resolved_db_path, busy_timeout_ms=settings.busy_timeout_ms)
            db.close()
            print(f"Database ready at {settings.resolved_db_path}")
            return 0

        if args.command == "serve":
            return _serve(args)

        service = CoordinationService.from_settings(settings, route_inline=True)
        try:
            if args.command == "scan-timeouts":
                result = service.scheduler.run_once()
                logger.info(
                    "Timeout scan finished",
                    extra={"scanned": result.scanned, "applied": result.applied},
                )
                print(f"Processed {result.applied} of {result.scanned} expired request(s)")
                return 0 if result.failed == 0 else 1

            if args.command == "show":
                request = service.get(
                    args.request_id, reader=args.reader, reader_type=ActorType.HUMAN
                )
                print(request.model_dump_json(indent=2))
                return 0

            if args.command == "audit":
                events = service.audit_trail(
                    AuditQuery(
                        request_id=args.request_id,
                        event_type=args.event_type,
                        limit=args.limit,
                        offset=args.offset,
                    )
                )
                for event in events:
                    print(json.dumps(event.model_dump(mode="json"), ensure_ascii=False))
                return 0

            if args.command == "cancel":
                cancelled = service.cancel(
                    args.request_id, actor=args.actor, actor_type=ActorType.HUMAN
                )
                print(f"Cancelled request {cancelled.request_id}")
                return 0
        finally:
            service.close()

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except (InvalidTransition, ConcurrentModification, RequestNotFound) as e:
        logger.warning(str(e), extra={"command": args.command})
        print(str(e), file=sys.stderr)
        return 3

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
