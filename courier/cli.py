"""
Courier command line.

    courier serve                      run the webhook server
    courier capture "project: house: fix the faucet"
    courier resolve projects house     show where a capture would land
    courier audit C123:1706799600.1234 print the audit trail of one message
    courier status C123:1706799600.1234
"""

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid

from .common.config import ENV_CONFIG_PATH, ensure_directories, load_config
from .common.errors import CourierError
from .common.schemas import CaptureEvent, Outcome
from .pipeline import JsonlAuditSink, RegistryResolver, build_orchestrator
from .pipeline.dedupe import DedupeStore
from .pipeline.notifier import ConsoleReplyNotifier

logger = logging.getLogger("courier.cli")


def _cmd_serve(args, config) -> int:
    from .intake.server import run_server

    if args.port:
        config.server.port = args.port
    run_server(config)
    return 0


async def _capture(args, config) -> int:
    orchestrator = build_orchestrator(config, notifier=ConsoleReplyNotifier())
    event = CaptureEvent(
        id=args.id or f"cli:{uuid.uuid4().hex}",
        text=args.text,
        author=args.author,
        channel="cli",
        source="cli",
    )
    try:
        run = await orchestrator.run(event)
    finally:
        await orchestrator.close()
    return 1 if run.outcome == Outcome.FAILED else 0


def _cmd_capture(args, config) -> int:
    ensure_directories(config)
    return asyncio.run(_capture(args, config))


def _cmd_resolve(args, config) -> int:
    resolver = RegistryResolver.from_path(config.registry.path)
    target = resolver.resolve(args.category, args.sub_area)
    print(json.dumps(target.model_dump(mode="json"), indent=2))
    return 0


def _cmd_audit(args, config) -> int:
    entries = JsonlAuditSink(config.audit.log_path).read_entries(args.event_id)
    if not entries:
        print(f"No audit entries for {args.event_id}")
        return 1
    for entry in entries:
        print(entry.model_dump_json())
    return 0


def _cmd_status(args, config) -> int:
    record = asyncio.run(DedupeStore(config.dedupe.db_path).get(args.event_id))
    if record is None:
        print(f"No dedupe record for {args.event_id}")
        return 1
    print(json.dumps(record.model_dump(mode="json"), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="courier", description="Capture chat messages into notes.")
    parser.add_argument("--config", help=f"Config file (default: ${ENV_CONFIG_PATH} or ~/.courier/config.json)")
    parser.add_argument(
        "--log-level",
        default=os.getenv("COURIER_LOG_LEVEL", "INFO"),
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        type=str.upper,
        help="Logging level (env: COURIER_LOG_LEVEL)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the webhook server")
    serve.add_argument("--port", type=int, help="Override server.port")
    serve.set_defaults(func=_cmd_serve)

    capture = sub.add_parser("capture", help="Run one message through the pipeline")
    capture.add_argument("text", help="Message text")
    capture.add_argument("--id", help="Event id (default: random)")
    capture.add_argument("--author", default=os.getenv("USER", "cli"), help="Author name")
    capture.set_defaults(func=_cmd_capture)

    resolve = sub.add_parser("resolve", help="Show registry resolution")
    resolve.add_argument("category", help="people | projects | ideas | needs_review")
    resolve.add_argument("sub_area", nargs="?", help="Sub-area, e.g. a project name")
    resolve.set_defaults(func=_cmd_resolve)

    audit = sub.add_parser("audit", help="Print the audit trail of one message")
    audit.add_argument("event_id")
    audit.set_defaults(func=_cmd_audit)

    status = sub.add_parser("status", help="Print the dedupe record of one message")
    status.add_argument("event_id")
    status.set_defaults(func=_cmd_status)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.config:
        # the server reloads config in its own lifespan
        os.environ[ENV_CONFIG_PATH] = args.config
    config = load_config(args.config)

    try:
        return args.func(args, config)
    except CourierError as e:
        logger.error("%s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
