"""
Command-line interface to an audit log in Redis.

Usage:
    audis subjects
    audis retrieve system user:42
    audis log --subject system --subject user:42 --data '{"some":"data"}'
    audis purge system --to 4f0c...
    audis truncate system --keep 100

The Redis server is taken from --host, else $AUDIS_HOST (a .env file is
honored), else the config file, else redis://127.0.0.1:6379.

Each error kind exits with its own status code (see audis.errors);
argparse usage errors exit with 2.
"""

import argparse
import logging
import sys
from typing import Optional
import structlog

from audis import __version__
from audis.audit_log import AuditLog
from audis.config import load_config
from audis.errors import AudisError
from audis.events import Event

logger = structlog.get_logger(__name__)


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structured logging on stderr, keeping stdout for output."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="audis",
        description="Interact with an audit log, in Redis",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Turn on verbose output")
    parser.add_argument("-H", "--host", help="URL of the Redis server to connect to")
    parser.add_argument("-c", "--config", help="Path to a YAML config file")

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("subjects", help="List known subjects")

    retrieve = commands.add_parser(
        "retrieve", help="Print out an event log for one or more subjects"
    )
    retrieve.add_argument("subject", nargs="+")

    log = commands.add_parser("log", help="Log an event against one or more subjects")
    log.add_argument(
        "-s", "--subject", action="append", required=True,
        help="The name of a subject to index this event against",
    )
    log.add_argument("-i", "--id", default="", help="A unique ID to assign this event")
    log.add_argument(
        "-d", "--data", required=True, help="The raw data to insert into the audit log"
    )

    purge = commands.add_parser(
        "purge", help="Purge an event log, up to a last-known audit event"
    )
    purge.add_argument("subject", help="The name of the subject / event log to purge")
    purge.add_argument(
        "-t", "--to", required=True, help="The event ID to purge up to (and including)"
    )
    purge.add_argument(
        "--drain", action="store_true",
        help="Empty the whole event log if the event ID is not found",
    )

    truncate = commands.add_parser(
        "truncate",
        help="Truncate an event log such that it only includes a set number of events",
    )
    truncate.add_argument("subject", help="The name of the subject / event log to truncate")
    truncate.add_argument(
        "-n", "--keep", type=int, required=True, help="How many audit events to keep"
    )

    return parser


def run_command(audit: AuditLog, args: argparse.Namespace) -> None:
    """Execute one parsed subcommand against an audit log."""
    if args.command == "subjects":
        for subject in sorted(audit.subjects()):
            print(subject)

    elif args.command == "retrieve":
        for subject in args.subject:
            for record in audit.retrieve(subject):
                data = "(tombstoned)" if record.tombstoned else record.data
                print(f"{subject}: [{record.id}] {data}")

    elif args.command == "log":
        event = Event(id=args.id, data=args.data, subjects=args.subject)
        audit.log(event)
        print(event.id)

    elif args.command == "purge":
        removed = audit.purge(args.subject, args.to, drain_on_miss=args.drain)
        print(f"purged {len(removed)} events from {args.subject}")

    elif args.command == "truncate":
        removed = audit.truncate(args.subject, args.keep)
        print(f"truncated {len(removed)} events from {args.subject}")


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Provisional level until the config is read
    setup_logging("DEBUG" if args.verbose else "INFO")

    try:
        config = load_config(args.config)
    except (ValueError, OSError) as e:
        print(f"audis: bad configuration: {e}", file=sys.stderr)
        return 1

    setup_logging("DEBUG" if args.verbose else config.log_level)

    try:
        with AuditLog.connect(args.host or config.host, config) as audit:
            run_command(audit, args)
    except AudisError as e:
        logger.debug("command_failed", command=args.command, code=e.code)
        print(f"audis: {e.message}", file=sys.stderr)
        return e.exit_code
    except ValueError as e:
        print(f"audis: {e}", file=sys.stderr)
        return 1

    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
