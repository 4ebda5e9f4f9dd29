"""Console entry point: run the three Always Encrypted scenarios and print the transcript."""

import argparse
import logging
import sys
from functools import partial

from config import Settings, get_settings
from db.connection import open_connection
from db.provisioning import create_emulated_server
from logging_config import setup_logging
from services.scenarios import run_demo
from services.transcript import write_transcript

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ae-demo",
        description="Show which queries succeed and fail with and without the column encryption setting.",
    )
    parser.add_argument("--backend", choices=["emulated", "mssql"], help="driver to run the scenarios on")
    parser.add_argument("--server", help="SQL Server instance (mssql backend)")
    parser.add_argument("--database", help="database holding the Customer table")
    parser.add_argument("--debug", action="store_true", default=None, help="human-readable logs and SQL echo")
    parser.add_argument("--pause", action="store_true", default=None, help="wait for Enter before exiting")
    return parser


def resolve_settings(args: argparse.Namespace) -> Settings:
    overrides = {
        "backend": args.backend,
        "server": args.server,
        "database": args.database,
        "debug": args.debug,
        "pause_at_end": args.pause,
    }
    return get_settings().model_copy(update={k: v for k, v in overrides.items() if v is not None})


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = resolve_settings(args)
    setup_logging(settings)

    server = create_emulated_server(settings) if settings.backend == "emulated" else None
    connect = partial(open_connection, settings=settings, server=server)
    try:
        reports = run_demo(connect, settings)
    finally:
        if server is not None:
            server.dispose()

    write_transcript(reports)

    if settings.pause_at_end:
        input("Press Enter to continue")

    mismatched = [r.scenario.key for r in reports if not r.as_expected]
    if mismatched:
        logger.warning("Scenarios with unexpected outcomes: %s", ", ".join(mismatched))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
