"""Log output for the demo.

Log records go to stderr and the transcript to stdout, so piping the demo's
output captures only the transcript.  With ``--debug`` records are plain
text and SQLAlchemy's statement echo stays on; otherwise each record is one
JSON object, tagged with the scenario being run when there is one.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from config import Settings, get_settings


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)

        scenario = getattr(record, "scenario", None)
        if scenario:
            payload["scenario"] = scenario

        return json.dumps(payload, default=str)


def setup_logging(settings: Settings | None = None) -> None:
    """Route every logger to stderr, formatted for the current debug setting."""
    settings = settings or get_settings()

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if settings.debug else logging.INFO)

    # a second call replaces the handler instead of duplicating output
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)

    if settings.debug:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
                datefmt="%H:%M:%S",
            )
        )
    else:
        handler.setFormatter(JSONFormatter())

    root.addHandler(handler)

    # SQL echo only when debugging
    if not settings.debug:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
