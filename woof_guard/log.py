"""JSON-lines log output with redaction of structured payloads."""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

from woof_guard.security.redaction import sanitize_error, sanitize_object


class SanitizingJsonFormatter(logging.Formatter):
    """Formats records as one JSON object per line.

    A record's ``data`` attribute (set via ``extra={"data": ...}``) is passed
    through ``sanitize_object`` before output. Message patterns are scrubbed
    from exception text only; the message itself is emitted as written.
    """

    def __init__(self, production: bool = True) -> None:
        super().__init__()
        self._production = production

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        data = getattr(record, "data", None)
        if data is not None:
            entry["data"] = sanitize_object(data)
        if record.exc_info and record.exc_info[1] is not None:
            entry["error"] = sanitize_error(record.exc_info[1], production=self._production)
        return json.dumps(entry, default=str, separators=(",", ":"))


def configure_logging(level: str = "INFO", production: bool = True) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SanitizingJsonFormatter(production=production))
    root = logging.getLogger("woof_guard")
    root.handlers[:] = [handler]
    root.setLevel(level)
    root.propagate = False
