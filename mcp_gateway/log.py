"""
Structured JSON logging.

Logs go to stdout as one JSON object per line so that log collectors can
index the fields. Structured data is attached with
``logger.info("msg", extra={"event_data": {...}})``:

    {"timestamp": "2026-02-06 10:30:00,123", "level": "INFO",
     "logger": "mcp-gateway.oauth", "message": "Access token issued",
     "client_id": "3f2a...", "user_id": "alice"}
"""

import json
import logging
import sys


class JSONLogFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "event_data"):
            log_entry.update(record.event_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "info") -> None:
    """Install the JSON formatter on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONLogFormatter())

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=[handler],
        force=True,
    )
