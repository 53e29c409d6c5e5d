"""Structured logging for fleet runs.

Records are tagged with the run id and, when the caller passes
``extra={"vm_index": i}``, with the VM the message is about.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from kvmfleet.config import settings

# Attributes every LogRecord has; anything else came in via ``extra``.
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


def _record_extras(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and key != "vm_index"
    }


class FleetJSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, run_id: str = ""):
        super().__init__()
        self.run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "kvmfleet",
            "run_id": self.run_id,
        }
        vm_index = getattr(record, "vm_index", None)
        if vm_index is not None:
            payload["vm_index"] = vm_index
        extras = _record_extras(record)
        if extras:
            payload["extra"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class FleetTextFormatter(logging.Formatter):
    """Human readable lines, prefixed with the VM index like ``2: ...``."""

    def __init__(self, run_id: str = ""):
        super().__init__(datefmt="%H:%M:%S")
        self.run_id = run_id[:8]

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, self.datefmt)
        vm_index = getattr(record, "vm_index", None)
        source = f"{vm_index}:" if vm_index is not None else "-:"
        line = f"{timestamp} [{self.run_id}] {record.levelname:<7} {source} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_fleet_logging(
    run_id: str = "",
    log_level: str | None = None,
    log_format: str | None = None,
) -> None:
    """Configure the root logger; level and format default to settings."""
    log_level = log_level or settings.log_level
    log_format = log_format or settings.log_format
    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(FleetJSONFormatter(run_id=run_id))
    else:
        handler.setFormatter(FleetTextFormatter(run_id=run_id))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # asyncssh logs every channel open at INFO
    logging.getLogger("asyncssh").setLevel(logging.WARNING)
