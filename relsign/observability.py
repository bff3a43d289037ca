"""
Logging setup for relsign runs.

Two output formats on stderr:

    text   ``2026-01-01T00:00:00+00:00 INFO relsign.dispatch: signing with code-sign: a.zip!tool``
    json   one LogEvent object per line

Every record carries the run id so log lines from concurrent runs on the
same host can be separated.
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from relsign.config import LOG_FORMATS, LOG_LEVELS

ROOT_LOGGER = "relsign"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    run_id: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class RunIdFilter(logging.Filter):
    def __init__(self, run_id: str):
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = self.run_id
        return True


class StructuredHandler(logging.StreamHandler):
    """Logging handler that outputs structured JSON."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                run_id=getattr(record, "run_id", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            self.stream.write(event.to_json() + "\n")
            self.flush()
        except Exception:
            self.handleError(record)


class TextFormatter(logging.Formatter):
    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="seconds")


def configure_logging(
    level: str = "info",
    fmt: str = "text",
    *,
    stream: Any = None,
    run_id: Optional[str] = None,
) -> str:
    """Install a single handler on the ``relsign`` logger; returns the run id.

    Calling it again replaces the previous handler.
    """
    if level not in LOG_LEVELS:
        raise ValueError(f"unknown log level: {level!r}")
    if fmt not in LOG_FORMATS:
        raise ValueError(f"unknown log format: {fmt!r}")

    run_id = run_id or uuid.uuid4().hex[:12]
    stream = stream or sys.stderr

    handler: logging.Handler
    if fmt == "json":
        handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream)
        handler.setFormatter(TextFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler.addFilter(RunIdFilter(run_id))

    logger = logging.getLogger(ROOT_LOGGER)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    return run_id
