"""Log output for the relay.

Every record carries the correlation id of the request being handled, taken
from a ``ContextVar`` so it follows the work across awaits. ``setup_logging``
picks between a human-readable line and one JSON object per line.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

NO_REQUEST = "-"

_current_request: contextvars.ContextVar[str] = contextvars.ContextVar(
    "relay_request_id", default=NO_REQUEST
)

# attributes every LogRecord has, whatever the Python version
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "request_id"}


def set_request_id(request_id: str) -> contextvars.Token:
    return _current_request.set(request_id)


def reset_request_id(token: contextvars.Token) -> None:
    _current_request.reset(token)


def get_request_id() -> str:
    return _current_request.get()


@contextmanager
def bound_request_id(request_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with *request_id*."""
    token = set_request_id(request_id)
    try:
        yield
    finally:
        reset_request_id(token)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = getattr(record, "request_id", None) or get_request_id()
        return True


class PlainFormatter(logging.Formatter):
    """``12:00:01 INFO core.broker [email_1_1] message``"""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s [%(request_id)s] %(message)s",
                         datefmt="%H:%M:%S")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "ts": when.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": get_request_id(),
        }
        entry.update(
            (key, value) for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Send all logging to stdout through one handler, replacing any others."""
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(JsonFormatter() if json_logs else PlainFormatter())

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)
    numeric = logging.getLevelName(level.upper())
    root.setLevel(numeric if isinstance(numeric, int) else logging.INFO)
