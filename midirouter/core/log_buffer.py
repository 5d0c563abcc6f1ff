"""
In-memory sink for human-readable status lines.

Keeps the most recent service log records so the dashboard can show them
without tailing files.
"""

from __future__ import annotations

import itertools
import logging
import time
from collections import deque
from typing import List

from midirouter.models.schemas import LogEntry

_SEVERITIES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warning",
    logging.ERROR: "error",
    logging.CRITICAL: "error",
}


class LogBuffer(logging.Handler):
    """Bounded log handler; oldest entries are dropped first."""

    def __init__(self, max_entries: int = 1000, level: int = logging.INFO):
        super().__init__(level=level)
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._ids = itertools.count(1)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage().strip()
        except Exception:
            self.handleError(record)
            return
        entry = LogEntry(
            id=f"log-{int(time.time() * 1000)}-{next(self._ids)}",
            timestamp=record.created,
            severity=_SEVERITIES.get(record.levelno, "info"),
            message=message,
            source=record.name,
        )
        self._entries.append(entry)

    def get_all(self) -> List[LogEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
