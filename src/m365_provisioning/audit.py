from __future__ import annotations

import json
import logging
import os
import sys
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional

_CONTEXT_KEYS = ("tenant_id", "correlation_id")


@dataclass
class AuditEvent:
    timestamp: str
    level: str
    message: str
    tenant_id: Optional[str] = None
    correlation_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, level: int, message: str, fields: Dict[str, Any]) -> "AuditEvent":
        return cls(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=logging.getLevelName(level),
            message=message,
            tenant_id=fields.get("tenant_id"),
            correlation_id=fields.get("correlation_id"),
            extra={key: value for key, value in fields.items() if key not in _CONTEXT_KEYS},
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "level": self.level,
            "message": self.message,
            "tenant_id": self.tenant_id,
            "correlation_id": self.correlation_id,
            "extra": self.extra,
        }

    def as_line(self) -> str:
        """Flat JSON rendering used for stdout and the daily log file."""
        payload: Dict[str, Any] = {"timestamp": self.timestamp, "level": self.level, "message": self.message}
        for key in _CONTEXT_KEYS:
            if getattr(self, key) is not None:
                payload[key] = getattr(self, key)
        payload.update(self.extra)
        return json.dumps(payload, default=str)


class InMemoryAuditStore:
    """Bounded, newest-first buffer of audit events shared with the web API."""

    def __init__(self, max_events: int = 1000):
        self._events: Deque[AuditEvent] = deque(maxlen=max_events)
        self._lock = Lock()

    def append(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.appendleft(event)

    def list(
        self,
        limit: int = 100,
        tenant_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> List[AuditEvent]:
        with self._lock:
            events = list(self._events)
        if tenant_id is not None:
            events = [event for event in events if event.tenant_id == tenant_id]
        if correlation_id is not None:
            events = [event for event in events if event.correlation_id == correlation_id]
        return events[:limit]


def audit_log_path(directory: Path, when: Optional[datetime] = None) -> Path:
    when = when or datetime.now(timezone.utc)
    return Path(directory) / f"AuditLog_{when.strftime('%Y%m%d')}.log"


class DailyAuditFileHandler(logging.FileHandler):
    """File handler that picks the ``AuditLog_YYYYMMDD.log`` name for every record.

    The file is reopened whenever the UTC date changes.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
        super().__init__(audit_log_path(self.directory, self.clock()), encoding="utf-8", delay=True)

    def emit(self, record: logging.LogRecord) -> None:
        path = os.path.abspath(audit_log_path(self.directory, self.clock()))
        if path != self.baseFilename:
            self.acquire()
            try:
                if self.stream is not None:
                    self.stream.close()
                    self.stream = None  # type: ignore[assignment]
                self.baseFilename = path
            finally:
                self.release()
        super().emit(record)


class JsonAuditLogger:
    """Records provisioning events as one JSON object per line.

    Events go to ``stream`` (stdout by default) and, when ``store`` is set, to
    an in-memory buffer the web API reads back. With ``log_dir`` set, each
    event is also appended to that day's ``AuditLog_YYYYMMDD.log``.

    Keyword arguments passed to ``info``/``warning``/``error`` become fields of
    the event; ``tenant_id`` and ``correlation_id`` are lifted to the top level
    so a run can be traced across services.
    """

    def __init__(
        self,
        name: str = "m365_provisioning",
        level: int = logging.INFO,
        store: Optional[InMemoryAuditStore] = None,
        log_dir: Optional[Path] = None,
        stream: Any = None,
    ):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)
        self.logger.propagate = False
        if not any(type(handler) is logging.StreamHandler for handler in self.logger.handlers):
            self._add_handler(logging.StreamHandler(stream or sys.stdout))
        if log_dir is not None:
            self._attach_file_handler(Path(log_dir))
        self.store = store

    def _add_handler(self, handler: logging.Handler) -> None:
        handler.setFormatter(_EventFormatter())
        self.logger.addHandler(handler)

    def _attach_file_handler(self, log_dir: Path) -> None:
        log_dir.mkdir(parents=True, exist_ok=True)
        directory = log_dir.resolve()
        already_open = any(
            isinstance(handler, DailyAuditFileHandler) and handler.directory.resolve() == directory
            for handler in self.logger.handlers
        )
        if not already_open:
            self._add_handler(DailyAuditFileHandler(directory))

    def debug(self, message: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._emit(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._emit(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._emit(logging.ERROR, message, fields)

    def _emit(self, level: int, message: str, fields: Dict[str, Any]) -> None:
        if not self.logger.isEnabledFor(level):
            return
        event = AuditEvent.create(level, message, fields)
        if self.store is not None:
            self.store.append(event)
        self.logger.log(level, message, extra={"audit_event": event})


class _EventFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        event: Optional[AuditEvent] = getattr(record, "audit_event", None)
        if event is None:
            event = AuditEvent.create(record.levelno, record.getMessage(), {})
        return event.as_line()
