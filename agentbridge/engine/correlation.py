"""Correlation ids and the append-only structured log sink.

Every component logs through a CorrelatedLogger bound to one
operation's correlation id. Each record lands in two places:

- the LogSink, an append-only list of LogEntry rows that can be
  filtered back into a per-operation trace (and optionally mirrored to
  a JSON-lines file);
- the regular ``logging`` hierarchy under ``agentbridge.engine.*``.

Registered secrets are masked before either sees the text.
"""
from __future__ import annotations

import json
import logging
import secrets
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

LOGGER_PREFIX = "agentbridge.engine"
_MIN_SECRET_LENGTH = 4


def new_correlation_id() -> str:
    """128 random bits, hex encoded."""
    return secrets.token_hex(16)


@dataclass(frozen=True)
class LogEntry:
    sequence: int
    correlation_id: str
    timestamp: str
    severity: str
    component: str
    message: str
    technical_detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class LogSink:
    """Append-only structured log store, safe to share across operations."""

    def __init__(
        self,
        path: str | Path | None = None,
        level: int = logging.DEBUG,
    ) -> None:
        self._lock = threading.Lock()
        self._entries: list[LogEntry] = []
        self._secrets: set[str] = set()
        self._path = Path(path).expanduser() if path else None
        self._level = level
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)

    def register_secret(self, value: str | None) -> None:
        """Mask *value* in every record appended from now on."""
        if value and len(value) >= _MIN_SECRET_LENGTH:
            with self._lock:
                self._secrets.add(value)

    def redact(self, text: str) -> str:
        with self._lock:
            known = sorted(self._secrets, key=len, reverse=True)
        for secret in known:
            if secret in text:
                text = text.replace(secret, "***")
        return text

    def accepts(self, level: int) -> bool:
        return level >= self._level

    def append(
        self,
        *,
        correlation_id: str,
        severity: str,
        component: str,
        message: str,
        technical_detail: str | None = None,
    ) -> LogEntry:
        message = self.redact(message)
        if technical_detail is not None:
            technical_detail = self.redact(technical_detail)
        with self._lock:
            entry = LogEntry(
                sequence=len(self._entries),
                correlation_id=correlation_id,
                timestamp=datetime.now(timezone.utc).isoformat(),
                severity=severity,
                component=component,
                message=message,
                technical_detail=technical_detail,
            )
            self._entries.append(entry)
            if self._path is not None:
                with self._path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(entry.to_dict()) + "\n")
        return entry

    def entries(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)

    def trace(self, correlation_id: str) -> list[LogEntry]:
        """All entries for one operation, in append order."""
        with self._lock:
            return [e for e in self._entries if e.correlation_id == correlation_id]


class CorrelatedLogger(logging.LoggerAdapter):
    """LoggerAdapter that stamps and records every message for one operation.

    Accepts an extra ``detail=`` keyword: technical detail that is kept
    in the sink (and the stdlib log) but never shown to users.
    """

    def __init__(
        self,
        logger: logging.Logger,
        sink: LogSink,
        component: str,
        correlation_id: str,
    ) -> None:
        super().__init__(
            logger,
            {"correlation_id": correlation_id, "component": component},
        )
        self._sink = sink
        self.component = component
        self.correlation_id = correlation_id

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = dict(kwargs.get("extra") or {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return f"[{self.correlation_id[:8]}] {msg}", kwargs

    def log(self, level: int, msg: Any, *args: Any, detail: Any = None, **kwargs: Any) -> None:
        text = (str(msg) % args) if args else str(msg)
        detail_text = None if detail is None else str(detail)
        if self._sink.accepts(level):
            self._sink.append(
                correlation_id=self.correlation_id,
                severity=logging.getLevelName(level),
                component=self.component,
                message=text,
                technical_detail=detail_text,
            )
        if self.isEnabledFor(level):
            line = self._sink.redact(text)
            if detail_text:
                line = f"{line} | detail: {self._sink.redact(detail_text)}"
            msg, kwargs = self.process(line, kwargs)
            self.logger.log(level, "%s", msg, **kwargs)

    def child(self, component: str) -> CorrelatedLogger:
        return CorrelatedLogger(
            logging.getLogger(f"{LOGGER_PREFIX}.{component}"),
            self._sink,
            component,
            self.correlation_id,
        )


class CorrelationTracker:
    """Issues correlation ids and hands out loggers bound to them."""

    def __init__(self, sink: LogSink | None = None) -> None:
        self.sink = sink or LogSink()

    def new_id(self) -> str:
        return new_correlation_id()

    def logger(self, component: str, correlation_id: str) -> CorrelatedLogger:
        return CorrelatedLogger(
            logging.getLogger(f"{LOGGER_PREFIX}.{component}"),
            self.sink,
            component,
            correlation_id,
        )

    def trace(self, correlation_id: str) -> list[LogEntry]:
        return self.sink.trace(correlation_id)
