"""Incremental classification of agent stdout into typed OutputEvents.

Output is consumed chunk by chunk in arrival order and split into
lines. Each complete line is classified as soon as its newline
arrives, using these rules in priority order:

1. contains a reasoning marker    -> ReasoningEvent
2. contains an action marker      -> ToolCallEvent (dangerous if the
                                     payload hits the deny-list)
3. contains a confirmation marker -> ConfirmationRequestEvent
4. one complete JSON object       -> StructuredEvent
5. anything else                  -> TextEvent

A line that opens a JSON object without closing it starts a pending
buffer; following lines are appended until the object parses. If the
stream ends first, or the buffer outgrows ``max_json_buffer_bytes``,
the buffered text degrades to a TextEvent carrying a warning.
A line carrying any marker closes the pending buffer early, wherever
the marker sits on the line.

Interactive prompts such as ``Proceed? [Y/n]`` are written without a
newline, so the engine calls ``flush_prompt()`` once output has gone
idle for ``prompt_idle_seconds``.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

from .config import EngineConfig
from .models import (
    ConfirmationRequestEvent,
    OutputEvent,
    ReasoningEvent,
    StructuredEvent,
    TextEvent,
    ToolCallEvent,
)

logger = logging.getLogger(__name__)

UNTERMINATED_JSON_WARNING = "unterminated JSON output shown as plain text"
OVERSIZED_JSON_WARNING = "JSON output exceeded the buffer limit; shown as plain text"
INVALID_JSON_WARNING = "invalid JSON output shown as plain text"

_INCOMPLETE = object()
_INVALID = object()
_WHITESPACE = re.compile(r"\s+")
_REDIRECT = re.compile(r">\s+")


def _parse_json(text: str) -> Any:
    """Parse *text*, returning _INCOMPLETE when more input could fix it."""
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        if exc.pos >= len(text.rstrip()) or exc.msg.startswith("Unterminated string"):
            return _INCOMPLETE
        return _INVALID


def _normalise(text: str) -> str:
    """Lowercase, collapse whitespace and close up redirections (``2> x`` -> ``2>x``)."""
    return _REDIRECT.sub(">", _WHITESPACE.sub(" ", text.lower()))


def is_dangerous(payload: str, deny_list: list[str]) -> bool:
    """Case-insensitive substring match of *payload* against *deny_list*.

    Both sides are normalised first, so a tab after ``rm`` still matches
    ``"rm "`` and ``2>/dev/null`` matches ``"> /dev/null"``.
    """
    # Trailing space lets entries like "rm " match a bare final word.
    haystack = _normalise(payload) + " "
    return any(_normalise(entry) in haystack for entry in deny_list if entry)


class OutputClassifier:
    """Per-attempt, stateful line classifier.

    ``sequence_start`` lets a retry continue the operation's sequence
    numbering so events stay strictly ordered across attempts.
    """

    def __init__(
        self,
        config: EngineConfig,
        correlation_id: str,
        *,
        attempt: int = 1,
        sequence_start: int = 0,
    ) -> None:
        self._config = config
        self._correlation_id = correlation_id
        self._attempt = attempt
        self._next_sequence = sequence_start
        self._tail = ""
        self._pending: list[str] = []
        self._pending_bytes = 0
        self._finished = False
        self.warnings: list[str] = []

    @property
    def next_sequence(self) -> int:
        return self._next_sequence

    @property
    def has_pending_json(self) -> bool:
        return bool(self._pending)

    @property
    def has_partial_line(self) -> bool:
        return bool(self._tail)

    def feed(self, chunk: str) -> list[OutputEvent]:
        """Classify every line completed by *chunk*."""
        if self._finished:
            raise RuntimeError("OutputClassifier.feed() called after finish()")
        if not chunk:
            return []
        events: list[OutputEvent] = []
        *lines, self._tail = (self._tail + chunk).split("\n")
        for line in lines:
            events.extend(self._classify_line(line.rstrip("\r")))
        return events

    def flush_prompt(self) -> list[OutputEvent]:
        """Classify an unterminated trailing prompt, if there is one.

        Called when output goes idle: an agent waiting for a y/n answer
        never sends the newline that would complete the line.
        """
        if self._finished or not self._tail:
            return []
        if not self._has_marker(self._tail, self._config.confirmation_markers):
            return []
        tail, self._tail = self._tail, ""
        return self._classify_line(tail)

    def finish(self) -> list[OutputEvent]:
        """Flush the trailing fragment and any unterminated JSON."""
        if self._finished:
            return []
        self._finished = True
        events: list[OutputEvent] = []
        if self._tail:
            tail, self._tail = self._tail, ""
            events.extend(self._classify_line(tail.rstrip("\r")))
        if self._pending:
            events.append(self._flush_pending(UNTERMINATED_JSON_WARNING))
        return events

    # ── Line rules ──

    def _classify_line(self, line: str) -> list[OutputEvent]:
        events: list[OutputEvent] = []
        if self._pending:
            if self._has_any_marker(line):
                events.append(self._flush_pending(UNTERMINATED_JSON_WARNING))
            else:
                events.extend(self._continue_pending(line))
                return events

        if not line.strip():
            return events

        cfg = self._config
        marker = self._find_marker(line, cfg.reasoning_markers)
        if marker is not None:
            content = line.split(marker, 1)[1].strip()
            events.append(self._emit(ReasoningEvent, line, content=content))
            return events

        marker = self._find_marker(line, cfg.action_markers)
        if marker is not None:
            action = line.split(marker, 1)[1].strip()
            prompt_at = self._marker_index(action, cfg.confirmation_markers)
            if prompt_at:
                action = action[:prompt_at].rstrip()
            events.append(self._emit(
                ToolCallEvent, line,
                action=action,
                dangerous=is_dangerous(action, cfg.deny_list),
                awaits_answer=prompt_at is not None,
            ))
            return events

        if self._has_marker(line, cfg.confirmation_markers):
            events.append(self._emit(ConfirmationRequestEvent, line, prompt=line.strip()))
            return events

        stripped = line.strip()
        if stripped.startswith("{"):
            value = _parse_json(stripped)
            if value is _INCOMPLETE:
                self._pending = [line]
                self._pending_bytes = len(line.encode("utf-8"))
                return events
            if isinstance(value, dict):
                events.append(self._emit(StructuredEvent, line, value=value))
                return events

        events.append(self._emit(TextEvent, line, text=line))
        return events

    def _continue_pending(self, line: str) -> list[OutputEvent]:
        self._pending.append(line)
        self._pending_bytes += len(line.encode("utf-8")) + 1
        buffered = "\n".join(self._pending)
        value = _parse_json(buffered.strip())
        if value is _INCOMPLETE:
            if self._pending_bytes > self._config.max_json_buffer_bytes:
                return [self._flush_pending(OVERSIZED_JSON_WARNING)]
            return []
        self._pending = []
        self._pending_bytes = 0
        if isinstance(value, dict):
            return [self._emit(StructuredEvent, buffered, value=value)]
        if value is _INVALID:
            self.warnings.append(INVALID_JSON_WARNING)
            return [self._emit(TextEvent, buffered, text=buffered, warning=INVALID_JSON_WARNING)]
        return [self._emit(TextEvent, buffered, text=buffered)]

    def _flush_pending(self, warning: str) -> TextEvent:
        buffered = "\n".join(self._pending)
        self._pending = []
        self._pending_bytes = 0
        self.warnings.append(warning)
        logger.debug(
            "[%s] JSON buffer degraded to text (%d chars): %s",
            self._correlation_id[:8], len(buffered), warning,
        )
        return self._emit(TextEvent, buffered, text=buffered, warning=warning)

    # ── Helpers ──

    def _emit(self, cls: type[OutputEvent], raw: str, **fields: Any) -> OutputEvent:
        event = cls(
            correlation_id=self._correlation_id,
            raw=raw,
            sequence=self._next_sequence,
            attempt=self._attempt,
            **fields,
        )
        self._next_sequence += 1
        return event

    @staticmethod
    def _find_marker(line: str, markers: list[str]) -> str | None:
        for marker in markers:
            if marker and marker in line:
                return marker
        return None

    @staticmethod
    def _marker_index(text: str, markers: list[str]) -> int | None:
        found = [text.find(marker) for marker in markers if marker and marker in text]
        return min(found) if found else None

    @staticmethod
    def _has_marker(line: str, markers: list[str]) -> bool:
        return any(marker and marker in line for marker in markers)

    def _has_any_marker(self, line: str) -> bool:
        cfg = self._config
        return any(
            marker and marker in line
            for marker in (
                *cfg.reasoning_markers,
                *cfg.action_markers,
                *cfg.confirmation_markers,
            )
        )
