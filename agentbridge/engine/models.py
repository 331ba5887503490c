"""Core data models for the agent interaction engine.

All dataclasses and enums in one place to avoid circular imports.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperationState(str, Enum):
    """Caller-visible lifecycle of one submitted operation.

    States only ever move forward; see ``Operation.advance``.
    """
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_OPERATION_RANK: dict[OperationState, int] = {
    OperationState.PENDING: 0,
    OperationState.QUEUED: 1,
    OperationState.RUNNING: 2,
    OperationState.COMPLETED: 3,
    OperationState.FAILED: 3,
    OperationState.CANCELLED: 3,
}

TERMINAL_OPERATION_STATES = frozenset({
    OperationState.COMPLETED,
    OperationState.FAILED,
    OperationState.CANCELLED,
})


class SessionState(str, Enum):
    """Process lifecycle states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    TERMINATED = "terminated"


class EventKind(str, Enum):
    """Tag of the closed OutputEvent union."""
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    CONFIRMATION_REQUEST = "confirmation_request"
    STRUCTURED = "structured"
    TEXT = "text"


class ErrorCategory(str, Enum):
    AUTHENTICATION = "AuthenticationError"
    PROCESS_NOT_FOUND = "ProcessNotFound"
    TIMEOUT = "Timeout"
    MALFORMED_OUTPUT = "MalformedOutput"
    USER_DENIED = "UserDenied"
    CANCELLED = "Cancelled"
    UPSTREAM_SERVICE = "UpstreamServiceError"
    RATE_LIMITED = "RateLimited"
    INTERNAL = "Internal"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class CredentialSource(str, Enum):
    SESSION = "session"
    APIKEY = "apikey"
    ADC = "adc"
    OAUTH = "oauth"


@dataclass
class Operation:
    """One caller-initiated submission, owned by its OperationStream."""
    correlation_id: str
    deadline: float
    state: OperationState = OperationState.PENDING
    started_at: datetime = field(default_factory=_utcnow)

    def advance(self, target: OperationState) -> None:
        """Move to *target*. Raises ValueError on any reversal."""
        if self.state in TERMINAL_OPERATION_STATES:
            raise ValueError(
                f"Operation {self.correlation_id[:8]} already terminal "
                f"({self.state.value}); cannot move to {target.value}"
            )
        if _OPERATION_RANK[target] < _OPERATION_RANK[self.state]:
            raise ValueError(
                f"Invalid operation transition: {self.state.value} -> "
                f"{target.value}"
            )
        self.state = target

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_OPERATION_STATES

    def remaining(self) -> float:
        """Seconds left before the overall deadline (never negative)."""
        return max(0.0, self.deadline - time.monotonic())


@dataclass
class ConversationMessage:
    """A single turn of conversation history.

    ``content`` is either plain text or a list of content blocks
    (``{"type": "text", "text": "..."}``); non-text blocks are
    rendered as placeholders.
    """
    role: str
    content: str | list[dict[str, Any]]


@dataclass(frozen=True)
class ConfirmationDecision:
    approved: bool
    rationale: str = ""


@dataclass(frozen=True)
class Credential:
    source: CredentialSource
    token: str = field(repr=False)
    expiry: float | None = None  # time.monotonic() deadline

    def is_expired(self, now: float | None = None) -> bool:
        if self.expiry is None:
            return False
        return (now if now is not None else time.monotonic()) >= self.expiry

    def __repr__(self) -> str:
        return (
            f"Credential(source={self.source.value!r}, token='***', "
            f"expiry={self.expiry!r})"
        )


# ── Output events ──────────────────────────────────────────────────


@dataclass(frozen=True)
class OutputEvent:
    """Base classified output event.

    Downstream code switches on ``kind`` and never re-parses ``raw``.
    """
    kind: EventKind = EventKind.TEXT
    correlation_id: str = ""
    raw: str = ""
    sequence: int = 0
    attempt: int = 1

    is_terminal = False


@dataclass(frozen=True)
class ReasoningEvent(OutputEvent):
    kind: EventKind = EventKind.REASONING
    content: str = ""


@dataclass(frozen=True)
class ToolCallEvent(OutputEvent):
    kind: EventKind = EventKind.TOOL_CALL
    action: str = ""
    dangerous: bool = False
    decision: ConfirmationDecision | None = None
    # The same line also carried a confirmation prompt.
    awaits_answer: bool = False


@dataclass(frozen=True)
class ConfirmationRequestEvent(OutputEvent):
    kind: EventKind = EventKind.CONFIRMATION_REQUEST
    prompt: str = ""


@dataclass(frozen=True)
class StructuredEvent(OutputEvent):
    kind: EventKind = EventKind.STRUCTURED
    value: Any = None


@dataclass(frozen=True)
class TextEvent(OutputEvent):
    kind: EventKind = EventKind.TEXT
    text: str = ""
    warning: str | None = None


# ── Terminal items ─────────────────────────────────────────────────


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class OperationResult:
    """Successful end of an operation's event stream."""
    correlation_id: str
    text: str
    usage: Usage = field(default_factory=Usage)
    warnings: tuple[str, ...] = ()

    is_terminal = True


@dataclass(frozen=True)
class ClassifiedError:
    """Caller-visible failure.

    ``technical_detail`` is kept out of ``repr``/``str`` so it only
    ever reaches the correlated log.
    """
    category: ErrorCategory
    severity: Severity
    recoverable: bool
    correlation_id: str
    user_message: str
    technical_detail: str = field(default="", repr=False)

    is_terminal = True

    def __str__(self) -> str:
        return f"{self.user_message} (correlation id: {self.correlation_id})"
