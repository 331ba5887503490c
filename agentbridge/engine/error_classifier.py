"""Failure taxonomy and recovery policy.

ErrorClassifier is the only path from an exception to a caller: it
maps every exception raised anywhere in the pipeline to a
ClassifiedError with a plain-language message. RecoveryPolicy then
decides whether the engine retries, re-authenticates, completes with
partial output or surfaces the error.

    Category              Recoverable  Policy
    AuthenticationError   no           one forced re-resolution, else surface
    ProcessNotFound       no           surface with remediation text
    Timeout               yes          one retry, fresh process, same id
    MalformedOutput       yes          complete with partial text + warning
    UserDenied/Cancelled  no           surface, never retried
    UpstreamServiceError  yes          exponential backoff, bounded
    RateLimited           yes          longer exponential backoff, bounded
    Internal              no           surface
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum

from .config import EngineConfig
from .errors import (
    AuthenticationError,
    MalformedOutputError,
    OperationCancelledError,
    OperationTimeoutError,
    ProcessNotFoundError,
    RateLimitedError,
    UpstreamServiceError,
    UserDeniedError,
)
from .models import ClassifiedError, ErrorCategory, Severity

_RATE_LIMIT_PATTERN = re.compile(
    r"\b429\b|quota|rate[ _-]?limit|resource[ _]exhausted|too many requests",
    re.IGNORECASE,
)
_AUTH_PATTERN = re.compile(
    r"\b401\b|\b403\b|unauthori[sz]ed|unauthenticated|permission denied|"
    r"invalid api key|api key not valid|invalid credentials",
    re.IGNORECASE,
)
_NOT_FOUND_EXIT_CODES = {126: "not executable", 127: "command not found"}


@dataclass(frozen=True)
class _Profile:
    severity: Severity
    recoverable: bool
    user_message: str


_PROFILES: dict[ErrorCategory, _Profile] = {
    ErrorCategory.AUTHENTICATION: _Profile(
        Severity.ERROR, False,
        "Sign-in failed. Check your Google credentials or API key and try again.",
    ),
    ErrorCategory.PROCESS_NOT_FOUND: _Profile(
        Severity.CRITICAL, False,
        "The agent command-line tool could not be started. Install it and "
        "make sure it is on your PATH.",
    ),
    ErrorCategory.TIMEOUT: _Profile(
        Severity.WARNING, True,
        "The agent took too long to respond. Try again with a smaller request.",
    ),
    ErrorCategory.MALFORMED_OUTPUT: _Profile(
        Severity.WARNING, True,
        "The agent's reply could not be read completely. Review the partial "
        "answer or try again.",
    ),
    ErrorCategory.USER_DENIED: _Profile(
        Severity.INFO, False,
        "The requested action was not approved, so the agent was stopped.",
    ),
    ErrorCategory.CANCELLED: _Profile(
        Severity.INFO, False,
        "The request was cancelled.",
    ),
    ErrorCategory.UPSTREAM_SERVICE: _Profile(
        Severity.ERROR, True,
        "The AI service reported a problem. Wait a moment and try again.",
    ),
    ErrorCategory.RATE_LIMITED: _Profile(
        Severity.WARNING, True,
        "The AI service is busy or your quota is used up. Wait a few minutes "
        "before trying again.",
    ),
    ErrorCategory.INTERNAL: _Profile(
        Severity.CRITICAL, False,
        "Something went wrong inside the agent bridge. Report the correlation "
        "id below if this keeps happening.",
    ),
}


class ErrorClassifier:
    """Maps exceptions (and agent exit statuses) into the taxonomy."""

    def classify(self, exc: BaseException, correlation_id: str) -> ClassifiedError:
        category = self.category_for(exc)
        profile = _PROFILES[category]
        return ClassifiedError(
            category=category,
            severity=profile.severity,
            recoverable=profile.recoverable,
            correlation_id=correlation_id,
            user_message=profile.user_message,
            technical_detail=f"{type(exc).__name__}: {exc}",
        )

    @staticmethod
    def category_for(exc: BaseException) -> ErrorCategory:
        if isinstance(exc, AuthenticationError):
            return ErrorCategory.AUTHENTICATION
        if isinstance(exc, ProcessNotFoundError):
            return ErrorCategory.PROCESS_NOT_FOUND
        if isinstance(exc, (OperationTimeoutError, asyncio.TimeoutError)):
            return ErrorCategory.TIMEOUT
        if isinstance(exc, MalformedOutputError):
            return ErrorCategory.MALFORMED_OUTPUT
        if isinstance(exc, UserDeniedError):
            return ErrorCategory.USER_DENIED
        if isinstance(exc, (OperationCancelledError, asyncio.CancelledError)):
            return ErrorCategory.CANCELLED
        if isinstance(exc, RateLimitedError):
            return ErrorCategory.RATE_LIMITED
        if isinstance(exc, UpstreamServiceError):
            return ErrorCategory.UPSTREAM_SERVICE
        return ErrorCategory.INTERNAL

    @staticmethod
    def exception_for_exit(
        exit_code: int, stderr: str, produced_output: bool, executable: str = "agent",
    ) -> Exception | None:
        """Translate an agent exit status into an exception (None on success)."""
        if exit_code == 0:
            if produced_output:
                return None
            return MalformedOutputError("agent produced no output")
        if exit_code in _NOT_FOUND_EXIT_CODES:
            return ProcessNotFoundError(executable, _NOT_FOUND_EXIT_CODES[exit_code])
        if _RATE_LIMIT_PATTERN.search(stderr):
            return RateLimitedError(exit_code, stderr)
        if _AUTH_PATTERN.search(stderr):
            return AuthenticationError(
                f"agent rejected the credential (exit {exit_code})",
                rejected_by_agent=True,
            )
        return UpstreamServiceError(exit_code, stderr)


class RecoveryAction(str, Enum):
    RETRY = "retry"
    REAUTHENTICATE = "reauthenticate"
    COMPLETE_PARTIAL = "complete_partial"
    SURFACE = "surface"


@dataclass(frozen=True)
class RecoveryDecision:
    action: RecoveryAction
    delay: float = 0.0
    reason: str = ""


class RecoveryPolicy:
    """Decides what happens after a classified failure.

    ``history`` holds the categories of earlier failures in the same
    operation; budgets are counted per category.
    """

    def __init__(self, config: EngineConfig) -> None:
        self._config = config

    def decide(
        self,
        error: ClassifiedError,
        history: list[ErrorCategory],
        remaining: float,
    ) -> RecoveryDecision:
        cfg = self._config
        category = error.category
        prior = history.count(category)

        if category == ErrorCategory.AUTHENTICATION:
            if prior < cfg.reauth_attempts and remaining > 0:
                return RecoveryDecision(
                    RecoveryAction.REAUTHENTICATE, reason="forced credential re-resolution",
                )
            return RecoveryDecision(RecoveryAction.SURFACE, reason="re-authentication exhausted")

        if category == ErrorCategory.MALFORMED_OUTPUT:
            return RecoveryDecision(RecoveryAction.COMPLETE_PARTIAL, reason="partial output kept")

        if category == ErrorCategory.TIMEOUT:
            return self._retry(prior, cfg.timeout_retries, 0.0, remaining, "timeout")

        if category == ErrorCategory.UPSTREAM_SERVICE:
            delay = self.backoff(
                prior, cfg.upstream_backoff_base_seconds, cfg.upstream_backoff_max_seconds,
            )
            return self._retry(prior, cfg.upstream_max_retries, delay, remaining, "upstream")

        if category == ErrorCategory.RATE_LIMITED:
            delay = self.backoff(
                prior, cfg.rate_limit_backoff_base_seconds, cfg.rate_limit_backoff_max_seconds,
            )
            return self._retry(prior, cfg.rate_limit_max_retries, delay, remaining, "rate limit")

        return RecoveryDecision(RecoveryAction.SURFACE, reason="not recoverable")

    @staticmethod
    def backoff(prior: int, base: float, cap: float) -> float:
        return min(cap, base * (2 ** prior))

    @staticmethod
    def _retry(
        prior: int, budget: int, delay: float, remaining: float, label: str,
    ) -> RecoveryDecision:
        if prior >= budget:
            return RecoveryDecision(
                RecoveryAction.SURFACE, reason=f"{label} retry budget ({budget}) exhausted",
            )
        if remaining <= delay:
            return RecoveryDecision(
                RecoveryAction.SURFACE, reason=f"{label} retry would pass the deadline",
            )
        return RecoveryDecision(
            RecoveryAction.RETRY, delay=delay, reason=f"{label} retry {prior + 1}/{budget}",
        )
