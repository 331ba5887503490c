"""Exception hierarchy for the agent interaction engine.

One exception per failure mode. These never reach callers directly:
ErrorClassifier turns each into a ClassifiedError first.
"""
from __future__ import annotations


class AgentBridgeError(Exception):
    """Base exception for all engine errors."""


class AuthenticationError(AgentBridgeError):
    """No usable credential, or the agent rejected the one it was given.

    ``attempts`` lists ``(source, reason)`` for every credential tier
    that was tried. ``rejected_by_agent`` distinguishes a credential the
    agent refused from a resolution chain that came up empty.
    """
    def __init__(
        self,
        reason: str,
        attempts: list[tuple[str, str]] | None = None,
        *,
        rejected_by_agent: bool = False,
    ):
        self.reason = reason
        self.attempts = list(attempts or [])
        self.rejected_by_agent = rejected_by_agent
        detail = "; ".join(f"{src}: {why}" for src, why in self.attempts)
        super().__init__(
            f"Authentication failed: {reason}" + (f" [{detail}]" if detail else "")
        )


class ProcessNotFoundError(AgentBridgeError):
    """The agent executable is missing or cannot be executed."""
    def __init__(self, executable: str, reason: str = "not found"):
        self.executable = executable
        self.reason = reason
        super().__init__(f"Agent executable '{executable}': {reason}")


class OperationTimeoutError(AgentBridgeError):
    """The agent process or the whole operation ran out of time."""
    def __init__(self, timeout_seconds: float, *, deadline_exceeded: bool = False):
        self.timeout_seconds = timeout_seconds
        self.deadline_exceeded = deadline_exceeded
        scope = "operation deadline" if deadline_exceeded else "process timeout"
        super().__init__(f"{scope} of {timeout_seconds:.1f}s exceeded")


class MalformedOutputError(AgentBridgeError):
    """The agent exited cleanly but its output was unusable."""
    def __init__(self, reason: str, partial_text: str = ""):
        self.reason = reason
        self.partial_text = partial_text
        super().__init__(f"Malformed agent output: {reason}")


class UserDeniedError(AgentBridgeError):
    """A risky action was denied, or approval did not arrive in time."""
    def __init__(self, action: str, reason: str = "denied"):
        self.action = action
        self.reason = reason
        super().__init__(f"Action {action!r} not approved: {reason}")


class OperationCancelledError(AgentBridgeError):
    """The caller cancelled the operation."""
    def __init__(self, reason: str = "cancelled by caller"):
        self.reason = reason
        super().__init__(reason)


class UpstreamServiceError(AgentBridgeError):
    """The agent failed talking to its backing service (or exited non-zero)."""
    def __init__(self, exit_code: int | None, stderr: str = ""):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(
            f"Agent exited with code {exit_code}: {stderr.strip()[:500]}"
        )


class RateLimitedError(AgentBridgeError):
    """The backing service throttled the agent."""
    def __init__(self, exit_code: int | None, stderr: str = ""):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(
            f"Agent rate limited (exit {exit_code}): {stderr.strip()[:500]}"
        )
