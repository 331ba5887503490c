"""ConfirmationArbiter: fail-closed approval gate for risky agent actions.

Sits between the classifier and the caller. Every event passes through
``review()``; the engine awaits it before pulling the next event, so a
pending approval suspends forwarding of everything behind it while the
supervisor's pump tasks keep buffering output.

Rules:
- A dangerous tool_call is held until the host's approval callback
  answers. The wait is bounded by the smallest of the approval timeout,
  the operation deadline and the process hard timeout.
- No answer, a denial, a failing callback or a missing callback all
  count as denial: the agent gets the denial response, the session is
  terminated and UserDeniedError propagates.
- Cancellation during the wait propagates as OperationCancelledError
  (logged as cancelled, never as denied).
- A confirmation prompt following an approved or harmless tool_call is
  answered automatically, as is one printed on the tool_call line itself.
  A prompt with no tool_call before it, or one whose own text hits the
  deny-list after a harmless tool_call, needs its own approval.
"""
from __future__ import annotations

import asyncio
import dataclasses
import time

from .cancellation import CancelToken
from .classifier import is_dangerous
from .config import ApprovalCallback, EngineConfig
from .correlation import CorrelatedLogger
from .errors import OperationCancelledError, UserDeniedError
from .models import (
    ConfirmationDecision,
    ConfirmationRequestEvent,
    Operation,
    OutputEvent,
    ToolCallEvent,
)
from .supervisor import CliSession

_APPROVAL_WORDS = frozenset({"approved", "approve", "allow", "yes", "y"})


def normalize_decision(result: object) -> ConfirmationDecision:
    """Coerce whatever the approval callback returned into a decision."""
    if isinstance(result, ConfirmationDecision):
        return result
    if isinstance(result, bool):
        return ConfirmationDecision(result, "approved" if result else "denied")
    if isinstance(result, str):
        approved = result.strip().lower() in _APPROVAL_WORDS
        return ConfirmationDecision(approved, result.strip())
    return ConfirmationDecision(False, f"unrecognised approval response {result!r}")


class ConfirmationArbiter:
    """Per-operation approval gate."""

    def __init__(
        self,
        config: EngineConfig,
        approval_callback: ApprovalCallback | None,
        operation: Operation,
        cancel: CancelToken,
        log: CorrelatedLogger,
    ) -> None:
        self._config = config
        self._callback = approval_callback
        self._operation = operation
        self._cancel = cancel
        self._log = log
        self._last_tool: ToolCallEvent | None = None
        self.requests = 0

    def reset(self) -> None:
        """Forget the previous attempt's tool call before a retry."""
        self._last_tool = None

    async def review(self, event: OutputEvent, session: CliSession) -> OutputEvent:
        """Return the event to forward, or raise if it must not proceed."""
        if isinstance(event, ToolCallEvent):
            return await self._review_tool_call(event, session)
        if isinstance(event, ConfirmationRequestEvent):
            await self._answer_prompt(event, session)
        return event

    async def _review_tool_call(
        self, event: ToolCallEvent, session: CliSession,
    ) -> ToolCallEvent:
        if event.dangerous:
            decision = await self._request_approval(event.action, session)
            if not decision.approved:
                await self._reject(session, event.action, decision.rationale)
            event = dataclasses.replace(event, decision=decision)

        if event.awaits_answer:
            self._log.debug("Answering inline prompt for tool call %r", event.action)
            self._last_tool = None
            await session.respond(self._config.approval_response)
        else:
            self._last_tool = event
        return event

    async def _answer_prompt(
        self, event: ConfirmationRequestEvent, session: CliSession,
    ) -> None:
        tool, self._last_tool = self._last_tool, None
        if tool is None or (
            not tool.dangerous and is_dangerous(event.prompt, self._config.deny_list)
        ):
            decision = await self._request_approval(event.prompt, session)
            if not decision.approved:
                await self._reject(session, event.prompt, decision.rationale)
        else:
            self._log.debug(
                "Auto-answering prompt for %s tool call %r",
                "approved" if tool.dangerous else "non-dangerous", tool.action,
            )
        await session.respond(self._config.approval_response)

    async def _request_approval(
        self, action: str, session: CliSession,
    ) -> ConfirmationDecision:
        self.requests += 1
        timeout = min(
            self._config.approval_timeout_seconds,
            self._operation.remaining(),
            session.remaining(),
        )
        self._log.info("Approval requested for %r (timeout %.1fs)", action, timeout)

        if self._callback is None:
            decision = ConfirmationDecision(False, "no approval handler configured")
        elif timeout <= 0:
            decision = ConfirmationDecision(False, "no time left to ask for approval")
        else:
            started = time.monotonic()
            try:
                result = await self._cancel.race(self._callback(action), timeout=timeout)
            except OperationCancelledError:
                self._log.info("Approval wait for %r cancelled", action)
                raise
            except asyncio.TimeoutError:
                decision = ConfirmationDecision(
                    False, f"no response within {timeout:.1f}s",
                )
            except Exception as exc:
                self._log.warning(
                    "Approval handler failed; treating as denial",
                    detail=f"{type(exc).__name__}: {exc}",
                )
                decision = ConfirmationDecision(False, "approval handler failed")
            else:
                decision = normalize_decision(result)
            self._log.debug("Approval wait took %.2fs", time.monotonic() - started)

        self._log.info(
            "Approval %s for %r: %s",
            "granted" if decision.approved else "DENIED", action, decision.rationale,
        )
        return decision

    async def _reject(self, session: CliSession, action: str, reason: str) -> None:
        await session.respond(self._config.denial_response)
        await session.terminate(f"action denied: {reason}")
        raise UserDeniedError(action, reason)
