"""Top-level agent interaction engine.

Wires together CredentialGate, ProcessSupervisor, OutputClassifier,
ConfirmationArbiter, CorrelationTracker and ErrorClassifier/
RecoveryPolicy. Single entry point for submitting operations.

Usage:
    from agentbridge.engine import AgentBridgeEngine, ConversationMessage

    engine = AgentBridgeEngine(approval_callback=ask_user)
    stream = engine.submit([ConversationMessage("user", "Tidy the drafts")])
    async for item in stream:
        ...  # OutputEvents, then one OperationResult or ClassifiedError
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterable
from typing import Any, Union

from .arbiter import ConfirmationArbiter
from .cancellation import CancelToken
from .classifier import OutputClassifier
from .config import ApprovalCallback, ConsentCallback, EngineConfig
from .conversation import estimate_tokens, format_conversation
from .correlation import CorrelatedLogger, CorrelationTracker, LogEntry, LogSink
from .credentials import CredentialGate, build_credential_gate
from .error_classifier import ErrorClassifier, RecoveryAction, RecoveryPolicy
from .errors import MalformedOutputError, OperationCancelledError, OperationTimeoutError
from .models import (
    ClassifiedError,
    ConversationMessage,
    Credential,
    ErrorCategory,
    Operation,
    OperationResult,
    OperationState,
    OutputEvent,
    StructuredEvent,
    TextEvent,
    Usage,
)
from .supervisor import ProcessSupervisor

StreamItem = Union[OutputEvent, OperationResult, ClassifiedError]


def usage_from_stats(stats: Any) -> Usage | None:
    """Token counts from a JSON-mode ``stats`` object, if it has any."""
    if not isinstance(stats, dict):
        return None
    models = stats.get("models")
    if isinstance(models, dict):
        prompt = candidates = 0
        found = False
        for model_stats in models.values():
            tokens = model_stats.get("tokens") if isinstance(model_stats, dict) else None
            if isinstance(tokens, dict):
                prompt += int(tokens.get("prompt", 0) or 0)
                candidates += int(tokens.get("candidates", 0) or 0)
                found = True
        if found:
            return Usage(input_tokens=prompt, output_tokens=candidates)
    for in_key, out_key in (
        ("input_tokens", "output_tokens"),
        ("promptTokenCount", "candidatesTokenCount"),
    ):
        if in_key in stats or out_key in stats:
            return Usage(
                input_tokens=int(stats.get(in_key, 0) or 0),
                output_tokens=int(stats.get(out_key, 0) or 0),
            )
    return None


class OperationStream:
    """Lazy, single-pass async iterator over one operation's output.

    Nothing runs, and the engine does not track the stream, until the
    first ``__anext__``. Yields OutputEvents in
    the order the agent emitted them, then exactly one terminal item:
    an OperationResult or a ClassifiedError.
    """

    def __init__(
        self,
        engine: AgentBridgeEngine,
        correlation_id: str,
        messages: list[ConversationMessage],
        system_preamble: str,
        config: EngineConfig,
    ) -> None:
        self._engine = engine
        self._config = config
        self._messages = messages
        self._stdin_text = format_conversation(system_preamble, messages)
        self._cancel = CancelToken()
        self._log = engine.tracker.logger("engine", correlation_id)
        self.operation = Operation(
            correlation_id=correlation_id,
            deadline=time.monotonic() + config.operation_timeout_seconds,
        )
        self._arbiter = ConfirmationArbiter(
            config, engine.approval_callback, self.operation, self._cancel,
            self._log.child("arbiter"),
        )
        self._policy = RecoveryPolicy(config)
        self._iterator: AsyncIterator[StreamItem] | None = None
        self._iterated = False
        self._done = False
        self._next_sequence = 0
        # Per-attempt result state
        self._texts: list[str] = []
        self._warnings: list[str] = []
        self._response: str | None = None
        self._usage: Usage | None = None

    @property
    def correlation_id(self) -> str:
        return self.operation.correlation_id

    @property
    def state(self) -> OperationState:
        return self.operation.state

    @property
    def cancelled(self) -> bool:
        return self._cancel.cancelled

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Cancel the operation; the stream then ends with one Cancelled error."""
        if not self._cancel.cancelled:
            self._log.info("Cancellation requested: %s", reason)
        self._cancel.cancel(reason)

    # ── Async iterator protocol ──

    def __aiter__(self) -> OperationStream:
        if self._iterated:
            raise RuntimeError(
                f"OperationStream {self.correlation_id[:8]} is not restartable"
            )
        self._iterated = True
        return self

    async def __anext__(self) -> StreamItem:
        if self._done:
            raise StopAsyncIteration
        if self._iterator is None:
            self._engine._register(self)
            self._iterated = True
            self._iterator = self._run()
        try:
            return await self._iterator.__anext__()
        except StopAsyncIteration:
            self._done = True
            raise

    async def aclose(self) -> None:
        """Stop early, releasing the process and concurrency slot."""
        if self._iterator is not None and not self._done:
            self._cancel.cancel("stream closed by caller")
            await self._iterator.aclose()
        self._done = True
        self._engine._forget(self)

    async def collect(self) -> tuple[list[OutputEvent], OperationResult | ClassifiedError]:
        """Drain the stream into ``(events, terminal)``."""
        events: list[OutputEvent] = []
        terminal: OperationResult | ClassifiedError | None = None
        async for item in self:
            if item.is_terminal:
                terminal = item
            else:
                events.append(item)
        assert terminal is not None
        return events, terminal

    # ── Pipeline ──

    async def _run(self) -> AsyncIterator[StreamItem]:
        op = self.operation
        supervisor = self._engine.supervisor
        self._log.info(
            "Operation submitted: %d message(s), deadline in %.1fs",
            len(self._messages), op.remaining(),
        )
        holding_slot = False
        try:
            op.advance(OperationState.QUEUED)
            self._cancel.raise_if_cancelled()
            limiter = supervisor.limiter
            if limiter.would_block():
                self._log.info(
                    "Queued for a concurrency slot (%d active, %d waiting)",
                    limiter.active, limiter.waiting,
                )
            try:
                await supervisor.acquire_slot(self._cancel, timeout=op.remaining())
            except asyncio.TimeoutError as exc:
                raise OperationTimeoutError(
                    self._config.operation_timeout_seconds, deadline_exceeded=True,
                ) from exc
            holding_slot = True
            op.advance(OperationState.RUNNING)
            self._log.info("Concurrency slot acquired")
        except Exception as exc:
            self._engine._forget(self)
            yield self._surface(self._engine.errors.classify(exc, op.correlation_id))
            return

        try:
            attempts = self._attempts()
            try:
                async for item in attempts:
                    yield item
            finally:
                await attempts.aclose()
        finally:
            if holding_slot:
                supervisor.release_slot()
            self._engine._forget(self)

    async def _attempts(self) -> AsyncIterator[StreamItem]:
        op = self.operation
        cfg = self._config
        cid = op.correlation_id
        history: list[ErrorCategory] = []
        force_auth = False
        attempt = 0
        while True:
            attempt += 1
            try:
                if op.remaining() <= 0:
                    raise OperationTimeoutError(
                        cfg.operation_timeout_seconds, deadline_exceeded=True,
                    )
                credential = await self._engine.gate.resolve(
                    cfg.credential_scopes,
                    log=self._log.child("credentials"),
                    deadline=op.deadline,
                    cancel=self._cancel,
                    force=force_auth,
                )
                force_auth = False
                run = self._run_attempt(credential, attempt)
                try:
                    async for event in run:
                        yield event
                finally:
                    await run.aclose()
            except Exception as exc:
                failure: Exception | None = exc
                error = self._engine.errors.classify(exc, cid)
            else:
                result = self._build_result()
                op.advance(OperationState.COMPLETED)
                self._log.info(
                    "Operation completed after %d attempt(s): %d chars, %d warning(s)",
                    attempt, len(result.text), len(result.warnings),
                )
                yield result
                return

            decision = self._policy.decide(error, history, op.remaining())
            history.append(error.category)
            self._log.warning(
                "Attempt %d failed: %s -> %s (%s)",
                attempt, error.category.value, decision.action.value, decision.reason,
                detail=error.technical_detail,
            )

            if decision.action == RecoveryAction.REAUTHENTICATE:
                force_auth = True
                continue
            if decision.action == RecoveryAction.RETRY:
                if decision.delay > 0:
                    self._log.info("Backing off %.1fs before retry", decision.delay)
                    try:
                        await self._cancel.sleep(decision.delay)
                    except OperationCancelledError as exc:
                        yield self._surface(self._engine.errors.classify(exc, cid))
                        return
                continue
            if decision.action == RecoveryAction.COMPLETE_PARTIAL:
                reason = (
                    failure.reason if isinstance(failure, MalformedOutputError)
                    else str(failure)
                )
                result = self._build_result(extra_warning=f"incomplete agent output: {reason}")
                op.advance(OperationState.COMPLETED)
                self._log.warning("Operation completed with partial output: %s", reason)
                yield result
                return
            yield self._surface(error)
            return

    async def _run_attempt(
        self, credential: Credential, attempt: int,
    ) -> AsyncIterator[OutputEvent]:
        cfg = self._config
        cid = self.correlation_id
        supervisor = self._engine.supervisor
        self._texts, self._warnings = [], []
        self._response, self._usage = None, None
        self._arbiter.reset()

        session = await supervisor.start(
            cid, credential, cfg, self._stdin_text, self._log.child("supervisor"),
            cancel=self._cancel, attempt=attempt, deadline=self.operation.deadline,
        )
        classifier = OutputClassifier(
            cfg, cid, attempt=attempt, sequence_start=self._next_sequence,
        )
        self._warnings = classifier.warnings
        log = self._log.child("classifier")
        try:
            eof = False
            while not eof:
                idle = cfg.prompt_idle_seconds if classifier.has_partial_line else None
                try:
                    chunk = await session.read(self._cancel, idle)
                except asyncio.TimeoutError:
                    events = classifier.flush_prompt()
                else:
                    if chunk is None:
                        eof = True
                        events = classifier.finish()
                    else:
                        events = classifier.feed(chunk)
                for event in events:
                    log.debug(
                        "Event #%d %s (attempt %d)",
                        event.sequence, event.kind.value, attempt, detail=event.raw,
                    )
                    event = await self._arbiter.review(event, session)
                    self._record(event)
                    yield event

            code = await session.wait_exit(self._cancel)
            failure = ErrorClassifier.exception_for_exit(
                code, session.stderr_text, session.stdout_seen, cfg.executable,
            )
            if failure is not None:
                if session.stderr_text.strip():
                    self._log.debug("Agent stderr", detail=session.stderr_text.strip())
                raise failure
        finally:
            self._next_sequence = classifier.next_sequence
            await supervisor.release(session)

    def _record(self, event: OutputEvent) -> None:
        if isinstance(event, TextEvent):
            self._texts.append(event.text)
        elif isinstance(event, StructuredEvent) and isinstance(event.value, dict):
            response = event.value.get("response")
            if isinstance(response, str):
                self._response = response
            usage = usage_from_stats(event.value.get("stats"))
            if usage is not None:
                self._usage = usage

    def _build_result(self, extra_warning: str | None = None) -> OperationResult:
        text = self._response if self._response is not None else "\n".join(self._texts)
        usage = self._usage or Usage(
            input_tokens=estimate_tokens(self._stdin_text),
            output_tokens=estimate_tokens(text),
        )
        warnings = list(self._warnings)
        if extra_warning:
            warnings.append(extra_warning)
        return OperationResult(
            correlation_id=self.correlation_id,
            text=text,
            usage=usage,
            warnings=tuple(warnings),
        )

    def _surface(self, error: ClassifiedError) -> ClassifiedError:
        op = self.operation
        if not op.is_terminal:
            op.advance(
                OperationState.CANCELLED
                if error.category == ErrorCategory.CANCELLED
                else OperationState.FAILED
            )
        self._log.error(
            "Operation %s: %s", op.state.value, error.category.value,
            detail=error.technical_detail,
        )
        return error


class AgentBridgeEngine:
    """Main entry point.

    Shared across operations: the concurrency limiter (inside the
    supervisor), the log sink and the credential gate's session cache.
    Everything else is per operation.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        approval_callback: ApprovalCallback | None = None,
        consent_callback: ConsentCallback | None = None,
        sink: LogSink | None = None,
        credential_gate: CredentialGate | None = None,
    ) -> None:
        self._config = config or EngineConfig.from_env()
        self._config.validate()
        self.approval_callback = approval_callback
        self.tracker = CorrelationTracker(sink or LogSink(self._config.trace_file))
        self.supervisor = ProcessSupervisor(self._config.max_concurrency)
        self.gate = credential_gate or build_credential_gate(
            self._config, consent_callback=consent_callback, sink=self.tracker.sink,
        )
        self.errors = ErrorClassifier()
        self._streams: dict[str, OperationStream] = {}
        self._shutting_down = False

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def sink(self) -> LogSink:
        return self.tracker.sink

    @property
    def in_flight(self) -> list[str]:
        return list(self._streams)

    def submit(
        self,
        conversation: Iterable[ConversationMessage] | str,
        system_preamble: str = "",
        config: EngineConfig | None = None,
        correlation_id: str | None = None,
    ) -> OperationStream:
        """Create a lazy OperationStream. Nothing starts until it is iterated."""
        if self._shutting_down:
            raise RuntimeError("AgentBridgeEngine is shutting down")
        cfg = config or self._config
        cfg.validate()
        if isinstance(conversation, str):
            messages = [ConversationMessage(role="user", content=conversation)]
        else:
            messages = list(conversation)
        cid = correlation_id or self.tracker.new_id()
        if cid in self._streams:
            raise ValueError(f"Operation {cid[:8]} is already in flight")
        return OperationStream(self, cid, messages, system_preamble, cfg)

    def cancel(self, correlation_id: str, reason: str = "cancelled by caller") -> bool:
        stream = self._streams.get(correlation_id)
        if stream is None:
            return False
        stream.cancel(reason)
        return True

    def trace(self, correlation_id: str) -> list[LogEntry]:
        return self.tracker.trace(correlation_id)

    def logger(self, component: str, correlation_id: str) -> CorrelatedLogger:
        return self.tracker.logger(component, correlation_id)

    async def shutdown(self) -> None:
        """Cancel every in-flight operation and kill remaining processes."""
        self._shutting_down = True
        for stream in list(self._streams.values()):
            stream.cancel("engine shutdown")
        await self.supervisor.shutdown()

    def _register(self, stream: OperationStream) -> None:
        cid = stream.correlation_id
        current = self._streams.get(cid)
        if current is not None and current is not stream:
            raise RuntimeError(f"Operation {cid[:8]} is already in flight")
        self._streams[cid] = stream
        if self._shutting_down:
            stream.cancel("engine shutdown")

    def _forget(self, stream: OperationStream) -> None:
        if self._streams.get(stream.correlation_id) is stream:
            del self._streams[stream.correlation_id]
