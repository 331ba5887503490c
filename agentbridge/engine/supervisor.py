"""ProcessSupervisor: spawns and owns agent CLI processes.

One CliSession per live process, at most one per operation, kept in a
registry keyed by correlation id. The supervisor also owns the FIFO
concurrency limiter that bounds how many operations may run agent
processes at once.

Per session:
- the credential and correlation id go into the child's environment,
  never onto its command line;
- the formatted conversation is written to stdin (left open when the
  agent may ask for confirmations);
- stdout/stderr are pumped into a queue by background tasks so the
  pipes keep draining while the engine is parked on an approval;
- a watcher task enforces the hard wall-clock timeout and reacts to
  the operation's CancelToken by killing the process.
"""
from __future__ import annotations

import asyncio
import codecs
import collections
import logging
import os
import time
from collections.abc import Mapping

from .cancellation import CancelToken
from .config import EngineConfig
from .correlation import CorrelatedLogger
from .errors import OperationCancelledError, OperationTimeoutError, ProcessNotFoundError
from .lifecycle import validate_session_transition
from .models import Credential, SessionState

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4096

_STDOUT = "stdout"
_TIMEOUT = "timeout"


class ConcurrencyLimiter:
    """Counting limiter that hands out slots strictly in arrival order."""

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._limit = limit
        self._active = 0
        self._waiters: collections.deque[asyncio.Future[None]] = collections.deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    def would_block(self) -> bool:
        return self._active >= self._limit or self.waiting > 0

    async def acquire(
        self, cancel: CancelToken | None = None, timeout: float | None = None,
    ) -> None:
        """Wait for a slot. Raises asyncio.TimeoutError or OperationCancelledError."""
        if not self.would_block():
            self._active += 1
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            if cancel is None:
                await asyncio.wait_for(asyncio.shield(waiter), timeout)
            else:
                await cancel.race(asyncio.shield(waiter), timeout=timeout)
        except BaseException:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just as we gave up; pass it on.
                self.release()
            else:
                waiter.cancel()
                self._remove(waiter)
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Hand the slot straight to the next waiter.
                waiter.set_result(None)
                return
        self._active -= 1

    def _remove(self, waiter: asyncio.Future[None]) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass


class CliSession:
    """One agent process and its channels. Owned by ProcessSupervisor."""

    def __init__(
        self,
        correlation_id: str,
        config: EngineConfig,
        log: CorrelatedLogger,
        *,
        attempt: int = 1,
        deadline: float | None = None,
    ) -> None:
        self.correlation_id = correlation_id
        self.attempt = attempt
        self.state = SessionState.IDLE
        self.process: asyncio.subprocess.Process | None = None
        self.exit_code: int | None = None
        self.timed_out = False
        self.stdin_open = False
        self.stdout_seen = False
        self.hard_deadline = time.monotonic() + config.process_timeout_seconds
        if deadline is not None:
            # The operation deadline also bounds every process it spawns.
            self.hard_deadline = min(self.hard_deadline, deadline)
        self._config = config
        self._log = log
        self._queue: asyncio.Queue[tuple[str, str | None]] = asyncio.Queue()
        self._stderr: list[str] = []
        self._tasks: list[asyncio.Task] = []
        self._kill_task: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def stderr_text(self) -> str:
        return "".join(self._stderr)

    def remaining(self) -> float:
        """Seconds until the hard timeout fires."""
        return max(0.0, self.hard_deadline - time.monotonic())

    def transition(self, target: SessionState) -> None:
        validate_session_transition(self.state, target)
        self._log.debug("Session %s -> %s", self.state.value, target.value)
        self.state = target

    # ── I/O ──

    async def read(
        self, cancel: CancelToken, idle_timeout: float | None = None,
    ) -> str | None:
        """Next decoded stdout chunk, or None at EOF.

        Raises asyncio.TimeoutError when nothing arrives within
        *idle_timeout*, OperationTimeoutError once the hard timeout has
        killed the process.
        """
        if self.timed_out:
            raise OperationTimeoutError(self._config.process_timeout_seconds)
        kind, data = await cancel.race(self._queue.get(), timeout=idle_timeout)
        if kind == _TIMEOUT or self.timed_out:
            raise OperationTimeoutError(self._config.process_timeout_seconds)
        if data:
            self.stdout_seen = True
        return data

    async def respond(self, text: str) -> bool:
        """Write a confirmation answer to the agent's stdin."""
        if not self.stdin_open or not self.alive or self.process.stdin is None:
            self._log.debug("Response %r not written: stdin closed", text.strip())
            return False
        try:
            self.process.stdin.write(text.encode("utf-8"))
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self.stdin_open = False
            self._log.warning("Agent stdin closed before response", detail=repr(exc))
            return False
        self._log.info("Wrote confirmation response %r", text.strip())
        return True

    async def wait_exit(self, cancel: CancelToken) -> int:
        """Wait for the process to exit and record its outcome."""
        assert self.process is not None
        code = await cancel.race(self.process.wait())
        # Let the stderr pump drain what the process left behind.
        await asyncio.gather(*self._tasks[:2], return_exceptions=True)
        if self.timed_out:
            raise OperationTimeoutError(self._config.process_timeout_seconds)
        self.exit_code = code
        if self.state == SessionState.RUNNING:
            self.transition(
                SessionState.COMPLETED if code == 0 else SessionState.FAILED
            )
        self._log.info("Agent process exited with code %s", code)
        return code

    # ── Termination ──

    async def terminate(self, reason: str) -> None:
        """SIGTERM, then SIGKILL after the grace period. Idempotent."""
        if self._kill_task is None:
            self._kill_task = asyncio.ensure_future(self._kill(reason))
        await asyncio.shield(self._kill_task)

    async def _kill(self, reason: str) -> None:
        proc = self.process
        if proc is not None and proc.returncode is None:
            self._log.info("Terminating agent process pid=%s: %s", proc.pid, reason)
            try:
                proc.terminate()
                try:
                    await asyncio.wait_for(
                        proc.wait(), timeout=self._config.terminate_grace_seconds,
                    )
                except asyncio.TimeoutError:
                    self._log.warning(
                        "Agent process pid=%s ignored SIGTERM; killing", proc.pid,
                    )
                    proc.kill()
                    await proc.wait()
            except ProcessLookupError:
                pass
            self.exit_code = proc.returncode
        self._close_stdin()
        if self.state == SessionState.RUNNING:
            self.transition(SessionState.TERMINATED)

    async def close(self) -> None:
        """Release the process and its helper tasks; ends in TERMINATED."""
        if self.alive:
            await self.terminate("session closed")
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._close_stdin()
        if self.state == SessionState.STARTING:
            self.transition(SessionState.FAILED)
        if self.state != SessionState.TERMINATED:
            self.transition(SessionState.TERMINATED)

    def _close_stdin(self) -> None:
        if self.process is not None and self.process.stdin is not None:
            if not self.process.stdin.is_closing():
                self.process.stdin.close()
        self.stdin_open = False

    # ── Background tasks ──

    def start_tasks(self, cancel: CancelToken) -> None:
        assert self.process is not None
        self._tasks = [
            asyncio.ensure_future(self._pump_stdout()),
            asyncio.ensure_future(self._pump_stderr()),
            asyncio.ensure_future(self._watch(cancel)),
        ]

    async def _pump_stdout(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stream = self.process.stdout
        while True:
            data = await stream.read(READ_CHUNK_BYTES)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    await self._queue.put((_STDOUT, tail))
                await self._queue.put((_STDOUT, None))
                return
            text = decoder.decode(data)
            if text:
                await self._queue.put((_STDOUT, text))

    async def _pump_stderr(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stream = self.process.stderr
        while True:
            data = await stream.read(READ_CHUNK_BYTES)
            if not data:
                self._stderr.append(decoder.decode(b"", final=True))
                return
            text = decoder.decode(data)
            self._stderr.append(text)
            for line in text.splitlines():
                if line.strip():
                    self._log.debug("agent stderr: %s", line)

    async def _watch(self, cancel: CancelToken) -> None:
        try:
            await cancel.race(self.process.wait(), timeout=self.remaining())
        except asyncio.TimeoutError:
            self.timed_out = True
            self.transition(SessionState.TIMED_OUT)
            self._log.warning(
                "Hard timeout of %.1fs reached; killing agent process",
                self._config.process_timeout_seconds,
            )
            await self.terminate("hard timeout")
            await self._queue.put((_TIMEOUT, None))
        except OperationCancelledError:
            await self.terminate(f"operation cancelled: {cancel.reason}")


class ProcessSupervisor:
    """Owns every live CliSession and the concurrency limiter."""

    def __init__(self, max_concurrency: int) -> None:
        self._sessions: dict[str, CliSession] = {}
        self._limiter = ConcurrencyLimiter(max_concurrency)

    @property
    def limiter(self) -> ConcurrencyLimiter:
        return self._limiter

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def get_session(self, correlation_id: str) -> CliSession | None:
        return self._sessions.get(correlation_id)

    async def acquire_slot(
        self, cancel: CancelToken | None = None, timeout: float | None = None,
    ) -> None:
        await self._limiter.acquire(cancel, timeout)

    def release_slot(self) -> None:
        self._limiter.release()

    @staticmethod
    def build_command(config: EngineConfig) -> list[str]:
        """``<exe> (--json | --interactive) [--model id] [--confirm-actions]``"""
        cmd = [config.executable]
        if config.json_mode:
            cmd.append("--json")
        elif config.interactive:
            cmd.append("--interactive")
        if config.model:
            cmd.extend(["--model", config.model])
        if config.confirm_actions:
            cmd.append("--confirm-actions")
        return cmd

    @staticmethod
    def build_env(
        config: EngineConfig,
        credential: Credential,
        correlation_id: str,
        base: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        env = dict(os.environ if base is None else base)
        env[config.correlation_env_var] = correlation_id
        env[config.mode_env_var] = "json" if config.json_mode else "interactive"
        var = config.credential_env_vars.get(credential.source.value)
        if var:
            env[var] = credential.token
        return env

    async def start(
        self,
        correlation_id: str,
        credential: Credential,
        config: EngineConfig,
        stdin_text: str,
        log: CorrelatedLogger,
        *,
        cancel: CancelToken,
        attempt: int = 1,
        deadline: float | None = None,
    ) -> CliSession:
        """Spawn the agent and deliver the conversation on stdin."""
        existing = self._sessions.get(correlation_id)
        if existing is not None and existing.state != SessionState.TERMINATED:
            raise RuntimeError(
                f"Operation {correlation_id[:8]} already has a live session"
            )
        cancel.raise_if_cancelled()

        session = CliSession(
            correlation_id, config, log, attempt=attempt, deadline=deadline,
        )
        self._sessions[correlation_id] = session
        session.transition(SessionState.STARTING)

        cmd = self.build_command(config)
        env = self.build_env(config, credential, correlation_id)
        log.info(
            "Spawning agent (attempt %d): %s", attempt, " ".join(cmd),
            detail=f"cwd={config.cwd or os.getcwd()} credential_source={credential.source.value}",
        )
        try:
            session.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=config.cwd,
            )
        except FileNotFoundError as exc:
            await self._abandon(session)
            raise ProcessNotFoundError(config.executable, "not found on PATH") from exc
        except PermissionError as exc:
            await self._abandon(session)
            raise ProcessNotFoundError(config.executable, "not executable") from exc
        except OSError as exc:
            await self._abandon(session)
            raise ProcessNotFoundError(config.executable, str(exc)) from exc

        session.transition(SessionState.RUNNING)
        session.stdin_open = True
        log.info("Agent process started pid=%d", session.pid)
        session.start_tasks(cancel)

        try:
            session.process.stdin.write(stdin_text.encode("utf-8") + b"\n")
            await session.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            session.stdin_open = False
            log.warning("Agent closed stdin before the conversation was written", detail=repr(exc))
        if not config.confirm_actions:
            session._close_stdin()
        return session

    async def release(self, session: CliSession) -> None:
        """Tear the session down and drop it from the registry."""
        try:
            await session.close()
        finally:
            if self._sessions.get(session.correlation_id) is session:
                del self._sessions[session.correlation_id]

    async def terminate(self, correlation_id: str, reason: str = "terminated") -> bool:
        session = self._sessions.get(correlation_id)
        if session is None or not session.alive:
            return False
        await session.terminate(reason)
        return True

    async def shutdown(self) -> None:
        sessions = list(self._sessions.values())
        if sessions:
            logger.info("Supervisor shutdown: terminating %d session(s)", len(sessions))
        await asyncio.gather(
            *(self.release(s) for s in sessions), return_exceptions=True,
        )

    async def _abandon(self, session: CliSession) -> None:
        session.transition(SessionState.FAILED)
        await self.release(session)
