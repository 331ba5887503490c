"""End-to-end tests: AgentBridgeEngine driving the scripted fake agent."""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from agentbridge.engine.credentials import ApiKeyResolver, CredentialGate
from agentbridge.engine.engine import AgentBridgeEngine, usage_from_stats
from agentbridge.engine.models import (
    ClassifiedError,
    ConfirmationRequestEvent,
    ConversationMessage,
    ErrorCategory,
    EventKind,
    OperationResult,
    OperationState,
    ReasoningEvent,
    StructuredEvent,
    TextEvent,
    ToolCallEvent,
    Usage,
)

API_KEY = "test-api-key-0123456789"


# ── Happy path ──


@pytest.mark.asyncio
async def test_events_then_result_in_order(agent_config, mock_agent):
    mock_agent(["Thinking: look first\n", "Tool: ls -la\n", "Done tidying.\n"])
    engine = AgentBridgeEngine(agent_config())
    stream = engine.submit([ConversationMessage("user", "Tidy the drafts")])
    assert stream.state == OperationState.PENDING

    events, terminal = await stream.collect()

    assert [type(e) for e in events] == [ReasoningEvent, ToolCallEvent, TextEvent]
    assert [e.sequence for e in events] == [0, 1, 2]
    assert all(e.correlation_id == stream.correlation_id for e in events)
    assert all(e.attempt == 1 for e in events)
    assert isinstance(terminal, OperationResult)
    assert terminal.text == "Done tidying."
    assert terminal.correlation_id == stream.correlation_id
    assert terminal.usage.input_tokens > 0 and terminal.usage.output_tokens > 0
    assert terminal.warnings == ()
    assert stream.state == OperationState.COMPLETED
    assert engine.in_flight == []
    assert engine.supervisor.active_count == 0


@pytest.mark.asyncio
async def test_nothing_runs_until_iterated(agent_config, mock_agent):
    dump = mock_agent(["hi\n"], dump=True)
    engine = AgentBridgeEngine(agent_config())
    stream = engine.submit("hello")
    await asyncio.sleep(0.2)
    assert not dump.exists()
    assert stream.correlation_id not in engine.in_flight
    await stream.collect()
    assert dump.exists()


@pytest.mark.asyncio
async def test_json_mode_uses_response_and_stats(agent_config, mock_agent):
    payload = {
        "response": "Final answer",
        "stats": {"models": {"gemini-test": {"tokens": {"prompt": 12, "candidates": 7}}}},
    }
    mock_agent([json.dumps(payload) + "\n"])
    engine = AgentBridgeEngine(agent_config(json_mode=True))
    events, terminal = await engine.submit("q").collect()

    assert [e.kind for e in events] == [EventKind.STRUCTURED]
    assert isinstance(events[0], StructuredEvent)
    assert terminal.text == "Final answer"
    assert terminal.usage == Usage(input_tokens=12, output_tokens=7)


def test_usage_from_stats_shapes():
    assert usage_from_stats({"input_tokens": 3, "output_tokens": 4}) == Usage(3, 4)
    assert usage_from_stats({"promptTokenCount": 5}) == Usage(5, 0)
    assert usage_from_stats({"other": 1}) is None
    assert usage_from_stats("nope") is None


# ── Approval ──


@pytest.mark.asyncio
async def test_denied_dangerous_action_stops_the_agent(agent_config, mock_agent):
    mock_agent(["Tool: rm -rf ./drafts\n", "Proceed? [Y/n] ", {"read": True}, "after\n"])
    asked = []

    async def approve(action):
        asked.append(action)
        return False

    engine = AgentBridgeEngine(agent_config(confirm_actions=True), approval_callback=approve)
    stream = engine.submit("clean up")
    events, terminal = await stream.collect()

    assert asked == ["rm -rf ./drafts"]
    assert events == []
    assert isinstance(terminal, ClassifiedError)
    assert terminal.category == ErrorCategory.USER_DENIED
    assert stream.state == OperationState.FAILED
    assert engine.supervisor.active_count == 0


@pytest.mark.asyncio
async def test_approved_dangerous_action_proceeds(agent_config, mock_agent):
    mock_agent(["Tool: rm -rf ./drafts\n", "Proceed? [Y/n] ", {"read": True}, "after\n"])

    approve = AsyncMock(return_value=True)
    engine = AgentBridgeEngine(agent_config(confirm_actions=True), approval_callback=approve)
    events, terminal = await engine.submit("clean up").collect()

    approve.assert_awaited_once_with("rm -rf ./drafts")
    assert isinstance(events[0], ToolCallEvent)
    assert events[0].decision is not None and events[0].decision.approved
    assert isinstance(events[1], ConfirmationRequestEvent)
    assert [e.text for e in events[2:]] == ["answer: y", "after"]
    assert isinstance(terminal, OperationResult)
    assert terminal.text == "answer: y\nafter"


@pytest.mark.asyncio
async def test_prompt_on_the_tool_line_is_answered_after_approval(agent_config, mock_agent):
    mock_agent(["Tool: rm -rf ./drafts [Y/n] ", {"read": True}, "done\n"])

    approve = AsyncMock(return_value=True)
    engine = AgentBridgeEngine(
        agent_config(confirm_actions=True, operation_timeout_seconds=10.0),
        approval_callback=approve,
    )
    events, terminal = await engine.submit("clean up").collect()

    approve.assert_awaited_once_with("rm -rf ./drafts")
    assert isinstance(events[0], ToolCallEvent)
    assert events[0].awaits_answer
    assert events[0].decision is not None and events[0].decision.approved
    assert [e.text for e in events[1:]] == ["answer: y", "done"]
    assert isinstance(terminal, OperationResult)
    assert terminal.text == "answer: y\ndone"


@pytest.mark.asyncio
async def test_no_approval_handler_fails_closed(agent_config, mock_agent):
    mock_agent(["Tool: sudo reboot\n", {"sleep": 5}])
    engine = AgentBridgeEngine(agent_config(confirm_actions=True))
    _, terminal = await engine.submit("restart").collect()
    assert terminal.category == ErrorCategory.USER_DENIED


# ── Recovery ──


@pytest.mark.asyncio
async def test_timeout_is_retried_once_with_same_id(agent_config, mock_agent, tmp_path):
    dump = mock_agent(["recovered\n"], first_steps=[{"sleep": 5}], dump=True)
    engine = AgentBridgeEngine(agent_config(process_timeout_seconds=1.0))
    stream = engine.submit("slow one")
    events, terminal = await stream.collect()

    assert isinstance(terminal, OperationResult)
    assert terminal.text == "recovered"
    assert [e.attempt for e in events] == [2]
    assert (tmp_path / "invocations").read_text() == "2"
    env = json.loads(dump.read_text())["env"]
    assert env["GEMINI_CLI_CORRELATION_ID"] == stream.correlation_id


@pytest.mark.asyncio
async def test_second_timeout_is_surfaced(agent_config, mock_agent):
    mock_agent([{"sleep": 5}])
    engine = AgentBridgeEngine(agent_config(process_timeout_seconds=0.3))
    _, terminal = await engine.submit("slow").collect()
    assert terminal.category == ErrorCategory.TIMEOUT
    assert terminal.recoverable is True


@pytest.mark.asyncio
async def test_upstream_error_is_retried_then_surfaced(agent_config, mock_agent):
    mock_agent([{"stderr": "backend unavailable\n"}, "partial\n"], exit_code=1)
    engine = AgentBridgeEngine(agent_config())
    events, terminal = await engine.submit("q").collect()

    assert terminal.category == ErrorCategory.UPSTREAM_SERVICE
    assert [e.attempt for e in events] == [1, 2, 3]
    assert [e.sequence for e in events] == [0, 1, 2]


@pytest.mark.asyncio
async def test_upstream_error_then_success(agent_config, mock_agent):
    mock_agent(["ok\n"], first_steps=[{"stderr": "503 backend\n"}, {"exit": 1}])
    engine = AgentBridgeEngine(agent_config())
    _, terminal = await engine.submit("q").collect()
    assert isinstance(terminal, OperationResult)
    assert terminal.text == "ok"


@pytest.mark.asyncio
async def test_rate_limit_is_classified_from_stderr(agent_config, mock_agent):
    mock_agent([{"stderr": "429 RESOURCE_EXHAUSTED\n"}, {"exit": 1}])
    engine = AgentBridgeEngine(agent_config())
    _, terminal = await engine.submit("q").collect()
    assert terminal.category == ErrorCategory.RATE_LIMITED


@pytest.mark.asyncio
async def test_empty_output_completes_with_warning(agent_config, mock_agent):
    mock_agent([])
    engine = AgentBridgeEngine(agent_config())
    stream = engine.submit("q")
    _, terminal = await stream.collect()
    assert isinstance(terminal, OperationResult)
    assert terminal.text == ""
    assert any("no output" in w for w in terminal.warnings)
    assert stream.state == OperationState.COMPLETED


@pytest.mark.asyncio
async def test_missing_executable_is_surfaced(agent_config, mock_agent):
    mock_agent()
    engine = AgentBridgeEngine(agent_config(executable="/nonexistent/agent-cli-xyz"))
    events, terminal = await engine.submit("q").collect()
    assert events == []
    assert terminal.category == ErrorCategory.PROCESS_NOT_FOUND
    assert "PATH" in terminal.user_message


@pytest.mark.asyncio
async def test_no_credential_is_authentication_error(agent_config, mock_agent):
    dump = mock_agent(dump=True)
    gate = CredentialGate([ApiKeyResolver("NOT_SET_ANYWHERE", environ={})])
    engine = AgentBridgeEngine(agent_config(), credential_gate=gate)
    stream = engine.submit("q")
    _, terminal = await stream.collect()

    assert terminal.category == ErrorCategory.AUTHENTICATION
    assert terminal.correlation_id == stream.correlation_id
    assert not dump.exists()


# ── Concurrency and cancellation ──


@pytest.mark.asyncio
async def test_operations_beyond_the_limit_queue_and_complete(agent_config, mock_agent):
    mock_agent([{"sleep": 0.2}, "done\n"])
    engine = AgentBridgeEngine(agent_config(max_concurrency=2))
    limiter = engine.supervisor.limiter
    peak = {"active": 0, "waiting": 0}
    finished = asyncio.Event()

    async def sample():
        while not finished.is_set():
            peak["active"] = max(peak["active"], limiter.active)
            peak["waiting"] = max(peak["waiting"], limiter.waiting)
            await asyncio.sleep(0.01)

    sampler = asyncio.create_task(sample())
    streams = [engine.submit(f"job {i}") for i in range(5)]
    results = await asyncio.gather(*(s.collect() for s in streams))
    finished.set()
    await sampler

    assert all(isinstance(terminal, OperationResult) for _, terminal in results)
    assert all(terminal.text == "done" for _, terminal in results)
    assert peak["active"] <= 2
    assert peak["waiting"] >= 1
    assert limiter.active == 0


@pytest.mark.asyncio
async def test_cancel_yields_exactly_one_cancelled_error(agent_config, mock_agent):
    mock_agent(["working\n", {"sleep": 30}])
    engine = AgentBridgeEngine(agent_config())
    stream = engine.submit("long job")
    items = []

    async def consume():
        async for item in stream:
            items.append(item)

    task = asyncio.create_task(consume())
    for _ in range(100):
        if items:
            break
        await asyncio.sleep(0.05)
    assert engine.cancel(stream.correlation_id, "user pressed stop") is True
    await asyncio.wait_for(task, timeout=10)

    terminals = [i for i in items if i.is_terminal]
    assert len(terminals) == 1
    assert terminals[0].category == ErrorCategory.CANCELLED
    assert items[-1] is terminals[0]
    assert stream.state == OperationState.CANCELLED
    assert engine.supervisor.active_count == 0
    assert engine.cancel(stream.correlation_id) is False


@pytest.mark.asyncio
async def test_cancel_while_queued(agent_config, mock_agent):
    mock_agent([{"sleep": 1}, "done\n"])
    engine = AgentBridgeEngine(agent_config(max_concurrency=1))
    first = engine.submit("first")
    second = engine.submit("second")
    first_task = asyncio.create_task(first.collect())
    await asyncio.sleep(0.1)
    second_task = asyncio.create_task(second.collect())
    await asyncio.sleep(0.1)
    assert second.state == OperationState.QUEUED
    second.cancel()
    events, terminal = await second_task
    assert events == []
    assert terminal.category == ErrorCategory.CANCELLED
    _, first_terminal = await first_task
    assert isinstance(first_terminal, OperationResult)


@pytest.mark.asyncio
async def test_closing_stream_early_releases_resources(agent_config, mock_agent):
    mock_agent(["one\n", {"sleep": 30}])
    engine = AgentBridgeEngine(agent_config())
    stream = engine.submit("q")
    first = await stream.__anext__()
    assert first.text == "one"
    await stream.aclose()
    assert engine.supervisor.active_count == 0
    assert engine.supervisor.limiter.active == 0
    assert engine.in_flight == []


# ── Stream contract ──


@pytest.mark.asyncio
async def test_stream_is_not_restartable(agent_config, mock_agent):
    mock_agent(["hi\n"])
    engine = AgentBridgeEngine(agent_config())
    stream = engine.submit("q")
    await stream.collect()
    with pytest.raises(RuntimeError):
        async for _ in stream:
            pass


@pytest.mark.asyncio
async def test_duplicate_correlation_id_is_rejected(agent_config, mock_agent):
    mock_agent(["one\n", {"sleep": 30}])
    engine = AgentBridgeEngine(agent_config())
    first = engine.submit("a", correlation_id="1" * 32)
    await first.__anext__()
    with pytest.raises(ValueError):
        engine.submit("b", correlation_id="1" * 32)
    await first.aclose()


def test_unstarted_streams_are_not_tracked(agent_config):
    engine = AgentBridgeEngine(agent_config())
    for _ in range(3):
        engine.submit("never read", correlation_id="2" * 32)
    assert engine.in_flight == []
    assert engine.cancel("2" * 32) is False


@pytest.mark.asyncio
async def test_second_stream_with_live_id_cannot_start(agent_config, mock_agent):
    mock_agent(["one\n", {"sleep": 30}])
    engine = AgentBridgeEngine(agent_config())
    first = engine.submit("a", correlation_id="3" * 32)
    second = engine.submit("b", correlation_id="3" * 32)
    await first.__anext__()
    with pytest.raises(RuntimeError):
        await second.__anext__()
    assert engine.in_flight == ["3" * 32]
    await first.aclose()
    assert engine.in_flight == []


@pytest.mark.asyncio
async def test_unstarted_stream_is_cancelled_by_shutdown(agent_config, mock_agent):
    dump = mock_agent(["hi\n"], dump=True)
    engine = AgentBridgeEngine(agent_config())
    stream = engine.submit("q")
    await engine.shutdown()
    events, terminal = await stream.collect()
    assert events == []
    assert terminal.category == ErrorCategory.CANCELLED
    assert not dump.exists()
    assert engine.in_flight == []


@pytest.mark.asyncio
async def test_submit_after_shutdown_is_rejected(agent_config):
    engine = AgentBridgeEngine(agent_config())
    await engine.shutdown()
    with pytest.raises(RuntimeError):
        engine.submit("late")


@pytest.mark.asyncio
async def test_trace_covers_the_whole_operation(agent_config, mock_agent):
    mock_agent(["Thinking: plan\n", "answer\n"])
    engine = AgentBridgeEngine(agent_config())
    stream = engine.submit("q", system_preamble="Be brief.")
    await stream.collect()

    trace = engine.trace(stream.correlation_id)
    components = {entry.component for entry in trace}
    assert {"engine", "credentials", "supervisor", "classifier"} <= components
    assert any(e.message.startswith("Spawning agent") for e in trace)
    assert any(e.message.startswith("Agent process exited") for e in trace)
    assert "completed" in trace[-1].message
    assert [e.sequence for e in trace] == sorted(e.sequence for e in trace)
    assert all(API_KEY not in (e.message + (e.technical_detail or "")) for e in trace)
