"""Tests for OutputClassifier: rules, priority, incremental and partial JSON handling."""
from __future__ import annotations

import pytest

from agentbridge.engine.classifier import (
    INVALID_JSON_WARNING,
    OVERSIZED_JSON_WARNING,
    UNTERMINATED_JSON_WARNING,
    OutputClassifier,
    is_dangerous,
)
from agentbridge.engine.config import EngineConfig
from agentbridge.engine.models import (
    ConfirmationRequestEvent,
    EventKind,
    ReasoningEvent,
    StructuredEvent,
    TextEvent,
    ToolCallEvent,
)

CID = "c0ffee" * 5 + "ab"


def _classifier(**overrides) -> OutputClassifier:
    config = EngineConfig()
    for key, value in overrides.items():
        setattr(config, key, value)
    return OutputClassifier(config, CID)


def _run(chunks: list[str], **overrides):
    classifier = _classifier(**overrides)
    events = []
    for chunk in chunks:
        events.extend(classifier.feed(chunk))
    events.extend(classifier.finish())
    return events


# ── Examples ──


def test_dangerous_tool_call_example():
    events = _classifier().feed("Tool: rm -rf ./drafts\n")
    assert len(events) == 1
    event = events[0]
    assert isinstance(event, ToolCallEvent)
    assert event.kind == EventKind.TOOL_CALL
    assert event.action == "rm -rf ./drafts"
    assert event.dangerous is True
    assert event.decision is None
    assert event.raw == "Tool: rm -rf ./drafts"
    assert event.correlation_id == CID


def test_single_chunk_json_object_is_structured():
    events = _run(['{"summary": "done"}'])
    assert len(events) == 1
    assert isinstance(events[0], StructuredEvent)
    assert events[0].value == {"summary": "done"}


def test_json_line_is_emitted_before_finish():
    classifier = _classifier()
    events = classifier.feed('{"summary": "done"}\n')
    assert [e.kind for e in events] == [EventKind.STRUCTURED]


def test_reasoning_and_text():
    events = _run(["Thinking: look at the folder first\n", "All tidy now.\n"])
    assert isinstance(events[0], ReasoningEvent)
    assert events[0].content == "look at the folder first"
    assert isinstance(events[1], TextEvent)
    assert events[1].text == "All tidy now."
    assert events[1].warning is None


def test_confirmation_marker_line():
    events = _run(["Proceed? [Y/n]\n"])
    assert len(events) == 1
    assert isinstance(events[0], ConfirmationRequestEvent)
    assert events[0].prompt == "Proceed? [Y/n]"


# ── Priority ──


@pytest.mark.parametrize(
    "line,kind",
    [
        ("Thinking: maybe Tool: delete it", EventKind.REASONING),
        ("Tool: delete x. Proceed?", EventKind.TOOL_CALL),
        ("Action: list files", EventKind.TOOL_CALL),
        ('Confirm: {"a": 1}', EventKind.CONFIRMATION_REQUEST),
        ('{"note": "Reasoning: inside json"}', EventKind.REASONING),
        ("[1, 2, 3]", EventKind.TEXT),
        ("plain words", EventKind.TEXT),
    ],
)
def test_rule_priority(line, kind):
    events = _run([line + "\n"])
    assert [e.kind for e in events] == [kind]


# ── Deny-list ──


@pytest.mark.parametrize(
    "payload,expected",
    [
        ("DROP TABLE users", True),
        ("sudo apt install", True),
        ("chmod 777 /srv", True),
        ("cat log > /dev/null", True),
        ("rm", True),
        ("make build >/dev/null 2>&1", True),
        ("cmd 2>/dev/null", True),
        ("rm\t-rf build", True),
        ("rm  -rf build", True),
        ("ls -la", False),
        ("read README.md", False),
    ],
)
def test_deny_list_is_case_insensitive_substring(payload, expected):
    assert is_dangerous(payload, list(EngineConfig().deny_list)) is expected


def test_custom_deny_list():
    events = _run(["Tool: deploy production\n"], deny_list=["deploy"])
    assert events[0].dangerous is True


# ── Incremental behaviour ──


def test_events_emitted_per_line_without_waiting_for_eof():
    classifier = _classifier()
    assert classifier.feed("first li") == []
    events = classifier.feed("ne\nsecond")
    assert [e.text for e in events] == ["first line"]
    assert classifier.has_partial_line
    assert [e.text for e in classifier.finish()] == ["second"]


def test_order_preserved_across_arbitrary_chunking():
    text = (
        "Thinking: plan\n"
        "Tool: ls\n"
        '{"step": 1}\n'
        "{\n"
        '  "step": 2\n'
        "}\n"
        "Proceed? [Y/n]\n"
        "done\n"
    )
    whole = _run([text])
    one_char = _run(list(text))
    assert [(e.kind, e.raw) for e in one_char] == [(e.kind, e.raw) for e in whole]
    assert [e.kind for e in whole] == [
        EventKind.REASONING,
        EventKind.TOOL_CALL,
        EventKind.STRUCTURED,
        EventKind.STRUCTURED,
        EventKind.CONFIRMATION_REQUEST,
        EventKind.TEXT,
    ]
    assert whole[3].value == {"step": 2}
    assert [e.sequence for e in whole] == list(range(len(whole)))


def test_blank_lines_and_crlf():
    events = _run(["hello\r\n", "\n", "   \n", "world\r\n"])
    assert [e.text for e in events] == ["hello", "world"]


def test_sequence_and_attempt_continue_across_retries():
    classifier = OutputClassifier(EngineConfig(), CID, attempt=2, sequence_start=5)
    events = classifier.feed("a\nb\n")
    assert [e.sequence for e in events] == [5, 6]
    assert all(e.attempt == 2 for e in events)
    assert classifier.next_sequence == 7


def test_feed_after_finish_raises():
    classifier = _classifier()
    classifier.finish()
    with pytest.raises(RuntimeError):
        classifier.feed("late\n")


# ── Unterminated prompts ──


def test_flush_prompt_classifies_unterminated_confirmation():
    classifier = _classifier()
    assert classifier.feed("Delete 3 files? [Y/n] ") == []
    events = classifier.flush_prompt()
    assert len(events) == 1
    assert isinstance(events[0], ConfirmationRequestEvent)
    assert events[0].prompt == "Delete 3 files? [Y/n]"
    assert classifier.flush_prompt() == []
    assert classifier.finish() == []


def test_prompt_on_tool_line_is_split_from_the_action():
    classifier = _classifier()
    assert classifier.feed("Tool: rm -rf ./drafts [Y/n] ") == []
    events = classifier.flush_prompt()
    assert len(events) == 1
    event = events[0]
    assert isinstance(event, ToolCallEvent)
    assert event.action == "rm -rf ./drafts"
    assert event.dangerous
    assert event.awaits_answer


def test_plain_tool_line_does_not_await_an_answer():
    events = _run(["Tool: ls -la\n"])
    assert events[0].action == "ls -la"
    assert not events[0].awaits_answer


def test_flush_prompt_ignores_plain_fragments():
    classifier = _classifier()
    classifier.feed("partial output")
    assert classifier.flush_prompt() == []
    assert [e.text for e in classifier.finish()] == ["partial output"]


# ── Partial / malformed JSON ──


def test_json_split_across_chunks_is_retried():
    classifier = _classifier()
    assert classifier.feed('{"a": 1,\n') == []
    assert classifier.has_pending_json
    events = classifier.feed('"b": 2}\n')
    assert len(events) == 1
    assert events[0].value == {"a": 1, "b": 2}
    assert not classifier.has_pending_json


def test_unterminated_json_degrades_to_text_with_warning():
    classifier = _classifier()
    assert classifier.feed('{"a": [1, 2\n') == []
    events = classifier.finish()
    assert len(events) == 1
    assert isinstance(events[0], TextEvent)
    assert events[0].text == '{"a": [1, 2'
    assert events[0].warning == UNTERMINATED_JSON_WARNING
    assert classifier.warnings == [UNTERMINATED_JSON_WARNING]


def test_unterminated_string_is_pending_not_text():
    classifier = _classifier()
    assert classifier.feed('{"a": "half a str\n') == []
    assert classifier.has_pending_json


def test_marker_line_abandons_pending_json():
    classifier = _classifier()
    assert classifier.feed('{"a": \n') == []
    events = classifier.feed("Thinking: changed my mind\n")
    assert [e.kind for e in events] == [EventKind.TEXT, EventKind.REASONING]
    assert events[0].warning == UNTERMINATED_JSON_WARNING


def test_non_leading_marker_abandons_pending_json():
    classifier = _classifier()
    assert classifier.feed('{"a": \n') == []
    events = classifier.feed("  >> Tool: rm -rf /srv\n")
    assert [e.kind for e in events] == [EventKind.TEXT, EventKind.TOOL_CALL]
    assert events[0].warning == UNTERMINATED_JSON_WARNING
    assert events[1].action == "rm -rf /srv"
    assert events[1].dangerous
    assert not classifier.has_pending_json


def test_prompt_fragment_is_flushed_despite_pending_json():
    classifier = _classifier()
    assert classifier.feed('{"a": \n') == []
    assert classifier.feed("Proceed? [Y/n] ") == []
    events = classifier.flush_prompt()
    assert [e.kind for e in events] == [EventKind.TEXT, EventKind.CONFIRMATION_REQUEST]
    assert events[0].warning == UNTERMINATED_JSON_WARNING
    assert events[1].prompt == "Proceed? [Y/n]"


@pytest.mark.parametrize("line", ["{not json", "{} trailing", "{]"])
def test_broken_json_never_raises(line):
    events = _run([line + "\n"])
    assert [e.kind for e in events] == [EventKind.TEXT]


def test_invalid_continuation_becomes_text_with_warning():
    classifier = _classifier()
    classifier.feed("{\n")
    events = classifier.feed("oops}\n")
    assert len(events) == 1
    assert events[0].text == "{\noops}"
    assert events[0].warning == INVALID_JSON_WARNING


def test_oversized_json_buffer_is_flushed():
    classifier = _classifier(max_json_buffer_bytes=10)
    classifier.feed("{\n")
    events = classifier.feed('"key": "value-long-enough",\n')
    assert len(events) == 1
    assert events[0].warning == OVERSIZED_JSON_WARNING
    assert not classifier.has_pending_json
