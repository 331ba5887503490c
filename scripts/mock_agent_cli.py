#!/usr/bin/env python3
"""Scriptable stand-in for the agent CLI, used by the end-to-end tests.

Behaviour is driven entirely by environment variables:

MOCK_AGENT_STEPS        JSON list of steps (default: one canned reply).
MOCK_AGENT_FIRST_STEPS  JSON steps used instead on the first invocation
                        (needs MOCK_AGENT_STATE_FILE).
MOCK_AGENT_STATE_FILE   File counting invocations across processes.
MOCK_AGENT_DUMP_FILE    Write argv and environment as JSON here on start.
MOCK_AGENT_EXIT         Exit code once the steps are done (default 0).

A step is either a string, written to stdout verbatim, or an object:

    {"sleep": 0.5}          pause
    {"stderr": "text"}      write to stderr
    {"read": true}          block until a y/n answer line arrives on
                            stdin, then print "answer: <line>"
    {"read_all": true}      read stdin to EOF, print "received <n> chars"
    {"exit": 3}             exit immediately with that code
"""
from __future__ import annotations

import json
import os
import sys
import time
from pathlib import Path

_ANSWERS = {"y", "n", "yes", "no"}


def _invocation() -> int:
    state = os.environ.get("MOCK_AGENT_STATE_FILE")
    if not state:
        return 1
    path = Path(state)
    count = int(path.read_text() or "0") + 1 if path.exists() else 1
    path.write_text(str(count))
    return count


def _dump(path: str) -> None:
    Path(path).write_text(json.dumps({"argv": sys.argv, "env": dict(os.environ)}))


def _steps(invocation: int) -> list:
    first = os.environ.get("MOCK_AGENT_FIRST_STEPS")
    if invocation == 1 and first:
        return json.loads(first)
    raw = os.environ.get("MOCK_AGENT_STEPS")
    if raw:
        return json.loads(raw)
    return ["Hello! I'm a mock agent. The local CLI round trip works."]


def _run_step(step) -> int | None:
    if isinstance(step, str):
        sys.stdout.write(step)
        sys.stdout.flush()
        return None
    if "sleep" in step:
        time.sleep(float(step["sleep"]))
    elif "stderr" in step:
        sys.stderr.write(step["stderr"])
        sys.stderr.flush()
    elif "read" in step:
        for line in sys.stdin:
            if line.strip().lower() in _ANSWERS:
                sys.stdout.write(f"answer: {line.strip()}\n")
                sys.stdout.flush()
                break
    elif "read_all" in step:
        data = sys.stdin.read()
        sys.stdout.write(f"received {len(data)} chars\n")
        sys.stdout.flush()
    elif "exit" in step:
        return int(step["exit"])
    return None


def main() -> int:
    invocation = _invocation()
    dump = os.environ.get("MOCK_AGENT_DUMP_FILE")
    if dump:
        _dump(dump)
    for step in _steps(invocation):
        code = _run_step(step)
        if code is not None:
            return code
    return int(os.environ.get("MOCK_AGENT_EXIT", "0"))


if __name__ == "__main__":
    sys.exit(main())
