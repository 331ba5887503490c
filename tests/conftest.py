"""Shared fixtures: a real executable wrapping scripts/mock_agent_cli.py."""
from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from agentbridge.engine.config import EngineConfig

MOCK_AGENT = Path(__file__).resolve().parent.parent / "scripts" / "mock_agent_cli.py"

_MOCK_VARS = (
    "MOCK_AGENT_STEPS",
    "MOCK_AGENT_FIRST_STEPS",
    "MOCK_AGENT_STATE_FILE",
    "MOCK_AGENT_DUMP_FILE",
    "MOCK_AGENT_EXIT",
)


@pytest.fixture
def agent_executable(tmp_path):
    wrapper = tmp_path / "fake-agent"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{MOCK_AGENT}" "$@"\n')
    wrapper.chmod(0o755)
    return str(wrapper)


@pytest.fixture
def mock_agent(monkeypatch, tmp_path):
    """Configure the fake agent through its environment variables."""
    for name in _MOCK_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GEMINI_API_KEY", "test-api-key-0123456789")

    def configure(steps=None, *, first_steps=None, exit_code=None, dump=False):
        if steps is not None:
            monkeypatch.setenv("MOCK_AGENT_STEPS", json.dumps(steps))
        if first_steps is not None:
            monkeypatch.setenv("MOCK_AGENT_FIRST_STEPS", json.dumps(first_steps))
            monkeypatch.setenv("MOCK_AGENT_STATE_FILE", str(tmp_path / "invocations"))
        if exit_code is not None:
            monkeypatch.setenv("MOCK_AGENT_EXIT", str(exit_code))
        if dump:
            path = tmp_path / "dump.json"
            monkeypatch.setenv("MOCK_AGENT_DUMP_FILE", str(path))
            return path
        return None

    return configure


def make_config(executable: str, **overrides) -> EngineConfig:
    config = EngineConfig(
        executable=executable,
        confirm_actions=False,
        process_timeout_seconds=10.0,
        operation_timeout_seconds=30.0,
        approval_timeout_seconds=5.0,
        terminate_grace_seconds=0.5,
        upstream_backoff_base_seconds=0.01,
        upstream_backoff_max_seconds=0.05,
        rate_limit_backoff_base_seconds=0.02,
        rate_limit_backoff_max_seconds=0.1,
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


@pytest.fixture
def agent_config(agent_executable):
    """Factory for EngineConfig pointed at the fake agent."""
    def build(**overrides) -> EngineConfig:
        executable = overrides.pop("executable", agent_executable)
        return make_config(executable, **overrides)
    return build
