"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTBRIDGE_* env vars
or a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from .models import ConfirmationDecision, Credential

logger = logging.getLogger(__name__)


# Host-provided approval capability.
# Signature: async def callback(action_text) -> bool | str | ConfirmationDecision
# True / "approved" / "allow" approve; anything else is a denial.
ApprovalCallback = Callable[[str], Awaitable[bool | str | ConfirmationDecision]]

# Host-provided interactive consent flow (last credential tier).
# Signature: async def callback(scopes) -> Credential
# Raises AuthenticationError (or returns None) when the user declines.
ConsentCallback = Callable[[list[str]], Awaitable[Credential | None]]


DEFAULT_DENY_LIST: tuple[str, ...] = (
    "delete",
    "remove",
    "rm ",
    "drop",
    "truncate",
    "format",
    "sudo",
    "chmod 777",
    "> /dev/null",
)

DEFAULT_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/generative-language",
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [part for part in (p.strip() for p in raw.split(",")) if part]


@dataclass
class EngineConfig:
    """Agent interaction engine configuration."""

    # Agent process invocation
    executable: str = "gemini"
    model: str | None = None
    json_mode: bool = False
    interactive: bool = True
    # Pass --confirm-actions and keep stdin open for y/n responses.
    confirm_actions: bool = True
    cwd: str | None = None

    # Scheduling
    max_concurrency: int = 4

    # Timeouts (seconds)
    # Hard wall-clock limit for a single agent process.
    process_timeout_seconds: float = 60.0
    # Overall limit for one operation, retries and approvals included.
    operation_timeout_seconds: float = 300.0
    # Upper bound on one approval wait; always clipped to the deadline.
    approval_timeout_seconds: float = 120.0
    # SIGTERM -> SIGKILL grace period.
    terminate_grace_seconds: float = 2.0

    # Output classification
    deny_list: list[str] = field(default_factory=lambda: list(DEFAULT_DENY_LIST))
    reasoning_markers: list[str] = field(
        default_factory=lambda: ["Thinking:", "Reasoning:"]
    )
    action_markers: list[str] = field(default_factory=lambda: ["Tool:", "Action:"])
    confirmation_markers: list[str] = field(
        default_factory=lambda: ["Confirm:", "Proceed?", "[Y/n]"]
    )
    max_json_buffer_bytes: int = 1_000_000
    # Idle time after which an unterminated prompt line is classified.
    prompt_idle_seconds: float = 0.1
    approval_response: str = "y\n"
    denial_response: str = "n\n"

    # Credentials
    credential_scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    api_key_env: str = "GEMINI_API_KEY"
    # Lifetime bound for credentials that carry no expiry of their own.
    credential_ttl_seconds: float = 3600.0
    adc_path: str | None = None
    session_timeout_seconds: float = 1.0
    api_key_timeout_seconds: float = 1.0
    adc_timeout_seconds: float = 5.0
    consent_timeout_seconds: float = 300.0
    # Environment variable used to hand each credential source to the agent.
    credential_env_vars: dict[str, str] = field(default_factory=lambda: {
        "session": "GOOGLE_OAUTH_ACCESS_TOKEN",
        "apikey": "GEMINI_API_KEY",
        "adc": "GOOGLE_APPLICATION_CREDENTIALS",
        "oauth": "GOOGLE_OAUTH_ACCESS_TOKEN",
    })
    correlation_env_var: str = "GEMINI_CLI_CORRELATION_ID"
    mode_env_var: str = "GEMINI_CLI_MODE"

    # Recovery
    timeout_retries: int = 1
    reauth_attempts: int = 1
    upstream_max_retries: int = 2
    upstream_backoff_base_seconds: float = 1.0
    upstream_backoff_max_seconds: float = 5.0
    rate_limit_max_retries: int = 2
    rate_limit_backoff_base_seconds: float = 5.0
    rate_limit_backoff_max_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None
    # Optional JSON-lines mirror of the correlated log sink.
    trace_file: str | None = None

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from AGENTBRIDGE_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTBRIDGE_")
        }
        if overrides:
            logger.info(
                "EngineConfig.from_env: AGENTBRIDGE_* env overrides: %s",
                ", ".join(sorted(overrides)),
            )
        else:
            logger.debug("EngineConfig.from_env: no AGENTBRIDGE_* env vars set, using defaults")

        config = cls(
            executable=os.getenv("AGENTBRIDGE_EXECUTABLE", cls.executable),
            model=os.getenv("AGENTBRIDGE_MODEL") or None,
            json_mode=_env_bool("AGENTBRIDGE_JSON", cls.json_mode),
            interactive=_env_bool("AGENTBRIDGE_INTERACTIVE", cls.interactive),
            confirm_actions=_env_bool(
                "AGENTBRIDGE_CONFIRM_ACTIONS", cls.confirm_actions
            ),
            cwd=os.getenv("AGENTBRIDGE_CWD") or None,
            max_concurrency=int(os.getenv(
                "AGENTBRIDGE_MAX_CONCURRENCY", str(cls.max_concurrency)
            )),
            process_timeout_seconds=float(os.getenv(
                "AGENTBRIDGE_PROCESS_TIMEOUT", str(cls.process_timeout_seconds)
            )),
            operation_timeout_seconds=float(os.getenv(
                "AGENTBRIDGE_OPERATION_TIMEOUT",
                str(cls.operation_timeout_seconds),
            )),
            approval_timeout_seconds=float(os.getenv(
                "AGENTBRIDGE_APPROVAL_TIMEOUT",
                str(cls.approval_timeout_seconds),
            )),
            deny_list=_env_list("AGENTBRIDGE_DENY_LIST", list(DEFAULT_DENY_LIST)),
            api_key_env=os.getenv("AGENTBRIDGE_API_KEY_ENV", cls.api_key_env),
            adc_path=os.getenv("AGENTBRIDGE_ADC_PATH") or None,
            log_level=os.getenv("AGENTBRIDGE_LOG_LEVEL", cls.log_level),
            log_file=os.getenv("AGENTBRIDGE_LOG_FILE") or None,
            trace_file=os.getenv("AGENTBRIDGE_TRACE_FILE") or None,
        )
        logger.info(
            "EngineConfig.from_env: executable=%s model=%s json=%s max_concurrency=%d",
            config.executable, config.model, config.json_mode,
            config.max_concurrency,
        )
        return config

    def validate(self) -> None:
        """Raise ValueError for settings the engine cannot run with."""
        if not self.executable:
            raise ValueError("executable must not be empty")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        for name in (
            "process_timeout_seconds",
            "operation_timeout_seconds",
            "approval_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.timeout_retries < 0 or self.upstream_max_retries < 0:
            raise ValueError("retry budgets must be >= 0")
