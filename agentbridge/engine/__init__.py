"""Agent bridge engine: supervised, approval-gated sessions with a local agent CLI."""
from .models import (
    ClassifiedError,
    ConfirmationDecision,
    ConfirmationRequestEvent,
    ConversationMessage,
    Credential,
    CredentialSource,
    ErrorCategory,
    EventKind,
    Operation,
    OperationResult,
    OperationState,
    OutputEvent,
    ReasoningEvent,
    SessionState,
    Severity,
    StructuredEvent,
    TextEvent,
    ToolCallEvent,
    Usage,
)
from .config import EngineConfig
from .errors import (
    AgentBridgeError,
    AuthenticationError,
    MalformedOutputError,
    OperationCancelledError,
    OperationTimeoutError,
    ProcessNotFoundError,
    RateLimitedError,
    UpstreamServiceError,
    UserDeniedError,
)

__all__ = [
    # Core engine (lazy import to avoid pulling in subprocess machinery)
    "AgentBridgeEngine",
    "OperationStream",
    # Models
    "ClassifiedError",
    "ConfirmationDecision",
    "ConfirmationRequestEvent",
    "ConversationMessage",
    "Credential",
    "CredentialSource",
    "ErrorCategory",
    "EventKind",
    "Operation",
    "OperationResult",
    "OperationState",
    "OutputEvent",
    "ReasoningEvent",
    "SessionState",
    "Severity",
    "StructuredEvent",
    "TextEvent",
    "ToolCallEvent",
    "Usage",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "load_yaml_config",
    # Components (lazy import)
    "OutputClassifier",
    "ConfirmationArbiter",
    "ProcessSupervisor",
    "ErrorClassifier",
    "RecoveryPolicy",
    "CorrelationTracker",
    "LogSink",
    "CredentialGate",
    "build_credential_gate",
    # Errors
    "AgentBridgeError",
    "AuthenticationError",
    "MalformedOutputError",
    "OperationCancelledError",
    "OperationTimeoutError",
    "ProcessNotFoundError",
    "RateLimitedError",
    "UpstreamServiceError",
    "UserDeniedError",
]


def __getattr__(name: str):
    if name == "AgentBridgeEngine":
        from .engine import AgentBridgeEngine
        return AgentBridgeEngine
    if name == "OperationStream":
        from .engine import OperationStream
        return OperationStream
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "OutputClassifier":
        from .classifier import OutputClassifier
        return OutputClassifier
    if name == "ConfirmationArbiter":
        from .arbiter import ConfirmationArbiter
        return ConfirmationArbiter
    if name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name == "ErrorClassifier":
        from .error_classifier import ErrorClassifier
        return ErrorClassifier
    if name == "RecoveryPolicy":
        from .error_classifier import RecoveryPolicy
        return RecoveryPolicy
    if name == "CorrelationTracker":
        from .correlation import CorrelationTracker
        return CorrelationTracker
    if name == "LogSink":
        from .correlation import LogSink
        return LogSink
    if name == "CredentialGate":
        from .credentials import CredentialGate
        return CredentialGate
    if name == "build_credential_gate":
        from .credentials import build_credential_gate
        return build_credential_gate
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
