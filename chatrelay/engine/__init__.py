"""chatrelay engine - runs chat turns against local coding-agent CLIs."""
from .config import EngineConfig
from .errors import (
    AmbiguousSessionError,
    ErrorKind,
    MaxBufferExceededError,
    OrchestrationError,
    ProcessAbortedError,
    ProcessError,
    ProcessExitError,
    ProcessSpawnError,
    ProcessTimeoutError,
    SessionCreationError,
    SessionNotFoundError,
    StaleSessionError,
    StopReason,
    TurnCancelledError,
    TurnError,
    WorkingDirectoryError,
    classify_error,
)

__all__ = [
    # Orchestration (lazy import to avoid circular deps)
    "TurnOrchestrator",
    "ProcessSupervisor",
    "CancelToken",
    "SessionResolver",
    "TurnQueue",
    "TurnRequest",
    "ExecutionResult",
    # Config
    "EngineConfig",
    "RelayConfig",
    "load_yaml_config",
    # Errors
    "AmbiguousSessionError",
    "ErrorKind",
    "MaxBufferExceededError",
    "OrchestrationError",
    "ProcessAbortedError",
    "ProcessError",
    "ProcessExitError",
    "ProcessSpawnError",
    "ProcessTimeoutError",
    "SessionCreationError",
    "SessionNotFoundError",
    "StaleSessionError",
    "StopReason",
    "TurnCancelledError",
    "TurnError",
    "WorkingDirectoryError",
    "classify_error",
]


def __getattr__(name: str):
    if name == "TurnOrchestrator":
        from .orchestrator import TurnOrchestrator
        return TurnOrchestrator
    if name in ("ProcessSupervisor", "CancelToken"):
        from . import supervisor
        return getattr(supervisor, name)
    if name == "SessionResolver":
        from .session_resolver import SessionResolver
        return SessionResolver
    if name == "TurnQueue":
        from .turn_queue import TurnQueue
        return TurnQueue
    if name in ("TurnRequest", "ExecutionResult"):
        from . import models
        return getattr(models, name)
    if name in ("RelayConfig", "load_yaml_config"):
        from . import yaml_config
        return getattr(yaml_config, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
