"""agentwatch: launch coding-agent CLIs and stream their sessions as normalized patches."""
from .config import AgentWatchConfig, load_yaml_config
from .errors import (
    AdapterParseError,
    AgentWatchError,
    ConfigurationError,
    SessionNotFoundError,
    SessionResolutionTimeout,
    SpawnError,
    StreamIOError,
    WorkspaceError,
)

__version__ = "0.1.0"

__all__ = [
    # Config
    "AgentWatchConfig",
    "load_yaml_config",
    # Execution (lazy import)
    "ExecutionService",
    "ProfileRegistry",
    "ActiveExecutionRegistry",
    # Logs (lazy import)
    "LogSourceFactory",
    # Errors
    "AdapterParseError",
    "AgentWatchError",
    "ConfigurationError",
    "SessionNotFoundError",
    "SessionResolutionTimeout",
    "SpawnError",
    "StreamIOError",
    "WorkspaceError",
]


def __getattr__(name: str):
    if name == "ExecutionService":
        from .execution.service import ExecutionService
        return ExecutionService
    if name == "ProfileRegistry":
        from .execution.profile_registry import ProfileRegistry
        return ProfileRegistry
    if name == "ActiveExecutionRegistry":
        from .execution.active_registry import ActiveExecutionRegistry
        return ActiveExecutionRegistry
    if name == "LogSourceFactory":
        from .logs.factory import LogSourceFactory
        return LogSourceFactory
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
