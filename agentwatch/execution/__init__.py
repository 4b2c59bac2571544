"""Agent process execution: profiles, launches and session id resolution."""
from .active_registry import ActiveExecutionRegistry
from .models import (
    CommandConfig,
    ExecutionContext,
    ExecutionResult,
    LaunchRequest,
    ProcessParameters,
    ProfileConfig,
    ProfileVariant,
    SessionResolutionContext,
)

__all__ = [
    "ActiveExecutionRegistry",
    "CommandConfig",
    "ExecutionContext",
    "ExecutionResult",
    "LaunchRequest",
    "ProcessParameters",
    "ProfileConfig",
    "ProfileVariant",
    "SessionResolutionContext",
    # Lazy imports: these pull in the log sources
    "ExecutionService",
    "ProfileRegistry",
]


def __getattr__(name: str):
    if name == "ExecutionService":
        from .service import ExecutionService
        return ExecutionService
    if name == "ProfileRegistry":
        from .profile_registry import ProfileRegistry
        return ProfileRegistry
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
