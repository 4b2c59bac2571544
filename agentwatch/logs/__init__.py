"""Log normalization: composite ids, normalized entries and patch streams."""
from .channel import LogEvent, PatchChannel
from .ids import (
    ExecutorType,
    compose_project_id,
    compose_session_id,
    parse_project_id,
    parse_session_id,
)
from .index_provider import EntryIndexProvider
from .models import NormalizedEntry, ProjectInfo, SessionInfo
from .patch import ConversationPatch

__all__ = [
    "ConversationPatch",
    "EntryIndexProvider",
    "ExecutorType",
    "LogEvent",
    "NormalizedEntry",
    "PatchChannel",
    "ProjectInfo",
    "SessionInfo",
    "compose_project_id",
    "compose_session_id",
    "parse_project_id",
    "parse_session_id",
    # Lazy import
    "LogSourceFactory",
]


def __getattr__(name: str):
    if name == "LogSourceFactory":
        from .factory import LogSourceFactory
        return LogSourceFactory
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
