"""Per-agent log sources."""

from .base import ExecutorLogSource, JsonlSessionParser, SessionParser, SnapshotSessionParser
from .claude import ClaudeLogSource
from .codex import CodexLogSource
from .cursor import CursorLogSource
from .gemini import GeminiLogSource
from .opencode import OpenCodeLogSource

__all__ = [
    "ClaudeLogSource",
    "CodexLogSource",
    "CursorLogSource",
    "ExecutorLogSource",
    "GeminiLogSource",
    "JsonlSessionParser",
    "OpenCodeLogSource",
    "SessionParser",
    "SnapshotSessionParser",
]
