"""Exception hierarchy for agent execution and log normalization.

Every error carries a ``retryable`` flag so callers can tell transient
conditions (a session that has not materialized yet, a slow resolver)
apart from fatal ones (bad profile, missing binary).
"""
from __future__ import annotations


class AgentWatchError(Exception):
    """Base exception for all agentwatch errors."""

    retryable = False


class ConfigurationError(AgentWatchError):
    """Unknown profile/variant or a launch request the profile rejects."""
    def __init__(self, profile_label: str, reason: str):
        self.profile_label = profile_label
        self.reason = reason
        super().__init__(f"Profile '{profile_label}': {reason}")


class WorkspaceError(AgentWatchError):
    """Working directory for a launch does not exist."""
    def __init__(self, workspace_path: str):
        self.workspace_path = workspace_path
        super().__init__(f"Workspace path does not exist: {workspace_path}")


class SpawnError(AgentWatchError):
    """The OS refused to start the agent binary."""
    def __init__(self, binary: str, reason: str):
        self.binary = binary
        self.reason = reason
        super().__init__(f"Failed to spawn {binary}: {reason}")


class SessionResolutionTimeout(AgentWatchError):
    """Agent did not report its session id before the deadline.

    Never raised out of the execution service; it is logged and the
    provisional id is kept.
    """

    retryable = True

    def __init__(self, session_id: str, timeout_seconds: float):
        self.session_id = session_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Session id for {session_id} not resolved "
            f"within {timeout_seconds}s"
        )


class AdapterParseError(AgentWatchError):
    """A single session record could not be parsed."""
    def __init__(self, source: str, line_no: int, reason: str):
        self.source = source
        self.line_no = line_no
        self.reason = reason
        super().__init__(f"{source}:{line_no}: {reason}")


class SessionNotFoundError(AgentWatchError):
    """No adapter knows the requested session."""

    retryable = True

    def __init__(self, session_id: str, attempts: int = 1):
        self.session_id = session_id
        self.attempts = attempts
        super().__init__(
            f"Session not found: {session_id} (after {attempts} attempt"
            f"{'s' if attempts != 1 else ''})"
        )


class StreamIOError(AgentWatchError):
    """Reading a session file failed while streaming it."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to read {path}: {reason}")
