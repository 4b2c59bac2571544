"""Data types shared by the profile registry and the execution service."""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Protocol

ExecutionKind = Literal["new", "follow-up"]


@dataclass(frozen=True)
class CommandConfig:
    """Binary, default arguments and extra environment for one profile."""
    binary: str
    args: tuple[str, ...] = ()
    env: dict[str, str] | None = None


@dataclass(frozen=True)
class ProfileVariant:
    label: str
    command: CommandConfig


@dataclass(frozen=True)
class ExecutionContext:
    """Where and with which profile a launch happens."""
    profile_label: str
    executor_type: str
    project_id: str
    actual_project_id: str
    workspace_path: str
    variant_label: str | None = None


@dataclass(frozen=True)
class LaunchRequest:
    """A new chat or a follow-up, ready to be turned into a process."""
    context: ExecutionContext
    kind: ExecutionKind
    session_id: str
    prompt: str | None = None
    message: str | None = None

    @property
    def payload(self) -> str:
        """The text the agent should receive for this launch."""
        value = self.prompt if self.kind == "new" else self.message
        return value or ""


@dataclass
class ExecutionResult:
    session_id: str
    process_id: int | None
    started_at: datetime
    project_id: str
    kind: ExecutionKind

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "processId": self.process_id,
            "startedAt": self.started_at.isoformat(),
            "projectId": self.project_id,
            "kind": self.kind,
        }


class SessionIdResolver(Protocol):
    """Incremental stdout scanner; returns a native session id once seen."""

    def handle_chunk(self, chunk: str) -> str | None: ...


@dataclass(frozen=True)
class SessionResolutionContext:
    request: LaunchRequest
    minted_session_id: str
    started_at: datetime
    timeout: float


FilesystemResolver = Callable[[SessionResolutionContext], Awaitable[str | None]]


@dataclass
class ProcessParameters:
    """Concrete process arguments derived from a profile and a request."""
    args: list[str]
    stdin_payload: str | None = None
    stdout_resolver_factory: Callable[[], SessionIdResolver] | None = None
    filesystem_resolver: FilesystemResolver | None = None


ParameterBuilder = Callable[[CommandConfig, LaunchRequest], ProcessParameters]


@dataclass(frozen=True)
class ProfileConfig:
    """A normalized, immutable agent profile."""
    label: str
    command: CommandConfig
    variants: tuple[ProfileVariant, ...] = field(default_factory=tuple)
    build_parameters: ParameterBuilder | None = None
