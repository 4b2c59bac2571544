"""Canonical log models: projects, sessions and normalized entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

SessionStatus = Literal["running", "completed", "failed"]


class PatchValueType(str, Enum):
    """Payload kinds carried by a conversation patch."""
    NORMALIZED_ENTRY = "NORMALIZED_ENTRY"
    STDOUT = "STDOUT"
    STDERR = "STDERR"
    DIFF = "DIFF"


@dataclass
class ProjectInfo:
    """One logical project discovered in an agent's storage root."""

    id: str
    name: str
    git_repo_path: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "git_repo_path": self.git_repo_path,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class SessionInfo:
    """Session file metadata, without the transcript itself."""

    id: str
    project_id: str
    file_path: str
    title: str
    created_at: datetime
    updated_at: datetime
    file_size: int = 0
    status: SessionStatus = "completed"
    first_user_message: str | None = None
    workspace_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "filePath": self.file_path,
            "title": self.title,
            "firstUserMessage": self.first_user_message,
            "workspacePath": self.workspace_path,
            "status": self.status,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "fileSize": self.file_size,
        }


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


# ── Tool results ──────────────────────────────────────────────


def exit_code_status(code: int) -> dict[str, Any]:
    return {"type": "exit_code", "code": code}


def success_status(success: bool) -> dict[str, Any]:
    return {"type": "success", "success": success}


def command_result(
    output: str | None = None,
    exit_status: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return _drop_none({"exit_status": exit_status, "output": output})


def tool_result(value: Any) -> dict[str, Any]:
    """Wrap a tool result, tagging structured values as json."""
    if isinstance(value, (dict, list)):
        return {"type": "json", "value": value}
    return {"type": "markdown", "value": "" if value is None else str(value)}


# ── File changes ──────────────────────────────────────────────


def write_change(content: str) -> dict[str, Any]:
    return {"action": "write", "content": content}


def delete_change() -> dict[str, Any]:
    return {"action": "delete"}


def rename_change(new_path: str) -> dict[str, Any]:
    return {"action": "rename", "new_path": new_path}


def edit_change(unified_diff: str, has_line_numbers: bool = False) -> dict[str, Any]:
    return {
        "action": "edit",
        "unified_diff": unified_diff,
        "has_line_numbers": has_line_numbers,
    }


# ── Action types ──────────────────────────────────────────────


@dataclass
class ActionType:
    """What a tool call does, tagged by ``action``."""

    action: str
    fields: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"action": self.action, **_drop_none(self.fields)}

    @classmethod
    def file_read(cls, path: str) -> ActionType:
        return cls("file_read", {"path": path})

    @classmethod
    def file_edit(cls, path: str, changes: list[dict[str, Any]]) -> ActionType:
        return cls("file_edit", {"path": path, "changes": changes})

    @classmethod
    def command_run(
        cls, command: str, result: dict[str, Any] | None = None,
    ) -> ActionType:
        return cls("command_run", {"command": command, "result": result})

    @classmethod
    def search(cls, query: str) -> ActionType:
        return cls("search", {"query": query})

    @classmethod
    def web_fetch(cls, url: str) -> ActionType:
        return cls("web_fetch", {"url": url})

    @classmethod
    def tool(
        cls,
        tool_name: str,
        arguments: Any = None,
        result: dict[str, Any] | None = None,
    ) -> ActionType:
        return cls(
            "tool",
            {"tool_name": tool_name, "arguments": arguments, "result": result},
        )

    @classmethod
    def task_create(cls, description: str) -> ActionType:
        return cls("task_create", {"description": description})

    @classmethod
    def plan_presentation(cls, plan: str) -> ActionType:
        return cls("plan_presentation", {"plan": plan})

    @classmethod
    def todo_management(
        cls, todos: list[dict[str, Any]], operation: str = "write",
    ) -> ActionType:
        return cls("todo_management", {"todos": todos, "operation": operation})

    @classmethod
    def other(cls, description: str) -> ActionType:
        return cls("other", {"description": description})


# ── Entries ───────────────────────────────────────────────────


@dataclass
class EntryType:
    """Tagged entry kind; only ``tool_use`` carries a tool name and action."""

    type: str
    tool_name: str | None = None
    action_type: ActionType | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        if self.type == "tool_use":
            data["tool_name"] = self.tool_name or "tool"
            data["action_type"] = (
                self.action_type or ActionType.other(self.tool_name or "tool")
            ).to_dict()
        return data

    @classmethod
    def user_message(cls) -> EntryType:
        return cls("user_message")

    @classmethod
    def assistant_message(cls) -> EntryType:
        return cls("assistant_message")

    @classmethod
    def system_message(cls) -> EntryType:
        return cls("system_message")

    @classmethod
    def error_message(cls) -> EntryType:
        return cls("error_message")

    @classmethod
    def thinking(cls) -> EntryType:
        return cls("thinking")

    @classmethod
    def tool_use(cls, tool_name: str, action_type: ActionType) -> EntryType:
        return cls("tool_use", tool_name=tool_name, action_type=action_type)


@dataclass
class NormalizedEntry:
    """One conversation event, independent of the agent that produced it."""

    entry_type: EntryType
    content: str
    timestamp: str | None = None
    metadata: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "entry_type": self.entry_type.to_dict(),
            "content": self.content,
            "metadata": self.metadata,
        }
