"""Gemini CLI log source.

Chats are stored as one JSON document per session at
``~/.gemini/tmp/<project hash>/chats/session-<id>.json``; the project hash
is the SHA-256 of the workspace path, so the hash directory name is used
as the project id directly.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any

from agentwatch.execution.active_registry import ActiveExecutionRegistry

from ..diff import create_unified_diff
from ..ids import ExecutorType
from ..models import (
    ActionType,
    EntryType,
    NormalizedEntry,
    ProjectInfo,
    SessionInfo,
    command_result,
    edit_change,
    success_status,
    tool_result,
    write_change,
)
from ..normalize import (
    coerce_text,
    extract_text_from_blocks,
    file_times,
    iso_timestamp,
    make_title,
    relative_to,
)
from .base import ExecutorLogSource, Patch, SnapshotSessionParser

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session-"
SESSION_SUFFIX = ".json"
PROJECT_ROOT_FILE = ".project_root"


def project_hash(workspace_path: str) -> str:
    """Directory name Gemini CLI uses for *workspace_path*."""
    return hashlib.sha256(workspace_path.encode("utf-8")).hexdigest()


def session_id_from_filename(name: str) -> str | None:
    if not name.startswith(SESSION_PREFIX) or not name.endswith(SESSION_SUFFIX):
        return None
    return name[len(SESSION_PREFIX):-len(SESSION_SUFFIX)] or None


def _message_text(content: Any) -> str:
    if isinstance(content, list):
        parts = [
            item if isinstance(item, str) else str(item.get("text") or "")
            for item in content
            if isinstance(item, (str, dict))
        ]
        return " ".join(part for part in parts if part)
    return extract_text_from_blocks(content)


def _load_messages(path: Path) -> list[Any]:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict) and isinstance(data.get("messages"), list):
        return data["messages"]
    if isinstance(data, list):
        return data
    return []


class GeminiSessionParser(SnapshotSessionParser):
    """Re-reads a Gemini chat document and emits entries it has not seen.

    Gemini rewrites the document while a turn streams in, so each message
    (keyed by its ``id`` or position) may be replaced as it grows.
    """

    def __init__(self, path: Path, cwd: str | None = None) -> None:
        super().__init__(path.name)
        self.path = path
        self.cwd = cwd

    def consume(self, *, final: bool = False) -> list[Patch]:
        try:
            messages = _load_messages(self.path)
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as exc:
            # Mid-write snapshots are expected while live; only report at the end.
            if final:
                self.warn(exc.lineno, f"invalid json: {exc.msg}")
            return []
        except UnicodeDecodeError as exc:
            if final:
                self.warn(0, f"invalid utf-8 at byte {exc.start}")
            return []

        patches: list[Patch] = []
        for position, message in enumerate(messages):
            if not isinstance(message, dict):
                self.warn(position + 1, "message is not an object")
                continue
            key = str(message.get("id") or position)
            try:
                entries = self._entries_for(message)
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                self.warn(position + 1, f"{type(exc).__name__}: {exc}")
                continue
            for suffix, entry in entries:
                patch = self.upsert(f"{key}:{suffix}", entry)
                if patch:
                    patches.append(patch)
        return patches

    def _entries_for(self, message: dict[str, Any]) -> list[tuple[str, NormalizedEntry]]:
        kind = str(message.get("type") or "").lower()
        timestamp = iso_timestamp(message.get("timestamp"))
        text = _message_text(message.get("content"))

        if kind == "user":
            if not text:
                return []
            return [("user", NormalizedEntry(EntryType.user_message(), text, timestamp))]
        if kind == "info":
            return [("info", NormalizedEntry(EntryType.system_message(), text, timestamp))] if text else []
        if kind == "error":
            return [("error", NormalizedEntry(
                EntryType.error_message(), text or "Unknown error occurred", timestamp,
            ))]
        if kind not in ("gemini", "model", "assistant"):
            return []

        entries: list[tuple[str, NormalizedEntry]] = []
        for n, thought in enumerate(message.get("thoughts") or []):
            if isinstance(thought, dict):
                subject = thought.get("subject")
                description = thought.get("description") or ""
                body = f"**{subject}** {description}".strip() if subject else description
            else:
                body = coerce_text(thought)
            if body:
                entries.append((f"thought:{n}", NormalizedEntry(
                    EntryType.thinking(), body, iso_timestamp(
                        thought.get("timestamp") if isinstance(thought, dict) else None,
                    ) or timestamp,
                )))
        for n, call in enumerate(message.get("toolCalls") or []):
            if not isinstance(call, dict):
                continue
            entries.append((f"tool:{call.get('id') or n}", self._tool_entry(call, timestamp)))
        if text:
            entries.append(("text", NormalizedEntry(
                EntryType.assistant_message(), text, timestamp,
                {"model": message.get("model"), "tokens": message.get("tokens")}
                if message.get("model") or message.get("tokens") else None,
            )))
        return entries

    def _path(self, args: dict[str, Any]) -> str:
        raw = args.get("absolute_path") or args.get("file_path") or args.get("path")
        if not isinstance(raw, str) or not raw:
            return "workspace"
        return relative_to(raw, self.cwd)

    def _tool_entry(self, call: dict[str, Any], timestamp: str | None) -> NormalizedEntry:
        name = str(call.get("name") or "tool")
        display = str(call.get("displayName") or name)
        args = call.get("args") if isinstance(call.get("args"), dict) else {}
        status = call.get("status")
        finished = status in ("success", "error", "cancelled")
        output = call.get("resultDisplay")
        if output is None and call.get("result") is not None:
            output = call.get("result")

        if name == "run_shell_command":
            command = str(args.get("command") or "")
            result = (
                command_result(coerce_text(output) or None, success_status(status == "success"))
                if finished else None
            )
            action = ActionType.command_run(command, result)
            content = f"`{command}`"
        elif name in ("read_file", "read_many_files"):
            rel = self._path(args)
            action = ActionType.file_read(rel)
            content = f"`{rel}`"
        elif name == "write_file":
            rel = self._path(args)
            body = args.get("content")
            action = ActionType.file_edit(rel, [write_change(body if isinstance(body, str) else "")])
            content = f"`{rel}`"
        elif name in ("replace", "edit"):
            rel = self._path(args)
            old, new = args.get("old_string"), args.get("new_string")
            if isinstance(old, str) and isinstance(new, str):
                diff = create_unified_diff(rel, old, new)
            else:
                diff = coerce_text(args)
            action = ActionType.file_edit(rel, [edit_change(diff)])
            content = f"`{rel}`"
        elif name in ("glob", "search_file_content", "list_directory"):
            query = str(args.get("pattern") or args.get("path") or "")
            action = ActionType.search(query)
            content = f"`{query}`"
        elif name == "google_web_search":
            query = str(args.get("query") or "")
            action = ActionType.search(query)
            content = f"Web search: `{query}`"
        elif name == "web_fetch":
            url = str(args.get("url") or args.get("prompt") or "")
            action = ActionType.web_fetch(url)
            content = f"`{url}`"
        elif name in ("write_todos", "todo_write"):
            todos = [
                {"content": t.get("description") or t.get("content") or "", "status": t.get("status") or "pending"}
                for t in args.get("todos") or []
                if isinstance(t, dict)
            ]
            action = ActionType.todo_management(todos)
            content = "TODO list updated"
        else:
            action = ActionType.tool(
                display, args or None, tool_result(output) if finished else None,
            )
            content = display
        return NormalizedEntry(
            EntryType.tool_use(display, action), content, iso_timestamp(call.get("timestamp")) or timestamp,
            {"call_id": call.get("id"), "status": status},
        )


def _first_user_message(path: Path) -> str | None:
    try:
        messages = _load_messages(path)
    except (OSError, ValueError) as exc:
        logger.warning("Failed to read Gemini session %s: %s", path, exc)
        return None
    for message in messages:
        if isinstance(message, dict) and str(message.get("type") or "").lower() == "user":
            title = make_title(_message_text(message.get("content")))
            if title:
                return title
    return None


class GeminiLogSource(ExecutorLogSource):
    """Log source for Gemini CLI chat snapshots."""

    executor_type = ExecutorType.GEMINI

    def __init__(
        self,
        root: Path | None = None,
        registry: ActiveExecutionRegistry | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(root or (Path.home() / ".gemini"), registry, **kwargs)

    @property
    def tmp_dir(self) -> Path:
        return self.root / "tmp"

    def chats_dir(self, project_id: str) -> Path:
        return self.tmp_dir / project_id / "chats"

    def workspace_for(self, project_id: str) -> str | None:
        """Workspace recorded next to the chats, when Gemini wrote one."""
        marker = self.tmp_dir / project_id / PROJECT_ROOT_FILE
        try:
            value = marker.read_text(encoding="utf-8").strip()
        except (OSError, ValueError):
            return None
        return value or None

    def get_project_list(self) -> list[ProjectInfo]:
        if not self.tmp_dir.is_dir():
            return []
        projects: list[ProjectInfo] = []
        for project_dir in self.tmp_dir.iterdir():
            if not project_dir.is_dir() or project_dir.name.startswith("."):
                continue
            try:
                created, updated = file_times(project_dir.stat())
            except OSError:
                continue
            workspace = self.workspace_for(project_dir.name)
            projects.append(ProjectInfo(
                id=project_dir.name,
                name=f"Gemini Project ({project_dir.name[:8]}...)",
                git_repo_path=workspace or str(project_dir),
                created_at=created,
                updated_at=updated,
            ))
        projects.sort(key=lambda p: p.updated_at, reverse=True)
        return projects

    def get_session_list(self, project_id: str) -> list[SessionInfo]:
        chats = self.chats_dir(project_id)
        if not chats.is_dir():
            logger.debug("Gemini chats directory not found: %s", chats)
            return []
        workspace = self.workspace_for(project_id)
        sessions: list[SessionInfo] = []
        for path in chats.iterdir():
            session_id = session_id_from_filename(path.name)
            if session_id is None or not path.is_file():
                continue
            try:
                stat = path.stat()
            except OSError:
                continue
            created, updated = file_times(stat)
            first_message = _first_user_message(path)
            sessions.append(SessionInfo(
                id=session_id,
                project_id=project_id,
                file_path=str(path),
                title=first_message or f"Gemini {session_id}",
                first_user_message=first_message,
                workspace_path=workspace,
                status=self.session_status(project_id, session_id),
                created_at=created,
                updated_at=updated,
                file_size=stat.st_size,
            ))
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    def create_parser(self, session: SessionInfo) -> GeminiSessionParser:
        return GeminiSessionParser(Path(session.file_path), cwd=session.workspace_path)
