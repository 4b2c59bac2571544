"""OpenCode log source.

OpenCode keeps a small JSON file per object under its storage root::

    session/<project>/<session id>.json   id, directory, title, projectID, time
    message/<session id>/<message id>.json  id, role, time.created
    part/<message id>/<part id>.json      type, text, tool, state, time

Projects are grouped by the session ``directory``.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from agentwatch.execution.active_registry import ActiveExecutionRegistry

from ..ids import ExecutorType, decode_path, encode_path
from ..models import (
    ActionType,
    EntryType,
    NormalizedEntry,
    ProjectInfo,
    SessionInfo,
    command_result,
    delete_change,
    edit_change,
    success_status,
    tool_result,
    write_change,
)
from ..normalize import (
    EPOCH,
    coerce_text,
    file_times,
    make_title,
    parse_timestamp,
    relative_to,
)
from .base import ExecutorLogSource, Patch, SnapshotSessionParser

logger = logging.getLogger(__name__)


@dataclass
class OpenCodeSessionMeta:
    session_id: str
    directory: str | None
    title: str | None
    project_id: str | None
    created_at: datetime
    updated_at: datetime
    file_path: Path
    file_size: int


def _read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def read_session_meta(path: Path) -> OpenCodeSessionMeta | None:
    try:
        data = _read_json(path)
        stat = path.stat()
    except (OSError, ValueError) as exc:
        logger.debug("Skipping OpenCode session file %s: %s", path, exc)
        return None
    if not isinstance(data, dict):
        return None
    created, updated = file_times(stat)
    times = data.get("time") if isinstance(data.get("time"), dict) else {}
    session_id = data.get("id") if isinstance(data.get("id"), str) and data["id"] else path.stem
    directory = data.get("directory")
    title = data.get("title")
    project_id = data.get("projectID")
    return OpenCodeSessionMeta(
        session_id=session_id,
        directory=directory.strip() or None if isinstance(directory, str) else None,
        title=title.strip() or None if isinstance(title, str) else None,
        project_id=project_id if isinstance(project_id, str) else None,
        created_at=parse_timestamp(times.get("created")) or created,
        updated_at=parse_timestamp(times.get("updated")) or updated,
        file_path=path,
        file_size=stat.st_size,
    )


def _created_key(data: Any, fallback: datetime) -> datetime:
    times = data.get("time") if isinstance(data, dict) and isinstance(data.get("time"), dict) else {}
    return parse_timestamp(times.get("created")) or fallback


class OpenCodeStorage:
    """Read access to the message and part directories of the storage root."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def messages(self, session_id: str) -> list[tuple[str, dict[str, Any]]]:
        """(message id, message) pairs ordered by creation time."""
        directory = self.root / "message" / session_id
        if not directory.is_dir():
            return []
        records = []
        for path in directory.glob("*.json"):
            try:
                data = _read_json(path)
            except (OSError, ValueError) as exc:
                logger.warning("Failed to read OpenCode message %s: %s", path, exc)
                continue
            if not isinstance(data, dict):
                continue
            message_id = data.get("id") if isinstance(data.get("id"), str) else path.stem
            records.append((message_id, data))
        records.sort(key=lambda r: (_created_key(r[1], EPOCH), r[0]))
        return records

    def parts(self, message_id: str, fallback: datetime) -> list[tuple[str, dict[str, Any]]]:
        """(part id, part) pairs for a message, oldest first."""
        directory = self.root / "part" / message_id
        if not directory.is_dir():
            return []
        records = []
        for order, path in enumerate(sorted(directory.glob("*.json"))):
            try:
                data = _read_json(path)
            except (OSError, ValueError) as exc:
                logger.warning("Failed to read OpenCode part %s: %s", path, exc)
                continue
            if not isinstance(data, dict):
                continue
            part_id = data.get("id") if isinstance(data.get("id"), str) else path.stem
            records.append((_created_key(data, fallback), order, part_id, data))
        records.sort(key=lambda r: (r[0], r[1]))
        return [(part_id, data) for _, _, part_id, data in records]


def _inline_text(message: dict[str, Any]) -> str | None:
    for key in ("text", "content"):
        value = message.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    content = message.get("content")
    if isinstance(content, list):
        segments = [
            seg["text"].strip()
            for seg in content
            if isinstance(seg, dict) and isinstance(seg.get("text"), str) and seg["text"].strip()
        ]
        if segments:
            return " ".join(segments)
    return None


class OpenCodeSessionParser(SnapshotSessionParser):
    """Re-scans a session's messages and parts on every read.

    Text parts between two non-text parts are merged into one entry; tool
    parts are keyed by part id and replaced as their state progresses.
    """

    def __init__(self, storage: OpenCodeStorage, session_id: str, cwd: str | None = None) -> None:
        super().__init__(session_id)
        self.storage = storage
        self.session_id = session_id
        self.cwd = cwd

    def consume(self, *, final: bool = False) -> list[Patch]:
        patches: list[Patch] = []
        for position, (message_id, message) in enumerate(self.storage.messages(self.session_id)):
            try:
                entries = self._entries_for(message_id, message)
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                self.warn(position + 1, f"{type(exc).__name__}: {exc}")
                continue
            for key, entry in entries:
                patch = self.upsert(key, entry)
                if patch:
                    patches.append(patch)
        return patches

    def _entries_for(
        self, message_id: str, message: dict[str, Any],
    ) -> list[tuple[str, NormalizedEntry]]:
        created = _created_key(message, EPOCH)
        timestamp = created.isoformat() if created != EPOCH else None
        is_user = str(message.get("role") or "").lower() == "user"
        text_type = EntryType.user_message() if is_user else EntryType.assistant_message()

        entries: list[tuple[str, NormalizedEntry]] = []
        text_buffer: list[str] = []
        segment = 0

        def flush() -> None:
            nonlocal segment
            combined = "\n\n".join(text_buffer).strip()
            text_buffer.clear()
            if combined:
                entries.append((
                    f"text:{message_id}:{segment}",
                    NormalizedEntry(text_type, combined, timestamp, {"message_id": message_id}),
                ))
            segment += 1

        parts = self.storage.parts(message_id, created)
        for part_id, part in parts:
            part_type = part.get("type")
            if part_type in ("text", "markdown"):
                text = part.get("text")
                if isinstance(text, str) and text.strip() and not part.get("synthetic"):
                    text_buffer.append(text.strip())
                continue
            if part_type == "reasoning":
                flush()
                text = part.get("text")
                if isinstance(text, str) and text.strip():
                    entries.append((f"part:{part_id}", NormalizedEntry(
                        EntryType.thinking(), text.strip(), timestamp,
                    )))
                continue
            if part_type == "tool":
                flush()
                entries.append((f"part:{part_id}", self.tool_entry_for(part, timestamp)))
                continue
            if part_type in ("step-start", "step-finish"):
                flush()
                label = "Step started" if part_type == "step-start" else "Step finished"
                entries.append((f"part:{part_id}", NormalizedEntry(
                    EntryType.system_message(), label, timestamp,
                    {"tokens": part.get("tokens"), "cost": part.get("cost")}
                    if part_type == "step-finish" else None,
                )))
                continue
            if part_type == "file":
                flush()
                name = part.get("filename") or part.get("url") or "file"
                entries.append((f"part:{part_id}", NormalizedEntry(
                    EntryType.system_message(), f"Attached file: {name}", timestamp,
                )))

        if not parts:
            inline = _inline_text(message)
            if inline:
                text_buffer.append(inline)
        flush()

        error = message.get("error")
        if isinstance(error, dict):
            data = error.get("data") if isinstance(error.get("data"), dict) else {}
            text = data.get("message") or error.get("message") or error.get("name") or "Unknown error"
            entries.append((f"error:{message_id}", NormalizedEntry(
                EntryType.error_message(), str(text), timestamp,
            )))
        return entries

    def _path(self, value: Any) -> str:
        if not isinstance(value, str) or not value:
            return "workspace"
        return relative_to(value, self.cwd)

    def tool_entry_for(self, part: dict[str, Any], timestamp: str | None) -> NormalizedEntry:
        """Map an OpenCode tool part onto a tool_use entry."""
        tool = str(part.get("tool") or "tool").lower()
        state = part.get("state") if isinstance(part.get("state"), dict) else {}
        tool_input = state.get("input") if isinstance(state.get("input"), dict) else {}
        status = state.get("status")
        output = state.get("output", state.get("result"))
        done = status in ("completed", "error")
        raw_path = tool_input.get("filePath") or tool_input.get("path")

        if tool == "read":
            rel = self._path(raw_path)
            action, content = ActionType.file_read(rel), f"`{rel}`"
        elif tool in ("write", "create_text_file"):
            rel = self._path(raw_path)
            body = tool_input.get("content")
            action = ActionType.file_edit(rel, [write_change(body if isinstance(body, str) else "")])
            content = f"`{rel}`"
        elif tool in ("edit", "patch"):
            rel = self._path(raw_path)
            diff = tool_input.get("patch")
            if not isinstance(diff, str):
                metadata = state.get("metadata") if isinstance(state.get("metadata"), dict) else {}
                diff = metadata.get("diff") if isinstance(metadata.get("diff"), str) else coerce_text(tool_input)
            action = ActionType.file_edit(rel, [edit_change(diff)])
            content = f"`{rel}`"
        elif tool == "delete":
            rel = self._path(raw_path)
            action, content = ActionType.file_edit(rel, [delete_change()]), f"Delete `{rel}`"
        elif tool in ("shell", "bash"):
            command = tool_input.get("command") or tool_input.get("cmd") or "shell"
            if isinstance(command, list):
                command = " ".join(str(c) for c in command)
            result = None
            if done or output is not None:
                exit_status = success_status(status == "completed") if done else None
                result = command_result(coerce_text(output) if output is not None else None, exit_status)
            action, content = ActionType.command_run(str(command), result), f"`{command}`"
        elif tool == "glob":
            query = str(tool_input.get("pattern") or tool_input.get("glob") or "*")
            action, content = ActionType.search(query), f"Find files: `{query}`"
        elif tool == "grep":
            query = str(tool_input.get("pattern") or tool_input.get("query") or "")
            action, content = ActionType.search(query), f"`{query}`"
        elif tool == "webfetch":
            url = str(tool_input.get("url") or "")
            action, content = ActionType.web_fetch(url), f"`{url}`"
        elif tool in ("todo", "todowrite"):
            todos = [
                {
                    "content": item.get("content", ""),
                    "status": item.get("status") or "pending",
                    "priority": item.get("priority"),
                }
                for item in tool_input.get("todos") or []
                if isinstance(item, dict)
            ]
            operation = str(tool_input.get("operation") or "write")
            action, content = ActionType.todo_management(todos, operation), "TODO list updated"
        elif tool == "plan":
            plan = tool_input.get("plan")
            plan = plan if isinstance(plan, str) else coerce_text(plan if plan is not None else output)
            action, content = ActionType.plan_presentation(plan), "Plan updated"
        elif tool == "task":
            description = str(tool_input.get("description") or tool_input.get("prompt") or "")
            action, content = ActionType.task_create(description), f"Task: `{description}`"
        elif "_" in tool and done:
            # MCP tools are exposed as <server>_<tool>
            action = ActionType.tool(tool, tool_input or None, tool_result(output))
            content = tool
        else:
            action = ActionType.other(f"Tool: {tool}")
            content = f"Tool: {tool}"

        return NormalizedEntry(
            EntryType.tool_use(tool, action), content, timestamp,
            {"call_id": part.get("callID"), "status": status},
        )


class OpenCodeLogSource(ExecutorLogSource):
    """Log source for OpenCode's file-per-object storage."""

    executor_type = ExecutorType.OPENCODE

    def __init__(
        self,
        root: Path | None = None,
        registry: ActiveExecutionRegistry | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            root or (Path.home() / ".local" / "share" / "opencode" / "storage"),
            registry,
            **kwargs,
        )
        self.storage = OpenCodeStorage(self.root)

    @property
    def session_dir(self) -> Path:
        return self.root / "session"

    def _collect(self) -> list[OpenCodeSessionMeta]:
        if not self.session_dir.is_dir():
            return []
        found = []
        for path in self.session_dir.rglob("*.json"):
            meta = read_session_meta(path)
            if meta is not None:
                found.append(meta)
        return found

    def _first_user_message(self, session_id: str) -> str | None:
        for message_id, message in self.storage.messages(session_id):
            if str(message.get("role") or "").lower() != "user":
                continue
            texts = [
                part["text"]
                for _, part in self.storage.parts(message_id, EPOCH)
                if part.get("type") in ("text", "markdown")
                and isinstance(part.get("text"), str)
                and not part.get("synthetic")
            ]
            title = make_title(" ".join(texts) or _inline_text(message))
            if title:
                return title
        return None

    def get_project_list(self) -> list[ProjectInfo]:
        projects: dict[str, ProjectInfo] = {}
        for meta in self._collect():
            if not meta.directory:
                continue
            project_id = encode_path(meta.directory)
            existing = projects.get(project_id)
            if existing is None:
                projects[project_id] = ProjectInfo(
                    id=project_id,
                    name=os.path.basename(meta.directory.rstrip("/")) or meta.directory,
                    git_repo_path=meta.directory,
                    created_at=meta.created_at,
                    updated_at=meta.updated_at,
                )
                continue
            existing.created_at = min(existing.created_at, meta.created_at)
            existing.updated_at = max(existing.updated_at, meta.updated_at)
        return sorted(projects.values(), key=lambda p: p.updated_at, reverse=True)

    def get_session_list(self, project_id: str) -> list[SessionInfo]:
        directory = decode_path(project_id)
        if directory is None:
            logger.debug("OpenCode project id %s is not a base64url path", project_id)
            return []
        directory = directory.strip()
        sessions: list[SessionInfo] = []
        for meta in self._collect():
            if meta.directory != directory:
                continue
            first_message = self._first_user_message(meta.session_id)
            sessions.append(SessionInfo(
                id=meta.session_id,
                project_id=project_id,
                file_path=str(meta.file_path),
                title=first_message or meta.title or f"Opencode {meta.session_id[:8]}",
                first_user_message=first_message,
                workspace_path=directory,
                status=self.session_status(project_id, meta.session_id),
                created_at=meta.created_at,
                updated_at=meta.updated_at,
                file_size=meta.file_size,
            ))
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    def create_parser(self, session: SessionInfo) -> OpenCodeSessionParser:
        return OpenCodeSessionParser(self.storage, session.id, cwd=session.workspace_path)

    def watch_paths(self, session: SessionInfo) -> list[Path]:
        # parts land under part/<message id>, so watch the whole part tree
        return [self.root / "message" / session.id, self.root / "part"]
