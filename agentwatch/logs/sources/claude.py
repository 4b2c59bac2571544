"""Claude Code log source.

Session files live at ``~/.claude/projects/<slug>/<session id>.jsonl``
where the slug is the workspace path with ``/`` replaced by ``-``.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from agentwatch.execution.active_registry import ActiveExecutionRegistry

from ..diff import create_unified_diff
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
    coerce_text,
    extract_text_from_blocks,
    file_times,
    iso_timestamp,
    make_title,
    relative_to,
)
from .base import ExecutorLogSource, JsonlSessionParser, Patch

logger = logging.getLogger(__name__)

_WORKSPACE_HINT_FILES = 5
_WORKSPACE_HINT_LINES = 200


def workspace_slug(workspace_path: str) -> str:
    return workspace_path.replace("/", "-")


def slug_to_path(slug: str) -> str:
    """Best-effort inverse of ``workspace_slug`` (ambiguous for ``-`` in names)."""
    readable = slug.strip("-").replace("-", "/")
    return readable if readable.startswith("/") else f"/{readable}"


def _workspace_candidate(record: dict[str, Any]) -> str | None:
    message = record.get("message") if isinstance(record.get("message"), dict) else {}
    for candidate in (record.get("cwd"), message.get("cwd")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def _read_head(path: Path, max_lines: int) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            for line_no, line in enumerate(f):
                if line_no >= max_lines:
                    break
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(record, dict):
                    records.append(record)
    except OSError as exc:
        logger.debug("Cannot read %s: %s", path, exc)
    return records


class ClaudeSessionParser(JsonlSessionParser):
    """Turns Claude Code stream-json records into patches."""

    def __init__(self, path: Path, cwd: str | None = None) -> None:
        super().__init__(path)
        self.cwd = cwd
        self._reported_model = False

    def parse_record(self, record: dict[str, Any], line_no: int) -> list[Patch]:
        record_type = record.get("type")
        message = record.get("message") if isinstance(record.get("message"), dict) else {}
        timestamp = iso_timestamp(record.get("timestamp"))
        if isinstance(record.get("cwd"), str) and record["cwd"]:
            self.cwd = record["cwd"]

        if record_type == "user":
            return self._parse_user(record, message, timestamp)
        if record_type == "assistant":
            return self._parse_assistant(message, timestamp)
        if record_type == "tool":
            tool_id = record.get("tool_use_id") or record.get("id")
            patch = self._attach_result(tool_id, record.get("result", record.get("output", record)))
            return [patch] if patch else []
        if record_type == "system":
            content = record.get("content") or record.get("subtype")
            if isinstance(content, str) and content.strip():
                return [self.add(NormalizedEntry(
                    EntryType.system_message(), content, timestamp, {"subtype": record.get("subtype")},
                ))]
            return []
        if record_type == "summary":
            summary = record.get("summary")
            if isinstance(summary, str) and summary.strip():
                return [self.add(NormalizedEntry(
                    EntryType.system_message(), f"Summary: {summary}", timestamp,
                ))]
        return []

    def _parse_user(
        self, record: dict[str, Any], message: dict[str, Any], timestamp: str | None,
    ) -> list[Patch]:
        patches: list[Patch] = []
        content = message.get("content", record.get("content"))
        text = extract_text_from_blocks(content)
        if text and not record.get("isMeta"):
            patches.append(self.add(NormalizedEntry(
                EntryType.user_message(), text, timestamp, {"uuid": record.get("uuid")},
            )))
        if isinstance(content, list):
            for block in content:
                if not isinstance(block, dict) or block.get("type") != "tool_result":
                    continue
                patch = self._attach_result(
                    block.get("tool_use_id"),
                    block.get("content", block),
                    is_error=bool(block.get("is_error")),
                )
                if patch:
                    patches.append(patch)
        return patches

    def _parse_assistant(self, message: dict[str, Any], timestamp: str | None) -> list[Patch]:
        patches: list[Patch] = []
        model = message.get("model")
        if model and not self._reported_model and model != "<synthetic>":
            self._reported_model = True
            patches.append(self.add(NormalizedEntry(
                EntryType.system_message(),
                f"System initialized with model: {model}",
                timestamp,
                {"model": model},
            )))

        parts = message.get("content")
        if not isinstance(parts, list):
            parts = [{"type": "text", "text": parts}]

        for part in parts:
            if not isinstance(part, dict):
                continue
            part_type = part.get("type")
            if part_type in ("text", "analysis"):
                text = part.get("text")
                if isinstance(text, str) and text.strip():
                    patches.append(self.add(NormalizedEntry(
                        EntryType.assistant_message(), text, timestamp,
                    )))
            elif part_type == "thinking":
                text = part.get("thinking") or part.get("text")
                if isinstance(text, str) and text.strip():
                    patches.append(self.add(NormalizedEntry(
                        EntryType.thinking(), text, timestamp,
                    )))
            elif part_type == "tool_use":
                tool_name = str(part.get("name") or "tool")
                action, content = self.map_tool(tool_name, part.get("input") or {})
                entry = NormalizedEntry(
                    EntryType.tool_use(tool_name, action), content, timestamp,
                    {"tool_use_id": part.get("id")},
                )
                patches.append(self.add(entry, tool_id=part.get("id")))
        return patches

    def _attach_result(
        self, tool_id: str | None, content: Any, *, is_error: bool = False,
    ) -> Patch | None:
        found = self.tool_entry(tool_id)
        if found is None:
            return None
        index, entry = found
        action = entry.entry_type.action_type
        output = extract_text_from_blocks(content) if isinstance(content, list) else coerce_text(content)
        if action is not None and action.action == "command_run":
            action.fields["result"] = command_result(output, success_status(not is_error))
        elif action is not None and action.action == "tool":
            action.fields["result"] = tool_result(output)
        updated = NormalizedEntry(
            entry.entry_type, entry.content, entry.timestamp,
            {**(entry.metadata or {}), "is_error": is_error},
        )
        return self.replace(index, updated)

    def _path(self, candidate: Any) -> str:
        if not isinstance(candidate, str) or not candidate:
            return "workspace"
        return relative_to(candidate, self.cwd)

    def map_tool(self, tool_name: str, tool_input: dict[str, Any]) -> tuple[ActionType, str]:
        """Map a Claude tool call onto an action and display text."""
        lower = tool_name.lower()
        raw_path = (
            tool_input.get("file_path")
            or tool_input.get("path")
            or tool_input.get("filePath")
            or tool_input.get("notebook_path")
        )

        if lower in ("read", "fileread", "notebookread"):
            rel = self._path(raw_path)
            return ActionType.file_read(rel), f"`{rel}`"
        if lower in ("write", "filewrite", "createfile"):
            rel = self._path(raw_path)
            content = tool_input.get("content")
            changes = [write_change(content if isinstance(content, str) else "")]
            return ActionType.file_edit(rel, changes), f"`{rel}`"
        if lower in ("edit", "fileedit", "multiedit", "notebookedit"):
            rel = self._path(raw_path)
            edits = tool_input.get("edits")
            if not isinstance(edits, list):
                edits = [tool_input]
            changes = []
            for edit in edits:
                if not isinstance(edit, dict):
                    continue
                if isinstance(edit.get("old_string"), str) and isinstance(edit.get("new_string"), str):
                    diff = create_unified_diff(rel, edit["old_string"], edit["new_string"])
                elif isinstance(edit.get("patch"), str):
                    diff = edit["patch"]
                else:
                    diff = coerce_text(edit)
                changes.append(edit_change(diff))
            return ActionType.file_edit(rel, changes), f"`{rel}`"
        if lower == "delete":
            rel = self._path(raw_path)
            return ActionType.file_edit(rel, [delete_change()]), f"Delete `{rel}`"
        if lower in ("todowrite", "todo"):
            todos = [
                {
                    "content": item.get("content", ""),
                    "status": item.get("status") or item.get("state") or "pending",
                    "priority": item.get("priority"),
                }
                for item in tool_input.get("todos") or []
                if isinstance(item, dict)
            ]
            operation = str(tool_input.get("operation") or "write")
            return ActionType.todo_management(todos, operation), "TODO list updated"
        if lower == "glob":
            query = str(tool_input.get("pattern") or tool_input.get("glob") or "*")
            return ActionType.search(query), f"Find files: `{query}`"
        if lower == "grep":
            query = str(tool_input.get("pattern") or tool_input.get("query") or "")
            return ActionType.search(query), f"`{query}`"
        if lower in ("bash", "shell", "command"):
            command = tool_input.get("command") or tool_input.get("cmd") or "bash"
            if isinstance(command, list):
                command = " ".join(str(c) for c in command)
            return ActionType.command_run(str(command)), f"`{command}`"
        if lower == "webfetch":
            url = str(tool_input.get("url") or "")
            return ActionType.web_fetch(url), f"`{url}`"
        if lower == "websearch":
            query = str(tool_input.get("query") or "")
            return ActionType.search(query), f"Web search: `{query}`"
        if lower == "task":
            description = str(tool_input.get("description") or tool_input.get("prompt") or "")
            return ActionType.task_create(description), f"Task: `{description}`"
        if lower == "exitplanmode":
            plan = str(tool_input.get("plan") or "")
            return ActionType.plan_presentation(plan), plan
        if tool_name.startswith("mcp__"):
            return ActionType.tool(tool_name, tool_input), tool_name
        return ActionType.other(f"Tool: {tool_name}"), tool_name


class ClaudeLogSource(ExecutorLogSource):
    """Log source for local Claude Code JSONL sessions."""

    executor_type = ExecutorType.CLAUDE_CODE

    def __init__(
        self,
        root: Path | None = None,
        registry: ActiveExecutionRegistry | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(root or (Path.home() / ".claude"), registry, **kwargs)
        self._workspace_cache: dict[str, str] = {}

    @property
    def projects_dir(self) -> Path:
        return self.root / "projects"

    def _project_dirs(self) -> list[Path]:
        if not self.projects_dir.is_dir():
            return []
        return sorted(
            p for p in self.projects_dir.iterdir()
            if p.is_dir() and p.name.startswith("-")
        )

    def resolve_workspace(self, slug: str) -> str:
        """Workspace path for a project slug, read from session ``cwd`` fields."""
        cached = self._workspace_cache.get(slug)
        if cached:
            return cached
        resolved: str | None = None
        project_dir = self.projects_dir / slug
        if project_dir.is_dir():
            for path in sorted(project_dir.glob("*.jsonl"))[:_WORKSPACE_HINT_FILES]:
                for record in _read_head(path, _WORKSPACE_HINT_LINES):
                    resolved = _workspace_candidate(record)
                    if resolved:
                        break
                if resolved:
                    break
        resolved = resolved or slug_to_path(slug)
        self._workspace_cache[slug] = resolved
        return resolved

    def get_project_list(self) -> list[ProjectInfo]:
        projects: list[ProjectInfo] = []
        for project_dir in self._project_dirs():
            try:
                created, updated = file_times(project_dir.stat())
            except OSError:
                continue
            workspace = self.resolve_workspace(project_dir.name)
            projects.append(ProjectInfo(
                id=encode_path(workspace),
                name=workspace,
                git_repo_path=workspace,
                created_at=created,
                updated_at=updated,
            ))
        projects.sort(key=lambda p: p.updated_at, reverse=True)
        return projects

    def _project_dir_for(self, project_id: str) -> Path | None:
        decoded = decode_path(project_id) or project_id
        candidates = []
        if decoded.startswith("-"):
            candidates.append(decoded)
        candidates.append(workspace_slug(decoded))
        try:
            candidates.append(workspace_slug(os.path.realpath(decoded)))
        except OSError:
            pass
        for slug in candidates:
            candidate = self.projects_dir / slug
            if candidate.is_dir():
                return candidate
        # The slug is lossy; fall back to matching resolved workspaces.
        for project_dir in self._project_dirs():
            if self.resolve_workspace(project_dir.name) == decoded:
                return project_dir
        return None

    def get_session_list(self, project_id: str) -> list[SessionInfo]:
        project_dir = self._project_dir_for(project_id)
        if project_dir is None:
            logger.debug("Claude project directory not found for %s", project_id)
            return []
        fallback_workspace = self.resolve_workspace(project_dir.name)

        sessions: list[SessionInfo] = []
        for path in project_dir.glob("*.jsonl"):
            try:
                stat = path.stat()
            except OSError:
                continue
            session_id = path.stem
            first_message, workspace = self._read_header(path)
            created, updated = file_times(stat)
            sessions.append(SessionInfo(
                id=session_id,
                project_id=project_id,
                file_path=str(path),
                title=first_message or f"Session {session_id[:8]}",
                first_user_message=first_message,
                workspace_path=workspace or fallback_workspace,
                status=self.session_status(project_id, session_id),
                created_at=created,
                updated_at=updated,
                file_size=stat.st_size,
            ))
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    def _read_header(self, path: Path) -> tuple[str | None, str | None]:
        first_message: str | None = None
        workspace: str | None = None
        for record in _read_head(path, _WORKSPACE_HINT_LINES):
            workspace = workspace or _workspace_candidate(record)
            message = record.get("message") if isinstance(record.get("message"), dict) else {}
            role = record.get("type") or message.get("role")
            if role != "user" or first_message:
                continue
            first_message = make_title(
                extract_text_from_blocks(message.get("content", record.get("content")))
            )
            if first_message and workspace:
                break
        return first_message, workspace

    def create_parser(self, session: SessionInfo) -> ClaudeSessionParser:
        return ClaudeSessionParser(Path(session.file_path), cwd=session.workspace_path)
