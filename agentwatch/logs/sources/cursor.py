"""Cursor agent log source.

Each chat is a SQLite database::

    chats/<md5 of workspace>/<session id>/store.db

whose ``blobs`` table holds one record per row: either a JSON message
(``role`` plus a list of ``content`` items) or a small protobuf wrapper
that carries the JSON in field 4 or a plain user prompt in field 1.
Workspace paths are recovered from ``projects/*/worker.log``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agentwatch.execution.active_registry import ActiveExecutionRegistry

from ..ids import ExecutorType
from ..models import (
    ActionType,
    EntryType,
    NormalizedEntry,
    ProjectInfo,
    SessionInfo,
    command_result,
    edit_change,
    exit_code_status,
    success_status,
    tool_result,
)
from ..normalize import file_times, make_title, relative_to
from .base import ExecutorLogSource, Patch, SessionParser

logger = logging.getLogger(__name__)

STORE_DB = "store.db"
WORKER_LOG = "worker.log"
_FIRST_MESSAGE_SCAN_ROWS = 200
_JSON_START = (0x7B, 0x5B)

_WORKSPACE_RE = re.compile(r"workspacePath=(\S+)")
_USER_QUERY_RE = re.compile(r"<user_query>(.*?)</user_query>", re.IGNORECASE | re.DOTALL)
_CONTEXT_BLOCK_RES = tuple(
    re.compile(rf"<{tag}>.*?</{tag}>", re.IGNORECASE | re.DOTALL)
    for tag in ("user_info", "git_status")
)
_TAG_RE = re.compile(r"</?[^>]*>")
_WORKSPACE_TAG_RE = re.compile(r"</?workspace_result[^>]*>", re.IGNORECASE)
_EXIT_RE = re.compile(r"Finished with exit code\s+(-?\d+)", re.IGNORECASE)
_STDOUT_RE = re.compile(r"stdout:\s*(.*?)\n\n\nstderr:", re.IGNORECASE | re.DOTALL)
_STDERR_RE = re.compile(r"stderr:\s*(.*)$", re.IGNORECASE | re.DOTALL)


def workspace_hash(workspace_path: str) -> str:
    """Directory name Cursor files a workspace's chats under."""
    return hashlib.md5(workspace_path.encode("utf-8")).hexdigest()


# ── blob decoding ─────────────────────────────────────────────


@dataclass
class CursorRecord:
    """A decoded ``blobs`` row: a JSON message or a bare user prompt."""
    payload: dict[str, Any] | None = None
    text: str | None = None


def sanitize_text(text: str) -> str:
    """Drop control characters other than whitespace and trim."""
    if not text:
        return ""
    return "".join(ch for ch in text if ch >= " " or ch in "\n\r\t").strip()


def _readable(text: str) -> bool:
    return bool(text) and "\ufffd" not in text and any(ch.isalnum() for ch in text)


def _json_object(data: bytes) -> dict[str, Any] | None:
    try:
        value = json.loads(data.decode("utf-8"))
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def _read_varint(data: bytes, offset: int) -> tuple[int, int]:
    result = shift = 0
    while offset < len(data):
        byte = data[offset]
        offset += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            break
        shift += 7
    return result, offset


def decode_blob(data: bytes) -> CursorRecord | None:
    """Decode one ``blobs.data`` value, or None for rows with nothing to show."""
    if not data:
        return None
    if data[0] in _JSON_START:
        payload = _json_object(data)
        return CursorRecord(payload=payload) if payload is not None else None

    offset = 0
    prompt: str | None = None
    while offset < len(data):
        tag, offset = _read_varint(data, offset)
        field_number, wire_type = tag >> 3, tag & 7
        if wire_type == 2:
            length, offset = _read_varint(data, offset)
            chunk = data[offset:offset + length]
            offset += length
            if field_number == 4:
                payload = _json_object(chunk)
                if payload is not None:
                    return CursorRecord(payload=payload)
            elif field_number == 1 and prompt is None:
                prompt = sanitize_text(chunk.decode("utf-8", errors="replace"))
        elif wire_type == 0:
            _, offset = _read_varint(data, offset)
        else:
            break
    if prompt and _readable(prompt):
        return CursorRecord(text=prompt)
    return None


def read_blobs(path: Path, after: int = 0, limit: int | None = None) -> list[tuple[int, bytes]]:
    """(rowid, data) rows of a chat database newer than *after*, oldest first.

    Raises ``sqlite3.DatabaseError`` when the file is missing, locked or
    not a database.
    """
    sql = "SELECT rowid, data FROM blobs WHERE rowid > ? ORDER BY rowid"
    params: list[Any] = [after]
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    uri = f"{path.resolve().as_uri()}?mode=ro"
    with closing(sqlite3.connect(uri, uri=True)) as conn:
        rows = conn.execute(sql, params).fetchall()
    return [(rowid, _as_bytes(data)) for rowid, data in rows]


def _as_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


# ── text helpers ──────────────────────────────────────────────


def extract_user_query(text: str) -> str:
    """The prompt inside ``<user_query>``, else the text minus context blocks."""
    match = _USER_QUERY_RE.search(text)
    if match:
        return _TAG_RE.sub("", match.group(1)).strip()
    for pattern in _CONTEXT_BLOCK_RES:
        text = pattern.sub("", text)
    return _TAG_RE.sub("", text).strip()


def _content_text(payload: dict[str, Any]) -> str:
    """Joined text items of a message; ``content`` may also be a plain string."""
    content = payload.get("content")
    if isinstance(content, str):
        return sanitize_text(content)
    if not isinstance(content, list):
        return ""
    texts = [
        sanitize_text(item["text"])
        for item in content
        if isinstance(item, dict) and isinstance(item.get("text"), str)
    ]
    return "\n".join(text for text in texts if text)


def parse_shell_result(text: str) -> dict[str, Any]:
    exit_match = _EXIT_RE.search(text)
    stdout_match = _STDOUT_RE.search(text)
    stderr_match = _STDERR_RE.search(text)
    stdout = stdout_match.group(1).strip() if stdout_match else ""
    stderr = stderr_match.group(1).strip() if stderr_match else ""
    if stdout and stderr:
        output = f"STDOUT:\n{stdout}\n\nSTDERR:\n{stderr}"
    else:
        output = stdout or stderr or None
    status = exit_code_status(int(exit_match.group(1))) if exit_match else success_status(True)
    return command_result(output, status)


def build_tool_entry(
    tool_name: str, args: dict[str, Any], cwd: str | None,
) -> tuple[str, ActionType, str]:
    """(display name, action, content) for a Cursor ``tool-call`` item."""
    name = tool_name.lower()
    if name == "todowrite":
        todos = args.get("todos") if isinstance(args.get("todos"), list) else []
        operation = "merge" if args.get("merge") else "write"
        return "Todo", ActionType.todo_management(todos, operation), "TODO list updated"
    if name == "shell":
        command = args.get("command")
        if isinstance(command, list):
            command = " ".join(str(part) for part in command)
        command = command if isinstance(command, str) else ""
        return "Bash", ActionType.command_run(command), f"`{command}`" if command else "Shell command"
    if name == "grep":
        query = args.get("pattern") or args.get("regex") or ""
        return "Grep", ActionType.search(str(query)), f"`{query}`" if query else "Search"
    if name == "glob":
        pattern = args.get("pattern") or ""
        content = f"Find files: `{pattern}`" if pattern else "Find files"
        return "Glob", ActionType.search(str(pattern)), content
    if name == "read":
        path = args.get("path") if isinstance(args.get("path"), str) else ""
        rel = relative_to(path, cwd)
        return "Read", ActionType.file_read(rel), f"`{rel}`" if rel else "Read file"
    if name == "applypatch":
        path = args.get("file_path") if isinstance(args.get("file_path"), str) else ""
        patch = args.get("patch") if isinstance(args.get("patch"), str) else ""
        rel = relative_to(path, cwd)
        action = ActionType.file_edit(rel, [edit_change(patch)])
        return "ApplyPatch", action, f"`{rel}`" if rel else "Apply patch"
    return tool_name, ActionType.tool(tool_name), tool_name


def apply_tool_result(entry: NormalizedEntry, item: dict[str, Any]) -> NormalizedEntry:
    """Copy of a tool entry updated with its ``tool-result`` item."""
    entry_type = entry.entry_type
    action = entry_type.action_type or ActionType.tool(entry_type.tool_name or "tool")
    result = item.get("result")
    if action.action == "command_run" and isinstance(result, str) and result:
        action = ActionType.command_run(
            action.fields.get("command") or "", parse_shell_result(result),
        )
    elif action.action == "tool" and isinstance(result, str):
        text = _WORKSPACE_TAG_RE.sub("", result).strip()
        if text:
            action = ActionType.tool(
                action.fields.get("tool_name") or entry_type.tool_name or "tool",
                action.fields.get("arguments"),
                tool_result(text),
            )
    metadata = dict(entry.metadata) if isinstance(entry.metadata, dict) else {}
    metadata.update({
        "result": result,
        "experimental_content": item.get("experimental_content"),
    })
    return NormalizedEntry(
        EntryType.tool_use(entry_type.tool_name or "tool", action),
        entry.content,
        entry.timestamp,
        metadata,
    )


# ── parser ────────────────────────────────────────────────────


class CursorSessionParser(SessionParser):
    """Reads ``blobs`` rows past the last seen rowid and turns them into patches.

    Repeated user and system texts and reasoning blocks are shown once; an
    assistant message whose text changes replaces its earlier entry.
    """

    def __init__(self, path: Path, cwd: str | None = None) -> None:
        super().__init__(f"{path.parent.name}/{path.name}")
        self.path = path
        self.cwd = cwd
        self._last_rowid = 0
        self._seen_user: set[str] = set()
        self._seen_system: set[str] = set()
        self._seen_reasoning: set[str] = set()
        self._assistant: dict[str, tuple[int, str]] = {}

    def consume(self, *, final: bool = False) -> list[Patch]:
        try:
            rows = read_blobs(self.path, after=self._last_rowid)
        except sqlite3.DatabaseError as exc:
            # A locked or half-created database is retried on the next read.
            if final:
                self.warn(self._last_rowid, f"cannot read database: {exc}")
            return []

        patches: list[Patch] = []
        for rowid, data in rows:
            self._last_rowid = rowid
            record = decode_blob(data)
            if record is None:
                continue
            try:
                patches.extend(self._parse(record, rowid))
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                self.warn(rowid, f"{type(exc).__name__}: {exc}")
        return patches

    def _parse(self, record: CursorRecord, rowid: int) -> list[Patch]:
        if record.text is not None:
            return self._once(self._seen_user, record.text, EntryType.user_message())
        payload = record.payload or {}
        role = str(payload.get("role") or "").lower()
        if role == "system":
            return self._once(self._seen_system, _content_text(payload), EntryType.system_message())
        if role == "user":
            text = extract_user_query(_content_text(payload))
            return self._once(self._seen_user, text, EntryType.user_message())
        if role == "assistant":
            return self._parse_assistant(payload, rowid)
        if role == "tool":
            return self._parse_tool_results(payload)
        return []

    def _once(self, seen: set[str], text: str, entry_type: EntryType) -> list[Patch]:
        text = sanitize_text(text)
        if not text or text in seen:
            return []
        seen.add(text)
        return [self.add(NormalizedEntry(entry_type, text))]

    def _parse_assistant(self, payload: dict[str, Any], rowid: int) -> list[Patch]:
        message_id = str(payload.get("id") or f"assistant-{rowid}")
        patches: list[Patch] = []
        for item in payload.get("content") or []:
            if not isinstance(item, dict) or not item.get("type"):
                continue
            item_type = str(item["type"]).lower()
            if item_type == "reasoning":
                text = sanitize_text(item.get("text") or "")
                key = str(item.get("signature") or text)
                if not text or key in self._seen_reasoning:
                    continue
                self._seen_reasoning.add(key)
                patches.append(self.add(NormalizedEntry(EntryType.thinking(), text, metadata=item)))
            elif item_type == "text":
                text = sanitize_text(item.get("text") or "")
                if not text:
                    continue
                entry = NormalizedEntry(EntryType.assistant_message(), text, metadata=item)
                known = self._assistant.get(message_id)
                if known is None:
                    self._assistant[message_id] = (self.index.current(), text)
                    patches.append(self.add(entry))
                elif known[1] != text:
                    self._assistant[message_id] = (known[0], text)
                    patches.append(self.replace(known[0], entry))
            elif item_type == "tool-call":
                call_id = sanitize_text(item.get("toolCallId") or "")
                if not call_id or not item.get("toolName"):
                    continue
                args = item.get("args") if isinstance(item.get("args"), dict) else {}
                name, action, content = build_tool_entry(str(item["toolName"]), args, self.cwd)
                entry = NormalizedEntry(
                    EntryType.tool_use(name, action), content,
                    metadata={"toolCallId": call_id, "args": args},
                )
                patches.append(self.add(entry, tool_id=call_id))
        return patches

    def _parse_tool_results(self, payload: dict[str, Any]) -> list[Patch]:
        patches: list[Patch] = []
        for item in payload.get("content") or []:
            if not isinstance(item, dict) or str(item.get("type") or "").lower() != "tool-result":
                continue
            known = self.tool_entry(sanitize_text(item.get("toolCallId") or ""))
            if known is None:
                continue
            index, entry = known
            patches.append(self.replace(index, apply_tool_result(entry, item)))
        return patches


def first_user_message(path: Path) -> str | None:
    try:
        rows = read_blobs(path, limit=_FIRST_MESSAGE_SCAN_ROWS)
    except sqlite3.DatabaseError as exc:
        logger.debug("Cannot read Cursor chat %s: %s", path, exc)
        return None
    for _, data in rows:
        record = decode_blob(data)
        if record is None:
            continue
        if record.text is not None:
            text = record.text
        elif str((record.payload or {}).get("role") or "").lower() == "user":
            text = extract_user_query(_content_text(record.payload))
        else:
            continue
        title = make_title(text)
        if title and _readable(title):
            return title
    return None


# ── source ────────────────────────────────────────────────────


class CursorLogSource(ExecutorLogSource):
    """Log source for Cursor agent chat databases."""

    executor_type = ExecutorType.CURSOR

    def __init__(
        self,
        root: Path | None = None,
        registry: ActiveExecutionRegistry | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(root or (Path.home() / ".cursor"), registry, **kwargs)

    @property
    def chats_dir(self) -> Path:
        return self.root / "chats"

    @property
    def projects_dir(self) -> Path:
        return self.root / "projects"

    def workspace_paths(self) -> dict[str, str]:
        """Workspace hash -> workspace path, from the agent's worker logs."""
        found: dict[str, str] = {}
        if not self.projects_dir.is_dir():
            return found
        for project_dir in self.projects_dir.iterdir():
            log_path = project_dir / WORKER_LOG
            if not log_path.is_file():
                continue
            try:
                with open(log_path, encoding="utf-8", errors="replace") as f:
                    for line in f:
                        match = _WORKSPACE_RE.search(line)
                        if match:
                            found.setdefault(workspace_hash(match.group(1)), match.group(1))
                            break
            except OSError as exc:
                logger.debug("Cannot read %s: %s", log_path, exc)
        return found

    def get_project_list(self) -> list[ProjectInfo]:
        if not self.chats_dir.is_dir():
            return []
        workspaces = self.workspace_paths()
        projects: list[ProjectInfo] = []
        for project_dir in self.chats_dir.iterdir():
            if not project_dir.is_dir() or project_dir.name.startswith("."):
                continue
            try:
                created, updated = file_times(project_dir.stat())
            except OSError:
                continue
            workspace = workspaces.get(project_dir.name)
            if workspace:
                name = os.path.basename(workspace.rstrip("/")) or workspace
            else:
                name = f"Cursor Project ({project_dir.name[:8]}...)"
            projects.append(ProjectInfo(
                id=project_dir.name,
                name=name,
                git_repo_path=workspace or str(project_dir),
                created_at=created,
                updated_at=updated,
            ))
        projects.sort(key=lambda p: p.updated_at, reverse=True)
        return projects

    def get_session_list(self, project_id: str) -> list[SessionInfo]:
        project_dir = self.chats_dir / project_id
        if not project_dir.is_dir():
            logger.debug("Cursor project directory not found: %s", project_dir)
            return []
        workspace = self.workspace_paths().get(project_id)
        title_base = (
            os.path.basename(workspace.rstrip("/")) or workspace
            if workspace else "Cursor Session"
        )
        sessions: list[SessionInfo] = []
        for session_dir in project_dir.iterdir():
            store = session_dir / STORE_DB
            try:
                stat = store.stat()
            except OSError:
                continue
            created, updated = file_times(stat)
            first_message = first_user_message(store)
            sessions.append(SessionInfo(
                id=session_dir.name,
                project_id=project_id,
                file_path=str(store),
                title=first_message or f"{title_base} #{session_dir.name[:8]}",
                first_user_message=first_message,
                workspace_path=workspace,
                status=self.session_status(project_id, session_dir.name),
                created_at=created,
                updated_at=updated,
                file_size=stat.st_size,
            ))
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    def create_parser(self, session: SessionInfo) -> CursorSessionParser:
        return CursorSessionParser(Path(session.file_path), cwd=session.workspace_path)
