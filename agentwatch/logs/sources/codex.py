"""Codex CLI log source.

Rollout files live anywhere below ``~/.codex/sessions`` as ``*.jsonl``.
The first line is a ``session_meta`` header carrying the session id and
the workspace (``cwd``); projects are the distinct workspaces.
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

from ..diff import concatenate_diff_hunks, extract_unified_diff_hunks
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
    exit_code_status,
    rename_change,
    success_status,
    tool_result,
    write_change,
)
from ..normalize import (
    coerce_text,
    contains_instruction_tags,
    extract_text_from_blocks,
    file_times,
    iso_timestamp,
    make_title,
    parse_timestamp,
    relative_to,
    safe_json_loads,
    strip_instruction_tags,
)
from .base import ExecutorLogSource, JsonlSessionParser, Patch

logger = logging.getLogger(__name__)

HEADER_READ_BYTES = 64 * 1024
_FIRST_MESSAGE_SCAN_LINES = 500


@dataclass
class CodexSessionHeader:
    session_id: str
    workspace_path: str
    instructions: str | None
    started_at: datetime | None


def read_session_header(path: Path) -> CodexSessionHeader | None:
    """Parse the ``session_meta`` record on the first non-empty line."""
    with open(path, "rb") as f:
        head = f.read(HEADER_READ_BYTES)
    for raw in head.split(b"\n"):
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(record, dict) or record.get("type") != "session_meta":
            return None
        payload = record.get("payload") if isinstance(record.get("payload"), dict) else {}
        session_id = payload.get("id")
        cwd = payload.get("cwd")
        if not isinstance(session_id, str) or not isinstance(cwd, str):
            return None
        if not session_id or not cwd:
            return None
        instructions = payload.get("instructions")
        return CodexSessionHeader(
            session_id=session_id,
            workspace_path=cwd,
            instructions=instructions if isinstance(instructions, str) else None,
            started_at=parse_timestamp(payload.get("timestamp") or record.get("timestamp")),
        )
    return None


def _first_user_message(path: Path) -> str | None:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            for line_no, line in enumerate(f):
                if line_no >= _FIRST_MESSAGE_SCAN_LINES:
                    break
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(record, dict):
                    continue
                payload = record.get("payload") if isinstance(record.get("payload"), dict) else {}
                text = None
                if (
                    record.get("type") == "response_item"
                    and payload.get("type") == "message"
                    and payload.get("role") == "user"
                ):
                    text = extract_text_from_blocks(payload.get("content"))
                elif record.get("type") == "event_msg" and payload.get("type") == "user_message":
                    text = coerce_text(payload.get("message") or payload.get("text"))
                title = make_title(text)
                if title:
                    return title
    except OSError as exc:
        logger.debug("Cannot read %s: %s", path, exc)
    return None


def _shell_tool_name(command: str) -> str:
    return "Bash" if "bash" in command.lower() else "Shell"


def _command_text(command: Any) -> str:
    if isinstance(command, list):
        return " ".join(str(part) for part in command)
    return "" if command is None else str(command)


class CodexSessionParser(JsonlSessionParser):
    """Turns Codex rollout and ``exec --json`` records into patches.

    Shell calls and MCP/tool calls are added on begin and replaced on
    completion, keyed by ``call_id``. Codex often writes the same message
    both as a response item and as an event, so consecutive duplicates per
    role are dropped.
    """

    def __init__(self, path: Path, cwd: str | None = None) -> None:
        super().__init__(path)
        self.cwd = cwd
        self._commands: dict[str, str] = {}
        self._last_message: dict[str, str | None] = {"user": None, "assistant": None}
        self._last_reasoning: str | None = None

    def parse_record(self, record: dict[str, Any], line_no: int) -> list[Patch]:
        record_type = record.get("type")
        timestamp = iso_timestamp(record.get("timestamp"))
        payload = record.get("payload") if isinstance(record.get("payload"), dict) else {}

        if record_type == "session_meta":
            if isinstance(payload.get("cwd"), str) and payload["cwd"]:
                self.cwd = payload["cwd"]
            return []
        if record_type == "turn_context":
            return []
        if record_type == "response_item":
            return self._response_item(payload, timestamp)
        if record_type == "event_msg":
            return self._event_msg(payload, timestamp)
        if record_type == "thread.started":
            return [self.add(NormalizedEntry(
                EntryType.system_message(), "Thread started", timestamp,
                {"thread_id": record.get("thread_id")},
            ))]
        if record_type in ("item.started", "item.updated", "item.completed"):
            item = record.get("item")
            if isinstance(item, dict):
                return self._item(record_type, item, timestamp)
            return []
        if record_type == "turn.completed":
            usage = record.get("usage")
            summary = _summarize_usage(usage)
            if summary:
                return [self.add(NormalizedEntry(
                    EntryType.system_message(), f"Turn completed ({summary})", timestamp, usage,
                ))]
            return []
        if record_type in ("error", "turn.failed"):
            error = record.get("error") if isinstance(record.get("error"), dict) else record
            text = error.get("message") or "Unknown error occurred"
            return [self.add(NormalizedEntry(EntryType.error_message(), str(text), timestamp))]
        if isinstance(record.get("msg"), dict):
            return self._structured(record["msg"], timestamp)
        if "model" in record or "sandbox" in record or "approval" in record:
            return self._config(record, timestamp)
        return []

    # ── rollout records ───────────────────────────────────────

    def _dedup(self, role: str, text: str) -> bool:
        if self._last_message.get(role) == text:
            return True
        self._last_message[role] = text
        return False

    def _response_item(self, payload: dict[str, Any], timestamp: str | None) -> list[Patch]:
        item_type = payload.get("type")
        if item_type == "message":
            text = extract_text_from_blocks(payload.get("content"))
            if not text or contains_instruction_tags(text):
                return []
            role = "assistant" if payload.get("role") == "assistant" else "user"
            if self._dedup(role, text):
                return []
            entry_type = (
                EntryType.assistant_message() if role == "assistant" else EntryType.user_message()
            )
            return [self.add(NormalizedEntry(entry_type, text, timestamp))]

        if item_type == "reasoning":
            summary = payload.get("summary")
            text = None
            if isinstance(summary, list) and summary and isinstance(summary[0], dict):
                text = summary[0].get("text")
            text = text or extract_text_from_blocks(payload.get("content"))
            return self._thinking(text, timestamp)

        if item_type == "function_call":
            name = str(payload.get("name") or "tool_call")
            args = safe_json_loads(payload.get("arguments"))
            call_id = payload.get("call_id")
            if name.lower() == "shell":
                command = _command_text(args.get("command") if isinstance(args, dict) else None)
                entry = NormalizedEntry(
                    EntryType.tool_use("Bash", ActionType.command_run(command)),
                    f"`{command}`" if command else "Bash",
                    timestamp,
                    {"call_id": call_id},
                )
                if call_id:
                    self._commands[call_id] = command
                return [self.add(entry, tool_id=call_id)]
            entry = NormalizedEntry(
                EntryType.tool_use(name, ActionType.tool(name, args or None)),
                name,
                timestamp,
                {"call_id": call_id},
            )
            return [self.add(entry, tool_id=call_id)]

        if item_type == "function_call_output":
            return self._function_output(payload)
        return []

    def _function_output(self, payload: dict[str, Any]) -> list[Patch]:
        call_id = payload.get("call_id")
        found = self.tool_entry(call_id)
        if found is None:
            return []
        index, entry = found
        raw_output = payload.get("output")
        data = safe_json_loads(raw_output)
        action = entry.entry_type.action_type

        if action is not None and action.action == "command_run":
            if isinstance(data, dict) and isinstance(data.get("output"), str):
                text = data["output"]
            else:
                text = raw_output if isinstance(raw_output, str) else ""
            meta = data.get("metadata") if isinstance(data, dict) else None
            exit_code = meta.get("exit_code") if isinstance(meta, dict) else None
            status = (
                exit_code_status(exit_code) if isinstance(exit_code, int) else success_status(True)
            )
            updated = ActionType.command_run(
                self._commands.pop(call_id, action.fields.get("command", "")),
                command_result(text, status),
            )
        elif action is not None and action.action == "tool":
            updated = ActionType.tool(
                action.fields.get("tool_name") or entry.entry_type.tool_name or "tool",
                action.fields.get("arguments"),
                tool_result(data),
            )
        else:
            return []
        return [self.replace(index, NormalizedEntry(
            EntryType.tool_use(entry.entry_type.tool_name or "tool", updated),
            entry.content, entry.timestamp, entry.metadata,
        ))]

    def _thinking(self, text: Any, timestamp: str | None) -> list[Patch]:
        if not isinstance(text, str):
            return []
        text = strip_instruction_tags(text)
        if not text or text == self._last_reasoning:
            return []
        self._last_reasoning = text
        return [self.add(NormalizedEntry(EntryType.thinking(), text, timestamp))]

    def _event_msg(self, payload: dict[str, Any], timestamp: str | None) -> list[Patch]:
        event_type = payload.get("type")
        if event_type == "agent_reasoning":
            return self._thinking(payload.get("text"), timestamp)
        if event_type == "agent_message":
            text = strip_instruction_tags(coerce_text(payload.get("message")))
            if not text or self._dedup("assistant", text):
                return []
            return [self.add(NormalizedEntry(EntryType.assistant_message(), text, timestamp))]
        if event_type == "user_message":
            raw = payload.get("message")
            if raw is None:
                raw = payload.get("text")
            text = strip_instruction_tags(coerce_text(raw))
            if not text or self._dedup("user", text):
                return []
            return [self.add(NormalizedEntry(EntryType.user_message(), text, timestamp))]
        # token_count and plain "message" events carry nothing to show
        return []

    # ── exec --json items ─────────────────────────────────────

    def _item(self, event: str, item: dict[str, Any], timestamp: str | None) -> list[Patch]:
        item_type = item.get("type")
        item_id = item.get("id")

        if item_type == "command_execution":
            command = _command_text(item.get("command"))
            result: dict[str, Any] | None = None
            if event != "item.started":
                exit_code = item.get("exit_code")
                if isinstance(exit_code, int):
                    status = exit_code_status(exit_code)
                elif isinstance(item.get("status"), str):
                    status = success_status(item["status"] == "completed")
                else:
                    status = None
                output = (item.get("aggregated_output") or "").strip() or None
                result = command_result(output, status) or None
            tool_name = _shell_tool_name(command)
            entry = NormalizedEntry(
                EntryType.tool_use(tool_name, ActionType.command_run(command, result)),
                f"`{command}`" if command else "command execution",
                timestamp,
                {"item_id": item_id},
            )
            found = self.tool_entry(item_id)
            if found is not None:
                return [self.replace(found[0], entry)]
            return [self.add(entry, tool_id=item_id)]

        if event == "item.started":
            return []

        if item_type == "reasoning":
            return self._thinking(item.get("text"), timestamp)
        if item_type == "agent_message":
            text = item.get("text")
            if not isinstance(text, str) or not text or self._dedup("assistant", text):
                return []
            return [self.add(NormalizedEntry(EntryType.assistant_message(), text, timestamp))]
        if item_type == "file_change":
            return self._file_change_item(item, timestamp)
        if event == "item.completed":
            return [self.add(NormalizedEntry(
                EntryType.system_message(), f"Unhandled Codex item: {item_type}", timestamp, item,
            ))]
        return []

    def _file_change_item(self, item: dict[str, Any], timestamp: str | None) -> list[Patch]:
        changes = item.get("changes")
        if not isinstance(changes, list) or not changes:
            return [self.add(NormalizedEntry(
                EntryType.system_message(), "File change reported with no details", timestamp, item,
            ))]
        patches = []
        for change in changes:
            if not isinstance(change, dict):
                continue
            rel = relative_to(str(change.get("path") or "unknown"), self.cwd)
            kind = str(change.get("kind") or "update")
            patches.append(self.add(NormalizedEntry(
                EntryType.tool_use("edit", ActionType.other(f"{kind} {rel}")),
                rel, timestamp, change,
            )))
        return patches

    # ── structured {id, msg} protocol ─────────────────────────

    def _structured(self, msg: dict[str, Any], timestamp: str | None) -> list[Patch]:
        msg_type = msg.get("type")
        call_id = msg.get("call_id")

        if msg_type == "exec_command_begin":
            command = _command_text(msg.get("command"))
            tool_name = _shell_tool_name(command)
            entry = NormalizedEntry(
                EntryType.tool_use(tool_name, ActionType.command_run(command)),
                f"`{command}`" if command else "command execution",
                timestamp,
            )
            if call_id:
                self._commands[call_id] = command
            return [self.add(entry, tool_id=call_id)]

        if msg_type == "exec_command_end":
            found = self.tool_entry(call_id)
            if found is None:
                return []
            index, entry = found
            output = "\n".join(
                part for part in (msg.get("stdout"), msg.get("stderr"))
                if isinstance(part, str) and part
            ) or None
            if isinstance(msg.get("exit_code"), int):
                status = exit_code_status(msg["exit_code"])
            elif isinstance(msg.get("success"), bool):
                status = success_status(msg["success"])
            else:
                status = None
            action = ActionType.command_run(
                self._commands.pop(call_id, ""), command_result(output, status) or None,
            )
            return [self.replace(index, NormalizedEntry(
                EntryType.tool_use(entry.entry_type.tool_name or "Shell", action),
                entry.content, entry.timestamp,
            ))]

        if msg_type == "mcp_tool_call_begin":
            invocation = msg.get("invocation") if isinstance(msg.get("invocation"), dict) else {}
            tool_name = f"mcp:{invocation.get('server')}:{invocation.get('tool')}"
            entry = NormalizedEntry(
                EntryType.tool_use(
                    tool_name, ActionType.tool(tool_name, invocation.get("arguments") or None),
                ),
                str(invocation.get("tool") or tool_name),
                timestamp,
                invocation,
            )
            return [self.add(entry, tool_id=call_id)]

        if msg_type == "mcp_tool_call_end":
            found = self.tool_entry(call_id)
            if found is None:
                return []
            index, entry = found
            action = entry.entry_type.action_type
            arguments = action.fields.get("arguments") if action is not None else None
            tool_name = entry.entry_type.tool_name or "tool"
            return [self.replace(index, NormalizedEntry(
                EntryType.tool_use(
                    tool_name, ActionType.tool(tool_name, arguments, tool_result(msg.get("result"))),
                ),
                entry.content, entry.timestamp, entry.metadata,
            ))]

        if msg_type == "agent_message":
            text = coerce_text(msg.get("message"))
            if not text or self._dedup("assistant", text):
                return []
            return [self.add(NormalizedEntry(EntryType.assistant_message(), text, timestamp))]
        if msg_type == "agent_reasoning":
            return self._thinking(msg.get("text"), timestamp)
        if msg_type == "error":
            text = msg.get("message") or "Unknown error occurred"
            return [self.add(NormalizedEntry(EntryType.error_message(), str(text), timestamp))]
        if msg_type == "patch_apply_begin":
            return self._patch_apply(msg.get("changes"), timestamp)
        if msg_type == "exec_approval_request":
            parts = [f"command: `{_command_text(msg.get('command'))}`"]
            if msg.get("cwd"):
                parts.append(f"cwd: {msg['cwd']}")
            if msg.get("reason"):
                parts.append(f"reason: {msg['reason']}")
            return [self.add(NormalizedEntry(
                EntryType.system_message(),
                "Execution approval requested: " + "  ".join(parts),
                timestamp,
            ))]
        if msg_type == "apply_patch_approval_request":
            changes = msg.get("changes") if isinstance(msg.get("changes"), dict) else {}
            parts = [f"files: {len(changes)}"]
            if msg.get("grant_root"):
                parts.append(f"grant_root: {msg['grant_root']}")
            if msg.get("reason"):
                parts.append(f"reason: {msg['reason']}")
            return [self.add(NormalizedEntry(
                EntryType.system_message(),
                "Patch approval requested: " + "  ".join(parts),
                timestamp,
            ))]
        if msg_type == "plan_update":
            return [self.add(NormalizedEntry(
                EntryType.system_message(), "Plan update", timestamp, msg.get("value"),
            ))]
        return []

    def _patch_apply(self, changes: Any, timestamp: str | None) -> list[Patch]:
        if not isinstance(changes, dict):
            return []
        patches = []
        for file_path, change in changes.items():
            if not isinstance(change, dict):
                continue
            rel = relative_to(str(file_path), self.cwd)
            file_changes: list[dict[str, Any]] = []
            if isinstance(change.get("content"), str):
                file_changes.append(write_change(change["content"]))
            elif isinstance(change.get("unified_diff"), str):
                if isinstance(change.get("move_path"), str):
                    file_changes.append(rename_change(relative_to(change["move_path"], self.cwd)))
                hunks = extract_unified_diff_hunks(change["unified_diff"])
                file_changes.append(edit_change(
                    concatenate_diff_hunks(rel, hunks), has_line_numbers=True,
                ))
            else:
                file_changes.append(delete_change())
            patches.append(self.add(NormalizedEntry(
                EntryType.tool_use("edit", ActionType.file_edit(rel, file_changes)),
                rel, timestamp,
            )))
        return patches

    def _config(self, record: dict[str, Any], timestamp: str | None) -> list[Patch]:
        parts = []
        for key in ("model", "reasoning effort", "approval", "sandbox"):
            if record.get(key):
                parts.append(f"{key}: {record[key]}")
        if not parts:
            return []
        return [self.add(NormalizedEntry(
            EntryType.system_message(), "Session configuration: " + ", ".join(parts),
            timestamp, record,
        ))]


def _summarize_usage(usage: Any) -> str | None:
    if not isinstance(usage, dict):
        return None
    labels = (
        ("input_tokens", "input"),
        ("cached_input_tokens", "cached"),
        ("output_tokens", "output"),
    )
    parts = [
        f"{label}: {usage[key]}"
        for key, label in labels
        if isinstance(usage.get(key), (int, float))
    ]
    return ", ".join(parts) or None


class CodexLogSource(ExecutorLogSource):
    """Log source for Codex CLI rollout files."""

    executor_type = ExecutorType.CODEX

    def __init__(
        self,
        root: Path | None = None,
        registry: ActiveExecutionRegistry | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(root or (Path.home() / ".codex"), registry, **kwargs)

    @property
    def sessions_dir(self) -> Path:
        return self.root / "sessions"

    def _collect(self) -> list[tuple[CodexSessionHeader, Path, os.stat_result]]:
        if not self.sessions_dir.is_dir():
            return []
        found = []
        for path in self.sessions_dir.rglob("*.jsonl"):
            try:
                header = read_session_header(path)
                stat = path.stat()
            except OSError as exc:
                logger.warning("Failed to read Codex session %s: %s", path, exc)
                continue
            if header is None:
                continue
            found.append((header, path, stat))
        return found

    def get_project_list(self) -> list[ProjectInfo]:
        projects: dict[str, ProjectInfo] = {}
        for header, _, stat in self._collect():
            created, updated = file_times(stat)
            created = header.started_at or created
            project_id = encode_path(header.workspace_path)
            existing = projects.get(project_id)
            if existing is None:
                projects[project_id] = ProjectInfo(
                    id=project_id,
                    name=os.path.basename(header.workspace_path.rstrip("/")) or header.workspace_path,
                    git_repo_path=header.workspace_path,
                    created_at=created,
                    updated_at=updated,
                )
                continue
            existing.created_at = min(existing.created_at, created)
            existing.updated_at = max(existing.updated_at, updated)
        return sorted(projects.values(), key=lambda p: p.updated_at, reverse=True)

    def get_session_list(self, project_id: str) -> list[SessionInfo]:
        workspace = decode_path(project_id)
        if workspace is None:
            logger.debug("Codex project id %s is not a base64url path", project_id)
            return []
        sessions: list[SessionInfo] = []
        for header, path, stat in self._collect():
            if header.workspace_path != workspace:
                continue
            created, updated = file_times(stat)
            first_message = _first_user_message(path)
            fallback = make_title(header.instructions)
            sessions.append(SessionInfo(
                id=header.session_id,
                project_id=project_id,
                file_path=str(path),
                title=first_message or fallback or f"Codex {header.session_id[:8]}",
                first_user_message=first_message,
                workspace_path=header.workspace_path,
                status=self.session_status(project_id, header.session_id),
                created_at=header.started_at or created,
                updated_at=updated,
                file_size=stat.st_size,
            ))
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    def create_parser(self, session: SessionInfo) -> CodexSessionParser:
        return CodexSessionParser(Path(session.file_path), cwd=session.workspace_path)
