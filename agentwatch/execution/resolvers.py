"""Session id resolvers.

Agents mint their own session ids. A launch learns the id either by
scanning the agent's stdout (``*StdoutResolver``) or by rescanning the
agent's storage root (``resolve_*_session``) on every filesystem change
and at a fixed interval for a freshly written session file that belongs
to the launch workspace. Filesystem matches are a heuristic: a file
counts only if it was updated no earlier than the launch time minus a
small allowance, and the newest match wins.
"""
from __future__ import annotations

import json
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from contextlib import aclosing
from pathlib import Path
from typing import Any

from agentwatch.logs.ids import encode_path
from agentwatch.logs.normalize import normalize_path, parse_timestamp
from agentwatch.logs.sources.codex import read_session_header
from agentwatch.logs.sources.cursor import STORE_DB
from agentwatch.logs.sources.gemini import project_hash, session_id_from_filename
from agentwatch.logs.watch import watch_ticks

from .models import SessionResolutionContext

logger = logging.getLogger(__name__)

SCAN_INTERVAL_SECONDS = 0.5
MAX_STDOUT_BUFFER = 64 * 1024

CODEX_STALENESS_SECONDS = 0.5
GEMINI_STALENESS_SECONDS = 5.0
OPENCODE_STALENESS_SECONDS = 5.0
CURSOR_STALENESS_SECONDS = 5.0

SESSION_ID_KEYS = ("session_uuid", "session_id", "sessionId")
_OPENCODE_SESSION_RE = re.compile(r'"sessionID"\s*:\s*"([^"]+)"', re.IGNORECASE)


# ── stdout resolvers ──────────────────────────────────────────


def _loads(line: str) -> Any:
    try:
        return json.loads(line)
    except json.JSONDecodeError:
        return None


class LineResolver(ABC):
    """Splits stdout chunks into lines and checks each one.

    The pending partial line is capped at ``MAX_STDOUT_BUFFER``
    characters; anything older is discarded.
    """

    def __init__(self, max_buffer: int = MAX_STDOUT_BUFFER) -> None:
        self._buffer = ""
        self._max_buffer = max_buffer

    @abstractmethod
    def extract(self, line: str) -> str | None:
        """Session id carried by one complete stdout line, if any."""

    def handle_chunk(self, chunk: str) -> str | None:
        self._buffer += chunk
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            line = line.strip()
            if not line:
                continue
            found = self.extract(line)
            if found:
                return found
        if len(self._buffer) > self._max_buffer:
            self._buffer = self._buffer[-self._max_buffer:]
        return None


def _session_key(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in SESSION_ID_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class ClaudeStdoutResolver(LineResolver):
    """Finds the session id in Claude Code ``stream-json`` output."""

    def extract(self, line: str) -> str | None:
        payload = _loads(line)
        if not isinstance(payload, dict):
            return None
        return (
            _session_key(payload)
            or _session_key(payload.get("message"))
            or _session_key(payload.get("session"))
        )

    def handle_chunk(self, chunk: str) -> str | None:
        found = super().handle_chunk(chunk)
        if found:
            return found
        # A final object may arrive without its trailing newline.
        pending = self._buffer.strip()
        if pending.startswith("{") and pending.endswith("}"):
            found = self.extract(pending)
            if found:
                self._buffer = ""
                return found
        return None


class CodexStdoutResolver(LineResolver):
    """Reads the ``session_meta`` record Codex prints first."""

    def extract(self, line: str) -> str | None:
        payload = _loads(line)
        if not isinstance(payload, dict) or payload.get("type") != "session_meta":
            return None
        meta = payload.get("payload")
        if isinstance(meta, dict) and isinstance(meta.get("id"), str) and meta["id"]:
            return meta["id"]
        return None


class OpenCodeStdoutResolver(LineResolver):
    """OpenCode logs interleave JSON and text; fall back to a regex."""

    def extract(self, line: str) -> str | None:
        payload = _loads(line)
        if isinstance(payload, dict):
            for key in ("sessionID", "sessionId", "session_id"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        match = _OPENCODE_SESSION_RE.search(line)
        return match.group(1) if match else None


# ── filesystem resolvers ──────────────────────────────────────


async def poll_until_found(
    context: SessionResolutionContext,
    scan: Callable[[float], str | None],
    interval: float = SCAN_INTERVAL_SECONDS,
    *,
    watch: Iterable[Path] = (),
    bound: Path | None = None,
) -> str | None:
    """Call ``scan(launched_at)`` until it returns an id or the deadline passes.

    The scan reruns whenever something under *watch* changes and at least
    every *interval* seconds.
    """
    launched_at = context.started_at.timestamp()
    deadline = launched_at + context.timeout
    found = scan(launched_at)
    if found or time.time() + interval > deadline:
        return found
    ticks = watch_ticks(watch, interval, bound=bound)
    async with aclosing(ticks):
        async for _ in ticks:
            found = scan(launched_at)
            if found or time.time() + interval > deadline:
                return found
    return None


def find_codex_session(root: Path, workspace: str, launched_at: float) -> str | None:
    """Newest rollout under ``root/sessions`` started in *workspace* after launch."""
    sessions_dir = root / "sessions"
    if not sessions_dir.is_dir():
        return None
    target = normalize_path(workspace)
    best: tuple[float, str] | None = None
    for path in sessions_dir.rglob("*.jsonl"):
        try:
            mtime = path.stat().st_mtime
            if mtime + CODEX_STALENESS_SECONDS < launched_at:
                continue
            header = read_session_header(path)
        except OSError:
            continue
        if header is None or normalize_path(header.workspace_path) != target:
            continue
        if header.started_at and header.started_at.timestamp() + CODEX_STALENESS_SECONDS < launched_at:
            continue
        if best is None or mtime > best[0]:
            best = (mtime, header.session_id)
    return best[1] if best else None


def find_gemini_session(root: Path, project_keys: list[str], launched_at: float) -> str | None:
    """Newest ``session-*.json`` in the project's chats directory."""
    best: tuple[float, str] | None = None
    for key in project_keys:
        chats = root / "tmp" / key / "chats"
        if not chats.is_dir():
            continue
        for path in chats.iterdir():
            session_id = session_id_from_filename(path.name)
            if session_id is None:
                continue
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            if mtime + GEMINI_STALENESS_SECONDS < launched_at:
                continue
            if best is None or mtime > best[0]:
                best = (mtime, session_id)
    return best[1] if best else None


def _opencode_project_for(root: Path, workspace: str) -> str | None:
    """OpenCode project whose worktree best contains (or is inside) *workspace*."""
    project_dir = root / "project"
    if not project_dir.is_dir():
        return None
    best: tuple[int, str] | None = None
    for path in project_dir.glob("*.json"):
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            continue
        if not isinstance(data, dict):
            continue
        candidates = set()
        for key in ("worktree", "directory"):
            value = normalize_path(data.get(key))
            while value:
                candidates.add(value)
                # .git and .git/modules entries stand for their parent checkout
                if os.path.basename(value) not in (".git", "modules"):
                    break
                parent = os.path.dirname(value)
                value = parent if parent != value else None
        for candidate in candidates:
            if (
                workspace == candidate
                or workspace.startswith(candidate + os.sep)
                or candidate.startswith(workspace + os.sep)
            ):
                if best is None or len(candidate) > best[0]:
                    best = (len(candidate), path.stem)
    return best[1] if best else None


def find_opencode_session(
    root: Path, actual_project_id: str, workspace: str, launched_at: float,
) -> str | None:
    target = normalize_path(workspace)
    resolved_project = _opencode_project_for(root, target) if target else None
    session_root = root / "session"
    candidate_dirs: list[Path] = []
    for name in (actual_project_id, resolved_project, encode_path(target) if target else None, "global"):
        if name and session_root / name not in candidate_dirs:
            candidate_dirs.append(session_root / name)

    best: tuple[float, str] | None = None
    for directory in candidate_dirs:
        if not directory.is_dir():
            continue
        for path in directory.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                mtime = path.stat().st_mtime
            except (OSError, ValueError):
                continue
            if not isinstance(data, dict) or not isinstance(data.get("id"), str):
                continue
            project = data.get("projectID")
            if resolved_project and isinstance(project, str) and project != resolved_project:
                continue
            times = data.get("time") if isinstance(data.get("time"), dict) else {}
            updated_dt = parse_timestamp(times.get("updated"))
            updated = updated_dt.timestamp() if updated_dt else mtime
            if updated + OPENCODE_STALENESS_SECONDS < launched_at:
                continue
            declared = normalize_path(data.get("directory"))
            if target and declared and declared != target:
                continue
            if best is None or updated > best[0]:
                best = (updated, data["id"])
    return best[1] if best else None


def find_cursor_session(root: Path, actual_project_id: str, launched_at: float) -> str | None:
    """Session directory under ``chats/<project>`` whose database was written last."""
    project_dir = root / "chats" / actual_project_id
    if not project_dir.is_dir():
        return None
    best: tuple[float, str] | None = None
    for session_dir in project_dir.iterdir():
        try:
            mtime = (session_dir / STORE_DB).stat().st_mtime
        except OSError:
            continue
        if mtime + CURSOR_STALENESS_SECONDS < launched_at:
            continue
        if best is None or mtime > best[0]:
            best = (mtime, session_dir.name)
    return best[1] if best else None


async def resolve_codex_session(context: SessionResolutionContext, root: Path) -> str | None:
    workspace = context.request.context.workspace_path
    return await poll_until_found(
        context, lambda launched_at: find_codex_session(root, workspace, launched_at),
        watch=[root / "sessions"],
        bound=root,
    )


async def resolve_gemini_session(context: SessionResolutionContext, root: Path) -> str | None:
    request_context = context.request.context
    keys = [request_context.actual_project_id]
    workspace_key = project_hash(request_context.workspace_path)
    if workspace_key not in keys:
        keys.append(workspace_key)
    return await poll_until_found(
        context, lambda launched_at: find_gemini_session(root, keys, launched_at),
        watch=[root / "tmp" / key / "chats" for key in keys],
        bound=root,
    )


async def resolve_opencode_session(context: SessionResolutionContext, root: Path) -> str | None:
    request_context = context.request.context
    return await poll_until_found(
        context,
        lambda launched_at: find_opencode_session(
            root,
            request_context.actual_project_id,
            request_context.workspace_path,
            launched_at,
        ),
        watch=[root / "session"],
        bound=root,
    )


async def resolve_cursor_session(context: SessionResolutionContext, root: Path) -> str | None:
    actual_project_id = context.request.context.actual_project_id
    return await poll_until_found(
        context,
        lambda launched_at: find_cursor_session(root, actual_project_id, launched_at),
        watch=[root / "chats" / actual_project_id],
        bound=root,
    )
