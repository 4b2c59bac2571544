from __future__ import annotations

import asyncio
import json
import os
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from agentwatch.execution.models import ExecutionContext, LaunchRequest, SessionResolutionContext
from agentwatch.execution.resolvers import (
    ClaudeStdoutResolver,
    CodexStdoutResolver,
    LineResolver,
    OpenCodeStdoutResolver,
    find_codex_session,
    find_cursor_session,
    find_gemini_session,
    find_opencode_session,
    poll_until_found,
    resolve_codex_session,
    resolve_gemini_session,
)
from agentwatch.logs.ids import encode_path
from agentwatch.logs.sources.gemini import project_hash


def _age(path: Path, seconds: float) -> None:
    past = time.time() - seconds
    os.utime(path, (past, past))


def _write_codex_rollout(root: Path, session_id: str, cwd: str, name: str = "rollout.jsonl") -> Path:
    day = root / "sessions" / "2025" / "01" / "02"
    day.mkdir(parents=True, exist_ok=True)
    path = day / name
    path.write_text(json.dumps({
        "type": "session_meta",
        "payload": {"id": session_id, "cwd": cwd},
    }) + "\n", encoding="utf-8")
    return path


# ── stdout ──


def test_claude_resolver_finds_session_id_across_chunks() -> None:
    resolver = ClaudeStdoutResolver()
    assert resolver.handle_chunk('{"type":"system","sess') is None
    assert resolver.handle_chunk('ion_id":"abc-123"}\n') == "abc-123"


def test_claude_resolver_reads_nested_and_unterminated_objects() -> None:
    assert ClaudeStdoutResolver().handle_chunk('{"message":{"sessionId":"nested"}}\n') == "nested"
    assert ClaudeStdoutResolver().handle_chunk('{"session_uuid":"tail"}') == "tail"


def test_claude_resolver_ignores_noise() -> None:
    resolver = ClaudeStdoutResolver()
    assert resolver.handle_chunk("npm warn something\n[1, 2]\n") is None


def test_codex_resolver_needs_session_meta() -> None:
    resolver = CodexStdoutResolver()
    assert resolver.handle_chunk('{"type":"thread.started","thread_id":"t"}\n') is None
    line = json.dumps({"type": "session_meta", "payload": {"id": "0199"}})
    assert resolver.handle_chunk(line + "\n") == "0199"


def test_opencode_resolver_falls_back_to_regex() -> None:
    assert OpenCodeStdoutResolver().handle_chunk('{"sessionID":"ses_1"}\n') == "ses_1"
    log_line = 'INFO service=session "sessionID": "ses_2" created\n'
    assert OpenCodeStdoutResolver().handle_chunk(log_line) == "ses_2"


def test_partial_line_buffer_is_bounded() -> None:
    resolver = CodexStdoutResolver()
    resolver._max_buffer = 16
    resolver.handle_chunk("x" * 100)
    assert len(resolver._buffer) == 16


# ── filesystem ──


def test_find_codex_session_matches_workspace_and_freshness(tmp_path: Path) -> None:
    launched = time.time()
    _write_codex_rollout(tmp_path, "other-ws", "/elsewhere", "a.jsonl")
    stale = _write_codex_rollout(tmp_path, "stale", "/work", "b.jsonl")
    _age(stale, 60)
    _write_codex_rollout(tmp_path, "fresh", "/work", "c.jsonl")
    assert find_codex_session(tmp_path, "/work", launched - 1) == "fresh"


def test_find_codex_session_without_sessions_dir(tmp_path: Path) -> None:
    assert find_codex_session(tmp_path, "/work", time.time()) is None


def test_find_gemini_session_picks_newest(tmp_path: Path) -> None:
    key = project_hash("/work")
    chats = tmp_path / "tmp" / key / "chats"
    chats.mkdir(parents=True)
    older = chats / "session-old.json"
    older.write_text("{}", encoding="utf-8")
    _age(older, 2)
    (chats / "session-new.json").write_text("{}", encoding="utf-8")
    (chats / "notes.txt").write_text("", encoding="utf-8")
    assert find_gemini_session(tmp_path, [key], time.time() - 1) == "new"
    assert find_gemini_session(tmp_path, [key], time.time() + 60) is None


def test_find_opencode_session_filters_by_project_and_directory(tmp_path: Path) -> None:
    (tmp_path / "project").mkdir()
    (tmp_path / "project" / "proj1.json").write_text(
        json.dumps({"id": "proj1", "worktree": "/work"}), encoding="utf-8",
    )
    sessions = tmp_path / "session" / "proj1"
    sessions.mkdir(parents=True)
    now_ms = int(time.time() * 1000)
    (sessions / "ses_a.json").write_text(json.dumps({
        "id": "ses_a", "projectID": "proj1", "directory": "/work",
        "time": {"created": now_ms, "updated": now_ms},
    }), encoding="utf-8")
    (sessions / "ses_b.json").write_text(json.dumps({
        "id": "ses_b", "projectID": "proj1", "directory": "/work/other",
        "time": {"created": now_ms, "updated": now_ms + 10},
    }), encoding="utf-8")
    (sessions / "ses_old.json").write_text(json.dumps({
        "id": "ses_old", "projectID": "proj1", "directory": "/work",
        "time": {"created": now_ms - 600_000, "updated": now_ms - 600_000},
    }), encoding="utf-8")
    found = find_opencode_session(tmp_path, encode_path("/work"), "/work", time.time() - 1)
    assert found == "ses_a"


@pytest.mark.asyncio
async def test_resolve_codex_session_polls_until_deadline(tmp_path: Path) -> None:
    context = SessionResolutionContext(
        request=LaunchRequest(
            context=ExecutionContext("codex", "CODEX", "CODEX:x", "x", "/work"),
            kind="new",
            session_id="CODEX:x:minted",
            prompt="hi",
        ),
        minted_session_id="CODEX:x:minted",
        started_at=datetime.now(timezone.utc),
        timeout=0.2,
    )
    assert await resolve_codex_session(context, tmp_path) is None

    _write_codex_rollout(tmp_path, "0199-found", "/work")
    context = SessionResolutionContext(
        request=context.request,
        minted_session_id=context.minted_session_id,
        started_at=datetime.now(timezone.utc),
        timeout=1.0,
    )
    assert await resolve_codex_session(context, tmp_path) == "0199-found"


def test_line_resolver_requires_extract() -> None:
    with pytest.raises(TypeError):
        LineResolver()


def test_find_cursor_session_picks_fresh_store(tmp_path: Path) -> None:
    chats = tmp_path / "chats" / "abc123"
    for name in ("old", "new"):
        (chats / name).mkdir(parents=True)
        (chats / name / "store.db").write_bytes(b"")
    (chats / "no-store").mkdir()
    _age(chats / "old" / "store.db", 30)

    assert find_cursor_session(tmp_path, "abc123", time.time() - 1) == "new"
    assert find_cursor_session(tmp_path, "abc123", time.time() + 60) is None
    assert find_cursor_session(tmp_path, "missing", time.time()) is None


def _gemini_context(timeout: float) -> SessionResolutionContext:
    request = LaunchRequest(
        context=ExecutionContext("gemini", "GEMINI", "GEMINI:k", project_hash("/work"), "/work"),
        kind="new",
        session_id="GEMINI:k:minted",
        prompt="hi",
    )
    return SessionResolutionContext(
        request=request,
        minted_session_id="GEMINI:k:minted",
        started_at=datetime.now(timezone.utc),
        timeout=timeout,
    )


@pytest.mark.asyncio
async def test_resolve_gemini_session_sees_chat_written_after_launch(tmp_path: Path) -> None:
    chats = tmp_path / "tmp" / project_hash("/work") / "chats"
    chats.mkdir(parents=True)

    async def write_later() -> None:
        await asyncio.sleep(0.1)
        (chats / "session-fresh.json").write_text("{}", encoding="utf-8")

    writer = asyncio.create_task(write_later())
    assert await resolve_gemini_session(_gemini_context(3.0), tmp_path) == "fresh"
    await writer


@pytest.mark.asyncio
async def test_poll_until_found_without_watchable_paths(tmp_path: Path) -> None:
    calls = []

    def scan(launched_at: float) -> str | None:
        calls.append(launched_at)
        return "found" if len(calls) == 3 else None

    found = await poll_until_found(
        _gemini_context(2.0), scan, interval=0.01,
        watch=[tmp_path / "absent" / "chats"], bound=tmp_path / "absent",
    )
    assert found == "found"
    assert len(calls) == 3
