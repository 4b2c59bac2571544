from __future__ import annotations

import hashlib
import json
import sqlite3
from contextlib import closing
from pathlib import Path

import pytest

from agentwatch.execution.active_registry import ActiveExecutionRegistry
from agentwatch.logs.ids import join_session_id
from agentwatch.logs.sources.cursor import (
    CursorLogSource,
    CursorSessionParser,
    decode_blob,
    extract_user_query,
    workspace_hash,
)

WORKSPACE = "/work/app"
PROJECT = hashlib.md5(WORKSPACE.encode("utf-8")).hexdigest()


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _field(number: int, payload: bytes) -> bytes:
    return _varint((number << 3) | 2) + _varint(len(payload)) + payload


def _json(data: dict) -> bytes:
    return json.dumps(data).encode("utf-8")


def _store(root: Path, session_id: str, blobs: list[bytes], project: str = PROJECT) -> Path:
    path = root / "chats" / project / session_id / "store.db"
    path.parent.mkdir(parents=True, exist_ok=True)
    with closing(sqlite3.connect(path)) as conn:
        conn.execute("CREATE TABLE IF NOT EXISTS blobs (id TEXT, data BLOB)")
        conn.executemany(
            "INSERT INTO blobs (id, data) VALUES (?, ?)",
            [(str(n), blob) for n, blob in enumerate(blobs)],
        )
        conn.commit()
    return path


PROMPT = _field(1, "Fix the login bug".encode("utf-8"))
SYSTEM = _json({"role": "system", "content": "You are a coding agent"})
USER_JSON = _json({"role": "user", "content": [{"type": "text", "text": (
    "<user_info>OS linux</user_info><user_query>Fix the login bug</user_query>"
)}]})
ASSISTANT = _json({"role": "assistant", "id": "a1", "content": [
    {"type": "reasoning", "text": "Check the auth flow", "signature": "sig-1"},
    {"type": "text", "text": "Running the tests"},
    {"type": "tool-call", "toolName": "shell", "toolCallId": "c1", "args": {"command": ["npm", "test"]}},
    {"type": "tool-call", "toolName": "read", "toolCallId": "c2", "args": {"path": f"{WORKSPACE}/src/login.ts"}},
]})
SHELL_RESULT = _json({"role": "tool", "content": [{
    "type": "tool-result", "toolName": "shell", "toolCallId": "c1",
    "result": "Finished with exit code 1\nstdout: FAIL\n\n\nstderr: boom",
}]})
WRAPPED_UPDATE = _field(4, _json({"role": "assistant", "id": "a1", "content": [
    {"type": "text", "text": "Running the tests again"},
]}))
NOISE = b"\x08\x96\x01"


def _ops(patches: list) -> list[dict]:
    return [op for patch in patches for op in patch]


def test_decode_blob_variants() -> None:
    assert decode_blob(PROMPT).text == "Fix the login bug"
    assert decode_blob(SYSTEM).payload["role"] == "system"
    assert decode_blob(WRAPPED_UPDATE).payload["id"] == "a1"
    assert decode_blob(NOISE) is None
    assert decode_blob(b"") is None
    assert decode_blob(_field(1, b"\xff\xfe")) is None


def test_extract_user_query() -> None:
    assert extract_user_query("<user_query>do it</user_query>") == "do it"
    assert extract_user_query("<git_status>clean</git_status>plain <b>ask</b>") == "plain ask"


def test_rows_become_entries_in_order(tmp_path: Path) -> None:
    path = _store(tmp_path, "chat-1", [PROMPT, SYSTEM, USER_JSON, ASSISTANT, NOISE, SHELL_RESULT, WRAPPED_UPDATE])
    parser = CursorSessionParser(path, cwd=WORKSPACE)

    ops = _ops(parser.consume())
    adds = [op for op in ops if op["op"] == "add"]
    assert [op["path"] for op in adds] == [f"/entries/{n}" for n in range(6)]
    kinds = [op["value"]["content"]["entry_type"]["type"] for op in adds]
    assert kinds == [
        "user_message", "system_message", "thinking", "assistant_message", "tool_use", "tool_use",
    ]
    assert adds[0]["value"]["content"]["content"] == "Fix the login bug"
    assert adds[4]["value"]["content"]["content"] == "`npm test`"
    assert adds[5]["value"]["content"]["entry_type"]["action_type"] == {
        "action": "file_read", "path": "src/login.ts",
    }

    replaced = [op for op in ops if op["op"] == "replace"]
    assert [op["path"] for op in replaced] == ["/entries/4", "/entries/3"]
    shell = replaced[0]["value"]["content"]["entry_type"]["action_type"]
    assert shell == {
        "action": "command_run",
        "command": "npm test",
        "result": {
            "exit_status": {"type": "exit_code", "code": 1},
            "output": "STDOUT:\nFAIL\n\nSTDERR:\nboom",
        },
    }
    assert replaced[1]["value"]["content"]["content"] == "Running the tests again"
    assert parser.warnings == []


def test_new_rows_are_read_incrementally(tmp_path: Path) -> None:
    path = _store(tmp_path, "chat-1", [PROMPT])
    parser = CursorSessionParser(path)
    assert len(parser.consume()) == 1
    assert parser.consume() == []

    _store(tmp_path, "chat-1", [ASSISTANT, PROMPT])
    ops = _ops(parser.consume())
    assert [op["path"] for op in ops] == [f"/entries/{n}" for n in range(1, 5)]


def test_missing_database_warns_only_on_final_read(tmp_path: Path) -> None:
    parser = CursorSessionParser(tmp_path / "chats" / PROJECT / "gone" / "store.db")
    assert parser.consume() == []
    assert parser.warnings == []
    assert parser.consume(final=True) == []
    assert len(parser.warnings) == 1


def test_source_lists_projects_and_sessions(tmp_path: Path) -> None:
    _store(tmp_path, "chat-with-prompt", [PROMPT, ASSISTANT])
    _store(tmp_path, "chat-silent", [NOISE])
    broken = tmp_path / "chats" / PROJECT / "chat-broken" / "store.db"
    broken.parent.mkdir(parents=True)
    broken.write_bytes(b"not a database at all, just bytes")
    (tmp_path / "chats" / PROJECT / "no-store").mkdir()
    _store(tmp_path, "elsewhere", [PROMPT], project="f" * 32)
    worker = tmp_path / "projects" / "work-app" / "worker.log"
    worker.parent.mkdir(parents=True)
    worker.write_text(f"[info] starting workspacePath={WORKSPACE} pid=42\n", encoding="utf-8")
    source = CursorLogSource(tmp_path)

    projects = {p.id: p for p in source.get_project_list()}
    assert set(projects) == {PROJECT, "f" * 32}
    assert projects[PROJECT].name == "app"
    assert projects[PROJECT].git_repo_path == WORKSPACE
    assert projects["f" * 32].name == "Cursor Project (ffffffff...)"

    sessions = {s.id: s for s in source.get_session_list(PROJECT)}
    assert set(sessions) == {"chat-with-prompt", "chat-silent", "chat-broken"}
    assert sessions["chat-with-prompt"].title == "Fix the login bug"
    assert sessions["chat-silent"].title == "app #chat-sil"
    assert sessions["chat-broken"].title == "app #chat-bro"
    assert sessions["chat-with-prompt"].workspace_path == WORKSPACE
    assert source.get_session_list("missing") == []


def test_workspace_hash_matches_chat_directory() -> None:
    assert workspace_hash(WORKSPACE) == PROJECT


@pytest.mark.asyncio
async def test_live_tail_until_process_exits(tmp_path: Path) -> None:
    _store(tmp_path, "live", [PROMPT])
    registry = ActiveExecutionRegistry()
    session_id = join_session_id("CURSOR", PROJECT, "live")
    registry.register(session_id)
    source = CursorLogSource(tmp_path, registry, poll_interval=0.01)

    session = source.find_session(PROJECT, "live")
    assert session.status == "running"
    channel = source.stream_session(session, session_id)

    first = await channel.get(timeout=2)
    assert first.data[0]["path"] == "/entries/0"

    _store(tmp_path, "live", [SYSTEM])
    second = await channel.get(timeout=2)
    assert second.data[0]["path"] == "/entries/1"
    assert second.data[0]["value"]["content"]["content"] == "You are a coding agent"

    registry.unregister(session_id)
    final = await channel.get(timeout=2)
    assert final.event == "finished"
    await channel.aclose()
