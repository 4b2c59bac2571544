from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from agentwatch.execution.active_registry import ActiveExecutionRegistry
from agentwatch.logs.ids import join_session_id
from agentwatch.logs.sources.gemini import (
    GeminiLogSource,
    GeminiSessionParser,
    project_hash,
    session_id_from_filename,
)

WORKSPACE = "/work/site"


def _chat(messages: list[dict]) -> dict:
    return {"sessionId": "abc", "projectHash": project_hash(WORKSPACE), "messages": messages}


def _write_chat(root: Path, session_id: str, messages: list[dict]) -> Path:
    chats = root / "tmp" / project_hash(WORKSPACE) / "chats"
    chats.mkdir(parents=True, exist_ok=True)
    path = chats / f"session-{session_id}.json"
    path.write_text(json.dumps(_chat(messages)), encoding="utf-8")
    return path


USER = {"id": "m1", "type": "user", "content": "Build the landing page", "timestamp": "2025-03-01T08:00:00Z"}
RUNNING_CALL = {
    "id": "m2",
    "type": "gemini",
    "content": "",
    "thoughts": [{"subject": "Planning", "description": "start with html"}],
    "toolCalls": [{
        "id": "call-1",
        "name": "run_shell_command",
        "args": {"command": "ls"},
        "status": "executing",
    }],
}


def _ops(patches: list) -> list[dict]:
    return [op for patch in patches for op in patch]


def test_filename_helpers() -> None:
    assert session_id_from_filename("session-2025-abc.json") == "2025-abc"
    assert session_id_from_filename("logs.json") is None
    assert len(project_hash(WORKSPACE)) == 64


def test_snapshot_growth_replaces_changed_entries(tmp_path: Path) -> None:
    path = _write_chat(tmp_path, "s1", [USER, RUNNING_CALL])
    parser = GeminiSessionParser(path, cwd=WORKSPACE)

    ops = _ops(parser.consume())
    assert [(op["op"], op["path"]) for op in ops] == [
        ("add", "/entries/0"), ("add", "/entries/1"), ("add", "/entries/2"),
    ]
    assert ops[1]["value"]["content"]["content"] == "**Planning** start with html"
    assert "result" not in ops[2]["value"]["content"]["entry_type"]["action_type"]

    assert parser.consume() == []

    finished = dict(RUNNING_CALL, content="Done!")
    finished["toolCalls"] = [dict(RUNNING_CALL["toolCalls"][0], status="success", resultDisplay="index.html")]
    path.write_text(json.dumps(_chat([USER, finished])), encoding="utf-8")

    ops = _ops(parser.consume(final=True))
    assert [(op["op"], op["path"]) for op in ops] == [("replace", "/entries/2"), ("add", "/entries/3")]
    result = ops[0]["value"]["content"]["entry_type"]["action_type"]["result"]
    assert result == {"exit_status": {"type": "success", "success": True}, "output": "index.html"}
    assert ops[1]["value"]["content"]["content"] == "Done!"


def test_half_written_snapshot_is_ignored_until_final(tmp_path: Path) -> None:
    path = _write_chat(tmp_path, "s1", [USER])
    path.write_text('{"messages": [', encoding="utf-8")
    parser = GeminiSessionParser(path)
    assert parser.consume() == []
    assert parser.warnings == []
    assert parser.consume(final=True) == []
    assert len(parser.warnings) == 1


def test_tool_mapping(tmp_path: Path) -> None:
    message = {"id": "m3", "type": "gemini", "content": "", "toolCalls": [
        {"id": "r", "name": "read_file", "args": {"absolute_path": f"{WORKSPACE}/index.html"}},
        {"id": "e", "name": "replace", "args": {
            "file_path": f"{WORKSPACE}/app.js", "old_string": "a", "new_string": "b",
        }},
        {"id": "w", "name": "google_web_search", "args": {"query": "css grid"}},
        {"id": "x", "name": "custom_tool", "displayName": "Custom", "args": {"k": 1}, "status": "success",
         "resultDisplay": "ok"},
    ]}
    path = _write_chat(tmp_path, "s2", [message])
    actions = [
        op["value"]["content"]["entry_type"]["action_type"]
        for op in _ops(GeminiSessionParser(path, cwd=WORKSPACE).consume(final=True))
    ]
    assert actions[0] == {"action": "file_read", "path": "index.html"}
    assert actions[1]["action"] == "file_edit"
    assert actions[1]["changes"][0]["unified_diff"].startswith("--- a/app.js")
    assert actions[2] == {"action": "search", "query": "css grid"}
    assert actions[3] == {
        "action": "tool", "tool_name": "Custom", "arguments": {"k": 1},
        "result": {"type": "markdown", "value": "ok"},
    }


def test_source_lists_hash_projects(tmp_path: Path) -> None:
    _write_chat(tmp_path, "s1", [USER])
    _write_chat(tmp_path, "s2", [])
    key = project_hash(WORKSPACE)
    (tmp_path / "tmp" / key / ".project_root").write_text(WORKSPACE, encoding="utf-8")
    source = GeminiLogSource(tmp_path)

    projects = source.get_project_list()
    assert [p.id for p in projects] == [key]
    assert projects[0].name == f"Gemini Project ({key[:8]}...)"
    assert projects[0].git_repo_path == WORKSPACE

    sessions = {s.id: s for s in source.get_session_list(key)}
    assert sessions["s1"].title == "Build the landing page"
    assert sessions["s2"].title == "Gemini s2"
    assert sessions["s1"].workspace_path == WORKSPACE


REPLY = {"id": "m3", "type": "gemini", "content": "Voilà, la page est prête"}


def _truncated_in_multibyte(messages: list[dict]) -> bytes:
    raw = json.dumps(_chat(messages), ensure_ascii=False).encode("utf-8")
    cut = raw.index("à".encode("utf-8")) + 1
    return raw[:cut]


def test_undecodable_snapshot_is_retried(tmp_path: Path) -> None:
    path = _write_chat(tmp_path, "s1", [USER])
    path.write_bytes(_truncated_in_multibyte([USER, REPLY]))
    parser = GeminiSessionParser(path)

    assert parser.consume() == []
    assert parser.warnings == []

    path.write_text(json.dumps(_chat([USER, REPLY]), ensure_ascii=False), encoding="utf-8")
    ops = _ops(parser.consume(final=True))
    assert [op["value"]["content"]["content"] for op in ops] == [
        "Build the landing page", "Voilà, la page est prête",
    ]
    assert parser.warnings == []


def test_undecodable_snapshot_warns_on_final_read(tmp_path: Path) -> None:
    path = _write_chat(tmp_path, "s1", [USER])
    path.write_bytes(_truncated_in_multibyte([USER, REPLY]))
    parser = GeminiSessionParser(path)
    assert parser.consume(final=True) == []
    assert len(parser.warnings) == 1
    assert "invalid utf-8" in parser.warnings[0]


@pytest.mark.asyncio
async def test_live_tail_survives_undecodable_snapshot(tmp_path: Path) -> None:
    path = _write_chat(tmp_path, "live", [USER])
    registry = ActiveExecutionRegistry()
    key = project_hash(WORKSPACE)
    session_id = join_session_id("GEMINI", key, "live")
    registry.register(session_id)
    source = GeminiLogSource(tmp_path, registry, poll_interval=0.01)
    channel = source.stream_session(source.find_session(key, "live"), session_id)

    first = await channel.get(timeout=2)
    assert first.data[0]["path"] == "/entries/0"

    path.write_bytes(_truncated_in_multibyte([USER, REPLY]))
    await asyncio.sleep(0.1)
    path.write_text(json.dumps(_chat([USER, REPLY]), ensure_ascii=False), encoding="utf-8")
    second = await channel.get(timeout=2)
    assert second.event == "json_patch"
    assert second.data[0]["path"] == "/entries/1"

    registry.unregister(session_id)
    final = await channel.get(timeout=2)
    assert final.event == "finished"
    await channel.aclose()


def test_listing_skips_undecodable_chat(tmp_path: Path) -> None:
    _write_chat(tmp_path, "good", [USER])
    bad = _write_chat(tmp_path, "bad", [USER])
    bad.write_bytes(b'{"messages": [{"type": "user", "content": "\xff\xfe"}]}')
    key = project_hash(WORKSPACE)

    sessions = {s.id: s for s in GeminiLogSource(tmp_path).get_session_list(key)}
    assert set(sessions) == {"good", "bad"}
    assert sessions["good"].title == "Build the landing page"
    assert sessions["bad"].title == "Gemini bad"
