from __future__ import annotations

import json
from pathlib import Path

from agentwatch.logs.ids import encode_path
from agentwatch.logs.sources.codex import CodexLogSource, CodexSessionParser, read_session_header

WORKSPACE = "/work/api"
SESSION_ID = "0199a2f4-1111-2222-3333-444455556666"


def _meta(session_id: str = SESSION_ID, cwd: str = WORKSPACE) -> dict:
    return {
        "type": "session_meta",
        "timestamp": "2025-02-01T09:00:00Z",
        "payload": {"id": session_id, "cwd": cwd, "timestamp": "2025-02-01T09:00:00Z"},
    }


def _write(path: Path, records: list[dict]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(json.dumps(r) + "\n" for r in records), encoding="utf-8")
    return path


def _ops(patches: list) -> list[dict]:
    return [op for patch in patches for op in patch]


ROLLOUT = [
    _meta(),
    {"type": "response_item", "payload": {
        "type": "message", "role": "user",
        "content": [{"type": "input_text", "text": "<environment_context>cwd</environment_context>"}],
    }},
    {"type": "response_item", "payload": {
        "type": "message", "role": "user", "content": [{"type": "input_text", "text": "hello codex"}],
    }},
    {"type": "event_msg", "payload": {"type": "user_message", "message": "hello codex"}},
    {"type": "response_item", "payload": {
        "type": "reasoning", "summary": [{"type": "summary_text", "text": "Checking files"}],
    }},
    {"type": "response_item", "payload": {
        "type": "function_call", "name": "shell", "call_id": "call_1",
        "arguments": json.dumps({"command": ["bash", "-lc", "ls"]}),
    }},
    {"type": "response_item", "payload": {
        "type": "function_call_output", "call_id": "call_1",
        "output": json.dumps({"output": "main.py\n", "metadata": {"exit_code": 0}}),
    }},
    {"type": "response_item", "payload": {
        "type": "message", "role": "assistant", "content": [{"type": "output_text", "text": "All good"}],
    }},
    {"type": "event_msg", "payload": {"type": "agent_message", "message": "All good"}},
]


def test_read_session_header(tmp_path: Path) -> None:
    path = _write(tmp_path / "r.jsonl", [_meta()])
    header = read_session_header(path)
    assert header.session_id == SESSION_ID
    assert header.workspace_path == WORKSPACE
    assert header.started_at.year == 2025

    bad = tmp_path / "bad.jsonl"
    bad.write_text('{"type":"response_item"}\n', encoding="utf-8")
    assert read_session_header(bad) is None


def test_rollout_parsing(tmp_path: Path) -> None:
    parser = CodexSessionParser(_write(tmp_path / "r.jsonl", ROLLOUT))
    ops = _ops(parser.consume(final=True))

    adds = [op for op in ops if op["op"] == "add"]
    entries = [op["value"]["content"] for op in adds]
    assert [e["entry_type"]["type"] for e in entries] == [
        "user_message", "thinking", "tool_use", "assistant_message",
    ]
    assert entries[0]["content"] == "hello codex"
    assert entries[2]["entry_type"]["tool_name"] == "Bash"
    assert entries[2]["content"] == "`bash -lc ls`"

    replaced = [op for op in ops if op["op"] == "replace"]
    assert [op["path"] for op in replaced] == ["/entries/2"]
    result = replaced[0]["value"]["content"]["entry_type"]["action_type"]["result"]
    assert result == {"exit_status": {"type": "exit_code", "code": 0}, "output": "main.py\n"}


def test_exec_json_items_replace_on_completion(tmp_path: Path) -> None:
    records = [
        {"type": "thread.started", "thread_id": "t1"},
        {"type": "item.started", "item": {
            "id": "item_0", "type": "command_execution", "command": "bash -lc pytest", "status": "in_progress",
        }},
        {"type": "item.completed", "item": {
            "id": "item_0", "type": "command_execution", "command": "bash -lc pytest",
            "aggregated_output": "1 passed\n", "exit_code": 0, "status": "completed",
        }},
        {"type": "item.completed", "item": {"id": "item_1", "type": "agent_message", "text": "Tests pass"}},
        {"type": "turn.completed", "usage": {"input_tokens": 10, "output_tokens": 5}},
        {"type": "turn.failed", "error": {"message": "rate limited"}},
    ]
    parser = CodexSessionParser(_write(tmp_path / "exec.jsonl", records))
    ops = _ops(parser.consume(final=True))

    assert [(op["op"], op["path"]) for op in ops] == [
        ("add", "/entries/0"),
        ("add", "/entries/1"),
        ("replace", "/entries/1"),
        ("add", "/entries/2"),
        ("add", "/entries/3"),
        ("add", "/entries/4"),
    ]
    command = ops[2]["value"]["content"]["entry_type"]["action_type"]
    assert command["result"] == {"exit_status": {"type": "exit_code", "code": 0}, "output": "1 passed"}
    assert ops[4]["value"]["content"]["content"] == "Turn completed (input: 10, output: 5)"
    assert ops[5]["value"]["content"]["entry_type"] == {"type": "error_message"}


def test_patch_apply_begin_maps_file_changes(tmp_path: Path) -> None:
    records = [{"msg": {"type": "patch_apply_begin", "changes": {
        f"{WORKSPACE}/new.txt": {"content": "hi"},
        f"{WORKSPACE}/old.txt": {},
        f"{WORKSPACE}/mod.py": {"unified_diff": "@@ -1 +1 @@\n-a\n+b\n"},
    }}}]
    parser = CodexSessionParser(_write(tmp_path / "p.jsonl", records), cwd=WORKSPACE)
    actions = [op["value"]["content"]["entry_type"]["action_type"] for op in _ops(parser.consume(final=True))]
    assert actions[0] == {"action": "file_edit", "path": "new.txt", "changes": [{"action": "write", "content": "hi"}]}
    assert actions[1]["changes"] == [{"action": "delete"}]
    edit = actions[2]["changes"][0]
    assert edit["has_line_numbers"] is True
    assert edit["unified_diff"].startswith("--- a/mod.py\n+++ b/mod.py\n@@ -1 +1 @@")


def test_partial_trailing_line_waits_for_newline(tmp_path: Path) -> None:
    path = tmp_path / "tail.jsonl"
    first = json.dumps({"type": "event_msg", "payload": {"type": "agent_message", "message": "one"}})
    second = json.dumps({"type": "event_msg", "payload": {"type": "agent_message", "message": "two"}})
    path.write_text(first + "\n" + second[:10], encoding="utf-8")
    parser = CodexSessionParser(path)
    assert len(parser.consume()) == 1
    with open(path, "a", encoding="utf-8") as f:
        f.write(second[10:] + "\n")
    patches = parser.consume()
    assert [op["path"] for op in _ops(patches)] == ["/entries/1"]


def test_source_groups_sessions_by_workspace(tmp_path: Path) -> None:
    _write(tmp_path / "sessions" / "2025" / "02" / "01" / "a.jsonl", ROLLOUT)
    _write(tmp_path / "sessions" / "2025" / "02" / "02" / "b.jsonl", [_meta("other-id", "/elsewhere")])
    (tmp_path / "sessions" / "junk.jsonl").write_text("not json\n", encoding="utf-8")
    source = CodexLogSource(tmp_path)

    project_ids = {p.id for p in source.get_project_list()}
    assert project_ids == {encode_path(WORKSPACE), encode_path("/elsewhere")}

    sessions = source.get_session_list(encode_path(WORKSPACE))
    assert [s.id for s in sessions] == [SESSION_ID]
    assert sessions[0].title == "hello codex"

    other = source.get_session_list(encode_path("/elsewhere"))
    assert other[0].title == "Codex other-id"


def test_unknown_project_id(tmp_path: Path) -> None:
    _write(tmp_path / "sessions" / "a.jsonl", ROLLOUT)
    assert CodexLogSource(tmp_path).get_session_list(encode_path("/nowhere")) == []
