from __future__ import annotations

import asyncio
import json
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, patch

from aiohttp.test_utils import AioHTTPTestCase

from agentwatch.config import AgentWatchConfig
from agentwatch.logs.ids import encode_path, join_project_id, join_session_id
from agentwatch.server import AgentWatchServer


class _Pipe:
    def __init__(self) -> None:
        self.writes: list[bytes] = []

    def write(self, data: bytes) -> None:
        self.writes.append(data)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        return None

    async def read(self, n: int = -1) -> bytes:
        return b""

    async def readline(self) -> bytes:
        return b""


class _FakeProcess:
    def __init__(self) -> None:
        self.pid = 777
        self.returncode = None
        self.stdin = _Pipe()
        self.stdout = _Pipe()
        self.stderr = _Pipe()
        self._exited = asyncio.Event()

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.returncode = -15
        self._exited.set()

    def kill(self) -> None:
        self.terminate()


class TestAgentWatchServer(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        root = Path(self.tmpdir)
        self.workspace = root / "app"
        self.workspace.mkdir()
        self.actual = encode_path(str(self.workspace))

        claude_root = root / "claude"
        project_dir = claude_root / "projects" / str(self.workspace).replace("/", "-")
        project_dir.mkdir(parents=True)
        records = [
            {"type": "user", "cwd": str(self.workspace), "message": {"role": "user", "content": "hello"}},
            {"type": "system", "content": "ready"},
        ]
        (project_dir / "sess-1.jsonl").write_text(
            "\n".join(json.dumps(r) for r in records) + "\n", encoding="utf-8",
        )

        config = AgentWatchConfig(
            claude_root=claude_root,
            codex_root=root / "codex",
            gemini_root=root / "gemini",
            opencode_root=root / "opencode",
            cursor_root=root / "cursor",
            lookup_attempts=1,
            lookup_delay_seconds=0,
        )
        self.agentwatch = AgentWatchServer(config=config)
        return self.agentwatch.app

    async def test_health_and_profiles(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        assert (await resp.json())["status"] == "ok"

        resp = await self.client.get("/profiles")
        data = await resp.json()
        assert [p["label"] for p in data["profiles"]] == ["claude-code", "codex", "gemini", "opencode", "cursor"]

    async def test_log_sources_share_the_launch_registry(self):
        registry = self.agentwatch.service.registry
        assert len(registry) == 0
        assert self.agentwatch.factory.registry is registry
        assert all(source.registry is registry for source in self.agentwatch.factory.sources.values())

    async def test_projects_and_sessions(self):
        project_id = join_project_id("CLAUDE_CODE", self.actual)

        resp = await self.client.get("/projects")
        data = await resp.json()
        assert [p["id"] for p in data["projects"]] == [project_id]

        resp = await self.client.get("/projects", params={"executor": "codex"})
        assert (await resp.json())["projects"] == []

        resp = await self.client.get(f"/projects/{project_id}/sessions")
        sessions = (await resp.json())["sessions"]
        assert [s["id"] for s in sessions] == [join_session_id("CLAUDE_CODE", self.actual, "sess-1")]
        assert sessions[0]["title"] == "hello"
        assert sessions[0]["status"] == "completed"

    async def test_invalid_project_id(self):
        resp = await self.client.get("/projects/bad/sessions")
        assert resp.status == 400

    async def test_normalized_logs_stream(self):
        session_id = join_session_id("CLAUDE_CODE", self.actual, "sess-1")
        resp = await self.client.get(f"/sessions/{session_id}/normalized-logs")
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")

        body = await resp.text()
        frames = [f for f in body.split("\n\n") if f]
        assert [f.splitlines()[0] for f in frames] == [
            "event: json_patch", "event: json_patch", "event: finished",
        ]
        first = json.loads(frames[0].splitlines()[1][len("data: "):])
        assert first[0]["op"] == "add"
        assert first[0]["path"] == "/entries/0"
        assert first[0]["value"]["content"]["content"] == "hello"

    async def test_unknown_session_is_404(self):
        session_id = join_session_id("CLAUDE_CODE", self.actual, "missing")
        resp = await self.client.get(f"/sessions/{session_id}/normalized-logs")
        assert resp.status == 404
        data = await resp.json()
        assert data["retryable"] is True

    async def test_start_execution_rejects_bad_requests(self):
        resp = await self.client.post("/executions", data="not json")
        assert resp.status == 400

        resp = await self.client.post("/executions", json={"workspacePath": str(self.workspace)})
        assert resp.status == 400

        resp = await self.client.post(
            "/executions",
            json={"profileLabel": "windsurf", "workspacePath": str(self.workspace), "prompt": "hi"},
        )
        assert resp.status == 400

        resp = await self.client.post(
            "/executions",
            json={"profileLabel": "codex", "workspacePath": f"{self.tmpdir}/nope", "prompt": "hi"},
        )
        assert resp.status == 400
        assert "does not exist" in (await resp.json())["error"]

    async def test_follow_up_then_stop(self):
        process = _FakeProcess()
        session_id = join_session_id("OPENCODE", self.actual, "abc123")

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as spawn:
            resp = await self.client.post(
                "/executions",
                json={
                    "profileLabel": "opencode",
                    "workspacePath": str(self.workspace),
                    "sessionId": session_id,
                    "message": "keep going",
                },
            )
        assert resp.status == 201
        data = await resp.json()
        assert data["sessionId"] == session_id
        assert data["kind"] == "follow-up"
        assert data["projectId"] == join_project_id("OPENCODE", self.actual)
        assert list(spawn.call_args.args[-2:]) == ["--session", "abc123"]
        assert process.stdin.writes == [b"keep going"]

        resp = await self.client.post(f"/executions/{session_id}/stop")
        assert resp.status == 200
        assert (await resp.json()) == {"stopped": True, "sessionId": session_id}

    async def test_stop_unknown_execution(self):
        resp = await self.client.post("/executions/CODEX:abc:def/stop")
        assert resp.status == 404
        assert (await resp.json())["stopped"] is False
