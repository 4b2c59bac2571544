"""HTTP + SSE server for agentwatch.

Thin adapter over ``LogSourceFactory`` and ``ExecutionService``: lists
profiles, projects and sessions, streams a session's normalized log as
Server-Sent Events, and starts or stops agent executions.

Usage:
    agentwatch serve [--host HOST] [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from .config import AgentWatchConfig
from .errors import (
    AgentWatchError,
    ConfigurationError,
    SessionNotFoundError,
    WorkspaceError,
)
from .execution.active_registry import ActiveExecutionRegistry
from .execution.models import ExecutionContext
from .execution.profile_registry import ProfileRegistry
from .execution.profiles import actual_project_id_for, executor_for_profile
from .execution.service import ExecutionService
from .logs.factory import LogSourceFactory
from .logs.ids import join_project_id, parse_project_id, parse_session_id

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 30.0


def error_status(exc: AgentWatchError) -> int:
    if isinstance(exc, SessionNotFoundError):
        return 404
    if isinstance(exc, (ConfigurationError, WorkspaceError)):
        return 400
    return 500


def error_response(exc: AgentWatchError) -> web.Response:
    return web.json_response(
        {"error": str(exc), "retryable": exc.retryable},
        status=error_status(exc),
    )


class AgentWatchServer:
    """REST + SSE front end. Holds no state beyond its collaborators."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        config: AgentWatchConfig | None = None,
        factory: LogSourceFactory | None = None,
        service: ExecutionService | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self.config = config or AgentWatchConfig()
        registry = ActiveExecutionRegistry()
        if factory is not None:
            registry = factory.registry
        elif service is not None:
            registry = service.registry
        self.factory = factory or LogSourceFactory(self.config, registry)
        self.service = service or ExecutionService(
            ProfileRegistry.from_config(self.config), registry, self.config,
        )
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-agentwatch-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/profiles", self._handle_list_profiles)
        r.add_get("/projects", self._handle_list_projects)
        r.add_get("/projects/{project_id}/sessions", self._handle_list_sessions)
        r.add_get("/sessions/{session_id}/normalized-logs", self._handle_normalized_logs)
        r.add_post("/executions", self._handle_start_execution)
        r.add_post("/executions/{session_id}/stop", self._handle_stop_execution)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Serve until cancelled, then stop every running agent."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner) or self._port
        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("agentwatch server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    async def _on_shutdown(self, app: web.Application) -> None:
        await self.service.shutdown()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "active_sessions": sorted(self.factory.registry.snapshot()),
        })

    async def _handle_list_profiles(self, request: web.Request) -> web.Response:
        return web.json_response({"profiles": self.service.profiles.list_profiles()})

    async def _handle_list_projects(self, request: web.Request) -> web.Response:
        executor = request.query.get("executor")
        projects = await self.factory.get_all_projects(executor)
        return web.json_response({"projects": [p.to_dict() for p in projects]})

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        project_id = request.match_info["project_id"]
        if parse_project_id(project_id) is None:
            return web.json_response(
                {"error": f"Invalid project id: {project_id}", "retryable": False},
                status=400,
            )
        sessions = await self.factory.get_sessions_for_project(project_id)
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def _handle_normalized_logs(self, request: web.Request) -> web.StreamResponse:
        session_id = request.match_info["session_id"]
        try:
            channel = await self.factory.get_session_stream(session_id)
        except SessionNotFoundError as exc:
            logger.info("Log stream requested for unknown session %s", session_id)
            return error_response(exc)

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)
        logger.info("SSE log stream opened session=%s req=%s", session_id, request.get("req_id", "unknown"))

        sent = 0
        try:
            while True:
                event = await channel.get(timeout=SSE_KEEPALIVE_SECONDS)
                if event is None:
                    await response.write(b": keepalive\n\n")
                    continue
                await response.write(event.to_sse().encode("utf-8"))
                sent += 1
                if event.is_terminal:
                    break
        except (ConnectionResetError, asyncio.CancelledError):
            logger.info("SSE client went away session=%s", session_id)
        finally:
            await channel.aclose()
            logger.info("SSE log stream closed session=%s events=%d", session_id, sent)
        return response

    def _execution_context(self, body: dict[str, Any]) -> ExecutionContext:
        profile_label = str(body.get("profileLabel") or body.get("profile") or "").strip()
        if not profile_label:
            raise ConfigurationError("", "profileLabel is required")
        executor = executor_for_profile(profile_label)
        if executor is None:
            raise ConfigurationError(profile_label, "no log source for this profile")
        workspace_path = str(body.get("workspacePath") or "").strip()
        if not workspace_path:
            raise ConfigurationError(profile_label, "workspacePath is required")

        actual_project_id = None
        session_id = body.get("sessionId")
        parsed_session = parse_session_id(session_id) if session_id else None
        parsed_project = parse_project_id(body.get("projectId") or "")
        if parsed_session is not None:
            actual_project_id = parsed_session.actual_project_id
        elif parsed_project is not None:
            actual_project_id = parsed_project.actual_project_id
        else:
            actual_project_id = actual_project_id_for(executor.value, workspace_path)
        return ExecutionContext(
            profile_label=profile_label,
            variant_label=body.get("variantLabel") or None,
            executor_type=executor.value,
            project_id=join_project_id(executor, actual_project_id),
            actual_project_id=actual_project_id,
            workspace_path=workspace_path,
        )

    async def _handle_start_execution(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"error": "Invalid JSON body", "retryable": False}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Expected a JSON object", "retryable": False}, status=400)

        try:
            context = self._execution_context(body)
            session_id = body.get("sessionId")
            if session_id:
                message = str(body.get("message") or body.get("prompt") or "")
                result = await self.service.send_follow_up(context, session_id, message)
            else:
                result = await self.service.start_new_chat(context, str(body.get("prompt") or ""))
        except AgentWatchError as exc:
            logger.warning("Execution request failed: %s", exc)
            return error_response(exc)
        return web.json_response(result.to_dict(), status=201)

    async def _handle_stop_execution(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        stopped = self.service.stop_execution(session_id)
        if not stopped:
            return web.json_response(
                {"error": f"No running execution for {session_id}", "retryable": False, "stopped": False},
                status=404,
            )
        return web.json_response({"stopped": True, "sessionId": session_id})


async def run_server(
    host: str = "127.0.0.1",
    port: int = 0,
    config: AgentWatchConfig | None = None,
) -> None:
    server = AgentWatchServer(host=host, port=port, config=config)
    await server.start()
