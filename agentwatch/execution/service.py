"""Execution service: launches agent CLIs and tracks their processes.

A launch registers a provisional composite session id right after spawn
so status queries see it as running, then races the profile's stdout
resolver, filesystem resolver and process exit to learn the id the agent
actually minted. The winner renames the provisional id; on timeout the
provisional id stays. Exit always unregisters the current id.
"""
from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from agentwatch.config import AgentWatchConfig
from agentwatch.errors import (
    ConfigurationError,
    SessionResolutionTimeout,
    SpawnError,
    WorkspaceError,
)
from agentwatch.logs.ids import join_session_id

from .active_registry import ActiveExecutionRegistry
from .models import (
    CommandConfig,
    ExecutionContext,
    ExecutionResult,
    LaunchRequest,
    ProcessParameters,
    SessionIdResolver,
    SessionResolutionContext,
)
from .profile_registry import ProfileRegistry
from .profiles import default_parameters

logger = logging.getLogger(__name__)

_STOP_GRACE_SECONDS = 5.0
_READ_CHUNK = 4096


@dataclass
class _Execution:
    """Book-keeping for one running agent process."""
    process: asyncio.subprocess.Process
    session_id: str
    resolved: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())
    tasks: list[asyncio.Task] = field(default_factory=list)


class ExecutionService:
    """Starts new chats and follow-ups for configured agent profiles."""

    def __init__(
        self,
        profiles: ProfileRegistry | None = None,
        registry: ActiveExecutionRegistry | None = None,
        config: AgentWatchConfig | None = None,
    ) -> None:
        self.config = config or AgentWatchConfig()
        self.profiles = profiles or ProfileRegistry.from_config(self.config)
        self.registry = registry if registry is not None else ActiveExecutionRegistry()
        self._executions: dict[str, _Execution] = {}

    async def start_new_chat(self, context: ExecutionContext, prompt: str) -> ExecutionResult:
        session_id = join_session_id(
            context.executor_type, context.actual_project_id, str(uuid.uuid4()),
        )
        request = LaunchRequest(context=context, kind="new", session_id=session_id, prompt=prompt)
        return await self._launch(request)

    async def send_follow_up(
        self, context: ExecutionContext, session_id: str, message: str,
    ) -> ExecutionResult:
        request = LaunchRequest(
            context=context, kind="follow-up", session_id=session_id, message=message,
        )
        return await self._launch(request)

    def stop_execution(self, session_id: str) -> bool:
        """Ask a tracked process to terminate.

        The id is unregistered when the process actually exits, not here.
        """
        execution = self._executions.get(session_id)
        if execution is None or execution.process.returncode is not None:
            return False
        try:
            execution.process.terminate()
        except ProcessLookupError:
            return False
        logger.info("Stop requested for %s (pid=%s)", session_id, execution.process.pid)
        return True

    def active_session_ids(self) -> list[str]:
        return list(self._executions)

    async def shutdown(self) -> None:
        """Terminate every tracked process, killing stragglers."""
        executions = list(self._executions.items())
        for session_id, execution in executions:
            process = execution.process
            if process.returncode is not None:
                continue
            try:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=_STOP_GRACE_SECONDS)
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()
                logger.info("Execution %s stopped (pid=%d)", session_id, process.pid)
            except ProcessLookupError:
                pass
        for _, execution in executions:
            if not execution.tasks:
                continue
            # The exit watcher unregisters the session, so let it finish.
            *pumps, watcher = execution.tasks
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, watcher, return_exceptions=True)

    # ── launch ────────────────────────────────────────────────

    def _ensure_workspace(self, workspace_path: str) -> None:
        if not workspace_path or not Path(workspace_path).exists():
            raise WorkspaceError(workspace_path)

    def _build_parameters(self, request: LaunchRequest) -> tuple[CommandConfig, ProcessParameters]:
        label = request.context.profile_label
        profile = self.profiles.get_profile(label)
        if profile is None:
            raise ConfigurationError(label, "profile not found")
        command = self.profiles.get_command(label, request.context.variant_label)
        if command is None:
            raise ConfigurationError(label, "profile command not found")
        builder = profile.build_parameters or default_parameters
        return command, builder(command, request)

    def _compose_environment(self, command: CommandConfig, request: LaunchRequest) -> dict[str, str]:
        context = request.context
        env = dict(os.environ)
        env.update(command.env or {})
        env.update({
            "NORMALIZED_EXECUTION_KIND": request.kind,
            "NORMALIZED_EXECUTION_PROFILE": context.profile_label,
            "NORMALIZED_EXECUTION_PROJECT_ID": context.project_id,
            "NORMALIZED_EXECUTION_ACTUAL_PROJECT_ID": context.actual_project_id,
            "NORMALIZED_EXECUTION_WORKSPACE": context.workspace_path,
            "NORMALIZED_EXECUTION_SESSION_ID": request.session_id,
        })
        if context.variant_label:
            env["NORMALIZED_EXECUTION_VARIANT"] = context.variant_label
        return env

    async def _launch(self, request: LaunchRequest) -> ExecutionResult:
        context = request.context
        self._ensure_workspace(context.workspace_path)
        command, params = self._build_parameters(request)
        env = self._compose_environment(command, request)

        started_at = datetime.now(timezone.utc)
        try:
            process = await asyncio.create_subprocess_exec(
                command.binary,
                *params.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=context.workspace_path,
            )
        except OSError as exc:
            raise SpawnError(command.binary, str(exc)) from exc

        minted = request.session_id
        execution = _Execution(process=process, session_id=minted)
        self._executions[minted] = execution
        self.registry.register(minted)
        logger.info(
            "Launched %s %s for %s (pid=%s, profile=%s%s)",
            request.kind, command.binary, minted, process.pid, context.profile_label,
            f"/{context.variant_label}" if context.variant_label else "",
        )

        await self._write_stdin(process, params.stdin_payload, minted)

        resolver = params.stdout_resolver_factory() if params.stdout_resolver_factory else None
        execution.tasks = [
            asyncio.create_task(self._pump_stdout(execution, resolver)),
            asyncio.create_task(self._pump_stderr(execution)),
            asyncio.create_task(self._watch_exit(execution)),
        ]

        session_id = minted
        if resolver is not None or params.filesystem_resolver is not None:
            resolution = SessionResolutionContext(
                request=request,
                minted_session_id=minted,
                started_at=started_at,
                timeout=self.config.resolution_timeout_seconds,
            )
            native = await self._resolve_session(execution, resolver, params, resolution)
            if native:
                session_id = join_session_id(
                    context.executor_type, context.actual_project_id, native,
                )
                self._rename(execution, minted, session_id)

        return ExecutionResult(
            session_id=session_id,
            process_id=process.pid,
            started_at=started_at,
            project_id=context.project_id,
            kind=request.kind,
        )

    async def _write_stdin(
        self, process: asyncio.subprocess.Process, payload: str | None, session_id: str,
    ) -> None:
        if process.stdin is None:
            return
        try:
            if payload:
                process.stdin.write(payload.encode("utf-8"))
                await process.stdin.drain()
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("[execution:%s] stdin closed early: %s", session_id, exc)

    async def _resolve_session(
        self,
        execution: _Execution,
        resolver: SessionIdResolver | None,
        params: ProcessParameters,
        resolution: SessionResolutionContext,
    ) -> str | None:
        """First non-empty id from stdout or the filesystem, or None."""
        waiters: set[asyncio.Future] = set()
        if resolver is not None:
            waiters.add(execution.resolved)
        if params.filesystem_resolver is not None:
            waiters.add(asyncio.ensure_future(params.filesystem_resolver(resolution)))
        exit_waiter = asyncio.ensure_future(execution.process.wait())
        waiters.add(exit_waiter)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + resolution.timeout
        native: str | None = None
        try:
            while waiters and native is None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, waiters = await asyncio.wait(
                    waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED,
                )
                if not done:
                    break
                exited = exit_waiter in done
                for fut in done:
                    if fut is exit_waiter or fut.cancelled():
                        continue
                    if fut.exception() is not None:
                        logger.warning(
                            "[execution:%s] session resolver failed: %s",
                            execution.session_id, fut.exception(),
                        )
                        continue
                    if fut.result():
                        native = fut.result()
                        break
                if native is None and exited:
                    logger.info(
                        "[execution:%s] exited before reporting a session id",
                        execution.session_id,
                    )
                    return None
        finally:
            for fut in waiters:
                if fut is not execution.resolved:
                    fut.cancel()

        if native is None:
            logger.warning("%s", SessionResolutionTimeout(execution.session_id, resolution.timeout))
        return native

    def _rename(self, execution: _Execution, old_id: str, new_id: str) -> None:
        if old_id == new_id:
            return
        if self._executions.get(old_id) is execution:
            del self._executions[old_id]
            self._executions[new_id] = execution
        self.registry.update_session_id(old_id, new_id)
        execution.session_id = new_id

    # ── process I/O ───────────────────────────────────────────

    async def _pump_stdout(self, execution: _Execution, resolver: SessionIdResolver | None) -> None:
        stream = execution.process.stdout
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            if resolver is not None and not execution.resolved.done():
                found = resolver.handle_chunk(text)
                if found:
                    execution.resolved.set_result(found)
            for line in text.splitlines():
                if line.strip():
                    logger.debug("[execution:%s] %s", execution.session_id, line)

    async def _pump_stderr(self, execution: _Execution) -> None:
        stream = execution.process.stderr
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info("[execution:%s] stderr: %s", execution.session_id, text)

    async def _watch_exit(self, execution: _Execution) -> None:
        code = await execution.process.wait()
        session_id = execution.session_id
        if self._executions.get(session_id) is execution:
            del self._executions[session_id]
        self.registry.unregister(session_id)
        if not execution.resolved.done():
            execution.resolved.set_result(None)
        logger.info("Execution %s exited with code %s", session_id, code)

