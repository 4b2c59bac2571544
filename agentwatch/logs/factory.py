"""Routes composite project/session ids to the matching log source."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace

from agentwatch.config import AgentWatchConfig
from agentwatch.errors import SessionNotFoundError
from agentwatch.execution.active_registry import ActiveExecutionRegistry

from .channel import PatchChannel
from .ids import (
    canonical_session_id,
    join_project_id,
    join_session_id,
    parse_project_id,
    parse_session_id,
)
from .models import ProjectInfo, SessionInfo
from .sources import (
    ClaudeLogSource,
    CodexLogSource,
    CursorLogSource,
    ExecutorLogSource,
    GeminiLogSource,
    OpenCodeLogSource,
)

logger = logging.getLogger(__name__)


@dataclass
class SessionLookup:
    """A session found by composite id, with ids already composed."""

    session: SessionInfo
    source_session: SessionInfo
    executor_type: str
    project_id: str
    actual_project_id: str
    native_session_id: str


def default_sources(
    config: AgentWatchConfig, registry: ActiveExecutionRegistry,
) -> list[ExecutorLogSource]:
    options = {
        "poll_interval": config.poll_interval_seconds,
        "channel_queue_size": config.channel_queue_size,
    }
    return [
        ClaudeLogSource(config.claude_root, registry, **options),
        CodexLogSource(config.codex_root, registry, **options),
        GeminiLogSource(config.gemini_root, registry, **options),
        OpenCodeLogSource(config.opencode_root, registry, **options),
        CursorLogSource(config.cursor_root, registry, **options),
    ]


class LogSourceFactory:
    """Aggregates every log source behind composite identifiers."""

    def __init__(
        self,
        config: AgentWatchConfig | None = None,
        registry: ActiveExecutionRegistry | None = None,
        sources: Iterable[ExecutorLogSource] | None = None,
    ) -> None:
        self.config = config or AgentWatchConfig()
        self.registry = registry if registry is not None else ActiveExecutionRegistry()
        if sources is None:
            sources = default_sources(self.config, self.registry)
        self.sources: dict[str, ExecutorLogSource] = {s.name: s for s in sources}

    def source_for(self, executor_type: str) -> ExecutorLogSource | None:
        return self.sources.get(executor_type)

    async def get_all_projects(self, executor_filter: str | None = None) -> list[ProjectInfo]:
        """Projects from every source (or just one), newest first."""
        wanted = (executor_filter or "").strip().lower()
        projects: list[ProjectInfo] = []
        for name, source in self.sources.items():
            if wanted and name.lower() != wanted:
                continue
            try:
                found = source.get_project_list()
            except Exception:
                logger.exception("Error getting projects from %s", name)
                continue
            projects.extend(replace(p, id=join_project_id(name, p.id)) for p in found)
        projects.sort(key=lambda p: p.updated_at, reverse=True)
        return projects

    async def get_sessions_for_project(self, project_id: str) -> list[SessionInfo]:
        parsed = parse_project_id(project_id)
        if parsed is None:
            logger.error("Invalid project id: %s", project_id)
            return []
        source = self.source_for(parsed.executor_type)
        if source is None:
            logger.error("Unknown executor type: %s", parsed.executor_type)
            return []
        try:
            sessions = source.get_session_list(parsed.actual_project_id)
        except Exception:
            logger.exception("Error getting sessions for project %s", project_id)
            return []
        return [
            self._compose(session, parsed.executor_type, parsed.actual_project_id)
            for session in sessions
        ]

    def _compose(
        self, session: SessionInfo, executor_type: str, actual_project_id: str,
    ) -> SessionInfo:
        session_id = join_session_id(executor_type, actual_project_id, session.id)
        active = self.registry.is_active(canonical_session_id(session_id))
        status = "running" if active else session.status
        return replace(
            session,
            id=session_id,
            project_id=join_project_id(executor_type, actual_project_id),
            status=status,
        )

    async def find_session_by_id(self, session_id: str) -> SessionLookup | None:
        parsed = parse_session_id(session_id)
        if parsed is None:
            return None
        source = self.source_for(parsed.executor_type)
        if source is None:
            return None
        try:
            session = source.find_session(parsed.actual_project_id, parsed.native_session_id)
        except Exception:
            logger.exception("Error finding session %s", session_id)
            return None
        if session is None:
            return None
        return SessionLookup(
            session=self._compose(session, parsed.executor_type, parsed.actual_project_id),
            source_session=session,
            executor_type=parsed.executor_type,
            project_id=parsed.project_id,
            actual_project_id=parsed.actual_project_id,
            native_session_id=parsed.native_session_id,
        )

    async def wait_for_session(self, session_id: str) -> SessionLookup:
        """Look a session up, retrying while its file may not exist yet."""
        attempts = max(1, self.config.lookup_attempts)
        for attempt in range(1, attempts + 1):
            found = await self.find_session_by_id(session_id)
            if found is not None:
                if attempt > 1:
                    logger.debug("Session %s found after %d attempts", session_id, attempt)
                return found
            if attempt < attempts:
                await asyncio.sleep(self.config.lookup_delay_seconds)
        raise SessionNotFoundError(session_id, attempts)

    async def get_session_stream(self, session_id: str) -> PatchChannel:
        """Open the patch stream for *session_id*.

        Raises SessionNotFoundError at once for a malformed id or unknown
        executor, and after the retry budget for a session that never shows up.
        """
        parsed = parse_session_id(session_id)
        if parsed is None:
            logger.error("Invalid session id: %s", session_id)
            raise SessionNotFoundError(session_id)
        source = self.source_for(parsed.executor_type)
        if source is None:
            logger.error("Unknown executor type: %s", parsed.executor_type)
            raise SessionNotFoundError(session_id)
        found = await self.wait_for_session(session_id)
        return source.stream_session(found.source_session, session_id)
