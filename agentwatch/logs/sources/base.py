"""Shared plumbing for per-agent log sources.

A log source knows one agent's storage layout. It lists projects and
sessions, and turns a session into a stream of conversation patches via a
``SessionParser`` that owns the per-stream entry indices and the
tool-call → entry map. Streaming (completed replay vs. live tail) is
implemented once here.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from contextlib import aclosing
from pathlib import Path
from typing import Any

from agentwatch.errors import AdapterParseError, StreamIOError
from agentwatch.execution.active_registry import ActiveExecutionRegistry

from ..channel import PatchChannel
from ..ids import ExecutorType, canonical_session_id, join_session_id, parse_session_id
from ..index_provider import EntryIndexProvider
from ..models import NormalizedEntry, ProjectInfo, SessionInfo, SessionStatus
from ..patch import ConversationPatch, PatchOperation
from ..watch import watch_ticks

logger = logging.getLogger(__name__)

Patch = list[PatchOperation]


class SessionParser(ABC):
    """Incrementally converts one session's storage into patches.

    One instance per stream. ``consume`` returns the patches for whatever
    appeared since the previous call; ``final=True`` marks the last read.
    """

    def __init__(self, source: str) -> None:
        self.source = source
        self.index = EntryIndexProvider()
        self.warnings: list[str] = []
        self._entries: dict[int, NormalizedEntry] = {}
        self._tool_entries: dict[str, int] = {}

    @abstractmethod
    def consume(self, *, final: bool = False) -> list[Patch]:
        """Read new data and return the patches it produces."""

    def add(self, entry: NormalizedEntry, tool_id: str | None = None) -> Patch:
        index = self.index.next()
        self._entries[index] = entry
        if tool_id:
            self._tool_entries[tool_id] = index
        return ConversationPatch.add_normalized_entry(index, entry)

    def replace(self, index: int, entry: NormalizedEntry) -> Patch:
        self._entries[index] = entry
        return ConversationPatch.replace(index, entry)

    def tool_entry(self, tool_id: str | None) -> tuple[int, NormalizedEntry] | None:
        """Entry previously added for *tool_id*, if any."""
        if not tool_id:
            return None
        index = self._tool_entries.get(tool_id)
        if index is None:
            return None
        return index, self._entries[index]

    def warn(self, line_no: int, reason: str) -> None:
        err = AdapterParseError(self.source, line_no, reason)
        self.warnings.append(str(err))
        logger.debug("Skipping record: %s", err)


class JsonlSessionParser(SessionParser):
    """Parser for JSON Lines session files, read by byte offset."""

    def __init__(self, path: Path) -> None:
        super().__init__(path.name)
        self.path = path
        self._offset = 0
        self._partial = b""
        self._line_no = 0

    @abstractmethod
    def parse_record(self, record: dict[str, Any], line_no: int) -> list[Patch]:
        """Convert one decoded JSON object into zero or more patches."""

    def _read_new_bytes(self) -> bytes:
        try:
            with open(self.path, "rb") as f:
                f.seek(0, 2)
                size = f.tell()
                if size < self._offset:
                    logger.warning(
                        "%s shrank from %d to %d bytes; continuing from end",
                        self.path, self._offset, size,
                    )
                    self._offset = size
                    self._partial = b""
                    return b""
                f.seek(self._offset)
                data = f.read()
        except FileNotFoundError:
            return b""
        self._offset += len(data)
        return data

    def consume(self, *, final: bool = False) -> list[Patch]:
        data = self._partial + self._read_new_bytes()
        lines = data.split(b"\n")
        self._partial = lines.pop()
        if final and self._partial.strip():
            lines.append(self._partial)
            self._partial = b""

        patches: list[Patch] = []
        for raw in lines:
            self._line_no += 1
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                record = json.loads(text)
            except json.JSONDecodeError as exc:
                self.warn(self._line_no, f"invalid json: {exc.msg}")
                continue
            if not isinstance(record, dict):
                self.warn(self._line_no, "record is not an object")
                continue
            try:
                patches.extend(self.parse_record(record, self._line_no))
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                self.warn(self._line_no, f"{type(exc).__name__}: {exc}")
        return patches


class SnapshotSessionParser(SessionParser):
    """Parser for storage that is rewritten in place rather than appended.

    Each ``consume`` re-reads the whole snapshot; ``upsert`` emits an
    ``add`` for an unseen key and a ``replace`` when a known key changed.
    """

    def __init__(self, source: str) -> None:
        super().__init__(source)
        self._keyed: dict[str, tuple[int, str]] = {}

    def upsert(self, key: str, entry: NormalizedEntry) -> Patch | None:
        fingerprint = json.dumps(entry.to_dict(), sort_keys=True, default=str)
        known = self._keyed.get(key)
        if known is None:
            index = self.index.current()
            patch = self.add(entry)
            self._keyed[key] = (index, fingerprint)
            return patch
        index, previous = known
        if previous == fingerprint:
            return None
        self._keyed[key] = (index, fingerprint)
        return self.replace(index, entry)


class ExecutorLogSource(ABC):
    """Project/session discovery and streaming for one agent type."""

    executor_type: ExecutorType

    def __init__(
        self,
        root: Path,
        registry: ActiveExecutionRegistry | None = None,
        *,
        poll_interval: float = 0.5,
        channel_queue_size: int = 5000,
    ) -> None:
        self.root = root
        self.registry = registry if registry is not None else ActiveExecutionRegistry()
        self.poll_interval = poll_interval
        self.channel_queue_size = channel_queue_size

    @property
    def name(self) -> str:
        return self.executor_type.value

    @abstractmethod
    def get_project_list(self) -> list[ProjectInfo]:
        """Projects found under the storage root (empty if it is missing)."""

    @abstractmethod
    def get_session_list(self, project_id: str) -> list[SessionInfo]:
        """Sessions of *project_id* (adapter-level id), newest first."""

    @abstractmethod
    def create_parser(self, session: SessionInfo) -> SessionParser:
        """Fresh parser for streaming *session*."""

    def find_session(
        self, project_id: str, native_session_id: str,
    ) -> SessionInfo | None:
        for session in self.get_session_list(project_id):
            if session.id == native_session_id:
                return session
        return None

    def session_status(self, project_id: str, native_session_id: str) -> SessionStatus:
        composite = canonical_session_id(
            join_session_id(self.executor_type, project_id, native_session_id),
        )
        return "running" if self.registry.is_active(composite) else "completed"

    async def get_session_by_id(self, session_id: str) -> PatchChannel | None:
        """Stream a session given its composite id, or None if unknown."""
        parsed = parse_session_id(session_id)
        if parsed is None or parsed.executor_type != self.name:
            return None
        session = self.find_session(parsed.actual_project_id, parsed.native_session_id)
        if session is None:
            logger.info("[%s] Session not found: %s", self.name, session_id)
            return None
        return self.stream_session(session, session_id)

    def stream_session(self, session: SessionInfo, session_id: str) -> PatchChannel:
        """Start streaming *session*; live tail if its process is running."""
        channel = PatchChannel(session_id, maxsize=self.channel_queue_size)
        active_id = canonical_session_id(session_id)
        live = self.registry.is_active(active_id)
        parser = self.create_parser(session)
        task = asyncio.create_task(
            self._produce(session, active_id, parser, channel, live),
            name=f"log-stream:{session_id}",
        )
        channel.attach(task)
        logger.info(
            "[%s] Streaming %s (%s) from %s",
            self.name, session_id, "live" if live else "completed",
            session.file_path,
        )
        return channel

    async def _emit(self, channel: PatchChannel, patches: list[Patch]) -> None:
        for patch in patches:
            await channel.send_patch(patch)

    def watch_paths(self, session: SessionInfo) -> list[Path]:
        """Paths whose changes should wake a live tail of *session*."""
        return [Path(session.file_path).parent]

    async def _tail(
        self,
        session: SessionInfo,
        session_id: str,
        parser: SessionParser,
        channel: PatchChannel,
    ) -> None:
        ticks = watch_ticks(self.watch_paths(session), self.poll_interval, bound=self.root)
        async with aclosing(ticks):
            async for _ in ticks:
                patches = parser.consume()
                await self._emit(channel, patches)
                if patches or self.registry.is_active(session_id):
                    continue
                # Process gone: one last read, stop once nothing new shows up.
                patches = parser.consume(final=True)
                await self._emit(channel, patches)
                if not patches:
                    return

    async def _produce(
        self,
        session: SessionInfo,
        session_id: str,
        parser: SessionParser,
        channel: PatchChannel,
        live: bool,
    ) -> None:
        try:
            await self._emit(channel, parser.consume(final=not live))
            if live:
                await self._tail(session, session_id, parser, channel)
            if parser.warnings:
                logger.info(
                    "[%s] %s: skipped %d unreadable record(s)",
                    self.name, session_id, len(parser.warnings),
                )
            await channel.finish()
        except asyncio.CancelledError:
            logger.debug("[%s] Stream producer for %s cancelled", self.name, session_id)
            raise
        except OSError as exc:
            err = StreamIOError(session.file_path, str(exc))
            logger.error("[%s] %s", self.name, err)
            await channel.fail(str(err))
        except Exception as exc:
            logger.exception("[%s] Stream producer for %s failed", self.name, session_id)
            await channel.fail(f"{type(exc).__name__}: {exc}")
