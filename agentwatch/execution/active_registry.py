"""Active execution registry: which session ids are backed by a live process."""
from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)


class ActiveExecutionRegistry:
    """Set of session ids whose agent process is currently running.

    Construct one per process and inject it into the execution service and
    the log sources. Every mutation is a single locked set operation, so
    concurrent launches and streams never observe a half-applied rename.
    """

    def __init__(self) -> None:
        self._active: set[str] = set()
        self._lock = threading.Lock()

    def register(self, session_id: str) -> None:
        if not session_id:
            return
        with self._lock:
            self._active.add(session_id)
        logger.debug("Registered active session %s", session_id)

    def unregister(self, session_id: str) -> None:
        if not session_id:
            return
        with self._lock:
            self._active.discard(session_id)
        logger.debug("Unregistered session %s", session_id)

    def update_session_id(self, old_session_id: str, new_session_id: str) -> bool:
        """Rename *old_session_id* to *new_session_id*.

        No-op (returns False) when either id is empty, they are equal, or
        the old id is not registered.
        """
        if not old_session_id or not new_session_id:
            return False
        if old_session_id == new_session_id:
            return False
        with self._lock:
            if old_session_id not in self._active:
                return False
            self._active.remove(old_session_id)
            self._active.add(new_session_id)
        logger.info("Active session renamed %s -> %s", old_session_id, new_session_id)
        return True

    def is_active(self, session_id: str) -> bool:
        if not session_id:
            return False
        with self._lock:
            return session_id in self._active

    def snapshot(self) -> frozenset[str]:
        """Return a point-in-time copy of all active ids."""
        with self._lock:
            return frozenset(self._active)

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)
