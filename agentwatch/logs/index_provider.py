"""Entry index allocation for one session stream."""
from __future__ import annotations

import re
import threading
from collections.abc import Iterable
from typing import Any

_ENTRY_PATH_RE = re.compile(r"^/entries/(\d+)$")


class EntryIndexProvider:
    """Issues increasing entry indices for a single stream.

    Not shared between sessions. Issuance is locked so a second producer
    on the same stream can never receive a duplicate index.
    """

    def __init__(self, start: int = 0) -> None:
        self._next = max(0, int(start))
        self._lock = threading.Lock()

    @classmethod
    def start_from(cls, history: Iterable[Any]) -> EntryIndexProvider:
        """Resume after the highest index ever added in *history*.

        *history* may hold individual patch operations or lists of them
        (one list per ``json_patch`` event).
        """
        highest = -1
        for item in history:
            operations = item if isinstance(item, list) else [item]
            for op in operations:
                if not isinstance(op, dict) or op.get("op") != "add":
                    continue
                match = _ENTRY_PATH_RE.match(str(op.get("path") or ""))
                if match:
                    highest = max(highest, int(match.group(1)))
        return cls(highest + 1)

    def next(self) -> int:
        """Return the current index and advance."""
        with self._lock:
            value = self._next
            self._next += 1
            return value

    def current(self) -> int:
        return self._next

    def reset(self) -> None:
        with self._lock:
            self._next = 0
