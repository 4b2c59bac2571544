"""Filesystem wake-ups for live tails and session discovery.

``watch_ticks`` yields a batch of changes whenever something under the
watched paths changes and an empty batch at least every *interval*
seconds otherwise, so callers can also re-check state the filesystem does
not announce (a process exiting). Paths that do not exist yet are replaced
by their nearest existing ancestor inside *bound*; when nothing inside
*bound* exists the ticks fall back to a plain timer.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from pathlib import Path

from watchfiles import awatch

logger = logging.getLogger(__name__)

DEBOUNCE_MS = 50
STEP_MS = 10


def nearest_existing(path: Path, bound: Path | None = None) -> Path | None:
    """*path* or its closest existing ancestor, never leaving *bound*."""
    for candidate in (path, *path.parents):
        if bound is not None and candidate != bound and bound not in candidate.parents:
            return None
        if candidate.exists():
            return candidate
    return None


def watch_targets(paths: Iterable[Path], bound: Path | None = None) -> list[Path]:
    targets: list[Path] = []
    for path in paths:
        found = nearest_existing(Path(path), bound)
        if found is not None and found not in targets:
            targets.append(found)
    return targets


async def watch_ticks(
    paths: Iterable[Path],
    interval: float,
    *,
    bound: Path | None = None,
) -> AsyncIterator[set]:
    """Yield change batches (possibly empty) until the caller stops iterating.

    Close the generator (``contextlib.aclosing``) when breaking out early
    so the watcher thread is released promptly.
    """
    targets = watch_targets(paths, bound)
    if not targets:
        logger.debug("Nothing to watch under %s; polling every %.2fs", bound, interval)
        while True:
            await asyncio.sleep(interval)
            yield set()

    stop = asyncio.Event()
    changes = awatch(
        *targets,
        debounce=DEBOUNCE_MS,
        step=STEP_MS,
        rust_timeout=max(1, int(interval * 1000)),
        yield_on_timeout=True,
        stop_event=stop,
    )
    try:
        async for batch in changes:
            yield batch
    finally:
        stop.set()
        await changes.aclose()
