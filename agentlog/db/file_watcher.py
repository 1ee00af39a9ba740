"""File watcher service using watchfiles.

Monitors the roots of file-backed sources and pushes a ``ChangeSignal`` for
each affected source onto the shared change queue. It never ingests anything
itself; the ingest engine's reducer consumes the queue.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from watchfiles import Change, awatch

from agentlog.models import Source
from agentlog.parsers.platforms.base import SourceAdapter

logger = logging.getLogger("agentlog.watcher")


@dataclass(frozen=True)
class ChangeSignal:
    """An artifact of ``source`` possibly changed."""

    source: Source
    paths: tuple[str, ...] = field(default_factory=tuple)
    reason: str = "fs"


class FileWatcher:
    """Background file watcher that signals changed sources.

    Uses `watchfiles` (Rust-accelerated) for efficient watching.
    """

    def __init__(
        self,
        adapters: dict[Source, SourceAdapter],
        queue: "asyncio.Queue[ChangeSignal]",
        debounce_ms: int = 2000,
    ):
        self.adapters = {source: adapter for source, adapter in adapters.items() if not adapter.polled}
        self.queue = queue
        self.debounce_ms = debounce_ms
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    async def start(self) -> None:
        """Start watching source roots in a background task."""
        if self._running:
            logger.warning("File watcher already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop())
        logger.info(f"File watcher started for sources: {[s.value for s in self.adapters]}")

    async def stop(self) -> None:
        """Stop the file watcher."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def watch_paths(self) -> list[Path]:
        paths: list[Path] = []
        for adapter in self.adapters.values():
            for path in adapter.watch_paths():
                if path not in paths:
                    paths.append(path)
        return paths

    async def _watch_loop(self) -> None:
        """Main watching loop. Watches all source roots for changes."""
        watch_paths = self.watch_paths()

        if not watch_paths:
            logger.warning("No watch paths exist, watcher has nothing to monitor")
            self._running = False
            return

        logger.info(f"Watching {len(watch_paths)} directories: {[str(p) for p in watch_paths]}")

        try:
            async for changes in awatch(*watch_paths, debounce=self.debounce_ms, stop_event=self._stop_event):
                if not self._running:
                    break

                for signal in self._classify_changes(changes):
                    logger.info(f"Detected {len(signal.paths)} changed file(s) for {signal.source.value}")
                    await self.queue.put(signal)
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
        except (OSError, RuntimeError) as e:
            logger.error(f"File watcher error: {e}")
        finally:
            self._running = False

    def _classify_changes(self, changes: set[tuple[Change, str]]) -> list[ChangeSignal]:
        """Group raw watchfiles changes by owning source.

        Deletions are included: a vanished artifact is a no-op for ingestion
        but still worth a cheap rescan.
        """
        grouped: dict[Source, list[str]] = {}
        for change_type, path_str in changes:
            if change_type not in (Change.added, Change.modified, Change.deleted):
                continue
            path = Path(path_str)
            for source, adapter in self.adapters.items():
                if adapter.owns_path(path):
                    grouped.setdefault(source, []).append(path_str)
                    break
        return [
            ChangeSignal(source=source, paths=tuple(sorted(paths)), reason="fs")
            for source, paths in grouped.items()
        ]
