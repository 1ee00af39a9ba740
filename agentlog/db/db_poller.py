"""Differential poller for database-backed sources.

Each tick asks every polled adapter for its cheap ``poll_marker`` (database
and WAL stat plus a latest-row check) and emits a ``ChangeSignal`` when the
marker differs from the one seen on the previous tick.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from agentlog.db.file_watcher import ChangeSignal
from agentlog.errors import AgentLogError
from agentlog.models import Source
from agentlog.parsers.platforms.base import SourceAdapter

logger = logging.getLogger("agentlog.poller")


class DatabasePoller:
    def __init__(
        self,
        adapters: dict[Source, SourceAdapter],
        queue: "asyncio.Queue[ChangeSignal]",
        interval_seconds: float = 30.0,
    ):
        self.adapters = {source: adapter for source, adapter in adapters.items() if adapter.polled}
        self.queue = queue
        self.interval_seconds = max(0.05, float(interval_seconds))
        self._markers: dict[Source, str | None] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Database poller already running")
            return
        if not self.adapters:
            logger.info("No database-backed sources to poll")
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            "Database poller started for %s (every %.1fs)",
            [s.value for s in self.adapters],
            self.interval_seconds,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Database poller stopped")

    async def poll_once(self) -> list[ChangeSignal]:
        """Check every polled source once and queue signals for changed ones.

        The first observation of a source only records a baseline.
        """
        signals: list[ChangeSignal] = []
        for source, adapter in self.adapters.items():
            try:
                marker = await asyncio.to_thread(adapter.poll_marker)
            except (AgentLogError, OSError) as exc:
                logger.warning("Poll check failed for %s: %s", source.value, exc)
                continue
            seen = source in self._markers
            previous = self._markers.get(source)
            self._markers[source] = marker
            if seen and marker != previous:
                signal = ChangeSignal(source=source, reason="poll")
                signals.append(signal)
                await self.queue.put(signal)
                logger.info("Change detected in %s database", source.value)
        return signals

    async def _poll_loop(self) -> None:
        try:
            while self._running:
                await self.poll_once()
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("Database poller task cancelled")
            raise
        finally:
            self._running = False
