"""Incremental artifact → DB ingestion engine.

Discovers artifacts through the source adapters, skips those whose change
marker matches the stored checkpoint, parses the rest off the event loop and
upserts the results. Each artifact's session, events, derived metrics and
checkpoint are written in one transaction, so a checkpoint never advances
without its data.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

import aiosqlite
from pydantic import ValidationError

from agentlog import config
from agentlog.date_utils import format_datetime_utc, parse_since, utc_now_iso
from agentlog.db.connection import write_transaction
from agentlog.db.db_poller import DatabasePoller
from agentlog.db.file_watcher import ChangeSignal, FileWatcher
from agentlog.db.repositories import (
    SqliteAnalyticsRepository,
    SqliteCheckpointRepository,
    SqliteMetricsRepository,
    SqliteSearchRepository,
    SqliteSessionRepository,
)
from agentlog.errors import (
    AgentLogError,
    ConfigError,
    DiscoveryError,
    ParseError,
    SchemaDriftError,
    SessionNotFoundError,
    WriteError,
)
from agentlog.models import (
    ArtifactDescriptor,
    ExportFormat,
    HealthStatus,
    IngestCheckpoint,
    IngestSummary,
    PaginatedResponse,
    ParseResult,
    SearchFacets,
    SearchResult,
    Session,
    SessionDetail,
    SessionMetrics,
    Source,
    SourceHealth,
    StatRow,
)
from agentlog.observability import otel
from agentlog.parsers.platforms.base import SourceAdapter
from agentlog.parsers.platforms.registry import build_adapters
from agentlog.services import export as export_service
from agentlog.services.session_metrics import compute_session_metrics

logger = logging.getLogger("agentlog.sync")


def _coerce_source(value: Source | str) -> Source:
    if isinstance(value, Source):
        return value
    try:
        return Source(str(value).strip().lower())
    except ValueError as exc:
        raise ConfigError(f"Unknown source: {value}", {"known": [s.value for s in Source]}) from exc


class _ArtifactOutcome:
    __slots__ = ("imported", "failed", "total", "skipped")

    def __init__(self, imported: int = 0, failed: int = 0, total: int = 0, skipped: bool = False):
        self.imported = imported
        self.failed = failed
        self.total = total
        self.skipped = skipped


class IngestEngine:
    """Incremental marker-based source → DB ingestion.

    Writes go through ``db``; query operations use ``read_db`` (a separate
    WAL reader when the store is a file, otherwise the same connection).
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        adapters: dict[Source, SourceAdapter] | None = None,
        read_db: aiosqlite.Connection | None = None,
    ):
        self.db = db
        self.read_db = read_db or db
        self.adapters = adapters if adapters is not None else build_adapters()

        self.session_repo = SqliteSessionRepository(db)
        self.metrics_repo = SqliteMetricsRepository(db)
        self.checkpoint_repo = SqliteCheckpointRepository(db)
        self.reader = SqliteSessionRepository(self.read_db)
        self.search_repo = SqliteSearchRepository(self.read_db)
        self.analytics_repo = SqliteAnalyticsRepository(self.read_db)
        self.metrics_reader = SqliteMetricsRepository(self.read_db)

        self._source_locks: dict[Source, asyncio.Lock] = {}
        self._last_errors: dict[Source, AgentLogError] = {}

        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40

        self._queue: asyncio.Queue[ChangeSignal] | None = None
        self._watcher: FileWatcher | None = None
        self._poller: DatabasePoller | None = None
        self._reducer_task: asyncio.Task | None = None

    def _lock_for(self, source: Source) -> asyncio.Lock:
        lock = self._source_locks.get(source)
        if lock is None:
            lock = asyncio.Lock()
            self._source_locks[source] = lock
        return lock

    def _adapter(self, source: Source | str) -> SourceAdapter:
        resolved = _coerce_source(source)
        adapter = self.adapters.get(resolved)
        if adapter is None:
            raise ConfigError(f"Source not enabled: {resolved.value}")
        return adapter

    # ── Operations ──────────────────────────────────────────────────

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        """Return a single operation snapshot."""
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            if not op:
                return None
            return copy.deepcopy(op)

    async def _start_operation(self, kind: str, source: str, trigger: str, metadata: dict[str, Any]) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": op_id,
            "kind": kind,
            "source": source,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "message": "",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "counters": {},
            "metadata": metadata,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (source=%s trigger=%s)", op_id, kind, source, trigger)
        return op_id

    async def _update_operation(
        self,
        operation_id: str,
        *,
        phase: str | None = None,
        message: str | None = None,
        counters: dict[str, Any] | None = None,
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase:
                operation["phase"] = phase
            if message is not None:
                operation["message"] = message
            if counters:
                operation.setdefault("counters", {}).update(counters)
            operation["updatedAt"] = now
        if phase:
            logger.debug("Operation update [%s] %s", operation_id, phase)

    async def _finish_operation(self, operation_id: str, *, status: str, counters: dict[str, Any] | None = None, error: str = "") -> None:
        now = datetime.now(timezone.utc)
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["phase"] = "done"
            operation["updatedAt"] = now.isoformat()
            operation["finishedAt"] = now.isoformat()
            if counters:
                operation.setdefault("counters", {}).update(counters)
            if error:
                operation["error"] = error
            started_at = datetime.fromisoformat(operation["startedAt"])
            operation["durationMs"] = max(0, int((now - started_at).total_seconds() * 1000))
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)

    # ── Ingestion ───────────────────────────────────────────────────

    async def ingest(self, source: Source | str | None = None, incremental: bool = True) -> list[IngestSummary]:
        """Ingest one source, or every enabled source when ``source`` is ``None``/``"all"``."""
        if source is None or (isinstance(source, str) and source.strip().lower() == "all"):
            return await self.ingest_all(force=not incremental)
        return [await self.ingest_one(source, force=not incremental)]

    async def ingest_all(self, force: bool = False, trigger: str = "api") -> list[IngestSummary]:
        """Run every enabled source concurrently; never raises for per-source failures."""
        if not self.adapters:
            raise ConfigError("No sources are enabled; check AGENTLOG_ENABLED_SOURCES and the config file")
        sources = list(self.adapters)
        results = await asyncio.gather(
            *(self.ingest_one(source, force=force, trigger=trigger) for source in sources),
            return_exceptions=True,
        )
        summaries: list[IngestSummary] = []
        for source, result in zip(sources, results):
            if isinstance(result, IngestSummary):
                summaries.append(result)
            elif isinstance(result, Exception):
                logger.error("Ingest of %s failed: %s", source.value, result)
                summaries.append(IngestSummary(source=source, status="error", message=str(result)))
            else:
                raise result
        return summaries

    async def ingest_one(self, source: Source | str, force: bool = False, trigger: str = "api") -> IngestSummary:
        """Ingest a single source. One run per source at a time."""
        adapter = self._adapter(source)
        source = adapter.source
        async with self._lock_for(source):
            op_id = await self._start_operation("ingest", source.value, trigger, {"force": force})
            t0 = time.monotonic()
            summary = IngestSummary(source=source)
            with otel.start_span("agentlog.ingest", {"agentlog.source": source.value, "agentlog.force": force}):
                await self._update_operation(op_id, phase="discover")
                try:
                    artifacts = await asyncio.to_thread(adapter.discover)
                except Exception as exc:
                    return await self._discovery_failed(op_id, summary, exc, t0)

                self._last_errors.pop(source, None)
                summary.artifacts = len(artifacts)
                await self._update_operation(op_id, phase="ingest", counters={"artifacts": len(artifacts)})
                try:
                    for artifact in artifacts:
                        outcome = await self._ingest_artifact(adapter, artifact, force)
                        summary.imported += outcome.imported
                        summary.failed += outcome.failed
                        summary.total += outcome.total
                        summary.skipped += 1 if outcome.skipped else 0
                except BaseException as exc:
                    await self._finish_operation(op_id, status="failed", error=str(exc) or type(exc).__name__)
                    raise

            summary.durationMs = int((time.monotonic() - t0) * 1000)
            summary.status = "ok" if summary.failed == 0 else "partial"
            counters = summary.model_dump(include={"imported", "failed", "total", "skipped", "artifacts"})
            await self._finish_operation(op_id, status="completed", counters=counters)
            otel.record_ingestion(source.value, summary.status, summary.durationMs, imported=summary.imported)
            logger.info(
                "Ingested %s: imported=%d failed=%d total=%d skipped=%d artifacts=%d in %dms",
                source.value, summary.imported, summary.failed, summary.total,
                summary.skipped, summary.artifacts, summary.durationMs,
            )
            return summary

    async def _discovery_failed(self, op_id: str, summary: IngestSummary, exc: Exception, t0: float) -> IngestSummary:
        source = summary.source
        error = exc if isinstance(exc, AgentLogError) else DiscoveryError(source.value, str(exc) or type(exc).__name__)
        self._last_errors[source] = error
        summary.status = "degraded" if isinstance(error, SchemaDriftError) else "error"
        summary.message = str(error)
        summary.durationMs = int((time.monotonic() - t0) * 1000)
        logger.warning("Discovery failed for %s: %s", source.value, error)
        await self._finish_operation(op_id, status="failed", error=str(error))
        otel.record_ingestion(source.value, summary.status, summary.durationMs)
        return summary

    async def _ingest_artifact(self, adapter: SourceAdapter, artifact: ArtifactDescriptor, force: bool) -> _ArtifactOutcome:
        source = adapter.source
        if not force:
            checkpoint = await self.checkpoint_repo.get(source.value, artifact.identity)
            if checkpoint and checkpoint.changeMarker == artifact.changeMarker:
                return _ArtifactOutcome(skipped=True)

        t0 = time.monotonic()
        try:
            result = await asyncio.to_thread(adapter.parse, artifact)
        except (ParseError, OSError, ValidationError) as exc:
            logger.warning("Failed to parse %s artifact %s: %s", source.value, artifact.identity, exc)
            otel.record_parser_failure(source.value)
            return _ArtifactOutcome(failed=1, total=1)
        except Exception:
            logger.warning("Unexpected error parsing %s artifact %s", source.value, artifact.identity, exc_info=True)
            otel.record_parser_failure(source.value)
            return _ArtifactOutcome(failed=1, total=1)
        parse_ms = int((time.monotonic() - t0) * 1000)

        if result.failed:
            otel.record_parser_failure(source.value, result.failed)
        total = len(result.events) + result.failed
        try:
            imported, metrics, tool_calls = await self._write_result(artifact, result, parse_ms)
        except WriteError as exc:
            logger.warning("Write rolled back for %s artifact %s: %s", source.value, artifact.identity, exc)
            return _ArtifactOutcome(failed=result.failed + max(1, len(result.events)), total=max(1, total))
        except Exception:
            # write_transaction has already rolled back; the checkpoint stays put.
            logger.warning("Unexpected error writing %s artifact %s", source.value, artifact.identity, exc_info=True)
            return _ArtifactOutcome(failed=result.failed + max(1, len(result.events)), total=max(1, total))

        for call in tool_calls:
            status = "unknown" if call.success is None else ("success" if call.success else "error")
            otel.record_tool_result(call.toolName, status, source=source.value, duration_ms=float(call.durationMs or 0))
        otel.record_token_cost(
            source=source.value,
            model=metrics.model,
            token_input=metrics.inputTokens,
            token_output=metrics.outputTokens,
            cost_usd=metrics.estimatedCost,
        )
        return _ArtifactOutcome(imported=imported, failed=result.failed, total=total)

    async def _write_result(self, artifact: ArtifactDescriptor, result: ParseResult, parse_ms: int):
        draft = result.session
        stamps = [event.timestamp for event in result.events]
        created = draft.createdAt or (min(stamps) if stamps else None) or datetime.now(timezone.utc)
        updated = draft.updatedAt or (max(stamps) if stamps else None) or created
        if updated < created:
            updated = created

        async with write_transaction(self.db):
            session_id = await self.session_repo.upsert_session(
                draft,
                created_at=format_datetime_utc(created),
                updated_at=format_datetime_utc(updated),
                artifact=artifact.identity,
            )
            imported = await self.session_repo.upsert_events(session_id, draft, result.events)
            metrics, tool_calls = await self._recompute_in_transaction(session_id)
            await self.checkpoint_repo.upsert(
                IngestCheckpoint(
                    source=artifact.source,
                    artifact=artifact.identity,
                    changeMarker=artifact.changeMarker,
                    cursor=str(len(result.events)),
                    sessionId=session_id,
                    lastIngestedAt=utc_now_iso(),
                    parseMs=parse_ms,
                )
            )
        return imported, metrics, tool_calls

    async def _recompute_in_transaction(self, session_id: str):
        session = await self.session_repo.get_by_id(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        events = await self.session_repo.get_events(session_id)
        metrics, tool_calls, files = compute_session_metrics(session, events)
        await self.metrics_repo.replace_for_session(metrics, tool_calls, files)
        return metrics, tool_calls

    async def recompute_metrics(self, session_id: str | None = None) -> int:
        """Recompute stored metrics for one session or all of them. Returns sessions processed."""
        if session_id:
            session = await self.session_repo.get_by_id(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            ids = [session.id]
        else:
            ids = await self.session_repo.list_ids()
        for sid in ids:
            async with write_transaction(self.db):
                await self._recompute_in_transaction(sid)
        logger.info("Recomputed metrics for %d session(s)", len(ids))
        return len(ids)

    # ── Health ──────────────────────────────────────────────────────

    async def health(self, source: Source | str | None = None) -> list[SourceHealth]:
        """Adapter health checks. Disabled sources report ``unknown``; never raises."""
        targets = [_coerce_source(source)] if source else list(Source)
        results: list[SourceHealth] = []
        for target in targets:
            adapter = self.adapters.get(target)
            if adapter is None:
                results.append(SourceHealth(source=target, status=HealthStatus.UNKNOWN, message="Source disabled"))
                continue
            try:
                health = await asyncio.to_thread(adapter.health_check)
            except Exception as exc:
                health = SourceHealth(source=target, status=HealthStatus.UNHEALTHY, path=str(adapter.root), message=str(exc))
            last_error = self._last_errors.get(target)
            if isinstance(last_error, DiscoveryError):
                health.status = HealthStatus.UNHEALTHY
                health.message = f"Last discovery failed: {last_error}"
            elif last_error is not None and health.status == HealthStatus.HEALTHY:
                health.status = HealthStatus.DEGRADED
                health.message = f"{health.message}; last discovery: {last_error}"
            results.append(health)
        return results

    # ── Queries ─────────────────────────────────────────────────────

    async def list_sessions(
        self,
        filters: dict[str, Any] | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> PaginatedResponse[Session]:
        resolved = dict(filters or {})
        for key in ("since", "until"):
            if resolved.get(key):
                parsed = parse_since(str(resolved[key]))
                if parsed is None:
                    raise ValueError(f"Invalid {key} value: {resolved[key]}")
                resolved[key] = format_datetime_utc(parsed)
        items = await self.reader.list_paginated(offset, limit, resolved)
        total = await self.reader.count(resolved)
        return PaginatedResponse[Session](items=items, total=total, offset=offset, limit=limit)

    async def show_session(self, session_id: str, kind: str | None = None) -> SessionDetail:
        session = await self.reader.get_by_id(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        events = await self.reader.get_events(session.id, kind=kind)
        metrics = await self.metrics_reader.get_metrics(session.id)
        return SessionDetail(session=session, events=events, metrics=metrics)

    async def get_session_metrics(self, session_id: str) -> dict[str, Any]:
        session = await self.reader.get_by_id(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        metrics: SessionMetrics | None = await self.metrics_reader.get_metrics(session.id)
        return {
            "metrics": metrics,
            "toolCalls": await self.metrics_reader.list_tool_calls(session.id),
            "files": await self.metrics_reader.list_files(session.id),
        }

    @staticmethod
    def _resolve_facets(facets: SearchFacets | None) -> SearchFacets | None:
        if facets is None:
            return None
        resolved = facets.model_copy()
        for key in ("since", "until"):
            value = getattr(resolved, key)
            if value:
                parsed = parse_since(value)
                if parsed is None:
                    raise ValueError(f"Invalid {key} value: {value}")
                setattr(resolved, key, format_datetime_utc(parsed))
        return resolved

    async def search(self, query: str, facets: SearchFacets | None = None, limit: int = 50, offset: int = 0) -> list[SearchResult]:
        return await self.search_repo.search_events(query, self._resolve_facets(facets), limit, offset)

    async def search_sessions(self, query: str, facets: SearchFacets | None = None, limit: int = 20) -> list[Session]:
        return await self.search_repo.search_sessions(query, self._resolve_facets(facets), limit)

    async def stats(self, dimension: str, since: str | None = None, until: str | None = None, limit: int = 50) -> list[StatRow]:
        window: list[str | None] = []
        for value in (since, until):
            parsed = parse_since(value) if value else None
            if value and parsed is None:
                raise ValueError(f"Invalid time bound: {value}")
            window.append(format_datetime_utc(parsed) if parsed else None)
        return await self.analytics_repo.aggregate_stats(dimension, window[0], window[1], limit)

    async def facets(self) -> dict[str, list[str]]:
        return {
            "sources": await self.reader.list_sources(),
            "projects": await self.reader.list_projects(),
            "kinds": await self.reader.list_event_kinds(),
        }

    async def export_session(self, session_id: str, fmt: ExportFormat | str) -> str:
        detail = await self.show_session(session_id)
        return export_service.export_session(detail.session, detail.events, detail.metrics, fmt)

    async def export_search(self, query: str, fmt: ExportFormat | str, facets: SearchFacets | None = None, limit: int = 100) -> str:
        results = await self.search(query, facets, limit)
        return export_service.export_search(query, results, fmt)

    # ── Watch mode ──────────────────────────────────────────────────

    @property
    def is_watching(self) -> bool:
        return self._reducer_task is not None and not self._reducer_task.done()

    async def watch(
        self,
        sources: Iterable[Source | str] | None = None,
        *,
        poll_interval: float | None = None,
        debounce_ms: int | None = None,
    ) -> None:
        """Start change triggers and the reducer that feeds ``ingest_one``.

        Returns once everything is running; ``stop`` cancels it.
        """
        if self.is_watching:
            logger.warning("Watch mode already running")
            return
        selected = [_coerce_source(s) for s in sources] if sources else list(self.adapters)
        adapters = {s: self._adapter(s) for s in selected}
        if not adapters:
            raise ConfigError("No sources are enabled for watch mode")

        default_poll, default_debounce = config.trigger_settings()
        self._queue = asyncio.Queue()
        self._watcher = FileWatcher(adapters, self._queue, debounce_ms if debounce_ms is not None else default_debounce)
        self._poller = DatabasePoller(adapters, self._queue, poll_interval if poll_interval is not None else default_poll)

        # Catch up on anything that changed while nothing was watching.
        for source in adapters:
            self._queue.put_nowait(ChangeSignal(source=source, reason="startup"))
        self._reducer_task = asyncio.create_task(self._reduce_signals(self._queue))
        await self._watcher.start()
        await self._poller.start()
        logger.info("Watch mode started for %s", [s.value for s in adapters])

    async def stop(self) -> None:
        """Stop triggers, then the reducer. An in-flight ingest finishes or rolls back."""
        try:
            if self._watcher is not None:
                await self._watcher.stop()
            if self._poller is not None:
                await self._poller.stop()
            if self._reducer_task is not None:
                self._reducer_task.cancel()
                try:
                    await self._reducer_task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.exception("Watch reducer exited with an error")
        finally:
            self._watcher = None
            self._poller = None
            self._reducer_task = None
            self._queue = None
        logger.info("Watch mode stopped")

    async def run_watch(self, sources: Iterable[Source | str] | None = None) -> None:
        """Blocking form of ``watch`` for scripts; returns when cancelled."""
        await self.watch(sources)
        try:
            while self.is_watching:
                await asyncio.sleep(1.0)
        finally:
            await self.stop()

    async def _reduce_signals(self, queue: "asyncio.Queue[ChangeSignal]") -> None:
        """Collapse queued signals per source and run one incremental ingest each."""
        while True:
            signal = await queue.get()
            pending: dict[Source, list[ChangeSignal]] = {signal.source: [signal]}
            while not queue.empty():
                extra = queue.get_nowait()
                pending.setdefault(extra.source, []).append(extra)
            for source, signals in pending.items():
                reasons = sorted({s.reason for s in signals})
                logger.info("Change signal for %s (%s)", source.value, ", ".join(reasons))
                try:
                    await self.ingest_one(source, trigger="watch")
                except AgentLogError as exc:
                    logger.error("Watch ingest of %s failed: %s", source.value, exc)
                except Exception:
                    logger.exception("Unexpected error in watch ingest of %s", source.value)
