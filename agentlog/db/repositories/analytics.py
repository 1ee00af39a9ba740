"""SQLite aggregate queries behind the ``stats`` operation."""
from __future__ import annotations

import logging
from typing import Any

import aiosqlite

from agentlog.models import StatRow

logger = logging.getLogger("agentlog.db.analytics")

STAT_DIMENSIONS = (
    "day",
    "source",
    "project",
    "kind",
    "errors",
    "error_signatures",
    "tool",
    "files",
    "churn",
    "model",
)


def _range(column: str, since: str | None, until: str | None) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if since:
        clauses.append(f"{column} >= ?")
        params.append(since)
    if until:
        clauses.append(f"{column} <= ?")
        params.append(until)
    return (" AND ".join(clauses) or "1=1"), params


class SqliteAnalyticsRepository:
    """Grouped counts over events, tool calls, file touches and session metrics."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def aggregate_stats(
        self,
        dimension: str,
        since: str | None = None,
        until: str | None = None,
        limit: int = 50,
    ) -> list[StatRow]:
        handler = getattr(self, f"_by_{dimension}", None)
        if dimension not in STAT_DIMENSIONS or handler is None:
            raise ValueError(f"Unknown stats dimension: {dimension}")
        return await handler(since, until, max(1, limit))

    async def _fetch(self, query: str, params: list[Any]) -> list[aiosqlite.Row]:
        async with self.db.execute(query, params) as cur:
            return list(await cur.fetchall())

    async def _event_group(self, key_sql: str, since, until, limit, where_extra: str = "", order: str = "count DESC") -> list[StatRow]:
        window, params = _range("e.timestamp", since, until)
        rows = await self._fetch(
            f"""SELECT {key_sql} AS key, COUNT(*) AS count, COUNT(DISTINCT e.session_id) AS sessions,
                       MIN(e.timestamp) AS earliest, MAX(e.timestamp) AS latest
                FROM events e JOIN sessions s ON s.id = e.session_id
                WHERE {window}{where_extra}
                GROUP BY key ORDER BY {order} LIMIT ?""",
            [*params, limit],
        )
        return [
            StatRow(
                key=str(row["key"]),
                count=row["count"],
                sessions=row["sessions"],
                extra={"earliest": row["earliest"], "latest": row["latest"]},
            )
            for row in rows
        ]

    async def _by_day(self, since, until, limit) -> list[StatRow]:
        return await self._event_group("substr(e.timestamp, 1, 10)", since, until, limit, order="key ASC")

    async def _by_source(self, since, until, limit) -> list[StatRow]:
        return await self._event_group("s.source", since, until, limit)

    async def _by_project(self, since, until, limit) -> list[StatRow]:
        return await self._event_group("COALESCE(NULLIF(s.project, ''), '(none)')", since, until, limit)

    async def _by_kind(self, since, until, limit) -> list[StatRow]:
        return await self._event_group("e.kind", since, until, limit)

    async def _by_errors(self, since, until, limit) -> list[StatRow]:
        return await self._event_group(
            "substr(e.timestamp, 1, 10)", since, until, limit, where_extra=" AND e.kind = 'error'", order="key ASC"
        )

    async def _by_error_signatures(self, since, until, limit) -> list[StatRow]:
        return await self._event_group(
            "substr(TRIM(COALESCE(e.content, '')), 1, 80)",
            since,
            until,
            limit,
            where_extra=" AND e.kind = 'error'",
        )

    async def _by_tool(self, since, until, limit) -> list[StatRow]:
        window, params = _range("tc.started_at", since, until)
        rows = await self._fetch(
            f"""SELECT tc.tool_name AS key, COUNT(*) AS count, COUNT(DISTINCT tc.session_id) AS sessions,
                       AVG(tc.duration_ms) AS avg_ms, MAX(tc.duration_ms) AS max_ms,
                       SUM(CASE WHEN tc.success = 0 THEN 1 ELSE 0 END) AS failures
                FROM tool_calls tc
                WHERE {window}
                GROUP BY tc.tool_name ORDER BY count DESC LIMIT ?""",
            [*params, limit],
        )
        return [
            StatRow(
                key=row["key"],
                count=row["count"],
                sessions=row["sessions"],
                value=row["avg_ms"],
                extra={"maxDurationMs": row["max_ms"], "failures": row["failures"] or 0},
            )
            for row in rows
        ]

    async def _by_files(self, since, until, limit) -> list[StatRow]:
        window, params = _range("ft.touched_at", since, until)
        rows = await self._fetch(
            f"""SELECT ft.file_path AS key, COUNT(*) AS count, COUNT(DISTINCT ft.session_id) AS sessions,
                       SUM(ft.lines_added) AS added, SUM(ft.lines_removed) AS removed
                FROM files_touched ft
                WHERE {window}
                GROUP BY ft.file_path ORDER BY count DESC, key ASC LIMIT ?""",
            [*params, limit],
        )
        return [
            StatRow(
                key=row["key"],
                count=row["count"],
                sessions=row["sessions"],
                value=float((row["added"] or 0) + (row["removed"] or 0)),
                extra={"linesAdded": row["added"] or 0, "linesRemoved": row["removed"] or 0},
            )
            for row in rows
        ]

    async def _by_churn(self, since, until, limit) -> list[StatRow]:
        window, params = _range("ft.touched_at", since, until)
        rows = await self._fetch(
            f"""SELECT substr(ft.touched_at, 1, 10) AS key, COUNT(*) AS count,
                       COUNT(DISTINCT ft.session_id) AS sessions,
                       SUM(ft.lines_added) AS added, SUM(ft.lines_removed) AS removed
                FROM files_touched ft
                WHERE {window}
                GROUP BY key ORDER BY key ASC LIMIT ?""",
            [*params, limit],
        )
        return [
            StatRow(
                key=row["key"],
                count=row["count"],
                sessions=row["sessions"],
                value=float((row["added"] or 0) + (row["removed"] or 0)),
                extra={"linesAdded": row["added"] or 0, "linesRemoved": row["removed"] or 0},
            )
            for row in rows
        ]

    async def _by_model(self, since, until, limit) -> list[StatRow]:
        window, params = _range("s.created_at", since, until)
        rows = await self._fetch(
            f"""SELECT COALESCE(NULLIF(m.model, ''), 'unknown') AS key, COUNT(*) AS count,
                       COUNT(DISTINCT m.session_id) AS sessions,
                       SUM(m.estimated_cost) AS cost,
                       SUM(m.input_tokens) AS input_tokens, SUM(m.output_tokens) AS output_tokens,
                       AVG(m.p95_latency_ms) AS p95
                FROM session_metrics m JOIN sessions s ON s.id = m.session_id
                WHERE {window}
                GROUP BY key ORDER BY count DESC LIMIT ?""",
            [*params, limit],
        )
        return [
            StatRow(
                key=row["key"],
                count=row["count"],
                sessions=row["sessions"],
                value=row["cost"],
                extra={
                    "inputTokens": row["input_tokens"] or 0,
                    "outputTokens": row["output_tokens"] or 0,
                    "avgP95LatencyMs": row["p95"],
                },
            )
            for row in rows
        ]
