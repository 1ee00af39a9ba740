"""SQLite storage for derived per-session metrics, tool calls and file touches."""
from __future__ import annotations

import aiosqlite

from agentlog.models import FileTouch, SessionMetrics, ToolCallRecord


class SqliteMetricsRepository:
    """Derived tables are replaced wholesale per session, never patched."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def replace_for_session(
        self,
        metrics: SessionMetrics,
        tool_calls: list[ToolCallRecord],
        files: list[FileTouch],
    ) -> None:
        session_id = metrics.sessionId
        await self.db.execute("DELETE FROM tool_calls WHERE session_id = ?", (session_id,))
        await self.db.execute("DELETE FROM files_touched WHERE session_id = ?", (session_id,))
        await self.db.execute(
            """INSERT OR REPLACE INTO session_metrics (
                session_id, total_events, message_count, tool_call_count, tool_result_count,
                error_count, system_count, user_messages, assistant_messages, duration_seconds,
                files_touched, lines_added, lines_removed, model, provider,
                input_tokens, output_tokens, tokens_estimated, estimated_cost,
                total_latency_ms, avg_latency_ms, p50_latency_ms, p95_latency_ms, computed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                session_id,
                metrics.totalEvents,
                metrics.messageCount,
                metrics.toolCallCount,
                metrics.toolResultCount,
                metrics.errorCount,
                metrics.systemCount,
                metrics.userMessages,
                metrics.assistantMessages,
                metrics.durationSeconds,
                metrics.filesTouched,
                metrics.linesAdded,
                metrics.linesRemoved,
                metrics.model,
                metrics.provider,
                metrics.inputTokens,
                metrics.outputTokens,
                1 if metrics.tokensEstimated else 0,
                metrics.estimatedCost,
                metrics.totalLatencyMs,
                metrics.avgLatencyMs,
                metrics.p50LatencyMs,
                metrics.p95LatencyMs,
                metrics.computedAt,
            ),
        )
        if tool_calls:
            await self.db.executemany(
                """INSERT INTO tool_calls (
                    session_id, event_id, tool_name, call_id, started_at,
                    completed_at, duration_ms, success, error_message
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        call.sessionId,
                        call.eventId,
                        call.toolName,
                        call.callId,
                        call.startedAt,
                        call.completedAt,
                        call.durationMs,
                        None if call.success is None else (1 if call.success else 0),
                        call.errorMessage,
                    )
                    for call in tool_calls
                ],
            )
        if files:
            await self.db.executemany(
                """INSERT INTO files_touched (
                    session_id, event_id, file_path, operation, lines_added, lines_removed, touched_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
                [
                    (f.sessionId, f.eventId, f.filePath, f.operation, f.linesAdded, f.linesRemoved, f.touchedAt)
                    for f in files
                ],
            )

    async def get_metrics(self, session_id: str) -> SessionMetrics | None:
        async with self.db.execute(
            "SELECT * FROM session_metrics WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        return SessionMetrics(
            sessionId=row["session_id"],
            totalEvents=row["total_events"] or 0,
            messageCount=row["message_count"] or 0,
            toolCallCount=row["tool_call_count"] or 0,
            toolResultCount=row["tool_result_count"] or 0,
            errorCount=row["error_count"] or 0,
            systemCount=row["system_count"] or 0,
            userMessages=row["user_messages"] or 0,
            assistantMessages=row["assistant_messages"] or 0,
            durationSeconds=row["duration_seconds"] or 0.0,
            filesTouched=row["files_touched"] or 0,
            linesAdded=row["lines_added"] or 0,
            linesRemoved=row["lines_removed"] or 0,
            model=row["model"],
            provider=row["provider"],
            inputTokens=row["input_tokens"] or 0,
            outputTokens=row["output_tokens"] or 0,
            tokensEstimated=bool(row["tokens_estimated"]),
            estimatedCost=row["estimated_cost"],
            totalLatencyMs=row["total_latency_ms"] or 0,
            avgLatencyMs=row["avg_latency_ms"],
            p50LatencyMs=row["p50_latency_ms"],
            p95LatencyMs=row["p95_latency_ms"],
            computedAt=row["computed_at"],
        )

    async def list_tool_calls(self, session_id: str) -> list[ToolCallRecord]:
        async with self.db.execute(
            "SELECT * FROM tool_calls WHERE session_id = ? ORDER BY started_at, id", (session_id,)
        ) as cur:
            rows = await cur.fetchall()
        return [
            ToolCallRecord(
                sessionId=row["session_id"],
                eventId=row["event_id"],
                toolName=row["tool_name"],
                callId=row["call_id"],
                startedAt=row["started_at"],
                completedAt=row["completed_at"],
                durationMs=row["duration_ms"],
                success=None if row["success"] is None else bool(row["success"]),
                errorMessage=row["error_message"],
            )
            for row in rows
        ]

    async def list_files(self, session_id: str) -> list[FileTouch]:
        async with self.db.execute(
            "SELECT * FROM files_touched WHERE session_id = ? ORDER BY touched_at, id", (session_id,)
        ) as cur:
            rows = await cur.fetchall()
        return [
            FileTouch(
                sessionId=row["session_id"],
                eventId=row["event_id"],
                filePath=row["file_path"],
                operation=row["operation"],
                linesAdded=row["lines_added"] or 0,
                linesRemoved=row["lines_removed"] or 0,
                touchedAt=row["touched_at"],
            )
            for row in rows
        ]
