"""Per-artifact ingest checkpoints for incremental scanning."""
from __future__ import annotations

import aiosqlite

from agentlog.models import IngestCheckpoint


class SqliteCheckpointRepository:
    """Track the last committed change marker of every artifact."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, source: str, artifact: str) -> IngestCheckpoint | None:
        async with self.db.execute(
            "SELECT * FROM ingest_checkpoints WHERE source = ? AND artifact = ?", (source, artifact)
        ) as cur:
            row = await cur.fetchone()
        return self._row_to_checkpoint(row) if row else None

    async def upsert(self, checkpoint: IngestCheckpoint) -> None:
        await self.db.execute(
            """INSERT INTO ingest_checkpoints (source, artifact, change_marker, cursor, session_id, last_ingested_at, parse_ms)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(source, artifact) DO UPDATE SET
                 change_marker=excluded.change_marker, cursor=excluded.cursor,
                 session_id=excluded.session_id, last_ingested_at=excluded.last_ingested_at,
                 parse_ms=excluded.parse_ms""",
            (
                checkpoint.source.value,
                checkpoint.artifact,
                checkpoint.changeMarker,
                checkpoint.cursor,
                checkpoint.sessionId,
                checkpoint.lastIngestedAt,
                checkpoint.parseMs,
            ),
        )

    async def delete(self, source: str, artifact: str) -> None:
        await self.db.execute("DELETE FROM ingest_checkpoints WHERE source = ? AND artifact = ?", (source, artifact))

    async def list_all(self, source: str | None = None) -> list[IngestCheckpoint]:
        if source:
            async with self.db.execute(
                "SELECT * FROM ingest_checkpoints WHERE source = ?", (source,)
            ) as cur:
                return [self._row_to_checkpoint(r) for r in await cur.fetchall()]
        else:
            async with self.db.execute("SELECT * FROM ingest_checkpoints") as cur:
                return [self._row_to_checkpoint(r) for r in await cur.fetchall()]

    @staticmethod
    def _row_to_checkpoint(row: aiosqlite.Row) -> IngestCheckpoint:
        return IngestCheckpoint(
            source=row["source"],
            artifact=row["artifact"],
            changeMarker=row["change_marker"],
            cursor=row["cursor"] or "",
            sessionId=row["session_id"],
            lastIngestedAt=row["last_ingested_at"],
            parseMs=row["parse_ms"] or 0,
        )
