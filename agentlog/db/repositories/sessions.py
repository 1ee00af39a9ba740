"""SQLite implementation of session and event storage.

Methods here never commit; callers wrap writes in ``write_transaction``.
"""
from __future__ import annotations

import json
import uuid
from typing import Any, Iterable

import aiosqlite

from agentlog.date_utils import format_datetime_utc
from agentlog.models import Event, EventDraft, Session, SessionDraft, event_fingerprint


def _dump(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str, ensure_ascii=False)


def _load(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


def _session_filters(filters: dict[str, Any] | None) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    filters = filters or {}
    if filters.get("source"):
        clauses.append("s.source = ?")
        params.append(str(getattr(filters["source"], "value", filters["source"])))
    if filters.get("project"):
        clauses.append("s.project = ?")
        params.append(filters["project"])
    if filters.get("since"):
        clauses.append("s.updated_at >= ?")
        params.append(filters["since"])
    if filters.get("until"):
        clauses.append("s.updated_at <= ?")
        params.append(filters["until"])
    if filters.get("title"):
        clauses.append("LOWER(COALESCE(s.title, '')) LIKE ?")
        params.append(f"%{str(filters['title']).lower()}%")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


class SqliteSessionRepository:
    """Canonical sessions plus their ordered events."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    # ── Writes ──────────────────────────────────────────────────────

    async def upsert_session(self, draft: SessionDraft, *, created_at: str, updated_at: str, artifact: str = "") -> str:
        """Insert or merge a session keyed by (source, external_id); return its local id.

        ``updated_at`` never moves backwards and ``created_at`` never moves forwards.
        """
        await self.db.execute(
            """INSERT INTO sessions (
                id, source, external_id, project, title, created_at, updated_at, artifact, raw_payload
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(source, external_id) DO UPDATE SET
                project=COALESCE(excluded.project, sessions.project),
                title=COALESCE(excluded.title, sessions.title),
                created_at=MIN(sessions.created_at, excluded.created_at),
                updated_at=MAX(sessions.updated_at, excluded.updated_at),
                artifact=excluded.artifact,
                raw_payload=excluded.raw_payload
            """,
            (
                f"S-{uuid.uuid4()}",
                draft.source.value,
                draft.externalId,
                draft.project,
                draft.title,
                created_at,
                updated_at,
                artifact,
                _dump(draft.rawPayload),
            ),
        )
        async with self.db.execute(
            "SELECT id FROM sessions WHERE source = ? AND external_id = ?",
            (draft.source.value, draft.externalId),
        ) as cur:
            row = await cur.fetchone()
        return row["id"]

    async def upsert_events(self, session_id: str, draft: SessionDraft, events: Iterable[EventDraft]) -> int:
        """Upsert events by fingerprint. Returns the number of rows inserted or changed."""
        changed = 0
        for event in events:
            cursor = await self.db.execute(
                """INSERT INTO events (
                    id, session_id, fingerprint, seq, kind, role, content,
                    timestamp, native_id, attributes, raw_payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(fingerprint) DO UPDATE SET
                    seq=excluded.seq, kind=excluded.kind, role=excluded.role,
                    content=excluded.content, timestamp=excluded.timestamp,
                    attributes=excluded.attributes, raw_payload=excluded.raw_payload
                WHERE events.content IS NOT excluded.content
                   OR events.raw_payload IS NOT excluded.raw_payload
                   OR events.kind IS NOT excluded.kind
                   OR events.role IS NOT excluded.role
                   OR events.timestamp IS NOT excluded.timestamp
                   OR events.seq IS NOT excluded.seq
                   OR events.attributes IS NOT excluded.attributes
                """,
                (
                    f"E-{uuid.uuid4()}",
                    session_id,
                    event_fingerprint(draft.source, draft.externalId, event),
                    event.sequence,
                    event.kind.value,
                    event.role.value if event.role else None,
                    event.content,
                    format_datetime_utc(event.timestamp),
                    event.nativeId,
                    _dump(event.attributes),
                    _dump(event.rawPayload),
                ),
            )
            changed += max(0, cursor.rowcount)
            await cursor.close()
        return changed

    # ── Reads ───────────────────────────────────────────────────────

    async def get_by_id(self, session_id: str) -> Session | None:
        """Look up by local id, falling back to the source-native external id."""
        async with self.db.execute(
            """SELECT s.*, (SELECT COUNT(*) FROM events e WHERE e.session_id = s.id) AS event_count
               FROM sessions s WHERE s.id = ? OR s.external_id = ?
               ORDER BY CASE WHEN s.id = ? THEN 0 ELSE 1 END LIMIT 1""",
            (session_id, session_id, session_id),
        ) as cur:
            row = await cur.fetchone()
        return self._row_to_session(row) if row else None

    async def get_by_external_id(self, source: str, external_id: str) -> Session | None:
        async with self.db.execute(
            """SELECT s.*, (SELECT COUNT(*) FROM events e WHERE e.session_id = s.id) AS event_count
               FROM sessions s WHERE s.source = ? AND s.external_id = ?""",
            (source, external_id),
        ) as cur:
            row = await cur.fetchone()
        return self._row_to_session(row) if row else None

    async def list_paginated(self, offset: int = 0, limit: int = 50, filters: dict[str, Any] | None = None) -> list[Session]:
        where, params = _session_filters(filters)
        async with self.db.execute(
            f"""SELECT s.*, (SELECT COUNT(*) FROM events e WHERE e.session_id = s.id) AS event_count
                FROM sessions s {where}
                ORDER BY s.updated_at DESC, s.rowid DESC
                LIMIT ? OFFSET ?""",
            (*params, max(1, limit), max(0, offset)),
        ) as cur:
            rows = await cur.fetchall()
        return [self._row_to_session(row) for row in rows]

    async def count(self, filters: dict[str, Any] | None = None) -> int:
        where, params = _session_filters(filters)
        async with self.db.execute(f"SELECT COUNT(*) FROM sessions s {where}", params) as cur:
            row = await cur.fetchone()
        return int(row[0] or 0)

    async def list_ids(self, source: str | None = None) -> list[str]:
        if source:
            query, params = "SELECT id FROM sessions WHERE source = ? ORDER BY updated_at DESC", (source,)
        else:
            query, params = "SELECT id FROM sessions ORDER BY updated_at DESC", ()
        async with self.db.execute(query, params) as cur:
            return [row["id"] for row in await cur.fetchall()]

    async def get_events(self, session_id: str, kind: str | None = None, limit: int | None = None) -> list[Event]:
        """Events ordered by timestamp, ties broken by source sequence."""
        query = "SELECT * FROM events WHERE session_id = ?"
        params: list[Any] = [session_id]
        if kind:
            query += " AND kind = ?"
            params.append(kind)
        query += " ORDER BY timestamp ASC, seq ASC, rowid ASC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
        return [self._row_to_event(row) for row in rows]

    async def count_events(self, session_id: str | None = None, source: str | None = None) -> int:
        if session_id:
            query, params = "SELECT COUNT(*) FROM events WHERE session_id = ?", (session_id,)
        elif source:
            query = "SELECT COUNT(*) FROM events e JOIN sessions s ON s.id = e.session_id WHERE s.source = ?"
            params = (source,)
        else:
            query, params = "SELECT COUNT(*) FROM events", ()
        async with self.db.execute(query, params) as cur:
            row = await cur.fetchone()
        return int(row[0] or 0)

    # ── Facets ──────────────────────────────────────────────────────

    async def list_sources(self) -> list[str]:
        async with self.db.execute("SELECT DISTINCT source FROM sessions ORDER BY source") as cur:
            return [row[0] for row in await cur.fetchall()]

    async def list_projects(self, source: str | None = None) -> list[str]:
        query = "SELECT DISTINCT project FROM sessions WHERE project IS NOT NULL AND project != ''"
        params: tuple = ()
        if source:
            query += " AND source = ?"
            params = (source,)
        async with self.db.execute(query + " ORDER BY project", params) as cur:
            return [row[0] for row in await cur.fetchall()]

    async def list_event_kinds(self) -> list[str]:
        async with self.db.execute("SELECT DISTINCT kind FROM events ORDER BY kind") as cur:
            return [row[0] for row in await cur.fetchall()]

    # ── Row mapping ─────────────────────────────────────────────────

    @staticmethod
    def _row_to_session(row: aiosqlite.Row) -> Session:
        keys = row.keys()
        return Session(
            id=row["id"],
            source=row["source"],
            externalId=row["external_id"],
            project=row["project"],
            title=row["title"],
            createdAt=row["created_at"],
            updatedAt=row["updated_at"],
            artifact=row["artifact"] or "",
            eventCount=int(row["event_count"] or 0) if "event_count" in keys else 0,
            rawPayload=_load(row["raw_payload"], {}),
        )

    @staticmethod
    def _row_to_event(row: aiosqlite.Row) -> Event:
        return Event(
            id=row["id"],
            sessionId=row["session_id"],
            fingerprint=row["fingerprint"],
            sequence=int(row["seq"] or 0),
            kind=row["kind"],
            role=row["role"],
            content=row["content"],
            timestamp=row["timestamp"],
            nativeId=row["native_id"],
            attributes=_load(row["attributes"], {}),
            rawPayload=_load(row["raw_payload"], {}),
        )
