"""Full-text search over event content and session titles."""
from __future__ import annotations

import re
from typing import Any

import aiosqlite

from agentlog.db.repositories.sessions import SqliteSessionRepository
from agentlog.models import SearchFacets, SearchResult, Session

_TOKEN_RE = re.compile(r"[\w][\w.\-/]*", re.UNICODE)
_MAX_TERMS = 12


def build_fts_query(query: str, prefix: bool = False) -> str:
    """Turn free text into an FTS5 expression of quoted terms (implicit AND).

    Quoting keeps user input from being read as FTS5 operators.
    """
    terms: list[str] = []
    seen: set[str] = set()
    for token in _TOKEN_RE.findall(query or ""):
        lowered = token.lower()
        if lowered in seen:
            continue
        seen.add(lowered)
        quoted = '"' + token.replace('"', '""') + '"'
        terms.append(f"{quoted}*" if prefix else quoted)
        if len(terms) >= _MAX_TERMS:
            break
    return " ".join(terms)


def _facet_clauses(facets: SearchFacets | None) -> tuple[list[str], list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if facets is None:
        return clauses, params
    if facets.source:
        clauses.append("s.source = ?")
        params.append(facets.source.value)
    if facets.project:
        clauses.append("s.project = ?")
        params.append(facets.project)
    if facets.kind:
        clauses.append("e.kind = ?")
        params.append(facets.kind.value)
    if facets.since:
        clauses.append("e.timestamp >= ?")
        params.append(facets.since)
    if facets.until:
        clauses.append("e.timestamp <= ?")
        params.append(facets.until)
    return clauses, params


class SqliteSearchRepository:
    """Ranked search with facets evaluated in the same statement as the MATCH."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def search_events(
        self,
        query: str,
        facets: SearchFacets | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SearchResult]:
        match = build_fts_query(query)
        if not match:
            return []
        clauses, params = _facet_clauses(facets)
        extra = "".join(f" AND {clause}" for clause in clauses)
        async with self.db.execute(
            f"""SELECT e.*, s.source AS session_source, s.project AS session_project,
                       s.title AS session_title, s.external_id AS session_external_id,
                       bm25(events_fts) AS rank,
                       snippet(events_fts, 0, '[', ']', '...', 16) AS snippet
                FROM events_fts
                JOIN events e ON e.rowid = events_fts.rowid
                JOIN sessions s ON s.id = e.session_id
                WHERE events_fts MATCH ?{extra}
                ORDER BY rank ASC, e.timestamp DESC
                LIMIT ? OFFSET ?""",
            (match, *params, max(1, limit), max(0, offset)),
        ) as cur:
            rows = await cur.fetchall()

        return [
            SearchResult(
                event=SqliteSessionRepository._row_to_event(row),
                source=row["session_source"],
                project=row["session_project"],
                sessionTitle=row["session_title"],
                externalId=row["session_external_id"],
                rank=float(row["rank"] or 0.0),
                snippet=row["snippet"] or "",
            )
            for row in rows
        ]

    async def search_sessions(self, query: str, facets: SearchFacets | None = None, limit: int = 20) -> list[Session]:
        """Match against session titles and project labels (prefix terms)."""
        match = build_fts_query(query, prefix=True)
        if not match:
            return []
        clauses: list[str] = []
        params: list[Any] = []
        if facets and facets.source:
            clauses.append("s.source = ?")
            params.append(facets.source.value)
        if facets and facets.project:
            clauses.append("s.project = ?")
            params.append(facets.project)
        extra = "".join(f" AND {clause}" for clause in clauses)
        async with self.db.execute(
            f"""SELECT s.*, bm25(sessions_fts) AS rank
                FROM sessions_fts
                JOIN sessions s ON s.rowid = sessions_fts.rowid
                WHERE sessions_fts MATCH ?{extra}
                ORDER BY rank ASC, s.updated_at DESC
                LIMIT ?""",
            (match, *params, max(1, limit)),
        ) as cur:
            rows = await cur.fetchall()
        return [SqliteSessionRepository._row_to_session(row) for row in rows]
