"""HTTP surface over the ingest engine: ingest, health, sessions, search, stats, export."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request, Response
from pydantic import BaseModel

from agentlog.errors import ConfigError, SessionNotFoundError
from agentlog.models import (
    EventKind,
    ExportFormat,
    IngestSummary,
    PaginatedResponse,
    SearchFacets,
    SearchResult,
    Session,
    SessionDetail,
    Source,
    SourceHealth,
    StatRow,
)

logger = logging.getLogger("agentlog.api")

api_router = APIRouter(prefix="/api", tags=["agentlog"])

_MEDIA_TYPES = {
    ExportFormat.MARKDOWN: "text/markdown; charset=utf-8",
    ExportFormat.JSON: "application/json",
    ExportFormat.JSONL: "application/x-ndjson",
}


class IngestRequest(BaseModel):
    source: str = "all"
    incremental: bool = True
    background: bool = False


def _get_engine(request: Request):
    engine = getattr(request.app.state, "ingest_engine", None)
    if not engine:
        raise HTTPException(status_code=503, detail="Ingest engine not initialized")
    return engine


def _export_format(value: str) -> ExportFormat:
    try:
        return ExportFormat.parse(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unsupported export format: {value}")


def _facets(
    source: Optional[Source],
    project: Optional[str],
    kind: Optional[EventKind],
    since: Optional[str],
    until: Optional[str],
) -> SearchFacets:
    return SearchFacets(source=source, project=project or None, kind=kind, since=since or None, until=until or None)


@api_router.post("/ingest")
async def trigger_ingest(request: Request, background_tasks: BackgroundTasks, body: IngestRequest):
    """Run an ingest for one source or all of them."""
    engine = _get_engine(request)
    if body.background:
        background_tasks.add_task(engine.ingest, body.source, body.incremental)
        return {"status": "ok", "mode": "background", "message": "Ingest triggered in background"}
    try:
        summaries: list[IngestSummary] = await engine.ingest(body.source, body.incremental)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"status": "ok", "mode": "foreground", "items": summaries}


@api_router.get("/health", response_model=list[SourceHealth])
async def get_health(request: Request, source: Optional[Source] = None):
    engine = _get_engine(request)
    return await engine.health(source)


@api_router.get("/sessions", response_model=PaginatedResponse[Session])
async def list_sessions(
    request: Request,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    source: Optional[Source] = None,
    project: Optional[str] = None,
    title: Optional[str] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
):
    """Sessions ordered by last update, newest first."""
    engine = _get_engine(request)
    filters = {"source": source, "project": project, "title": title, "since": since, "until": until}
    try:
        return await engine.list_sessions({k: v for k, v in filters.items() if v}, offset, limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@api_router.get("/sessions/{session_id}", response_model=SessionDetail)
async def get_session(request: Request, session_id: str, kind: Optional[EventKind] = None):
    engine = _get_engine(request)
    try:
        return await engine.show_session(session_id, kind.value if kind else None)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")


@api_router.get("/sessions/{session_id}/metrics")
async def get_session_metrics(request: Request, session_id: str):
    engine = _get_engine(request)
    try:
        return await engine.get_session_metrics(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")


@api_router.get("/search", response_model=list[SearchResult])
async def search_events(
    request: Request,
    q: str = Query(..., min_length=1),
    source: Optional[Source] = None,
    project: Optional[str] = None,
    kind: Optional[EventKind] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """Full-text event search ranked by relevance, with facet predicates."""
    engine = _get_engine(request)
    try:
        return await engine.search(q, _facets(source, project, kind, since, until), limit, offset)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@api_router.get("/search/sessions", response_model=list[Session])
async def search_sessions(
    request: Request,
    q: str = Query(..., min_length=1),
    source: Optional[Source] = None,
    project: Optional[str] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
    limit: int = Query(20, ge=1, le=500),
):
    """Sessions whose title or project matches ``q``."""
    engine = _get_engine(request)
    try:
        return await engine.search_sessions(q, _facets(source, project, None, since, until), limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@api_router.get("/stats/{dimension}", response_model=list[StatRow])
async def get_stats(
    request: Request,
    dimension: str,
    since: Optional[str] = None,
    until: Optional[str] = None,
    limit: int = Query(50, ge=1, le=1000),
):
    engine = _get_engine(request)
    try:
        return await engine.stats(dimension, since, until, limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@api_router.get("/export/session/{session_id}")
async def export_session(request: Request, session_id: str, format: str = "markdown"):
    engine = _get_engine(request)
    fmt = _export_format(format)
    try:
        body = await engine.export_session(session_id, fmt)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return Response(content=body, media_type=_MEDIA_TYPES[fmt])


@api_router.get("/export/search")
async def export_search(
    request: Request,
    q: str = Query(..., min_length=1),
    format: str = "markdown",
    source: Optional[Source] = None,
    project: Optional[str] = None,
    kind: Optional[EventKind] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
):
    engine = _get_engine(request)
    fmt = _export_format(format)
    try:
        body = await engine.export_search(q, fmt, _facets(source, project, kind, since, until), limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return Response(content=body, media_type=_MEDIA_TYPES[fmt])


@api_router.get("/facets")
async def get_facets(request: Request):
    """Distinct sources, projects and event kinds for filter pickers."""
    engine = _get_engine(request)
    return await engine.facets()


@api_router.get("/operations")
async def list_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    """List recent ingest operations."""
    engine = _get_engine(request)
    operations = await engine.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@api_router.get("/operations/{operation_id}")
async def get_operation(request: Request, operation_id: str):
    engine = _get_engine(request)
    operation = await engine.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation
