"""Canonical record types shared by adapters, storage and the API layer."""
from __future__ import annotations

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator

T = TypeVar("T")


class Source(str, Enum):
    CLAUDE_CODE = "claude_code"
    CODEX = "codex"
    OPENCODE = "opencode"
    CRUSH = "crush"


class EventKind(str, Enum):
    MESSAGE = "message"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    ERROR = "error"
    SYSTEM = "system"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class ExportFormat(str, Enum):
    MARKDOWN = "markdown"
    JSON = "json"
    JSONL = "jsonl"

    @classmethod
    def parse(cls, value: str) -> "ExportFormat":
        token = (value or "").strip().lower()
        aliases = {"md": "markdown", "json-lines": "jsonl", "ndjson": "jsonl"}
        return cls(aliases.get(token, token))


def coerce_role(value: Any) -> Optional[Role]:
    token = str(value or "").strip().lower()
    if token in {"user", "human"}:
        return Role.USER
    if token in {"assistant", "agent", "model"}:
        return Role.ASSISTANT
    if token in {"system", "developer"}:
        return Role.SYSTEM
    return None


class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    total: int
    offset: int
    limit: int


# ── Adapter drafts ──────────────────────────────────────────────────

class ArtifactDescriptor(BaseModel):
    """A discoverable unit (file, database row set, exported session) with a cheap change marker."""

    source: Source
    identity: str
    changeMarker: str
    path: str = ""
    externalId: str = ""
    project: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SessionDraft(BaseModel):
    source: Source
    externalId: str
    project: Optional[str] = None
    title: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    rawPayload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("externalId")
    @classmethod
    def _external_id_not_empty(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("externalId must be non-empty")
        return value


class EventDraft(BaseModel):
    """One canonical event before storage.

    ``nativeId`` is the source's own record identifier when it has one;
    ``position`` locates the record inside its artifact and is only used for
    fingerprinting when ``nativeId`` is missing. ``attributes`` carries
    normalized fields the metrics engine reads (``toolName``, ``callId``,
    ``toolInput``, ``isError``, ``model``, ``inputTokens``, ``outputTokens``, ``durationMs``).
    """

    kind: EventKind
    role: Optional[Role] = None
    content: Optional[str] = None
    timestamp: datetime
    nativeId: Optional[str] = None
    position: str = ""
    sequence: int = 0
    attributes: dict[str, Any] = Field(default_factory=dict)
    rawPayload: Any = Field(default_factory=dict)

    @field_validator("nativeId", mode="before")
    @classmethod
    def _native_id_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class ParseResult(BaseModel):
    session: SessionDraft
    events: list[EventDraft] = Field(default_factory=list)
    failed: int = 0
    failures: list[str] = Field(default_factory=list)


def event_fingerprint(source: Source | str, external_id: str, draft: EventDraft) -> str:
    """Derive the idempotency key for an event draft.

    Records without a native identifier are keyed by position plus a content
    hash, so an in-place edit of such a record is stored as a new event.
    """
    source_value = source.value if isinstance(source, Source) else str(source)
    if draft.nativeId:
        key = f"{source_value}|{external_id}|native:{draft.nativeId}"
    else:
        body = json.dumps(draft.rawPayload, sort_keys=True, default=str)
        content_hash = hashlib.sha1(f"{draft.kind.value}|{draft.content or ''}|{body}".encode("utf-8")).hexdigest()
        key = f"{source_value}|{external_id}|pos:{draft.position or draft.sequence}|{content_hash}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


# ── Stored records ──────────────────────────────────────────────────

class Session(BaseModel):
    id: str
    source: Source
    externalId: str
    project: Optional[str] = None
    title: Optional[str] = None
    createdAt: str
    updatedAt: str
    artifact: str = ""
    eventCount: int = 0
    rawPayload: dict[str, Any] = Field(default_factory=dict)


class Event(BaseModel):
    id: str
    sessionId: str
    fingerprint: str = ""
    sequence: int = 0
    kind: EventKind
    role: Optional[Role] = None
    content: Optional[str] = None
    timestamp: str
    nativeId: Optional[str] = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    rawPayload: Any = Field(default_factory=dict)


class ToolCallRecord(BaseModel):
    sessionId: str
    eventId: str
    toolName: str
    callId: Optional[str] = None
    startedAt: str
    completedAt: Optional[str] = None
    durationMs: Optional[int] = None
    success: Optional[bool] = None
    errorMessage: Optional[str] = None


class FileTouch(BaseModel):
    sessionId: str
    eventId: str
    filePath: str
    operation: str
    linesAdded: int = 0
    linesRemoved: int = 0
    touchedAt: str


class SessionMetrics(BaseModel):
    sessionId: str
    totalEvents: int = 0
    messageCount: int = 0
    toolCallCount: int = 0
    toolResultCount: int = 0
    errorCount: int = 0
    systemCount: int = 0
    userMessages: int = 0
    assistantMessages: int = 0
    durationSeconds: float = 0.0
    filesTouched: int = 0
    linesAdded: int = 0
    linesRemoved: int = 0
    model: Optional[str] = None
    provider: Optional[str] = None
    inputTokens: int = 0
    outputTokens: int = 0
    tokensEstimated: bool = False
    estimatedCost: Optional[float] = None
    totalLatencyMs: int = 0
    avgLatencyMs: Optional[float] = None
    p50LatencyMs: Optional[int] = None
    p95LatencyMs: Optional[int] = None
    computedAt: str = ""


class IngestCheckpoint(BaseModel):
    source: Source
    artifact: str
    changeMarker: str
    cursor: str = ""
    sessionId: Optional[str] = None
    lastIngestedAt: str = ""
    parseMs: int = 0


class SourceHealth(BaseModel):
    source: Source
    status: HealthStatus = HealthStatus.UNKNOWN
    path: Optional[str] = None
    message: str = ""


class IngestSummary(BaseModel):
    source: Source
    imported: int = 0
    failed: int = 0
    total: int = 0
    skipped: int = 0
    artifacts: int = 0
    durationMs: int = 0
    status: str = "ok"
    message: str = ""


class SearchFacets(BaseModel):
    source: Optional[Source] = None
    project: Optional[str] = None
    kind: Optional[EventKind] = None
    since: Optional[str] = None
    until: Optional[str] = None


class SearchResult(BaseModel):
    event: Event
    source: Source
    project: Optional[str] = None
    sessionTitle: Optional[str] = None
    externalId: str = ""
    rank: float = 0.0
    snippet: str = ""


class StatRow(BaseModel):
    key: str
    count: int = 0
    sessions: int = 0
    value: Optional[float] = None
    extra: dict[str, Any] = Field(default_factory=dict)


class SessionDetail(BaseModel):
    session: Session
    events: list[Event] = Field(default_factory=list)
    metrics: Optional[SessionMetrics] = None
