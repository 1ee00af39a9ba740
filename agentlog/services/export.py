"""Render sessions and search results as Markdown, JSON or JSON lines.

Exports are read-only derived views of stored data. The JSON and JSON-lines
forms carry the full session and event records so ``parse_json_export`` and
``parse_jsonl_export`` can rebuild the same ordered event sequence.
"""
from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from agentlog.errors import ParseError
from agentlog.models import Event, EventKind, ExportFormat, SearchResult, Session, SessionMetrics

EXPORT_VERSION = 1
_PREVIEW_CHARS = 4000


def _dumps(payload: Any, indent: int | None = None) -> str:
    return json.dumps(payload, indent=indent, ensure_ascii=False, default=str)


def _ordered(events: list[Event]) -> list[Event]:
    return sorted(events, key=lambda e: (e.timestamp, e.sequence))


def _fence(text: str) -> str:
    fence = "```"
    while fence in text:
        fence += "`"
    return f"{fence}\n{text}\n{fence}"


def _session_markdown(session: Session, events: list[Event], metrics: SessionMetrics | None) -> str:
    lines = [f"# {session.title or session.externalId}", ""]
    lines.append(f"- **Source:** {session.source.value}")
    lines.append(f"- **Session:** {session.externalId}")
    if session.project:
        lines.append(f"- **Project:** {session.project}")
    lines.append(f"- **Started:** {session.createdAt}")
    lines.append(f"- **Updated:** {session.updatedAt}")
    lines.append(f"- **Events:** {len(events)}")

    if metrics is not None:
        lines += ["", "## Metrics", ""]
        lines.append(f"- Messages: {metrics.messageCount} ({metrics.userMessages} user, {metrics.assistantMessages} assistant)")
        lines.append(f"- Tool calls: {metrics.toolCallCount}, errors: {metrics.errorCount}")
        if metrics.model:
            lines.append(f"- Model: {metrics.model}")
        estimated = " (estimated)" if metrics.tokensEstimated else ""
        lines.append(f"- Tokens: {metrics.inputTokens} in / {metrics.outputTokens} out{estimated}")
        if metrics.estimatedCost is not None:
            lines.append(f"- Cost: ${metrics.estimatedCost:.4f}")
        if metrics.filesTouched:
            lines.append(f"- Files: {metrics.filesTouched} (+{metrics.linesAdded} / -{metrics.linesRemoved})")
        if metrics.p50LatencyMs is not None:
            lines.append(f"- Tool latency: p50 {metrics.p50LatencyMs} ms, p95 {metrics.p95LatencyMs} ms")

    lines += ["", "## Events", ""]
    for event in events:
        heading = event.kind.value.replace("_", " ")
        if event.role:
            heading += f" ({event.role.value})"
        lines.append(f"### {event.timestamp} {heading}")
        lines.append("")
        content = (event.content or "").strip()
        if content:
            if len(content) > _PREVIEW_CHARS:
                content = content[:_PREVIEW_CHARS] + "\n[truncated]"
            lines.append(_fence(content) if event.kind in {EventKind.TOOL_CALL, EventKind.TOOL_RESULT} else content)
        else:
            lines.append("_(no text content)_")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def export_session(
    session: Session,
    events: list[Event],
    metrics: SessionMetrics | None,
    fmt: ExportFormat | str,
) -> str:
    fmt = fmt if isinstance(fmt, ExportFormat) else ExportFormat.parse(fmt)
    ordered = _ordered(events)
    if fmt == ExportFormat.MARKDOWN:
        return _session_markdown(session, ordered, metrics)

    session_payload = session.model_dump(mode="json")
    metrics_payload = metrics.model_dump(mode="json") if metrics else None
    if fmt == ExportFormat.JSON:
        return _dumps(
            {
                "version": EXPORT_VERSION,
                "session": session_payload,
                "metrics": metrics_payload,
                "events": [e.model_dump(mode="json") for e in ordered],
            },
            indent=2,
        ) + "\n"

    lines = [_dumps({"type": "session", "version": EXPORT_VERSION, "session": session_payload, "metrics": metrics_payload})]
    lines += [_dumps({"type": "event", "event": e.model_dump(mode="json")}) for e in ordered]
    return "\n".join(lines) + "\n"


def export_search(query: str, results: list[SearchResult], fmt: ExportFormat | str) -> str:
    fmt = fmt if isinstance(fmt, ExportFormat) else ExportFormat.parse(fmt)
    if fmt == ExportFormat.JSON:
        return _dumps(
            {"query": query, "count": len(results), "results": [r.model_dump(mode="json") for r in results]},
            indent=2,
        ) + "\n"
    if fmt == ExportFormat.JSONL:
        return "".join(_dumps(r.model_dump(mode="json")) + "\n" for r in results)

    lines = [f"# Search: {query}", "", f"{len(results)} result(s)", ""]
    for index, result in enumerate(results, start=1):
        label = result.sessionTitle or result.externalId
        project = f" · {result.project}" if result.project else ""
        lines.append(f"{index}. **{result.source.value}**{project} · {label} · {result.event.timestamp}")
        lines.append(f"   {result.snippet or (result.event.content or '')[:200]}")
    return "\n".join(lines).rstrip() + "\n"


def _build(session_payload: Any, event_payloads: list[Any]) -> tuple[Session, list[Event]]:
    try:
        session = Session.model_validate(session_payload)
        events = [Event.model_validate(payload) for payload in event_payloads]
    except ValidationError as exc:
        raise ParseError("export", f"Invalid record in export: {exc.error_count()} error(s)") from exc
    return session, _ordered(events)


def parse_json_export(text: str) -> tuple[Session, list[Event]]:
    """Rebuild ``(session, ordered events)`` from ``export_session(..., "json")``."""
    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise ParseError("export", f"Invalid JSON: {exc}") from exc
    if not isinstance(payload, dict) or "session" not in payload:
        raise ParseError("export", "Missing session record")
    return _build(payload["session"], payload.get("events") or [])


def parse_jsonl_export(text: str) -> tuple[Session, list[Event]]:
    """Rebuild ``(session, ordered events)`` from ``export_session(..., "jsonl")``."""
    session_payload: Any = None
    event_payloads: list[Any] = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except ValueError as exc:
            raise ParseError("export", f"Invalid JSON: {exc}", line_no) from exc
        record_type = record.get("type") if isinstance(record, dict) else None
        if record_type == "session":
            session_payload = record.get("session")
        elif record_type == "event":
            event_payloads.append(record.get("event"))
        else:
            raise ParseError("export", f"Unknown record type {record_type!r}", line_no)
    if session_payload is None:
        raise ParseError("export", "Missing session record")
    return _build(session_payload, event_payloads)
