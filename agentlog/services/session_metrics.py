"""Derive per-session aggregates from stored, ordered events.

Metrics are always recomputed from the full event list of a session; nothing
here patches previous values. The output feeds ``session_metrics``,
``tool_calls`` and ``files_touched`` in the same write transaction as the
events themselves.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from agentlog import model_pricing
from agentlog.date_utils import format_datetime_utc, parse_timestamp, utc_now_iso
from agentlog.models import Event, EventKind, FileTouch, Role, Session, SessionMetrics, ToolCallRecord

_WRITE_TOOLS = {"write", "create", "write_file", "create_file"}
_EDIT_TOOLS = {"edit", "str_replace", "str_replace_editor", "replace", "edit_file"}
_MULTI_EDIT_TOOLS = {"multiedit", "multi_edit"}
_READ_TOOLS = {"read", "view", "read_file", "cat"}
_PATCH_TOOLS = {"apply_patch", "patch"}
_PATH_KEYS = ("file_path", "filePath", "path", "filename")

_ERROR_MESSAGE_LIMIT = 500


def _number(value: Any) -> float | None:
    """Numeric usage value from a raw payload; ``None`` for anything else."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _tokens(value: Any) -> int:
    number = _number(value)
    return max(0, int(number)) if number is not None else 0


def _line_count(text: Any) -> int:
    if not isinstance(text, str) or not text:
        return 0
    return len(text.splitlines())


def percentile(values: list[int], pct: float) -> int | None:
    """Nearest-rank percentile of ``values``; ``None`` for an empty list."""
    if not values:
        return None
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
    return ordered[min(rank, len(ordered)) - 1]


def parse_patch(patch: str) -> list[tuple[str, str, int, int]]:
    """Split an ``apply_patch`` envelope into ``(path, operation, added, removed)``."""
    touches: list[tuple[str, str, int, int]] = []
    current: list[Any] | None = None
    headers = (("*** Add File: ", "write"), ("*** Update File: ", "edit"), ("*** Delete File: ", "delete"))
    for line in patch.splitlines():
        header = next(((prefix, op) for prefix, op in headers if line.startswith(prefix)), None)
        if header is not None:
            if current is not None:
                touches.append(tuple(current))
            current = [line[len(header[0]):].strip(), header[1], 0, 0]
            continue
        if current is None or line.startswith("***"):
            continue
        if line.startswith("+"):
            current[2] += 1
        elif line.startswith("-"):
            current[3] += 1
    if current is not None:
        touches.append(tuple(current))
    return touches


def file_operations(tool_name: str, tool_input: dict[str, Any]) -> list[tuple[str, str, int, int]]:
    """File touches implied by one tool invocation."""
    name = tool_name.strip().lower()
    path = next((str(tool_input[k]) for k in _PATH_KEYS if isinstance(tool_input.get(k), str) and tool_input[k]), "")

    if name in _PATCH_TOOLS or (
        isinstance(tool_input.get("command"), list) and tool_input["command"][:1] == ["apply_patch"]
    ):
        command = tool_input.get("command")
        patch = tool_input.get("input") or tool_input.get("patch") or tool_input.get("patchText")
        if not isinstance(patch, str) and isinstance(command, list) and len(command) > 1:
            patch = command[1]
        return parse_patch(patch) if isinstance(patch, str) else []
    if not path:
        return []
    if name in _WRITE_TOOLS:
        return [(path, "write", _line_count(tool_input.get("content")), 0)]
    if name in _EDIT_TOOLS:
        new = tool_input.get("new_string", tool_input.get("newString", tool_input.get("new_str")))
        old = tool_input.get("old_string", tool_input.get("oldString", tool_input.get("old_str")))
        return [(path, "edit", _line_count(new), _line_count(old))]
    if name in _MULTI_EDIT_TOOLS:
        edits = tool_input.get("edits") if isinstance(tool_input.get("edits"), list) else []
        added = sum(_line_count(e.get("new_string")) for e in edits if isinstance(e, dict))
        removed = sum(_line_count(e.get("old_string")) for e in edits if isinstance(e, dict))
        return [(path, "edit", added, removed)]
    if name in _READ_TOOLS:
        return [(path, "read", 0, 0)]
    return []


@dataclass
class _PendingCall:
    event: Event
    started: datetime
    tool_name: str
    call_id: str | None
    tool_input: dict[str, Any] = field(default_factory=dict)
    record: ToolCallRecord | None = None


def _calls_in_event(event: Event) -> list[dict[str, Any]]:
    attrs = event.attributes
    calls = attrs.get("toolCalls")
    if isinstance(calls, list) and calls:
        return [c for c in calls if isinstance(c, dict)]
    return [{"id": attrs.get("callId"), "name": attrs.get("toolName") or "unknown", "input": attrs.get("toolInput")}]


def _results_in_event(event: Event) -> list[dict[str, Any]]:
    attrs = event.attributes
    results = attrs.get("toolResults")
    if isinstance(results, list) and results:
        return [r for r in results if isinstance(r, dict)]
    return [{"id": attrs.get("callId"), "isError": bool(attrs.get("isError"))}]


def pair_tool_calls(session_id: str, events: list[Event]) -> tuple[list[ToolCallRecord], list[_PendingCall]]:
    """Match calls to results by call id, else to the next unmatched result."""
    records: list[ToolCallRecord] = []
    pending: list[_PendingCall] = []
    calls: list[_PendingCall] = []

    for event in events:
        timestamp = parse_timestamp(event.timestamp)
        if timestamp is None:
            continue
        if event.kind == EventKind.TOOL_CALL:
            for call in _calls_in_event(event):
                item = _PendingCall(
                    event=event,
                    started=timestamp,
                    tool_name=str(call.get("name") or "unknown"),
                    call_id=str(call["id"]) if call.get("id") is not None else None,
                    tool_input=call.get("input") if isinstance(call.get("input"), dict) else {},
                )
                record = ToolCallRecord(
                    sessionId=session_id,
                    eventId=event.id,
                    toolName=item.tool_name,
                    callId=item.call_id,
                    startedAt=event.timestamp,
                )
                # Sources that report completion on the call itself.
                duration = _number(event.attributes.get("durationMs"))
                if duration is not None or "isError" in event.attributes:
                    if duration is not None:
                        record.durationMs = int(duration)
                        record.completedAt = format_datetime_utc(timestamp + timedelta(milliseconds=int(duration)))
                    record.success = not bool(event.attributes.get("isError"))
                    if not record.success:
                        record.errorMessage = (event.content or "")[:_ERROR_MESSAGE_LIMIT] or None
                else:
                    pending.append(item)
                item.record = record
                records.append(record)
                calls.append(item)
        elif event.kind == EventKind.TOOL_RESULT:
            for result in _results_in_event(event):
                match = None
                if result.get("id"):
                    match = next((p for p in pending if p.call_id == str(result["id"])), None)
                if match is None and pending:
                    match = pending[0]
                if match is None or match.record is None:
                    continue
                pending.remove(match)
                record = match.record
                record.completedAt = event.timestamp
                duration = _number(event.attributes.get("durationMs"))
                if duration is not None:
                    record.durationMs = int(duration)
                else:
                    record.durationMs = max(0, int((timestamp - match.started).total_seconds() * 1000))
                record.success = not bool(result.get("isError"))
                if not record.success:
                    record.errorMessage = (event.content or "")[:_ERROR_MESSAGE_LIMIT] or None
    return records, calls


def _usage_from_events(events: list[Event]) -> tuple[int, int, bool]:
    input_tokens = output_tokens = 0
    found = False
    for event in events:
        attrs = event.attributes
        if "inputTokens" in attrs or "outputTokens" in attrs:
            found = True
            input_tokens += _tokens(attrs.get("inputTokens"))
            output_tokens += _tokens(attrs.get("outputTokens"))
    return input_tokens, output_tokens, found


def _estimate_usage(events: list[Event]) -> tuple[int, int]:
    input_tokens = output_tokens = 0
    for event in events:
        tokens = model_pricing.estimate_tokens(event.content)
        if event.kind == EventKind.TOOL_RESULT or event.role == Role.USER:
            input_tokens += tokens
        elif event.role == Role.ASSISTANT:
            output_tokens += tokens
    return input_tokens, output_tokens


def compute_session_metrics(
    session: Session, events: list[Event]
) -> tuple[SessionMetrics, list[ToolCallRecord], list[FileTouch]]:
    metrics = SessionMetrics(sessionId=session.id, totalEvents=len(events), computedAt=utc_now_iso())

    for event in events:
        if event.kind == EventKind.MESSAGE:
            metrics.messageCount += 1
            if event.role == Role.USER:
                metrics.userMessages += 1
            elif event.role == Role.ASSISTANT:
                metrics.assistantMessages += 1
        elif event.kind == EventKind.TOOL_CALL:
            metrics.toolCallCount += 1
        elif event.kind == EventKind.TOOL_RESULT:
            metrics.toolResultCount += 1
        elif event.kind == EventKind.ERROR:
            metrics.errorCount += 1
        elif event.kind == EventKind.SYSTEM:
            metrics.systemCount += 1

    stamps = [t for t in (parse_timestamp(e.timestamp) for e in events) if t is not None]
    if stamps:
        metrics.durationSeconds = round((max(stamps) - min(stamps)).total_seconds(), 3)

    tool_calls, calls = pair_tool_calls(session.id, events)
    durations = [c.durationMs for c in tool_calls if c.durationMs is not None]
    if durations:
        metrics.totalLatencyMs = sum(durations)
        metrics.avgLatencyMs = round(sum(durations) / len(durations), 2)
        metrics.p50LatencyMs = percentile(durations, 50)
        metrics.p95LatencyMs = percentile(durations, 95)

    files: list[FileTouch] = []
    for call in calls:
        for path, operation, added, removed in file_operations(call.tool_name, call.tool_input):
            files.append(
                FileTouch(
                    sessionId=session.id,
                    eventId=call.event.id,
                    filePath=path,
                    operation=operation,
                    linesAdded=added,
                    linesRemoved=removed,
                    touchedAt=call.event.timestamp,
                )
            )
    metrics.filesTouched = len({f.filePath for f in files})
    metrics.linesAdded = sum(f.linesAdded for f in files)
    metrics.linesRemoved = sum(f.linesRemoved for f in files)

    metrics.model = next(
        (str(e.attributes["model"]) for e in events if e.attributes.get("model")),
        session.rawPayload.get("model") or None,
    )
    metrics.provider = next(
        (str(e.attributes["provider"]) for e in events if e.attributes.get("provider")),
        model_pricing.provider_for(metrics.model),
    )

    usage = session.rawPayload.get("usage") if isinstance(session.rawPayload.get("usage"), dict) else {}
    if "inputTokens" in usage or "outputTokens" in usage:
        metrics.inputTokens = _tokens(usage.get("inputTokens"))
        metrics.outputTokens = _tokens(usage.get("outputTokens"))
    else:
        input_tokens, output_tokens, found = _usage_from_events(events)
        if not found:
            input_tokens, output_tokens = _estimate_usage(events)
            metrics.tokensEstimated = True
        metrics.inputTokens, metrics.outputTokens = input_tokens, output_tokens

    if "cost" in usage:
        # Source-reported cost is authoritative, including an explicit null.
        metrics.estimatedCost = _number(usage["cost"])
    else:
        event_costs = [c for c in (_number(e.attributes.get("cost")) for e in events) if c is not None]
        if event_costs:
            metrics.estimatedCost = round(sum(event_costs), 6)
        else:
            metrics.estimatedCost = model_pricing.estimate_cost(metrics.model, metrics.inputTokens, metrics.outputTokens)

    return metrics, tool_calls, files
