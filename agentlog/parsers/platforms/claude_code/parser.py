"""Parse Claude Code project transcripts (``~/.claude/projects/<project>/<session>.jsonl``)."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from agentlog.date_utils import parse_timestamp
from agentlog.errors import DiscoveryError, ParseError
from agentlog.models import (
    ArtifactDescriptor,
    EventDraft,
    EventKind,
    ParseResult,
    Role,
    SessionDraft,
    SourceHealth,
    Source,
)
from agentlog.parsers.platforms.base import (
    FailureLog,
    SourceAdapter,
    coerce_int,
    file_change_marker,
    iter_jsonl,
)

logger = logging.getLogger("agentlog.adapters.claude_code")

_EVENT_TYPES = {"user", "assistant", "system", "tool_call", "tool_result", "error"}


def _tool_result_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for block in content:
            if isinstance(block, str):
                chunks.append(block)
            elif isinstance(block, dict):
                text = block.get("text")
                if isinstance(text, str) and text.strip():
                    chunks.append(text)
                elif isinstance(block.get("content"), str):
                    chunks.append(block["content"])
        return "\n".join(chunks)
    if content is None:
        return ""
    return json.dumps(content, default=str)


def _usage_attributes(message: dict[str, Any]) -> dict[str, Any]:
    usage = message.get("usage")
    if not isinstance(usage, dict):
        return {}
    input_tokens = (
        coerce_int(usage.get("input_tokens"))
        + coerce_int(usage.get("cache_creation_input_tokens"))
        + coerce_int(usage.get("cache_read_input_tokens"))
    )
    return {
        "inputTokens": input_tokens,
        "outputTokens": coerce_int(usage.get("output_tokens")),
    }


def _blocks_to_event(entry_type: str, message: dict[str, Any]) -> tuple[EventKind, Role | None, str, dict[str, Any]]:
    """Map a nested ``message.content`` block list onto one event."""
    blocks = message.get("content")
    role = Role.ASSISTANT if entry_type == "assistant" else Role.USER
    if isinstance(blocks, str):
        return EventKind.MESSAGE, role, blocks, {}
    if not isinstance(blocks, list):
        return EventKind.MESSAGE, role, "", {}

    chunks: list[str] = []
    tool_uses: list[dict[str, Any]] = []
    tool_results: list[dict[str, Any]] = []
    for block in blocks:
        if not isinstance(block, dict):
            if isinstance(block, str):
                chunks.append(block)
            continue
        block_type = block.get("type")
        if block_type == "text":
            chunks.append(str(block.get("text") or ""))
        elif block_type == "thinking":
            thinking = str(block.get("thinking") or "").strip()
            if thinking:
                chunks.append(f"[Thinking] {thinking}")
        elif block_type == "tool_use":
            name = str(block.get("name") or "unknown")
            tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
            tool_uses.append({"id": block.get("id"), "name": name, "input": tool_input})
            chunks.append(f"[Tool: {name}] {json.dumps(tool_input, default=str, sort_keys=True)}")
        elif block_type == "tool_result":
            output = _tool_result_to_text(block.get("content"))
            tool_results.append({"id": block.get("tool_use_id"), "isError": bool(block.get("is_error"))})
            chunks.append(output)
        elif block_type == "image":
            chunks.append("[Image]")

    content = "\n".join(chunk for chunk in chunks if chunk)
    attributes: dict[str, Any] = {}
    if tool_uses:
        first = tool_uses[0]
        attributes.update({"toolName": first["name"], "callId": first["id"], "toolInput": first["input"]})
        if len(tool_uses) > 1:
            attributes["toolCalls"] = tool_uses
        return EventKind.TOOL_CALL, Role.ASSISTANT, content, attributes
    if tool_results:
        first = tool_results[0]
        attributes.update({"callId": first["id"], "isError": first["isError"]})
        if len(tool_results) > 1:
            attributes["toolResults"] = tool_results
        return EventKind.TOOL_RESULT, Role.USER, content, attributes
    return EventKind.MESSAGE, role, content, attributes


def parse_entry(entry: dict[str, Any]) -> tuple[EventKind, Role | None, str, dict[str, Any]]:
    """Classify one transcript line. Supports nested ``message`` payloads and flat legacy lines."""
    entry_type = str(entry.get("type") or "")
    message = entry.get("message") if isinstance(entry.get("message"), dict) else None

    if entry_type in {"user", "assistant"}:
        if message is not None:
            kind, role, content, attributes = _blocks_to_event(entry_type, message)
            if entry_type == "assistant":
                if message.get("model"):
                    attributes["model"] = message["model"]
                attributes.update(_usage_attributes(message))
            return kind, role, content, attributes
        role = Role.USER if entry_type == "user" else Role.ASSISTANT
        return EventKind.MESSAGE, role, _tool_result_to_text(entry.get("content")), {}
    if entry_type == "system":
        return EventKind.SYSTEM, Role.SYSTEM, _tool_result_to_text(entry.get("content")), {}
    if entry_type == "tool_call":
        name = str(entry.get("name") or "unknown")
        arguments = entry.get("arguments") if entry.get("arguments") is not None else entry.get("input")
        content = json.dumps({"name": name, "arguments": arguments}, default=str)
        attributes = {"toolName": name, "callId": entry.get("id") or entry.get("tool_use_id")}
        if isinstance(arguments, dict):
            attributes["toolInput"] = arguments
        return EventKind.TOOL_CALL, Role.ASSISTANT, content, attributes
    if entry_type == "tool_result":
        attributes = {"callId": entry.get("tool_use_id") or entry.get("id"), "isError": bool(entry.get("is_error"))}
        return EventKind.TOOL_RESULT, Role.ASSISTANT, _tool_result_to_text(entry.get("content")), attributes
    if entry_type == "error":
        text = entry.get("message") if isinstance(entry.get("message"), str) else entry.get("content")
        return EventKind.ERROR, None, _tool_result_to_text(text), {}
    return EventKind.SYSTEM, None, json.dumps(entry, default=str, sort_keys=True), {}


class ClaudeCodeAdapter(SourceAdapter):
    source = Source.CLAUDE_CODE

    def discover(self) -> list[ArtifactDescriptor]:
        if not self.root.exists():
            logger.info("Claude projects directory not found: %s", self.root)
            return []
        try:
            project_dirs = sorted(p for p in self.root.iterdir() if p.is_dir())
        except OSError as exc:
            raise DiscoveryError(self.source.value, f"Cannot read projects directory: {exc}", str(self.root)) from exc

        artifacts: list[ArtifactDescriptor] = []
        for project_dir in project_dirs:
            try:
                files = sorted(project_dir.glob("*.jsonl"))
            except OSError as exc:
                logger.warning("Skipping unreadable project directory %s: %s", project_dir, exc)
                continue
            for path in files:
                try:
                    marker = file_change_marker(path)
                except FileNotFoundError:
                    continue
                artifacts.append(
                    ArtifactDescriptor(
                        source=self.source,
                        identity=str(path),
                        changeMarker=marker,
                        path=str(path),
                        externalId=path.stem,
                        project=project_dir.name,
                    )
                )
        logger.info("Discovered %d Claude Code session files", len(artifacts))
        return artifacts

    def parse(self, artifact: ArtifactDescriptor) -> ParseResult:
        path = Path(artifact.path)
        failures = FailureLog(logger, path.name)
        events: list[EventDraft] = []
        title: str | None = None
        cwd: str | None = None
        meta: dict[str, Any] = {}
        line_count = 0

        try:
            lines = list(iter_jsonl(path))
        except OSError as exc:
            raise ParseError(str(path), f"Cannot read session file: {exc}") from exc

        for line_no, line in lines:
            line_count = line_no
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as exc:
                failures.record(f"invalid JSON ({exc.msg})", line_no)
                continue
            if not isinstance(entry, dict):
                failures.record("line is not an object", line_no)
                continue

            entry_type = str(entry.get("type") or "")
            if entry_type == "summary":
                if isinstance(entry.get("summary"), str) and entry["summary"].strip():
                    title = entry["summary"].strip()
                continue
            if not cwd and isinstance(entry.get("cwd"), str):
                cwd = entry["cwd"]
            for key in ("version", "gitBranch"):
                if entry.get(key) and key not in meta:
                    meta[key] = entry[key]

            timestamp = parse_timestamp(entry.get("timestamp"))
            if timestamp is None:
                if entry_type in _EVENT_TYPES:
                    failures.record("missing or invalid timestamp", line_no)
                continue

            kind, role, content, attributes = parse_entry(entry)
            if entry.get("parentUuid"):
                attributes["parentId"] = entry["parentUuid"]
            if entry.get("isSidechain"):
                attributes["sidechain"] = True
            native_id = entry.get("uuid") if isinstance(entry.get("uuid"), str) and entry["uuid"] else None
            draft = failures.event(
                line_no,
                kind=kind,
                role=role,
                content=content or None,
                timestamp=timestamp,
                nativeId=native_id,
                position=f"line:{line_no}",
                sequence=len(events),
                attributes=attributes,
                rawPayload=entry,
            )
            if draft is not None:
                events.append(draft)

        if failures.count:
            logger.warning("Skipped %d malformed line(s) in %s", failures.count, path)

        session = SessionDraft(
            source=self.source,
            externalId=artifact.externalId or path.stem,
            project=cwd or artifact.project,
            title=title,
            createdAt=min((e.timestamp for e in events), default=None),
            updatedAt=max((e.timestamp for e in events), default=None),
            rawPayload={
                "projectDir": artifact.project,
                "filePath": str(path),
                "lineCount": line_count,
                **meta,
            },
        )
        return ParseResult(session=session, events=events, failed=failures.count, failures=failures.reasons)

    def health_check(self) -> SourceHealth:
        return self._root_health("*/*.jsonl", "Claude Code projects")

    def owns_path(self, path: Path) -> bool:
        return path.suffix == ".jsonl" and super().owns_path(path)
