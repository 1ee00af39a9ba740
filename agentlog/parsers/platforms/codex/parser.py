"""Parse Codex rollout logs (``$CODEX_HOME/sessions/YYYY/MM/DD/rollout-*.jsonl``)."""
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
    Source,
    SourceHealth,
    coerce_role,
)
from agentlog.parsers.platforms.base import (
    FailureLog,
    SourceAdapter,
    coerce_int,
    file_change_marker,
    iter_jsonl,
    safe_json_dict,
)

logger = logging.getLogger("agentlog.adapters.codex")

ROLLOUT_GLOB = "[0-9][0-9][0-9][0-9]/[0-9][0-9]/[0-9][0-9]/rollout-*.jsonl"
ENCRYPTED_REASONING = "[Reasoning content encrypted by Codex]"


def session_id_from_filename(path: Path) -> str:
    name = path.name
    if name.startswith("rollout-") and name.endswith(".jsonl"):
        return name[len("rollout-"):-len(".jsonl")]
    return path.stem


def project_from_meta(meta: dict[str, Any]) -> str | None:
    """``repo/branch`` when git metadata is present, else the working directory."""
    git = meta.get("git") if isinstance(meta.get("git"), dict) else {}
    repo_url = git.get("repository_url")
    if isinstance(repo_url, str) and repo_url.strip():
        repo_name = repo_url.rstrip("/").rsplit("/", 1)[-1]
        if repo_name.endswith(".git"):
            repo_name = repo_name[:-4]
        return f"{repo_name}/{git.get('branch') or 'main'}"
    cwd = meta.get("cwd")
    return cwd if isinstance(cwd, str) and cwd else None


def _text_blocks(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    texts = [
        str(block.get("text") or "")
        for block in content
        if isinstance(block, dict) and block.get("type") in {"input_text", "output_text", "text"}
    ]
    return "\n".join(text for text in texts if text)


def _parse_output(raw_output: Any) -> tuple[str, dict[str, Any]]:
    """Tool outputs are often a JSON string with ``output`` and ``metadata.exit_code``."""
    attributes: dict[str, Any] = {}
    if isinstance(raw_output, dict):
        payload = raw_output
    else:
        payload = safe_json_dict(raw_output)
    if not payload:
        return ("" if raw_output is None else str(raw_output)), attributes
    text = payload.get("output") if isinstance(payload.get("output"), str) else payload.get("content")
    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
    if "exit_code" in metadata:
        attributes["exitCode"] = metadata["exit_code"]
        attributes["isError"] = coerce_int(metadata["exit_code"]) != 0
    if payload.get("success") is False:
        attributes["isError"] = True
    if "duration_seconds" in metadata:
        try:
            attributes["durationMs"] = int(float(metadata["duration_seconds"]) * 1000)
        except (TypeError, ValueError):
            pass
    return (text if isinstance(text, str) else json.dumps(payload, default=str)), attributes


def map_response_item(payload: dict[str, Any]) -> tuple[EventKind, Role | None, str, dict[str, Any], str | None] | None:
    """Return ``(kind, role, content, attributes, native_id)`` or ``None`` for ignored items."""
    item_type = payload.get("type")
    if item_type == "message":
        return EventKind.MESSAGE, coerce_role(payload.get("role")), _text_blocks(payload.get("content")), {}, payload.get("id")
    if item_type in {"function_call", "custom_tool_call", "local_shell_call"}:
        name = str(payload.get("name") or ("shell" if item_type == "local_shell_call" else "unknown"))
        arguments = payload.get("arguments", payload.get("input", payload.get("action")))
        if arguments is None:
            arguments = "{}"
        arguments_text = arguments if isinstance(arguments, str) else json.dumps(arguments, default=str)
        call_id = payload.get("call_id") or payload.get("id")
        attributes: dict[str, Any] = {"toolName": name, "callId": call_id}
        tool_input = safe_json_dict(arguments) if not isinstance(arguments, dict) else arguments
        if tool_input:
            attributes["toolInput"] = tool_input
        elif isinstance(arguments, str) and arguments.strip():
            attributes["toolInput"] = {"input": arguments}
        native_id = f"{call_id}:call" if call_id else None
        return (
            EventKind.TOOL_CALL,
            Role.ASSISTANT,
            f"Called {name} with arguments: {arguments_text}",
            attributes,
            native_id,
        )
    if item_type in {"function_call_output", "custom_tool_call_output"}:
        text, attributes = _parse_output(payload.get("output"))
        call_id = payload.get("call_id")
        attributes["callId"] = call_id
        native_id = f"{call_id}:output" if call_id else None
        return EventKind.TOOL_RESULT, None, text, attributes, native_id
    if item_type == "reasoning":
        summary = payload.get("summary")
        text = ""
        if isinstance(summary, list):
            text = "\n".join(
                str(part.get("text") or "") for part in summary if isinstance(part, dict) and part.get("text")
            )
        content = f"[Thinking] {text}" if text else ENCRYPTED_REASONING
        return EventKind.SYSTEM, Role.ASSISTANT, content, {}, payload.get("id")
    return None


def map_event_msg(payload: dict[str, Any]) -> tuple[EventKind, Role | None, str, dict[str, Any]] | None:
    msg_type = payload.get("type")
    if msg_type == "user_message":
        return EventKind.MESSAGE, Role.USER, str(payload.get("message") or ""), {}
    if msg_type == "agent_reasoning":
        text = payload.get("text") or payload.get("message") or ""
        return EventKind.SYSTEM, Role.ASSISTANT, f"[Thinking] {text}", {}
    if msg_type in {"error", "stream_error"}:
        return EventKind.ERROR, None, str(payload.get("message") or payload.get("error") or ""), {}
    return None


class CodexAdapter(SourceAdapter):
    source = Source.CODEX

    def discover(self) -> list[ArtifactDescriptor]:
        if not self.root.exists():
            logger.info("Codex sessions directory not found: %s", self.root)
            return []
        try:
            paths = sorted(self.root.glob(ROLLOUT_GLOB))
        except OSError as exc:
            raise DiscoveryError(self.source.value, f"Cannot scan rollout directory: {exc}", str(self.root)) from exc

        artifacts: list[ArtifactDescriptor] = []
        for path in paths:
            try:
                marker = file_change_marker(path)
            except FileNotFoundError:
                continue
            day = path.parent
            artifacts.append(
                ArtifactDescriptor(
                    source=self.source,
                    identity=str(path),
                    changeMarker=marker,
                    path=str(path),
                    externalId=session_id_from_filename(path),
                    metadata={"date": f"{day.parent.parent.name}/{day.parent.name}/{day.name}"},
                )
            )
        logger.info("Discovered %d Codex rollout files", len(artifacts))
        return artifacts

    def parse(self, artifact: ArtifactDescriptor) -> ParseResult:
        path = Path(artifact.path)
        failures = FailureLog(logger, path.name)
        events: list[EventDraft] = []
        meta: dict[str, Any] = {}
        usage: dict[str, Any] = {}
        model: str | None = None
        line_count = 0

        try:
            lines = list(iter_jsonl(path))
        except OSError as exc:
            raise ParseError(str(path), f"Cannot read rollout file: {exc}") from exc

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

            entry_type = entry.get("type")
            payload = entry.get("payload") if isinstance(entry.get("payload"), dict) else {}

            if entry_type == "session_meta":
                meta = payload
                continue
            if entry_type == "turn_context":
                if payload.get("model"):
                    model = str(payload["model"])
                continue
            if entry_type == "event_msg" and payload.get("type") == "token_count":
                info = payload.get("info") if isinstance(payload.get("info"), dict) else {}
                total = info.get("total_token_usage") if isinstance(info.get("total_token_usage"), dict) else {}
                if total:
                    usage = {
                        "inputTokens": coerce_int(total.get("input_tokens")),
                        "outputTokens": coerce_int(total.get("output_tokens")),
                    }
                continue

            native_id: str | None = None
            if entry_type == "response_item":
                mapped = map_response_item(payload)
                if mapped is None:
                    continue
                kind, role, content, attributes, native_id = mapped
            elif entry_type == "event_msg":
                mapped_msg = map_event_msg(payload)
                if mapped_msg is None:
                    continue
                kind, role, content, attributes = mapped_msg
            else:
                logger.debug("Unknown Codex entry type %r at %s:%d", entry_type, path.name, line_no)
                continue

            timestamp = parse_timestamp(entry.get("timestamp"))
            if timestamp is None:
                failures.record("missing or invalid timestamp", line_no)
                continue
            if model and kind == EventKind.MESSAGE and role == Role.ASSISTANT:
                attributes["model"] = model

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

        raw_payload: dict[str, Any] = {
            "filePath": str(path),
            "date": artifact.metadata.get("date"),
            "lineCount": line_count,
            "meta": meta,
        }
        if model or meta.get("model"):
            raw_payload["model"] = model or meta.get("model")
        if usage:
            raw_payload["usage"] = usage

        session = SessionDraft(
            source=self.source,
            externalId=artifact.externalId or session_id_from_filename(path),
            project=project_from_meta(meta),
            title=None,
            createdAt=min((e.timestamp for e in events), default=parse_timestamp(meta.get("timestamp"))),
            updatedAt=max((e.timestamp for e in events), default=None),
            rawPayload=raw_payload,
        )
        return ParseResult(session=session, events=events, failed=failures.count, failures=failures.reasons)

    def health_check(self) -> SourceHealth:
        return self._root_health(ROLLOUT_GLOB, "Codex rollout")

    def owns_path(self, path: Path) -> bool:
        return path.name.startswith("rollout-") and path.suffix == ".jsonl" and super().owns_path(path)
