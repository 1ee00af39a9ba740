"""Parse OpenCode sessions from its storage tree, rotating logs and CLI.

Three sub-sources are correlated by session id:

- ``storage/session/<projectID>/<sessionID>.json`` plus per-session
  ``storage/message/<sessionID>/*.json`` and ``storage/part/<messageID>/*.json``
- ``log/*.log`` rotating log files (old files may disappear at any time)
- ``opencode session list --format json`` and ``opencode export <id>``

Each sub-source fails independently; a broken CLI never hides what the
storage tree and logs still provide.
"""
from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from agentlog.date_utils import parse_timestamp
from agentlog.errors import ExternalToolError, ParseError
from agentlog.models import (
    ArtifactDescriptor,
    EventDraft,
    EventKind,
    HealthStatus,
    ParseResult,
    Role,
    SessionDraft,
    Source,
    SourceHealth,
    coerce_role,
)
from agentlog.parsers.platforms.base import FailureLog, SourceAdapter, coerce_int

logger = logging.getLogger("agentlog.adapters.opencode")

CommandRunner = Callable[[list[str], float], subprocess.CompletedProcess]

_LOG_LINE_RE = re.compile(
    r"^(?P<level>[A-Z]+)\s+(?P<ts>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z?)\s+(?P<rest>.*)$"
)
_LOG_SESSION_RE = re.compile(r"\b(?:sessionID|session_id|session|id)=(?P<sid>ses_[A-Za-z0-9]+)")


def run_command(args: list[str], timeout: float) -> subprocess.CompletedProcess:
    return subprocess.run(args, capture_output=True, text=True, timeout=timeout, check=False)


@dataclass
class LogLine:
    file: str
    line_no: int
    level: str
    timestamp: str
    session_id: str
    message: str


def scan_log_file(path: Path) -> list[LogLine]:
    """Return the session-scoped lines of one log file. Vanished files yield nothing."""
    found: list[LogLine] = []
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            for line_no, line in enumerate(handle, start=1):
                match = _LOG_LINE_RE.match(line.strip())
                if not match:
                    continue
                session_match = _LOG_SESSION_RE.search(match.group("rest"))
                if not session_match:
                    continue
                found.append(
                    LogLine(
                        file=path.name,
                        line_no=line_no,
                        level=match.group("level"),
                        timestamp=match.group("ts"),
                        session_id=session_match.group("sid"),
                        message=match.group("rest"),
                    )
                )
    except FileNotFoundError:
        # Rotated away between listing and reading.
        logger.debug("Log file vanished before read: %s", path)
        return []
    return found


def _load_json_file(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.debug("Unreadable OpenCode storage file %s: %s", path, exc)
        return None
    return data if isinstance(data, dict) else None


def _time_value(container: Any, key: str) -> Any:
    return container.get(key) if isinstance(container, dict) else None


def format_parts(parts: list[dict[str, Any]]) -> str:
    chunks: list[str] = []
    for part in parts:
        part_type = part.get("type")
        if part_type == "text" and part.get("text"):
            chunks.append(str(part["text"]))
        elif part_type == "reasoning" and part.get("text"):
            chunks.append(f"[Thinking] {part['text']}")
        elif part_type == "file":
            chunks.append(f"[File: {part.get('filename') or part.get('url') or 'attachment'}]")
        elif part_type == "tool":
            state = part.get("state") if isinstance(part.get("state"), dict) else {}
            status = state.get("status")
            label = f"[Tool: {part.get('tool') or 'unknown'}]"
            chunks.append(f"{label} (status: {status})" if status else label)
    return "\n\n".join(chunks)


def _message_info(message: dict[str, Any]) -> dict[str, Any]:
    """Export payloads nest the message under ``info``; storage files are flat."""
    info = message.get("info")
    return info if isinstance(info, dict) else message


def _model_fields(info: dict[str, Any]) -> tuple[str | None, str | None]:
    model = info.get("model")
    if isinstance(model, dict):
        return model.get("modelID"), model.get("providerID")
    return info.get("modelID") or (model if isinstance(model, str) else None), info.get("providerID")


class OpenCodeAdapter(SourceAdapter):
    source = Source.OPENCODE

    def __init__(
        self,
        root: Path,
        binary: str = "opencode",
        timeout: float = 30.0,
        runner: CommandRunner | None = None,
    ):
        super().__init__(root)
        self.binary = binary
        self.timeout = timeout
        self._runner = runner
        self._log_index: dict[str, list[LogLine]] = {}
        self.last_errors: dict[str, str] = {}

    @property
    def storage_dir(self) -> Path:
        return self.root / "storage"

    @property
    def log_dir(self) -> Path:
        return self.root / "log"

    # ── External command ────────────────────────────────────────────

    def command_available(self) -> bool:
        return self._runner is not None or shutil.which(self.binary) is not None

    def _run(self, *args: str) -> Any:
        command = [self.binary, *args]
        runner = self._runner or run_command
        try:
            completed = runner(command, self.timeout)
        except subprocess.TimeoutExpired as exc:
            raise ExternalToolError(command, f"Timed out after {self.timeout:g}s") from exc
        except OSError as exc:
            raise ExternalToolError(command, f"Could not start command: {exc}") from exc
        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            raise ExternalToolError(command, f"Exited with status {completed.returncode}: {stderr[:500]}", completed.returncode)
        try:
            return json.loads(completed.stdout or "")
        except ValueError as exc:
            raise ExternalToolError(command, f"Malformed JSON output: {exc}") from exc

    def list_cli_sessions(self) -> list[dict[str, Any]]:
        payload = self._run("session", "list", "--format", "json")
        if isinstance(payload, dict) and isinstance(payload.get("sessions"), list):
            payload = payload["sessions"]
        if not isinstance(payload, list):
            raise ExternalToolError([self.binary, "session", "list"], "Expected a JSON array of sessions")
        return [item for item in payload if isinstance(item, dict) and item.get("id")]

    def export_session(self, session_id: str) -> dict[str, Any]:
        payload = self._run("export", session_id)
        if not isinstance(payload, dict) or not isinstance(payload.get("messages"), list):
            raise ExternalToolError([self.binary, "export", session_id], "Export is missing a messages array")
        return payload

    # ── Sub-source discovery ────────────────────────────────────────

    def _storage_sessions(self) -> dict[str, dict[str, Any]]:
        sessions: dict[str, dict[str, Any]] = {}
        session_root = self.storage_dir / "session"
        if not session_root.is_dir():
            return sessions
        for path in sorted(session_root.glob("*/*.json")):
            info = _load_json_file(path)
            if not info:
                continue
            session_id = str(info.get("id") or path.stem)
            info.setdefault("projectID", path.parent.name)
            sessions[session_id] = {"info": info, "file": str(path)}
        return sessions

    def _scan_logs(self) -> dict[str, list[LogLine]]:
        index: dict[str, list[LogLine]] = {}
        if not self.log_dir.is_dir():
            return index
        for path in sorted(self.log_dir.glob("*.log")):
            for line in scan_log_file(path):
                index.setdefault(line.session_id, []).append(line)
        return index

    def _storage_signature(self, session_id: str) -> str:
        """Message and part file count plus newest mtime for one session."""
        count = 0
        newest = 0
        message_dir = self.storage_dir / "message" / session_id
        if not message_dir.is_dir():
            return "0:0"
        for message_file in message_dir.glob("*.json"):
            try:
                newest = max(newest, message_file.stat().st_mtime_ns)
            except FileNotFoundError:
                continue
            count += 1
            part_dir = self.storage_dir / "part" / message_file.stem
            if part_dir.is_dir():
                for part_file in part_dir.glob("*.json"):
                    try:
                        newest = max(newest, part_file.stat().st_mtime_ns)
                    except FileNotFoundError:
                        continue
                    count += 1
        return f"{count}:{newest}"

    def discover(self) -> list[ArtifactDescriptor]:
        self.last_errors = {}
        storage = self._storage_sessions()
        self._log_index = self._scan_logs()

        listed: dict[str, dict[str, Any]] = {}
        if self.command_available():
            try:
                listed = {str(item["id"]): item for item in self.list_cli_sessions()}
            except ExternalToolError as exc:
                self.last_errors["cli"] = str(exc)
                logger.warning("OpenCode session list unavailable: %s", exc)
        else:
            logger.debug("OpenCode command %r not on PATH; skipping CLI discovery", self.binary)

        session_ids = set(storage) | set(listed)
        session_ids |= {sid for sid, lines in self._log_index.items() if any(line.level == "ERROR" for line in lines)}

        artifacts: list[ArtifactDescriptor] = []
        for session_id in sorted(session_ids):
            stored = storage.get(session_id, {})
            info = stored.get("info", {})
            item = listed.get(session_id, {})
            updated = _time_value(info.get("time"), "updated") or item.get("updated")
            log_lines = self._log_index.get(session_id, [])
            log_sig = f"{len(log_lines)}@{log_lines[-1].timestamp}" if log_lines else "0"
            marker = f"{updated}|{self._storage_signature(session_id)}|{log_sig}"
            artifacts.append(
                ArtifactDescriptor(
                    source=self.source,
                    identity=f"opencode:{session_id}",
                    changeMarker=marker,
                    path=stored.get("file", ""),
                    externalId=session_id,
                    project=info.get("directory") or item.get("directory"),
                    metadata={
                        "title": info.get("title") or item.get("title"),
                        "created": _time_value(info.get("time"), "created") or item.get("created"),
                        "updated": updated,
                        "projectID": info.get("projectID") or item.get("projectId"),
                        "inStorage": bool(stored),
                        "listed": bool(item),
                    },
                )
            )
        logger.info(
            "Discovered %d OpenCode sessions (storage=%d cli=%d logs=%d)",
            len(artifacts), len(storage), len(listed), len(self._log_index),
        )
        return artifacts

    # ── Parsing ─────────────────────────────────────────────────────

    def _storage_messages(self, session_id: str) -> list[dict[str, Any]]:
        message_dir = self.storage_dir / "message" / session_id
        messages: list[dict[str, Any]] = []
        if not message_dir.is_dir():
            return messages
        for message_file in sorted(message_dir.glob("*.json")):
            info = _load_json_file(message_file)
            if not info:
                continue
            part_dir = self.storage_dir / "part" / str(info.get("id") or message_file.stem)
            parts = []
            if part_dir.is_dir():
                parts = [p for p in (_load_json_file(f) for f in sorted(part_dir.glob("*.json"))) if p]
            messages.append({"info": info, "parts": parts})
        messages.sort(key=lambda m: (coerce_int(_time_value(m["info"].get("time"), "created")), str(m["info"].get("id"))))
        return messages

    def _load_messages(self, session_id: str, metadata: dict[str, Any]) -> tuple[list[dict[str, Any]], dict[str, Any], str]:
        if self.command_available() and metadata.get("listed", True):
            try:
                exported = self.export_session(session_id)
                info = exported.get("info") if isinstance(exported.get("info"), dict) else {}
                return exported["messages"], info, "export"
            except ExternalToolError as exc:
                self.last_errors["export"] = str(exc)
                logger.warning("OpenCode export failed for %s, using storage tree: %s", session_id, exc)
        return self._storage_messages(session_id), {}, "storage"

    def parse(self, artifact: ArtifactDescriptor) -> ParseResult:
        session_id = artifact.externalId
        failures = FailureLog(logger, artifact.identity)
        messages, export_info, origin = self._load_messages(session_id, artifact.metadata)
        log_lines = self._log_index.get(session_id)
        if log_lines is None:
            log_lines = self._scan_logs().get(session_id, [])

        vanished = artifact.path and not Path(artifact.path).exists()
        if not messages and not log_lines and not artifact.metadata.get("listed") and vanished:
            raise ParseError(artifact.identity, "Session vanished from storage")

        events: list[EventDraft] = []
        usage = {"inputTokens": 0, "outputTokens": 0}
        cost_total: float | None = None
        for index, message in enumerate(messages):
            info = _message_info(message)
            parts = [p for p in (message.get("parts") or []) if isinstance(p, dict)]
            message_id = str(info.get("id") or "")
            timestamp = parse_timestamp(_time_value(info.get("time"), "created"))
            if timestamp is None:
                failures.record(f"message {index} has no creation time")
                continue
            role = coerce_role(info.get("role"))
            model, provider = _model_fields(info)
            tokens = info.get("tokens") if isinstance(info.get("tokens"), dict) else {}
            attributes: dict[str, Any] = {}
            if model:
                attributes["model"] = model
            if provider:
                attributes["provider"] = provider
            if tokens:
                cache = tokens.get("cache") if isinstance(tokens.get("cache"), dict) else {}
                attributes["inputTokens"] = coerce_int(tokens.get("input")) + coerce_int(cache.get("read")) + coerce_int(cache.get("write"))
                attributes["outputTokens"] = coerce_int(tokens.get("output")) + coerce_int(tokens.get("reasoning"))
                usage["inputTokens"] += attributes["inputTokens"]
                usage["outputTokens"] += attributes["outputTokens"]
            if isinstance(info.get("cost"), (int, float)):
                attributes["cost"] = float(info["cost"])
                cost_total = (cost_total or 0.0) + float(info["cost"])

            draft = failures.event(
                label=f"message {index}",
                kind=EventKind.MESSAGE if role else EventKind.SYSTEM,
                role=role,
                content=format_parts(parts) or None,
                timestamp=timestamp,
                nativeId=message_id or None,
                position=f"message:{index}",
                sequence=len(events),
                attributes=attributes,
                rawPayload={"info": info, "parts": parts},
            )
            if draft is None:
                continue
            events.append(draft)

            for part in parts:
                if part.get("type") != "tool":
                    continue
                tool_draft = self._tool_event(failures, part, message_id, timestamp, len(events))
                if tool_draft is not None:
                    events.append(tool_draft)

        for line in log_lines:
            if line.level != "ERROR":
                continue
            timestamp = parse_timestamp(line.timestamp)
            if timestamp is None:
                failures.record("log line with invalid timestamp", line.line_no)
                continue
            draft = failures.event(
                line.line_no,
                label="log line",
                kind=EventKind.ERROR,
                content=line.message,
                timestamp=timestamp,
                nativeId=f"log:{line.file}:{line.line_no}",
                position=f"log:{line.file}:{line.line_no}",
                sequence=len(events),
                attributes={"logFile": line.file},
                rawPayload={"file": line.file, "line": line.line_no, "level": line.level, "message": line.message},
            )
            if draft is not None:
                events.append(draft)

        meta = artifact.metadata
        created = parse_timestamp(_time_value(export_info.get("time"), "created") or meta.get("created"))
        updated = parse_timestamp(_time_value(export_info.get("time"), "updated") or meta.get("updated"))
        raw_payload: dict[str, Any] = {
            "projectID": export_info.get("projectID") or meta.get("projectID"),
            "origin": origin,
            "storageFile": artifact.path or None,
            "logLines": len(log_lines),
        }
        if export_info.get("summary"):
            raw_payload["summary"] = export_info["summary"]
        if usage["inputTokens"] or usage["outputTokens"] or cost_total is not None:
            raw_payload["usage"] = {**usage, "cost": cost_total}

        session = SessionDraft(
            source=self.source,
            externalId=session_id,
            project=export_info.get("directory") or artifact.project,
            title=export_info.get("title") or meta.get("title"),
            createdAt=min([t for t in [created, *(e.timestamp for e in events)] if t], default=None),
            updatedAt=max([t for t in [updated, *(e.timestamp for e in events)] if t], default=None),
            rawPayload=raw_payload,
        )
        return ParseResult(session=session, events=events, failed=failures.count, failures=failures.reasons)

    @staticmethod
    def _tool_event(
        failures: FailureLog, part: dict[str, Any], message_id: str, fallback_ts, sequence: int
    ) -> EventDraft | None:
        state = part.get("state") if isinstance(part.get("state"), dict) else {}
        tool = str(part.get("tool") or "unknown")
        state_time = state.get("time") if isinstance(state.get("time"), dict) else {}
        started = parse_timestamp(state_time.get("start")) or fallback_ts
        ended = parse_timestamp(state_time.get("end"))
        attributes: dict[str, Any] = {
            "toolName": tool,
            "callId": part.get("callID"),
            "status": state.get("status"),
            "isError": state.get("status") == "error",
        }
        if isinstance(state.get("input"), dict):
            attributes["toolInput"] = state["input"]
        if ended is not None:
            attributes["durationMs"] = max(0, int((ended - started).total_seconds() * 1000))
        content = json.dumps(
            {"tool": tool, "status": state.get("status"), "input": state.get("input"), "output": state.get("output")},
            default=str,
        )
        native_id = part.get("id") or (f"{message_id}:{part.get('callID')}" if part.get("callID") else None)
        return failures.event(
            label=f"tool part {native_id}",
            kind=EventKind.TOOL_CALL,
            role=Role.ASSISTANT,
            content=content,
            timestamp=started,
            nativeId=native_id,
            position=f"part:{message_id}:{sequence}",
            sequence=sequence,
            attributes=attributes,
            rawPayload=part,
        )

    def health_check(self) -> SourceHealth:
        if not self.root.exists():
            return self._health(HealthStatus.UNKNOWN, "OpenCode data directory not found")
        present = [name for name, path in (("storage", self.storage_dir), ("log", self.log_dir)) if path.is_dir()]
        notes: list[str] = []
        if not self.command_available():
            notes.append(f"command {self.binary!r} not found")
        notes.extend(f"{name}: {error}" for name, error in self.last_errors.items())
        if not present:
            return self._health(HealthStatus.DEGRADED, "No storage or log directory; " + "; ".join(notes or ["nothing to ingest"]))
        if notes:
            return self._health(HealthStatus.DEGRADED, f"Available: {', '.join(present)}; " + "; ".join(notes))
        return self._health(HealthStatus.HEALTHY, f"Available: {', '.join(present)}, command")

    def watch_paths(self) -> list[Path]:
        return [path for path in (self.storage_dir, self.log_dir) if path.exists()]
