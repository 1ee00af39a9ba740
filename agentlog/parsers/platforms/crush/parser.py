"""Parse Crush sessions out of its embedded SQLite databases.

Crush keeps one ``crush.db`` per project (``<project>/.crush/crush.db``) and
changes its schema between releases. Every query goes through
``select_columns`` so optional columns that are absent read as NULL; only the
required tables and columns listed in ``REQUIRED_SCHEMA`` stop ingestion.
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Iterable

from agentlog.date_utils import parse_timestamp
from agentlog.errors import DiscoveryError, ParseError, SchemaDriftError
from agentlog.models import (
    ArtifactDescriptor,
    EventDraft,
    EventKind,
    HealthStatus,
    ParseResult,
    SessionDraft,
    Source,
    SourceHealth,
    coerce_role,
)
from agentlog.parsers.platforms.base import FailureLog, SourceAdapter, coerce_float, coerce_int, safe_json_dict
from agentlog.parsers.platforms.crush.schema import SchemaInfo, open_readonly, read_schema, select_columns

logger = logging.getLogger("agentlog.adapters.crush")

DB_DIR_NAME = ".crush"
DB_FILE_NAME = "crush.db"
SKIP_DIRS = {"node_modules", "target", "vendor", "build", "dist", ".git", "Cache"}

REQUIRED_SCHEMA = {
    "sessions": ("id", "created_at", "updated_at"),
    "messages": ("id", "session_id", "role", "parts", "created_at"),
}
SESSION_COLUMNS = (
    "id",
    "parent_session_id",
    "title",
    "message_count",
    "prompt_tokens",
    "completion_tokens",
    "cost",
    "updated_at",
    "created_at",
    "summary_message_id",
    "todos",
)
MESSAGE_COLUMNS = (
    "id",
    "session_id",
    "role",
    "parts",
    "model",
    "provider",
    "created_at",
    "updated_at",
    "finished_at",
    "is_summary_message",
)


def find_databases(root: Path, max_depth: int, extra: Iterable[Path] = ()) -> list[Path]:
    """Explicit paths plus a depth-limited walk for ``.crush/crush.db`` under ``root``."""
    found: dict[str, Path] = {}
    for path in extra:
        if path.is_file():
            found[str(path.resolve())] = path
    if root.is_dir():
        base_depth = len(root.parts)
        for dirpath, dirnames, filenames in os.walk(root, onerror=lambda exc: logger.debug("Walk error: %s", exc)):
            current = Path(dirpath)
            if len(current.parts) - base_depth >= max_depth:
                dirnames[:] = []
            else:
                dirnames[:] = [d for d in dirnames if d not in SKIP_DIRS]
            if current.name == DB_DIR_NAME and DB_FILE_NAME in filenames:
                path = current / DB_FILE_NAME
                found.setdefault(str(path.resolve()), path)
    return sorted(found.values())


def _tool_input(data: dict[str, Any]) -> dict[str, Any]:
    raw = data.get("input")
    if isinstance(raw, dict):
        return raw
    parsed = safe_json_dict(raw)
    if parsed:
        return parsed
    # Older releases flattened the tool input into the part itself.
    return {k: v for k, v in data.items() if k not in {"id", "name", "input", "finished", "type"}}


def parts_to_event(role: str, parts: list[Any]) -> tuple[EventKind, str, dict[str, Any]]:
    """Classify a message by its content parts and extract display text."""
    chunks: list[str] = []
    calls: list[dict[str, Any]] = []
    results: list[dict[str, Any]] = []
    for part in parts:
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")
        data = part.get("data") if isinstance(part.get("data"), dict) else {}
        if part_type == "text":
            chunks.append(str(data.get("text") or ""))
        elif part_type == "reasoning":
            thinking = data.get("thinking") or data.get("text")
            if thinking:
                chunks.append(f"[Thinking] {thinking}")
        elif part_type in {"tool_use", "tool_call"}:
            name = str(data.get("name") or "unknown")
            calls.append({"id": data.get("id"), "name": name, "input": _tool_input(data)})
            chunks.append(f"[Tool: {name}]")
        elif part_type == "tool_result":
            is_error = bool(data.get("is_error"))
            results.append({"id": data.get("tool_use_id") or data.get("tool_call_id"), "isError": is_error})
            chunks.append(f"{'[Error]' if is_error else '[Result]'} {data.get('content') or ''}")
        elif part_type in {"image", "image_url", "binary"}:
            chunks.append("[Image]")
        elif part_type == "finish" and data.get("reason"):
            chunks.append(f"[Finished: {data['reason']}]")

    content = "\n".join(chunk for chunk in chunks if chunk)
    attributes: dict[str, Any] = {}
    if calls and role == "assistant":
        first = calls[0]
        attributes.update({"toolName": first["name"], "callId": first["id"], "toolInput": first["input"]})
        if len(calls) > 1:
            attributes["toolCalls"] = calls
        return EventKind.TOOL_CALL, content, attributes
    if results:
        first = results[0]
        attributes.update({"callId": first["id"], "isError": first["isError"]})
        if len(results) > 1:
            attributes["toolResults"] = results
        return EventKind.TOOL_RESULT, content, attributes
    return EventKind.MESSAGE, content, attributes


class CrushAdapter(SourceAdapter):
    source = Source.CRUSH
    polled = True

    def __init__(self, root: Path, db_paths: Iterable[Path] = (), max_depth: int = 6):
        super().__init__(root)
        self.db_paths = [Path(p) for p in db_paths]
        self.max_depth = max_depth
        self._databases: list[Path] | None = None
        self.drifted: dict[str, list[str]] = {}

    def databases(self, refresh: bool = False) -> list[Path]:
        if self._databases is None or refresh:
            self._databases = find_databases(self.root, self.max_depth, self.db_paths)
        return self._databases

    def _require_schema(self, conn: sqlite3.Connection, db_path: Path) -> SchemaInfo:
        schema = read_schema(conn)
        missing = schema.missing(REQUIRED_SCHEMA)
        if missing:
            raise SchemaDriftError(str(db_path), missing)
        return schema

    def discover(self) -> list[ArtifactDescriptor]:
        try:
            databases = self.databases(refresh=True)
        except OSError as exc:
            raise DiscoveryError(self.source.value, f"Cannot search for Crush databases: {exc}", str(self.root)) from exc

        self.drifted = {}
        artifacts: list[ArtifactDescriptor] = []
        usable = 0
        for db_path in databases:
            try:
                conn = open_readonly(db_path)
            except sqlite3.Error as exc:
                logger.warning("Cannot open Crush database %s: %s", db_path, exc)
                continue
            try:
                schema = self._require_schema(conn, db_path)
                artifacts.extend(self._discover_in_db(conn, schema, db_path))
                usable += 1
            except SchemaDriftError as exc:
                self.drifted[str(db_path)] = exc.missing
                logger.warning("Skipping Crush database with incompatible schema %s: %s", db_path, exc)
            except sqlite3.Error as exc:
                logger.warning("Failed to read Crush database %s: %s", db_path, exc)
            finally:
                conn.close()

        if databases and not usable and len(self.drifted) == len(databases):
            first_path, first_missing = next(iter(self.drifted.items()))
            raise SchemaDriftError(first_path, first_missing)
        logger.info("Discovered %d Crush sessions in %d database(s)", len(artifacts), len(databases))
        return artifacts

    def _discover_in_db(self, conn: sqlite3.Connection, schema: SchemaInfo, db_path: Path) -> list[ArtifactDescriptor]:
        root_filter = "WHERE s.parent_session_id IS NULL" if schema.has_column("sessions", "parent_session_id") else ""
        rows = conn.execute(
            f"""SELECT s.id AS id, s.updated_at AS updated_at,
                       (SELECT COUNT(*) FROM messages m WHERE m.session_id = s.id) AS msg_count,
                       (SELECT MAX(m.created_at) FROM messages m WHERE m.session_id = s.id) AS msg_latest
                FROM sessions s {root_filter} ORDER BY s.updated_at DESC"""
        ).fetchall()
        project = db_path.parent.parent.name or None
        return [
            ArtifactDescriptor(
                source=self.source,
                identity=f"{db_path}#{row['id']}",
                changeMarker=f"{row['updated_at']}:{row['msg_count']}:{row['msg_latest']}",
                path=str(db_path),
                externalId=str(row["id"]),
                project=project,
                metadata={"db": str(db_path)},
            )
            for row in rows
        ]

    def parse(self, artifact: ArtifactDescriptor) -> ParseResult:
        db_path = Path(artifact.path)
        if not db_path.exists():
            raise ParseError(artifact.identity, "Database file vanished")
        try:
            conn = open_readonly(db_path)
        except sqlite3.Error as exc:
            raise ParseError(artifact.identity, f"Cannot open database: {exc}") from exc
        try:
            schema = self._require_schema(conn, db_path)
            return self._parse_session(conn, schema, artifact)
        except sqlite3.Error as exc:
            raise ParseError(artifact.identity, f"Database query failed: {exc}") from exc
        finally:
            conn.close()

    def _parse_session(self, conn: sqlite3.Connection, schema: SchemaInfo, artifact: ArtifactDescriptor) -> ParseResult:
        session_id = artifact.externalId
        row = conn.execute(
            f"SELECT {select_columns(schema, 'sessions', SESSION_COLUMNS)} FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        if row is None:
            raise ParseError(artifact.identity, "Session no longer present in database")
        session_row = dict(row)

        failures = FailureLog(logger, artifact.identity)
        events: list[EventDraft] = []
        messages = conn.execute(
            f"""SELECT {select_columns(schema, 'messages', MESSAGE_COLUMNS)} FROM messages
                WHERE session_id = ? ORDER BY created_at ASC, rowid ASC""",
            (session_id,),
        ).fetchall()
        for message in messages:
            msg = dict(message)
            if msg.get("is_summary_message"):
                continue
            timestamp = parse_timestamp(msg.get("created_at"))
            if timestamp is None:
                failures.record(f"message {msg.get('id')} has no valid created_at")
                continue
            try:
                parts = json.loads(msg.get("parts") or "[]")
            except (TypeError, ValueError):
                failures.record(f"message {msg.get('id')} has malformed parts JSON")
                continue
            if not isinstance(parts, list):
                parts = [parts]
            role = str(msg.get("role") or "")
            kind, content, attributes = parts_to_event(role, parts)
            if msg.get("model"):
                attributes["model"] = msg["model"]
            if msg.get("provider"):
                attributes["provider"] = msg["provider"]
            finished = parse_timestamp(msg.get("finished_at"))
            if finished is not None and kind == EventKind.MESSAGE:
                attributes["responseMs"] = max(0, int((finished - timestamp).total_seconds() * 1000))
            draft = failures.event(
                label=f"message {msg.get('id')}",
                kind=kind,
                role=coerce_role(role),
                content=content or None,
                timestamp=timestamp,
                nativeId=str(msg["id"]) if msg.get("id") else None,
                position=f"row:{msg.get('id')}",
                sequence=len(events),
                attributes=attributes,
                rawPayload={**msg, "parts": parts},
            )
            if draft is not None:
                events.append(draft)

        read_files: list[dict[str, Any]] = []
        if schema.has_table("read_files") and schema.has_column("read_files", "session_id"):
            read_files = [
                dict(r)
                for r in conn.execute(
                    f"SELECT {select_columns(schema, 'read_files', ('path', 'read_at'))} FROM read_files WHERE session_id = ?",
                    (session_id,),
                ).fetchall()
            ]

        # Column affinity is loose; junk values read as zero tokens and unknown cost.
        usage: dict[str, Any] = {"cost": coerce_float(session_row.get("cost"))}
        if session_row.get("prompt_tokens") is not None:
            usage["inputTokens"] = coerce_int(session_row["prompt_tokens"])
        if session_row.get("completion_tokens") is not None:
            usage["outputTokens"] = coerce_int(session_row["completion_tokens"])

        session = SessionDraft(
            source=self.source,
            externalId=session_id,
            project=artifact.project,
            title=session_row.get("title") or None,
            createdAt=parse_timestamp(session_row.get("created_at")) or min((e.timestamp for e in events), default=None),
            updatedAt=parse_timestamp(session_row.get("updated_at")) or max((e.timestamp for e in events), default=None),
            rawPayload={
                "db": str(artifact.path),
                "parentSessionId": session_row.get("parent_session_id"),
                "messageCount": session_row.get("message_count"),
                "summaryMessageId": session_row.get("summary_message_id"),
                "todos": session_row.get("todos"),
                "readFiles": read_files,
                "usage": usage,
                "missingColumns": [c for c in SESSION_COLUMNS if not schema.has_column("sessions", c)],
            },
        )
        return ParseResult(session=session, events=events, failed=failures.count, failures=failures.reasons)

    def poll_marker(self) -> str | None:
        """Database and WAL stat plus a latest-row check, per database."""
        markers: list[str] = []
        for db_path in self.databases():
            parts = [str(db_path)]
            for candidate in (db_path, db_path.with_name(db_path.name + "-wal")):
                try:
                    stat = candidate.stat()
                    parts.append(f"{stat.st_mtime_ns}:{stat.st_size}")
                except FileNotFoundError:
                    parts.append("-")
            try:
                conn = open_readonly(db_path)
                try:
                    row = conn.execute("SELECT MAX(updated_at), COUNT(*) FROM sessions").fetchone()
                    parts.append(f"{row[0]}:{row[1]}")
                finally:
                    conn.close()
            except sqlite3.Error as exc:
                parts.append(f"error:{exc}")
            markers.append("|".join(parts))
        return ";".join(markers)

    def health_check(self) -> SourceHealth:
        try:
            databases = self.databases()
        except OSError as exc:
            return self._health(HealthStatus.UNHEALTHY, f"Cannot search for Crush databases: {exc}")
        if not databases:
            return self._health(HealthStatus.UNKNOWN, "No Crush databases found")

        drifted: list[str] = []
        notes: list[str] = []
        for db_path in databases:
            try:
                conn = open_readonly(db_path)
                try:
                    schema = read_schema(conn)
                finally:
                    conn.close()
            except sqlite3.Error as exc:
                drifted.append(f"{db_path}: {exc}")
                continue
            missing = schema.missing(REQUIRED_SCHEMA)
            if missing:
                drifted.append(f"{db_path}: missing {', '.join(missing)}")
            elif not schema.has_column("sessions", "cost"):
                notes.append(f"{db_path}: no cost column")

        path = databases[0] if len(databases) == 1 else self.root
        if len(drifted) == len(databases):
            return self._health(HealthStatus.UNHEALTHY, "; ".join(drifted), path)
        if drifted:
            return self._health(HealthStatus.DEGRADED, f"{len(drifted)} of {len(databases)} database(s) unusable: " + "; ".join(drifted), path)
        message = f"{len(databases)} database(s) readable"
        if notes:
            message += "; " + "; ".join(notes)
        return self._health(HealthStatus.HEALTHY, message, path)

    def watch_paths(self) -> list[Path]:
        return []

    def owns_path(self, path: Path) -> bool:
        return path.name.startswith(DB_FILE_NAME) and path.parent.name == DB_DIR_NAME
