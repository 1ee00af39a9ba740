"""Adapter contract shared by every supported log source."""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterator

from pydantic import ValidationError

from agentlog.models import ArtifactDescriptor, EventDraft, HealthStatus, ParseResult, Source, SourceHealth

# Cap on per-record failure reasons kept in a ParseResult.
MAX_FAILURE_REASONS = 20


def file_change_marker(path: Path) -> str:
    """Cheap marker: modification time (ns) plus size."""
    stat = path.stat()
    return f"{stat.st_mtime_ns}:{stat.st_size}"


def safe_json_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip().startswith("{"):
        try:
            parsed = json.loads(value)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def coerce_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def iter_jsonl(path: Path) -> Iterator[tuple[int, str]]:
    """Yield ``(line_number, stripped_line)`` for non-blank lines (1-based)."""
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for line_no, line in enumerate(handle, start=1):
            stripped = line.strip()
            if stripped:
                yield line_no, stripped


class FailureLog:
    """Counts skipped records and keeps the first few reasons."""

    def __init__(self, logger: logging.Logger, artifact: str):
        self.logger = logger
        self.artifact = artifact
        self.count = 0
        self.reasons: list[str] = []

    def record(self, reason: str, line: int | None = None) -> None:
        self.count += 1
        where = f"{self.artifact}:{line}" if line is not None else self.artifact
        message = f"{where}: {reason}"
        if len(self.reasons) < MAX_FAILURE_REASONS:
            self.reasons.append(message)
        self.logger.debug("Skipped record %s", message)

    def event(self, line: int | None = None, label: str = "record", **fields: Any) -> EventDraft | None:
        """Build an ``EventDraft``, or count the record as failed if its fields do not validate."""
        try:
            return EventDraft(**fields)
        except ValidationError as exc:
            invalid = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
            self.record(f"{label} has invalid fields: {', '.join(invalid)}", line)
            return None


class SourceAdapter(ABC):
    """Capability interface: discover artifacts, parse one, check health.

    Implementations are synchronous; the ingest engine runs them off the
    event loop. ``parse`` raises ``ParseError`` only when the artifact as a
    whole is unusable and counts bad records in ``ParseResult.failed``.
    """

    source: Source
    # Database-backed sources are polled instead of watched.
    polled: bool = False

    def __init__(self, root: Path):
        self.root = Path(root)

    @abstractmethod
    def discover(self) -> list[ArtifactDescriptor]:
        ...

    @abstractmethod
    def parse(self, artifact: ArtifactDescriptor) -> ParseResult:
        ...

    @abstractmethod
    def health_check(self) -> SourceHealth:
        ...

    def watch_paths(self) -> list[Path]:
        """Directories the file watcher should observe for this source."""
        return [self.root] if self.root.exists() else []

    def owns_path(self, path: Path) -> bool:
        try:
            path.resolve().relative_to(self.root.resolve())
        except (ValueError, OSError):
            return False
        return True

    def poll_marker(self) -> str | None:
        """Cheap whole-source change marker for polled sources."""
        return None

    def _health(self, status: HealthStatus, message: str, path: Path | None = None) -> SourceHealth:
        target = path or self.root
        return SourceHealth(source=self.source, status=status, path=str(target), message=message)

    def _root_health(self, artifact_glob: str, label: str) -> SourceHealth:
        """Health for a directory-rooted source without parsing anything."""
        if not self.root.exists():
            return self._health(HealthStatus.UNKNOWN, f"{label} directory not found")
        if not self.root.is_dir():
            return self._health(HealthStatus.UNHEALTHY, f"{label} root is not a directory")
        try:
            found = next(iter(self.root.glob(artifact_glob)), None)
        except OSError as exc:
            return self._health(HealthStatus.UNHEALTHY, f"{label} root unreadable: {exc}")
        if found is None:
            return self._health(HealthStatus.DEGRADED, f"No {label} session files found")
        return self._health(HealthStatus.HEALTHY, f"{label} sessions available")
