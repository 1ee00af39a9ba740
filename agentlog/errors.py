"""Exception hierarchy for ingestion, storage and query failures."""
from __future__ import annotations

from typing import Any


class AgentLogError(Exception):
    """Base exception for all agentlog errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigError(AgentLogError):
    """Raised when no source can be resolved at all."""


class DiscoveryError(AgentLogError):
    """Raised when a source root cannot be enumerated. Marks that source unhealthy."""

    def __init__(self, source: str, message: str, path: str | None = None):
        super().__init__(message, {"source": source, "path": path})
        self.source = source
        self.path = path


class ParseError(AgentLogError):
    """Raised when an artifact as a whole cannot be parsed."""

    def __init__(self, artifact: str, message: str, line: int | None = None):
        details: dict[str, Any] = {"artifact": artifact}
        if line is not None:
            details["line"] = line
        super().__init__(message, details)
        self.artifact = artifact
        self.line = line


class SchemaDriftError(AgentLogError):
    """Raised when a database artifact lacks structure required for ingestion."""

    def __init__(self, path: str, missing: list[str]):
        super().__init__(f"Required schema objects missing: {', '.join(missing)}", {"path": path})
        self.path = path
        self.missing = missing


class WriteError(AgentLogError):
    """Raised when a write transaction fails and is rolled back."""


class ExternalToolError(AgentLogError):
    """Raised when an external command fails, times out or prints malformed output."""

    def __init__(self, command: list[str], message: str, returncode: int | None = None):
        super().__init__(message, {"command": " ".join(command), "returncode": returncode})
        self.command = command
        self.returncode = returncode


class SessionNotFoundError(AgentLogError):
    """Raised when a session lookup matches nothing."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", {"session_id": session_id})
        self.session_id = session_id
