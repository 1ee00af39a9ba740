"""agentlog configuration.

Values are read from the environment once at import time. An optional YAML
file (``AGENTLOG_CONFIG``) can override per-source roots and trigger tuning.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

logger = logging.getLogger("agentlog.config")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    value = (os.getenv(name) or "").strip()
    if not value:
        return default
    return Path(value).expanduser()


def _env_list(name: str) -> list[str]:
    value = os.getenv(name) or ""
    return [token.strip() for token in value.split(",") if token.strip()]


HOME = Path.home()

# Datastore
DATA_DIR = _env_path("AGENTLOG_DATA_DIR", HOME / ".local" / "share" / "agentlog")
DB_PATH = _env_path("AGENTLOG_DB_PATH", DATA_DIR / "agentlog.db")
CONFIG_PATH = _env_path("AGENTLOG_CONFIG", HOME / ".config" / "agentlog" / "config.yaml")

# Source roots
CLAUDE_PROJECTS_DIR = _env_path("AGENTLOG_CLAUDE_PROJECTS_DIR", HOME / ".claude" / "projects")
CODEX_HOME = _env_path("CODEX_HOME", HOME / ".codex")
CODEX_SESSIONS_DIR = CODEX_HOME / "sessions"
OPENCODE_DATA_DIR = _env_path("AGENTLOG_OPENCODE_DATA_DIR", HOME / ".local" / "share" / "opencode")
OPENCODE_BIN = os.getenv("AGENTLOG_OPENCODE_BIN", "opencode")
EXTERNAL_COMMAND_TIMEOUT_SECONDS = _env_float("AGENTLOG_EXTERNAL_COMMAND_TIMEOUT_SECONDS", 30.0)
CRUSH_DB_PATHS = [Path(p).expanduser() for p in (os.getenv("AGENTLOG_CRUSH_DB_PATHS") or "").split(os.pathsep) if p.strip()]
CRUSH_SEARCH_ROOT = _env_path("AGENTLOG_CRUSH_SEARCH_ROOT", HOME)
CRUSH_SEARCH_DEPTH = _env_int("AGENTLOG_CRUSH_SEARCH_DEPTH", 6)
ENABLED_SOURCES = _env_list("AGENTLOG_ENABLED_SOURCES")

# Change triggers
POLL_INTERVAL_SECONDS = _env_float("AGENTLOG_POLL_INTERVAL_SECONDS", 30.0)
WATCH_DEBOUNCE_MS = _env_int("AGENTLOG_WATCH_DEBOUNCE_MS", 2000)
WATCH_ON_STARTUP = _env_bool("AGENTLOG_WATCH_ON_STARTUP", False)
INGEST_ON_STARTUP = _env_bool("AGENTLOG_INGEST_ON_STARTUP", True)

# Observability
OTEL_ENABLED = _env_bool("AGENTLOG_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("AGENTLOG_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("AGENTLOG_OTEL_SERVICE_NAME", "agentlog")
PROM_PORT = _env_int("AGENTLOG_PROM_PORT", 0)

# Server settings
HOST = os.getenv("AGENTLOG_HOST", "127.0.0.1")
PORT = _env_int("AGENTLOG_PORT", 8765)


@dataclass
class SourceSettings:
    name: str
    path: Path
    enabled: bool = True


def _default_source_paths() -> dict[str, Path]:
    return {
        "claude_code": CLAUDE_PROJECTS_DIR,
        "codex": CODEX_SESSIONS_DIR,
        "opencode": OPENCODE_DATA_DIR,
        "crush": CRUSH_SEARCH_ROOT,
    }


def load_config_file(path: Path | None = None) -> dict:
    """Read the optional YAML overlay. Missing or malformed files yield ``{}``."""
    target = path or CONFIG_PATH
    if not target.exists():
        return {}
    try:
        raw = yaml.safe_load(target.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", target, exc)
        return {}
    if not isinstance(raw, dict):
        logger.warning("Ignoring config file %s: top level must be a mapping", target)
        return {}
    return raw


def load_source_settings(path: Path | None = None) -> dict[str, SourceSettings]:
    """Resolve per-source roots from defaults, env and the YAML overlay."""
    overlay = load_config_file(path)
    sources_cfg = overlay.get("sources") if isinstance(overlay.get("sources"), dict) else {}

    settings: dict[str, SourceSettings] = {}
    for name, default_path in _default_source_paths().items():
        entry = sources_cfg.get(name) if isinstance(sources_cfg.get(name), dict) else {}
        raw_path = entry.get("path")
        resolved = Path(str(raw_path)).expanduser() if raw_path else default_path
        enabled = bool(entry.get("enabled", True))
        if ENABLED_SOURCES and name not in ENABLED_SOURCES:
            enabled = False
        settings[name] = SourceSettings(name=name, path=resolved, enabled=enabled)
    return settings


def trigger_settings(path: Path | None = None) -> tuple[float, int]:
    """Return ``(poll_interval_seconds, watch_debounce_ms)`` after applying the overlay."""
    overlay = load_config_file(path)
    poll = overlay.get("poll_interval_seconds", POLL_INTERVAL_SECONDS)
    debounce = overlay.get("watch_debounce_ms", WATCH_DEBOUNCE_MS)
    try:
        return float(poll), int(debounce)
    except (TypeError, ValueError):
        return POLL_INTERVAL_SECONDS, WATCH_DEBOUNCE_MS
