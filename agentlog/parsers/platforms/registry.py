"""Source adapter registry for platform-specific implementations."""
from __future__ import annotations

from pathlib import Path

from agentlog import config
from agentlog.config import SourceSettings
from agentlog.models import Source
from agentlog.parsers.platforms.base import SourceAdapter
from agentlog.parsers.platforms.claude_code.parser import ClaudeCodeAdapter
from agentlog.parsers.platforms.codex.parser import CodexAdapter
from agentlog.parsers.platforms.crush.parser import CrushAdapter
from agentlog.parsers.platforms.opencode.parser import OpenCodeAdapter

ADAPTERS: dict[Source, type[SourceAdapter]] = {
    Source.CLAUDE_CODE: ClaudeCodeAdapter,
    Source.CODEX: CodexAdapter,
    Source.OPENCODE: OpenCodeAdapter,
    Source.CRUSH: CrushAdapter,
}


def create_adapter(source: Source, root: Path) -> SourceAdapter:
    """Instantiate the adapter for ``source`` with its configured extras."""
    if source == Source.OPENCODE:
        return OpenCodeAdapter(root, binary=config.OPENCODE_BIN, timeout=config.EXTERNAL_COMMAND_TIMEOUT_SECONDS)
    if source == Source.CRUSH:
        return CrushAdapter(root, db_paths=config.CRUSH_DB_PATHS, max_depth=config.CRUSH_SEARCH_DEPTH)
    return ADAPTERS[source](root)


def build_adapters(settings: dict[str, SourceSettings] | None = None) -> dict[Source, SourceAdapter]:
    """Adapters for every enabled source, keyed by source."""
    resolved = settings if settings is not None else config.load_source_settings()
    adapters: dict[Source, SourceAdapter] = {}
    for source in ADAPTERS:
        entry = resolved.get(source.value)
        if entry is None or not entry.enabled:
            continue
        adapters[source] = create_adapter(source, entry.path)
    return adapters
