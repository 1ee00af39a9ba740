#!/usr/bin/env python3
"""Run a batch ingest, or stay in watch mode.

Usage:
  python -m agentlog.scripts.ingest
  python -m agentlog.scripts.ingest --source codex --full
  python -m agentlog.scripts.ingest --watch
"""
from __future__ import annotations

import argparse
import asyncio
import logging

from agentlog.db import connection, sqlite_migrations
from agentlog.db.sync_engine import IngestEngine
from agentlog.errors import ConfigError


async def _run(source: str, full: bool, watch: bool) -> int:
    db = await connection.get_connection()
    await sqlite_migrations.run_migrations(db)
    engine = IngestEngine(db)

    try:
        if watch:
            targets = None if source == "all" else [source]
            await engine.run_watch(targets)
            return 0
        summaries = await engine.ingest(source, incremental=not full)
    except ConfigError as exc:
        print(f"Configuration error: {exc}")
        return 2
    finally:
        await connection.close_connection()

    exit_code = 0
    for summary in summaries:
        print(
            f"{summary.source.value}: status={summary.status} imported={summary.imported} "
            f"failed={summary.failed} total={summary.total} skipped={summary.skipped} "
            f"duration_ms={summary.durationMs}"
        )
        if summary.message:
            print(f"  {summary.message}")
        if summary.status == "error":
            exit_code = 1
    return exit_code


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--source", default="all", help="Source to ingest (claude_code, codex, opencode, crush or all)")
    parser.add_argument("--full", action="store_true", help="Re-parse every artifact regardless of checkpoints")
    parser.add_argument("--watch", action="store_true", help="Keep running and ingest on change")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    try:
        return asyncio.run(_run(args.source, args.full, args.watch))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
