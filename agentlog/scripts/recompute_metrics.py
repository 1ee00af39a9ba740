#!/usr/bin/env python3
"""Recompute derived session metrics from stored events.

Usage:
  python -m agentlog.scripts.recompute_metrics
  python -m agentlog.scripts.recompute_metrics --session <id>
"""
from __future__ import annotations

import argparse
import asyncio

from agentlog.db import connection, sqlite_migrations
from agentlog.db.sync_engine import IngestEngine
from agentlog.errors import SessionNotFoundError


async def _run(session_id: str | None) -> int:
    db = await connection.get_connection()
    await sqlite_migrations.run_migrations(db)
    engine = IngestEngine(db, adapters={})
    try:
        count = await engine.recompute_metrics(session_id)
    except SessionNotFoundError as exc:
        print(str(exc))
        return 1
    finally:
        await connection.close_connection()
    print(f"sessions_recomputed={count}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--session", default="", help="Session id or external id (default: all sessions)")
    args = parser.parse_args()
    return asyncio.run(_run(args.session or None))


if __name__ == "__main__":
    raise SystemExit(main())
