"""agentlog FastAPI application entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from agentlog import config
from agentlog.db import connection, sqlite_migrations
from agentlog.db.sync_engine import IngestEngine
from agentlog.errors import ConfigError
from agentlog.observability import initialize as initialize_observability, shutdown as shutdown_observability
from agentlog.routers.api import api_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("agentlog")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("agentlog starting up")
    initialize_observability(app)

    db = await connection.get_connection()
    await sqlite_migrations.run_migrations(db)
    read_db = await connection.get_read_connection()

    engine = IngestEngine(db, read_db=read_db)
    app.state.ingest_engine = engine
    if not engine.adapters:
        logger.warning("No sources enabled; ingestion endpoints will report a configuration error")

    if engine.adapters and config.WATCH_ON_STARTUP:
        # Watch mode queues a catch-up ingest per source on start.
        await engine.watch()
    elif engine.adapters and config.INGEST_ON_STARTUP:
        app.state.ingest_task = asyncio.create_task(_startup_ingest(engine))

    yield

    logger.info("agentlog shutting down")
    task = getattr(app.state, "ingest_task", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    await engine.stop()
    shutdown_observability(app)
    await connection.close_connection()


async def _startup_ingest(engine: IngestEngine) -> None:
    try:
        await engine.ingest_all(trigger="startup")
    except ConfigError as exc:
        logger.warning("Startup ingest skipped: %s", exc)


app = FastAPI(
    title="agentlog API",
    description="Unified, searchable history of AI coding-assistant sessions",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(api_router)


def run() -> None:
    uvicorn.run("agentlog.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
