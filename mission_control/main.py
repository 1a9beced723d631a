"""Mission Control FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mission_control import config
from mission_control.routers.lifecycle import lifecycle_router
from mission_control.routers.sync import sync_router

from mission_control.db import connection, migrations
from mission_control.db.sync_engine import PhaseSyncEngine
from mission_control.observability import initialize as initialize_observability, shutdown as shutdown_observability

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("mission_control")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Mission Control backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()
    app.state.db = db

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Phase file sync, only when a plan directory is configured and enabled
    app.state.sync_engine = None
    if config.PLAN_DIR and config.SYNC_ENABLED:
        sync = PhaseSyncEngine(db, Path(config.PLAN_DIR))
        await sync.start()
        app.state.sync_engine = sync
    else:
        logger.info("Phase sync disabled (MC_PLAN_DIR / MC_SYNC_ENABLED not set)")

    yield

    logger.info("Mission Control backend shutting down")

    if app.state.sync_engine is not None:
        await app.state.sync_engine.stop()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="Mission Control API",
    description="Backend API for the Mission Control agent dashboard",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow the dashboard dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(sync_router)
app.include_router(lifecycle_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    sync_engine = getattr(app.state, "sync_engine", None)
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "watcher": "running" if sync_engine and sync_engine.is_running else "stopped",
    }


def run() -> None:
    import uvicorn

    uvicorn.run("mission_control.main:app", host=config.HOST, port=config.PORT)
