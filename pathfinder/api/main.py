"""
pathfinder.api.main — FastAPI application entry point
=======================================================

Run with::

    uvicorn pathfinder.api.main:app --reload --port 8000

Besides serving requests, the app runs two background jobs on its event
loop: the small-batch flag sweep and the finished-event retention cleanup.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from pathfinder import __version__  # noqa: E402
from pathfinder.api.deps import get_config, get_engine  # noqa: E402
from pathfinder.api.routes.events import router as events_router  # noqa: E402
from pathfinder.database.engine import run_db  # noqa: E402
from pathfinder.engine.scheduler import PeriodicTask  # noqa: E402
from pathfinder.services.batch_service import run_batch_reassignment  # noqa: E402
from pathfinder.services.retention_service import cleanup_finished_events  # noqa: E402

logger = logging.getLogger(__name__)

REASSIGNMENT_INTERVAL_SECONDS = 60.0
RETENTION_INTERVAL_SECONDS = 24 * 60 * 60.0


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine, run background jobs."""
    engine = get_engine()
    config = get_config()

    async def _reassign() -> None:
        await run_db(run_batch_reassignment, engine, None, config.batch_overflow_threshold)

    async def _cleanup() -> None:
        await run_db(cleanup_finished_events, engine)

    jobs = [
        PeriodicTask(_reassign, REASSIGNMENT_INTERVAL_SECONDS, name="batch-reassignment"),
        PeriodicTask(_cleanup, RETENTION_INTERVAL_SECONDS, name="event-retention"),
    ]
    for job in jobs:
        job.start()

    logger.info(
        "Pathfinder API started for %s — engine ready (%s)",
        config.community_name, engine.url.database,
    )
    yield
    for job in jobs:
        job.stop()
    logger.info("Pathfinder API shutting down")


app = FastAPI(
    title="Pathfinder Events API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(events_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
