from __future__ import annotations

import asyncio
import logging
import os
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.config import load_config
from src.api.routers import health, mel
from src.api.services.mel_service import mel_recalc_loop
from src.api.state import get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service health and liveness."},
    {"name": "MEL", "description": "Minimum Equipment List rules, availability per sector and alerts."},
]

logger = logging.getLogger(__name__)

app = FastAPI(
    title="MEL Availability API",
    description=(
        "Tracks, per hospital sector, whether the number of available units of each equipment group "
        "stays above its configured minimum, and keeps a persisted alert set (MongoDB) consistent with it. "
        "Equipment and service orders are read from the Effort API."
    ),
    version="1.0.0",
    openapi_tags=openapi_tags,
)

# Initialize typed app state (config, Mongo-backed stores, upstream client)
init_state(app, load_config())


@app.on_event("startup")
async def _on_startup() -> None:
    """Startup hook: connect to Mongo, validate connectivity, ensure indexes, and start the optional sweep loop."""
    state = get_state(app)

    # Connect + verify early so a misconfigured Mongo fails fast.
    state.mongo.connect_app()
    if not state.mongo.ping():
        raise RuntimeError("Mongo connectivity check failed during startup. Verify BACKEND_MONGO_URI.")

    state.mongo.init_indexes()

    if state.config.mel_recalc_interval_sec > 0:
        app.state._recalc_shutdown = asyncio.Event()
        state.recalc_task = asyncio.create_task(mel_recalc_loop(state, app.state._recalc_shutdown))


@app.on_event("shutdown")
async def _on_shutdown() -> None:
    """Shutdown hook: stop the sweep loop, close the upstream client and Mongo connections."""
    state = get_state(app)

    recalc_shutdown = getattr(app.state, "_recalc_shutdown", None)
    if recalc_shutdown is not None:
        recalc_shutdown.set()
    recalc_task = state.recalc_task
    if recalc_task is not None:
        try:
            await asyncio.wait_for(recalc_task, timeout=5.0)
        except Exception:
            logger.exception("Error stopping MEL recalculation task")

    try:
        await state.effort.aclose()
    except Exception:
        logger.exception("Error closing Effort API client")

    state.mongo.close()


def _env_frontend_url() -> str | None:
    # Support both:
    # - standardized: FRONTEND_URL
    # - legacy: REACT_APP_FRONTEND_URL
    return os.getenv("FRONTEND_URL") or os.getenv("REACT_APP_FRONTEND_URL")


def _env_cors_extra_origins() -> List[str]:
    # Comma-separated list for preview deployments, etc.
    raw = os.getenv("CORS_ALLOW_ORIGINS") or ""
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    return parts


# CORS: allow local frontend by default, plus explicit frontend URL and optional extra origins.
allowed_origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
frontend_url = _env_frontend_url()
if frontend_url:
    allowed_origins.append(frontend_url)
allowed_origins.extend(_env_cors_extra_origins())

# De-dupe while preserving order
_seen = set()
allowed_origins = [o for o in allowed_origins if not (o in _seen or _seen.add(o))]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(mel.router)
