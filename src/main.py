"""FastAPI entry point for the Fitform measurement service.

Run locally:
    uvicorn src.main:app --reload --port 8000

The engines (fusion, validation, recovery, calibration, performance) are
built once in the lifespan hook from measurement_config.yaml and shared by
every request through ``app.state.services``.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import get_settings
from src.dependencies import build_services
from src.measurement.config_loader import load_measurement_config
from src.routers import health, measurements

API_V1 = "/api/v1"

OPENAPI_TAGS = [
    {"name": "measurements", "description": "Fusion cycles, feedback and calibration."},
    {"name": "system", "description": "Liveness and engine status."},
]

# ---------- Logging ----------

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("fitform")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the measurement engines on startup, drop them on shutdown."""
    settings = get_settings()
    config = load_measurement_config(settings.measurement_config_path)
    app.state.services = build_services(config)
    logger.info(
        "%s v%s [%s] ready: engine config v%s, strategy=%s, history=%d",
        settings.app_name,
        settings.app_version,
        settings.environment,
        config.version,
        config.fusion.strategy.value,
        config.fusion.history_size,
    )
    try:
        yield
    finally:
        app.state.services = None
        logger.info("%s stopped", settings.app_name)


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.app_name} API",
        description=(
            "Fuses shoulder-width and height estimates from several body "
            "trackers, validates them against recent history and applies "
            "per-user calibration."
        ),
        version=settings.app_version,
        debug=settings.debug,
        openapi_tags=OPENAPI_TAGS,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # Liveness stays unversioned at /health
    app.include_router(health.router)
    app.include_router(measurements.router, prefix=API_V1)

    return app


app = create_app()
