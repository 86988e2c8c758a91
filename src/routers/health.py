"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.config import get_settings

router = APIRouter(tags=["system"])
logger = logging.getLogger("fitform.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Reports "degraded" until the measurement engine has been built, plus the
    loaded engine config version and any open circuit breakers.
    """
    settings = get_settings()
    services = getattr(request.app.state, "services", None)

    open_breakers: list[str] = []
    if services is not None:
        open_breakers = services.recovery.recovery_stats().open_breakers
        if open_breakers:
            logger.warning("Health check: open circuit breakers %s", open_breakers)

    return {
        "status": "healthy" if services is not None else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "engine_config_version": services.config.version if services else None,
        "open_breakers": open_breakers,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
