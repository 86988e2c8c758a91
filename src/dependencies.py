"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.measurement.calibration import CalibrationEngine
from src.measurement.config_loader import MeasurementConfig
from src.measurement.fusion_engine import FusionOrchestrator
from src.measurement.performance import PerformanceMonitor
from src.measurement.recovery import ErrorRecoveryManager
from src.measurement.validation import ValidationEngine


@dataclass
class MeasurementServices:
    """Engine instances shared by every request of one app process."""

    config: MeasurementConfig
    orchestrator: FusionOrchestrator
    validator: ValidationEngine
    recovery: ErrorRecoveryManager
    calibration: CalibrationEngine
    performance: PerformanceMonitor


def build_services(config: MeasurementConfig) -> MeasurementServices:
    """Wire the engines together; called once from the app lifespan."""
    validator = ValidationEngine(config)
    recovery = ErrorRecoveryManager(config)
    calibration = CalibrationEngine(config)
    performance = PerformanceMonitor(config)
    orchestrator = FusionOrchestrator(
        config,
        validator=validator,
        recovery=recovery,
        calibration=calibration,
        performance=performance,
    )
    return MeasurementServices(
        config=config,
        orchestrator=orchestrator,
        validator=validator,
        recovery=recovery,
        calibration=calibration,
        performance=performance,
    )


async def get_services(request: Request) -> MeasurementServices:
    """Return the engines built at startup (``app.state.services``)."""
    services: MeasurementServices | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Measurement engine not initialised")
    return services


# Annotated shortcuts for route signatures
Services = Annotated[MeasurementServices, Depends(get_services)]
AppSettings = Annotated[Settings, Depends(get_settings)]
