"""Measurement fusion endpoints: fuse a cycle, submit feedback, and inspect
calibration, performance and recovery state."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.dependencies import Services
from src.measurement.base import Context, Measurements, RawEstimate, SourceQuery
from src.measurement.calibration import (
    SessionNotFoundError,
    UserCalibrationProfile,
    UserFeedback,
)
from src.measurement.fusion_engine import DeviceStatus
from src.measurement.validation import TrainingSample
from src.models.base import ErrorDetail
from src.models.measurements import (
    AccuracyStatsOut,
    AccuracyTrendsOut,
    CalibrationOut,
    CalibrationProfileOut,
    CalibrationSuggestionsOut,
    ContextIn,
    EstimateIn,
    FeedbackRequest,
    FuseRequest,
    FuseResponse,
    FusionResultOut,
    MeasurementsIn,
    MeasurementsOut,
    ModelMetricsOut,
    OptimalSettingsOut,
    PerformanceOut,
    RecoveryStatsOut,
    SessionFeedbackOut,
    SessionMeasurementRequest,
    SessionOut,
    SessionOutcomeOut,
    SessionStartRequest,
    ValidationOut,
)

router = APIRouter(prefix="/measurements", tags=["measurements"])
logger = logging.getLogger("fitform.routers.measurements")


# ---------- Helpers ----------

def _context(body: ContextIn) -> Context:
    return Context(lighting=body.lighting, distance=body.distance, pose=body.pose)


def _measurements(body: MeasurementsIn) -> Measurements:
    return Measurements(
        shoulder_width=body.shoulder_width,
        height=body.height,
        confidence=body.confidence,
    )


def _submitted(source_id: str, estimate: EstimateIn | None) -> SourceQuery:
    """Wrap a client-submitted estimate as a source query."""

    async def query() -> RawEstimate | None:
        if estimate is None:
            return None
        return RawEstimate(
            shoulder_width=estimate.shoulder_width,
            height=estimate.height,
            confidence=estimate.confidence,
            source=source_id,
        )

    return query


def _profile_out(profile: UserCalibrationProfile) -> CalibrationProfileOut:
    return CalibrationProfileOut(
        user_id=profile.user_id,
        scale_factors=asdict(profile.scale_factors),
        reference_count=len(profile.reference_measurements),
        profile_version=profile.profile_version,
        created_at=profile.created_at,
        last_updated=profile.last_updated,
    )


# ---------- Fusion ----------

@router.post("/fuse", response_model=FuseResponse)
async def fuse_measurement(body: FuseRequest, services: Services) -> Any:
    queries = {source_id: _submitted(source_id, est) for source_id, est in body.sources.items()}
    device = (
        DeviceStatus(memory_mb=body.device.memory_mb, battery_pct=body.device.battery_pct)
        if body.device
        else None
    )
    outcome = await services.orchestrator.measure(
        queries, _context(body.context), user_id=body.user_id, device=device
    )

    raw = outcome.raw or outcome.result
    return FuseResponse(
        result=FusionResultOut.model_validate(outcome.result),
        raw_measurements=MeasurementsOut.model_validate(raw.measurements),
        validation=ValidationOut.model_validate(outcome.validation),
        calibration=(
            CalibrationOut.model_validate(outcome.calibration) if outcome.calibration else None
        ),
    )


@router.get("/history", response_model=list[FusionResultOut])
async def get_history(
    services: Services,
    limit: int = Query(default=20, ge=1, le=100),
) -> Any:
    return services.orchestrator.history()[-limit:]


# ---------- Feedback & calibration ----------

@router.post(
    "/feedback",
    response_model=CalibrationProfileOut,
    responses={400: {"model": ErrorDetail}},
)
async def submit_feedback(body: FeedbackRequest, services: Services) -> Any:
    observed = _measurements(body.observed)
    try:
        profile = services.calibration.learn_from_feedback(
            body.user_id,
            observed,
            UserFeedback(
                accuracy_rating=body.accuracy_rating,
                known_height=body.known_height,
                known_shoulder_width=body.known_shoulder_width,
            ),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    logger.info(
        "Feedback from %s: rating=%d known_height=%s known_shoulder_width=%s",
        body.user_id,
        body.accuracy_rating,
        body.known_height,
        body.known_shoulder_width,
    )
    sample = TrainingSample(
        measurements=observed,
        context=_context(body.context),
        accuracy_rating=body.accuracy_rating,
    )

    async def update_model() -> None:
        services.validator.train_with_feedback(sample)

    await services.recovery.execute("model:update", update_model)
    return _profile_out(profile)


@router.get(
    "/calibration/{user_id}",
    response_model=CalibrationProfileOut,
    responses={404: {"model": ErrorDetail}},
)
async def get_calibration_profile(user_id: str, services: Services) -> Any:
    profile = services.calibration.profile(user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Calibration profile not found")
    return _profile_out(profile)


@router.get("/calibration/{user_id}/stats", response_model=AccuracyStatsOut)
async def get_accuracy_stats(user_id: str, services: Services) -> Any:
    return services.calibration.accuracy_stats(user_id)


@router.get("/calibration/{user_id}/trends", response_model=AccuracyTrendsOut)
async def get_accuracy_trends(
    user_id: str,
    services: Services,
    days: int = Query(default=30, ge=1, le=365),
) -> Any:
    return services.calibration.accuracy_trends(user_id, days=days)


@router.get("/calibration/{user_id}/suggestions", response_model=CalibrationSuggestionsOut)
async def get_calibration_suggestions(user_id: str, services: Services) -> Any:
    return services.calibration.calibration_suggestions(user_id)


# ---------- Calibration sessions ----------

@router.post("/calibration/sessions", response_model=SessionOut, status_code=201)
async def start_calibration_session(body: SessionStartRequest, services: Services) -> Any:
    session = services.calibration.start_session(body.user_id)
    return SessionOut(
        session_id=session.session_id,
        user_id=session.user_id,
        started_at=session.started_at,
        quality=session.quality,
        status=session.status.value,
    )


@router.post(
    "/calibration/sessions/{session_id}/measurements",
    response_model=SessionFeedbackOut,
    responses={404: {"model": ErrorDetail}},
)
async def add_calibration_measurement(
    session_id: str, body: SessionMeasurementRequest, services: Services
) -> Any:
    try:
        return services.calibration.add_session_measurement(
            session_id,
            _measurements(body.measurements),
            _context(body.context),
            known_height=body.known_height,
            known_shoulder_width=body.known_shoulder_width,
        )
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Calibration session not found") from exc


@router.post(
    "/calibration/sessions/{session_id}/complete",
    response_model=SessionOutcomeOut,
    responses={404: {"model": ErrorDetail}},
)
async def complete_calibration_session(session_id: str, services: Services) -> Any:
    try:
        outcome = services.calibration.complete_session(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Calibration session not found") from exc

    return SessionOutcomeOut(
        success=outcome.success,
        feedback=outcome.feedback,
        accuracy=outcome.accuracy,
        profile=_profile_out(outcome.profile) if outcome.profile else None,
    )


# ---------- Diagnostics ----------

@router.get("/performance", response_model=PerformanceOut)
async def get_performance(services: Services) -> Any:
    orchestrator = services.orchestrator
    return PerformanceOut(
        stats=asdict(services.performance.stats()),
        optimal_settings=asdict(services.performance.optimal_settings()),
        processing_interval_ms=orchestrator.processing_interval_ms,
        history_capacity=orchestrator.history_capacity,
        advanced_features=services.validator.advanced_features,
    )


@router.post("/performance/apply", response_model=OptimalSettingsOut)
async def apply_optimal_settings(services: Services) -> Any:
    settings = services.performance.optimal_settings()
    logger.info("Applying performance settings via API: %s", settings)
    services.orchestrator.apply_settings(settings)
    return settings


@router.get("/recovery", response_model=RecoveryStatsOut)
async def get_recovery_stats(services: Services) -> Any:
    return services.recovery.recovery_stats()


@router.get("/validation/metrics", response_model=ModelMetricsOut)
async def get_model_metrics(services: Services) -> Any:
    return services.validator.model_metrics()
