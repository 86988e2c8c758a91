"""Pydantic models for the measurement fusion API: submitted estimates,
fused results, validation reports, calibration and engine diagnostics."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import Field

from src.measurement.base import (
    AnomalyType,
    CorrectionType,
    Distance,
    FusionStrategy,
    Lighting,
    PatternType,
    Pose,
    Quality,
    Severity,
)
from src.models.base import FitformBase


# ---------- Requests ----------

class EstimateIn(FitformBase):
    shoulder_width: float = Field(description="cm")
    height: float = Field(description="cm")
    confidence: float = Field(ge=0, le=1)


class ContextIn(FitformBase):
    lighting: Lighting = Lighting.GOOD
    distance: Distance = Distance.OPTIMAL
    pose: Pose = Pose.OPTIMAL


class DeviceStatusIn(FitformBase):
    memory_mb: float = Field(default=0.0, ge=0)
    battery_pct: float | None = Field(default=None, ge=0, le=100)


class FuseRequest(FitformBase):
    """One measurement cycle as observed by the client.

    ``sources`` maps a tracker id to its estimate; ``null`` marks a tracker
    that had nothing for this frame.
    """

    sources: dict[str, EstimateIn | None] = Field(default_factory=dict)
    context: ContextIn = Field(default_factory=ContextIn)
    user_id: str | None = Field(default=None, min_length=1)
    device: DeviceStatusIn | None = None


class MeasurementsIn(FitformBase):
    shoulder_width: float = Field(gt=0)
    height: float = Field(gt=0)
    confidence: float = Field(default=1.0, ge=0, le=1)


class FeedbackRequest(FitformBase):
    """User feedback on a measurement.

    ``observed`` must be the uncalibrated ``raw_measurements`` returned by
    the fuse endpoint.  The rating is range-checked by the engine (HTTP 400).
    """

    user_id: str = Field(min_length=1)
    observed: MeasurementsIn
    accuracy_rating: int
    known_height: float | None = Field(default=None, gt=0)
    known_shoulder_width: float | None = Field(default=None, gt=0)
    context: ContextIn = Field(default_factory=ContextIn)


class SessionStartRequest(FitformBase):
    user_id: str = Field(min_length=1)


class SessionMeasurementRequest(FitformBase):
    measurements: MeasurementsIn
    context: ContextIn = Field(default_factory=ContextIn)
    known_height: float | None = Field(default=None, gt=0)
    known_shoulder_width: float | None = Field(default=None, gt=0)


# ---------- Fusion / validation responses ----------

class MeasurementsOut(FitformBase):
    shoulder_width: float
    height: float
    confidence: float


class FusionResultOut(FitformBase):
    measurements: MeasurementsOut
    source: str
    quality: Quality
    strategy: FusionStrategy | None = None
    sources_used: list[str] = Field(default_factory=list)
    weights_applied: dict[str, float] = Field(default_factory=dict)
    is_fallback: bool = False
    computed_at: datetime


class CorrectionOut(FitformBase):
    type: CorrectionType
    value: float


class AnomalyOut(FitformBase):
    type: AnomalyType
    severity: Severity
    confidence: float
    description: str = ""
    dimension: str | None = None
    correction: CorrectionOut | None = None


class PatternOut(FitformBase):
    pattern: PatternType
    strength: float
    description: str = ""
    prediction: float | None = None


class ValidationOut(FitformBase):
    is_valid: bool
    confidence: float
    ml_score: float
    quality: Quality
    scores: dict[str, float] = Field(default_factory=dict)
    anomalies: list[AnomalyOut] = Field(default_factory=list)
    patterns: list[PatternOut] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class CalibrationOut(FitformBase):
    applied: bool
    corrections: list[str] = Field(default_factory=list)


class FuseResponse(FitformBase):
    result: FusionResultOut
    raw_measurements: MeasurementsOut
    validation: ValidationOut
    calibration: CalibrationOut | None = None


# ---------- Calibration responses ----------

class ScaleFactorsOut(FitformBase):
    shoulder_width: float
    height: float
    confidence: float


class CalibrationProfileOut(FitformBase):
    user_id: str
    scale_factors: ScaleFactorsOut
    reference_count: int
    profile_version: int
    created_at: datetime
    last_updated: datetime


class AccuracyStatsOut(FitformBase):
    overall_accuracy: float
    accuracy_improvement: float
    calibration_effectiveness: float
    feedback_count: int
    recommendations: list[str]


class DailyAccuracyOut(FitformBase):
    date: date
    accuracy: float


class AccuracyTrendsOut(FitformBase):
    daily_accuracy: list[DailyAccuracyOut]
    trend: str
    average_accuracy: float


class CalibrationSuggestionsOut(FitformBase):
    suggestions: list[str]
    priority: str
    estimated_improvement: float


class SessionOut(FitformBase):
    session_id: str
    user_id: str
    started_at: datetime
    quality: Quality
    status: str
    measurement_count: int = 0


class SessionFeedbackOut(FitformBase):
    quality: Quality
    feedback: str


class SessionOutcomeOut(FitformBase):
    success: bool
    feedback: str
    accuracy: float = 0.0
    profile: CalibrationProfileOut | None = None


# ---------- Diagnostics ----------

class PerformanceStatsOut(FitformBase):
    sample_count: int
    avg_frame_processing_ms: float
    avg_memory_mb: float
    avg_battery_pct: float | None = None
    measurement_accuracy: float
    error_rate: float
    trend: str
    recommendation: str


class OptimalSettingsOut(FitformBase):
    frame_processing_interval_ms: int
    max_history_size: int
    enable_advanced_features: bool


class PerformanceOut(FitformBase):
    stats: PerformanceStatsOut
    optimal_settings: OptimalSettingsOut
    processing_interval_ms: int
    history_capacity: int
    advanced_features: bool


class RecoveryStatsOut(FitformBase):
    total_calls: int
    total_failures: int
    fallbacks_served: int
    open_breakers: list[str]
    breakers: dict[str, dict[str, Any]]


class ModelMetricsOut(FitformBase):
    training_samples: int
    model_accuracy: float
    advanced_features: bool
    scorer_weights: dict[str, float]
    recommendations: list[str]
