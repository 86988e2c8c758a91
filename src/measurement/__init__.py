"""Fitform Measurement Fusion & Validation Engine.

This package turns noisy shoulder-width / height estimates from several body
trackers into one calibrated, quality-graded measurement.

Core modules:
    base            — SourceAdapter ABC, canonical data models, quality grading
    ring_buffer     — Fixed-capacity history buffer
    config_loader   — Load/validate/hot-reload measurement_config.yaml
    fusion_engine   — Concurrent source queries and multi-source fusion
    validation      — Anomaly detection, pattern recognition, scoring
    scorers         — Deterministic scorers used by validation
    recovery        — Retry / circuit breaker / fallback per operation
    calibration     — Per-user calibration profiles and sessions
    performance     — Resource metrics and advisory settings
"""

from src.measurement.base import (
    Context,
    FusionResult,
    FusionStrategy,
    Measurements,
    Quality,
    RawEstimate,
    SourceAdapter,
    ValidationResult,
    grade_quality,
)
from src.measurement.config_loader import MeasurementConfig, get_measurement_config
from src.measurement.fusion_engine import FusionOrchestrator, MeasurementOutcome

__all__ = [
    "SourceAdapter",
    "RawEstimate",
    "Context",
    "Measurements",
    "FusionResult",
    "FusionStrategy",
    "ValidationResult",
    "Quality",
    "grade_quality",
    "MeasurementConfig",
    "get_measurement_config",
    "FusionOrchestrator",
    "MeasurementOutcome",
]
