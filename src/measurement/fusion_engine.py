"""Core measurement fusion engine.

For one measurement cycle, queries every tracker source concurrently,
combines whatever came back into a single shoulder width / height estimate,
and keeps a bounded history of fused results.

``FusionOrchestrator.measure`` runs the full pipeline:

    snapshot history → query sources → fuse → append to history
    → apply user calibration → validate against the pre-cycle history
    → regrade quality → record a performance sample

All fusion parameters (strategy, history size, timeouts, fallback values)
are read from measurement_config.yaml via the config_loader module.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from src.measurement.base import (
    FUSION_SOURCE,
    Context,
    FusionResult,
    FusionStrategy,
    Measurements,
    Quality,
    RawEstimate,
    SourceQuery,
    ValidationResult,
    grade_quality,
)
from src.measurement.calibration import CalibratedMeasurement, CalibrationEngine
from src.measurement.config_loader import MeasurementConfig, get_measurement_config
from src.measurement.performance import OptimalSettings, PerformanceMetrics, PerformanceMonitor
from src.measurement.recovery import ErrorRecoveryManager
from src.measurement.ring_buffer import RingBuffer
from src.measurement.validation import REC_RECALIBRATE, ValidationEngine

logger = logging.getLogger("fitform.measurement.fusion")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeviceStatus:
    """Resource readings reported by the client alongside a cycle."""

    memory_mb: float = 0.0
    battery_pct: Optional[float] = None


@dataclass
class MeasurementOutcome:
    """Everything one ``measure`` call produced.

    Attributes:
        result:      Final result (calibrated when a profile exists, regraded).
        validation:  Validation of ``result`` against the pre-cycle history.
        calibration: Calibration details, or None when no user id was given.
        raw:         The fused result before calibration, as stored in history.
    """

    result: FusionResult
    validation: ValidationResult
    calibration: Optional[CalibratedMeasurement] = None
    raw: Optional[FusionResult] = None


# ---------------------------------------------------------------------------
# Fusion helpers
# ---------------------------------------------------------------------------


def _weighted_average(readings: dict[str, float], weights: dict[str, float]) -> float:
    """Compute a weighted average of readings.

    Args:
        readings: source → value.
        weights:  source → weight (need not sum to 1).

    Returns:
        Weighted average value.
    """
    total_weight = sum(weights.get(src, 0.0) for src in readings)
    if total_weight == 0.0:
        # Fall back to simple average
        return sum(readings.values()) / len(readings)
    return (
        sum(val * weights.get(src, 0.0) for src, val in readings.items())
        / total_weight
    )


def _normalize(weights: dict[str, float]) -> dict[str, float]:
    total = sum(weights.values())
    if total == 0.0:
        return {src: 1.0 / len(weights) for src in weights}
    return {src: w / total for src, w in weights.items()}


def fuse_estimates(
    estimates: Mapping[str, RawEstimate],
    strategy: FusionStrategy,
) -> FusionResult:
    """Combine the available estimates of one cycle with ``strategy``.

    ``estimates`` is keyed by the id the source was queried under; that id,
    not the estimate's self-reported ``source``, identifies it in
    ``sources_used`` and ``weights_applied``.

    Algorithm:
    1. best:      the highest-confidence estimate (first wins on ties),
                  reported under its own source id.
    2. consensus: unweighted mean of shoulder width, height and confidence.
    3. weighted:  confidence-weighted mean of all three fields; with every
                  confidence at zero this degrades to the unweighted mean.

    A single estimate is passed through unchanged with its own source id.

    Raises:
        ValueError: If ``estimates`` is empty (callers use the fallback).
    """
    if not estimates:
        raise ValueError("No estimates to fuse")

    if len(estimates) == 1:
        ((only_id, only),) = estimates.items()
        return FusionResult(
            measurements=only.measurements,
            source=only_id,
            quality=grade_quality(only.confidence),
            sources_used=(only_id,),
            weights_applied={only_id: 1.0},
        )

    if strategy is FusionStrategy.BEST:
        best_id = max(estimates, key=lambda src: estimates[src].confidence)
        best = estimates[best_id]
        return FusionResult(
            measurements=best.measurements,
            source=best_id,
            quality=grade_quality(best.confidence),
            strategy=strategy,
            sources_used=(best_id,),
            weights_applied={best_id: 1.0},
        )

    if strategy is FusionStrategy.CONSENSUS:
        weights = {src: 1.0 for src in estimates}
    else:
        weights = {src: e.confidence for src, e in estimates.items()}

    def _fuse(field_name: str) -> float:
        return _weighted_average(
            {src: float(getattr(e, field_name)) for src, e in estimates.items()},
            weights,
        )

    measurements = Measurements(
        shoulder_width=round(_fuse("shoulder_width"), 4),
        height=round(_fuse("height"), 4),
        confidence=round(_fuse("confidence"), 4),
    )
    return FusionResult(
        measurements=measurements,
        source=FUSION_SOURCE,
        quality=grade_quality(measurements.confidence),
        strategy=strategy,
        sources_used=tuple(estimates),
        weights_applied=_normalize(weights),
    )


# ---------------------------------------------------------------------------
# Top-level orchestrator
# ---------------------------------------------------------------------------


class FusionOrchestrator:
    """Runs measurement cycles across heterogeneous tracker sources.

    Usage::

        orchestrator = FusionOrchestrator(config, validator=ValidationEngine(config))
        outcome = await orchestrator.measure(
            {"arcore": arcore.as_query(), "computer_vision": cv.as_query()},
            Context(lighting=Lighting.GOOD),
            user_id="user-1",
        )

    Every collaborator is optional except the validator, which ``measure``
    needs; ``fuse`` alone works with nothing but a config.
    """

    def __init__(
        self,
        config: MeasurementConfig | None = None,
        validator: ValidationEngine | None = None,
        recovery: ErrorRecoveryManager | None = None,
        calibration: CalibrationEngine | None = None,
        performance: PerformanceMonitor | None = None,
    ) -> None:
        self._config = config or get_measurement_config()
        self._settings = self._config.fusion
        self._validator = validator or ValidationEngine(self._config)
        self._recovery = recovery
        self._calibration = calibration
        self._performance = performance
        self._history: RingBuffer[FusionResult] = RingBuffer(self._settings.history_size)
        self._advanced = self._validator.advanced_features
        self._interval_ms = self._config.performance.default_interval_ms

    @property
    def processing_interval_ms(self) -> int:
        return self._interval_ms

    @property
    def history_capacity(self) -> int:
        return self._history.capacity

    def history(self) -> list[FusionResult]:
        """Fused results, oldest first."""
        return self._history.to_list()

    def apply_settings(self, settings: OptimalSettings) -> None:
        """Adopt advisory settings from the performance monitor."""
        self._history.resize(settings.max_history_size)
        self._validator.set_advanced_features(settings.enable_advanced_features)
        self._advanced = settings.enable_advanced_features
        self._interval_ms = settings.frame_processing_interval_ms
        logger.info(
            "Applied settings: interval=%dms history=%d advanced=%s",
            settings.frame_processing_interval_ms,
            settings.max_history_size,
            settings.enable_advanced_features,
        )

    # ── Fusion ──

    async def fuse(self, source_queries: Mapping[str, SourceQuery]) -> FusionResult:
        """Query all sources concurrently and fuse what came back."""
        result, _ = await self._fuse_cycle(source_queries)
        return result

    async def _fuse_cycle(
        self, source_queries: Mapping[str, SourceQuery]
    ) -> tuple[FusionResult, float]:
        """Fuse one cycle; also returns the share of queried sources that failed."""
        queries = {
            source_id: query
            for source_id, query in source_queries.items()
            if self._advanced or source_id not in self._settings.optional_sources
        }
        skipped = len(source_queries) - len(queries)
        if skipped:
            logger.debug("Degraded mode: skipped %d optional source(s)", skipped)

        estimates = await self._gather(queries)
        error_rate = 1.0 - len(estimates) / len(queries) if queries else 0.0

        if estimates:
            result = fuse_estimates(estimates, self._settings.strategy)
        else:
            logger.warning("No source produced an estimate; using fallback measurements")
            result = self._fallback_result()

        logger.debug("Fused cycle: %s", result.to_metadata_dict())
        self._history.append(result)
        return result, error_rate

    async def _gather(self, queries: Mapping[str, SourceQuery]) -> dict[str, RawEstimate]:
        ids = list(queries)
        outcomes = await asyncio.gather(
            *(self._query_source(source_id, queries[source_id]) for source_id in ids),
            return_exceptions=True,
        )

        estimates: dict[str, RawEstimate] = {}
        for source_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Source %s unavailable: %r", source_id, outcome)
            elif outcome is None:
                logger.debug("Source %s returned no estimate", source_id)
            else:
                estimates[source_id] = outcome
        return estimates

    async def _query_source(self, source_id: str, query: SourceQuery) -> RawEstimate | None:
        async def bounded() -> RawEstimate | None:
            timeout = self._settings.source_timeout_s
            if timeout is None:
                return await query()
            return await asyncio.wait_for(query(), timeout)

        if self._recovery is None:
            return await bounded()
        return await self._recovery.execute(f"source:{source_id}", bounded)

    def _fallback_result(self) -> FusionResult:
        fallback = self._settings.fallback
        return FusionResult(
            measurements=Measurements(
                shoulder_width=fallback.shoulder_width_cm,
                height=fallback.height_cm,
                confidence=fallback.confidence,
            ),
            source=FUSION_SOURCE,
            quality=Quality.POOR,
            is_fallback=True,
        )

    # ── Full pipeline ──

    async def measure(
        self,
        source_queries: Mapping[str, SourceQuery],
        context: Context,
        user_id: str | None = None,
        device: DeviceStatus | None = None,
    ) -> MeasurementOutcome:
        """Run one complete measurement cycle.  Never raises."""
        started = time.perf_counter()
        error_rate = 0.0
        try:
            previous = self.history()
            raw, error_rate = await self._fuse_cycle(source_queries)

            result = raw
            calibration = None
            if user_id is not None and self._calibration is not None:
                calibration = self._calibration.apply_calibration(user_id, raw.measurements)
                if calibration.applied:
                    result = replace(raw, measurements=calibration.measurements)
                    previous = [
                        replace(
                            r,
                            measurements=self._calibration.apply_calibration(
                                user_id, r.measurements
                            ).measurements,
                        )
                        for r in previous
                    ]

            validation = self._validator.validate(result, previous, context)
            result = replace(
                result, quality=grade_quality(result.confidence, validation.anomalies)
            )
            outcome = MeasurementOutcome(
                result=result, validation=validation, calibration=calibration, raw=raw
            )
        except Exception:
            logger.exception("Measurement cycle failed; returning fallback result")
            fallback = self._fallback_result()
            outcome = MeasurementOutcome(
                result=fallback,
                validation=ValidationResult(
                    is_valid=False,
                    confidence=0.0,
                    ml_score=0.0,
                    quality=Quality.POOR,
                    recommendations=[REC_RECALIBRATE],
                ),
                raw=fallback,
            )
            error_rate = 1.0

        if self._performance is not None:
            self._performance.record(
                PerformanceMetrics(
                    frame_processing_ms=(time.perf_counter() - started) * 1000,
                    memory_mb=device.memory_mb if device else 0.0,
                    battery_pct=device.battery_pct if device else None,
                    measurement_accuracy=outcome.validation.confidence,
                    error_rate=error_rate,
                )
            )
        return outcome
