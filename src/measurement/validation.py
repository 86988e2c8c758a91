"""Validation engine: anomaly detection, pattern recognition and scoring.

Given a fused measurement, the recent fusion history and the acquisition
context, ``ValidationEngine.validate`` decides whether the result can be
trusted:

1. Anomaly detection
   - statistical:  z-score of each dimension against the rolling window
   - temporal:     sudden jump compared to the recent average step
   - proportional: height / shoulder width outside the anatomical band
   - contextual:   poor lighting, wrong distance, poor pose
2. Pattern recognition (advanced feature): trend, cyclical, seasonal.
3. Scoring: weight-normalised average of the enabled scorers, minus a
   severity penalty per anomaly.
4. Validity, quality grade and de-duplicated recommendations.

Validation failures are returned in the ValidationResult, never raised.
"""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Sequence

from src.measurement.base import (
    DIMENSIONS,
    Anomaly,
    AnomalyType,
    Context,
    Correction,
    CorrectionType,
    Distance,
    FusionResult,
    Lighting,
    Measurements,
    Pattern,
    PatternType,
    Pose,
    Quality,
    Severity,
    ValidationResult,
    clamp,
    grade_quality,
    utc_now,
)
from src.measurement.config_loader import MeasurementConfig, get_measurement_config
from src.measurement.ring_buffer import RingBuffer
from src.measurement.scorers import Scorer, ScoringInputs, default_scorers

logger = logging.getLogger("fitform.measurement.validation")

# Recommendation texts, in the order they are emitted
REC_RECALIBRATE = "Consider recalibrating the measurement system"
REC_CONDITIONS = "Improve measurement conditions"
REC_VERIFY = "Verify measurement accuracy"
REC_POSITIONING = "Check body positioning"
REC_HOLD_STILL = "Hold still and retake the measurement"
REC_DRIFT = "Monitor for systematic measurement drift"

_ANOMALY_RECOMMENDATIONS = {
    AnomalyType.CONTEXTUAL: REC_CONDITIONS,
    AnomalyType.STATISTICAL: REC_VERIFY,
    AnomalyType.PROPORTIONAL: REC_POSITIONING,
    AnomalyType.TEMPORAL: REC_HOLD_STILL,
}

_DRIFT_STRENGTH = 0.3
# Predictions within this distance of the feedback target count as correct
_ACCURACY_TOLERANCE = 0.2
_ACCURACY_WINDOW = 50


@dataclass(frozen=True)
class TrainingSample:
    """One labelled validation example derived from user feedback.

    Attributes:
        measurements:    What the engine measured.
        context:         Conditions during the measurement.
        accuracy_rating: User rating 1–5; the training target is rating / 5.
        recorded_at:     UTC time the feedback arrived.
    """

    measurements: Measurements
    context: Context
    accuracy_rating: int
    recorded_at: datetime = field(default_factory=utc_now)

    @property
    def target(self) -> float:
        return clamp(self.accuracy_rating / 5)


@dataclass
class ModelMetrics:
    training_samples: int
    model_accuracy: float
    advanced_features: bool
    scorer_weights: dict[str, float] = field(default_factory=dict)
    recommendations: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Statistics helpers
# ---------------------------------------------------------------------------


def _usable(history: Iterable[FusionResult]) -> list[Measurements]:
    """Non-fallback measurements from history, oldest first."""
    return [r.measurements for r in history if not r.is_fallback]


def _mean_relative_step(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    steps = [
        (values[i] - values[i - 1]) / values[i - 1]
        for i in range(1, len(values))
        if values[i - 1] != 0
    ]
    return sum(steps) / len(steps) if steps else 0.0


def _time_bucket(moment: datetime) -> str:
    hour = moment.hour
    if hour < 6:
        return "night"
    if hour < 12:
        return "morning"
    if hour < 18:
        return "afternoon"
    return "evening"


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ValidationEngine:
    """Validates fused measurements and learns from feedback.

    Usage::

        engine = ValidationEngine(config)
        result = engine.validate(fusion_result, orchestrator.history(), context)
        if not result.is_valid:
            show(result.recommendations)
    """

    def __init__(
        self,
        config: MeasurementConfig | None = None,
        scorers: Sequence[Scorer] | None = None,
    ) -> None:
        self._config = config or get_measurement_config()
        self._settings = self._config.validation
        self._scorers = list(scorers) if scorers is not None else default_scorers()
        self._advanced = self._settings.advanced_features
        self._training: RingBuffer[TrainingSample] = RingBuffer(
            self._settings.max_training_samples
        )

    @property
    def advanced_features(self) -> bool:
        return self._advanced

    def set_advanced_features(self, enabled: bool) -> None:
        """Toggle the heavier scorers and pattern recognition."""
        if enabled != self._advanced:
            logger.info("Advanced validation features %s", "enabled" if enabled else "disabled")
        self._advanced = enabled

    # ── Public API ──

    def validate(
        self,
        result: FusionResult,
        history: Iterable[FusionResult],
        context: Context,
    ) -> ValidationResult:
        """Validate ``result`` against ``history`` (which must not include it)."""
        history = list(history)
        past = _usable(history)
        measurements = result.measurements

        anomalies: list[Anomaly] = []
        anomalies.extend(self._statistical_anomalies(measurements, past))
        anomalies.extend(self._temporal_anomalies(measurements, past))
        anomalies.extend(self._proportional_anomalies(measurements))
        anomalies.extend(self._contextual_anomalies(context))

        patterns: list[Pattern] = []
        if self._advanced:
            patterns = self._recognize_patterns(result, history)

        inputs = ScoringInputs(
            measurements=measurements,
            context=context,
            history=past[-self._settings.statistical.window:],
        )
        scores = self._score(inputs)
        ml_score = self._combine(scores, anomalies)

        blocking = any(a.is_blocking for a in anomalies)
        is_valid = ml_score >= self._settings.confidence_threshold and not blocking
        quality = grade_quality(ml_score, anomalies)
        recommendations = self._recommendations(anomalies, patterns, quality)

        if anomalies:
            logger.info(
                "Validation found %d anomalies (%s), ml_score=%.3f valid=%s",
                len(anomalies),
                ", ".join(f"{a.type.value}/{a.severity.value}" for a in anomalies),
                ml_score,
                is_valid,
            )

        return ValidationResult(
            is_valid=is_valid,
            confidence=ml_score,
            ml_score=ml_score,
            quality=quality,
            scores=scores,
            anomalies=anomalies,
            patterns=patterns,
            recommendations=recommendations,
        )

    def train_with_feedback(self, sample: TrainingSample) -> None:
        """Record a labelled sample and take one bounded step on trainable scorers."""
        if not 1 <= sample.accuracy_rating <= 5:
            raise ValueError(f"accuracy_rating must be 1–5, got {sample.accuracy_rating}")
        self._training.append(sample)

        inputs = ScoringInputs(measurements=sample.measurements, context=sample.context)
        for scorer in self._scorers:
            if scorer.trainable:
                scorer.update(inputs, sample.target, self._settings.learning_rate)

    def model_metrics(self) -> ModelMetrics:
        recent = self._training.last(_ACCURACY_WINDOW)
        trainable = [s for s in self._scorers if s.trainable]

        accuracy = 0.0
        if recent and trainable:
            hits = 0
            for sample in recent:
                inputs = ScoringInputs(measurements=sample.measurements, context=sample.context)
                predicted = sum(s.score(inputs) for s in trainable) / len(trainable)
                if abs(predicted - sample.target) <= _ACCURACY_TOLERANCE:
                    hits += 1
            accuracy = hits / len(recent)

        recommendations: list[str] = []
        if len(self._training) < 10:
            recommendations.append("Collect more feedback to train the validation model")
        elif accuracy < 0.7:
            recommendations.append("Increase training data diversity")
        if not self._advanced:
            recommendations.append("Advanced validation is disabled; pattern checks are skipped")

        return ModelMetrics(
            training_samples=len(self._training),
            model_accuracy=round(accuracy, 4),
            advanced_features=self._advanced,
            scorer_weights={
                s.name: self._config.scorer_weight(s.name) for s in self._active_scorers()
            },
            recommendations=recommendations,
        )

    def clear_training_data(self) -> None:
        self._training.clear()

    # ── Anomaly detectors ──

    def _statistical_anomalies(
        self, current: Measurements, past: list[Measurements]
    ) -> list[Anomaly]:
        cfg = self._settings.statistical
        window = past[-cfg.window:]
        if len(window) < cfg.min_history:
            return []

        anomalies = []
        for dimension in DIMENSIONS:
            values = [m.value(dimension) for m in window]
            mean = statistics.fmean(values)
            stdev = statistics.pstdev(values)
            if stdev == 0:
                continue
            value = current.value(dimension)
            z = (value - mean) / stdev
            if abs(z) <= cfg.z_threshold:
                continue

            severity = Severity.CRITICAL if abs(z) > cfg.z_critical else Severity.HIGH

            anomalies.append(
                Anomaly(
                    type=AnomalyType.STATISTICAL,
                    severity=severity,
                    confidence=min(0.95, abs(z) / 4),
                    description=(
                        f"{dimension} {value:.1f} is {abs(z):.1f} standard deviations "
                        f"from the recent mean {mean:.1f}"
                    ),
                    dimension=dimension,
                    correction=(
                        Correction(CorrectionType.SCALE, mean / value) if value else None
                    ),
                )
            )
        return anomalies

    def _temporal_anomalies(
        self, current: Measurements, past: list[Measurements]
    ) -> list[Anomaly]:
        cfg = self._settings.temporal
        window = past[-cfg.window:]
        if len(window) < cfg.min_history:
            return []

        anomalies = []
        for dimension in DIMENSIONS:
            values = [m.value(dimension) for m in window]
            steps = [abs(values[i] - values[i - 1]) for i in range(1, len(values))]
            average = sum(steps) / len(steps)
            change = abs(current.value(dimension) - values[-1])

            if change <= cfg.min_change_cm or change <= cfg.jump_ratio * average:
                continue

            # A perfectly steady history makes any jump unbounded
            ratio = change / average if average > 0 else None
            high = ratio is None or ratio > cfg.high_ratio
            blend = 1 / ratio if ratio else 0.0

            anomalies.append(
                Anomaly(
                    type=AnomalyType.TEMPORAL,
                    severity=Severity.HIGH if high else Severity.MEDIUM,
                    confidence=0.8 if high else 0.6,
                    description=(
                        f"Sudden {dimension} change of {change:.1f} cm "
                        f"(recent average step {average:.2f} cm)"
                    ),
                    dimension=dimension,
                    correction=Correction(CorrectionType.FILTER, blend),
                )
            )
        return anomalies

    def _proportional_anomalies(self, current: Measurements) -> list[Anomaly]:
        cfg = self._settings.proportional
        ratio = current.height_to_shoulder_ratio
        if ratio is None:
            return [
                Anomaly(
                    type=AnomalyType.PROPORTIONAL,
                    severity=Severity.CRITICAL,
                    confidence=0.95,
                    description=(
                        f"Shoulder width {current.shoulder_width:.1f} cm is not positive"
                    ),
                    dimension="ratio",
                )
            ]

        if cfg.min_ratio <= ratio <= cfg.max_ratio:
            return []

        deviation = abs(ratio - cfg.expected_ratio)
        severe = deviation > cfg.severe_deviation
        return [
            Anomaly(
                type=AnomalyType.PROPORTIONAL,
                severity=Severity.HIGH if severe else Severity.MEDIUM,
                confidence=0.9 if severe else 0.7,
                description=(
                    f"Height-to-shoulder ratio {ratio:.2f} outside expected "
                    f"{cfg.min_ratio:.2f}–{cfg.max_ratio:.2f}"
                ),
                dimension="ratio",
                correction=Correction(CorrectionType.SCALE, cfg.expected_ratio / ratio),
            )
        ]

    @staticmethod
    def _contextual_anomalies(context: Context) -> list[Anomaly]:
        anomalies = []
        if context.lighting is Lighting.POOR:
            anomalies.append(
                Anomaly(
                    type=AnomalyType.CONTEXTUAL,
                    severity=Severity.MEDIUM,
                    confidence=0.8,
                    description="Poor lighting conditions may affect accuracy",
                )
            )
        if context.distance is not Distance.OPTIMAL:
            anomalies.append(
                Anomaly(
                    type=AnomalyType.CONTEXTUAL,
                    severity=Severity.MEDIUM,
                    confidence=0.7,
                    description=f"Subject is {context.distance.value.replace('_', ' ')}",
                )
            )
        if context.pose is Pose.POOR:
            anomalies.append(
                Anomaly(
                    type=AnomalyType.CONTEXTUAL,
                    severity=Severity.HIGH,
                    confidence=0.9,
                    description="Poor pose detected; stand upright facing the camera",
                )
            )
        return anomalies

    # ── Pattern recognition ──

    def _recognize_patterns(
        self, result: FusionResult, history: Iterable[FusionResult]
    ) -> list[Pattern]:
        series = [r for r in history if not r.is_fallback] + [result]
        patterns = []
        for detector in (self._trend, self._cycle, self._seasonal):
            pattern = detector(series)
            if pattern is not None:
                patterns.append(pattern)
        return patterns

    def _trend(self, series: list[FusionResult]) -> Pattern | None:
        cfg = self._settings.patterns
        recent = series[-cfg.trend_window:]
        if len(recent) < cfg.trend_window // 2 or len(recent) < 3:
            return None

        shoulders = [r.measurements.shoulder_width for r in recent]
        heights = [r.measurements.height for r in recent]
        shoulder_trend = _mean_relative_step(shoulders)
        height_trend = _mean_relative_step(heights)
        strongest = max(abs(shoulder_trend), abs(height_trend))
        if strongest <= cfg.trend_threshold:
            return None

        prediction = None
        next_shoulder = shoulders[-1] * (1 + shoulder_trend)
        if next_shoulder > 0:
            prediction = heights[-1] * (1 + height_trend) / next_shoulder

        return Pattern(
            pattern=PatternType.TREND,
            strength=clamp(strongest / (10 * cfg.trend_threshold)),
            description=(
                f"Trend detected: shoulder "
                f"{'increasing' if shoulder_trend > 0 else 'decreasing'}, height "
                f"{'increasing' if height_trend > 0 else 'decreasing'}"
            ),
            prediction=prediction,
        )

    def _cycle(self, series: list[FusionResult]) -> Pattern | None:
        cfg = self._settings.patterns
        if len(series) < cfg.cycle_window:
            return None

        values = [r.measurements.shoulder_width for r in series[-cfg.cycle_window:]]
        spread = max(values) - min(values)
        if spread == 0:
            return None

        best: tuple[int, float] | None = None
        for period in range(2, len(values) // 2 + 1):
            diffs = [abs(values[i] - values[i - period]) for i in range(period, len(values))]
            strength = clamp(1 - (sum(diffs) / len(diffs)) / spread)
            if strength > cfg.cycle_min_strength and (best is None or strength > best[1]):
                best = (period, strength)

        if best is None:
            return None
        return Pattern(
            pattern=PatternType.CYCLICAL,
            strength=best[1],
            description=f"Cyclical pattern detected with period {best[0]}",
        )

    def _seasonal(self, series: list[FusionResult]) -> Pattern | None:
        cfg = self._settings.patterns
        if len(series) < cfg.seasonal_window:
            return None

        groups: dict[str, list[float]] = {}
        for r in series[-cfg.seasonal_window:]:
            groups.setdefault(_time_bucket(r.computed_at), []).append(
                r.measurements.shoulder_width
            )
        if len(groups) < 2:
            return None

        means = [sum(g) / len(g) for g in groups.values()]
        overall = sum(means) / len(means)
        if overall <= 0:
            return None
        variance = statistics.pvariance(means) / overall
        if variance <= cfg.seasonal_threshold:
            return None
        return Pattern(
            pattern=PatternType.SEASONAL,
            strength=clamp(variance),
            description="Time-of-day measurement variations detected",
        )

    # ── Scoring ──

    def _active_scorers(self) -> list[Scorer]:
        return [
            s for s in self._scorers
            if self._config.scorer_weight(s.name) > 0 and (self._advanced or not s.advanced)
        ]

    def _score(self, inputs: ScoringInputs) -> dict[str, float]:
        return {s.name: clamp(s.score(inputs)) for s in self._active_scorers()}

    def _combine(self, scores: dict[str, float], anomalies: list[Anomaly]) -> float:
        total_weight = sum(self._config.scorer_weight(name) for name in scores)
        if total_weight > 0:
            base = sum(
                value * self._config.scorer_weight(name) for name, value in scores.items()
            ) / total_weight
        else:
            base = 0.0

        penalty = sum(
            self._config.severity_penalty(a.severity) * a.confidence for a in anomalies
        )
        return round(clamp(base - penalty), 4)

    @staticmethod
    def _recommendations(
        anomalies: list[Anomaly], patterns: list[Pattern], quality: Quality
    ) -> list[str]:
        recommendations: list[str] = []

        def _add(text: str) -> None:
            if text not in recommendations:
                recommendations.append(text)

        if quality is Quality.POOR:
            _add(REC_RECALIBRATE)
        for anomaly in anomalies:
            _add(_ANOMALY_RECOMMENDATIONS[anomaly.type])
        for pattern in patterns:
            if pattern.pattern is PatternType.TREND and pattern.strength > _DRIFT_STRENGTH:
                _add(REC_DRIFT)
        return recommendations
