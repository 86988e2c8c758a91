"""Deterministic scorers used by the validation engine.

Each scorer turns one fused measurement (plus its acquisition context and
the recent history) into a 0.0–1.0 plausibility score.  The validation
engine combines the enabled scorers with the weights from
measurement_config.yaml.

Scorers are pluggable: anything implementing ``Scorer`` can be registered
with ``ValidationEngine``.  Only ``LinearFeedbackScorer`` is trainable.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Sequence

from src.measurement.base import Context, Distance, Lighting, Measurements, Pose, clamp

logger = logging.getLogger("fitform.measurement.scorers")

# Plausible adult ranges (cm)
_SHOULDER_RANGE = (30.0, 60.0)
_HEIGHT_RANGE = (120.0, 220.0)

_LIGHTING_SCORES = {
    Lighting.EXCELLENT: 1.0,
    Lighting.GOOD: 0.9,
    Lighting.FAIR: 0.7,
    Lighting.POOR: 0.4,
}
_DISTANCE_SCORES = {
    Distance.OPTIMAL: 1.0,
    Distance.TOO_CLOSE: 0.7,
    Distance.TOO_FAR: 0.7,
}
_POSE_SCORES = {
    Pose.OPTIMAL: 1.0,
    Pose.ACCEPTABLE: 0.8,
    Pose.POOR: 0.5,
}


@dataclass(frozen=True)
class ScoringInputs:
    """Everything a scorer may look at.

    Attributes:
        measurements: The fused (and possibly calibrated) measurement.
        context:      Acquisition conditions for this cycle.
        history:      Recent non-fallback measurements, oldest first.
    """

    measurements: Measurements
    context: Context = field(default_factory=Context)
    history: Sequence[Measurements] = ()


class Scorer(ABC):
    """Capability interface for a validation scorer."""

    #: Config key under validation.scorers
    name: str = ""
    #: Disabled together with pattern recognition in degraded mode
    advanced: bool = False
    trainable: bool = False

    @abstractmethod
    def score(self, inputs: ScoringInputs) -> float:
        """Return a score in [0, 1]."""

    def update(self, inputs: ScoringInputs, target: float, learning_rate: float) -> None:
        """Nudge internal parameters toward ``target``.  No-op unless trainable."""
        return None


# ---------------------------------------------------------------------------
# Heuristic scorers
# ---------------------------------------------------------------------------


def _range_score(value: float, low: float, high: float) -> float:
    """1.0 inside [low, high], decaying linearly to 0.0 one range-width outside."""
    if low <= value <= high:
        return 1.0
    width = high - low
    distance = low - value if value < low else value - high
    return clamp(1.0 - distance / width)


def plausibility(measurements: Measurements) -> float:
    shoulder = _range_score(measurements.shoulder_width, *_SHOULDER_RANGE)
    height = _range_score(measurements.height, *_HEIGHT_RANGE)
    return (shoulder + height) / 2


def context_score(context: Context) -> float:
    return (
        _LIGHTING_SCORES[context.lighting]
        + _DISTANCE_SCORES[context.distance]
        + _POSE_SCORES[context.pose]
    ) / 3


class PlausibilityScorer(Scorer):
    """Scores how close the measurement is to plausible adult body ranges."""

    name = "plausibility"

    def score(self, inputs: ScoringInputs) -> float:
        return plausibility(inputs.measurements)


class ContextScorer(Scorer):
    """Scores the acquisition conditions (lighting, distance, pose)."""

    name = "context"

    def score(self, inputs: ScoringInputs) -> float:
        return context_score(inputs.context)


class ConsistencyScorer(Scorer):
    """Scores closeness to the mean of recent history.

    A 10% relative deviation on either dimension halves the score.  With
    fewer than two history entries there is nothing to compare against and
    the scorer returns 1.0.
    """

    name = "consistency"
    advanced = True

    def __init__(self, sensitivity: float = 5.0) -> None:
        self._sensitivity = sensitivity

    def score(self, inputs: ScoringInputs) -> float:
        history = inputs.history
        if len(history) < 2:
            return 1.0

        deviations = []
        for dimension in ("shoulder_width", "height"):
            mean = sum(m.value(dimension) for m in history) / len(history)
            if mean <= 0:
                continue
            current = inputs.measurements.value(dimension)
            deviations.append(abs(current - mean) / mean)

        if not deviations:
            return 1.0
        return clamp(1.0 - self._sensitivity * max(deviations))


# ---------------------------------------------------------------------------
# Trainable scorer
# ---------------------------------------------------------------------------


class LinearFeedbackScorer(Scorer):
    """Small linear model learned from user feedback.

    Features are [fusion confidence, context score, plausibility score],
    all already in [0, 1].  Weights start at [0.4, 0.3, 0.3] and are moved
    by one bounded gradient step per feedback sample:

        w_i += learning_rate * (target - prediction) * x_i

    Each step changes a weight by at most ``learning_rate * |error|``.
    Weights stay within [0, 1].
    """

    name = "feedback_model"
    trainable = True

    DEFAULT_WEIGHTS = (0.4, 0.3, 0.3)

    def __init__(self, weights: Sequence[float] | None = None) -> None:
        self._weights = list(weights or self.DEFAULT_WEIGHTS)
        if len(self._weights) != 3:
            raise ValueError("LinearFeedbackScorer expects exactly 3 weights")

    @property
    def weights(self) -> tuple[float, ...]:
        return tuple(self._weights)

    @staticmethod
    def features(inputs: ScoringInputs) -> tuple[float, float, float]:
        return (
            inputs.measurements.confidence,
            context_score(inputs.context),
            plausibility(inputs.measurements),
        )

    def score(self, inputs: ScoringInputs) -> float:
        x = self.features(inputs)
        return clamp(sum(w * xi for w, xi in zip(self._weights, x)))

    def update(self, inputs: ScoringInputs, target: float, learning_rate: float) -> None:
        x = self.features(inputs)
        error = clamp(target) - self.score(inputs)
        self._weights = [
            clamp(w + learning_rate * error * xi) for w, xi in zip(self._weights, x)
        ]
        logger.debug(
            "Feedback model step: error=%.3f weights=%s",
            error,
            [round(w, 4) for w in self._weights],
        )


def default_scorers() -> list[Scorer]:
    """The standard scorer set, keyed by the names used in config."""
    return [
        PlausibilityScorer(),
        ContextScorer(),
        ConsistencyScorer(),
        LinearFeedbackScorer(),
    ]
