"""Base classes and canonical data models for the Fitform measurement engine.

Every tracker adapter must subclass SourceAdapter (or expose an equivalent
async callable) and return RawEstimate instances.  These types are the single
source of truth consumed by the fusion orchestrator, the validation engine,
the calibration engine and the API layer.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Iterable


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp ``value`` into ``[low, high]``."""
    return max(low, min(high, value))


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Quality(str, Enum):
    """Coarse quality grade shown to the user.

    Ordered poor < fair < good < excellent; ``rank`` exposes that ordering.
    """

    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"

    @property
    def rank(self) -> int:
        return _QUALITY_RANK[self]


_QUALITY_RANK = {
    Quality.POOR: 0,
    Quality.FAIR: 1,
    Quality.GOOD: 2,
    Quality.EXCELLENT: 3,
}


class Lighting(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class Distance(str, Enum):
    OPTIMAL = "optimal"
    TOO_CLOSE = "too_close"
    TOO_FAR = "too_far"


class Pose(str, Enum):
    OPTIMAL = "optimal"
    ACCEPTABLE = "acceptable"
    POOR = "poor"


class FusionStrategy(str, Enum):
    """How two or more available source estimates are combined."""

    BEST = "best"
    CONSENSUS = "consensus"
    WEIGHTED = "weighted"


class AnomalyType(str, Enum):
    STATISTICAL = "statistical"
    TEMPORAL = "temporal"
    PROPORTIONAL = "proportional"
    CONTEXTUAL = "contextual"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CorrectionType(str, Enum):
    SCALE = "scale"
    OFFSET = "offset"
    FILTER = "filter"


class PatternType(str, Enum):
    TREND = "trend"
    SEASONAL = "seasonal"
    CYCLICAL = "cyclical"


FUSION_SOURCE = "fusion"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Measurements:
    """Shoulder width / height pair (cm) with the confidence attached to it."""

    shoulder_width: float
    height: float
    confidence: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "confidence", clamp(float(self.confidence)))

    @property
    def height_to_shoulder_ratio(self) -> float | None:
        if self.shoulder_width <= 0:
            return None
        return self.height / self.shoulder_width

    def value(self, dimension: str) -> float:
        """Return the value for ``'shoulder_width'`` or ``'height'``."""
        return float(getattr(self, dimension))


DIMENSIONS: tuple[str, ...] = ("shoulder_width", "height")


@dataclass(frozen=True)
class RawEstimate:
    """One tracker's estimate for one fusion cycle.

    Attributes:
        shoulder_width: Estimated shoulder width in cm.
        height:         Estimated body height in cm.
        confidence:     Self-reported reliability, clamped to 0.0–1.0.
        source:         Tracker id (e.g. 'arcore', 'arkit', 'computer_vision').
        timestamp:      UTC time the estimate was produced.
    """

    shoulder_width: float
    height: float
    confidence: float
    source: str
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(self, "confidence", clamp(float(self.confidence)))

    @property
    def measurements(self) -> Measurements:
        return Measurements(self.shoulder_width, self.height, self.confidence)


@dataclass(frozen=True)
class Context:
    """Acquisition conditions supplied by the tracking layer for one cycle."""

    lighting: Lighting = Lighting.GOOD
    distance: Distance = Distance.OPTIMAL
    pose: Pose = Pose.OPTIMAL

    @property
    def is_ideal(self) -> bool:
        return (
            self.lighting in (Lighting.EXCELLENT, Lighting.GOOD)
            and self.distance is Distance.OPTIMAL
            and self.pose is Pose.OPTIMAL
        )


SourceQuery = Callable[[], Awaitable["RawEstimate | None"]]


class SourceAdapter(ABC):
    """Boundary for a body-tracking framework (AR tracker, pose detector…).

    Concrete adapters live outside this package.  ``estimate`` may return
    None when the tracker has nothing for the current frame, or raise; the
    orchestrator treats both as "unavailable".
    """

    #: Stable tracker id used as RawEstimate.source and as recovery key.
    source_id: str = ""

    @abstractmethod
    async def estimate(self) -> RawEstimate | None:
        """Return the current estimate, or None if unavailable."""

    def as_query(self) -> SourceQuery:
        return self.estimate


# ---------------------------------------------------------------------------
# Anomalies / patterns
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Correction:
    """Suggested fix attached to an anomaly.

    ``scale`` multiplies the value, ``offset`` adds to it, and ``filter``
    blends the new value with a reference using ``value`` as the weight of
    the new value.
    """

    type: CorrectionType
    value: float

    def apply(self, measured: float, reference: float | None = None) -> float:
        if self.type is CorrectionType.SCALE:
            return measured * self.value
        if self.type is CorrectionType.OFFSET:
            return measured + self.value
        if reference is None:
            return measured
        return reference + self.value * (measured - reference)


@dataclass(frozen=True)
class Anomaly:
    """A detected irregularity that reduces trust in a result.

    Attributes:
        type:        Which detector fired.
        severity:    low / medium / high / critical.
        confidence:  How sure the detector is, 0.0–1.0.
        description: Human-readable explanation.
        dimension:   'shoulder_width', 'height', 'ratio' or None for contextual.
        correction:  Optional suggested fix.
    """

    type: AnomalyType
    severity: Severity
    confidence: float
    description: str = ""
    dimension: str | None = None
    correction: Correction | None = None

    @property
    def is_blocking(self) -> bool:
        return self.severity in (Severity.HIGH, Severity.CRITICAL)


@dataclass(frozen=True)
class Pattern:
    pattern: PatternType
    strength: float
    description: str = ""
    prediction: float | None = None


# ---------------------------------------------------------------------------
# Quality grading
# ---------------------------------------------------------------------------


def grade_quality(confidence: float, anomalies: Iterable[Anomaly] = ()) -> Quality:
    """Derive the quality grade from confidence and the anomaly list.

    With no anomalies: ≥0.9 excellent, ≥0.7 good, ≥0.5 fair, else poor.
    High anomalies cap the grade at good (one) or fair (several); any
    critical anomaly caps it at poor.
    """
    critical = 0
    high = 0
    for anomaly in anomalies:
        if anomaly.severity is Severity.CRITICAL:
            critical += 1
        elif anomaly.severity is Severity.HIGH:
            high += 1

    if confidence >= 0.9 and critical == 0 and high == 0:
        return Quality.EXCELLENT
    if confidence >= 0.7 and critical == 0 and high <= 1:
        return Quality.GOOD
    if confidence >= 0.5 and critical == 0:
        return Quality.FAIR
    return Quality.POOR


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FusionResult:
    """Fused measurement for one cycle.

    Attributes:
        measurements:    Fused shoulder width, height and confidence.
        source:          The single contributing source id, or 'fusion'.
        quality:         Grade derived from confidence (+ anomalies once validated).
        strategy:        Strategy used, or None for pass-through / fallback.
        sources_used:    Sources whose estimates contributed.
        weights_applied: Normalized weight per contributing source.
        is_fallback:     True when no source produced a result.
        computed_at:     UTC timestamp of computation.
    """

    measurements: Measurements
    source: str
    quality: Quality
    strategy: FusionStrategy | None = None
    sources_used: tuple[str, ...] = ()
    weights_applied: dict[str, float] = field(default_factory=dict)
    is_fallback: bool = False
    computed_at: datetime = field(default_factory=utc_now)

    @property
    def confidence(self) -> float:
        return self.measurements.confidence

    def to_metadata_dict(self) -> dict:
        return {
            "source": self.source,
            "strategy": self.strategy.value if self.strategy else None,
            "sources_used": list(self.sources_used),
            "weights_applied": dict(self.weights_applied),
            "is_fallback": self.is_fallback,
        }


@dataclass
class ValidationResult:
    """Outcome of validating one FusionResult.

    Attributes:
        is_valid:        ml_score ≥ threshold and no high/critical anomaly.
        confidence:      Trust in the result after penalties (equals ml_score).
        ml_score:        Combined scorer output after anomaly penalties.
        scores:          Raw per-scorer outputs before penalties.
        anomalies:       Detected anomalies.
        patterns:        Recognized history patterns.
        quality:         grade_quality(ml_score, anomalies).
        recommendations: User-facing guidance derived from the anomalies.
    """

    is_valid: bool
    confidence: float
    ml_score: float
    quality: Quality
    scores: dict[str, float] = field(default_factory=dict)
    anomalies: list[Anomaly] = field(default_factory=list)
    patterns: list[Pattern] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def anomaly_types(self) -> set[AnomalyType]:
        return {a.type for a in self.anomalies}
