"""Per-user calibration: learn scale factors from feedback and apply them.

Each user may have one calibration profile holding multiplicative scale
factors for shoulder width, height and confidence.  Profiles are created on
the first piece of feedback (or the first completed calibration session) and
are never deleted automatically.

Learning rule, per dimension with a known ground-truth value::

    target  = known / observed          (observed = uncalibrated measurement)
    factor += learning_rate * (target - factor)

The confidence factor moves toward ``accuracy_rating / 4`` so a rating of 4
leaves confidence untouched.  Every factor is clamped to the configured sane
range (default 0.5–1.5).

Storage is delegated to a ``CalibrationStore``; ``InMemoryCalibrationStore``
is used by default.
"""

from __future__ import annotations

import logging
import statistics
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Protocol

from src.measurement.base import (
    Context,
    Distance,
    Lighting,
    Measurements,
    Pose,
    Quality,
    clamp,
    utc_now,
)
from src.measurement.config_loader import MeasurementConfig, get_measurement_config
from src.measurement.ring_buffer import RingBuffer

logger = logging.getLogger("fitform.measurement.calibration")


# ---------------------------------------------------------------------------
# Profile model
# ---------------------------------------------------------------------------


@dataclass
class ScaleFactors:
    shoulder_width: float = 1.0
    height: float = 1.0
    confidence: float = 1.0


@dataclass
class ReferenceMeasurement:
    """A (known, observed) pair supplied by the user.

    Attributes:
        observed:             What the engine measured, before calibration.
        known_shoulder_width: Ground-truth shoulder width in cm, if given.
        known_height:         Ground-truth height in cm, if given.
        accuracy_rating:      User rating 1–5.
        recorded_at:          UTC time the feedback arrived.
    """

    observed: Measurements
    known_shoulder_width: Optional[float] = None
    known_height: Optional[float] = None
    accuracy_rating: int = 3
    recorded_at: datetime = field(default_factory=utc_now)

    def known(self, dimension: str) -> Optional[float]:
        return self.known_shoulder_width if dimension == "shoulder_width" else self.known_height


@dataclass
class UserCalibrationProfile:
    user_id: str
    scale_factors: ScaleFactors = field(default_factory=ScaleFactors)
    reference_measurements: list[ReferenceMeasurement] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    last_updated: datetime = field(default_factory=utc_now)
    profile_version: int = 1


@dataclass(frozen=True)
class UserFeedback:
    """Feedback on one measurement: a 1–5 rating plus optional ground truth."""

    accuracy_rating: int
    known_height: Optional[float] = None
    known_shoulder_width: Optional[float] = None


@dataclass(frozen=True)
class FeedbackRecord:
    user_id: str
    accuracy: float  # rating / 5
    raw_confidence: float
    recorded_at: datetime


@dataclass
class CalibratedMeasurement:
    measurements: Measurements
    applied: bool
    corrections: list[str] = field(default_factory=list)


# ── Read-side summaries ──


@dataclass
class AccuracyStats:
    """Accuracy summary for one user, all percentages 0–100."""

    overall_accuracy: float
    accuracy_improvement: float
    calibration_effectiveness: float
    feedback_count: int
    recommendations: list[str] = field(default_factory=list)


@dataclass
class DailyAccuracy:
    date: date
    accuracy: float


@dataclass
class AccuracyTrends:
    daily_accuracy: list[DailyAccuracy]
    trend: str  # improving | stable | declining
    average_accuracy: float


@dataclass
class CalibrationSuggestions:
    suggestions: list[str]
    priority: str  # high | medium | low
    estimated_improvement: float


# ── Sessions ──


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass
class SessionMeasurement:
    measurements: Measurements
    context: Context
    quality: Quality
    known_shoulder_width: Optional[float] = None
    known_height: Optional[float] = None
    recorded_at: datetime = field(default_factory=utc_now)


@dataclass
class CalibrationSession:
    session_id: str
    user_id: str
    started_at: datetime
    measurements: list[SessionMeasurement] = field(default_factory=list)
    quality: Quality = Quality.FAIR
    status: SessionStatus = SessionStatus.ACTIVE
    ended_at: Optional[datetime] = None


@dataclass
class SessionFeedback:
    quality: Quality
    feedback: str


@dataclass
class SessionOutcome:
    success: bool
    feedback: str
    profile: Optional[UserCalibrationProfile] = None
    accuracy: float = 0.0


class SessionNotFoundError(KeyError):
    """Raised for an unknown or already completed calibration session id."""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class CalibrationStore(Protocol):
    def get(self, user_id: str) -> UserCalibrationProfile | None: ...

    def set(self, profile: UserCalibrationProfile) -> None: ...


class InMemoryCalibrationStore:
    """Process-local profile store keyed by user id."""

    def __init__(self) -> None:
        self._profiles: dict[str, UserCalibrationProfile] = {}

    def get(self, user_id: str) -> UserCalibrationProfile | None:
        return self._profiles.get(user_id)

    def set(self, profile: UserCalibrationProfile) -> None:
        self._profiles[profile.user_id] = profile

    def __len__(self) -> int:
        return len(self._profiles)


# ---------------------------------------------------------------------------
# Session quality helpers
# ---------------------------------------------------------------------------

_LIGHTING_POINTS = {Lighting.EXCELLENT: 20, Lighting.GOOD: 15, Lighting.FAIR: 10, Lighting.POOR: 0}
_DISTANCE_POINTS = {Distance.OPTIMAL: 15, Distance.TOO_CLOSE: 5, Distance.TOO_FAR: 5}
_POSE_POINTS = {Pose.OPTIMAL: 15, Pose.ACCEPTABLE: 10, Pose.POOR: 0}


def session_measurement_quality(measurements: Measurements, context: Context) -> Quality:
    """Grade a calibration capture from plausibility and conditions (0–100 points)."""
    points = 0
    if 30 <= measurements.shoulder_width <= 60:
        points += 25
    if 120 <= measurements.height <= 220:
        points += 25
    points += _LIGHTING_POINTS[context.lighting]
    points += _DISTANCE_POINTS[context.distance]
    points += _POSE_POINTS[context.pose]

    if points >= 80:
        return Quality.EXCELLENT
    if points >= 60:
        return Quality.GOOD
    if points >= 40:
        return Quality.FAIR
    return Quality.POOR


def _session_guidance(context: Context, quality: Quality) -> str:
    tips = []
    if context.lighting is Lighting.POOR:
        tips.append("Improve lighting conditions")
    if context.distance is Distance.TOO_CLOSE:
        tips.append("Move further from camera")
    elif context.distance is Distance.TOO_FAR:
        tips.append("Move closer to camera")
    if context.pose is Pose.POOR:
        tips.append("Adjust your pose - stand straight")

    tips.append({
        Quality.EXCELLENT: "Great measurement quality!",
        Quality.GOOD: "Good measurement, keep going",
        Quality.FAIR: "Measurement acceptable, but could be better",
        Quality.POOR: "Please retake measurement with better conditions",
    }[quality])
    return ". ".join(tips)


def _average_quality(measurements: list[SessionMeasurement]) -> Quality:
    if not measurements:
        return Quality.POOR
    avg = sum(m.quality.rank + 1 for m in measurements) / len(measurements)
    if avg >= 3.5:
        return Quality.EXCELLENT
    if avg >= 2.5:
        return Quality.GOOD
    if avg >= 1.5:
        return Quality.FAIR
    return Quality.POOR


_PRIORITY_RANK = {"low": 0, "medium": 1, "high": 2}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class CalibrationEngine:
    """Learns and applies per-user calibration.

    Usage::

        calibration = CalibrationEngine(config)
        calibrated = calibration.apply_calibration("user-1", fused.measurements)
        calibration.learn_from_feedback("user-1", fused.measurements, UserFeedback(4, known_height=178))
    """

    def __init__(
        self,
        config: MeasurementConfig | None = None,
        store: CalibrationStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = (config or get_measurement_config()).calibration
        self._store: CalibrationStore = store if store is not None else InMemoryCalibrationStore()
        self._clock = clock
        self._feedback: dict[str, RingBuffer[FeedbackRecord]] = {}
        self._sessions: dict[str, CalibrationSession] = {}

    @property
    def store(self) -> CalibrationStore:
        return self._store

    def profile(self, user_id: str) -> UserCalibrationProfile | None:
        return self._store.get(user_id)

    # ── Apply ──

    def apply_calibration(self, user_id: str, raw: Measurements) -> CalibratedMeasurement:
        """Scale ``raw`` by the user's factors; unknown users pass through unchanged."""
        profile = self._store.get(user_id)
        if profile is None:
            return CalibratedMeasurement(
                measurements=raw,
                applied=False,
                corrections=["No user calibration available"],
            )

        factors = profile.scale_factors
        corrections = ["Applied user-specific calibration"]
        if factors.shoulder_width != 1.0:
            corrections.append("Shoulder width scale factor applied")
        if factors.height != 1.0:
            corrections.append("Height scale factor applied")
        if factors.confidence != 1.0:
            corrections.append("Confidence adjusted from accuracy history")

        return CalibratedMeasurement(
            measurements=Measurements(
                shoulder_width=raw.shoulder_width * factors.shoulder_width,
                height=raw.height * factors.height,
                confidence=clamp(raw.confidence * factors.confidence),
            ),
            applied=True,
            corrections=corrections,
        )

    # ── Learn ──

    def learn_from_feedback(
        self,
        user_id: str,
        observed: Measurements,
        feedback: UserFeedback,
    ) -> UserCalibrationProfile:
        """Update (or create) the user's profile from one piece of feedback.

        Args:
            user_id:  User the feedback belongs to.
            observed: The uncalibrated measurement the feedback refers to.
            feedback: Rating 1–5 plus optional known height / shoulder width.

        Raises:
            ValueError: If the rating is outside 1–5.
        """
        if not 1 <= feedback.accuracy_rating <= 5:
            raise ValueError(f"accuracy_rating must be 1–5, got {feedback.accuracy_rating}")

        now = self._clock()
        profile = self._store.get(user_id)
        if profile is None:
            profile = UserCalibrationProfile(user_id=user_id, created_at=now, last_updated=now)
            logger.info("Created calibration profile for user %s", user_id)

        lr = self._settings.learning_rate
        factors = profile.scale_factors
        for dimension, known in (
            ("shoulder_width", feedback.known_shoulder_width),
            ("height", feedback.known_height),
        ):
            observed_value = observed.value(dimension)
            if known is None or known <= 0 or observed_value <= 0:
                continue
            current = getattr(factors, dimension)
            target = known / observed_value
            setattr(factors, dimension, self._clamp_factor(current + lr * (target - current)))

        target_confidence = feedback.accuracy_rating / 4
        factors.confidence = self._clamp_factor(
            factors.confidence + lr * (target_confidence - factors.confidence)
        )

        if feedback.known_height is not None or feedback.known_shoulder_width is not None:
            profile.reference_measurements.append(
                ReferenceMeasurement(
                    observed=observed,
                    known_shoulder_width=feedback.known_shoulder_width,
                    known_height=feedback.known_height,
                    accuracy_rating=feedback.accuracy_rating,
                    recorded_at=now,
                )
            )
            del profile.reference_measurements[: -self._settings.max_reference_measurements]

        profile.last_updated = now
        self._store.set(profile)

        log = self._feedback.get(user_id)
        if log is None:
            log = self._feedback[user_id] = RingBuffer(self._settings.max_feedback_records)
        log.append(
            FeedbackRecord(
                user_id=user_id,
                accuracy=feedback.accuracy_rating / 5,
                raw_confidence=observed.confidence,
                recorded_at=now,
            )
        )
        logger.info(
            "Calibration updated for %s: shoulder=%.3f height=%.3f confidence=%.3f",
            user_id, factors.shoulder_width, factors.height, factors.confidence,
        )
        return profile

    # ── Read side ──

    def accuracy_stats(self, user_id: str) -> AccuracyStats:
        profile = self._store.get(user_id)
        records = self._records_for(user_id)
        if profile is None or not records:
            return AccuracyStats(
                overall_accuracy=0.0,
                accuracy_improvement=0.0,
                calibration_effectiveness=0.0,
                feedback_count=len(records),
                recommendations=["Start calibration to improve accuracy"],
            )

        overall = sum(r.accuracy for r in records) / len(records)
        improvement = sum(r.accuracy - r.raw_confidence for r in records) / len(records)
        effectiveness = clamp(profile.scale_factors.confidence)

        recommendations = []
        if overall < 0.7:
            recommendations.append("Consider recalibrating for better accuracy")
        if improvement < 0.1:
            recommendations.append("Try providing more reference measurements")
        if effectiveness < 0.8:
            recommendations.append("Improve measurement conditions for better calibration")
        if not recommendations:
            recommendations.append("Your calibration is working well!")

        return AccuracyStats(
            overall_accuracy=round(overall * 100, 2),
            accuracy_improvement=round(improvement * 100, 2),
            calibration_effectiveness=round(effectiveness * 100, 2),
            feedback_count=len(records),
            recommendations=recommendations,
        )

    def accuracy_trends(self, user_id: str, days: int = 30) -> AccuracyTrends:
        cutoff = self._clock() - timedelta(days=days)
        records = [r for r in self._records_for(user_id) if r.recorded_at >= cutoff]
        if not records:
            return AccuracyTrends(daily_accuracy=[], trend="stable", average_accuracy=0.0)

        by_day: dict[date, list[float]] = {}
        for record in records:
            by_day.setdefault(record.recorded_at.date(), []).append(record.accuracy)

        daily = [
            DailyAccuracy(date=day, accuracy=round(sum(values) / len(values) * 100, 2))
            for day, values in sorted(by_day.items())
        ]

        trend = "stable"
        if len(daily) >= 2:
            half = len(daily) // 2
            first = statistics.fmean(d.accuracy for d in daily[:half])
            second = statistics.fmean(d.accuracy for d in daily[half:])
            if first > 0:
                change = (second - first) / first
                if change > 0.05:
                    trend = "improving"
                elif change < -0.05:
                    trend = "declining"

        average = statistics.fmean(d.accuracy for d in daily)
        return AccuracyTrends(daily_accuracy=daily, trend=trend, average_accuracy=round(average, 2))

    def calibration_suggestions(self, user_id: str) -> CalibrationSuggestions:
        profile = self._store.get(user_id)
        if profile is None:
            return CalibrationSuggestions(
                suggestions=["Start initial calibration process"],
                priority="high",
                estimated_improvement=30.0,
            )

        stats = self.accuracy_stats(user_id)
        suggestions: list[str] = []
        priority = "low"
        improvement = 0.0

        def _suggest(text: str, level: str, gain: float) -> None:
            nonlocal priority, improvement
            suggestions.append(text)
            improvement += gain
            if _PRIORITY_RANK[level] > _PRIORITY_RANK[priority]:
                priority = level

        if stats.overall_accuracy < 70:
            _suggest("Recalibrate with better lighting conditions", "high", 20)
        if len(profile.reference_measurements) < 3:
            _suggest("Add more reference measurements for better calibration", "medium", 15)
        age = self._clock() - profile.last_updated
        if age > timedelta(days=self._settings.stale_after_days):
            _suggest(
                f"Update calibration data (last updated over "
                f"{self._settings.stale_after_days} days ago)",
                "medium",
                10,
            )
        if stats.calibration_effectiveness < 80:
            _suggest("Improve measurement conditions during calibration", "medium", 12)

        if not suggestions:
            suggestions.append("Your calibration is working well!")

        return CalibrationSuggestions(
            suggestions=suggestions,
            priority=priority,
            estimated_improvement=min(improvement, 50.0),
        )

    # ── Calibration sessions ──

    def start_session(self, user_id: str) -> CalibrationSession:
        """Open a new session for ``user_id``.

        Expired sessions are dropped first; when the user already has the
        maximum number of active sessions, the oldest one is discarded.
        """
        now = self._clock()
        self._expire_sessions(now)

        active = sorted(
            (s for s in self._sessions.values() if s.user_id == user_id),
            key=lambda s: s.started_at,
        )
        excess = len(active) - self._settings.max_active_sessions_per_user + 1
        for stale in active[: max(excess, 0)]:
            del self._sessions[stale.session_id]
            logger.info("Discarded calibration session %s for %s", stale.session_id, user_id)

        session = CalibrationSession(
            session_id=uuid.uuid4().hex,
            user_id=user_id,
            started_at=now,
        )
        self._sessions[session.session_id] = session
        logger.info("Started calibration session %s for %s", session.session_id, user_id)
        return session

    def add_session_measurement(
        self,
        session_id: str,
        measurements: Measurements,
        context: Context,
        known_height: float | None = None,
        known_shoulder_width: float | None = None,
    ) -> SessionFeedback:
        session = self._active_session(session_id)
        quality = session_measurement_quality(measurements, context)
        session.measurements.append(
            SessionMeasurement(
                measurements=measurements,
                context=context,
                quality=quality,
                known_shoulder_width=known_shoulder_width,
                known_height=known_height,
                recorded_at=self._clock(),
            )
        )
        session.quality = _average_quality(session.measurements)
        return SessionFeedback(quality=quality, feedback=_session_guidance(context, quality))

    def complete_session(self, session_id: str) -> SessionOutcome:
        """Fold a finished session into the user's profile.

        Scale factors are set from the median known/observed ratio of the
        captures that carried ground truth; without any, they are left alone.
        """
        session = self._active_session(session_id)
        minimum = self._settings.min_session_measurements
        if len(session.measurements) < minimum:
            return SessionOutcome(
                success=False,
                feedback=f"Need at least {minimum} measurements for calibration",
            )

        now = self._clock()
        profile = self._store.get(session.user_id) or UserCalibrationProfile(
            user_id=session.user_id, created_at=now, last_updated=now
        )

        for dimension in ("shoulder_width", "height"):
            ratios = []
            for capture in session.measurements:
                known = (
                    capture.known_shoulder_width
                    if dimension == "shoulder_width"
                    else capture.known_height
                )
                observed = capture.measurements.value(dimension)
                if known and known > 0 and observed > 0:
                    ratios.append(known / observed)
            if ratios:
                setattr(
                    profile.scale_factors,
                    dimension,
                    self._clamp_factor(statistics.median(ratios)),
                )

        for capture in session.measurements:
            if capture.known_height is not None or capture.known_shoulder_width is not None:
                profile.reference_measurements.append(
                    ReferenceMeasurement(
                        observed=capture.measurements,
                        known_shoulder_width=capture.known_shoulder_width,
                        known_height=capture.known_height,
                        accuracy_rating=capture.quality.rank + 2,
                        recorded_at=capture.recorded_at,
                    )
                )
        del profile.reference_measurements[: -self._settings.max_reference_measurements]

        profile.profile_version += 1
        profile.last_updated = now
        self._store.set(profile)

        session.status = SessionStatus.COMPLETED
        session.ended_at = now
        del self._sessions[session_id]

        accuracy = statistics.fmean(c.measurements.confidence for c in session.measurements) * 100
        logger.info(
            "Completed calibration session %s for %s (%d captures, %.1f%%)",
            session_id, session.user_id, len(session.measurements), accuracy,
        )
        return SessionOutcome(
            success=True,
            feedback=f"Calibration completed with {accuracy:.1f}% accuracy",
            profile=profile,
            accuracy=round(accuracy, 2),
        )

    # ── Internals ──

    def _active_session(self, session_id: str) -> CalibrationSession:
        self._expire_sessions(self._clock())
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _expire_sessions(self, now: datetime) -> None:
        ttl = timedelta(minutes=self._settings.session_ttl_minutes)
        expired = [sid for sid, s in self._sessions.items() if now - s.started_at > ttl]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.info("Expired %d abandoned calibration session(s)", len(expired))

    def _records_for(self, user_id: str) -> list[FeedbackRecord]:
        log = self._feedback.get(user_id)
        return log.to_list() if log is not None else []

    def _clamp_factor(self, value: float) -> float:
        return clamp(value, self._settings.scale_factor_min, self._settings.scale_factor_max)
