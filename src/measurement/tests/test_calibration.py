"""Tests for per-user calibration: learning, applying, summaries and sessions."""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.measurement.base import Context, Distance, Lighting, Measurements, Pose, Quality
from src.measurement.calibration import (
    CalibrationEngine,
    InMemoryCalibrationStore,
    SessionNotFoundError,
    UserFeedback,
    session_measurement_quality,
)
from src.measurement.config_loader import MeasurementConfig, build_measurement_config
from src.measurement.tests.conftest import TEST_NOW, TEST_USER_ID

OBSERVED = Measurements(shoulder_width=40.0, height=170.0, confidence=0.8)


@pytest.fixture
def engine(measurement_config: MeasurementConfig, datetime_clock) -> CalibrationEngine:
    return CalibrationEngine(measurement_config, clock=datetime_clock)


class TestApplyCalibration:
    def test_unknown_user_passes_through(self, engine: CalibrationEngine) -> None:
        calibrated = engine.apply_calibration("user_unknown", OBSERVED)
        assert not calibrated.applied
        assert calibrated.measurements == OBSERVED
        assert calibrated.corrections == ["No user calibration available"]

    def test_scale_factors_are_multiplied_in(self, engine: CalibrationEngine) -> None:
        profile = engine.learn_from_feedback(
            TEST_USER_ID, OBSERVED, UserFeedback(accuracy_rating=4, known_height=180.0)
        )
        factor = profile.scale_factors.height

        calibrated = engine.apply_calibration(TEST_USER_ID, OBSERVED)
        assert calibrated.applied
        assert calibrated.measurements.height == pytest.approx(170.0 * factor)
        assert calibrated.measurements.shoulder_width == pytest.approx(40.0)
        assert "Height scale factor applied" in calibrated.corrections
        assert "Shoulder width scale factor applied" not in calibrated.corrections


class TestLearnFromFeedback:
    def test_first_feedback_creates_profile(self, engine: CalibrationEngine) -> None:
        assert engine.profile(TEST_USER_ID) is None
        profile = engine.learn_from_feedback(TEST_USER_ID, OBSERVED, UserFeedback(4))
        assert profile.user_id == TEST_USER_ID
        assert profile.created_at == TEST_NOW
        assert profile.profile_version == 1
        assert engine.profile(TEST_USER_ID) is profile

    def test_known_height_moves_result_closer(self, engine: CalibrationEngine) -> None:
        """Calibrated height ends strictly closer to ground truth than the raw one."""
        engine.learn_from_feedback(
            TEST_USER_ID, OBSERVED, UserFeedback(accuracy_rating=3, known_height=180.0)
        )
        calibrated = engine.apply_calibration(TEST_USER_ID, OBSERVED).measurements.height
        assert abs(calibrated - 180.0) < abs(OBSERVED.height - 180.0)

    def test_learning_rate_step(self, engine: CalibrationEngine) -> None:
        profile = engine.learn_from_feedback(
            TEST_USER_ID, OBSERVED, UserFeedback(accuracy_rating=4, known_shoulder_width=44.0)
        )
        # 1.0 + 0.3 * (44 / 40 - 1.0)
        assert profile.scale_factors.shoulder_width == pytest.approx(1.03)
        assert profile.scale_factors.height == 1.0

    def test_repeated_feedback_converges(self, engine: CalibrationEngine) -> None:
        for _ in range(30):
            engine.learn_from_feedback(
                TEST_USER_ID, OBSERVED, UserFeedback(accuracy_rating=4, known_height=187.0)
            )
        factor = engine.profile(TEST_USER_ID).scale_factors.height
        assert factor == pytest.approx(1.1, abs=1e-3)

    def test_factors_are_clamped(self, engine: CalibrationEngine) -> None:
        for _ in range(20):
            engine.learn_from_feedback(
                TEST_USER_ID, OBSERVED, UserFeedback(accuracy_rating=4, known_height=500.0)
            )
        assert engine.profile(TEST_USER_ID).scale_factors.height == pytest.approx(1.5)

    def test_confidence_factor_tracks_rating(self, engine: CalibrationEngine) -> None:
        profile = engine.learn_from_feedback(TEST_USER_ID, OBSERVED, UserFeedback(2))
        # 1.0 + 0.3 * (2/4 - 1.0)
        assert profile.scale_factors.confidence == pytest.approx(0.85)

        rated_four = engine.learn_from_feedback("user_other", OBSERVED, UserFeedback(4))
        assert rated_four.scale_factors.confidence == pytest.approx(1.0)

    @pytest.mark.parametrize("rating", [0, 6])
    def test_invalid_rating_raises(self, engine: CalibrationEngine, rating: int) -> None:
        with pytest.raises(ValueError):
            engine.learn_from_feedback(TEST_USER_ID, OBSERVED, UserFeedback(rating))
        assert engine.profile(TEST_USER_ID) is None

    def test_reference_measurements_are_capped(self, engine: CalibrationEngine) -> None:
        for i in range(25):
            engine.learn_from_feedback(
                TEST_USER_ID, OBSERVED, UserFeedback(4, known_height=170.0 + i * 0.1)
            )
        refs = engine.profile(TEST_USER_ID).reference_measurements
        assert len(refs) == 20
        assert refs[-1].known_height == pytest.approx(172.4)

    def test_rating_only_feedback_adds_no_reference(self, engine: CalibrationEngine) -> None:
        profile = engine.learn_from_feedback(TEST_USER_ID, OBSERVED, UserFeedback(5))
        assert profile.reference_measurements == []

    def test_custom_store_is_used(self, measurement_config: MeasurementConfig) -> None:
        store = InMemoryCalibrationStore()
        engine = CalibrationEngine(measurement_config, store=store)
        engine.learn_from_feedback(TEST_USER_ID, OBSERVED, UserFeedback(4))
        assert engine.store is store
        assert len(store) == 1
        assert store.get(TEST_USER_ID) is engine.profile(TEST_USER_ID)


class TestAccuracySummaries:
    def test_stats_without_profile(self, engine: CalibrationEngine) -> None:
        stats = engine.accuracy_stats(TEST_USER_ID)
        assert stats.overall_accuracy == 0.0
        assert stats.feedback_count == 0
        assert stats.recommendations == ["Start calibration to improve accuracy"]

    def test_stats_with_feedback(self, engine: CalibrationEngine) -> None:
        engine.learn_from_feedback(TEST_USER_ID, OBSERVED, UserFeedback(5))
        engine.learn_from_feedback(TEST_USER_ID, OBSERVED, UserFeedback(4))

        stats = engine.accuracy_stats(TEST_USER_ID)
        assert stats.feedback_count == 2
        assert stats.overall_accuracy == pytest.approx(90.0)
        # (0.9 - 0.8) on average
        assert stats.accuracy_improvement == pytest.approx(10.0)

    def test_stats_are_per_user(self, engine: CalibrationEngine) -> None:
        engine.learn_from_feedback("user_other", OBSERVED, UserFeedback(1))
        engine.learn_from_feedback(TEST_USER_ID, OBSERVED, UserFeedback(5))
        assert engine.accuracy_stats(TEST_USER_ID).feedback_count == 1

    def test_busy_user_does_not_evict_other_feedback(self) -> None:
        config = build_measurement_config({"calibration": {"max_feedback_records": 3}})
        engine = CalibrationEngine(config)
        engine.learn_from_feedback(TEST_USER_ID, OBSERVED, UserFeedback(5))
        for _ in range(10):
            engine.learn_from_feedback("user_busy", OBSERVED, UserFeedback(2))

        assert engine.accuracy_stats(TEST_USER_ID).feedback_count == 1
        assert engine.accuracy_stats("user_busy").feedback_count == 3

    def test_trends_improving(self, engine: CalibrationEngine, datetime_clock) -> None:
        for day, rating in enumerate([2, 2, 4, 5]):
            datetime_clock.current = TEST_NOW + timedelta(days=day)
            engine.learn_from_feedback(TEST_USER_ID, OBSERVED, UserFeedback(rating))

        trends = engine.accuracy_trends(TEST_USER_ID)
        assert [d.accuracy for d in trends.daily_accuracy] == [40.0, 40.0, 80.0, 100.0]
        assert trends.trend == "improving"
        assert trends.average_accuracy == pytest.approx(65.0)

    def test_trends_window_excludes_old_feedback(
        self, engine: CalibrationEngine, datetime_clock
    ) -> None:
        engine.learn_from_feedback(TEST_USER_ID, OBSERVED, UserFeedback(1))
        datetime_clock.current = TEST_NOW + timedelta(days=40)
        engine.learn_from_feedback(TEST_USER_ID, OBSERVED, UserFeedback(5))

        trends = engine.accuracy_trends(TEST_USER_ID, days=30)
        assert len(trends.daily_accuracy) == 1
        assert trends.trend == "stable"

    def test_trends_without_feedback(self, engine: CalibrationEngine) -> None:
        trends = engine.accuracy_trends(TEST_USER_ID)
        assert trends.daily_accuracy == []
        assert trends.average_accuracy == 0.0

    def test_suggestions_without_profile(self, engine: CalibrationEngine) -> None:
        suggestions = engine.calibration_suggestions(TEST_USER_ID)
        assert suggestions.suggestions == ["Start initial calibration process"]
        assert suggestions.priority == "high"
        assert suggestions.estimated_improvement == 30.0

    def test_suggestions_for_poor_stale_profile(
        self, engine: CalibrationEngine, datetime_clock
    ) -> None:
        engine.learn_from_feedback(TEST_USER_ID, OBSERVED, UserFeedback(1))
        datetime_clock.current = TEST_NOW + timedelta(days=45)

        suggestions = engine.calibration_suggestions(TEST_USER_ID)
        assert suggestions.priority == "high"
        assert "Recalibrate with better lighting conditions" in suggestions.suggestions
        assert any(s.startswith("Update calibration data") for s in suggestions.suggestions)
        assert suggestions.estimated_improvement == 50.0


class TestSessionQuality:
    def test_ideal_capture_is_excellent(self) -> None:
        context = Context(lighting=Lighting.EXCELLENT)
        assert session_measurement_quality(OBSERVED, context) is Quality.EXCELLENT

    def test_bad_capture_is_poor(self) -> None:
        context = Context(lighting=Lighting.POOR, distance=Distance.TOO_FAR, pose=Pose.POOR)
        implausible = Measurements(shoulder_width=90.0, height=300.0, confidence=0.5)
        assert session_measurement_quality(implausible, context) is Quality.POOR


class TestCalibrationSessions:
    def _capture(self, engine: CalibrationEngine, session_id: str, height: float) -> None:
        engine.add_session_measurement(
            session_id,
            Measurements(shoulder_width=40.0, height=height, confidence=0.8),
            Context(lighting=Lighting.EXCELLENT),
            known_height=180.0,
        )

    def test_session_lifecycle(self, engine: CalibrationEngine) -> None:
        session = engine.start_session(TEST_USER_ID)
        assert session.started_at == TEST_NOW
        for height in (170.0, 171.0, 172.0, 168.0, 175.0):
            self._capture(engine, session.session_id, height)

        outcome = engine.complete_session(session.session_id)

        assert outcome.success
        assert outcome.accuracy == pytest.approx(80.0)
        assert outcome.profile is not None
        # Median known / observed ratio: 180 / 171
        assert outcome.profile.scale_factors.height == pytest.approx(180.0 / 171.0)
        assert outcome.profile.scale_factors.shoulder_width == 1.0
        assert outcome.profile.profile_version == 2
        assert len(outcome.profile.reference_measurements) == 5

    def test_capture_feedback(self, engine: CalibrationEngine) -> None:
        session = engine.start_session(TEST_USER_ID)
        feedback = engine.add_session_measurement(
            session.session_id,
            OBSERVED,
            Context(lighting=Lighting.POOR, distance=Distance.TOO_CLOSE),
        )
        assert feedback.quality is Quality.GOOD
        assert "Improve lighting conditions" in feedback.feedback
        assert "Move further from camera" in feedback.feedback

    def test_too_few_captures(self, engine: CalibrationEngine) -> None:
        session = engine.start_session(TEST_USER_ID)
        self._capture(engine, session.session_id, 170.0)

        outcome = engine.complete_session(session.session_id)
        assert not outcome.success
        assert outcome.feedback == "Need at least 5 measurements for calibration"
        assert engine.profile(TEST_USER_ID) is None

    def test_unknown_session(self, engine: CalibrationEngine) -> None:
        with pytest.raises(SessionNotFoundError):
            engine.add_session_measurement("missing", OBSERVED, Context())
        with pytest.raises(SessionNotFoundError):
            engine.complete_session("missing")

    def test_completed_session_cannot_be_reused(self, engine: CalibrationEngine) -> None:
        session = engine.start_session(TEST_USER_ID)
        for height in (170.0, 170.0, 170.0, 170.0, 170.0):
            self._capture(engine, session.session_id, height)
        engine.complete_session(session.session_id)

        with pytest.raises(SessionNotFoundError):
            engine.complete_session(session.session_id)

    def test_abandoned_session_expires(self, engine: CalibrationEngine, datetime_clock) -> None:
        session = engine.start_session(TEST_USER_ID)
        self._capture(engine, session.session_id, 170.0)

        datetime_clock.current = TEST_NOW + timedelta(minutes=61)
        with pytest.raises(SessionNotFoundError):
            self._capture(engine, session.session_id, 171.0)

    def test_session_within_ttl_stays_open(
        self, engine: CalibrationEngine, datetime_clock
    ) -> None:
        session = engine.start_session(TEST_USER_ID)
        datetime_clock.current = TEST_NOW + timedelta(minutes=59)
        self._capture(engine, session.session_id, 170.0)

    def test_oldest_session_is_replaced_at_per_user_cap(
        self, engine: CalibrationEngine, datetime_clock
    ) -> None:
        sessions = []
        for minute in range(4):
            datetime_clock.current = TEST_NOW + timedelta(minutes=minute)
            sessions.append(engine.start_session(TEST_USER_ID))
        other = engine.start_session("user_other")

        with pytest.raises(SessionNotFoundError):
            self._capture(engine, sessions[0].session_id, 170.0)
        for session in sessions[1:] + [other]:
            self._capture(engine, session.session_id, 170.0)
