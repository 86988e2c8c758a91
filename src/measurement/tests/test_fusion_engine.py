"""Tests for strategy fusion, fallback handling and the measure pipeline."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from src.measurement.base import (
    AnomalyType,
    Context,
    FusionStrategy,
    Lighting,
    Quality,
    RawEstimate,
)
from src.measurement.calibration import CalibrationEngine, UserFeedback
from src.measurement.config_loader import MeasurementConfig, build_measurement_config
from src.measurement.fusion_engine import (
    DeviceStatus,
    FusionOrchestrator,
    _weighted_average,
    fuse_estimates,
)
from src.measurement.performance import OptimalSettings, PerformanceMonitor
from src.measurement.recovery import ErrorKind, ErrorRecoveryManager, MeasurementError
from src.measurement.tests.conftest import (
    TEST_USER_ID,
    FakeClock,
    RecordingSleep,
    make_estimate,
    raises,
    returns,
)
from src.measurement.validation import ValidationEngine


class TestWeightedAverage:
    """Unit tests for the weighted average helper."""

    def test_equal_weights(self) -> None:
        assert _weighted_average({"a": 40.0, "b": 44.0}, {"a": 1.0, "b": 1.0}) == pytest.approx(42.0)

    def test_unequal_weights(self) -> None:
        result = _weighted_average({"a": 40.0, "b": 44.0}, {"a": 0.9, "b": 0.5})
        assert result == pytest.approx((40.0 * 0.9 + 44.0 * 0.5) / 1.4)

    def test_zero_weights_falls_back_to_simple_average(self) -> None:
        assert _weighted_average({"a": 60.0, "b": 40.0}, {"a": 0.0, "b": 0.0}) == pytest.approx(50.0)


class TestFuseEstimates:
    """Unit tests for strategy-level fusion."""

    def test_empty_raises(self) -> None:
        with pytest.raises(ValueError):
            fuse_estimates({}, FusionStrategy.WEIGHTED)

    def test_single_estimate_passes_through(self) -> None:
        only = make_estimate("arcore", 41.0, 176.0, 0.82)
        result = fuse_estimates({"arcore": only}, FusionStrategy.WEIGHTED)
        assert result.source == "arcore"
        assert result.measurements == only.measurements
        assert result.strategy is None
        assert result.quality is Quality.GOOD

    def test_weighted_example(self) -> None:
        """{40,170,0.9} + {44,180,0.5} → ≈41.4 / 173.6 / 0.76, good."""
        estimates = {
            "arcore": make_estimate("arcore", 40.0, 170.0, 0.9),
            "computer_vision": make_estimate("computer_vision", 44.0, 180.0, 0.5),
        }
        result = fuse_estimates(estimates, FusionStrategy.WEIGHTED)
        assert result.source == "fusion"
        assert result.measurements.shoulder_width == pytest.approx(41.43, abs=0.01)
        assert result.measurements.height == pytest.approx(173.57, abs=0.01)
        assert result.confidence == pytest.approx(0.757, abs=0.002)
        assert result.quality is Quality.GOOD
        assert result.weights_applied["arcore"] == pytest.approx(0.9 / 1.4)

    def test_estimates_are_keyed_by_query_id(self) -> None:
        estimates = {
            "front_cam": make_estimate("camera", 40.0, 170.0, 0.9),
            "rear_cam": make_estimate("camera", 44.0, 180.0, 0.5),
        }
        result = fuse_estimates(estimates, FusionStrategy.WEIGHTED)
        assert result.measurements.shoulder_width == pytest.approx(41.43, abs=0.01)
        assert result.sources_used == ("front_cam", "rear_cam")
        assert result.weights_applied["front_cam"] == pytest.approx(0.9 / 1.4)

    def test_weighted_with_equal_confidence_equals_consensus(self) -> None:
        estimates = {
            "arcore": make_estimate("arcore", 40.0, 170.0, 0.6),
            "arkit": make_estimate("arkit", 43.0, 178.0, 0.6),
            "computer_vision": make_estimate("computer_vision", 45.0, 181.0, 0.6),
        }
        weighted = fuse_estimates(estimates, FusionStrategy.WEIGHTED)
        consensus = fuse_estimates(estimates, FusionStrategy.CONSENSUS)
        assert weighted.measurements.shoulder_width == pytest.approx(
            consensus.measurements.shoulder_width
        )
        assert weighted.measurements.height == pytest.approx(consensus.measurements.height)
        assert weighted.confidence == pytest.approx(consensus.confidence)

    def test_consensus_reports_unweighted_confidence(self) -> None:
        estimates = {
            "arcore": make_estimate("arcore", 40.0, 170.0, 0.9),
            "computer_vision": make_estimate("computer_vision", 44.0, 180.0, 0.5),
        }
        result = fuse_estimates(estimates, FusionStrategy.CONSENSUS)
        assert result.measurements.shoulder_width == pytest.approx(42.0)
        assert result.confidence == pytest.approx(0.7)

    def test_weighted_all_zero_confidence_uses_plain_mean(self) -> None:
        estimates = {
            "arcore": make_estimate("arcore", 40.0, 170.0, 0.0),
            "arkit": make_estimate("arkit", 44.0, 180.0, 0.0),
        }
        result = fuse_estimates(estimates, FusionStrategy.WEIGHTED)
        assert result.measurements.shoulder_width == pytest.approx(42.0)
        assert result.measurements.height == pytest.approx(175.0)
        assert result.confidence == 0.0
        assert result.quality is Quality.POOR

    def test_best_picks_highest_confidence(self) -> None:
        estimates = {
            "arcore": make_estimate("arcore", 40.0, 170.0, 0.6),
            "arkit": make_estimate("arkit", 43.0, 176.0, 0.92),
        }
        result = fuse_estimates(estimates, FusionStrategy.BEST)
        assert result.measurements.shoulder_width == 43.0
        assert result.source == "arkit"
        assert result.strategy is FusionStrategy.BEST
        assert result.sources_used == ("arkit",)
        assert result.quality is Quality.EXCELLENT

    def test_best_tie_first_wins(self) -> None:
        estimates = {
            "arcore": make_estimate("arcore", 40.0, 170.0, 0.8),
            "arkit": make_estimate("arkit", 43.0, 176.0, 0.8),
        }
        assert fuse_estimates(estimates, FusionStrategy.BEST).sources_used == ("arcore",)


class TestFusionOrchestrator:
    """Tests for source gathering, fallback and history."""

    @pytest.mark.asyncio
    async def test_example_cycle(self, measurement_config: MeasurementConfig) -> None:
        orchestrator = FusionOrchestrator(measurement_config)
        result = await orchestrator.fuse({
            "arcore": returns(make_estimate("arcore", 40.0, 170.0, 0.9)),
            "computer_vision": returns(make_estimate("computer_vision", 44.0, 180.0, 0.5)),
            "arkit": returns(None),
        })
        assert result.source == "fusion"
        assert result.quality is Quality.GOOD
        assert set(result.sources_used) == {"arcore", "computer_vision"}

    @pytest.mark.asyncio
    async def test_sources_sharing_a_label_are_all_weighted(
        self, measurement_config: MeasurementConfig
    ) -> None:
        orchestrator = FusionOrchestrator(measurement_config)
        result = await orchestrator.fuse({
            "front_cam": returns(make_estimate("camera", 40.0, 170.0, 0.9)),
            "rear_cam": returns(make_estimate("camera", 44.0, 180.0, 0.5)),
        })
        assert result.measurements.shoulder_width == pytest.approx(41.43, abs=0.01)
        assert result.measurements.height == pytest.approx(173.57, abs=0.01)
        assert result.confidence == pytest.approx(0.757, abs=0.002)
        assert result.sources_used == ("front_cam", "rear_cam")

    @pytest.mark.asyncio
    async def test_best_strategy_reports_chosen_source(self) -> None:
        config = build_measurement_config({"fusion": {"strategy": "best"}})
        result = await FusionOrchestrator(config).fuse({
            "arcore": returns(make_estimate("arcore", 40.0, 170.0, 0.6)),
            "arkit": returns(make_estimate("arkit", 43.0, 176.0, 0.92)),
        })
        assert result.source == "arkit"
        assert not result.is_fallback

    @pytest.mark.asyncio
    async def test_no_sources_returns_fallback(self, measurement_config: MeasurementConfig) -> None:
        orchestrator = FusionOrchestrator(measurement_config)
        result = await orchestrator.fuse({
            "arcore": returns(None),
            "arkit": raises(RuntimeError("tracking lost")),
        })
        assert result.is_fallback
        assert result.quality is Quality.POOR
        assert result.confidence == pytest.approx(0.3)
        assert result.measurements.shoulder_width == 40.0
        assert result.measurements.height == 170.0
        assert result.source == "fusion"

    @pytest.mark.asyncio
    async def test_each_source_is_queried_once(
        self, measurement_config: MeasurementConfig
    ) -> None:
        arkit = AsyncMock(return_value=make_estimate("arkit"))
        arcore = AsyncMock(return_value=None)
        await FusionOrchestrator(measurement_config).fuse({"arkit": arkit, "arcore": arcore})
        arkit.assert_awaited_once()
        arcore.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_query_map_returns_fallback(
        self, measurement_config: MeasurementConfig
    ) -> None:
        result = await FusionOrchestrator(measurement_config).fuse({})
        assert result.is_fallback

    @pytest.mark.asyncio
    async def test_failing_source_is_excluded(self, measurement_config: MeasurementConfig) -> None:
        orchestrator = FusionOrchestrator(measurement_config)
        result = await orchestrator.fuse({
            "arcore": raises(RuntimeError("session crashed")),
            "arkit": returns(make_estimate("arkit", 42.0, 176.0, 0.85)),
        })
        assert result.source == "arkit"
        assert result.measurements.shoulder_width == 42.0

    @pytest.mark.asyncio
    async def test_slow_source_times_out(self) -> None:
        config = build_measurement_config({"fusion": {"source_timeout_s": 0.01}})

        async def slow() -> RawEstimate:
            await asyncio.sleep(1.0)
            return make_estimate("arkit")

        orchestrator = FusionOrchestrator(config)
        result = await orchestrator.fuse({
            "arkit": slow,
            "arcore": returns(make_estimate("arcore", 41.0, 172.0, 0.7)),
        })
        assert result.source == "arcore"

    @pytest.mark.asyncio
    async def test_history_is_bounded_and_ordered(self) -> None:
        config = build_measurement_config({"fusion": {"history_size": 3}})
        orchestrator = FusionOrchestrator(config)
        for width in (40.0, 41.0, 42.0, 43.0):
            await orchestrator.fuse({"arcore": returns(make_estimate("arcore", width))})

        widths = [r.measurements.shoulder_width for r in orchestrator.history()]
        assert widths == [41.0, 42.0, 43.0]

    @pytest.mark.asyncio
    async def test_fallback_is_recorded_in_history(
        self, measurement_config: MeasurementConfig
    ) -> None:
        orchestrator = FusionOrchestrator(measurement_config)
        await orchestrator.fuse({"arcore": returns(None)})
        assert orchestrator.history()[-1].is_fallback

    @pytest.mark.asyncio
    async def test_sources_run_through_recovery_manager(
        self,
        measurement_config: MeasurementConfig,
        fake_clock: FakeClock,
        fake_sleep: RecordingSleep,
    ) -> None:
        recovery = ErrorRecoveryManager(measurement_config, clock=fake_clock, sleep=fake_sleep)
        orchestrator = FusionOrchestrator(measurement_config, recovery=recovery)

        result = await orchestrator.fuse({
            "arcore": raises(MeasurementError("camera busy", kind=ErrorKind.HARDWARE)),
            "arkit": returns(make_estimate("arkit", 42.0, 176.0, 0.85)),
        })

        assert result.source == "arkit"
        stats = recovery.recovery_stats()
        assert stats.open_breakers == ["source:arcore"]
        assert "source:arkit" in stats.breakers

    @pytest.mark.asyncio
    async def test_degraded_mode_skips_optional_sources(
        self, measurement_config: MeasurementConfig
    ) -> None:
        orchestrator = FusionOrchestrator(measurement_config)
        orchestrator.apply_settings(
            OptimalSettings(
                frame_processing_interval_ms=300,
                max_history_size=5,
                enable_advanced_features=False,
            )
        )
        result = await orchestrator.fuse({
            "arcore": returns(make_estimate("arcore", 41.0, 172.0, 0.7)),
            "computer_vision": returns(make_estimate("computer_vision", 50.0, 190.0, 0.9)),
        })
        assert result.source == "arcore"
        assert orchestrator.history_capacity == 5
        assert orchestrator.processing_interval_ms == 300


class TestMeasurePipeline:
    """Tests for FusionOrchestrator.measure."""

    @pytest.mark.asyncio
    async def test_measure_returns_validated_outcome(
        self, measurement_config: MeasurementConfig, good_context: Context
    ) -> None:
        performance = PerformanceMonitor(measurement_config)
        orchestrator = FusionOrchestrator(measurement_config, performance=performance)

        outcome = await orchestrator.measure(
            {"arcore": returns(make_estimate("arcore", confidence=0.85))},
            good_context,
            device=DeviceStatus(memory_mb=180.0, battery_pct=80.0),
        )

        assert outcome.validation.is_valid
        assert outcome.result.quality is Quality.GOOD
        assert outcome.calibration is None
        assert len(performance) == 1
        assert performance.stats().avg_memory_mb == pytest.approx(180.0)

    @pytest.mark.asyncio
    async def test_measure_regrades_quality_from_anomalies(
        self, measurement_config: MeasurementConfig, poor_context: Context
    ) -> None:
        orchestrator = FusionOrchestrator(measurement_config)
        outcome = await orchestrator.measure(
            {"arcore": returns(make_estimate("arcore", 30.0, 170.0, 0.95))},
            poor_context,
        )
        # Poor pose + proportional anomaly are both high → at most fair
        assert outcome.result.quality.rank <= Quality.FAIR.rank
        assert not outcome.validation.is_valid
        assert AnomalyType.PROPORTIONAL in outcome.validation.anomaly_types

    @pytest.mark.asyncio
    async def test_measure_applies_user_calibration(
        self, measurement_config: MeasurementConfig, good_context: Context
    ) -> None:
        calibration = CalibrationEngine(measurement_config)
        observed = make_estimate("arcore", 40.0, 170.0, 0.8).measurements
        calibration.learn_from_feedback(
            TEST_USER_ID, observed, UserFeedback(accuracy_rating=4, known_height=180.0)
        )
        orchestrator = FusionOrchestrator(measurement_config, calibration=calibration)

        outcome = await orchestrator.measure(
            {"arcore": returns(make_estimate("arcore", 40.0, 170.0, 0.8))},
            good_context,
            user_id=TEST_USER_ID,
        )

        assert outcome.calibration is not None and outcome.calibration.applied
        assert outcome.result.measurements.height > 170.0
        assert outcome.raw.measurements.height == 170.0
        assert orchestrator.history()[-1].measurements.height == 170.0

    @pytest.mark.asyncio
    async def test_measure_never_raises(
        self, measurement_config: MeasurementConfig, good_context: Context
    ) -> None:
        class BrokenValidator(ValidationEngine):
            def validate(self, result, history, context):  # type: ignore[override]
                raise RuntimeError("scorer crashed")

        orchestrator = FusionOrchestrator(
            measurement_config, validator=BrokenValidator(measurement_config)
        )
        outcome = await orchestrator.measure(
            {"arcore": returns(make_estimate("arcore"))}, good_context
        )
        assert outcome.result.is_fallback
        assert not outcome.validation.is_valid
        assert outcome.validation.quality is Quality.POOR

    @pytest.mark.asyncio
    async def test_validation_uses_history_before_the_cycle(
        self, measurement_config: MeasurementConfig
    ) -> None:
        orchestrator = FusionOrchestrator(measurement_config)
        context = Context(lighting=Lighting.EXCELLENT)
        for _ in range(6):
            await orchestrator.measure(
                {"arcore": returns(make_estimate("arcore", 48.0, 176.0, 0.9))}, context
            )
        outcome = await orchestrator.measure(
            {"arcore": returns(make_estimate("arcore", 54.0, 176.0, 0.9))}, context
        )
        assert AnomalyType.TEMPORAL in outcome.validation.anomaly_types
        assert len(orchestrator.history()) == 7
