"""Resource monitor for the measurement loop.

Keeps a bounded history of per-cycle metrics (frame processing time, memory,
battery, accuracy, error rate) and derives rolling statistics, a trend and
advisory degraded-mode settings.  Nothing here changes engine behaviour by
itself: ``FusionOrchestrator.apply_settings`` is the only consumer that acts
on ``optimal_settings()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from src.measurement.base import utc_now
from src.measurement.config_loader import MeasurementConfig, get_measurement_config
from src.measurement.ring_buffer import RingBuffer

logger = logging.getLogger("fitform.measurement.performance")


@dataclass(frozen=True)
class PerformanceMetrics:
    """One sample.

    Attributes:
        frame_processing_ms:  Wall time of one measurement cycle.
        memory_mb:            Resident memory reported by the device.
        battery_pct:          Battery level 0–100, if the device reports it.
        measurement_accuracy: Validation confidence of the cycle, 0.0–1.0.
        error_rate:           Share of sources that failed in the cycle.
    """

    frame_processing_ms: float
    memory_mb: float = 0.0
    battery_pct: Optional[float] = None
    measurement_accuracy: Optional[float] = None
    error_rate: Optional[float] = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class PerformanceStats:
    sample_count: int
    avg_frame_processing_ms: float
    avg_memory_mb: float
    avg_battery_pct: Optional[float]
    measurement_accuracy: float
    error_rate: float
    trend: str  # improving | stable | degrading
    recommendation: str


@dataclass(frozen=True)
class OptimalSettings:
    frame_processing_interval_ms: int
    max_history_size: int
    enable_advanced_features: bool


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class PerformanceMonitor:
    """Bounded metric history with rolling statistics.

    Usage::

        monitor = PerformanceMonitor(config)
        monitor.record(PerformanceMetrics(frame_processing_ms=42.0, memory_mb=180.0))
        settings = monitor.optimal_settings()
    """

    def __init__(self, config: MeasurementConfig | None = None) -> None:
        self._settings = (config or get_measurement_config()).performance
        self._metrics: RingBuffer[PerformanceMetrics] = RingBuffer(
            self._settings.max_metrics_history
        )

    def __len__(self) -> int:
        return len(self._metrics)

    def record(self, metrics: PerformanceMetrics) -> None:
        self._metrics.append(metrics)
        if metrics.frame_processing_ms > self._settings.very_slow_frame_ms:
            logger.debug("Slow measurement cycle: %.1f ms", metrics.frame_processing_ms)

    def reset(self) -> None:
        self._metrics.clear()

    def stats(self) -> PerformanceStats:
        samples = self._metrics.to_list()
        if not samples:
            return PerformanceStats(
                sample_count=0,
                avg_frame_processing_ms=0.0,
                avg_memory_mb=0.0,
                avg_battery_pct=None,
                measurement_accuracy=0.0,
                error_rate=0.0,
                trend="stable",
                recommendation="No data available",
            )

        batteries = [m.battery_pct for m in samples if m.battery_pct is not None]
        frame = _mean([m.frame_processing_ms for m in samples])
        memory = _mean([m.memory_mb for m in samples])
        battery = _mean(batteries) if batteries else None

        return PerformanceStats(
            sample_count=len(samples),
            avg_frame_processing_ms=round(frame, 3),
            avg_memory_mb=round(memory, 3),
            avg_battery_pct=round(battery, 3) if battery is not None else None,
            measurement_accuracy=round(
                _mean([m.measurement_accuracy for m in samples if m.measurement_accuracy is not None]),
                4,
            ),
            error_rate=round(
                _mean([m.error_rate for m in samples if m.error_rate is not None]), 4
            ),
            trend=self._trend(samples),
            recommendation=self._recommendation(frame, memory, battery),
        )

    def optimal_settings(self) -> OptimalSettings:
        """Advisory settings derived from the current stats."""
        cfg = self._settings
        stats = self.stats()

        interval = cfg.default_interval_ms
        history = cfg.default_history_size
        advanced = True

        if stats.avg_frame_processing_ms > cfg.slow_frame_ms:
            interval = cfg.slow_interval_ms
            history = cfg.reduced_history_size
        if stats.avg_memory_mb > cfg.high_memory_mb:
            history = cfg.reduced_history_size
            advanced = False
        if stats.avg_battery_pct is not None and stats.avg_battery_pct < cfg.low_battery_pct:
            interval = cfg.power_save_interval_ms
            advanced = False

        return OptimalSettings(
            frame_processing_interval_ms=interval,
            max_history_size=history,
            enable_advanced_features=advanced,
        )

    def _trend(self, samples: list[PerformanceMetrics]) -> str:
        window = self._settings.trend_window
        if len(samples) < 2 * window:
            return "stable"

        recent = _mean([m.frame_processing_ms for m in samples[-window:]])
        older = _mean([m.frame_processing_ms for m in samples[-2 * window:-window]])
        if older <= 0:
            return "stable"

        improvement = (older - recent) / older
        if improvement > self._settings.trend_tolerance:
            return "improving"
        if improvement < -self._settings.trend_tolerance:
            return "degrading"
        return "stable"

    def _recommendation(self, frame: float, memory: float, battery: float | None) -> str:
        cfg = self._settings
        recommendations = []
        if frame > cfg.very_slow_frame_ms:
            recommendations.append("Consider reducing processing frequency")
        if memory > cfg.critical_memory_mb:
            recommendations.append("Memory usage is high - consider cleanup")
        if battery is not None and battery < cfg.critical_battery_pct:
            recommendations.append("Low battery - enable power saving mode")
        return "; ".join(recommendations) if recommendations else "Performance is optimal"
