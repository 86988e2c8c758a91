"""Shared fixtures for measurement engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest

from src.measurement.base import (
    Context,
    Distance,
    FusionResult,
    Lighting,
    Measurements,
    Pose,
    Quality,
    RawEstimate,
    SourceQuery,
    grade_quality,
)
from src.measurement.config_loader import MeasurementConfig, load_measurement_config

# Canonical test user
TEST_USER_ID = "user_2fitform0001"
TEST_NOW = datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def measurement_config() -> MeasurementConfig:
    """Load the real measurement config for tests."""
    return load_measurement_config()


# ---------------------------------------------------------------------------
# Context fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def good_context() -> Context:
    return Context(lighting=Lighting.GOOD, distance=Distance.OPTIMAL, pose=Pose.OPTIMAL)


@pytest.fixture
def poor_context() -> Context:
    """Poor lighting, too far away, slouching."""
    return Context(lighting=Lighting.POOR, distance=Distance.TOO_FAR, pose=Pose.POOR)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_estimate(
    source: str,
    shoulder_width: float = 48.0,
    height: float = 175.0,
    confidence: float = 0.8,
) -> RawEstimate:
    return RawEstimate(
        shoulder_width=shoulder_width,
        height=height,
        confidence=confidence,
        source=source,
    )


def returns(estimate: RawEstimate | None) -> SourceQuery:
    """A source query that resolves to ``estimate``."""

    async def query() -> RawEstimate | None:
        return estimate

    return query


def raises(exc: Exception) -> SourceQuery:
    """A source query that always fails with ``exc``."""

    async def query() -> RawEstimate | None:
        raise exc

    return query


def make_result(
    shoulder_width: float,
    height: float,
    confidence: float = 0.85,
    computed_at: datetime | None = None,
    is_fallback: bool = False,
) -> FusionResult:
    return FusionResult(
        measurements=Measurements(shoulder_width, height, confidence),
        source="fusion",
        quality=Quality.POOR if is_fallback else grade_quality(confidence),
        is_fallback=is_fallback,
        computed_at=computed_at or TEST_NOW,
    )


@pytest.fixture
def stable_history() -> list[FusionResult]:
    """Ten readings with small jitter around 48 cm / 175 cm (ratio ≈ 3.65)."""
    jitter = [0.0, 0.3, -0.2, 0.1, -0.3, 0.2, -0.1, 0.3, -0.2, 0.1]
    return [
        make_result(48.0 + j, 175.0 + 2 * j, computed_at=TEST_NOW + timedelta(minutes=i))
        for i, j in enumerate(jitter)
    ]


# ---------------------------------------------------------------------------
# Fake clock / sleep for the recovery manager
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep stand-in that records delays and advances a FakeClock."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(fake_clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(fake_clock)


@pytest.fixture
def datetime_clock() -> Callable[[], datetime]:
    """Mutable wall clock for calibration tests; set ``.current`` to move it."""

    class _Clock:
        current = TEST_NOW

        def __call__(self) -> datetime:
            return self.current

    return _Clock()
