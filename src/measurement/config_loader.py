"""Load, validate, and hot-reload the measurement engine configuration.

The config lives in ``measurement_config.yaml`` alongside this module.  At
startup it is loaded once and cached.  Call ``reload_measurement_config()`` to
re-read from disk after an admin update without a restart.

Usage::

    from src.measurement.config_loader import get_measurement_config

    config = get_measurement_config()
    strategy = config.fusion.strategy                # FusionStrategy.WEIGHTED
    threshold = config.validation.confidence_threshold  # 0.7
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from src.measurement.base import FusionStrategy, Severity

logger = logging.getLogger("fitform.measurement.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "measurement_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class FallbackConfig:
    """Measurements returned when no source produced a result."""

    shoulder_width_cm: float = 40.0
    height_cm: float = 170.0
    confidence: float = 0.3


@dataclass
class FusionSettings:
    """Fusion orchestrator settings."""

    strategy: FusionStrategy = FusionStrategy.WEIGHTED
    history_size: int = 20
    source_timeout_s: float | None = 2.0
    optional_sources: list[str] = field(default_factory=list)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)


@dataclass
class StatisticalConfig:
    min_history: int = 5
    window: int = 20
    z_threshold: float = 2.5
    z_critical: float = 4.0


@dataclass
class TemporalConfig:
    min_history: int = 3
    window: int = 5
    jump_ratio: float = 3.0
    high_ratio: float = 5.0
    min_change_cm: float = 0.5


@dataclass
class ProportionalConfig:
    expected_ratio: float = 3.25
    tolerance: float = 0.75
    severe_deviation: float = 1.5

    @property
    def min_ratio(self) -> float:
        return self.expected_ratio - self.tolerance

    @property
    def max_ratio(self) -> float:
        return self.expected_ratio + self.tolerance


@dataclass
class PatternConfig:
    trend_window: int = 10
    trend_threshold: float = 0.01
    cycle_window: int = 10
    cycle_min_strength: float = 0.3
    seasonal_window: int = 20
    seasonal_threshold: float = 0.1


@dataclass
class ValidationSettings:
    """Validation engine settings.

    Attributes:
        confidence_threshold: Minimum ml_score for a valid result.
        advanced_features:    Enables consistency scoring and pattern recognition.
        scorer_weights:       Scorer name → weight (0.0 disables the scorer).
        severity_penalties:   Score deduction per anomaly, scaled by its confidence.
        learning_rate:        Bound on each incremental model update.
        max_training_samples: Rolling training set capacity.
    """

    confidence_threshold: float = 0.7
    advanced_features: bool = True
    statistical: StatisticalConfig = field(default_factory=StatisticalConfig)
    temporal: TemporalConfig = field(default_factory=TemporalConfig)
    proportional: ProportionalConfig = field(default_factory=ProportionalConfig)
    patterns: PatternConfig = field(default_factory=PatternConfig)
    scorer_weights: dict[str, float] = field(default_factory=dict)
    severity_penalties: dict[Severity, float] = field(default_factory=dict)
    learning_rate: float = 0.01
    max_training_samples: int = 1000


@dataclass
class RecoverySettings:
    """Error recovery / circuit breaker settings."""

    max_retries: int = 3
    retry_delay_ms: int = 1000
    fallback_enabled: bool = True

    @property
    def retry_delay_s(self) -> float:
        return self.retry_delay_ms / 1000.0

    @property
    def cooldown_s(self) -> float:
        # Breaker stays open for twice the retry delay
        return 2 * self.retry_delay_s


@dataclass
class CalibrationSettings:
    """Per-user calibration learning settings."""

    learning_rate: float = 0.3
    max_reference_measurements: int = 20
    max_feedback_records: int = 100
    scale_factor_min: float = 0.5
    scale_factor_max: float = 1.5
    min_session_measurements: int = 5
    stale_after_days: int = 30
    session_ttl_minutes: int = 60
    max_active_sessions_per_user: int = 3


@dataclass
class PerformanceSettings:
    """Performance monitor thresholds and recommended values."""

    max_metrics_history: int = 100
    trend_window: int = 10
    trend_tolerance: float = 0.10
    slow_frame_ms: float = 150
    very_slow_frame_ms: float = 200
    high_memory_mb: float = 250
    critical_memory_mb: float = 300
    low_battery_pct: float = 30
    critical_battery_pct: float = 20
    default_interval_ms: int = 100
    slow_interval_ms: int = 200
    power_save_interval_ms: int = 300
    default_history_size: int = 20
    reduced_history_size: int = 5


@dataclass
class MeasurementConfig:
    """Complete, validated engine configuration.

    This is the single in-memory representation of measurement_config.yaml.
    The orchestrator, validator, recovery manager, calibration engine and
    performance monitor all read from this object.
    """

    version: str
    fusion: FusionSettings
    validation: ValidationSettings
    recovery: RecoverySettings
    calibration: CalibrationSettings
    performance: PerformanceSettings
    _raw: dict = field(default_factory=dict, repr=False)

    def scorer_weight(self, name: str) -> float:
        """Return the configured weight for a scorer (0.0 if not configured)."""
        return self.validation.scorer_weights.get(name, 0.0)

    def severity_penalty(self, severity: Severity) -> float:
        return self.validation.severity_penalties.get(severity, 0.0)


_DEFAULT_SCORER_WEIGHTS = {
    "plausibility": 0.25,
    "context": 0.25,
    "consistency": 0.20,
    "feedback_model": 0.30,
}

_DEFAULT_PENALTIES = {
    Severity.LOW: 0.05,
    Severity.MEDIUM: 0.10,
    Severity.HIGH: 0.20,
    Severity.CRITICAL: 0.30,
}


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when measurement_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    try:
        import yaml  # pyyaml
    except ImportError as exc:
        raise ImportError(
            "pyyaml is required for config loading. Install with: pip install pyyaml"
        ) from exc

    if not path.exists():
        raise FileNotFoundError(f"Measurement config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> MeasurementConfig:
    """Validate the raw YAML dict and construct a MeasurementConfig.

    All problems are collected before raising so an admin sees every
    mistake in one pass.  Missing optional sections fall back to defaults.

    Raises:
        ConfigValidationError: If any value is missing or out of range.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, path: str, default: float, *,
                low: float | None = None, high: float | None = None) -> float:
        value = section.get(key, default)
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.append(f"{path}.{key} must be a number, got {value!r}")
            return default
        if low is not None and number < low:
            errors.append(f"{path}.{key} = {number} is below the minimum {low}")
        if high is not None and number > high:
            errors.append(f"{path}.{key} = {number} is above the maximum {high}")
        return number

    def _int(section: dict, key: str, path: str, default: int, *, low: int = 1) -> int:
        return int(_number(section, key, path, default, low=low))

    def _section(key: str) -> dict:
        value = raw.get(key) or {}
        if not isinstance(value, dict):
            errors.append(f"'{key}' must be a mapping")
            return {}
        return value

    version = str(raw.get("version", "1.0"))

    # ── Fusion ──
    fu_raw = _section("fusion")
    strategy_raw = fu_raw.get("strategy", FusionStrategy.WEIGHTED.value)
    try:
        strategy = FusionStrategy(strategy_raw)
    except ValueError:
        errors.append(
            f"fusion.strategy must be one of "
            f"{[s.value for s in FusionStrategy]}, got {strategy_raw!r}"
        )
        strategy = FusionStrategy.WEIGHTED

    fb_raw = fu_raw.get("fallback") or {}
    fallback = FallbackConfig(
        shoulder_width_cm=_number(fb_raw, "shoulder_width_cm", "fusion.fallback", 40.0, low=0.0),
        height_cm=_number(fb_raw, "height_cm", "fusion.fallback", 170.0, low=0.0),
        confidence=_number(fb_raw, "confidence", "fusion.fallback", 0.3, low=0.0, high=1.0),
    )
    timeout_raw = fu_raw.get("source_timeout_s", 2.0)
    source_timeout = (
        None if timeout_raw is None
        else _number(fu_raw, "source_timeout_s", "fusion", 2.0, low=0.0)
    )
    optional_sources = fu_raw.get("optional_sources") or []
    if not isinstance(optional_sources, list):
        errors.append("fusion.optional_sources must be a list of source ids")
        optional_sources = []

    fusion = FusionSettings(
        strategy=strategy,
        history_size=_int(fu_raw, "history_size", "fusion", 20),
        source_timeout_s=source_timeout,
        optional_sources=[str(s) for s in optional_sources],
        fallback=fallback,
    )

    # ── Validation ──
    va_raw = _section("validation")
    st_raw = va_raw.get("statistical") or {}
    statistical = StatisticalConfig(
        min_history=_int(st_raw, "min_history", "validation.statistical", 5, low=2),
        window=_int(st_raw, "window", "validation.statistical", 20, low=2),
        z_threshold=_number(st_raw, "z_threshold", "validation.statistical", 2.5, low=0.0),
        z_critical=_number(st_raw, "z_critical", "validation.statistical", 4.0, low=0.0),
    )
    if statistical.z_threshold > statistical.z_critical:
        errors.append(
            "validation.statistical.z_threshold must not exceed z_critical"
        )

    te_raw = va_raw.get("temporal") or {}
    temporal = TemporalConfig(
        min_history=_int(te_raw, "min_history", "validation.temporal", 3, low=2),
        window=_int(te_raw, "window", "validation.temporal", 5, low=2),
        jump_ratio=_number(te_raw, "jump_ratio", "validation.temporal", 3.0, low=1.0),
        high_ratio=_number(te_raw, "high_ratio", "validation.temporal", 5.0, low=1.0),
        min_change_cm=_number(te_raw, "min_change_cm", "validation.temporal", 0.5, low=0.0),
    )

    pr_raw = va_raw.get("proportional") or {}
    proportional = ProportionalConfig(
        expected_ratio=_number(pr_raw, "expected_ratio", "validation.proportional", 3.25, low=0.0),
        tolerance=_number(pr_raw, "tolerance", "validation.proportional", 0.75, low=0.0),
        severe_deviation=_number(pr_raw, "severe_deviation", "validation.proportional", 1.5, low=0.0),
    )

    pa_raw = va_raw.get("patterns") or {}
    patterns = PatternConfig(
        trend_window=_int(pa_raw, "trend_window", "validation.patterns", 10, low=2),
        trend_threshold=_number(pa_raw, "trend_threshold", "validation.patterns", 0.01, low=0.0),
        cycle_window=_int(pa_raw, "cycle_window", "validation.patterns", 10, low=4),
        cycle_min_strength=_number(
            pa_raw, "cycle_min_strength", "validation.patterns", 0.3, low=0.0, high=1.0
        ),
        seasonal_window=_int(pa_raw, "seasonal_window", "validation.patterns", 20, low=2),
        seasonal_threshold=_number(
            pa_raw, "seasonal_threshold", "validation.patterns", 0.1, low=0.0
        ),
    )

    scorer_weights: dict[str, float] = {}
    for name, weight in (va_raw.get("scorers") or _DEFAULT_SCORER_WEIGHTS).items():
        scorer_weights[name] = _number(
            {name: weight}, name, "validation.scorers", 0.0, low=0.0, high=1.0
        )
    if scorer_weights and not any(w > 0.0 for w in scorer_weights.values()):
        errors.append("validation.scorers must enable at least one scorer")

    penalties: dict[Severity, float] = dict(_DEFAULT_PENALTIES)
    for name, value in (va_raw.get("severity_penalties") or {}).items():
        try:
            severity = Severity(name)
        except ValueError:
            errors.append(f"validation.severity_penalties.{name} is not a known severity")
            continue
        penalties[severity] = _number(
            {name: value}, name, "validation.severity_penalties", 0.0, low=0.0, high=1.0
        )

    validation = ValidationSettings(
        confidence_threshold=_number(
            va_raw, "confidence_threshold", "validation", 0.7, low=0.0, high=1.0
        ),
        advanced_features=bool(va_raw.get("advanced_features", True)),
        statistical=statistical,
        temporal=temporal,
        proportional=proportional,
        patterns=patterns,
        scorer_weights=scorer_weights,
        severity_penalties=penalties,
        learning_rate=_number(va_raw, "learning_rate", "validation", 0.01, low=0.0, high=1.0),
        max_training_samples=_int(va_raw, "max_training_samples", "validation", 1000),
    )

    # ── Recovery ──
    re_raw = _section("recovery")
    recovery = RecoverySettings(
        max_retries=_int(re_raw, "max_retries", "recovery", 3),
        retry_delay_ms=int(_number(re_raw, "retry_delay_ms", "recovery", 1000, low=0)),
        fallback_enabled=bool(re_raw.get("fallback_enabled", True)),
    )

    # ── Calibration ──
    ca_raw = _section("calibration")
    calibration = CalibrationSettings(
        learning_rate=_number(ca_raw, "learning_rate", "calibration", 0.3, low=0.0, high=1.0),
        max_reference_measurements=_int(
            ca_raw, "max_reference_measurements", "calibration", 20
        ),
        max_feedback_records=_int(ca_raw, "max_feedback_records", "calibration", 100),
        scale_factor_min=_number(ca_raw, "scale_factor_min", "calibration", 0.5, low=0.0),
        scale_factor_max=_number(ca_raw, "scale_factor_max", "calibration", 1.5, low=0.0),
        min_session_measurements=_int(
            ca_raw, "min_session_measurements", "calibration", 5
        ),
        stale_after_days=_int(ca_raw, "stale_after_days", "calibration", 30),
        session_ttl_minutes=_int(ca_raw, "session_ttl_minutes", "calibration", 60),
        max_active_sessions_per_user=_int(
            ca_raw, "max_active_sessions_per_user", "calibration", 3
        ),
    )
    if not calibration.scale_factor_min < 1.0 < calibration.scale_factor_max:
        errors.append(
            "calibration scale factor range must contain 1.0 "
            f"(got {calibration.scale_factor_min}–{calibration.scale_factor_max})"
        )

    # ── Performance ──
    pe_raw = _section("performance")
    performance = PerformanceSettings(
        max_metrics_history=_int(pe_raw, "max_metrics_history", "performance", 100),
        trend_window=_int(pe_raw, "trend_window", "performance", 10),
        trend_tolerance=_number(pe_raw, "trend_tolerance", "performance", 0.10, low=0.0),
        slow_frame_ms=_number(pe_raw, "slow_frame_ms", "performance", 150, low=0.0),
        very_slow_frame_ms=_number(pe_raw, "very_slow_frame_ms", "performance", 200, low=0.0),
        high_memory_mb=_number(pe_raw, "high_memory_mb", "performance", 250, low=0.0),
        critical_memory_mb=_number(pe_raw, "critical_memory_mb", "performance", 300, low=0.0),
        low_battery_pct=_number(pe_raw, "low_battery_pct", "performance", 30, low=0.0, high=100.0),
        critical_battery_pct=_number(
            pe_raw, "critical_battery_pct", "performance", 20, low=0.0, high=100.0
        ),
        default_interval_ms=_int(pe_raw, "default_interval_ms", "performance", 100),
        slow_interval_ms=_int(pe_raw, "slow_interval_ms", "performance", 200),
        power_save_interval_ms=_int(pe_raw, "power_save_interval_ms", "performance", 300),
        default_history_size=_int(pe_raw, "default_history_size", "performance", 20),
        reduced_history_size=_int(pe_raw, "reduced_history_size", "performance", 5),
    )

    if errors:
        raise ConfigValidationError(
            f"measurement_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return MeasurementConfig(
        version=version,
        fusion=fusion,
        validation=validation,
        recovery=recovery,
        calibration=calibration,
        performance=performance,
        _raw=raw,
    )


def build_measurement_config(overrides: dict[str, Any] | None = None) -> MeasurementConfig:
    """Build a config from defaults plus a (possibly partial) raw dict.

    Handy for tests and embedded use where no YAML file is involved.
    """
    return _validate_and_build(overrides or {})


def load_measurement_config(path: Path | None = None) -> MeasurementConfig:
    """Load and validate the measurement config from disk.

    Args:
        path: Override path to YAML. Uses the bundled measurement_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded measurement config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Cached instance with hot-reload support
# ---------------------------------------------------------------------------

_config: MeasurementConfig | None = None
_config_lock = threading.Lock()


def get_measurement_config(path: Path | None = None) -> MeasurementConfig:
    """Return the cached MeasurementConfig, loading it on first call.

    Thread-safe.  Use ``reload_measurement_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_measurement_config(path)
    return _config


def reload_measurement_config(path: Path | None = None) -> MeasurementConfig:
    """Reload the config from disk and replace the cached instance.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_measurement_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info(
        "Reloaded measurement config: %s → %s",
        old_version,
        new_config.version,
    )
    return new_config
