"""Load, validate, and hot-reload the Cyclelink telemetry policy configuration.

The config lives in ``telemetry_config.yaml`` alongside this module.  At
startup it is loaded once and cached.  Call ``reload_telemetry_config()`` to
re-read from disk; no restart required.

Usage::

    from src.telemetry.config_loader import get_telemetry_config

    config = get_telemetry_config()
    hr = config.metric_range("heart_rate")          # MetricRange(30..250 bpm)
    threshold = config.quality.threshold("ble")     # 30.0
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("cyclelink.telemetry.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "telemetry_config.yaml"

SESSION_POLICIES = ("drop", "ephemeral")


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class MetricRange:
    """Accepted range and presentation of one canonical metric."""

    metric: str
    unit: str
    minimum: float
    maximum: float
    precision: int = 0

    def contains(self, value: float) -> bool:
        return self.minimum <= value <= self.maximum

    def round(self, value: float) -> float:
        """Round to ``precision`` decimals, halves away from zero (72.5 -> 73)."""
        step = Decimal(1).scaleb(-max(self.precision, 0))
        try:
            rounded = Decimal(str(value)).quantize(step, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            # beyond decimal context precision; far outside any metric range
            return value
        if self.precision <= 0:
            return int(rounded)
        return float(rounded)


@dataclass
class QualityPolicy:
    """Reading quality deductions."""

    base: float
    missing_timestamp_penalty: float
    missing_raw_data_penalty: float
    signal_penalty_per_point: float
    signal_thresholds: dict[str, float]

    def threshold(self, protocol: str) -> float:
        """Return the acceptable-signal threshold for a protocol (0 if unset)."""
        return self.signal_thresholds.get(protocol, 0.0)


@dataclass
class SanitizationPolicy:
    """Limits applied to raw payloads before they are attached to readings."""

    max_string_length: int
    max_depth: int
    redacted_key_fragments: list[str]


@dataclass
class ScanPolicy:
    auto_stop_seconds: float


@dataclass
class SessionPolicy:
    on_missing: str  # drop | ephemeral


@dataclass
class DedupPolicy:
    suppress_duplicates: bool
    cache_size: int


@dataclass
class TelemetryConfig:
    """Complete, validated telemetry configuration.

    This is the single in-memory representation of telemetry_config.yaml.
    The normalizer and orchestrator read from this object.

    Attributes:
        version:       Config schema version string.
        metrics:       Metric key → accepted range.
        quality:       Quality scoring deductions.
        sanitization:  Raw payload sanitization limits.
        scanning:      Scan lifecycle settings.
        sessions:      Missing-session policy.
        deduplication: Duplicate-suppression settings.
    """

    version: str
    metrics: dict[str, MetricRange]
    quality: QualityPolicy
    sanitization: SanitizationPolicy
    scanning: ScanPolicy
    sessions: SessionPolicy
    deduplication: DedupPolicy
    _raw: dict = field(default_factory=dict, repr=False)

    def metric_range(self, metric: str) -> MetricRange | None:
        """Return the configured range for a metric key, or None."""
        return self.metrics.get(metric)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when telemetry_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Telemetry config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigValidationError(f"{path} must contain a mapping at the top level")
    return data


def _validate_and_build(raw: dict) -> TelemetryConfig:
    """Validate the raw YAML dict and construct a TelemetryConfig.

    Every problem is collected before raising so one edit can fix them all.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, where: str, default: Any = None) -> float:
        value = section.get(key, default)
        if value is None:
            errors.append(f"Missing required key '{key}' in section '{where}'")
            return 0.0
        if isinstance(value, bool):
            errors.append(f"{where}.{key} must be a number, got {value!r}")
            return 0.0
        try:
            return float(value)
        except (TypeError, ValueError):
            errors.append(f"{where}.{key} must be a number, got {value!r}")
            return 0.0

    def _section(key: str) -> dict:
        value = raw.get(key) or {}
        if not isinstance(value, dict):
            errors.append(f"'{key}' must be a mapping")
            return {}
        return value

    version = str(raw.get("version", "1.0"))

    # ── Metrics ──
    metrics_raw = _section("metrics")
    if not metrics_raw:
        errors.append("'metrics' section is missing or empty")
    metrics: dict[str, MetricRange] = {}
    for metric, cfg in metrics_raw.items():
        where = f"metrics.{metric}"
        if not isinstance(cfg, dict):
            errors.append(f"{where} must be a mapping")
            continue
        unit = cfg.get("unit")
        if not unit:
            errors.append(f"Missing required key 'unit' in section '{where}'")
        low = _number(cfg, "min", where)
        high = _number(cfg, "max", where)
        if low > high:
            errors.append(f"{where}: min {low} is greater than max {high}")
        metrics[metric] = MetricRange(
            metric=metric,
            unit=str(unit or ""),
            minimum=low,
            maximum=high,
            precision=int(_number(cfg, "precision", where, default=0)),
        )

    # ── Quality ──
    q_raw = _section("quality")
    thresholds: dict[str, float] = {}
    for protocol, val in (q_raw.get("signal_thresholds") or {}).items():
        t = _number({"v": val}, "v", f"quality.signal_thresholds.{protocol}")
        if not (0.0 <= t <= 100.0):
            errors.append(
                f"quality.signal_thresholds.{protocol} = {t} is out of range [0, 100]"
            )
        thresholds[protocol] = t
    quality = QualityPolicy(
        base=_number(q_raw, "base", "quality", default=100),
        missing_timestamp_penalty=_number(q_raw, "missing_timestamp_penalty", "quality", default=10),
        missing_raw_data_penalty=_number(q_raw, "missing_raw_data_penalty", "quality", default=5),
        signal_penalty_per_point=_number(q_raw, "signal_penalty_per_point", "quality", default=1.0),
        signal_thresholds=thresholds,
    )
    for name in ("missing_timestamp_penalty", "missing_raw_data_penalty", "signal_penalty_per_point"):
        if getattr(quality, name) < 0:
            errors.append(f"quality.{name} must not be negative")

    # ── Sanitization ──
    s_raw = _section("sanitization")
    fragments = s_raw.get("redacted_key_fragments", [])
    if not isinstance(fragments, list):
        errors.append("sanitization.redacted_key_fragments must be a list")
        fragments = []
    sanitization = SanitizationPolicy(
        max_string_length=int(_number(s_raw, "max_string_length", "sanitization", default=256)),
        max_depth=int(_number(s_raw, "max_depth", "sanitization", default=4)),
        redacted_key_fragments=[str(f).lower() for f in fragments],
    )

    # ── Scanning ──
    sc_raw = _section("scanning")
    scanning = ScanPolicy(
        auto_stop_seconds=_number(sc_raw, "auto_stop_seconds", "scanning", default=60),
    )
    if scanning.auto_stop_seconds <= 0:
        errors.append("scanning.auto_stop_seconds must be positive")

    # ── Sessions ──
    se_raw = _section("sessions")
    on_missing = str(se_raw.get("on_missing", "drop"))
    if on_missing not in SESSION_POLICIES:
        errors.append(
            f"sessions.on_missing must be one of {SESSION_POLICIES}, got {on_missing!r}"
        )
    sessions = SessionPolicy(on_missing=on_missing)

    # ── Deduplication ──
    d_raw = _section("deduplication")
    deduplication = DedupPolicy(
        suppress_duplicates=bool(d_raw.get("suppress_duplicates", False)),
        cache_size=int(_number(d_raw, "cache_size", "deduplication", default=512)),
    )
    if deduplication.cache_size < 1:
        errors.append("deduplication.cache_size must be at least 1")

    if errors:
        raise ConfigValidationError(
            f"telemetry_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return TelemetryConfig(
        version=version,
        metrics=metrics,
        quality=quality,
        sanitization=sanitization,
        scanning=scanning,
        sessions=sessions,
        deduplication=deduplication,
        _raw=raw,
    )


def load_telemetry_config(path: Path | None = None) -> TelemetryConfig:
    """Load and validate the telemetry config from disk.

    Args:
        path: Override path to YAML. Uses the bundled telemetry_config.yaml by default.

    Returns:
        Validated TelemetryConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded telemetry config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: TelemetryConfig | None = None
_config_lock = threading.Lock()


def get_telemetry_config() -> TelemetryConfig:
    """Return the global TelemetryConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_telemetry_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_telemetry_config()
    return _config


def reload_telemetry_config(path: Path | None = None) -> TelemetryConfig:
    """Reload the telemetry config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Args:
        path: Override path to YAML. Defaults to bundled telemetry_config.yaml.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_telemetry_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info(
        "Reloaded telemetry config: %s → %s",
        old_version,
        new_config.version,
    )
    return new_config
