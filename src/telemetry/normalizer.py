"""Raw transport event → canonical SensorReading conversion and quality scoring.

Pipeline per event:
    1. reject missing device id / type, or a non-numeric value
    2. map the type token to a canonical metric (alias table below)
    3. round to the metric's precision and attach its unit
    4. reject values outside the configured range (never clamp)
    5. use the supplied timestamp, else now (UTC)
    6. score quality
    7. sanitize the raw payload
    8. attach the session id only if the caller supplied one

Quality (see ``telemetry_config.yaml``):
    base                        100
    no timestamp in payload     -10
    no raw payload              -5
    signal below threshold      -(threshold - signal) × 1.0
    result clamped to [0, 100] and rounded

Signal thresholds: short-range radio 20, BLE 30 (0–100 normalized signal).
An event with no signal value gets no signal deduction.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from src.telemetry.base import (
    Protocol,
    RawSensorEvent,
    SensorReading,
    SensorType,
    _safe_float,
    clamp,
    parse_timestamp,
)
from src.telemetry.config_loader import (
    SanitizationPolicy,
    TelemetryConfig,
    get_telemetry_config,
)
from src.telemetry.dedup import LastSeenCache

logger = logging.getLogger("cyclelink.telemetry.normalizer")

TRUNCATED_MARKER = "[truncated]"

# ---------------------------------------------------------------------------
# Metric alias dictionary
# Each entry: canonical metric → list[alias tokens].  Tokens are matched
# lower-case with spaces and dashes folded to underscores.
# ---------------------------------------------------------------------------

METRIC_ALIASES: dict[SensorType, list[str]] = {
    SensorType.HEART_RATE: ["heart_rate", "heartrate", "hr", "bpm", "heart_rate_measurement"],
    SensorType.POWER: ["power", "watts", "instantaneous_power", "cycling_power"],
    SensorType.CADENCE: ["cadence", "rpm", "crank_cadence"],
    SensorType.SPEED: ["speed", "velocity", "wheel_speed"],
    SensorType.TRAINER: ["trainer", "resistance", "resistance_level", "trainer_resistance"],
}

_ALIAS_LOOKUP: dict[str, SensorType] = {
    alias: metric for metric, aliases in METRIC_ALIASES.items() for alias in aliases
}


def canonical_metric(token: object) -> SensorType | None:
    """Resolve a raw type token to its canonical metric, or None."""
    if isinstance(token, SensorType):
        return None if token is SensorType.UNKNOWN else token
    if not isinstance(token, str):
        return None
    key = token.strip().lower().replace("-", "_").replace(" ", "_")
    return _ALIAS_LOOKUP.get(key)


def _is_missing(payload: Any) -> bool:
    if payload is None:
        return True
    if isinstance(payload, (Mapping, list, tuple, str, bytes, bytearray)):
        return len(payload) == 0
    return False


# ---------------------------------------------------------------------------
# Sanitization
# ---------------------------------------------------------------------------


def _fold_key(key: str) -> str:
    return key.lower().replace("_", "").replace("-", "").replace(" ", "")


def sanitize_payload(payload: Any, policy: SanitizationPolicy) -> dict | None:
    """Return a safe-to-store copy of a raw payload.

    Keys that look like credentials are dropped, strings are truncated,
    bytes are rendered as hex and nesting beyond ``max_depth`` is cut.
    Non-mapping payloads are wrapped as ``{"value": ...}``.
    """
    if payload is None:
        return None
    fragments = [_fold_key(f) for f in policy.redacted_key_fragments]
    cleaned = _sanitize_value(payload, policy, fragments, depth=0)
    if not isinstance(cleaned, dict):
        cleaned = {"value": cleaned}
    return cleaned


def _sanitize_value(value: Any, policy: SanitizationPolicy, fragments: list[str], depth: int) -> Any:
    limit = policy.max_string_length

    if value is None or isinstance(value, (bool, int)):
        return value
    if isinstance(value, float):
        return None if math.isnan(value) or math.isinf(value) else value
    if isinstance(value, str):
        return value[:limit]
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()[:limit]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)

    if isinstance(value, Mapping):
        if depth >= policy.max_depth:
            return TRUNCATED_MARKER
        result: dict[str, Any] = {}
        for key, item in value.items():
            name = str(key)
            folded = _fold_key(name)
            if any(fragment in folded for fragment in fragments):
                continue
            result[name[:limit]] = _sanitize_value(item, policy, fragments, depth + 1)
        return result
    if isinstance(value, (list, tuple, set, frozenset)):
        if depth >= policy.max_depth:
            return TRUNCATED_MARKER
        return [_sanitize_value(item, policy, fragments, depth + 1) for item in value]

    return str(value)[:limit]


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class ReadingNormalizer:
    """Validate raw transport events and convert them into SensorReading.

    ``parse`` is a pure function of its inputs and the config (apart from
    the "now" default timestamp).  The last-seen cache is only touched by
    ``record``, which the orchestrator calls for accepted readings.

    Usage::

        normalizer = ReadingNormalizer()
        reading = normalizer.parse(raw_event, Protocol.BLE, session_id="s-1")
        if reading is not None and normalizer.record(reading):
            publish(reading)
    """

    def __init__(
        self,
        config: TelemetryConfig | None = None,
        cache: LastSeenCache | None = None,
    ) -> None:
        self._config = config or get_telemetry_config()
        self._cache = cache or LastSeenCache(self._config.deduplication.cache_size)

    @property
    def config(self) -> TelemetryConfig:
        return self._config

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse(
        self,
        raw_event: RawSensorEvent | Mapping[str, Any],
        protocol: Protocol | str,
        session_id: str | None = None,
    ) -> SensorReading | None:
        """Convert one raw event into a canonical reading.

        Args:
            raw_event:  Transport event (or an equivalent mapping).
            protocol:   Transport the event arrived on; selects the signal threshold.
            session_id: Active session id, attached verbatim when given.

        Returns:
            SensorReading, or None when the event is rejected.
        """
        if isinstance(raw_event, Mapping):
            raw_event = RawSensorEvent.from_mapping(raw_event)
        if not isinstance(raw_event, RawSensorEvent):
            logger.debug("Rejected event of unsupported type %s", type(raw_event).__name__)
            return None

        device_id = raw_event.device_id
        if not device_id or not isinstance(device_id, str):
            logger.debug("Rejected event without device id: %r", raw_event.type)
            return None
        if raw_event.type is None:
            logger.debug("Rejected event without type from %s", device_id)
            return None

        value = _safe_float(raw_event.value)
        if value is None:
            logger.debug("Rejected non-numeric %s value %r from %s", raw_event.type, raw_event.value, device_id)
            return None

        metric = canonical_metric(raw_event.type)
        if metric is None:
            logger.debug("Rejected unknown metric type %r from %s", raw_event.type, device_id)
            return None

        metric_range = self._config.metric_range(metric.value)
        if metric_range is None:
            logger.debug("No range configured for %s; rejecting", metric.value)
            return None

        value = metric_range.round(value)
        if not metric_range.contains(value):
            logger.debug(
                "Rejected out-of-range %s=%s from %s (valid %s–%s %s)",
                metric.value,
                value,
                device_id,
                metric_range.minimum,
                metric_range.maximum,
                metric_range.unit,
            )
            return None

        timestamp = parse_timestamp(raw_event.timestamp) or datetime.now(timezone.utc)
        quality, _ = self.score_quality(raw_event, protocol)

        return SensorReading(
            device_id=device_id,
            session_id=session_id,
            timestamp=timestamp,
            metric_type=metric,
            value=value,
            unit=metric_range.unit,
            quality=quality,
            raw_data=sanitize_payload(raw_event.raw_data, self._config.sanitization),
        )

    def score_quality(
        self,
        raw_event: RawSensorEvent,
        protocol: Protocol | str,
    ) -> tuple[int, list[str]]:
        """Compute the 0–100 quality score for one raw event.

        Returns:
            (quality, reasons) where ``reasons`` lists every deduction applied.
        """
        policy = self._config.quality
        score = policy.base
        reasons: list[str] = []

        if parse_timestamp(raw_event.timestamp) is None:
            score -= policy.missing_timestamp_penalty
            reasons.append(f"no timestamp in payload (-{policy.missing_timestamp_penalty:g})")

        if _is_missing(raw_event.raw_data):
            score -= policy.missing_raw_data_penalty
            reasons.append(f"no raw payload (-{policy.missing_raw_data_penalty:g})")

        signal = _safe_float(raw_event.signal_strength)
        if signal is not None:
            protocol_key = protocol.value if isinstance(protocol, Protocol) else str(protocol)
            threshold = policy.threshold(protocol_key)
            signal = clamp(signal)
            if signal < threshold:
                deduction = (threshold - signal) * policy.signal_penalty_per_point
                score -= deduction
                reasons.append(
                    f"signal {signal:g} below {protocol_key} threshold {threshold:g} (-{deduction:g})"
                )

        return int(round(clamp(score))), reasons

    # ------------------------------------------------------------------
    # Last-seen cache
    # ------------------------------------------------------------------

    def record(self, reading: SensorReading) -> bool:
        """Remember an accepted reading.

        Returns:
            False if it duplicates the last reading for the same device and
            metric (same timestamp and value), True otherwise.
        """
        if self._cache.is_duplicate(reading):
            return False
        self._cache.remember(reading)
        return True

    def is_duplicate(self, reading: SensorReading) -> bool:
        return self._cache.is_duplicate(reading)

    def last_reading(self, device_id: str, metric: SensorType | str) -> SensorReading | None:
        return self._cache.last(device_id, metric)

    def forget_device(self, device_id: str) -> None:
        self._cache.forget_device(device_id)
