"""Decoders for the GATT measurement characteristics cycling sensors notify.

Each decoder takes the raw notification bytes and returns a dict of decoded
fields.  ``GattDecoder`` turns a notification into RawSensorEvent objects for
the normalizer, deriving speed and cadence from cumulative revolution
counters where the characteristic only carries counters.

Layouts (all little-endian):
    Heart Rate Measurement 0x2A37  flags u8; HR u8 or u16 (flags bit 0)
    Cycling Power Measurement 0x2A63  flags u16; power s16; optional fields
    CSC Measurement 0x2A5B  flags u8; wheel u32+u16 (bit 0); crank u16+u16 (bit 1)
    Indoor Bike Data 0x2AD2  flags u16; fields present per flag bit
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from src.telemetry.assigned_numbers import (
    CHAR_CSC_MEASUREMENT,
    CHAR_CYCLING_POWER_MEASUREMENT,
    CHAR_HEART_RATE_MEASUREMENT,
    CHAR_INDOOR_BIKE_DATA,
    short_uuid,
)
from src.telemetry.base import RawSensorEvent

logger = logging.getLogger("cyclelink.telemetry.gatt")

DEFAULT_WHEEL_CIRCUMFERENCE_M = 2.1  # 700x25c
EVENT_TIME_UNITS_PER_SECOND = 1024.0

_UINT16_WRAP = 1 << 16
_UINT32_WRAP = 1 << 32


# ---------------------------------------------------------------------------
# Characteristic decoders
# ---------------------------------------------------------------------------


def decode_heart_rate(data: bytes) -> dict[str, Any]:
    """Decode a Heart Rate Measurement notification.

    Raises:
        struct.error: If the payload is shorter than its flags require.
    """
    flags = data[0]
    if flags & 0x01:
        bpm = struct.unpack_from("<H", data, 1)[0]
        offset = 3
    else:
        bpm = struct.unpack_from("<B", data, 1)[0]
        offset = 2
    result: dict[str, Any] = {"heart_rate": bpm}
    if flags & 0x06 == 0x06:
        result["sensor_contact"] = True
    elif flags & 0x04:
        result["sensor_contact"] = False
    if flags & 0x08:
        result["energy_expended_kj"] = struct.unpack_from("<H", data, offset)[0]
        offset += 2
    if flags & 0x10:
        rr = []
        while offset + 2 <= len(data):
            rr.append(struct.unpack_from("<H", data, offset)[0] / 1024.0)
            offset += 2
        result["rr_intervals_s"] = rr
    return result


def decode_cycling_power(data: bytes) -> dict[str, Any]:
    """Decode a Cycling Power Measurement notification.

    Only instantaneous power and the crank revolution block are kept; the
    optional fields before the crank block are skipped by their sizes.
    """
    flags, power = struct.unpack_from("<Hh", data, 0)
    result: dict[str, Any] = {"power": power}
    offset = 4
    if flags & 0x0001:  # pedal power balance
        result["pedal_power_balance"] = data[offset] / 2.0
        offset += 1
    if flags & 0x0004:  # accumulated torque
        offset += 2
    if flags & 0x0010:  # wheel revolution data
        offset += 6
    if flags & 0x0020:
        revolutions, event_time = struct.unpack_from("<HH", data, offset)
        result["crank_revolutions"] = revolutions
        result["crank_event_time"] = event_time
    return result


def decode_csc(data: bytes) -> dict[str, Any]:
    """Decode a CSC Measurement notification into raw counters."""
    flags = data[0]
    offset = 1
    result: dict[str, Any] = {}
    if flags & 0x01:
        revolutions, event_time = struct.unpack_from("<IH", data, offset)
        result["wheel_revolutions"] = revolutions
        result["wheel_event_time"] = event_time
        offset += 6
    if flags & 0x02:
        revolutions, event_time = struct.unpack_from("<HH", data, offset)
        result["crank_revolutions"] = revolutions
        result["crank_event_time"] = event_time
    return result


# Indoor Bike Data flag bit → (field name, struct format, scale)
_INDOOR_BIKE_FIELDS: list[tuple[int, str | None, str, float]] = [
    (0x0002, None, "<H", 0.01),   # average speed
    (0x0004, "cadence", "<H", 0.5),
    (0x0008, None, "<H", 0.5),    # average cadence
    (0x0010, None, "<3s", 1.0),   # total distance (u24)
    (0x0020, "resistance", "<h", 1.0),
    (0x0040, "power", "<h", 1.0),
]


def decode_indoor_bike_data(data: bytes) -> dict[str, Any]:
    """Decode a fitness-machine Indoor Bike Data notification.

    Instantaneous speed is present when flag bit 0 ("more data") is clear.
    """
    flags = struct.unpack_from("<H", data, 0)[0]
    offset = 2
    result: dict[str, Any] = {}
    if not flags & 0x0001:
        result["speed"] = round(struct.unpack_from("<H", data, offset)[0] * 0.01, 2)
        offset += 2
    for bit, name, fmt, scale in _INDOOR_BIKE_FIELDS:
        if not flags & bit:
            continue
        value = struct.unpack_from(fmt, data, offset)[0]
        offset += struct.calcsize(fmt)
        if name is not None:
            result[name] = value * scale if scale != 1.0 else value
    return result


DECODERS: dict[str, Callable[[bytes], dict[str, Any]]] = {
    CHAR_HEART_RATE_MEASUREMENT: decode_heart_rate,
    CHAR_CYCLING_POWER_MEASUREMENT: decode_cycling_power,
    CHAR_CSC_MEASUREMENT: decode_csc,
    CHAR_INDOOR_BIKE_DATA: decode_indoor_bike_data,
}


# ---------------------------------------------------------------------------
# Revolution counters → speed / cadence
# ---------------------------------------------------------------------------


@dataclass
class _CounterSample:
    revolutions: int
    event_time: int


class RevolutionTracker:
    """Derive speed and cadence from successive cumulative counters.

    Keeps the previous sample per (device, counter kind).  Counters and event
    times wrap, so deltas are taken modulo their field width.  The first
    sample for a device, and a repeated event time, yield None.

    Usage::

        tracker = RevolutionTracker(wheel_circumference_m=2.1)
        tracker.speed_kmh("ble:aa", revolutions=1200, event_time=2048)  # None
        tracker.speed_kmh("ble:aa", revolutions=1204, event_time=3072)  # 30.24
    """

    def __init__(self, wheel_circumference_m: float = DEFAULT_WHEEL_CIRCUMFERENCE_M) -> None:
        self.wheel_circumference_m = wheel_circumference_m
        self._previous: dict[tuple[str, str], _CounterSample] = {}

    def _delta(self, key: tuple[str, str], revolutions: int, event_time: int, wrap: int) -> tuple[int, float] | None:
        previous = self._previous.get(key)
        self._previous[key] = _CounterSample(revolutions, event_time)
        if previous is None:
            return None
        delta_time = (event_time - previous.event_time) % _UINT16_WRAP
        if delta_time == 0:
            return None
        delta_revs = (revolutions - previous.revolutions) % wrap
        return delta_revs, delta_time / EVENT_TIME_UNITS_PER_SECOND

    def speed_kmh(self, device_id: str, revolutions: int, event_time: int) -> float | None:
        delta = self._delta((device_id, "wheel"), revolutions, event_time, _UINT32_WRAP)
        if delta is None:
            return None
        revs, seconds = delta
        return round(revs * self.wheel_circumference_m / seconds * 3.6, 2)

    def cadence_rpm(self, device_id: str, revolutions: int, event_time: int) -> float | None:
        delta = self._delta((device_id, "crank"), revolutions, event_time, _UINT16_WRAP)
        if delta is None:
            return None
        revs, seconds = delta
        return round(revs / seconds * 60.0, 1)

    def forget(self, device_id: str) -> None:
        """Drop stored counters for a device (e.g. after it disconnects)."""
        for key in [k for k in self._previous if k[0] == device_id]:
            del self._previous[key]

    def clear(self) -> None:
        self._previous.clear()


# ---------------------------------------------------------------------------
# Notification → raw events
# ---------------------------------------------------------------------------


class GattDecoder:
    """Turn GATT notifications into RawSensorEvent objects."""

    def __init__(self, wheel_circumference_m: float = DEFAULT_WHEEL_CIRCUMFERENCE_M) -> None:
        self.tracker = RevolutionTracker(wheel_circumference_m)

    def decode(
        self,
        device_id: str,
        characteristic_uuid: str,
        data: bytes,
        signal_strength: float | None = None,
        timestamp: datetime | None = None,
    ) -> list[RawSensorEvent]:
        """Decode one notification.

        Args:
            device_id:           Qualified device id the notification came from.
            characteristic_uuid: UUID of the notifying characteristic.
            data:                Notification payload.
            signal_strength:     Current 0–100 signal for quality scoring.
            timestamp:           Receive time; defaults to now (UTC).

        Returns:
            Zero or more raw events.  Unknown characteristics and truncated
            payloads yield an empty list.
        """
        uuid = short_uuid(characteristic_uuid)
        decoder = DECODERS.get(uuid)
        if decoder is None or not data:
            return []
        try:
            fields = decoder(bytes(data))
        except (struct.error, IndexError):
            logger.debug("Truncated %s payload from %s: %s", uuid, device_id, bytes(data).hex())
            return []

        values: dict[str, float] = {}
        for key in ("heart_rate", "power", "speed", "cadence", "resistance"):
            if key in fields:
                values[key] = fields[key]
        if "wheel_revolutions" in fields:
            speed = self.tracker.speed_kmh(device_id, fields["wheel_revolutions"], fields["wheel_event_time"])
            if speed is not None:
                values["speed"] = speed
        if "crank_revolutions" in fields and "cadence" not in values:
            cadence = self.tracker.cadence_rpm(device_id, fields["crank_revolutions"], fields["crank_event_time"])
            if cadence is not None:
                values["cadence"] = cadence

        received = timestamp or datetime.now(timezone.utc)
        raw = {"characteristic": uuid, "payload": bytes(data).hex(), **fields}
        return [
            RawSensorEvent(
                device_id=device_id,
                type="trainer" if key == "resistance" else key,
                value=value,
                timestamp=received,
                raw_data=dict(raw),
                signal_strength=signal_strength,
            )
            for key, value in values.items()
        ]
