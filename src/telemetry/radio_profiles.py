"""Device identification for the short-range radio (broadcast) transport.

Radio sensors announce a device-profile code and a numeric device number on
every broadcast page, so identification is a table lookup rather than the
scored inference the BLE path needs.  The adapter decodes pages into
RadioBroadcast and hands them here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.telemetry.assigned_numbers import (
    PROFILE_CADENCE,
    PROFILE_FITNESS_EQUIPMENT,
    PROFILE_HEART_RATE,
    PROFILE_POWER,
    PROFILE_SPEED,
    PROFILE_SPEED_CADENCE,
    RADIO_MANUFACTURER_IDS,
)
from src.telemetry.base import (
    Protocol,
    RawSensorEvent,
    SensorDevice,
    SensorType,
    clamp,
    qualify_device_id,
)

logger = logging.getLogger("cyclelink.telemetry.radio")

SIGNAL_WITH_DEVICE_NUMBER = 88
SIGNAL_DEFAULT = 75


@dataclass
class RadioProfile:
    """What one device-profile code means."""

    code: int
    slug: str
    type: SensorType
    type_name: str
    capability: str


PROFILES: dict[int, RadioProfile] = {
    PROFILE_HEART_RATE: RadioProfile(PROFILE_HEART_RATE, "hr", SensorType.HEART_RATE, "Heart Rate Monitor", "Real-time HR"),
    PROFILE_POWER: RadioProfile(PROFILE_POWER, "power", SensorType.POWER, "Power Meter", "Power Measurement"),
    PROFILE_SPEED_CADENCE: RadioProfile(
        PROFILE_SPEED_CADENCE, "speed-cadence", SensorType.CADENCE, "Speed/Cadence Sensor", "Speed & Cadence"
    ),
    PROFILE_CADENCE: RadioProfile(PROFILE_CADENCE, "cadence", SensorType.CADENCE, "Cadence Sensor", "Pedal RPM"),
    PROFILE_SPEED: RadioProfile(PROFILE_SPEED, "speed", SensorType.SPEED, "Speed Sensor", "Speed Tracking"),
    PROFILE_FITNESS_EQUIPMENT: RadioProfile(
        PROFILE_FITNESS_EQUIPMENT, "trainer", SensorType.TRAINER, "Smart Trainer", "Resistance Control"
    ),
}


@dataclass
class RadioBroadcast:
    """One decoded broadcast page from the radio transport.

    Attributes:
        device_number:     Protocol-assigned device number (0 while pairing wildcard).
        device_profile:    Device-profile code (see PROFILES).
        manufacturer_id:   Manufacturer ID from the common manufacturer page.
        manufacturer_name: Name string when the stack already resolved it.
        product_name:      Product name string when known.
        serial_number:     Serial from the product page.
        hardware_version:  Hardware revision from the manufacturer page.
        software_version:  Software revision from the product page.
        rssi:              Raw RSSI in dBm when the receiver reports it.
        values:            Decoded measurements, e.g. {'power': 240, 'cadence': 90}.
    """

    device_number: int
    device_profile: int
    manufacturer_id: int | None = None
    manufacturer_name: str | None = None
    product_name: str | None = None
    serial_number: int | None = None
    hardware_version: int | None = None
    software_version: str | None = None
    rssi: float | None = None
    values: dict[str, Any] = field(default_factory=dict)


def profile_for(code: int) -> RadioProfile | None:
    return PROFILES.get(code)


def radio_device_id(broadcast: RadioBroadcast) -> str:
    """Qualified id such as ``radio:power-12345``."""
    profile = PROFILES.get(broadcast.device_profile)
    slug = profile.slug if profile else f"profile{broadcast.device_profile}"
    return qualify_device_id(Protocol.SHORT_RANGE_RADIO, f"{slug}-{broadcast.device_number}")


def identify_manufacturer(
    manufacturer_id: int | None,
    manufacturer_name: str | None = None,
) -> str | None:
    """Resolve a manufacturer label.

    A meaningful name string from the stack wins over the ID table.  An ID
    that is not in the table yields ``"Unknown (ID <n>)"``; nothing at all
    yields None.
    """
    if manufacturer_name and manufacturer_name != "Unknown" and len(manufacturer_name) > 2:
        return manufacturer_name
    if manufacturer_id:
        return RADIO_MANUFACTURER_IDS.get(manufacturer_id, f"Unknown (ID {manufacturer_id})")
    return None


def _known(manufacturer: str | None) -> bool:
    return bool(manufacturer) and not manufacturer.startswith("Unknown")


def generate_radio_name(
    profile: RadioProfile,
    device_number: int,
    manufacturer: str | None,
    product_name: str | None = None,
) -> str:
    if product_name and len(product_name) > 3 and "unknown" not in product_name.lower():
        return product_name
    if _known(manufacturer):
        return f"{manufacturer} {profile.type_name}"
    return f"Radio {profile.type_name} {device_number}"


def generate_radio_display_name(
    profile: RadioProfile,
    device_number: int,
    manufacturer: str | None,
    product_name: str | None = None,
) -> str:
    base = generate_radio_name(profile, device_number, manufacturer, product_name)
    parts = [base]
    if _known(manufacturer) and manufacturer not in base:
        parts.append(manufacturer)
    parts.append(profile.capability)
    return " • ".join(parts)


def radio_signal_strength(broadcast: RadioBroadcast) -> int:
    """Estimate 0–100 signal quality for a broadcast.

    Uses RSSI when the receiver reports it: ``(rssi + 80) * 2``, clamped.
    Otherwise a decoded device number implies a healthy link (88), and
    anything else gets a moderate default (75).
    """
    if broadcast.rssi is not None:
        return int(clamp((broadcast.rssi + 80) * 2))
    if broadcast.device_number and broadcast.device_number > 0:
        return SIGNAL_WITH_DEVICE_NUMBER
    return SIGNAL_DEFAULT


def identify_broadcast(broadcast: RadioBroadcast) -> SensorDevice | None:
    """Build a SensorDevice from a broadcast page.

    Returns:
        The device, or None for a device-profile code outside the cycling
        profiles.
    """
    profile = PROFILES.get(broadcast.device_profile)
    if profile is None:
        logger.debug(
            "Ignoring broadcast from device %s with unsupported profile 0x%02X",
            broadcast.device_number,
            broadcast.device_profile,
        )
        return None

    manufacturer = identify_manufacturer(broadcast.manufacturer_id, broadcast.manufacturer_name)
    metadata: dict[str, Any] = {
        "device_profile": profile.code,
        "device_number": broadcast.device_number,
    }
    for key in ("manufacturer_id", "serial_number", "hardware_version", "software_version"):
        value = getattr(broadcast, key)
        if value is not None:
            metadata[key] = value

    return SensorDevice(
        device_id=radio_device_id(broadcast),
        name=generate_radio_name(profile, broadcast.device_number, manufacturer, broadcast.product_name),
        display_name=generate_radio_display_name(
            profile, broadcast.device_number, manufacturer, broadcast.product_name
        ),
        type=profile.type,
        protocol=Protocol.SHORT_RANGE_RADIO,
        signal_strength=radio_signal_strength(broadcast),
        manufacturer=manufacturer if _known(manufacturer) else None,
        model=broadcast.product_name or profile.type_name,
        firmware_version=broadcast.software_version,
        category=profile.type_name,
        capabilities=[profile.capability.lower().replace(" & ", "-").replace(" ", "-")],
        # Profile codes are assigned by the protocol, not inferred
        confidence=100 if _known(manufacturer) else 90,
        metadata=metadata,
    )


# Measurement keys each profile reports, in emission order
_PROFILE_METRICS: dict[int, list[str]] = {
    PROFILE_HEART_RATE: ["heart_rate"],
    PROFILE_POWER: ["power", "cadence"],
    PROFILE_SPEED_CADENCE: ["speed", "cadence"],
    PROFILE_CADENCE: ["cadence"],
    PROFILE_SPEED: ["speed"],
    PROFILE_FITNESS_EQUIPMENT: ["power", "speed", "cadence"],
}


def broadcast_events(
    broadcast: RadioBroadcast,
    received_at: datetime | None = None,
) -> list[RawSensorEvent]:
    """Split one broadcast page into raw events, one per reported metric.

    A power page carrying cadence yields two events; a fitness-equipment page
    yields up to three.  Metrics the page does not carry are skipped.
    """
    timestamp = received_at or datetime.now(timezone.utc)
    keys = _PROFILE_METRICS.get(broadcast.device_profile, [])
    device_id = radio_device_id(broadcast)
    signal = radio_signal_strength(broadcast)
    raw = {
        "device_number": broadcast.device_number,
        "device_profile": broadcast.device_profile,
        **broadcast.values,
    }
    return [
        RawSensorEvent(
            device_id=device_id,
            type=key,
            value=broadcast.values[key],
            timestamp=timestamp,
            raw_data=dict(raw),
            signal_strength=signal,
        )
        for key in keys
        if broadcast.values.get(key) is not None
    ]
