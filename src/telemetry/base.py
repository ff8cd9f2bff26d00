"""Base classes and canonical data models for the Cyclelink telemetry core.

Every transport adapter must subclass TransportAdapter and report devices and
samples in terms of the canonical SensorDevice / RawSensorEvent models.  The
normalizer turns RawSensorEvent into SensorReading; these types are the single
source of truth consumed by the identifier, normalizer and orchestrator.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from src.telemetry.orchestrator import SensorOrchestrator

logger = logging.getLogger("cyclelink.telemetry")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SensorType(str, Enum):
    """Device classification and reading metric type."""

    HEART_RATE = "heart_rate"
    POWER = "power"
    CADENCE = "cadence"
    SPEED = "speed"
    TRAINER = "trainer"
    UNKNOWN = "unknown"


class Protocol(str, Enum):
    """Transport a device was discovered on.

    Selected once per device at creation time and stored on the record, so
    routing a connect/disconnect never has to re-derive it.
    """

    SHORT_RANGE_RADIO = "short_range_radio"
    BLE = "ble"

    @property
    def id_prefix(self) -> str:
        return _ID_PREFIXES[self]


_ID_PREFIXES: dict[Protocol, str] = {
    Protocol.SHORT_RANGE_RADIO: "radio",
    Protocol.BLE: "ble",
}


class ConnectionStatus(str, Enum):
    """Status values carried by ``device-status`` events."""

    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class DeviceState(str, Enum):
    """Per-device lifecycle state tracked by the registry."""

    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Canonical models
# ---------------------------------------------------------------------------


@dataclass
class SensorDevice:
    """One physical sensor peripheral.

    Created on first observation and updated in place afterwards; the record
    is never replaced for the same ``device_id``.

    Attributes:
        device_id:        Transport-qualified identifier, e.g. ``ble:c4:3a:11``.
        name:             Short human label.
        display_name:     Derived label embedding manufacturer/model/battery.
        type:             Classified sensor type (``unknown`` when unsure).
        protocol:         Transport the device is reachable on.
        is_connected:     Mutated only by the orchestrator.
        signal_strength:  Normalized signal quality, 0–100.
        battery_level:    Battery percentage when reported.
        manufacturer:     Vendor name when identified.
        model:            Model token extracted from name or device info.
        firmware_version: Firmware revision string.
        category:         Human category (e.g. 'Power Meter').
        capabilities:     Kebab-case capability tags.
        confidence:       Identification confidence, 0–100.
        metadata:         Protocol-specific bag, only read by identification.
    """

    device_id: str
    name: str
    type: SensorType
    protocol: Protocol
    display_name: str = ""
    is_connected: bool = False
    signal_strength: int = 0
    battery_level: int | None = None
    manufacturer: str | None = None
    model: str | None = None
    firmware_version: str | None = None
    category: str | None = None
    capabilities: list[str] = field(default_factory=list)
    confidence: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    last_seen: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.name


@dataclass
class SensorReading:
    """One validated, canonical telemetry sample.

    Only ever constructed by the normalizer after validation succeeds.

    Attributes:
        device_id:   Device the sample came from.
        session_id:  Opaque session identifier; None until the orchestrator stamps it.
        timestamp:   UTC wall-clock time of the sample.
        metric_type: Metric (never ``unknown``).
        value:       Numeric value in ``unit``.
        unit:        'bpm', 'watts', 'rpm', 'km/h' or '%'.
        quality:     Trust score, 0–100.
        raw_data:    Sanitized copy of the transport payload.
    """

    device_id: str
    session_id: str | None
    timestamp: datetime
    metric_type: SensorType
    value: float
    unit: str
    quality: int
    raw_data: dict | None = None


@dataclass
class RawSensorEvent:
    """Transport-supplied sample before validation.

    Attributes:
        device_id:       Transport-qualified device identifier.
        type:            Raw type token ('hr', 'power', 'rpm', ...).
        value:           Unvalidated value (number or numeric string).
        timestamp:       Sample time if the transport supplied one.
        raw_data:        Original payload, unsanitized.
        signal_strength: Normalized 0–100 signal at sample time.
    """

    device_id: str | None
    type: str | None
    value: Any
    timestamp: Any = None
    raw_data: Any = None
    signal_strength: float | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> RawSensorEvent:
        """Build an event from a dict, accepting camelCase aliases.

        Args:
            data: Mapping such as ``{"deviceId": ..., "type": ..., "value": ...}``.

        Returns:
            A RawSensorEvent; missing keys become None.
        """

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            return None

        return cls(
            device_id=pick("device_id", "deviceId"),
            type=pick("type", "metric_type", "metricType"),
            value=pick("value"),
            timestamp=pick("timestamp"),
            raw_data=pick("raw_data", "rawData"),
            signal_strength=pick("signal_strength", "signalStrength"),
        )


@dataclass
class Advertisement:
    """Pre-connection BLE advertisement snapshot."""

    device_id: str
    local_name: str | None = None
    manufacturer_data: bytes | None = None
    service_uuids: list[str] = field(default_factory=list)
    service_data: dict[str, bytes] = field(default_factory=dict)
    tx_power_level: int | None = None
    signal_strength: int | None = None


@dataclass
class DiscoveredCharacteristic:
    """A GATT characteristic found after connecting, with an optional read value."""

    uuid: str
    service_uuid: str = ""
    properties: list[str] = field(default_factory=list)
    value: bytes | None = None


@dataclass
class DeviceStatusEvent:
    """Payload of the ``device-status`` outward event.

    ``device`` is a snapshot of the registry record, absent for unknown ids.
    """

    device_id: str
    status: ConnectionStatus
    protocol: Protocol | None = None
    error: str | None = None
    device: SensorDevice | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------


class TransportAdapter(ABC):
    """Abstract base class for the two wireless transport adapters.

    An adapter owns the link layer for one protocol and reports into the
    orchestrator through its ``on_*`` callbacks.  It receives native device
    identifiers; the orchestrator strips the transport qualifier before
    routing.

    Subclasses must implement:
        - start_scanning()
        - stop_scanning()
        - connect_device()
        - disconnect_device()

    Optional overrides:
        - shutdown()
    """

    #: Protocol this adapter serves.
    PROTOCOL: Protocol = Protocol.BLE

    #: Human-readable name for logging.
    DISPLAY_NAME: str = "Transport"

    def __init__(self) -> None:
        self._orchestrator: SensorOrchestrator | None = None

    def bind(self, orchestrator: SensorOrchestrator) -> None:
        """Attach the orchestrator whose callbacks this adapter reports into."""
        self._orchestrator = orchestrator

    def report_connected(self, device: SensorDevice | str) -> None:
        """Report a link this adapter established, by device or native id."""
        if self._orchestrator is None:
            logger.warning("%s reported a connection before being bound", self.DISPLAY_NAME)
            return
        self._orchestrator.on_device_connected(device, self.PROTOCOL)

    def report_disconnected(self, native_id: str, reason: str | None = None) -> None:
        """Report a link this adapter lost."""
        if self._orchestrator is None:
            logger.warning("%s reported a disconnect before being bound", self.DISPLAY_NAME)
            return
        self._orchestrator.on_device_disconnected(native_id, self.PROTOCOL, reason)

    @abstractmethod
    async def start_scanning(self) -> None:
        """Begin discovery.  May raise if the hardware is unavailable."""

    @abstractmethod
    def stop_scanning(self) -> None:
        """Halt discovery.  Must not cancel in-flight connections."""

    @abstractmethod
    async def connect_device(self, native_id: str) -> bool:
        """Connect to a device by its native identifier.

        Returns:
            True when the link is established.
        """

    @abstractmethod
    async def disconnect_device(self, native_id: str) -> bool:
        """Drop the link to a device.

        Returns:
            True when the device is no longer connected.
        """

    async def shutdown(self) -> None:
        """Release transport resources.  Default stops scanning."""
        self.stop_scanning()


class SessionProvider(ABC):
    """Supplies the currently active recording session, if any."""

    @abstractmethod
    def current_session_id(self) -> str | None:
        """Return the active session id, or None when nothing is recording."""


class StaticSessionProvider(SessionProvider):
    """Session provider that returns a fixed, settable id."""

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id

    def current_session_id(self) -> str | None:
        return self.session_id


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def qualify_device_id(protocol: Protocol, native_id: str) -> str:
    """Encode the transport into a device id (idempotent).

    Args:
        protocol:  Transport the id belongs to.
        native_id: Address or protocol-assigned id.

    Returns:
        ``"<prefix>:<native_id>"``.
    """
    prefix = f"{protocol.id_prefix}:"
    if native_id.startswith(prefix):
        return native_id
    return prefix + native_id


def split_device_id(device_id: str) -> tuple[Protocol | None, str]:
    """Inverse of qualify_device_id.

    Returns:
        (protocol, native_id); protocol is None for unqualified ids.
    """
    prefix, sep, rest = device_id.partition(":")
    if sep:
        for protocol, known in _ID_PREFIXES.items():
            if prefix == known:
                return protocol, rest
    return None, device_id


def normalize_rssi(rssi: float | None, floor: float = -90.0, ceiling: float = -30.0) -> int:
    """Map a dBm RSSI value linearly onto 0–100.

    Values at or below ``floor`` give 0, at or above ``ceiling`` give 100.
    Unusable input yields 0.
    """
    value = _safe_float(rssi)
    if value is None:
        return 0
    if value <= floor:
        return 0
    if value >= ceiling:
        return 100
    return int(round((value - floor) / (ceiling - floor) * 100))


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _safe_float(value: object) -> float | None:
    """Coerce to a finite float, returning None on failure.

    Booleans are rejected even though they are ints in Python.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a transport timestamp into an aware UTC datetime.

    Accepts datetimes (naive ones are assumed UTC), ISO-8601 strings and
    epoch seconds.  Returns None if the value is missing or unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.warning("Could not convert epoch timestamp: %r", value)
            return None
    if isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Could not parse datetime string: %r", value)
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    return None
