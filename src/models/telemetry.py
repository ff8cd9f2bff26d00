"""Pydantic wire schemas for the orchestrator's outward events."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Union

from pydantic import Field

from src.models.base import CyclelinkBase, utc_now
from src.telemetry.base import ConnectionStatus, Protocol, SensorType
from src.telemetry.events import DEVICE_STATUS, SCAN_RESULT, SENSOR_DATA


# ---------- Devices ----------

class SensorDeviceRead(CyclelinkBase):
    device_id: str
    name: str
    display_name: str
    type: SensorType
    protocol: Protocol
    is_connected: bool = False
    signal_strength: int = Field(default=0, ge=0, le=100)
    battery_level: int | None = Field(default=None, ge=0, le=100)
    manufacturer: str | None = None
    model: str | None = None
    firmware_version: str | None = None
    category: str | None = None
    capabilities: list[str] = Field(default_factory=list)
    confidence: int = Field(default=0, ge=0, le=100)
    last_seen: datetime


# ---------- Readings ----------

class SensorReadingRead(CyclelinkBase):
    device_id: str
    session_id: str | None = None
    timestamp: datetime
    metric_type: SensorType
    value: float
    unit: str
    quality: int = Field(ge=0, le=100)
    raw_data: dict[str, Any] | None = None


# ---------- Connection status ----------

class DeviceStatusRead(CyclelinkBase):
    device_id: str
    status: ConnectionStatus
    protocol: Protocol | None = None
    error: str | None = None
    device: SensorDeviceRead | None = None
    timestamp: datetime


# ---------- Envelope ----------

class TelemetryEnvelope(CyclelinkBase):
    topic: str
    emitted_at: datetime = Field(default_factory=utc_now)
    payload: Union[SensorDeviceRead, SensorReadingRead, DeviceStatusRead]


TOPIC_SCHEMAS: dict[str, type[CyclelinkBase]] = {
    SCAN_RESULT: SensorDeviceRead,
    DEVICE_STATUS: DeviceStatusRead,
    SENSOR_DATA: SensorReadingRead,
}


def to_envelope(topic: str, payload: Any) -> TelemetryEnvelope:
    """Wrap an outward event payload in its wire schema.

    Raises:
        ValueError: If ``topic`` is not one of the orchestrator's topics.
    """
    schema = TOPIC_SCHEMAS.get(topic)
    if schema is None:
        raise ValueError(f"Unknown telemetry topic '{topic}'")
    return TelemetryEnvelope(topic=topic, payload=schema.model_validate(payload))
