"""Cyclelink sensor telemetry core.

This package discovers cycling sensors on two wireless transports, works out
what each device is, and turns raw transport samples into validated readings.

Core modules:
    base             — TransportAdapter ABC, SessionProvider and canonical data models
    identifier       — Weighted-evidence BLE device identification and naming
    radio_profiles   — Table-driven identification for the short-range radio transport
    gatt             — Decoders for the cycling GATT measurement characteristics
    normalizer       — Raw event → SensorReading conversion and quality scoring
    orchestrator     — Scan lifecycle, device registry and cross-transport fan-in
    config_loader    — Load/validate/reload telemetry_config.yaml
"""

from src.telemetry.base import (
    Advertisement,
    ConnectionStatus,
    DiscoveredCharacteristic,
    Protocol,
    RawSensorEvent,
    SensorDevice,
    SensorReading,
    SensorType,
    SessionProvider,
    StaticSessionProvider,
    TransportAdapter,
)
from src.telemetry.config_loader import TelemetryConfig, get_telemetry_config
from src.telemetry.identifier import DeviceIdentification, identify_device
from src.telemetry.normalizer import ReadingNormalizer
from src.telemetry.orchestrator import SensorOrchestrator

__all__ = [
    "Advertisement",
    "ConnectionStatus",
    "DiscoveredCharacteristic",
    "Protocol",
    "RawSensorEvent",
    "SensorDevice",
    "SensorReading",
    "SensorType",
    "SessionProvider",
    "StaticSessionProvider",
    "TransportAdapter",
    "TelemetryConfig",
    "get_telemetry_config",
    "DeviceIdentification",
    "identify_device",
    "ReadingNormalizer",
    "SensorOrchestrator",
]
