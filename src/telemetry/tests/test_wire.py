"""Tests for wire serialization and process wiring of the orchestrator."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from src.config import Settings
from src.main import create_orchestrator, lifespan, log_wire_event
from src.models.telemetry import SensorReadingRead, to_envelope
from src.telemetry.base import (
    ConnectionStatus,
    DeviceStatusEvent,
    Protocol,
    SensorDevice,
    SensorReading,
    SensorType,
    StaticSessionProvider,
)
from src.telemetry.events import DEVICE_STATUS, SCAN_RESULT, SENSOR_DATA

from src.telemetry.tests.conftest import TEST_TIME, FakeBleTransport, FakeRadioTransport


def _reading(**kwargs) -> SensorReading:
    values = dict(
        device_id="ble:aa",
        session_id="s-1",
        timestamp=TEST_TIME,
        metric_type=SensorType.POWER,
        value=250,
        unit="watts",
        quality=95,
        raw_data={"payload": "0000fa00"},
    )
    values.update(kwargs)
    return SensorReading(**values)


class TestEnvelopes:
    def test_sensor_data(self) -> None:
        envelope = to_envelope(SENSOR_DATA, _reading())
        body = json.loads(envelope.model_dump_json())
        assert body["topic"] == "sensor-data"
        assert body["payload"]["metric_type"] == "power"
        assert body["payload"]["value"] == 250
        assert body["payload"]["timestamp"].startswith("2026-10-17T07:30:00")

    def test_scan_result_omits_metadata(self) -> None:
        device = SensorDevice(
            device_id="radio:hr-1",
            name="Garmin Heart Rate Monitor",
            type=SensorType.HEART_RATE,
            protocol=Protocol.SHORT_RANGE_RADIO,
            signal_strength=88,
            metadata={"device_number": 1},
        )
        body = json.loads(to_envelope(SCAN_RESULT, device).model_dump_json())
        assert body["payload"]["protocol"] == "short_range_radio"
        assert body["payload"]["display_name"] == "Garmin Heart Rate Monitor"
        assert "metadata" not in body["payload"]

    def test_device_status(self) -> None:
        event = DeviceStatusEvent(device_id="ble:aa", status=ConnectionStatus.ERROR, error="unknown device")
        envelope = to_envelope(DEVICE_STATUS, event)
        assert envelope.payload.status is ConnectionStatus.ERROR
        assert envelope.payload.protocol is None
        assert envelope.payload.device is None

    def test_device_status_carries_device_snapshot(self) -> None:
        device = SensorDevice(
            device_id="ble:aa",
            name="KICKR CORE",
            type=SensorType.TRAINER,
            protocol=Protocol.BLE,
            is_connected=True,
            battery_level=77,
            metadata={"company_id": 409},
        )
        event = DeviceStatusEvent(
            device_id="ble:aa", status=ConnectionStatus.CONNECTED, protocol=Protocol.BLE, device=device
        )
        body = json.loads(to_envelope(DEVICE_STATUS, event).model_dump_json())
        assert body["payload"]["device"]["is_connected"] is True
        assert body["payload"]["device"]["battery_level"] == 77
        assert "metadata" not in body["payload"]["device"]

    def test_unknown_topic(self) -> None:
        with pytest.raises(ValueError, match="Unknown telemetry topic"):
            to_envelope("battery", _reading())

    def test_out_of_range_quality_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SensorReadingRead.model_validate(_reading(quality=150))


class TestProcessWiring:
    def test_disabled_transport_is_left_out(self) -> None:
        orchestrator = create_orchestrator(
            [FakeRadioTransport(), FakeBleTransport()],
            settings=Settings(ble_enabled=False),
        )
        assert set(orchestrator.adapters) == {Protocol.SHORT_RANGE_RADIO}

    def test_debug_attaches_wire_logger(self) -> None:
        orchestrator = create_orchestrator([FakeBleTransport()], settings=Settings(debug=True))
        assert orchestrator.events.subscriber_count(SENSOR_DATA) == 1
        log_wire_event(SENSOR_DATA, _reading())

    @pytest.mark.asyncio
    async def test_lifespan_starts_and_shuts_down(self) -> None:
        ble = FakeBleTransport()
        orchestrator = create_orchestrator(
            [ble], settings=Settings(), session_provider=StaticSessionProvider("s-1")
        )
        async with lifespan(orchestrator) as running:
            await running.start_scanning()
            assert running.is_scanning
        assert not orchestrator.is_scanning
        ble.stop_mock.assert_called()
