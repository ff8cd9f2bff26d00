"""Tests for the sensor orchestrator: scanning, connections and data fan-in."""

from __future__ import annotations

import asyncio
import dataclasses
import logging

import pytest

from src.telemetry.base import (
    ConnectionStatus,
    DiscoveredCharacteristic,
    Protocol,
    RawSensorEvent,
    SensorDevice,
    SensorType,
    StaticSessionProvider,
)
from src.telemetry.config_loader import ScanPolicy, SessionPolicy, TelemetryConfig
from src.telemetry.events import DEVICE_STATUS, SCAN_RESULT, SENSOR_DATA
from src.telemetry.orchestrator import SensorOrchestrator
from src.telemetry.radio_profiles import RadioBroadcast

from src.telemetry.tests.conftest import (
    TEST_SESSION_ID,
    TEST_TIME,
    EventRecorder,
    FakeBleTransport,
    FakeRadioTransport,
)

KICKR_ID = "ble:c4:3a:11:22:33:44"


async def _discover(orchestrator: SensorOrchestrator, advertisement) -> None:
    orchestrator.on_advertisement(advertisement)
    await orchestrator.drain()


class TestConstruction:
    def test_duplicate_protocol_rejected(self) -> None:
        with pytest.raises(ValueError, match="Duplicate transport adapter"):
            SensorOrchestrator([FakeBleTransport(), FakeBleTransport()])

    def test_adapters_are_bound(
        self,
        radio_transport: FakeRadioTransport,
        ble_transport: FakeBleTransport,
        telemetry_config: TelemetryConfig,
    ) -> None:
        orchestrator = SensorOrchestrator([radio_transport, ble_transport], config=telemetry_config)
        assert radio_transport._orchestrator is orchestrator
        assert set(orchestrator.adapters) == {Protocol.SHORT_RANGE_RADIO, Protocol.BLE}


class TestScanning:
    @pytest.mark.asyncio
    async def test_start_scanning_starts_both_transports(
        self,
        orchestrator: SensorOrchestrator,
        radio_transport: FakeRadioTransport,
        ble_transport: FakeBleTransport,
    ) -> None:
        await orchestrator.start_scanning()
        assert orchestrator.is_scanning
        radio_transport.start_mock.assert_awaited_once()
        ble_transport.start_mock.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_scanning_twice_is_idempotent(
        self,
        orchestrator: SensorOrchestrator,
        ble_transport: FakeBleTransport,
        advertisements: dict,
    ) -> None:
        await orchestrator.start_scanning()
        await _discover(orchestrator, advertisements["kickr_core"])
        await orchestrator.start_scanning()
        await orchestrator.drain()
        assert ble_transport.start_mock.await_count == 1
        assert [d.device_id for d in orchestrator.get_discovered_devices()] == [KICKR_ID]

    @pytest.mark.asyncio
    async def test_one_transport_failing_does_not_block_the_other(
        self,
        orchestrator: SensorOrchestrator,
        radio_transport: FakeRadioTransport,
        ble_transport: FakeBleTransport,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        radio_transport.start_mock.side_effect = RuntimeError("no USB stick")
        with caplog.at_level(logging.WARNING, logger="cyclelink.telemetry.orchestrator"):
            await orchestrator.start_scanning()
        assert orchestrator.is_scanning
        ble_transport.start_mock.assert_awaited_once()
        assert "no USB stick" in caplog.text

    @pytest.mark.asyncio
    async def test_all_transports_failing_leaves_scan_stopped(
        self,
        orchestrator: SensorOrchestrator,
        radio_transport: FakeRadioTransport,
        ble_transport: FakeBleTransport,
    ) -> None:
        radio_transport.start_mock.side_effect = RuntimeError("no USB stick")
        ble_transport.start_mock.side_effect = OSError("adapter powered off")
        await orchestrator.start_scanning()
        assert not orchestrator.is_scanning

    @pytest.mark.asyncio
    async def test_stop_scanning_keeps_discovered(
        self,
        orchestrator: SensorOrchestrator,
        radio_transport: FakeRadioTransport,
        ble_transport: FakeBleTransport,
        advertisements: dict,
    ) -> None:
        await orchestrator.start_scanning()
        await _discover(orchestrator, advertisements["kickr_core"])
        orchestrator.stop_scanning()
        assert not orchestrator.is_scanning
        radio_transport.stop_mock.assert_called_once()
        ble_transport.stop_mock.assert_called_once()
        assert len(orchestrator.get_discovered_devices()) == 1

    @pytest.mark.asyncio
    async def test_new_scan_clears_discovered(
        self,
        orchestrator: SensorOrchestrator,
        advertisements: dict,
    ) -> None:
        await orchestrator.start_scanning()
        await _discover(orchestrator, advertisements["kickr_core"])
        orchestrator.stop_scanning()
        await orchestrator.start_scanning()
        await orchestrator.drain()
        assert orchestrator.get_discovered_devices() == []

    @pytest.mark.asyncio
    async def test_scan_stops_automatically(
        self,
        radio_transport: FakeRadioTransport,
        ble_transport: FakeBleTransport,
        telemetry_config: TelemetryConfig,
    ) -> None:
        config = dataclasses.replace(telemetry_config, scanning=ScanPolicy(auto_stop_seconds=0.05))
        orchestrator = SensorOrchestrator([radio_transport, ble_transport], config=config)
        await orchestrator.start_scanning()
        await asyncio.sleep(0.2)
        assert not orchestrator.is_scanning
        ble_transport.stop_mock.assert_called_once()
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_stop_during_start_leaves_no_timer_behind(
        self,
        radio_transport: FakeRadioTransport,
        ble_transport: FakeBleTransport,
        telemetry_config: TelemetryConfig,
    ) -> None:
        config = dataclasses.replace(telemetry_config, scanning=ScanPolicy(auto_stop_seconds=0.2))
        orchestrator = SensorOrchestrator([radio_transport, ble_transport], config=config)
        gate = asyncio.Event()

        async def slow_start() -> None:
            await gate.wait()

        ble_transport.start_mock.side_effect = slow_start
        first = asyncio.create_task(orchestrator.start_scanning())
        await asyncio.sleep(0)
        orchestrator.stop_scanning()
        gate.set()
        await first
        assert not orchestrator.is_scanning

        await asyncio.sleep(0.1)
        await orchestrator.start_scanning()
        await asyncio.sleep(0.15)
        # the first start's window would have closed by now
        assert orchestrator.is_scanning
        await asyncio.sleep(0.15)
        assert not orchestrator.is_scanning
        await orchestrator.shutdown()


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_advertisement_creates_identified_device(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
        advertisements: dict,
    ) -> None:
        await _discover(orchestrator, advertisements["kickr_core"])
        devices = orchestrator.get_discovered_devices()
        assert len(devices) == 1
        device = devices[0]
        assert device.device_id == KICKR_ID
        assert device.type is SensorType.TRAINER
        assert device.protocol is Protocol.BLE
        assert [d.device_id for d in recorder.of(SCAN_RESULT)] == [KICKR_ID]

    @pytest.mark.asyncio
    async def test_repeated_advertisement_updates_in_place(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
        advertisements: dict,
    ) -> None:
        advertisement = advertisements["kickr_core"]
        await _discover(orchestrator, advertisement)
        await _discover(orchestrator, dataclasses.replace(advertisement, signal_strength=40))
        devices = orchestrator.get_discovered_devices()
        assert len(devices) == 1
        assert devices[0].signal_strength == 40
        # signal changes alone do not re-announce the device
        assert len(recorder.of(SCAN_RESULT)) == 1

    @pytest.mark.asyncio
    async def test_snapshots_are_copies(self, orchestrator: SensorOrchestrator, advertisements: dict) -> None:
        await _discover(orchestrator, advertisements["kickr_core"])
        orchestrator.get_discovered_devices()[0].name = "tampered"
        assert orchestrator.get_discovered_devices()[0].name == "KICKR CORE 1234"

    @pytest.mark.asyncio
    async def test_characteristics_reidentify_device(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
        advertisements: dict,
    ) -> None:
        await _discover(orchestrator, advertisements["anonymous"])
        assert orchestrator.get_discovered_devices()[0].type is SensorType.UNKNOWN

        orchestrator.on_characteristics(
            "ab:cd:ef:12",
            ["1818", "180f"],
            [
                DiscoveredCharacteristic("2a63", "1818", ["notify"]),
                DiscoveredCharacteristic("2a19", "180f", ["read"], value=bytes([64])),
            ],
        )
        await orchestrator.drain()
        device = orchestrator.get_discovered_devices()[0]
        assert device.type is SensorType.POWER
        assert device.battery_level == 64
        assert recorder.of(SCAN_RESULT)[-1].type is SensorType.POWER

    @pytest.mark.asyncio
    async def test_callback_from_foreign_thread(
        self,
        orchestrator: SensorOrchestrator,
        advertisements: dict,
    ) -> None:
        await orchestrator.start()
        await asyncio.to_thread(orchestrator.on_advertisement, advertisements["polar_h10"])
        await orchestrator.drain()
        assert [d.device_id for d in orchestrator.get_discovered_devices()] == ["ble:a0:9e:1a:00:11:22"]

    @pytest.mark.asyncio
    async def test_radio_broadcast_discovers_and_streams(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
    ) -> None:
        orchestrator.on_broadcast(
            RadioBroadcast(device_number=12345, device_profile=0x0B, manufacturer_id=269, values={"power": 240, "cadence": 88})
        )
        await orchestrator.drain()
        device = orchestrator.get_discovered_devices()[0]
        assert device.device_id == "radio:power-12345"
        assert device.protocol is Protocol.SHORT_RANGE_RADIO
        assert device.manufacturer == "Quarq"
        readings = recorder.of(SENSOR_DATA)
        assert [(r.metric_type, r.value) for r in readings] == [(SensorType.POWER, 240), (SensorType.CADENCE, 88)]


class TestConnections:
    @pytest.mark.asyncio
    async def test_connect_unknown_device(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
        ble_transport: FakeBleTransport,
    ) -> None:
        assert await orchestrator.connect_device("unknown-id") is False
        statuses = recorder.of(DEVICE_STATUS)
        assert len(statuses) == 1
        assert statuses[0].status is ConnectionStatus.ERROR
        assert statuses[0].device_id == "unknown-id"
        ble_transport.connect_mock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connect_routes_native_id_to_transport(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
        ble_transport: FakeBleTransport,
        radio_transport: FakeRadioTransport,
        advertisements: dict,
    ) -> None:
        await _discover(orchestrator, advertisements["kickr_core"])
        assert await orchestrator.connect_device(KICKR_ID) is True
        ble_transport.connect_mock.assert_awaited_once_with("c4:3a:11:22:33:44")
        radio_transport.connect_mock.assert_not_awaited()
        assert [s.status for s in recorder.of(DEVICE_STATUS)] == [
            ConnectionStatus.CONNECTING,
            ConnectionStatus.CONNECTED,
        ]
        connected = orchestrator.get_connected_devices()
        assert [d.device_id for d in connected] == [KICKR_ID]
        assert connected[0].is_connected
        connecting, done = recorder.of(DEVICE_STATUS)
        assert connecting.device.device_id == KICKR_ID
        assert not connecting.device.is_connected
        assert done.device.is_connected
        assert done.device.name == "KICKR CORE 1234"

    @pytest.mark.asyncio
    async def test_connect_failure_reports_error(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
        ble_transport: FakeBleTransport,
        advertisements: dict,
    ) -> None:
        ble_transport.connect_mock.side_effect = TimeoutError("link timeout")
        await _discover(orchestrator, advertisements["kickr_core"])
        assert await orchestrator.connect_device(KICKR_ID) is False
        last = recorder.of(DEVICE_STATUS)[-1]
        assert last.status is ConnectionStatus.ERROR
        assert last.error == "link timeout"
        assert orchestrator.get_connected_devices() == []

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_attempt(
        self,
        orchestrator: SensorOrchestrator,
        ble_transport: FakeBleTransport,
        advertisements: dict,
    ) -> None:
        gate = asyncio.Event()

        async def slow_connect(native_id: str) -> bool:
            await gate.wait()
            return True

        ble_transport.connect_mock.side_effect = slow_connect
        await _discover(orchestrator, advertisements["kickr_core"])
        first = asyncio.create_task(orchestrator.connect_device(KICKR_ID))
        second = asyncio.create_task(orchestrator.connect_device(KICKR_ID))
        await asyncio.sleep(0)
        gate.set()
        assert await first is True
        assert await second is True
        assert ble_transport.connect_mock.await_count == 1

    @pytest.mark.asyncio
    async def test_disconnect(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
        ble_transport: FakeBleTransport,
        advertisements: dict,
    ) -> None:
        await _discover(orchestrator, advertisements["kickr_core"])
        await orchestrator.connect_device(KICKR_ID)
        assert await orchestrator.disconnect_device(KICKR_ID) is True
        ble_transport.disconnect_mock.assert_awaited_once_with("c4:3a:11:22:33:44")
        assert recorder.of(DEVICE_STATUS)[-1].status is ConnectionStatus.DISCONNECTED
        assert orchestrator.get_connected_devices() == []

    @pytest.mark.asyncio
    async def test_disconnect_unknown_device(self, orchestrator: SensorOrchestrator) -> None:
        assert await orchestrator.disconnect_device("ble:00:00") is False

    @pytest.mark.asyncio
    async def test_connected_device_survives_new_scan(
        self,
        orchestrator: SensorOrchestrator,
        advertisements: dict,
    ) -> None:
        await orchestrator.start_scanning()
        await _discover(orchestrator, advertisements["kickr_core"])
        await orchestrator.connect_device(KICKR_ID)
        orchestrator.stop_scanning()
        await orchestrator.start_scanning()
        await orchestrator.drain()
        assert orchestrator.get_discovered_devices() == []
        assert [d.device_id for d in orchestrator.get_connected_devices()] == [KICKR_ID]

    @pytest.mark.asyncio
    async def test_transport_reported_disconnect(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
        advertisements: dict,
    ) -> None:
        await _discover(orchestrator, advertisements["kickr_core"])
        await orchestrator.connect_device(KICKR_ID)
        orchestrator.on_device_disconnected("c4:3a:11:22:33:44", Protocol.BLE, reason="out of range")
        await orchestrator.drain()
        last = recorder.of(DEVICE_STATUS)[-1]
        assert last.status is ConnectionStatus.DISCONNECTED
        assert last.error == "out of range"
        assert orchestrator.get_connected_devices() == []

    @pytest.mark.asyncio
    async def test_native_id_disconnect_without_protocol(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
        advertisements: dict,
    ) -> None:
        await _discover(orchestrator, advertisements["kickr_core"])
        await orchestrator.connect_device(KICKR_ID)
        orchestrator.on_device_disconnected("c4:3a:11:22:33:44")
        await orchestrator.drain()
        assert orchestrator.get_connected_devices() == []
        last = recorder.of(DEVICE_STATUS)[-1]
        assert last.status is ConnectionStatus.DISCONNECTED
        assert last.device_id == KICKR_ID
        assert last.device.is_connected is False

    @pytest.mark.asyncio
    async def test_adapter_reports_disconnect_with_its_protocol(
        self,
        orchestrator: SensorOrchestrator,
        ble_transport: FakeBleTransport,
        advertisements: dict,
    ) -> None:
        await _discover(orchestrator, advertisements["kickr_core"])
        await orchestrator.connect_device(KICKR_ID)
        ble_transport.report_disconnected("c4:3a:11:22:33:44", reason="link lost")
        await orchestrator.drain()
        assert orchestrator.get_connected_devices() == []

    @pytest.mark.asyncio
    async def test_adapter_reported_connection_merges_device_fields(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
        ble_transport: FakeBleTransport,
        advertisements: dict,
    ) -> None:
        await _discover(orchestrator, advertisements["kickr_core"])
        reported = orchestrator.get_discovered_devices()[0]
        reported.device_id = "c4:3a:11:22:33:44"
        reported.battery_level = 64
        reported.firmware_version = "4.1.0"
        ble_transport.report_connected(reported)
        await orchestrator.drain()
        device = orchestrator.get_connected_devices()[0]
        assert device.device_id == KICKR_ID
        assert device.battery_level == 64
        assert device.firmware_version == "4.1.0"
        last = recorder.of(DEVICE_STATUS)[-1]
        assert last.status is ConnectionStatus.CONNECTED
        assert last.device.battery_level == 64

    @pytest.mark.asyncio
    async def test_disconnect_for_unknown_native_id_is_logged(
        self,
        orchestrator: SensorOrchestrator,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        await orchestrator.start()
        with caplog.at_level(logging.WARNING, logger="cyclelink.telemetry.orchestrator"):
            orchestrator.on_device_disconnected("00:11:22:33:44:55")
            await orchestrator.drain()
        assert "00:11:22:33:44:55" in caplog.text

    @pytest.mark.asyncio
    async def test_registry_does_not_alias_transport_device(
        self,
        orchestrator: SensorOrchestrator,
    ) -> None:
        device = SensorDevice(
            device_id="hr-7",
            name="Radio Heart Rate Monitor 7",
            type=SensorType.HEART_RATE,
            protocol=Protocol.SHORT_RANGE_RADIO,
        )
        orchestrator.on_device_discovered(device)
        await orchestrator.drain()
        device.name = "changed by transport"
        assert device.device_id == "hr-7"
        assert orchestrator.get_discovered_devices()[0].name == "Radio Heart Rate Monitor 7"


class TestSensorData:
    @pytest.mark.asyncio
    async def test_raw_data_is_normalized_and_stamped(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
    ) -> None:
        orchestrator.on_raw_data(
            Protocol.BLE,
            RawSensorEvent("e8:10:aa:bb:cc:01", "hr", 165, timestamp=TEST_TIME, raw_data={"b": "00a5"}, signal_strength=80),
        )
        await orchestrator.drain()
        [reading] = recorder.of(SENSOR_DATA)
        assert reading.device_id == "ble:e8:10:aa:bb:cc:01"
        assert reading.session_id == TEST_SESSION_ID
        assert reading.value == 165
        assert reading.quality == 100

    @pytest.mark.asyncio
    async def test_invalid_reading_is_dropped(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
    ) -> None:
        orchestrator.on_raw_data(Protocol.BLE, RawSensorEvent("aa", "hr", 25, timestamp=TEST_TIME))
        await orchestrator.drain()
        assert recorder.of(SENSOR_DATA) == []

    @pytest.mark.asyncio
    async def test_missing_session_drops_by_default(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
        session_provider: StaticSessionProvider,
    ) -> None:
        session_provider.session_id = None
        orchestrator.on_raw_data(Protocol.BLE, RawSensorEvent("aa", "power", 250, timestamp=TEST_TIME))
        await orchestrator.drain()
        assert recorder.of(SENSOR_DATA) == []

    @pytest.mark.asyncio
    async def test_missing_session_ephemeral_policy(
        self,
        ble_transport: FakeBleTransport,
        telemetry_config: TelemetryConfig,
    ) -> None:
        config = dataclasses.replace(telemetry_config, sessions=SessionPolicy(on_missing="ephemeral"))
        orchestrator = SensorOrchestrator([ble_transport], config=config)
        recorder = EventRecorder()
        orchestrator.events.subscribe(SENSOR_DATA, recorder)
        orchestrator.on_raw_data(Protocol.BLE, RawSensorEvent("aa", "power", 250, timestamp=TEST_TIME))
        orchestrator.on_raw_data(Protocol.BLE, RawSensorEvent("aa", "cadence", 92, timestamp=TEST_TIME))
        await orchestrator.drain()
        sessions = {r.session_id for r in recorder.of(SENSOR_DATA)}
        assert len(sessions) == 1
        assert sessions.pop().startswith("ephemeral-")
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_duplicates_pass_through_by_default(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
    ) -> None:
        event = RawSensorEvent("aa", "power", 250, timestamp=TEST_TIME, raw_data={"p": 1})
        orchestrator.on_raw_data(Protocol.BLE, event)
        orchestrator.on_raw_data(Protocol.BLE, event)
        await orchestrator.drain()
        assert len(recorder.of(SENSOR_DATA)) == 2

    @pytest.mark.asyncio
    async def test_duplicate_suppression(
        self,
        ble_transport: FakeBleTransport,
        telemetry_config: TelemetryConfig,
    ) -> None:
        config = dataclasses.replace(
            telemetry_config,
            deduplication=dataclasses.replace(telemetry_config.deduplication, suppress_duplicates=True),
        )
        orchestrator = SensorOrchestrator(
            [ble_transport], config=config, session_provider=StaticSessionProvider(TEST_SESSION_ID)
        )
        recorder = EventRecorder()
        orchestrator.events.subscribe(SENSOR_DATA, recorder)
        event = RawSensorEvent("aa", "power", 250, timestamp=TEST_TIME, raw_data={"p": 1})
        orchestrator.on_raw_data(Protocol.BLE, event)
        orchestrator.on_raw_data(Protocol.BLE, event)
        await orchestrator.drain()
        assert len(recorder.of(SENSOR_DATA)) == 1
        assert orchestrator.last_reading("ble:aa", "power").value == 250
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_notification_is_decoded(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
        advertisements: dict,
    ) -> None:
        await _discover(orchestrator, advertisements["hr_strap_services_only"])
        orchestrator.on_notification("e8:10:aa:bb:cc:01", "2a37", bytes([0x00, 0x8C]))
        await orchestrator.drain()
        [reading] = recorder.of(SENSOR_DATA)
        assert reading.metric_type is SensorType.HEART_RATE
        assert reading.value == 140
        assert reading.device_id == "ble:e8:10:aa:bb:cc:01"

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_stop_delivery(
        self,
        orchestrator: SensorOrchestrator,
        recorder: EventRecorder,
    ) -> None:
        def broken(topic: str, payload: object) -> None:
            raise RuntimeError("subscriber bug")

        orchestrator.events.subscribe(SENSOR_DATA, broken)
        orchestrator.on_raw_data(Protocol.BLE, RawSensorEvent("aa", "cadence", 90, timestamp=TEST_TIME))
        orchestrator.on_raw_data(Protocol.BLE, RawSensorEvent("aa", "cadence", 91, timestamp=TEST_TIME))
        await orchestrator.drain()
        assert [r.value for r in recorder.of(SENSOR_DATA)] == [90, 91]


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_disconnects_and_releases_transports(
        self,
        orchestrator: SensorOrchestrator,
        radio_transport: FakeRadioTransport,
        ble_transport: FakeBleTransport,
        advertisements: dict,
    ) -> None:
        await orchestrator.start_scanning()
        await _discover(orchestrator, advertisements["kickr_core"])
        await orchestrator.connect_device(KICKR_ID)
        await orchestrator.shutdown()
        ble_transport.disconnect_mock.assert_awaited_once_with("c4:3a:11:22:33:44")
        assert orchestrator.get_connected_devices() == []
        assert not orchestrator.is_scanning
        radio_transport.stop_mock.assert_called()

    @pytest.mark.asyncio
    async def test_shutdown_completes_when_disconnect_fails(
        self,
        orchestrator: SensorOrchestrator,
        ble_transport: FakeBleTransport,
        advertisements: dict,
    ) -> None:
        ble_transport.disconnect_mock.side_effect = RuntimeError("stack crashed")
        await _discover(orchestrator, advertisements["kickr_core"])
        await orchestrator.connect_device(KICKR_ID)
        await orchestrator.shutdown()
        ble_transport.stop_mock.assert_called()
