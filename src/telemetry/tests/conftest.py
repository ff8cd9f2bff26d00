"""Shared fixtures, fake transports and sample advertisements for telemetry tests."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from src.telemetry.base import (
    Advertisement,
    Protocol,
    RawSensorEvent,
    StaticSessionProvider,
    TransportAdapter,
)
from src.telemetry.config_loader import TelemetryConfig, load_telemetry_config
from src.telemetry.events import TOPICS
from src.telemetry.normalizer import ReadingNormalizer
from src.telemetry.orchestrator import SensorOrchestrator

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

TEST_SESSION_ID = "session-2026-10-17-a"
TEST_TIME = datetime(2026, 10, 17, 7, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fake transports
# ---------------------------------------------------------------------------


class FakeTransport(TransportAdapter):
    """Transport adapter whose link layer is a set of mocks."""

    def __init__(self) -> None:
        super().__init__()
        self.start_mock = AsyncMock()
        self.stop_mock = MagicMock()
        self.connect_mock = AsyncMock(return_value=True)
        self.disconnect_mock = AsyncMock(return_value=True)

    async def start_scanning(self) -> None:
        await self.start_mock()

    def stop_scanning(self) -> None:
        self.stop_mock()

    async def connect_device(self, native_id: str) -> bool:
        return await self.connect_mock(native_id)

    async def disconnect_device(self, native_id: str) -> bool:
        return await self.disconnect_mock(native_id)


class FakeRadioTransport(FakeTransport):
    PROTOCOL = Protocol.SHORT_RANGE_RADIO
    DISPLAY_NAME = "Fake radio"


class FakeBleTransport(FakeTransport):
    PROTOCOL = Protocol.BLE
    DISPLAY_NAME = "Fake BLE"


class EventRecorder:
    """Synchronous subscriber that records every (topic, payload)."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    def __call__(self, topic: str, payload: Any) -> None:
        self.events.append((topic, payload))

    def of(self, topic: str) -> list[Any]:
        return [payload for t, payload in self.events if t == topic]


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def telemetry_config() -> TelemetryConfig:
    """Load the real telemetry config for tests."""
    return load_telemetry_config()


@pytest.fixture
def normalizer(telemetry_config: TelemetryConfig) -> ReadingNormalizer:
    return ReadingNormalizer(telemetry_config)


# ---------------------------------------------------------------------------
# Advertisement fixtures
# ---------------------------------------------------------------------------


def _advertisement(entry: dict) -> Advertisement:
    data = entry.get("manufacturer_data")
    return Advertisement(
        device_id=entry["device_id"],
        local_name=entry.get("local_name"),
        manufacturer_data=bytes.fromhex(data) if data else None,
        service_uuids=list(entry.get("service_uuids") or []),
        tx_power_level=entry.get("tx_power_level"),
        signal_strength=entry.get("signal_strength"),
    )


@pytest.fixture
def advertisements() -> dict[str, Advertisement]:
    raw = json.loads((FIXTURES_DIR / "advertisements.json").read_text())
    return {key: _advertisement(entry) for key, entry in raw.items()}


@pytest.fixture
def hr_event() -> RawSensorEvent:
    """A clean heart-rate sample with timestamp, payload and strong signal."""
    return RawSensorEvent(
        device_id="ble:e8:10:aa:bb:cc:01",
        type="hr",
        value=165,
        timestamp=TEST_TIME,
        raw_data={"flags": 0, "payload": "00a5"},
        signal_strength=80,
    )


# ---------------------------------------------------------------------------
# Orchestrator fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def radio_transport() -> FakeRadioTransport:
    return FakeRadioTransport()


@pytest.fixture
def ble_transport() -> FakeBleTransport:
    return FakeBleTransport()


@pytest.fixture
def session_provider() -> StaticSessionProvider:
    return StaticSessionProvider(TEST_SESSION_ID)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest_asyncio.fixture
async def orchestrator(
    radio_transport: FakeRadioTransport,
    ble_transport: FakeBleTransport,
    session_provider: StaticSessionProvider,
    telemetry_config: TelemetryConfig,
    recorder: EventRecorder,
):
    orch = SensorOrchestrator(
        [radio_transport, ble_transport],
        config=telemetry_config,
        session_provider=session_provider,
    )
    for topic in TOPICS:
        orch.events.subscribe(topic, recorder)
    yield orch
    await orch.shutdown()
