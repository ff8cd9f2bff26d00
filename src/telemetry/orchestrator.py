"""Sensor orchestrator: scan lifecycle, device registry and cross-transport fan-in.

Both transport adapters report into the ``on_*`` callbacks below.  Callbacks
never touch state directly: they post a typed message onto one asyncio queue,
and a single consumer task applies messages in arrival order.  Per-device
ordering is therefore the order the transport reported events in, and the
registry has exactly one writer.

Callbacks may be invoked from foreign threads (link-layer stacks often run
their own); messages are marshalled onto the orchestrator's loop.

Outward events are published on ``orchestrator.events`` (see events.py).
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Union

from src.telemetry.base import (
    Advertisement,
    ConnectionStatus,
    DeviceState,
    DeviceStatusEvent,
    DiscoveredCharacteristic,
    Protocol,
    RawSensorEvent,
    SensorDevice,
    SensorReading,
    SessionProvider,
    TransportAdapter,
    qualify_device_id,
    split_device_id,
)
from src.telemetry.config_loader import TelemetryConfig, get_telemetry_config
from src.telemetry.events import DEVICE_STATUS, SCAN_RESULT, SENSOR_DATA, EventEmitter
from src.telemetry.gatt import GattDecoder
from src.telemetry.identifier import build_sensor_device, identify_device, merge_identification
from src.telemetry.normalizer import ReadingNormalizer
from src.telemetry.radio_profiles import RadioBroadcast, broadcast_events, identify_broadcast
from src.telemetry.registry import DeviceRegistry

logger = logging.getLogger("cyclelink.telemetry.orchestrator")


# ---------------------------------------------------------------------------
# Queue messages
# ---------------------------------------------------------------------------


@dataclass
class _ClearDiscovered:
    pass


@dataclass
class _DeviceDiscovered:
    device: SensorDevice


@dataclass
class _AdvertisementSeen:
    advertisement: Advertisement


@dataclass
class _CharacteristicsDiscovered:
    device_id: str
    services: list[str] = field(default_factory=list)
    characteristics: list[DiscoveredCharacteristic] = field(default_factory=list)


@dataclass
class _DeviceConnected:
    device_id: str
    device: SensorDevice | None = None


@dataclass
class _DeviceDisconnected:
    device_id: str
    reason: str | None = None


@dataclass
class _RawData:
    protocol: Protocol
    event: RawSensorEvent


@dataclass
class _Notification:
    device_id: str
    characteristic_uuid: str
    data: bytes


@dataclass
class _Broadcast:
    broadcast: RadioBroadcast


_Message = Union[
    _ClearDiscovered,
    _DeviceDiscovered,
    _AdvertisementSeen,
    _CharacteristicsDiscovered,
    _DeviceConnected,
    _DeviceDisconnected,
    _RawData,
    _Notification,
    _Broadcast,
]


def _fingerprint(device: SensorDevice) -> tuple:
    """Fields whose change is worth a new scan-result event."""
    return (
        device.name,
        device.display_name,
        device.type,
        device.manufacturer,
        device.model,
        device.battery_level,
        tuple(device.capabilities),
        device.is_connected,
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SensorOrchestrator:
    """Own the device registry and coordinate both transports.

    Usage::

        orchestrator = SensorOrchestrator([radio_adapter, ble_adapter], session_provider=sessions)
        orchestrator.events.subscribe("sensor-data", publish)
        await orchestrator.start_scanning()
        await orchestrator.connect_device("ble:c4:3a:11:22:33:44")
        ...
        await orchestrator.shutdown()
    """

    def __init__(
        self,
        adapters: Iterable[TransportAdapter],
        config: TelemetryConfig | None = None,
        session_provider: SessionProvider | None = None,
        normalizer: ReadingNormalizer | None = None,
        events: EventEmitter | None = None,
        gatt_decoder: GattDecoder | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            adapters:         At most one adapter per protocol.
            config:           Telemetry policy; defaults to the bundled YAML.
            session_provider: Source of the active session id.
            normalizer:       Reading normalizer; built from ``config`` if omitted.
            events:           Outward event emitter.
            gatt_decoder:     Decoder for BLE measurement notifications.

        Raises:
            ValueError: If two adapters serve the same protocol.
        """
        self._config = config or get_telemetry_config()
        self._adapters: dict[Protocol, TransportAdapter] = {}
        for adapter in adapters:
            if adapter.PROTOCOL in self._adapters:
                raise ValueError(f"Duplicate transport adapter for protocol '{adapter.PROTOCOL.value}'")
            self._adapters[adapter.PROTOCOL] = adapter
            adapter.bind(self)

        self._session_provider = session_provider
        self._normalizer = normalizer or ReadingNormalizer(self._config)
        self._gatt = gatt_decoder or GattDecoder()
        self.events = events or EventEmitter()

        self._registry = DeviceRegistry()
        self._queue: asyncio.Queue[_Message] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._consumer: asyncio.Task | None = None
        self._scanning = False
        self._auto_stop: asyncio.TimerHandle | None = None
        self._scan_generation = 0
        self._inflight: dict[tuple[str, str], asyncio.Task] = {}
        self._ephemeral_session: str | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    @property
    def registry(self) -> DeviceRegistry:
        return self._registry

    @property
    def adapters(self) -> dict[Protocol, TransportAdapter]:
        return dict(self._adapters)

    # ------------------------------------------------------------------
    # Consumer lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Bind to the running loop and start the message consumer."""
        self._ensure_consumer(asyncio.get_running_loop())

    def _ensure_consumer(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._consumer is not None and not self._consumer.done():
            return
        self._loop = loop
        self.events.bind_loop(loop)
        self._consumer = loop.create_task(self._consume(), name="sensor-orchestrator-consumer")
        logger.debug("Orchestrator consumer started")

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                self._apply(message)
            except Exception:
                logger.exception("Failed to apply %s", type(message).__name__)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every message posted so far has been applied."""
        if self._consumer is None:
            return
        await self._queue.join()

    def _post(self, message: _Message) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if self._loop is None or self._consumer is None or self._consumer.done():
            if running is None:
                logger.warning("Dropping %s: orchestrator is not running", type(message).__name__)
                return
            self._ensure_consumer(running)

        if running is self._loop:
            self._queue.put_nowait(message)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, message)

    # ------------------------------------------------------------------
    # Transport callbacks (single entry point per event type)
    # ------------------------------------------------------------------

    def on_device_discovered(self, device: SensorDevice) -> None:
        """A transport identified a device itself (e.g. a radio profile)."""
        self._post(_DeviceDiscovered(device))

    def on_advertisement(self, advertisement: Advertisement) -> None:
        """A BLE advertisement was received; ``device_id`` is the native address."""
        self._post(_AdvertisementSeen(advertisement))

    def on_characteristics(
        self,
        device_id: str,
        services: Iterable[str],
        characteristics: Iterable[DiscoveredCharacteristic],
    ) -> None:
        """Services/characteristics were discovered after a BLE connection."""
        self._post(
            _CharacteristicsDiscovered(
                qualify_device_id(Protocol.BLE, device_id),
                list(services),
                list(characteristics),
            )
        )

    def on_device_connected(self, device: SensorDevice | str, protocol: Protocol | None = None) -> None:
        """A transport established a link on its own.

        ``device`` is either the transport's ``SensorDevice`` (battery and
        firmware fields are merged onto the record) or a device id.  A native
        id without ``protocol`` is matched against known devices.
        """
        if isinstance(device, SensorDevice):
            device = copy.deepcopy(device)
            device.device_id = qualify_device_id(protocol or device.protocol, device.device_id)
            self._post(_DeviceConnected(device.device_id, device))
        else:
            self._post(_DeviceConnected(self._qualify(device, protocol)))

    def on_device_disconnected(
        self,
        device_id: str,
        protocol: Protocol | None = None,
        reason: str | None = None,
    ) -> None:
        self._post(_DeviceDisconnected(self._qualify(device_id, protocol), reason))

    def on_raw_data(self, protocol: Protocol, event: RawSensorEvent) -> None:
        """A transport produced a raw sample."""
        if event.device_id:
            event = copy.copy(event)
            event.device_id = qualify_device_id(protocol, str(event.device_id))
        self._post(_RawData(protocol, event))

    def on_notification(self, device_id: str, characteristic_uuid: str, data: bytes) -> None:
        """A BLE measurement characteristic notified."""
        self._post(_Notification(qualify_device_id(Protocol.BLE, device_id), characteristic_uuid, bytes(data)))

    def on_broadcast(self, broadcast: RadioBroadcast) -> None:
        """A short-range radio broadcast page was decoded."""
        self._post(_Broadcast(broadcast))

    @staticmethod
    def _qualify(device_id: str, protocol: Protocol | None) -> str:
        return qualify_device_id(protocol, device_id) if protocol else device_id

    def _resolve_reported_id(self, device_id: str) -> str | None:
        """Map a transport-reported id onto a registry id.

        Unqualified ids are tried against every bound transport; the match
        must be unique.
        """
        if self._registry.get(device_id) is not None:
            return device_id
        protocol, native_id = split_device_id(device_id)
        if protocol is not None:
            return None
        matches = [
            qualify_device_id(p, native_id)
            for p in self._adapters
            if self._registry.get(qualify_device_id(p, native_id)) is not None
        ]
        return matches[0] if len(matches) == 1 else None

    # ------------------------------------------------------------------
    # Message application (consumer task only)
    # ------------------------------------------------------------------

    def _apply(self, message: _Message) -> None:
        if isinstance(message, _RawData):
            self._apply_raw_data(message.protocol, message.event)
        elif isinstance(message, _Notification):
            self._apply_notification(message)
        elif isinstance(message, _Broadcast):
            self._apply_broadcast(message.broadcast)
        elif isinstance(message, _AdvertisementSeen):
            self._apply_advertisement(message.advertisement)
        elif isinstance(message, _DeviceDiscovered):
            self._apply_discovered(message.device)
        elif isinstance(message, _CharacteristicsDiscovered):
            self._apply_characteristics(message)
        elif isinstance(message, _DeviceConnected):
            self._apply_connected(message.device_id, message.device)
        elif isinstance(message, _DeviceDisconnected):
            self._apply_disconnected(message.device_id, message.reason)
        elif isinstance(message, _ClearDiscovered):
            self._registry.clear_discovered()
            logger.debug("Cleared discovered devices for new scan")

    def _apply_discovered(self, device: SensorDevice) -> None:
        device = copy.copy(device)
        device.device_id = qualify_device_id(device.protocol, device.device_id)
        existing = self._registry.get(device.device_id)
        before = _fingerprint(existing.device) if existing else None
        was_discovered = existing is not None and self._registry.is_known(device.device_id)
        record, created = self._registry.upsert(device)
        if created:
            logger.info("Discovered %s (%s, %s)", record.device.name, record.device.type.value, device.device_id)
        if created or not was_discovered or before != _fingerprint(record.device):
            self.events.emit(SCAN_RESULT, self._registry.snapshot(device.device_id))

    def _apply_advertisement(self, advertisement: Advertisement) -> None:
        device_id = qualify_device_id(Protocol.BLE, advertisement.device_id)
        record = self._registry.get(device_id)
        if record is None:
            identification = identify_device(advertisement)
            device = build_sensor_device(advertisement, identification)
            record, _ = self._registry.upsert(device)
            record.advertisement = advertisement
            logger.info(
                "Discovered %s (%s, confidence=%d, %s)",
                device.name,
                device.type.value,
                device.confidence,
                device_id,
            )
            self.events.emit(SCAN_RESULT, self._registry.snapshot(device_id))
            return

        before = _fingerprint(record.device)
        was_discovered = self._registry.is_known(device_id)
        identification = identify_device(advertisement, record.services, record.characteristics)
        merge_identification(record.device, identification, advertisement)
        record.advertisement = advertisement
        self._registry.upsert(record.device)
        if not was_discovered or before != _fingerprint(record.device):
            self.events.emit(SCAN_RESULT, self._registry.snapshot(device_id))

    def _apply_characteristics(self, message: _CharacteristicsDiscovered) -> None:
        record = self._registry.get(message.device_id)
        if record is None:
            logger.warning("Characteristics for unknown device %s ignored", message.device_id)
            return
        record.services = list(message.services)
        record.characteristics = list(message.characteristics)
        _, native_id = split_device_id(message.device_id)
        advertisement = record.advertisement or Advertisement(device_id=native_id)
        before = _fingerprint(record.device)
        identification = identify_device(advertisement, record.services, record.characteristics)
        merge_identification(record.device, identification, record.advertisement)
        logger.info(
            "Re-identified %s as %s (confidence=%d)",
            message.device_id,
            record.device.type.value,
            record.device.confidence,
        )
        if before != _fingerprint(record.device):
            self.events.emit(SCAN_RESULT, self._registry.snapshot(message.device_id))

    def _apply_connected(self, reported_id: str, device: SensorDevice | None = None) -> None:
        device_id = self._resolve_reported_id(reported_id)
        if device_id is None:
            logger.warning("Connect notification for unknown device %s ignored", reported_id)
            return
        record = self._registry.get(device_id)
        if device is not None:
            if device.battery_level is not None:
                record.device.battery_level = device.battery_level
            record.device.firmware_version = device.firmware_version or record.device.firmware_version
        if self._registry.is_connected(device_id):
            return
        if self._registry.mark_connected(device_id):
            self._emit_status(device_id, ConnectionStatus.CONNECTED, record.device.protocol)

    def _apply_disconnected(self, reported_id: str, reason: str | None) -> None:
        device_id = self._resolve_reported_id(reported_id)
        if device_id is None:
            logger.warning("Disconnect notification for unknown device %s ignored", reported_id)
            return
        record = self._registry.get(device_id)
        if not self._registry.is_connected(device_id):
            return
        if self._registry.mark_disconnected(device_id):
            self._gatt.tracker.forget(device_id)
            logger.info("Device %s disconnected%s", device_id, f": {reason}" if reason else "")
            self._emit_status(device_id, ConnectionStatus.DISCONNECTED, record.device.protocol, reason)

    def _apply_raw_data(self, protocol: Protocol, event: RawSensorEvent) -> None:
        session_id = self._resolve_session()
        if session_id is None:
            logger.debug("No active session; dropping %s sample from %s", event.type, event.device_id)
            return
        reading = self._normalizer.parse(event, protocol, session_id=session_id)
        if reading is None:
            return
        is_new = self._normalizer.record(reading)
        if not is_new and self._config.deduplication.suppress_duplicates:
            logger.debug("Suppressed duplicate %s reading from %s", reading.metric_type.value, reading.device_id)
            return
        self.events.emit(SENSOR_DATA, copy.deepcopy(reading))

    def _apply_notification(self, message: _Notification) -> None:
        record = self._registry.get(message.device_id)
        signal = record.device.signal_strength if record else None
        for event in self._gatt.decode(
            message.device_id, message.characteristic_uuid, message.data, signal_strength=signal
        ):
            self._apply_raw_data(Protocol.BLE, event)

    def _apply_broadcast(self, broadcast: RadioBroadcast) -> None:
        device = identify_broadcast(broadcast)
        if device is None:
            return
        self._apply_discovered(device)
        for event in broadcast_events(broadcast):
            self._apply_raw_data(Protocol.SHORT_RANGE_RADIO, event)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _resolve_session(self) -> str | None:
        session_id = None
        if self._session_provider is not None:
            try:
                session_id = self._session_provider.current_session_id()
            except Exception:
                logger.warning("Session provider failed; treating session as missing", exc_info=True)
        if session_id:
            return session_id
        if self._config.sessions.on_missing == "ephemeral":
            if self._ephemeral_session is None:
                self._ephemeral_session = f"ephemeral-{uuid.uuid4().hex}"
                logger.info("No active session; stamping readings with %s", self._ephemeral_session)
            return self._ephemeral_session
        return None

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    async def start_scanning(self) -> None:
        """Start discovery on every transport.

        A no-op while already scanning.  Each transport starts independently;
        one that fails is logged and skipped.  Scanning stops automatically
        after ``scanning.auto_stop_seconds``.
        """
        if self._scanning:
            logger.debug("start_scanning ignored: already scanning")
            return

        loop = asyncio.get_running_loop()
        self._ensure_consumer(loop)
        self._scanning = True
        self._scan_generation += 1
        generation = self._scan_generation
        self._post(_ClearDiscovered())

        results = await asyncio.gather(*(self._start_adapter(a) for a in self._adapters.values()))
        if not self._scanning or generation != self._scan_generation:
            logger.debug("Scan stopped while transports were starting")
            return
        started = sum(1 for ok in results if ok)
        if self._adapters and started == 0:
            logger.error("No transport could start scanning")
            self._scanning = False
            return

        timeout = self._config.scanning.auto_stop_seconds
        if self._auto_stop is not None:
            self._auto_stop.cancel()
        self._auto_stop = loop.call_later(timeout, self._auto_stop_scanning)
        logger.info("Scanning on %d/%d transports (auto-stop in %.0fs)", started, len(self._adapters), timeout)

    async def _start_adapter(self, adapter: TransportAdapter) -> bool:
        try:
            await adapter.start_scanning()
        except Exception as exc:
            logger.warning(
                "%s transport unavailable, continuing without it: %s",
                adapter.DISPLAY_NAME,
                exc,
            )
            return False
        return True

    def _auto_stop_scanning(self) -> None:
        self._auto_stop = None
        logger.info("Scan window elapsed; stopping scan")
        self.stop_scanning()

    def stop_scanning(self) -> None:
        """Stop discovery on every transport; discovered devices are kept."""
        if not self._scanning:
            return
        self._scanning = False
        if self._auto_stop is not None:
            self._auto_stop.cancel()
            self._auto_stop = None
        for adapter in self._adapters.values():
            try:
                adapter.stop_scanning()
            except Exception as exc:
                logger.warning("Error stopping %s scan: %s", adapter.DISPLAY_NAME, exc)
        logger.info("Scanning stopped")

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def connect_device(self, device_id: str) -> bool:
        """Connect to a discovered device.

        Concurrent calls for the same device share one attempt.

        Returns:
            True if the device is connected afterwards.  Unknown devices and
            transport failures return False and emit an error status.
        """
        return await self._shared(("connect", device_id), self._connect)

    async def disconnect_device(self, device_id: str) -> bool:
        """Disconnect a device.

        Returns:
            True if the device is not connected afterwards.
        """
        return await self._shared(("disconnect", device_id), self._disconnect)

    async def _shared(self, key: tuple[str, str], operation) -> bool:
        self._ensure_consumer(asyncio.get_running_loop())
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(operation(key[1]))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(task)

    async def _connect(self, device_id: str) -> bool:
        record = self._registry.get(device_id)
        if record is None or not self._registry.is_known(device_id):
            logger.warning("connect_device: unknown device %s", device_id)
            self._emit_status(device_id, ConnectionStatus.ERROR, error="unknown device")
            return False
        if self._registry.is_connected(device_id):
            return True

        protocol = record.device.protocol
        adapter = self._adapters.get(protocol)
        if adapter is None:
            logger.warning("connect_device: no %s transport for %s", protocol.value, device_id)
            self._emit_status(device_id, ConnectionStatus.ERROR, protocol, f"no {protocol.value} transport")
            return False

        self._registry.transition(device_id, DeviceState.CONNECTING)
        self._emit_status(device_id, ConnectionStatus.CONNECTING, protocol)
        _, native_id = split_device_id(device_id)
        error: str | None = None
        try:
            ok = bool(await adapter.connect_device(native_id))
        except Exception as exc:
            logger.warning("Connecting %s failed: %s", device_id, exc)
            ok, error = False, str(exc)

        if ok and (self._registry.is_connected(device_id) or self._registry.mark_connected(device_id)):
            logger.info("Connected %s", device_id)
            self._emit_status(device_id, ConnectionStatus.CONNECTED, protocol)
            return True

        self._registry.mark_error(device_id)
        self._emit_status(device_id, ConnectionStatus.ERROR, protocol, error or "connection failed")
        return False

    async def _disconnect(self, device_id: str) -> bool:
        record = self._registry.get(device_id)
        if record is None or not self._registry.is_known(device_id):
            logger.warning("disconnect_device: unknown device %s", device_id)
            self._emit_status(device_id, ConnectionStatus.ERROR, error="unknown device")
            return False
        if not self._registry.is_connected(device_id):
            return True

        protocol = record.device.protocol
        adapter = self._adapters.get(protocol)
        _, native_id = split_device_id(device_id)
        error: str | None = None
        try:
            ok = adapter is not None and bool(await adapter.disconnect_device(native_id))
        except Exception as exc:
            logger.warning("Disconnecting %s failed: %s", device_id, exc)
            ok, error = False, str(exc)

        if not ok:
            self._emit_status(device_id, ConnectionStatus.ERROR, protocol, error or "disconnect failed")
            return False

        if self._registry.is_connected(device_id):
            self._registry.mark_disconnected(device_id)
            self._gatt.tracker.forget(device_id)
            self._emit_status(device_id, ConnectionStatus.DISCONNECTED, protocol)
        logger.info("Disconnected %s", device_id)
        return True

    def _emit_status(
        self,
        device_id: str,
        status: ConnectionStatus,
        protocol: Protocol | None = None,
        error: str | None = None,
    ) -> None:
        self.events.emit(
            DEVICE_STATUS,
            DeviceStatusEvent(
                device_id=device_id,
                status=status,
                protocol=protocol,
                error=error,
                device=self._registry.snapshot(device_id),
            ),
        )

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def get_discovered_devices(self) -> list[SensorDevice]:
        return self._registry.discovered()

    def get_connected_devices(self) -> list[SensorDevice]:
        return self._registry.connected()

    def last_reading(self, device_id: str, metric: str) -> SensorReading | None:
        return self._normalizer.last_reading(device_id, metric)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop scanning, disconnect everything and release both transports.

        Completes even if individual disconnects or adapter shutdowns fail.
        """
        logger.info("Shutting down sensor orchestrator")
        self.stop_scanning()

        device_ids = self._registry.connected_ids()
        if device_ids:
            results = await asyncio.gather(
                *(self.disconnect_device(d) for d in device_ids),
                return_exceptions=True,
            )
            for device_id, result in zip(device_ids, results):
                if isinstance(result, Exception) or result is False:
                    logger.warning("Could not disconnect %s during shutdown: %s", device_id, result)

        for adapter in self._adapters.values():
            try:
                await adapter.shutdown()
            except Exception as exc:
                logger.warning("Error shutting down %s: %s", adapter.DISPLAY_NAME, exc)

        if self._consumer is not None:
            await self.drain()
            await self.events.flush()
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        logger.info("Sensor orchestrator shut down")
