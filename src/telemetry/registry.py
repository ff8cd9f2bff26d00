"""Device registry: one record per device id plus discovered/connected sets.

The registry is the only owner of device identity state.  It is written by a
single consumer (the orchestrator's message loop), so it takes no locks;
readers get deep-copied snapshots and never see a record mid-update.

Per-device state machine::

    DISCOVERED ─► CONNECTING ─► CONNECTED ─► DISCONNECTED
                      │             │              │
                      └──► ERROR ◄──┘              └─► (rediscovered) DISCOVERED
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from src.telemetry.base import (
    Advertisement,
    DeviceState,
    DiscoveredCharacteristic,
    SensorDevice,
    SensorType,
)

logger = logging.getLogger("cyclelink.telemetry.registry")

ALLOWED_TRANSITIONS: dict[DeviceState, frozenset[DeviceState]] = {
    DeviceState.DISCOVERED: frozenset({DeviceState.CONNECTING, DeviceState.CONNECTED, DeviceState.DISCOVERED}),
    DeviceState.CONNECTING: frozenset({DeviceState.CONNECTED, DeviceState.ERROR, DeviceState.DISCONNECTED}),
    DeviceState.CONNECTED: frozenset({DeviceState.DISCONNECTED, DeviceState.ERROR, DeviceState.CONNECTED}),
    DeviceState.DISCONNECTED: frozenset({DeviceState.DISCOVERED, DeviceState.CONNECTING, DeviceState.CONNECTED}),
    DeviceState.ERROR: frozenset({DeviceState.DISCOVERED, DeviceState.CONNECTING, DeviceState.DISCONNECTED}),
}


@dataclass
class DeviceRecord:
    """Arena slot for one device.

    Attributes:
        device:          The canonical device record (updated in place).
        state:           Current lifecycle state.
        advertisement:   Latest BLE advertisement, kept for re-identification.
        services:        Service UUIDs discovered after connecting.
        characteristics: Characteristics discovered after connecting.
        updated_at:      Last time anything on the record changed.
    """

    device: SensorDevice
    state: DeviceState = DeviceState.DISCOVERED
    advertisement: Advertisement | None = None
    services: list[str] = field(default_factory=list)
    characteristics: list[DiscoveredCharacteristic] = field(default_factory=list)
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DeviceRegistry:
    """Arena of device records with discovered/connected membership sets.

    A device can be in both sets at once; connected membership survives a
    new scan clearing the discovered set.
    """

    def __init__(self) -> None:
        self._records: dict[str, DeviceRecord] = {}
        self._discovered: set[str] = set()
        self._connected: set[str] = set()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, device_id: str) -> DeviceRecord | None:
        return self._records.get(device_id)

    def is_known(self, device_id: str) -> bool:
        """True when the device is in either the discovered or connected set."""
        return device_id in self._discovered or device_id in self._connected

    def is_connected(self, device_id: str) -> bool:
        return device_id in self._connected

    def state(self, device_id: str) -> DeviceState | None:
        record = self._records.get(device_id)
        return record.state if record else None

    # ------------------------------------------------------------------
    # Mutation (single writer)
    # ------------------------------------------------------------------

    def upsert(self, device: SensorDevice) -> tuple[DeviceRecord, bool]:
        """Add a device to the discovered set, creating its record if needed.

        A new record holds a private copy of ``device``.  An existing record
        keeps its identity; only the fields the new observation carries are
        copied onto it.

        Returns:
            (record, created)
        """
        record = self._records.get(device.device_id)
        created = record is None
        if record is None:
            record = DeviceRecord(device=copy.deepcopy(device))
            self._records[device.device_id] = record
        else:
            if record.device is not device:
                _merge_observation(record.device, device)
            if record.state in (DeviceState.DISCONNECTED, DeviceState.ERROR):
                self.transition(device.device_id, DeviceState.DISCOVERED)
        self._discovered.add(device.device_id)
        record.updated_at = datetime.now(timezone.utc)
        return record, created

    def transition(self, device_id: str, new_state: DeviceState) -> bool:
        """Move a device to ``new_state`` if the state machine allows it.

        Invalid transitions are logged and ignored.

        Returns:
            True if the transition was applied.
        """
        record = self._records.get(device_id)
        if record is None:
            logger.warning("Transition to %s for unknown device %s ignored", new_state.value, device_id)
            return False
        if new_state not in ALLOWED_TRANSITIONS[record.state]:
            logger.warning(
                "Invalid transition %s → %s for %s ignored",
                record.state.value,
                new_state.value,
                device_id,
            )
            return False
        record.state = new_state
        record.updated_at = datetime.now(timezone.utc)
        return True

    def mark_connected(self, device_id: str) -> bool:
        record = self._records.get(device_id)
        if record is None or not self.transition(device_id, DeviceState.CONNECTED):
            return False
        record.device.is_connected = True
        self._connected.add(device_id)
        return True

    def mark_disconnected(self, device_id: str) -> bool:
        record = self._records.get(device_id)
        if record is None or not self.transition(device_id, DeviceState.DISCONNECTED):
            return False
        record.device.is_connected = False
        self._connected.discard(device_id)
        return True

    def mark_error(self, device_id: str) -> bool:
        record = self._records.get(device_id)
        if record is None or not self.transition(device_id, DeviceState.ERROR):
            return False
        record.device.is_connected = False
        self._connected.discard(device_id)
        return True

    def clear_discovered(self) -> None:
        """Start a new scan cycle.

        Records that are not connected (or mid-connect) afterwards are
        evicted from the arena.
        """
        self._discovered.clear()
        stale = [
            device_id
            for device_id, record in self._records.items()
            if device_id not in self._connected and record.state is not DeviceState.CONNECTING
        ]
        for device_id in stale:
            del self._records[device_id]

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self, device_id: str) -> SensorDevice | None:
        record = self._records.get(device_id)
        return copy.deepcopy(record.device) if record else None

    def discovered(self) -> list[SensorDevice]:
        return [copy.deepcopy(self._records[d].device) for d in sorted(self._discovered) if d in self._records]

    def connected(self) -> list[SensorDevice]:
        return [copy.deepcopy(self._records[d].device) for d in sorted(self._connected) if d in self._records]

    def connected_ids(self) -> list[str]:
        return sorted(self._connected)

    def __len__(self) -> int:
        return len(self._records)


def _merge_observation(target: SensorDevice, observed: SensorDevice) -> None:
    """Copy a fresh observation onto an existing record, keeping identity."""
    target.name = observed.name or target.name
    target.display_name = observed.display_name or target.display_name
    if observed.type is not SensorType.UNKNOWN or target.type is SensorType.UNKNOWN:
        target.type = observed.type
        target.category = observed.category or target.category
        target.confidence = max(target.confidence, observed.confidence)
    target.signal_strength = observed.signal_strength
    target.manufacturer = observed.manufacturer or target.manufacturer
    target.model = observed.model or target.model
    target.firmware_version = observed.firmware_version or target.firmware_version
    if observed.battery_level is not None:
        target.battery_level = observed.battery_level
    for capability in observed.capabilities:
        if capability not in target.capabilities:
            target.capabilities.append(capability)
    target.metadata.update(observed.metadata)
    target.last_seen = observed.last_seen
