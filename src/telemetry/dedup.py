"""Duplicate detection for canonical readings.

A sensor that notifies faster than its measurement updates, or a reading that
arrives through both transports, produces the same sample twice.  The keys
here identify a sample independent of which transport delivered it.

Dedup keys:
    - reading_key: (device_id, metric_type)                    latest sample slot
    - sample_key:  (device_id, metric_type, timestamp, value)  exact sample
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict

from src.telemetry.base import SensorReading, SensorType

logger = logging.getLogger("cyclelink.telemetry.dedup")


def reading_key(device_id: str, metric_type: SensorType | str) -> tuple[str, str]:
    """Slot key for the latest reading of one metric from one device."""
    metric = metric_type.value if isinstance(metric_type, SensorType) else metric_type
    return (device_id, metric)


def sample_key(reading: SensorReading) -> tuple[str, str, str, float]:
    """Key identifying one exact sample."""
    device_id, metric = reading_key(reading.device_id, reading.metric_type)
    return (device_id, metric, reading.timestamp.isoformat(), reading.value)


class LastSeenCache:
    """Bounded, thread-safe record of the last reading per device and metric.

    Transport callbacks may run on foreign threads, so every access holds a
    lock.  The least recently updated slot is evicted once ``max_size`` is
    exceeded.

    Usage::

        cache = LastSeenCache(max_size=512)
        if cache.is_duplicate(reading):
            logger.debug("Skipping duplicate: %s", sample_key(reading))
        else:
            cache.remember(reading)
    """

    def __init__(self, max_size: int = 512) -> None:
        self._max_size = max(1, max_size)
        self._latest: OrderedDict[tuple[str, str], SensorReading] = OrderedDict()
        self._lock = threading.Lock()

    def is_duplicate(self, reading: SensorReading) -> bool:
        """Return True if this exact sample is the latest one already seen."""
        with self._lock:
            previous = self._latest.get(reading_key(reading.device_id, reading.metric_type))
        return previous is not None and sample_key(previous) == sample_key(reading)

    def remember(self, reading: SensorReading) -> None:
        """Record a reading as the latest for its device and metric."""
        key = reading_key(reading.device_id, reading.metric_type)
        with self._lock:
            self._latest[key] = reading
            self._latest.move_to_end(key)
            while len(self._latest) > self._max_size:
                evicted, _ = self._latest.popitem(last=False)
                logger.debug("Evicted last-seen slot %s", evicted)

    def last(self, device_id: str, metric_type: SensorType | str) -> SensorReading | None:
        with self._lock:
            return self._latest.get(reading_key(device_id, metric_type))

    def forget_device(self, device_id: str) -> None:
        with self._lock:
            for key in [k for k in self._latest if k[0] == device_id]:
                del self._latest[key]

    def clear(self) -> None:
        """Reset the cache."""
        with self._lock:
            self._latest.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._latest)
