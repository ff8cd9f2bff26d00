"""Cyclelink telemetry: process wiring for the sensor orchestrator.

Embed in a host process:

    orchestrator = create_orchestrator([RadioAdapter(), BleAdapter()])
    async with lifespan(orchestrator):
        await orchestrator.start_scanning()
        ...
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Iterable

from src.config import Settings, get_settings
from src.models.telemetry import to_envelope
from src.telemetry.base import Protocol, SessionProvider, StaticSessionProvider, TransportAdapter
from src.telemetry.config_loader import get_telemetry_config, load_telemetry_config
from src.telemetry.events import TOPICS
from src.telemetry.orchestrator import SensorOrchestrator

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("cyclelink")


# ---------- Wire logging ----------

def log_wire_event(topic: str, payload: object) -> None:
    """Serialize an outward event and log it at debug level."""
    envelope = to_envelope(topic, payload)
    logger.debug("%s", envelope.model_dump_json())


# ---------- Factory ----------

def create_orchestrator(
    adapters: Iterable[TransportAdapter],
    settings: Settings | None = None,
    session_provider: SessionProvider | None = None,
) -> SensorOrchestrator:
    """Build an orchestrator from settings.

    Adapters whose transport is disabled in settings are left out.  Without
    an explicit session provider, ``default_session_id`` is used.
    """
    settings = settings or get_settings()
    logging.getLogger("cyclelink").setLevel(settings.log_level.upper())

    if settings.telemetry_config_path:
        config = load_telemetry_config(Path(settings.telemetry_config_path))
    else:
        config = get_telemetry_config()

    enabled = {
        Protocol.SHORT_RANGE_RADIO: settings.radio_enabled,
        Protocol.BLE: settings.ble_enabled,
    }
    selected: list[TransportAdapter] = []
    for adapter in adapters:
        if enabled.get(adapter.PROTOCOL, True):
            selected.append(adapter)
        else:
            logger.info("%s transport disabled by configuration", adapter.DISPLAY_NAME)

    orchestrator = SensorOrchestrator(
        selected,
        config=config,
        session_provider=session_provider or StaticSessionProvider(settings.default_session_id),
    )
    if settings.debug:
        for topic in TOPICS:
            orchestrator.events.subscribe(topic, log_wire_event)
    return orchestrator


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(orchestrator: SensorOrchestrator) -> AsyncGenerator[SensorOrchestrator, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting %s telemetry v%s [%s]",
        settings.app_name,
        settings.app_version,
        settings.environment,
    )
    await orchestrator.start()
    try:
        yield orchestrator
    finally:
        await orchestrator.shutdown()
        logger.info("%s telemetry shut down", settings.app_name)
