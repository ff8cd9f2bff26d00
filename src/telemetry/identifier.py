"""BLE device identification for the Cyclelink telemetry core.

Turns an advertisement (plus any services/characteristics discovered after
connecting) into a typed, named, capability-annotated DeviceIdentification.

Confidence is built additively from independent scoring rules, each with a
bounded contribution; the total is clamped to [0, 100].

Rule caps:
    manufacturer     20  company ID in manufacturer data is a known vendor
    name             30  local name matches a vendor/model/type pattern
    services         50  advertised/discovered GATT services
    characteristics  20  discovered GATT characteristics

Type precedence: services > name > characteristics > unknown.  Service UUIDs
are a protocol guarantee; names are marketing text.  When no rule yields a
type the device is ``unknown`` and confidence counts only generic evidence
(battery / device-information signals).

Nothing in this module raises on bad input; it degrades confidence instead.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable

from src.telemetry.assigned_numbers import (
    BLE_COMPANY_IDS,
    CHAR_BATTERY_LEVEL,
    CHAR_CSC_MEASUREMENT,
    CHAR_CYCLING_POWER_CONTROL_POINT,
    CHAR_CYCLING_POWER_MEASUREMENT,
    CHAR_FITNESS_MACHINE_CONTROL_POINT,
    CHAR_HEART_RATE_MEASUREMENT,
    CHAR_INDOOR_BIKE_DATA,
    CHARACTERISTIC_NAMES,
    CHIPSET_COMPANY_IDS,
    DEVICE_INFO_FIELDS,
    SERVICE_BATTERY,
    SERVICE_CYCLING_POWER,
    SERVICE_CYCLING_SPEED_CADENCE,
    SERVICE_DEVICE_INFORMATION,
    SERVICE_FITNESS_MACHINE,
    SERVICE_HEART_RATE,
    SERVICE_NAMES,
    short_uuid,
)
from src.telemetry.base import (
    Advertisement,
    DiscoveredCharacteristic,
    Protocol,
    SensorDevice,
    SensorType,
    clamp,
    qualify_device_id,
    split_device_id,
)

logger = logging.getLogger("cyclelink.telemetry.identifier")

# ---------------------------------------------------------------------------
# Weight constants
# ---------------------------------------------------------------------------

W_MANUFACTURER = 20
W_CHIPSET_VENDOR = 5
W_NAME_MAX = 30
W_SERVICES_MAX = 50
W_CHARACTERISTICS_MAX = 20

NAME_EXACT = 30
NAME_PREFIX = 25
NAME_CONTAINS = 20

# Patterns this short must not be glued to a preceding letter ("HR" ≠ "tHRee").
SHORT_PATTERN_LENGTH = 3

_MODEL_RE = re.compile(r"^[\s-]?([A-Za-z0-9-]+)")

CATEGORY_BY_TYPE: dict[SensorType, str] = {
    SensorType.HEART_RATE: "Heart Rate Monitor",
    SensorType.POWER: "Power Meter",
    SensorType.CADENCE: "Speed/Cadence Sensor",
    SensorType.SPEED: "Speed Sensor",
    SensorType.TRAINER: "Smart Trainer",
    SensorType.UNKNOWN: "Cycling Sensor",
}

TYPE_LABELS: dict[SensorType, str] = {
    SensorType.HEART_RATE: "Heart Rate",
    SensorType.POWER: "Power",
    SensorType.CADENCE: "Cadence",
    SensorType.SPEED: "Speed",
    SensorType.TRAINER: "Trainer",
    SensorType.UNKNOWN: "Cycling",
}


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class Evidence:
    """One scoring contribution and why it was awarded."""

    signal: str
    points: int
    reason: str
    generic: bool = False
    type_hint: SensorType | None = None


@dataclass
class ServiceInfo:
    uuid: str
    name: str
    is_primary: bool = False


@dataclass
class CharacteristicInfo:
    uuid: str
    service_uuid: str
    name: str
    properties: list[str] = field(default_factory=list)


@dataclass
class ManufacturerInfo:
    company_id: int
    company_name: str
    payload: bytes = b""


@dataclass
class NameAnalysis:
    type: SensorType
    category: str
    confidence: int
    pattern: str
    manufacturer: str | None = None
    model: str | None = None


@dataclass
class ServiceAnalysis:
    services: list[ServiceInfo] = field(default_factory=list)
    capabilities: list[str] = field(default_factory=list)
    primary_type: SensorType | None = None
    confidence: int = 0
    generic_confidence: int = 0


@dataclass
class CharacteristicAnalysis:
    characteristics: list[CharacteristicInfo] = field(default_factory=list)
    capabilities: list[str] = field(default_factory=list)
    confidence: int = 0
    generic_confidence: int = 0
    type_hint: SensorType | None = None
    battery_level: int | None = None
    device_info: dict[str, str] = field(default_factory=dict)


@dataclass
class DeviceIdentification:
    """Transient identification result consumed by the orchestrator.

    Attributes:
        type:              Final classified type.
        category:          Human category consistent with ``type``.
        services:          Recognized and custom services.
        characteristics:   Discovered characteristics.
        capabilities:      Kebab-case capability tags, de-duplicated.
        confidence:        0–100.
        evidence:          Every scoring contribution, in rule order.
        manufacturer:      Vendor name when known.
        model:             Model token when known.
        company_id:        Manufacturer-data company ID when present.
    """

    type: SensorType = SensorType.UNKNOWN
    category: str = CATEGORY_BY_TYPE[SensorType.UNKNOWN]
    services: list[ServiceInfo] = field(default_factory=list)
    characteristics: list[CharacteristicInfo] = field(default_factory=list)
    capabilities: list[str] = field(default_factory=list)
    confidence: int = 0
    evidence: list[Evidence] = field(default_factory=list)
    manufacturer: str | None = None
    model: str | None = None
    serial_number: str | None = None
    hardware_revision: str | None = None
    firmware_revision: str | None = None
    software_revision: str | None = None
    battery_level: int | None = None
    company_id: int | None = None

    @property
    def reasons(self) -> list[str]:
        return [f"{e.reason} (+{e.points})" for e in self.evidence]


# ---------------------------------------------------------------------------
# Name patterns
# ---------------------------------------------------------------------------


@dataclass
class NamePattern:
    pattern: str
    type: SensorType
    category: str
    manufacturer: str | None = None
    regex: re.Pattern = field(init=False, repr=False)

    def __post_init__(self) -> None:
        escaped = re.escape(self.pattern)
        if len(self.pattern) <= SHORT_PATTERN_LENGTH:
            escaped = r"(?<![A-Za-z])" + escaped
        self.regex = re.compile(escaped, re.IGNORECASE)


# Registration order breaks ties between equally long matches, so specific
# products come before the brands that make them.
NAME_PATTERNS: list[NamePattern] = [
    # Trainers
    NamePattern("KICKR", SensorType.TRAINER, "Smart Trainer", "Wahoo"),
    NamePattern("Neo", SensorType.TRAINER, "Smart Trainer", "Tacx"),
    NamePattern("Flux", SensorType.TRAINER, "Smart Trainer", "Tacx"),
    NamePattern("Tacx", SensorType.TRAINER, "Smart Trainer", "Tacx"),
    NamePattern("Elite", SensorType.TRAINER, "Smart Trainer", "Elite"),
    NamePattern("Trainer", SensorType.TRAINER, "Smart Trainer"),
    # Heart rate products
    NamePattern("TICKR", SensorType.HEART_RATE, "Heart Rate Monitor", "Wahoo"),
    NamePattern("Polar", SensorType.HEART_RATE, "Heart Rate Monitor", "Polar"),
    NamePattern("Suunto", SensorType.HEART_RATE, "Heart Rate Monitor", "Suunto"),
    NamePattern("Heart", SensorType.HEART_RATE, "Heart Rate Monitor"),
    NamePattern("HRM", SensorType.HEART_RATE, "Heart Rate Monitor"),
    NamePattern("HR", SensorType.HEART_RATE, "Heart Rate Monitor"),
    # Power meters
    NamePattern("PowerTap", SensorType.POWER, "Power Meter", "PowerTap"),
    NamePattern("Stages", SensorType.POWER, "Power Meter", "Stages"),
    NamePattern("Quarq", SensorType.POWER, "Power Meter", "Quarq"),
    NamePattern("SRAM", SensorType.POWER, "Power Meter", "SRAM"),
    NamePattern("Rotor", SensorType.POWER, "Power Meter", "Rotor"),
    NamePattern("4iiii", SensorType.POWER, "Power Meter", "4iiii"),
    NamePattern("Power", SensorType.POWER, "Power Meter"),
    # Speed / cadence
    NamePattern("DuoTrap", SensorType.CADENCE, "Speed/Cadence Sensor", "Bontrager"),
    NamePattern("Cadence", SensorType.CADENCE, "Speed/Cadence Sensor"),
    NamePattern("Speed", SensorType.SPEED, "Speed Sensor"),
    NamePattern("CSC", SensorType.CADENCE, "Speed/Cadence Sensor"),
    # Multi-product brands
    NamePattern("Wahoo", SensorType.HEART_RATE, "Multi-sensor Device", "Wahoo"),
    NamePattern("Garmin", SensorType.HEART_RATE, "Multi-sensor Device", "Garmin"),
    NamePattern("Magene", SensorType.CADENCE, "Multi-sensor Device", "Magene"),
    NamePattern("Bryton", SensorType.CADENCE, "Bike Computer", "Bryton"),
    NamePattern("Lezyne", SensorType.CADENCE, "Multi-sensor Device", "Lezyne"),
    NamePattern("CatEye", SensorType.CADENCE, "Bike Computer", "CatEye"),
]


# ---------------------------------------------------------------------------
# Service / characteristic capability tables
# ---------------------------------------------------------------------------

# uuid → (type, points, capability tags); type None marks a generic service
_SERVICE_RULES: dict[str, tuple[SensorType | None, int, list[str]]] = {
    SERVICE_HEART_RATE: (SensorType.HEART_RATE, 40, ["heart-rate-monitoring"]),
    SERVICE_CYCLING_POWER: (SensorType.POWER, 40, ["power-measurement"]),
    SERVICE_CYCLING_SPEED_CADENCE: (
        SensorType.CADENCE,
        35,
        ["speed-measurement", "cadence-measurement"],
    ),
    SERVICE_FITNESS_MACHINE: (SensorType.TRAINER, 45, ["smart-trainer"]),
    SERVICE_BATTERY: (None, 5, ["battery-level-reporting"]),
    SERVICE_DEVICE_INFORMATION: (None, 10, ["device-information"]),
}

# uuid → (capability tag, points, generic)
_CHARACTERISTIC_RULES: dict[str, tuple[str, int, bool]] = {
    CHAR_HEART_RATE_MEASUREMENT: ("real-time-heart-rate", 10, False),
    CHAR_CYCLING_POWER_MEASUREMENT: ("instantaneous-power", 10, False),
    CHAR_CSC_MEASUREMENT: ("speed-cadence-data", 10, False),
    CHAR_INDOOR_BIKE_DATA: ("indoor-bike-data", 10, False),
    CHAR_BATTERY_LEVEL: ("battery-status", 5, True),
}

# Write-capable control points advertise controllability, not a metric
_CONTROL_POINTS: dict[str, str] = {
    CHAR_FITNESS_MACHINE_CONTROL_POINT: "supports-resistance-control",
    CHAR_CYCLING_POWER_CONTROL_POINT: "supports-power-calibration",
}

# Capability tag → type, checked in this order
_CAPABILITY_TYPES: list[tuple[str, SensorType]] = [
    ("instantaneous-power", SensorType.POWER),
    ("real-time-heart-rate", SensorType.HEART_RATE),
    ("indoor-bike-data", SensorType.TRAINER),
    ("speed-cadence-data", SensorType.CADENCE),
]

_WRITE_PROPERTIES = frozenset({"write", "write-without-response", "writewithoutresponse"})
_NOTIFY_PROPERTIES = frozenset({"notify", "indicate"})


# ---------------------------------------------------------------------------
# Analysis functions
# ---------------------------------------------------------------------------


def parse_manufacturer_data(data: bytes | None) -> ManufacturerInfo | None:
    """Read the company identifier from BLE manufacturer-specific data.

    The first two bytes are the company ID, little-endian.

    Args:
        data: Raw manufacturer data bytes from the advertisement.

    Returns:
        ManufacturerInfo, or None when the data is too short or the
        company ID is not in the table.
    """
    if not data or len(data) < 2:
        return None
    try:
        company_id = int.from_bytes(bytes(data[:2]), "little")
    except (TypeError, ValueError):
        return None
    name = BLE_COMPANY_IDS.get(company_id)
    if name is None:
        return None
    return ManufacturerInfo(company_id=company_id, company_name=name, payload=bytes(data[2:]))


def analyze_device_name(name: str | None) -> NameAnalysis | None:
    """Pattern-match a local name against known vendors, models and types.

    Matching is case-insensitive.  The longest matching pattern wins; equal
    lengths fall back to registration order.

    Returns:
        NameAnalysis, or None when nothing matches.
    """
    if not name or not isinstance(name, str):
        return None
    text = name.strip()
    if not text:
        return None

    best: NamePattern | None = None
    best_match: re.Match | None = None
    for candidate in NAME_PATTERNS:
        match = candidate.regex.search(text)
        if match is None:
            continue
        if best is None or len(candidate.pattern) > len(best.pattern):
            best, best_match = candidate, match

    if best is None or best_match is None:
        return None

    return NameAnalysis(
        type=best.type,
        category=best.category,
        confidence=_name_confidence(text, best.pattern),
        pattern=best.pattern,
        manufacturer=best.manufacturer,
        model=_extract_model(text, best_match.end()),
    )


def _name_confidence(name: str, pattern: str) -> int:
    lowered, pat = name.lower(), pattern.lower()
    if lowered == pat:
        return NAME_EXACT
    if lowered.startswith(pat):
        return NAME_PREFIX
    return NAME_CONTAINS


def _extract_model(name: str, end: int) -> str | None:
    match = _MODEL_RE.match(name[end:].strip())
    return match.group(1) if match else None


def analyze_services(uuids: Iterable[str] | None) -> ServiceAnalysis:
    """Map service UUIDs to services, capability tags and a primary type.

    The first primary cycling service in list order sets the primary type;
    later ones only contribute capabilities.  Duplicates count once.
    """
    result = ServiceAnalysis()
    seen: set[str] = set()
    points = 0
    generic_points = 0

    for raw_uuid in uuids or []:
        if not isinstance(raw_uuid, str):
            continue
        uuid = short_uuid(raw_uuid)
        if not uuid or uuid in seen:
            continue
        seen.add(uuid)

        rule = _SERVICE_RULES.get(uuid)
        name = SERVICE_NAMES.get(uuid, f"Custom Service ({uuid})")
        is_primary = rule is not None and rule[0] is not None
        result.services.append(ServiceInfo(uuid=uuid, name=name, is_primary=is_primary))
        if rule is None:
            continue

        service_type, weight, tags = rule
        _extend_unique(result.capabilities, tags)
        if service_type is None:
            generic_points += weight
        else:
            points += weight
            if result.primary_type is None:
                result.primary_type = service_type

    result.generic_confidence = min(generic_points, W_SERVICES_MAX)
    result.confidence = min(points + generic_points, W_SERVICES_MAX)
    return result


def analyze_characteristics(
    characteristics: Iterable[DiscoveredCharacteristic] | None,
) -> CharacteristicAnalysis:
    """Derive fine-grained capability tags from discovered characteristics.

    Also decodes Battery Level and Device Information string values when the
    transport read them.
    """
    result = CharacteristicAnalysis()
    points = 0
    generic_points = 0
    seen: set[str] = set()

    for char in characteristics or []:
        uuid = short_uuid(getattr(char, "uuid", None))
        if not uuid:
            continue
        properties = [str(p).lower() for p in (getattr(char, "properties", None) or [])]
        result.characteristics.append(
            CharacteristicInfo(
                uuid=uuid,
                service_uuid=short_uuid(getattr(char, "service_uuid", "")),
                name=CHARACTERISTIC_NAMES.get(uuid, f"Custom Characteristic ({uuid})"),
                properties=properties,
            )
        )

        if uuid not in seen:
            seen.add(uuid)
            rule = _CHARACTERISTIC_RULES.get(uuid)
            if rule is not None:
                tag, weight, generic = rule
                _extend_unique(result.capabilities, [tag])
                if generic:
                    generic_points += weight
                else:
                    points += weight

        control_tag = _CONTROL_POINTS.get(uuid)
        if control_tag and _WRITE_PROPERTIES.intersection(properties):
            _extend_unique(result.capabilities, [control_tag])
        if _NOTIFY_PROPERTIES.intersection(properties):
            _extend_unique(result.capabilities, ["supports-notifications"])

        value = getattr(char, "value", None)
        if isinstance(value, (bytes, bytearray)) and value:
            _read_characteristic_value(result, uuid, value)

    for tag, sensor_type in _CAPABILITY_TYPES:
        if tag in result.capabilities:
            result.type_hint = sensor_type
            break

    result.generic_confidence = min(generic_points, W_CHARACTERISTICS_MAX)
    result.confidence = min(points + generic_points, W_CHARACTERISTICS_MAX)
    return result


def _read_characteristic_value(result: CharacteristicAnalysis, uuid: str, value: bytes) -> None:
    if uuid == CHAR_BATTERY_LEVEL:
        level = value[0]
        if 0 <= level <= 100:
            result.battery_level = level
        return
    attr = DEVICE_INFO_FIELDS.get(uuid)
    if attr is None:
        return
    text = bytes(value).decode("utf-8", errors="replace").strip("\x00").strip()
    if text:
        result.device_info[attr] = text


def _extend_unique(target: list[str], items: Iterable[str]) -> None:
    for item in items:
        if item not in target:
            target.append(item)


# ---------------------------------------------------------------------------
# Scoring rules
# ---------------------------------------------------------------------------


@dataclass
class _Inputs:
    advertisement: Advertisement
    service_uuids: list[str]
    characteristics: list[DiscoveredCharacteristic]


ScoringRule = Callable[[_Inputs, DeviceIdentification], list[Evidence]]


def _manufacturer_rule(inputs: _Inputs, ident: DeviceIdentification) -> list[Evidence]:
    info = parse_manufacturer_data(inputs.advertisement.manufacturer_data)
    if info is None:
        return []
    ident.company_id = info.company_id
    if info.company_id in CHIPSET_COMPANY_IDS:
        return [
            Evidence(
                "manufacturer",
                W_CHIPSET_VENDOR,
                f"chipset vendor {info.company_name} in manufacturer data",
                generic=True,
            )
        ]
    ident.manufacturer = info.company_name
    return [Evidence("manufacturer", W_MANUFACTURER, f"company ID {info.company_id} is {info.company_name}")]


def _name_rule(inputs: _Inputs, ident: DeviceIdentification) -> list[Evidence]:
    analysis = analyze_device_name(inputs.advertisement.local_name)
    if analysis is None:
        return []
    if ident.manufacturer is None:
        ident.manufacturer = analysis.manufacturer
    ident.model = analysis.model
    ident.category = analysis.category
    return [
        Evidence(
            "name",
            min(analysis.confidence, W_NAME_MAX),
            f"name matches pattern '{analysis.pattern}'",
            type_hint=analysis.type,
        )
    ]


def _service_rule(inputs: _Inputs, ident: DeviceIdentification) -> list[Evidence]:
    analysis = analyze_services(inputs.service_uuids)
    ident.services = analysis.services
    _extend_unique(ident.capabilities, analysis.capabilities)
    evidence: list[Evidence] = []
    typed = analysis.confidence - analysis.generic_confidence
    if typed > 0:
        evidence.append(
            Evidence("services", typed, "primary cycling service advertised", type_hint=analysis.primary_type)
        )
    if analysis.generic_confidence:
        evidence.append(
            Evidence("services", analysis.generic_confidence, "battery/device-information service", generic=True)
        )
    return evidence


def _characteristic_rule(inputs: _Inputs, ident: DeviceIdentification) -> list[Evidence]:
    if not inputs.characteristics:
        return []
    analysis = analyze_characteristics(inputs.characteristics)
    ident.characteristics = analysis.characteristics
    _extend_unique(ident.capabilities, analysis.capabilities)
    if analysis.battery_level is not None:
        ident.battery_level = analysis.battery_level
    for attr, text in analysis.device_info.items():
        # Device Information strings beat name guesses but not company data
        if attr == "manufacturer" and ident.company_id is not None and ident.manufacturer:
            continue
        setattr(ident, attr, text)

    evidence: list[Evidence] = []
    typed = analysis.confidence - analysis.generic_confidence
    if typed > 0:
        evidence.append(
            Evidence("characteristics", typed, "measurement characteristics present", type_hint=analysis.type_hint)
        )
    if analysis.generic_confidence:
        evidence.append(
            Evidence("characteristics", analysis.generic_confidence, "battery level characteristic", generic=True)
        )
    return evidence


SCORING_RULES: list[ScoringRule] = [
    _manufacturer_rule,
    _name_rule,
    _service_rule,
    _characteristic_rule,
]

# Which signal decides the type when several disagree
TYPE_PRECEDENCE: list[str] = ["services", "name", "characteristics"]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def identify_device(
    advertisement: Advertisement,
    services: Iterable[str] | None = None,
    characteristics: Iterable[DiscoveredCharacteristic] | None = None,
) -> DeviceIdentification:
    """Classify a BLE peripheral.

    Args:
        advertisement:   Pre-connection advertisement snapshot.
        services:        Service UUIDs discovered after connecting, if any.
        characteristics: Characteristics discovered after connecting, if any.

    Returns:
        DeviceIdentification.  Never raises; worst case ``unknown`` with
        confidence 0.
    """
    if not isinstance(advertisement, Advertisement):
        logger.debug("No usable advertisement (%s); identifying from discovery data only", type(advertisement).__name__)
        advertisement = Advertisement(device_id="")
    inputs = _Inputs(
        advertisement=advertisement,
        service_uuids=_as_list(advertisement.service_uuids) + _as_list(services),
        characteristics=[c for c in _as_list(characteristics) if isinstance(c, DiscoveredCharacteristic)],
    )
    ident = DeviceIdentification()

    for rule in SCORING_RULES:
        try:
            ident.evidence.extend(rule(inputs, ident))
        except Exception:
            logger.warning(
                "Scoring rule %s failed for %s", rule.__name__, advertisement.device_id, exc_info=True
            )

    ident.type = _resolve_type(ident.evidence)
    if ident.type is SensorType.UNKNOWN:
        score = sum(e.points for e in ident.evidence if e.generic)
    else:
        score = sum(e.points for e in ident.evidence)
    ident.confidence = int(clamp(score))

    name_evidence = next((e for e in ident.evidence if e.signal == "name"), None)
    if name_evidence is None or name_evidence.type_hint is not ident.type:
        ident.category = CATEGORY_BY_TYPE[ident.type]

    logger.debug(
        "Identified %s as %s (confidence=%d): %s",
        advertisement.device_id,
        ident.type.value,
        ident.confidence,
        "; ".join(ident.reasons),
    )
    return ident


def _as_list(items: object) -> list:
    if items is None:
        return []
    if isinstance(items, str):
        return [items]
    try:
        return list(items)
    except TypeError:
        return []


def _resolve_type(evidence: list[Evidence]) -> SensorType:
    for signal in TYPE_PRECEDENCE:
        for e in evidence:
            if e.signal == signal and e.type_hint is not None:
                return e.type_hint
    return SensorType.UNKNOWN


def generate_device_name(
    identification: DeviceIdentification,
    local_name: str | None = None,
    device_id: str | None = None,
) -> str:
    """Build a short, deterministic device name.

    A descriptive local name wins.  Otherwise manufacturer + category + model
    when something vendor-specific is known, the category alone for a typed
    device, and finally ``"Cycling Sensor <last 4 of id>"``.
    """
    if local_name and len(local_name.strip()) > 3 and "device" not in local_name.lower():
        return local_name.strip()

    if identification.manufacturer or identification.model:
        parts = [identification.manufacturer, identification.category, identification.model]
        return " ".join(p for p in parts if p)

    if identification.type is not SensorType.UNKNOWN:
        return identification.category

    _, native = split_device_id(device_id or "")
    compact = re.sub(r"[^A-Za-z0-9]", "", native)
    short_id = compact[-4:].upper() if compact else "UNKNOWN"
    return f"Cycling Sensor {short_id}"


def generate_display_name(identification: DeviceIdentification) -> str:
    """Build the UI label, embedding manufacturer, model and battery when known.

    Falls back to ``"<Type> Sensor"`` when none of them is known.
    """
    if not (identification.manufacturer or identification.model or identification.battery_level is not None):
        return f"{TYPE_LABELS[identification.type]} Sensor"

    parts: list[str] = []
    if identification.manufacturer:
        parts.append(identification.manufacturer)
    parts.append(identification.category)
    if identification.model:
        parts.append(f"({identification.model})")
    label = " ".join(parts)
    if identification.battery_level is not None:
        label += f" • {identification.battery_level}% battery"
    return label


def build_sensor_device(advertisement: Advertisement, identification: DeviceIdentification) -> SensorDevice:
    """Create the registry record for a newly seen BLE peripheral."""
    device_id = qualify_device_id(Protocol.BLE, advertisement.device_id)
    device = SensorDevice(
        device_id=device_id,
        name=generate_device_name(identification, advertisement.local_name, device_id),
        type=identification.type,
        protocol=Protocol.BLE,
        signal_strength=int(clamp(advertisement.signal_strength or 0)),
    )
    merge_identification(device, identification, advertisement)
    return device


def merge_identification(
    device: SensorDevice,
    identification: DeviceIdentification,
    advertisement: Advertisement | None = None,
) -> SensorDevice:
    """Update an existing device record in place from a fresh identification.

    Values the new identification does not know are kept from the record;
    a typed result never regresses to ``unknown``.
    """
    if identification.type is not SensorType.UNKNOWN or device.type is SensorType.UNKNOWN:
        device.type = identification.type
        device.category = identification.category
        device.confidence = identification.confidence
    device.manufacturer = identification.manufacturer or device.manufacturer
    device.model = identification.model or device.model
    device.firmware_version = identification.firmware_revision or device.firmware_version
    if identification.battery_level is not None:
        device.battery_level = identification.battery_level
    _extend_unique(device.capabilities, identification.capabilities)

    meta = device.metadata
    for key in ("serial_number", "hardware_revision", "software_revision", "company_id"):
        value = getattr(identification, key)
        if value is not None:
            meta[key] = value
    meta["services"] = [s.uuid for s in identification.services] or meta.get("services", [])

    if advertisement is not None:
        meta["advertisement"] = {
            "local_name": advertisement.local_name,
            "service_uuids": list(advertisement.service_uuids),
            "tx_power_level": advertisement.tx_power_level,
            "manufacturer_data": advertisement.manufacturer_data.hex()
            if advertisement.manufacturer_data
            else None,
        }
        if advertisement.signal_strength is not None:
            device.signal_strength = int(clamp(advertisement.signal_strength))
        local_name = advertisement.local_name
    else:
        local_name = (meta.get("advertisement") or {}).get("local_name")

    snapshot = _identification_for_names(device, identification)
    device.name = generate_device_name(snapshot, local_name, device.device_id)
    device.display_name = generate_display_name(snapshot)
    return device


def _identification_for_names(device: SensorDevice, identification: DeviceIdentification) -> DeviceIdentification:
    return DeviceIdentification(
        type=device.type,
        category=device.category or CATEGORY_BY_TYPE[device.type],
        capabilities=list(device.capabilities),
        confidence=device.confidence,
        manufacturer=device.manufacturer,
        model=device.model,
        battery_level=device.battery_level,
        company_id=identification.company_id,
    )
