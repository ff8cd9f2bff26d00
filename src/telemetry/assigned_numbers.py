"""Static lookup tables for Bluetooth SIG and short-range radio assigned numbers.

Only the entries relevant to cycling sensors are listed.  UUID keys are the
lower-case 16-bit short form (see ``short_uuid``).
"""

from __future__ import annotations

# Bluetooth SIG base UUID tail: 0000xxxx-0000-1000-8000-00805f9b34fb
_BLUETOOTH_BASE_SUFFIX = "00001000800000805f9b34fb"


# ---------------------------------------------------------------------------
# BLE company identifiers (manufacturer-specific advertisement data)
# ---------------------------------------------------------------------------

BLE_COMPANY_IDS: dict[int, str] = {
    # Cycling and fitness vendors
    76: "Apple Inc.",
    109: "Polar Electro Oy",
    135: "Garmin International Inc.",
    153: "Suunto Oy",
    268: "Stages Cycling LLC",
    409: "Wahoo Fitness LLC",
    410: "Tacx B.V.",
    420: "Elite S.r.l.",
    471: "CycleOps",
    523: "SRAM LLC",
    629: "Elite S.r.l.",
    741: "Quarq Technology Inc.",
    847: "Hammerhead",
    1048: "Rotor Componentes Tecnológicos S.L.",
    1204: "4iiii Innovations Inc.",
    1877: "Giant Manufacturing Co. Ltd.",
    2081: "PowerTap",
    # Chipset and general electronics vendors
    1: "Ericsson Technology Licensing",
    10: "Qualcomm Technologies International Ltd.",
    15: "Broadcom Corporation",
    29: "Qualcomm Technologies Inc.",
    61: "Sony Corporation",
    89: "Nordic Semiconductor ASA",
    117: "Samsung Electronics Co. Ltd.",
    305: "Decathlon SA",
    682: "Magene Technology Co., Ltd.",
    696: "Xplova Inc.",
    740: "Bryton Inc.",
    840: "Cateye Co., Ltd.",
    1073: "Lezyne Inc.",
    1164: "Topeak Inc.",
    1419: "Bontrager",
    1452: "Trek Bicycle Corporation",
}

# Chipset vendors say nothing about the product brand; they still count as a
# manufacturer-data match but never become the device's manufacturer.
CHIPSET_COMPANY_IDS: frozenset[int] = frozenset({1, 10, 15, 29, 89})


# ---------------------------------------------------------------------------
# Short-range radio manufacturer identifiers and device profiles
# ---------------------------------------------------------------------------

RADIO_MANUFACTURER_IDS: dict[int, str] = {
    1: "Garmin",
    2: "Garmin International",
    13: "Dynastream Innovations",
    15: "Timex",
    16: "Polar Electronics",
    88: "Tacx",
    89: "Polar Electro Oy",
    255: "Development",
    260: "Elite",
    263: "Wahoo Fitness",
    265: "Stages Cycling",
    267: "PowerTap",
    268: "SRM",
    269: "Quarq",
    283: "4iiii Innovations",
    285: "Shimano",
    286: "Campagnolo",
    287: "SRAM",
    290: "Pioneer",
    295: "Rotor",
    300: "CatEye",
    305: "Bryton",
    310: "Lezyne",
    315: "Suunto",
}

PROFILE_HEART_RATE = 0x78
PROFILE_POWER = 0x0B
PROFILE_SPEED_CADENCE = 0x79
PROFILE_CADENCE = 0x7A
PROFILE_SPEED = 0x7B
PROFILE_FITNESS_EQUIPMENT = 0x11


# ---------------------------------------------------------------------------
# GATT services and characteristics
# ---------------------------------------------------------------------------

SERVICE_HEART_RATE = "180d"
SERVICE_CYCLING_POWER = "1818"
SERVICE_CYCLING_SPEED_CADENCE = "1816"
SERVICE_FITNESS_MACHINE = "1826"
SERVICE_BATTERY = "180f"
SERVICE_DEVICE_INFORMATION = "180a"

SERVICE_NAMES: dict[str, str] = {
    SERVICE_HEART_RATE: "Heart Rate Service",
    SERVICE_CYCLING_POWER: "Cycling Power Service",
    SERVICE_CYCLING_SPEED_CADENCE: "Cycling Speed and Cadence Service",
    SERVICE_FITNESS_MACHINE: "Fitness Machine Service",
    SERVICE_BATTERY: "Battery Service",
    SERVICE_DEVICE_INFORMATION: "Device Information Service",
    "1800": "Generic Access Service",
    "1801": "Generic Attribute Service",
    "183e": "Body Composition Service",
    "181c": "User Data Service",
}

CHAR_HEART_RATE_MEASUREMENT = "2a37"
CHAR_BODY_SENSOR_LOCATION = "2a38"
CHAR_CYCLING_POWER_MEASUREMENT = "2a63"
CHAR_CYCLING_POWER_FEATURE = "2a65"
CHAR_CYCLING_POWER_CONTROL_POINT = "2a66"
CHAR_CSC_MEASUREMENT = "2a5b"
CHAR_CSC_FEATURE = "2a5c"
CHAR_INDOOR_BIKE_DATA = "2ad2"
CHAR_FITNESS_MACHINE_FEATURE = "2acc"
CHAR_FITNESS_MACHINE_CONTROL_POINT = "2ad9"
CHAR_BATTERY_LEVEL = "2a19"
CHAR_MANUFACTURER_NAME = "2a29"
CHAR_MODEL_NUMBER = "2a24"
CHAR_SERIAL_NUMBER = "2a25"
CHAR_HARDWARE_REVISION = "2a27"
CHAR_FIRMWARE_REVISION = "2a26"
CHAR_SOFTWARE_REVISION = "2a28"

CHARACTERISTIC_NAMES: dict[str, str] = {
    CHAR_HEART_RATE_MEASUREMENT: "Heart Rate Measurement",
    CHAR_BODY_SENSOR_LOCATION: "Body Sensor Location",
    CHAR_CYCLING_POWER_MEASUREMENT: "Cycling Power Measurement",
    CHAR_CYCLING_POWER_FEATURE: "Cycling Power Feature",
    CHAR_CYCLING_POWER_CONTROL_POINT: "Cycling Power Control Point",
    CHAR_CSC_MEASUREMENT: "CSC Measurement",
    CHAR_CSC_FEATURE: "CSC Feature",
    CHAR_INDOOR_BIKE_DATA: "Indoor Bike Data",
    CHAR_FITNESS_MACHINE_FEATURE: "Fitness Machine Feature",
    CHAR_FITNESS_MACHINE_CONTROL_POINT: "Fitness Machine Control Point",
    CHAR_BATTERY_LEVEL: "Battery Level",
    CHAR_MANUFACTURER_NAME: "Manufacturer Name String",
    CHAR_MODEL_NUMBER: "Model Number String",
    CHAR_SERIAL_NUMBER: "Serial Number String",
    CHAR_HARDWARE_REVISION: "Hardware Revision String",
    CHAR_FIRMWARE_REVISION: "Firmware Revision String",
    CHAR_SOFTWARE_REVISION: "Software Revision String",
}

# Device Information characteristic → DeviceIdentification attribute
DEVICE_INFO_FIELDS: dict[str, str] = {
    CHAR_MANUFACTURER_NAME: "manufacturer",
    CHAR_MODEL_NUMBER: "model",
    CHAR_SERIAL_NUMBER: "serial_number",
    CHAR_HARDWARE_REVISION: "hardware_revision",
    CHAR_FIRMWARE_REVISION: "firmware_revision",
    CHAR_SOFTWARE_REVISION: "software_revision",
}


def short_uuid(uuid: str | None) -> str:
    """Reduce a GATT UUID to its lower-case 16-bit short form where possible.

    ``"180D"`` → ``"180d"``, ``"0000180d"`` → ``"180d"``,
    ``"0000180d-0000-1000-8000-00805f9b34fb"`` → ``"180d"``.  Vendor UUIDs that
    are not on the Bluetooth base UUID are returned normalized but unshortened.
    """
    if not uuid:
        return ""
    compact = uuid.strip().lower().replace("-", "")
    if compact.startswith("0x"):
        compact = compact[2:]
    if len(compact) == 4:
        return compact
    if len(compact) == 8 and compact.startswith("0000"):
        return compact[4:]
    if len(compact) == 32 and compact.endswith(_BLUETOOTH_BASE_SUFFIX) and compact.startswith("0000"):
        return compact[4:8]
    return compact
