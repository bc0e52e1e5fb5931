"""Zigbee Cluster Library frame helpers: headers, attribute requests and data sizes."""

from __future__ import annotations

import struct
from collections.abc import Iterable
from enum import IntEnum, IntFlag


class FrameControl(IntFlag):
    """Bits of the ZCL frame control field."""

    GLOBAL = 0x00
    CLUSTER_SPECIFIC = 0x01
    MANUFACTURER_SPECIFIC = 0x04
    SERVER_TO_CLIENT = 0x08
    DISABLE_DEFAULT_RESPONSE = 0x10


class Command(IntEnum):
    """Global ZCL command identifiers."""

    READ_ATTRIBUTES = 0x00
    READ_ATTRIBUTES_RESPONSE = 0x01
    WRITE_ATTRIBUTES = 0x02
    WRITE_ATTRIBUTES_RESPONSE = 0x04
    CONFIGURE_REPORTING = 0x06
    CONFIGURE_REPORTING_RESPONSE = 0x07
    REPORT_ATTRIBUTES = 0x0A
    DEFAULT_RESPONSE = 0x0B


class Status(IntEnum):
    """ZCL status codes."""

    SUCCESS = 0x00
    UNSUPPORTED_ATTRIBUTE = 0x86
    INSUFFICIENT_SPACE = 0x89
    DUPLICATE_EXISTS = 0x8A
    NOT_FOUND = 0x8B
    NO_IMAGE_AVAILABLE = 0x98


class PowerSource(IntEnum):
    """Values of the basic cluster power source attribute."""

    UNKNOWN = 0x00
    MAINS = 0x01
    BATTERY = 0x03
    DC = 0x04


class DataType(IntEnum):
    """ZCL attribute data types."""

    NO_DATA = 0x00
    BOOLEAN = 0x10
    BITMAP_8 = 0x18
    BITMAP_16 = 0x19
    BITMAP_24 = 0x1A
    BITMAP_32 = 0x1B
    BITMAP_40 = 0x1C
    BITMAP_48 = 0x1D
    BITMAP_56 = 0x1E
    BITMAP_64 = 0x1F
    UNSIGNED_8 = 0x20
    UNSIGNED_16 = 0x21
    UNSIGNED_24 = 0x22
    UNSIGNED_32 = 0x23
    UNSIGNED_40 = 0x24
    UNSIGNED_48 = 0x25
    UNSIGNED_56 = 0x26
    UNSIGNED_64 = 0x27
    SIGNED_8 = 0x28
    SIGNED_16 = 0x29
    SIGNED_24 = 0x2A
    SIGNED_32 = 0x2B
    SIGNED_40 = 0x2C
    SIGNED_48 = 0x2D
    SIGNED_56 = 0x2E
    SIGNED_64 = 0x2F
    ENUM_8 = 0x30
    ENUM_16 = 0x31
    SINGLE_PRECISION = 0x39
    DOUBLE_PRECISION = 0x3A
    OCTET_STRING = 0x41
    CHARACTER_STRING = 0x42
    ARRAY = 0x48
    STRUCTURE = 0x4C
    UTC_TIME = 0xE2
    IEEE_ADDRESS = 0xF0


class Cluster(IntEnum):
    """Cluster identifiers known to the bridge."""

    BASIC = 0x0000
    POWER_CONFIGURATION = 0x0001
    TEMPERATURE_CONFIGURATION = 0x0002
    IDENTIFY = 0x0003
    GROUPS = 0x0004
    SCENES = 0x0005
    ON_OFF = 0x0006
    SWITCH_CONFIGURATION = 0x0007
    LEVEL_CONTROL = 0x0008
    TIME = 0x000A
    ANALOG_INPUT = 0x000C
    ANALOG_OUTPUT = 0x000D
    BINARY_OUTPUT = 0x0010
    MULTISTATE_INPUT = 0x0012
    MULTISTATE_VALUE = 0x0014
    OTA_UPGRADE = 0x0019
    POWER_PROFILE = 0x001A
    POLL_CONTROL = 0x0020
    GREEN_POWER = 0x0021
    DOOR_LOCK = 0x0101
    WINDOW_COVERING = 0x0102
    THERMOSTAT = 0x0201
    FAN_CONTROL = 0x0202
    THERMOSTAT_UI_CONFIGURATION = 0x0204
    COLOR_CONTROL = 0x0300
    ILLUMINANCE_MEASUREMENT = 0x0400
    ILLUMINANCE_LEVEL_SENSING = 0x0401
    TEMPERATURE_MEASUREMENT = 0x0402
    PRESSURE_MEASUREMENT = 0x0403
    HUMIDITY_MEASUREMENT = 0x0405
    OCCUPANCY_SENSING = 0x0406
    MOISTURE_MEASUREMENT = 0x0408
    PH_MEASUREMENT = 0x0409
    BYUN = 0x040A
    CO2_CONCENTRATION = 0x040D
    PM25_CONCENTRATION = 0x042A
    IAS_ZONE = 0x0500
    IAS_ACE = 0x0501
    IAS_WD = 0x0502
    SMART_ENERGY_METERING = 0x0702
    ELECTRICAL_MEASUREMENT = 0x0B04
    TOUCHLINK = 0x1000
    TUYA_SWITCH_MODE = 0xE001
    TUYA_IR_CONTROL = 0xE004
    TUYA_IR_DATA = 0xED00
    TUYA_DATA = 0xEF00
    PERENIO = 0xFC7B
    LUMI = 0xFCC0


class TuyaType(IntEnum):
    """Tuya data point types."""

    RAW = 0x00
    BOOL = 0x01
    VALUE = 0x02
    ENUM = 0x04


MANUFACTURER_CODE_SILABS = 0x1049
MANUFACTURER_CODE_LUMI = 0x115F

_FIXED_SIZES: dict[int, int] = {}
for _size, _types in (
    (1, (DataType.BOOLEAN, DataType.BITMAP_8, DataType.UNSIGNED_8, DataType.SIGNED_8, DataType.ENUM_8)),
    (2, (DataType.BITMAP_16, DataType.UNSIGNED_16, DataType.SIGNED_16, DataType.ENUM_16)),
    (3, (DataType.BITMAP_24, DataType.UNSIGNED_24, DataType.SIGNED_24)),
    (4, (DataType.BITMAP_32, DataType.UNSIGNED_32, DataType.SIGNED_32, DataType.SINGLE_PRECISION)),
    (5, (DataType.BITMAP_40, DataType.UNSIGNED_40, DataType.SIGNED_40)),
    (6, (DataType.BITMAP_48, DataType.UNSIGNED_48, DataType.SIGNED_48)),
    (7, (DataType.BITMAP_56, DataType.UNSIGNED_56, DataType.SIGNED_56)),
    (8, (DataType.BITMAP_64, DataType.UNSIGNED_64, DataType.SIGNED_64,
         DataType.DOUBLE_PRECISION, DataType.IEEE_ADDRESS)),
):
    for _type in _types:
        _FIXED_SIZES[int(_type)] = _size


def zcl_header(frame_control: int, transaction_id: int, command_id: int, manufacturer_code: int = 0) -> bytes:
    """Build a ZCL header; a non-zero manufacturer code sets the manufacturer-specific bit."""
    if manufacturer_code:
        return struct.pack(
            "<BHBB",
            (frame_control | FrameControl.MANUFACTURER_SPECIFIC) & 0xFF,
            manufacturer_code & 0xFFFF,
            transaction_id & 0xFF,
            command_id & 0xFF,
        )
    return bytes((frame_control & 0xFF, transaction_id & 0xFF, command_id & 0xFF))


def read_attributes_request(transaction_id: int, manufacturer_code: int, attributes: Iterable[int]) -> bytes:
    """Build a read attributes request for the given attribute identifiers."""
    header = zcl_header(FrameControl.DISABLE_DEFAULT_RESPONSE, transaction_id,
                        Command.READ_ATTRIBUTES, manufacturer_code)
    return header + b"".join(struct.pack("<H", attribute & 0xFFFF) for attribute in attributes)


def write_attribute_request(transaction_id: int, manufacturer_code: int, attribute_id: int,
                            data_type: int, data: bytes) -> bytes:
    """Build a write attributes request for a single attribute."""
    header = zcl_header(FrameControl.DISABLE_DEFAULT_RESPONSE, transaction_id,
                        Command.WRITE_ATTRIBUTES, manufacturer_code)
    return header + struct.pack("<HB", attribute_id & 0xFFFF, data_type & 0xFF) + bytes(data)


def data_size(data_type: int) -> int:
    """Size in bytes of a fixed-size data type, or 0 if it is not fixed-size."""
    return _FIXED_SIZES.get(int(data_type), 0)


def variable_data_size(data_type: int, data: bytes, offset: int) -> tuple[int, int]:
    """Size of a value at ``offset`` in ``data``; returns ``(size, offset of the value)``.

    Strings carry a leading length byte, which is consumed. Arrays and
    structures take the rest of the data.
    """
    if data_type in (DataType.OCTET_STRING, DataType.CHARACTER_STRING):
        if offset >= len(data):
            raise ValueError("string length byte is missing")
        return data[offset], offset + 1
    if data_type in (DataType.ARRAY, DataType.STRUCTURE):
        return (len(data) - offset) & 0xFF, offset
    return data_size(data_type), offset