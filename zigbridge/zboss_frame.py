"""ZBOSS NCP serial framing: low level headers, CRCs and packet layout."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass

_log = logging.getLogger(__name__)

SIGNATURE = 0xDEAD
PROTOCOL_VERSION = 0x00
NCP_API_HL = 0x06

TYPE_REQUEST = 0x00
TYPE_RESPONSE = 0x01

FLAG_ACK = 0x01
FLAG_FIRST_FRAGMENT = 0x40
FLAG_LAST_FRAGMENT = 0x80

_SIGNATURE_BYTES = SIGNATURE.to_bytes(2, "big")
_LOW_LEVEL_HEADER = struct.Struct("<2sHBBB")
_COMMON_HEADER = struct.Struct("<BBH")
_PACKET_OFFSET = _LOW_LEVEL_HEADER.size + 2
_ROM_BANNER = b"ESP-ROM"

_CRC8_TABLE = bytes((
    0xea, 0xd4, 0x96, 0xa8, 0x12, 0x2c, 0x6e, 0x50, 0x7f, 0x41, 0x03, 0x3d, 0x87, 0xb9, 0xfb, 0xc5,
    0xa5, 0x9b, 0xd9, 0xe7, 0x5d, 0x63, 0x21, 0x1f, 0x30, 0x0e, 0x4c, 0x72, 0xc8, 0xf6, 0xb4, 0x8a,
    0x74, 0x4a, 0x08, 0x36, 0x8c, 0xb2, 0xf0, 0xce, 0xe1, 0xdf, 0x9d, 0xa3, 0x19, 0x27, 0x65, 0x5b,
    0x3b, 0x05, 0x47, 0x79, 0xc3, 0xfd, 0xbf, 0x81, 0xae, 0x90, 0xd2, 0xec, 0x56, 0x68, 0x2a, 0x14,
    0xb3, 0x8d, 0xcf, 0xf1, 0x4b, 0x75, 0x37, 0x09, 0x26, 0x18, 0x5a, 0x64, 0xde, 0xe0, 0xa2, 0x9c,
    0xfc, 0xc2, 0x80, 0xbe, 0x04, 0x3a, 0x78, 0x46, 0x69, 0x57, 0x15, 0x2b, 0x91, 0xaf, 0xed, 0xd3,
    0x2d, 0x13, 0x51, 0x6f, 0xd5, 0xeb, 0xa9, 0x97, 0xb8, 0x86, 0xc4, 0xfa, 0x40, 0x7e, 0x3c, 0x02,
    0x62, 0x5c, 0x1e, 0x20, 0x9a, 0xa4, 0xe6, 0xd8, 0xf7, 0xc9, 0x8b, 0xb5, 0x0f, 0x31, 0x73, 0x4d,
    0x58, 0x66, 0x24, 0x1a, 0xa0, 0x9e, 0xdc, 0xe2, 0xcd, 0xf3, 0xb1, 0x8f, 0x35, 0x0b, 0x49, 0x77,
    0x17, 0x29, 0x6b, 0x55, 0xef, 0xd1, 0x93, 0xad, 0x82, 0xbc, 0xfe, 0xc0, 0x7a, 0x44, 0x06, 0x38,
    0xc6, 0xf8, 0xba, 0x84, 0x3e, 0x00, 0x42, 0x7c, 0x53, 0x6d, 0x2f, 0x11, 0xab, 0x95, 0xd7, 0xe9,
    0x89, 0xb7, 0xf5, 0xcb, 0x71, 0x4f, 0x0d, 0x33, 0x1c, 0x22, 0x60, 0x5e, 0xe4, 0xda, 0x98, 0xa6,
    0x01, 0x3f, 0x7d, 0x43, 0xf9, 0xc7, 0x85, 0xbb, 0x94, 0xaa, 0xe8, 0xd6, 0x6c, 0x52, 0x10, 0x2e,
    0x4e, 0x70, 0x32, 0x0c, 0xb6, 0x88, 0xca, 0xf4, 0xdb, 0xe5, 0xa7, 0x99, 0x23, 0x1d, 0x5f, 0x61,
    0x9f, 0xa1, 0xe3, 0xdd, 0x67, 0x59, 0x1b, 0x25, 0x0a, 0x34, 0x76, 0x48, 0xf2, 0xcc, 0x8e, 0xb0,
    0xd0, 0xee, 0xac, 0x92, 0x28, 0x16, 0x54, 0x6a, 0x45, 0x7b, 0x39, 0x07, 0xbd, 0x83, 0xc1, 0xff,
))


def _crc16_table() -> tuple[int, ...]:
    table = []
    for value in range(256):
        crc = value
        for _ in range(8):
            crc = (crc >> 1) ^ 0x8408 if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC16_TABLE = _crc16_table()


class ZBossFrameError(ValueError):
    """A frame or packet is malformed or fails its checksum."""


def crc8(data: bytes) -> int:
    """CRC-8 used to protect the low level header."""
    crc = 0
    for byte in data:
        crc = _CRC8_TABLE[crc ^ byte]
    return crc


def crc16(data: bytes) -> int:
    """Reflected CRC-16 (polynomial 0x1021, initial value 0) protecting the packet body."""
    crc = 0
    for byte in data:
        crc = (crc >> 8) ^ _CRC16_TABLE[(crc ^ byte) & 0xFF]
    return crc


@dataclass(frozen=True)
class LowLevelHeader:
    """The 7-byte header in front of every frame; ``length`` counts from after the signature."""

    length: int
    packet_type: int = NCP_API_HL
    flags: int = 0

    def pack(self) -> bytes:
        """Wire bytes of the header, CRC included."""
        body = struct.pack("<HBB", self.length & 0xFFFF, self.packet_type & 0xFF, self.flags & 0xFF)
        return _SIGNATURE_BYTES + body + bytes((crc8(body),))

    @classmethod
    def unpack(cls, data: bytes) -> LowLevelHeader:
        """Parse a header from the start of ``data``, checking signature and CRC."""
        data = bytes(data)
        if len(data) < _LOW_LEVEL_HEADER.size:
            raise ZBossFrameError(f"header {data.hex(':')} is too short")
        signature, length, packet_type, flags, crc = _LOW_LEVEL_HEADER.unpack_from(data)
        if signature != _SIGNATURE_BYTES:
            raise ZBossFrameError(f"header {data.hex(':')} has no signature")
        if crc != crc8(data[2:6]):
            raise ZBossFrameError(f"frame {data.hex(':')} low level header CRC mismatch")
        return cls(length, packet_type, flags)


def build_request_frame(sequence_id: int, command: int, request_id: int = 0, data: bytes = b"") -> bytes:
    """Complete wire frame of a request carrying ``data``."""
    payload = (_COMMON_HEADER.pack(PROTOCOL_VERSION, TYPE_REQUEST, command & 0xFFFF)
               + bytes((request_id & 0xFF,)) + bytes(data))
    flags = (sequence_id & 0x03) << 2 | FLAG_FIRST_FRAGMENT | FLAG_LAST_FRAGMENT
    header = LowLevelHeader(len(payload) + _PACKET_OFFSET - 2, NCP_API_HL, flags)
    return header.pack() + crc16(payload).to_bytes(2, "little") + payload


def build_acknowledge(acknowledge_id: int) -> bytes:
    """Frame acknowledging the received frame with sequence ``acknowledge_id``."""
    return LowLevelHeader(5, NCP_API_HL, FLAG_ACK | (acknowledge_id & 0x03) << 4).pack()


def parse_packet(packet: bytes) -> tuple[int, int, bytes]:
    """Split a packet body into ``(packet type, command, data)``."""
    packet = bytes(packet)
    if len(packet) < _COMMON_HEADER.size:
        raise ZBossFrameError(f"packet {packet.hex(':')} is shorter than its header")
    _, packet_type, command = _COMMON_HEADER.unpack_from(packet)
    return packet_type, command, packet[_COMMON_HEADER.size:]


class ZBossFrameDecoder:
    """Collects serial bytes and yields complete frames.

    ``feed`` returns ``(header, packet)`` pairs; ``packet`` is None for frames
    that carry no body or whose body failed the CRC check. Seeing the ESP
    boot banner sets ``rom_banner``.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.rom_banner = False

    def feed(self, data: bytes) -> list[tuple[LowLevelHeader, bytes | None]]:
        """Add received bytes; return every frame now complete."""
        self._buffer += data

        if self._buffer.startswith(_ROM_BANNER):
            self.rom_banner = True
            self._buffer.clear()
            return []

        frames: list[tuple[LowLevelHeader, bytes | None]] = []
        while self._buffer:
            offset = self._buffer.find(_SIGNATURE_BYTES)
            if offset < 0:
                keep = 1 if self._buffer[-1] == _SIGNATURE_BYTES[0] else 0
                del self._buffer[:len(self._buffer) - keep]
                break
            del self._buffer[:offset]

            if len(self._buffer) < _LOW_LEVEL_HEADER.size:
                break

            try:
                header = LowLevelHeader.unpack(self._buffer[:_LOW_LEVEL_HEADER.size])
            except ZBossFrameError as exc:
                _log.warning("%s", exc)
                del self._buffer[:2]
                continue

            end = header.length + 2
            if end < _LOW_LEVEL_HEADER.size:
                _log.warning("Frame %s has an invalid length", self._buffer[:_LOW_LEVEL_HEADER.size].hex(":"))
                del self._buffer[:_LOW_LEVEL_HEADER.size]
                continue
            if end > len(self._buffer):
                break

            frame = bytes(self._buffer[:end])
            del self._buffer[:end]
            _log.debug("Frame received: %s", frame.hex(":"))

            packet = None
            if end > _PACKET_OFFSET:
                body = frame[_PACKET_OFFSET:]
                if int.from_bytes(frame[_LOW_LEVEL_HEADER.size:_PACKET_OFFSET], "little") != crc16(body):
                    _log.warning("Packet %s CRC mismatch", frame.hex(":"))
                else:
                    packet = body
            frames.append((header, packet))
        return frames