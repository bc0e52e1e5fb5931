"""ZiGate serial framing: byte escaping, checksums and the packet header layout."""

from __future__ import annotations

import struct
from functools import reduce
from operator import xor

FRAME_START = 0x01
FRAME_ESCAPE = 0x02
FRAME_END = 0x03

_HEADER = struct.Struct(">HHB")


class ZiGateChecksumError(ValueError):
    """A received packet does not match its checksum."""


def _xor(data: bytes) -> int:
    return reduce(xor, data, 0)


def checksum(command: int, payload: bytes) -> int:
    """XOR of the command, the payload length (both big endian) and the payload."""
    return _xor(struct.pack(">HH", command & 0xFFFF, len(payload)) + bytes(payload))


def encode_frame(data: bytes) -> bytes:
    """Wrap a packet in start and end markers, escaping every byte below 0x10."""
    frame = bytearray([FRAME_START])
    for byte in data:
        if byte < 0x10:
            frame += bytes((FRAME_ESCAPE, byte ^ 0x10))
        else:
            frame.append(byte)
    frame.append(FRAME_END)
    return bytes(frame)


def build_packet(command: int, data: bytes = b"") -> bytes:
    """Header and payload of a request; a non-empty payload gets a trailing zero byte."""
    payload = bytes(data) + b"\x00" if data else b""
    return _HEADER.pack(command & 0xFFFF, len(payload), checksum(command, payload)) + payload


def parse_packet(packet: bytes) -> tuple[int, bytes]:
    """Split an unescaped packet into ``(command, payload)`` after checking its checksum."""
    if len(packet) < _HEADER.size:
        raise ValueError(f"packet {bytes(packet).hex(':')} is shorter than its header")
    command, length, expected = _HEADER.unpack_from(packet)
    payload = bytes(packet[_HEADER.size:_HEADER.size + length])
    if _xor(packet[:4]) ^ _xor(payload) != expected:
        raise ZiGateChecksumError(f"packet {bytes(packet).hex(':')} checksum mismatch")
    return command, payload


def _unescape(frame: bytes) -> bytes:
    packet = bytearray()
    escaped = False
    for byte in frame:
        if escaped:
            packet.append(byte ^ 0x10)
            escaped = False
        elif byte == FRAME_ESCAPE:
            escaped = True
        else:
            packet.append(byte)
    return bytes(packet)


class FrameDecoder:
    """Collects serial bytes and yields the unescaped packets of complete frames."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[bytes]:
        """Add received bytes; return the packets of every frame now complete."""
        self._buffer += data
        packets = []
        while self._buffer:
            end = self._buffer.find(FRAME_END)
            if self._buffer[0] != FRAME_START or end < 6:
                break
            packets.append(_unescape(self._buffer[1:end]))
            del self._buffer[:end + 1]
        return packets