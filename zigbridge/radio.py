"""Types shared by the radio adapters: settings, listener callbacks and the serial transport."""

from __future__ import annotations

import io
import select
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import BinaryIO

PROFILE_HA = 0x0104
GREEN_POWER_GROUP = 0x0B84
PERMIT_JOIN_BROADCAST_ADDRESS = 0xFFFC


class LogicalType(IntEnum):
    """Zigbee node logical types."""

    COORDINATOR = 0x00
    ROUTER = 0x01
    END_DEVICE = 0x02


class AddressMode(IntEnum):
    """APS destination address modes."""

    GROUP = 0x01
    NETWORK = 0x02
    IEEE = 0x03


class ZdoCluster(IntEnum):
    """ZDO request cluster identifiers."""

    NODE_DESCRIPTOR_REQUEST = 0x0002
    SIMPLE_DESCRIPTOR_REQUEST = 0x0004
    ACTIVE_ENDPOINTS_REQUEST = 0x0005
    BIND_REQUEST = 0x0021
    UNBIND_REQUEST = 0x0022
    LQI_REQUEST = 0x0031
    LEAVE_REQUEST = 0x0034


class RequestTimeout(TimeoutError):
    """The adapter did not answer a request in time."""


@dataclass
class EndpointDescriptor:
    """A local endpoint registered on the coordinator."""

    endpoint_id: int
    profile_id: int = PROFILE_HA
    device_id: int = 0x0005
    in_clusters: tuple[int, ...] = ()
    out_clusters: tuple[int, ...] = ()


@dataclass
class RadioSettings:
    """Network parameters an adapter starts the coordinator with."""

    channel: int = 11
    pan_id: int = 0x1A62
    network_key: bytes = bytes(16)
    power: int = 10
    write: bool = False
    permit_join_address: int = PERMIT_JOIN_BROADCAST_ADDRESS
    multicast: tuple[int, ...] = ()
    endpoints: dict[int, EndpointDescriptor] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 11 <= self.channel <= 26:
            raise ValueError(f"channel {self.channel} is outside 11..26")
        if not 0 <= self.pan_id <= 0xFFFF:
            raise ValueError(f"PAN ID {self.pan_id:#x} does not fit 16 bits")
        self.network_key = bytes(self.network_key)
        if len(self.network_key) != 16:
            raise ValueError("network key must be 16 bytes long")
        self.multicast = tuple(self.multicast)

    def channel_mask(self) -> int:
        """Channel bit mask for the configured channel."""
        return 1 << self.channel


@dataclass
class RadioListener:
    """Receives adapter events; each callback is optional."""

    on_device_joined: Callable[[bytes, int], None] | None = None
    on_device_left: Callable[[bytes], None] | None = None
    on_zdo_message: Callable[[int, int, bytes], None] | None = None
    on_zcl_message: Callable[[int, int, int, int, bytes], None] | None = None
    on_request_finished: Callable[[int, int], None] | None = None
    on_coordinator_ready: Callable[[], None] | None = None

    def device_joined(self, ieee_address: bytes, network_address: int) -> None:
        if self.on_device_joined:
            self.on_device_joined(ieee_address, network_address)

    def device_left(self, ieee_address: bytes) -> None:
        if self.on_device_left:
            self.on_device_left(ieee_address)

    def zdo_message_received(self, network_address: int, cluster_id: int, payload: bytes) -> None:
        if self.on_zdo_message:
            self.on_zdo_message(network_address, cluster_id, payload)

    def zcl_message_received(self, network_address: int, endpoint_id: int, cluster_id: int,
                             link_quality: int, payload: bytes) -> None:
        if self.on_zcl_message:
            self.on_zcl_message(network_address, endpoint_id, cluster_id, link_quality, payload)

    def request_finished(self, request_id: int, status: int) -> None:
        if self.on_request_finished:
            self.on_request_finished(request_id, status)

    def coordinator_ready(self) -> None:
        if self.on_coordinator_ready:
            self.on_coordinator_ready()


class Transport:
    """Byte stream to the adapter, built from a reader and a writer."""

    def __init__(self, reader: BinaryIO, writer: BinaryIO, chunk_size: int = 4096) -> None:
        self._reader = reader
        self._writer = writer
        self._chunk_size = chunk_size

    def write(self, data: bytes) -> None:
        """Send bytes to the adapter."""
        self._writer.write(bytes(data))
        flush = getattr(self._writer, "flush", None)
        if flush:
            flush()

    def read(self, timeout: float) -> bytes:
        """Return the bytes available within ``timeout`` seconds, or b"" if none arrived."""
        read = getattr(self._reader, "read1", self._reader.read)
        try:
            fd = self._reader.fileno()
        except (AttributeError, OSError, io.UnsupportedOperation):
            return read(self._chunk_size) or b""
        ready, _, _ = select.select([fd], [], [], timeout)
        if not ready:
            return b""
        return read(self._chunk_size) or b""