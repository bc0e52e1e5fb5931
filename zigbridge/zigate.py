"""ZiGate adapter: requests, replies and coordinator startup over the ZiGate serial protocol."""

from __future__ import annotations

import logging
import struct
import time
from collections import deque

from .radio import (
    GREEN_POWER_GROUP,
    PERMIT_JOIN_BROADCAST_ADDRESS,
    PROFILE_HA,
    AddressMode,
    LogicalType,
    RadioListener,
    RadioSettings,
    RequestTimeout,
    ZdoCluster,
)
from .zigate_frame import FrameDecoder, build_packet, encode_frame, parse_packet

_log = logging.getLogger(__name__)

REQUEST_TIMEOUT = 2.0
SECURITY_MODE = 0x02
RADIUS = 0x1E

SET_RAW_MODE = 0x0002
GET_NETWORK_STATUS = 0x0009
GET_VERSION = 0x0010
RESET = 0x0011
ERASE_PERSISTENT_DATA = 0x0012
SET_EXTENDED_PANID = 0x0020
SET_CHANNEL_LIST = 0x0021
SET_NETWORK_KEY = 0x0022
SET_LOGICAL_TYPE = 0x0023
START_NETWORK = 0x0024
BIND_REQUEST = 0x0030
UNBIND_REQUEST = 0x0031
NODE_DESCRIPTOR_REQUEST = 0x0042
SIMPLE_DESCRIPTOR_REQUEST = 0x0043
ACTIVE_ENDPOINTS_REQUEST = 0x0045
LEAVE_REQUEST = 0x0047
SET_PERMIT_JOIN = 0x0049
LQI_REQUEST = 0x004E
ADD_GROUP = 0x0060
APS_REQUEST = 0x0530

STATUS = 0x8000
DATA_INDICATION = 0x8002
RESTART_NON_FACTORY = 0x8006
RESTART_FACTORY = 0x8007
DATA_ACK = 0x8011
DEVICE_ANNOUNCE = 0x004D
DEVICE_LEAVE_INDICATION = 0x8048

_ZDO_COMMANDS = {
    ZdoCluster.NODE_DESCRIPTOR_REQUEST: NODE_DESCRIPTOR_REQUEST,
    ZdoCluster.SIMPLE_DESCRIPTOR_REQUEST: SIMPLE_DESCRIPTOR_REQUEST,
    ZdoCluster.ACTIVE_ENDPOINTS_REQUEST: ACTIVE_ENDPOINTS_REQUEST,
}

_STATUS = struct.Struct(">BBH")
_DATA_INDICATION = struct.Struct(">BHHBB")
_DATA_ACK = struct.Struct(">BHBHB")
_NETWORK_STATUS = struct.Struct(">H8sHQB")
_APS_REQUEST = struct.Struct(">BHBBHHBBB")
_ADD_GROUP = struct.Struct(">BHBBH")
_BIND_REQUEST = struct.Struct(">8sBHB")


class ZiGate:
    """Drives a ZiGate coordinator through a byte transport."""

    request_timeout = REQUEST_TIMEOUT

    def __init__(self, transport, settings: RadioSettings | None = None,
                 listener: RadioListener | None = None) -> None:
        self._transport = transport
        self.settings = settings if settings is not None else RadioSettings()
        self.listener = listener if listener is not None else RadioListener()

        self.ieee_address = b""
        self.request_address = bytes(8)
        self.manufacturer_name = ""
        self.model_name = ""
        self.firmware = ""
        self.pan_id: int | None = None

        self.reply_status = 0xFF
        self.reply_data = b""

        self._decoder = FrameDecoder()
        self._queue: deque[bytes] = deque()
        self._command: int | None = None
        self._command_reply = False
        self._request_id = 0
        self._data_received = False
        self._requests: dict[int, int] = {}

    def send_request(self, command: int, data: bytes = b"", request_id: int = 0) -> int:
        """Send a command and wait for its answer; return the status the adapter replied with.

        Reset commands are not waited for. Raises RequestTimeout if no answer arrives.
        """
        _log.debug("--> 0x%04x %s", command, bytes(data).hex(":"))

        self._command_reply = not data
        self._command = command
        self.reply_status = 0xFF
        self.reply_data = b""
        self._request_id = request_id
        self._data_received = False

        self._transport.write(encode_frame(build_packet(command, data)))

        if command in (RESET, ERASE_PERSISTENT_DATA):
            return self.reply_status

        deadline = time.monotonic() + self.request_timeout
        while not self._data_received:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RequestTimeout(f"command 0x{command:04x} was not answered")
            chunk = self._transport.read(remaining)
            if chunk:
                self.receive(chunk)

        return self.reply_status

    def _accepted(self, command: int, data: bytes, request_id: int) -> bool:
        try:
            return self.send_request(command, data, request_id) == 0
        except RequestTimeout as exc:
            _log.debug("%s", exc)
            return False

    def _aps_request(self, request_id: int, address_mode: int, address: int, src_endpoint_id: int,
                     dst_endpoint_id: int, cluster_id: int, payload: bytes) -> bool:
        request = _APS_REQUEST.pack(address_mode, address & 0xFFFF, src_endpoint_id & 0xFF,
                                    dst_endpoint_id & 0xFF, cluster_id & 0xFFFF, PROFILE_HA,
                                    SECURITY_MODE, RADIUS, len(payload) & 0xFF)
        return self._accepted(APS_REQUEST, request + bytes(payload), request_id)

    def unicast_request(self, request_id: int, network_address: int, src_endpoint_id: int,
                        dst_endpoint_id: int, cluster_id: int, payload: bytes) -> bool:
        """Send a ZCL payload to one device; True if the adapter accepted it."""
        return self._aps_request(request_id, AddressMode.NETWORK, network_address,
                                 src_endpoint_id, dst_endpoint_id, cluster_id, payload)

    def multicast_request(self, request_id: int, group_id: int, src_endpoint_id: int,
                          dst_endpoint_id: int, cluster_id: int, payload: bytes) -> bool:
        """Send a ZCL payload to a group; True if the adapter accepted it."""
        return self._aps_request(request_id, AddressMode.GROUP, group_id,
                                 src_endpoint_id, dst_endpoint_id, cluster_id, payload)

    def zdo_request(self, request_id: int, network_address: int, cluster_id: int, data: bytes = b"") -> bool:
        """Send a descriptor or endpoint ZDO request; unsupported clusters are refused."""
        command = _ZDO_COMMANDS.get(cluster_id)
        if command is None:
            return False
        return self._accepted(command, struct.pack(">H", network_address & 0xFFFF) + bytes(data), request_id)

    def bind_request(self, request_id: int, endpoint_id: int, cluster_id: int, address: bytes,
                     dst_endpoint_id: int, unbind: bool = False) -> bool:
        """Bind a cluster of ``request_address`` to a group (2-byte address) or device (IEEE address).

        An empty address binds to the coordinator itself.
        """
        target = bytes(address) if address else self.ieee_address
        if len(target) == 2:
            mode = AddressMode.GROUP
            destination = target[::-1]
        else:
            mode = AddressMode.IEEE
            destination = target.ljust(8, b"\x00")[:8]

        request = _BIND_REQUEST.pack(self.request_address.ljust(8, b"\x00")[:8], endpoint_id & 0xFF,
                                     cluster_id & 0xFFFF, mode)
        request += destination + bytes([dst_endpoint_id & 0xFF or 0x01])
        return self._accepted(UNBIND_REQUEST if unbind else BIND_REQUEST, request, request_id)

    def leave_request(self, request_id: int, network_address: int) -> bool:
        """Ask the device at ``request_address`` to leave the network."""
        data = struct.pack(">H", network_address & 0xFFFF) + self.request_address + b"\x00\x00"
        return self._accepted(LEAVE_REQUEST, data, request_id)

    def lqi_request(self, request_id: int, network_address: int, index: int) -> bool:
        """Request the neighbor table of a router starting at ``index``."""
        data = struct.pack(">HB", network_address & 0xFFFF, index & 0xFF)
        return self._accepted(LQI_REQUEST, data, request_id)

    def permit_join(self, enabled: bool) -> bool:
        """Open joining for 240 seconds at the configured address, or close it everywhere."""
        address = self.settings.permit_join_address if enabled else PERMIT_JOIN_BROADCAST_ADDRESS
        data = struct.pack(">HB", address & 0xFFFF, 0xF0 if enabled else 0x00)
        if not self._accepted(SET_PERMIT_JOIN, data, 0):
            _log.warning("Set permit join request failed")
            return False
        return True

    def soft_reset(self) -> None:
        """Restart the adapter; it answers with a restart notification."""
        self.send_request(RESET)

    def _require(self, what: str, command: int, data: bytes = b"") -> None:
        try:
            status = self.send_request(command, data)
        except RequestTimeout as exc:
            raise RuntimeError(f"{what} request failed") from exc
        if status:
            raise RuntimeError(f"{what} request failed, status 0x{status:02x}")

    def start_coordinator(self, clear: bool) -> None:
        """Configure and start the network; ``clear`` also resets the extended PAN ID.

        Raises RuntimeError when a step fails.
        """
        self._require("Set raw mode", SET_RAW_MODE, b"\x01")
        self._require("Adapter version", GET_VERSION)

        version = self.reply_data
        if len(version) < 4 or version[2] != 3 or version[3] < 0x1B:
            raise RuntimeError(f"Unsupported ZiGate version: {version.hex(':')}")

        self.manufacturer_name = "NXP"
        self.model_name = "ZiGate"
        self.firmware = f"{version[2]:x}.{version[3]:x}"
        _log.info("Adapter type: ZiGate %s", self.firmware)

        self._require("Network status", GET_NETWORK_STATUS)
        if len(self.reply_data) < _NETWORK_STATUS.size:
            raise RuntimeError(f"Network status reply {self.reply_data.hex(':')} is too short")
        _, self.ieee_address, self.pan_id, _, _ = _NETWORK_STATUS.unpack_from(self.reply_data)

        if clear:
            self._require("Set extended PAN ID", SET_EXTENDED_PANID, self.ieee_address)

        self._require("Set channel list", SET_CHANNEL_LIST, struct.pack(">I", self.settings.channel_mask()))
        self._require("Set network key", SET_NETWORK_KEY, b"\x02" + self.settings.network_key)
        self._require("Set adapter logical type", SET_LOGICAL_TYPE, bytes([LogicalType.COORDINATOR]))
        self._require("Start network", START_NETWORK)

        if clear:
            try:
                status = self.send_request(GET_NETWORK_STATUS)
            except RequestTimeout:
                status = 0xFF
            if not status and len(self.reply_data) >= _NETWORK_STATUS.size:
                _, _, self.pan_id, _, _ = _NETWORK_STATUS.unpack_from(self.reply_data)
                _log.info("New network started")

        for group_id in self.settings.multicast:
            if group_id == GREEN_POWER_GROUP:
                continue
            request = _ADD_GROUP.pack(AddressMode.NETWORK, 0x0000, 0x01, 0x01, group_id & 0xFFFF)
            if not self._accepted(ADD_GROUP, request, 0):
                _log.warning("Add group 0x%04x request failed", group_id)

        _log.info("ZiGate managed PAN ID: 0x%04x", self.pan_id or 0)
        self.listener.coordinator_ready()

    def receive(self, data: bytes) -> None:
        """Feed bytes read from the adapter and handle every complete packet."""
        self._queue.extend(self._decoder.feed(data))
        while self._queue:
            packet = self._queue.popleft()
            try:
                command, payload = parse_packet(packet)
            except ValueError as exc:
                _log.warning("%s", exc)
                continue
            self.handle_packet(command, payload)

    def handle_packet(self, command: int, payload: bytes) -> None:
        """Handle one checked packet from the adapter."""
        _log.debug("<-- 0x%04x %s", command, payload.hex(":"))

        if self._command is not None and command == (self._command | 0x8000):
            self.reply_data = payload[:-1]
            if self._command_reply:
                self._data_received = True
            return

        if command == STATUS:
            self._handle_status(payload)
        elif command == DATA_INDICATION:
            self._handle_data_indication(payload)
        elif command in (RESTART_NON_FACTORY, RESTART_FACTORY):
            try:
                self.start_coordinator(command == RESTART_FACTORY)
            except RuntimeError as exc:
                _log.warning("%s", exc)
                _log.warning("Coordinator startup failed")
        elif command == DATA_ACK:
            if len(payload) >= _DATA_ACK.size:
                status, _, _, _, sequence = _DATA_ACK.unpack_from(payload)
                self._finish(sequence, status)
        elif command == DEVICE_ANNOUNCE:
            if len(payload) >= 10:
                (network_address,) = struct.unpack_from(">H", payload)
                self.listener.device_joined(payload[2:10], network_address)
        elif command == DEVICE_LEAVE_INDICATION:
            self.listener.device_left(payload[:8])

    def _finish(self, sequence: int, status: int) -> None:
        request_id = self._requests.pop(sequence, None)
        if request_id is not None:
            self.listener.request_finished(request_id, status)

    def _handle_status(self, payload: bytes) -> None:
        if len(payload) < _STATUS.size:
            return
        status, sequence, command = _STATUS.unpack_from(payload)
        if command != self._command:
            return
        self.reply_status = status
        if self._command_reply:
            return
        if not status:
            self._requests[sequence] = self._request_id
        self._data_received = True

    def _handle_data_indication(self, payload: bytes) -> None:
        offset = _DATA_INDICATION.size
        if (len(payload) < offset + 6 or payload[offset] != AddressMode.NETWORK
                or payload[offset + 3] not in (AddressMode.GROUP, AddressMode.NETWORK)):
            _log.warning("Unsupported address mode in incoming message: %s", payload.hex(":"))
            return

        status, profile_id, cluster_id, src_endpoint_id, _ = _DATA_INDICATION.unpack_from(payload)
        (network_address,) = struct.unpack_from(">H", payload, offset + 1)
        offset += 6

        if not profile_id:
            if offset < len(payload):
                self._finish(payload[offset], status)
                offset += 1
            self.listener.zdo_message_received(network_address, cluster_id, payload[offset:])
            return

        self.listener.zcl_message_received(network_address, src_endpoint_id, cluster_id,
                                           payload[-1], payload[offset:])