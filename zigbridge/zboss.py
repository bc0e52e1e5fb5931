"""ZBOSS NCP adapter: requests, replies and coordinator startup over the ZBOSS serial protocol."""

from __future__ import annotations

import logging
import struct
import time
from collections import deque

from .radio import (
    PERMIT_JOIN_BROADCAST_ADDRESS,
    AddressMode,
    LogicalType,
    RadioListener,
    RadioSettings,
    RequestTimeout,
    ZdoCluster,
)
from .zboss_frame import (
    FLAG_ACK,
    TYPE_RESPONSE,
    ZBossFrameDecoder,
    ZBossFrameError,
    build_acknowledge,
    build_request_frame,
    parse_packet,
)

_log = logging.getLogger(__name__)

REQUEST_TIMEOUT = 2.0
ROUTE_DISCOVERY = 0x02
DEFAULT_RADIUS = 0x03

GET_MODULE_VERSION = 0x0001
NCP_RESET = 0x0002
GET_ZIGBEE_ROLE = 0x0004
SET_ZIGBEE_ROLE = 0x0005
GET_ZIGBEE_CHANNEL_MASK = 0x0006
SET_ZIGBEE_CHANNEL_MASK = 0x0007
GET_PAN_ID = 0x0009
SET_PAN_ID = 0x000A
GET_LOCAL_IEEE_ADDR = 0x000B
SET_TX_POWER = 0x0011
SET_RX_ON_WHEN_IDLE = 0x0013
SET_ED_TIMEOUT = 0x0017
SET_NWK_KEY = 0x001B
GET_NWK_KEYS = 0x001E
NCP_RESET_IND = 0x002B
SET_TC_POLICY = 0x0032
SET_MAX_CHILDREN = 0x0034
AF_SET_SIMPLE_DESC = 0x0101
ZDO_NODE_DESC_REQ = 0x0204
ZDO_SIMPLE_DESC_REQ = 0x0205
ZDO_ACTIVE_EP_REQ = 0x0206
ZDO_BIND_REQ = 0x0208
ZDO_UNBIND_REQ = 0x0209
ZDO_MGMT_LEAVE_REQ = 0x020A
ZDO_PERMIT_JOINING_REQ = 0x020B
ZDO_DEV_ANNCE_IND = 0x020C
ZDO_MGMT_LQI_REQ = 0x0210
APSDE_DATA_REQ = 0x0301
APSDE_DATA_IND = 0x0306
NWK_FORMATION = 0x0401
NWK_LEAVE_IND = 0x040B
NWK_START_WITHOUT_FORMATION = 0x041D

POLICY_TC_LINK_KEYS_REQUIRED = 0x0000
POLICY_IC_REQUIRED = 0x0001
POLICY_TC_REJOIN_ENABLED = 0x0002
POLICY_IGNORE_TC_REJOIN = 0x0003
POLICY_APS_INSECURE_JOIN = 0x0004
POLICY_DISABLE_NWK_MGMT_CHANNEL_UPDATE = 0x0005

_ZDO_COMMANDS = {
    ZdoCluster.NODE_DESCRIPTOR_REQUEST: ZDO_NODE_DESC_REQ,
    ZdoCluster.SIMPLE_DESCRIPTOR_REQUEST: ZDO_SIMPLE_DESC_REQ,
    ZdoCluster.ACTIVE_ENDPOINTS_REQUEST: ZDO_ACTIVE_EP_REQ,
}

_SKIPPED_ENDPOINTS = (0x08, 0x0C)

_DATA_REQUEST = struct.Struct("<BHQHHBBBBBBHB")
_BIND_REQUEST = struct.Struct("<H8sBHB8sB")
_LEAVE_REQUEST = struct.Struct("<H8sB")
_PERMIT_JOIN = struct.Struct("<HBB")
_SET_POLICY = struct.Struct("<HB")
_REGISTER_ENDPOINT = struct.Struct("<BHHBBB")
_FORMATION = struct.Struct("<BBIBBHQ")
_NODE_DESCRIPTOR_SIZE = 13
_SIMPLE_DESCRIPTOR_SIZE = 8
_INCOMING_MESSAGE = struct.Struct("<BHBHHHBBHHBHHBBB")
_DEVICE_ANNOUNCE = struct.Struct("<H8sB")


class ZBoss:
    """Drives a ZBOSS NCP coordinator through a byte transport."""

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

        self.reply_status = 0xFF
        self.reply_data = b""

        self._clear = False
        self._esp = False
        self._command: int | None = None
        self._sequence_id = 0
        self._acknowledge_id = 0
        self._acknowledged = False
        self._data_received = False
        self._lqi_requests: dict[int, int] = {}
        self._decoder = ZBossFrameDecoder()
        self._queue: deque[bytes] = deque()
        self._policy = [
            (POLICY_TC_LINK_KEYS_REQUIRED, 0x00),
            (POLICY_IC_REQUIRED, 0x00),
            (POLICY_TC_REJOIN_ENABLED, 0x01),
            (POLICY_IGNORE_TC_REJOIN, 0x00),
            (POLICY_APS_INSECURE_JOIN, 0x00),
            (POLICY_DISABLE_NWK_MGMT_CHANNEL_UPDATE, 0x00),
        ]

    def send_request(self, command: int, data: bytes = b"", request_id: int = 0) -> int:
        """Send a command and wait for its acknowledgement or answer; return the reply status.

        ZDO and APS requests (other than permit joining) are only waited for until the
        adapter acknowledges the frame. Raises RequestTimeout if nothing arrives in time.
        """
        _log.debug("--> 0x%04x %s", command, bytes(data).hex(":"))

        self._command = command
        self.reply_status = 0xFF
        self._acknowledged = False
        self._data_received = False
        wait_acknowledge = bool(command & 0x0200) and command != ZDO_PERMIT_JOINING_REQ

        self._transport.write(build_request_frame(self._sequence_id, command, request_id, data))

        deadline = time.monotonic() + self.request_timeout
        while not (self._acknowledged if wait_acknowledge else self._data_received):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RequestTimeout(f"command 0x{command:04x} was not answered")
            chunk = self._transport.read(remaining)
            if chunk:
                self.receive(chunk)

        return self.reply_status

    def _sent(self, command: int, data: bytes, request_id: int) -> bool:
        try:
            self.send_request(command, data, request_id)
        except RequestTimeout as exc:
            _log.debug("%s", exc)
            return False
        return True

    def _accepted(self, command: int, data: bytes = b"", request_id: int = 0) -> bool:
        try:
            return self.send_request(command, data, request_id) == 0
        except RequestTimeout as exc:
            _log.debug("%s", exc)
            return False

    def _require(self, what: str, command: int, data: bytes = b"") -> None:
        try:
            status = self.send_request(command, data)
        except RequestTimeout as exc:
            raise RuntimeError(f"{what} request failed") from exc
        if status:
            raise RuntimeError(f"{what} request failed, status 0x{status:02x}")

    def _data_request(self, request_id: int, address_mode: int, address: int, src_endpoint_id: int,
                      dst_endpoint_id: int, cluster_id: int, payload: bytes) -> bool:
        endpoint = self.settings.endpoints.get(src_endpoint_id)
        profile_id = endpoint.profile_id if endpoint is not None else 0x0000
        request = _DATA_REQUEST.pack(0x15, len(payload) & 0xFFFF, address & 0xFFFF, profile_id & 0xFFFF,
                                     cluster_id & 0xFFFF, dst_endpoint_id & 0xFF, src_endpoint_id & 0xFF,
                                     DEFAULT_RADIUS, address_mode, ROUTE_DISCOVERY, 0, 0, 0)
        return self._sent(APSDE_DATA_REQ, request + bytes(payload), request_id)

    def unicast_request(self, request_id: int, network_address: int, src_endpoint_id: int,
                        dst_endpoint_id: int, cluster_id: int, payload: bytes) -> bool:
        """Send a ZCL payload to one device; True once the adapter acknowledged it."""
        return self._data_request(request_id, AddressMode.NETWORK, network_address,
                                  src_endpoint_id, dst_endpoint_id, cluster_id, payload)

    def multicast_request(self, request_id: int, group_id: int, src_endpoint_id: int,
                          dst_endpoint_id: int, cluster_id: int, payload: bytes) -> bool:
        """Send a ZCL payload to a group; True once the adapter acknowledged it."""
        return self._data_request(request_id, AddressMode.GROUP, group_id,
                                  src_endpoint_id, dst_endpoint_id, cluster_id, payload)

    def zdo_request(self, request_id: int, network_address: int, cluster_id: int, data: bytes = b"") -> bool:
        """Send a descriptor or endpoint ZDO request; unsupported clusters are refused."""
        command = _ZDO_COMMANDS.get(cluster_id)
        if command is None:
            return False
        return self._sent(command, struct.pack("<H", network_address & 0xFFFF) + bytes(data), request_id)

    def bind_request(self, request_id: int, network_address: int, endpoint_id: int, cluster_id: int,
                     address: bytes, dst_endpoint_id: int, unbind: bool = False) -> bool:
        """Bind a cluster of ``request_address`` to a group (2-byte address) or device (IEEE address).

        An empty address binds to the coordinator itself.
        """
        target = bytes(address) if address else self.ieee_address
        if len(target) == 2:
            mode = AddressMode.GROUP
            destination = target.ljust(8, b"\x00")
            destination_endpoint = 0x00
        else:
            mode = AddressMode.IEEE
            destination = target.ljust(8, b"\x00")[:8][::-1]
            destination_endpoint = dst_endpoint_id & 0xFF or 0x01

        source = self.request_address.ljust(8, b"\x00")[:8][::-1]
        request = _BIND_REQUEST.pack(network_address & 0xFFFF, source, endpoint_id & 0xFF,
                                     cluster_id & 0xFFFF, mode, destination, destination_endpoint)
        return self._sent(ZDO_UNBIND_REQ if unbind else ZDO_BIND_REQ, request, request_id)

    def leave_request(self, request_id: int, network_address: int) -> bool:
        """Ask the device at ``request_address`` to leave the network."""
        target = self.request_address.ljust(8, b"\x00")[:8][::-1]
        request = _LEAVE_REQUEST.pack(network_address & 0xFFFF, target, 0x00)
        return self._sent(ZDO_MGMT_LEAVE_REQ, request, request_id)

    def lqi_request(self, request_id: int, network_address: int, index: int) -> bool:
        """Request the neighbor table of a router starting at ``index``."""
        self._lqi_requests[request_id & 0xFF] = network_address & 0xFFFF
        data = struct.pack("<HB", network_address & 0xFFFF, index & 0xFF)
        return self._sent(ZDO_MGMT_LQI_REQ, data, request_id)

    def permit_join(self, enabled: bool) -> bool:
        """Open joining for 240 seconds at the configured address, or close it everywhere."""
        address = self.settings.permit_join_address if enabled else PERMIT_JOIN_BROADCAST_ADDRESS
        duration = 0xF0 if enabled else 0x00

        if address == PERMIT_JOIN_BROADCAST_ADDRESS and not self._accepted(
                ZDO_PERMIT_JOINING_REQ, _PERMIT_JOIN.pack(0x0000, duration, 0x01)):
            _log.warning("Local permit join request failed")
            return False

        if not self._esp and not self._accepted(
                ZDO_PERMIT_JOINING_REQ, _PERMIT_JOIN.pack(address & 0xFFFF, duration, 0x01)):
            _log.warning("Permit join request failed")
            return False

        return True

    def soft_reset(self) -> None:
        """Restart the adapter, erasing its network when a new one is to be formed."""
        try:
            self.send_request(NCP_RESET, b"\x02" if self._clear else b"\x00")
        except RequestTimeout as exc:
            _log.debug("%s", exc)

    def start_coordinator(self) -> None:
        """Check or form the network, register the endpoints and report the coordinator ready.

        If the stored network differs from the settings and writing is allowed, the adapter
        is reset and the network formed anew after the restart. Raises RuntimeError when a
        step fails.
        """
        channel_mask = self.settings.channel_mask()

        self._require("Local IEEE address", GET_LOCAL_IEEE_ADDR, b"\x00")
        local_address = self.reply_data[1:9].ljust(8, b"\x00")

        for policy_id, value in self._policy:
            if not self._accepted(SET_TC_POLICY, _SET_POLICY.pack(policy_id, value)):
                _log.warning("Set policy 0x%04x request failed", policy_id)

        if not self._clear:
            self._require("Adapter version", GET_MODULE_VERSION)
            version = self.reply_data
            if len(version) < 4:
                raise RuntimeError(f"Adapter version reply {version.hex(':')} is too short")

            self.manufacturer_name = "Nordic Semiconductor"
            self.model_name = "ZBOSS NCP"
            self.firmware = f"{version[3]}.{version[2]}.{version[1]}.{version[0]}"
            _log.info("Adapter type: %s (%s)", self.model_name, self.firmware)

            check = False

            self._require("Get adapter logical type", GET_ZIGBEE_ROLE)
            if self.reply_data[:1] != bytes([LogicalType.COORDINATOR]):
                _log.warning("Adapter logical type doesn't match coordinator")
                check = True

            self._require("Get adapter channel", GET_ZIGBEE_CHANNEL_MASK)
            if int.from_bytes(self.reply_data[2:6], "little") != channel_mask:
                _log.warning("Adapter channel doesn't match configuration")
                check = True

            self._require("Get adapter panid", GET_PAN_ID)
            if int.from_bytes(self.reply_data[:2], "little") != self.settings.pan_id:
                _log.warning("Adapter panid doesn't match configuration")
                check = True

            if check:
                if not self.settings.write:
                    raise RuntimeError("Adapter configuration can't be changed, write protection enabled")
                self._clear = True
                self.soft_reset()
                return

            self._require("Network startup", NWK_START_WITHOUT_FORMATION)
        else:
            _log.info("Starting new network...")
            self._clear = False

            self._require("Set adapter logical type", SET_ZIGBEE_ROLE, bytes([LogicalType.COORDINATOR]))
            self._require("Set channel mask", SET_ZIGBEE_CHANNEL_MASK, b"\x00" + struct.pack("<I", channel_mask))
            self._require("Set panid", SET_PAN_ID, struct.pack("<H", self.settings.pan_id))
            self._require("Set nwk", SET_NWK_KEY, self.settings.network_key + b"\x00")

            formation = _FORMATION.pack(0x01, 0x00, channel_mask, 0x05, 0x00, 0x0000,
                                        int.from_bytes(local_address, "little"))
            self._require("Network startup", NWK_FORMATION, formation)

        for endpoint_id, endpoint in sorted(self.settings.endpoints.items()):
            if endpoint_id in _SKIPPED_ENDPOINTS:
                continue
            request = _REGISTER_ENDPOINT.pack(endpoint_id & 0xFF, endpoint.profile_id & 0xFFFF,
                                              endpoint.device_id & 0xFFFF, 0x00,
                                              len(endpoint.in_clusters) & 0xFF, len(endpoint.out_clusters) & 0xFF)
            request += b"".join(struct.pack("<H", cluster & 0xFFFF)
                                for cluster in (*endpoint.in_clusters, *endpoint.out_clusters))
            if not self._accepted(AF_SET_SIMPLE_DESC, request):
                _log.warning("Endpoint 0x%02x register request failed", endpoint_id)
                continue
            _log.info("Endpoint 0x%02x registered successfully", endpoint_id)

        for command, value, what in (
            (SET_TX_POWER, self.settings.power & 0xFF, "Set TX power"),
            (SET_RX_ON_WHEN_IDLE, 0x01, "Set RX enabled when idle"),
            (SET_ED_TIMEOUT, 0x08, "Set end device timeout"),
            (SET_MAX_CHILDREN, 0x64, "Set maximum children number"),
        ):
            if not self._accepted(command, bytes([value])):
                _log.warning("%s request failed", what)

        self.ieee_address = local_address[::-1]
        self.listener.coordinator_ready()

    def _handle_reset(self) -> None:
        self._sequence_id = 0
        try:
            self.start_coordinator()
        except RuntimeError as exc:
            _log.warning("%s", exc)
            _log.warning("Coordinator startup failed")

    def receive(self, data: bytes) -> None:
        """Feed bytes read from the adapter, acknowledge frames and handle every complete packet."""
        frames = self._decoder.feed(data)

        if self._decoder.rom_banner:
            self._decoder.rom_banner = False
            self._handle_reset()
            self._esp = True
            return

        for header, packet in frames:
            if header.flags & FLAG_ACK:
                if self._sequence_id == (header.flags >> 4 & 0x03):
                    self._sequence_id = (self._sequence_id + 1) & 0x03
                    self._acknowledged = True
            else:
                self._acknowledge_id = header.flags >> 2 & 0x03
                self._transport.write(build_acknowledge(self._acknowledge_id))
            if packet is not None:
                self._queue.append(packet)

        while self._queue:
            packet = self._queue.popleft()
            try:
                packet_type, command, body = parse_packet(packet)
            except ZBossFrameError as exc:
                _log.warning("%s", exc)
                continue
            self.handle_packet(packet_type, command, body)

    def handle_packet(self, packet_type: int, command: int, data: bytes) -> None:
        """Handle one packet from the adapter."""
        data = bytes(data)
        _log.debug("<-- 0x%04x %s", command, data.hex(":"))

        response = packet_type == TYPE_RESPONSE and len(data) >= 3
        if response and command == self._command:
            self.reply_status = data[2]
            self.reply_data = data[3:]
            self._data_received = True

        try:
            self._dispatch(packet_type, command, data)
        except (struct.error, IndexError):
            _log.warning("Malformed ZBoss packet 0x%04x with data %s", command, data.hex(":") or "(empty)")

        if response:
            self.listener.request_finished(data[0], data[2])

    def _dispatch(self, packet_type: int, command: int, data: bytes) -> None:
        if command in (NCP_RESET, NCP_RESET_IND):
            self._handle_reset()
        elif command == ZDO_NODE_DESC_REQ:
            reply = data[3:]
            network_address = reply[-2:]
            payload = bytes([data[2]]) + network_address + reply[:_NODE_DESCRIPTOR_SIZE]
            self.listener.zdo_message_received(int.from_bytes(network_address, "little"),
                                               ZdoCluster.NODE_DESCRIPTOR_REQUEST, payload)
        elif command == ZDO_SIMPLE_DESC_REQ:
            self._handle_simple_descriptor(data)
        elif command == ZDO_ACTIVE_EP_REQ:
            if len(data) < 5:
                raise IndexError("active endpoints response is too short")
            network_address = data[-2:]
            payload = bytes([data[2]]) + network_address + data[3:len(data) - 2]
            self.listener.zdo_message_received(int.from_bytes(network_address, "little"),
                                               ZdoCluster.ACTIVE_ENDPOINTS_REQUEST, payload)
        elif command == ZDO_MGMT_LQI_REQ:
            network_address = self._lqi_requests.pop(data[0], 0)
            self.listener.zdo_message_received(network_address, ZdoCluster.LQI_REQUEST, data[2:])
        elif command == ZDO_DEV_ANNCE_IND:
            network_address, ieee_address, _ = _DEVICE_ANNOUNCE.unpack_from(data)
            self.listener.device_joined(ieee_address[::-1], network_address)
        elif command == APSDE_DATA_IND:
            fields = _INCOMING_MESSAGE.unpack_from(data)
            data_length, src_address = fields[1], fields[3]
            src_endpoint_id, cluster_id, link_quality = fields[7], fields[8], fields[13]
            start = _INCOMING_MESSAGE.size
            self.listener.zcl_message_received(src_address, src_endpoint_id, cluster_id, link_quality,
                                               data[start:start + data_length])
        elif command == NWK_LEAVE_IND:
            if len(data) < 8:
                raise IndexError("leave indication is too short")
            self.listener.device_left(data[:8][::-1])
        elif packet_type != TYPE_RESPONSE:
            _log.debug("Unrecognized ZBoss command 0x%04x with data %s", command, data.hex(":") or "(empty)")

    def _handle_simple_descriptor(self, data: bytes) -> None:
        reply = data[3:]
        if len(reply) < _SIMPLE_DESCRIPTOR_SIZE:
            raise IndexError("simple descriptor response is too short")
        network_address = data[-2:]
        in_count, out_count = reply[6], reply[7]
        in_end = _SIMPLE_DESCRIPTOR_SIZE + in_count * 2
        payload = (bytes([data[2]]) + network_address
                   + bytes([(in_count * 2 + out_count * 2 + _SIMPLE_DESCRIPTOR_SIZE) & 0xFF])
                   + reply[:6]
                   + bytes([in_count]) + reply[_SIMPLE_DESCRIPTOR_SIZE:in_end]
                   + bytes([out_count]) + reply[in_end:in_end + out_count * 2])
        self.listener.zdo_message_received(int.from_bytes(network_address, "little"),
                                           ZdoCluster.SIMPLE_DESCRIPTOR_REQUEST, payload)