import io
import socket

import pytest

from zigbridge.radio import (
    EndpointDescriptor,
    RadioListener,
    RadioSettings,
    Transport,
)


def test_channel_mask_has_single_bit_for_channel():
    settings = RadioSettings(channel=15)
    mask = settings.channel_mask()
    assert mask.bit_count() == 1
    assert mask.bit_length() - 1 == 15


def test_default_channel_mask():
    assert RadioSettings().channel_mask() == 0x00000800


@pytest.mark.parametrize("channel", [10, 27, 0])
def test_invalid_channel_rejected(channel):
    with pytest.raises(ValueError):
        RadioSettings(channel=channel)


def test_invalid_network_key_rejected():
    with pytest.raises(ValueError):
        RadioSettings(network_key=b"\x01\x02")


def test_invalid_pan_id_rejected():
    with pytest.raises(ValueError):
        RadioSettings(pan_id=0x10000)


def test_settings_normalise_key_and_groups():
    settings = RadioSettings(network_key=bytearray(range(16)), multicast=[0x0001, 0x0002])
    assert settings.network_key == bytes(range(16))
    assert settings.multicast == (0x0001, 0x0002)


def test_endpoints_stored_by_id():
    endpoint = EndpointDescriptor(endpoint_id=1, in_clusters=(0x0000, 0x0006))
    settings = RadioSettings(endpoints={1: endpoint})
    assert settings.endpoints[1].in_clusters == (0x0000, 0x0006)


def test_listener_dispatches_callbacks():
    events = []
    listener = RadioListener(
        on_device_joined=lambda ieee, nwk: events.append(("joined", ieee, nwk)),
        on_device_left=lambda ieee: events.append(("left", ieee)),
        on_zdo_message=lambda nwk, cluster, payload: events.append(("zdo", nwk, cluster, payload)),
        on_zcl_message=lambda nwk, ep, cluster, lqi, payload: events.append(("zcl", nwk, ep, cluster, lqi, payload)),
        on_request_finished=lambda rid, status: events.append(("finished", rid, status)),
        on_coordinator_ready=lambda: events.append(("ready",)),
    )
    listener.device_joined(b"\x01" * 8, 0x1234)
    listener.device_left(b"\x01" * 8)
    listener.zdo_message_received(0x1234, 0x8005, b"\x00")
    listener.zcl_message_received(0x1234, 1, 0x0006, 200, b"\x18")
    listener.request_finished(3, 0)
    listener.coordinator_ready()
    assert events == [
        ("joined", b"\x01" * 8, 0x1234),
        ("left", b"\x01" * 8),
        ("zdo", 0x1234, 0x8005, b"\x00"),
        ("zcl", 0x1234, 1, 0x0006, 200, b"\x18"),
        ("finished", 3, 0),
        ("ready",),
    ]


def test_listener_partial_callbacks():
    seen = []
    listener = RadioListener(on_request_finished=lambda rid, status: seen.append((rid, status)))
    listener.device_left(b"\x00" * 8)
    listener.request_finished(1, 0x86)
    assert seen == [(1, 0x86)]


def test_transport_write_and_read_streams():
    reader = io.BytesIO(b"\x01\x02\x03")
    writer = io.BytesIO()
    transport = Transport(reader, writer)
    transport.write(b"\xaa\xbb")
    assert writer.getvalue() == b"\xaa\xbb"
    assert transport.read(0.1) == b"\x01\x02\x03"
    assert transport.read(0.1) == b""


def test_transport_over_socket_times_out_then_reads():
    left, right = socket.socketpair()
    try:
        reader = left.makefile("rb", buffering=0)
        writer = right.makefile("wb", buffering=0)
        transport = Transport(reader, writer)
        assert transport.read(0.01) == b""
        right.sendall(b"\x01\x02")
        assert transport.read(1.0) == b"\x01\x02"
        transport.write(b"\x03")
        assert left.recv(16) == b"\x03"
    finally:
        left.close()
        right.close()