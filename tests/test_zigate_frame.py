import pytest

from zigbridge.zigate_frame import (
    FRAME_END,
    FRAME_ESCAPE,
    FRAME_START,
    FrameDecoder,
    ZiGateChecksumError,
    build_packet,
    checksum,
    encode_frame,
    parse_packet,
)


def test_encode_frame_keeps_high_bytes_unescaped():
    assert encode_frame(b"\x10\xab") == b"\x01\x10\xab\x03"


def test_encode_frame_escapes_low_bytes():
    frame = encode_frame(bytes(range(0x10)))
    body = frame[1:-1]
    assert frame[0] == FRAME_START
    assert frame[-1] == FRAME_END
    assert len(body) == 32
    assert body[0::2] == bytes([FRAME_ESCAPE]) * 16
    assert all(byte >= 0x10 for byte in body[1::2])


def test_build_packet_without_data():
    assert build_packet(0x0010) == b"\x00\x10\x00\x00\x10"


def test_build_packet_appends_zero_byte_to_data():
    packet = build_packet(0x0049, b"\xff\xfc\xf0")
    assert packet[5:] == b"\xff\xfc\xf0\x00"
    assert packet[2:4] == (4).to_bytes(2, "big")


def test_checksum_is_stored_in_header():
    packet = build_packet(0x0530, b"\x02\x12\x34")
    assert packet[4] == checksum(0x0530, packet[5:])


@pytest.mark.parametrize("command,data", [(0x0002, b"\x01"), (0x0010, b""), (0x0530, bytes(range(40)))])
def test_build_and_parse_round_trip(command, data):
    parsed_command, payload = parse_packet(build_packet(command, data))
    assert parsed_command == command
    assert payload == (data + b"\x00" if data else b"")


def test_parse_packet_rejects_bad_checksum():
    packet = bytearray(build_packet(0x0002, b"\x01"))
    packet[4] ^= 0xFF
    with pytest.raises(ZiGateChecksumError):
        parse_packet(bytes(packet))


def test_parse_packet_rejects_short_packet():
    with pytest.raises(ValueError):
        parse_packet(b"\x80\x00")


def test_decoder_round_trip():
    packet = build_packet(0x0530, bytes(range(20)))
    assert FrameDecoder().feed(encode_frame(packet)) == [packet]


def test_decoder_handles_split_frames():
    packet = build_packet(0x0024)
    frame = encode_frame(packet)
    decoder = FrameDecoder()
    assert decoder.feed(frame[:4]) == []
    assert decoder.feed(frame[4:]) == [packet]


def test_decoder_returns_several_frames():
    first = build_packet(0x0002, b"\x01")
    second = build_packet(0x0049, b"\x12\x34\xf0")
    decoder = FrameDecoder()
    assert decoder.feed(encode_frame(first) + encode_frame(second)) == [first, second]


def test_decoder_waits_on_garbage_prefix():
    packet = build_packet(0x0010)
    decoder = FrameDecoder()
    assert decoder.feed(b"\xff" + encode_frame(packet)) == []
    assert decoder.feed(encode_frame(packet)) == []