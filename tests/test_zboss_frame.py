import pytest

from zigbridge.zboss_frame import (
    FLAG_ACK,
    FLAG_FIRST_FRAGMENT,
    FLAG_LAST_FRAGMENT,
    NCP_API_HL,
    TYPE_REQUEST,
    LowLevelHeader,
    ZBossFrameDecoder,
    ZBossFrameError,
    build_acknowledge,
    build_request_frame,
    crc8,
    crc16,
    parse_packet,
)


def test_crc8_table_values():
    assert crc8(b"") == 0
    assert crc8(b"\x00") == 0xEA
    assert crc8(b"\x01") == 0xD4


def test_crc16_table_values():
    assert crc16(b"") == 0
    assert crc16(b"\x00") == 0
    assert crc16(b"\x01") == 0x1189


def test_crc16_check_value():
    assert crc16(b"123456789") == 0x2189


def test_header_round_trip():
    header = LowLevelHeader(17, NCP_API_HL, 0xC4)
    raw = header.pack()
    assert raw[:2] == b"\xde\xad"
    assert len(raw) == 7
    assert raw[6] == crc8(raw[2:6])
    assert LowLevelHeader.unpack(raw) == header


def test_header_bad_signature():
    raw = bytearray(LowLevelHeader(5).pack())
    raw[0] = 0x00
    with pytest.raises(ZBossFrameError):
        LowLevelHeader.unpack(bytes(raw))


def test_header_bad_crc():
    raw = bytearray(LowLevelHeader(5).pack())
    raw[6] ^= 0xFF
    with pytest.raises(ZBossFrameError):
        LowLevelHeader.unpack(bytes(raw))


def test_header_too_short():
    with pytest.raises(ZBossFrameError):
        LowLevelHeader.unpack(b"\xde\xad\x05")


def test_acknowledge_frame():
    raw = build_acknowledge(2)
    assert len(raw) == 7
    header = LowLevelHeader.unpack(raw)
    assert header.length == 5
    assert header.packet_type == NCP_API_HL
    assert header.flags == FLAG_ACK | (2 << 4)


def test_request_frame_layout():
    data = b"\x01\x02\x03"
    raw = build_request_frame(1, 0x0301, 7, data)
    header = LowLevelHeader.unpack(raw)
    assert header.length == len(data) + 12
    assert header.length + 2 == len(raw)
    assert header.flags == (1 << 2) | FLAG_FIRST_FRAGMENT | FLAG_LAST_FRAGMENT
    body = raw[9:]
    assert int.from_bytes(raw[7:9], "little") == crc16(body)
    assert body[:4] == bytes((0x00, TYPE_REQUEST, 0x01, 0x03))


def test_request_frame_round_trip_through_decoder():
    decoder = ZBossFrameDecoder()
    frames = decoder.feed(build_request_frame(3, 0x0204, 9, b"\xaa\xbb"))
    assert len(frames) == 1
    header, packet = frames[0]
    assert header.flags >> 2 & 0x03 == 3
    assert parse_packet(packet) == (TYPE_REQUEST, 0x0204, b"\x09\xaa\xbb")


def test_decoder_split_and_garbage():
    decoder = ZBossFrameDecoder()
    raw = build_request_frame(0, 0x0001, 1)
    assert decoder.feed(b"\x55\x66" + raw[:5]) == []
    frames = decoder.feed(raw[5:])
    assert len(frames) == 1
    assert parse_packet(frames[0][1])[1] == 0x0001


def test_decoder_two_frames_and_ack():
    decoder = ZBossFrameDecoder()
    first = build_request_frame(0, 0x0002, 1, b"\x00")
    frames = decoder.feed(first + build_acknowledge(1))
    assert len(frames) == 2
    assert frames[1][0].flags & FLAG_ACK
    assert frames[1][1] is None
    assert parse_packet(frames[0][1])[2] == b"\x01\x00"


def test_decoder_packet_crc_mismatch_keeps_header():
    decoder = ZBossFrameDecoder()
    raw = bytearray(build_request_frame(0, 0x0006, 1, b"\x10"))
    raw[-1] ^= 0xFF
    follow = build_request_frame(1, 0x0009, 2)
    frames = decoder.feed(bytes(raw) + follow)
    assert len(frames) == 2
    assert frames[0][1] is None
    assert parse_packet(frames[1][1])[1] == 0x0009


def test_decoder_skips_bad_header():
    decoder = ZBossFrameDecoder()
    raw = bytearray(build_request_frame(0, 0x0006, 1))
    raw[6] ^= 0xFF
    follow = build_request_frame(2, 0x000B, 3)
    frames = decoder.feed(bytes(raw) + follow)
    assert len(frames) == 1
    assert parse_packet(frames[0][1])[1] == 0x000B


def test_decoder_rom_banner():
    decoder = ZBossFrameDecoder()
    assert decoder.feed(b"ESP-ROM:esp32c6") == []
    assert decoder.rom_banner is True
    frames = decoder.feed(build_acknowledge(0))
    assert len(frames) == 1


def test_parse_packet_too_short():
    with pytest.raises(ZBossFrameError):
        parse_packet(b"\x00\x01")