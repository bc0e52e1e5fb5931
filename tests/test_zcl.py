import pytest

from zigbridge.zcl import (
    DataType,
    FrameControl,
    data_size,
    read_attributes_request,
    variable_data_size,
    write_attribute_request,
    zcl_header,
)


def test_header_without_manufacturer_code():
    assert zcl_header(FrameControl.DISABLE_DEFAULT_RESPONSE, 5, 0x00) == bytes([0x10, 5, 0x00])


def test_header_with_manufacturer_code_sets_bit_and_code():
    header = zcl_header(FrameControl.CLUSTER_SPECIFIC, 7, 0x02, 0x115F)
    assert header == bytes([0x05, 0x5F, 0x11, 7, 0x02])
    assert header[0] & FrameControl.MANUFACTURER_SPECIFIC


def test_header_length_depends_on_manufacturer_code():
    assert len(zcl_header(0x00, 1, 1)) == 3
    assert len(zcl_header(0x00, 1, 1, 0x1049)) == 5


def test_read_attributes_request_bytes():
    request = read_attributes_request(1, 0, [0x0001, 0x0004])
    assert request == bytes([0x10, 0x01, 0x00, 0x01, 0x00, 0x04, 0x00])


def test_read_attributes_request_empty_list_is_header():
    assert read_attributes_request(9, 0, []) == zcl_header(0x10, 9, 0x00)


def test_write_attribute_request_bytes():
    request = write_attribute_request(3, 0, 0x0010, DataType.IEEE_ADDRESS, b"\x01\x02")
    assert request == bytes([0x10, 3, 0x02, 0x10, 0x00, 0xF0, 0x01, 0x02])


def test_write_attribute_request_manufacturer_specific():
    request = write_attribute_request(2, 0x115F, 0x0200, DataType.UNSIGNED_8, b"\x01")
    assert request[:5] == zcl_header(0x10, 2, 0x02, 0x115F)
    assert request[5:] == bytes([0x00, 0x02, 0x20, 0x01])


@pytest.mark.parametrize(
    "data_type, size",
    [
        (DataType.BOOLEAN, 1),
        (DataType.ENUM_8, 1),
        (DataType.UNSIGNED_16, 2),
        (DataType.ENUM_16, 2),
        (DataType.SIGNED_24, 3),
        (DataType.SINGLE_PRECISION, 4),
        (DataType.BITMAP_40, 5),
        (DataType.UNSIGNED_48, 6),
        (DataType.SIGNED_56, 7),
        (DataType.DOUBLE_PRECISION, 8),
        (DataType.IEEE_ADDRESS, 8),
        (DataType.NO_DATA, 0),
        (DataType.UTC_TIME, 0),
        (DataType.CHARACTER_STRING, 0),
    ],
)
def test_data_size(data_type, size):
    assert data_size(data_type) == size


def test_variable_size_string_consumes_length_byte():
    data = b"\xaa\xbb\x03abc"
    assert variable_data_size(DataType.CHARACTER_STRING, data, 2) == (3, 3)


def test_variable_size_array_takes_rest():
    data = bytes(10)
    assert variable_data_size(DataType.ARRAY, data, 4) == (6, 4)
    assert variable_data_size(DataType.STRUCTURE, data, 0) == (10, 0)


def test_variable_size_fixed_type_keeps_offset():
    assert variable_data_size(DataType.UNSIGNED_32, b"\x00" * 8, 3) == (4, 3)


def test_variable_size_missing_string_length():
    with pytest.raises(ValueError):
        variable_data_size(DataType.OCTET_STRING, b"\x01", 1)