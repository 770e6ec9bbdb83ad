import hashlib

import pytest

from iavl.encoding import (
    EncodingError,
    bytes_size,
    decode_bytes,
    decode_uvarint,
    decode_varint,
    encode_32bytes_hash,
    encode_bytes,
    encode_uvarint,
    encode_varint,
    varint_size,
)

SIGNED = [0, 1, -1, 63, -64, 64, 300, -300, 2**31, (1 << 63) - 1, -(1 << 63)]


def test_node_header_wire_bytes():
    assert encode_varint(3) + encode_varint(7) == bytes.fromhex("060e")


def test_leaf_value_wire_bytes():
    assert encode_bytes(b"value") == bytes.fromhex("0576616c7565")


def test_hash_wire_bytes():
    digest = hashlib.sha256(b"x").digest()
    assert encode_32bytes_hash(digest) == bytes([len(digest)]) + digest


@pytest.mark.parametrize("value", SIGNED)
def test_varint_round_trip(value):
    data = encode_varint(value)
    assert decode_varint(data) == (value, len(data))
    assert varint_size(value) == len(data)


@pytest.mark.parametrize("value", [0, 1, 127, 128, 16384, (1 << 64) - 1])
def test_uvarint_round_trip(value):
    data = encode_uvarint(value)
    assert decode_uvarint(data) == (value, len(data))


def test_decode_reads_only_its_own_bytes():
    data = encode_varint(-5) + encode_bytes(b"tail")
    value, n = decode_varint(data)
    assert value == -5
    assert decode_bytes(data[n:]) == (b"tail", len(data) - n)


@pytest.mark.parametrize("payload", [b"", b"a", b"key", bytes(range(200))])
def test_bytes_round_trip(payload):
    data = encode_bytes(payload)
    assert decode_bytes(data) == (payload, len(data))
    assert bytes_size(payload) == len(data)


def test_decode_empty_buffer_raises():
    with pytest.raises(EncodingError):
        decode_varint(b"")


def test_decode_truncated_varint_raises():
    with pytest.raises(EncodingError):
        decode_uvarint(b"\x80")


def test_decode_overflow_raises():
    with pytest.raises(EncodingError):
        decode_uvarint(b"\xff" * 11)


def test_decode_short_bytes_raises():
    with pytest.raises(EncodingError):
        decode_bytes(encode_uvarint(5) + b"ab")


def test_encode_hash_wrong_length_raises():
    with pytest.raises(EncodingError):
        encode_32bytes_hash(b"short")


def test_encode_uvarint_negative_raises():
    with pytest.raises(EncodingError):
        encode_uvarint(-1)


def test_encode_varint_out_of_range_raises():
    with pytest.raises(EncodingError):
        encode_varint(1 << 63)


def test_encoding_error_is_value_error():
    with pytest.raises(ValueError):
        decode_bytes(b"")