"""Varint and length-prefixed byte encodings used in node serialisation."""

from __future__ import annotations

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_UINT64_LIMIT = 1 << 64
_MAX_VARINT_LEN = 10
_HASH_SIZE = 32


class EncodingError(ValueError):
    """Raised when a value cannot be encoded or a buffer cannot be decoded."""


def encode_uvarint(value: int) -> bytes:
    """Encode an unsigned 64-bit integer as a base-128 varint."""
    if not 0 <= value < _UINT64_LIMIT:
        raise EncodingError(f"uvarint {value} out of range")
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def decode_uvarint(buf: bytes) -> tuple[int, int]:
    """Decode a uvarint; return the value and the number of bytes read."""
    result = 0
    shift = 0
    for index, byte in enumerate(buf):
        if index == _MAX_VARINT_LEN:
            raise EncodingError("varint overflows a 64-bit integer")
        if byte < 0x80:
            if index == _MAX_VARINT_LEN - 1 and byte > 1:
                raise EncodingError("varint overflows a 64-bit integer")
            return result | (byte << shift), index + 1
        result |= (byte & 0x7F) << shift
        shift += 7
    raise EncodingError("buffer too small to decode varint")


def encode_varint(value: int) -> bytes:
    """Encode a signed 64-bit integer as a zig-zag varint."""
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise EncodingError(f"varint {value} out of int64 range")
    return encode_uvarint(((value << 1) ^ (value >> 63)) & (_UINT64_LIMIT - 1))


def decode_varint(buf: bytes) -> tuple[int, int]:
    """Decode a zig-zag varint; return the value and the number of bytes read."""
    raw, size = decode_uvarint(buf)
    return (raw >> 1) ^ -(raw & 1), size


def encode_bytes(bz: bytes) -> bytes:
    """Encode a byte string prefixed by its uvarint length."""
    data = bytes(bz)
    return encode_uvarint(len(data)) + data


def decode_bytes(buf: bytes) -> tuple[bytes, int]:
    """Decode a length-prefixed byte string; return it and the bytes read."""
    length, size = decode_uvarint(buf)
    end = size + length
    if end > len(buf):
        raise EncodingError(
            f"insufficient bytes decoding byte string of length {length}"
        )
    return bytes(buf[size:end]), end


def encode_32bytes_hash(bz: bytes) -> bytes:
    """Encode a 32-byte hash in length-prefixed form."""
    data = bytes(bz)
    if len(data) != _HASH_SIZE:
        raise EncodingError(f"expected a {_HASH_SIZE}-byte hash, got {len(data)} bytes")
    return encode_bytes(data)


def varint_size(value: int) -> int:
    """Return the encoded size of a signed varint."""
    return len(encode_varint(value))


def bytes_size(bz: bytes) -> int:
    """Return the encoded size of a length-prefixed byte string."""
    return len(encode_uvarint(len(bz))) + len(bz)