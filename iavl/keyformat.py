"""Fixed-width, lexicographically sortable byte key formats."""

from __future__ import annotations

from typing import Iterable, Union

Prefix = Union[int, bytes, str]
Segment = Union[bytes, bytearray, memoryview, None]


def _prefix_byte(prefix: Prefix) -> int:
    if isinstance(prefix, int):
        if not 0 <= prefix <= 0xFF:
            raise ValueError(f"prefix {prefix} does not fit in one byte")
        return prefix
    if isinstance(prefix, str):
        prefix = prefix.encode("latin-1")
    if len(prefix) != 1:
        raise ValueError(f"prefix must be a single byte, got {prefix!r}")
    return prefix[0]


def _format_int(value: int, width: int) -> bytes:
    bits = 8 * width
    if not -(1 << (bits - 1)) <= value < (1 << bits):
        raise ValueError(f"integer {value} does not fit in {width} bytes")
    return (value & ((1 << bits) - 1)).to_bytes(width, "big")


def _format(arg: object, width: int) -> bytes:
    if isinstance(arg, bool):
        raise TypeError(f"cannot format value of type bool: {arg!r}")
    if isinstance(arg, int):
        return _format_int(arg, 4 if width == 4 else 8)
    if isinstance(arg, (bytes, bytearray, memoryview)):
        return bytes(arg)
    raise TypeError(f"cannot format value of type {type(arg).__name__}: {arg!r}")


def _scan(kind: type, value: bytes) -> object:
    if kind is bytes:
        return bytes(value)
    if kind is int:
        if len(value) >= 8:
            raw = value[:8]
        elif len(value) == 4:
            raw = value
        else:
            raise ValueError(f"cannot read an integer from {len(value)} bytes")
        return int.from_bytes(raw, "big", signed=True)
    raise TypeError(f"cannot scan a value of type {getattr(kind, '__name__', kind)!r}")


class KeyFormat:
    """A one-byte prefix followed by fixed-width big-endian segments.

    A final segment width of 0 makes that segment unbounded.
    """

    def __init__(self, prefix: Prefix, *args: int) -> None:
        layout = tuple(args)
        for index, width in enumerate(layout):
            if width < 0:
                raise ValueError("segment widths cannot be negative")
            if width == 0 and index != len(layout) - 1:
                raise ValueError("only the last item in a key format can be 0")
        self._prefix = _prefix_byte(prefix)
        self.layout = layout
        self.length = 1 + sum(layout)
        self.unbounded = bool(layout) and layout[-1] == 0

    @property
    def prefix(self) -> bytes:
        return bytes([self._prefix])

    def __repr__(self) -> str:
        return f"KeyFormat({self.prefix!r}, {', '.join(map(str, self.layout))})"

    def key_bytes(self, *args: Segment) -> bytes:
        """Join raw segments into a key, left-padding each to its width."""
        if len(args) > len(self.layout):
            raise ValueError(
                f"{len(args)} segments given but format only has {len(self.layout)}"
            )
        out = bytearray([self._prefix])
        for index, (width, segment) in enumerate(zip(self.layout, args)):
            data = b"" if segment is None else bytes(segment)
            if width == 0:
                out += data
                continue
            if len(data) > width:
                raise ValueError(
                    f"segment {data.hex().upper()} is longer than the {width} bytes "
                    f"required by layout for segment {index}"
                )
            out += data.rjust(width, b"\x00")
        return bytes(out)

    def key(self, *args: object) -> bytes:
        """Format integers and byte strings into a key.

        With no arguments the bare prefix is returned.
        """
        if len(args) > len(self.layout):
            raise ValueError(
                f"{len(args)} args given but format only has {len(self.layout)} segments"
            )
        segments = [_format(arg, width) for arg, width in zip(args, self.layout)]
        return self.key_bytes(*segments)

    def scan_bytes(self, key: bytes) -> list[bytes]:
        """Split a key into the raw bytes of each segment it contains."""
        segments: list[bytes] = []
        end = 1
        for width in self.layout:
            end += width
            if end > len(key):
                break
            if width == 0:
                segments.append(bytes(key[end:]))
                break
            segments.append(bytes(key[end - width:end]))
        return segments

    def scan(self, key: bytes, *args: type) -> tuple:
        """Read segments of a key as the given kinds (``int`` or ``bytes``)."""
        segments = self.scan_bytes(key)
        if len(args) > len(segments):
            raise ValueError(
                f"{len(args)} args given but key {bytes(key).hex().upper()} "
                f"only has {len(segments)} segments"
            )
        return tuple(_scan(kind, segment) for kind, segment in zip(args, segments))


class FastPrefixFormatter:
    """A one-byte prefix followed by a single fixed-width field."""

    def __init__(self, prefix: Prefix, length: int) -> None:
        if length < 0:
            raise ValueError("length cannot be negative")
        self._prefix = _prefix_byte(prefix)
        self._width = length

    @property
    def prefix(self) -> bytes:
        return bytes([self._prefix])

    @property
    def length(self) -> int:
        return 1 + self._width

    def __repr__(self) -> str:
        return f"FastPrefixFormatter({self.prefix!r}, {self._width})"

    def key(self, bz: Iterable[int] | None) -> bytes:
        """Prefix ``bz``, truncated or zero-padded on the right to the field width."""
        data = b"" if bz is None else bytes(bz)[: self._width]
        return self.prefix + data.ljust(self._width, b"\x00")

    def key_int64(self, value: int) -> bytes:
        """Prefix a big-endian 64-bit integer, zero-padded to the field width."""
        if self._width < 8:
            raise ValueError(f"field width {self._width} cannot hold a 64-bit integer")
        return self.prefix + _format_int(value, 8).ljust(self._width, b"\x00")

    def scan(self, key: bytes, kind: type) -> object:
        """Read the field of ``key`` as ``int`` or ``bytes``."""
        return _scan(kind, bytes(key[1:]))