"""
Bounds-Checked Byte Reader
===========================

Endian-aware primitive reader over an immutable ELF image.  Every parser
and analyzer in elfscope reads the image through a :class:`ByteReader`;
nothing else indexes the raw buffer.

Multi-byte values are decoded with :mod:`struct`, the same way the
format-specific parsers decode their fixed-size records.
"""

from __future__ import annotations

import struct
from typing import Union

from elfscope.core.errors import IntegerOverflow, OutOfBounds


# Upper bound for any offset or size computed while walking an image.
MAX_ADDRESS: int = (1 << 64) - 1

_UNSIGNED_CODES: dict[int, str] = {1: "B", 2: "H", 4: "I", 8: "Q"}
_SIGNED_CODES: dict[int, str] = {1: "b", 2: "h", 4: "i", 8: "q"}

BufferLike = Union[bytes, bytearray, memoryview]


def checked_add(a: int, b: int) -> int:
    """Add two offsets/sizes, failing instead of leaving the address range.

    Raises:
        IntegerOverflow: If an operand is negative or the sum exceeds
            :data:`MAX_ADDRESS`.
    """
    if a < 0 or b < 0:
        raise IntegerOverflow(f"negative operand in 0x{a:x} + 0x{b:x}")
    result = a + b
    if result > MAX_ADDRESS:
        raise IntegerOverflow(f"0x{a:x} + 0x{b:x} overflows 64 bits")
    return result


def checked_mul(a: int, b: int) -> int:
    """Multiply two sizes, failing instead of leaving the address range.

    Raises:
        IntegerOverflow: If an operand is negative or the product exceeds
            :data:`MAX_ADDRESS`.
    """
    if a < 0 or b < 0:
        raise IntegerOverflow(f"negative operand in 0x{a:x} * 0x{b:x}")
    result = a * b
    if result > MAX_ADDRESS:
        raise IntegerOverflow(f"0x{a:x} * 0x{b:x} overflows 64 bits")
    return result


class ByteReader:
    """Read fixed-width integers and byte ranges from an ELF image.

    The reader never copies or mutates the image after construction.
    Reads outside ``[0, len(data))`` raise :class:`OutOfBounds`.

    Usage::

        reader = ByteReader(raw_bytes, little_endian=True)
        e_type = reader.u16(16)
        e_entry = reader.read_word(24, is_64bit=True)
    """

    __slots__ = ("_data", "_little_endian", "_prefix")

    def __init__(self, data: BufferLike, little_endian: bool = True) -> None:
        self._data: bytes = data if isinstance(data, bytes) else bytes(data)
        self._little_endian = little_endian
        self._prefix = "<" if little_endian else ">"

    # ------------------------------------------------------------------ #
    #  Properties
    # ------------------------------------------------------------------ #

    @property
    def data(self) -> bytes:
        """The underlying immutable image."""
        return self._data

    @property
    def little_endian(self) -> bool:
        return self._little_endian

    def __len__(self) -> int:
        return len(self._data)

    def with_endianness(self, little_endian: bool) -> ByteReader:
        """Return a reader over the same image with a different byte order."""
        if little_endian == self._little_endian:
            return self
        return ByteReader(self._data, little_endian=little_endian)

    # ------------------------------------------------------------------ #
    #  Bounds checks
    # ------------------------------------------------------------------ #

    def contains(self, offset: int, size: int) -> bool:
        """Return ``True`` if ``[offset, offset + size)`` lies in the image."""
        if offset < 0 or size < 0:
            return False
        return offset + size <= len(self._data)

    def require(self, offset: int, size: int) -> None:
        """Raise :class:`OutOfBounds` unless the range lies in the image."""
        end = checked_add(offset, size) if offset >= 0 else -1
        if offset < 0 or end > len(self._data):
            raise OutOfBounds(offset, size, len(self._data))

    # ------------------------------------------------------------------ #
    #  Integer reads
    # ------------------------------------------------------------------ #

    def read_uint(self, offset: int, width: int) -> int:
        """Decode an unsigned integer of ``width`` bytes at ``offset``.

        Raises:
            ValueError: If ``width`` is not 1, 2, 4 or 8.
            OutOfBounds: If ``offset + width`` exceeds the image length.
        """
        code = _UNSIGNED_CODES.get(width)
        if code is None:
            raise ValueError(f"unsupported integer width: {width}")
        self.require(offset, width)
        return struct.unpack_from(self._prefix + code, self._data, offset)[0]

    def read_int(self, offset: int, width: int) -> int:
        """Decode a two's-complement signed integer of ``width`` bytes."""
        code = _SIGNED_CODES.get(width)
        if code is None:
            raise ValueError(f"unsupported integer width: {width}")
        self.require(offset, width)
        return struct.unpack_from(self._prefix + code, self._data, offset)[0]

    def u8(self, offset: int) -> int:
        return self.read_uint(offset, 1)

    def u16(self, offset: int) -> int:
        return self.read_uint(offset, 2)

    def u32(self, offset: int) -> int:
        return self.read_uint(offset, 4)

    def u64(self, offset: int) -> int:
        return self.read_uint(offset, 8)

    def s32(self, offset: int) -> int:
        return self.read_int(offset, 4)

    def s64(self, offset: int) -> int:
        return self.read_int(offset, 8)

    def read_word(self, offset: int, is_64bit: bool) -> int:
        """Read an ``ElfN_Addr``/``ElfN_Off``/``ElfN_Xword`` sized field."""
        return self.read_uint(offset, 8 if is_64bit else 4)

    def unpack(self, fmt: str, offset: int) -> tuple[int, ...]:
        """Unpack a whole fixed-size record (``fmt`` without byte-order prefix)."""
        full = self._prefix + fmt
        self.require(offset, struct.calcsize(full))
        return struct.unpack_from(full, self._data, offset)

    # ------------------------------------------------------------------ #
    #  Byte ranges and strings
    # ------------------------------------------------------------------ #

    def read_bytes(self, offset: int, size: int) -> bytes:
        """Return a copy of ``size`` bytes starting at ``offset``."""
        self.require(offset, size)
        return self._data[offset:offset + size]

    def cstring(self, offset: int, end: int | None = None) -> str:
        """Read a null-terminated ASCII string.

        The string stops at the first null byte or at ``end`` (exclusive,
        default: end of image), whichever comes first.  Non-ASCII bytes are
        replaced rather than rejected.

        Raises:
            OutOfBounds: If ``offset`` lies outside ``[0, end)``.
        """
        limit = len(self._data) if end is None else min(end, len(self._data))
        if offset < 0 or offset >= limit:
            raise OutOfBounds(offset, 1, limit)
        stop = self._data.find(b"\x00", offset, limit)
        if stop == -1:
            stop = limit
        return self._data[offset:stop].decode("ascii", errors="replace")
