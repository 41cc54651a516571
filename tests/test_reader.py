"""
ByteReader unit tests - bounds checks, endianness and checked arithmetic.
"""

import pytest

from elfscope.core.errors import IntegerOverflow, OutOfBounds
from elfscope.parsers.reader import MAX_ADDRESS, ByteReader, checked_add, checked_mul


class TestIntegerReads:
    """Fixed-width reads in both byte orders."""

    def test_little_endian_widths(self):
        reader = ByteReader(bytes.fromhex("0102030405060708"), little_endian=True)
        assert reader.u8(0) == 0x01
        assert reader.u16(0) == 0x0201
        assert reader.u32(0) == 0x04030201
        assert reader.u64(0) == 0x0807060504030201

    def test_big_endian_widths(self):
        reader = ByteReader(bytes.fromhex("0102030405060708"), little_endian=False)
        assert reader.u16(0) == 0x0102
        assert reader.u32(4) == 0x05060708
        assert reader.u64(0) == 0x0102030405060708

    def test_signed_reads(self):
        reader = ByteReader(b"\xff" * 8)
        assert reader.s32(0) == -1
        assert reader.s64(0) == -1
        assert reader.u32(0) == 0xFFFFFFFF

    def test_read_word_follows_class(self):
        reader = ByteReader(bytes(range(8)))
        assert reader.read_word(0, is_64bit=False) == reader.u32(0)
        assert reader.read_word(0, is_64bit=True) == reader.u64(0)

    def test_unsupported_width(self):
        with pytest.raises(ValueError):
            ByteReader(b"\x00" * 8).read_uint(0, 3)

    def test_with_endianness_shares_data(self):
        le = ByteReader(b"\x01\x00")
        be = le.with_endianness(False)
        assert be.data is le.data
        assert be.u16(0) == 0x0100
        assert le.with_endianness(True) is le


class TestBounds:
    """Every read past the image fails with OutOfBounds."""

    @pytest.mark.parametrize("offset,width", [(5, 4), (8, 1), (7, 2), (-1, 1)])
    def test_read_past_end(self, offset, width):
        reader = ByteReader(b"\x00" * 8)
        with pytest.raises(OutOfBounds):
            reader.read_uint(offset, width)

    def test_exact_fit_succeeds(self):
        reader = ByteReader(b"\x00" * 8)
        assert reader.u64(0) == 0
        assert reader.u32(4) == 0

    def test_read_bytes_bounds(self):
        reader = ByteReader(b"abcdef")
        assert reader.read_bytes(2, 3) == b"cde"
        with pytest.raises(OutOfBounds):
            reader.read_bytes(4, 3)

    def test_contains(self):
        reader = ByteReader(b"\x00" * 4)
        assert reader.contains(0, 4)
        assert reader.contains(4, 0)
        assert not reader.contains(1, 4)
        assert not reader.contains(-1, 1)

    def test_out_of_bounds_carries_offset(self):
        with pytest.raises(OutOfBounds) as exc_info:
            ByteReader(b"\x00").u32(0)
        assert exc_info.value.offset == 0
        assert exc_info.value.code == "OutOfBounds"


class TestCString:
    """Null-terminated string reads."""

    def test_stops_at_null(self):
        reader = ByteReader(b"hello\x00world\x00")
        assert reader.cstring(0) == "hello"
        assert reader.cstring(6) == "world"

    def test_stops_at_end_bound(self):
        reader = ByteReader(b"abcdef\x00")
        assert reader.cstring(0, end=3) == "abc"

    def test_unterminated_runs_to_image_end(self):
        assert ByteReader(b"abc").cstring(1) == "bc"

    def test_offset_outside_range(self):
        with pytest.raises(OutOfBounds):
            ByteReader(b"abc\x00").cstring(4)

    def test_non_ascii_replaced(self):
        assert ByteReader(b"a\xffb\x00").cstring(0) == "a\ufffdb"


class TestCheckedArithmetic:
    """Offset arithmetic never leaves the 64-bit range silently."""

    def test_add_within_range(self):
        assert checked_add(MAX_ADDRESS - 1, 1) == MAX_ADDRESS

    def test_add_overflow(self):
        with pytest.raises(IntegerOverflow):
            checked_add(MAX_ADDRESS, 1)

    def test_mul_overflow(self):
        with pytest.raises(IntegerOverflow):
            checked_mul(1 << 40, 1 << 40)

    def test_negative_operand(self):
        with pytest.raises(IntegerOverflow):
            checked_add(-1, 4)

    def test_require_huge_offset(self):
        reader = ByteReader(b"\x00" * 16)
        with pytest.raises((OutOfBounds, IntegerOverflow)):
            reader.require(MAX_ADDRESS, 8)
