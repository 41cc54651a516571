"""
Dynamic section analyzer tests - NEEDED/SONAME/RUNPATH resolution,
DT_NULL termination and the PT_INTERP interpreter path.
"""

import struct

import pytest

from elf_builder import ELFBuilder

from elfscope.analyzers.dynamic import DynamicSectionAnalyzer
from elfscope.parsers import constants as C
from elfscope.parsers.header import ELFHeaderParser
from elfscope.parsers.reader import ByteReader
from elfscope.parsers.tables import TableParser

from conftest import VARIANTS


def analyze(image: bytes):
    reader = ByteReader(image)
    header = ELFHeaderParser().parse(reader)
    tables = TableParser(reader, header).parse()
    return DynamicSectionAnalyzer(
        reader, header, tables.sections, tables.program_headers
    ).analyze()


class TestDynamicSection:
    """String-valued tags resolve through the linked string table."""

    @pytest.mark.parametrize("word_size,little,machine", VARIANTS)
    def test_needed_and_soname(self, word_size, little, machine):
        b = ELFBuilder(
            word_size=word_size,
            little_endian=little,
            machine=machine,
            needed=["libc.so.6", "libm.so.6"],
            soname="libdemo.so.1",
            runpath="$ORIGIN/../lib",
        )
        result = analyze(b.build())

        assert result.diagnostics == []
        info = result.info
        assert info.needed == ["libc.so.6", "libm.so.6"]
        assert info.soname == "libdemo.so.1"
        assert info.runpath == "$ORIGIN/../lib"
        assert info.rpath == ""
        assert [e.tag_name for e in info.entries] == ["NEEDED", "NEEDED", "SONAME", "RUNPATH"]

    def test_stops_at_dt_null(self):
        b = ELFBuilder(needed=["libc.so.6"])
        image = bytearray(b.build())
        _offset, size = b.layout[".dynamic"]
        # Grow sh_size so garbage after DT_NULL would be visible.
        shdr = b.shoff + b.section_index[".dynamic"] * C.SHDR64_SIZE
        struct.pack_into("<Q", image, shdr + 32, size + 2 * C.DYN64_SIZE)
        result = analyze(bytes(image))
        assert len(result.info.entries) == 1

    def test_no_dynamic_section(self, elf64_image):
        info = analyze(elf64_image).info
        assert info.needed == []
        assert info.entries == []
        assert info.interpreter == ""

    def test_bad_link_falls_back_to_dynstr(self):
        b = ELFBuilder(needed=["libz.so.1"])
        image = bytearray(b.build())
        shdr = b.shoff + b.section_index[".dynamic"] * C.SHDR64_SIZE
        struct.pack_into("<I", image, shdr + 40, 0)
        assert analyze(bytes(image)).info.needed == ["libz.so.1"]

    def test_truncated_dynamic(self):
        b = ELFBuilder(needed=["libc.so.6", "libm.so.6"])
        image = bytearray(b.build())
        shdr = b.shoff + b.section_index[".dynamic"] * C.SHDR64_SIZE
        struct.pack_into("<Q", image, shdr + 24, len(image) - C.DYN64_SIZE // 2)
        result = analyze(bytes(image))
        assert result.info.entries == []
        assert result.diagnostics[0].code == "TruncatedTable"
        assert result.diagnostics[0].stage == "dynamic"


class TestInterpreter:
    """PT_INTERP names the program interpreter."""

    def test_interp_path(self):
        b = ELFBuilder(interp="/lib64/ld-linux-x86-64.so.2", needed=["libc.so.6"])
        info = analyze(b.build()).info
        assert info.interpreter == "/lib64/ld-linux-x86-64.so.2"
        assert info.needed == ["libc.so.6"]

    def test_interp_without_dynamic_section(self):
        info = analyze(ELFBuilder(interp="/lib/ld.so").build()).info
        assert info.interpreter == "/lib/ld.so"
        assert info.entries == []

    def test_interp_out_of_image(self):
        b = ELFBuilder(interp="/lib/ld.so")
        image = bytearray(b.build())
        # First program header is PT_INTERP; p_offset at +8 in Elf64_Phdr.
        struct.pack_into("<Q", image, b.phoff + 8, len(image) + 100)
        result = analyze(bytes(image))
        assert result.info.interpreter == ""
        assert result.diagnostics[0].code == "OutOfBounds"
