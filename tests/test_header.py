"""
File header parser tests - identification checks and per-variant decoding.
"""

import pytest

from elf_builder import ELFBuilder

from elfscope.core.errors import NotAnELFFile, TruncatedHeader, UnsupportedELFVariant
from elfscope.core.models import Architecture, Endianness
from elfscope.parsers import constants as C
from elfscope.parsers.header import ELFHeaderParser
from elfscope.parsers.reader import ByteReader

from conftest import VARIANTS


class TestIdentification:
    """Magic, class and data bytes are validated before anything else."""

    def test_bad_magic(self):
        with pytest.raises(NotAnELFFile):
            ELFHeaderParser().parse(b"BAD!" + b"\x00" * 60)

    def test_empty_buffer(self):
        with pytest.raises(NotAnELFFile):
            ELFHeaderParser().parse(b"")

    def test_magic_only(self):
        with pytest.raises(TruncatedHeader):
            ELFHeaderParser().parse(C.ELF_MAGIC)

    @pytest.mark.parametrize("ei_class", [0, 3, 0xFF])
    def test_bad_class(self, elf64_image, ei_class):
        image = bytearray(elf64_image)
        image[C.EI_CLASS] = ei_class
        with pytest.raises(UnsupportedELFVariant):
            ELFHeaderParser().parse(bytes(image))

    @pytest.mark.parametrize("ei_data", [0, 3])
    def test_bad_data(self, elf64_image, ei_data):
        image = bytearray(elf64_image)
        image[C.EI_DATA] = ei_data
        with pytest.raises(UnsupportedELFVariant):
            ELFHeaderParser().parse(bytes(image))

    @pytest.mark.parametrize("length", [16, 40, 63])
    def test_truncated_elf64_header(self, elf64_image, length):
        with pytest.raises(TruncatedHeader):
            ELFHeaderParser().parse(elf64_image[:length])

    def test_elf32_header_fits_in_52_bytes(self):
        image = ELFBuilder(word_size=32, machine=C.EM_386).build()
        header = ELFHeaderParser().parse(image[:C.EHDR32_SIZE])
        assert header.word_size == 32
        with pytest.raises(TruncatedHeader):
            ELFHeaderParser().parse(image[:C.EHDR32_SIZE - 1])


class TestDecoding:
    """Field decoding across word sizes and byte orders."""

    @pytest.mark.parametrize("word_size,little,machine", VARIANTS)
    def test_variants(self, word_size, little, machine):
        b = ELFBuilder(word_size=word_size, little_endian=little, machine=machine, entry=0x1234)
        header = ELFHeaderParser().parse(b.build())

        assert header.word_size == word_size
        assert header.endianness == (Endianness.LITTLE if little else Endianness.BIG)
        assert header.machine == machine
        assert header.entry == 0x1234
        assert header.file_type == C.ET_EXEC
        assert header.file_type_name == "EXEC"
        assert header.shoff == b.shoff
        assert header.phoff == b.phoff
        assert header.shnum == len(b.section_index)
        assert header.shstrndx == b.section_index[".shstrtab"]

    def test_reader_byte_order_is_ignored(self):
        image = ELFBuilder(little_endian=False, machine=C.EM_AARCH64).build()
        header = ELFHeaderParser().parse(ByteReader(image, little_endian=True))
        assert header.endianness == Endianness.BIG
        assert header.machine == C.EM_AARCH64

    @pytest.mark.parametrize(
        "machine,arch",
        [
            (C.EM_X86_64, Architecture.X86_64),
            (C.EM_386, Architecture.X86),
            (C.EM_AARCH64, Architecture.ARM64),
            (C.EM_ARM, Architecture.ARM32),
            (C.EM_MIPS, None),
        ],
    )
    def test_architecture_mapping(self, machine, arch):
        header = ELFHeaderParser().parse(ELFBuilder(machine=machine).build())
        assert header.architecture == arch

    def test_osabi_and_names(self):
        image = ELFBuilder(osabi=3, abi_version=1, file_type=C.ET_DYN).build()
        header = ELFHeaderParser().parse(image)
        assert header.osabi_name == "LINUX"
        assert header.abi_version == 1
        assert header.file_type_name == "DYN"
        assert header.machine_name == "x86_64"

    def test_unknown_machine_name(self):
        header = ELFHeaderParser().parse(ELFBuilder(machine=0x1234).build())
        assert header.machine_name == "unknown(4660)"
        assert header.architecture is None
