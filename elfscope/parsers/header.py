"""
ELF File Header Parser
=======================

Validates the ELF identification bytes and decodes the fixed-size file
header (``Elf32_Ehdr`` / ``Elf64_Ehdr``).

This is the single place where the image's word size and byte order are
determined; every later stage reads them from the returned
:class:`~elfscope.core.models.FileHeader`.

References:
    - TIS Committee. (1995). Tool Interface Standard (TIS) Executable and
      Linkable Format (ELF) Specification, Version 1.2. Figure 1-3.
"""

from __future__ import annotations

from elfscope.core.errors import (
    NotAnELFFile,
    TruncatedHeader,
    UnsupportedELFVariant,
)
from elfscope.core.models import Architecture, Endianness, FileHeader
from elfscope.parsers import constants as C
from elfscope.parsers.reader import BufferLike, ByteReader


# e_type .. e_shstrndx, starting at offset 16
_EHDR64_FMT: str = "HHIQQQIHHHHHH"
_EHDR32_FMT: str = "HHIIIIIHHHHHH"


class ELFHeaderParser:
    """Decode the ELF file header.

    Usage::

        header = ELFHeaderParser().parse(raw_bytes)
        print(header.word_size, header.endianness, hex(header.entry))
    """

    def parse(self, image: ByteReader | BufferLike) -> FileHeader:
        """Validate identification bytes and decode the header.

        Args:
            image: The raw image or a reader over it.  The reader's own
                byte order is ignored; it is taken from EI_DATA.

        Returns:
            The decoded :class:`FileHeader`.

        Raises:
            NotAnELFFile: Magic bytes are not ``7F 45 4C 46``.
            UnsupportedELFVariant: EI_CLASS or EI_DATA is not 1 or 2.
            TruncatedHeader: The image is shorter than the header for
                the detected class.
        """
        reader = image if isinstance(image, ByteReader) else ByteReader(image)

        if not reader.contains(0, len(C.ELF_MAGIC)):
            raise NotAnELFFile("image is shorter than the ELF magic")
        magic = reader.read_bytes(0, len(C.ELF_MAGIC))
        if magic != C.ELF_MAGIC:
            raise NotAnELFFile(f"bad magic {magic.hex()}", offset=0)

        if not reader.contains(0, C.EI_NIDENT):
            raise TruncatedHeader(
                f"image holds {len(reader)} bytes, identification needs "
                f"{C.EI_NIDENT}"
            )

        ei_class = reader.u8(C.EI_CLASS)
        ei_data = reader.u8(C.EI_DATA)

        if ei_class == C.ELFCLASS32:
            word_size, header_size, fmt = 32, C.EHDR32_SIZE, _EHDR32_FMT
        elif ei_class == C.ELFCLASS64:
            word_size, header_size, fmt = 64, C.EHDR64_SIZE, _EHDR64_FMT
        else:
            raise UnsupportedELFVariant(
                f"unsupported EI_CLASS {ei_class}", offset=C.EI_CLASS
            )

        if ei_data == C.ELFDATA2LSB:
            endianness = Endianness.LITTLE
        elif ei_data == C.ELFDATA2MSB:
            endianness = Endianness.BIG
        else:
            raise UnsupportedELFVariant(
                f"unsupported EI_DATA {ei_data}", offset=C.EI_DATA
            )

        if not reader.contains(0, header_size):
            raise TruncatedHeader(
                f"ELF{word_size} header needs {header_size} bytes, "
                f"image holds {len(reader)}"
            )

        reader = reader.with_endianness(endianness == Endianness.LITTLE)
        (
            e_type, e_machine, e_version, e_entry,
            e_phoff, e_shoff, e_flags, e_ehsize,
            e_phentsize, e_phnum, e_shentsize, e_shnum,
            e_shstrndx,
        ) = reader.unpack(fmt, C.EI_NIDENT)

        osabi = reader.u8(C.EI_OSABI)

        return FileHeader(
            word_size=word_size,
            endianness=endianness,
            osabi=osabi,
            osabi_name=C.osabi_name(osabi),
            abi_version=reader.u8(C.EI_ABIVERSION),
            file_type=e_type,
            file_type_name=C.file_type_name(e_type),
            machine=e_machine,
            machine_name=C.machine_name(e_machine),
            architecture=Architecture.from_machine(e_machine),
            version=e_version,
            entry=e_entry,
            phoff=e_phoff,
            shoff=e_shoff,
            flags=e_flags,
            ehsize=e_ehsize,
            phentsize=e_phentsize,
            phnum=e_phnum,
            shentsize=e_shentsize,
            shnum=e_shnum,
            shstrndx=e_shstrndx,
        )
