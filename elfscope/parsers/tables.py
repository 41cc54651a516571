"""
Program and Section Header Table Parser
========================================

Decodes the program header table (segments) and the section header table
(sections) located by the file header, then resolves section names
through the section-name string table (``e_shstrndx``).

Damaged tables degrade to partial results: the first entry whose byte
range leaves the image stops iteration, and the remaining entries are
dropped with a ``TruncatedTable`` diagnostic.

References:
    - TIS Committee. (1995). ELF Specification, Version 1.2.
      Book I, Section 1-8 (Sections) and 2-2 (Program Header).
    - System V ABI, "Extended section numbering".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator

from elfscope.core.errors import (
    IntegerOverflow,
    OutOfBounds,
    TruncatedTable,
)
from elfscope.core.models import (
    Diagnostic,
    FileHeader,
    ProgramHeaderEntry,
    SectionHeaderEntry,
)
from elfscope.parsers import constants as C
from elfscope.parsers.reader import ByteReader, checked_add, checked_mul


_STAGE = "tables"

# Elf64_Shdr / Elf32_Shdr
_SHDR64_FMT: str = "IIQQQQIIQQ"
_SHDR32_FMT: str = "IIIIIIIIII"

# Elf64_Phdr / Elf32_Phdr (note the different p_flags position)
_PHDR64_FMT: str = "IIQQQQQQ"
_PHDR32_FMT: str = "IIIIIIII"


@dataclass(frozen=True, slots=True)
class TableParseResult:
    """Decoded header tables plus any recoverable problems."""

    program_headers: list[ProgramHeaderEntry] = field(default_factory=list)
    sections: list[SectionHeaderEntry] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)


class TableParser:
    """Decode program and section header tables.

    Usage::

        header = ELFHeaderParser().parse(reader)
        tables = TableParser(reader, header).parse()
        for sec in tables.sections:
            print(sec.index, sec.name, sec.type_name)
    """

    def __init__(self, reader: ByteReader, header: FileHeader) -> None:
        self._reader = reader.with_endianness(header.little_endian)
        self._header = header
        self._is_64bit = header.is_64bit

    # ------------------------------------------------------------------ #
    #  Public interface
    # ------------------------------------------------------------------ #

    def parse(self) -> TableParseResult:
        """Decode both tables and resolve section names."""
        diagnostics: list[Diagnostic] = []
        program_headers = self.parse_program_headers(diagnostics)
        sections = self.parse_section_headers(diagnostics)
        return TableParseResult(
            program_headers=program_headers,
            sections=sections,
            diagnostics=diagnostics,
        )

    def parse_program_headers(
        self,
        diagnostics: list[Diagnostic],
    ) -> list[ProgramHeaderEntry]:
        """Decode every reachable ``ElfN_Phdr`` entry."""
        h = self._header
        if self._is_64bit:
            fmt, min_size = _PHDR64_FMT, C.PHDR64_SIZE
        else:
            fmt, min_size = _PHDR32_FMT, C.PHDR32_SIZE

        result: list[ProgramHeaderEntry] = []
        entries = self._iter_entries(
            h.phoff, h.phnum, h.phentsize, min_size, "program header", diagnostics
        )
        for index, offset in entries:
            fields = self._reader.unpack(fmt, offset)
            if self._is_64bit:
                p_type, p_flags, p_offset, p_vaddr, p_paddr, p_filesz, p_memsz, p_align = fields
            else:
                p_type, p_offset, p_vaddr, p_paddr, p_filesz, p_memsz, p_flags, p_align = fields

            result.append(ProgramHeaderEntry(
                index=index,
                type=p_type,
                type_name=C.segment_type_name(p_type),
                flags=p_flags,
                flags_str=C.segment_flags_str(p_flags),
                offset=p_offset,
                vaddr=p_vaddr,
                paddr=p_paddr,
                filesz=p_filesz,
                memsz=p_memsz,
                align=p_align,
            ))
        return result

    def parse_section_headers(
        self,
        diagnostics: list[Diagnostic],
    ) -> list[SectionHeaderEntry]:
        """Decode every reachable ``ElfN_Shdr`` entry and resolve names."""
        h = self._header
        if self._is_64bit:
            fmt, min_size = _SHDR64_FMT, C.SHDR64_SIZE
        else:
            fmt, min_size = _SHDR32_FMT, C.SHDR32_SIZE

        count, shstrndx = h.shnum, h.shstrndx
        if h.shoff and (count == 0 or shstrndx == C.SHN_XINDEX):
            count, shstrndx = self._extended_numbering(fmt, min_size, count, shstrndx)

        raw: list[tuple[int, ...]] = []
        entries = self._iter_entries(
            h.shoff, count, h.shentsize, min_size, "section header", diagnostics
        )
        for _index, offset in entries:
            raw.append(self._reader.unpack(fmt, offset))

        names = self._resolve_names(raw, shstrndx, diagnostics)

        sections: list[SectionHeaderEntry] = []
        for index, (fields, name) in enumerate(zip(raw, names)):
            (
                sh_name, sh_type, sh_flags, sh_addr,
                sh_offset, sh_size, sh_link, sh_info,
                sh_addralign, sh_entsize,
            ) = fields
            sections.append(SectionHeaderEntry(
                index=index,
                name=name,
                name_offset=sh_name,
                type=sh_type,
                type_name=C.section_type_name(sh_type),
                flags=sh_flags,
                flags_str=C.section_flags_str(sh_flags),
                addr=sh_addr,
                offset=sh_offset,
                size=sh_size,
                link=sh_link,
                info=sh_info,
                addralign=sh_addralign,
                entsize=sh_entsize,
            ))
        return sections

    # ------------------------------------------------------------------ #
    #  Helpers
    # ------------------------------------------------------------------ #

    def _iter_entries(
        self,
        base: int,
        count: int,
        entry_size: int,
        min_size: int,
        label: str,
        diagnostics: list[Diagnostic],
    ) -> Iterator[tuple[int, int]]:
        """Yield ``(index, offset)`` for each entry that fits in the image."""
        if base == 0 or count == 0:
            return

        if entry_size < min_size:
            diagnostics.append(Diagnostic.from_error(
                TruncatedTable(
                    f"{label} entry size {entry_size} is smaller than "
                    f"{min_size}; table skipped",
                    offset=base,
                ),
                _STAGE,
            ))
            return

        for index in range(count):
            try:
                offset = checked_add(base, checked_mul(index, entry_size))
                self._reader.require(offset, entry_size)
            except (OutOfBounds, IntegerOverflow):
                diagnostics.append(Diagnostic.from_error(
                    TruncatedTable(
                        f"{label} table truncated at entry {index} of {count}; "
                        f"{count - index} entries dropped",
                        offset=base,
                    ),
                    _STAGE,
                ))
                return
            yield index, offset

    def _extended_numbering(
        self,
        fmt: str,
        min_size: int,
        count: int,
        shstrndx: int,
    ) -> tuple[int, int]:
        """Read ``shnum``/``shstrndx`` overflow values from section 0."""
        if not self._reader.contains(self._header.shoff, min_size):
            return count, shstrndx
        fields = self._reader.unpack(fmt, self._header.shoff)
        sh_size, sh_link = fields[5], fields[6]
        if count == 0:
            count = sh_size
        if shstrndx == C.SHN_XINDEX:
            shstrndx = sh_link
        return count, shstrndx

    def _resolve_names(
        self,
        raw: list[tuple[int, ...]],
        shstrndx: int,
        diagnostics: list[Diagnostic],
    ) -> list[str]:
        """Look up each section's name in the section-name string table.

        A missing or out-of-image string table leaves every name empty.
        """
        names = [""] * len(raw)
        if not raw or shstrndx == C.SHN_UNDEF:
            return names

        if shstrndx >= len(raw):
            diagnostics.append(Diagnostic(
                code="OutOfBounds",
                stage=_STAGE,
                message=(
                    f"section-name string table index {shstrndx} is outside "
                    f"the {len(raw)} decoded sections"
                ),
            ))
            return names

        strtab = raw[shstrndx]
        st_offset, st_size = strtab[4], strtab[5]
        if not self._reader.contains(st_offset, st_size) or st_size == 0:
            diagnostics.append(Diagnostic(
                code="OutOfBounds",
                stage=_STAGE,
                message="section-name string table lies outside the image",
                offset=st_offset,
            ))
            return names

        st_end = st_offset + st_size
        for i, fields in enumerate(raw):
            name_offset = fields[0]
            if name_offset < st_size:
                names[i] = self._reader.cstring(st_offset + name_offset, end=st_end)
        return names
