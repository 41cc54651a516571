"""
Symbol Table Extractor
=======================

Walks the static (``SHT_SYMTAB``) and dynamic (``SHT_DYNSYM``) symbol
tables, resolves names through the string table each table links to, and
classifies every entry by type, binding and visibility.

``st_info`` packs the type in its low nibble and the binding in its high
nibble; ``st_other`` carries the visibility in its low two bits.

References:
    - TIS Committee. (1995). ELF Specification, Version 1.2.
      Book I, Section 1-17 (Symbol Table).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from elfscope.core.errors import (
    IntegerOverflow,
    OutOfBounds,
    TruncatedTable,
)
from elfscope.core.models import (
    Diagnostic,
    FileHeader,
    SectionHeaderEntry,
    Symbol,
    SymbolBinding,
    SymbolType,
    SymbolVisibility,
)
from elfscope.parsers import constants as C
from elfscope.parsers.reader import ByteReader, checked_add, checked_mul


_STAGE = "symbols"

# Elf64_Sym: st_name, st_info, st_other, st_shndx, st_value, st_size
_SYM64_FMT: str = "IBBHQQ"
# Elf32_Sym: st_name, st_value, st_size, st_info, st_other, st_shndx
_SYM32_FMT: str = "IIIBBH"


def decode_symbol_info(info: int) -> tuple[int, int]:
    """Split a packed ``st_info`` byte into ``(type, binding)`` codes."""
    return info & 0xF, info >> 4


@dataclass(frozen=True, slots=True)
class SymbolExtraction:
    """Symbols from every table.

    Attributes:
        symbols: All entries, tables in section order, entries in table order.
        by_table: Entries keyed by the index of their symbol table section,
            so relocation sections can resolve ``r_sym`` through ``sh_link``.
        diagnostics: Recoverable problems met while decoding.
    """

    symbols: list[Symbol] = field(default_factory=list)
    by_table: dict[int, list[Symbol]] = field(default_factory=dict)
    diagnostics: list[Diagnostic] = field(default_factory=list)


class SymbolExtractor:
    """Decode ``.symtab`` and ``.dynsym`` entries.

    Usage::

        extraction = SymbolExtractor(reader, header, sections).extract()
        funcs = [s for s in extraction.symbols if s.is_function]
    """

    def __init__(
        self,
        reader: ByteReader,
        header: FileHeader,
        sections: list[SectionHeaderEntry],
    ) -> None:
        self._reader = reader.with_endianness(header.little_endian)
        self._is_64bit = header.is_64bit
        self._sections = sections

    def extract(self) -> SymbolExtraction:
        """Decode every symbol table section.

        A truncated table keeps the entries decoded before the truncation
        point; the other tables are unaffected.
        """
        diagnostics: list[Diagnostic] = []
        symbols: list[Symbol] = []
        by_table: dict[int, list[Symbol]] = {}

        for sh in self._sections:
            if sh.type not in (C.SHT_SYMTAB, C.SHT_DYNSYM):
                continue
            table = self._parse_table(sh, diagnostics)
            by_table[sh.index] = table
            symbols.extend(table)

        return SymbolExtraction(
            symbols=symbols,
            by_table=by_table,
            diagnostics=diagnostics,
        )

    # ------------------------------------------------------------------ #
    #  Per-table decoding
    # ------------------------------------------------------------------ #

    def _parse_table(
        self,
        sh: SectionHeaderEntry,
        diagnostics: list[Diagnostic],
    ) -> list[Symbol]:
        if self._is_64bit:
            fmt, min_size = _SYM64_FMT, C.SYM64_SIZE
        else:
            fmt, min_size = _SYM32_FMT, C.SYM32_SIZE

        entry_size = sh.entsize or min_size
        if entry_size < min_size:
            diagnostics.append(Diagnostic.from_error(
                TruncatedTable(
                    f"{sh.name or sh.index}: entry size {entry_size} is smaller "
                    f"than {min_size}; table skipped",
                    offset=sh.offset,
                ),
                _STAGE,
            ))
            return []

        strtab = self._string_table(sh, diagnostics)
        is_dynamic = sh.type == C.SHT_DYNSYM
        table_name = sh.name or ("dynsym" if is_dynamic else "symtab")
        count = sh.size // entry_size

        symbols: list[Symbol] = []
        for i in range(count):
            try:
                offset = checked_add(sh.offset, checked_mul(i, entry_size))
                self._reader.require(offset, entry_size)
            except (OutOfBounds, IntegerOverflow):
                diagnostics.append(Diagnostic.from_error(
                    TruncatedTable(
                        f"{table_name}: truncated at entry {i} of {count}",
                        offset=sh.offset,
                    ),
                    _STAGE,
                ))
                break

            if self._is_64bit:
                st_name, st_info, st_other, st_shndx, st_value, st_size = (
                    self._reader.unpack(fmt, offset)
                )
            else:
                st_name, st_value, st_size, st_info, st_other, st_shndx = (
                    self._reader.unpack(fmt, offset)
                )

            type_code, bind_code = decode_symbol_info(st_info)
            symbols.append(Symbol(
                name=self._symbol_name(strtab, st_name),
                value=st_value,
                size=st_size,
                type=SymbolType.from_code(type_code),
                binding=SymbolBinding.from_code(bind_code),
                visibility=SymbolVisibility.from_code(st_other),
                info=st_info,
                other=st_other,
                section_index=st_shndx,
                section_name=self._section_name(st_shndx),
                table=table_name,
                is_dynamic=is_dynamic,
            ))

        return symbols

    def _string_table(
        self,
        sh: SectionHeaderEntry,
        diagnostics: list[Diagnostic],
    ) -> Optional[tuple[int, int]]:
        """Return ``(start, end)`` of the linked string table, if usable."""
        if not 0 < sh.link < len(self._sections):
            diagnostics.append(Diagnostic(
                code="OutOfBounds",
                stage=_STAGE,
                message=(
                    f"{sh.name or sh.index}: string table link {sh.link} "
                    "does not name a section; symbol names left empty"
                ),
                offset=sh.offset,
            ))
            return None

        strtab = self._sections[sh.link]
        if strtab.type != C.SHT_STRTAB or not self._reader.contains(strtab.offset, strtab.size):
            diagnostics.append(Diagnostic(
                code="OutOfBounds",
                stage=_STAGE,
                message=(
                    f"{sh.name or sh.index}: linked section {sh.link} is not "
                    "a readable string table; symbol names left empty"
                ),
                offset=strtab.offset,
            ))
            return None
        return strtab.offset, strtab.offset + strtab.size

    def _symbol_name(self, strtab: Optional[tuple[int, int]], name_offset: int) -> str:
        if strtab is None or name_offset == 0:
            return ""
        start, end = strtab
        try:
            return self._reader.cstring(start + name_offset, end=end)
        except OutOfBounds:
            return ""

    def _section_name(self, shndx: int) -> str:
        if shndx == C.SHN_UNDEF:
            return "UND"
        if shndx == C.SHN_ABS:
            return "ABS"
        if shndx == C.SHN_COMMON:
            return "COM"
        if shndx < len(self._sections):
            return self._sections[shndx].name
        return str(shndx)
