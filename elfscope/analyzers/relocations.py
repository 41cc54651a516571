"""
Relocation Analyzer
====================

Decodes ``SHT_REL`` and ``SHT_RELA`` sections.  The packed ``r_info``
field splits differently per word size:

    ELF32:  type = info & 0xFF,        symbol = info >> 8
    ELF64:  type = info & 0xFFFFFFFF,  symbol = info >> 32

RELA entries additionally carry a signed addend.  Symbol names are
resolved through the symbol table named by the relocation section's
``sh_link``.

References:
    - TIS Committee. (1995). ELF Specification, Version 1.2.
      Book I, Section 1-21 (Relocation).
    - System V ABI AMD64 Supplement, Section 4.4.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from elfscope.core.errors import IntegerOverflow, OutOfBounds, TruncatedTable
from elfscope.core.models import (
    Diagnostic,
    FileHeader,
    RelocationEntry,
    SectionHeaderEntry,
    Symbol,
)
from elfscope.parsers import constants as C
from elfscope.parsers.reader import ByteReader, checked_add, checked_mul


_STAGE = "relocations"

# (offset, info[, addend]); addends are signed
_REL_FORMATS: dict[tuple[bool, bool], tuple[str, int]] = {
    # (is_64bit, is_rela): (format, entry size)
    (False, False): ("II", C.REL32_SIZE),
    (False, True): ("IIi", C.RELA32_SIZE),
    (True, False): ("QQ", C.REL64_SIZE),
    (True, True): ("QQq", C.RELA64_SIZE),
}


def decode_relocation_info(info: int, is_64bit: bool) -> tuple[int, int]:
    """Split ``r_info`` into ``(type, symbol_index)`` for the given class."""
    if is_64bit:
        return info & 0xFFFFFFFF, info >> 32
    return info & 0xFF, info >> 8


@dataclass(frozen=True, slots=True)
class RelocationAnalysis:
    relocations: list[RelocationEntry] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)


class RelocationAnalyzer:
    """Decode REL/RELA sections and resolve their target symbols.

    Usage::

        symbols = SymbolExtractor(reader, header, sections).extract()
        relocs = RelocationAnalyzer(
            reader, header, sections, symbols.by_table
        ).analyze()
    """

    def __init__(
        self,
        reader: ByteReader,
        header: FileHeader,
        sections: list[SectionHeaderEntry],
        symbols_by_table: dict[int, list[Symbol]] | None = None,
    ) -> None:
        self._reader = reader.with_endianness(header.little_endian)
        self._is_64bit = header.is_64bit
        self._sections = sections
        self._symbols_by_table = symbols_by_table or {}

    def analyze(self) -> RelocationAnalysis:
        """Decode every relocation section in section order."""
        diagnostics: list[Diagnostic] = []
        relocations: list[RelocationEntry] = []
        for sh in self._sections:
            if sh.type == C.SHT_REL:
                relocations.extend(self._parse_section(sh, False, diagnostics))
            elif sh.type == C.SHT_RELA:
                relocations.extend(self._parse_section(sh, True, diagnostics))
        return RelocationAnalysis(relocations=relocations, diagnostics=diagnostics)

    def _parse_section(
        self,
        sh: SectionHeaderEntry,
        is_rela: bool,
        diagnostics: list[Diagnostic],
    ) -> list[RelocationEntry]:
        fmt, min_size = _REL_FORMATS[(self._is_64bit, is_rela)]
        entry_size = sh.entsize or min_size
        label = sh.name or f"section {sh.index}"

        if entry_size < min_size:
            diagnostics.append(Diagnostic.from_error(
                TruncatedTable(
                    f"{label}: entry size {entry_size} is smaller than "
                    f"{min_size}; table skipped",
                    offset=sh.offset,
                ),
                _STAGE,
            ))
            return []

        symbols = self._symbols_by_table.get(sh.link, [])
        count = sh.size // entry_size
        entries: list[RelocationEntry] = []

        for i in range(count):
            try:
                offset = checked_add(sh.offset, checked_mul(i, entry_size))
                self._reader.require(offset, entry_size)
            except (OutOfBounds, IntegerOverflow):
                diagnostics.append(Diagnostic.from_error(
                    TruncatedTable(
                        f"{label}: truncated at entry {i} of {count}",
                        offset=sh.offset,
                    ),
                    _STAGE,
                ))
                break

            fields = self._reader.unpack(fmt, offset)
            r_offset, r_info = fields[0], fields[1]
            addend = fields[2] if is_rela else None
            r_type, r_sym = decode_relocation_info(r_info, self._is_64bit)

            entries.append(RelocationEntry(
                offset=r_offset,
                info=r_info,
                type=r_type,
                symbol_index=r_sym,
                addend=addend,
                symbol_name=symbols[r_sym].name if 0 < r_sym < len(symbols) else "",
                section=sh.name,
            ))

        return entries
