"""
Dynamic Section Analyzer
=========================

Extracts dynamic-linking facts: the ``DT_NULL``-terminated ``.dynamic``
array of ``(d_tag, d_val)`` pairs and the program interpreter named by
``PT_INTERP``.  String-valued tags (``DT_NEEDED``, ``DT_SONAME``,
``DT_RPATH``, ``DT_RUNPATH``) are resolved through the dynamic string
table linked from the ``.dynamic`` section header.

References:
    - TIS Committee. (1995). ELF Specification, Version 1.2.
      Book III, Section 2-8 (Dynamic Section).
    - Linux man page: ld.so(8).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from elfscope.core.errors import IntegerOverflow, OutOfBounds, TruncatedTable
from elfscope.core.models import (
    Diagnostic,
    DynamicEntry,
    DynamicInfo,
    FileHeader,
    ProgramHeaderEntry,
    SectionHeaderEntry,
)
from elfscope.parsers import constants as C
from elfscope.parsers.reader import ByteReader, checked_add, checked_mul


_STAGE = "dynamic"

_STRING_TAGS: frozenset[int] = frozenset({
    C.DT_NEEDED, C.DT_SONAME, C.DT_RPATH, C.DT_RUNPATH,
})


@dataclass(frozen=True, slots=True)
class DynamicAnalysis:
    info: DynamicInfo = field(default_factory=DynamicInfo)
    diagnostics: list[Diagnostic] = field(default_factory=list)


class DynamicSectionAnalyzer:
    """Decode ``.dynamic`` and ``PT_INTERP``.

    Usage::

        dyn = DynamicSectionAnalyzer(reader, header, sections, segments).analyze()
        print(dyn.info.needed, dyn.info.interpreter)
    """

    def __init__(
        self,
        reader: ByteReader,
        header: FileHeader,
        sections: list[SectionHeaderEntry],
        program_headers: list[ProgramHeaderEntry],
    ) -> None:
        self._reader = reader.with_endianness(header.little_endian)
        self._is_64bit = header.is_64bit
        self._sections = sections
        self._program_headers = program_headers

    def analyze(self) -> DynamicAnalysis:
        diagnostics: list[Diagnostic] = []
        interpreter = self._interpreter(diagnostics)

        dynamic = next(
            (s for s in self._sections if s.type == C.SHT_DYNAMIC), None
        )
        if dynamic is None:
            return DynamicAnalysis(
                info=DynamicInfo(interpreter=interpreter),
                diagnostics=diagnostics,
            )

        entries = self._parse_entries(dynamic, diagnostics)
        strtab = self._string_table(dynamic)

        needed: list[str] = []
        resolved: dict[int, str] = {}
        for entry in entries:
            if entry.tag not in _STRING_TAGS:
                continue
            text = self._lookup(strtab, entry.value)
            if entry.tag == C.DT_NEEDED:
                needed.append(text)
            else:
                resolved.setdefault(entry.tag, text)

        return DynamicAnalysis(
            info=DynamicInfo(
                needed=needed,
                soname=resolved.get(C.DT_SONAME, ""),
                rpath=resolved.get(C.DT_RPATH, ""),
                runpath=resolved.get(C.DT_RUNPATH, ""),
                interpreter=interpreter,
                entries=entries,
            ),
            diagnostics=diagnostics,
        )

    # ------------------------------------------------------------------ #
    #  Helpers
    # ------------------------------------------------------------------ #

    def _parse_entries(
        self,
        sh: SectionHeaderEntry,
        diagnostics: list[Diagnostic],
    ) -> list[DynamicEntry]:
        if self._is_64bit:
            fmt, entry_size = "qQ", C.DYN64_SIZE
        else:
            fmt, entry_size = "iI", C.DYN32_SIZE

        count = sh.size // entry_size
        entries: list[DynamicEntry] = []
        for i in range(count):
            try:
                offset = checked_add(sh.offset, checked_mul(i, entry_size))
                self._reader.require(offset, entry_size)
            except (OutOfBounds, IntegerOverflow):
                diagnostics.append(Diagnostic.from_error(
                    TruncatedTable(
                        f"{sh.name or 'dynamic'}: truncated at entry {i} of {count}",
                        offset=sh.offset,
                    ),
                    _STAGE,
                ))
                break

            tag, value = self._reader.unpack(fmt, offset)
            if tag == C.DT_NULL:
                break
            entries.append(DynamicEntry(
                tag=tag,
                tag_name=C.dynamic_tag_name(tag) if tag >= 0 else str(tag),
                value=value,
            ))
        return entries

    def _string_table(self, dynamic: SectionHeaderEntry) -> Optional[SectionHeaderEntry]:
        if 0 < dynamic.link < len(self._sections):
            linked = self._sections[dynamic.link]
            if linked.type == C.SHT_STRTAB:
                return linked
        return next((s for s in self._sections if s.name == ".dynstr"), None)

    def _lookup(self, strtab: Optional[SectionHeaderEntry], index: int) -> str:
        if strtab is None or index >= strtab.size:
            return ""
        try:
            return self._reader.cstring(strtab.offset + index, end=strtab.end_offset)
        except OutOfBounds:
            return ""

    def _interpreter(self, diagnostics: list[Diagnostic]) -> str:
        for ph in self._program_headers:
            if ph.type != C.PT_INTERP or ph.filesz == 0:
                continue
            try:
                return self._reader.cstring(ph.offset, end=ph.offset + ph.filesz)
            except OutOfBounds as exc:
                diagnostics.append(Diagnostic.from_error(exc, _STAGE))
        return ""
