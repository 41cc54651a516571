"""
elfscope Console Output
========================

Rich-powered terminal display for analysis results: a file header panel,
then tables for segments, sections, symbols, relocations, dynamic
linking, strings, instructions, cross-references, search matches and
diagnostics.

References:
    - Rich library: https://github.com/Textualize/rich
"""

from __future__ import annotations

from typing import Sequence

from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from shared.console import ScopeConsole

from elfscope.analyzers.xrefs import CrossReferenceIndex
from elfscope.core.engine import Analysis
from elfscope.core.models import (
    AnnotationKind,
    Diagnostic,
    ExtractedString,
    Instruction,
    ProgramHeaderEntry,
    RelocationEntry,
    SearchMatch,
    SectionHeaderEntry,
    Symbol,
    SymbolType,
)


_SYMBOL_TYPE_COLOURS: dict[SymbolType, str] = {
    SymbolType.FUNC: "bright_green",
    SymbolType.OBJECT: "bright_cyan",
    SymbolType.SECTION: "dim",
    SymbolType.FILE: "dim",
    SymbolType.TLS: "bright_magenta",
    SymbolType.GNU_IFUNC: "bright_yellow",
}

_ANNOTATION_COLOURS: dict[AnnotationKind, str] = {
    AnnotationKind.SYMBOL: "bright_green",
    AnnotationKind.CALL: "bright_magenta",
    AnnotationKind.JUMP: "yellow",
    AnnotationKind.SYMBOL_REF: "bright_cyan",
    AnnotationKind.STRING_REF: "bright_yellow",
    AnnotationKind.RELOCATION: "bright_blue",
}


def _hex(value: int | None) -> str:
    return "-" if value is None else f"0x{value:x}"


def _table(*columns: tuple[str, str]) -> Table:
    """Build a themed table; each column is ``(title, justify)``."""
    tbl = Table(
        border_style="bright_cyan",
        header_style="bold bright_magenta",
        show_lines=False,
        padding=(0, 1),
    )
    for title, justify in columns:
        tbl.add_column(title, justify=justify)  # type: ignore[arg-type]
    return tbl


class AnalysisConsoleOutput:
    """Rich terminal display for an :class:`Analysis`.

    Usage::

        output = AnalysisConsoleOutput(max_rows=50)
        output.display(analysis, source="libfoo.so")
    """

    def __init__(self, console: ScopeConsole | None = None, max_rows: int = 50) -> None:
        """Initialise the renderer.

        Args:
            console: Console to print to.  A new one is created if not given.
            max_rows: Row cap for every table; ``0`` shows everything.
        """
        self._console: ScopeConsole = console or ScopeConsole()
        self._max_rows = max_rows

    @property
    def console(self) -> ScopeConsole:
        return self._console

    def display(self, analysis: Analysis, source: str = "") -> None:
        """Display the structural results of ``analysis``."""
        self._console.title("elfscope", "ELF binary analysis")
        self.display_header(analysis, source)

        if analysis.program_headers:
            self.display_segments(analysis.program_headers)
        if analysis.sections:
            self.display_sections(analysis.sections)
        if analysis.symbols:
            self.display_symbols(analysis.symbols)
        if analysis.relocations:
            self.display_relocations(analysis.relocations)
        self.display_dynamic(analysis)
        if analysis.strings:
            self.display_strings(analysis.strings)
        if analysis.diagnostics:
            self.display_diagnostics(analysis.diagnostics)

    # ------------------------------------------------------------------ #
    #  Header
    # ------------------------------------------------------------------ #

    def display_header(self, analysis: Analysis, source: str = "") -> None:
        h = analysis.header
        arch = h.architecture.value if h.architecture else "unsupported"
        lines: list[str] = []
        if source:
            lines.append(f"[bold]File:[/bold]         {escape(source)}")
        lines += [
            f"[bold]Size:[/bold]         {analysis.size:,} bytes",
            f"[bold]Class:[/bold]        ELF{h.word_size} ({h.endianness.value}-endian)",
            f"[bold]Type:[/bold]         {h.file_type_name}",
            f"[bold]Machine:[/bold]      {h.machine_name} [dim]({arch})[/dim]",
            f"[bold]OS/ABI:[/bold]       {h.osabi_name} (ABI version {h.abi_version})",
            f"[bold]Entry point:[/bold]  {_hex(h.entry)}",
            f"[bold]Flags:[/bold]        {_hex(h.flags)}",
            f"[bold]MD5:[/bold]          {analysis.md5}",
            f"[bold]SHA-256:[/bold]      {analysis.sha256}",
        ]
        self._console.print(Panel(
            "\n".join(lines),
            title="[bold bright_cyan]File Header[/bold bright_cyan]",
            border_style="bright_cyan",
            padding=(1, 2),
        ))

    # ------------------------------------------------------------------ #
    #  Tables
    # ------------------------------------------------------------------ #

    def display_segments(self, segments: Sequence[ProgramHeaderEntry]) -> None:
        self._console.section("Program Headers")
        tbl = _table(
            ("#", "right"), ("Type", "left"), ("Offset", "right"),
            ("VirtAddr", "right"), ("FileSiz", "right"), ("MemSiz", "right"),
            ("Flags", "left"), ("Align", "right"),
        )
        for ph in self._cap(segments):
            tbl.add_row(
                str(ph.index), ph.type_name, _hex(ph.offset), _hex(ph.vaddr),
                _hex(ph.filesz), _hex(ph.memsz), ph.flags_str, _hex(ph.align),
            )
        self._emit(tbl, len(segments), "program headers")

    def display_sections(self, sections: Sequence[SectionHeaderEntry]) -> None:
        self._console.section("Sections")
        tbl = _table(
            ("#", "right"), ("Name", "left"), ("Type", "left"), ("Address", "right"),
            ("Offset", "right"), ("Size", "right"), ("Flags", "left"), ("Link", "right"),
        )
        for sh in self._cap(sections):
            tbl.add_row(
                str(sh.index), escape(sh.name) or "[dim]<unnamed>[/dim]", sh.type_name,
                _hex(sh.addr), _hex(sh.offset), _hex(sh.size), sh.flags_str, str(sh.link),
            )
        self._emit(tbl, len(sections), "sections")

    def display_symbols(self, symbols: Sequence[Symbol]) -> None:
        named = [s for s in symbols if s.name]
        self._console.section("Symbols")
        self._console.info(f"{len(symbols)} symbols, {len(named)} named")
        tbl = _table(
            ("Name", "left"), ("Value", "right"), ("Size", "right"), ("Type", "left"),
            ("Bind", "left"), ("Vis", "left"), ("Section", "left"), ("Table", "left"),
        )
        for sym in self._cap(named):
            colour = _SYMBOL_TYPE_COLOURS.get(sym.type, "white")
            tbl.add_row(
                escape(sym.name), _hex(sym.value), str(sym.size),
                f"[{colour}]{sym.type.value}[/{colour}]", sym.binding.value,
                sym.visibility.value, escape(sym.section_name), escape(sym.table),
            )
        self._emit(tbl, len(named), "named symbols")

    def display_relocations(self, relocations: Sequence[RelocationEntry]) -> None:
        self._console.section("Relocations")
        tbl = _table(
            ("Offset", "right"), ("Type", "right"), ("Sym#", "right"),
            ("Symbol", "left"), ("Addend", "right"), ("Section", "left"),
        )
        for rel in self._cap(relocations):
            addend = "-" if rel.addend is None else f"{rel.addend:+#x}"
            tbl.add_row(
                _hex(rel.offset), str(rel.type), str(rel.symbol_index),
                escape(rel.symbol_name), addend, escape(rel.section),
            )
        self._emit(tbl, len(relocations), "relocations")

    def display_dynamic(self, analysis: Analysis) -> None:
        dyn = analysis.dynamic
        if not (dyn.entries or dyn.interpreter):
            return
        self._console.section("Dynamic Linking")
        if dyn.interpreter:
            self._console.print(f"[bold]Interpreter:[/bold] {escape(dyn.interpreter)}")
        if dyn.soname:
            self._console.print(f"[bold]SONAME:[/bold]      {escape(dyn.soname)}")
        if dyn.runpath or dyn.rpath:
            self._console.print(f"[bold]RUNPATH:[/bold]     {escape(dyn.runpath or dyn.rpath)}")
        for lib in dyn.needed:
            self._console.print(f"[bold]NEEDED:[/bold]      {escape(lib)}")

    def display_strings(self, strings: Sequence[ExtractedString]) -> None:
        self._console.section("Strings")
        tbl = _table(("Offset", "right"), ("Address", "right"), ("Section", "left"), ("Value", "left"))
        for s in self._cap(strings):
            value = s.value[:120] + "..." if len(s.value) > 120 else s.value
            tbl.add_row(_hex(s.offset), _hex(s.address), escape(s.section), escape(value))
        self._emit(tbl, len(strings), "strings")

    def display_instructions(
        self,
        instructions: Sequence[Instruction],
        xrefs: CrossReferenceIndex | None = None,
    ) -> None:
        self._console.section("Disassembly")
        tbl = _table(("Address", "right"), ("Bytes", "left"), ("Instruction", "left"), ("Refs", "left"))
        for insn in self._cap(instructions):
            refs = ""
            if xrefs is not None:
                refs = ", ".join(
                    f"{a.kind.value}:{escape(a.label)}"
                    for a in xrefs.at(insn.address)
                    if a.kind != AnnotationKind.SYMBOL
                )
            tbl.add_row(
                _hex(insn.address),
                f"[dim]{insn.raw_hex}[/dim]",
                f"[scope.mnemonic]{insn.mnemonic}[/scope.mnemonic] {escape(insn.op_str)}",
                refs,
            )
        self._emit(tbl, len(instructions), "instructions")

    def display_cross_references(self, xrefs: CrossReferenceIndex) -> None:
        self._console.section("Cross-References")
        items = list(xrefs)
        tbl = _table(("Source", "right"), ("Kind", "left"), ("Target", "right"), ("Label", "left"))
        for ann in self._cap(items):
            colour = _ANNOTATION_COLOURS.get(ann.kind, "white")
            tbl.add_row(
                _hex(ann.source),
                f"[{colour}]{ann.kind.value}[/{colour}]",
                _hex(ann.target),
                escape(ann.label),
            )
        self._emit(tbl, len(items), "annotations")

    def display_matches(self, query: str, matches: Sequence[SearchMatch]) -> None:
        self._console.section(f"Search: {escape(query)}")
        if not matches:
            self._console.info("No matches.")
            return
        tbl = _table(("Kind", "left"), ("Field", "left"), ("Address", "right"), ("Text", "left"))
        for m in self._cap(matches):
            tbl.add_row(m.kind, m.field, _hex(m.address), escape(m.text))
        self._emit(tbl, len(matches), "matches")

    def display_diagnostics(self, diagnostics: Sequence[Diagnostic]) -> None:
        self._console.section("Diagnostics")
        for d in diagnostics:
            where = f" at {_hex(d.offset)}" if d.offset is not None else ""
            self._console.warning(escape(f"[{d.stage}] {d.code}{where}: {d.message}"))

    # ------------------------------------------------------------------ #
    #  Helpers
    # ------------------------------------------------------------------ #

    def _cap(self, rows: Sequence) -> Sequence:
        if self._max_rows and len(rows) > self._max_rows:
            return rows[: self._max_rows]
        return rows

    def _emit(self, tbl: Table, total: int, noun: str) -> None:
        self._console.print(tbl)
        if self._max_rows and total > self._max_rows:
            self._console.info(
                f"Showing {self._max_rows} of {total} {noun}. "
                "Use --output to export everything to a report."
            )
