"""
elfscope Analysis Engine
=========================

Orchestrates the ELF analysis pipeline and exposes the result as one
immutable :class:`Analysis`.

Analysis Pipeline:
    1. Validate identification bytes and decode the file header (fatal on error)
    2. Decode program and section header tables
    3. Extract static and dynamic symbols
    4. Decode REL/RELA relocations
    5. Decode the dynamic section and program interpreter
    6. Extract null-terminated strings
    7. (on demand) Disassemble executable code through the injected disassembler
    8. (on demand) Build the cross-reference index

Stages 1-6 run eagerly in :meth:`AnalysisFacade.analyze`, with a
cancellation check before each one.  Stages 7-8 are the expensive ones
and run only when the caller asks for instructions, cross-references or
an instruction search.

Only the header stage can fail the analysis.  Later stages turn damaged
structures into :class:`~elfscope.core.models.Diagnostic` entries and
keep whatever they decoded.

References:
    - TIS Committee. (1995). ELF Specification, Version 1.2.
    - Sikorski, M., & Honig, A. (2012). Practical Malware Analysis.
      No Starch Press.
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import threading
from typing import Any, Callable, Optional, TypeVar, Union

from shared.config import ElfscopeConfig
from shared.logger import ScopeLogger

from elfscope.analyzers.disassembly import (
    ArchitectureLike,
    Disassembler,
    InstructionStream,
    disassemble_parallel,
    resolve_architecture,
)
from elfscope.analyzers.dynamic import DynamicSectionAnalyzer
from elfscope.analyzers.relocations import RelocationAnalyzer
from elfscope.analyzers.strings import StringExtractor
from elfscope.analyzers.symbols import SymbolExtractor
from elfscope.analyzers.xrefs import CrossReferenceBuilder, CrossReferenceIndex
from elfscope.core.cancellation import CancellationToken
from elfscope.core.errors import AnalysisCancelled, AnalysisError, UnsupportedArchitecture
from elfscope.core.models import (
    Architecture,
    Diagnostic,
    DynamicInfo,
    ExtractedString,
    FileHeader,
    Instruction,
    ProgramHeaderEntry,
    RelocationEntry,
    SearchFilter,
    SearchMatch,
    SectionHeaderEntry,
    Symbol,
)
from elfscope.parsers.header import ELFHeaderParser
from elfscope.parsers.reader import BufferLike, ByteReader
from elfscope.parsers.tables import TableParser


_T = TypeVar("_T")

STAGES: tuple[str, ...] = (
    "header", "tables", "symbols", "relocations", "dynamic", "strings",
)

# Instructions decoded between cancellation checks on the serial path.
_CANCEL_CHECK_INTERVAL = 4096


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

class Analysis:
    """Immutable result of one analysis run.

    Structural results (header, tables, symbols, relocations, dynamic
    info, strings) are fixed at construction.  Instructions and the
    cross-reference index are computed on first use and cached; the cache
    is guarded by a lock so one Analysis can be queried from several
    threads.

    Usage::

        with facade.analyze(data) as analysis:
            print(analysis.header.machine_name, len(analysis.symbols))
            for insn in analysis.disassemble(".text", limit=20):
                print(insn)
            index = analysis.cross_references()
    """

    def __init__(
        self,
        *,
        reader: ByteReader,
        header: FileHeader,
        program_headers: list[ProgramHeaderEntry],
        sections: list[SectionHeaderEntry],
        symbols: list[Symbol],
        relocations: list[RelocationEntry],
        dynamic: DynamicInfo,
        strings: list[ExtractedString],
        diagnostics: list[Diagnostic],
        md5: str,
        sha256: str,
        config: ElfscopeConfig,
        logger: ScopeLogger,
        disassembler: Optional[Disassembler] = None,
        architecture: ArchitectureLike = None,
    ) -> None:
        self._reader: Optional[ByteReader] = reader
        self._size = len(reader)
        self._header = header
        self._program_headers = tuple(program_headers)
        self._sections = tuple(sections)
        self._symbols = tuple(symbols)
        self._relocations = tuple(relocations)
        self._dynamic = dynamic
        self._strings = tuple(strings)
        self._diagnostics: list[Diagnostic] = list(diagnostics)
        self._md5 = md5
        self._sha256 = sha256
        self._config = config
        self._logger = logger
        self._disassembler = disassembler
        self._architecture_override = architecture

        self._lock = threading.RLock()
        self._instructions: Optional[list[Instruction]] = None
        self._decode_error: Optional[AnalysisError] = None
        self._xrefs: Optional[CrossReferenceIndex] = None
        self._closed = False

    # ------------------------------------------------------------------ #
    #  Structural results
    # ------------------------------------------------------------------ #

    @property
    def size(self) -> int:
        return self._size

    @property
    def md5(self) -> str:
        return self._md5

    @property
    def sha256(self) -> str:
        return self._sha256

    @property
    def header(self) -> FileHeader:
        return self._header

    @property
    def program_headers(self) -> tuple[ProgramHeaderEntry, ...]:
        return self._program_headers

    @property
    def sections(self) -> tuple[SectionHeaderEntry, ...]:
        return self._sections

    @property
    def symbols(self) -> tuple[Symbol, ...]:
        return self._symbols

    @property
    def relocations(self) -> tuple[RelocationEntry, ...]:
        return self._relocations

    @property
    def dynamic(self) -> DynamicInfo:
        return self._dynamic

    @property
    def strings(self) -> tuple[ExtractedString, ...]:
        return self._strings

    @property
    def diagnostics(self) -> tuple[Diagnostic, ...]:
        """Recoverable problems, including those met by on-demand stages."""
        with self._lock:
            return tuple(self._diagnostics)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def architecture(self) -> Optional[Architecture]:
        """Disassembly architecture: the override if given, else from ``e_machine``."""
        if self._architecture_override is not None:
            try:
                return resolve_architecture(self._architecture_override)
            except UnsupportedArchitecture:
                return None
        return self._header.architecture

    def section(self, name: str) -> Optional[SectionHeaderEntry]:
        """First section called ``name``."""
        return next((s for s in self._sections if s.name == name), None)

    def functions(self) -> list[Symbol]:
        return [s for s in self._symbols if s.is_function]

    def symbol(self, name: str) -> Optional[Symbol]:
        return next((s for s in self._symbols if s.name == name), None)

    # ------------------------------------------------------------------ #
    #  On-demand disassembly
    # ------------------------------------------------------------------ #

    def disassemble(
        self,
        section: Optional[str] = ".text",
        start: Optional[int] = None,
        end: Optional[int] = None,
        limit: Optional[int] = None,
        architecture: ArchitectureLike = None,
    ) -> InstructionStream:
        """Return a lazy, restartable instruction stream over a code range.

        Args:
            section: Section to decode.  ``None`` decodes the address range
                ``[start, end)`` wherever it lies.
            start: First virtual address (default: section start).
            end: Exclusive end address (default: section end).
            limit: Maximum instructions per iteration.
            architecture: Override the architecture derived from the header.

        Raises:
            UnsupportedArchitecture: No disassembler was injected, or the
                architecture has no disassembly mode.
            AnalysisError: The section or address range cannot be found.
        """
        self._ensure_open()
        if self._disassembler is None:
            raise UnsupportedArchitecture("no disassembler configured for this analysis")
        arch = resolve_architecture(
            architecture or self._architecture_override or self._header.architecture
        )

        if section is not None:
            sh = self.section(section)
            if sh is None:
                raise AnalysisError(f"no section named {section!r}")
        else:
            if start is None:
                raise AnalysisError("an address range needs a start address")
            sh = next(
                (s for s in self._sections if s.has_file_data and s.contains_address(start)),
                None,
            )
            if sh is None:
                raise AnalysisError(f"address 0x{start:x} is not backed by file data")

        code, base = self._section_bytes(sh, start, end)
        return InstructionStream(
            self._disassembler, code, base, arch, limit=limit, section=sh.name,
        )

    def instructions(
        self,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[Instruction]:
        """Decode every executable section, bounded by ``max_instructions``.

        Cached after the first call.  A decoding failure is recorded as a
        diagnostic once and raised again on later calls.

        Args:
            cancel_token: Checked between sections and chunks.  A
                cancelled decode caches nothing.

        Raises:
            UnsupportedArchitecture: As for :meth:`disassemble`.
            AnalysisCancelled: ``cancel_token`` was cancelled.
        """
        with self._lock:
            self._ensure_open()
            if self._decode_error is not None:
                raise self._decode_error
            if self._instructions is None:
                try:
                    self._instructions = self._decode_executable_sections(
                        cancel_token or CancellationToken()
                    )
                except AnalysisCancelled:
                    raise
                except AnalysisError as exc:
                    self._decode_error = exc
                    self._record(exc, "disassembly")
                    raise
            return self._instructions

    def cross_references(
        self,
        cancel_token: Optional[CancellationToken] = None,
    ) -> CrossReferenceIndex:
        """Build (once) and return the cross-reference index.

        Disassembly failures are recorded as diagnostics; the index then
        holds only symbol and relocation annotations.

        Raises:
            AnalysisCancelled: ``cancel_token`` was cancelled.
        """
        with self._lock:
            if self._xrefs is not None:
                return self._xrefs
            self._ensure_open()
            try:
                instructions = self.instructions(cancel_token)
            except AnalysisCancelled:
                raise
            except AnalysisError:
                instructions = []

            with self._logger.stage("xrefs"), self._logger.timed("cross-reference index"):
                builder = CrossReferenceBuilder(
                    self._symbols, self._strings, self._relocations
                )
                self._xrefs = builder.build(instructions)
            self._logger.debug("Indexed %d annotations", len(self._xrefs))
            return self._xrefs

    # ------------------------------------------------------------------ #
    #  Search
    # ------------------------------------------------------------------ #

    def search(
        self,
        query: str,
        filter_kind: Union[SearchFilter, str] = SearchFilter.UNFILTERED,
    ) -> list[SearchMatch]:
        """Case-insensitive substring search.

        Results are ordered instructions (by address), then symbols (table
        order), then strings (first occurrence).  Instructions are only
        searched when a disassembler was injected.
        """
        kind = SearchFilter(filter_kind)
        needle = query.lower()
        if not needle:
            return []

        matches: list[SearchMatch] = []
        if kind in (SearchFilter.INSTRUCTIONS, SearchFilter.REGISTERS, SearchFilter.UNFILTERED):
            matches.extend(self._search_instructions(needle, kind))
        if kind in (SearchFilter.SYMBOLS, SearchFilter.UNFILTERED):
            matches.extend(
                SearchMatch(kind="symbol", field="name", address=s.value, text=s.name)
                for s in self._symbols
                if needle in s.name.lower()
            )
        if kind in (SearchFilter.STRINGS, SearchFilter.UNFILTERED):
            matches.extend(
                SearchMatch(
                    kind="string",
                    field="value",
                    address=s.address,
                    offset=s.offset,
                    text=s.value,
                )
                for s in self._strings
                if needle in s.value.lower()
            )
        return matches

    def _search_instructions(self, needle: str, kind: SearchFilter) -> list[SearchMatch]:
        if self._disassembler is None or self._closed:
            return []
        try:
            instructions = self.instructions()
        except AnalysisError:
            return []

        found: list[SearchMatch] = []
        for insn in instructions:
            field = None
            if kind != SearchFilter.REGISTERS and needle in insn.mnemonic.lower():
                field = "mnemonic"
            elif kind != SearchFilter.INSTRUCTIONS and needle in insn.op_str.lower():
                field = "operands"
            if field is not None:
                found.append(SearchMatch(
                    kind="instruction", field=field, address=insn.address, text=str(insn),
                ))
        return found

    # ------------------------------------------------------------------ #
    #  Lifecycle
    # ------------------------------------------------------------------ #

    def close(self) -> None:
        """Release the image buffer and cached disassembly."""
        with self._lock:
            self._reader = None
            self._instructions = None
            self._xrefs = None
            self._closed = True

    def __enter__(self) -> Analysis:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"Analysis(ELF{self._header.word_size} {self._header.machine_name}, "
            f"{len(self._sections)} sections, {len(self._symbols)} symbols, "
            f"{len(self._strings)} strings)"
        )

    # ------------------------------------------------------------------ #
    #  Internal helpers
    # ------------------------------------------------------------------ #

    def _ensure_open(self) -> ByteReader:
        if self._closed or self._reader is None:
            raise AnalysisError("analysis has been closed")
        return self._reader

    def _record(self, error: AnalysisError, stage: str) -> None:
        with self._lock:
            self._diagnostics.append(Diagnostic.from_error(error, stage))
        self._logger.warning("%s: %s", stage, error.message)

    def _section_bytes(
        self,
        sh: SectionHeaderEntry,
        start: Optional[int],
        end: Optional[int],
    ) -> tuple[bytes, int]:
        """Bytes of ``sh`` between addresses ``start`` and ``end``, clipped."""
        reader = self._ensure_open()
        if not sh.has_file_data:
            return b"", sh.addr

        available = max(0, min(sh.size, len(reader) - sh.offset))
        lo = 0 if start is None else min(max(start - sh.addr, 0), available)
        hi = available if end is None else min(max(end - sh.addr, lo), available)
        return reader.read_bytes(sh.offset + lo, hi - lo), sh.addr + lo

    def _decode_executable_sections(self, token: CancellationToken) -> list[Instruction]:
        self._ensure_open()
        if self._disassembler is None:
            raise UnsupportedArchitecture("no disassembler configured for this analysis")
        arch = resolve_architecture(self._architecture_override or self._header.architecture)

        settings = self._config.analysis
        budget = max(0, settings.max_instructions)
        boundaries = [s.value for s in self._symbols if s.is_function and s.value]
        result: list[Instruction] = []

        with self._logger.stage("disassembly"):
            for sh in self._sections:
                token.raise_if_cancelled("disassembly")
                if len(result) >= budget:
                    break
                if not (sh.is_executable and sh.has_file_data):
                    continue
                code, base = self._section_bytes(sh, None, None)
                remaining = budget - len(result)
                with self._logger.timed(f"disassembly of {sh.name or sh.index}"):
                    if settings.parallel_disassembly:
                        result.extend(disassemble_parallel(
                            self._disassembler,
                            code,
                            base,
                            arch,
                            chunk_size=settings.disassembly_chunk_size,
                            max_workers=self._config.global_settings.max_workers,
                            boundaries=boundaries,
                            limit=remaining,
                            cancel_token=token,
                        ))
                    else:
                        stream = iter(self._disassembler.disassemble(code, base, arch))
                        while remaining > 0:
                            batch = list(itertools.islice(stream, min(remaining, _CANCEL_CHECK_INTERVAL)))
                            result.extend(batch)
                            remaining -= len(batch)
                            if len(batch) < _CANCEL_CHECK_INTERVAL:
                                break
                            token.raise_if_cancelled("disassembly")
        return result


# ---------------------------------------------------------------------------
# AnalysisFacade
# ---------------------------------------------------------------------------

class AnalysisFacade:
    """Entry point of the analysis engine.

    The facade holds no per-analysis state; one instance can analyse any
    number of images, from any number of threads.

    Usage::

        facade = AnalysisFacade(disassembler=CapstoneDisassembler())
        analysis = facade.analyze(Path("libfoo.so").read_bytes())

    Or from async code::

        analysis = await facade.analyze_async(data)
    """

    def __init__(
        self,
        config: ElfscopeConfig | None = None,
        logger: ScopeLogger | None = None,
        disassembler: Disassembler | None = None,
    ) -> None:
        """Initialise the facade.

        Args:
            config: elfscope configuration.  Defaults are used if not provided.
            logger: Logger instance.  A new one is created if not provided.
            disassembler: Instruction decoder for on-demand disassembly.
                Without one, instruction-level queries are unavailable.
        """
        self._config: ElfscopeConfig = config or ElfscopeConfig()
        self._logger: ScopeLogger = logger or ScopeLogger("engine")
        self._disassembler = disassembler

    @property
    def config(self) -> ElfscopeConfig:
        return self._config

    # ------------------------------------------------------------------ #
    #  Main analysis entry points
    # ------------------------------------------------------------------ #

    def analyze(
        self,
        buffer: BufferLike,
        cancel_token: Optional[CancellationToken] = None,
        *,
        min_string_length: Optional[int] = None,
        max_strings: Optional[int] = None,
        architecture: ArchitectureLike = None,
    ) -> Analysis:
        """Run the eager pipeline stages over ``buffer``.

        Args:
            buffer: The complete ELF image.
            cancel_token: Checked before every stage.
            min_string_length: Override ``[analysis] min_string_length``.
            max_strings: Override ``[analysis] max_strings`` (0 = unlimited).
            architecture: Disassembly architecture override.

        Returns:
            The populated :class:`Analysis`.

        Raises:
            NotAnELFFile, UnsupportedELFVariant, TruncatedHeader: The file
                header is unusable.
            AnalysisCancelled: ``cancel_token`` was cancelled.
            AnalysisError: The image exceeds ``max_file_size``.
        """
        token = cancel_token or CancellationToken()
        settings = self._config.analysis
        log = self._logger

        reader = ByteReader(buffer)
        if len(reader) > settings.max_file_size:
            raise AnalysisError(
                f"image of {len(reader):,} bytes exceeds max_file_size "
                f"({settings.max_file_size:,} bytes)"
            )

        diagnostics: list[Diagnostic] = []

        token.raise_if_cancelled("header")
        with log.stage("header"):
            try:
                header = ELFHeaderParser().parse(reader)
            except AnalysisError as exc:
                log.error("Rejected image: %s", exc.message)
                raise
            reader = reader.with_endianness(header.little_endian)
            log.info(
                "ELF%d %s %s, %s",
                header.word_size,
                header.endianness.value,
                header.file_type_name,
                header.machine_name,
            )

        tables = self._run_stage(
            "tables", token, diagnostics,
            lambda: TableParser(reader, header).parse(),
        )
        sections = tables.sections if tables else []
        program_headers = tables.program_headers if tables else []

        symbols = self._run_stage(
            "symbols", token, diagnostics,
            lambda: SymbolExtractor(reader, header, sections).extract(),
        )
        relocations = self._run_stage(
            "relocations", token, diagnostics,
            lambda: RelocationAnalyzer(
                reader, header, sections, symbols.by_table if symbols else {}
            ).analyze(),
        )
        dynamic = self._run_stage(
            "dynamic", token, diagnostics,
            lambda: DynamicSectionAnalyzer(
                reader, header, sections, program_headers
            ).analyze(),
        )

        min_len = settings.min_string_length if min_string_length is None else min_string_length
        cap = settings.string_cap if max_strings is None else (max_strings or None)
        strings = self._run_stage(
            "strings", token, diagnostics,
            lambda: StringExtractor(min_len).extract_image(reader, sections, max_results=cap),
        )

        data = reader.data
        analysis = Analysis(
            reader=reader,
            header=header,
            program_headers=program_headers,
            sections=sections,
            symbols=symbols.symbols if symbols else [],
            relocations=relocations.relocations if relocations else [],
            dynamic=dynamic.info if dynamic else DynamicInfo(),
            strings=strings or [],
            diagnostics=diagnostics,
            md5=hashlib.md5(data).hexdigest(),
            sha256=hashlib.sha256(data).hexdigest(),
            config=self._config,
            logger=log,
            disassembler=self._disassembler,
            architecture=architecture,
        )
        log.info(
            "Analysis complete: %d sections, %d symbols, %d relocations, "
            "%d strings, %d diagnostics",
            len(analysis.sections),
            len(analysis.symbols),
            len(analysis.relocations),
            len(analysis.strings),
            len(diagnostics),
        )
        return analysis

    async def analyze_async(
        self,
        buffer: BufferLike,
        cancel_token: Optional[CancellationToken] = None,
        **hints: Any,
    ) -> Analysis:
        """Run :meth:`analyze` on the default executor.

        Cancelling the awaiting task also cancels ``cancel_token`` so the
        worker stops at the next stage boundary.
        """
        token = cancel_token or CancellationToken()
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, lambda: self.analyze(buffer, token, **hints)
            )
        except asyncio.CancelledError:
            token.cancel()
            raise

    # ------------------------------------------------------------------ #
    #  Stage runner
    # ------------------------------------------------------------------ #

    def _run_stage(
        self,
        stage: str,
        token: CancellationToken,
        diagnostics: list[Diagnostic],
        work: Callable[[], _T],
    ) -> Optional[_T]:
        """Run one recoverable stage.

        The stage's own diagnostics are collected and logged.  An
        :class:`AnalysisError` escaping the stage becomes a diagnostic and
        the stage result is ``None``.
        """
        token.raise_if_cancelled(stage)
        with self._logger.stage(stage):
            try:
                with self._logger.timed(stage):
                    result = work()
            except AnalysisError as exc:
                diagnostics.append(Diagnostic.from_error(exc, stage))
                self._logger.warning("%s stage failed: %s", stage, exc.message)
                return None

            for diag in getattr(result, "diagnostics", ()):
                diagnostics.append(diag)
                self._logger.warning("%s (%s)", diag.message, diag.code)
        return result
