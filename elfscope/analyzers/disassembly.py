"""
Disassembly Adapter
====================

Thin layer between the analysis engine and the Capstone disassembly
engine.  Capstone does all instruction decoding; this module slices code
buffers, keeps address bookkeeping, maps Capstone's instruction objects
to :class:`~elfscope.core.models.Instruction` and splits large ranges
into chunks that can be decoded on a thread pool.

Supported architectures:

    ============  ==================  ===============
    Architecture  Capstone arch       Capstone mode
    ============  ==================  ===============
    ARM64         CS_ARCH_ARM64       CS_MODE_ARM
    ARM32         CS_ARCH_ARM         CS_MODE_ARM
    X86           CS_ARCH_X86         CS_MODE_32
    X86_64        CS_ARCH_X86         CS_MODE_64
    ============  ==================  ===============

References:
    - Capstone disassembly engine: https://www.capstone-engine.org/
"""

from __future__ import annotations

import itertools
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Iterator, Optional, Protocol, Union, runtime_checkable

import capstone

from elfscope.core.cancellation import CancellationToken
from elfscope.core.errors import UnsupportedArchitecture
from elfscope.core.models import Architecture, Instruction


ArchitectureLike = Union[Architecture, str, None]

# Capstone's default mnemonic for bytes skipped as data.
_SKIPDATA_MNEMONIC = ".byte"


def resolve_architecture(value: ArchitectureLike) -> Architecture:
    """Coerce ``value`` to an :class:`Architecture`.

    Raises:
        UnsupportedArchitecture: For ``None`` or any unknown name.
    """
    if isinstance(value, Architecture):
        return value
    if isinstance(value, str):
        try:
            return Architecture(value.lower())
        except ValueError:
            pass
    raise UnsupportedArchitecture(f"no disassembly mode for architecture {value!r}")


def split_operands(op_str: str) -> list[str]:
    """Split an operand string on commas that are not inside brackets.

    ``"x0, [x1, #0x10]"`` becomes ``["x0", "[x1, #0x10]"]``.
    """
    operands: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in op_str:
        if ch in "[{(":
            depth += 1
        elif ch in "]})":
            depth = max(0, depth - 1)
        if ch == "," and depth == 0:
            operands.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    tail = "".join(current).strip()
    if tail:
        operands.append(tail)
    return [op for op in operands if op]


@runtime_checkable
class Disassembler(Protocol):
    """Anything that decodes machine code into :class:`Instruction` objects."""

    def disassemble(
        self,
        code: bytes,
        base_address: int,
        architecture: Architecture,
    ) -> Iterator[Instruction]:
        ...


# ---------------------------------------------------------------------------
# Capstone backend
# ---------------------------------------------------------------------------

class CapstoneDisassembler:
    """Capstone-backed :class:`Disassembler`.

    A fresh ``Cs`` handle is created per call, so one instance can be
    shared between threads.  Capstone runs in SKIPDATA mode: bytes it
    cannot decode are stepped over (one byte on x86, one word on ARM)
    and left out of the stream, so a stray data word inside a code
    section does not end it.

    Usage::

        dis = CapstoneDisassembler()
        for insn in dis.disassemble(code, 0x401000, Architecture.X86_64):
            print(insn)
    """

    def disassemble(
        self,
        code: bytes,
        base_address: int,
        architecture: ArchitectureLike,
    ) -> Iterator[Instruction]:
        arch = resolve_architecture(architecture)
        cs = self._create_capstone_engine(arch)
        return self._decode(cs, bytes(code), base_address)

    @staticmethod
    def _decode(
        cs: capstone.Cs,
        code: bytes,
        base_address: int,
    ) -> Iterator[Instruction]:
        for insn in cs.disasm(code, base_address):
            if insn.mnemonic == _SKIPDATA_MNEMONIC:
                continue
            yield Instruction(
                address=insn.address,
                size=insn.size,
                raw_hex=bytes(insn.bytes).hex(),
                mnemonic=insn.mnemonic,
                op_str=insn.op_str,
                operands=split_operands(insn.op_str),
            )

    @staticmethod
    def _create_capstone_engine(arch: Architecture) -> capstone.Cs:
        """Create a Capstone handle for ``arch``."""
        arm64 = getattr(capstone, "CS_ARCH_AARCH64", None)
        if arm64 is None:
            arm64 = capstone.CS_ARCH_ARM64
        arch_map: dict[Architecture, tuple[int, int]] = {
            Architecture.X86: (capstone.CS_ARCH_X86, capstone.CS_MODE_32),
            Architecture.X86_64: (capstone.CS_ARCH_X86, capstone.CS_MODE_64),
            Architecture.ARM32: (capstone.CS_ARCH_ARM, capstone.CS_MODE_ARM),
            Architecture.ARM64: (arm64, capstone.CS_MODE_ARM),
        }
        if arch not in arch_map:
            raise UnsupportedArchitecture(f"no Capstone mode for {arch.value}")
        cs_arch, cs_mode = arch_map[arch]
        cs = capstone.Cs(cs_arch, cs_mode)
        cs.detail = False
        # Step over undecodable units (1 byte on x86, 4 on ARM) in one walk.
        cs.skipdata = True
        return cs


# ---------------------------------------------------------------------------
# Lazy, restartable instruction sequences
# ---------------------------------------------------------------------------

class InstructionStream:
    """Restartable, bounded sequence of instructions over one code range.

    Each iteration decodes again from the start of the range, so the
    stream can be consumed any number of times without caching.

    Usage::

        stream = analysis.disassemble(".text", limit=50)
        for insn in stream:
            print(insn)
        first = stream.first()
    """

    def __init__(
        self,
        disassembler: Disassembler,
        code: bytes,
        base_address: int,
        architecture: Architecture,
        limit: Optional[int] = None,
        section: str = "",
    ) -> None:
        self._disassembler = disassembler
        self._code = code
        self._base_address = base_address
        self._architecture = architecture
        self._limit = limit
        self.section = section

    @property
    def base_address(self) -> int:
        return self._base_address

    @property
    def end_address(self) -> int:
        return self._base_address + len(self._code)

    @property
    def architecture(self) -> Architecture:
        return self._architecture

    def __iter__(self) -> Iterator[Instruction]:
        insns = self._disassembler.disassemble(
            self._code, self._base_address, self._architecture
        )
        if self._limit is not None:
            return itertools.islice(insns, max(0, self._limit))
        return iter(insns)

    def first(self) -> Optional[Instruction]:
        return next(iter(self), None)

    def __repr__(self) -> str:
        return (
            f"InstructionStream({self.section or 'range'} "
            f"0x{self._base_address:x}-0x{self.end_address:x}, "
            f"{self._architecture.value})"
        )


# ---------------------------------------------------------------------------
# Parallel chunked decoding
# ---------------------------------------------------------------------------

def chunk_ranges(
    size: int,
    base_address: int,
    architecture: Architecture,
    chunk_size: int,
    boundaries: Iterable[int] = (),
) -> list[tuple[int, int]]:
    """Split ``size`` bytes into independently decodable ``(start, end)`` offsets.

    Fixed-width ISAs split at multiples of ``chunk_size`` rounded up to the
    instruction alignment.  Variable-width ISAs only split at the given
    ``boundaries`` (function start addresses), never mid-instruction.
    """
    if size <= 0:
        return []
    align = architecture.instruction_alignment
    chunk_size = max(chunk_size, align)

    if align > 1:
        step = (chunk_size + align - 1) // align * align
        return [(start, min(start + step, size)) for start in range(0, size, step)]

    cuts = sorted({
        addr - base_address for addr in boundaries
        if base_address < addr < base_address + size
    })
    ranges: list[tuple[int, int]] = []
    start = 0
    for cut in cuts:
        if cut - start >= chunk_size:
            ranges.append((start, cut))
            start = cut
    ranges.append((start, size))
    return ranges


def disassemble_parallel(
    disassembler: Disassembler,
    code: bytes,
    base_address: int,
    architecture: Architecture,
    chunk_size: int = 0x10000,
    max_workers: int = 4,
    boundaries: Iterable[int] = (),
    limit: Optional[int] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> list[Instruction]:
    """Decode ``code`` in chunks on a thread pool.

    Results are concatenated in address order and truncated to ``limit``.
    ``cancel_token`` is checked before each chunk; a cancelled run raises
    :class:`~elfscope.core.errors.AnalysisCancelled` and returns nothing.
    """
    ranges = chunk_ranges(len(code), base_address, architecture, chunk_size, boundaries)
    if not ranges:
        return []
    token = cancel_token or CancellationToken()

    def _decode(bounds: tuple[int, int]) -> list[Instruction]:
        token.raise_if_cancelled("disassembly")
        start, end = bounds
        insns = disassembler.disassemble(code[start:end], base_address + start, architecture)
        if limit is not None:
            return list(itertools.islice(insns, limit))
        return list(insns)

    if len(ranges) == 1 or max_workers <= 1:
        chunks = [_decode(r) for r in ranges]
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            chunks = list(pool.map(_decode, ranges))

    result = list(itertools.chain.from_iterable(chunks))
    if limit is not None:
        del result[limit:]
    return result
