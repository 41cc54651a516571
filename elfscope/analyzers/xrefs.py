"""
Cross-Reference Builder
========================

Builds a bidirectional address index over a disassembled instruction
stream in a single pass:

    - every function symbol is registered as a SYMBOL annotation at its
      own address;
    - operand immediates, x86 RIP-relative displacements and ARM64
      ``adrp``/``add`` page pairs are resolved to absolute addresses;
    - resolved addresses that hit a symbol become CALL, JUMP or
      SYMBOL_REF edges, and those that hit an extracted string become
      STRING_REF edges;
    - relocations naming a symbol become RELOCATION annotations at the
      relocated location.

The index answers "what is at this address" (:meth:`at`) and "who refers
to this address" (:meth:`references_to`).

References:
    - Eagle, C. (2011). The IDA Pro Book (2nd ed.). Chapter 9,
      Cross-References and Graphing.
    - Intel 64 and IA-32 Architectures Software Developer's Manual,
      Vol. 2, Section 2.2.1.6 (RIP-Relative Addressing).
    - Arm Architecture Reference Manual for A-profile, ADRP.
"""

from __future__ import annotations

import re
from collections import defaultdict
from typing import Iterable, Iterator, Optional

from elfscope.core.models import (
    Annotation,
    AnnotationKind,
    ExtractedString,
    Instruction,
    RelocationEntry,
    Symbol,
)


# ---------------------------------------------------------------------------
# Instruction classification
# ---------------------------------------------------------------------------

_CALL_MNEMONICS: frozenset[str] = frozenset({
    "call", "callq", "lcall",   # x86
    "bl", "blx", "blr",         # ARM / AArch64
})

_ARM_JUMP_MNEMONICS: frozenset[str] = frozenset({
    "b", "bx", "br", "cbz", "cbnz", "tbz", "tbnz",
})

_ARM_CONDITIONS: frozenset[str] = frozenset({
    "eq", "ne", "cs", "hs", "cc", "lo", "mi", "pl", "vs", "vc",
    "hi", "ls", "ge", "lt", "gt", "le", "al",
})

_HEX_IMMEDIATE = re.compile(r"#?(-?0x[0-9a-fA-F]+)")
_RIP_RELATIVE = re.compile(r"\[\s*rip\s*([+-])\s*(0x[0-9a-fA-F]+|\d+)\s*\]")
_BRACKETED = re.compile(r"\[[^\]]*\]")


def is_call(mnemonic: str) -> bool:
    return mnemonic.lower() in _CALL_MNEMONICS


def is_jump(mnemonic: str) -> bool:
    """Return ``True`` for unconditional and conditional branches."""
    m = mnemonic.lower()
    if m in _ARM_JUMP_MNEMONICS or m.startswith("b."):
        return True
    if m.startswith("j") or m.startswith("loop"):
        return True
    # ARM32 conditional branch: b<cond>
    return m.startswith("b") and m[1:] in _ARM_CONDITIONS


def _parse_int(text: str) -> Optional[int]:
    try:
        return int(text, 0)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------

class CrossReferenceIndex:
    """Forward and reverse maps of :class:`Annotation` objects.

    Forward entries are keyed by ``source``, reverse entries by
    ``target``.
    """

    def __init__(self) -> None:
        self._forward: dict[int, list[Annotation]] = defaultdict(list)
        self._reverse: dict[int, list[Annotation]] = defaultdict(list)
        self._names: dict[str, int] = {}
        self._count: int = 0

    def add(self, annotation: Annotation) -> None:
        self._forward[annotation.source].append(annotation)
        self._reverse[annotation.target].append(annotation)
        self._count += 1
        if annotation.kind == AnnotationKind.SYMBOL and annotation.label:
            self._names.setdefault(annotation.label, annotation.target)

    def at(self, address: int) -> list[Annotation]:
        """Annotations whose source is ``address``."""
        return list(self._forward.get(address, ()))

    def references_to(self, address: int) -> list[Annotation]:
        """Annotations whose target is ``address``."""
        return list(self._reverse.get(address, ()))

    def jump_to(self, name: str) -> Optional[int]:
        """Address of the function symbol called ``name``, if registered."""
        return self._names.get(name)

    def addresses(self) -> list[int]:
        """Every annotated source address, ascending."""
        return sorted(self._forward)

    def __iter__(self) -> Iterator[Annotation]:
        for address in self.addresses():
            yield from self._forward[address]

    def __len__(self) -> int:
        return self._count


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class CrossReferenceBuilder:
    """Build a :class:`CrossReferenceIndex` from symbols, strings and code.

    Usage::

        builder = CrossReferenceBuilder(symbols, strings, relocations)
        index = builder.build(analysis.disassemble(".text"))
        for ann in index.references_to(index.jump_to("main")):
            print(ann.kind, hex(ann.source))
    """

    def __init__(
        self,
        symbols: Iterable[Symbol],
        strings: Iterable[ExtractedString] = (),
        relocations: Iterable[RelocationEntry] = (),
    ) -> None:
        self._functions: list[Symbol] = []
        self._symbol_at: dict[int, str] = {}
        self._symbol_by_name: dict[str, int] = {}

        for sym in symbols:
            if not sym.name or not sym.is_defined:
                continue
            if sym.is_function:
                self._functions.append(sym)
                # Function names win over data labels at the same address.
                self._symbol_at[sym.value] = sym.name
            elif sym.value:
                self._symbol_at.setdefault(sym.value, sym.name)
            else:
                continue
            self._symbol_by_name.setdefault(sym.name, sym.value)

        self._string_at: dict[int, str] = {}
        for s in strings:
            if s.address is not None:
                self._string_at.setdefault(s.address, s.value)

        self._relocations = [r for r in relocations if r.symbol_name]

    def build(self, instructions: Iterable[Instruction]) -> CrossReferenceIndex:
        """Walk ``instructions`` once and return the populated index."""
        index = CrossReferenceIndex()

        for sym in self._functions:
            index.add(Annotation(
                kind=AnnotationKind.SYMBOL,
                source=sym.value,
                target=sym.value,
                label=sym.name,
            ))

        pages: dict[str, int] = {}
        for insn in instructions:
            for target in self._resolve_targets(insn, pages):
                annotation = self._classify(insn, target)
                if annotation is not None:
                    index.add(annotation)

        for reloc in self._relocations:
            index.add(Annotation(
                kind=AnnotationKind.RELOCATION,
                source=reloc.offset,
                target=self._symbol_by_name.get(reloc.symbol_name, reloc.offset),
                label=reloc.symbol_name,
            ))

        return index

    # ------------------------------------------------------------------ #
    #  Operand resolution
    # ------------------------------------------------------------------ #

    def _classify(self, insn: Instruction, target: int) -> Optional[Annotation]:
        name = self._symbol_at.get(target)
        if name is not None:
            if is_call(insn.mnemonic):
                kind = AnnotationKind.CALL
            elif is_jump(insn.mnemonic):
                kind = AnnotationKind.JUMP
            else:
                kind = AnnotationKind.SYMBOL_REF
            return Annotation(kind=kind, source=insn.address, target=target, label=name)

        text = self._string_at.get(target)
        if text is not None:
            return Annotation(
                kind=AnnotationKind.STRING_REF,
                source=insn.address,
                target=target,
                label=text,
            )
        return None

    @staticmethod
    def _resolve_targets(insn: Instruction, pages: dict[str, int]) -> list[int]:
        """Absolute addresses an instruction's operands refer to.

        ``pages`` carries ARM64 ``adrp`` results between instructions,
        keyed by destination register.
        """
        mnemonic = insn.mnemonic.lower()
        operands = insn.operands
        targets: list[int] = []

        # x86 RIP-relative memory operands
        for sign, disp in _RIP_RELATIVE.findall(insn.op_str):
            value = int(disp, 0)
            targets.append(insn.next_address + (value if sign == "+" else -value))

        # Plain immediates outside memory operands
        bare = _BRACKETED.sub(" ", insn.op_str)
        for text in _HEX_IMMEDIATE.findall(bare):
            value = _parse_int(text)
            if value is not None and value >= 0:
                targets.append(value)

        # Decimal branch targets ("bl 4096")
        if (is_call(mnemonic) or is_jump(mnemonic)) and len(operands) == 1:
            value = _parse_int(operands[0].lstrip("#"))
            if value is not None and value >= 0 and value not in targets:
                targets.append(value)

        dest = operands[0].lower() if operands else ""
        if mnemonic == "adrp" and len(operands) == 2:
            page = _parse_int(operands[1].lstrip("#"))
            if page is not None:
                pages[dest] = page
            else:
                pages.pop(dest, None)
        elif mnemonic == "add" and len(operands) == 3 and operands[1].lower() in pages:
            offset = _parse_int(operands[2].lstrip("#"))
            base = pages.pop(operands[1].lower())
            if offset is not None:
                targets.append(base + offset)
            pages.pop(dest, None)
        elif mnemonic.startswith("ld") and len(operands) == 2:
            mem = operands[1].strip("[]!").split(",")
            if mem and mem[0].strip().lower() in pages:
                base = pages[mem[0].strip().lower()]
                offset = _parse_int(mem[1].strip().lstrip("#")) if len(mem) > 1 else 0
                if offset is not None:
                    targets.append(base + offset)
            pages.pop(dest, None)
        elif dest:
            pages.pop(dest, None)

        return targets
