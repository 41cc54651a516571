"""
Cross-reference builder tests - operand resolution (immediates,
RIP-relative, adrp pairs), edge classification and index lookups.
"""

import pytest

from elfscope.analyzers.disassembly import split_operands
from elfscope.analyzers.xrefs import CrossReferenceBuilder, CrossReferenceIndex, is_call, is_jump
from elfscope.core.models import (
    Annotation,
    AnnotationKind,
    ExtractedString,
    Instruction,
    RelocationEntry,
    Symbol,
    SymbolType,
)


def insn(address: int, size: int, mnemonic: str, op_str: str = "") -> Instruction:
    return Instruction(
        address=address,
        size=size,
        mnemonic=mnemonic,
        op_str=op_str,
        operands=split_operands(op_str),
    )


def func(name: str, value: int) -> Symbol:
    return Symbol(name=name, value=value, type=SymbolType.FUNC, section_index=1, section_name=".text")


def data(name: str, value: int) -> Symbol:
    return Symbol(name=name, value=value, type=SymbolType.OBJECT, section_index=2, section_name=".data")


@pytest.fixture
def symbols():
    return [
        Symbol(),  # null entry
        func("entry", 0x1000),
        func("helper", 0x1040),
        data("counter", 0x3000),
        Symbol(name="puts", value=0, type=SymbolType.FUNC),  # undefined import
    ]


@pytest.fixture
def strings():
    return [ExtractedString(value="license_ok", offset=0x200, section=".rodata", address=0x2000)]


class TestMnemonics:
    """Call and branch classification across x86 and ARM."""

    @pytest.mark.parametrize("mnemonic", ["call", "callq", "bl", "blx", "blr", "CALL"])
    def test_calls(self, mnemonic):
        assert is_call(mnemonic)
        assert not is_jump(mnemonic)

    @pytest.mark.parametrize("mnemonic", ["jmp", "jne", "loop", "b", "b.eq", "bne", "cbz", "tbnz", "br"])
    def test_jumps(self, mnemonic):
        assert is_jump(mnemonic)

    @pytest.mark.parametrize("mnemonic", ["mov", "lea", "bic", "bfi", "ldr", "ret"])
    def test_neither(self, mnemonic):
        assert not is_call(mnemonic)
        assert not is_jump(mnemonic)


class TestBuilder:
    """Edges produced for a small synthetic listing."""

    def test_function_symbols_annotate_themselves(self, symbols):
        index = CrossReferenceBuilder(symbols).build([])
        for sym in (s for s in symbols if s.is_function and s.is_defined):
            own = [a for a in index.at(sym.value) if a.kind == AnnotationKind.SYMBOL]
            assert own == [Annotation(kind=AnnotationKind.SYMBOL, source=sym.value, target=sym.value, label=sym.name)]
        assert index.jump_to("entry") == 0x1000
        assert index.jump_to("puts") is None
        assert index.jump_to("counter") is None

    def test_function_at_address_zero(self):
        first = func("first_fn", 0)
        index = CrossReferenceBuilder([first, data("zero_label", 0)]).build([])
        assert index.references_to(0) == [
            Annotation(kind=AnnotationKind.SYMBOL, source=0, target=0, label="first_fn"),
        ]
        assert index.jump_to("first_fn") == 0

    def test_call_and_jump(self, symbols):
        listing = [
            insn(0x1040, 5, "call", "0x1000"),
            insn(0x1045, 2, "jne", "0x1040"),
            insn(0x1047, 5, "jmp", "0x1000"),
        ]
        index = CrossReferenceBuilder(symbols).build(listing)

        call = index.at(0x1040)
        assert [a.kind for a in call] == [AnnotationKind.SYMBOL, AnnotationKind.CALL]
        assert call[1].target == 0x1000
        assert call[1].label == "entry"

        assert index.at(0x1045)[0].kind == AnnotationKind.JUMP
        assert index.at(0x1045)[0].label == "helper"

        callers = {a.source for a in index.references_to(0x1000) if a.kind != AnnotationKind.SYMBOL}
        assert callers == {0x1040, 0x1047}

    def test_rip_relative_string_reference(self, symbols, strings):
        # lea rdi, [rip + 0xff9] at 0x1000 (7 bytes) -> 0x1007 + 0xff9 = 0x2000
        listing = [insn(0x1000, 7, "lea", "rdi, [rip + 0xff9]")]
        index = CrossReferenceBuilder(symbols, strings).build(listing)
        refs = [a for a in index.at(0x1000) if a.kind == AnnotationKind.STRING_REF]
        assert refs == [Annotation(kind=AnnotationKind.STRING_REF, source=0x1000, target=0x2000, label="license_ok")]

    def test_rip_relative_negative_displacement(self, symbols):
        listing = [insn(0x1050, 6, "call", "qword ptr [rip - 0x56]")]
        index = CrossReferenceBuilder(symbols).build(listing)
        assert index.at(0x1050)[0].target == 0x1000
        assert index.at(0x1050)[0].kind == AnnotationKind.CALL

    def test_immediate_symbol_reference(self, symbols):
        index = CrossReferenceBuilder(symbols).build([insn(0x1010, 5, "mov", "eax, 0x3000")])
        (ref,) = index.at(0x1010)
        assert ref.kind == AnnotationKind.SYMBOL_REF
        assert ref.label == "counter"

    def test_decimal_branch_target(self, symbols):
        index = CrossReferenceBuilder(symbols).build([insn(0x1044, 4, "bl", "4096")])
        (ref,) = index.at(0x1044)
        assert ref.kind == AnnotationKind.CALL
        assert ref.target == 0x1000

    def test_unresolved_operands_add_nothing(self, symbols, strings):
        listing = [insn(0x1010, 3, "mov", "rbp, rsp"), insn(0x1013, 5, "mov", "eax, 0x1234")]
        index = CrossReferenceBuilder(symbols, strings).build(listing)
        assert index.at(0x1010) == []
        assert index.at(0x1013) == []

    def test_function_name_wins_over_data_label(self):
        syms = [data("blob", 0x1000), func("start", 0x1000)]
        index = CrossReferenceBuilder(syms).build([insn(0x1080, 5, "call", "0x1000")])
        assert index.at(0x1080)[0].label == "start"


class TestArm64Pages:
    """adrp page bases combine with the following add or load."""

    def test_adrp_add(self):
        strings = [ExtractedString(value="arm_string", offset=0x10, address=0x2010)]
        listing = [
            insn(0x400, 4, "adrp", "x0, 0x2000"),
            insn(0x404, 4, "add", "x0, x0, #0x10"),
        ]
        index = CrossReferenceBuilder([], strings).build(listing)
        assert index.at(0x400) == []
        (ref,) = index.at(0x404)
        assert ref.kind == AnnotationKind.STRING_REF
        assert ref.target == 0x2010
        assert ref.label == "arm_string"

    def test_adrp_ldr(self):
        syms = [data("table", 0x2018)]
        listing = [
            insn(0x400, 4, "adrp", "x2, 0x2000"),
            insn(0x404, 4, "ldr", "x1, [x2, #0x18]"),
        ]
        index = CrossReferenceBuilder(syms).build(listing)
        (ref,) = index.at(0x404)
        assert ref.kind == AnnotationKind.SYMBOL_REF
        assert ref.target == 0x2018

    def test_page_cleared_when_register_overwritten(self):
        strings = [ExtractedString(value="arm_string", offset=0x10, address=0x2010)]
        listing = [
            insn(0x400, 4, "adrp", "x0, 0x2000"),
            insn(0x404, 4, "mov", "x0, x3"),
            insn(0x408, 4, "add", "x0, x0, #0x10"),
        ]
        index = CrossReferenceBuilder([], strings).build(listing)
        assert index.at(0x408) == []


class TestRelocations:
    """Relocations naming a symbol become RELOCATION annotations."""

    def test_relocation_annotations(self, symbols):
        relocs = [
            RelocationEntry(offset=0x3008, info=0, type=1, symbol_index=1, symbol_name="entry"),
            RelocationEntry(offset=0x3010, info=0, type=7, symbol_index=4, symbol_name="puts"),
            RelocationEntry(offset=0x3018, info=0, type=8, symbol_index=0),
        ]
        index = CrossReferenceBuilder(symbols, relocations=relocs).build([])

        (to_entry,) = index.at(0x3008)
        assert to_entry.kind == AnnotationKind.RELOCATION
        assert to_entry.target == 0x1000
        assert to_entry.label == "entry"

        (to_import,) = index.at(0x3010)
        assert to_import.target == 0x3010
        assert index.at(0x3018) == []


class TestIndex:
    """Forward and reverse lookups."""

    def test_ordering_and_length(self):
        index = CrossReferenceIndex()
        b = Annotation(kind=AnnotationKind.CALL, source=0x20, target=0x10, label="f")
        a = Annotation(kind=AnnotationKind.JUMP, source=0x08, target=0x10, label="f")
        index.add(b)
        index.add(a)

        assert len(index) == 2
        assert index.addresses() == [0x08, 0x20]
        assert list(index) == [a, b]
        assert index.references_to(0x10) == [b, a]
        assert index.at(0x99) == []
        assert index.references_to(0x99) == []

    def test_lookups_return_copies(self):
        index = CrossReferenceIndex()
        index.add(Annotation(kind=AnnotationKind.SYMBOL, source=1, target=1, label="x"))
        index.at(1).clear()
        assert len(index.at(1)) == 1
