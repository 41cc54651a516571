"""
Disassembly adapter tests - Capstone decoding, restartable streams and
chunked parallel decoding.
"""

import time

import pytest

from elfscope.analyzers.disassembly import (
    CapstoneDisassembler,
    Disassembler,
    InstructionStream,
    chunk_ranges,
    disassemble_parallel,
    resolve_architecture,
    split_operands,
)
from elfscope.core.cancellation import CancellationToken
from elfscope.core.errors import AnalysisCancelled, UnsupportedArchitecture
from elfscope.core.models import Architecture

from conftest import FakeDisassembler


class TestArchitecture:
    """Architecture names resolve case-insensitively."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("x86_64", Architecture.X86_64),
            ("ARM64", Architecture.ARM64),
            ("arm32", Architecture.ARM32),
            (Architecture.X86, Architecture.X86),
        ],
    )
    def test_resolve(self, value, expected):
        assert resolve_architecture(value) == expected

    @pytest.mark.parametrize("value", [None, "mips", "", "riscv"])
    def test_unsupported(self, value):
        with pytest.raises(UnsupportedArchitecture):
            resolve_architecture(value)

    def test_alignment(self):
        assert Architecture.ARM64.instruction_alignment == 4
        assert Architecture.X86_64.instruction_alignment == 1


class TestSplitOperands:
    """Commas inside brackets or braces do not split operands."""

    @pytest.mark.parametrize(
        "op_str,expected",
        [
            ("", []),
            ("rbp", ["rbp"]),
            ("rbp, rsp", ["rbp", "rsp"]),
            ("x0, [x1, #0x10]", ["x0", "[x1, #0x10]"]),
            ("{r4, r5, lr}", ["{r4, r5, lr}"]),
            ("qword ptr [rip + 0x2f8], rax", ["qword ptr [rip + 0x2f8]", "rax"]),
        ],
    )
    def test_split(self, op_str, expected):
        assert split_operands(op_str) == expected


class TestCapstoneDisassembler:
    """Real decoding through Capstone."""

    def test_protocol(self):
        assert isinstance(CapstoneDisassembler(), Disassembler)

    def test_x86_64_prologue(self):
        insns = list(CapstoneDisassembler().disassemble(
            bytes.fromhex("554889e5c3"), 0x401000, Architecture.X86_64
        ))
        assert [i.mnemonic for i in insns] == ["push", "mov", "ret"]
        assert [i.address for i in insns] == [0x401000, 0x401001, 0x401004]
        assert insns[1].operands == ["rbp", "rsp"]
        assert insns[1].raw_hex == "4889e5"
        assert insns[2].next_address == 0x401005

    def test_arm64_ret(self):
        insns = list(CapstoneDisassembler().disassemble(
            bytes.fromhex("c0035fd6"), 0x400000, "arm64"
        ))
        assert len(insns) == 1
        assert insns[0].mnemonic == "ret"
        assert insns[0].size == 4

    def test_arm64_trailing_partial_word(self):
        insns = list(CapstoneDisassembler().disassemble(
            bytes.fromhex("c0035fd60000"), 0x400000, Architecture.ARM64
        ))
        assert [i.mnemonic for i in insns] == ["ret"]

    def test_resumes_after_undecodable_byte(self):
        # 0x06 (push es) is invalid in 64-bit mode.
        insns = list(CapstoneDisassembler().disassemble(
            bytes.fromhex("06c3"), 0x1000, Architecture.X86_64
        ))
        assert insns[-1].mnemonic == "ret"
        assert insns[-1].address == 0x1001

    def test_undecodable_words_are_skipped_in_one_pass(self):
        junk = bytes.fromhex("ffffffff") * 100_000
        code = junk + bytes.fromhex("c0035fd6")
        began = time.perf_counter()
        insns = list(CapstoneDisassembler().disassemble(code, 0, Architecture.ARM64))
        assert time.perf_counter() - began < 2.0
        assert [(i.mnemonic, i.address) for i in insns] == [("ret", len(junk))]

    def test_skipped_bytes_are_not_reported(self):
        insns = list(CapstoneDisassembler().disassemble(
            bytes.fromhex("0606c3"), 0x1000, Architecture.X86_64
        ))
        assert [i.mnemonic for i in insns] == ["ret"]

    def test_empty_code(self):
        assert list(CapstoneDisassembler().disassemble(b"", 0, Architecture.X86)) == []

    def test_unsupported_architecture_raises_eagerly(self):
        with pytest.raises(UnsupportedArchitecture):
            CapstoneDisassembler().disassemble(b"\x90", 0, "mips")


class TestInstructionStream:
    """Streams are lazy, bounded and restartable."""

    def _stream(self, limit=None):
        fake = FakeDisassembler([(0x10 + i, 1, "nop", "") for i in range(8)])
        return fake, InstructionStream(
            fake, b"\x90" * 8, 0x10, Architecture.X86_64, limit=limit, section=".text"
        )

    def test_restartable(self):
        fake, stream = self._stream()
        first_pass = list(stream)
        second_pass = list(stream)
        assert first_pass == second_pass
        assert len(first_pass) == 8
        assert len(fake.calls) == 2

    def test_limit(self):
        _fake, stream = self._stream(limit=3)
        assert [i.address for i in stream] == [0x10, 0x11, 0x12]
        assert len(list(stream)) == 3

    def test_zero_limit(self):
        _fake, stream = self._stream(limit=0)
        assert list(stream) == []
        assert stream.first() is None

    def test_bounds_and_repr(self):
        _fake, stream = self._stream()
        assert stream.base_address == 0x10
        assert stream.end_address == 0x18
        assert stream.first().address == 0x10
        assert ".text" in repr(stream)


class TestChunking:
    """Chunk boundaries never split an instruction."""

    def test_fixed_width_steps(self):
        assert chunk_ranges(10, 0, Architecture.ARM64, 4) == [(0, 4), (4, 8), (8, 10)]

    def test_fixed_width_rounds_up_to_alignment(self):
        assert chunk_ranges(10, 0, Architecture.ARM64, 6) == [(0, 8), (8, 10)]

    def test_variable_width_without_boundaries(self):
        assert chunk_ranges(0x40, 0x1000, Architecture.X86_64, 0x10) == [(0, 0x40)]

    def test_variable_width_cuts_at_boundaries(self):
        boundaries = [0x1010, 0x1018, 0x1030, 0x2000, 0x1000]
        assert chunk_ranges(0x40, 0x1000, Architecture.X86_64, 0x10, boundaries) == [
            (0, 0x10), (0x10, 0x30), (0x30, 0x40),
        ]

    def test_empty(self):
        assert chunk_ranges(0, 0, Architecture.X86, 0x10) == []

    def test_parallel_matches_serial(self):
        code = bytes.fromhex("554889e5c3") + b"\x90" * 11 + bytes.fromhex("554889e5c3") + b"\x90" * 11
        dis = CapstoneDisassembler()
        serial = list(dis.disassemble(code, 0x1000, Architecture.X86_64))
        parallel = disassemble_parallel(
            dis, code, 0x1000, Architecture.X86_64,
            chunk_size=0x10, max_workers=2, boundaries=[0x1000, 0x1010],
        )
        assert parallel == serial

    def test_parallel_limit(self):
        fake = FakeDisassembler([(i * 4, 4, "nop", "") for i in range(16)])
        result = disassemble_parallel(
            fake, b"\x00" * 64, 0, Architecture.ARM64, chunk_size=16, max_workers=4, limit=5,
        )
        assert [i.address for i in result] == [0, 4, 8, 12, 16]
        assert len(fake.calls) == 4

    def test_parallel_cancelled_before_any_chunk(self):
        fake = FakeDisassembler([(i * 4, 4, "nop", "") for i in range(16)])
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AnalysisCancelled) as exc_info:
            disassemble_parallel(
                fake, b"\x00" * 64, 0, Architecture.ARM64,
                chunk_size=16, max_workers=4, cancel_token=token,
            )
        assert exc_info.value.stage == "disassembly"
        assert fake.calls == []

    def test_parallel_cancelled_between_chunks(self):
        token = CancellationToken()

        class CancellingDisassembler(FakeDisassembler):
            def disassemble(self, code, base, arch):
                token.cancel()
                return super().disassemble(code, base, arch)

        fake = CancellingDisassembler([(i * 4, 4, "nop", "") for i in range(16)])
        with pytest.raises(AnalysisCancelled):
            disassemble_parallel(
                fake, b"\x00" * 64, 0, Architecture.ARM64,
                chunk_size=16, max_workers=1, cancel_token=token,
            )
        assert len(fake.calls) == 1
