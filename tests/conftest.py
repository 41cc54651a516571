"""Shared fixtures for the elfscope test suite.

Images are synthesised with :mod:`tests.elf_builder`, so the suite needs no
binary fixtures on disk.  Disassembly-free tests use :class:`FakeDisassembler`,
which replays a fixed listing instead of decoding bytes.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from elf_builder import ELFBuilder  # noqa: E402

from elfscope.core.engine import AnalysisFacade  # noqa: E402
from elfscope.core.models import Architecture, Instruction  # noqa: E402
from elfscope.analyzers.disassembly import split_operands  # noqa: E402
from elfscope.parsers import constants as C  # noqa: E402
from shared.config import ElfscopeConfig  # noqa: E402
from shared.logger import ScopeLogger  # noqa: E402


VARIANTS = [
    pytest.param(64, True, C.EM_X86_64, id="elf64-le"),
    pytest.param(64, False, C.EM_AARCH64, id="elf64-be"),
    pytest.param(32, True, C.EM_386, id="elf32-le"),
    pytest.param(32, False, C.EM_ARM, id="elf32-be"),
]


class FakeDisassembler:
    """Disassembler double that yields a fixed listing.

    ``listing`` holds ``(address, size, mnemonic, op_str)`` tuples; only
    entries inside the requested range are produced.
    """

    def __init__(self, listing: list[tuple[int, int, str, str]]) -> None:
        self._listing = sorted(listing)
        self.calls: list[tuple[int, int, Architecture]] = []

    def disassemble(
        self,
        code: bytes,
        base_address: int,
        architecture: Architecture,
    ) -> Iterator[Instruction]:
        self.calls.append((base_address, len(code), architecture))
        end = base_address + len(code)
        for address, size, mnemonic, op_str in self._listing:
            if base_address <= address and address + size <= end:
                rel = address - base_address
                yield Instruction(
                    address=address,
                    size=size,
                    raw_hex=code[rel:rel + size].hex(),
                    mnemonic=mnemonic,
                    op_str=op_str,
                    operands=split_operands(op_str),
                )


@pytest.fixture
def builder() -> ELFBuilder:
    """Default ELF64 little-endian x86-64 builder."""
    return ELFBuilder()


@pytest.fixture
def elf64_image(builder: ELFBuilder) -> bytes:
    return builder.build()


@pytest.fixture
def quiet_logger() -> ScopeLogger:
    return ScopeLogger("test", log_level="DEBUG", console_output=False)


@pytest.fixture
def config() -> ElfscopeConfig:
    cfg = ElfscopeConfig()
    cfg.analysis.parallel_disassembly = False
    return cfg


@pytest.fixture
def prologue_listing() -> list[tuple[int, int, str, str]]:
    """Listing matching the default builder's ``.text`` bytes."""
    return [
        (0x1000, 1, "push", "rbp"),
        (0x1001, 3, "mov", "rbp, rsp"),
        (0x1004, 1, "ret", ""),
    ]


@pytest.fixture
def fake_disassembler(prologue_listing) -> FakeDisassembler:
    return FakeDisassembler(prologue_listing)


@pytest.fixture
def facade(config, quiet_logger, fake_disassembler) -> AnalysisFacade:
    return AnalysisFacade(config=config, logger=quiet_logger, disassembler=fake_disassembler)
