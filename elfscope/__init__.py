"""
elfscope -- ELF Binary Analysis Engine
=======================================

elfscope turns the raw bytes of an ELF executable or shared object into
structured, queryable facts.

Capabilities:
    - ELF32/ELF64, little- and big-endian file header decoding
    - Program and section header tables with extended numbering
    - Static and dynamic symbol tables
    - REL/RELA relocations with per-class info unpacking
    - Dynamic section (NEEDED, SONAME, RPATH, RUNPATH) and interpreter
    - Null-terminated string extraction attributed to sections
    - Lazy, range-scoped Capstone disassembly (x86, x86-64, ARM, AArch64)
    - Cross-reference index and case-insensitive search
    - Rich console output and JSON reports

References:
    - TIS Committee. (1995). ELF Specification, Version 1.2.
    - System V Application Binary Interface, Edition 4.1.
    - Capstone disassembly engine: https://www.capstone-engine.org/
"""

__version__ = "1.0.0"
__all__ = [
    "AnalysisFacade",
    "Analysis",
    "CancellationToken",
    "CapstoneDisassembler",
]

from elfscope.analyzers.disassembly import CapstoneDisassembler
from elfscope.core.cancellation import CancellationToken
from elfscope.core.engine import Analysis, AnalysisFacade
