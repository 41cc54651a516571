"""
elfscope Data Models
=====================

Pydantic-based value objects describing the structure of an analysed ELF
image: file header, program and section headers, symbols, relocations,
dynamic linking information, extracted strings, disassembled instructions
and cross-reference annotations.

Every model is frozen: once a pipeline stage has produced it, it is only
ever read.

References:
    - TIS Committee. (1995). Executable and Linkable Format (ELF) Specification.
    - System V Application Binary Interface, Edition 4.1.
"""

from __future__ import annotations

import enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from elfscope.core.errors import AnalysisError
from elfscope.parsers import constants as C


_FROZEN = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Endianness(str, enum.Enum):
    """Byte order of multi-byte fields."""
    LITTLE = "little"
    BIG = "big"


class Architecture(str, enum.Enum):
    """Instruction sets the disassembly layer can decode."""
    ARM64 = "arm64"
    ARM32 = "arm32"
    X86 = "x86"
    X86_64 = "x86_64"

    @classmethod
    def from_machine(cls, e_machine: int) -> Optional[Architecture]:
        """Map an ``e_machine`` value to an architecture, if supported."""
        return _MACHINE_TO_ARCH.get(e_machine)

    @property
    def instruction_alignment(self) -> int:
        """Byte alignment of instruction starts (1 for variable-length ISAs)."""
        if self in (Architecture.ARM64, Architecture.ARM32):
            return 4
        return 1


_MACHINE_TO_ARCH: dict[int, Architecture] = {
    C.EM_AARCH64: Architecture.ARM64,
    C.EM_ARM: Architecture.ARM32,
    C.EM_386: Architecture.X86,
    C.EM_X86_64: Architecture.X86_64,
}


class SymbolType(str, enum.Enum):
    """Decoded ``ELF_ST_TYPE`` value."""
    NOTYPE = "NOTYPE"
    OBJECT = "OBJECT"
    FUNC = "FUNC"
    SECTION = "SECTION"
    FILE = "FILE"
    COMMON = "COMMON"
    TLS = "TLS"
    GNU_IFUNC = "GNU_IFUNC"
    OTHER = "OTHER"

    @classmethod
    def from_code(cls, code: int) -> SymbolType:
        return _STT_MAP.get(code, cls.OTHER)


class SymbolBinding(str, enum.Enum):
    """Decoded ``ELF_ST_BIND`` value."""
    LOCAL = "LOCAL"
    GLOBAL = "GLOBAL"
    WEAK = "WEAK"
    GNU_UNIQUE = "GNU_UNIQUE"
    OTHER = "OTHER"

    @classmethod
    def from_code(cls, code: int) -> SymbolBinding:
        return _STB_MAP.get(code, cls.OTHER)


class SymbolVisibility(str, enum.Enum):
    """Decoded ``ELF_ST_VISIBILITY`` value."""
    DEFAULT = "DEFAULT"
    INTERNAL = "INTERNAL"
    HIDDEN = "HIDDEN"
    PROTECTED = "PROTECTED"

    @classmethod
    def from_code(cls, code: int) -> SymbolVisibility:
        return _STV_MAP[code & 0x3]


_STT_MAP: dict[int, SymbolType] = {
    C.STT_NOTYPE: SymbolType.NOTYPE,
    C.STT_OBJECT: SymbolType.OBJECT,
    C.STT_FUNC: SymbolType.FUNC,
    C.STT_SECTION: SymbolType.SECTION,
    C.STT_FILE: SymbolType.FILE,
    C.STT_COMMON: SymbolType.COMMON,
    C.STT_TLS: SymbolType.TLS,
    C.STT_GNU_IFUNC: SymbolType.GNU_IFUNC,
}

_STB_MAP: dict[int, SymbolBinding] = {
    C.STB_LOCAL: SymbolBinding.LOCAL,
    C.STB_GLOBAL: SymbolBinding.GLOBAL,
    C.STB_WEAK: SymbolBinding.WEAK,
    C.STB_GNU_UNIQUE: SymbolBinding.GNU_UNIQUE,
}

_STV_MAP: dict[int, SymbolVisibility] = {
    C.STV_DEFAULT: SymbolVisibility.DEFAULT,
    C.STV_INTERNAL: SymbolVisibility.INTERNAL,
    C.STV_HIDDEN: SymbolVisibility.HIDDEN,
    C.STV_PROTECTED: SymbolVisibility.PROTECTED,
}


class AnnotationKind(str, enum.Enum):
    """Kind of edge or label stored in the cross-reference index."""
    SYMBOL = "symbol"
    CALL = "call"
    JUMP = "jump"
    SYMBOL_REF = "symbol_ref"
    STRING_REF = "string_ref"
    RELOCATION = "relocation"


class SearchFilter(str, enum.Enum):
    """Which fields :meth:`Analysis.search` matches against."""
    INSTRUCTIONS = "instructions"
    REGISTERS = "registers"
    STRINGS = "strings"
    SYMBOLS = "symbols"
    UNFILTERED = "unfiltered"


# ---------------------------------------------------------------------------
# Header and tables
# ---------------------------------------------------------------------------

class FileHeader(BaseModel):
    """Decoded ELF file header (``ElfN_Ehdr``).

    Attributes:
        word_size: Address width in bits (32 or 64).
        endianness: Byte order of every multi-byte field.
        osabi / osabi_name: EI_OSABI tag.
        abi_version: EI_ABIVERSION.
        file_type / file_type_name: ``e_type`` (EXEC, DYN, ...).
        machine / machine_name: ``e_machine``.
        architecture: Disassembly architecture for ``machine``, if supported.
        entry: Entry point virtual address.
        phoff / phentsize / phnum: Program header table location.
        shoff / shentsize / shnum: Section header table location.
        shstrndx: Index of the section-name string table.
    """
    model_config = _FROZEN

    word_size: int
    endianness: Endianness
    osabi: int = 0
    osabi_name: str = "SYSV"
    abi_version: int = 0
    file_type: int = 0
    file_type_name: str = "NONE"
    machine: int = 0
    machine_name: str = "None"
    architecture: Optional[Architecture] = None
    version: int = 0
    entry: int = 0
    phoff: int = 0
    shoff: int = 0
    flags: int = 0
    ehsize: int = 0
    phentsize: int = 0
    phnum: int = 0
    shentsize: int = 0
    shnum: int = 0
    shstrndx: int = 0

    @property
    def is_64bit(self) -> bool:
        return self.word_size == 64

    @property
    def little_endian(self) -> bool:
        return self.endianness == Endianness.LITTLE


class ProgramHeaderEntry(BaseModel):
    """One segment descriptor (``ElfN_Phdr``)."""
    model_config = _FROZEN

    index: int
    type: int
    type_name: str
    flags: int
    flags_str: str
    offset: int
    vaddr: int
    paddr: int
    filesz: int
    memsz: int
    align: int


class SectionHeaderEntry(BaseModel):
    """One section descriptor (``ElfN_Shdr``) with its resolved name."""
    model_config = _FROZEN

    index: int
    name: str = ""
    name_offset: int = 0
    type: int = 0
    type_name: str = "NULL"
    flags: int = 0
    flags_str: str = "-"
    addr: int = 0
    offset: int = 0
    size: int = 0
    link: int = 0
    info: int = 0
    addralign: int = 0
    entsize: int = 0

    @property
    def is_executable(self) -> bool:
        return bool(self.flags & C.SHF_EXECINSTR)

    @property
    def is_allocated(self) -> bool:
        return bool(self.flags & C.SHF_ALLOC)

    @property
    def has_file_data(self) -> bool:
        """NOBITS and NULL sections occupy no bytes in the file."""
        return self.type not in (C.SHT_NOBITS, C.SHT_NULL) and self.size > 0

    @property
    def end_offset(self) -> int:
        return self.offset + self.size

    def contains_offset(self, offset: int) -> bool:
        return self.has_file_data and self.offset <= offset < self.end_offset

    def contains_address(self, address: int) -> bool:
        return self.is_allocated and self.addr <= address < self.addr + self.size

    def offset_to_address(self, offset: int) -> Optional[int]:
        """Translate a file offset inside this section to its load address."""
        if not self.is_allocated or not self.contains_offset(offset):
            return None
        return self.addr + (offset - self.offset)

    def address_to_offset(self, address: int) -> Optional[int]:
        if not self.has_file_data or not self.contains_address(address):
            return None
        return self.offset + (address - self.addr)


# ---------------------------------------------------------------------------
# Symbols, relocations and dynamic linking
# ---------------------------------------------------------------------------

class Symbol(BaseModel):
    """A symbol table entry (``ElfN_Sym``).

    Attributes:
        name: Resolved name, empty when the string table is unusable.
        value: Symbol value, normally an address.
        size: Size of the object the symbol refers to.
        type / binding / visibility: Decoded classification.
        info / other: Raw ``st_info`` and ``st_other`` bytes.
        section_index: ``st_shndx``.
        section_name: Owning section name, or UND / ABS / COM.
        table: Name of the symbol table section that holds the entry.
        is_dynamic: ``True`` for entries from a DYNSYM section.
    """
    model_config = _FROZEN

    name: str = ""
    value: int = 0
    size: int = 0
    type: SymbolType = SymbolType.NOTYPE
    binding: SymbolBinding = SymbolBinding.LOCAL
    visibility: SymbolVisibility = SymbolVisibility.DEFAULT
    info: int = 0
    other: int = 0
    section_index: int = 0
    section_name: str = ""
    table: str = ""
    is_dynamic: bool = False

    @property
    def is_function(self) -> bool:
        return self.type == SymbolType.FUNC

    @property
    def is_defined(self) -> bool:
        return self.section_index != C.SHN_UNDEF


class RelocationEntry(BaseModel):
    """A REL or RELA entry with its packed info field decoded.

    ``addend`` is ``None`` for REL entries, which carry no addend field.
    """
    model_config = _FROZEN

    offset: int
    info: int
    type: int
    symbol_index: int
    addend: Optional[int] = None
    symbol_name: str = ""
    section: str = ""

    @property
    def is_rela(self) -> bool:
        return self.addend is not None


class DynamicEntry(BaseModel):
    model_config = _FROZEN

    tag: int
    tag_name: str
    value: int


class DynamicInfo(BaseModel):
    """Dynamic-linking facts from ``.dynamic`` and ``PT_INTERP``."""
    model_config = _FROZEN

    needed: list[str] = Field(default_factory=list)
    soname: str = ""
    rpath: str = ""
    runpath: str = ""
    interpreter: str = ""
    entries: list[DynamicEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Strings
# ---------------------------------------------------------------------------

class ExtractedString(BaseModel):
    """A printable, null-terminated ASCII run found in the image.

    Attributes:
        value: The string content (without terminator).
        offset: File offset of the first character.
        section: Owning section name, when known.
        address: Load address, when the owning section is allocated.
    """
    model_config = _FROZEN

    value: str
    offset: int
    section: str = ""
    address: Optional[int] = None


# ---------------------------------------------------------------------------
# Disassembly and cross-references
# ---------------------------------------------------------------------------

class Instruction(BaseModel):
    """A decoded machine instruction.

    Attributes:
        address: Virtual address of the first byte.
        size: Encoded length in bytes.
        raw_hex: Encoded bytes as lowercase hex.
        mnemonic: Instruction mnemonic (``mov``, ``bl``, ...).
        op_str: Operand string as printed by the disassembler.
        operands: ``op_str`` split on top-level commas.
    """
    model_config = _FROZEN

    address: int
    size: int
    raw_hex: str = ""
    mnemonic: str
    op_str: str = ""
    operands: list[str] = Field(default_factory=list)

    @property
    def raw(self) -> bytes:
        return bytes.fromhex(self.raw_hex)

    @property
    def next_address(self) -> int:
        return self.address + self.size

    def __str__(self) -> str:
        return f"0x{self.address:x}: {self.mnemonic} {self.op_str}".strip()


class Annotation(BaseModel):
    """One entry of the cross-reference index.

    ``source`` is where the reference is made (an instruction, a relocation
    site, or the symbol itself); ``target`` is the address referred to.
    For SYMBOL annotations both are the symbol's value.
    """
    model_config = _FROZEN

    kind: AnnotationKind
    source: int
    target: int
    label: str = ""


class SearchMatch(BaseModel):
    """A single result of :meth:`Analysis.search`.

    Attributes:
        kind: ``"instruction"``, ``"symbol"`` or ``"string"``.
        field: Which field matched (``mnemonic``, ``operands``, ``name``,
            ``value``).
        address: Address of the match, when it has one.
        offset: File offset of the match, when known.
        text: Display text of the matched item.
    """
    model_config = _FROZEN

    kind: str
    field: str
    address: Optional[int] = None
    offset: Optional[int] = None
    text: str = ""


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

class Diagnostic(BaseModel):
    """A non-fatal problem recorded while analysing a damaged image.

    Attributes:
        code: Error class name (``TruncatedTable``, ``OutOfBounds``, ...).
        stage: Pipeline stage that produced it.
        message: Human-readable description.
        offset: Related file offset, when known.
    """
    model_config = _FROZEN

    code: str
    stage: str
    message: str
    offset: Optional[int] = None

    @classmethod
    def from_error(cls, error: AnalysisError, stage: str) -> Diagnostic:
        return cls(
            code=error.code,
            stage=stage,
            message=error.message,
            offset=error.offset,
        )
