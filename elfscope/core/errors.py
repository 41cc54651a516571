"""
elfscope Error Taxonomy
========================

Exceptions raised by the ELF analysis pipeline.

Header-level failures (:class:`NotAnELFFile`, :class:`UnsupportedELFVariant`,
:class:`TruncatedHeader`) are fatal: without a valid file header no other
field can be interpreted safely.  Table-level failures
(:class:`TruncatedTable`, and :class:`OutOfBounds` raised while walking a
table) are recoverable; the stage that hits them records a
:class:`~elfscope.core.models.Diagnostic` and keeps the partial result.
"""

from __future__ import annotations

from typing import Optional


class AnalysisError(Exception):
    """Base class for every error raised by the analysis engine.

    Attributes:
        offset: File offset related to the failure, when known.
    """

    def __init__(self, message: str, offset: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.offset = offset

    @property
    def code(self) -> str:
        """Stable identifier used in diagnostics and reports."""
        return type(self).__name__


class NotAnELFFile(AnalysisError):
    """The buffer does not start with ``\\x7fELF``."""


class UnsupportedELFVariant(AnalysisError):
    """EI_CLASS or EI_DATA holds a value other than 1 or 2."""


class TruncatedHeader(AnalysisError):
    """The buffer is shorter than the fixed file header for its class."""


class OutOfBounds(AnalysisError):
    """A read would extend past the end of the image."""

    def __init__(self, offset: int, width: int, length: int) -> None:
        super().__init__(
            f"read of {width} byte(s) at 0x{offset:x} exceeds image "
            f"length 0x{length:x}",
            offset=offset,
        )
        self.width = width
        self.length = length


class IntegerOverflow(AnalysisError):
    """Offset or size arithmetic left the 64-bit address range."""


class UnsupportedArchitecture(AnalysisError):
    """No disassembly mode exists for the requested architecture."""


class TruncatedTable(AnalysisError):
    """A header, symbol or relocation table runs past the image.

    Never propagated out of :meth:`AnalysisFacade.analyze`; converted to a
    diagnostic and the entries decoded so far are kept.
    """


class AnalysisCancelled(AnalysisError):
    """The caller cancelled the analysis between two stages."""

    def __init__(self, stage: str) -> None:
        super().__init__(f"analysis cancelled before stage '{stage}'")
        self.stage = stage
