"""
Binary String Extractor
========================

Extracts null-terminated printable ASCII strings from an ELF image, the
way ``strings(1)`` does for C string literals.

A candidate run grows over bytes in ``[0x20, 0x7E]``.  A null byte ends
the run and emits it when it reaches the minimum length; any other byte
throws the run away.  A run still open at the end of the scanned range
has no terminator and is discarded.  Results are deduplicated by content
in first-seen order.

When section headers are available, each string is attributed to the
section whose file bytes contain it, and gets a load address if that
section is allocated.

References:
    - Strings(1) Unix utility algorithm.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional

from elfscope.core.models import ExtractedString, SectionHeaderEntry
from elfscope.parsers.reader import ByteReader


class StringExtractor:
    """Null-terminated ASCII string extraction.

    Usage::

        extractor = StringExtractor(min_length=4)
        strings = extractor.extract_image(reader, sections, max_results=100)
        for s in strings:
            print(f"0x{s.offset:x} [{s.section}] {s.value}")
    """

    def __init__(self, min_length: int = 4) -> None:
        """Initialise the extractor.

        Args:
            min_length: Minimum string length to emit (default: 4).
                        Values below 1 are treated as 1.
        """
        self._min_length: int = max(1, min_length)
        self._pattern = re.compile(rb"[\x20-\x7e]+")

    @property
    def min_length(self) -> int:
        return self._min_length

    def extract(
        self,
        reader: ByteReader,
        start: int = 0,
        end: Optional[int] = None,
        max_results: Optional[int] = None,
        section: Optional[SectionHeaderEntry] = None,
    ) -> list[ExtractedString]:
        """Scan ``[start, end)`` of the image.

        Args:
            reader: Reader over the image.
            start: First file offset to scan.
            end: Exclusive end offset (default: end of image).  Clamped
                to the image length.
            max_results: Stop after this many unique strings; ``None``
                means no limit.
            section: Section to attribute every result to.

        Returns:
            Unique strings in first-occurrence order.
        """
        sections = [section] if section is not None else []
        return self._scan(reader, start, end, max_results, sections)

    def extract_section(
        self,
        reader: ByteReader,
        section: SectionHeaderEntry,
        max_results: Optional[int] = None,
    ) -> list[ExtractedString]:
        """Scan one section's file bytes.  NOBITS sections yield nothing."""
        if not section.has_file_data:
            return []
        return self.extract(
            reader,
            start=section.offset,
            end=section.end_offset,
            max_results=max_results,
            section=section,
        )

    def extract_image(
        self,
        reader: ByteReader,
        sections: Iterable[SectionHeaderEntry] = (),
        max_results: Optional[int] = None,
    ) -> list[ExtractedString]:
        """Scan the whole image, attributing strings to owning sections."""
        owners = [s for s in sections if s.has_file_data]
        return self._scan(reader, 0, None, max_results, owners)

    # ------------------------------------------------------------------ #
    #  Scanning
    # ------------------------------------------------------------------ #

    def _scan(
        self,
        reader: ByteReader,
        start: int,
        end: Optional[int],
        max_results: Optional[int],
        owners: list[SectionHeaderEntry],
    ) -> list[ExtractedString]:
        data = reader.data
        start = max(0, start)
        end = len(data) if end is None else min(end, len(data))
        if start >= end or max_results == 0:
            return []

        seen: set[str] = set()
        results: list[ExtractedString] = []

        # Maximal runs only; a run is kept when a null byte inside the range
        # closes it.
        for match in self._pattern.finditer(data, start, end):
            close = match.end()
            if close >= end or data[close] != 0:
                continue
            if close - match.start() < self._min_length:
                continue
            value = match.group().decode("ascii")
            if value in seen:
                continue
            seen.add(value)

            offset = match.start()
            owner = self._owner(owners, offset)
            results.append(ExtractedString(
                value=value,
                offset=offset,
                section=owner.name if owner is not None else "",
                address=owner.offset_to_address(offset) if owner is not None else None,
            ))
            if max_results is not None and len(results) >= max_results:
                break

        return results

    @staticmethod
    def _owner(
        owners: list[SectionHeaderEntry],
        offset: int,
    ) -> Optional[SectionHeaderEntry]:
        for sh in owners:
            if sh.contains_offset(offset):
                return sh
        return None
