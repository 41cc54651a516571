"""
elfscope Report Generator
==========================

Serialises an :class:`~elfscope.core.engine.Analysis` to a structured
JSON document for machine consumption.  Every model is dumped through
pydantic in JSON mode, so enums become their string values and
addresses stay plain integers.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from elfscope import __version__
from elfscope.analyzers.xrefs import CrossReferenceIndex
from elfscope.core.engine import Analysis
from elfscope.core.models import Instruction, SearchMatch


class ReportGenerator:
    """Build and write JSON analysis reports.

    Usage::

        generator = ReportGenerator()
        generator.generate_json(analysis, "report.json")
        print(generator.to_json(analysis))
    """

    def __init__(self, indent: int = 2) -> None:
        self._indent = indent

    def build(
        self,
        analysis: Analysis,
        *,
        source: str = "",
        instructions: Optional[Sequence[Instruction]] = None,
        xrefs: Optional[CrossReferenceIndex] = None,
        matches: Optional[Sequence[SearchMatch]] = None,
    ) -> dict[str, Any]:
        """Assemble the report dictionary.

        Optional parts (instructions, cross-references, search matches)
        are only included when supplied.
        """
        header = analysis.header
        report: dict[str, Any] = {
            "report_type": "elfscope_analysis",
            "version": __version__,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "file": {
                "path": source,
                "size": analysis.size,
                "md5": analysis.md5,
                "sha256": analysis.sha256,
            },
            "header": header.model_dump(mode="json"),
            "program_headers": [p.model_dump(mode="json") for p in analysis.program_headers],
            "sections": [s.model_dump(mode="json") for s in analysis.sections],
            "symbols": [s.model_dump(mode="json") for s in analysis.symbols],
            "relocations": [r.model_dump(mode="json") for r in analysis.relocations],
            "dynamic": analysis.dynamic.model_dump(mode="json"),
            "strings": {
                "total_count": len(analysis.strings),
                "items": [s.model_dump(mode="json") for s in analysis.strings],
            },
            "diagnostics": [d.model_dump(mode="json") for d in analysis.diagnostics],
        }

        if instructions is not None:
            report["instructions"] = [i.model_dump(mode="json") for i in instructions]
        if xrefs is not None:
            report["cross_references"] = {
                "total_count": len(xrefs),
                "items": [a.model_dump(mode="json") for a in xrefs],
            }
        if matches is not None:
            report["search"] = [m.model_dump(mode="json") for m in matches]
        return report

    def to_json(self, analysis: Analysis, **parts: Any) -> str:
        """Render the report as a JSON string."""
        return json.dumps(
            self.build(analysis, **parts),
            indent=self._indent,
            ensure_ascii=False,
            default=str,
        )

    def generate_json(self, analysis: Analysis, output_path: str | Path, **parts: Any) -> str:
        """Write the JSON report to ``output_path``.

        Returns:
            The absolute path of the generated report.
        """
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json(analysis, **parts), encoding="utf-8")
        return str(path.resolve())
