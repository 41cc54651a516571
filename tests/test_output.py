"""
Output tests - JSON report structure and Rich console rendering.
"""

import json

import pytest

from elf_builder import ELFBuilder, RelocSpec, SymbolSpec

from elfscope import __version__
from elfscope.core.models import SearchFilter
from elfscope.output.console import AnalysisConsoleOutput
from elfscope.output.report import ReportGenerator
from shared.console import ScopeConsole


@pytest.fixture
def rich_analysis(facade):
    b = ELFBuilder(
        symbols=[SymbolSpec("entry", 0x1000, 5), SymbolSpec("puts", 0, shndx=0)],
        relocations=[RelocSpec(offset=0x1001, type=2, sym=2, addend=-4)],
        needed=["libc.so.6"],
        soname="libdemo.so",
        interp="/lib64/ld-linux-x86-64.so.2",
    )
    return facade.analyze(b.build())


class TestReport:
    """JSON report structure."""

    def test_structural_keys(self, rich_analysis):
        report = ReportGenerator().build(rich_analysis, source="demo.so")
        assert report["report_type"] == "elfscope_analysis"
        assert report["version"] == __version__
        assert report["file"]["path"] == "demo.so"
        assert report["file"]["sha256"] == rich_analysis.sha256
        assert report["dynamic"]["soname"] == "libdemo.so"
        assert report["dynamic"]["interpreter"] == "/lib64/ld-linux-x86-64.so.2"
        assert report["relocations"][0]["symbol_name"] == "puts"
        assert report["relocations"][0]["addend"] == -4
        assert report["strings"]["total_count"] == len(rich_analysis.strings)
        for optional in ("instructions", "cross_references", "search"):
            assert optional not in report

    def test_optional_parts(self, rich_analysis):
        report = ReportGenerator().build(
            rich_analysis,
            instructions=list(rich_analysis.disassemble(".text")),
            xrefs=rich_analysis.cross_references(),
            matches=rich_analysis.search("lib", SearchFilter.STRINGS),
        )
        assert [i["address"] for i in report["instructions"]] == [0x1000, 0x1001, 0x1004]
        assert report["cross_references"]["total_count"] == len(report["cross_references"]["items"])
        assert all(m["kind"] == "string" for m in report["search"])

    def test_generate_json(self, rich_analysis, tmp_path):
        target = tmp_path / "nested" / "report.json"
        written = ReportGenerator(indent=4).generate_json(rich_analysis, target, source="demo.so")
        assert written == str(target.resolve())
        data = json.loads(target.read_text(encoding="utf-8"))
        assert data["header"]["machine_name"] == "x86_64"

    def test_to_json_is_valid(self, rich_analysis):
        assert json.loads(ReportGenerator().to_json(rich_analysis))["symbols"]


class TestConsole:
    """Rich rendering of every table."""

    def _render(self, analysis, max_rows=50, **parts):
        console = ScopeConsole(record=True, width=160)
        output = AnalysisConsoleOutput(console=console, max_rows=max_rows)
        output.display(analysis, source="demo.so")
        if "instructions" in parts:
            output.display_instructions(parts["instructions"], parts.get("xrefs"))
        if "xrefs" in parts:
            output.display_cross_references(parts["xrefs"])
        if "matches" in parts:
            output.display_matches("lib", parts["matches"])
        return console.export_text()

    def test_structural_tables(self, rich_analysis):
        text = self._render(rich_analysis)
        for expected in ("File Header", "Program Headers", "Sections", "Symbols",
                         "Relocations", "Dynamic Linking", "libc.so.6", "license_ok"):
            assert expected in text

    def test_on_demand_tables(self, rich_analysis):
        text = self._render(
            rich_analysis,
            instructions=list(rich_analysis.disassemble(".text")),
            xrefs=rich_analysis.cross_references(),
            matches=rich_analysis.search("lib"),
        )
        assert "Disassembly" in text
        assert "Cross-References" in text
        assert "Search: lib" in text

    def test_row_cap(self, rich_analysis):
        text = self._render(rich_analysis, max_rows=1)
        assert "Showing 1 of" in text

    def test_diagnostics_are_escaped(self, facade, builder):
        from elfscope.parsers import constants as C

        image = builder.build()
        analysis = facade.analyze(image[:builder.shoff + 2 * C.SHDR64_SIZE])
        text = self._render(analysis)
        assert "Diagnostics" in text
        assert "[tables] TruncatedTable" in text
