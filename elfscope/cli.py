"""
elfscope CLI
=============

Click-based command-line interface.  The CLI is the file-access
collaborator of the engine: it reads the image from disk, hands the bytes
to :class:`~elfscope.core.engine.AnalysisFacade` and renders the result.

Usage::

    # Structural analysis
    elfscope /usr/lib/libz.so.1

    # Disassemble the first 40 instructions of .text with cross-references
    elfscope ./a.out --disasm .text --limit 40 --xrefs

    # Search operands for a register
    elfscope ./a.out --search rip --filter registers

    # JSON to stdout, or to a file
    elfscope ./a.out --json
    elfscope ./a.out --output report.json

References:
    - Click documentation: https://click.palletsprojects.com/
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, NoReturn, Optional

import click

from shared.config import ElfscopeConfig
from shared.console import ScopeConsole
from shared.logger import ScopeLogger

from elfscope.analyzers.disassembly import CapstoneDisassembler
from elfscope.core.engine import Analysis, AnalysisFacade
from elfscope.core.errors import AnalysisError
from elfscope.core.models import Architecture, SearchFilter
from elfscope.output.console import AnalysisConsoleOutput
from elfscope.output.report import ReportGenerator


@click.command("elfscope")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--min-string-length",
    type=click.IntRange(min=1),
    default=None,
    help="Minimum string length for extraction (default from config: 4).",
)
@click.option(
    "--max-strings",
    type=click.IntRange(min=0),
    default=None,
    help="Maximum number of strings to extract; 0 means unlimited.",
)
@click.option(
    "--disasm", "-d",
    "disasm_section",
    default=None,
    metavar="SECTION",
    help="Disassemble SECTION (for example .text).",
)
@click.option(
    "--limit", "-n",
    type=click.IntRange(min=1),
    default=100,
    show_default=True,
    help="Maximum instructions to disassemble.",
)
@click.option(
    "--arch",
    type=click.Choice([a.value for a in Architecture], case_sensitive=False),
    default=None,
    help="Override the architecture derived from e_machine.",
)
@click.option(
    "--search", "-s",
    "query",
    default=None,
    help="Case-insensitive substring search.",
)
@click.option(
    "--filter", "-f",
    "filter_kind",
    type=click.Choice([f.value for f in SearchFilter], case_sensitive=False),
    default=SearchFilter.UNFILTERED.value,
    show_default=True,
    help="What --search matches against.",
)
@click.option(
    "--xrefs", "-x",
    is_flag=True,
    default=False,
    help="Build and display the cross-reference index.",
)
@click.option(
    "--json", "json_output",
    is_flag=True,
    default=False,
    help="Output results as JSON to stdout.",
)
@click.option(
    "--output", "-o",
    "output_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Write a JSON report to this path.",
)
@click.option(
    "--config", "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="TOML configuration file.",
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    default=False,
    help="Enable debug logging.",
)
def elfscope_cli(
    path: str,
    min_string_length: Optional[int],
    max_strings: Optional[int],
    disasm_section: Optional[str],
    limit: int,
    arch: Optional[str],
    query: Optional[str],
    filter_kind: str,
    xrefs: bool,
    json_output: bool,
    output_path: Optional[str],
    config_path: Optional[str],
    verbose: bool,
) -> None:
    """elfscope -- ELF binary analysis.

    Decode the header, segments, sections, symbols, relocations, dynamic
    linking information and strings of the ELF file at PATH, and
    optionally disassemble code, build cross-references or search.
    """
    try:
        config = ElfscopeConfig.load(config_path)
    except (FileNotFoundError, ValueError) as exc:
        raise click.BadParameter(str(exc), param_hint="--config") from exc

    console = ScopeConsole(quiet=json_output)
    # Keep stdout clean for --json; logs go to stderr only when asked for.
    logger = ScopeLogger.from_config(
        "cli",
        config,
        verbose=verbose,
        console_output=verbose or not json_output,
    )

    file_size = Path(path).stat().st_size
    max_size = config.analysis.max_file_size
    if file_size > max_size:
        console.error(f"File too large: {file_size:,} bytes (max: {max_size:,} bytes)")
        sys.exit(1)

    data = Path(path).read_bytes()
    facade = AnalysisFacade(config=config, logger=logger, disassembler=CapstoneDisassembler())

    try:
        with console.status(f"Analyzing {Path(path).name}..."):
            analysis = facade.analyze(
                data,
                min_string_length=min_string_length,
                max_strings=max_strings,
                architecture=arch,
            )
    except KeyboardInterrupt:
        console.warning("Analysis interrupted by user.")
        sys.exit(130)
    except AnalysisError as exc:
        logger.debug("analysis of %s failed", path, code=exc.code)
        _fail(console, json_output, exc)

    with analysis:
        try:
            parts = _collect(analysis, disasm_section, limit, query, filter_kind, xrefs)
        except AnalysisError as exc:
            _fail(console, json_output, exc)

        if json_output:
            click.echo(ReportGenerator(config.output.report_indent).to_json(analysis, source=path, **parts))
        else:
            _render(analysis, path, config, console, parts, query)

        if output_path:
            report_path = ReportGenerator(config.output.report_indent).generate_json(
                analysis, output_path, source=path, **parts
            )
            console.success(f"JSON report saved: {report_path}")


def _fail(console: ScopeConsole, json_output: bool, exc: AnalysisError) -> NoReturn:
    if json_output:
        click.echo(json.dumps({"error": exc.code, "message": exc.message}))
    else:
        console.error(f"{exc.code}: {exc.message}")
    sys.exit(1)


def _collect(
    analysis: Analysis,
    disasm_section: Optional[str],
    limit: int,
    query: Optional[str],
    filter_kind: str,
    xrefs: bool,
) -> dict[str, Any]:
    """Run the on-demand stages the command line asked for."""
    parts: dict[str, Any] = {}
    if disasm_section:
        parts["instructions"] = list(analysis.disassemble(disasm_section, limit=limit))
    if xrefs:
        parts["xrefs"] = analysis.cross_references()
    if query is not None:
        parts["matches"] = analysis.search(query, SearchFilter(filter_kind.lower()))
    return parts


def _render(
    analysis: Analysis,
    path: str,
    config: ElfscopeConfig,
    console: ScopeConsole,
    parts: dict[str, Any],
    query: Optional[str],
) -> None:
    output = AnalysisConsoleOutput(console=console, max_rows=config.output.max_display_rows)
    output.display(analysis, source=path)

    index = parts.get("xrefs")
    if "instructions" in parts:
        output.display_instructions(parts["instructions"], index)
    if index is not None:
        output.display_cross_references(index)
    if query is not None:
        output.display_matches(query, parts["matches"])

    console.blank()
    console.success(
        f"{len(analysis.sections)} sections, {len(analysis.symbols)} symbols, "
        f"{len(analysis.strings)} strings, {len(analysis.diagnostics)} diagnostics"
    )


# ---------------------------------------------------------------------------
# Module entry point
# ---------------------------------------------------------------------------

def main() -> None:
    """Entry point for the ``elfscope`` console script."""
    elfscope_cli()


if __name__ == "__main__":
    main()
