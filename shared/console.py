"""
elfscope Console Interface
===========================

Rich-powered console abstraction used by the CLI and the result
renderers: section rules, coloured status lines and a status
spinner, all with one theme.

References:
    - Rich library: https://github.com/Textualize/rich
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Generator

from rich.console import Console
from rich.theme import Theme

_SCOPE_THEME = Theme(
    {
        "scope.title": "bold bright_cyan",
        "scope.section": "bold bright_magenta",
        "scope.success": "bold green",
        "scope.warning": "bold yellow",
        "scope.error": "bold red",
        "scope.info": "bold bright_blue",
        "scope.dim": "dim white",
        "scope.mnemonic": "bold bright_white",
    }
)


class ScopeConsole:
    """Console wrapper shared by every elfscope output path.

    Usage::

        con = ScopeConsole()
        con.section("Sections")
        con.success("Analysis complete")
    """

    def __init__(
        self,
        *,
        quiet: bool = False,
        record: bool = False,
        width: int | None = None,
    ) -> None:
        """Initialise the console.

        Args:
            quiet:  Suppress all output (library / test mode).
            record: Keep rendered output for :meth:`export_text`.
            width:  Fixed render width; ``None`` detects the terminal.
        """
        self._console = Console(
            theme=_SCOPE_THEME,
            quiet=quiet,
            record=record,
            highlight=False,
            width=width,
        )

    # ------------------------------------------------------------------ #
    #  Headers and messages
    # ------------------------------------------------------------------ #

    def title(self, text: str, subtitle: str = "") -> None:
        self._console.print(f"[scope.title]{text}[/scope.title]")
        if subtitle:
            self._console.print(f"[scope.dim]{subtitle}[/scope.dim]")
        self._console.print()

    def section(self, title: str) -> None:
        """Print a section rule."""
        self._console.rule(f"  {title}  ", style="scope.section", characters="─")

    def success(self, message: str) -> None:
        self._console.print(f"[scope.success][✔][/scope.success] {message}")

    def warning(self, message: str) -> None:
        self._console.print(f"[scope.warning][⚠] WARNING:[/scope.warning] {message}")

    def error(self, message: str) -> None:
        self._console.print(f"[scope.error][✘] ERROR:[/scope.error] {message}")

    def info(self, message: str) -> None:
        self._console.print(f"[scope.info][ℹ][/scope.info] {message}")

    # ------------------------------------------------------------------ #
    #  Status spinner
    # ------------------------------------------------------------------ #

    @contextmanager
    def status(self, message: str = "Working...") -> Generator[Any, None, None]:
        """Context-manager showing a spinner with a status message."""
        with self._console.status(
            f"[scope.info]{message}[/scope.info]",
            spinner="dots",
            spinner_style="bright_cyan",
        ) as status_obj:
            yield status_obj

    # ------------------------------------------------------------------ #
    #  Utility
    # ------------------------------------------------------------------ #

    def print(self, *args: Any, **kwargs: Any) -> None:
        """Proxy to :meth:`rich.console.Console.print`."""
        self._console.print(*args, **kwargs)

    def blank(self, count: int = 1) -> None:
        for _ in range(count):
            self._console.print()

    def export_text(self) -> str:
        """Return recorded output as plain text (requires ``record=True``)."""
        return self._console.export_text()
