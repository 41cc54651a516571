"""Entry point for ``python -m elfscope``."""

from elfscope.cli import main

main()
