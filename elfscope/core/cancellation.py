"""
Cooperative cancellation for long-running analyses.

The engine checks the token between pipeline stages, and between
sections and chunks while disassembling; a stage already running is
allowed to finish its current unit of work.
"""

from __future__ import annotations

import threading

from elfscope.core.errors import AnalysisCancelled


class CancellationToken:
    """Thread-safe cancel flag shared between a caller and an analysis.

    Usage::

        token = CancellationToken()
        future = loop.run_in_executor(None, facade.analyze, data, token)
        token.cancel()
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str) -> None:
        """Raise :class:`AnalysisCancelled` if :meth:`cancel` was called.

        Args:
            stage: Name of the stage about to start.
        """
        if self._event.is_set():
            raise AnalysisCancelled(stage)
