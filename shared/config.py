"""
elfscope Configuration Management
==================================

Configuration for the elfscope analysis engine and its CLI, kept in
slotted dataclasses and loaded from TOML.

A configuration file has three optional tables::

    [global]
    log_level = "INFO"
    max_workers = 4

    [analysis]
    min_string_length = 4
    max_strings = 0          # 0 = unlimited

    [output]
    max_display_rows = 50

Missing tables and keys fall back to the dataclass defaults; unknown keys
are ignored.

References:
    - Wiggins, A. (2011). The Twelve-Factor App. https://12factor.net/
    - TOML v1.0.0 Specification. https://toml.io/en/v1.0.0
"""

from __future__ import annotations

import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[no-redef]


# ---------------------------------------------------------------------------
# Default configuration file: ``elfscope.toml`` in the working directory
# ---------------------------------------------------------------------------
_DEFAULT_CONFIG_PATH: Path = Path("elfscope.toml")


@dataclass(frozen=False, slots=True)
class AnalysisConfig:
    """Parameters for the analysis pipeline.

    ``max_strings`` caps the number of extracted strings; ``0`` means no
    cap.  ``max_instructions`` bounds the instruction walk performed when
    building cross-references.
    """

    min_string_length: int = 4
    max_strings: int = 0
    max_file_size: int = 256 * 1024 * 1024  # 256 MiB
    max_instructions: int = 500_000
    disassembly_chunk_size: int = 0x10000
    parallel_disassembly: bool = True

    @property
    def string_cap(self) -> Optional[int]:
        return self.max_strings if self.max_strings > 0 else None


@dataclass(frozen=False, slots=True)
class OutputConfig:
    """Console rendering and report settings."""

    max_display_rows: int = 50
    report_indent: int = 2


@dataclass(frozen=False, slots=True)
class GlobalConfig:
    """Logging and worker settings."""

    log_level: str = "INFO"
    log_file: str = ""
    log_json: bool = False
    max_workers: int = 4
    debug: bool = False


@dataclass(frozen=False, slots=True)
class ElfscopeConfig:
    """Master configuration.

    Usage:
        >>> config = ElfscopeConfig.load()                  # ./elfscope.toml or defaults
        >>> config = ElfscopeConfig.load("custom.toml")
        >>> config.analysis.min_string_length
        4
    """

    global_settings: GlobalConfig = field(default_factory=GlobalConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    # ------------------------------------------------------------------ #
    #  TOML Loading
    # ------------------------------------------------------------------ #

    @classmethod
    def load(cls, path: str | Path | None = None) -> ElfscopeConfig:
        """Load configuration from a TOML file.

        Args:
            path: Filesystem path to a TOML configuration file.
                  Defaults to ``elfscope.toml`` in the working directory.

        Returns:
            A fully-populated :class:`ElfscopeConfig` instance.

        Raises:
            FileNotFoundError: If the specified path does not exist
                *and* was explicitly provided by the caller.
        """
        config_path = Path(path) if path is not None else _DEFAULT_CONFIG_PATH

        if not config_path.exists():
            if path is not None:
                raise FileNotFoundError(
                    f"Configuration file not found: {config_path}"
                )
            return cls()

        with open(config_path, "rb") as fh:
            raw: dict[str, Any] = tomllib.load(fh)

        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ElfscopeConfig:
        """Build a configuration from an already-parsed TOML document."""
        return cls(
            global_settings=cls._build_section(GlobalConfig, raw.get("global", {})),
            analysis=cls._build_section(AnalysisConfig, raw.get("analysis", {})),
            output=cls._build_section(OutputConfig, raw.get("output", {})),
        )

    # ------------------------------------------------------------------ #
    #  Serialisation helpers
    # ------------------------------------------------------------------ #

    def to_dict(self) -> dict[str, Any]:
        """Serialise the entire configuration tree to a plain dictionary."""
        return asdict(self)

    @staticmethod
    def _build_section(cls: type, data: dict[str, Any]) -> Any:
        """Instantiate a dataclass *cls* using only the keys it declares."""
        valid_keys = {f.name for f in cls.__dataclass_fields__.values()}  # type: ignore[attr-defined]
        filtered = {k: v for k, v in data.items() if k in valid_keys}
        return cls(**filtered)


# ========================= Module-level convenience ========================

def get_config(path: str | Path | None = None) -> ElfscopeConfig:
    """Module-level convenience wrapper around :meth:`ElfscopeConfig.load`.

    Caches the result so that repeated calls share one instance.
    """
    if not hasattr(get_config, "_cached") or path is not None:
        get_config._cached = ElfscopeConfig.load(path)  # type: ignore[attr-defined]
    return get_config._cached  # type: ignore[attr-defined]
