"""
elfscope Shared Module
======================

Configuration, logging and console utilities used by the analysis engine
and the command-line interface.
"""

from shared.config import ElfscopeConfig, get_config

__all__ = ["ElfscopeConfig", "get_config"]
