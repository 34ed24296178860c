"""
Utilities module - Shared helper functions.

This module provides:
- Console logging setup for the command line tools
"""

from planartrack.utils.log import setup_logging, LOG_FORMAT

__all__ = [
    "setup_logging",
    "LOG_FORMAT",
]
