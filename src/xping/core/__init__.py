"""
xping Core Module

Core configuration and logging.
"""

from .config import (
    Settings,
    DEFAULT_READY_MARKERS,
    DEFAULT_FATAL_MARKERS,
    get_settings,
)
from .logging import setup_logging

__all__ = [
    # Settings
    "Settings",
    "DEFAULT_READY_MARKERS",
    "DEFAULT_FATAL_MARKERS",
    "get_settings",
    # Logging
    "setup_logging",
]
