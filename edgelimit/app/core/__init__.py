"""Core utilities: settings, logging, clocks and client factories."""

from edgelimit.app.core.clock import now_ms
from edgelimit.app.core.config import Settings, settings
from edgelimit.app.core.duration import ms
from edgelimit.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
    "ms",
    "now_ms",
]
