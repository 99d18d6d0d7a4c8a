"""
Logging module - structlog loggers scoped to the agentbasis namespace.
"""

from .setup import (
    LOGGER_NAME,
    configure_logging,
    filter_by_debug_mode,
    get_logger,
    get_runtime_debug_mode,
    is_debug_enabled,
    set_runtime_debug_mode,
)

__all__ = [
    "LOGGER_NAME",
    "configure_logging",
    "filter_by_debug_mode",
    "get_logger",
    "get_runtime_debug_mode",
    "is_debug_enabled",
    "set_runtime_debug_mode",
]
