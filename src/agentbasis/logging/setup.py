"""
Structured logging for the SDK.

agentbasis runs inside someone else's process, so it never touches the root
logger or the global structlog configuration. Every SDK logger is a structlog
BoundLogger wrapped around a stdlib logger under the "agentbasis" namespace,
rendered by a single stderr handler installed on first use.

Debug gating:
- warning/error are always emitted.
- debug/info are emitted only while debug mode is on. The runtime override
  (set by AgentBasis.init() from config.debug, cleared by shutdown) wins over
  the AGENTBASIS_DEBUG environment variable.
"""

import logging
import sys
from typing import Any

import structlog

from ..config.env import is_debug_mode

LOGGER_NAME = "agentbasis"

_runtime_debug: bool | None = None
_handler: logging.Handler | None = None

_QUIET_LEVELS = frozenset({"debug", "info"})


def set_runtime_debug_mode(enabled: bool | None) -> None:
    """Override debug mode for this process. None restores the env var."""
    global _runtime_debug
    _runtime_debug = enabled


def get_runtime_debug_mode() -> bool | None:
    return _runtime_debug


def is_debug_enabled() -> bool:
    """Effective debug mode: runtime override first, then AGENTBASIS_DEBUG."""
    if _runtime_debug is not None:
        return _runtime_debug
    return is_debug_mode()


def filter_by_debug_mode(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor that drops debug/info events outside debug mode."""
    if method_name in _QUIET_LEVELS and not is_debug_enabled():
        raise structlog.DropEvent
    return event_dict


def configure_logging(stream: Any = None) -> logging.Handler:
    """Install the SDK stderr handler once.

    Args:
        stream: Output stream (default: sys.stderr)

    Returns:
        The installed handler (the existing one on repeated calls)
    """
    global _handler
    if _handler is not None:
        return _handler

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(
                colors=bool(getattr(handler.stream, "isatty", lambda: False)()),
            ),
        )
    )

    sdk_logger = logging.getLogger(LOGGER_NAME)
    sdk_logger.setLevel(logging.DEBUG)
    sdk_logger.addHandler(handler)
    sdk_logger.propagate = False

    _handler = handler
    return handler


def get_logger(name: str = LOGGER_NAME) -> structlog.stdlib.BoundLogger:
    """Obtain an SDK logger.

    Args:
        name: Logger name (usually __name__, already under "agentbasis")

    Returns:
        structlog BoundLogger routed to the SDK handler
    """
    configure_logging()
    if name != LOGGER_NAME and not name.startswith(LOGGER_NAME + "."):
        name = f"{LOGGER_NAME}.{name}"

    return structlog.wrap_logger(
        logging.getLogger(name),
        processors=[
            filter_by_debug_mode,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
    )
