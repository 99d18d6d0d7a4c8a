"""
Ambient trace metadata carried by a ContextVar.

Each asyncio task (and each thread) sees its own copy of the context, so
unrelated concurrent call trees never observe each other's frames. A frame
is replaced, never mutated: pushing builds a new dict from the parent.
"""

from contextvars import ContextVar, Token
from typing import Any, Mapping

_current_frame: ContextVar[dict[str, Any] | None] = ContextVar(
    "agentbasis_trace_context", default=None
)


def current_frame() -> dict[str, Any] | None:
    """The active frame itself (do not mutate), or None outside any scope."""
    return _current_frame.get()


def push_frame(metadata: Mapping[str, Any]) -> Token:
    """Activate {**parent, **metadata}. Returns the token for pop_frame()."""
    parent = _current_frame.get() or {}
    return _current_frame.set({**parent, **metadata})


def pop_frame(token: Token) -> None:
    _current_frame.reset(token)


def activate_frame(frame: dict[str, Any] | None) -> Token:
    """Make an already-built frame current, as is. Returns the token for pop_frame()."""
    return _current_frame.set(frame)
