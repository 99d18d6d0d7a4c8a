"""
Core SDK - client lifecycle, context propagation, spans and stream aggregation.
"""

from .client import (
    AgentBasis,
    end_span,
    flush,
    get_config,
    get_span_controller,
    init,
    is_initialized,
    shutdown,
    start_llm_span,
    start_span,
)
from .context import context_scope, get_current_context, trace, with_context
from .spans import SpanController, SpanHandle, SpanOutcome, SpanStatus, serialize_payload
from .streaming import (
    AsyncTracedStream,
    ChunkFields,
    PushEvents,
    StreamAggregator,
    TracedStream,
    attach_deferred_usage,
    wrap_pull_stream,
    wrap_push_stream,
)

__all__ = [
    "AgentBasis",
    "AsyncTracedStream",
    "ChunkFields",
    "PushEvents",
    "SpanController",
    "SpanHandle",
    "SpanOutcome",
    "SpanStatus",
    "StreamAggregator",
    "TracedStream",
    "attach_deferred_usage",
    "context_scope",
    "end_span",
    "flush",
    "get_config",
    "get_current_context",
    "get_span_controller",
    "init",
    "is_initialized",
    "serialize_payload",
    "shutdown",
    "start_llm_span",
    "start_span",
    "trace",
    "with_context",
    "wrap_pull_stream",
    "wrap_push_stream",
]
