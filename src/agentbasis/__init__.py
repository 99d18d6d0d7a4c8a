"""
AgentBasis - telemetry SDK for LLM-powered agents.

Traces LLM calls, streamed responses and user functions as OpenTelemetry
spans and ships them to the AgentBasis backend.

Usage:
    import agentbasis
    from agentbasis.llms import openai as agentbasis_openai

    agentbasis.init(api_key="...", agent_id="...")
    agentbasis_openai.instrument()

    agentbasis.with_context({"user_id": "u1"}, handle_request, payload)
"""

from ._version import __version__
from .config import AgentBasisConfig
from .core import (
    AgentBasis,
    ChunkFields,
    SpanHandle,
    SpanOutcome,
    StreamAggregator,
    context_scope,
    end_span,
    flush,
    get_config,
    get_current_context,
    init,
    is_initialized,
    shutdown,
    start_llm_span,
    start_span,
    trace,
    with_context,
)
from .errors import AgentBasisError, ConfigurationError, NotInitializedError

__all__ = [
    "AgentBasis",
    "AgentBasisConfig",
    "AgentBasisError",
    "ChunkFields",
    "ConfigurationError",
    "NotInitializedError",
    "SpanHandle",
    "SpanOutcome",
    "StreamAggregator",
    "__version__",
    "context_scope",
    "end_span",
    "flush",
    "get_config",
    "get_current_context",
    "init",
    "is_initialized",
    "shutdown",
    "start_llm_span",
    "start_span",
    "trace",
    "with_context",
]
