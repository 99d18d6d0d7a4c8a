"""
Span attribute names and helpers.

LLM attributes follow the OpenTelemetry GenAI semantic conventions
(gen_ai.*); everything SDK-specific lives under agentbasis.*.
"""

from typing import Any, Mapping

GEN_AI_SYSTEM = "gen_ai.system"
GEN_AI_REQUEST_MODEL = "gen_ai.request.model"
GEN_AI_INPUT_TOKENS = "gen_ai.usage.input_tokens"
GEN_AI_OUTPUT_TOKENS = "gen_ai.usage.output_tokens"
GEN_AI_TOTAL_TOKENS = "gen_ai.usage.total_tokens"
GEN_AI_FINISH_REASON = "gen_ai.response.finish_reason"

AGENT_ID = "agentbasis.agent_id"
SPAN_TYPE = "agentbasis.span.type"
LLM_STREAMED = "agentbasis.llm.streamed"
LLM_PROMPT = "agentbasis.llm.prompt"
LLM_RESPONSE = "agentbasis.llm.response"
FUNCTION_INPUT = "agentbasis.function.input"
FUNCTION_OUTPUT = "agentbasis.function.output"
STREAM_INCOMPLETE = "agentbasis.stream.incomplete"
ERROR_TYPE = "error.type"

USER_ID = "agentbasis.user_id"
SESSION_ID = "agentbasis.session_id"
TRACE_ID = "agentbasis.trace_id"
METADATA_PREFIX = "agentbasis.metadata."

# Context keys promoted to first-class span attributes
WELL_KNOWN_CONTEXT_KEYS: dict[str, str] = {
    "user_id": USER_ID,
    "session_id": SESSION_ID,
    "trace_id": TRACE_ID,
}

_PRIMITIVES = (str, bool, int, float)


def well_known_attributes(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    """user/session/trace ids of a context frame, as span attributes."""
    if not metadata:
        return {}
    return {
        attr: metadata[key]
        for key, attr in WELL_KNOWN_CONTEXT_KEYS.items()
        if isinstance(metadata.get(key), _PRIMITIVES)
    }


def context_attributes(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    """All attributes for a context frame.

    Well-known keys map to their own attribute; any other entry becomes
    agentbasis.metadata.<key> if its value is a primitive. Other values
    (dicts, lists, objects) are skipped.
    """
    if not metadata:
        return {}

    attributes = well_known_attributes(metadata)
    for key, value in metadata.items():
        if key in WELL_KNOWN_CONTEXT_KEYS:
            continue
        if isinstance(value, _PRIMITIVES):
            attributes[f"{METADATA_PREFIX}{key}"] = value
    return attributes
