"""
OpenAI instrumentation.

Patches the openai v1 resource classes:
- chat.completions.create (sync and async, streaming and not)
- completions.create (legacy API)
- embeddings.create

Usage:
    agentbasis.init(...)
    from agentbasis.llms import openai as agentbasis_openai
    agentbasis_openai.instrument()

Streamed chat completions only carry token usage when the request sets
stream_options={"include_usage": True}; the request is never modified.
"""

from dataclasses import dataclass, fields
from typing import Any

from ..core.spans import SpanOutcome
from ..core.streaming import ChunkFields
from ..instrumentation import InstrumentationPoint, Instrumentor, LLMCall, PatchRegistry, field
from ..instrumentation import run_traced, run_traced_async

PROVIDER = "openai"


@dataclass
class OpenAITargets:
    """Resource classes to patch. None entries are skipped."""

    chat: type | None = None
    async_chat: type | None = None
    completions: type | None = None
    async_completions: type | None = None
    embeddings: type | None = None
    async_embeddings: type | None = None


def default_targets() -> OpenAITargets:
    try:
        from openai.resources import AsyncCompletions, AsyncEmbeddings, Completions, Embeddings
        from openai.resources.chat import AsyncCompletions as AsyncChatCompletions
        from openai.resources.chat import Completions as ChatCompletions
    except ImportError as e:
        raise ImportError(
            "Failed to instrument OpenAI. Install it with: pip install 'agentbasis[openai]'"
        ) from e

    return OpenAITargets(
        chat=ChatCompletions,
        async_chat=AsyncChatCompletions,
        completions=Completions,
        async_completions=AsyncCompletions,
        embeddings=Embeddings,
        async_embeddings=AsyncEmbeddings,
    )


# -- Extraction --------------------------------------------------------------------


def _usage(result: Any) -> dict[str, Any]:
    return {
        "input_tokens": field(result, "usage", "prompt_tokens"),
        "output_tokens": field(result, "usage", "completion_tokens"),
        "total_tokens": field(result, "usage", "total_tokens"),
    }


def summarize_completion(result: Any) -> SpanOutcome:
    return SpanOutcome(
        response=result,
        finish_reason=field(result, "choices", 0, "finish_reason"),
        **_usage(result),
    )


def summarize_embedding(result: Any) -> SpanOutcome:
    data = field(result, "data", default=[])
    return SpanOutcome(
        response={"embedding_count": len(data) if isinstance(data, list) else 1},
        input_tokens=field(result, "usage", "prompt_tokens"),
        total_tokens=field(result, "usage", "total_tokens"),
    )


def extract_chat_chunk(chunk: Any) -> ChunkFields:
    return ChunkFields(
        text=field(chunk, "choices", 0, "delta", "content"),
        finish_reason=field(chunk, "choices", 0, "finish_reason"),
        **_usage(chunk),
    )


def extract_completion_chunk(chunk: Any) -> ChunkFields:
    return ChunkFields(
        text=field(chunk, "choices", 0, "text"),
        finish_reason=field(chunk, "choices", 0, "finish_reason"),
        **_usage(chunk),
    )


# -- Wrappers ----------------------------------------------------------------------


def _make_wrapper(span_name: str, prompt_key: str, summarize, extract_chunk, is_async: bool):
    runner = run_traced_async if is_async else run_traced

    def wrapper(wrapped, instance, args, kwargs):
        call = LLMCall(
            span_name=span_name,
            provider=PROVIDER,
            model=kwargs.get("model") or "unknown",
            prompt=kwargs.get(prompt_key),
            stream=kwargs.get("stream") is True,
        )
        return runner(wrapped, args, kwargs, call, summarize, extract_chunk)

    return wrapper


_ENDPOINTS = {
    # target field: (span name, prompt kwarg, summarizer, chunk extractor)
    "chat": ("openai.chat.completions.create", "messages", summarize_completion, extract_chat_chunk),
    "completions": ("openai.completions.create", "prompt", summarize_completion, extract_completion_chunk),
    "embeddings": ("openai.embeddings.create", "input", summarize_embedding, None),
}


class OpenAIInstrumentation(InstrumentationPoint):
    name = "openai"

    def __init__(self, targets: OpenAITargets | None = None) -> None:
        super().__init__()
        self.targets = targets or default_targets()

    def patch(self, registry: PatchRegistry) -> None:
        for target in fields(self.targets):
            cls = getattr(self.targets, target.name)
            if cls is None:
                continue
            is_async = target.name.startswith("async_")
            span_name, prompt_key, summarize, extract_chunk = _ENDPOINTS[target.name.removeprefix("async_")]
            registry.wrap(cls, "create", _make_wrapper(span_name, prompt_key, summarize, extract_chunk, is_async))


_instrumentor = Instrumentor("OpenAI", OpenAIInstrumentation)


def instrument(targets: OpenAITargets | None = None) -> None:
    """Trace every OpenAI call made after this point.

    Raises:
        NotInitializedError: If AgentBasis.init() has not been called
        ImportError: If the openai package is not installed
    """
    _instrumentor.instrument(targets=targets)


def uninstrument() -> None:
    _instrumentor.uninstrument()


def is_instrumented() -> bool:
    return _instrumentor.is_instrumented()
