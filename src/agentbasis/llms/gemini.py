"""
Gemini instrumentation (google-generativeai).

Patches:
- GenerativeModel.generate_content / generate_content_async
- ChatSession.send_message / send_message_async
- genai.embed_content / genai.embed_content_async (module functions)

Usage:
    agentbasis.init(...)
    from agentbasis.llms import gemini as agentbasis_gemini
    agentbasis_gemini.instrument()

With stream=True the SDK returns a response that yields chunks when
iterated; the span ends once the chunks are consumed. A ChatSession turn
delegates to its model's generate_content, which is not traced a second
time, so one turn produces one span.
"""

from collections.abc import Callable
from contextvars import ContextVar
from dataclasses import dataclass
from types import ModuleType
from typing import Any

from ..core.spans import SpanOutcome
from ..core.streaming import ChunkFields
from ..instrumentation import InstrumentationPoint, Instrumentor, LLMCall, PatchRegistry, field
from ..instrumentation import run_traced, run_traced_async

PROVIDER = "gemini"
MODEL_PREFIX = "models/"

GENERATE_SPAN = "gemini.generate_content"
CHAT_SPAN = "gemini.chat.send_message"
EMBED_SPAN = "gemini.embed_content"

_in_chat_turn: ContextVar[bool] = ContextVar("agentbasis_gemini_chat_turn", default=False)


@dataclass
class GeminiTargets:
    """What to patch. None entries are skipped.

    Attributes:
        model: GenerativeModel class
        chat: ChatSession class
        module: Object holding embed_content / embed_content_async
    """

    model: type | None = None
    chat: type | None = None
    module: ModuleType | Any = None


def default_targets() -> GeminiTargets:
    try:
        import google.generativeai as genai
    except ImportError as e:
        raise ImportError(
            "Failed to instrument Gemini. Install it with: pip install 'agentbasis[gemini]'"
        ) from e
    return GeminiTargets(model=genai.GenerativeModel, chat=genai.ChatSession, module=genai)


# -- Extraction --------------------------------------------------------------------


def _model_name(model: Any) -> str:
    name = field(model, "model_name")
    if not isinstance(name, str) or not name:
        return "unknown"
    return name.removeprefix(MODEL_PREFIX)


def _usage(result: Any) -> dict[str, Any]:
    return {
        "input_tokens": field(result, "usage_metadata", "prompt_token_count"),
        "output_tokens": field(result, "usage_metadata", "candidates_token_count"),
        "total_tokens": field(result, "usage_metadata", "total_token_count"),
    }


def _finish_reason(result: Any) -> str | None:
    reason = field(result, "candidates", 0, "finish_reason")
    # 0 is FINISH_REASON_UNSPECIFIED, sent on every chunk but the last
    if not reason:
        return None
    return getattr(reason, "name", str(reason))


def _text(result: Any) -> str | None:
    parts = field(result, "candidates", 0, "content", "parts", default=[])
    text = "".join(field(part, "text", default="") for part in parts)
    return text or None


def summarize_response(result: Any) -> SpanOutcome:
    return SpanOutcome(response=result, finish_reason=_finish_reason(result), **_usage(result))


def summarize_embedding(result: Any) -> SpanOutcome:
    embedding = field(result, "embedding", default=[])
    if embedding and isinstance(embedding[0], list):
        response = {"embedding_count": len(embedding), "embedding_dimensions": len(embedding[0])}
    else:
        response = {"embedding_dimensions": len(embedding)}
    return SpanOutcome(response=response)


def extract_chunk(chunk: Any) -> ChunkFields:
    return ChunkFields(text=_text(chunk), finish_reason=_finish_reason(chunk), **_usage(chunk))


# -- Wrappers ----------------------------------------------------------------------


def _argument(args: tuple, kwargs: dict[str, Any], name: str, position: int) -> Any:
    if name in kwargs:
        return kwargs[name]
    return args[position] if len(args) > position else None


def _generate_wrapper(is_async: bool):
    runner = run_traced_async if is_async else run_traced

    def wrapper(wrapped, instance, args, kwargs):
        if _in_chat_turn.get():
            return wrapped(*args, **kwargs)
        call = LLMCall(
            span_name=GENERATE_SPAN,
            provider=PROVIDER,
            model=_model_name(instance),
            prompt=_argument(args, kwargs, "contents", 0),
            stream=kwargs.get("stream") is True,
        )
        return runner(wrapped, args, kwargs, call, summarize_response, extract_chunk)

    return wrapper


def _as_chat_turn(wrapped: Callable[..., Any], is_async: bool) -> Callable[..., Any]:
    """wrapped, with the model calls it makes left untraced."""
    if is_async:

        async def call_async(*args: Any, **kwargs: Any) -> Any:
            token = _in_chat_turn.set(True)
            try:
                return await wrapped(*args, **kwargs)
            finally:
                _in_chat_turn.reset(token)

        return call_async

    def call(*args: Any, **kwargs: Any) -> Any:
        token = _in_chat_turn.set(True)
        try:
            return wrapped(*args, **kwargs)
        finally:
            _in_chat_turn.reset(token)

    return call


def _chat_wrapper(is_async: bool):
    runner = run_traced_async if is_async else run_traced

    def wrapper(wrapped, instance, args, kwargs):
        call = LLMCall(
            span_name=CHAT_SPAN,
            provider=PROVIDER,
            model=_model_name(field(instance, "model")),
            prompt=_argument(args, kwargs, "content", 0),
            stream=kwargs.get("stream") is True,
        )
        return runner(_as_chat_turn(wrapped, is_async), args, kwargs, call, summarize_response, extract_chunk)

    return wrapper


def _embed_wrapper(is_async: bool):
    runner = run_traced_async if is_async else run_traced

    def wrapper(wrapped, instance, args, kwargs):
        model = _argument(args, kwargs, "model", 0)
        call = LLMCall(
            span_name=EMBED_SPAN,
            provider=PROVIDER,
            model=model.removeprefix(MODEL_PREFIX) if isinstance(model, str) else "unknown",
            prompt=_argument(args, kwargs, "content", 1),
        )
        return runner(wrapped, args, kwargs, call, summarize_embedding)

    return wrapper


class GeminiInstrumentation(InstrumentationPoint):
    name = "gemini"

    def __init__(self, targets: GeminiTargets | None = None) -> None:
        super().__init__()
        self.targets = targets or default_targets()

    def patch(self, registry: PatchRegistry) -> None:
        entry_points = (
            (self.targets.model, "generate_content", _generate_wrapper(is_async=False)),
            (self.targets.model, "generate_content_async", _generate_wrapper(is_async=True)),
            (self.targets.chat, "send_message", _chat_wrapper(is_async=False)),
            (self.targets.chat, "send_message_async", _chat_wrapper(is_async=True)),
            (self.targets.module, "embed_content", _embed_wrapper(is_async=False)),
            (self.targets.module, "embed_content_async", _embed_wrapper(is_async=True)),
        )
        for owner, attribute, wrapper in entry_points:
            if owner is not None and hasattr(owner, attribute):
                registry.wrap(owner, attribute, wrapper)


_instrumentor = Instrumentor("Gemini", GeminiInstrumentation)


def instrument(targets: GeminiTargets | None = None) -> None:
    """Trace every Gemini call made after this point.

    Raises:
        NotInitializedError: If AgentBasis.init() has not been called
        ImportError: If google-generativeai is not installed
    """
    _instrumentor.instrument(targets=targets)


def uninstrument() -> None:
    _instrumentor.uninstrument()


def is_instrumented() -> bool:
    return _instrumentor.is_instrumented()
