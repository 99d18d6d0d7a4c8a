"""
Anthropic instrumentation.

Patches Messages.create and AsyncMessages.create. With stream=True the
SDK returns a stream of server-sent events; the ones carrying data are:
- message_start: input (and initial output) token usage
- content_block_delta: text deltas
- message_delta: stop reason and the final output token count
"""

from dataclasses import dataclass
from typing import Any

from ..core.spans import SpanOutcome
from ..core.streaming import ChunkFields
from ..instrumentation import InstrumentationPoint, Instrumentor, LLMCall, PatchRegistry, field
from ..instrumentation import run_traced, run_traced_async

PROVIDER = "anthropic"
SPAN_NAME = "anthropic.messages.create"


@dataclass
class AnthropicTargets:
    messages: type | None = None
    async_messages: type | None = None


def default_targets() -> AnthropicTargets:
    try:
        from anthropic.resources import AsyncMessages, Messages
    except ImportError as e:
        raise ImportError(
            "Failed to instrument Anthropic. Install it with: pip install 'agentbasis[anthropic]'"
        ) from e
    return AnthropicTargets(messages=Messages, async_messages=AsyncMessages)


def _prompt(kwargs: dict[str, Any]) -> Any:
    if kwargs.get("system") is not None:
        return {"system": kwargs["system"], "messages": kwargs.get("messages")}
    return kwargs.get("messages")


def summarize_message(result: Any) -> SpanOutcome:
    input_tokens = field(result, "usage", "input_tokens")
    output_tokens = field(result, "usage", "output_tokens")
    total = input_tokens + output_tokens if input_tokens is not None and output_tokens is not None else None
    return SpanOutcome(
        response=result,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total,
        finish_reason=field(result, "stop_reason"),
    )


def extract_event(event: Any) -> ChunkFields | None:
    kind = field(event, "type")
    if kind == "message_start":
        return ChunkFields(
            input_tokens=field(event, "message", "usage", "input_tokens"),
            output_tokens=field(event, "message", "usage", "output_tokens"),
        )
    if kind == "content_block_delta":
        return ChunkFields(text=field(event, "delta", "text"))
    if kind == "message_delta":
        return ChunkFields(
            output_tokens=field(event, "usage", "output_tokens"),
            finish_reason=field(event, "delta", "stop_reason"),
        )
    return None


def _make_wrapper(is_async: bool):
    runner = run_traced_async if is_async else run_traced

    def wrapper(wrapped, instance, args, kwargs):
        call = LLMCall(
            span_name=SPAN_NAME,
            provider=PROVIDER,
            model=kwargs.get("model") or "unknown",
            prompt=_prompt(kwargs),
            stream=kwargs.get("stream") is True,
        )
        return runner(wrapped, args, kwargs, call, summarize_message, extract_event)

    return wrapper


class AnthropicInstrumentation(InstrumentationPoint):
    name = "anthropic"

    def __init__(self, targets: AnthropicTargets | None = None) -> None:
        super().__init__()
        self.targets = targets or default_targets()

    def patch(self, registry: PatchRegistry) -> None:
        if self.targets.messages is not None:
            registry.wrap(self.targets.messages, "create", _make_wrapper(is_async=False))
        if self.targets.async_messages is not None:
            registry.wrap(self.targets.async_messages, "create", _make_wrapper(is_async=True))


_instrumentor = Instrumentor("Anthropic", AnthropicInstrumentation)


def instrument(targets: AnthropicTargets | None = None) -> None:
    """Trace every Anthropic Messages call made after this point.

    Raises:
        NotInitializedError: If AgentBasis.init() has not been called
        ImportError: If the anthropic package is not installed
    """
    _instrumentor.instrument(targets=targets)


def uninstrument() -> None:
    _instrumentor.uninstrument()


def is_instrumented() -> bool:
    return _instrumentor.is_instrumented()
