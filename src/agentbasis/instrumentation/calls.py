"""
Shared call runners for patched LLM entry points.

run_traced / run_traced_async wrap one provider call in an LLM span:
- not initialized: the original is called untouched
- the call raises: the span ends with the error, the error propagates
- streaming result: the stream is wrapped and finalizes the span itself
- otherwise: the provider-specific summarize() turns the response into a
  SpanOutcome and the span ends before the result is returned
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from ..core.client import get_span_controller
from ..core.spans import SpanController, SpanHandle, SpanOutcome
from ..core.streaming import Extractor, StreamAggregator, wrap_pull_stream
from ..logging import get_logger

logger = get_logger(__name__)

Summarizer = Callable[[Any], SpanOutcome]


@dataclass
class LLMCall:
    """What a wrapper knows about a call before it runs."""

    span_name: str
    provider: str
    model: str
    prompt: Any = None
    stream: bool = False


def field(obj: Any, *path: str | int, default: Any = None) -> Any:
    """Read a nested field from SDK objects or plain dicts.

    field(chunk, "choices", 0, "delta", "content") works for pydantic
    responses as well as the dicts some SDKs return.
    """
    current = obj
    for key in path:
        if current is None:
            return default
        if isinstance(key, int):
            try:
                current = current[key]
            except (IndexError, KeyError, TypeError):
                return default
        elif isinstance(current, Mapping):
            current = current.get(key)
        else:
            current = getattr(current, key, None)
    return default if current is None else current


def _start(call: LLMCall) -> tuple[SpanController | None, SpanHandle | None]:
    controller = get_span_controller(f"trace {call.span_name}")
    if controller is None:
        return None, None
    return controller, controller.start_llm_span(call.span_name, call.provider, call.model)


def _fail(controller: SpanController, handle: SpanHandle, call: LLMCall, error: BaseException) -> None:
    controller.end_span(handle, SpanOutcome(error=error, prompt=call.prompt, streamed=call.stream))


def _finish(
    controller: SpanController,
    handle: SpanHandle,
    call: LLMCall,
    result: Any,
    summarize: Summarizer,
    extract_chunk: Extractor | None,
    is_async: bool,
) -> Any:
    if call.stream and extract_chunk is not None:
        aggregator = StreamAggregator(handle, controller=controller, prompt=call.prompt)
        return wrap_pull_stream(result, extract_chunk, aggregator=aggregator, asynchronous=is_async)

    try:
        outcome = summarize(result)
    except Exception as e:
        logger.debug("instrumentation.summarize_failed", span=call.span_name, error=str(e))
        outcome = SpanOutcome(response=result)
    outcome.prompt = call.prompt
    outcome.streamed = False
    controller.end_span(handle, outcome)
    return result


def run_traced(
    wrapped: Callable[..., Any],
    args: tuple,
    kwargs: dict,
    call: LLMCall,
    summarize: Summarizer,
    extract_chunk: Extractor | None = None,
) -> Any:
    controller, handle = _start(call)
    if controller is None or handle is None:
        return wrapped(*args, **kwargs)

    try:
        result = wrapped(*args, **kwargs)
    except BaseException as e:
        _fail(controller, handle, call, e)
        raise
    return _finish(controller, handle, call, result, summarize, extract_chunk, is_async=False)


async def run_traced_async(
    wrapped: Callable[..., Any],
    args: tuple,
    kwargs: dict,
    call: LLMCall,
    summarize: Summarizer,
    extract_chunk: Extractor | None = None,
) -> Any:
    controller, handle = _start(call)
    if controller is None or handle is None:
        return await wrapped(*args, **kwargs)

    try:
        result = await wrapped(*args, **kwargs)
    except BaseException as e:
        _fail(controller, handle, call, e)
        raise
    return _finish(controller, handle, call, result, summarize, extract_chunk, is_async=True)
