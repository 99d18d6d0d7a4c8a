"""
Generic call and stream tracking for frameworks without a hook system.

track_call() records one call (sync or async) as a span, picking up token
usage and response text from the result when present. track_stream()
instruments a streaming result object that exposes:
- text_stream: a sync or async iterator of text chunks
- usage (optional): a future/awaitable resolving to token usage

When usage is deferred it finalizes the span (so the totals make it in);
otherwise exhausting text_stream does.
"""

import asyncio
import concurrent.futures
import inspect
from collections.abc import Callable, MutableMapping
from typing import Any

from ..core.client import get_span_controller
from ..core.spans import SpanController, SpanHandle, SpanOutcome
from ..core.streaming import ChunkFields, StreamAggregator, attach_deferred_usage, wrap_pull_stream
from ..instrumentation import field
from ..logging import get_logger

logger = get_logger(__name__)

CALL_SPAN_PREFIX = "agentbasis.track."
STREAM_SPAN_PREFIX = "agentbasis.track.stream."


def _first(obj: Any, *keys: str) -> Any:
    for key in keys:
        value = field(obj, key)
        if value is not None:
            return value
    return None


def usage_fields(usage: Any) -> ChunkFields:
    """Token usage in OpenAI, Anthropic or camelCase shape."""
    return ChunkFields(
        input_tokens=_first(usage, "prompt_tokens", "input_tokens", "promptTokens"),
        output_tokens=_first(usage, "completion_tokens", "output_tokens", "completionTokens"),
        total_tokens=_first(usage, "total_tokens", "totalTokens"),
    )


def _text_chunk(chunk: Any) -> ChunkFields:
    if isinstance(chunk, str):
        return ChunkFields(text=chunk)
    return ChunkFields(text=field(chunk, "text"))


def _summarize(result: Any) -> SpanOutcome:
    usage = field(result, "usage")
    tokens = usage_fields(usage) if usage is not None and not inspect.isawaitable(usage) else ChunkFields()
    text = field(result, "text")
    return SpanOutcome(
        input_tokens=tokens.input_tokens,
        output_tokens=tokens.output_tokens,
        total_tokens=tokens.total_tokens,
        response=text if isinstance(text, str) else None,
    )


def _end(controller: SpanController, handle: SpanHandle, result: Any) -> None:
    try:
        outcome = _summarize(result)
    except Exception as e:
        logger.debug("tracking.summarize_failed", span=handle.name, error=str(e))
        outcome = SpanOutcome()
    controller.end_span(handle, outcome)


async def _track_awaitable(controller: SpanController, handle: SpanHandle, awaitable: Any) -> Any:
    try:
        result = await awaitable
    except BaseException as e:
        controller.end_span(handle, SpanOutcome(error=e))
        raise
    _end(controller, handle, result)
    return result


def track_call(name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run fn(*args, **kwargs) inside a "agentbasis.track.<name>" span.

    Coroutine functions (and functions returning an awaitable) give back an
    awaitable. Errors end the span with status ERROR and propagate.
    """
    controller = get_span_controller(f"track {name}")
    if controller is None:
        return fn(*args, **kwargs)

    handle = controller.start_span(f"{CALL_SPAN_PREFIX}{name}")
    try:
        result = fn(*args, **kwargs)
    except BaseException as e:
        controller.end_span(handle, SpanOutcome(error=e))
        raise

    if inspect.isawaitable(result):
        return _track_awaitable(controller, handle, result)
    _end(controller, handle, result)
    return result


def _replace(result: Any, key: str, value: Any) -> bool:
    try:
        if isinstance(result, MutableMapping):
            result[key] = value
        else:
            setattr(result, key, value)
    except (AttributeError, TypeError) as e:
        logger.warning("tracking.replace_failed", attribute=key, error=str(e))
        return False
    return True


def _is_deferred(usage: Any) -> bool:
    return inspect.isawaitable(usage) or isinstance(usage, (asyncio.Future, concurrent.futures.Future))


def track_stream(name: str, result: Any) -> Any:
    """Instrument a streaming result in place and return it.

    Args:
        name: Span suffix ("agentbasis.track.stream.<name>")
        result: Object or dict with text_stream and/or a deferred usage

    Returns:
        The same result, with text_stream / usage replaced by tracked versions
    """
    controller = get_span_controller(f"track stream {name}")
    if controller is None:
        return result

    handle = controller.start_span(f"{STREAM_SPAN_PREFIX}{name}")
    aggregator = StreamAggregator(handle, controller=controller)

    usage = field(result, "usage")
    deferred = False
    if usage is not None and _is_deferred(usage):
        try:
            tracked_usage = attach_deferred_usage(aggregator, usage, usage_fields)
        except RuntimeError as e:
            # coroutine usage outside a running event loop
            logger.warning("tracking.usage_not_attached", span=handle.name, error=str(e))
        else:
            deferred = True
            if tracked_usage is not usage:
                _replace(result, "usage", tracked_usage)

    text_stream = field(result, "text_stream")
    if text_stream is not None:
        wrapped = wrap_pull_stream(text_stream, _text_chunk, aggregator=aggregator, finalize_on_complete=not deferred)
        if not _replace(result, "text_stream", wrapped) and not deferred:
            aggregator.finalize()
    elif not deferred:
        if usage is not None:
            aggregator.update(usage_fields(usage))
        aggregator.finalize()

    return result
