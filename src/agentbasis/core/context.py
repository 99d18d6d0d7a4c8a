"""
Context propagation - ambient trace metadata for nested sync/async calls.

with_context() runs a function inside a scope whose metadata is the union of
the current frame and the new keys (new keys win). The scope also opens an
"agentbasis.context" span, so every span started inside it (LLM calls,
traced functions, nested scopes) becomes its child.

The frame lives in a ContextVar, which asyncio copies into every task: two
concurrent call trees never see each other's metadata.

Usage:
    with_context({"user_id": "u1", "session_id": "s1"}, handle_request, payload)
    await with_context({"user_id": "u1"}, async_handler)

    @trace()
    async def summarize(text): ...
"""

import functools
import inspect
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any, TypeVar

from opentelemetry import trace as otel_trace

from ..logging import get_logger
from . import attributes as attrs
from .ambient import activate_frame, current_frame, pop_frame, push_frame
from .client import AgentBasis
from .spans import SpanHandle, SpanOutcome, SpanStatus, serialize_payload

logger = get_logger(__name__)

CONTEXT_SPAN_NAME = "agentbasis.context"
FUNCTION_SPAN_PREFIX = "agentbasis.function."

T = TypeVar("T")


def get_current_context() -> dict[str, Any] | None:
    """Ambient metadata at the call site (a copy), or None outside any scope."""
    frame = current_frame()
    return dict(frame) if frame is not None else None


def _start_scope_span(name: str, attributes: Mapping[str, Any]) -> SpanHandle | None:
    instance = AgentBasis._instance
    if instance is None:
        logger.debug("context.not_initialized", span=name)
        return None
    return instance.spans.start_span(name, attributes)


@contextmanager
def _active_span(handle: SpanHandle | None) -> Iterator[None]:
    """Make the handle's span current without ending it on exit."""
    if handle is None:
        yield
        return
    with otel_trace.use_span(handle.span, end_on_exit=False, record_exception=False, set_status_on_exception=False):
        yield


def _end_scope_span(handle: SpanHandle | None, error: BaseException | None = None) -> None:
    if handle is None or handle.controller is None:
        return
    outcome = SpanOutcome(
        status=SpanStatus.ERROR if error is not None else SpanStatus.OK,
        error=error,
    )
    handle.controller.end_span(handle, outcome)


@contextmanager
def context_scope(metadata: Mapping[str, Any]) -> Iterator[dict[str, Any]]:
    """Scope with merged metadata and a covering span.

    Yields:
        The merged metadata visible inside the scope (a copy)

    Exceptions raised inside the block mark the span as ERROR, are recorded
    on it and propagate unchanged.
    """
    token = push_frame(metadata)
    handle = None
    try:
        handle = _start_scope_span(CONTEXT_SPAN_NAME, attrs.context_attributes(current_frame()))
        with _active_span(handle):
            try:
                yield get_current_context() or {}
            except BaseException as e:
                _end_scope_span(handle, e)
                raise
        _end_scope_span(handle)
    finally:
        pop_frame(token)


async def _run_async_in_scope(
    metadata: Mapping[str, Any],
    fn: Callable[..., Any],
    args: tuple[Any, ...],
    kwargs: dict[str, Any],
) -> Any:
    with context_scope(metadata):
        return await fn(*args, **kwargs)


async def _await_in_scope(frame: dict[str, Any] | None, handle: SpanHandle | None, awaitable: Any) -> Any:
    """Await a result returned by a plain callable under the scope it was created in."""
    token = activate_frame(frame)
    try:
        with _active_span(handle):
            try:
                result = await awaitable
            except BaseException as e:
                _end_scope_span(handle, e)
                raise
        _end_scope_span(handle)
        return result
    finally:
        pop_frame(token)


def with_context(metadata: Mapping[str, Any], fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run fn inside a trace context scope.

    Args:
        metadata: Keys to add to the ambient context (user_id, session_id,
            trace_id, or any custom key)
        fn: Function to run. Coroutine functions, and plain callables that
            return an awaitable (lambda: coro()), give back an awaitable
            that runs inside the scope; the scope span stays open until it
            is awaited.
        *args, **kwargs: Passed through to fn

    Returns:
        fn's result (an awaitable when fn produced one)
    """
    if inspect.iscoroutinefunction(fn):
        return _run_async_in_scope(metadata, fn, args, kwargs)

    token = push_frame(metadata)
    frame = current_frame()
    try:
        handle = _start_scope_span(CONTEXT_SPAN_NAME, attrs.context_attributes(frame))
        with _active_span(handle):
            try:
                result = fn(*args, **kwargs)
            except BaseException as e:
                _end_scope_span(handle, e)
                raise
    finally:
        pop_frame(token)

    if inspect.isawaitable(result):
        return _await_in_scope(frame, handle, result)
    _end_scope_span(handle)
    return result


def _content_enabled() -> bool:
    config = AgentBasis.get_config()
    return bool(config and config.include_content)


def _function_input(fn: Callable[..., Any], args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
    try:
        bound = inspect.signature(fn).bind_partial(*args, **kwargs)
        return dict(bound.arguments)
    except (TypeError, ValueError):
        return {"args": list(args), "kwargs": kwargs}


def _start_function_span(name: str, fn: Callable[..., Any], args: tuple, kwargs: dict) -> SpanHandle | None:
    handle = _start_scope_span(FUNCTION_SPAN_PREFIX + name, attrs.well_known_attributes(current_frame()))
    if handle is not None and _content_enabled():
        try:
            handle.set_attribute(attrs.FUNCTION_INPUT, serialize_payload(_function_input(fn, args, kwargs)))
        except Exception as e:
            logger.warning("context.serialize_failed", span=handle.name, error=str(e))
    return handle


def _finish_function_span(handle: SpanHandle | None, result: Any) -> None:
    if handle is None:
        return
    if _content_enabled():
        try:
            handle.set_attribute(attrs.FUNCTION_OUTPUT, serialize_payload(result))
        except Exception as e:
            logger.warning("context.serialize_failed", span=handle.name, error=str(e))
    _end_scope_span(handle)


def trace(name: str | None = None) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator that records each call of a function as a span.

    Args:
        name: Span suffix (default: the function's __qualname__)

    Input arguments and the return value are attached only when
    include_content is enabled. Exceptions propagate unchanged.
    """

    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        span_name = name or fn.__qualname__

        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                handle = _start_function_span(span_name, fn, args, kwargs)
                with _active_span(handle):
                    try:
                        result = await fn(*args, **kwargs)
                    except BaseException as e:
                        _end_scope_span(handle, e)
                        raise
                _finish_function_span(handle, result)
                return result

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            handle = _start_function_span(span_name, fn, args, kwargs)
            with _active_span(handle):
                try:
                    result = fn(*args, **kwargs)
                except BaseException as e:
                    _end_scope_span(handle, e)
                    raise
            _finish_function_span(handle, result)
            return result

        return wrapper

    return decorator
