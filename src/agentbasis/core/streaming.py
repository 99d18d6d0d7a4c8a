"""
Streaming aggregator - one finalize per streamed operation.

Provider SDKs stream in three shapes:
- pull: a sync or async iterator of chunks (OpenAI, Anthropic, LiteLLM)
- push: an emitter with separate data / end / error channels
- deferred usage: a result whose token totals arrive later in a future

Each adapter feeds a StreamAggregator, which keeps running totals (text,
last-seen token counts, finish reason) and calls end_span exactly once,
whichever completion path fires first. The finalize guard is a lock-protected
check-and-set, so it also holds when SDKs complete on worker threads or
re-enter synchronously.

Adapters are transparent: the caller sees exactly the chunks (and the
object) it would see without instrumentation. Errors from the source are
recorded on the span and re-raised unchanged.
"""

import asyncio
import concurrent.futures
import inspect
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import wrapt

from ..logging import get_logger
from . import attributes as attrs
from .spans import SpanController, SpanHandle, SpanOutcome

logger = get_logger(__name__)


@dataclass
class ChunkFields:
    """Fields extracted from one chunk. None means "not in this chunk"."""

    text: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    finish_reason: str | None = None


Extractor = Callable[[Any], ChunkFields | None]


class StreamAggregator:
    """Running state of one streamed operation.

    Attributes:
        handle: Span being aggregated into.
        prompt: Request payload attached on finalize (content policy applies).
        input_tokens / output_tokens / total_tokens: Last non-absent values.
        finish_reason: Last non-absent terminal reason.
        chunk_count: Chunks observed so far.
    """

    def __init__(
        self,
        handle: SpanHandle,
        *,
        controller: SpanController | None = None,
        prompt: Any = None,
    ) -> None:
        self.handle = handle
        self.controller = controller or handle.controller
        self.prompt = prompt
        self.input_tokens: int | None = None
        self.output_tokens: int | None = None
        self.total_tokens: int | None = None
        self.finish_reason: str | None = None
        self.chunk_count = 0
        self._text_parts: list[str] = []
        self._finalized = False
        self._guard = threading.Lock()

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def update(self, fields: ChunkFields | None) -> None:
        """Merge a chunk's fields. Ignored once finalized."""
        if fields is None or self._finalized:
            return
        if fields.text:
            self._text_parts.append(fields.text)
        if fields.input_tokens is not None:
            self.input_tokens = fields.input_tokens
        if fields.output_tokens is not None:
            self.output_tokens = fields.output_tokens
        if fields.total_tokens is not None:
            self.total_tokens = fields.total_tokens
        if fields.finish_reason is not None:
            self.finish_reason = fields.finish_reason

    def observe(self, chunk: Any, extract: Extractor) -> None:
        """Extract fields from a chunk and merge them.

        Extractor failures are logged and skipped; they never reach the
        consumer of the stream.
        """
        if self._finalized:
            return
        self.chunk_count += 1
        try:
            fields = extract(chunk)
        except Exception as e:
            logger.debug(
                "streaming.extract_failed",
                span=self.handle.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        self.update(fields)

    def _claim(self) -> bool:
        with self._guard:
            if self._finalized:
                return False
            self._finalized = True
            return True

    def finalize(
        self,
        error: BaseException | None = None,
        *,
        response: Any = None,
        attributes: dict[str, Any] | None = None,
    ) -> bool:
        """End the span with the accumulated totals.

        Args:
            error: Error that terminated the stream, if any
            response: Explicit response payload (default: aggregated text)
            attributes: Extra terminal attributes

        Returns:
            True if this call ended the span, False if already finalized
        """
        if not self._claim():
            return False

        if response is None and error is None:
            response = {"content": self.text, "finish_reason": self.finish_reason}

        outcome = SpanOutcome(
            error=error,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            total_tokens=self.total_tokens,
            finish_reason=self.finish_reason,
            prompt=self.prompt,
            response=response,
            streamed=True,
            attributes=dict(attributes or {}),
        )
        if self.controller is None:
            self.handle.claim_end()
            return True

        self.controller.end_span(self.handle, outcome)
        logger.debug(
            "streaming.finalized",
            span=self.handle.name,
            chunks=self.chunk_count,
            error=type(error).__name__ if error else None,
        )
        return True


# -- Pull streams ------------------------------------------------------------------


class TracedStream(wrapt.ObjectProxy):
    """Transparent proxy over a sync iterator of chunks.

    Attribute access, isinstance checks and the context-manager protocol go
    to the wrapped stream; iteration is observed.
    """

    def __init__(
        self,
        wrapped: Any,
        extract: Extractor,
        aggregator: StreamAggregator,
        finalize_on_complete: bool = True,
    ) -> None:
        super().__init__(wrapped)
        self._self_extract = extract
        self._self_aggregator = aggregator
        self._self_finalize_on_complete = finalize_on_complete
        self._self_iterator: Any = None
        self._self_completed = False

    def __iter__(self) -> "TracedStream":
        return self

    def __next__(self) -> Any:
        if self._self_iterator is None:
            self._self_iterator = iter(self.__wrapped__)
        try:
            chunk = next(self._self_iterator)
        except StopIteration:
            self._self_complete()
            raise
        except BaseException as e:
            self._self_aggregator.finalize(error=e)
            raise
        self._self_aggregator.observe(chunk, self._self_extract)
        return chunk

    def _self_complete(self) -> None:
        self._self_completed = True
        if self._self_finalize_on_complete:
            self._self_aggregator.finalize()

    def _self_abandon(self, error: BaseException | None = None) -> None:
        if error is not None:
            self._self_aggregator.finalize(error=error)
        elif not self._self_completed:
            self._self_aggregator.finalize(attributes={attrs.STREAM_INCOMPLETE: True})

    def __enter__(self) -> "TracedStream":
        enter = getattr(self.__wrapped__, "__enter__", None)
        if enter is not None:
            enter()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> Any:
        result = None
        try:
            exit_ = getattr(self.__wrapped__, "__exit__", None)
            if exit_ is not None:
                result = exit_(exc_type, exc, tb)
        finally:
            self._self_abandon(exc)
        return result

    def close(self) -> None:
        try:
            close = getattr(self.__wrapped__, "close", None)
            if close is not None:
                close()
        finally:
            self._self_abandon()


class AsyncTracedStream(wrapt.ObjectProxy):
    """Transparent proxy over an async iterator of chunks."""

    def __init__(
        self,
        wrapped: Any,
        extract: Extractor,
        aggregator: StreamAggregator,
        finalize_on_complete: bool = True,
    ) -> None:
        super().__init__(wrapped)
        self._self_extract = extract
        self._self_aggregator = aggregator
        self._self_finalize_on_complete = finalize_on_complete
        self._self_iterator: Any = None
        self._self_completed = False

    def __aiter__(self) -> "AsyncTracedStream":
        return self

    async def __anext__(self) -> Any:
        if self._self_iterator is None:
            self._self_iterator = self.__wrapped__.__aiter__()
        try:
            chunk = await self._self_iterator.__anext__()
        except StopAsyncIteration:
            self._self_completed = True
            if self._self_finalize_on_complete:
                self._self_aggregator.finalize()
            raise
        except BaseException as e:
            self._self_aggregator.finalize(error=e)
            raise
        self._self_aggregator.observe(chunk, self._self_extract)
        return chunk

    def _self_abandon(self, error: BaseException | None = None) -> None:
        if error is not None:
            self._self_aggregator.finalize(error=error)
        elif not self._self_completed:
            self._self_aggregator.finalize(attributes={attrs.STREAM_INCOMPLETE: True})

    async def __aenter__(self) -> "AsyncTracedStream":
        enter = getattr(self.__wrapped__, "__aenter__", None)
        if enter is not None:
            await enter()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> Any:
        result = None
        try:
            exit_ = getattr(self.__wrapped__, "__aexit__", None)
            if exit_ is not None:
                result = await exit_(exc_type, exc, tb)
        finally:
            self._self_abandon(exc)
        return result

    async def _self_call_closer(self, name: str) -> None:
        closer = getattr(self.__wrapped__, name, None)
        if closer is None:
            return
        result = closer()
        if inspect.isawaitable(result):
            await result

    async def aclose(self) -> None:
        try:
            await self._self_call_closer("aclose")
        finally:
            self._self_abandon()

    async def close(self) -> None:
        try:
            await self._self_call_closer("close")
        finally:
            self._self_abandon()


def wrap_pull_stream(
    source: Any,
    extract: Extractor,
    *,
    aggregator: StreamAggregator,
    finalize_on_complete: bool = True,
    asynchronous: bool | None = None,
) -> Any:
    """Wrap a sync or async chunk iterator.

    Args:
        source: Stream returned by the provider
        extract: Maps a chunk to ChunkFields (or None)
        aggregator: Aggregator of the operation's span
        finalize_on_complete: False when a deferred usage channel will
            finalize instead (see attach_deferred_usage)
        asynchronous: Force the async (True) or sync (False) protocol for
            sources implementing both; detected when None

    Returns:
        A proxy yielding the identical chunks
    """
    if asynchronous is None:
        asynchronous = hasattr(source, "__aiter__")
    if asynchronous and hasattr(source, "__aiter__"):
        return AsyncTracedStream(source, extract, aggregator, finalize_on_complete)
    if hasattr(source, "__iter__"):
        return TracedStream(source, extract, aggregator, finalize_on_complete)

    logger.warning("streaming.not_iterable", span=aggregator.handle.name, type=type(source).__name__)
    aggregator.finalize(response=source)
    return source


# -- Push streams ------------------------------------------------------------------


@dataclass(frozen=True)
class PushEvents:
    """Channel names of an emitter-like stream."""

    data: str = "data"
    end: str = "end"
    error: str = "error"


def wrap_push_stream(
    emitter: Any,
    extract: Extractor,
    *,
    aggregator: StreamAggregator,
    events: PushEvents = PushEvents(),
    finalize_on_end: bool = True,
) -> Any:
    """Subscribe the aggregator to an emitter's data/end/error channels.

    The emitter must expose on(event, listener) or add_listener(event,
    listener). It is returned unchanged, so other listeners see the same
    events in the same order.
    """
    subscribe = getattr(emitter, "on", None) or getattr(emitter, "add_listener", None)
    if not callable(subscribe):
        logger.warning("streaming.not_an_emitter", span=aggregator.handle.name, type=type(emitter).__name__)
        return emitter

    def on_data(*args: Any) -> None:
        aggregator.observe(args[0] if len(args) == 1 else args, extract)

    def on_end(*args: Any) -> None:
        if finalize_on_end:
            aggregator.finalize()

    def on_error(error: Any = None, *args: Any) -> None:
        if not isinstance(error, BaseException):
            error = RuntimeError(str(error))
        aggregator.finalize(error=error)

    subscribe(events.data, on_data)
    subscribe(events.end, on_end)
    subscribe(events.error, on_error)
    return emitter


# -- Deferred usage ----------------------------------------------------------------


def _on_usage_done(aggregator: StreamAggregator, extract_usage: Extractor, future: Any) -> None:
    if future.cancelled():
        aggregator.finalize(error=asyncio.CancelledError())
        return

    error = future.exception()
    if error is not None:
        aggregator.finalize(error=error)
        return

    try:
        fields = extract_usage(future.result())
    except Exception as e:
        logger.debug("streaming.usage_extract_failed", span=aggregator.handle.name, error=str(e))
        fields = None
    aggregator.update(fields)
    aggregator.finalize()


def attach_deferred_usage(aggregator: StreamAggregator, deferred: Any, extract_usage: Extractor) -> Any:
    """Finalize the aggregator when a deferred usage total resolves.

    Args:
        aggregator: Aggregator of the operation's span
        deferred: Future, task, coroutine/awaitable, or an already-resolved value
        extract_usage: Maps the resolved value to ChunkFields

    Returns:
        What the caller should keep in place of `deferred`: coroutines and
        other one-shot awaitables become tasks (awaitable any number of
        times); futures are returned as-is.

    Raises:
        RuntimeError: An awaitable was given outside a running event loop
    """
    if isinstance(deferred, (asyncio.Future, concurrent.futures.Future)):
        future = deferred
    elif inspect.isawaitable(deferred):
        future = asyncio.ensure_future(deferred, loop=asyncio.get_running_loop())
    else:
        _on_usage_done(aggregator, extract_usage, _resolved(deferred))
        return deferred

    future.add_done_callback(lambda fut: _on_usage_done(aggregator, extract_usage, fut))
    return future


def _resolved(value: Any) -> concurrent.futures.Future:
    future: concurrent.futures.Future = concurrent.futures.Future()
    future.set_result(value)
    return future
