"""
Tests for the streaming aggregator and its stream adapters.

Covers:
- running totals (text concatenation, last non-absent token counts)
- pull streams: transparency, finalize on exhaustion / error / early close
- push streams (emitter with data/end/error channels)
- deferred usage (futures, coroutines, failures)
- exactly one finalize whichever completion path fires first
"""

import asyncio
import concurrent.futures
import threading

import pytest
from opentelemetry.trace import StatusCode

from agentbasis.core import attributes as attrs
from agentbasis.core.streaming import (
    AsyncTracedStream,
    ChunkFields,
    PushEvents,
    StreamAggregator,
    TracedStream,
    attach_deferred_usage,
    wrap_pull_stream,
    wrap_push_stream,
)

SPAN = "llm.stream"


def extract(chunk):
    return ChunkFields(
        text=chunk.get("text"),
        input_tokens=chunk.get("in"),
        output_tokens=chunk.get("out"),
        total_tokens=chunk.get("total"),
        finish_reason=chunk.get("finish"),
    )


CHUNKS = [
    {"text": "Hel", "in": 4},
    {"text": "lo", "out": 1},
    {"text": "!", "out": 2, "total": 6, "finish": "stop"},
]


@pytest.fixture
def aggregator(client):
    handle = client.spans.start_llm_span(SPAN, "openai", "gpt-4o")
    return StreamAggregator(handle, prompt="hi")


class FakeStream:
    """Provider-like sync stream with close() and context-manager support."""

    def __init__(self, chunks, fail_after=None):
        self._chunks = list(chunks)
        self._fail_after = fail_after
        self.closed = False
        self.response = "raw-response"

    def __iter__(self):
        for i, chunk in enumerate(self._chunks):
            if self._fail_after is not None and i == self._fail_after:
                raise ConnectionError("stream dropped")
            yield chunk

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class FakeAsyncStream:
    def __init__(self, chunks, fail_after=None):
        self._chunks = list(chunks)
        self._fail_after = fail_after
        self.closed = False

    async def _gen(self):
        for i, chunk in enumerate(self._chunks):
            if self._fail_after is not None and i == self._fail_after:
                raise ConnectionError("stream dropped")
            await asyncio.sleep(0)
            yield chunk

    def __aiter__(self):
        return self._gen()

    async def close(self):
        self.closed = True


class Emitter:
    def __init__(self):
        self.listeners = {}

    def on(self, event, listener):
        self.listeners.setdefault(event, []).append(listener)
        return listener

    def emit(self, event, *args):
        for listener in self.listeners.get(event, []):
            listener(*args)


# -- Tests: aggregator ---------------------------------------------------------------


class TestStreamAggregator:
    def test_running_totals(self, aggregator):
        for chunk in CHUNKS:
            aggregator.update(extract(chunk))
        assert aggregator.text == "Hello!"
        assert aggregator.input_tokens == 4
        assert aggregator.output_tokens == 2
        assert aggregator.total_tokens == 6
        assert aggregator.finish_reason == "stop"

    def test_absent_fields_keep_values(self, aggregator):
        aggregator.update(ChunkFields(output_tokens=5))
        aggregator.update(ChunkFields(text="x"))
        aggregator.update(None)
        assert aggregator.output_tokens == 5

    def test_finalize_once(self, aggregator, finished):
        aggregator.update(ChunkFields(text="a", output_tokens=1))
        assert aggregator.finalize() is True
        assert aggregator.finalize(error=RuntimeError("late")) is False

        aggregator.update(ChunkFields(text="ignored", output_tokens=99))
        assert aggregator.text == "a"

        spans = finished(SPAN)
        assert len(spans) == 1
        assert spans[0].status.status_code == StatusCode.OK
        assert spans[0].attributes[attrs.GEN_AI_OUTPUT_TOKENS] == 1
        assert spans[0].attributes[attrs.LLM_STREAMED] is True

    def test_concurrent_finalize(self, aggregator, finished):
        barrier = threading.Barrier(6)
        results = []

        def fin():
            barrier.wait()
            results.append(aggregator.finalize())

        threads = [threading.Thread(target=fin) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert len(finished(SPAN)) == 1

    def test_extractor_failure_is_ignored(self, aggregator):
        def broken(chunk):
            raise KeyError("shape changed")

        aggregator.observe({"text": "x"}, broken)
        aggregator.observe({"text": "y"}, extract)
        assert aggregator.text == "y"
        assert aggregator.chunk_count == 2

    def test_response_content_attached_with_content_enabled(self, content_client, finished):
        handle = content_client.spans.start_llm_span(SPAN, "openai", "gpt-4o")
        agg = StreamAggregator(handle, prompt="hi")
        agg.update(ChunkFields(text="Hello", finish_reason="stop"))
        agg.finalize()

        span = finished(SPAN)[0]
        assert span.attributes[attrs.LLM_PROMPT] == "hi"
        assert span.attributes[attrs.LLM_RESPONSE] == '{"content": "Hello", "finish_reason": "stop"}'


# -- Tests: sync pull streams --------------------------------------------------------


class TestSyncPullStream:
    def test_chunks_pass_through_unchanged(self, aggregator, finished):
        source = FakeStream(CHUNKS)
        stream = wrap_pull_stream(source, extract, aggregator=aggregator)

        assert isinstance(stream, TracedStream)
        assert isinstance(stream, FakeStream)
        assert stream.response == "raw-response"
        assert list(stream) == CHUNKS

        span = finished(SPAN)[0]
        assert span.attributes[attrs.GEN_AI_INPUT_TOKENS] == 4
        assert span.attributes[attrs.GEN_AI_OUTPUT_TOKENS] == 2
        assert span.attributes[attrs.GEN_AI_TOTAL_TOKENS] == 6
        assert span.attributes[attrs.GEN_AI_FINISH_REASON] == "stop"
        assert attrs.STREAM_INCOMPLETE not in span.attributes

    def test_plain_iterator(self, aggregator, finished):
        stream = wrap_pull_stream(iter(CHUNKS), extract, aggregator=aggregator)
        assert [c["text"] for c in stream] == ["Hel", "lo", "!"]
        assert len(finished(SPAN)) == 1

    def test_error_finalizes_and_reraises(self, aggregator, finished):
        stream = wrap_pull_stream(FakeStream(CHUNKS, fail_after=2), extract, aggregator=aggregator)
        received = []
        with pytest.raises(ConnectionError, match="stream dropped"):
            for chunk in stream:
                received.append(chunk)

        assert received == CHUNKS[:2]
        span = finished(SPAN)[0]
        assert span.status.status_code == StatusCode.ERROR
        assert span.attributes[attrs.GEN_AI_INPUT_TOKENS] == 4

    def test_early_close_marks_incomplete(self, aggregator, finished):
        source = FakeStream(CHUNKS)
        stream = wrap_pull_stream(source, extract, aggregator=aggregator)
        next(stream)
        stream.close()

        assert source.closed
        span = finished(SPAN)[0]
        assert span.attributes[attrs.STREAM_INCOMPLETE] is True
        assert span.status.status_code == StatusCode.OK

    def test_context_manager_exit_before_exhaustion(self, aggregator, finished):
        source = FakeStream(CHUNKS)
        with wrap_pull_stream(source, extract, aggregator=aggregator) as stream:
            next(iter(stream))

        assert source.closed
        assert finished(SPAN)[0].attributes[attrs.STREAM_INCOMPLETE] is True

    def test_close_after_exhaustion_is_complete(self, aggregator, finished):
        stream = wrap_pull_stream(FakeStream(CHUNKS), extract, aggregator=aggregator)
        list(stream)
        stream.close()
        span = finished(SPAN)
        assert len(span) == 1
        assert attrs.STREAM_INCOMPLETE not in span[0].attributes

    def test_no_finalize_on_complete(self, aggregator, finished):
        stream = wrap_pull_stream(iter(CHUNKS), extract, aggregator=aggregator, finalize_on_complete=False)
        list(stream)
        assert not aggregator.finalized
        assert finished(SPAN) == []

    def test_non_iterable_finalizes_immediately(self, aggregator):
        result = object()
        assert wrap_pull_stream(result, extract, aggregator=aggregator) is result
        assert aggregator.finalized


# -- Tests: async pull streams --------------------------------------------------------


class TestAsyncPullStream:
    def test_chunks_pass_through(self, aggregator, finished):
        async def consume():
            stream = wrap_pull_stream(FakeAsyncStream(CHUNKS), extract, aggregator=aggregator)
            assert isinstance(stream, AsyncTracedStream)
            return [chunk async for chunk in stream]

        assert asyncio.run(consume()) == CHUNKS
        span = finished(SPAN)[0]
        assert span.attributes[attrs.GEN_AI_TOTAL_TOKENS] == 6

    def test_error_finalizes_and_reraises(self, aggregator, finished):
        async def consume():
            stream = wrap_pull_stream(FakeAsyncStream(CHUNKS, fail_after=1), extract, aggregator=aggregator)
            async for _ in stream:
                pass

        with pytest.raises(ConnectionError):
            asyncio.run(consume())
        assert finished(SPAN)[0].status.status_code == StatusCode.ERROR

    def test_async_close_marks_incomplete(self, aggregator, finished):
        source = FakeAsyncStream(CHUNKS)

        async def consume():
            stream = wrap_pull_stream(source, extract, aggregator=aggregator)
            await stream.__anext__()
            await stream.close()

        asyncio.run(consume())
        assert source.closed
        assert finished(SPAN)[0].attributes[attrs.STREAM_INCOMPLETE] is True

    def test_async_generator_source(self, aggregator, finished):
        async def gen():
            for chunk in CHUNKS:
                yield chunk

        async def consume():
            stream = wrap_pull_stream(gen(), extract, aggregator=aggregator)
            first = await stream.__anext__()
            await stream.aclose()
            return first

        assert asyncio.run(consume()) == CHUNKS[0]
        assert finished(SPAN)[0].attributes[attrs.STREAM_INCOMPLETE] is True

    def test_forced_sync_protocol(self, aggregator):
        class Both:
            def __iter__(self):
                return iter(CHUNKS)

            def __aiter__(self):
                raise AssertionError("async protocol must not be used")

        stream = wrap_pull_stream(Both(), extract, aggregator=aggregator, asynchronous=False)
        assert list(stream) == CHUNKS
        assert aggregator.finalized


# -- Tests: push streams ---------------------------------------------------------------


class TestPushStream:
    def test_data_then_end(self, aggregator, finished):
        emitter = Emitter()
        other = []
        emitter.on("data", other.append)

        assert wrap_push_stream(emitter, extract, aggregator=aggregator) is emitter
        for chunk in CHUNKS:
            emitter.emit("data", chunk)
        emitter.emit("end")

        assert other == CHUNKS
        span = finished(SPAN)[0]
        assert span.status.status_code == StatusCode.OK
        assert span.attributes[attrs.GEN_AI_OUTPUT_TOKENS] == 2

    def test_error_channel(self, aggregator, finished):
        emitter = Emitter()
        wrap_push_stream(emitter, extract, aggregator=aggregator)
        emitter.emit("data", CHUNKS[0])
        emitter.emit("error", TimeoutError("upstream timeout"))
        emitter.emit("end")

        spans = finished(SPAN)
        assert len(spans) == 1
        assert spans[0].status.status_code == StatusCode.ERROR

    def test_non_exception_error_payload(self, aggregator, finished):
        emitter = Emitter()
        wrap_push_stream(emitter, extract, aggregator=aggregator)
        emitter.emit("error", "socket hang up")
        assert finished(SPAN)[0].status.description == "socket hang up"

    def test_custom_event_names_and_add_listener(self, aggregator, finished):
        class Listenable:
            def __init__(self):
                self.emitter = Emitter()

            def add_listener(self, event, listener):
                self.emitter.on(event, listener)

        source = Listenable()
        wrap_push_stream(source, extract, aggregator=aggregator, events=PushEvents("chunk", "done", "failed"))
        source.emitter.emit("chunk", CHUNKS[0])
        source.emitter.emit("done")
        assert finished(SPAN)[0].attributes[attrs.GEN_AI_INPUT_TOKENS] == 4

    def test_not_an_emitter(self, aggregator):
        source = object()
        assert wrap_push_stream(source, extract, aggregator=aggregator) is source
        assert not aggregator.finalized


# -- Tests: deferred usage --------------------------------------------------------------


def usage_fields(usage):
    return ChunkFields(input_tokens=usage["in"], output_tokens=usage["out"])


class TestDeferredUsage:
    def test_future_resolution_finalizes(self, aggregator, finished):
        future = concurrent.futures.Future()
        assert attach_deferred_usage(aggregator, future, usage_fields) is future

        list(wrap_pull_stream(iter(CHUNKS[:2]), extract, aggregator=aggregator, finalize_on_complete=False))
        assert not aggregator.finalized

        future.set_result({"in": 10, "out": 20})
        span = finished(SPAN)[0]
        assert span.attributes[attrs.GEN_AI_INPUT_TOKENS] == 10
        assert span.attributes[attrs.GEN_AI_OUTPUT_TOKENS] == 20

    def test_future_failure_finalizes_with_error(self, aggregator, finished):
        future = concurrent.futures.Future()
        attach_deferred_usage(aggregator, future, usage_fields)
        future.set_exception(RuntimeError("usage unavailable"))
        assert finished(SPAN)[0].status.status_code == StatusCode.ERROR

    def test_coroutine_becomes_awaitable_task(self, aggregator, finished):
        async def usage():
            await asyncio.sleep(0)
            return {"in": 1, "out": 2}

        async def main():
            tracked = attach_deferred_usage(aggregator, usage(), usage_fields)
            first = await tracked
            second = await tracked
            await asyncio.sleep(0)
            return first, second

        first, second = asyncio.run(main())
        assert first == second == {"in": 1, "out": 2}
        assert finished(SPAN)[0].attributes[attrs.GEN_AI_OUTPUT_TOKENS] == 2

    def test_coroutine_outside_loop_raises(self, aggregator):
        async def usage():
            return {"in": 1, "out": 2}

        coro = usage()
        with pytest.raises(RuntimeError):
            attach_deferred_usage(aggregator, coro, usage_fields)
        coro.close()

    def test_resolved_value(self, aggregator, finished):
        attach_deferred_usage(aggregator, {"in": 3, "out": 4}, usage_fields)
        assert finished(SPAN)[0].attributes[attrs.GEN_AI_INPUT_TOKENS] == 3

    def test_stream_error_before_usage(self, aggregator, finished):
        future = concurrent.futures.Future()
        attach_deferred_usage(aggregator, future, usage_fields)
        stream = wrap_pull_stream(
            FakeStream(CHUNKS, fail_after=1), extract, aggregator=aggregator, finalize_on_complete=False
        )
        with pytest.raises(ConnectionError):
            list(stream)

        future.set_result({"in": 10, "out": 20})
        spans = finished(SPAN)
        assert len(spans) == 1
        assert spans[0].status.status_code == StatusCode.ERROR
        assert spans[0].attributes[attrs.GEN_AI_INPUT_TOKENS] == 4
