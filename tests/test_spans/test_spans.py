"""
Tests for the span lifecycle controller.

Covers:
- start/end and the exactly-once end guard (also under thread races)
- terminal attributes (tokens only when provided, finish reason, stream flag)
- content policy (off by default, binary marker vs base64)
- error status and recorded exception
- module-level helpers before init (no-op handles + warning)
"""

import threading
from dataclasses import dataclass
from unittest.mock import MagicMock, patch

from opentelemetry.trace import StatusCode
from pydantic import BaseModel

from agentbasis.core import attributes as attrs
from agentbasis.core.client import AgentBasis, end_span, start_llm_span, start_span
from agentbasis.core.spans import SpanHandle, SpanOutcome, SpanStatus, serialize_payload, to_jsonable


# -- Tests: lifecycle ----------------------------------------------------------------


class TestSpanLifecycle:
    def test_start_and_end(self, client, finished):
        handle = client.spans.start_span("unit.op", {"k": "v"})
        assert handle.status is SpanStatus.UNSET
        assert handle.is_recording

        assert client.spans.end_span(handle) is True
        assert handle.ended
        assert handle.status is SpanStatus.OK

        spans = finished("unit.op")
        assert len(spans) == 1
        assert spans[0].attributes["k"] == "v"
        assert spans[0].status.status_code == StatusCode.OK

    def test_end_twice_is_noop(self, client, finished):
        handle = client.spans.start_span("unit.op")
        assert client.spans.end_span(handle) is True
        assert client.spans.end_span(handle, SpanOutcome(error=RuntimeError("late"))) is False

        spans = finished("unit.op")
        assert len(spans) == 1
        assert spans[0].status.status_code == StatusCode.OK

    def test_concurrent_end_finalizes_once(self, client, finished):
        handle = client.spans.start_span("unit.race")
        barrier = threading.Barrier(8)
        results = []

        def end():
            barrier.wait()
            results.append(client.spans.end_span(handle))

        threads = [threading.Thread(target=end) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert len(finished("unit.race")) == 1

    def test_set_attribute_after_end_is_ignored(self, client, finished):
        handle = client.spans.start_span("unit.op")
        handle.set_attribute("before", 1)
        client.spans.end_span(handle)
        handle.set_attribute("after", 2)

        span = finished("unit.op")[0]
        assert span.attributes["before"] == 1
        assert "after" not in span.attributes
        assert "after" not in handle.attributes

    def test_child_span_parented_explicitly(self, client, finished):
        parent = client.spans.start_span("unit.parent")
        child = client.spans.start_span("unit.child", parent=parent.context())
        client.spans.end_span(child)
        client.spans.end_span(parent)

        child_span = finished("unit.child")[0]
        parent_span = finished("unit.parent")[0]
        assert child_span.parent.span_id == parent_span.context.span_id

    def test_root_span_without_active_parent(self, client, finished):
        client.spans.end_span(client.spans.start_span("unit.root"))
        assert finished("unit.root")[0].parent is None


# -- Tests: LLM spans and terminal attributes ------------------------------------------


class TestLLMSpans:
    def test_llm_span_attributes(self, client, finished):
        handle = client.spans.start_llm_span("openai.chat.completions.create", "openai", "gpt-4o")
        client.spans.end_span(handle, SpanOutcome(input_tokens=3, output_tokens=5, total_tokens=8, finish_reason="stop"))

        span = finished("openai.chat.completions.create")[0]
        assert span.attributes[attrs.GEN_AI_SYSTEM] == "openai"
        assert span.attributes[attrs.GEN_AI_REQUEST_MODEL] == "gpt-4o"
        assert span.attributes[attrs.AGENT_ID] == "agent-test"
        assert span.attributes[attrs.SPAN_TYPE] == "llm"
        assert span.attributes[attrs.GEN_AI_INPUT_TOKENS] == 3
        assert span.attributes[attrs.GEN_AI_OUTPUT_TOKENS] == 5
        assert span.attributes[attrs.GEN_AI_TOTAL_TOKENS] == 8
        assert span.attributes[attrs.GEN_AI_FINISH_REASON] == "stop"

    def test_missing_model_is_unknown(self, client, finished):
        client.spans.end_span(client.spans.start_llm_span("llm", "openai", ""))
        assert finished("llm")[0].attributes[attrs.GEN_AI_REQUEST_MODEL] == "unknown"

    def test_token_counts_only_when_provided(self, client, finished):
        handle = client.spans.start_llm_span("llm", "openai", "gpt-4o")
        client.spans.end_span(handle, SpanOutcome(input_tokens=0, streamed=False))

        span = finished("llm")[0]
        assert span.attributes[attrs.GEN_AI_INPUT_TOKENS] == 0
        assert attrs.GEN_AI_OUTPUT_TOKENS not in span.attributes
        assert attrs.GEN_AI_TOTAL_TOKENS not in span.attributes
        assert span.attributes[attrs.LLM_STREAMED] is False

    def test_extra_attributes(self, client, finished):
        handle = client.spans.start_span("unit.op")
        client.spans.end_span(handle, SpanOutcome(attributes={"x": 1, "skipped": None}))
        span = finished("unit.op")[0]
        assert span.attributes["x"] == 1
        assert "skipped" not in span.attributes

    def test_overlapping_spans_ended_in_reverse_order(self, client, finished):
        first = client.spans.start_llm_span("llm.a", "openai", "gpt-4o")
        second = client.spans.start_llm_span("llm.b", "anthropic", "claude-3-haiku")

        assert client.spans.end_span(second, SpanOutcome(error=ConnectionError("reset"), input_tokens=9))
        assert client.spans.end_span(first, SpanOutcome(input_tokens=2, output_tokens=4, finish_reason="stop"))

        a = finished("llm.a")[0]
        b = finished("llm.b")[0]
        assert first.status is SpanStatus.OK
        assert second.status is SpanStatus.ERROR
        assert a.status.status_code == StatusCode.OK
        assert b.status.status_code == StatusCode.ERROR
        assert a.attributes[attrs.GEN_AI_SYSTEM] == "openai"
        assert a.attributes[attrs.GEN_AI_INPUT_TOKENS] == 2
        assert a.attributes[attrs.GEN_AI_FINISH_REASON] == "stop"
        assert attrs.ERROR_TYPE not in a.attributes
        assert b.attributes[attrs.GEN_AI_SYSTEM] == "anthropic"
        assert b.attributes[attrs.GEN_AI_INPUT_TOKENS] == 9
        assert b.attributes[attrs.ERROR_TYPE] == "ConnectionError"
        assert attrs.GEN_AI_FINISH_REASON not in b.attributes
        assert a.parent is None and b.parent is None


# -- Tests: content policy ---------------------------------------------------------------


class TestContentPolicy:
    def test_content_excluded_by_default(self, client, finished):
        handle = client.spans.start_llm_span("llm", "openai", "gpt-4o")
        client.spans.end_span(handle, SpanOutcome(prompt=[{"role": "user", "content": "hi"}], response="hello"))

        span = finished("llm")[0]
        assert attrs.LLM_PROMPT not in span.attributes
        assert attrs.LLM_RESPONSE not in span.attributes

    def test_content_included_when_enabled(self, content_client, finished):
        handle = content_client.spans.start_llm_span("llm", "openai", "gpt-4o")
        content_client.spans.end_span(
            handle, SpanOutcome(prompt=[{"role": "user", "content": "hi"}], response="hello")
        )

        span = finished("llm")[0]
        assert span.attributes[attrs.LLM_PROMPT] == '[{"role": "user", "content": "hi"}]'
        assert span.attributes[attrs.LLM_RESPONSE] == "hello"

    def test_binary_marker_by_default(self, content_client, finished):
        handle = content_client.spans.start_llm_span("llm", "openai", "gpt-4o")
        content_client.spans.end_span(handle, SpanOutcome(prompt={"image": b"\x00\x01\x02"}))
        assert finished("llm")[0].attributes[attrs.LLM_PROMPT] == '{"image": "[binary: 3 bytes]"}'

    def test_binary_base64_when_enabled(self, exporter, finished):
        client = AgentBasis.init(
            api_key="k", agent_id="a", include_content=True, include_binary_content=True, exporter=exporter
        )
        handle = client.spans.start_llm_span("llm", "openai", "gpt-4o")
        client.spans.end_span(handle, SpanOutcome(prompt=b"abc"))
        assert '"data": "YWJj"' in finished("llm")[0].attributes[attrs.LLM_PROMPT]

    def test_serialization_failure_still_ends_span(self, content_client, finished):
        with patch("agentbasis.core.spans.serialize_payload", side_effect=ValueError("boom")):
            handle = content_client.spans.start_llm_span("llm", "openai", "gpt-4o")
            assert content_client.spans.end_span(handle, SpanOutcome(prompt="x", input_tokens=1)) is True

        span = finished("llm")[0]
        assert attrs.LLM_PROMPT not in span.attributes
        assert span.attributes[attrs.GEN_AI_INPUT_TOKENS] == 1


class TestSerialization:
    def test_string_passthrough(self):
        assert serialize_payload("plain text") == "plain text"

    def test_pydantic_model(self):
        class Message(BaseModel):
            role: str
            content: str | None = None

        assert serialize_payload(Message(role="user")) == '{"role": "user"}'

    def test_dataclass(self):
        @dataclass
        class Usage:
            prompt_tokens: int

        assert to_jsonable(Usage(3), include_binary=False) == {"prompt_tokens": 3}

    def test_unknown_objects_are_stringified(self):
        class Opaque:
            def __str__(self):
                return "opaque"

        assert to_jsonable([Opaque()], include_binary=False) == ["opaque"]


# -- Tests: errors ---------------------------------------------------------------------


class TestErrorStatus:
    def test_error_outcome(self, client, finished):
        handle = client.spans.start_span("unit.op")
        client.spans.end_span(handle, SpanOutcome(error=ValueError("bad input")))

        span = finished("unit.op")[0]
        assert handle.status is SpanStatus.ERROR
        assert span.status.status_code == StatusCode.ERROR
        assert span.status.description == "bad input"
        assert span.attributes[attrs.ERROR_TYPE] == "ValueError"
        assert span.events[0].name == "exception"

    def test_explicit_error_status(self, client, finished):
        handle = client.spans.start_span("unit.op")
        client.spans.end_span(handle, SpanOutcome(status=SpanStatus.ERROR))
        assert finished("unit.op")[0].status.status_code == StatusCode.ERROR


# -- Tests: module-level helpers ---------------------------------------------------------


class TestModuleHelpers:
    def test_start_span_before_init_returns_noop(self):
        mock_logger = MagicMock()
        with patch("agentbasis.core.client.logger", mock_logger):
            handle = start_span("early")

        assert isinstance(handle, SpanHandle)
        assert handle.controller is None
        assert not handle.is_recording
        assert mock_logger.warning.call_args[0][0] == "client.not_initialized"

        assert end_span(handle) is True
        assert end_span(handle) is False

    def test_start_llm_span_before_init_returns_noop(self):
        handle = start_llm_span("early", "openai", "gpt-4o")
        assert not handle.is_recording

    def test_helpers_after_init(self, client, finished):
        handle = start_llm_span("llm", "anthropic", "claude")
        assert handle.controller is client.spans
        assert end_span(handle, SpanOutcome(output_tokens=2)) is True
        assert finished("llm")[0].attributes[attrs.GEN_AI_OUTPUT_TOKENS] == 2
