"""
Span lifecycle controller - creates and finalizes spans.

Every logical operation gets exactly one SpanHandle. Finalizing goes through
SpanController.end_span(), which:
- claims the handle's end guard (atomic check-and-set; later calls are no-ops)
- sets terminal attributes (token counts only when provided, stream flag,
  finish reason, extra attributes)
- applies the content policy: prompt/response are serialized and attached
  only if config.include_content, binary payloads only if
  config.include_binary_content as well
- sets the status (ERROR + recorded exception when an error is given)
- ends the OpenTelemetry span, which hands it to the exporter pipeline

A failure inside this module is logged and never reaches the instrumented
call site.
"""

import base64
import dataclasses
import json
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.trace import Span, SpanKind, Status, StatusCode, Tracer
from pydantic import BaseModel

from ..config.schema import AgentBasisConfig
from ..logging import get_logger
from . import attributes as attrs
from .ambient import current_frame

logger = get_logger(__name__)


class SpanStatus(str, Enum):
    UNSET = "unset"
    OK = "ok"
    ERROR = "error"


@dataclass
class SpanOutcome:
    """Terminal data for end_span(). None always means "not provided"."""

    status: SpanStatus | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    prompt: Any = None
    response: Any = None
    streamed: bool | None = None
    finish_reason: str | None = None


class SpanHandle:
    """One logical timed operation.

    Attributes:
        name: Span name.
        span: Underlying OpenTelemetry span (non-recording for no-op handles).
        attributes: Attributes set through the handle.
        status: unset until finalized, then ok or error.
        start_time: Start timestamp in ns since the epoch.
        controller: Controller that created the handle (None for no-op handles).
    """

    def __init__(
        self,
        name: str,
        span: Span,
        attributes: Mapping[str, Any] | None = None,
        controller: "SpanController | None" = None,
    ) -> None:
        self.name = name
        self.span = span
        self.controller = controller
        self.attributes: dict[str, Any] = dict(attributes or {})
        self.status = SpanStatus.UNSET
        self.start_time = time.time_ns()
        self._ended = False
        self._guard = threading.Lock()

    @classmethod
    def noop(cls, name: str) -> "SpanHandle":
        """Handle that records nothing (used before init)."""
        return cls(name, trace.INVALID_SPAN)

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def is_recording(self) -> bool:
        return self.span.is_recording()

    def claim_end(self) -> bool:
        """Set the end guard. True only for the first caller."""
        with self._guard:
            if self._ended:
                return False
            self._ended = True
            return True

    def set_attribute(self, key: str, value: Any) -> None:
        """Set an attribute while the span is open. Ignored once ended."""
        if self._ended or value is None:
            return
        self._set(key, value)

    def _set(self, key: str, value: Any) -> None:
        self.attributes[key] = value
        self.span.set_attribute(key, value)

    def context(self) -> otel_context.Context:
        """OpenTelemetry context with this span active (for parenting)."""
        return trace.set_span_in_context(self.span)

    def __repr__(self) -> str:
        return f"<SpanHandle(name='{self.name}', status='{self.status.value}', ended={self._ended})>"


def to_jsonable(value: Any, include_binary: bool) -> Any:
    """Normalize a payload into JSON-compatible data.

    Pydantic models (provider SDK responses) are dumped, dataclasses and
    mappings are walked, binary data becomes base64 or a size marker.
    Anything else unknown is stringified.
    """
    if value is None or isinstance(value, (str, bool, int, float)):
        return value

    if isinstance(value, (bytes, bytearray, memoryview)):
        data = bytes(value)
        if include_binary:
            return {"type": "binary", "encoding": "base64", "data": base64.b64encode(data).decode("ascii")}
        return f"[binary: {len(data)} bytes]"

    if isinstance(value, BaseModel):
        return to_jsonable(value.model_dump(mode="python", exclude_none=True), include_binary)

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return to_jsonable(dataclasses.asdict(value), include_binary)

    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v, include_binary) for k, v in value.items()}

    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v, include_binary) for v in value]

    if hasattr(value, "to_dict") and callable(value.to_dict):
        return to_jsonable(value.to_dict(), include_binary)

    return str(value)


def serialize_payload(value: Any, include_binary: bool = False) -> str:
    """Serialize a prompt or response for a span attribute.

    Strings are attached as-is; everything else as JSON.
    """
    if isinstance(value, str):
        return value
    return json.dumps(to_jsonable(value, include_binary), default=str, ensure_ascii=False)


class SpanController:
    """Creates and finalizes spans for one client.

    Attributes:
        tracer: OpenTelemetry tracer of the client pipeline.
        config: Immutable configuration (content policy, agent id).
    """

    def __init__(self, tracer: Tracer, config: AgentBasisConfig) -> None:
        self.tracer = tracer
        self.config = config
        self.log = logger.bind(component="spans")

    def start_span(
        self,
        name: str,
        attributes: Mapping[str, Any] | None = None,
        *,
        parent: otel_context.Context | None = None,
        kind: SpanKind = SpanKind.INTERNAL,
    ) -> SpanHandle:
        """Start a span parented to the active span (or explicit parent).

        Falls back to a root span when nothing is active. Never raises: an
        internal failure returns a no-op handle.
        """
        initial = {k: v for k, v in (attributes or {}).items() if v is not None}
        try:
            span = self.tracer.start_span(
                name,
                context=parent,
                kind=kind,
                attributes=initial,
            )
        except Exception as e:
            self.log.warning("spans.start_failed", span=name, error=str(e))
            return SpanHandle.noop(name)

        self.log.debug("spans.started", span=name)
        return SpanHandle(name, span, initial, controller=self)

    def start_llm_span(
        self,
        name: str,
        provider: str,
        model: str,
        *,
        parent: otel_context.Context | None = None,
    ) -> SpanHandle:
        """Start an LLM call span with provider/model/agent attributes."""
        attributes: dict[str, Any] = {
            attrs.SPAN_TYPE: "llm",
            attrs.GEN_AI_SYSTEM: provider,
            attrs.GEN_AI_REQUEST_MODEL: model or "unknown",
            attrs.AGENT_ID: self.config.agent_id,
        }
        attributes.update(attrs.well_known_attributes(current_frame()))
        return self.start_span(name, attributes, parent=parent, kind=SpanKind.CLIENT)

    def end_span(self, handle: SpanHandle, outcome: SpanOutcome | None = None) -> bool:
        """Finalize a span exactly once.

        Args:
            handle: Handle returned by start_span/start_llm_span
            outcome: Terminal data; None ends the span with status OK

        Returns:
            True if this call finalized the span, False if it was already ended
        """
        if not handle.claim_end():
            return False

        outcome = outcome or SpanOutcome()
        try:
            for key, value in self._terminal_attributes(outcome).items():
                handle._set(key, value)
            for key, value in self._content_attributes(outcome, handle.name).items():
                handle._set(key, value)
            self._apply_status(handle, outcome)
        except Exception as e:
            self.log.warning("spans.finalize_failed", span=handle.name, error=str(e))
        finally:
            handle.span.end()

        self.log.debug("spans.ended", span=handle.name, status=handle.status.value)
        return True

    def _terminal_attributes(self, outcome: SpanOutcome) -> dict[str, Any]:
        terminal: dict[str, Any] = {}
        if outcome.input_tokens is not None:
            terminal[attrs.GEN_AI_INPUT_TOKENS] = outcome.input_tokens
        if outcome.output_tokens is not None:
            terminal[attrs.GEN_AI_OUTPUT_TOKENS] = outcome.output_tokens
        if outcome.total_tokens is not None:
            terminal[attrs.GEN_AI_TOTAL_TOKENS] = outcome.total_tokens
        if outcome.streamed is not None:
            terminal[attrs.LLM_STREAMED] = outcome.streamed
        if outcome.finish_reason is not None:
            terminal[attrs.GEN_AI_FINISH_REASON] = str(outcome.finish_reason)
        for key, value in outcome.attributes.items():
            if value is not None:
                terminal[key] = value
        return terminal

    def _content_attributes(self, outcome: SpanOutcome, span_name: str) -> dict[str, Any]:
        if not self.config.include_content:
            return {}

        include_binary = self.config.include_binary_content
        content: dict[str, Any] = {}
        for key, payload in ((attrs.LLM_PROMPT, outcome.prompt), (attrs.LLM_RESPONSE, outcome.response)):
            if payload is None:
                continue
            try:
                content[key] = serialize_payload(payload, include_binary)
            except Exception as e:
                self.log.warning(
                    "spans.serialize_failed",
                    span=span_name,
                    attribute=key,
                    error=str(e),
                )
        return content

    def _apply_status(self, handle: SpanHandle, outcome: SpanOutcome) -> None:
        if outcome.error is not None:
            error = outcome.error
            handle._set(attrs.ERROR_TYPE, type(error).__name__)
            handle.span.record_exception(error)
            handle.span.set_status(Status(StatusCode.ERROR, str(error)))
            handle.status = SpanStatus.ERROR
        elif outcome.status is SpanStatus.ERROR:
            handle.span.set_status(Status(StatusCode.ERROR))
            handle.status = SpanStatus.ERROR
        else:
            handle.span.set_status(Status(StatusCode.OK))
            handle.status = SpanStatus.OK
