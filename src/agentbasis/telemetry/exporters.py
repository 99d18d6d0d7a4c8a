"""
Span exporters - ship finalized spans out of the process.

All exporters implement the OpenTelemetry SpanExporter contract
(export / force_flush / shutdown) and are driven by a BatchSpanProcessor:

- AgentBasisHTTPExporter: JSON batches POSTed to {base_url}/v1/traces,
  with retries only for transient failures (transport errors, 429, 5xx).
- JsonFileExporter: one JSON line per span, appended to a file.
- console: the OpenTelemetry ConsoleSpanExporter (debugging).

Export failures never raise: they are logged and reported as FAILURE so that
flush() can return False.
"""

import json
from pathlib import Path
from typing import Any, Sequence

import httpx
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import (
    ConsoleSpanExporter,
    SpanExporter,
    SpanExportResult,
)
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config.schema import AgentBasisConfig
from ..logging import get_logger

logger = get_logger(__name__)

TRACES_PATH = "/v1/traces"
DEFAULT_TRACE_FILE = ".agentbasis/traces.jsonl"


class RetryableStatusError(Exception):
    """Backend answered with a status worth retrying (429 or 5xx)."""

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"backend returned HTTP {status_code}")


_RETRYABLE_ERRORS = (httpx.TransportError, RetryableStatusError)


def span_to_dict(span: ReadableSpan) -> dict[str, Any]:
    """Convert a finalized span into a JSON-serializable dict."""
    parent = span.parent
    duration_ms = None
    if span.start_time is not None and span.end_time is not None:
        duration_ms = round((span.end_time - span.start_time) / 1_000_000, 3)

    return {
        "name": span.name,
        "trace_id": format(span.context.trace_id, "032x"),
        "span_id": format(span.context.span_id, "016x"),
        "parent_span_id": format(parent.span_id, "016x") if parent else None,
        "start_time": span.start_time,
        "end_time": span.end_time,
        "duration_ms": duration_ms,
        "attributes": dict(span.attributes) if span.attributes else {},
        "status": span.status.status_code.name.lower(),
        "status_message": span.status.description,
        "events": [
            {
                "name": event.name,
                "timestamp": event.timestamp,
                "attributes": dict(event.attributes) if event.attributes else {},
            }
            for event in span.events
        ],
    }


class AgentBasisHTTPExporter(SpanExporter):
    """Sends span batches to the AgentBasis API.

    Attributes:
        endpoint: Full URL of the traces endpoint.
        max_retries: Retries after the first attempt.
    """

    def __init__(
        self,
        config: AgentBasisConfig,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the exporter.

        Args:
            config: Resolved client configuration
            client: Optional pre-built httpx client (tests inject a MockTransport)
        """
        self.endpoint = config.base_url + TRACES_PATH
        self.agent_id = config.agent_id
        self.max_retries = config.max_retries
        self._client = client or httpx.Client(
            timeout=config.timeout_ms / 1000,
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "X-Agent-Id": config.agent_id,
                "Content-Type": "application/json",
            },
        )
        self.retry_wait = wait_exponential(multiplier=0.5, min=0.5, max=10)
        self._closed = False
        self.log = logger.bind(component="exporter", endpoint=self.endpoint)

    def _on_retry_sleep(self, retry_state: RetryCallState) -> None:
        next_wait = retry_state.next_action.sleep if retry_state.next_action else 0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self.log.warning(
            "exporter.retry",
            attempt=retry_state.attempt_number,
            wait_seconds=round(next_wait, 1),
            error=str(exc) if exc else None,
            error_type=type(exc).__name__ if exc else None,
        )

    def _post(self, payload: dict[str, Any]) -> None:
        response = self._client.post(
            self.endpoint,
            content=json.dumps(payload, default=str),
        )
        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableStatusError(response.status_code)
        response.raise_for_status()

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        if self._closed:
            return SpanExportResult.FAILURE
        if not spans:
            return SpanExportResult.SUCCESS

        payload = {
            "agent_id": self.agent_id,
            "spans": [span_to_dict(span) for span in spans],
        }

        try:
            for attempt in Retrying(
                retry=retry_if_exception_type(_RETRYABLE_ERRORS),
                stop=stop_after_attempt(self.max_retries + 1),
                wait=self.retry_wait,
                before_sleep=self._on_retry_sleep,
                reraise=True,
            ):
                with attempt:
                    self._post(payload)
        except Exception as e:
            self.log.warning(
                "exporter.export_failed",
                spans=len(spans),
                error=str(e),
                error_type=type(e).__name__,
            )
            return SpanExportResult.FAILURE

        self.log.debug("exporter.exported", spans=len(spans))
        return SpanExportResult.SUCCESS

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        # Nothing is buffered here; the processor owns the queue.
        return True

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._client.close()


class JsonFileExporter(SpanExporter):
    """Appends spans as JSON lines to a file."""

    def __init__(self, file_path: str | Path) -> None:
        self.file_path = Path(file_path)
        self.file_path.parent.mkdir(parents=True, exist_ok=True)

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        try:
            with open(self.file_path, "a", encoding="utf-8") as f:
                for span in spans:
                    f.write(json.dumps(span_to_dict(span), default=str) + "\n")
        except OSError as e:
            logger.warning("exporter.json_file_failed", path=str(self.file_path), error=str(e))
            return SpanExportResult.FAILURE
        return SpanExportResult.SUCCESS

    def shutdown(self) -> None:
        pass


def create_exporter(config: AgentBasisConfig) -> SpanExporter:
    """Factory for the exporter named by config.exporter."""
    match config.exporter:
        case "http":
            return AgentBasisHTTPExporter(config)
        case "console":
            return ConsoleSpanExporter()
        case "json-file":
            return JsonFileExporter(config.trace_file or DEFAULT_TRACE_FILE)
        case _:
            logger.warning("exporter.unknown", exporter=config.exporter)
            return ConsoleSpanExporter()
