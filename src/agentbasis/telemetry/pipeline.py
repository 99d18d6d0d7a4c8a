"""
Tracer pipeline - TracerProvider + BatchSpanProcessor + exporter.

The provider is private to the client: it is never installed as the global
OpenTelemetry provider, so the host application's own tracing setup is left
alone. Parent/child relationships still flow through the shared
OpenTelemetry context (contextvars).
"""

import threading
from typing import Sequence

from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from opentelemetry.trace import Tracer

from .._version import __version__
from ..config.schema import AgentBasisConfig
from ..logging import get_logger
from .exporters import create_exporter

logger = get_logger(__name__)

SERVICE_NAME = "agentbasis"
INSTRUMENTATION_NAME = "agentbasis"


class ResultTrackingExporter(SpanExporter):
    """Delegating exporter that counts failed exports.

    The batch processor discards export results, so flush() compares the
    failure counter before and after draining to report export errors.
    Exceptions raised by the wrapped exporter are logged and counted, never
    propagated into the processor thread.
    """

    def __init__(self, exporter: SpanExporter) -> None:
        self.exporter = exporter
        self._failures = 0
        self._lock = threading.Lock()

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    def _record_failure(self) -> None:
        with self._lock:
            self._failures += 1

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        try:
            result = self.exporter.export(spans)
        except Exception as e:
            logger.warning(
                "pipeline.export_error",
                exporter=type(self.exporter).__name__,
                error=str(e),
                error_type=type(e).__name__,
            )
            result = SpanExportResult.FAILURE

        if result is not SpanExportResult.SUCCESS:
            self._record_failure()
        return result

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return self.exporter.force_flush(timeout_millis)

    def shutdown(self) -> None:
        self.exporter.shutdown()


class TracerPipeline:
    """Owns the tracer handle shared by every span of the client.

    Attributes:
        provider: Private TracerProvider.
        processor: BatchSpanProcessor sized from the configuration.
        exporter: The SpanExporter receiving finalized spans.
        tracer: Tracer used by the span controller.
    """

    def __init__(
        self,
        config: AgentBasisConfig,
        exporter: SpanExporter | None = None,
    ) -> None:
        """Build the pipeline.

        Args:
            config: Resolved configuration (batch size, flush interval, exporter)
            exporter: Injected exporter; defaults to create_exporter(config)
        """
        self.exporter = exporter or create_exporter(config)
        self._tracking = ResultTrackingExporter(self.exporter)

        resource = Resource.create({
            "service.name": SERVICE_NAME,
            "service.version": __version__,
            "agentbasis.agent_id": config.agent_id,
        })
        self.provider = TracerProvider(resource=resource)
        self.processor = BatchSpanProcessor(
            self._tracking,
            max_export_batch_size=config.batch_size,
            max_queue_size=max(2048, config.batch_size),
            schedule_delay_millis=config.flush_interval_ms,
        )
        self.provider.add_span_processor(self.processor)
        self.tracer: Tracer = self.provider.get_tracer(INSTRUMENTATION_NAME, __version__)
        self._shut_down = False

        logger.debug(
            "pipeline.initialized",
            exporter=type(self.exporter).__name__,
            batch_size=config.batch_size,
            flush_interval_ms=config.flush_interval_ms,
        )

    def force_flush(self, timeout_ms: int = 30000) -> bool:
        """Drain queued spans through the exporter.

        Returns:
            False if the drain timed out or any export failed meanwhile
        """
        if self._shut_down:
            return False
        failures_before = self._tracking.failures
        drained = self.provider.force_flush(timeout_millis=timeout_ms)
        if not drained:
            logger.warning("pipeline.flush_timeout", timeout_ms=timeout_ms)
            return False
        return self._tracking.failures == failures_before

    def shutdown(self) -> None:
        """Flush remaining spans and shut the exporter down (once)."""
        if self._shut_down:
            return
        self._shut_down = True
        self.provider.shutdown()

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    def __repr__(self) -> str:
        return f"<TracerPipeline(exporter={type(self.exporter).__name__})>"
