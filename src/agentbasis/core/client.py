"""
AgentBasis client - process-wide singleton owning configuration and tracer.

Lifecycle:
- init(): first caller wins. Later calls return the same instance and log a
  warning. Exit hooks (atexit + SIGTERM) are registered once per cycle.
- flush(): drains the pipeline; returns False instead of raising.
- shutdown(): concurrent callers share one memoized teardown task and all
  resume after it completes. Teardown order: remove exit hooks, drain and
  shut down the pipeline, clear the singleton, reset the debug override.
  The memo is cleared afterwards so init/shutdown can cycle.
- reset(): synchronous teardown for test isolation.

The module-level start_span / start_llm_span / end_span are what
instrumentation points call. Before init they log a warning and hand back a
no-op handle, so the wrapped user operation runs unaffected.
"""

import asyncio
import atexit
import signal
import sys
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any, ClassVar

from opentelemetry.sdk.trace.export import SpanExporter

from ..config.loader import load_config
from ..config.schema import AgentBasisConfig
from ..errors import NotInitializedError
from ..logging import get_logger, set_runtime_debug_mode
from ..telemetry.pipeline import TracerPipeline
from .spans import SpanController, SpanHandle, SpanOutcome

logger = get_logger(__name__)


class AgentBasis:
    """AgentBasis SDK client.

    Use the class methods; the constructor is internal.

    Attributes:
        config: Frozen configuration snapshot.
        pipeline: Tracer provider, batch processor and exporter.
        spans: Span controller bound to this client's tracer.

    Usage:
        AgentBasis.init(api_key="...", agent_id="...")
        ...
        await AgentBasis.flush()
        await AgentBasis.shutdown()
    """

    _instance: ClassVar["AgentBasis | None"] = None
    _shutdown_task: ClassVar["asyncio.Future[None] | None"] = None
    _hooks_registered: ClassVar[bool] = False
    _previous_sigterm: ClassVar[Any] = None

    def __init__(
        self,
        config: AgentBasisConfig,
        exporter: SpanExporter | None = None,
    ) -> None:
        self.config = config
        self.pipeline = TracerPipeline(config, exporter)
        self.spans = SpanController(self.pipeline.tracer, config)
        self.log = logger.bind(component="client", agent_id=config.agent_id)

        type(self)._register_exit_hooks()
        self.log.debug("client.initialized", exporter=config.exporter)

    # -- Lifecycle ------------------------------------------------------------

    @classmethod
    def init(
        cls,
        config: AgentBasisConfig | Mapping[str, Any] | None = None,
        *,
        exporter: SpanExporter | None = None,
        config_path: Path | str | None = None,
        **overrides: Any,
    ) -> "AgentBasis":
        """Initialize the SDK.

        Args:
            config: Config object or mapping of explicit values
            exporter: Custom SpanExporter (default: from config.exporter)
            config_path: Optional YAML file with configuration values
            **overrides: Explicit values (api_key=..., agent_id=..., ...)

        Returns:
            The singleton client (the existing one if already initialized)

        Raises:
            ConfigurationError: Missing or invalid configuration
        """
        if cls._instance is not None:
            logger.warning(
                "client.already_initialized",
                message="AgentBasis already initialized. Returning existing instance.",
            )
            return cls._instance

        if isinstance(config, AgentBasisConfig):
            explicit = config.model_dump()
        else:
            explicit = dict(config or {})
        explicit.update(overrides)

        resolved = load_config(explicit, config_path)
        set_runtime_debug_mode(resolved.debug)
        cls._instance = cls(resolved, exporter)
        return cls._instance

    @classmethod
    def get_instance(cls) -> "AgentBasis":
        """The singleton client.

        Raises:
            NotInitializedError: If init() has not been called
        """
        if cls._instance is None:
            raise NotInitializedError("get the client instance")
        return cls._instance

    @classmethod
    def is_initialized(cls) -> bool:
        return cls._instance is not None

    @classmethod
    def get_config(cls) -> AgentBasisConfig | None:
        return cls._instance.config if cls._instance else None

    @classmethod
    async def flush(cls, timeout_ms: int = 30000) -> bool:
        """Flush pending spans.

        Args:
            timeout_ms: Maximum time to wait for the drain

        Returns:
            True if every queued span was exported successfully
        """
        instance = cls._instance
        if instance is None:
            logger.warning("client.flush_not_initialized", message="Nothing to flush.")
            return False

        logger.debug("client.flushing", timeout_ms=timeout_ms)
        try:
            return await asyncio.to_thread(instance.pipeline.force_flush, timeout_ms)
        except Exception as e:
            logger.warning("client.flush_failed", error=str(e), error_type=type(e).__name__)
            return False

    @classmethod
    async def shutdown(cls) -> None:
        """Shut the SDK down gracefully.

        Safe to call from many tasks at once: one teardown runs and every
        caller returns after it has finished.
        """
        if cls._shutdown_task is None:
            instance = cls._instance
            if instance is None:
                return
            cls._shutdown_task = asyncio.ensure_future(cls._teardown(instance))

        task = cls._shutdown_task
        try:
            await asyncio.shield(task)
        finally:
            if cls._shutdown_task is task and task.done():
                cls._shutdown_task = None

    @classmethod
    async def _teardown(cls, instance: "AgentBasis") -> None:
        logger.debug("client.shutting_down")
        cls._remove_exit_hooks()
        try:
            await asyncio.to_thread(instance.pipeline.shutdown)
        except Exception as e:
            logger.warning("client.shutdown_error", error=str(e), error_type=type(e).__name__)
        finally:
            if cls._instance is instance:
                cls._instance = None
            set_runtime_debug_mode(None)
        logger.debug("client.shutdown_complete")

    @classmethod
    def _shutdown_blocking(cls) -> None:
        """Same teardown as shutdown(), without an event loop."""
        instance = cls._instance
        if instance is None:
            return
        cls._remove_exit_hooks()
        try:
            instance.pipeline.shutdown()
        except Exception as e:
            logger.warning("client.shutdown_error", error=str(e), error_type=type(e).__name__)
        finally:
            if cls._instance is instance:
                cls._instance = None
            set_runtime_debug_mode(None)

    @classmethod
    def reset(cls) -> None:
        """Tear down and forget all class state (for tests)."""
        cls._shutdown_blocking()
        cls._remove_exit_hooks()
        cls._shutdown_task = None
        set_runtime_debug_mode(None)

    # -- Exit hooks -------------------------------------------------------------

    @classmethod
    def _register_exit_hooks(cls) -> None:
        if cls._hooks_registered:
            return

        atexit.register(cls._handle_exit)
        if threading.current_thread() is threading.main_thread():
            cls._previous_sigterm = signal.getsignal(signal.SIGTERM)
            signal.signal(signal.SIGTERM, cls._handle_sigterm)
        cls._hooks_registered = True
        logger.debug("client.exit_hooks_registered")

    @classmethod
    def _remove_exit_hooks(cls) -> None:
        if not cls._hooks_registered:
            return

        atexit.unregister(cls._handle_exit)
        if (
            threading.current_thread() is threading.main_thread()
            and signal.getsignal(signal.SIGTERM) == cls._handle_sigterm
        ):
            previous = cls._previous_sigterm
            signal.signal(signal.SIGTERM, previous if previous is not None else signal.SIG_DFL)
        cls._previous_sigterm = None
        cls._hooks_registered = False

    @classmethod
    def _handle_exit(cls) -> None:
        cls._shutdown_blocking()

    @classmethod
    def _handle_sigterm(cls, signum: int, frame: Any) -> None:
        previous = cls._previous_sigterm
        logger.debug("client.sigterm_received")
        cls._shutdown_blocking()

        if callable(previous):
            previous(signum, frame)
        elif previous != signal.SIG_IGN:
            sys.exit(128 + signum)

    def __repr__(self) -> str:
        return f"<AgentBasis(agent_id='{self.config.agent_id}', exporter='{self.config.exporter}')>"


# -- Convenience functions -------------------------------------------------------

init = AgentBasis.init
flush = AgentBasis.flush
shutdown = AgentBasis.shutdown
is_initialized = AgentBasis.is_initialized
get_config = AgentBasis.get_config


def get_span_controller(action: str = "trace") -> SpanController | None:
    """Controller of the current client, or None (with a warning) before init."""
    instance = AgentBasis._instance
    if instance is None:
        logger.warning(
            "client.not_initialized",
            action=action,
            message="AgentBasis not initialized. Operation will not be traced.",
        )
        return None
    return instance.spans


def start_span(name: str, attributes: Mapping[str, Any] | None = None) -> SpanHandle:
    controller = get_span_controller(f"start span '{name}'")
    if controller is None:
        return SpanHandle.noop(name)
    return controller.start_span(name, attributes)


def start_llm_span(name: str, provider: str, model: str) -> SpanHandle:
    controller = get_span_controller(f"start span '{name}'")
    if controller is None:
        return SpanHandle.noop(name)
    return controller.start_llm_span(name, provider, model)


def end_span(handle: SpanHandle, outcome: SpanOutcome | None = None) -> bool:
    """Finalize a handle through the controller that created it.

    Returns:
        True if this call finalized the span
    """
    if handle.controller is None:
        return handle.claim_end()
    return handle.controller.end_span(handle, outcome)
