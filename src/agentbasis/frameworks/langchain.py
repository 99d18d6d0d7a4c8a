"""
LangChain callback handler.

Maps LangChain run callbacks to spans:
- on_llm_start / on_chat_model_start -> LLM span "langchain.llm" / "langchain.chat"
- on_chain_start -> "langchain.chain.<name>"
- on_tool_start -> "langchain.tool.<name>"
- on_retriever_start -> "langchain.retriever.<name>" (query and document count)
- on_agent_action -> "langchain.agent.action.<tool>", ended by on_agent_finish

Spans are keyed by run_id and parented to the span of parent_run_id when
that run is tracked here; otherwise they attach to whatever span is active.

Usage:
    handler = AgentBasisCallbackHandler()
    chain.invoke(inputs, config={"callbacks": [handler]})
"""

import threading
from collections.abc import Mapping, Sequence
from typing import Any
from uuid import UUID

from langchain_core.callbacks import BaseCallbackHandler

from ..core.client import AgentBasis
from ..core.spans import SpanController, SpanHandle, SpanOutcome, serialize_payload
from ..instrumentation import field
from ..logging import get_logger

logger = get_logger(__name__)

PROVIDER = "langchain"

RUN_ID = "langchain.run_id"
PARENT_RUN_ID = "langchain.parent_run_id"
TAGS = "langchain.tags"
CHAIN_NAME = "langchain.chain_name"
TOOL_NAME = "langchain.tool_name"
TOOL = "langchain.tool"
TOOL_INPUT = "langchain.tool_input"
TOOL_OUTPUT = "langchain.tool_output"
INPUTS = "langchain.inputs"
OUTPUTS = "langchain.outputs"
RETRIEVER_NAME = "langchain.retriever_name"
QUERY = "langchain.query"
DOCUMENT_COUNT = "langchain.document_count"
DOCUMENTS = "langchain.documents"


def _component_name(serialized: Mapping[str, Any] | None, kwargs: Mapping[str, Any]) -> str:
    serialized = serialized or {}
    if serialized.get("name"):
        return str(serialized["name"])
    if serialized.get("id"):
        return "/".join(str(part) for part in serialized["id"])
    return str(kwargs.get("name") or "unknown")


def _model_name(serialized: Mapping[str, Any] | None, kwargs: Mapping[str, Any], metadata: Mapping | None) -> str:
    params = kwargs.get("invocation_params") or {}
    for candidate in (
        params.get("model"),
        params.get("model_name"),
        (metadata or {}).get("ls_model_name"),
    ):
        if candidate:
            return str(candidate)
    return _component_name(serialized, kwargs)


def _token_usage(response: Any) -> dict[str, int | None]:
    """Token counts from llm_output (OpenAI style) or message usage_metadata."""
    usage = field(response, "llm_output", "token_usage") or field(response, "llm_output", "usage")
    if usage:
        return {
            "input_tokens": field(usage, "prompt_tokens"),
            "output_tokens": field(usage, "completion_tokens"),
            "total_tokens": field(usage, "total_tokens"),
        }

    totals: dict[str, int | None] = {"input_tokens": None, "output_tokens": None, "total_tokens": None}
    for generations in field(response, "generations", default=[]):
        for generation in generations:
            metadata = field(generation, "message", "usage_metadata")
            if not metadata:
                continue
            for key in totals:
                value = field(metadata, key)
                if value is not None:
                    totals[key] = (totals[key] or 0) + value
    return totals


def _generation_texts(response: Any) -> list[list[str]]:
    return [
        [field(generation, "text", default="") for generation in generations]
        for generations in field(response, "generations", default=[])
    ]


class AgentBasisCallbackHandler(BaseCallbackHandler):
    """LangChain callback handler recording runs as AgentBasis spans."""

    name = "AgentBasisCallbackHandler"

    def __init__(self) -> None:
        super().__init__()
        self._runs: dict[str, SpanHandle] = {}
        self._prompts: dict[str, Any] = {}
        self._lock = threading.Lock()
        if not AgentBasis.is_initialized():
            logger.warning(
                "langchain.not_initialized",
                message="AgentBasis not initialized. Callbacks will be no-ops. Call AgentBasis.init() first.",
            )

    # -- Bookkeeping ---------------------------------------------------------------

    @staticmethod
    def _controller() -> SpanController | None:
        instance = AgentBasis._instance
        return instance.spans if instance is not None else None

    def _parent(self, parent_run_id: UUID | None):
        if parent_run_id is None:
            return None
        with self._lock:
            handle = self._runs.get(str(parent_run_id))
        return handle.context() if handle is not None else None

    def _track(
        self,
        key: str,
        handle: SpanHandle,
        run_id: UUID,
        parent_run_id: UUID | None,
        tags: Sequence[str] | None,
        prompt: Any = None,
    ) -> None:
        handle.set_attribute(RUN_ID, str(run_id))
        if parent_run_id is not None:
            handle.set_attribute(PARENT_RUN_ID, str(parent_run_id))
        if tags:
            handle.set_attribute(TAGS, ",".join(tags))
        with self._lock:
            self._runs[key] = handle
            if prompt is not None:
                self._prompts[key] = prompt

    def _pop(self, key: str) -> SpanHandle | None:
        with self._lock:
            return self._runs.pop(key, None)

    def _pop_llm(self, key: str) -> tuple[SpanHandle | None, Any]:
        with self._lock:
            return self._runs.pop(key, None), self._prompts.pop(key, None)

    def _content_enabled(self, controller: SpanController) -> bool:
        return controller.config.include_content

    def _start(self, name: str, run_id: UUID, parent_run_id: UUID | None, attributes: dict[str, Any]):
        controller = self._controller()
        if controller is None:
            return None, None
        handle = controller.start_span(name, attributes, parent=self._parent(parent_run_id))
        return controller, handle

    def _end(self, key: str, outcome: SpanOutcome) -> None:
        handle = self._pop(key)
        if handle is None or handle.controller is None:
            return
        handle.controller.end_span(handle, outcome)

    # -- LLMs ----------------------------------------------------------------------

    def _start_llm(
        self,
        span_name: str,
        serialized: dict[str, Any] | None,
        prompt: Any,
        run_id: UUID,
        parent_run_id: UUID | None,
        tags: list[str] | None,
        metadata: dict[str, Any] | None,
        kwargs: dict[str, Any],
    ) -> None:
        controller = self._controller()
        if controller is None:
            return
        model = _model_name(serialized, kwargs, metadata)
        handle = controller.start_llm_span(span_name, PROVIDER, model, parent=self._parent(parent_run_id))
        self._track(str(run_id), handle, run_id, parent_run_id, tags, prompt=prompt)
        logger.debug("langchain.llm_started", model=model, run_id=str(run_id))

    def on_llm_start(
        self,
        serialized: dict[str, Any],
        prompts: list[str],
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        self._start_llm("langchain.llm", serialized, prompts, run_id, parent_run_id, tags, metadata, kwargs)

    def on_chat_model_start(
        self,
        serialized: dict[str, Any],
        messages: list[list[Any]],
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        self._start_llm("langchain.chat", serialized, messages, run_id, parent_run_id, tags, metadata, kwargs)

    def on_llm_end(self, response: Any, *, run_id: UUID, **kwargs: Any) -> None:
        handle, prompt = self._pop_llm(str(run_id))
        if handle is None or handle.controller is None:
            return
        outcome = SpanOutcome(
            prompt=prompt,
            response=_generation_texts(response),
            streamed=False,
            **_token_usage(response),
        )
        handle.controller.end_span(handle, outcome)

    def on_llm_error(self, error: BaseException, *, run_id: UUID, **kwargs: Any) -> None:
        handle, prompt = self._pop_llm(str(run_id))
        if handle is None or handle.controller is None:
            return
        outcome = SpanOutcome(error=error, prompt=prompt, streamed=False)
        handle.controller.end_span(handle, outcome)

    # -- Chains --------------------------------------------------------------------

    def on_chain_start(
        self,
        serialized: dict[str, Any] | None,
        inputs: dict[str, Any],
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        chain_name = _component_name(serialized, kwargs)
        controller, handle = self._start(
            f"langchain.chain.{chain_name}", run_id, parent_run_id, {CHAIN_NAME: chain_name}
        )
        if handle is None:
            return
        if self._content_enabled(controller):
            handle.set_attribute(INPUTS, serialize_payload(inputs))
        self._track(str(run_id), handle, run_id, parent_run_id, tags)

    def on_chain_end(self, outputs: dict[str, Any], *, run_id: UUID, **kwargs: Any) -> None:
        controller = self._controller()
        attributes = {}
        if controller is not None and self._content_enabled(controller):
            attributes[OUTPUTS] = serialize_payload(outputs)
        self._end(str(run_id), SpanOutcome(attributes=attributes))

    def on_chain_error(self, error: BaseException, *, run_id: UUID, **kwargs: Any) -> None:
        self._end(str(run_id), SpanOutcome(error=error))

    # -- Tools ---------------------------------------------------------------------

    def on_tool_start(
        self,
        serialized: dict[str, Any] | None,
        input_str: str,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        tool_name = _component_name(serialized, kwargs)
        controller, handle = self._start(
            f"langchain.tool.{tool_name}", run_id, parent_run_id, {TOOL_NAME: tool_name}
        )
        if handle is None:
            return
        if self._content_enabled(controller):
            handle.set_attribute(TOOL_INPUT, input_str)
        self._track(str(run_id), handle, run_id, parent_run_id, tags)

    def on_tool_end(self, output: Any, *, run_id: UUID, **kwargs: Any) -> None:
        controller = self._controller()
        attributes = {}
        if controller is not None and self._content_enabled(controller):
            attributes[TOOL_OUTPUT] = serialize_payload(output)
        self._end(str(run_id), SpanOutcome(attributes=attributes))

    def on_tool_error(self, error: BaseException, *, run_id: UUID, **kwargs: Any) -> None:
        self._end(str(run_id), SpanOutcome(error=error))

    # -- Retrievers ----------------------------------------------------------------

    def on_retriever_start(
        self,
        serialized: dict[str, Any] | None,
        query: str,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        retriever_name = _component_name(serialized, kwargs)
        controller, handle = self._start(
            f"langchain.retriever.{retriever_name}", run_id, parent_run_id, {RETRIEVER_NAME: retriever_name}
        )
        if handle is None:
            return
        if self._content_enabled(controller):
            handle.set_attribute(QUERY, query)
        self._track(str(run_id), handle, run_id, parent_run_id, tags)

    def on_retriever_end(self, documents: Sequence[Any], *, run_id: UUID, **kwargs: Any) -> None:
        controller = self._controller()
        attributes: dict[str, Any] = {DOCUMENT_COUNT: len(documents)}
        if controller is not None and self._content_enabled(controller):
            attributes[DOCUMENTS] = serialize_payload(
                [
                    {"page_content": field(doc, "page_content"), "metadata": field(doc, "metadata", default={})}
                    for doc in documents
                ]
            )
        self._end(str(run_id), SpanOutcome(attributes=attributes))

    def on_retriever_error(self, error: BaseException, *, run_id: UUID, **kwargs: Any) -> None:
        self._end(str(run_id), SpanOutcome(error=error))

    # -- Agents --------------------------------------------------------------------

    def on_agent_action(
        self,
        action: Any,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        **kwargs: Any,
    ) -> None:
        tool = str(field(action, "tool", default="unknown"))
        controller, handle = self._start(f"langchain.agent.action.{tool}", run_id, run_id, {TOOL: tool})
        if handle is None:
            return
        if self._content_enabled(controller):
            handle.set_attribute(TOOL_INPUT, serialize_payload(field(action, "tool_input")))
        self._track(f"{run_id}_action_{tool}", handle, run_id, parent_run_id, None)

    def on_agent_finish(self, finish: Any, *, run_id: UUID, **kwargs: Any) -> None:
        prefix = f"{run_id}_action_"
        with self._lock:
            keys = [key for key in self._runs if key.startswith(prefix)]
        for key in keys:
            self._end(key, SpanOutcome())

    @property
    def open_runs(self) -> int:
        return len(self._runs)
