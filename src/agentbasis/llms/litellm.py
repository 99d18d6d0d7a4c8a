"""
LiteLLM instrumentation.

Patches the module-level litellm.completion and litellm.acompletion.
Code that imported them by name before instrument() keeps the unpatched
functions; call them as litellm.completion(...).

LiteLLM normalizes every provider to the OpenAI response shape, so the
OpenAI extractors apply. The provider attribute is the model prefix
("anthropic/claude-3" -> "anthropic"), or "litellm" when there is none.
"""

from types import ModuleType
from typing import Any

from ..instrumentation import InstrumentationPoint, Instrumentor, LLMCall, PatchRegistry
from ..instrumentation import run_traced, run_traced_async
from .openai import extract_chat_chunk, summarize_completion

DEFAULT_PROVIDER = "litellm"


def _model(args: tuple, kwargs: dict[str, Any]) -> str:
    model = kwargs.get("model")
    if model is None and args:
        model = args[0]
    return model or "unknown"


def _provider(model: str, kwargs: dict[str, Any]) -> str:
    if kwargs.get("custom_llm_provider"):
        return kwargs["custom_llm_provider"]
    if "/" in model:
        return model.split("/", 1)[0]
    return DEFAULT_PROVIDER


def _make_wrapper(span_name: str, is_async: bool):
    runner = run_traced_async if is_async else run_traced

    def wrapper(wrapped, instance, args, kwargs):
        model = _model(args, kwargs)
        messages = kwargs.get("messages")
        if messages is None and len(args) > 1:
            messages = args[1]
        call = LLMCall(
            span_name=span_name,
            provider=_provider(model, kwargs),
            model=model,
            prompt=messages,
            stream=kwargs.get("stream") is True,
        )
        return runner(wrapped, args, kwargs, call, summarize_completion, extract_chat_chunk)

    return wrapper


class LiteLLMInstrumentation(InstrumentationPoint):
    name = "litellm"

    def __init__(self, module: ModuleType | Any = None) -> None:
        super().__init__()
        if module is None:
            try:
                import litellm as module
            except ImportError as e:
                raise ImportError(
                    "Failed to instrument LiteLLM. Install it with: pip install 'agentbasis[litellm]'"
                ) from e
        self.module = module

    def patch(self, registry: PatchRegistry) -> None:
        registry.wrap(self.module, "completion", _make_wrapper("litellm.completion", is_async=False))
        registry.wrap(self.module, "acompletion", _make_wrapper("litellm.acompletion", is_async=True))


_instrumentor = Instrumentor("LiteLLM", LiteLLMInstrumentation)


def instrument(module: ModuleType | Any = None) -> None:
    """Trace litellm.completion / litellm.acompletion calls.

    Args:
        module: Object holding completion/acompletion (default: the litellm module)

    Raises:
        NotInitializedError: If AgentBasis.init() has not been called
        ImportError: If litellm is not installed
    """
    _instrumentor.instrument(module=module)


def uninstrument() -> None:
    _instrumentor.uninstrument()


def is_instrumented() -> bool:
    return _instrumentor.is_instrumented()
