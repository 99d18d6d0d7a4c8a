"""
Instrumentation points - reversible method patching for provider SDKs.

An InstrumentationPoint patches one provider's entry points and hands back
an unregister function. Patches are wrapt FunctionWrappers installed with
setattr; PatchRegistry remembers what it replaced so unregister restores
the exact original descriptor (or removes the attribute again when it was
inherited).

Patching happens at startup/shutdown. Calls already in flight while a patch
is being installed or removed may see either version.
"""

import inspect
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import wrapt

from ..core.client import AgentBasis
from ..errors import NotInitializedError
from ..logging import get_logger

logger = get_logger(__name__)

_MISSING = object()

Wrapper = Callable[[Callable[..., Any], Any, tuple, dict], Any]


class PatchRegistry:
    """Records (owner, attribute, original) triples of installed patches."""

    def __init__(self) -> None:
        self._patches: list[tuple[Any, str, Any]] = []

    def wrap(self, owner: Any, attribute: str, wrapper: Wrapper) -> None:
        """Replace owner.attribute with a wrapt FunctionWrapper.

        Args:
            owner: Class or module holding the attribute
            attribute: Attribute name
            wrapper: wrapt-style wrapper(wrapped, instance, args, kwargs)

        Raises:
            AttributeError: If owner has no such attribute
        """
        original = vars(owner).get(attribute, _MISSING)
        target = original if original is not _MISSING else inspect.getattr_static(owner, attribute)
        setattr(owner, attribute, wrapt.FunctionWrapper(target, wrapper))
        self._patches.append((owner, attribute, original))

    def restore(self) -> None:
        """Undo every patch, newest first."""
        while self._patches:
            owner, attribute, original = self._patches.pop()
            if original is _MISSING:
                delattr(owner, attribute)
            else:
                setattr(owner, attribute, original)

    @property
    def patched(self) -> list[str]:
        return [f"{getattr(owner, '__name__', owner)}.{attribute}" for owner, attribute, _ in self._patches]

    def __len__(self) -> int:
        return len(self._patches)


class InstrumentationPoint(ABC):
    """One provider's set of patched entry points.

    Subclasses implement patch(); register() applies it and returns the
    function that reverts it.
    """

    name: str

    def __init__(self) -> None:
        self.registry = PatchRegistry()

    @abstractmethod
    def patch(self, registry: PatchRegistry) -> None:
        """Install the provider's wrappers through the registry."""

    def register(self) -> Callable[[], None]:
        try:
            self.patch(self.registry)
        except Exception:
            self.registry.restore()
            raise
        logger.debug("instrumentation.registered", point=self.name, patched=self.registry.patched)
        return self.registry.restore


class Instrumentor:
    """instrument() / uninstrument() / is_instrumented() state of one module.

    Usage:
        _instrumentor = Instrumentor("openai", OpenAIInstrumentation)

        def instrument(**targets):
            _instrumentor.instrument(**targets)
    """

    def __init__(self, name: str, factory: Callable[..., InstrumentationPoint]) -> None:
        self.name = name
        self._factory = factory
        self._unregister: Callable[[], None] | None = None

    def instrument(self, **options: Any) -> None:
        """Patch the provider SDK.

        Raises:
            NotInitializedError: If AgentBasis.init() has not been called
        """
        if self._unregister is not None:
            logger.warning("instrumentation.already_instrumented", point=self.name)
            return
        if not AgentBasis.is_initialized():
            raise NotInitializedError(f"instrument {self.name}")

        self._unregister = self._factory(**options).register()

    def uninstrument(self) -> None:
        if self._unregister is None:
            return
        unregister, self._unregister = self._unregister, None
        unregister()
        logger.debug("instrumentation.unregistered", point=self.name)

    def is_instrumented(self) -> bool:
        return self._unregister is not None
