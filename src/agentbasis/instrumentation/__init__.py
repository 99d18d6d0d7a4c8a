"""
Instrumentation - reversible patching of provider SDK entry points.
"""

from .base import InstrumentationPoint, Instrumentor, PatchRegistry
from .calls import LLMCall, field, run_traced, run_traced_async

__all__ = [
    "InstrumentationPoint",
    "Instrumentor",
    "LLMCall",
    "PatchRegistry",
    "field",
    "run_traced",
    "run_traced_async",
]
