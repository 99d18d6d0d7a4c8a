"""
Provider instrumentation: openai, anthropic, gemini, litellm.

Each submodule exposes instrument(), uninstrument() and is_instrumented()
and imports its provider SDK only when instrument() runs.
"""
