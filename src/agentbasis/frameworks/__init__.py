"""
Framework integrations.

- langchain: AgentBasisCallbackHandler (requires langchain-core)
- tracking: track_call / track_stream for anything else
"""

from .tracking import track_call, track_stream

__all__ = ["track_call", "track_stream"]
