"""
Shared fixtures: an initialized client exporting into memory, and a clean
slate (no client, no AGENTBASIS_* variables) around every test.
"""

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from agentbasis.config.env import (
    ENV_AGENT_ID,
    ENV_API_KEY,
    ENV_BASE_URL,
    ENV_CONFIG_FILE,
    ENV_DEBUG,
    ENV_INCLUDE_CONTENT,
)
from agentbasis.core.client import AgentBasis

API_KEY = "ab-test-key-1234"
AGENT_ID = "agent-test"


@pytest.fixture(autouse=True)
def clean_state(monkeypatch):
    for name in (ENV_API_KEY, ENV_AGENT_ID, ENV_BASE_URL, ENV_CONFIG_FILE, ENV_DEBUG, ENV_INCLUDE_CONTENT):
        monkeypatch.delenv(name, raising=False)
    AgentBasis.reset()
    yield
    AgentBasis.reset()


@pytest.fixture
def exporter():
    return InMemorySpanExporter()


@pytest.fixture
def client(exporter):
    return AgentBasis.init(api_key=API_KEY, agent_id=AGENT_ID, exporter=exporter)


@pytest.fixture
def content_client(exporter):
    return AgentBasis.init(api_key=API_KEY, agent_id=AGENT_ID, include_content=True, exporter=exporter)


@pytest.fixture
def finished(exporter):
    """Callable returning the exported spans, after draining the batch processor."""

    def collect(name: str | None = None):
        instance = AgentBasis._instance
        if instance is not None:
            instance.pipeline.force_flush(5000)
        spans = list(exporter.get_finished_spans())
        if name is not None:
            spans = [span for span in spans if span.name == name]
        return spans

    return collect
