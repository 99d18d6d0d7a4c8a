"""
Pydantic models for agentbasis configuration.

The resolved configuration is an immutable snapshot: it is built once by
AgentBasis.init() and shared read-only by every span until shutdown.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

DEFAULT_BASE_URL = "https://api.agentbasis.co"


class AgentBasisConfig(BaseModel):
    """Client configuration.

    Bounds are enforced by pydantic; the loader turns the first violation
    into a ConfigurationError naming the field.
    """

    api_key: str = Field(description="API key sent as bearer token to the backend")
    agent_id: str = Field(description="Agent that owns every span of this process")
    base_url: str = DEFAULT_BASE_URL

    include_content: bool = Field(
        default=False,
        description="If True, prompts and responses are serialized into LLM spans",
    )
    include_binary_content: bool = Field(
        default=False,
        description=(
            "If True (and include_content is True), binary payloads are attached "
            "base64-encoded instead of a size marker"
        ),
    )

    batch_size: int = Field(default=100, ge=1, description="Spans per export batch")
    flush_interval_ms: int = Field(
        default=5000, ge=100, description="Delay between automatic exports"
    )
    max_retries: int = Field(default=3, ge=0, description="Retries per failed export request")
    timeout_ms: int = Field(default=10_000, ge=100, description="HTTP timeout per export request")
    debug: bool = False

    exporter: Literal["http", "console", "json-file"] = "http"
    trace_file: Path | None = None

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("api_key", "agent_id")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must be a non-empty string")
        return value

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    def masked_api_key(self) -> str:
        """API key with everything but the last 4 characters hidden."""
        if len(self.api_key) <= 4:
            return "****"
        return "*" * (len(self.api_key) - 4) + self.api_key[-4:]
