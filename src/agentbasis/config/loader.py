"""
Configuration loader.

Precedence (lowest to highest):
1. Defaults (defined in the pydantic schema)
2. YAML file (path from the argument or AGENTBASIS_CONFIG)
3. Environment variables
4. Explicit values passed to init()

Explicit values of None count as "not provided".
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError
from .env import (
    ENV_AGENT_ID,
    ENV_API_KEY,
    ENV_BASE_URL,
    ENV_CONFIG_FILE,
    ENV_DEBUG,
    ENV_INCLUDE_CONTENT,
    get_env_var,
    get_env_var_bool,
)
from .schema import AgentBasisConfig


def load_yaml_config(config_path: Path | None) -> dict[str, Any]:
    """Load configuration values from a YAML file.

    Args:
        config_path: Path to the YAML file, or None to skip

    Returns:
        Dict of values, empty if there is no file
    """
    if not config_path:
        return {}

    if not config_path.exists():
        raise ConfigurationError("config_file", f"configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("config_file", f"expected a mapping in {config_path}")
    return data


def load_env_overrides() -> dict[str, Any]:
    """Values from AGENTBASIS_* variables. Unset variables are omitted."""
    overrides: dict[str, Any] = {}

    if api_key := get_env_var(ENV_API_KEY):
        overrides["api_key"] = api_key

    if agent_id := get_env_var(ENV_AGENT_ID):
        overrides["agent_id"] = agent_id

    if base_url := get_env_var(ENV_BASE_URL):
        overrides["base_url"] = base_url

    if get_env_var(ENV_DEBUG) is not None:
        overrides["debug"] = get_env_var_bool(ENV_DEBUG)

    if get_env_var(ENV_INCLUDE_CONTENT) is not None:
        overrides["include_content"] = get_env_var_bool(ENV_INCLUDE_CONTENT)

    return overrides


def load_config(
    explicit: dict[str, Any] | None = None,
    config_path: Path | str | None = None,
) -> AgentBasisConfig:
    """Resolve and validate the client configuration.

    Args:
        explicit: Values passed by the caller (highest precedence)
        config_path: Optional YAML file; defaults to $AGENTBASIS_CONFIG

    Returns:
        Frozen AgentBasisConfig

    Raises:
        ConfigurationError: On the first missing or out-of-bounds field
    """
    if config_path is None and (env_path := get_env_var(ENV_CONFIG_FILE)):
        config_path = env_path

    merged: dict[str, Any] = {}
    merged.update(load_yaml_config(Path(config_path) if config_path else None))
    merged.update(load_env_overrides())
    merged.update({k: v for k, v in (explicit or {}).items() if v is not None})

    if not merged.get("api_key"):
        raise ConfigurationError(
            "api_key",
            f"AgentBasis API key is required. Set {ENV_API_KEY} or pass api_key.",
        )
    if not merged.get("agent_id"):
        raise ConfigurationError(
            "agent_id",
            f"AgentBasis agent ID is required. Set {ENV_AGENT_ID} or pass agent_id.",
        )

    return validate_config(merged)


def validate_config(values: dict[str, Any]) -> AgentBasisConfig:
    """Build the schema, mapping pydantic errors to ConfigurationError."""
    try:
        return AgentBasisConfig(**values)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "config"
        raise ConfigurationError(field, first.get("msg", "invalid value")) from e
