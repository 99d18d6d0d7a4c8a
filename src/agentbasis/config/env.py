"""
Environment variable helpers.

Booleans accept "true" and "1"; any other value is False. Numbers that do
not parse fall back to the default.
"""

import os
from typing import Any

ENV_API_KEY = "AGENTBASIS_API_KEY"
ENV_AGENT_ID = "AGENTBASIS_AGENT_ID"
ENV_BASE_URL = "AGENTBASIS_BASE_URL"
ENV_DEBUG = "AGENTBASIS_DEBUG"
ENV_INCLUDE_CONTENT = "AGENTBASIS_INCLUDE_CONTENT"
ENV_CONFIG_FILE = "AGENTBASIS_CONFIG"


def get_env_var(name: str) -> str | None:
    return os.environ.get(name)


def get_required_env_var(name: str) -> str:
    value = get_env_var(name)
    if not value:
        raise KeyError(f"Required environment variable {name} is not set")
    return value


def get_env_var_bool(name: str, default: bool = False) -> bool:
    value = get_env_var(name)
    if value is None:
        return default
    return value.strip().lower() in ("true", "1")


def get_env_var_number(name: str, default: int) -> int:
    value = get_env_var(name)
    if value is None:
        return default
    try:
        return int(value, 10)
    except ValueError:
        return default


def is_debug_mode() -> bool:
    """Debug flag from the environment (ignores the runtime override)."""
    return get_env_var_bool(ENV_DEBUG, False)


def get_agentbasis_env_vars() -> dict[str, Any]:
    """Snapshot of every AGENTBASIS_* variable the SDK understands."""
    return {
        "api_key": get_env_var(ENV_API_KEY),
        "agent_id": get_env_var(ENV_AGENT_ID),
        "base_url": get_env_var(ENV_BASE_URL),
        "debug": get_env_var_bool(ENV_DEBUG, False),
        "include_content": get_env_var_bool(ENV_INCLUDE_CONTENT, False),
    }
