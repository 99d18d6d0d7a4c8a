"""
Configuration module - pydantic schema, environment helpers and loader.
"""

from .env import (
    ENV_AGENT_ID,
    ENV_API_KEY,
    ENV_BASE_URL,
    ENV_CONFIG_FILE,
    ENV_DEBUG,
    ENV_INCLUDE_CONTENT,
    get_agentbasis_env_vars,
    get_env_var,
    get_env_var_bool,
    get_env_var_number,
    get_required_env_var,
    is_debug_mode,
)
from .loader import load_config, load_env_overrides, load_yaml_config, validate_config
from .schema import DEFAULT_BASE_URL, AgentBasisConfig

__all__ = [
    "AgentBasisConfig",
    "DEFAULT_BASE_URL",
    "ENV_AGENT_ID",
    "ENV_API_KEY",
    "ENV_BASE_URL",
    "ENV_CONFIG_FILE",
    "ENV_DEBUG",
    "ENV_INCLUDE_CONTENT",
    "get_agentbasis_env_vars",
    "get_env_var",
    "get_env_var_bool",
    "get_env_var_number",
    "get_required_env_var",
    "is_debug_mode",
    "load_config",
    "load_env_overrides",
    "load_yaml_config",
    "validate_config",
]
