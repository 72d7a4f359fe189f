"""
Configuration loader for agentdeck.

Loads configuration from a YAML file with environment variable substitution
and deep-merges it over built-in defaults.
"""

import os
import re
from pathlib import Path

import yaml


def load_config(config_path: str = None) -> dict:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $AGENTDECK_CONFIG or
            config.yaml in the current directory.

    Returns:
        Configuration dict with env vars substituted and defaults filled in.
    """
    if config_path is None:
        config_path = os.environ.get("AGENTDECK_CONFIG", "config.yaml")

    path = Path(config_path)
    if not path.exists():
        return _default_config()

    with open(path) as f:
        content = f.read()

    # Substitute environment variables: ${VAR_NAME} or ${VAR_NAME:default}
    content = _substitute_env_vars(content)

    config = yaml.safe_load(content) or {}

    return _merge_with_defaults(config)


def _substitute_env_vars(content: str) -> str:
    """Replace ${VAR} and ${VAR:default} with environment values."""

    def replace(match):
        var_expr = match.group(1)
        if ":" in var_expr:
            var_name, default = var_expr.split(":", 1)
        else:
            var_name, default = var_expr, ""
        return os.environ.get(var_name, default)

    pattern = r"\$\{([^}]+)\}"
    return re.sub(pattern, replace, content)


def _default_config() -> dict:
    """Return the default configuration."""
    data_dir = os.environ.get("AGENTDECK_HOME", "~/.agentdeck")
    return {
        "llm": {
            "model": os.environ.get("AGENTDECK_MODEL", "gpt-4o-mini"),
            "embedding_model": "text-embedding-3-small",
            "embedding_dim": 1536,
        },
        "runner": {
            "max_iterations": 1000,
            "max_duration_seconds": 30 * 60,
            "max_retries": 2,
            "retry_backoff_seconds": 2.0,
            "keep_recent_images": 2,
            "max_tool_result_chars": 12000,
            "max_nudges": 3,
        },
        "memory": {
            "data_dir": data_dir,
            "db_path": f"{data_dir}/memory.db",
            "notes_dir": f"{data_dir}/agents",
        },
        "storage": {
            "db_path": f"{data_dir}/agents.db",
        },
        "browser": {
            "headless": True,
            "idle_timeout_seconds": 300,
            "reap_interval_seconds": 60,
            "max_text_chars": 8000,
        },
        "search": {
            "searxng_url": os.environ.get("SEARXNG_URL", "http://localhost:8888"),
        },
        "scheduler": {
            "timezone": os.environ.get("AGENTDECK_TIMEZONE", ""),
        },
        "logging": {
            "level": os.environ.get("AGENTDECK_LOG_LEVEL", "INFO"),
        },
        "agents": [],
    }


def _merge_with_defaults(config: dict) -> dict:
    """Merge user config with defaults."""
    defaults = _default_config()

    def merge(base, override):
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = merge(result[key], value)
            else:
                result[key] = value
        return result

    return merge(defaults, config)


def get_section(config: dict, name: str) -> dict:
    """Get one configuration section, or an empty dict if absent."""
    section = config.get(name) or {}
    return section if isinstance(section, dict) else {}


def expand_path(value: str) -> Path:
    """Expand ~ and environment variables in a configured path."""
    return Path(os.path.expandvars(os.path.expanduser(value)))
