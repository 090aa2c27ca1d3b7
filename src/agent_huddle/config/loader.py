"""Configuration loader with YAML parsing and environment variable substitution."""

import os
import re
from pathlib import Path

import yaml

from .schema import HuddleConfig

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def substitute_env_vars(text: str) -> str:
    """
    Replace ${VAR_NAME} and ${VAR_NAME:-default} with environment values.

    Args:
        text: Text containing ${VAR_NAME} patterns

    Returns:
        Text with environment variables substituted

    Raises:
        ValueError: If a referenced variable is unset and has no default
    """

    def replacer(match: re.Match[str]) -> str:
        var_name, default = match.group(1), match.group(2)
        value = os.environ.get(var_name)
        if value is None:
            if default is None:
                raise ValueError(f"Environment variable {var_name} not found")
            return default
        return value

    return ENV_VAR_PATTERN.sub(replacer, text)


def load_config(path: Path) -> HuddleConfig:
    """
    Load configuration from YAML file with environment variable substitution.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated HuddleConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If environment variables are missing or config is invalid
        ValidationError: If config doesn't match schema
    """
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with path.open() as f:
        raw_yaml = f.read()

    config_dict = yaml.safe_load(substitute_env_vars(raw_yaml)) or {}

    config = HuddleConfig.model_validate(config_dict)
    validate_config(config)

    return config


def validate_config(config: HuddleConfig) -> None:
    """
    Cross-field checks pydantic cannot express per model.

    Args:
        config: Configuration to validate

    Raises:
        ValueError: If provider-specific config is missing or projects clash
    """
    if config.chat.provider == "slack" and config.chat.slack is None:
        raise ValueError("Slack provider selected but slack config missing")

    if config.llm.provider == "anthropic" and config.llm.anthropic is None:
        raise ValueError("Anthropic provider selected but anthropic config missing")

    if not any(p.is_active for p in config.personas):
        raise ValueError("At least one active persona is required")

    names = [p.name.lower() for p in config.projects]
    if len(names) != len(set(names)):
        raise ValueError("Project names must be unique")

    bound: dict[str, str] = {}
    for project in config.projects:
        if not project.channel_id:
            continue
        if project.channel_id in bound:
            raise ValueError(
                f"Channel {project.channel_id} is bound to both "
                f"{bound[project.channel_id]} and {project.name}"
            )
        bound[project.channel_id] = project.name
