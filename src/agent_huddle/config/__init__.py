"""Configuration loading and validation."""

from .loader import load_config
from .schema import (
    AnthropicConfig,
    ChatConfig,
    DeliberationConfig,
    HuddleConfig,
    JobsConfig,
    LLMConfig,
    PersonaConfig,
    ProactiveConfig,
    ProjectConfig,
    SlackConfig,
    StateConfig,
    TimingConfig,
)

__all__ = [
    # Loader
    "load_config",
    # Root config
    "HuddleConfig",
    # Provider configs
    "ChatConfig",
    "LLMConfig",
    "SlackConfig",
    "AnthropicConfig",
    # Registry entries
    "PersonaConfig",
    "ProjectConfig",
    # Behaviour
    "DeliberationConfig",
    "JobsConfig",
    "ProactiveConfig",
    "StateConfig",
    "TimingConfig",
]
