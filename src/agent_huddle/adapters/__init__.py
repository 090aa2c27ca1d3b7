"""Concrete implementations of provider interfaces."""

from .chat.slack import SlackAdapter
from .llm.anthropic import AnthropicAdapter
from .registry import StaticRegistry

__all__ = [
    "AnthropicAdapter",
    "SlackAdapter",
    "StaticRegistry",
]
