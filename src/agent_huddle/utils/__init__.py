"""Utility functions and helpers.

This module provides various utilities for agent-huddle:
- security: Secret redaction, input validation
- safe_subprocess: Safe subprocess execution and the gh CLI wrapper
- async_helpers: Error types, async retry, rate limiting
- logging: Structured logging with secret sanitization
"""

from agent_huddle.utils.async_helpers import (
    ChatPostError,
    CompletionError,
    ContextFetchError,
    HuddleError,
    RateLimitError,
)
from agent_huddle.utils.logging import (
    LogFormat,
    LogLevel,
    bind_context,
    clear_context,
    configure_logging,
)
from agent_huddle.utils.security import (
    RedactionError,
    SecretRedactor,
    SecurityError,
)

__all__ = [
    # Errors
    "ChatPostError",
    "CompletionError",
    "ContextFetchError",
    "HuddleError",
    "RateLimitError",
    # Logging
    "LogFormat",
    "LogLevel",
    "bind_context",
    "clear_context",
    "configure_logging",
    # Security
    "RedactionError",
    "SecretRedactor",
    "SecurityError",
]
