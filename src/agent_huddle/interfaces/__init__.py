"""Protocol definitions for pluggable adapters."""

from .chat import ChatProvider
from .llm import CompletionProvider
from .registry import PersonaRepository, ProjectRegistry

__all__ = ["ChatProvider", "CompletionProvider", "PersonaRepository", "ProjectRegistry"]
