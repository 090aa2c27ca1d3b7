"""Abstract interfaces for persona and project lookup."""

from typing import Protocol

from ..models.persona import AgentPersona, Project


class PersonaRepository(Protocol):
    """Read-only access to the persona panel."""

    def get_active(self) -> list[AgentPersona]:
        """Return active personas in configured order."""
        ...


class ProjectRegistry(Protocol):
    """Read-only access to registered projects."""

    def get_all(self) -> list[Project]:
        """Return every registered project."""
        ...
