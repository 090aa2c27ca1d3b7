"""Persona and project registry backed by the loaded configuration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..models.persona import AgentPersona, Project

if TYPE_CHECKING:
    from ..config.schema import HuddleConfig, PersonaConfig, ProjectConfig


def persona_from_config(entry: PersonaConfig) -> AgentPersona:
    return AgentPersona(
        id=entry.id,
        name=entry.name,
        role=entry.role,
        expertise=tuple(entry.expertise),
        is_active=entry.is_active,
        avatar_url=entry.avatar_url,
    )


def project_from_config(entry: ProjectConfig) -> Project:
    return Project(name=entry.name, path=entry.path, channel_id=entry.channel_id)


class StaticRegistry:
    """Implements both PersonaRepository and ProjectRegistry.

    The panel and project list are fixed for the lifetime of the process;
    restart to pick up configuration changes.
    """

    def __init__(self, personas: list[AgentPersona], projects: list[Project]) -> None:
        self._personas = list(personas)
        self._projects = list(projects)

    @classmethod
    def from_config(cls, config: HuddleConfig) -> StaticRegistry:
        return cls(
            [persona_from_config(p) for p in config.personas],
            [project_from_config(p) for p in config.projects],
        )

    def get_active(self) -> list[AgentPersona]:
        return [p for p in self._personas if p.is_active]

    def get_all(self) -> list[Project]:
        return list(self._projects)
