"""Persona and project records read from the registry."""

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AgentPersona:
    """A configured AI identity that authors chat replies."""

    id: str
    name: str
    role: str
    expertise: tuple[str, ...] = ()
    is_active: bool = True
    avatar_url: str | None = None


@dataclass(frozen=True)
class Project:
    """A registered project the job CLI can operate on."""

    name: str
    path: Path
    channel_id: str | None = None

    @property
    def basename(self) -> str:
        return self.path.name
