"""Shared test fixtures for agent-huddle."""

from __future__ import annotations

import random
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_huddle.adapters.registry import StaticRegistry
from agent_huddle.config.schema import (
    DeliberationConfig,
    JobsConfig,
    StateConfig,
    TimingConfig,
)
from agent_huddle.core.thread_state import ThreadStateManager
from agent_huddle.models.event import EventType, InboundEvent
from agent_huddle.models.persona import AgentPersona, Project

BOT_USER_ID = "UBOT"


class FakeClock:
    """Manually advanced clock for cooldown and TTL tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(_: float) -> None:
    """Stand-in for asyncio.sleep so tests never wait."""


@pytest.fixture
def dev() -> AgentPersona:
    return AgentPersona(
        id="dev",
        name="Dev",
        role="Implementer",
        expertise=("python", "implementation", "debugging"),
    )


@pytest.fixture
def carlos() -> AgentPersona:
    return AgentPersona(
        id="carlos",
        name="Carlos",
        role="Tech Lead",
        expertise=("architecture", "code review", "scope"),
    )


@pytest.fixture
def maya() -> AgentPersona:
    return AgentPersona(
        id="maya",
        name="Maya",
        role="Security Reviewer",
        expertise=("security", "auth", "secrets"),
    )


@pytest.fixture
def priya() -> AgentPersona:
    return AgentPersona(
        id="priya",
        name="Priya",
        role="QA Engineer",
        expertise=("testing", "edge cases", "regression"),
    )


@pytest.fixture
def personas(
    dev: AgentPersona, carlos: AgentPersona, maya: AgentPersona, priya: AgentPersona
) -> list[AgentPersona]:
    """The default four-person panel."""
    return [dev, carlos, maya, priya]


@pytest.fixture
def project() -> Project:
    return Project(name="night-watch-cli", path=Path("/srv/night-watch-cli"), channel_id="C1")


@pytest.fixture
def other_project() -> Project:
    return Project(name="billing-api", path=Path("/srv/billing-api"))


@pytest.fixture
def registry(
    personas: list[AgentPersona], project: Project, other_project: Project
) -> StaticRegistry:
    return StaticRegistry(personas, [project, other_project])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state(clock: FakeClock) -> ThreadStateManager:
    return ThreadStateManager(StateConfig(), clock=clock, rng=random.Random(7))


@pytest.fixture
def deliberation_config() -> DeliberationConfig:
    return DeliberationConfig(reply_delay_min=0.0, reply_delay_max=0.0)


@pytest.fixture
def timing_config() -> TimingConfig:
    return TimingConfig(
        response_delay_min=0.0,
        response_delay_max=0.0,
        reaction_probability=0.0,
        piggyback_probability=0.0,
    )


@pytest.fixture
def jobs_config() -> JobsConfig:
    return JobsConfig(cli_command=["night-watch"])


@pytest.fixture
def mock_chat() -> AsyncMock:
    """Chat provider whose posts get sequential timestamps."""
    mock = AsyncMock()
    mock.bot_user_id = BOT_USER_ID
    counter = iter(range(1, 10_000))

    async def post_as_persona(
        channel_id: str, text: str, persona: AgentPersona, thread_ts: str | None = None
    ) -> str:
        return f"1700000000.{next(counter):06d}"

    mock.post_as_persona = AsyncMock(side_effect=post_as_persona)
    mock.add_reaction = AsyncMock()
    mock.get_thread_history = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def mock_llm() -> AsyncMock:
    mock = AsyncMock()
    mock.complete = AsyncMock(return_value="SKIP")
    return mock


@pytest.fixture
def mock_spawner() -> MagicMock:
    mock = MagicMock()
    mock.spawn_job = AsyncMock(return_value=None)
    mock.spawn_provider_request = AsyncMock(return_value=None)
    mock.move_issue = AsyncMock(return_value=True)
    mock.wait_for_jobs = AsyncMock()
    return mock


def make_event(
    text: str,
    *,
    channel: str = "C1",
    ts: str = "1700000100.000100",
    user: str | None = "UHUMAN",
    thread_ts: str | None = None,
    event_type: str = EventType.MESSAGE,
    subtype: str | None = None,
    bot_id: str | None = None,
) -> InboundEvent:
    return InboundEvent(
        type=event_type,
        channel=channel,
        ts=ts,
        user=user,
        text=text,
        thread_ts=thread_ts,
        subtype=subtype,
        bot_id=bot_id,
    )
