"""Tests for protocol interfaces."""

from collections.abc import AsyncIterator

from agent_huddle.adapters.registry import StaticRegistry
from agent_huddle.interfaces.chat import ChatProvider
from agent_huddle.interfaces.llm import CompletionProvider
from agent_huddle.interfaces.registry import PersonaRepository, ProjectRegistry
from agent_huddle.models.discussion import ThreadMessage
from agent_huddle.models.event import InboundEvent
from agent_huddle.models.persona import AgentPersona, Project


class MockChatProvider:
    """Mock implementation of ChatProvider for testing protocol compliance."""

    def __init__(self) -> None:
        self.posts: list[tuple[str, str, str, str | None]] = []

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def listen(self) -> AsyncIterator[InboundEvent]:
        yield InboundEvent(type="message", channel="C1", ts="1.0", user="U1", text="hey team")

    @property
    def bot_user_id(self) -> str | None:
        return "UBOT"

    async def post_as_persona(
        self,
        channel_id: str,
        text: str,
        persona: AgentPersona,
        thread_ts: str | None = None,
    ) -> str:
        self.posts.append((channel_id, text, persona.id, thread_ts))
        return "2.0"

    async def add_reaction(self, channel_id: str, message_ts: str, reaction: str) -> None:
        pass

    async def get_thread_history(
        self, channel_id: str, thread_ts: str, limit: int = 20
    ) -> list[ThreadMessage]:
        return [ThreadMessage(text="hey team", ts=thread_ts)]


class MockCompletionProvider:
    """Mock implementation of CompletionProvider."""

    async def complete(
        self,
        prompt: str,
        *,
        persona: AgentPersona | None = None,
        system: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        return f"{persona.name if persona else 'anon'}: ok"


class TestChatProviderProtocol:
    """Test ChatProvider protocol compliance."""

    async def test_mock_provider_is_usable_as_protocol(self, dev: AgentPersona) -> None:
        provider: ChatProvider = MockChatProvider()

        await provider.connect()
        events = [event async for event in provider.listen()]
        ts = await provider.post_as_persona("C1", "hi", dev, thread_ts="1.0")
        history = await provider.get_thread_history("C1", "1.0")
        await provider.disconnect()

        assert events[0].inbound_key == "C1:1.0:message"
        assert ts == "2.0"
        assert history[0].text == "hey team"
        assert provider.bot_user_id == "UBOT"


class TestCompletionProviderProtocol:
    async def test_persona_is_keyword_only(self, maya: AgentPersona) -> None:
        provider: CompletionProvider = MockCompletionProvider()
        assert await provider.complete("thoughts?", persona=maya) == "Maya: ok"
        assert await provider.complete("thoughts?") == "anon: ok"


class TestRegistryProtocols:
    def test_static_registry_satisfies_both(
        self, personas: list[AgentPersona], project: Project
    ) -> None:
        registry = StaticRegistry(personas, [project])
        persona_repo: PersonaRepository = registry
        project_registry: ProjectRegistry = registry

        assert persona_repo.get_active() == personas
        assert project_registry.get_all() == [project]
