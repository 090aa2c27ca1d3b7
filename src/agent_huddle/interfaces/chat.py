"""Abstract interface for chat platform integrations."""

from collections.abc import AsyncIterator
from typing import Protocol

from ..models.discussion import ThreadMessage
from ..models.event import InboundEvent
from ..models.persona import AgentPersona


class ChatProvider(Protocol):
    """Abstract interface for chat platform integrations.

    The core never talks to Slack directly. It posts as a persona, reacts,
    and reads thread history through this protocol.
    """

    async def connect(self) -> None:
        """
        Establish connection to the chat platform.

        Raises:
            ConnectionError: If connection fails
        """
        ...

    async def disconnect(self) -> None:
        """Gracefully close the connection."""
        ...

    def listen(self) -> AsyncIterator[InboundEvent]:
        """
        Yield inbound events from monitored channels.

        Events are yielded unfiltered; bot posts, edits and redeliveries
        are the caller's concern.

        Example:
            async for event in provider.listen():
                ...
        """
        ...

    @property
    def bot_user_id(self) -> str | None:
        """User id of the bot itself, once connected."""
        ...

    async def post_as_persona(
        self,
        channel_id: str,
        text: str,
        persona: AgentPersona,
        thread_ts: str | None = None,
    ) -> str:
        """
        Post a message attributed to a persona (display name and avatar).

        Args:
            channel_id: Target channel identifier
            text: Message body
            persona: Persona the message is attributed to
            thread_ts: Parent message timestamp for threading (optional)

        Returns:
            Timestamp of the posted message

        Raises:
            ChatPostError: If message delivery fails
        """
        ...

    async def add_reaction(
        self,
        channel_id: str,
        message_ts: str,
        reaction: str,
    ) -> None:
        """
        Add a reaction to a message.

        Args:
            channel_id: Channel containing the message
            message_ts: Target message timestamp
            reaction: Reaction name without colons, e.g. "eyes"

        Raises:
            ChatPostError: If adding the reaction fails
        """
        ...

    async def get_thread_history(
        self,
        channel_id: str,
        thread_ts: str,
        limit: int = 20,
    ) -> list[ThreadMessage]:
        """
        Return the messages of a thread, oldest first, root included.

        Raises:
            ChatPostError: If history cannot be read
        """
        ...
