"""Slack chat adapter using slack-bolt.

This module implements the ChatProvider protocol for Slack using the
slack-bolt library with Socket Mode for real-time events.

Features:
- Socket Mode connection for real-time event delivery
- ``message`` and ``app_mention`` events, both forwarded unfiltered
- Posting as a persona (display name and avatar) with per-channel pacing
- Thread history for prompt building
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

import structlog
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.app.async_app import AsyncApp
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from ...models.discussion import ThreadMessage
from ...models.event import EventType, InboundEvent
from ...utils.async_helpers import ChannelRateLimiter, ChatPostError, HuddleError

if TYPE_CHECKING:
    from ...config.schema import SlackConfig
    from ...models.persona import AgentPersona


log = structlog.get_logger()

# Burst allowance on top of the steady per-channel rate
POST_BURST_CAPACITY = 3.0


class SlackAdapterError(HuddleError):
    """Base exception for Slack adapter errors."""


class SlackConnectionError(SlackAdapterError):
    """Raised when connection to Slack fails."""


def _error_code(error: SlackApiError) -> str | None:
    response = error.response
    return response.get("error") if response is not None else None


class SlackAdapter:
    """Slack chat adapter implementing the ChatProvider protocol.

    Example:
        config = SlackConfig(bot_token="xoxb-...", app_token="xapp-...")
        adapter = SlackAdapter(config)

        await adapter.connect()
        async for event in adapter.listen():
            print(f"Received: {event.text}")
        await adapter.disconnect()
    """

    def __init__(self, config: SlackConfig) -> None:
        """Initialize the Slack adapter.

        Args:
            config: Slack-specific configuration.
        """
        self._config = config
        self._connected = False
        self._bot_user_id = config.bot_user_id

        self._app = AsyncApp(token=config.bot_token)
        self._client: AsyncWebClient = self._app.client
        self._socket_handler: AsyncSocketModeHandler | None = None

        self._event_queue: asyncio.Queue[InboundEvent] = asyncio.Queue()
        self._monitored_channel_ids: set[str] = set()
        self._disconnect_event = asyncio.Event()

        self._post_limiter = ChannelRateLimiter(
            per_channel_rate=config.post_rate_per_channel,
            per_channel_capacity=POST_BURST_CAPACITY,
        )

        self._register_handlers()

    @property
    def bot_user_id(self) -> str | None:
        return self._bot_user_id

    def _register_handlers(self) -> None:
        """Register event handlers with the Slack app."""

        @self._app.event(EventType.MESSAGE.value)
        async def handle_message(event: dict[str, Any]) -> None:
            await self._enqueue_event(event)

        @self._app.event(EventType.APP_MENTION.value)
        async def handle_app_mention(event: dict[str, Any]) -> None:
            await self._enqueue_event(event)

    async def _enqueue_event(self, payload: dict[str, Any]) -> None:
        event = InboundEvent.from_payload(payload)
        if event is None:
            log.debug("slack_event_dropped", reason="missing channel or ts")
            return

        if self._monitored_channel_ids and event.channel not in self._monitored_channel_ids:
            return

        await self._event_queue.put(event)
        log.debug("slack_event_queued", type=event.type, channel=event.channel, ts=event.ts)

    async def _resolve_channel_ids(self) -> None:
        """Resolve configured channel names to IDs."""
        self._monitored_channel_ids = set()
        if not self._config.channels:
            # No specific channels configured, monitor all
            return

        try:
            result = await self._client.conversations_list(types="public_channel,private_channel")
        except SlackApiError as e:
            log.warning("channel_resolution_failed", error=str(e))
            return

        channels_list: list[dict[str, Any]] = result.get("channels", [])
        for channel in self._config.channels:
            channel_name = channel.lstrip("#")
            for ch_dict in channels_list:
                if ch_dict.get("name") == channel_name or ch_dict.get("id") == channel:
                    self._monitored_channel_ids.add(ch_dict["id"])
                    log.debug("channel_resolved", name=channel, id=ch_dict["id"])
                    break
            else:
                log.warning("channel_not_found", channel=channel)

    async def _resolve_bot_user_id(self) -> None:
        if self._bot_user_id:
            return
        result = await self._client.auth_test()
        self._bot_user_id = result.get("user_id")
        log.debug("bot_user_resolved", bot_user_id=self._bot_user_id)

    async def connect(self) -> None:
        """Establish connection to Slack using Socket Mode.

        Raises:
            SlackConnectionError: If connection fails.
        """
        if self._connected:
            return

        try:
            await self._resolve_bot_user_id()
            await self._resolve_channel_ids()

            self._socket_handler = AsyncSocketModeHandler(
                app=self._app,
                app_token=self._config.app_token,
            )
            await self._socket_handler.connect_async()  # type: ignore[no-untyped-call]

            self._connected = True
            self._disconnect_event.clear()

            log.info(
                "slack_connected",
                bot_user_id=self._bot_user_id,
                monitored_channels=len(self._monitored_channel_ids),
            )

        except Exception as e:
            log.error("slack_connection_failed", error=str(e))
            raise SlackConnectionError(f"Failed to connect to Slack: {e}") from e

    async def disconnect(self) -> None:
        """Gracefully close the Slack connection."""
        if not self._connected:
            return

        self._disconnect_event.set()

        if self._socket_handler:
            try:
                await self._socket_handler.close_async()  # type: ignore[no-untyped-call]
            except Exception as e:
                log.warning("disconnect_error", error=str(e))

        self._connected = False
        log.info("slack_disconnected")

    async def listen(self) -> AsyncIterator[InboundEvent]:
        """Yield inbound events as they arrive.

        Raises:
            SlackAdapterError: If called before connect().
        """
        if not self._connected:
            raise SlackAdapterError("Not connected. Call connect() first.")

        while not self._disconnect_event.is_set():
            try:
                # Wait with a timeout so disconnects are noticed
                event = await asyncio.wait_for(self._event_queue.get(), timeout=1.0)
                yield event
            except TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    async def post_as_persona(
        self,
        channel_id: str,
        text: str,
        persona: AgentPersona,
        thread_ts: str | None = None,
    ) -> str:
        """Post a message under a persona's name and avatar.

        Requires the ``chat:write.customize`` scope.

        Returns:
            Timestamp of the posted message.

        Raises:
            ChatPostError: If Slack rejects the post.
        """
        kwargs: dict[str, Any] = {
            "channel": channel_id,
            "text": text,
            "username": persona.name,
        }
        if persona.avatar_url:
            kwargs["icon_url"] = persona.avatar_url
        if thread_ts:
            kwargs["thread_ts"] = thread_ts

        await self._post_limiter.acquire(channel_id)
        try:
            result = await self._client.chat_postMessage(**kwargs)
        except SlackApiError as e:
            log.error(
                "post_as_persona_failed",
                channel_id=channel_id,
                persona=persona.name,
                error=_error_code(e) or str(e),
            )
            raise ChatPostError(f"Failed to post as {persona.name}: {e}") from e

        message_ts: str = result.get("ts", "")
        log.debug(
            "persona_message_posted",
            channel_id=channel_id,
            persona=persona.name,
            message_ts=message_ts,
            thread_ts=thread_ts,
        )
        return message_ts

    async def add_reaction(
        self,
        channel_id: str,
        message_ts: str,
        reaction: str,
    ) -> None:
        """Add a reaction to a message.

        Raises:
            ChatPostError: If adding the reaction fails.
        """
        try:
            await self._client.reactions_add(
                channel=channel_id,
                timestamp=message_ts,
                name=reaction,
            )
        except SlackApiError as e:
            if _error_code(e) == "already_reacted":
                return
            raise ChatPostError(f"Failed to add reaction {reaction}: {e}") from e

        log.debug("reaction_added", channel_id=channel_id, message_ts=message_ts, reaction=reaction)

    async def get_thread_history(
        self,
        channel_id: str,
        thread_ts: str,
        limit: int = 20,
    ) -> list[ThreadMessage]:
        """Return thread messages oldest first, root included.

        Raises:
            ChatPostError: If the replies cannot be read.
        """
        try:
            result = await self._client.conversations_replies(
                channel=channel_id,
                ts=thread_ts,
                limit=limit,
            )
        except SlackApiError as e:
            raise ChatPostError(f"Failed to read thread {thread_ts}: {e}") from e

        messages: list[dict[str, Any]] = result.get("messages", [])
        return [
            ThreadMessage(
                text=message.get("text") or "",
                username=message.get("username"),
                ts=message.get("ts"),
            )
            for message in messages
        ]
