"""Human-like pacing for persona replies and the cascades that follow them.

A persona that was addressed first reacts (sometimes), waits a beat, and
then replies. Replies that name another persona pull that persona in once,
and now and then a second persona chimes in unprompted.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING

import structlog

from agent_huddle.core.message_parser import resolve_by_plain_name
from agent_huddle.utils.async_helpers import ChatPostError

if TYPE_CHECKING:
    from agent_huddle.config.schema import TimingConfig
    from agent_huddle.core.deliberation import DeliberationEngine
    from agent_huddle.core.thread_state import ReplyRecord, ThreadStateManager
    from agent_huddle.interfaces.chat import ChatProvider
    from agent_huddle.models.persona import AgentPersona

log = structlog.get_logger()

Sleeper = Callable[[float], Awaitable[None]]

# Sleeps are sliced so a competing reply can cut the wait short
TIMING_SLICE_SECONDS = 0.25
HISTORY_RECOVERY_LIMIT = 50

ROLE_REACTIONS: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (("security",), ("eyes", "thinking_face", "shield", "thumbsup")),
    (("qa", "quality"), ("test_tube", "mag", "thinking_face", "thumbsup")),
    (("lead", "architect"), ("thinking_face", "thumbsup", "memo", "eyes")),
    (("implementer", "developer"), ("wrench", "hammer_and_wrench", "thumbsup", "eyes")),
)
DEFAULT_REACTIONS = ("eyes", "thinking_face", "thumbsup", "wave")


def reaction_candidates(persona: AgentPersona) -> tuple[str, ...]:
    role = persona.role.lower()
    for keywords, reactions in ROLE_REACTIONS:
        if any(keyword in role for keyword in keywords):
            return reactions
    return DEFAULT_REACTIONS


class CascadingReplyHandler:
    """Timing, reactions and follow-on replies around a persona's answer.

    Args:
        chat: Chat provider for reactions and history
        engine: Engine that composes and posts ad-hoc replies
        state: Shared thread state (cooldowns, owners, randomness)
        config: Delay ranges and probabilities
        sleep: Awaitable sleep, injected so tests never wait
    """

    def __init__(
        self,
        chat: ChatProvider,
        engine: DeliberationEngine,
        state: ThreadStateManager,
        config: TimingConfig,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._chat = chat
        self._engine = engine
        self._state = state
        self._config = config
        self._sleep = sleep

    def _uniform(self, low: float, high: float) -> float:
        return self._state.rng.uniform(low, high)

    def _someone_else_replied(
        self,
        channel: str,
        thread_ts: str,
        baseline: ReplyRecord | None,
        persona: AgentPersona,
    ) -> bool:
        current = self._state.last_reply(channel, thread_ts)
        return current is not None and current != baseline and current.persona_id != persona.id

    async def apply_human_timing(
        self,
        channel: str,
        message_ts: str,
        persona: AgentPersona,
        thread_ts: str | None = None,
    ) -> bool:
        """Maybe react, then wait 0.7-3.4 s before replying.

        Returns:
            False if another persona replied in ``thread_ts`` during the
            wait, so the caller should stand down. True otherwise.
        """
        await self.maybe_react(channel, message_ts, persona)

        baseline = self._state.last_reply(channel, thread_ts) if thread_ts else None
        remaining = self._uniform(
            self._config.response_delay_min, self._config.response_delay_max
        )
        while remaining > 0:
            step = min(TIMING_SLICE_SECONDS, remaining)
            await self._sleep(step)
            remaining -= step
            if thread_ts and self._someone_else_replied(channel, thread_ts, baseline, persona):
                log.debug("reply_preempted", persona=persona.name, thread_ts=thread_ts)
                return False
        return True

    async def maybe_react(self, channel: str, message_ts: str, persona: AgentPersona) -> bool:
        """Add a role-flavored reaction to a human message, some of the time."""
        if self._state.rng.random() > self._config.reaction_probability:
            return False

        reaction = self._state.rng.choice(reaction_candidates(persona))
        await self._sleep(
            self._uniform(self._config.reaction_delay_min, self._config.reaction_delay_max)
        )
        try:
            await self._chat.add_reaction(channel, message_ts, reaction)
        except ChatPostError as e:
            # Already reacted, missing scope, ...
            log.debug("reaction_failed", reaction=reaction, error=str(e))
            return False
        return True

    def _record_reply(self, channel: str, thread_ts: str, persona: AgentPersona) -> None:
        self._state.mark_persona_reply(channel, thread_ts, persona.id)
        self._state.remember_ad_hoc_owner(channel, thread_ts, persona.id)

    async def follow_agent_mentions(
        self,
        posted_text: str,
        channel: str,
        thread_ts: str,
        personas: Sequence[AgentPersona],
        project_context: str,
        skip_persona_id: str,
    ) -> None:
        """Let personas named in a persona's reply answer once.

        Depth is one: the follow-up replies do not cascade further.
        """
        if not posted_text:
            return

        mentioned = [
            p
            for p in resolve_by_plain_name(posted_text, personas)
            if p.id != skip_persona_id
            and not self._state.is_persona_on_cooldown(channel, thread_ts, p.id)
        ]
        if not mentioned:
            return

        log.info("agent_mention_follow_up", personas=[p.name for p in mentioned], channel=channel)
        for persona in mentioned:
            await self._sleep(
                self._uniform(
                    self._config.response_delay_min * 2, self._config.response_delay_max * 3
                )
            )
            await self._engine.reply_as_agent(
                channel, thread_ts, posted_text, persona, project_context
            )
            self._record_reply(channel, thread_ts, persona)

    async def maybe_piggyback(
        self,
        channel: str,
        thread_ts: str,
        text: str,
        personas: Sequence[AgentPersona],
        project_context: str,
        exclude_persona_id: str,
    ) -> bool:
        """Occasionally have a second, rested persona chime in.

        Returns:
            True if a piggyback reply was attempted.
        """
        if self._state.rng.random() > self._config.piggyback_probability:
            return False

        others = [
            p
            for p in personas
            if p.id != exclude_persona_id
            and not self._state.is_persona_on_cooldown(channel, thread_ts, p.id)
        ]
        if not others:
            return False

        persona = self._state.rng.choice(others)
        await self._sleep(
            self._uniform(self._config.piggyback_delay_min, self._config.piggyback_delay_max)
        )
        posted = await self._engine.reply_as_agent(
            channel, thread_ts, text, persona, project_context
        )
        self._record_reply(channel, thread_ts, persona)
        if posted:
            await self.follow_agent_mentions(
                posted, channel, thread_ts, personas, project_context, persona.id
            )
        return True

    async def engage_multiple_personas(
        self,
        channel: str,
        thread_ts: str,
        message_ts: str,
        text: str,
        personas: Sequence[AgentPersona],
        project_context: str = "",
    ) -> list[str]:
        """Have two or three personas answer an ambient team message in turn.

        Returns:
            Ids of the personas that replied.
        """
        available = [
            p for p in personas if not self._state.is_persona_on_cooldown(channel, thread_ts, p.id)
        ]
        if not available:
            return []

        shuffled = list(available)
        self._state.rng.shuffle(shuffled)
        participants = shuffled[: min(len(shuffled), self._state.random_int(2, 3))]

        replied: list[str] = []
        for index, persona in enumerate(participants):
            if index == 0:
                await self.apply_human_timing(channel, message_ts, persona)
            else:
                await self._sleep(
                    self._uniform(
                        self._config.piggyback_delay_min, self._config.piggyback_delay_max
                    )
                )

            posted = await self._engine.reply_as_agent(
                channel, thread_ts, text, persona, project_context
            )
            self._record_reply(channel, thread_ts, persona)
            replied.append(persona.id)

            if posted and index == len(participants) - 1:
                await self.follow_agent_mentions(
                    posted, channel, thread_ts, personas, project_context, persona.id
                )
        return replied

    async def recover_persona_from_history(
        self,
        channel: str,
        thread_ts: str,
        personas: Sequence[AgentPersona],
    ) -> AgentPersona | None:
        """Most recent persona that posted in a thread, by display name.

        Covers threads whose owner was forgotten, e.g. after a restart.
        """
        try:
            history = await self._chat.get_thread_history(
                channel, thread_ts, limit=HISTORY_RECOVERY_LIMIT
            )
        except ChatPostError:
            return None

        by_name = {p.name.lower(): p for p in personas}
        for message in reversed(history):
            if message.username and message.username.lower() in by_name:
                return by_name[message.username.lower()]
        return None
