"""In-memory conversation state shared by the router, listener and engine.

A single :class:`ThreadStateManager` is built at startup and passed by
reference to every component that needs it. Nothing here is persisted:
cooldowns are anti-spam, so losing them on restart only means a thread may
get one extra reply.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import structlog
from cachetools import FIFOCache, TTLCache

from agent_huddle.config.schema import StateConfig
from agent_huddle.models.persona import AgentPersona

log = structlog.get_logger()


@dataclass(frozen=True)
class ReplyRecord:
    """Last persona that replied in a thread, and when."""

    persona_id: str
    at: float


def _thread_key(channel: str, thread_ts: str) -> str:
    return f"{channel}:{thread_ts}"


class ThreadStateManager:
    """Activity timestamps, cooldowns and persona continuity.

    All times come from ``clock`` (seconds, monotonic by default) so tests
    can drive expiry without sleeping.

    Example:
        state = ThreadStateManager()
        if state.remember_message_key(event.inbound_key):
            ...  # first delivery
    """

    def __init__(
        self,
        config: StateConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or StateConfig()
        self._clock = clock
        self._rng = rng or random.Random()

        self._processed_keys: FIFOCache[str, bool] = FIFOCache(
            maxsize=self._config.max_processed_keys
        )
        self._ad_hoc_owners: TTLCache[str, str] = TTLCache(
            maxsize=self._config.max_tracked_threads,
            ttl=self._config.ad_hoc_thread_ttl,
            timer=clock,
        )
        self._channel_activity: dict[str, float] = {}
        self._persona_replies: dict[str, dict[str, float]] = {}
        self._last_reply: dict[str, ReplyRecord] = {}
        self._reviewed_issues: dict[str, float] = {}

    @property
    def rng(self) -> random.Random:
        return self._rng

    def now(self) -> float:
        return self._clock()

    # -- dedup ---------------------------------------------------------------

    def remember_message_key(self, key: str) -> bool:
        """Record an inbound key. Returns False if it was already seen."""
        if key in self._processed_keys:
            return False
        self._processed_keys[key] = True
        return True

    # -- channel activity ----------------------------------------------------

    def mark_channel_activity(self, channel: str) -> None:
        self._channel_activity[channel] = self._clock()

    def last_channel_activity(self, channel: str) -> float | None:
        return self._channel_activity.get(channel)

    # -- persona replies -----------------------------------------------------

    def mark_persona_reply(self, channel: str, thread_ts: str, persona_id: str) -> None:
        key = _thread_key(channel, thread_ts)
        now = self._clock()
        self._persona_replies.setdefault(key, {})[persona_id] = now
        self._last_reply[key] = ReplyRecord(persona_id=persona_id, at=now)

    def last_reply(self, channel: str, thread_ts: str) -> ReplyRecord | None:
        return self._last_reply.get(_thread_key(channel, thread_ts))

    def is_persona_on_cooldown(self, channel: str, thread_ts: str, persona_id: str) -> bool:
        replied_at = self._persona_replies.get(_thread_key(channel, thread_ts), {}).get(persona_id)
        if replied_at is None:
            return False
        return self._clock() - replied_at < self._config.persona_reply_cooldown

    # -- ad-hoc thread ownership ---------------------------------------------

    def remember_ad_hoc_owner(self, channel: str, thread_ts: str, persona_id: str) -> None:
        self._ad_hoc_owners[_thread_key(channel, thread_ts)] = persona_id

    def get_ad_hoc_owner(
        self,
        channel: str,
        thread_ts: str,
        personas: Sequence[AgentPersona],
    ) -> AgentPersona | None:
        """Persona that owns this thread, if the binding has not expired."""
        persona_id = self._ad_hoc_owners.get(_thread_key(channel, thread_ts))
        if persona_id is None:
            return None
        return next((p for p in personas if p.id == persona_id and p.is_active), None)

    # -- issue review cooldown -----------------------------------------------

    def is_on_review_cooldown(self, issue_url: str) -> bool:
        reviewed_at = self._reviewed_issues.get(issue_url)
        if reviewed_at is None:
            return False
        return self._clock() - reviewed_at < self._config.issue_review_cooldown

    def mark_reviewed(self, issue_url: str) -> None:
        self._reviewed_issues[issue_url] = self._clock()

    # -- persona selection ---------------------------------------------------

    def find_persona_by_name(
        self, personas: Sequence[AgentPersona], name: str
    ) -> AgentPersona | None:
        target = name.strip().lower()
        return next(
            (p for p in personas if p.is_active and p.name.strip().lower() == target),
            None,
        )

    def pick_random_persona(
        self,
        personas: Sequence[AgentPersona],
        channel: str | None = None,
        thread_ts: str | None = None,
        excluding: Sequence[str] = (),
    ) -> AgentPersona | None:
        """Uniform pick over active personas.

        When a thread is given, personas still on reply cooldown there are
        avoided unless nobody else is available.
        """
        pool = [p for p in personas if p.is_active and p.id not in excluding]
        if not pool:
            return None

        if channel and thread_ts:
            rested = [
                p for p in pool if not self.is_persona_on_cooldown(channel, thread_ts, p.id)
            ]
            if rested:
                pool = rested

        return self._rng.choice(pool)

    def random_int(self, low: int, high: int) -> int:
        """Random integer in ``[low, high]``."""
        return self._rng.randint(low, high)
