"""Data models for inbound chat events."""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class EventType(StrEnum):
    """Slack event types the listener subscribes to."""

    MESSAGE = "message"
    APP_MENTION = "app_mention"


def build_inbound_key(channel: str, ts: str, event_type: str | None) -> str:
    """Dedup key for one delivery of one event type.

    ``message`` and ``app_mention`` deliveries of the same post get
    distinct keys.
    """
    return f"{channel}:{ts}:{event_type or EventType.MESSAGE}"


@dataclass(frozen=True)
class InboundEvent:
    """A single event delivered by the chat transport.

    Events may be redelivered; ``inbound_key`` identifies a delivery.
    """

    type: str
    channel: str
    ts: str
    user: str | None = None
    text: str = ""
    thread_ts: str | None = None
    subtype: str | None = None
    bot_id: str | None = None

    @property
    def inbound_key(self) -> str:
        return build_inbound_key(self.channel, self.ts, self.type)

    @property
    def is_root(self) -> bool:
        """True for a top-level channel message (not a thread reply)."""
        return self.thread_ts is None

    @property
    def reply_thread_ts(self) -> str:
        """Thread a reply to this event belongs in."""
        return self.thread_ts or self.ts

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "InboundEvent | None":
        """Build an event from a raw Slack payload.

        Accepts either the bare event dict or an envelope carrying it under
        ``event`` (Events API and Socket Mode both do this). Returns None
        when the payload lacks a channel or timestamp.
        """
        event = payload.get("event") if isinstance(payload.get("event"), dict) else payload

        channel = event.get("channel")
        ts = event.get("ts")
        if not channel or not ts:
            return None

        return cls(
            type=event.get("type") or EventType.MESSAGE,
            channel=channel,
            ts=ts,
            user=event.get("user"),
            text=event.get("text") or "",
            thread_ts=event.get("thread_ts"),
            subtype=event.get("subtype"),
            bot_id=event.get("bot_id"),
        )
