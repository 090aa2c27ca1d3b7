"""Core business logic components.

This module exports the main business logic classes:
- InteractionListener: Receives chat events and dispatches them
- TriggerRouter: Turns command-shaped messages into jobs and reviews
- DeliberationEngine: Runs multi-round persona discussions
- CascadingReplyHandler: Paces ad-hoc replies and their follow-ups
- JobSpawner: Runs CLI jobs and reports back in the thread
- ThreadStateManager: Process-local dedup, cooldowns and thread owners
- ProactiveLoop: Idle-channel messages and scheduled code audits
- JobOutcomeNotifier: Opens discussions for finished runs
"""

from agent_huddle.core.deliberation import DeliberationEngine
from agent_huddle.core.job_spawner import JobSpawner
from agent_huddle.core.listener import InteractionListener, create_listener
from agent_huddle.core.notify import JobOutcomeNotifier
from agent_huddle.core.proactive import ProactiveLoop
from agent_huddle.core.reply_timing import CascadingReplyHandler
from agent_huddle.core.thread_state import ThreadStateManager
from agent_huddle.core.trigger_router import TriggerRouter

__all__ = [
    "CascadingReplyHandler",
    "DeliberationEngine",
    "InteractionListener",
    "JobOutcomeNotifier",
    "JobSpawner",
    "ProactiveLoop",
    "ThreadStateManager",
    "TriggerRouter",
    "create_listener",
]
