"""AI fallback for figuring out which project a message is about."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

import structlog

from agent_huddle.utils.async_helpers import HuddleError

if TYPE_CHECKING:
    from agent_huddle.interfaces.llm import CompletionProvider
    from agent_huddle.models.persona import Project

log = structlog.get_logger()

SYSTEM_PROMPT = (
    "You are a routing agent for a software team's Slack bot.\n"
    "Your only job is to identify which registered project a message refers to.\n"
    'Output exactly one project name from the provided list, or "none" if the message '
    "does not clearly refer to any project.\n"
    "No other text. No punctuation. No explanation."
)

MESSAGE_CHAR_LIMIT = 500
MATCHER_MAX_TOKENS = 64


async def match_project_to_message(
    llm: CompletionProvider,
    message: str,
    projects: Sequence[Project],
) -> Project | None:
    """Ask the model which project ``message`` refers to.

    With no projects there is nothing to pick; with one, it is the answer.
    Any error, "none", or a name that is not registered yields None.
    """
    if not projects:
        return None
    if len(projects) == 1:
        return projects[0]

    project_list = "\n".join(f"- {p.name}" for p in projects)
    prompt = (
        f"Registered projects:\n{project_list}\n\n"
        f'Message:\n"{message.strip()[:MESSAGE_CHAR_LIMIT]}"\n\n'
        'Respond with one project name or "none".'
    )

    try:
        raw = await llm.complete(prompt, system=SYSTEM_PROMPT, max_tokens=MATCHER_MAX_TOKENS)
    except HuddleError as e:
        log.warning("project_match_failed", error=str(e))
        return None

    words = raw.strip().split()
    answer = words[0].lower() if words else ""
    if not answer or answer == "none":
        return None

    matched = next((p for p in projects if p.name.lower() == answer), None)
    if matched is None:
        log.warning("project_match_unrecognized", raw=raw[:100])
    return matched
