"""Multi-persona discussion engine.

A discussion is opened for a :class:`Trigger` (PR review, build failure,
issue review, ...). The engine posts an opener, lets a small panel of
personas contribute in bounded rounds, and then asks the lead persona to
close it out. Rounds within one discussion run strictly in sequence and
the thread never grows past ``max_thread_replies`` persona replies.
"""

from __future__ import annotations

import asyncio
import random
import re
import time
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from agent_huddle.core.humanizer import humanize_reply, is_skip_message, looks_garbled
from agent_huddle.core.job_spawner import JobParams
from agent_huddle.core.message_parser import (
    normalize_text,
    resolve_by_plain_name,
    resolve_mentioned_personas,
)
from agent_huddle.core.personas import find_dev, find_lead, get_participating_personas
from agent_huddle.core.prompts import (
    build_ad_hoc_reply_prompt,
    build_consensus_prompt,
    build_contribution_prompt,
    build_issue_verdict_prompt,
    build_opening_message,
    build_proactive_prompt,
    format_thread_history,
    parse_decision,
)
from agent_huddle.models.discussion import (
    Contribution,
    Discussion,
    DiscussionOutcome,
    DiscussionStatus,
    Skipped,
    Spoke,
    ThreadMessage,
    Trigger,
    TriggerType,
)
from agent_huddle.models.persona import AgentPersona, Project
from agent_huddle.models.requests import JobName
from agent_huddle.utils.async_helpers import ChatPostError, HuddleError
from agent_huddle.utils.safe_subprocess import GHCliError
from agent_huddle.utils.security import SecurityError

if TYPE_CHECKING:
    from agent_huddle.config.schema import DeliberationConfig
    from agent_huddle.core.context_fetcher import ContextFetcher
    from agent_huddle.core.job_spawner import JobSpawner
    from agent_huddle.interfaces.chat import ChatProvider
    from agent_huddle.interfaces.llm import CompletionProvider
    from agent_huddle.interfaces.registry import PersonaRepository, ProjectRegistry
    from agent_huddle.utils.safe_subprocess import SafeGHCli

log = structlog.get_logger()

Sleeper = Callable[[float], Awaitable[None]]

CONSENSUS_VERDICTS = ("APPROVE", "CHANGES", "HUMAN")
ISSUE_VERDICTS = ("READY", "CLOSE", "DRAFT")
ISSUE_REF_PATTERN = re.compile(r"^([^/\s]+)/([^#\s]+)#(\d+)$")

ROUND_HISTORY_LIMIT = 10
CONSENSUS_HISTORY_LIMIT = 20
AD_HOC_HISTORY_LIMIT = 10
AD_HOC_MAX_TOKENS = 1024
MIN_REPLIES_FOR_NEXT_ROUND = 3


def count_thread_replies(messages: Sequence[ThreadMessage]) -> int:
    """Replies in a thread, not counting its root message."""
    return max(0, len(messages) - 1)


def choose_round_contributors(
    personas: Sequence[AgentPersona], max_count: int
) -> list[AgentPersona]:
    """Pick who speaks this round, leaving the lead for the closing call.

    The lead only contributes when fewer than two other personas exist.
    """
    if max_count <= 0:
        return []

    lead = find_lead(personas)
    if lead is None:
        return list(personas[:max_count])

    non_lead = [p for p in personas if p.id != lead.id]
    candidates = non_lead if len(non_lead) >= 2 else list(personas)
    return candidates[:max_count]


class DeliberationEngine:
    """Runs discussions and ad-hoc persona replies.

    Args:
        chat: Chat provider for posts and thread history
        llm: Completion provider
        personas: Source of active personas
        config: Round, reply and delay bounds
        context_fetcher: Adds a PR diff excerpt to code-less PR reviews
        job_spawner: Used to re-run review with feedback and move issues
        gh: gh CLI wrapper for closing issues
        projects: Registry used to resolve a project's channel binding
        sleep: Awaitable sleep, injected so tests never wait
        rng: Random source for delays and phrasing cadence
        clock: Monotonic clock used by the replay guard
    """

    def __init__(
        self,
        chat: ChatProvider,
        llm: CompletionProvider,
        personas: PersonaRepository,
        config: DeliberationConfig,
        *,
        context_fetcher: ContextFetcher | None = None,
        job_spawner: JobSpawner | None = None,
        gh: SafeGHCli | None = None,
        projects: ProjectRegistry | None = None,
        sleep: Sleeper = asyncio.sleep,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._chat = chat
        self._llm = llm
        self._personas = personas
        self._config = config
        self._context_fetcher = context_fetcher
        self._job_spawner = job_spawner
        self._gh = gh
        self._projects = projects
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock

        self._latest: dict[str, Discussion] = {}
        self._by_thread: dict[tuple[str, str], Discussion] = {}
        self._in_flight: dict[str, asyncio.Task[Discussion | None]] = {}
        self._emoji_cadence: dict[str, int] = {}

    # -- lookup ----------------------------------------------------------------

    def get_active(self, channel: str, thread_ts: str) -> Discussion | None:
        discussion = self._by_thread.get((channel, thread_ts))
        if discussion is None or discussion.is_closed:
            return None
        return discussion

    # -- posting helpers ---------------------------------------------------------

    async def _post(
        self,
        channel: str,
        text: str,
        persona: AgentPersona,
        thread_ts: str | None = None,
    ) -> str | None:
        try:
            return await self._chat.post_as_persona(channel, text, persona, thread_ts=thread_ts)
        except ChatPostError as e:
            log.warning("persona_post_failed", persona=persona.name, channel=channel, error=str(e))
            return None

    async def _post_to(self, discussion: Discussion, text: str, persona: AgentPersona) -> bool:
        ts = await self._post(discussion.channel_id, text, persona, discussion.thread_ts)
        if ts is None:
            return False
        discussion.transcript.append(ThreadMessage(text=text, username=persona.name, ts=ts))
        return True

    async def _human_delay(self) -> None:
        await self._sleep(
            self._rng.uniform(self._config.reply_delay_min, self._config.reply_delay_max)
        )

    async def _history(self, discussion: Discussion, limit: int) -> list[ThreadMessage]:
        """Thread history from chat, or our own transcript when chat is unavailable."""
        try:
            return await self._chat.get_thread_history(
                discussion.channel_id, discussion.thread_ts, limit=limit
            )
        except ChatPostError as e:
            log.debug("thread_history_unavailable", thread_ts=discussion.thread_ts, error=str(e))
            return list(discussion.transcript[-limit:])

    def _humanize_for_post(
        self, channel: str, thread_ts: str, persona: AgentPersona, raw: str
    ) -> str:
        key = f"{channel}:{thread_ts}:{persona.id}"
        count = self._emoji_cadence.get(key, 0) + 1
        self._emoji_cadence[key] = count

        # Emoji about every 3rd message per persona and thread, non-facial every 9th
        if self._rng.random() < 0.35:
            max_sentences = 1
        elif self._rng.random() < 0.6:
            max_sentences = 2
        else:
            max_sentences = 3

        return humanize_reply(
            raw,
            allow_emoji=count % 3 == 0,
            allow_non_facial_emoji=count % 9 == 0,
            max_sentences=max_sentences,
            max_chars=280 + self._rng.randrange(160),
        )

    # -- lifecycle ---------------------------------------------------------------

    def _close(
        self,
        discussion: Discussion,
        status: DiscussionStatus,
        outcome: DiscussionOutcome,
    ) -> None:
        discussion.status = status
        discussion.outcome = outcome
        log.info(
            "discussion_closed",
            trigger=str(discussion.trigger.type),
            ref=discussion.trigger.ref,
            status=str(status),
            outcome=str(outcome),
            rounds=discussion.round,
        )

    def _resolve_channel(self, trigger: Trigger) -> str | None:
        if trigger.channel_id:
            return trigger.channel_id
        if self._projects is None:
            return None
        for project in self._projects.get_all():
            if str(project.path) == trigger.project_path and project.channel_id:
                return project.channel_id
        return None

    def _resolve_project(self, project_path: str) -> Project:
        if self._projects is not None:
            for project in self._projects.get_all():
                if str(project.path) == project_path:
                    return project
        path = Path(project_path)
        return Project(name=path.name, path=path)

    async def start_discussion(self, trigger: Trigger) -> Discussion | None:
        """Open (or join) the discussion for ``trigger`` and run it to a close.

        Concurrent calls for the same trigger share one run. A trigger whose
        discussion is still active, or was opened less than
        ``replay_guard_seconds`` ago, is not started again; the existing
        discussion is returned instead. The window counts from the opening.
        Issue reviews skip it since the router's review cooldown gates them.

        Returns:
            The discussion, or None if it could not be opened (no channel,
            no personas, or the opener failed to post).
        """
        key = trigger.key
        running = self._in_flight.get(key)
        if running is not None:
            return await running

        task = asyncio.ensure_future(self._start_discussion(trigger))
        self._in_flight[key] = task
        try:
            return await task
        finally:
            if self._in_flight.get(key) is task:
                del self._in_flight[key]

    async def _start_discussion(self, trigger: Trigger) -> Discussion | None:
        started_at = self._clock()
        latest = self._latest.get(trigger.key)
        if latest is not None:
            if not latest.is_closed:
                return latest
            # Issue reviews are gated by the router's own cooldown
            if (
                trigger.type != TriggerType.ISSUE_REVIEW
                and started_at - latest.started_at < self._config.replay_guard_seconds
            ):
                log.info("discussion_replay_suppressed", trigger=str(trigger.type), ref=trigger.ref)
                return latest

        personas = self._personas.get_active()
        participants = get_participating_personas(trigger.type, personas)

        if self._context_fetcher is not None:
            trigger = await self._context_fetcher.enrich_trigger(trigger)

        channel = self._resolve_channel(trigger)
        if channel is None:
            log.warning("discussion_channel_unresolved", trigger=str(trigger.type), ref=trigger.ref)
            return None

        opener = find_dev(participants) or (participants[0] if participants else None)
        if opener is None:
            log.warning("discussion_without_personas", trigger=str(trigger.type), ref=trigger.ref)
            return None

        opening_text = build_opening_message(trigger)
        if trigger.thread_ts:
            thread_ts = trigger.thread_ts
            contributors: list[str] = []
        else:
            posted_ts = await self._post(channel, opening_text, opener)
            if posted_ts is None:
                return None
            thread_ts = posted_ts
            contributors = [opener.id]

        discussion = Discussion(
            trigger=trigger,
            channel_id=channel,
            thread_ts=thread_ts,
            max_rounds=self._config.max_rounds,
            contributors=contributors,
            started_at=started_at,
        )
        if contributors:
            discussion.transcript.append(
                ThreadMessage(text=opening_text, username=opener.name, ts=thread_ts)
            )
        self._latest[trigger.key] = discussion
        self._by_thread[(channel, thread_ts)] = discussion

        log.info(
            "discussion_started",
            trigger=str(trigger.type),
            ref=trigger.ref,
            channel=channel,
            participants=[p.name for p in participants],
        )

        if contributors:
            await self._human_delay()

        # Without an opener every participant reviews
        reviewers = participants if trigger.thread_ts else [
            p for p in participants if p.id != opener.id
        ]
        await self._run_round(discussion, reviewers, opening_text)
        await self._evaluate_consensus(discussion)
        return discussion

    # -- rounds ------------------------------------------------------------------

    def _take_pinned(self, discussion: Discussion) -> list[AgentPersona]:
        if not discussion.pinned_persona_ids:
            return []
        active = {p.id: p for p in self._personas.get_active()}
        pinned = [active[pid] for pid in discussion.pinned_persona_ids if pid in active]
        discussion.pinned_persona_ids.clear()
        return pinned

    async def _run_round(
        self,
        discussion: Discussion,
        personas: Sequence[AgentPersona],
        fallback_context: str,
        focus: str = "",
    ) -> int:
        """Collect up to ``max_contributions_per_round`` messages.

        Returns:
            Number of messages posted.
        """
        history = await self._history(discussion, ROUND_HISTORY_LIMIT)
        history_text = format_thread_history(history) or fallback_context
        seen = {key for key in (normalize_text(m.text) for m in history) if key}

        budget = max(0, self._config.max_thread_replies - count_thread_replies(history) - 1)
        if budget <= 0:
            return 0

        cap = min(self._config.max_contributions_per_round, budget)
        contributors = self._take_pinned(discussion)
        for persona in choose_round_contributors(personas, cap):
            if persona not in contributors:
                contributors.append(persona)
        contributors = contributors[:budget]

        posted = 0
        for persona in contributors:
            if posted >= budget or discussion.is_closed:
                break

            result = await self._contribute(discussion, persona, history_text, seen, focus)
            if isinstance(result, Skipped):
                log.debug("contribution_skipped", persona=persona.name, reason=result.reason)
                continue

            if not await self._post_to(discussion, result.message, persona):
                continue

            if persona.id not in discussion.contributors:
                discussion.contributors.append(persona.id)
            seen.add(normalize_text(result.message))
            posted += 1
            log.info(
                "persona_contributed",
                persona=persona.name,
                round=discussion.round,
                trigger=str(discussion.trigger.type),
            )

            history = [*history, ThreadMessage(text=result.message, username=persona.name)]
            history_text = format_thread_history(history) or history_text
            await self._human_delay()

        return posted

    async def _contribute(
        self,
        discussion: Discussion,
        persona: AgentPersona,
        history_text: str,
        seen: set[str],
        focus: str = "",
    ) -> Contribution:
        prompt = build_contribution_prompt(
            persona,
            discussion.trigger,
            history_text,
            discussion.round,
            discussion.max_rounds,
            focus=focus,
            context_limit=self._config.context_char_limit,
        )
        try:
            raw = await self._llm.complete(prompt, persona=persona)
        except HuddleError as e:
            log.warning("contribution_failed", persona=persona.name, error=str(e))
            return Skipped("ai_error")

        if not raw.strip() or is_skip_message(raw):
            return Skipped("skip")
        if looks_garbled(raw):
            return Skipped("garbled")

        message = self._humanize_for_post(
            discussion.channel_id, discussion.thread_ts, persona, raw
        )
        if not message or is_skip_message(message):
            return Skipped("skip")

        normalized = normalize_text(message)
        if not normalized or normalized in seen:
            return Skipped("duplicate")
        return Spoke(message)

    # -- consensus ---------------------------------------------------------------

    async def _ask_lead(
        self, lead: AgentPersona, prompt: str, fallback: str
    ) -> str:
        try:
            return await self._llm.complete(prompt, persona=lead)
        except HuddleError as e:
            log.warning("consensus_evaluation_failed", persona=lead.name, error=str(e))
            return fallback

    async def _post_closer(
        self,
        discussion: Discussion,
        lead: AgentPersona,
        text: str,
        max_sentences: int = 1,
    ) -> None:
        message = humanize_reply(text, allow_emoji=False, max_sentences=max_sentences)
        if message and not is_skip_message(message):
            await self._post_to(discussion, message, lead)

    async def _evaluate_consensus(self, discussion: Discussion) -> None:
        """Let the lead approve, request another round, or escalate.

        Loops instead of recursing: each CHANGES verdict that still has room
        runs one more round and re-evaluates.
        """
        while not discussion.is_closed:
            if discussion.trigger.type == TriggerType.ISSUE_REVIEW:
                await self._evaluate_issue_verdict(discussion)
                return

            personas = self._personas.get_active()
            lead = find_lead(personas)
            if lead is None:
                self._close(discussion, DiscussionStatus.CONSENSUS, DiscussionOutcome.APPROVED)
                return

            history = await self._history(discussion, CONSENSUS_HISTORY_LIMIT)
            replies_left = max(
                0, self._config.max_thread_replies - count_thread_replies(history)
            )
            if replies_left <= 0:
                self._close(discussion, DiscussionStatus.BLOCKED, DiscussionOutcome.HUMAN_NEEDED)
                return

            prompt = build_consensus_prompt(
                lead, format_thread_history(history), discussion.round, discussion.max_rounds
            )
            raw = await self._ask_lead(lead, prompt, "HUMAN: AI evaluation failed")
            verdict, message = parse_decision(raw, CONSENSUS_VERDICTS, fallback="HUMAN")

            if verdict == "APPROVE":
                await self._post_closer(discussion, lead, message or "Clean. Ship it.")
                self._close(discussion, DiscussionStatus.CONSENSUS, DiscussionOutcome.APPROVED)
                return

            if (
                verdict == "CHANGES"
                and discussion.round < discussion.max_rounds
                and replies_left >= MIN_REPLIES_FOR_NEXT_ROUND
            ):
                await self._post_closer(
                    discussion, lead, message or "Need one more pass on a couple items."
                )
                await self._human_delay()

                discussion.round += 1
                dev = find_dev(personas)
                participants = get_participating_personas(discussion.trigger.type, personas)
                reviewers = [p for p in participants if dev is None or p.id != dev.id]
                await self._run_round(discussion, reviewers, message, focus=message)
                continue

            if verdict == "CHANGES":
                await self._post_closer(
                    discussion,
                    lead,
                    f"Need changes before merge: {message}"
                    if message
                    else "Need changes before merge. Please address the thread notes.",
                    max_sentences=2,
                )
                self._close(
                    discussion, DiscussionStatus.CONSENSUS, DiscussionOutcome.CHANGES_REQUESTED
                )
                if discussion.trigger.type == TriggerType.PR_REVIEW:
                    # The closer used one reply; the notice needs another
                    await self._request_pr_refinement(
                        discussion, lead, message, announce=replies_left >= 2
                    )
                return

            await self._post_closer(
                discussion,
                lead,
                f"Need a human decision: {message}"
                if message
                else "Need a human decision on this one.",
            )
            self._close(discussion, DiscussionStatus.BLOCKED, DiscussionOutcome.HUMAN_NEEDED)
            return

    async def _request_pr_refinement(
        self,
        discussion: Discussion,
        lead: AgentPersona,
        changes: str,
        announce: bool = True,
    ) -> None:
        """Send the PR back through review with the lead's notes as feedback."""
        pr_number = discussion.trigger.ref
        if announce:
            await self._post_to(
                discussion, f"Sending PR #{pr_number} back through with the notes.", lead
            )
        if self._job_spawner is None:
            log.warning("pr_refinement_unavailable", pr=pr_number)
            return

        await self._human_delay()
        project = self._resolve_project(discussion.trigger.project_path)
        await self._job_spawner.spawn_job(
            JobName.REVIEW,
            project,
            discussion.channel_id,
            discussion.thread_ts,
            lead,
            JobParams(
                pr_number=pr_number,
                feedback={"prNumber": pr_number, "changes": changes},
            ),
        )

    async def _evaluate_issue_verdict(self, discussion: Discussion) -> None:
        personas = self._personas.get_active()
        lead = find_lead(personas)
        if lead is None:
            self._close(discussion, DiscussionStatus.CONSENSUS, DiscussionOutcome.DRAFT)
            return

        history = await self._history(discussion, CONSENSUS_HISTORY_LIMIT)
        prompt = build_issue_verdict_prompt(lead, format_thread_history(history))
        raw = await self._ask_lead(
            lead, prompt, "DRAFT: AI evaluation failed, leaving in Draft for manual review"
        )
        verdict, message = parse_decision(raw, ISSUE_VERDICTS, fallback="DRAFT")

        if verdict == "READY":
            await self._post_closer(discussion, lead, message or "Looks good. Moving to Ready.")
            self._close(discussion, DiscussionStatus.CONSENSUS, DiscussionOutcome.READY)
        elif verdict == "CLOSE":
            await self._post_closer(discussion, lead, message or "Closing this. Not worth tracking.")
            self._close(discussion, DiscussionStatus.CONSENSUS, DiscussionOutcome.CLOSE)
        else:
            await self._post_closer(discussion, lead, message or "Leaving in Draft. Needs more context.")
            self._close(discussion, DiscussionStatus.CONSENSUS, DiscussionOutcome.DRAFT)
            return

        await self._apply_issue_verdict(discussion, verdict, personas)

    async def _apply_issue_verdict(
        self,
        discussion: Discussion,
        verdict: str,
        personas: Sequence[AgentPersona],
    ) -> None:
        """Move a READY issue on the board, or close a CLOSE issue on GitHub."""
        executor = find_dev(personas) or find_lead(personas)
        if executor is None:
            return

        match = ISSUE_REF_PATTERN.match(discussion.trigger.ref)
        if not match:
            log.warning("issue_ref_unparseable", ref=discussion.trigger.ref)
            return
        owner, repo, number = match.groups()

        if verdict == "READY":
            if self._job_spawner is None:
                return
            moved = await self._job_spawner.move_issue(
                discussion.trigger.project_path, number, "Ready"
            )
            if moved:
                await self._post_to(discussion, f"Moved #{number} to Ready.", executor)
            return

        if self._gh is None:
            log.warning("issue_close_unavailable", issue=discussion.trigger.ref)
            return
        try:
            await self._gh.close_issue(f"{owner}/{repo}", number)
        except (GHCliError, SecurityError) as e:
            log.warning("issue_close_failed", issue=discussion.trigger.ref, error=str(e))
            return
        await self._post_to(discussion, f"Closed #{number}.", executor)

    # -- humans and ad-hoc replies -----------------------------------------------

    def handle_human_message(
        self,
        channel: str,
        thread_ts: str,
        text: str,
        user: str | None = None,
    ) -> bool:
        """Fold a human reply into an active discussion.

        The message joins the transcript and any persona it names is pinned
        for the next round. A round already in progress is not interrupted.

        Returns:
            True if the thread belongs to an active discussion.
        """
        discussion = self.get_active(channel, thread_ts)
        if discussion is None:
            return False

        discussion.transcript.append(ThreadMessage(text=text, username=user or "Human"))

        personas = self._personas.get_active()
        named = resolve_mentioned_personas(text, personas) + resolve_by_plain_name(text, personas)
        for persona in named:
            if persona.id not in discussion.pinned_persona_ids:
                discussion.pinned_persona_ids.append(persona.id)

        log.info(
            "human_joined_discussion",
            ref=discussion.trigger.ref,
            pinned=list(discussion.pinned_persona_ids),
        )
        return True

    async def reply_as_agent(
        self,
        channel: str,
        thread_ts: str,
        incoming_text: str,
        persona: AgentPersona,
        project_context: str = "",
    ) -> str:
        """Reply as ``persona`` in any thread, outside a formal discussion.

        Returns:
            The posted text, or '' when nothing was posted.
        """
        try:
            history = await self._chat.get_thread_history(
                channel, thread_ts, limit=AD_HOC_HISTORY_LIMIT
            )
        except ChatPostError:
            history = []

        seen = {key for key in (normalize_text(m.text) for m in history) if key}
        prompt = build_ad_hoc_reply_prompt(
            persona, incoming_text, format_thread_history(history), project_context
        )

        try:
            raw = await self._llm.complete(prompt, persona=persona, max_tokens=AD_HOC_MAX_TOKENS)
        except HuddleError as e:
            log.error("ad_hoc_reply_failed", persona=persona.name, error=str(e))
            return ""

        if not raw.strip() or is_skip_message(raw) or looks_garbled(raw):
            return ""

        message = self._humanize_for_post(channel, thread_ts, persona, raw)
        normalized = normalize_text(message)
        if is_skip_message(message) or not normalized or normalized in seen:
            return ""

        if await self._post(channel, message, persona, thread_ts) is None:
            return ""
        log.info("ad_hoc_reply_posted", persona=persona.name, channel=channel)
        return message

    async def post_proactive_message(
        self,
        channel: str,
        persona: AgentPersona,
        project_context: str = "",
    ) -> str:
        """Post an unprompted top-level message from ``persona``.

        Returns:
            The posted text, or '' when the persona had nothing to say.
        """
        prompt = build_proactive_prompt(persona, project_context)
        try:
            raw = await self._llm.complete(prompt, persona=persona)
        except HuddleError as e:
            log.debug("proactive_message_failed", persona=persona.name, error=str(e))
            return ""

        if not raw.strip() or is_skip_message(raw) or looks_garbled(raw):
            return ""

        message = self._humanize_for_post(channel, "proactive", persona, raw)
        if not message or is_skip_message(message):
            return ""
        if await self._post(channel, message, persona) is None:
            return ""
        log.info("proactive_message_posted", persona=persona.name, channel=channel)
        return message
