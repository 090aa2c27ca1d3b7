"""Route inbound chat messages to jobs, provider runs and issue reviews.

Handlers are tried in a fixed priority order and the first one that
claims the message wins:

1. Direct provider request ("claude, refactor the parser")
2. Job request ("nw review PR #26")
3. Issue pickup ("please pick up https://github.com/o/r/issues/42")
4. Issue review (a bare issue link posted at the top level)
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Sequence
from typing import TYPE_CHECKING

import structlog

from agent_huddle.core.job_spawner import JobParams
from agent_huddle.core.message_parser import (
    normalize_text,
    parse_issue_pickup_request,
    parse_issue_reviewable,
    parse_job_request,
    parse_provider_request,
    strip_mentions,
)
from agent_huddle.core.personas import find_dev, find_lead, find_qa
from agent_huddle.core.project_matcher import match_project_to_message
from agent_huddle.models.discussion import Trigger, TriggerType
from agent_huddle.models.event import EventType
from agent_huddle.models.requests import JobName, JobRequest, ProviderName
from agent_huddle.utils.async_helpers import ChatPostError

if TYPE_CHECKING:
    from agent_huddle.core.context_fetcher import ContextFetcher
    from agent_huddle.core.deliberation import DeliberationEngine
    from agent_huddle.core.job_spawner import JobSpawner
    from agent_huddle.core.reply_timing import CascadingReplyHandler
    from agent_huddle.core.thread_state import ThreadStateManager
    from agent_huddle.interfaces.chat import ChatProvider
    from agent_huddle.interfaces.llm import CompletionProvider
    from agent_huddle.interfaces.registry import PersonaRepository, ProjectRegistry
    from agent_huddle.models.event import InboundEvent
    from agent_huddle.models.persona import AgentPersona, Project
    from agent_huddle.models.requests import ProviderRequest

log = structlog.get_logger()

DEFAULT_BOT_NAMES = ("night-watch", "nw")

PROVIDER_COMMAND_PATTERN = re.compile(
    r"^(?:can\s+(?:you|someone|anyone)\s+)?(?:please\s+)?"
    r"(?:(?:run|use|invoke|trigger|ask)\s+)?(?:claude|codex)\b",
    re.IGNORECASE,
)
TEAM_REQUEST_PATTERN = re.compile(r"\b(can someone|someone|anyone|please|need)\b", re.IGNORECASE)
BARE_JOB_VERB_PATTERN = re.compile(r"^(run|review|qa)\b", re.IGNORECASE)
NON_ALNUM_PATTERN = re.compile(r"[^a-z0-9]")

PROMPT_PREVIEW_CHARS = 120
IN_PROGRESS_COLUMN = "In Progress"


def bot_name_pattern(name: str) -> re.Pattern[str]:
    """Match a bot name at the start of normalized text; "night-watch" also matches "night watch"."""
    words = [re.escape(part) for part in name.lower().split("-")]
    return re.compile("^" + r"[-\s]?".join(words) + r"\b")


def normalize_project_ref(value: str) -> str:
    return NON_ALNUM_PATTERN.sub("", value.lower())


def resolve_project_by_hint(projects: Sequence[Project], hint: str) -> Project | None:
    """Match a free-text hint to a project.

    Tries, in order: exact name, exact path basename, then substring in
    either direction (name first, basename second). Comparison ignores
    case and punctuation.
    """
    wanted = normalize_project_ref(hint)
    if not wanted:
        return None

    def name(p: Project) -> str:
        return normalize_project_ref(p.name)

    def base(p: Project) -> str:
        return normalize_project_ref(p.basename)

    checks = (
        lambda p: name(p) == wanted,
        lambda p: base(p) == wanted,
        lambda p: wanted in name(p),
        lambda p: wanted in base(p),
        lambda p: bool(name(p)) and name(p) in wanted,
        lambda p: bool(base(p)) and base(p) in wanted,
    )
    for check in checks:
        match = next((p for p in projects if check(p)), None)
        if match is not None:
            return match
    return None


def resolve_target_project(
    channel: str,
    projects: Sequence[Project],
    hint: str | None = None,
) -> Project | None:
    """Project for a message without asking the model.

    An explicit hint is authoritative; otherwise the channel binding, or
    the only registered project.
    """
    if hint:
        return resolve_project_by_hint(projects, hint)
    bound = next((p for p in projects if p.channel_id == channel), None)
    if bound is not None:
        return bound
    return projects[0] if len(projects) == 1 else None


def build_job_acknowledgement(request: JobRequest) -> str:
    if request.job == JobName.REVIEW:
        pr = f", PR #{request.pr_number}" if request.pr_number else ""
        conflicts = ", including the conflicts" if request.fix_conflicts else ""
        return f"On it{pr}{conflicts}."
    if request.job == JobName.QA:
        return f"Running QA on #{request.pr_number}." if request.pr_number else "Running QA."
    return f"Starting the run for #{request.pr_number}." if request.pr_number else "Starting the run."


def build_provider_acknowledgement(request: ProviderRequest, project: Project) -> str:
    label = "Claude" if request.provider == ProviderName.CLAUDE else "Codex"
    compact = " ".join(request.prompt.split())
    if len(compact) > PROMPT_PREVIEW_CHARS:
        compact = f"{compact[: PROMPT_PREVIEW_CHARS - 3]}..."
    target = f" on {project.name}" if request.project_hint else ""
    return f'Running {label} directly{target}: "{compact}"'


class TriggerRouter:
    """Decides whether an inbound message is a command, and acts on it.

    Args:
        chat: Chat provider for acknowledgements
        llm: Completion provider for the project-matching fallback
        engine: Runs issue-review discussions
        job_spawner: Launches job and provider processes
        state: Shared thread state
        reply_handler: Human-like timing before acknowledgements
        personas: Source of active personas
        projects: Registered projects
        context_fetcher: Fetches issue bodies for reviews
        bot_names: Names that address the bot at the start of a message
    """

    def __init__(
        self,
        chat: ChatProvider,
        llm: CompletionProvider,
        engine: DeliberationEngine,
        job_spawner: JobSpawner,
        state: ThreadStateManager,
        reply_handler: CascadingReplyHandler,
        personas: PersonaRepository,
        projects: ProjectRegistry,
        context_fetcher: ContextFetcher | None = None,
        bot_names: Sequence[str] = DEFAULT_BOT_NAMES,
    ) -> None:
        self._chat = chat
        self._llm = llm
        self._engine = engine
        self._job_spawner = job_spawner
        self._state = state
        self._reply_handler = reply_handler
        self._personas = personas
        self._projects = projects
        self._context_fetcher = context_fetcher
        self._bot_name_patterns = [bot_name_pattern(name) for name in bot_names if name.strip()]
        self._background: set[asyncio.Task[object]] = set()

    @property
    def background_tasks(self) -> set[asyncio.Task[object]]:
        return self._background

    async def try_route(self, event: InboundEvent) -> bool:
        """Run handlers in priority order.

        Returns:
            True if a handler claimed the event.
        """
        if await self._route_provider_request(event):
            return True
        if await self._route_job_request(event):
            return True
        if await self._route_issue_pickup(event):
            return True
        return event.is_root and await self._route_issue_review(event)

    # -- helpers -----------------------------------------------------------------

    def _normalized(self, event: InboundEvent) -> str:
        return normalize_text(strip_mentions(event.text), preserve_paths=True)

    def is_addressed_to_bot(self, event: InboundEvent) -> bool:
        if event.type == EventType.APP_MENTION:
            return True
        text = self._normalized(event)
        return any(pattern.search(text) for pattern in self._bot_name_patterns)

    def _pick_persona(
        self,
        personas: Sequence[AgentPersona],
        preferred: AgentPersona | None,
        event: InboundEvent,
    ) -> AgentPersona | None:
        if preferred is not None:
            return preferred
        picked = self._state.pick_random_persona(personas, event.channel, event.reply_thread_ts)
        if picked is not None:
            return picked
        return personas[0] if personas else None

    async def _resolve_project(self, text: str, channel: str, hint: str | None) -> Project | None:
        projects = self._projects.get_all()
        project = resolve_target_project(channel, projects, hint)
        if project is not None:
            return project
        return await match_project_to_message(self._llm, text, projects)

    async def _post(self, event: InboundEvent, text: str, persona: AgentPersona) -> None:
        thread_ts = event.reply_thread_ts
        try:
            await self._chat.post_as_persona(event.channel, text, persona, thread_ts=thread_ts)
        except ChatPostError as e:
            log.warning("acknowledgement_post_failed", persona=persona.name, error=str(e))
        self._state.mark_channel_activity(event.channel)
        self._state.mark_persona_reply(event.channel, thread_ts, persona.id)

    async def _ask_which_project(self, event: InboundEvent, persona: AgentPersona) -> None:
        names = ", ".join(p.name for p in self._projects.get_all()) or "(none registered)"
        await self._post(event, f"Which project? Registered: {names}.", persona)

    async def _acknowledge(self, event: InboundEvent, persona: AgentPersona, text: str) -> None:
        await self._reply_handler.apply_human_timing(event.channel, event.ts, persona)
        await self._post(event, text, persona)
        self._state.remember_ad_hoc_owner(event.channel, event.reply_thread_ts, persona.id)

    # -- handlers ----------------------------------------------------------------

    async def _route_provider_request(self, event: InboundEvent) -> bool:
        request = parse_provider_request(event.text)
        if request is None:
            return False
        if not self.is_addressed_to_bot(event) and not PROVIDER_COMMAND_PATTERN.search(
            self._normalized(event)
        ):
            return False

        personas = self._personas.get_active()
        persona = self._pick_persona(personas, find_dev(personas), event)
        if persona is None:
            return False

        project = await self._resolve_project(event.text, event.channel, request.project_hint)
        if project is None:
            await self._ask_which_project(event, persona)
            return True

        log.info(
            "routing_provider_request",
            provider=str(request.provider),
            persona=persona.name,
            project=project.name,
        )
        await self._acknowledge(event, persona, build_provider_acknowledgement(request, project))
        await self._job_spawner.spawn_provider_request(
            request, project, event.channel, event.reply_thread_ts, persona, callbacks=self._state
        )
        return True

    async def _route_job_request(self, event: InboundEvent) -> bool:
        request = parse_job_request(event.text)
        if request is None:
            return False

        normalized = self._normalized(event)
        if not (
            self.is_addressed_to_bot(event)
            or request.pr_number
            or request.fix_conflicts
            or TEAM_REQUEST_PATTERN.search(normalized)
            or BARE_JOB_VERB_PATTERN.search(normalized)
        ):
            return False

        personas = self._personas.get_active()
        role_default = {
            JobName.RUN: find_dev,
            JobName.QA: find_qa,
            JobName.REVIEW: find_lead,
        }[request.job](personas)
        persona = self._pick_persona(personas, role_default, event)
        if persona is None:
            return False

        project = await self._resolve_project(event.text, event.channel, request.project_hint)
        if project is None:
            await self._ask_which_project(event, persona)
            return True

        log.info(
            "routing_job_request",
            job=str(request.job),
            persona=persona.name,
            project=project.name,
            pr=request.pr_number,
            fix_conflicts=request.fix_conflicts,
        )
        await self._acknowledge(event, persona, build_job_acknowledgement(request))
        await self._job_spawner.spawn_job(
            request.job,
            project,
            event.channel,
            event.reply_thread_ts,
            persona,
            JobParams(pr_number=request.pr_number, fix_conflicts=request.fix_conflicts),
            callbacks=self._state,
        )
        return True

    async def _route_issue_pickup(self, event: InboundEvent) -> bool:
        request = parse_issue_pickup_request(event.text)
        if request is None:
            return False
        if not self.is_addressed_to_bot(event) and not TEAM_REQUEST_PATTERN.search(
            self._normalized(event)
        ):
            return False

        personas = self._personas.get_active()
        persona = self._pick_persona(personas, find_dev(personas), event)
        if persona is None:
            return False

        project = await self._resolve_project(event.text, event.channel, request.repo_hint)
        if project is None:
            await self._ask_which_project(event, persona)
            return True

        log.info(
            "routing_issue_pickup",
            issue=request.issue_number,
            persona=persona.name,
            project=project.name,
        )
        await self._acknowledge(
            event,
            persona,
            f"On it, picking up #{request.issue_number}. Starting the run now.",
        )
        await self._job_spawner.move_issue(project.path, request.issue_number, IN_PROGRESS_COLUMN)
        await self._job_spawner.spawn_job(
            JobName.RUN,
            project,
            event.channel,
            event.reply_thread_ts,
            persona,
            JobParams(issue_number=request.issue_number),
            callbacks=self._state,
        )
        return True

    async def _route_issue_review(self, event: InboundEvent) -> bool:
        reviewable = parse_issue_reviewable(event.text)
        if reviewable is None:
            return False

        if self._state.is_on_review_cooldown(reviewable.issue_url):
            log.debug("issue_review_cooldown_active", url=reviewable.issue_url)
            return False

        projects = self._projects.get_all()
        project = resolve_target_project(
            event.channel, projects, reviewable.repo_hint
        ) or resolve_target_project(event.channel, projects)
        if project is None:
            return False

        context = ""
        if self._context_fetcher is not None:
            context = await self._context_fetcher.fetch_issue_context(
                reviewable.owner, reviewable.repo_hint, reviewable.issue_number
            )

        trigger = Trigger(
            type=TriggerType.ISSUE_REVIEW,
            ref=reviewable.issue_ref,
            context=context or f"GitHub Issue: {reviewable.issue_url}",
            project_path=str(project.path),
            channel_id=event.channel,
            thread_ts=event.ts,
        )

        self._state.mark_reviewed(reviewable.issue_url)
        log.info("starting_issue_review", ref=reviewable.issue_ref, channel=event.channel)

        task: asyncio.Task[object] = asyncio.create_task(
            self._engine.start_discussion(trigger), name=f"issue_review_{reviewable.issue_ref}"
        )
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return True

    def _on_background_done(self, task: asyncio.Task[object]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.warning("background_discussion_failed", task=task.get_name(), error=str(error))
