"""Interaction listener: the long-running loop that ties everything together.

This module implements the InteractionListener, which:
- Manages the chat connection lifecycle (connect, listen, disconnect)
- Runs one task per inbound event
- Filters, deduplicates and routes events to commands or conversation
- Handles graceful shutdown on signals (SIGTERM, SIGINT)
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Coroutine, Sequence
from typing import TYPE_CHECKING, Any

import structlog

from agent_huddle.core.context_fetcher import ContextFetcher
from agent_huddle.core.deliberation import DeliberationEngine
from agent_huddle.core.job_spawner import JobSpawner
from agent_huddle.core.message_parser import (
    extract_generic_urls,
    extract_github_issue_urls,
    is_ambient_greeting,
    resolve_by_plain_name,
    resolve_mentioned_personas,
    should_ignore,
)
from agent_huddle.core.notify import JobOutcomeNotifier
from agent_huddle.core.personas import select_follow_up_persona
from agent_huddle.core.proactive import ProactiveLoop
from agent_huddle.core.prompts import build_project_context
from agent_huddle.core.reply_timing import CascadingReplyHandler
from agent_huddle.core.thread_state import ThreadStateManager
from agent_huddle.core.trigger_router import TriggerRouter
from agent_huddle.models.event import EventType
from agent_huddle.utils.async_helpers import HuddleError
from agent_huddle.utils.logging import bind_context, clear_context
from agent_huddle.utils.safe_subprocess import GHCliError, SafeGHCli

if TYPE_CHECKING:
    from agent_huddle.config.schema import HuddleConfig
    from agent_huddle.interfaces.chat import ChatProvider
    from agent_huddle.interfaces.llm import CompletionProvider
    from agent_huddle.interfaces.registry import PersonaRepository, ProjectRegistry
    from agent_huddle.models.event import InboundEvent
    from agent_huddle.models.persona import AgentPersona

log = structlog.get_logger()


class ListenerError(HuddleError):
    """Base exception for listener errors."""


class StartupError(ListenerError):
    """Failed to start the listener."""


class InteractionListener:
    """Receives chat events and decides who, if anyone, answers.

    Commands go to the :class:`TriggerRouter`. Everything else falls
    through, in order, to an active discussion in the thread, personas
    mentioned by name, the persona already talking in the thread, a group
    greeting, and finally a direct mention of the bot.

    Example:
        listener = await create_listener(config)
        await listener.start()  # Blocks until shutdown signal
    """

    def __init__(
        self,
        config: HuddleConfig,
        chat: ChatProvider,
        engine: DeliberationEngine,
        router: TriggerRouter,
        reply_handler: CascadingReplyHandler,
        state: ThreadStateManager,
        personas: PersonaRepository,
        projects: ProjectRegistry,
        context_fetcher: ContextFetcher | None = None,
        job_spawner: JobSpawner | None = None,
        proactive: ProactiveLoop | None = None,
    ) -> None:
        self._config = config
        self._chat = chat
        self._engine = engine
        self._router = router
        self._reply_handler = reply_handler
        self._state = state
        self._personas = personas
        self._projects = projects
        self._context_fetcher = context_fetcher
        self._job_spawner = job_spawner
        self._proactive = proactive

        self._active_tasks: set[asyncio.Task[Any]] = set()

        # Lifecycle state
        self._running = False
        self._shutdown_event: asyncio.Event | None = None

        # Statistics
        self._events_processed = 0
        self._errors_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, int]:
        return {
            "events_processed": self._events_processed,
            "errors_count": self._errors_count,
            "active_tasks": len(self._active_tasks),
        }

    async def start(self) -> None:
        """Connect, install signal handlers, and listen until shutdown.

        Raises:
            StartupError: If startup fails
        """
        if self._running:
            log.warning("listener_already_running")
            return

        log.info(
            "listener_starting",
            personas=[p.name for p in self._personas.get_active()],
            projects=[p.name for p in self._projects.get_all()],
        )

        try:
            self._shutdown_event = asyncio.Event()
            await self._chat.connect()
            log.info("chat_provider_connected", bot_user_id=self._chat.bot_user_id)

            self._setup_signal_handlers()
            if self._proactive is not None:
                self._proactive.start()
            self._running = True
            log.info("listener_started")

            await self._listen()

        except Exception as e:
            log.exception("listener_startup_failed", error=str(e))
            await self._cleanup()
            raise StartupError(f"Failed to start listener: {e}") from e

    async def stop(self) -> None:
        """Stop listening, drain in-flight work, and disconnect."""
        if not self._running:
            log.warning("listener_not_running")
            return

        log.info("listener_stopping", active_tasks=len(self._active_tasks))
        if self._shutdown_event:
            self._shutdown_event.set()

        if self._proactive is not None:
            await self._proactive.stop()
        await self._wait_for_tasks()
        await self._cleanup()

        self._running = False
        log.info(
            "listener_stopped",
            events_processed=self._events_processed,
            errors=self._errors_count,
        )

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._active_tasks.add(task)
        task.add_done_callback(self._active_tasks.discard)
        return task

    async def _listen(self) -> None:
        log.info("starting_event_listener")
        try:
            async for event in self._chat.listen():
                if self._shutdown_event and self._shutdown_event.is_set():
                    log.info("shutdown_signal_received_stopping_listener")
                    break
                self._spawn(self.process_event(event), name=f"event_{event.inbound_key}")
        except asyncio.CancelledError:
            log.info("event_listener_cancelled")

    async def process_event(self, event: InboundEvent) -> bool:
        """Handle one event, logging and absorbing any error."""
        bind_context(channel=event.channel, ts=event.ts)
        try:
            handled = await self.handle_event(event)
            self._events_processed += 1
            return handled
        except Exception as e:
            log.exception("event_processing_error", error=str(e))
            self._errors_count += 1
            return False
        finally:
            clear_context()

    # -- event handling ----------------------------------------------------------

    async def handle_event(self, event: InboundEvent) -> bool:
        """Filter, deduplicate and dispatch one event.

        Returns:
            True if anything acted on the event.
        """
        bot_id = self._chat.bot_user_id
        if should_ignore(event, bot_id):
            log.debug("event_ignored", type=event.type, subtype=event.subtype)
            return False

        # The app_mention twin of this message carries it
        if event.type == EventType.MESSAGE and bot_id and f"<@{bot_id}>" in event.text:
            log.debug("mirrored_mention_ignored")
            return False

        if not self._state.remember_message_key(event.inbound_key):
            log.debug("duplicate_event_skipped", key=event.inbound_key)
            return False
        self._state.mark_channel_activity(event.channel)

        log.info("inbound_event", type=event.type, user=event.user, text=event.text[:80])

        if await self._router.try_route(event):
            return True
        return await self._handle_conversation(event)

    async def _handle_conversation(self, event: InboundEvent) -> bool:
        channel, thread_ts, text = event.channel, event.reply_thread_ts, event.text

        if self._engine.handle_human_message(channel, thread_ts, text, event.user):
            return True

        personas = self._personas.get_active()
        if not personas:
            return False

        mentioned = resolve_mentioned_personas(text, personas) or resolve_by_plain_name(
            text, personas
        )
        if mentioned:
            context = await self._build_context(channel, text)
            await self._reply_as_mentioned(event, mentioned, personas, context)
            return True

        owner = self._state.get_ad_hoc_owner(channel, thread_ts, personas)
        if owner is None and not event.is_root:
            owner = await self._reply_handler.recover_persona_from_history(
                channel, thread_ts, personas
            )
        if owner is not None:
            persona = select_follow_up_persona(owner, personas, text)
            if persona.id != owner.id:
                log.info("ad_hoc_thread_handoff", from_persona=owner.name, to_persona=persona.name)
            context = await self._build_context(channel, text)
            await self._reply_and_cascade(event, persona, personas, context)
            return True

        if is_ambient_greeting(text):
            context = await self._build_context(channel, text)
            await self._reply_handler.engage_multiple_personas(
                channel, thread_ts, event.ts, text, personas, context
            )
            return True

        if event.type == EventType.APP_MENTION:
            persona = self._state.pick_random_persona(personas, channel, thread_ts)
            if persona is not None:
                context = await self._build_context(channel, text)
                await self._reply_and_cascade(event, persona, personas, context)
                return True

        return False

    async def _build_context(self, channel: str, text: str) -> str:
        """Project line plus summaries of any GitHub or web links in the message."""
        context = build_project_context(channel, self._projects.get_all())
        if self._context_fetcher is None:
            return context

        github_urls = extract_github_issue_urls(text)
        generic_urls = extract_generic_urls(text)
        if github_urls:
            github = await self._context_fetcher.fetch_github_context(github_urls)
            if github:
                context += f"\n\nReferenced GitHub content:\n{github}"
        if generic_urls:
            links = await self._context_fetcher.fetch_url_summaries(generic_urls)
            if links:
                context += f"\n\nReferenced links:\n{links}"
        return context.strip()

    async def _reply_as_mentioned(
        self,
        event: InboundEvent,
        mentioned: Sequence[AgentPersona],
        personas: Sequence[AgentPersona],
        context: str,
    ) -> None:
        channel, thread_ts = event.channel, event.reply_thread_ts
        last_posted, last_persona_id = "", ""

        for persona in mentioned:
            if self._state.is_persona_on_cooldown(channel, thread_ts, persona.id):
                log.debug("persona_on_cooldown", persona=persona.name)
                continue
            await self._reply_handler.apply_human_timing(channel, event.ts, persona)
            posted = await self._engine.reply_as_agent(
                channel, thread_ts, event.text, persona, context
            )
            self._state.mark_persona_reply(channel, thread_ts, persona.id)
            if posted:
                last_posted, last_persona_id = posted, persona.id

        self._state.remember_ad_hoc_owner(channel, thread_ts, mentioned[0].id)
        if last_posted:
            await self._reply_handler.follow_agent_mentions(
                last_posted, channel, thread_ts, personas, context, last_persona_id
            )

    async def _reply_and_cascade(
        self,
        event: InboundEvent,
        persona: AgentPersona,
        personas: Sequence[AgentPersona],
        context: str,
    ) -> None:
        channel, thread_ts = event.channel, event.reply_thread_ts

        if not await self._reply_handler.apply_human_timing(
            channel, event.ts, persona, thread_ts
        ):
            return

        posted = await self._engine.reply_as_agent(channel, thread_ts, event.text, persona, context)
        self._state.mark_persona_reply(channel, thread_ts, persona.id)
        self._state.remember_ad_hoc_owner(channel, thread_ts, persona.id)

        await self._reply_handler.follow_agent_mentions(
            posted, channel, thread_ts, personas, context, persona.id
        )
        self._spawn(
            self._reply_handler.maybe_piggyback(
                channel, thread_ts, event.text, personas, context, persona.id
            ),
            name=f"piggyback_{channel}_{thread_ts}",
        )

    # -- shutdown ----------------------------------------------------------------

    async def _wait_for_tasks(self) -> None:
        """Wait for in-flight work, cancelling whatever outlives the timeout."""
        timeout = self._config.runtime.shutdown_timeout
        pending_work = self._active_tasks | self._router.background_tasks
        if pending_work:
            log.info("waiting_for_active_tasks", count=len(pending_work))
            done, pending = await asyncio.wait(pending_work, timeout=timeout)
            if pending:
                log.warning("cancelling_pending_tasks", count=len(pending))
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            log.info("tasks_completed", completed=len(done), cancelled=len(pending))

        if self._job_spawner is not None:
            await self._job_spawner.wait_for_jobs(timeout)

    async def _cleanup(self) -> None:
        log.debug("cleaning_up_resources")
        if self._proactive is not None:
            await self._proactive.stop()
        try:
            await self._chat.disconnect()
            log.info("chat_provider_disconnected")
        except Exception as e:
            log.warning("chat_disconnect_error", error=str(e))

        if self._context_fetcher is not None:
            await self._context_fetcher.aclose()
        self._active_tasks.clear()

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s: asyncio.create_task(self._handle_signal(s)),
                sig,
            )
            log.debug("signal_handler_registered", signal=sig.name)

    async def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("received_signal", signal=sig.name)
        await self.stop()


async def create_listener(config: HuddleConfig) -> InteractionListener:
    """Build adapters and core components from configuration.

    Raises:
        ValueError: If a configured provider is missing its settings
    """
    from agent_huddle.adapters.registry import StaticRegistry

    chat = _create_chat_adapter(config)
    llm = _create_llm_adapter(config)
    registry = StaticRegistry.from_config(config)
    gh = _create_gh_cli()

    state = ThreadStateManager(config.state)
    context_fetcher = ContextFetcher(gh)
    job_spawner = JobSpawner(chat, config.jobs)
    engine = DeliberationEngine(
        chat,
        llm,
        registry,
        config.deliberation,
        context_fetcher=context_fetcher,
        job_spawner=job_spawner,
        gh=gh,
        projects=registry,
    )
    if config.deliberation.discuss_job_outcomes:
        job_spawner.add_completion_listener(JobOutcomeNotifier(engine))
    proactive = None
    if config.proactive.enabled:
        proactive = ProactiveLoop(
            config.proactive, engine, job_spawner, state, registry, registry
        )
    reply_handler = CascadingReplyHandler(chat, engine, state, config.timing)
    bot_names = config.chat.slack.bot_names if config.chat.slack else ["night-watch", "nw"]
    router = TriggerRouter(
        chat,
        llm,
        engine,
        job_spawner,
        state,
        reply_handler,
        registry,
        registry,
        context_fetcher=context_fetcher,
        bot_names=bot_names,
    )
    return InteractionListener(
        config,
        chat,
        engine,
        router,
        reply_handler,
        state,
        registry,
        registry,
        context_fetcher=context_fetcher,
        job_spawner=job_spawner,
        proactive=proactive,
    )


def _create_chat_adapter(config: HuddleConfig) -> ChatProvider:
    provider = config.chat.provider
    if provider == "slack":
        if not config.chat.slack:
            raise ValueError("Slack configuration required when provider is 'slack'")
        # Import here to avoid loading unnecessary dependencies
        from agent_huddle.adapters.chat.slack import SlackAdapter

        return SlackAdapter(config.chat.slack)

    raise ValueError(f"Unsupported chat provider: {provider}")


def _create_llm_adapter(config: HuddleConfig) -> CompletionProvider:
    provider = config.llm.provider
    if provider == "anthropic":
        if not config.llm.anthropic:
            raise ValueError("Anthropic configuration required when provider is 'anthropic'")
        from agent_huddle.adapters.llm.anthropic import AnthropicAdapter

        return AnthropicAdapter(config.llm.anthropic)

    raise ValueError(f"Unsupported LLM provider: {provider}")


def _create_gh_cli() -> SafeGHCli | None:
    try:
        return SafeGHCli()
    except GHCliError as e:
        log.warning("gh_cli_unavailable", detail=str(e))
        return None


__all__ = [
    "InteractionListener",
    "ListenerError",
    "StartupError",
    "build_project_context",
    "create_listener",
]
