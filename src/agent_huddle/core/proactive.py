"""Background loop for unprompted activity.

Every sweep, a persona may speak up in a project channel that has gone
quiet, and projects whose audit is due get ``<cli> audit`` run in the
background. An audit report that finds something opens a ``code_watch``
discussion.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from functools import partial
from typing import TYPE_CHECKING

import structlog

from agent_huddle.core.notify import build_audit_trigger
from agent_huddle.core.prompts import build_project_context

if TYPE_CHECKING:
    from agent_huddle.config.schema import ProactiveConfig
    from agent_huddle.core.deliberation import DeliberationEngine
    from agent_huddle.core.job_spawner import JobSpawner
    from agent_huddle.core.thread_state import ThreadStateManager
    from agent_huddle.interfaces.registry import PersonaRepository, ProjectRegistry
    from agent_huddle.models.persona import Project

log = structlog.get_logger()


class ProactiveLoop:
    """Periodic idle-channel messages and code-watch audits.

    Args:
        config: Idle, interval and sweep timing
        engine: Posts proactive messages and runs audit discussions
        job_spawner: Launches audits
        state: Channel activity and the shared clock and random source
        personas: Source of active personas
        projects: Registered projects; only channel-bound ones are swept
        sleep: Awaitable sleep between sweeps
    """

    def __init__(
        self,
        config: ProactiveConfig,
        engine: DeliberationEngine,
        job_spawner: JobSpawner,
        state: ThreadStateManager,
        personas: PersonaRepository,
        projects: ProjectRegistry,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._engine = engine
        self._job_spawner = job_spawner
        self._state = state
        self._personas = personas
        self._projects = projects
        self._sleep = sleep

        self._task: asyncio.Task[None] | None = None
        self._last_proactive: dict[str, float] = {}
        self._last_audit: dict[str, float] = {}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="proactive_loop")
        log.info(
            "proactive_loop_started",
            sweep_interval=self._config.sweep_interval,
            code_watch=self._config.code_watch,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        log.info("proactive_loop_stopped")

    async def _run(self) -> None:
        while True:
            await self._sleep(self._config.sweep_interval)
            try:
                await self.sweep()
            except Exception:
                log.exception("proactive_sweep_failed")

    async def sweep(self) -> int:
        """Run one pass over all channel-bound projects.

        Returns:
            Number of proactive messages posted
        """
        personas = self._personas.get_active()
        if not personas:
            return 0

        all_projects = self._projects.get_all()
        bound = [(p, p.channel_id) for p in all_projects if p.channel_id]
        now = self._state.now()

        if self._config.code_watch:
            await self._run_code_watch(bound, now)

        posted = 0
        seen_channels: set[str] = set()
        for _project, channel in bound:
            if channel in seen_channels:
                continue
            seen_channels.add(channel)

            last_activity = self._state.last_channel_activity(channel)
            if last_activity is None:
                # Idle time counts from the first sweep that sees the channel
                self._state.mark_channel_activity(channel)
                continue
            if now - last_activity < self._config.idle_after:
                continue
            last_post = self._last_proactive.get(channel)
            if last_post is not None and now - last_post < self._config.min_interval:
                continue

            persona = self._state.rng.choice(personas)
            text = await self._engine.post_proactive_message(
                channel, persona, build_project_context(channel, all_projects)
            )
            self._last_proactive[channel] = now
            if text:
                self._state.mark_channel_activity(channel)
                posted += 1

        return posted

    async def _run_code_watch(self, bound: list[tuple[Project, str]], now: float) -> None:
        for project, channel in bound:
            key = str(project.path)
            last = self._last_audit.get(key)
            if last is not None and now - last < self._config.code_watch_interval:
                continue
            if not project.path.exists():
                continue

            self._last_audit[key] = now
            await self._job_spawner.spawn_code_watch_audit(
                project,
                channel,
                on_report=partial(self._discuss_audit, project, channel),
                callbacks=self._state,
            )

    async def _discuss_audit(self, project: Project, channel: str, report: str) -> None:
        log.info("audit_report_discussion", project=project.name, channel=channel)
        await self._engine.start_discussion(build_audit_trigger(report, project, channel))
