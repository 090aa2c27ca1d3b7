"""Launch job CLI and provider CLI processes on behalf of a persona.

Each launched process is watched by a background task that posts a
completion or failure status in the originating thread when it exits,
then hands a :class:`JobOutcome` to any completion listeners. Spawning
never raises: a process that cannot start produces a status message
instead.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from agent_huddle.models.requests import JobName, ProviderName, ProviderRequest
from agent_huddle.utils.async_helpers import ChatPostError
from agent_huddle.utils.safe_subprocess import GHCliError, run_command
from agent_huddle.utils.security import sanitize_output

if TYPE_CHECKING:
    from agent_huddle.config.schema import JobsConfig
    from agent_huddle.interfaces.chat import ChatProvider
    from agent_huddle.models.persona import AgentPersona, Project

log = structlog.get_logger()

ProcessFactory = Callable[..., Awaitable[asyncio.subprocess.Process]]
ReportHandler = Callable[[str], Awaitable[None]]

READ_CHUNK_SIZE = 4096
FAILURE_DETAIL_LINES = 4
AUDIT_REPORT_PATH = Path("logs") / "audit-report.md"
NO_ISSUES_MARKER = "NO_ISSUES_FOUND"

CONFLICT_FEEDBACK = "Resolve merge conflicts and stabilize the PR for re-review."


class JobCallbacks(Protocol):
    """Activity bookkeeping invoked after every status post."""

    def mark_channel_activity(self, channel: str) -> None: ...

    def mark_persona_reply(self, channel: str, thread_ts: str, persona_id: str) -> None: ...


@dataclass(frozen=True)
class JobParams:
    """Optional targeting for a job run."""

    pr_number: str | None = None
    issue_number: str | None = None
    fix_conflicts: bool = False
    feedback: dict[str, Any] | None = None  # Passed through as NW_SLACK_FEEDBACK


@dataclass(frozen=True)
class JobOutcome:
    """A finished job, handed to completion listeners."""

    job: JobName
    project: Project
    channel: str
    thread_ts: str
    params: JobParams
    exit_code: int | None
    output: str  # Sanitized, newest max_output_chars only

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


JobListener = Callable[[JobOutcome], Awaitable[None]]


def read_fresh_report(path: Path, not_before: float) -> str | None:
    """Contents of an audit report written at or after ``not_before`` (epoch seconds).

    A missing, stale or empty report, or one that says nothing was found,
    gives None.
    """
    try:
        modified = path.stat().st_mtime
        report = path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return None
    # Old report left behind by an audit that exited early
    if modified + 1.0 < not_before:
        return None
    if not report or report == NO_ISSUES_MARKER:
        return None
    return report


def last_meaningful_lines(output: str, max_lines: int = FAILURE_DETAIL_LINES) -> str:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return " | ".join(lines[-max_lines:])


def job_done_message(job: JobName, pr_number: str | None) -> str:
    if job == JobName.REVIEW:
        return f"Review done on PR #{pr_number}." if pr_number else "Review done."
    if job == JobName.QA:
        return f"QA pass done on PR #{pr_number}." if pr_number else "QA pass done."
    return f"Run finished for PR #{pr_number}." if pr_number else "Run finished."


def provider_label(provider: ProviderName) -> str:
    return "Claude" if provider == ProviderName.CLAUDE else "Codex"


def provider_command(request: ProviderRequest) -> list[str]:
    if request.provider == ProviderName.CLAUDE:
        return ["claude", "-p", request.prompt, "--dangerously-skip-permissions"]
    return ["codex", "--quiet", "--yolo", "--prompt", request.prompt]


class JobSpawner:
    """Starts CLI subprocesses and reports their outcome in chat.

    Args:
        chat: Chat provider used for status posts
        config: Job settings (CLI command, output cap, extra env)
        create_process: Process factory, ``asyncio.create_subprocess_exec``
            unless a test substitutes one
    """

    def __init__(
        self,
        chat: ChatProvider,
        config: JobsConfig,
        create_process: ProcessFactory = asyncio.create_subprocess_exec,
    ) -> None:
        self._chat = chat
        self._config = config
        self._create_process = create_process
        self._active_tasks: set[asyncio.Task[int | None]] = set()
        self._listeners: list[JobListener] = []

    @property
    def active_count(self) -> int:
        return len(self._active_tasks)

    def add_completion_listener(self, listener: JobListener) -> None:
        """Call ``listener`` with the outcome of every job that ran to exit."""
        self._listeners.append(listener)

    async def _notify(self, outcome: JobOutcome) -> None:
        for listener in self._listeners:
            try:
                await listener(outcome)
            except Exception:
                log.exception(
                    "job_listener_failed", job=str(outcome.job), project=outcome.project.name
                )

    def _build_env(self, extra: dict[str, str]) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self._config.extra_env)
        env["NW_EXECUTION_CONTEXT"] = "agent"
        env.update(extra)
        return env

    def _job_env(self, project: Project, params: JobParams) -> dict[str, str]:
        extra = {"NW_PROJECT_HINT": project.name}
        if params.pr_number:
            extra["NW_TARGET_PR"] = params.pr_number
        if params.issue_number:
            extra["NW_TARGET_ISSUE"] = params.issue_number

        feedback = params.feedback
        if feedback is None and params.fix_conflicts:
            feedback = {
                "source": "slack",
                "kind": "merge_conflict_resolution",
                "prNumber": params.pr_number or "",
                "changes": CONFLICT_FEEDBACK,
            }
        if feedback is not None:
            extra["NW_SLACK_FEEDBACK"] = json.dumps(feedback)
        return self._build_env(extra)

    async def _post_status(
        self,
        channel: str,
        thread_ts: str,
        persona: AgentPersona,
        text: str,
        callbacks: JobCallbacks | None,
    ) -> None:
        try:
            await self._chat.post_as_persona(channel, text, persona, thread_ts=thread_ts)
        except ChatPostError as e:
            log.warning("job_status_post_failed", channel=channel, error=str(e))
        if callbacks is not None:
            callbacks.mark_channel_activity(channel)
            callbacks.mark_persona_reply(channel, thread_ts, persona.id)

    async def _start(
        self, cmd: list[str], cwd: Path, env: dict[str, str]
    ) -> asyncio.subprocess.Process:
        return await self._create_process(
            *cmd,
            cwd=str(cwd),
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

    async def _collect_output(self, process: asyncio.subprocess.Process) -> str:
        """Read combined output, keeping only the newest ``max_output_chars``."""
        limit = self._config.max_output_chars
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        output = ""
        if process.stdout is not None:
            while chunk := await process.stdout.read(READ_CHUNK_SIZE):
                output += decoder.decode(chunk)
                if len(output) > limit:
                    output = output[-limit:]
            output = (output + decoder.decode(b"", final=True))[-limit:]
        await process.wait()
        return output

    def _track(self, coro: Awaitable[int | None], name: str) -> asyncio.Task[int | None]:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._active_tasks.add(task)
        task.add_done_callback(self._active_tasks.discard)
        return task

    async def spawn_job(
        self,
        job: JobName,
        project: Project,
        channel: str,
        thread_ts: str,
        persona: AgentPersona,
        params: JobParams | None = None,
        callbacks: JobCallbacks | None = None,
    ) -> asyncio.Task[int | None] | None:
        """Start ``<cli> <job>`` in the project directory.

        Returns:
            The task watching the process, or None if it could not start.
        """
        params = params or JobParams()
        cmd = [*self._config.cli_command, str(job)]
        bound = log.bind(persona=persona.name, project=project.name, job=str(job), pr=params.pr_number)

        try:
            process = await self._start(cmd, project.path, self._job_env(project, params))
        except OSError as e:
            bound.warning("job_spawn_failed", command=cmd, error=str(e))
            await self._post_status(
                channel,
                thread_ts,
                persona,
                f"Couldn't kick off that {job}. Error logged, looking into it.",
                callbacks,
            )
            return None

        bound.info("job_spawned", command=cmd, pid=process.pid)

        async def monitor() -> int | None:
            output = await self._collect_output(process)
            code = process.returncode
            bound.info("job_finished", exit_code=code)

            if code == 0:
                text = job_done_message(job, params.pr_number)
            else:
                detail = last_meaningful_lines(sanitize_output(output))
                if detail:
                    bound.warning("job_failure_detail", detail=detail)
                pr_ref = f" on PR #{params.pr_number}" if params.pr_number else ""
                text = f"Hit a snag running {job}{pr_ref}. Logged the details, looking into it."

            await self._post_status(channel, thread_ts, persona, text, callbacks)
            await self._notify(
                JobOutcome(
                    job=job,
                    project=project,
                    channel=channel,
                    thread_ts=thread_ts,
                    params=params,
                    exit_code=code,
                    output=sanitize_output(output),
                )
            )
            return code

        return self._track(monitor(), name=f"job_{job}_{project.name}")

    async def spawn_provider_request(
        self,
        request: ProviderRequest,
        project: Project,
        channel: str,
        thread_ts: str,
        persona: AgentPersona,
        callbacks: JobCallbacks | None = None,
    ) -> asyncio.Task[int | None] | None:
        """Run a provider CLI with a free-form prompt in the project directory."""
        label = provider_label(request.provider)
        cmd = provider_command(request)
        bound = log.bind(persona=persona.name, project=project.name, provider=str(request.provider))

        try:
            process = await self._start(cmd, project.path, self._build_env({}))
        except OSError as e:
            bound.warning("provider_spawn_failed", error=str(e))
            await self._post_status(
                channel,
                thread_ts,
                persona,
                f"Couldn't start {label}. Error logged, looking into it.",
                callbacks,
            )
            return None

        bound.info("provider_spawned", pid=process.pid)

        async def monitor() -> int | None:
            output = await self._collect_output(process)
            code = process.returncode
            bound.info("provider_finished", exit_code=code)

            if code == 0:
                text = f"{label} command finished."
            else:
                detail = last_meaningful_lines(sanitize_output(output))
                if detail:
                    bound.warning("provider_failure_detail", detail=detail)
                text = f"{label} hit a snag. Logged the details, looking into it."

            await self._post_status(channel, thread_ts, persona, text, callbacks)
            return code

        return self._track(monitor(), name=f"provider_{request.provider}_{project.name}")

    async def spawn_code_watch_audit(
        self,
        project: Project,
        channel: str,
        on_report: ReportHandler,
        callbacks: JobCallbacks | None = None,
    ) -> asyncio.Task[int | None] | None:
        """Run ``<cli> audit`` and pass a fresh report to ``on_report``.

        Audits are silent in chat: nothing is posted when the process fails
        or finds nothing.
        """
        cmd = [*self._config.cli_command, "audit"]
        bound = log.bind(project=project.name, channel=channel)
        if not project.path.exists():
            bound.warning("audit_skipped_missing_path", path=str(project.path))
            return None

        started_at = time.time()
        try:
            process = await self._start(cmd, project.path, self._build_env({}))
        except OSError as e:
            bound.warning("audit_spawn_failed", command=cmd, error=str(e))
            return None

        bound.info("audit_spawned", command=cmd, pid=process.pid)

        async def monitor() -> int | None:
            output = await self._collect_output(process)
            code = process.returncode
            bound.info("audit_finished", exit_code=code)
            if code != 0:
                detail = last_meaningful_lines(sanitize_output(output))
                if detail:
                    bound.warning("audit_failure_detail", detail=detail)
                return code

            report = await asyncio.to_thread(
                read_fresh_report, project.path / AUDIT_REPORT_PATH, started_at
            )
            if report is None:
                bound.info("audit_report_unavailable")
                return code

            try:
                await on_report(report)
            except Exception:
                bound.exception("audit_report_handler_failed")
                return code
            if callbacks is not None:
                callbacks.mark_channel_activity(channel)
            return code

        return self._track(monitor(), name=f"audit_{project.name}")

    async def move_issue(self, project_path: Path | str, issue_number: str, column: str) -> bool:
        """Move a tracker issue to a board column through the CLI.

        Best effort: failures are logged and reported as False.
        """
        cmd = [
            *self._config.cli_command,
            "board",
            "move-issue",
            str(issue_number),
            "--column",
            column,
        ]
        try:
            result = await run_command(
                cmd,
                cwd=project_path,
                timeout=self._config.board_move_timeout,
                env=self._build_env({}),
            )
        except (GHCliError, OSError) as e:
            log.warning("board_move_failed", issue=issue_number, column=column, error=str(e))
            return False

        if not result.success:
            log.warning(
                "board_move_failed",
                issue=issue_number,
                column=column,
                error=sanitize_output(result.stderr or result.stdout)[-500:],
            )
            return False

        log.info("board_move_succeeded", issue=issue_number, column=column)
        return True

    async def wait_for_jobs(self, timeout: float) -> None:
        """Wait for running monitors, cancelling any still running after ``timeout``."""
        if not self._active_tasks:
            return
        _, pending = await asyncio.wait(set(self._active_tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
