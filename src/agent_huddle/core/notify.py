"""Turn finished jobs and audit reports into discussion triggers.

A run that opens a PR gets a ``pr_review`` discussion and a run that
fails gets a ``build_failure`` one. Reviews and QA passes never open
discussions, so a review spawned by a discussion cannot start another.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import structlog

from agent_huddle.core.prompts import stable_hash
from agent_huddle.models.discussion import Trigger, TriggerType
from agent_huddle.models.requests import JobName

if TYPE_CHECKING:
    from agent_huddle.core.deliberation import DeliberationEngine
    from agent_huddle.core.job_spawner import JobOutcome
    from agent_huddle.models.persona import Project

log = structlog.get_logger()

PR_URL_PATTERN = re.compile(r"https://github\.com/[^/\s]+/[^/\s]+/pull/(\d+)")

FAILURE_CONTEXT_LINES = 12
AUDIT_CONTEXT_CHARS = 2000


def find_pull_request(output: str) -> tuple[str | None, str | None]:
    """Last PR URL in job output, with its number."""
    matches = list(PR_URL_PATTERN.finditer(output))
    if not matches:
        return None, None
    last = matches[-1]
    return last.group(0), last.group(1)


def tail_lines(output: str, max_lines: int) -> str:
    lines = [line.rstrip() for line in output.splitlines() if line.strip()]
    return "\n".join(lines[-max_lines:])


def build_discussion_trigger(outcome: JobOutcome) -> Trigger | None:
    """Trigger for a finished run, or None when it does not warrant one."""
    if outcome.job != JobName.RUN or outcome.exit_code is None:
        return None

    project = outcome.project
    channel = project.channel_id or outcome.channel
    pr_url, pr_number = find_pull_request(outcome.output)
    pr_number = pr_number or outcome.params.pr_number

    if outcome.succeeded:
        if not pr_number:
            return None
        return Trigger(
            type=TriggerType.PR_REVIEW,
            ref=pr_number,
            context=f"PR #{pr_number}: {project.name}",
            project_path=str(project.path),
            channel_id=channel,
            pr_url=pr_url,
        )

    if pr_number:
        ref = f"PR #{pr_number}"
    elif outcome.params.issue_number:
        ref = f"#{outcome.params.issue_number}"
    else:
        ref = project.name

    context = f"Project: {project.name}\nExit code: {outcome.exit_code}"
    detail = tail_lines(outcome.output, FAILURE_CONTEXT_LINES)
    if detail:
        context += f"\n\n{detail}"
    return Trigger(
        type=TriggerType.BUILD_FAILURE,
        ref=ref,
        context=context,
        project_path=str(project.path),
        channel_id=channel,
        pr_url=pr_url,
    )


def build_audit_trigger(report: str, project: Project, channel: str) -> Trigger:
    """``code_watch`` trigger for an audit report.

    The ref is derived from the report text, so re-running an audit that
    finds the same thing maps onto the same discussion.
    """
    return Trigger(
        type=TriggerType.CODE_WATCH,
        ref=f"audit-{stable_hash(report)}",
        context=f"Project: {project.name}\n\nAudit report:\n{report[:AUDIT_CONTEXT_CHARS]}",
        project_path=str(project.path),
        channel_id=channel,
    )


class JobOutcomeNotifier:
    """Completion listener that opens discussions for finished runs.

    Register with :meth:`JobSpawner.add_completion_listener`.
    """

    def __init__(self, engine: DeliberationEngine) -> None:
        self._engine = engine

    async def __call__(self, outcome: JobOutcome) -> None:
        trigger = build_discussion_trigger(outcome)
        if trigger is None:
            return

        log.info(
            "job_outcome_discussion",
            trigger=str(trigger.type),
            ref=trigger.ref,
            project=outcome.project.name,
            exit_code=outcome.exit_code,
        )
        await self._engine.start_discussion(trigger)
