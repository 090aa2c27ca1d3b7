"""Tests for the multi-persona discussion engine."""

from __future__ import annotations

import asyncio
import random
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import FakeClock, no_sleep

from agent_huddle.adapters.registry import StaticRegistry
from agent_huddle.config.schema import DeliberationConfig
from agent_huddle.core.deliberation import (
    DeliberationEngine,
    choose_round_contributors,
    count_thread_replies,
)
from agent_huddle.core.job_spawner import JobParams
from agent_huddle.models.discussion import (
    DiscussionOutcome,
    DiscussionStatus,
    ThreadMessage,
    Trigger,
    TriggerType,
)
from agent_huddle.models.persona import AgentPersona, Project
from agent_huddle.models.requests import JobName
from agent_huddle.utils.async_helpers import ChatPostError, CompletionError

PR_CONTEXT = "diff --git a/src/app.py b/src/app.py\n@@ -10,3 +10,4 @@ def fetch():"

REPLIES = {
    ("maya", 1): "The token in src/auth.py is logged on failure, that needs to go.",
    ("priya", 1): "No test covers the timeout branch in src/app.py.",
    ("maya", 2): "Redaction fix looks right to me now.",
    ("priya", 2): "Timeout test reads fine, I'm good.",
    ("dev", 2): "I'll add the missing test before merge.",
}


def script_llm(
    mock_llm: AsyncMock,
    verdicts: list[str],
    replies: dict[tuple[str, int], str] | None = None,
) -> list[tuple[str, str]]:
    """Answer contribution prompts per persona and round, closing prompts from ``verdicts``.

    Returns a list that collects ``(persona_id, prompt)`` for every call.
    """
    replies = REPLIES if replies is None else replies
    verdict_iter = iter(verdicts)
    calls: list[tuple[str, str]] = []

    async def complete(
        prompt: str,
        *,
        persona: AgentPersona | None = None,
        system: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        assert persona is not None
        calls.append((persona.id, prompt))
        if "You're wrapping up" in prompt:
            return next(verdict_iter)
        round_number = 2 if "Round: 2/" in prompt else 1
        return replies.get((persona.id, round_number), "SKIP")

    mock_llm.complete.side_effect = complete
    return calls


def posted_by(mock_chat: AsyncMock) -> list[str]:
    return [call.args[2].id for call in mock_chat.post_as_persona.await_args_list]


def posted_texts(mock_chat: AsyncMock) -> list[str]:
    return [call.args[1] for call in mock_chat.post_as_persona.await_args_list]


@pytest.fixture
def pr_trigger() -> Trigger:
    return Trigger(
        type=TriggerType.PR_REVIEW,
        ref="42",
        context=PR_CONTEXT,
        project_path="/srv/night-watch-cli",
        pr_url="https://github.com/acme/night-watch-cli/pull/42",
    )


@pytest.fixture
def issue_trigger() -> Trigger:
    return Trigger(
        type=TriggerType.ISSUE_REVIEW,
        ref="acme/widgets#12",
        context="GitHub Issue #12 [bug]: Crash on empty config (open)",
        project_path="/srv/night-watch-cli",
        channel_id="C1",
    )


@pytest.fixture
def engine(
    mock_chat: AsyncMock,
    mock_llm: AsyncMock,
    registry: StaticRegistry,
    deliberation_config: DeliberationConfig,
    mock_spawner: MagicMock,
    clock: FakeClock,
) -> DeliberationEngine:
    """Engine whose thread history falls back to its own transcript."""
    mock_chat.get_thread_history.side_effect = ChatPostError("history unavailable")
    return DeliberationEngine(
        mock_chat,
        mock_llm,
        registry,
        deliberation_config,
        job_spawner=mock_spawner,
        projects=registry,
        sleep=no_sleep,
        rng=random.Random(3),
        clock=clock,
    )


class TestHelpers:
    def test_count_thread_replies(self) -> None:
        assert count_thread_replies([]) == 0
        assert count_thread_replies([ThreadMessage("root")]) == 0
        assert count_thread_replies([ThreadMessage("root"), ThreadMessage("a")]) == 1

    def test_round_contributors_leave_lead_out(self, personas: list[AgentPersona]) -> None:
        chosen = choose_round_contributors(personas, 2)
        assert [p.id for p in chosen] == ["dev", "maya"]

    def test_lead_speaks_when_panel_is_small(
        self, carlos: AgentPersona, maya: AgentPersona
    ) -> None:
        assert choose_round_contributors([carlos, maya], 2) == [carlos, maya]

    def test_zero_budget(self, personas: list[AgentPersona]) -> None:
        assert choose_round_contributors(personas, 0) == []


class TestPrReview:
    """Test PR review discussions end to end."""

    @pytest.mark.asyncio
    async def test_approve_in_first_round(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        pr_trigger: Trigger,
    ) -> None:
        script_llm(mock_llm, ["APPROVE: Clean, ship it."])

        discussion = await engine.start_discussion(pr_trigger)

        assert discussion is not None
        assert discussion.status == DiscussionStatus.CONSENSUS
        assert discussion.outcome == DiscussionOutcome.APPROVED
        assert discussion.channel_id == "C1"
        assert posted_by(mock_chat) == ["dev", "maya", "priya", "carlos"]
        assert posted_texts(mock_chat)[-1] == "Clean, ship it."

    @pytest.mark.asyncio
    async def test_changes_runs_second_round(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        pr_trigger: Trigger,
    ) -> None:
        calls = script_llm(
            mock_llm, ["CHANGES: Need a test for the timeout path.", "APPROVE: Good now."]
        )

        discussion = await engine.start_discussion(pr_trigger)

        assert discussion is not None
        assert discussion.round == 2
        assert discussion.outcome == DiscussionOutcome.APPROVED
        assert posted_by(mock_chat) == [
            "dev", "maya", "priya", "carlos", "maya", "priya", "carlos",
        ]
        assert count_thread_replies(discussion.transcript) <= 6
        assert not any("Round: 3" in prompt for _, prompt in calls)

    @pytest.mark.asyncio
    async def test_final_changes_sends_pr_back(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        mock_spawner: MagicMock,
        pr_trigger: Trigger,
        project: Project,
        carlos: AgentPersona,
    ) -> None:
        script_llm(
            mock_llm,
            ["CHANGES: add a timeout test", "CHANGES: still missing the timeout test"],
        )

        discussion = await engine.start_discussion(pr_trigger)

        assert discussion is not None
        assert discussion.outcome == DiscussionOutcome.CHANGES_REQUESTED
        assert count_thread_replies(discussion.transcript) == 6
        # No reply budget left for the notice
        assert not any("Sending PR" in text for text in posted_texts(mock_chat))
        mock_spawner.spawn_job.assert_awaited_once_with(
            JobName.REVIEW,
            project,
            "C1",
            discussion.thread_ts,
            carlos,
            JobParams(
                pr_number="42",
                feedback={"prNumber": "42", "changes": "still missing the timeout test"},
            ),
        )

    @pytest.mark.asyncio
    async def test_refinement_notice_when_budget_allows(
        self,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        mock_spawner: MagicMock,
        registry: StaticRegistry,
        pr_trigger: Trigger,
    ) -> None:
        mock_chat.get_thread_history.side_effect = ChatPostError("history unavailable")
        engine = DeliberationEngine(
            mock_chat,
            mock_llm,
            registry,
            DeliberationConfig(max_rounds=1, reply_delay_min=0.0, reply_delay_max=0.0),
            job_spawner=mock_spawner,
            projects=registry,
            sleep=no_sleep,
        )
        script_llm(mock_llm, ["CHANGES: add a timeout test"])

        discussion = await engine.start_discussion(pr_trigger)

        assert discussion is not None
        assert posted_texts(mock_chat)[-1] == "Sending PR #42 back through with the notes."
        mock_spawner.spawn_job.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_human_verdict_blocks(
        self,
        engine: DeliberationEngine,
        mock_llm: AsyncMock,
        pr_trigger: Trigger,
    ) -> None:
        script_llm(mock_llm, ["HUMAN: this needs a product call"])

        discussion = await engine.start_discussion(pr_trigger)

        assert discussion is not None
        assert discussion.status == DiscussionStatus.BLOCKED
        assert discussion.outcome == DiscussionOutcome.HUMAN_NEEDED

    @pytest.mark.asyncio
    async def test_garbled_verdict_escalates(
        self,
        engine: DeliberationEngine,
        mock_llm: AsyncMock,
        pr_trigger: Trigger,
    ) -> None:
        script_llm(mock_llm, ["I think it's probably fine?"])

        discussion = await engine.start_discussion(pr_trigger)

        assert discussion is not None
        assert discussion.outcome == DiscussionOutcome.HUMAN_NEEDED

    @pytest.mark.asyncio
    async def test_skips_and_ai_errors_post_nothing(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        pr_trigger: Trigger,
    ) -> None:
        async def complete(prompt: str, *, persona: AgentPersona, **kwargs: object) -> str:
            if "You're wrapping up" in prompt:
                return "APPROVE: Fine by me."
            if persona.id == "maya":
                raise CompletionError("model unavailable")
            return "SKIP"

        mock_llm.complete.side_effect = complete

        discussion = await engine.start_discussion(pr_trigger)

        assert discussion is not None
        assert posted_by(mock_chat) == ["dev", "carlos"]

    @pytest.mark.asyncio
    async def test_garbled_contribution_is_skipped(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        pr_trigger: Trigger,
    ) -> None:
        script_llm(
            mock_llm,
            ["APPROVE: ok"],
            replies={("maya", 1): "As an AI language model I cannot review this."},
        )

        await engine.start_discussion(pr_trigger)

        assert "maya" not in posted_by(mock_chat)

    @pytest.mark.asyncio
    async def test_unresolved_channel(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
    ) -> None:
        trigger = Trigger(TriggerType.PR_REVIEW, "7", PR_CONTEXT, "/srv/unknown")

        assert await engine.start_discussion(trigger) is None
        mock_chat.post_as_persona.assert_not_awaited()
        mock_llm.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_opener_post_failure(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        pr_trigger: Trigger,
    ) -> None:
        mock_chat.post_as_persona.side_effect = ChatPostError("channel_not_found")
        assert await engine.start_discussion(pr_trigger) is None

    @pytest.mark.asyncio
    async def test_anchored_thread_skips_opener(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
    ) -> None:
        script_llm(mock_llm, ["APPROVE: Good."])
        trigger = Trigger(
            TriggerType.PR_REVIEW,
            "42",
            PR_CONTEXT,
            "/srv/night-watch-cli",
            channel_id="C9",
            thread_ts="1699999999.000001",
        )

        discussion = await engine.start_discussion(trigger)

        assert discussion is not None
        assert discussion.thread_ts == "1699999999.000001"
        assert posted_by(mock_chat) == ["maya", "carlos"]
        for call in mock_chat.post_as_persona.await_args_list:
            assert call.args[0] == "C9"
            assert call.kwargs["thread_ts"] == "1699999999.000001"


class TestReplayGuard:
    @pytest.mark.asyncio
    async def test_recently_closed_trigger_is_not_rerun(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        clock: FakeClock,
        pr_trigger: Trigger,
    ) -> None:
        script_llm(mock_llm, ["APPROVE: ok", "APPROVE: ok again"])

        first = await engine.start_discussion(pr_trigger)
        post_count = mock_chat.post_as_persona.await_count

        assert await engine.start_discussion(pr_trigger) is first
        assert mock_chat.post_as_persona.await_count == post_count

        clock.advance(1801)
        second = await engine.start_discussion(pr_trigger)
        assert second is not None
        assert second is not first

    @pytest.mark.asyncio
    async def test_window_counts_from_opening(
        self,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        registry: StaticRegistry,
        deliberation_config: DeliberationConfig,
        clock: FakeClock,
        pr_trigger: Trigger,
    ) -> None:
        script_llm(mock_llm, ["APPROVE: ok", "APPROVE: ok again"])

        async def slow_sleep(_: float) -> None:
            clock.advance(45)

        engine = DeliberationEngine(
            mock_chat,
            mock_llm,
            registry,
            deliberation_config,
            projects=registry,
            sleep=slow_sleep,
            clock=clock,
        )
        opened_at = clock.now
        first = await engine.start_discussion(pr_trigger)
        assert first is not None
        assert first.started_at == opened_at
        assert clock.now - opened_at >= 90

        clock.now = opened_at + 1801
        second = await engine.start_discussion(pr_trigger)
        assert second is not None
        assert second is not first

    @pytest.mark.asyncio
    async def test_issue_review_is_left_to_router_cooldown(
        self,
        engine: DeliberationEngine,
        mock_llm: AsyncMock,
        issue_trigger: Trigger,
    ) -> None:
        script_llm(mock_llm, ["DRAFT: needs repro", "DRAFT: still needs repro"])

        first = await engine.start_discussion(issue_trigger)
        second = await engine.start_discussion(issue_trigger)

        assert first is not None
        assert second is not None
        assert second is not first

    @pytest.mark.asyncio
    async def test_concurrent_starts_share_one_run(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        pr_trigger: Trigger,
    ) -> None:
        script_llm(mock_llm, ["APPROVE: ok"])

        first, second = await asyncio.gather(
            engine.start_discussion(pr_trigger), engine.start_discussion(pr_trigger)
        )

        assert first is second
        assert posted_by(mock_chat).count("dev") == 1


class TestIssueReview:
    """Test issue triage verdicts."""

    @pytest.mark.asyncio
    async def test_ready_moves_issue(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        mock_spawner: MagicMock,
        issue_trigger: Trigger,
    ) -> None:
        script_llm(mock_llm, ["READY: real crash, easy to hit."])

        discussion = await engine.start_discussion(issue_trigger)

        assert discussion is not None
        assert discussion.outcome == DiscussionOutcome.READY
        mock_spawner.move_issue.assert_awaited_once_with("/srv/night-watch-cli", "12", "Ready")
        assert posted_texts(mock_chat)[-1] == "Moved #12 to Ready."
        assert posted_by(mock_chat)[-1] == "dev"

    @pytest.mark.asyncio
    async def test_close_closes_on_github(
        self,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        registry: StaticRegistry,
        deliberation_config: DeliberationConfig,
        issue_trigger: Trigger,
    ) -> None:
        gh = MagicMock()
        gh.close_issue = AsyncMock()
        engine = DeliberationEngine(
            mock_chat, mock_llm, registry, deliberation_config, gh=gh, sleep=no_sleep
        )
        script_llm(mock_llm, ["CLOSE: duplicate of #9."])

        discussion = await engine.start_discussion(issue_trigger)

        assert discussion is not None
        assert discussion.outcome == DiscussionOutcome.CLOSE
        gh.close_issue.assert_awaited_once_with("acme/widgets", "12")
        assert posted_texts(mock_chat)[-1] == "Closed #12."

    @pytest.mark.asyncio
    async def test_unclear_verdict_stays_draft(
        self,
        engine: DeliberationEngine,
        mock_llm: AsyncMock,
        mock_spawner: MagicMock,
        issue_trigger: Trigger,
    ) -> None:
        script_llm(mock_llm, ["not sure honestly"])

        discussion = await engine.start_discussion(issue_trigger)

        assert discussion is not None
        assert discussion.outcome == DiscussionOutcome.DRAFT
        mock_spawner.move_issue.assert_not_awaited()


class TestHumanMessages:
    def test_unknown_thread(self, engine: DeliberationEngine) -> None:
        assert engine.handle_human_message("C1", "1.0", "hello?") is False

    @pytest.mark.asyncio
    async def test_named_persona_is_pinned_for_next_round(
        self,
        engine: DeliberationEngine,
        mock_llm: AsyncMock,
        pr_trigger: Trigger,
    ) -> None:
        calls = script_llm(
            mock_llm, ["CHANGES: Need a test for the timeout path.", "APPROVE: Good now."]
        )
        joined: list[bool] = []
        scripted = mock_llm.complete.side_effect

        async def complete(prompt: str, *, persona: AgentPersona, **kwargs: object) -> str:
            if persona.id == "maya" and not joined:
                joined.append(
                    engine.handle_human_message(
                        "C1", "1700000000.000001", "Dev, can you weigh in?", "UHUMAN"
                    )
                )
            return await scripted(prompt, persona=persona, **kwargs)

        mock_llm.complete.side_effect = complete

        discussion = await engine.start_discussion(pr_trigger)

        assert joined == [True]
        assert discussion is not None
        assert discussion.pinned_persona_ids == []
        round_two = [
            pid
            for pid, prompt in calls
            if "Round: 2/2" in prompt and "You're wrapping up" not in prompt
        ]
        assert round_two == ["dev"]


class TestAdHocReplies:
    @pytest.mark.asyncio
    async def test_posts_reply(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        dev: AgentPersona,
    ) -> None:
        mock_llm.complete.return_value = "Looks like the retry loop never backs off."

        text = await engine.reply_as_agent("C1", "1.0", "why is it slow?", dev)

        assert text == "Looks like the retry loop never backs off."
        mock_chat.post_as_persona.assert_awaited_once_with("C1", text, dev, thread_ts="1.0")

    @pytest.mark.asyncio
    async def test_ai_error_returns_empty(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        dev: AgentPersona,
    ) -> None:
        mock_llm.complete.side_effect = CompletionError("boom")

        assert await engine.reply_as_agent("C1", "1.0", "hi", dev) == ""
        mock_chat.post_as_persona.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skip_returns_empty(
        self, engine: DeliberationEngine, mock_llm: AsyncMock, dev: AgentPersona
    ) -> None:
        mock_llm.complete.return_value = "SKIP"
        assert await engine.reply_as_agent("C1", "1.0", "hi", dev) == ""

    @pytest.mark.asyncio
    async def test_repeat_of_thread_is_dropped(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        dev: AgentPersona,
    ) -> None:
        mock_chat.get_thread_history.side_effect = None
        mock_chat.get_thread_history.return_value = [
            ThreadMessage("Looks like the retry loop never backs off.", "Dev"),
        ]
        mock_llm.complete.return_value = "Looks like the retry loop never backs off!"

        assert await engine.reply_as_agent("C1", "1.0", "and now?", dev) == ""
        mock_chat.post_as_persona.assert_not_awaited()


class TestProactiveMessages:
    @pytest.mark.asyncio
    async def test_posts_top_level(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        maya: AgentPersona,
    ) -> None:
        mock_llm.complete.return_value = "Has anyone looked at token expiry in the webhook handler?"

        text = await engine.post_proactive_message("C1", maya, "Current channel project: widgets.")

        assert "token expiry" in text
        mock_chat.post_as_persona.assert_awaited_once_with("C1", text, maya, thread_ts=None)
        prompt = mock_llm.complete.await_args.args[0]
        assert "Project context: Current channel project: widgets." in prompt
        assert "write exactly: SKIP" in prompt

    @pytest.mark.asyncio
    async def test_skip_posts_nothing(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        maya: AgentPersona,
    ) -> None:
        mock_llm.complete.return_value = "SKIP"

        assert await engine.post_proactive_message("C1", maya) == ""
        mock_chat.post_as_persona.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ai_error_posts_nothing(
        self,
        engine: DeliberationEngine,
        mock_chat: AsyncMock,
        mock_llm: AsyncMock,
        maya: AgentPersona,
    ) -> None:
        mock_llm.complete.side_effect = CompletionError("overloaded")

        assert await engine.post_proactive_message("C1", maya) == ""
        mock_chat.post_as_persona.assert_not_awaited()
