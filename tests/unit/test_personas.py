"""Tests for persona lookup and follow-up scoring."""

from __future__ import annotations

from agent_huddle.core.personas import (
    PersonaDomain,
    find_lead,
    find_security,
    get_participating_personas,
    get_persona_domain,
    score_persona_for_text,
    select_follow_up_persona,
)
from agent_huddle.models.discussion import TriggerType
from agent_huddle.models.persona import AgentPersona


class TestFindPersona:
    def test_lookup_by_name(self, personas: list[AgentPersona]) -> None:
        lead = find_lead(personas)
        assert lead is not None
        assert lead.id == "carlos"

    def test_renamed_persona_found_by_role(self) -> None:
        ana = AgentPersona(id="ana", name="Ana", role="Staff Security Engineer")
        bob = AgentPersona(id="bob", name="Bob", role="Architect")

        assert find_security([bob, ana]) == ana
        assert find_lead([ana, bob]) == bob

    def test_missing_role(self, personas: list[AgentPersona]) -> None:
        assert find_security([p for p in personas if p.id != "maya"]) is None


class TestParticipatingPersonas:
    """Test panel composition per trigger type."""

    def test_pr_review_panel(self, personas: list[AgentPersona]) -> None:
        panel = get_participating_personas(TriggerType.PR_REVIEW, personas)
        assert [p.id for p in panel] == ["dev", "carlos", "maya", "priya"]

    def test_issue_review_panel_starts_with_lead(self, personas: list[AgentPersona]) -> None:
        panel = get_participating_personas(TriggerType.ISSUE_REVIEW, personas)
        assert [p.id for p in panel] == ["carlos", "maya", "priya", "dev"]

    def test_build_failure_panel(self, personas: list[AgentPersona]) -> None:
        panel = get_participating_personas(TriggerType.BUILD_FAILURE, personas)
        assert [p.id for p in panel] == ["dev", "carlos"]

    def test_prd_kickoff_panel(self, personas: list[AgentPersona]) -> None:
        panel = get_participating_personas(TriggerType.PRD_KICKOFF, personas)
        assert [p.id for p in panel] == ["dev", "carlos"]

    def test_falls_back_to_first_persona(self) -> None:
        designer = AgentPersona(id="sam", name="Sam", role="Designer")
        assert get_participating_personas(TriggerType.PR_REVIEW, [designer]) == [designer]

    def test_empty_roster(self) -> None:
        assert get_participating_personas(TriggerType.PR_REVIEW, []) == []


class TestScoring:
    def test_domains(self, personas: list[AgentPersona]) -> None:
        domains = {p.id: get_persona_domain(p) for p in personas}
        assert domains == {
            "dev": PersonaDomain.DEV,
            "carlos": PersonaDomain.LEAD,
            "maya": PersonaDomain.SECURITY,
            "priya": PersonaDomain.QA,
        }

    def test_named_persona_scores_high(self, priya: AgentPersona) -> None:
        assert score_persona_for_text("priya what about this", priya) >= 12

    def test_empty_text_scores_zero(self, maya: AgentPersona) -> None:
        assert score_persona_for_text("", maya) == 0
        assert score_persona_for_text("<@UBOT>", maya) == 0

    def test_domain_and_token_match(self, maya: AgentPersona) -> None:
        assert score_persona_for_text("is the auth token handling safe from xss?", maya) == 10


class TestSelectFollowUpPersona:
    """Continuity wins unless another persona is clearly more relevant."""

    def test_incumbent_keeps_thread(
        self, dev: AgentPersona, personas: list[AgentPersona]
    ) -> None:
        chosen = select_follow_up_persona(dev, personas, "can you fix the python build")
        assert chosen == dev

    def test_hands_off_to_security(
        self, dev: AgentPersona, maya: AgentPersona, personas: list[AgentPersona]
    ) -> None:
        chosen = select_follow_up_persona(dev, personas, "is the auth token handling safe from xss?")
        assert chosen == maya

    def test_hands_off_to_qa(
        self, maya: AgentPersona, priya: AgentPersona, personas: list[AgentPersona]
    ) -> None:
        chosen = select_follow_up_persona(maya, personas, "the flaky test is a bug")
        assert chosen == priya

    def test_weak_signal_keeps_incumbent(
        self, maya: AgentPersona, personas: list[AgentPersona]
    ) -> None:
        assert select_follow_up_persona(maya, personas, "thoughts on scope") == maya
