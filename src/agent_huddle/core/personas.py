"""Persona lookup by role, and relevance scoring for follow-ups.

Personas are configured by name, but teams rename them. Every lookup
therefore tries the canonical name first and then falls back to role
keywords, so a renamed lead still leads.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from enum import StrEnum

from agent_huddle.core.message_parser import normalize_text, strip_mentions
from agent_huddle.models.discussion import TriggerType
from agent_huddle.models.persona import AgentPersona


class PersonaDomain(StrEnum):
    SECURITY = "security"
    QA = "qa"
    LEAD = "lead"
    DEV = "dev"
    GENERAL = "general"


# (domain, pattern over role + expertise), first match wins
DOMAIN_PATTERNS: tuple[tuple[PersonaDomain, re.Pattern[str]], ...] = (
    (PersonaDomain.SECURITY, re.compile(r"\b(security|auth\w*|pentest|owasp|crypt\w*|vuln\w*)")),
    (PersonaDomain.QA, re.compile(r"\b(qa|quality|test\w*|e2e)\b")),
    (PersonaDomain.LEAD, re.compile(r"\b(lead|architect\w*|systems)\b")),
    (PersonaDomain.DEV, re.compile(r"\b(implementer|developer|executor|engineer)\b")),
)

# Topic signals in a chat message, per domain
TOPIC_SIGNALS: dict[PersonaDomain, re.Pattern[str]] = {
    PersonaDomain.SECURITY: re.compile(
        r"\b(security|auth|vuln|owasp|xss|csrf|token|permission|exploit|threat)\b"
    ),
    PersonaDomain.QA: re.compile(r"\b(qa|test|testing|bug|e2e|playwright|regression|flaky)\b"),
    PersonaDomain.LEAD: re.compile(
        r"\b(architecture|architect|design|scalability|performance|tech debt|tradeoff|strategy)\b"
    ),
    PersonaDomain.DEV: re.compile(r"\b(implement|implementation|code|build|fix|patch|ship|pr)\b"),
}

TOKEN_SPLIT_PATTERN = re.compile(r"[^a-z0-9]+")

NAME_MATCH_SCORE = 12
DOMAIN_MATCH_SCORE = 8
TOKEN_MATCH_SCORE = 2
HANDOFF_MARGIN = 4
HANDOFF_MINIMUM = 8


def find_persona(
    personas: Sequence[AgentPersona],
    names: Sequence[str],
    role_keywords: Sequence[str],
) -> AgentPersona | None:
    """Find a persona by exact name first, then by role keyword."""
    wanted = {name.lower() for name in names}
    for persona in personas:
        if persona.name.lower() in wanted:
            return persona

    for persona in personas:
        role = persona.role.lower()
        if any(keyword in role for keyword in role_keywords):
            return persona
    return None


def find_dev(personas: Sequence[AgentPersona]) -> AgentPersona | None:
    return find_persona(personas, ["Dev"], ["implementer", "executor", "developer"])


def find_lead(personas: Sequence[AgentPersona]) -> AgentPersona | None:
    return find_persona(personas, ["Carlos"], ["tech lead", "architect", "lead"])


def find_security(personas: Sequence[AgentPersona]) -> AgentPersona | None:
    return find_persona(personas, ["Maya"], ["security reviewer", "security"])


def find_qa(personas: Sequence[AgentPersona]) -> AgentPersona | None:
    return find_persona(personas, ["Priya"], ["qa", "quality assurance", "test"])


def get_participating_personas(
    trigger_type: TriggerType,
    personas: Sequence[AgentPersona],
) -> list[AgentPersona]:
    """Panel for a discussion, in speaking-preference order.

    Falls back to the first persona so a discussion always has someone.
    """
    dev, lead = find_dev(personas), find_lead(personas)
    security, qa = find_security(personas), find_qa(personas)

    if trigger_type in (TriggerType.PR_REVIEW, TriggerType.CODE_WATCH):
        ordered = [dev, lead, security, qa]
    elif trigger_type in (TriggerType.BUILD_FAILURE, TriggerType.PRD_KICKOFF):
        ordered = [dev, lead]
    elif trigger_type == TriggerType.ISSUE_REVIEW:
        ordered = [lead, security, qa, dev]
    else:
        ordered = [lead]

    panel: list[AgentPersona] = []
    for persona in ordered:
        if persona is not None and persona not in panel:
            panel.append(persona)

    if not panel and personas:
        panel.append(personas[0])
    return panel


def get_persona_domain(persona: AgentPersona) -> PersonaDomain:
    blob = f"{persona.role} {' '.join(persona.expertise)}".lower()
    for domain, pattern in DOMAIN_PATTERNS:
        if pattern.search(blob):
            return domain
    return PersonaDomain.GENERAL


def _persona_tokens(persona: AgentPersona) -> set[str]:
    words = [persona.role.lower(), *(e.lower() for e in persona.expertise)]
    return {
        token for word in words for token in TOKEN_SPLIT_PATTERN.split(word) if len(token) >= 3
    }


def score_persona_for_text(text: str, persona: AgentPersona) -> int:
    """How strongly ``text`` is about this persona's area.

    +12 when the persona is named, +8 when the message's topic matches the
    persona's domain, +2 per word shared with role or expertise.
    """
    normalized = normalize_text(strip_mentions(text), preserve_paths=True)
    if not normalized:
        return 0

    score = 0
    if persona.name.lower() in normalized:
        score += NAME_MATCH_SCORE

    signal = TOPIC_SIGNALS.get(get_persona_domain(persona))
    if signal is not None and signal.search(normalized):
        score += DOMAIN_MATCH_SCORE

    tokens = _persona_tokens(persona)
    score += TOKEN_MATCH_SCORE * sum(
        1 for word in normalized.split() if len(word) >= 3 and word in tokens
    )
    return score


def select_follow_up_persona(
    incumbent: AgentPersona,
    candidates: Sequence[AgentPersona],
    latest_message: str,
) -> AgentPersona:
    """Pick who answers the next message in an ongoing conversation.

    Continuity wins by default. Another persona takes over only when it
    scores at least 4 points above the incumbent and at least 8 overall.
    """
    incumbent_score = score_persona_for_text(latest_message, incumbent)
    best, best_score = incumbent, incumbent_score

    for persona in candidates:
        score = score_persona_for_text(latest_message, persona)
        if score > best_score:
            best, best_score = persona, score

    if (
        best.id != incumbent.id
        and best_score >= incumbent_score + HANDOFF_MARGIN
        and best_score >= HANDOFF_MINIMUM
    ):
        return best
    return incumbent
