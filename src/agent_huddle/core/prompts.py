"""Opening messages and AI prompts for discussions and ad-hoc replies.

All functions are pure. Opener variants are picked by :func:`stable_hash`
of the trigger reference, so the same PR or issue always gets the same
phrasing, even across restarts.
"""

from __future__ import annotations

import re
from collections.abc import Sequence

from agent_huddle.models.discussion import ThreadMessage, Trigger, TriggerType
from agent_huddle.models.persona import AgentPersona, Project

PR_REVIEW_OPENERS = (
    "Opened {pr}. Ready for eyes.",
    "Just opened {pr}. Anyone free to review?",
    "{pr} is up. Tagging for review.",
    "Opened {pr}. Let me know if you spot anything.",
)

CODE_WATCH_OPENERS = (
    "{location}: {signal}.",
    "Flagging {location}: {signal}.",
    "Caught something in {location}: {signal}.",
    "{location} pinged the scanner, {signal}.",
    "Noticed this in {location}: {signal}.",
)

ISSUE_REVIEW_OPENERS = (
    "Taking a look at {ref}. What do we think?",
    "Reviewing {ref}. Sharing notes in a sec.",
    "Got eyes on {ref}. Let's figure out if this is real.",
    "{ref} came up. Quick review?",
)

CONTEXT_FIELD_PATTERN = "^{field}: (.+)$"

CONCRETE_CODE_PATTERNS = (
    re.compile(r"```"),
    re.compile(r"(^|\s)(src|test|tests|scripts|web|lib)/[^\s:]+\.[A-Za-z0-9]+(?::\d+)?"),
    re.compile(r"\bdiff --git\b"),
    re.compile(r"@@\s[-+]\d+"),
    re.compile(r"\b(def|function|class|const|let|if\s*\(|try\s*[{:]|except\b|catch\s*\()"),
)

CASUAL_PATTERN = re.compile(
    r"\b(hey|hi|hello|yo|sup|happy|morning|afternoon|evening|friday|weekend|alive|there"
    r"|guys|team|everyone|folks)\b",
    re.IGNORECASE,
)
TECHNICAL_PATTERN = re.compile(
    r"\b(bug|error|crash|fail|test|pr|code|build|deploy|security|auth|token|vuln|diff|commit"
    r"|review|issue|impl)\b",
    re.IGNORECASE,
)

TEAM_LINE = "Your teammates: Dev (implementer), Carlos (tech lead), Maya (security), Priya (QA)."


def stable_hash(value: str) -> int:
    """Sum of code points. Deterministic across processes, unlike ``hash()``."""
    return sum(ord(char) for char in value)


def pick_variant(ref: str, variants: Sequence[str]) -> str:
    return variants[stable_hash(ref) % len(variants)]


def _context_field(context: str, field: str) -> str:
    match = re.search(CONTEXT_FIELD_PATTERN.format(field=field), context, re.MULTILINE)
    return match.group(1).strip() if match else ""


def build_opening_message(trigger: Trigger) -> str:
    """First message of a new discussion thread."""
    if trigger.type == TriggerType.PR_REVIEW:
        pr = f"#{trigger.ref}"
        if trigger.pr_url:
            pr = f"{pr} ({trigger.pr_url})"
        return pick_variant(trigger.ref, PR_REVIEW_OPENERS).format(pr=pr)

    if trigger.type == TriggerType.BUILD_FAILURE:
        return f"Build broke on {trigger.ref}. Looking into it.\n\n{trigger.context[:500]}"

    if trigger.type == TriggerType.PRD_KICKOFF:
        return f"Picking up {trigger.ref}. Going to start carving out the implementation."

    if trigger.type == TriggerType.CODE_WATCH:
        location = _context_field(trigger.context, "Location")
        signal = _context_field(trigger.context, "Signal")
        snippet = _context_field(trigger.context, "Snippet")
        if location and signal:
            opener = pick_variant(trigger.ref, CODE_WATCH_OPENERS).format(
                location=location, signal=signal
            )
            return f"{opener}\n```\n{snippet}\n```" if snippet else opener
        return trigger.context[:600]

    if trigger.type == TriggerType.ISSUE_REVIEW:
        return pick_variant(trigger.ref, ISSUE_REVIEW_OPENERS).format(ref=trigger.ref)

    return trigger.context[:500]


def has_concrete_code_context(context: str) -> bool:
    """True when context quotes code, a diff hunk, or a source path."""
    return any(pattern.search(context) for pattern in CONCRETE_CODE_PATTERNS)


def format_thread_history(messages: Sequence[ThreadMessage]) -> str:
    lines = []
    for message in messages:
        body = " ".join(message.text.split())
        if not body:
            continue
        speaker = (message.username or "").strip() or "Teammate"
        lines.append(f"{speaker}: {body}")
    return "\n".join(lines)


def build_contribution_prompt(
    persona: AgentPersona,
    trigger: Trigger,
    thread_history: str,
    round_number: int,
    max_rounds: int,
    *,
    focus: str = "",
    context_limit: int = 2000,
) -> str:
    """Prompt asking one persona for a grounded message or ``SKIP``.

    Raises:
        ValueError: If ``round_number`` is outside ``1..max_rounds``.
    """
    if not 1 <= round_number <= max_rounds:
        raise ValueError(f"round {round_number} is outside 1..{max_rounds}")

    is_first_round = round_number == 1
    is_final_round = round_number >= max_rounds

    round_line = f"Round: {round_number}/{max_rounds}"
    if is_final_round:
        round_line += " (final round, wrap up)"

    lines = [
        f"You are {persona.name}, {persona.role}.",
        "You're in a Slack thread with your teammates. This is a real conversation, not a report.",
        TEAM_LINE,
        "",
        f"Trigger: {trigger.type} {trigger.ref}",
        round_line,
        "",
        "## Context",
        trigger.context[:context_limit],
        "",
        "## Thread So Far",
        thread_history or "(Thread just started)",
    ]
    if focus:
        lines += ["", "## Still open from the lead", focus]

    lines += [
        "",
        "## How to respond",
        "Write a short Slack message, 1 to 2 sentences, under ~180 chars when possible.",
        (
            "- First round: give your initial take from your angle. Be specific."
            if is_first_round
            else "- Follow-up round: respond to what others said. Agree, push back, or add something new."
        ),
        "- React to one specific point already in the thread, using teammate names.",
        "- Never repeat a point that's already been made in similar words.",
        "- Back your take with one concrete artifact from context: a file path, symbol, diff hunk, or log line.",
        "- If context lacks concrete code evidence, answer SKIP.",
        "- If you have no new signal to add, reply with exactly: SKIP",
        "- Stay in your lane. Only comment on your domain unless something crosses into it.",
        "- No markdown formatting. No bullet lists. No headings. Just a message.",
        "- Emojis: one at most, default to none.",
        '- Never start with "Great question", "Of course", or "I hope this helps".',
        "- Only reference PR numbers, issue numbers, or URLs that appear above. Never invent links.",
    ]
    if is_final_round:
        lines.append("- Final round: be decisive. State your position clearly.")

    if trigger.type == TriggerType.ISSUE_REVIEW:
        lines += [
            "",
            "Issue Review Guidance:",
            "- Is this issue valid? Does the codebase still have this problem?",
            "- Is it worth tracking: Ready (prioritize now), Draft (valid, not urgent), or Close?",
            "- End your message with a clear lean toward READY, CLOSE, or DRAFT.",
        ]

    lines += ["", "Write ONLY your message. No name prefix, no labels."]
    return "\n".join(lines)


def build_consensus_prompt(
    lead: AgentPersona, thread_history: str, round_number: int, max_rounds: int
) -> str:
    """Ask the lead to close the discussion: APPROVE, CHANGES or HUMAN."""
    return "\n".join(
        [
            f"You are {lead.name}, {lead.role}. You're wrapping up a team discussion.",
            "",
            "Thread:",
            thread_history or "(No thread history available)",
            "",
            f"Round: {round_number}/{max_rounds}",
            "",
            "Make the call. Are we done, do we need one more pass, or does a human need to weigh in?",
            "- Keep it brief and decisive. No recap of the whole thread.",
            "",
            "Respond with EXACTLY one of these formats (include the prefix):",
            "- APPROVE: [one short closing message in your voice]",
            "- CHANGES: [what specifically still needs work]",
            "- HUMAN: [why this needs a human decision]",
            "",
            "Write the prefix and your message. Nothing else.",
        ]
    )


def build_issue_verdict_prompt(lead: AgentPersona, thread_history: str) -> str:
    """Ask the lead for an issue triage call: READY, CLOSE or DRAFT."""
    return "\n".join(
        [
            f"You are {lead.name}, {lead.role}. You're wrapping up a team issue review.",
            "",
            "Thread:",
            thread_history or "(No thread history available)",
            "",
            "Based on the discussion above, make the triage call for this issue.",
            "",
            "Respond with EXACTLY one of these formats (include the prefix):",
            "- READY: [why it is valid and should be prioritized]",
            "- CLOSE: [why it is invalid, a duplicate, or won't fix]",
            "- DRAFT: [why it is valid but needs more context or is lower priority]",
            "",
            "Be concise and decisive. Write the prefix and your message. Nothing else.",
        ]
    )


def parse_decision(text: str, verdicts: Sequence[str], fallback: str) -> tuple[str, str]:
    """Split ``"VERDICT: message"``; unknown or garbled output maps to ``fallback``."""
    stripped = text.strip()
    for verdict in verdicts:
        if stripped.upper().startswith(verdict):
            message = re.sub(rf"^{verdict}\s*:?\s*", "", stripped, flags=re.IGNORECASE)
            return verdict, message.strip()
    return fallback, ""


def is_casual_message(text: str) -> bool:
    return bool(CASUAL_PATTERN.search(text)) and not TECHNICAL_PATTERN.search(text)


def build_ad_hoc_reply_prompt(
    persona: AgentPersona,
    incoming_text: str,
    thread_history: str,
    project_context: str = "",
) -> str:
    """Prompt for a persona answering outside a formal discussion."""
    lines = [f"You are {persona.name}, {persona.role}.", TEAM_LINE, ""]
    if project_context:
        lines += ["Project context:", project_context, ""]
    if thread_history:
        lines += ["Thread so far:", thread_history, ""]
    lines += [
        f'Latest message: "{incoming_text}"',
        "",
        "Respond in your own voice. This is Slack, keep it conversational, 1-3 sentences max.",
        '- Talk like a colleague, not a bot. No "Great question", "Of course", or "I hope this helps".',
        "- If teammates said something you agree or disagree with, react to it directly.",
        "- Tag a teammate by name if their domain is more relevant.",
    ]
    if is_casual_message(incoming_text):
        lines.append(
            "- This is a casual social message. Be warm and brief, don't force a work topic."
        )
    else:
        lines += [
            "- Base opinions on concrete evidence from context (file path, symbol, diff, or log line).",
            "- If there's no concrete evidence, ask for the file or diff before opining.",
        ]
    if "Referenced links:" in project_context:
        lines.append("- You have seen the linked pages' titles and summaries; reference them if relevant.")
    lines += [
        "- No markdown headings or bullet lists. Inline backticks are fine.",
        "- Emojis: one max, default to none.",
        "- Only reference PR numbers, issue numbers, or URLs that appear above. Never invent links.",
        "",
        "Write only your reply. No name prefix.",
    ]
    return "\n".join(lines)


def build_project_context(channel: str, projects: Sequence[Project]) -> str:
    if not projects:
        return ""
    bound = next((p for p in projects if p.channel_id == channel), None)
    if bound is not None:
        return f"Current channel project: {bound.name}."
    return f"Registered projects: {', '.join(p.name for p in projects)}."


def build_proactive_prompt(persona: AgentPersona, project_context: str = "") -> str:
    """Prompt for an unprompted message in a channel that has gone quiet."""
    lines = [
        f"You are {persona.name}, {persona.role}.",
        TEAM_LINE,
        "",
        "You're posting an unprompted message in the team's Slack channel. "
        "The channel has been quiet and you want to share something useful, not fill silence.",
        "",
    ]
    if project_context:
        lines += [f"Project context: {project_context}", ""]
    lines += [
        "Write a SHORT message (1-2 sentences) that does ONE of these:",
        "- Question a priority or ask if something should be reordered",
        "- Flag something from your domain (security concern, test gap, architecture question, implementation idea)",
        '- Raise a "have we thought about..." question',
        '- Offer to kick off a task: "I can run a review on X if nobody\'s on it"',
        "",
        "Rules:",
        "- Stay in your lane. Only bring up things relevant to your expertise.",
        "- Be specific. Name the feature, file, or concern.",
        "- Sound like a teammate dropping a thought in chat, not an announcement.",
        '- No markdown, headings, or bullets. No "Just checking in".',
        "- Emojis: one max, default to none.",
        "- Never invent PR numbers, issue numbers, or URLs.",
        "- If you have nothing useful to say, write exactly: SKIP",
        "",
        "Write only your message. No name prefix.",
    ]
    return "\n".join(lines)
