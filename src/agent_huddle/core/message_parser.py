"""Classify free-text chat messages into structured requests.

Every function here is pure: text in, a typed request (or None) out. The
router composes them in a fixed priority order, so each parser only has to
answer "does this text look like my kind of request?" and never has to
know about the others.

Matching rules worth knowing:
- Pull-request URLs are matched on a whitespace-free copy of the text, so a
  URL broken across lines by a chat client still yields its number.
- Project hints never come from a small set of filler words ("this", "pr",
  "now", ...), which otherwise look like project names after a verb.
- Repository names taken from a URL keep their casing; hints taken from
  prose are lowercased by normalization.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from agent_huddle.models.event import InboundEvent, build_inbound_key
from agent_huddle.models.requests import (
    IssuePickupRequest,
    IssueReviewable,
    JobName,
    JobRequest,
    ProviderName,
    ProviderRequest,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from agent_huddle.models.persona import AgentPersona

__all__ = [
    "build_inbound_key",
    "extract_generic_urls",
    "extract_github_issue_urls",
    "extract_mentions",
    "is_ambient_greeting",
    "normalize_handle",
    "normalize_text",
    "parse_issue_pickup_request",
    "parse_issue_reviewable",
    "parse_job_request",
    "parse_provider_request",
    "resolve_by_plain_name",
    "resolve_mentioned_personas",
    "should_ignore",
    "strip_mentions",
]

JOB_STOPWORDS = frozenset(
    {
        "and",
        "or",
        "for",
        "on",
        "of",
        "please",
        "now",
        "it",
        "this",
        "these",
        "those",
        "the",
        "a",
        "an",
        "pr",
        "pull",
        "that",
        "thanks",
        "thank",
        "again",
        "job",
        "pipeline",
    }
)

MENTION_TOKEN_PATTERN = re.compile(r"<@[A-Z0-9]+>")
WHITESPACE_PATTERN = re.compile(r"\s+")
PATH_SAFE_PATTERN = re.compile(r"[^\w\s./-]")
ALNUM_SPACE_PATTERN = re.compile(r"[^a-z0-9\s]")
NON_ALNUM_PATTERN = re.compile(r"[^a-z0-9]")

# Job requests
PR_URL_PATTERN = re.compile(r"https?://github\.com/([^/\s]+)/([^/\s]+)/pull/(\d+)", re.IGNORECASE)
PR_PATH_PATTERN = re.compile(r"/pull/(\d+)(?:[/?#]|$)", re.IGNORECASE)
PR_HASH_PATTERN = re.compile(r"(?:^|\s)#(\d+)(?:\s|$)")
CONFLICT_PATTERN = re.compile(
    r"\b(conflict|conflicts|merge conflict|merge issues?|rebase)\b", re.IGNORECASE
)
REQUEST_PATTERN = re.compile(
    r"\b(can someone|someone|anyone|please|need|look at|take a look|fix|review|check)\b",
    re.IGNORECASE,
)
JOB_VERB_PATTERN = re.compile(r"\b(run|review|qa)\b(?:\s+(?:for|on)?\s*([a-z0-9./_-]+))?")
ON_FOR_HINT_PATTERN = re.compile(
    r"\b(?:on|for)\s+([a-z0-9][a-z0-9._/-]*)\s*(?:project|repo|codebase|branch)?\b"
)

# Provider requests
PROVIDER_PREFIX_PATTERN = re.compile(
    r"^\s*(?:can\s+(?:you|someone|anyone)\s+)?(?:please\s+)?"
    r"(?:(?:run|use|invoke|trigger|ask)\s+)?(claude|codex)\b[\s:,-]*",
    re.IGNORECASE,
)
PROVIDER_TARGET_PATTERN = re.compile(r"^(?:for|on)\s+([a-z0-9./_-]+)\b[\s:,-]*", re.IGNORECASE)

# Issues
ISSUE_URL_PATTERN = re.compile(
    r"https?://github\.com/([^/\s<>]+)/([^/\s<>]+)/issues/(\d+)", re.IGNORECASE
)
BOARD_ISSUE_PATTERN = re.compile(r"https?://github\.com/[^<>\s]*[?&]issue=([^<>\s&]+)", re.IGNORECASE)
PICKUP_SIGNAL_PATTERN = re.compile(
    r"\b(pick\s+up|pickup|work\s+on|implement|tackle|start\s+on|grab|handle\s+this|ship\s+this)\b",
    re.IGNORECASE,
)
POLITE_REQUEST_PATTERN = re.compile(r"\b(please|can someone|anyone)\b", re.IGNORECASE)
THIS_ISSUE_PATTERN = re.compile(r"\bthis issue\b", re.IGNORECASE)

# Conversation
GREETING_PATTERN = re.compile(r"^(hey|hi|hello|yo|sup)\b")
GROUP_ADDRESS_PATTERN = re.compile(r"\b(guys|team|everyone|folks)\b")
HANDLE_PATTERN = re.compile(r"@([a-z0-9._-]{2,32})", re.IGNORECASE)
GITHUB_LINK_PATTERN = re.compile(
    r"https?://github\.com/[^\s<>|]+/(?:issues|pull)/\d+[^\s<>|]*", re.IGNORECASE
)
URL_PATTERN = re.compile(r"https?://[^\s<>|]+", re.IGNORECASE)

MAX_EXTRACTED_URLS = 3


# =============================================================================
# Text helpers
# =============================================================================


def strip_mentions(text: str) -> str:
    """Replace ``<@U123>`` mention tokens with a space."""
    return MENTION_TOKEN_PATTERN.sub(" ", text)


def normalize_text(text: str, preserve_paths: bool = False) -> str:
    """Lowercase, drop punctuation, collapse whitespace.

    With ``preserve_paths`` the characters ``. / - _`` survive so that
    project names like ``night-watch-cli`` and paths stay intact.
    """
    lowered = text.lower()
    if preserve_paths:
        cleaned = PATH_SAFE_PATTERN.sub(" ", lowered)
    else:
        cleaned = ALNUM_SPACE_PATTERN.sub(" ", lowered)
    return WHITESPACE_PATTERN.sub(" ", cleaned).strip()


def normalize_handle(text: str) -> str:
    return NON_ALNUM_PATTERN.sub("", text.lower())


def _hint_or_none(candidate: str | None) -> str | None:
    # "review https://github.com/..." must fall through to the URL's repo
    if not candidate or candidate.lower() in JOB_STOPWORDS or candidate in ("http", "https"):
        return None
    return candidate


# =============================================================================
# Request parsers
# =============================================================================


def parse_job_request(text: str) -> JobRequest | None:
    """Recognize a run/review/qa request.

    A request needs an explicit verb, a PR URL or a `#123` reference. Conflict
    language ("merge conflicts", "rebase") turns a bare PR link into a review
    with ``fix_conflicts`` set.
    """
    without_mentions = strip_mentions(text)
    normalized = normalize_text(without_mentions, preserve_paths=True)
    if not normalized:
        return None

    compact = WHITESPACE_PATTERN.sub("", without_mentions)
    pr_url_match = PR_URL_PATTERN.search(compact)
    pr_path_match = PR_PATH_PATTERN.search(compact)
    pr_hash_match = PR_HASH_PATTERN.search(without_mentions)

    has_conflict_signal = bool(CONFLICT_PATTERN.search(without_mentions))
    has_request_signal = bool(REQUEST_PATTERN.search(without_mentions))
    verb_match = JOB_VERB_PATTERN.search(normalized)

    if not verb_match and not pr_url_match and not pr_hash_match:
        return None

    has_pr_reference = bool(pr_url_match or pr_path_match or pr_hash_match)

    job: JobName | None
    if verb_match:
        job = JobName(verb_match.group(1))
    elif has_conflict_signal or (has_pr_reference and has_request_signal):
        job = JobName.REVIEW
    else:
        job = None

    if job is None:
        return None

    on_for_match = ON_FOR_HINT_PATTERN.search(normalized)
    candidates = (
        _hint_or_none(on_for_match.group(1) if on_for_match else None),
        _hint_or_none(verb_match.group(2) if verb_match else None),
        _hint_or_none(pr_url_match.group(2) if pr_url_match else None),
    )
    project_hint = next((c for c in candidates if c), None)

    pr_number = None
    for match, group in ((pr_url_match, 3), (pr_path_match, 1), (pr_hash_match, 1)):
        if match:
            pr_number = match.group(group)
            break

    return JobRequest(
        job=job,
        project_hint=project_hint,
        pr_number=pr_number,
        fix_conflicts=job == JobName.REVIEW and has_conflict_signal,
    )


def parse_provider_request(text: str) -> ProviderRequest | None:
    """Recognize a direct provider invocation.

    Accepts forms like ``claude fix the flaky tests`` and
    ``run codex on repo-x: investigate CI failures``. A provider name with
    nothing after it is not a request.
    """
    without_mentions = strip_mentions(text)
    if not without_mentions.strip():
        return None

    prefix_match = PROVIDER_PREFIX_PATTERN.match(without_mentions)
    if not prefix_match:
        return None

    provider = ProviderName(prefix_match.group(1).lower())
    remainder = without_mentions[prefix_match.end() :].strip()
    if not remainder:
        return None

    project_hint = None
    target_match = PROVIDER_TARGET_PATTERN.match(remainder)
    if target_match:
        project_hint = _hint_or_none(target_match.group(1).lower())
        remainder = remainder[target_match.end() :].strip()

    if not remainder:
        return None

    return ProviderRequest(provider=provider, prompt=remainder, project_hint=project_hint)


def _find_issue_reference(compact: str) -> tuple[str, str | None, str | None] | None:
    """Return (issue_number, repo, owner) from an issue URL or board link."""
    direct = ISSUE_URL_PATTERN.search(compact)
    if direct:
        return direct.group(3), direct.group(2), direct.group(1)

    board = BOARD_ISSUE_PATTERN.search(compact)
    if not board:
        return None

    # issue=owner%7Crepo%7C42 on project boards
    decoded = board.group(1).replace("%7C", "|").replace("%7c", "|")
    parts = [part for part in decoded.split("|") if part]
    if len(parts) < 3 or not parts[-1].isdigit():
        return None
    return parts[-1], parts[-2], parts[-3]


def parse_issue_pickup_request(text: str) -> IssuePickupRequest | None:
    """Recognize "pick up / work on / implement <issue URL>".

    Pull-request URLs never count as issues.
    """
    without_mentions = strip_mentions(text)
    if not without_mentions.strip():
        return None

    has_pickup_signal = bool(PICKUP_SIGNAL_PATTERN.search(without_mentions)) or (
        bool(POLITE_REQUEST_PATTERN.search(without_mentions))
        and bool(THIS_ISSUE_PATTERN.search(without_mentions))
    )
    if not has_pickup_signal:
        return None

    compact = WHITESPACE_PATTERN.sub("", without_mentions)
    direct = ISSUE_URL_PATTERN.search(compact)
    if direct:
        return IssuePickupRequest(
            issue_number=direct.group(3),
            issue_url=direct.group(0),
            repo_hint=direct.group(2),
        )

    reference = _find_issue_reference(compact)
    if reference is None:
        return None

    issue_number, repo, owner = reference
    return IssuePickupRequest(
        issue_number=issue_number,
        issue_url=f"https://github.com/{owner}/{repo}/issues/{issue_number}",
        repo_hint=repo,
    )


def parse_issue_reviewable(text: str) -> IssueReviewable | None:
    """Find a bare GitHub issue URL, regardless of what the text asks for."""
    compact = WHITESPACE_PATTERN.sub("", strip_mentions(text))
    match = ISSUE_URL_PATTERN.search(compact)
    if not match:
        return None

    owner, repo, number = match.group(1), match.group(2), match.group(3)
    return IssueReviewable(
        issue_number=number,
        issue_url=f"https://github.com/{owner}/{repo}/issues/{number}",
        repo_hint=repo,
        owner=owner,
    )


# =============================================================================
# Conversation helpers
# =============================================================================


def is_ambient_greeting(text: str) -> bool:
    """True for casual openers like "hey team" or "yo", not for requests."""
    normalized = normalize_text(strip_mentions(text))
    if not normalized or not GREETING_PATTERN.search(normalized):
        return False

    if GROUP_ADDRESS_PATTERN.search(normalized):
        return True

    return len(normalized.split(" ")) <= 6


def extract_mentions(text: str) -> list[str]:
    """Return normalized ``@handle`` tokens in order of first appearance."""
    handles: list[str] = []
    for match in HANDLE_PATTERN.finditer(text):
        handle = normalize_handle(match.group(1))
        if len(handle) >= 2 and handle not in handles:
            handles.append(handle)
    return handles


def resolve_mentioned_personas(
    text: str, personas: Sequence[AgentPersona]
) -> list[AgentPersona]:
    """Map ``@handle`` mentions onto active personas by normalized name."""
    handles = extract_mentions(text)
    if not handles:
        return []

    by_handle = {normalize_handle(p.name): p for p in personas if p.is_active}
    resolved: list[AgentPersona] = []
    for handle in handles:
        persona = by_handle.get(handle)
        if persona and persona not in resolved:
            resolved.append(persona)
    return resolved


def resolve_by_plain_name(text: str, personas: Sequence[AgentPersona]) -> list[AgentPersona]:
    """Find personas addressed by bare name, e.g. "Carlos, what do you think?"."""
    lowered = strip_mentions(text).lower()
    if not lowered.strip():
        return []

    resolved: list[AgentPersona] = []
    for persona in personas:
        if not persona.is_active or not persona.name.strip():
            continue
        pattern = rf"\b{re.escape(persona.name.lower())}\b"
        if re.search(pattern, lowered):
            resolved.append(persona)
    return resolved


def _unwrap_link(url: str) -> str:
    return url.rstrip(">.,)")


def extract_github_issue_urls(text: str) -> list[str]:
    """GitHub issue and PR links, deduplicated, at most three."""
    urls: list[str] = []
    for match in GITHUB_LINK_PATTERN.finditer(text):
        url = _unwrap_link(match.group(0))
        if url not in urls:
            urls.append(url)
    return urls[:MAX_EXTRACTED_URLS]


def extract_generic_urls(text: str) -> list[str]:
    """Non-GitHub http(s) links, deduplicated, at most three.

    Slack wraps links as ``<https://example.com|label>``; the label is
    dropped.
    """
    urls: list[str] = []
    for match in URL_PATTERN.finditer(text):
        url = _unwrap_link(match.group(0))
        if "github.com" in url.lower() or url in urls:
            continue
        urls.append(url)
    return urls[:MAX_EXTRACTED_URLS]


# =============================================================================
# Event filtering
# =============================================================================


def should_ignore(event: InboundEvent, self_id: str | None) -> bool:
    """True iff the event is a subtype (edit, join, ...), from a bot, or our own post."""
    if event.subtype:
        return True
    if event.bot_id:
        return True
    return bool(self_id) and event.user == self_id
