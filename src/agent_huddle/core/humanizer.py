"""Turn raw model output into something a teammate would post in Slack."""

from __future__ import annotations

import re

from agent_huddle.core.message_parser import normalize_text

SKIP_SENTINEL = "SKIP"

# Only strip openers followed by filler, not by substantive content
CANNED_OPENERS = (
    re.compile(r"^great question[,.! ]+(?=(?:i|we|let|the|this|here|so)\b)", re.IGNORECASE),
    re.compile(r"^of course[,.! ]+(?=(?:i|we|let|the|this|here|so)\b)", re.IGNORECASE),
    re.compile(r"^certainly[,.! ]+(?=(?:i|we|let|the|this|here|so)\b)", re.IGNORECASE),
    re.compile(r"^you['’]re absolutely right[,.! ]+", re.IGNORECASE),
    re.compile(r"^i hope this helps[,.! ]*", re.IGNORECASE),
)

HEADING_PATTERN = re.compile(r"^#{1,6}\s+", re.MULTILINE)
BULLET_PATTERN = re.compile(r"^\s*[-*]\s+", re.MULTILINE)
BOLD_PATTERN = re.compile(r"\*\*(.*?)\*\*")
WHITESPACE_PATTERN = re.compile(r"\s+")
SENTENCE_SPLIT_PATTERN = re.compile(r"(?<=[.!?])\s+")

EMOJI_PATTERN = re.compile(
    "[\U0001f300-\U0001faff☀-➿⭐⭕⤴⤵〰〽]"
)
FACIAL_EMOJI_PATTERN = re.compile("[\U0001f600-\U0001f64f\U0001f910-\U0001f92f\U0001f970-\U0001f97a]")

GARBLED_MARKERS = re.compile(r"(as an ai\b|language model|<\/?[a-z_]+>|^\s*[\[{])", re.IGNORECASE)


def is_skip_message(text: str) -> bool:
    return text.strip().upper() == SKIP_SENTINEL


def looks_garbled(text: str) -> bool:
    """Output that is not a chat message: JSON, leaked tags, AI disclaimers."""
    stripped = text.strip()
    if not stripped or not re.search(r"[A-Za-z]", stripped):
        return True
    return bool(GARBLED_MARKERS.search(stripped))


def dedupe_repeated_sentences(text: str) -> str:
    parts = [p.strip() for p in SENTENCE_SPLIT_PATTERN.split(text) if p.strip()]
    if len(parts) <= 1:
        return text

    unique: list[str] = []
    seen: set[str] = set()
    for part in parts:
        key = normalize_text(part)
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(part)
    return " ".join(unique)


def apply_emoji_policy(text: str, allow_emoji: bool, allow_non_facial: bool) -> str:
    """Keep at most one emoji, preferring a facial one."""
    emojis = EMOJI_PATTERN.findall(text)
    if not emojis:
        return text
    if not allow_emoji:
        return EMOJI_PATTERN.sub("", text)

    chosen = next((e for e in emojis if FACIAL_EMOJI_PATTERN.match(e)), None)
    if chosen is None and allow_non_facial:
        chosen = emojis[0]
    if chosen is None:
        return EMOJI_PATTERN.sub("", text)

    kept = False

    def keep_first(match: re.Match[str]) -> str:
        nonlocal kept
        if not kept and match.group(0) == chosen:
            kept = True
            return match.group(0)
        return ""

    return EMOJI_PATTERN.sub(keep_first, text)


def trim_to_sentences(text: str, max_sentences: int) -> str:
    parts = [p.strip() for p in SENTENCE_SPLIT_PATTERN.split(text) if p.strip()]
    if len(parts) <= max_sentences:
        return text.strip()
    return " ".join(parts[:max_sentences]).strip()


def humanize_reply(
    raw: str,
    *,
    allow_emoji: bool = True,
    allow_non_facial_emoji: bool = True,
    max_sentences: int | None = None,
    max_chars: int | None = None,
) -> str:
    """Strip markdown and assistant tics, dedupe, and bound the length.

    A ``SKIP`` answer passes through as the bare sentinel.
    """
    text = raw.strip()
    if not text:
        return text
    if is_skip_message(text):
        return SKIP_SENTINEL

    text = HEADING_PATTERN.sub("", text)
    text = BULLET_PATTERN.sub("", text)
    text = BOLD_PATTERN.sub(r"\1", text)
    text = WHITESPACE_PATTERN.sub(" ", text).strip()

    for pattern in CANNED_OPENERS:
        text = pattern.sub("", text).strip()

    text = dedupe_repeated_sentences(text)
    text = apply_emoji_policy(text, allow_emoji, allow_non_facial_emoji)
    text = WHITESPACE_PATTERN.sub(" ", text).strip()

    if max_sentences is not None:
        text = trim_to_sentences(text, max_sentences)

    if max_chars is not None and len(text) > max_chars:
        text = f"{text[: max_chars - 3].rstrip()}..."

    return text
