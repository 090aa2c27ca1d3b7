"""Tests for reply clean-up."""

from __future__ import annotations

import pytest

from agent_huddle.core.humanizer import (
    SKIP_SENTINEL,
    apply_emoji_policy,
    dedupe_repeated_sentences,
    humanize_reply,
    is_skip_message,
    looks_garbled,
    trim_to_sentences,
)


class TestHumanizeReply:
    def test_strips_markdown(self) -> None:
        raw = "- **Looks good** overall.\n- Ship it."
        assert humanize_reply(raw) == "Looks good overall. Ship it."

    def test_strips_canned_opener(self) -> None:
        raw = "Great question, I think we should pin the version."
        assert humanize_reply(raw) == "I think we should pin the version."

    def test_keeps_opener_followed_by_content(self) -> None:
        raw = "Great question, but the answer is no."
        assert humanize_reply(raw) == raw

    def test_skip_passes_through(self) -> None:
        assert humanize_reply("  skip ") == SKIP_SENTINEL

    def test_empty(self) -> None:
        assert humanize_reply("   ") == ""

    def test_sentence_limit(self) -> None:
        assert humanize_reply("One. Two. Three.", max_sentences=2) == "One. Two."

    def test_char_limit_adds_ellipsis(self) -> None:
        assert humanize_reply("abcdefghij klm", max_chars=10) == "abcdefg..."

    def test_emoji_disallowed(self) -> None:
        assert humanize_reply("nice \U0001f680 work", allow_emoji=False) == "nice work"


class TestEmojiPolicy:
    def test_prefers_facial_emoji(self) -> None:
        text = apply_emoji_policy("nice \U0001f680 work \U0001f600", True, True)
        assert "\U0001f600" in text
        assert "\U0001f680" not in text

    def test_non_facial_only_when_allowed(self) -> None:
        assert apply_emoji_policy("ship it \U0001f680", True, True) == "ship it \U0001f680"
        assert apply_emoji_policy("ship it \U0001f680", True, False) == "ship it "

    def test_keeps_one_emoji(self) -> None:
        text = apply_emoji_policy("\U0001f600 a \U0001f600 b", True, True)
        assert text.count("\U0001f600") == 1


class TestHelpers:
    def test_dedupe_repeated_sentences(self) -> None:
        assert dedupe_repeated_sentences("Ship it. Ship it! Done.") == "Ship it. Done."

    def test_trim_to_sentences_short_text(self) -> None:
        assert trim_to_sentences("  Only one. ", 3) == "Only one."

    @pytest.mark.parametrize(
        "text",
        ['{"reply": "hi"}', "As an AI, I cannot review code.", "<reply>hi</reply>", "12345", ""],
    )
    def test_garbled(self, text: str) -> None:
        assert looks_garbled(text) is True

    def test_not_garbled(self) -> None:
        assert looks_garbled("Looks fine to me, the retry path is covered.") is False

    def test_is_skip_message(self) -> None:
        assert is_skip_message(" SKIP\n") is True
        assert is_skip_message("skip this one") is False
