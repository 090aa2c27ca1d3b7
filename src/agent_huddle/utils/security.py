"""Secret redaction and input validation.

Everything that leaves the process through a log line or an AI prompt is
passed through :class:`SecretRedactor` first. Redaction is fail-closed: a
pattern that cannot compile or execute raises instead of letting the
original text through.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Sequence

log = structlog.get_logger()


class SecurityError(Exception):
    """Base exception for security-related errors."""


class RedactionError(SecurityError):
    """Raised when secret redaction fails."""


# owner/repo as accepted by the gh CLI
REPO_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+/[a-zA-Z0-9_.-]+$")

SHELL_METACHARACTERS = frozenset(
    [";", "|", "&", "`", "$", "(", ")", "{", "}", "<", ">", "\\", "\n", "\r", "\t", "\x00"]
)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class SecretRedactor:
    """Detects and redacts secrets from text.

    Usage:
        redactor = SecretRedactor()
        safe_text = redactor.redact(chat_message_text)

    Attributes:
        placeholder: The string secrets are replaced with.
    """

    DEFAULT_PATTERNS: tuple[tuple[str, str], ...] = (
        (
            r"(?i)(api[_-]?key|secret|token|password|credential)\s*[=:]\s*[\"']?[\w-]{16,}",
            "Generic secret",
        ),
        (r"xox[baprs]-[\w-]+", "Slack token"),
        (r"xapp-[\w-]+", "Slack app token"),
        (r"gh[pousr]_[a-zA-Z0-9]{36}", "GitHub token"),
        (r"github_pat_[a-zA-Z0-9_]{22,}", "GitHub fine-grained PAT"),
        (r"sk-ant-[\w-]{20,}", "Anthropic API key"),
        (r"sk-proj-[a-zA-Z0-9_-]{20,}", "OpenAI project API key"),
        (r"sk-[a-zA-Z0-9]{48}", "OpenAI legacy API key"),
        (r"AKIA[0-9A-Z]{16}", "AWS access key ID"),
        (
            r"(?i)(postgres(?:ql)?|mysql|mongodb(?:\+srv)?|redis|amqp)://[^:\s]+:[^@\s]+@[^\s]+",
            "Database connection string",
        ),
        (r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----", "Private key header"),
        (r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*", "JWT token"),
    )

    def __init__(
        self,
        placeholder: str = "[REDACTED]",
        custom_patterns: Sequence[tuple[str, str]] | None = None,
    ) -> None:
        """Compile the default patterns plus any custom ones.

        Raises:
            RedactionError: If any pattern fails to compile.
        """
        self.placeholder = placeholder
        self._pattern_names: dict[re.Pattern[str], str] = {}

        all_patterns = list(self.DEFAULT_PATTERNS)
        if custom_patterns:
            all_patterns.extend(custom_patterns)

        for pattern_str, name in all_patterns:
            try:
                self._pattern_names[re.compile(pattern_str)] = name
            except re.error as e:
                log.error("pattern_compilation_failed", pattern_name=name, error=str(e))
                raise RedactionError(f"Failed to compile secret pattern '{name}': {e}") from e

    @property
    def patterns(self) -> list[re.Pattern[str]]:
        return list(self._pattern_names)

    def redact(self, text: str) -> str:
        """Replace every detected secret in ``text`` with the placeholder.

        Raises:
            RedactionError: If redaction fails for any reason.
        """
        if not text:
            return text

        try:
            for pattern in self._pattern_names:
                text = pattern.sub(self.placeholder, text)
            return text
        except Exception as e:
            log.error("redaction_failed", error=str(e))
            raise RedactionError(f"Redaction failed: {e}") from e

    def has_secrets(self, text: str) -> bool:
        if not text:
            return False
        return any(pattern.search(text) for pattern in self._pattern_names)


def validate_repo_name(repo: str) -> bool:
    """Return True if ``repo`` is a safe ``owner/repo`` string.

    Issue URLs come straight from chat, so owner and repo are checked
    before they are interpolated into a ``gh api`` path.
    """
    if not repo:
        return False

    if any(char in repo for char in SHELL_METACHARACTERS):
        return False

    return bool(REPO_NAME_PATTERN.match(repo))


def sanitize_output(text: str) -> str:
    """Strip ANSI escape codes and control characters from process output.

    Job output is echoed back into chat and logs; terminal color codes and
    stray control bytes would render as garbage in both.
    """
    if not text:
        return text

    text = ANSI_ESCAPE_PATTERN.sub("", text)
    return CONTROL_CHAR_PATTERN.sub("", text)
