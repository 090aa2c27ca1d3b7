"""Data models for multi-persona discussions."""

from dataclasses import dataclass, field
from enum import StrEnum


class TriggerType(StrEnum):
    """Events that can open a discussion thread."""

    PR_REVIEW = "pr_review"
    BUILD_FAILURE = "build_failure"
    PRD_KICKOFF = "prd_kickoff"
    CODE_WATCH = "code_watch"
    ISSUE_REVIEW = "issue_review"


class DiscussionStatus(StrEnum):
    ACTIVE = "active"
    CONSENSUS = "consensus"
    BLOCKED = "blocked"


class DiscussionOutcome(StrEnum):
    """How a discussion ended."""

    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    HUMAN_NEEDED = "human_needed"
    READY = "ready"
    CLOSE = "close"
    DRAFT = "draft"


@dataclass(frozen=True)
class Trigger:
    """Input to the deliberation engine."""

    type: TriggerType
    ref: str
    context: str
    project_path: str
    channel_id: str | None = None
    thread_ts: str | None = None  # Anchor to an existing thread instead of opening one
    pr_url: str | None = None

    @property
    def key(self) -> str:
        return f"{self.project_path}:{self.type}:{self.ref}"


@dataclass(frozen=True)
class ThreadMessage:
    """One message in a chat thread, as seen by prompt builders."""

    text: str
    username: str | None = None
    ts: str | None = None


@dataclass(frozen=True)
class Spoke:
    """A persona produced a message for the thread."""

    message: str
    spoke: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Skipped:
    """A persona had nothing to add (SKIP, AI error, or unusable output)."""

    reason: str = "skip"
    spoke: bool = field(default=False, init=False)


Contribution = Spoke | Skipped


@dataclass
class Discussion:
    """Mutable state of one running discussion."""

    trigger: Trigger
    channel_id: str
    thread_ts: str
    round: int = 1
    max_rounds: int = 2
    contributors: list[str] = field(default_factory=list)
    transcript: list[ThreadMessage] = field(default_factory=list)
    status: DiscussionStatus = DiscussionStatus.ACTIVE
    outcome: DiscussionOutcome | None = None
    # Personas a human asked for, consumed by the next round
    pinned_persona_ids: list[str] = field(default_factory=list)
    # Engine clock reading when the discussion opened
    started_at: float = 0.0

    @property
    def is_closed(self) -> bool:
        return self.status != DiscussionStatus.ACTIVE
