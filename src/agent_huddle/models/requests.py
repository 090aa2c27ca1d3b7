"""Structured requests parsed out of chat text."""

from dataclasses import dataclass
from enum import StrEnum


class JobName(StrEnum):
    """CLI subcommands a chat message can start."""

    RUN = "run"
    REVIEW = "review"
    QA = "qa"


class ProviderName(StrEnum):
    """Coding-agent CLIs that can be invoked directly."""

    CLAUDE = "claude"
    CODEX = "codex"


@dataclass(frozen=True)
class JobRequest:
    """Ask to run, review or QA a project or pull request."""

    job: JobName
    project_hint: str | None = None
    pr_number: str | None = None
    fix_conflicts: bool = False


@dataclass(frozen=True)
class ProviderRequest:
    """Ask a provider CLI to run a free-form prompt."""

    provider: ProviderName
    prompt: str
    project_hint: str | None = None


@dataclass(frozen=True)
class IssuePickupRequest:
    """Ask the team to start implementing a tracker issue."""

    issue_number: str
    issue_url: str
    repo_hint: str | None = None


@dataclass(frozen=True)
class IssueReviewable:
    """A tracker issue URL found in a root message."""

    issue_number: str
    issue_url: str
    repo_hint: str
    owner: str

    @property
    def issue_ref(self) -> str:
        return f"{self.owner}/{self.repo_hint}#{self.issue_number}"


ParsedRequest = JobRequest | ProviderRequest | IssuePickupRequest | IssueReviewable
