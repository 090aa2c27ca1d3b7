"""Data models and transfer objects."""

from .discussion import (
    Contribution,
    Discussion,
    DiscussionOutcome,
    DiscussionStatus,
    Skipped,
    Spoke,
    ThreadMessage,
    Trigger,
    TriggerType,
)
from .event import EventType, InboundEvent, build_inbound_key
from .persona import AgentPersona, Project
from .requests import (
    IssuePickupRequest,
    IssueReviewable,
    JobName,
    JobRequest,
    ParsedRequest,
    ProviderName,
    ProviderRequest,
)

__all__ = [
    # Event models
    "EventType",
    "InboundEvent",
    "build_inbound_key",
    # Parsed requests
    "IssuePickupRequest",
    "IssueReviewable",
    "JobName",
    "JobRequest",
    "ParsedRequest",
    "ProviderName",
    "ProviderRequest",
    # Registry records
    "AgentPersona",
    "Project",
    # Discussion models
    "Contribution",
    "Discussion",
    "DiscussionOutcome",
    "DiscussionStatus",
    "Skipped",
    "Spoke",
    "ThreadMessage",
    "Trigger",
    "TriggerType",
]
