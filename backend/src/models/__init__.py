"""Models package for the Nudge backend."""

from src.models.follow_up import (
    DraftRequest,
    DraftResult,
    FollowUpApproveRequest,
    FollowUpCandidate,
    FollowUpDismissRequest,
    FollowUpEvent,
    FollowUpEventListResponse,
    FollowUpEventType,
    FollowUpListResponse,
    FollowUpSnoozeRequest,
    FollowUpStatus,
    FollowUpTask,
    FollowUpTaskResponse,
    FollowUpTone,
    FollowUpUpsert,
    MailAccount,
    MessageHeaders,
    TeamMember,
    ThreadRef,
    UpsertResult,
)

__all__ = [
    "DraftRequest",
    "DraftResult",
    "FollowUpApproveRequest",
    "FollowUpCandidate",
    "FollowUpDismissRequest",
    "FollowUpEvent",
    "FollowUpEventListResponse",
    "FollowUpEventType",
    "FollowUpListResponse",
    "FollowUpSnoozeRequest",
    "FollowUpStatus",
    "FollowUpTask",
    "FollowUpTaskResponse",
    "FollowUpTone",
    "FollowUpUpsert",
    "MailAccount",
    "MessageHeaders",
    "TeamMember",
    "ThreadRef",
    "UpsertResult",
]
