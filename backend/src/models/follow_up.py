"""Pydantic models for follow-up tasks, their events, and detection inputs."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class FollowUpStatus(str, Enum):
    """Lifecycle status of a follow-up task."""

    PENDING = "pending"
    SCHEDULED = "scheduled"
    SNOOZED = "snoozed"
    DISMISSED = "dismissed"
    SENT = "sent"
    ERROR = "error"


# Statuses whose row accepts a re-detection's status.
REFRESHABLE_STATUSES = frozenset({FollowUpStatus.PENDING, FollowUpStatus.SNOOZED})
TERMINAL_STATUSES = frozenset({FollowUpStatus.SENT, FollowUpStatus.DISMISSED})
# Statuses whose approved send time a re-detection leaves alone.
SCHEDULE_LOCKED_STATUSES = frozenset({FollowUpStatus.SCHEDULED})


class FollowUpEventType(str, Enum):
    """Event tags written to the follow-up audit log."""

    DISCOVERED = "discovered"
    DRAFT_CREATED = "draft_created"
    DRAFT_ERROR = "draft_error"
    SCHEDULED = "scheduled"
    SNOOZED = "snoozed"
    DISMISSED = "dismissed"
    SENT = "sent"
    ERROR = "error"


class FollowUpTone(str, Enum):
    """Tone hints understood by the draft generator."""

    FRIENDLY = "friendly"
    URGENT = "urgent"
    FORMAL = "formal"


class MailAccount(BaseModel):
    """A team member's connected mailbox."""

    user_id: str
    email: str
    connection_id: str
    provider: str = "gmail"
    display_name: str = ""


class TeamMember(BaseModel):
    """Active membership of a user in a team."""

    team_id: str
    user_id: str
    role: str = "member"
    status: str = "active"


class ThreadRef(BaseModel):
    """Reference to a mail thread returned by a sent-folder listing."""

    id: str


class MessageHeaders(BaseModel):
    """Header-only view of one message in a thread."""

    id: str
    thread_id: str
    date: datetime | None = None
    from_header: str = ""
    subject: str = ""
    snippet: str = ""


class FollowUpCandidate(BaseModel):
    """A detected, not-yet-persisted follow-up opportunity."""

    thread_id: str
    last_message_id: str
    subject: str = ""
    summary: str = ""
    counterpart_email: str
    last_message_date: datetime


class FollowUpUpsert(BaseModel):
    """Incoming row for a natural-key upsert into the task store."""

    team_id: str
    owner_user_id: str
    thread_id: str
    last_message_id: str
    counterpart_email: str | None = None
    subject: str | None = None
    summary: str | None = None
    status: FollowUpStatus = FollowUpStatus.PENDING
    priority: int = 0
    due_at: datetime | None = None
    suggested_send_at: datetime | None = None
    draft_subject: str | None = None
    draft_body: str | None = None
    tone_hint: str | None = None
    prompt_version: str | None = None
    metadata: dict[str, Any] | None = None

    @property
    def natural_key(self) -> tuple[str, str, str, str]:
        """The (team, owner, thread, last message) identity of the task."""
        return (self.team_id, self.owner_user_id, self.thread_id, self.last_message_id)


class UpsertResult(BaseModel):
    """Outcome of a task store upsert."""

    id: str
    inserted: bool
    previous_status: FollowUpStatus | None = None
    status: FollowUpStatus


class FollowUpTask(BaseModel):
    """A persisted follow-up task."""

    id: str
    team_id: str
    owner_user_id: str
    thread_id: str
    last_message_id: str
    counterpart_email: str | None = None
    subject: str | None = None
    summary: str | None = None
    status: FollowUpStatus = FollowUpStatus.PENDING
    priority: int = 0
    due_at: datetime | None = None
    suggested_send_at: datetime | None = None
    draft_subject: str | None = None
    draft_body: str | None = None
    tone_hint: str | None = None
    prompt_version: str | None = None
    metadata: dict[str, Any] | None = None
    sent_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    revision: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the task reached a status nothing may leave."""
        return self.status in TERMINAL_STATUSES


class FollowUpEvent(BaseModel):
    """Append-only audit record for a follow-up task."""

    id: str
    follow_up_id: str
    event_type: str
    payload: dict[str, Any] | None = None
    created_at: datetime | None = None


class DraftRequest(BaseModel):
    """Inputs for drafting a follow-up email."""

    sender_name: str = ""
    counterpart_name: str = ""
    subject: str = ""
    context_summary: str = ""
    tone: str = FollowUpTone.FRIENDLY.value
    idle_days: int = 3


class DraftResult(BaseModel):
    """A drafted follow-up email."""

    subject: str
    body: str
    tone: str
    model: str = "template"
    prompt_version: str = "v1"


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class FollowUpApproveRequest(BaseModel):
    """Request model for approving a follow-up for delivery."""

    send_at: datetime | None = Field(None, description="When to send; defaults to now")
    draft_subject: str | None = Field(None, max_length=500, description="Override draft subject")
    draft_body: str | None = Field(None, max_length=20000, description="Override draft body")


class FollowUpSnoozeRequest(BaseModel):
    """Request model for snoozing a follow-up."""

    minutes: int = Field(60 * 24, ge=1, le=60 * 24 * 90, description="Minutes to snooze")


class FollowUpDismissRequest(BaseModel):
    """Request model for dismissing a follow-up."""

    reason: str | None = Field(None, max_length=500)


class FollowUpListResponse(BaseModel):
    """Response wrapper for follow-up listings."""

    tasks: list[FollowUpTask]


class FollowUpTaskResponse(BaseModel):
    """Response wrapper for a single follow-up."""

    task: FollowUpTask


class FollowUpEventListResponse(BaseModel):
    """Response wrapper for a follow-up's event log."""

    events: list[FollowUpEvent]
