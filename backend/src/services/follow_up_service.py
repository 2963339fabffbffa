"""User-facing lifecycle operations on follow-up tasks.

Every transition is checked against the status machine below and written
conditionally on the status that was read, so a task changed concurrently
(for example sent by the due-send job) is never silently overwritten.

    pending   -> scheduled | snoozed | dismissed
    snoozed   -> scheduled | dismissed | pending (re-detection)
    scheduled -> scheduled (reschedule) | snoozed | dismissed | sent | error
    error     -> scheduled | snoozed | dismissed
    sent, dismissed: terminal
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from src.core.exceptions import ConflictError, InvalidStatusTransitionError, NotFoundError
from src.models.follow_up import (
    DraftRequest,
    FollowUpEvent,
    FollowUpEventType,
    FollowUpStatus,
    FollowUpTask,
)
from src.services.follow_up_drafts import FollowUpDraftGenerator
from src.services.follow_up_store import FollowUpStore, to_iso

logger = logging.getLogger(__name__)

DEFAULT_SNOOZE_MINUTES = 60 * 24

APPROVABLE_STATUSES = frozenset(
    {
        FollowUpStatus.PENDING,
        FollowUpStatus.SNOOZED,
        FollowUpStatus.ERROR,
        FollowUpStatus.SCHEDULED,
    }
)


def counterpart_name(email: str | None) -> str:
    """A greeting name derived from an address's local part."""
    if not email:
        return ""
    local = email.split("@", 1)[0]
    first = local.replace("_", ".").replace("-", ".").split(".")[0]
    return first.capitalize()


class FollowUpService:
    """List, approve, snooze, dismiss and regenerate follow-ups."""

    def __init__(
        self,
        store: FollowUpStore | None = None,
        drafts: FollowUpDraftGenerator | None = None,
    ) -> None:
        self._store = store if store is not None else FollowUpStore()
        self._drafts = drafts if drafts is not None else FollowUpDraftGenerator()

    async def list_tasks(
        self,
        team_id: str,
        status: FollowUpStatus | None = None,
        owner_user_id: str | None = None,
        limit: int = 50,
    ) -> list[FollowUpTask]:
        """A team's tasks, highest priority first."""
        return await self._store.list_by_team(
            team_id, status=status, owner_user_id=owner_user_id, limit=limit
        )

    async def get_task(self, task_id: str) -> FollowUpTask:
        """Fetch a task.

        Raises:
            NotFoundError: If no task has this id.
        """
        task = await self._store.get(task_id)
        if task is None:
            raise NotFoundError("Follow-up", task_id)
        return task

    async def list_events(self, task_id: str) -> list[FollowUpEvent]:
        """The task's audit log, oldest first."""
        await self.get_task(task_id)
        return await self._store.list_events(task_id)

    async def approve(
        self,
        task_id: str,
        send_at: datetime | None = None,
        draft_subject: str | None = None,
        draft_body: str | None = None,
    ) -> FollowUpTask:
        """Schedule a task for delivery, optionally editing its draft first."""
        task = await self.get_task(task_id)
        if task.status not in APPROVABLE_STATUSES:
            raise InvalidStatusTransitionError(task_id, task.status.value, "scheduled")

        send_at = send_at or self._store.now()
        fields: dict[str, Any] = {
            "status": FollowUpStatus.SCHEDULED,
            "suggested_send_at": send_at,
        }
        if draft_subject is not None:
            fields["draft_subject"] = draft_subject
        if draft_body is not None:
            fields["draft_body"] = draft_body

        await self._transition(task, fields)
        await self._store.append_event(
            task_id,
            FollowUpEventType.SCHEDULED,
            {
                "send_at": to_iso(send_at),
                "previous_status": task.status.value,
                "edited": draft_subject is not None or draft_body is not None,
            },
        )
        logger.info("Follow-up %s scheduled for %s", task_id, to_iso(send_at))
        return await self.get_task(task_id)

    async def snooze(self, task_id: str, minutes: int = DEFAULT_SNOOZE_MINUTES) -> FollowUpTask:
        """Push a task's due and send times out by ``minutes``."""
        task = await self.get_task(task_id)
        if task.is_terminal:
            raise InvalidStatusTransitionError(task_id, task.status.value, "snoozed")

        until = self._store.now() + timedelta(minutes=minutes)
        await self._transition(
            task,
            {
                "status": FollowUpStatus.SNOOZED,
                "due_at": until,
                "suggested_send_at": until,
            },
        )
        await self._store.append_event(
            task_id,
            FollowUpEventType.SNOOZED,
            {"minutes": minutes, "until": to_iso(until)},
        )
        return await self.get_task(task_id)

    async def dismiss(self, task_id: str, reason: str | None = None) -> FollowUpTask:
        """Close a task without sending."""
        task = await self.get_task(task_id)
        if task.is_terminal:
            raise InvalidStatusTransitionError(task_id, task.status.value, "dismissed")

        await self._transition(task, {"status": FollowUpStatus.DISMISSED})
        await self._store.append_event(task_id, FollowUpEventType.DISMISSED, {"reason": reason})
        return await self.get_task(task_id)

    async def regenerate(self, task_id: str, sender_name: str = "") -> FollowUpTask:
        """Redraft a task's email and overwrite its draft fields.

        Raises:
            InvalidStatusTransitionError: If the task is sent or dismissed.
            EmailDraftError: If drafting fails.
        """
        task = await self.get_task(task_id)
        if task.is_terminal:
            raise InvalidStatusTransitionError(task_id, task.status.value, task.status.value)

        metadata = task.metadata or {}
        draft = await self._drafts.generate(
            DraftRequest(
                sender_name=sender_name,
                counterpart_name=counterpart_name(task.counterpart_email),
                subject=task.subject or "",
                context_summary=task.summary or "",
                tone=task.tone_hint or "friendly",
                idle_days=int(metadata.get("idle_days") or 3),
            )
        )
        await self._transition(
            task,
            {
                "draft_subject": draft.subject,
                "draft_body": draft.body,
                "tone_hint": draft.tone,
                "prompt_version": draft.prompt_version,
            },
        )
        await self._store.append_event(
            task_id,
            FollowUpEventType.DRAFT_CREATED,
            {"model": draft.model, "regenerated": True},
        )
        return await self.get_task(task_id)

    async def _transition(self, task: FollowUpTask, fields: dict[str, Any]) -> None:
        """Write ``fields`` only if the task is still in the status we read."""
        changed = await self._store.update(task.id, fields, expected_status=task.status)
        if not changed:
            raise ConflictError(
                f"Follow-up {task.id} changed while it was being updated",
                resource="follow_up_task",
            )
