"""Durable store for follow-up tasks and their append-only event log.

Tasks are identified by the natural key (team_id, owner_user_id, thread_id,
last_message_id), enforced by a unique index in the database. Re-detection of
an existing key goes through ``merge_follow_up`` and is written with a
compare-and-set on the row's ``revision`` token, so concurrent writers either
merge on top of each other or retry; no caller-side locking is needed.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from postgrest.exceptions import APIError
from supabase import Client

from src.core.exceptions import ConflictError, DatabaseError, ValidationError
from src.db.supabase import SupabaseClient
from src.models.follow_up import (
    REFRESHABLE_STATUSES,
    SCHEDULE_LOCKED_STATUSES,
    FollowUpEvent,
    FollowUpEventType,
    FollowUpStatus,
    FollowUpTask,
    FollowUpUpsert,
    UpsertResult,
)

logger = logging.getLogger(__name__)

TASKS_TABLE = "follow_up_tasks"
EVENTS_TABLE = "follow_up_events"

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"
MAX_MERGE_ATTEMPTS = 5

Clock = Callable[[], datetime]

# Incoming non-null wins, otherwise the stored value is kept.
_COALESCE_FIELDS = (
    "counterpart_email",
    "subject",
    "summary",
    "draft_subject",
    "draft_body",
    "tone_hint",
    "prompt_version",
    "metadata",
)
# Coalesced unless the stored task is already scheduled.
_SCHEDULE_FIELDS = ("due_at", "suggested_send_at")

_UPDATABLE_FIELDS = frozenset(
    {
        *_COALESCE_FIELDS,
        *_SCHEDULE_FIELDS,
        "status",
        "priority",
        "sent_at",
    }
)


def utc_now() -> datetime:
    """Default store clock."""
    return datetime.now(UTC)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime as a UTC ISO-8601 string (naive values are UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _serialize_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _serialize_upsert(candidate: FollowUpUpsert) -> dict[str, Any]:
    return {key: _serialize_value(value) for key, value in candidate.model_dump().items()}


def merge_follow_up(existing: dict[str, Any], incoming: FollowUpUpsert) -> dict[str, Any]:
    """Compute the patch a re-detected candidate applies to its stored row.

    Args:
        existing: The stored task row.
        incoming: The candidate being upserted under the same natural key.

    Returns:
        Column updates to write. Priority never decreases, the status only
        moves when the stored status is pending or snoozed, and the schedule
        is left alone once the task is scheduled.
    """
    incoming_row = _serialize_upsert(incoming)
    patch: dict[str, Any] = {}

    for field in _COALESCE_FIELDS:
        if incoming_row.get(field) is not None:
            patch[field] = incoming_row[field]

    existing_status = FollowUpStatus(existing["status"])
    if existing_status in REFRESHABLE_STATUSES:
        patch["status"] = incoming_row["status"]
    if existing_status not in SCHEDULE_LOCKED_STATUSES:
        for field in _SCHEDULE_FIELDS:
            if incoming_row.get(field) is not None:
                patch[field] = incoming_row[field]

    patch["priority"] = max(int(existing.get("priority") or 0), incoming.priority)
    return patch


class FollowUpStore:
    """Supabase-backed store for follow-up tasks and events."""

    def __init__(self, client: Client | None = None, clock: Clock | None = None) -> None:
        """Initialize the store.

        Args:
            client: Supabase client; defaults to the shared singleton.
            clock: Returns the current time; injectable for due-time tests.
        """
        self._db = client if client is not None else SupabaseClient.get_client()
        self._clock = clock or utc_now

    def now(self) -> datetime:
        """Current time according to the store clock."""
        return self._clock()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def upsert(self, candidate: FollowUpUpsert) -> UpsertResult:
        """Insert a task for a new natural key or merge into the existing one.

        Args:
            candidate: The incoming task fields.

        Returns:
            The task id, whether it was freshly inserted, and its status
            before and after the write.

        Raises:
            ConflictError: If the merge keeps losing to concurrent writers.
            DatabaseError: If the database operation fails.
        """
        for attempt in range(1, MAX_MERGE_ATTEMPTS + 1):
            existing = self._fetch_by_natural_key(candidate)

            if existing is None:
                row = self._insert_task(candidate)
                if row is None:
                    # Lost an insert race; the next pass merges into the winner.
                    logger.info(
                        "Follow-up insert raced on thread %s (attempt %d)",
                        candidate.thread_id,
                        attempt,
                    )
                    continue
                return UpsertResult(
                    id=row["id"],
                    inserted=True,
                    previous_status=None,
                    status=candidate.status,
                )

            patch = merge_follow_up(existing, candidate)
            if self._compare_and_set(existing, patch):
                return UpsertResult(
                    id=existing["id"],
                    inserted=False,
                    previous_status=FollowUpStatus(existing["status"]),
                    status=FollowUpStatus(patch.get("status", existing["status"])),
                )
            logger.info(
                "Follow-up %s changed during merge, retrying (attempt %d)",
                existing["id"],
                attempt,
            )

        raise ConflictError(
            f"Could not merge follow-up for thread {candidate.thread_id} "
            f"after {MAX_MERGE_ATTEMPTS} attempts",
            resource="follow_up_task",
        )

    async def get(self, task_id: str) -> FollowUpTask | None:
        """Fetch a task by id, or None if it does not exist."""
        try:
            result = self._db.table(TASKS_TABLE).select("*").eq("id", task_id).limit(1).execute()
        except Exception as e:
            logger.exception("Error fetching follow-up", extra={"task_id": task_id})
            raise DatabaseError(f"Failed to fetch follow-up: {e}") from e
        rows = result.data or []
        return FollowUpTask.model_validate(rows[0]) if rows else None

    async def update(
        self,
        task_id: str,
        fields: dict[str, Any],
        expected_status: FollowUpStatus | None = None,
    ) -> bool:
        """Apply a partial update to one task.

        ``metadata`` is replaced wholesale, not merged.

        Args:
            task_id: The task to update.
            fields: Column values to set.
            expected_status: When given, the update only applies if the task
                is still in this status.

        Returns:
            True if a row changed.

        Raises:
            ValidationError: If a field is not updatable.
            DatabaseError: If the database operation fails.
        """
        if not fields:
            return False
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown follow-up fields: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )

        payload = {key: _serialize_value(value) for key, value in fields.items()}
        payload["updated_at"] = to_iso(self._clock())
        payload["revision"] = uuid4().hex

        try:
            query = self._db.table(TASKS_TABLE).update(payload).eq("id", task_id)
            if expected_status is not None:
                query = query.eq("status", FollowUpStatus(expected_status).value)
            result = query.execute()
        except Exception as e:
            logger.exception("Error updating follow-up", extra={"task_id": task_id})
            raise DatabaseError(f"Failed to update follow-up: {e}") from e
        return bool(result.data)

    async def list_due(self, limit: int = 20) -> list[FollowUpTask]:
        """Scheduled tasks whose suggested send time has passed, oldest first."""
        now = to_iso(self._clock())
        try:
            result = (
                self._db.table(TASKS_TABLE)
                .select("*")
                .eq("status", FollowUpStatus.SCHEDULED.value)
                .not_.is_("suggested_send_at", "null")
                .lte("suggested_send_at", now)
                .order("suggested_send_at")
                .limit(limit)
                .execute()
            )
        except Exception as e:
            logger.exception("Error listing due follow-ups")
            raise DatabaseError(f"Failed to list due follow-ups: {e}") from e
        return [FollowUpTask.model_validate(row) for row in result.data or []]

    async def list_by_team(
        self,
        team_id: str,
        status: FollowUpStatus | None = None,
        owner_user_id: str | None = None,
        limit: int = 50,
    ) -> list[FollowUpTask]:
        """List a team's tasks, highest priority first, then earliest due.

        ``sort_at`` is a generated column holding coalesce(due_at, created_at).
        """
        try:
            query = self._db.table(TASKS_TABLE).select("*").eq("team_id", team_id)
            if status is not None:
                query = query.eq("status", FollowUpStatus(status).value)
            if owner_user_id:
                query = query.eq("owner_user_id", owner_user_id)
            result = (
                query.order("priority", desc=True)
                .order("sort_at")
                .limit(limit)
                .execute()
            )
        except Exception as e:
            logger.exception("Error listing follow-ups", extra={"team_id": team_id})
            raise DatabaseError(f"Failed to list follow-ups: {e}") from e
        return [FollowUpTask.model_validate(row) for row in result.data or []]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def append_event(
        self,
        task_id: str,
        event_type: FollowUpEventType | str,
        payload: dict[str, Any] | None = None,
    ) -> FollowUpEvent:
        """Append an audit event to a task's log."""
        row = {
            "id": str(uuid4()),
            "follow_up_id": task_id,
            "event_type": _serialize_value(event_type),
            "payload": payload,
            "created_at": to_iso(self._clock()),
        }
        try:
            result = self._db.table(EVENTS_TABLE).insert(row).execute()
        except Exception as e:
            logger.exception(
                "Error appending follow-up event",
                extra={"task_id": task_id, "event_type": row["event_type"]},
            )
            raise DatabaseError(f"Failed to append follow-up event: {e}") from e
        data = result.data or [row]
        return FollowUpEvent.model_validate(data[0])

    async def list_events(self, task_id: str, limit: int = 100) -> list[FollowUpEvent]:
        """A task's events in the order they were written."""
        try:
            result = (
                self._db.table(EVENTS_TABLE)
                .select("*")
                .eq("follow_up_id", task_id)
                .order("created_at")
                .limit(limit)
                .execute()
            )
        except Exception as e:
            logger.exception("Error listing follow-up events", extra={"task_id": task_id})
            raise DatabaseError(f"Failed to list follow-up events: {e}") from e
        return [FollowUpEvent.model_validate(row) for row in result.data or []]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fetch_by_natural_key(self, candidate: FollowUpUpsert) -> dict[str, Any] | None:
        try:
            result = (
                self._db.table(TASKS_TABLE)
                .select("*")
                .eq("team_id", candidate.team_id)
                .eq("owner_user_id", candidate.owner_user_id)
                .eq("thread_id", candidate.thread_id)
                .eq("last_message_id", candidate.last_message_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.exception(
                "Error fetching follow-up by key", extra={"thread_id": candidate.thread_id}
            )
            raise DatabaseError(f"Failed to fetch follow-up: {e}") from e
        rows = result.data or []
        return rows[0] if rows else None

    def _insert_task(self, candidate: FollowUpUpsert) -> dict[str, Any] | None:
        """Insert a new row; returns None when the natural key already exists."""
        now = to_iso(self._clock())
        row = _serialize_upsert(candidate)
        row["priority"] = candidate.priority
        row.update(
            {
                "id": str(uuid4()),
                "sent_at": None,
                "created_at": now,
                "updated_at": now,
                "revision": uuid4().hex,
            }
        )
        try:
            result = self._db.table(TASKS_TABLE).insert(row).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                return None
            logger.exception("Error inserting follow-up", extra={"thread_id": candidate.thread_id})
            raise DatabaseError(f"Failed to insert follow-up: {e}") from e
        except Exception as e:
            logger.exception("Error inserting follow-up", extra={"thread_id": candidate.thread_id})
            raise DatabaseError(f"Failed to insert follow-up: {e}") from e
        data = result.data or [row]
        return data[0]

    def _compare_and_set(self, existing: dict[str, Any], patch: dict[str, Any]) -> bool:
        """Write the patch only if nobody rewrote the row since it was read."""
        payload = dict(patch)
        payload["updated_at"] = to_iso(self._clock())
        payload["revision"] = uuid4().hex
        try:
            result = (
                self._db.table(TASKS_TABLE)
                .update(payload)
                .eq("id", existing["id"])
                .eq("revision", existing["revision"])
                .execute()
            )
        except Exception as e:
            logger.exception("Error merging follow-up", extra={"task_id": existing["id"]})
            raise DatabaseError(f"Failed to merge follow-up: {e}") from e
        return bool(result.data)
