"""Follow-up API routes.

All routes are scoped to the team in the ``X-Team-Id`` header. Any active
member can read the team's follow-ups; only a task's owner can act on it.
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query
from fastapi import status as http_status

from src.api.deps import CurrentUser, TeamMembership
from src.core.exceptions import AuthorizationError, NotFoundError
from src.models.follow_up import (
    FollowUpApproveRequest,
    FollowUpDismissRequest,
    FollowUpEventListResponse,
    FollowUpListResponse,
    FollowUpSnoozeRequest,
    FollowUpStatus,
    FollowUpTask,
    FollowUpTaskResponse,
    TeamMember,
)
from src.services.follow_up_service import FollowUpService
from src.services.scheduler import FollowUpScheduler, get_follow_up_scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/follow-ups", tags=["follow-ups"])

JOB_ADMIN_ROLES = frozenset({"owner", "admin"})


def get_follow_up_service() -> FollowUpService:
    """Provide the follow-up lifecycle service."""
    return FollowUpService()


Service = Annotated[FollowUpService, Depends(get_follow_up_service)]
Scheduler = Annotated[FollowUpScheduler, Depends(get_follow_up_scheduler)]


async def _team_task(service: FollowUpService, membership: TeamMember, task_id: str) -> FollowUpTask:
    task = await service.get_task(task_id)
    # Tasks of other teams are indistinguishable from missing ones.
    if task.team_id != membership.team_id:
        raise NotFoundError("Follow-up", task_id)
    return task


async def _owned_task(service: FollowUpService, membership: TeamMember, task_id: str) -> FollowUpTask:
    task = await _team_task(service, membership, task_id)
    if task.owner_user_id != membership.user_id:
        raise AuthorizationError("Only the owner can modify this follow-up")
    return task


def _sender_name(current_user: Any) -> str:
    metadata = getattr(current_user, "user_metadata", None) or {}
    return str(metadata.get("full_name") or getattr(current_user, "email", "") or "")


@router.get("", response_model=FollowUpListResponse)
async def list_follow_ups(
    membership: TeamMembership,
    service: Service,
    status: FollowUpStatus | None = Query(None, description="Filter by status"),
    filter: str | None = Query(None, pattern="^(mine|all)$", description="'mine' for own tasks"),
    limit: int = Query(50, ge=1, le=200),
) -> dict[str, Any]:
    """List the team's follow-ups, highest priority first."""
    owner = membership.user_id if filter == "mine" else None
    tasks = await service.list_tasks(
        membership.team_id, status=status, owner_user_id=owner, limit=limit
    )
    return {"tasks": tasks}


@router.get("/{task_id}", response_model=FollowUpTaskResponse)
async def get_follow_up(
    task_id: str, membership: TeamMembership, service: Service
) -> dict[str, Any]:
    """Fetch one follow-up."""
    return {"task": await _team_task(service, membership, task_id)}


@router.get("/{task_id}/events", response_model=FollowUpEventListResponse)
async def list_follow_up_events(
    task_id: str, membership: TeamMembership, service: Service
) -> dict[str, Any]:
    """A follow-up's audit log, oldest first."""
    await _team_task(service, membership, task_id)
    return {"events": await service.list_events(task_id)}


@router.post("/{task_id}/approve", response_model=FollowUpTaskResponse)
async def approve_follow_up(
    task_id: str,
    membership: TeamMembership,
    service: Service,
    request: FollowUpApproveRequest | None = None,
) -> dict[str, Any]:
    """Schedule a follow-up for delivery, optionally with an edited draft."""
    await _owned_task(service, membership, task_id)
    request = request or FollowUpApproveRequest()
    task = await service.approve(
        task_id,
        send_at=request.send_at,
        draft_subject=request.draft_subject,
        draft_body=request.draft_body,
    )
    return {"task": task}


@router.post("/{task_id}/snooze", response_model=FollowUpTaskResponse)
async def snooze_follow_up(
    task_id: str,
    membership: TeamMembership,
    service: Service,
    request: FollowUpSnoozeRequest | None = None,
) -> dict[str, Any]:
    """Snooze a follow-up; defaults to one day."""
    await _owned_task(service, membership, task_id)
    request = request or FollowUpSnoozeRequest()
    return {"task": await service.snooze(task_id, minutes=request.minutes)}


@router.post("/{task_id}/dismiss", response_model=FollowUpTaskResponse)
async def dismiss_follow_up(
    task_id: str,
    membership: TeamMembership,
    service: Service,
    request: FollowUpDismissRequest | None = None,
) -> dict[str, Any]:
    """Dismiss a follow-up without sending it."""
    await _owned_task(service, membership, task_id)
    reason = request.reason if request else None
    return {"task": await service.dismiss(task_id, reason=reason)}


@router.post("/{task_id}/regenerate", response_model=FollowUpTaskResponse)
async def regenerate_follow_up(
    task_id: str,
    current_user: CurrentUser,
    membership: TeamMembership,
    service: Service,
) -> dict[str, Any]:
    """Redraft a follow-up's email."""
    await _owned_task(service, membership, task_id)
    task = await service.regenerate(task_id, sender_name=_sender_name(current_user))
    return {"task": task}


@router.post("/jobs/{job}/run", status_code=http_status.HTTP_200_OK)
async def run_follow_up_job(
    job: str, membership: TeamMembership, scheduler: Scheduler
) -> dict[str, Any]:
    """Trigger a follow-up job now; skipped if it is already running."""
    if membership.role not in JOB_ADMIN_ROLES:
        raise AuthorizationError("Only team admins can run follow-up jobs")
    if scheduler.get_job(job) is None:
        raise NotFoundError("Job", job)

    logger.info("Follow-up job %s triggered by user %s", job, membership.user_id)
    stats = await scheduler.run_job(job)
    return {"job": job, "skipped": stats is None, "stats": stats}
