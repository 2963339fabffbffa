"""Follow-up discovery job.

Runs on an interval: for every active team member with a connected mailbox,
detect idle sent threads, upsert them as follow-up tasks, and draft an email
for tasks that do not have one yet. Failures are isolated per member and per
candidate so one bad mailbox never stops the run.
"""

import logging
from datetime import timedelta
from typing import Any

from src.core.config import settings
from src.core.exceptions import MailAuthError
from src.integrations.mail import get_mail_client
from src.models.follow_up import (
    DraftRequest,
    FollowUpCandidate,
    FollowUpEventType,
    FollowUpStatus,
    FollowUpTone,
    FollowUpUpsert,
    MailAccount,
)
from src.services.follow_up_detector import FollowUpDetector
from src.services.follow_up_drafts import PROMPT_VERSION, FollowUpDraftGenerator
from src.services.follow_up_service import counterpart_name
from src.services.follow_up_store import FollowUpStore, to_iso
from src.services.team_directory import TeamDirectory

logger = logging.getLogger(__name__)

DETECTOR_SOURCE = "detector_v1"
DISCOVERY_PRIORITY = 1
SEND_OFFSET = timedelta(hours=1)


def build_upsert(
    team_id: str,
    owner_user_id: str,
    candidate: FollowUpCandidate,
    idle_days: int,
) -> FollowUpUpsert:
    """The task row a detected candidate is upserted as."""
    due_at = candidate.last_message_date + timedelta(days=idle_days)
    return FollowUpUpsert(
        team_id=team_id,
        owner_user_id=owner_user_id,
        thread_id=candidate.thread_id,
        last_message_id=candidate.last_message_id,
        counterpart_email=candidate.counterpart_email,
        subject=candidate.subject,
        summary=candidate.summary,
        status=FollowUpStatus.PENDING,
        priority=DISCOVERY_PRIORITY,
        due_at=due_at,
        suggested_send_at=due_at + SEND_OFFSET,
        tone_hint=FollowUpTone.FRIENDLY.value,
        prompt_version=PROMPT_VERSION,
        metadata={"idle_days": idle_days, "source": DETECTOR_SOURCE},
    )


async def _process_candidate(
    team_id: str,
    account: MailAccount,
    candidate: FollowUpCandidate,
    store: FollowUpStore,
    drafts: FollowUpDraftGenerator,
    idle_days: int,
    auto_approve: bool,
    stats: dict[str, Any],
) -> None:
    result = await store.upsert(build_upsert(team_id, account.user_id, candidate, idle_days))

    if result.inserted:
        stats["tasks_created"] += 1
        await store.append_event(
            result.id,
            FollowUpEventType.DISCOVERED,
            {
                "thread_id": candidate.thread_id,
                "counterpart_email": candidate.counterpart_email,
                "idle_days": idle_days,
            },
        )
    elif (
        result.previous_status == FollowUpStatus.SNOOZED
        and result.status == FollowUpStatus.PENDING
    ):
        await store.append_event(
            result.id,
            FollowUpEventType.DISCOVERED,
            {"thread_id": candidate.thread_id, "redetected": True},
        )

    task = await store.get(result.id)
    if task is None or task.is_terminal:
        return
    if not result.inserted and task.draft_body:
        return

    try:
        draft = await drafts.generate(
            DraftRequest(
                sender_name=account.display_name or account.email,
                counterpart_name=counterpart_name(task.counterpart_email),
                subject=task.subject or "",
                context_summary=task.summary or "",
                tone=task.tone_hint or FollowUpTone.FRIENDLY.value,
                idle_days=idle_days,
            )
        )
    except Exception as e:
        stats["errors"] += 1
        logger.warning(
            "FOLLOW_UP_DISCOVERY: Draft failed for follow-up %s: %s",
            result.id,
            e,
            exc_info=True,
        )
        await store.append_event(result.id, FollowUpEventType.DRAFT_ERROR, {"error": str(e)})
        return

    await store.update(
        result.id,
        {
            "draft_subject": draft.subject,
            "draft_body": draft.body,
            "tone_hint": draft.tone,
            "prompt_version": draft.prompt_version,
        },
    )
    await store.append_event(result.id, FollowUpEventType.DRAFT_CREATED, {"model": draft.model})
    stats["drafts_created"] += 1

    if auto_approve and task.status == FollowUpStatus.PENDING:
        scheduled = await store.update(
            result.id,
            {"status": FollowUpStatus.SCHEDULED},
            expected_status=FollowUpStatus.PENDING,
        )
        if scheduled:
            await store.append_event(
                result.id,
                FollowUpEventType.SCHEDULED,
                {"auto": True, "send_at": to_iso(task.suggested_send_at)},
            )


async def run_follow_up_discovery(
    directory: TeamDirectory | None = None,
    detector: FollowUpDetector | None = None,
    store: FollowUpStore | None = None,
    drafts: FollowUpDraftGenerator | None = None,
    auto_approve: bool | None = None,
) -> dict[str, Any]:
    """Detect follow-up candidates for every active team member.

    Returns:
        Dict with statistics about the run.
    """
    stats: dict[str, Any] = {
        "teams_processed": 0,
        "members_processed": 0,
        "members_skipped": 0,
        "candidates_found": 0,
        "tasks_created": 0,
        "drafts_created": 0,
        "errors": 0,
    }

    directory = directory or TeamDirectory()
    detector = detector or FollowUpDetector(
        get_mail_client(),
        lookback_days=settings.FOLLOW_UP_LOOKBACK_DAYS,
        idle_days=settings.FOLLOW_UP_IDLE_DAYS,
        max_threads=settings.FOLLOW_UP_MAX_THREADS,
    )
    store = store or FollowUpStore()
    drafts = drafts or FollowUpDraftGenerator()
    if auto_approve is None:
        auto_approve = settings.FOLLOW_UP_AUTO_APPROVE

    try:
        team_ids = await directory.list_active_teams()
    except Exception:
        logger.exception("FOLLOW_UP_DISCOVERY: Failed to list active teams")
        stats["errors"] += 1
        return stats

    for team_id in team_ids:
        try:
            members = await directory.list_active_members(team_id)
        except Exception as e:
            stats["errors"] += 1
            logger.warning(
                "FOLLOW_UP_DISCOVERY: Failed to list members of team %s: %s",
                team_id,
                e,
                exc_info=True,
            )
            continue
        stats["teams_processed"] += 1

        for member in members:
            try:
                account = await directory.resolve_account(member.user_id)
                if account is None:
                    stats["members_skipped"] += 1
                    continue

                candidates = await detector.find_candidates(account)
                stats["members_processed"] += 1
                stats["candidates_found"] += len(candidates)
            except MailAuthError as e:
                stats["members_skipped"] += 1
                logger.info(
                    "FOLLOW_UP_DISCOVERY: Skipping user %s in team %s, mail access revoked: %s",
                    member.user_id,
                    team_id,
                    e,
                )
                continue
            except Exception as e:
                stats["errors"] += 1
                logger.warning(
                    "FOLLOW_UP_DISCOVERY: Error for user %s in team %s: %s",
                    member.user_id,
                    team_id,
                    e,
                    exc_info=True,
                )
                continue

            for candidate in candidates:
                try:
                    await _process_candidate(
                        team_id,
                        account,
                        candidate,
                        store,
                        drafts,
                        detector.idle_days,
                        auto_approve,
                        stats,
                    )
                except Exception as e:
                    stats["errors"] += 1
                    logger.warning(
                        "FOLLOW_UP_DISCOVERY: Failed to record thread %s for user %s: %s",
                        candidate.thread_id,
                        member.user_id,
                        e,
                        exc_info=True,
                    )

    logger.info("FOLLOW_UP_DISCOVERY: Run complete %s", stats)
    return stats
