"""Due follow-up send job.

Delivers scheduled follow-ups whose send time has passed. Each task is sent
in isolation: a failure marks that task ``error`` with an event and the batch
continues. Failed tasks are not retried automatically. Once the provider has
accepted a message the task is never moved to ``error``.
"""

import logging
from typing import Any

from src.core.config import settings
from src.core.exceptions import EmailSendError
from src.integrations.mail import MailProvider, get_mail_client
from src.models.follow_up import FollowUpEventType, FollowUpStatus, FollowUpTask
from src.services.follow_up_drafts import reply_subject
from src.services.follow_up_store import FollowUpStore
from src.services.team_directory import TeamDirectory

logger = logging.getLogger(__name__)


async def _deliver(
    task: FollowUpTask,
    directory: TeamDirectory,
    mail: MailProvider,
) -> str:
    account = await directory.resolve_account(task.owner_user_id)
    if account is None:
        raise EmailSendError("Owner has no connected mail account", task_id=task.id)
    if not task.draft_body or not task.counterpart_email:
        raise EmailSendError("Follow-up draft is incomplete", task_id=task.id)

    subject = task.draft_subject or reply_subject(task.subject)
    await mail.send_message(account, task.counterpart_email, subject, task.draft_body)
    return subject


async def _record_sent(task: FollowUpTask, store: FollowUpStore, subject: str) -> None:
    # The mail has already left; bookkeeping failures are logged only.
    try:
        marked = await store.update(
            task.id,
            {"status": FollowUpStatus.SENT, "sent_at": store.now()},
            expected_status=FollowUpStatus.SCHEDULED,
        )
        if not marked:
            logger.warning(
                "FOLLOW_UP_SEND: Follow-up %s changed status while it was being sent", task.id
            )
    except Exception:
        logger.exception("FOLLOW_UP_SEND: Sent follow-up %s but could not mark it sent", task.id)

    try:
        await store.append_event(
            task.id,
            FollowUpEventType.SENT,
            {"to": task.counterpart_email, "subject": subject},
        )
    except Exception:
        logger.exception(
            "FOLLOW_UP_SEND: Sent follow-up %s but could not record the event", task.id
        )


async def _record_failure(task: FollowUpTask, store: FollowUpStore, error: Exception) -> None:
    try:
        await store.update(
            task.id,
            {"status": FollowUpStatus.ERROR},
            expected_status=FollowUpStatus.SCHEDULED,
        )
        await store.append_event(task.id, FollowUpEventType.ERROR, {"error": str(error)})
    except Exception:
        logger.exception("FOLLOW_UP_SEND: Could not record failure for follow-up %s", task.id)


async def run_due_follow_up_sends(
    store: FollowUpStore | None = None,
    directory: TeamDirectory | None = None,
    mail: MailProvider | None = None,
    batch_size: int | None = None,
) -> dict[str, Any]:
    """Send every scheduled follow-up that is due, up to one batch.

    Returns:
        Dict with statistics about the run.
    """
    stats: dict[str, Any] = {"due": 0, "sent": 0, "failed": 0}

    store = store or FollowUpStore()
    directory = directory or TeamDirectory()
    mail = mail or get_mail_client()
    batch_size = batch_size or settings.FOLLOW_UP_SEND_BATCH_SIZE

    try:
        due = await store.list_due(limit=batch_size)
    except Exception:
        logger.exception("FOLLOW_UP_SEND: Failed to list due follow-ups")
        return stats

    stats["due"] = len(due)
    for task in due:
        try:
            subject = await _deliver(task, directory, mail)
        except Exception as e:
            stats["failed"] += 1
            logger.warning(
                "FOLLOW_UP_SEND: Failed to send follow-up %s: %s",
                task.id,
                e,
                exc_info=True,
            )
            await _record_failure(task, store, e)
            continue

        stats["sent"] += 1
        await _record_sent(task, store, subject)

    if due:
        logger.info("FOLLOW_UP_SEND: Run complete %s", stats)
    return stats
