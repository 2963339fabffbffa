"""Detect sent-mail threads that are waiting on a reply and have gone idle.

A thread is a candidate when it has at least two messages, its last message
was sent by the account owner more than ``idle_days`` ago, and the message
before it came from someone else (the counterpart).
"""

import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from src.core.exceptions import MailAuthError
from src.integrations.mail import MailProvider
from src.models.follow_up import FollowUpCandidate, MailAccount, MessageHeaders

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 14
DEFAULT_IDLE_DAYS = 3
DEFAULT_MAX_THREADS = 25

_ANGLE_ADDRESS = re.compile(r"<([^>]+)>")

_EPOCH = datetime.min.replace(tzinfo=UTC)


def extract_email_address(value: str | None) -> str:
    """Pull the bare, lower-cased address out of a From-style header."""
    if not value:
        return ""
    match = _ANGLE_ADDRESS.search(value)
    if match:
        return match.group(1).strip().lower()
    return value.strip().lower()


class FollowUpDetector:
    """Finds idle threads for one mailbox owner."""

    def __init__(
        self,
        mail: MailProvider,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        idle_days: int = DEFAULT_IDLE_DAYS,
        max_threads: int = DEFAULT_MAX_THREADS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._mail = mail
        self.lookback_days = lookback_days
        self.idle_days = idle_days
        self.max_threads = max_threads
        self._clock = clock or (lambda: datetime.now(UTC))

    async def find_candidates(self, account: MailAccount) -> list[FollowUpCandidate]:
        """Scan the account's recent sent threads for follow-up candidates.

        Failures listing threads and revoked credentials propagate to the
        caller; any other failure on a single thread is logged and the scan
        moves on.
        """
        threads = await self._mail.list_sent_threads(
            account, self.lookback_days, self.max_threads
        )
        owner_email = account.email.strip().lower()
        now = self._clock()
        candidates: list[FollowUpCandidate] = []

        for thread in threads[: self.max_threads]:
            try:
                messages = await self._mail.get_thread_headers(account, thread.id)
            except MailAuthError:
                raise
            except Exception as e:
                logger.warning(
                    "Failed to evaluate thread %s for user %s: %s",
                    thread.id,
                    account.user_id,
                    e,
                    exc_info=True,
                )
                continue

            candidate = self._evaluate_thread(thread.id, messages, owner_email, now)
            if candidate is not None:
                candidates.append(candidate)

        logger.info(
            "Follow-up detection found %d candidates in %d threads for user %s",
            len(candidates),
            len(threads),
            account.user_id,
        )
        return candidates

    def _evaluate_thread(
        self,
        thread_id: str,
        messages: list[MessageHeaders],
        owner_email: str,
        now: datetime,
    ) -> FollowUpCandidate | None:
        if len(messages) < 2:
            return None

        ordered = sorted(messages, key=lambda m: m.date or _EPOCH)
        last, prev = ordered[-1], ordered[-2]
        if last.date is None:
            return None

        # not stale yet
        if now - last.date < timedelta(days=self.idle_days):
            return None

        # the counterpart replied last
        if extract_email_address(last.from_header) != owner_email:
            return None

        counterpart = extract_email_address(prev.from_header)
        if not counterpart or counterpart == owner_email:
            return None

        return FollowUpCandidate(
            thread_id=thread_id,
            last_message_id=last.id,
            subject=last.subject or prev.subject or "",
            summary=last.snippet or prev.snippet or "",
            counterpart_email=counterpart,
            last_message_date=last.date,
        )
