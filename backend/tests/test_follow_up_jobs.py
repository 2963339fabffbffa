"""Tests for the discovery and due-send jobs."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.core.exceptions import DatabaseError, EmailDraftError, MailAuthError
from src.jobs.follow_up_discovery_job import build_upsert, run_follow_up_discovery
from src.jobs.follow_up_send_job import run_due_follow_up_sends
from src.models.follow_up import (
    DraftResult,
    FollowUpCandidate,
    FollowUpEventType,
    FollowUpStatus,
    FollowUpUpsert,
    MailAccount,
    MessageHeaders,
    TeamMember,
    ThreadRef,
)
from src.services.follow_up_detector import FollowUpDetector
from src.services.follow_up_service import FollowUpService
from src.services.follow_up_store import EVENTS_TABLE, TASKS_TABLE, FollowUpStore

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


def account(user_id: str) -> MailAccount:
    return MailAccount(
        user_id=user_id,
        email=f"{user_id}@example.com",
        connection_id=f"conn-{user_id}",
        display_name=user_id.title(),
    )


def candidate(thread_id: str = "thread-1") -> FollowUpCandidate:
    return FollowUpCandidate(
        thread_id=thread_id,
        last_message_id=f"{thread_id}-msg-2",
        subject="Proposal",
        summary="Sent over the proposal",
        counterpart_email="bob@example.com",
        last_message_date=T0,
    )


@pytest.fixture
def store(fake_db, clock) -> FollowUpStore:
    return FollowUpStore(client=fake_db, clock=clock)


@pytest.fixture
def directory() -> MagicMock:
    mock = MagicMock()
    mock.list_active_teams = AsyncMock(return_value=["team-1"])
    mock.list_active_members = AsyncMock(
        return_value=[
            TeamMember(team_id="team-1", user_id="alice"),
            TeamMember(team_id="team-1", user_id="carol"),
        ]
    )
    mock.resolve_account = AsyncMock(
        side_effect=lambda user_id: account(user_id) if user_id == "alice" else None
    )
    return mock


@pytest.fixture
def detector() -> MagicMock:
    mock = MagicMock()
    mock.idle_days = 3
    mock.find_candidates = AsyncMock(return_value=[candidate()])
    return mock


@pytest.fixture
def drafts() -> MagicMock:
    mock = MagicMock()
    mock.generate = AsyncMock(
        return_value=DraftResult(
            subject="Re: Proposal",
            body="Hi Bob,\n\nJust checking in.\n\nThanks,\nAlice",
            tone="friendly",
            model="template",
        )
    )
    return mock


def events_for(fake_db, task_id: str) -> list[dict]:
    return [e for e in fake_db.rows(EVENTS_TABLE) if e["follow_up_id"] == task_id]


async def discover(store, directory, detector, drafts, auto_approve=False) -> dict:
    return await run_follow_up_discovery(
        directory=directory,
        detector=detector,
        store=store,
        drafts=drafts,
        auto_approve=auto_approve,
    )


class TestDiscoveryJob:
    """run_follow_up_discovery"""

    @pytest.mark.asyncio
    async def test_creates_drafted_task(self, store, fake_db, directory, detector, drafts) -> None:
        """A new candidate becomes a drafted pending task with two events."""
        stats = await discover(store, directory, detector, drafts)

        assert stats == {
            "teams_processed": 1,
            "members_processed": 1,
            "members_skipped": 1,
            "candidates_found": 1,
            "tasks_created": 1,
            "drafts_created": 1,
            "errors": 0,
        }
        [row] = fake_db.rows(TASKS_TABLE)
        assert row["status"] == "pending"
        assert row["priority"] == 1
        assert row["owner_user_id"] == "alice"
        assert row["due_at"] == (T0 + timedelta(days=3)).isoformat()
        assert row["suggested_send_at"] == (T0 + timedelta(days=3, hours=1)).isoformat()
        assert row["metadata"] == {"idle_days": 3, "source": "detector_v1"}
        assert row["draft_body"].startswith("Hi Bob")
        assert [e["event_type"] for e in events_for(fake_db, row["id"])] == [
            "discovered",
            "draft_created",
        ]
        request = drafts.generate.call_args.args[0]
        assert request.sender_name == "Alice"
        assert request.counterpart_name == "Bob"

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, store, fake_db, directory, detector, drafts) -> None:
        """Detecting the same thread again neither duplicates nor redrafts."""
        await discover(store, directory, detector, drafts)
        stats = await discover(store, directory, detector, drafts)

        assert stats["tasks_created"] == 0
        assert stats["drafts_created"] == 0
        assert len(fake_db.rows(TASKS_TABLE)) == 1
        assert len(fake_db.rows(EVENTS_TABLE)) == 2
        assert drafts.generate.await_count == 1

    @pytest.mark.asyncio
    async def test_rerun_with_real_detector_is_idempotent(
        self, store, fake_db, clock, directory, drafts
    ) -> None:
        """Two runs over the same static mailbox leave one task and one discovery."""
        thread = [
            MessageHeaders(
                id="msg-1",
                thread_id="thread-1",
                date=T0 - timedelta(days=1),
                from_header="Bob <bob@example.com>",
                subject="Proposal",
            ),
            MessageHeaders(
                id="msg-2",
                thread_id="thread-1",
                date=T0,
                from_header="Alice <alice@example.com>",
                subject="Proposal",
                snippet="Sent over the proposal",
            ),
        ]
        mail = AsyncMock()
        mail.list_sent_threads = AsyncMock(return_value=[ThreadRef(id="thread-1")])
        mail.get_thread_headers = AsyncMock(return_value=thread)
        detector = FollowUpDetector(mail, idle_days=3, clock=clock)

        first = await discover(store, directory, detector, drafts)
        second = await discover(store, directory, detector, drafts)

        assert first["tasks_created"] == 1
        assert second["candidates_found"] == 1
        assert second["tasks_created"] == 0
        [row] = fake_db.rows(TASKS_TABLE)
        assert row["thread_id"] == "thread-1"
        assert row["last_message_id"] == "msg-2"
        event_types = [e["event_type"] for e in events_for(fake_db, row["id"])]
        assert event_types.count("discovered") == 1

    @pytest.mark.asyncio
    async def test_revoked_mailbox_is_skipped(self, store, fake_db, directory, detector, drafts) -> None:
        """Revoked credentials skip the member without counting an error."""
        detector.find_candidates = AsyncMock(side_effect=MailAuthError("alice"))

        stats = await discover(store, directory, detector, drafts)

        assert stats["members_skipped"] == 2
        assert stats["members_processed"] == 0
        assert stats["errors"] == 0
        assert fake_db.rows(TASKS_TABLE) == []

    @pytest.mark.asyncio
    async def test_member_failure_is_isolated(self, store, fake_db, directory, detector, drafts) -> None:
        """One mailbox failing does not stop the others."""
        directory.resolve_account = AsyncMock(side_effect=account)

        async def find(acct):
            if acct.user_id == "alice":
                raise RuntimeError("mailbox unavailable")
            return [candidate()]

        detector.find_candidates = AsyncMock(side_effect=find)

        stats = await discover(store, directory, detector, drafts)

        assert stats["errors"] == 1
        assert stats["members_processed"] == 1
        assert [r["owner_user_id"] for r in fake_db.rows(TASKS_TABLE)] == ["carol"]

    @pytest.mark.asyncio
    async def test_draft_failure_records_event_and_retries(
        self, store, fake_db, directory, detector, drafts
    ) -> None:
        """A failed draft is logged on the task and retried next run."""
        drafts.generate.side_effect = EmailDraftError("model unavailable")

        stats = await discover(store, directory, detector, drafts)

        assert stats["tasks_created"] == 1
        assert stats["drafts_created"] == 0
        assert stats["errors"] == 1
        [row] = fake_db.rows(TASKS_TABLE)
        assert row["draft_body"] is None
        assert [e["event_type"] for e in events_for(fake_db, row["id"])] == [
            "discovered",
            "draft_error",
        ]

        drafts.generate.side_effect = None
        stats = await discover(store, directory, detector, drafts)

        assert stats["drafts_created"] == 1
        assert fake_db.rows(TASKS_TABLE)[0]["draft_body"]

    @pytest.mark.asyncio
    async def test_team_listing_failure_ends_run(self, store, directory, detector, drafts) -> None:
        """Without teams there is nothing to do."""
        directory.list_active_teams = AsyncMock(side_effect=RuntimeError("db down"))

        stats = await discover(store, directory, detector, drafts)

        assert stats["errors"] == 1
        assert stats["teams_processed"] == 0
        detector.find_candidates.assert_not_called()

    @pytest.mark.asyncio
    async def test_auto_approve_schedules_new_drafts(
        self, store, fake_db, directory, detector, drafts
    ) -> None:
        """With auto-approve on, fresh drafts go straight to scheduled."""
        await discover(store, directory, detector, drafts, auto_approve=True)

        [row] = fake_db.rows(TASKS_TABLE)
        assert row["status"] == "scheduled"
        events = events_for(fake_db, row["id"])
        assert [e["event_type"] for e in events] == ["discovered", "draft_created", "scheduled"]
        assert events[-1]["payload"]["auto"] is True

    @pytest.mark.asyncio
    async def test_snoozed_task_redetected(self, store, fake_db, directory, detector, drafts) -> None:
        """Re-detecting a snoozed task returns it to pending with an event."""
        await discover(store, directory, detector, drafts)
        task_id = fake_db.rows(TASKS_TABLE)[0]["id"]
        await store.update(task_id, {"status": FollowUpStatus.SNOOZED})

        await discover(store, directory, detector, drafts)

        assert fake_db.rows(TASKS_TABLE)[0]["status"] == "pending"
        last = events_for(fake_db, task_id)[-1]
        assert last["event_type"] == "discovered"
        assert last["payload"]["redetected"] is True

    @pytest.mark.asyncio
    async def test_sent_task_not_redrafted(self, store, fake_db, directory, detector, drafts) -> None:
        """Terminal tasks stay terminal and are not drafted again."""
        await discover(store, directory, detector, drafts)
        task_id = fake_db.rows(TASKS_TABLE)[0]["id"]
        await store.update(task_id, {"status": FollowUpStatus.SENT, "draft_body": None})

        await discover(store, directory, detector, drafts)

        assert fake_db.rows(TASKS_TABLE)[0]["status"] == "sent"
        assert drafts.generate.await_count == 1


@pytest.fixture
def mail() -> MagicMock:
    mock = MagicMock()
    mock.send_message = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def send_directory() -> MagicMock:
    mock = MagicMock()
    mock.resolve_account = AsyncMock(side_effect=account)
    return mock


async def scheduled_task(
    store: FollowUpStore,
    thread_id: str,
    send_at: datetime,
    **fields,
) -> str:
    result = await store.upsert(candidate_upsert(thread_id))
    values = {
        "status": FollowUpStatus.SCHEDULED,
        "suggested_send_at": send_at,
        "draft_subject": "Re: Proposal",
        "draft_body": "Hi Bob, checking in.",
    }
    values.update(fields)
    await store.update(result.id, values)
    return result.id


def candidate_upsert(thread_id: str) -> FollowUpUpsert:
    return build_upsert("team-1", "alice", candidate(thread_id), idle_days=3)


class TestSendJob:
    """run_due_follow_up_sends"""

    @pytest.mark.asyncio
    async def test_approved_task_is_sent_on_next_run(
        self, store, fake_db, clock, drafts, mail, send_directory
    ) -> None:
        """Approve at 09:00, send run at 09:05: the task ends up sent."""
        result = await store.upsert(candidate_upsert("thread-1"))
        await store.update(result.id, {"draft_body": "Hi Bob, checking in."})
        await FollowUpService(store=store, drafts=drafts).approve(result.id)

        clock.advance(minutes=5)
        stats = await run_due_follow_up_sends(store=store, directory=send_directory, mail=mail)

        assert stats == {"due": 1, "sent": 1, "failed": 0}
        task = await store.get(result.id)
        assert task.status == FollowUpStatus.SENT
        assert task.sent_at == clock.now
        mail.send_message.assert_awaited_once()
        args = mail.send_message.call_args.args
        assert args[0].user_id == "alice"
        assert args[1:] == ("bob@example.com", "Re: Proposal", "Hi Bob, checking in.")
        assert [e["event_type"] for e in events_for(fake_db, result.id)] == ["scheduled", "sent"]

    @pytest.mark.asyncio
    async def test_failure_is_isolated_within_batch(
        self, store, fake_db, clock, mail, send_directory
    ) -> None:
        """The second of three sends failing leaves the other two sent."""
        ids = [
            await scheduled_task(store, f"t{i}", clock.now - timedelta(minutes=10 - i))
            for i in range(3)
        ]
        mail.send_message = AsyncMock(side_effect=[None, RuntimeError("smtp 550"), None])

        stats = await run_due_follow_up_sends(store=store, directory=send_directory, mail=mail)

        assert stats == {"due": 3, "sent": 2, "failed": 1}
        statuses = [(await store.get(task_id)).status for task_id in ids]
        assert statuses == [FollowUpStatus.SENT, FollowUpStatus.ERROR, FollowUpStatus.SENT]
        error_event = events_for(fake_db, ids[1])[-1]
        assert error_event["event_type"] == "error"
        assert "smtp 550" in error_event["payload"]["error"]

    @pytest.mark.asyncio
    async def test_missing_account_marks_error(self, store, clock, mail, send_directory) -> None:
        """No connected mailbox means the task cannot be sent."""
        task_id = await scheduled_task(store, "t1", clock.now)
        send_directory.resolve_account = AsyncMock(return_value=None)

        stats = await run_due_follow_up_sends(store=store, directory=send_directory, mail=mail)

        assert stats["failed"] == 1
        assert (await store.get(task_id)).status == FollowUpStatus.ERROR
        mail.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_incomplete_draft_marks_error(self, store, clock, mail, send_directory) -> None:
        """A task without a body is not sent."""
        task_id = await scheduled_task(store, "t1", clock.now, draft_body=None)

        await run_due_follow_up_sends(store=store, directory=send_directory, mail=mail)

        assert (await store.get(task_id)).status == FollowUpStatus.ERROR
        mail.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_subject_falls_back_to_reply_form(self, store, clock, mail, send_directory) -> None:
        """Without a draft subject the thread subject is used as a reply."""
        await scheduled_task(store, "t1", clock.now, draft_subject=None)

        await run_due_follow_up_sends(store=store, directory=send_directory, mail=mail)

        assert mail.send_message.call_args.args[2] == "Re: Proposal"

    @pytest.mark.asyncio
    async def test_future_tasks_are_left_alone(self, store, clock, mail, send_directory) -> None:
        """Nothing is sent before its time."""
        await scheduled_task(store, "t1", clock.now + timedelta(minutes=1))

        stats = await run_due_follow_up_sends(store=store, directory=send_directory, mail=mail)

        assert stats == {"due": 0, "sent": 0, "failed": 0}
        mail.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_batch_size_caps_run(self, store, clock, mail, send_directory) -> None:
        """At most one batch is sent per run."""
        for i in range(3):
            await scheduled_task(store, f"t{i}", clock.now)

        stats = await run_due_follow_up_sends(
            store=store, directory=send_directory, mail=mail, batch_size=2
        )

        assert stats["sent"] == 2

    @pytest.mark.asyncio
    async def test_mark_sent_failure_does_not_mark_error(
        self, store, fake_db, clock, mail, send_directory
    ) -> None:
        """A delivered mail is never turned into an error by bookkeeping."""
        task_id = await scheduled_task(store, "t1", clock.now)
        original_update = store.update

        async def update(task_id, values, expected_status=None):
            if values.get("status") == FollowUpStatus.SENT:
                raise DatabaseError("write timed out")
            return await original_update(task_id, values, expected_status=expected_status)

        store.update = update

        stats = await run_due_follow_up_sends(store=store, directory=send_directory, mail=mail)

        assert stats == {"due": 1, "sent": 1, "failed": 0}
        mail.send_message.assert_awaited_once()
        assert (await store.get(task_id)).status == FollowUpStatus.SCHEDULED
        assert [e["event_type"] for e in events_for(fake_db, task_id)] == ["sent"]

    @pytest.mark.asyncio
    async def test_sent_event_failure_keeps_task_sent(
        self, store, fake_db, clock, mail, send_directory
    ) -> None:
        """Losing the sent event leaves the task sent with no error event."""
        task_id = await scheduled_task(store, "t1", clock.now)
        store.append_event = AsyncMock(side_effect=DatabaseError("write timed out"))

        stats = await run_due_follow_up_sends(store=store, directory=send_directory, mail=mail)

        assert stats == {"due": 1, "sent": 1, "failed": 0}
        assert (await store.get(task_id)).status == FollowUpStatus.SENT
        assert store.append_event.await_count == 1
        assert store.append_event.call_args.args[1] == FollowUpEventType.SENT
