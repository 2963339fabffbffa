"""Mail provider access for follow-up detection and delivery.

``MailProvider`` is the narrow contract the follow-up engine depends on.
``ComposioMailClient`` implements it for Gmail through Composio tool calls.
The Composio SDK is synchronous, so calls run in a worker thread and are
bounded by ``MAIL_PROVIDER_TIMEOUT_SECONDS``.
"""

import asyncio
import logging
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Protocol

from composio import Composio

from src.core.config import settings
from src.core.exceptions import ExternalServiceError, MailAuthError
from src.models.follow_up import MailAccount, MessageHeaders, ThreadRef

logger = logging.getLogger(__name__)

_AUTH_ERROR_MARKERS = ("401", "unauthorized", "invalid_grant", "expired", "revoked")


class MailProvider(Protocol):
    """Mailbox capabilities used by the follow-up engine."""

    async def list_sent_threads(
        self, account: MailAccount, since_days: int, max_threads: int
    ) -> list[ThreadRef]: ...

    async def get_thread_headers(
        self, account: MailAccount, thread_id: str
    ) -> list[MessageHeaders]: ...

    async def send_message(
        self, account: MailAccount, to: str, subject: str, body: str
    ) -> None: ...


def _header(headers: list[dict[str, Any]], name: str) -> str:
    wanted = name.lower()
    for header in headers:
        if str(header.get("name", "")).lower() == wanted:
            return str(header.get("value") or "")
    return ""


def _parse_date(raw: dict[str, Any], date_header: str) -> datetime | None:
    internal = raw.get("internalDate")
    if internal:
        try:
            return datetime.fromtimestamp(int(internal) / 1000, tz=UTC)
        except (TypeError, ValueError):
            pass
    timestamp = raw.get("messageTimestamp")
    if timestamp:
        try:
            parsed = datetime.fromisoformat(str(timestamp).replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
        except ValueError:
            pass
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
        except (TypeError, ValueError):
            pass
    return None


def parse_message_headers(raw: dict[str, Any], thread_id: str) -> MessageHeaders:
    """Normalize a Gmail API or Composio message dict into ``MessageHeaders``."""
    headers = (raw.get("payload") or {}).get("headers") or []
    preview = raw.get("preview") or {}
    return MessageHeaders(
        id=str(raw.get("id") or raw.get("messageId") or ""),
        thread_id=str(raw.get("threadId") or thread_id),
        date=_parse_date(raw, _header(headers, "Date")),
        from_header=_header(headers, "From") or str(raw.get("sender") or ""),
        subject=_header(headers, "Subject") or str(raw.get("subject") or ""),
        snippet=str(raw.get("snippet") or preview.get("body") or ""),
    )


class ComposioMailClient:
    """Gmail access through Composio tool execution."""

    _composio: Composio | None = None

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._timeout = timeout_seconds or settings.MAIL_PROVIDER_TIMEOUT_SECONDS

    @property
    def _client(self) -> Composio:
        """Lazy initialization of Composio SDK client."""
        if self._composio is None:
            api_key = (
                settings.COMPOSIO_API_KEY.get_secret_value()
                if settings.COMPOSIO_API_KEY is not None
                else ""
            )
            self._composio = Composio(api_key=api_key)
        return self._composio

    async def _execute(
        self, account: MailAccount, action: str, params: dict[str, Any]
    ) -> dict[str, Any]:
        """Run a Composio action for the account and return its ``data``.

        Raises:
            MailAuthError: If the connection is no longer authorized.
            ExternalServiceError: On timeouts or unsuccessful responses.
        """

        def _run() -> Any:
            return self._client.tools.execute(
                slug=action,
                connected_account_id=account.connection_id,
                user_id=account.user_id,
                arguments=params,
                dangerously_skip_version_check=True,
            )

        try:
            result = await asyncio.wait_for(asyncio.to_thread(_run), timeout=self._timeout)
        except TimeoutError as e:
            raise ExternalServiceError("gmail", f"{action} timed out after {self._timeout}s") from e

        if not isinstance(result, dict):
            result = dict(result.model_dump()) if hasattr(result, "model_dump") else {}

        if not result.get("successful", False):
            error = str(result.get("error") or "unknown error")
            if any(marker in error.lower() for marker in _AUTH_ERROR_MARKERS):
                raise MailAuthError(account.user_id, f"{action} rejected credentials: {error}")
            raise ExternalServiceError("gmail", f"{action} failed: {error}")
        return result.get("data") or {}

    async def list_sent_threads(
        self, account: MailAccount, since_days: int, max_threads: int
    ) -> list[ThreadRef]:
        """Threads in the sent folder newer than ``since_days``."""
        data = await self._execute(
            account,
            "GMAIL_LIST_THREADS",
            {
                "query": f"in:sent -label:chat newer_than:{since_days}d",
                "max_results": max_threads,
            },
        )
        threads = data.get("threads") or []
        return [ThreadRef(id=str(t["id"])) for t in threads if t.get("id")][:max_threads]

    async def get_thread_headers(
        self, account: MailAccount, thread_id: str
    ) -> list[MessageHeaders]:
        """Header metadata for every message in a thread."""
        data = await self._execute(
            account,
            "GMAIL_FETCH_MESSAGE_BY_THREAD_ID",
            {"thread_id": thread_id},
        )
        return [parse_message_headers(m, thread_id) for m in data.get("messages") or []]

    async def send_message(
        self, account: MailAccount, to: str, subject: str, body: str
    ) -> None:
        """Send a plain-text message from the account."""
        await self._execute(
            account,
            "GMAIL_SEND_EMAIL",
            {"recipient_email": to, "subject": subject, "body": body},
        )
        logger.info(
            "Follow-up email sent",
            extra={"user_id": account.user_id, "recipient": to},
        )


_mail_client: ComposioMailClient | None = None


def get_mail_client() -> ComposioMailClient:
    """Get the singleton mail client instance."""
    global _mail_client
    if _mail_client is None:
        _mail_client = ComposioMailClient()
    return _mail_client
