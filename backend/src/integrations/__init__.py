"""Integrations with external services."""

from src.integrations.mail import (
    ComposioMailClient,
    MailProvider,
    get_mail_client,
    parse_message_headers,
)

__all__ = [
    "ComposioMailClient",
    "MailProvider",
    "get_mail_client",
    "parse_message_headers",
]
