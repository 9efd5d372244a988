"""Helpers for parsing RFC 822 messages into internal models."""

from __future__ import annotations

import email
from collections.abc import Iterator
from datetime import datetime
from email.message import EmailMessage, Message
from email.policy import default as default_policy
from email.utils import getaddresses, parsedate_to_datetime

from email_mcp_agent.models import Attachment, Email, EmailHeader


def parse_message_bytes(raw: bytes) -> EmailMessage:
    return email.message_from_bytes(raw, policy=default_policy)  # type: ignore[return-value]


def _header(msg: Message, name: str) -> str:
    value = msg.get(name)
    return str(value).strip() if value is not None else ""


def _parse_address_list(value: str | None) -> list[str]:
    if not value:
        return []
    # getaddresses returns list[(name, addr)]
    return [addr for _, addr in getaddresses([value]) if addr]


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _decode_text_part(part: Message) -> str:
    try:
        content = part.get_content()  # type: ignore[attr-defined]
    except (LookupError, UnicodeDecodeError, AttributeError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")
    return content if isinstance(content, str) else ""


def _is_attachment(part: Message) -> bool:
    disposition = (part.get("Content-Disposition") or "").lower()
    return disposition.startswith("attachment") or (
        bool(part.get_filename()) and not part.get_content_type().startswith("text/")
    )


def iter_attachment_parts(msg: Message) -> Iterator[tuple[Attachment, bytes]]:
    """Yield each attachment descriptor with its decoded payload."""

    index = 0
    for part in msg.walk():
        if part.is_multipart() or not _is_attachment(part):
            continue
        index += 1
        payload = part.get_payload(decode=True) or b""
        filename = part.get_filename() or f"attachment_{index}"
        yield (
            Attachment(filename=filename, size=len(payload), content_type=part.get_content_type()),
            payload,
        )


def _extract_bodies(msg: Message) -> tuple[str, str]:
    text_body = ""
    html_body = ""
    for part in msg.walk():
        if part.is_multipart() or _is_attachment(part):
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain" and not text_body:
            text_body = _decode_text_part(part)
        elif content_type == "text/html" and not html_body:
            html_body = _decode_text_part(part)
    return text_body, html_body


def message_to_email_header(
    msg: Message,
    folder: str = "INBOX",
    *,
    is_unread: bool = False,
    size: int | None = None,
) -> EmailHeader:
    """Convert a parsed message (headers only is enough) to EmailHeader."""

    content_type = (msg.get("Content-Type") or "").lower()
    return EmailHeader(
        message_id=_header(msg, "Message-ID"),
        folder=folder,
        sender=_header(msg, "From"),
        to=_parse_address_list(_header(msg, "To")),
        cc=_parse_address_list(_header(msg, "Cc")),
        subject=_header(msg, "Subject"),
        date=_parse_date(_header(msg, "Date")),
        has_attachments="multipart/mixed" in content_type,
        is_unread=is_unread,
        size=size,
    )


def message_to_email(msg: Message, folder: str = "INBOX") -> Email:
    """Convert a full parsed message to Email.

    Args:
        msg: Parsed message.
        folder: Mailbox the message was fetched from.

    Returns:
        Email: Envelope, both bodies and attachment descriptors.
    """

    text_body, html_body = _extract_bodies(msg)
    return Email(
        message_id=_header(msg, "Message-ID"),
        folder=folder,
        sender=_header(msg, "From"),
        to=_parse_address_list(_header(msg, "To")),
        cc=_parse_address_list(_header(msg, "Cc")),
        bcc=_parse_address_list(_header(msg, "Bcc")),
        subject=_header(msg, "Subject"),
        date=_parse_date(_header(msg, "Date")),
        body=text_body,
        html_body=html_body,
        attachments=[attachment for attachment, _ in iter_attachment_parts(msg)],
        in_reply_to=_header(msg, "In-Reply-To") or None,
        references=_header(msg, "References").split(),
    )
