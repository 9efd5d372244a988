"""IMAP/SMTP implementation of the mail transport.

Notes:
    imaplib and smtplib are synchronous. Every public coroutine runs its
    blocking work via `asyncio.to_thread`, opening a fresh connection per call.
"""

from __future__ import annotations

import asyncio
import imaplib
import mimetypes
import re
import smtplib
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from pathlib import Path

import structlog

from email_mcp_agent.config import AccountConfig
from email_mcp_agent.exceptions import AuthenticationError, MailTransportError, NotFoundError
from email_mcp_agent.mail.parsing import (
    iter_attachment_parts,
    message_to_email,
    message_to_email_header,
    parse_message_bytes,
)
from email_mcp_agent.models import AttachmentResult, Email, EmailHeader, FetchOptions, Folder, SendOptions
from email_mcp_agent.storage.email_cache import generate_content_id

logger = structlog.get_logger()


_LIST_RE = re.compile(r'\((?P<flags>[^)]*)\)\s+(?:"(?P<delim>[^"]*)"|NIL)\s+(?P<name>.+)')
_STATUS_RE = re.compile(r"(MESSAGES|UNSEEN)\s+(\d+)")
_FLAGS_RE = re.compile(rb"FLAGS \(([^)]*)\)")
_SIZE_RE = re.compile(rb"RFC822\.SIZE (\d+)")
_SMTP_SSL_PORT = 465


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _imap_date(value: datetime) -> str:
    return value.strftime("%d-%b-%Y")


def build_search_criteria(options: FetchOptions) -> list[str]:
    """Translate header filters into IMAP SEARCH keys."""

    criteria: list[str] = []
    if options.since_date:
        criteria += ["SINCE", _imap_date(options.since_date)]
    if options.until_date:
        criteria += ["BEFORE", _imap_date(options.until_date)]
    if options.sender:
        criteria += ["FROM", _quote(options.sender)]
    if options.subject_contains:
        criteria += ["SUBJECT", _quote(options.subject_contains)]
    if options.unread_only:
        criteria.append("UNSEEN")
    return criteria or ["ALL"]


class ImapSmtpTransport:
    """Mail transport for one account using IMAP over SSL and SMTP."""

    def __init__(self, account: AccountConfig) -> None:
        """Initialize the transport.

        Args:
            account: Resolved account configuration.
        """

        self.account = account
        logger.info(
            "mail_transport_initialized",
            account_id=account.account_id,
            imap_server=account.imap_server,
            smtp_server=account.smtp_server,
        )

    async def list_folders(self) -> list[Folder]:
        return await self._run("list_folders", self._list_folders_sync)

    async def fetch_headers(self, options: FetchOptions) -> list[EmailHeader]:
        return await self._run("fetch_headers", self._fetch_headers_sync, options)

    async def fetch_email(self, message_id: str) -> Email:
        return await self._run("fetch_email", self._fetch_email_sync, message_id)

    async def fetch_attachments(
        self,
        message_id: str,
        names: list[str] | None,
        destination: Path,
        max_size: int,
    ) -> list[AttachmentResult]:
        return await self._run(
            "fetch_attachments",
            self._fetch_attachments_sync,
            message_id,
            names,
            destination,
            max_size,
        )

    async def send_email(self, options: SendOptions) -> None:
        await self._run("send_email", self._send_email_sync, options)

    async def _run(self, operation: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (AuthenticationError, NotFoundError, MailTransportError):
            raise
        except (imaplib.IMAP4.error, smtplib.SMTPException, OSError) as exc:
            logger.exception(
                "mail_transport_failed",
                operation=operation,
                account_id=self.account.account_id,
                error=str(exc),
            )
            raise MailTransportError(f"{operation} failed: {exc}") from exc

    @contextmanager
    def _imap(self) -> Iterator[imaplib.IMAP4_SSL]:
        conn = imaplib.IMAP4_SSL(
            self.account.imap_server,
            self.account.imap_port,
            timeout=self.account.timeout_seconds,
        )
        try:
            try:
                conn.login(self.account.email_address, self.account.password)
            except imaplib.IMAP4.error as exc:
                raise AuthenticationError(f"IMAP login failed for {self.account.email_address}: {exc}") from exc
            yield conn
        finally:
            try:
                conn.logout()
            except (imaplib.IMAP4.error, OSError) as exc:
                logger.debug("imap_logout_failed", error=str(exc))

    def _select(self, conn: imaplib.IMAP4, folder: str) -> None:
        status, _ = conn.select(_quote(folder), readonly=True)
        if status != "OK":
            raise MailTransportError(f"failed to select folder {folder}")

    def _list_folders_sync(self) -> list[Folder]:
        with self._imap() as conn:
            status, data = conn.list()
            if status != "OK":
                raise MailTransportError("failed to list folders")

            folders: list[Folder] = []
            for raw in data:
                if not isinstance(raw, bytes):
                    continue
                match = _LIST_RE.match(raw.decode("utf-8", errors="replace"))
                if not match or "\\Noselect" in match.group("flags"):
                    continue
                name = match.group("name").strip().strip('"')
                folder = Folder(name=name)
                status, status_data = conn.status(_quote(name), "(MESSAGES UNSEEN)")
                if status == "OK" and status_data and isinstance(status_data[0], bytes):
                    counts = dict(_STATUS_RE.findall(status_data[0].decode("utf-8", errors="replace")))
                    folder.message_count = int(counts.get("MESSAGES", 0))
                    folder.unread_count = int(counts.get("UNSEEN", 0))
                folders.append(folder)
            return folders

    def _fetch_headers_sync(self, options: FetchOptions) -> list[EmailHeader]:
        with self._imap() as conn:
            self._select(conn, options.folder)
            status, data = conn.uid("search", None, *build_search_criteria(options))
            if status != "OK":
                raise MailTransportError(f"search failed in {options.folder}")

            uids = data[0].split() if data and data[0] else []
            # Newest first.
            selected = list(reversed(uids[-options.limit :]))

            headers: list[EmailHeader] = []
            for uid in selected:
                status, fetched = conn.uid("fetch", uid, "(FLAGS RFC822.SIZE BODY.PEEK[HEADER])")
                if status != "OK":
                    continue
                for item in fetched:
                    if not isinstance(item, tuple):
                        continue
                    meta, raw_headers = item
                    flags = _FLAGS_RE.search(meta)
                    size = _SIZE_RE.search(meta)
                    headers.append(
                        message_to_email_header(
                            parse_message_bytes(raw_headers),
                            options.folder,
                            is_unread=not (flags and b"\\Seen" in flags.group(1)),
                            size=int(size.group(1)) if size else None,
                        )
                    )
            return headers

    def _fetch_raw_message(self, conn: imaplib.IMAP4, message_id: str, folder: str = "INBOX") -> bytes:
        self._select(conn, folder)
        status, data = conn.uid("search", None, "HEADER", "Message-ID", _quote(message_id))
        uids = data[0].split() if status == "OK" and data and data[0] else []
        if not uids:
            raise NotFoundError(f"message {message_id} not found in {folder}")

        status, fetched = conn.uid("fetch", uids[-1], "(BODY.PEEK[])")
        if status != "OK":
            raise MailTransportError(f"failed to fetch message {message_id}")
        for item in fetched:
            if isinstance(item, tuple):
                return item[1]
        raise MailTransportError(f"empty fetch response for message {message_id}")

    def _fetch_email_sync(self, message_id: str) -> Email:
        with self._imap() as conn:
            raw = self._fetch_raw_message(conn, message_id)
        email = message_to_email(parse_message_bytes(raw))
        if not email.message_id:
            email.message_id = message_id
        return email

    def _fetch_attachments_sync(
        self,
        message_id: str,
        names: list[str] | None,
        destination: Path,
        max_size: int,
    ) -> list[AttachmentResult]:
        with self._imap() as conn:
            raw = self._fetch_raw_message(conn, message_id)

        destination.mkdir(parents=True, exist_ok=True)
        prefix = generate_content_id(message_id)
        wanted = set(names) if names else None

        results: list[AttachmentResult] = []
        for attachment, payload in iter_attachment_parts(parse_message_bytes(raw)):
            if wanted is not None and attachment.filename not in wanted:
                continue
            result = AttachmentResult(
                filename=attachment.filename,
                size=attachment.size,
                content_type=attachment.content_type,
            )
            if attachment.size > max_size:
                result.error = f"attachment exceeds maximum size of {max_size} bytes"
                results.append(result)
                continue

            target = destination / f"{prefix}_{Path(attachment.filename).name}"
            target.write_bytes(payload)
            result.path = str(target)
            results.append(result)
        return results

    def _build_message(self, options: SendOptions) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.account.email_address
        msg["To"] = ", ".join(options.to)
        if options.cc:
            msg["Cc"] = ", ".join(options.cc)
        msg["Subject"] = options.subject
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = make_msgid(domain=self.account.email_address.partition("@")[2] or None)
        if options.reply_to_message_id:
            msg["In-Reply-To"] = options.reply_to_message_id
            references = options.references or [options.reply_to_message_id]
            msg["References"] = " ".join(references)

        msg.set_content(options.body or "")
        if options.html_body:
            msg.add_alternative(options.html_body, subtype="html")

        for attachment_path in options.attachments:
            path = Path(attachment_path)
            content_type, _ = mimetypes.guess_type(path.name)
            maintype, _, subtype = (content_type or "application/octet-stream").partition("/")
            msg.add_attachment(path.read_bytes(), maintype=maintype, subtype=subtype, filename=path.name)
        return msg

    def _send_email_sync(self, options: SendOptions) -> None:
        msg = self._build_message(options)
        recipients = [*options.to, *options.cc, *options.bcc]

        smtp_cls = smtplib.SMTP_SSL if self.account.smtp_port == _SMTP_SSL_PORT else smtplib.SMTP
        with smtp_cls(self.account.smtp_server, self.account.smtp_port, timeout=self.account.timeout_seconds) as smtp:
            if smtp_cls is smtplib.SMTP:
                smtp.starttls()
            try:
                smtp.login(self.account.email_address, self.account.password)
            except smtplib.SMTPAuthenticationError as exc:
                raise AuthenticationError(f"SMTP login failed for {self.account.email_address}: {exc}") from exc
            smtp.send_message(msg, to_addrs=recipients)

        logger.info("email_sent", account_id=self.account.account_id, recipients=len(recipients))
