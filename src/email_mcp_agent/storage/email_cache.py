"""On-disk cache of fetched messages with separate body files.

Each message gets a directory under `{account_root}/cache/emails/{content_id}`
holding `metadata.yaml` plus up to three bodies: `body_text.txt`,
`body_html.txt` and `body_converted.txt` (text derived from the HTML body).
Bodies are read in byte-addressed chunks so large messages never have to be
loaded whole.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pydantic
import structlog

from email_mcp_agent.exceptions import (
    EmailMcpError,
    ExpiredError,
    NotCachedError,
    StorageIOError,
    ValidationError,
)
from email_mcp_agent.mail.html_text import convert_html_to_text
from email_mcp_agent.models import (
    BodyFormat,
    BodyInfo,
    BodySource,
    CachedEmailMetadata,
    CacheKind,
    Email,
    EmailCacheInfo,
    ReadBodyResult,
)
from email_mcp_agent.storage.ledger import CacheLedger
from email_mcp_agent.storage.yaml_io import read_yaml, write_yaml_atomic

logger = structlog.get_logger()


CACHE_EXPIRY = timedelta(hours=96)
MAX_CONTENT_ID_LENGTH = 50
DEFAULT_PREVIEW_LENGTH = 500
DEFAULT_READ_LIMIT = 10_000

METADATA_FILE = "metadata.yaml"
TEXT_BODY_FILE = "body_text.txt"
HTML_BODY_FILE = "body_html.txt"
CONVERTED_BODY_FILE = "body_converted.txt"
_BODY_FILES = (TEXT_BODY_FILE, HTML_BODY_FILE, CONVERTED_BODY_FILE)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")

# Worst case bytes per character in UTF-8, used to bound preview reads.
_UTF8_MAX_WIDTH = 4


def generate_content_id(message_id: str) -> str:
    """Derive a filesystem-safe directory name from a Message-ID.

    Angle brackets are stripped, `@` becomes `_at_` and every other character
    outside `[A-Za-z0-9_-]` becomes `_`. Results longer than 50 characters (or
    empty) are replaced by the MD5 hex digest of the original id.
    """

    clean = message_id.strip("<>").replace("@", "_at_")
    clean = _UNSAFE_CHARS.sub("_", clean)
    if not clean or len(clean) > MAX_CONTENT_ID_LENGTH:
        return hashlib.md5(message_id.encode("utf-8")).hexdigest()
    return clean


def _trim_partial_utf8(data: bytes) -> bytes:
    # Drop a multi-byte sequence cut off at the end of the chunk.
    for back in range(1, min(_UTF8_MAX_WIDTH, len(data)) + 1):
        byte = data[-back]
        if byte & 0xC0 == 0x80:
            continue
        if byte & 0x80 == 0:
            return data
        if byte & 0xE0 == 0xC0:
            width = 2
        elif byte & 0xF0 == 0xE0:
            width = 3
        else:
            width = 4
        return data[:-back] if width > back else data
    return data


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class EmailContentStore:
    """Per-account message content cache backed by a `CacheLedger`."""

    def __init__(
        self,
        account_root: Path,
        ledger: CacheLedger,
        *,
        expiry: timedelta = CACHE_EXPIRY,
        clock: Callable[[], datetime] | None = None,
        converter: Callable[[str], str] = convert_html_to_text,
    ) -> None:
        self.cache_dir = Path(account_root) / "cache" / "emails"
        self.ledger = ledger
        self.expiry = expiry
        self._clock = clock or _now_utc
        self._convert = converter

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageIOError("create directory", self.cache_dir, exc) from exc

    def email_dir(self, message_id: str) -> Path:
        return self.cache_dir / generate_content_id(message_id)

    def save(self, email: Email, account_id: str) -> CachedEmailMetadata:
        """Write a message to the cache and register it with the ledger.

        Empty bodies are not written. When only an HTML body exists its text
        rendering is produced up front and stored as a third body file.
        """

        content_id = generate_content_id(email.message_id)
        email_dir = self.cache_dir / content_id
        text_bytes = email.body.encode("utf-8")
        html_bytes = email.html_body.encode("utf-8")

        try:
            email_dir.mkdir(parents=True, exist_ok=True)
            for name in _BODY_FILES:
                (email_dir / name).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageIOError("prepare cache directory", email_dir, exc) from exc

        metadata = CachedEmailMetadata(
            message_id=email.message_id,
            account_id=account_id,
            folder=email.folder,
            sender=email.sender,
            to=email.to,
            cc=email.cc,
            subject=email.subject,
            date=email.date,
            in_reply_to=email.in_reply_to,
            references=email.references,
            attachments=email.attachments,
            cached_at=self._clock(),
            text_body_size=len(text_bytes),
            html_body_size=len(html_bytes),
        )

        if text_bytes:
            self._write_body(email_dir / TEXT_BODY_FILE, text_bytes)
        if html_bytes:
            self._write_body(email_dir / HTML_BODY_FILE, html_bytes)
            if not text_bytes:
                converted = self._try_convert(email.html_body, email.message_id)
                if converted:
                    converted_bytes = converted.encode("utf-8")
                    self._write_body(email_dir / CONVERTED_BODY_FILE, converted_bytes)
                    metadata.converted_text_size = len(converted_bytes)

        metadata_size = write_yaml_atomic(email_dir / METADATA_FILE, metadata.model_dump(mode="json"))

        total_size = (
            metadata.text_body_size
            + metadata.html_body_size
            + metadata.converted_text_size
            + metadata_size
        )
        self.ledger.replace(content_id, CacheKind.CONTENT, email_dir, total_size)
        logger.info(
            "email_cached",
            message_id=email.message_id,
            content_id=content_id,
            account_id=account_id,
            size=total_size,
        )
        return metadata

    def load_metadata(self, message_id: str) -> CachedEmailMetadata:
        """Load the metadata record of a cached message.

        Raises:
            NotCachedError: If nothing is cached for this id, or the cache directory
                holds a different message whose id normalizes to the same name.
            ExpiredError: If the message was cached longer ago than the expiry window.
            ValidationError: If the record is malformed.
        """

        path = self.email_dir(message_id) / METADATA_FILE
        try:
            data = read_yaml(path)
        except FileNotFoundError as exc:
            raise NotCachedError(message_id) from exc

        try:
            metadata = CachedEmailMetadata.model_validate(data)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"malformed cached metadata {path}: {exc}") from exc

        if metadata.message_id.strip("<>") != message_id.strip("<>"):
            raise NotCachedError(message_id, reason="cache slot holds another message")

        if self._clock() - metadata.cached_at > self.expiry:
            raise ExpiredError(message_id)
        return metadata

    def is_cached(self, message_id: str) -> bool:
        try:
            self.load_metadata(message_id)
        except NotCachedError:
            return False
        except ValidationError as exc:
            logger.warning("email_cache_metadata_invalid", message_id=message_id, error=str(exc))
            return False
        return True

    def preview(self, message_id: str, max_length: int = DEFAULT_PREVIEW_LENGTH) -> str:
        metadata = self.load_metadata(message_id)
        return self._preview(self.email_dir(message_id), metadata, max_length)

    def get_cache_info(self, message_id: str, preview_length: int = DEFAULT_PREVIEW_LENGTH) -> EmailCacheInfo:
        """Envelope, attachment descriptors and a body preview for a cached message."""

        metadata = self.load_metadata(message_id)
        preview = self._preview(self.email_dir(message_id), metadata, preview_length)
        return EmailCacheInfo(
            message_id=metadata.message_id,
            sender=metadata.sender,
            to=metadata.to,
            cc=metadata.cc,
            subject=metadata.subject,
            date=metadata.date,
            in_reply_to=metadata.in_reply_to,
            references=metadata.references,
            attachments=metadata.attachments,
            body=BodyInfo(
                text_size=metadata.text_body_size,
                html_size=metadata.html_body_size,
                has_text=metadata.text_body_size > 0,
                has_html=metadata.html_body_size > 0,
                preview=preview,
            ),
        )

    def read_chunk(
        self,
        message_id: str,
        format: BodyFormat | str = BodyFormat.TEXT,
        offset: int = 0,
        limit: int = DEFAULT_READ_LIMIT,
    ) -> ReadBodyResult:
        """Read part of a cached body.

        `text` resolves to the plain text body, then the stored HTML rendering,
        then an on-the-fly conversion of the HTML body. `raw_html` reads the
        HTML body as-is. A chunk never ends inside a multi-byte character
        unless the limit is smaller than the character, so callers can advance
        the offset by the UTF-8 length of `content`.

        Raises:
            ValidationError: On an unknown format, negative offset or non-positive limit.
            NotCachedError: If the message is absent or expired.
            StorageIOError: If a body file of a valid entry cannot be read.
        """

        try:
            body_format = BodyFormat(format)
        except ValueError as exc:
            raise ValidationError(f"invalid format: {format} (must be 'text' or 'raw_html')") from exc
        if offset < 0:
            raise ValidationError(f"offset must be >= 0, got {offset}")
        if limit <= 0:
            raise ValidationError(f"limit must be > 0, got {limit}")

        metadata = self.load_metadata(message_id)
        email_dir = self.email_dir(message_id)

        if body_format is BodyFormat.RAW_HTML:
            if metadata.html_body_size == 0:
                return self._empty_result(body_format, limit)
            return self._read_body_file(
                email_dir / HTML_BODY_FILE,
                body_format,
                BodySource.HTML_BODY,
                metadata.html_body_size,
                offset,
                limit,
            )

        if metadata.text_body_size > 0:
            return self._read_body_file(
                email_dir / TEXT_BODY_FILE,
                body_format,
                BodySource.TEXT_BODY,
                metadata.text_body_size,
                offset,
                limit,
            )
        if metadata.converted_text_size > 0:
            return self._read_body_file(
                email_dir / CONVERTED_BODY_FILE,
                body_format,
                BodySource.HTML_CONVERTED,
                metadata.converted_text_size,
                offset,
                limit,
            )
        if metadata.html_body_size > 0:
            converted = self._convert_and_persist(email_dir, metadata).encode("utf-8")
            chunk = converted[offset : offset + limit]
            return self._chunk_result(
                chunk, body_format, BodySource.HTML_CONVERTED, len(converted), offset, limit
            )
        return self._empty_result(body_format, limit)

    def _preview(self, email_dir: Path, metadata: CachedEmailMetadata, max_length: int) -> str:
        if max_length <= 0:
            return ""

        byte_budget = max_length * _UTF8_MAX_WIDTH
        if metadata.text_body_size > 0:
            data = self._read_bytes(email_dir / TEXT_BODY_FILE, 0, byte_budget)
            return data.decode("utf-8", errors="ignore")[:max_length]
        if metadata.converted_text_size > 0:
            data = self._read_bytes(email_dir / CONVERTED_BODY_FILE, 0, byte_budget)
            return data.decode("utf-8", errors="ignore")[:max_length]
        if metadata.html_body_size > 0:
            return self._convert_and_persist(email_dir, metadata)[:max_length]
        return ""

    def _convert_and_persist(self, email_dir: Path, metadata: CachedEmailMetadata) -> str:
        html_path = email_dir / HTML_BODY_FILE
        try:
            html = html_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageIOError("read", html_path, exc) from exc

        converted = self._convert(html)

        # Write-back is opportunistic; the caller already has the text.
        converted_bytes = converted.encode("utf-8")
        try:
            self._write_body(email_dir / CONVERTED_BODY_FILE, converted_bytes)
            metadata.converted_text_size = len(converted_bytes)
            write_yaml_atomic(email_dir / METADATA_FILE, metadata.model_dump(mode="json"))
        except EmailMcpError as exc:
            logger.warning(
                "converted_body_write_back_failed",
                message_id=metadata.message_id,
                error=str(exc),
            )
        return converted

    def _try_convert(self, html: str, message_id: str) -> str:
        try:
            return self._convert(html)
        except Exception as exc:  # noqa: BLE001
            # Reads convert again on demand.
            logger.warning("html_conversion_failed", message_id=message_id, error=str(exc))
            return ""

    def _read_body_file(
        self,
        path: Path,
        body_format: BodyFormat,
        source: BodySource,
        total_size: int,
        offset: int,
        limit: int,
    ) -> ReadBodyResult:
        chunk = self._read_bytes(path, offset, limit)
        return self._chunk_result(chunk, body_format, source, total_size, offset, limit)

    @staticmethod
    def _chunk_result(
        chunk: bytes,
        body_format: BodyFormat,
        source: BodySource,
        total_size: int,
        offset: int,
        limit: int,
    ) -> ReadBodyResult:
        if offset + len(chunk) < total_size:
            trimmed = _trim_partial_utf8(chunk)
            if trimmed:
                chunk = trimmed

        remaining = max(0, total_size - offset - len(chunk))
        return ReadBodyResult(
            content=chunk.decode("utf-8", errors="replace"),
            format=body_format,
            source=source,
            total_size=total_size,
            offset=offset,
            limit=limit,
            remaining=remaining,
            is_complete=remaining == 0,
        )

    @staticmethod
    def _empty_result(body_format: BodyFormat, limit: int) -> ReadBodyResult:
        return ReadBodyResult(
            content="",
            format=body_format,
            source=BodySource.NONE,
            total_size=0,
            offset=0,
            limit=limit,
            remaining=0,
            is_complete=True,
        )

    @staticmethod
    def _read_bytes(path: Path, offset: int, limit: int) -> bytes:
        try:
            with path.open("rb") as fh:
                fh.seek(offset)
                return fh.read(limit)
        except OSError as exc:
            raise StorageIOError("read", path, exc) from exc

    @staticmethod
    def _write_body(path: Path, data: bytes) -> None:
        try:
            path.write_bytes(data)
        except OSError as exc:
            raise StorageIOError("write", path, exc) from exc
