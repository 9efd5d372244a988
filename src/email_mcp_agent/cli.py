"""Command-line interface for Email MCP Agent.

This module provides the main entry point for the CLI application. Every
command prints JSON so its output matches what the tool-dispatch layer returns.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from datetime import datetime

import structlog
from pydantic import BaseModel

from email_mcp_agent import __version__
from email_mcp_agent.accounts import detect_migrations
from email_mcp_agent.config import configured_account_emails, get_settings, load_config, read_environ
from email_mcp_agent.exceptions import EmailMcpError, NotCachedError
from email_mcp_agent.models import FetchOptions, SendOptions
from email_mcp_agent.service import EmailService

logger = structlog.get_logger()


_MESSAGE_FIELDS = (
    "to",
    "cc",
    "bcc",
    "subject",
    "body",
    "html_body",
    "attachments",
    "reply_to_message_id",
    "references",
)


def _add_message_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--to", action="append", default=None, help="Recipient (repeatable)")
    parser.add_argument("--cc", action="append", default=None, help="Cc recipient (repeatable)")
    parser.add_argument("--bcc", action="append", default=None, help="Bcc recipient (repeatable)")
    parser.add_argument("--subject", default=None, help="Subject line")
    parser.add_argument("--body", default=None, help="Plain text body")
    parser.add_argument("--html-body", default=None, help="HTML body")
    parser.add_argument("--attach", action="append", dest="attachments", default=None, help="File to attach")
    parser.add_argument("--reply-to", dest="reply_to_message_id", default=None, help="Message-ID being answered")
    parser.add_argument("--reference", action="append", dest="references", default=None, help="Thread Message-ID")


def _message_fields(parsed: argparse.Namespace) -> dict[str, object]:
    return {name: getattr(parsed, name) for name in _MESSAGE_FIELDS if getattr(parsed, name) is not None}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="email-mcp", description="Email MCP Agent")
    parser.add_argument(
        "--account",
        default=None,
        help="Account id to operate on (default: configured default account)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("accounts", help="List configured accounts")
    subparsers.add_parser("folders", help="List IMAP folders")

    headers_parser = subparsers.add_parser("headers", help="List message headers")
    headers_parser.add_argument("--folder", default="INBOX", help="Mailbox to search")
    headers_parser.add_argument("--since", default=None, help="Only messages on/after YYYY-MM-DD")
    headers_parser.add_argument("--until", default=None, help="Only messages before YYYY-MM-DD")
    headers_parser.add_argument("--from", dest="sender", default=None, help="Match on From header")
    headers_parser.add_argument("--subject", default=None, help="Subject substring")
    headers_parser.add_argument("--unread", action="store_true", help="Only unread messages")
    headers_parser.add_argument("--limit", type=int, default=50, help="Max results")

    fetch_parser = subparsers.add_parser("fetch", help="Fetch a message into the cache")
    fetch_parser.add_argument("message_id", help="RFC 822 Message-ID")
    fetch_parser.add_argument("--preview-length", type=int, default=None, help="Preview characters")

    read_parser = subparsers.add_parser("read", help="Read a chunk of a cached body")
    read_parser.add_argument("message_id", help="RFC 822 Message-ID")
    read_parser.add_argument("--format", choices=["text", "raw_html"], default="text")
    read_parser.add_argument("--offset", type=int, default=0, help="Byte offset")
    read_parser.add_argument("--limit", type=int, default=None, help="Max bytes to return")

    att_parser = subparsers.add_parser("attachments", help="Download attachments into the cache")
    att_parser.add_argument("message_id", help="RFC 822 Message-ID")
    att_parser.add_argument("--name", action="append", dest="names", default=None, help="Attachment name")
    att_parser.add_argument("--all", action="store_true", dest="fetch_all", help="Fetch every attachment")

    subparsers.add_parser("cache-info", help="Show cache statistics")
    subparsers.add_parser("clear-cache", help="Delete all cached data for the account")
    subparsers.add_parser("migrations", help="Show pending account folder migrations without applying them")

    subparsers.add_parser("drafts", help="List saved drafts")
    create_parser = subparsers.add_parser("draft-create", help="Save a new draft")
    _add_message_options(create_parser)
    show_parser = subparsers.add_parser("draft-show", help="Show a saved draft")
    show_parser.add_argument("draft_id")
    update_parser = subparsers.add_parser("draft-update", help="Change fields of a saved draft")
    update_parser.add_argument("draft_id")
    _add_message_options(update_parser)
    send_parser = subparsers.add_parser("draft-send", help="Send a draft and remove it")
    send_parser.add_argument("draft_id")
    delete_parser = subparsers.add_parser("draft-delete", help="Delete a draft without sending it")
    delete_parser.add_argument("draft_id")
    send_all_parser = subparsers.add_parser("draft-send-all", help="Send every saved draft")
    send_all_parser.add_argument("--delay", type=int, default=5, help="Seconds between sends (2-60)")
    send_all_parser.add_argument("--dry-run", action="store_true", help="Report without sending")
    send_all_parser.add_argument("--stop-on-error", action="store_true", help="Stop at the first failure")

    return parser


def _to_jsonable(value: object) -> object:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_to_jsonable(v) for v in value]
    return value


def _print(value: object) -> None:
    print(json.dumps(_to_jsonable(value), indent=2))


def _parse_day(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise EmailMcpError(f"invalid date {value!r} (use YYYY-MM-DD)") from exc


def _cmd_migrations() -> int:
    settings = get_settings()
    plans = detect_migrations(settings.files_root, configured_account_emails(read_environ(settings)))
    _print(
        [
            {
                "old_folder_name": p.old_folder_name,
                "new_account_id": p.new_account_id,
                "email_address": p.email_address,
            }
            for p in plans
        ]
    )
    return 0


async def _run_command(service: EmailService, parsed: argparse.Namespace) -> int:
    account = parsed.account

    if parsed.command == "accounts":
        _print(service.list_accounts())
    elif parsed.command == "folders":
        _print(await service.list_folders(account))
    elif parsed.command == "headers":
        options = FetchOptions(
            folder=parsed.folder,
            since_date=_parse_day(parsed.since),
            until_date=_parse_day(parsed.until),
            sender=parsed.sender,
            subject_contains=parsed.subject,
            unread_only=parsed.unread,
            limit=parsed.limit,
        )
        _print(await service.fetch_headers(options, account))
    elif parsed.command == "fetch":
        _print(await service.fetch_and_cache(parsed.message_id, parsed.preview_length, account))
    elif parsed.command == "read":
        _print(
            service.read_cached_body(
                parsed.message_id,
                format=parsed.format,
                offset=parsed.offset,
                limit=parsed.limit,
                account_id=account,
            )
        )
    elif parsed.command == "attachments":
        _print(await service.fetch_attachments(parsed.message_id, parsed.names, parsed.fetch_all, account))
    elif parsed.command == "cache-info":
        _print(service.cache_stats(account))
    elif parsed.command == "clear-cache":
        removed = service.clear_cache(account)
        print(f"Removed {removed} cached entries")
    elif parsed.command == "drafts":
        _print(service.list_drafts(account))
    elif parsed.command == "draft-create":
        _print(service.create_draft(SendOptions(**_message_fields(parsed)), account))
    elif parsed.command == "draft-show":
        _print(service.get_draft(parsed.draft_id, account))
    elif parsed.command == "draft-update":
        _print(service.update_draft(parsed.draft_id, _message_fields(parsed), account))
    elif parsed.command == "draft-send":
        draft = await service.send_draft(parsed.draft_id, account)
        print(f"Draft {draft.id} sent to {', '.join(draft.to)} and removed from drafts")
    elif parsed.command == "draft-delete":
        service.delete_draft(parsed.draft_id, account)
        print(f"Draft {parsed.draft_id} deleted")
    elif parsed.command == "draft-send-all":
        _print(
            await service.send_all_drafts(
                delay_seconds=parsed.delay,
                dry_run=parsed.dry_run,
                stop_on_error=parsed.stop_on_error,
                account_id=account,
            )
        )
    else:
        logger.error("unknown_command", command=parsed.command)
        return 2
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the Email MCP Agent CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    argv: Sequence[str] = sys.argv[1:] if args is None else args

    settings = get_settings()

    # Configure logging
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )

    logger.info("email_mcp_agent_started", version=__version__)

    parser = _build_parser()
    parsed = parser.parse_args(argv)

    try:
        if parsed.command == "migrations":
            return _cmd_migrations()
        config = load_config(settings=settings)
        config.validate_startup()
        service = EmailService(config, settings=settings)
        return asyncio.run(_run_command(service, parsed))
    except NotCachedError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except EmailMcpError as exc:
        logger.error("command_failed", command=parsed.command, error=str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
