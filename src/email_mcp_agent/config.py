"""Configuration management for Email MCP Agent.

Global settings use Pydantic settings (`EMAIL_MCP_` prefix, `.env` support).
Accounts are discovered from `ACCOUNT_{ID}_*` variables. Loading the account
configuration runs the folder migration pass first, so every per-account
storage operation starts from folders that match the configured ids.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path

import structlog
from dotenv import dotenv_values
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from email_mcp_agent.accounts.migration import run_migrations
from email_mcp_agent.exceptions import AccountNotFoundError, ConfigurationError
from email_mcp_agent.storage.identity import AccountIdentityStore

logger = structlog.get_logger()


ACCOUNT_PREFIX = "ACCOUNT_"
EMAIL_SUFFIX = "_EMAIL"

PROVIDER_DEFAULTS: dict[str, dict[str, str | int]] = {
    "gmail": {
        "imap_server": "imap.gmail.com",
        "imap_port": 993,
        "smtp_server": "smtp.gmail.com",
        "smtp_port": 587,
    },
    "outlook": {
        "imap_server": "outlook.office365.com",
        "imap_port": 993,
        "smtp_server": "smtp-mail.outlook.com",
        "smtp_port": 587,
    },
}


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the EMAIL_MCP_ prefix (e.g., EMAIL_MCP_FILES_ROOT).
    """

    model_config = SettingsConfigDict(
        env_prefix="EMAIL_MCP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage Configuration
    files_root: Path = Field(
        default=Path("/tmp/email-mcp"),
        description="Directory holding one folder per account",
    )
    cache_max_size: int = Field(
        default=10 * 1024 * 1024,
        gt=0,
        description="Maximum size of each account's cache in bytes",
    )
    max_attachment_size: int = Field(
        default=25 * 1024 * 1024,
        gt=0,
        description="Largest attachment that will be stored, in bytes",
    )

    # Account Configuration
    default_account_id: str | None = Field(
        default=None,
        description="Account used when a request does not name one",
    )

    # Response shaping
    preview_length: int = Field(
        default=500,
        ge=0,
        description="Characters of body preview returned after fetching an email",
    )
    read_limit: int = Field(
        default=10_000,
        gt=0,
        description="Default chunk size in bytes for reading cached bodies",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )


class AccountConfig(BaseModel):
    """Resolved configuration for one email account."""

    account_id: str
    email_address: str
    password: str = Field(repr=False)
    provider: str = "gmail"

    imap_server: str
    imap_port: int
    smtp_server: str
    smtp_port: int
    timeout_seconds: int = 120

    account_root: Path

    @property
    def drafts_dir(self) -> Path:
        return self.account_root / "drafts"

    @property
    def cache_dir(self) -> Path:
        return self.account_root / "cache"

    @property
    def email_cache_dir(self) -> Path:
        return self.cache_dir / "emails"

    @property
    def attachment_dir(self) -> Path:
        return self.cache_dir / "attachments"

    @property
    def metadata_file(self) -> Path:
        return self.account_root / "metadata.yaml"

    def is_configured(self) -> bool:
        return bool(self.email_address and self.password)

    def validate_for_operation(self) -> None:
        """Check the account can talk to its mail servers.

        Raises:
            ConfigurationError: If credentials or endpoints are incomplete.
        """

        if not self.email_address:
            raise ConfigurationError(f"account {self.account_id}: email address not configured")
        if not self.password:
            raise ConfigurationError(f"account {self.account_id}: email password not configured")
        if not self.imap_server or not self.imap_port:
            raise ConfigurationError(f"account {self.account_id}: IMAP server configuration is incomplete")
        if not self.smtp_server or not self.smtp_port:
            raise ConfigurationError(f"account {self.account_id}: SMTP server configuration is incomplete")


class MultiAccountConfig(BaseModel):
    """All configured accounts plus the global storage limits."""

    files_root: Path
    cache_max_size: int
    max_attachment_size: int
    accounts: dict[str, AccountConfig] = Field(default_factory=dict)
    default_account_id: str | None = None

    def resolve_account_id(self, account_id: str | None) -> str:
        resolved = account_id or self.default_account_id
        if not resolved:
            raise ConfigurationError(
                "no email accounts configured: set ACCOUNT_{name}_EMAIL and ACCOUNT_{name}_PASSWORD"
            )
        return resolved

    def get_account(self, account_id: str | None = None) -> AccountConfig:
        """Return an account, falling back to the default for an empty id.

        Raises:
            AccountNotFoundError: If the id is not configured.
        """

        resolved = self.resolve_account_id(account_id)
        try:
            return self.accounts[resolved]
        except KeyError as exc:
            raise AccountNotFoundError(resolved) from exc

    def list_account_ids(self) -> list[str]:
        return sorted(self.accounts)

    def validate_startup(self) -> None:
        """Check the configuration can serve account commands.

        Raises:
            ConfigurationError: If the cache bound is not positive, no account or
                default is configured, or an account lacks credentials.
        """

        if self.cache_max_size <= 0:
            raise ConfigurationError("invalid cache size")
        if not self.accounts:
            raise ConfigurationError("no accounts configured")
        if not self.default_account_id:
            raise ConfigurationError("no default account specified")
        for account_id in self.list_account_ids():
            if not self.accounts[account_id].is_configured():
                raise ConfigurationError(f"account {account_id}: email credentials not configured")


def discover_account_ids(environ: Mapping[str, str]) -> list[str]:
    """Find account ids from `ACCOUNT_{ID}_EMAIL` variables."""

    ids = set()
    for key in environ:
        if key.startswith(ACCOUNT_PREFIX) and key.endswith(EMAIL_SUFFIX):
            account_id = key[len(ACCOUNT_PREFIX) : -len(EMAIL_SUFFIX)]
            if account_id:
                ids.add(account_id)
    return sorted(ids)


def configured_account_emails(environ: Mapping[str, str]) -> dict[str, str]:
    """Map each discovered account id to its configured email address."""

    return {
        account_id: environ[f"{ACCOUNT_PREFIX}{account_id}{EMAIL_SUFFIX}"]
        for account_id in discover_account_ids(environ)
        if environ.get(f"{ACCOUNT_PREFIX}{account_id}{EMAIL_SUFFIX}")
    }


def _parse_int(environ: Mapping[str, str], key: str, current: int) -> int:
    raw = environ.get(key)
    if not raw:
        return current
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"invalid {key}: {raw!r}") from exc


def load_account_config(
    account_id: str,
    environ: Mapping[str, str],
    files_root: Path,
) -> AccountConfig:
    """Build one account from its `ACCOUNT_{ID}_*` variables.

    Raises:
        ConfigurationError: If required values are missing or invalid.
    """

    prefix = f"{ACCOUNT_PREFIX}{account_id}_"

    email_address = environ.get(prefix + "EMAIL", "")
    if not email_address:
        raise ConfigurationError(f"missing {prefix}EMAIL")
    password = environ.get(prefix + "PASSWORD", "")
    if not password:
        raise ConfigurationError(f"missing {prefix}PASSWORD")

    provider = environ.get(prefix + "PROVIDER") or "gmail"
    if provider not in PROVIDER_DEFAULTS:
        provider = "custom"
    defaults = PROVIDER_DEFAULTS.get(provider, {})

    imap_server = environ.get(prefix + "IMAP_SERVER") or str(defaults.get("imap_server", ""))
    smtp_server = environ.get(prefix + "SMTP_SERVER") or str(defaults.get("smtp_server", ""))
    imap_port = _parse_int(environ, prefix + "IMAP_PORT", int(defaults.get("imap_port", 0)))
    smtp_port = _parse_int(environ, prefix + "SMTP_PORT", int(defaults.get("smtp_port", 0)))
    timeout_seconds = _parse_int(environ, prefix + "TIMEOUT_SECONDS", 120)

    if not imap_server:
        raise ConfigurationError(f"IMAP server not configured for account {account_id}")
    if not imap_port:
        raise ConfigurationError(f"IMAP port not configured for account {account_id}")
    if not smtp_server:
        raise ConfigurationError(f"SMTP server not configured for account {account_id}")
    if not smtp_port:
        raise ConfigurationError(f"SMTP port not configured for account {account_id}")

    return AccountConfig(
        account_id=account_id,
        email_address=email_address,
        password=password,
        provider=provider,
        imap_server=imap_server,
        imap_port=imap_port,
        smtp_server=smtp_server,
        smtp_port=smtp_port,
        timeout_seconds=timeout_seconds,
        account_root=Path(files_root) / account_id,
    )


def _prepare_account_dirs(account: AccountConfig, identity_store: AccountIdentityStore) -> None:
    for directory in (account.drafts_dir, account.email_cache_dir, account.attachment_dir):
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError(f"failed to create directory {directory}: {exc}") from exc
    identity_store.write(account.metadata_file, account.account_id, account.email_address)


def read_environ(settings: Settings) -> dict[str, str]:
    env_file = settings.model_config.get("env_file")
    values: dict[str, str] = {}
    if isinstance(env_file, str) and Path(env_file).exists():
        values.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    values.update(os.environ)
    return values


def load_config(
    environ: Mapping[str, str] | None = None,
    settings: Settings | None = None,
    identity_store: AccountIdentityStore | None = None,
) -> MultiAccountConfig:
    """Load all accounts, migrating renamed account folders first.

    Args:
        environ: Variables to read `ACCOUNT_*` entries from. Defaults to the
            process environment merged over the `.env` file.
        settings: Global settings. If None, uses default settings.
        identity_store: Store used for identity records.

    Returns:
        MultiAccountConfig. With no accounts configured the result is empty
        rather than an error, so callers can report setup instructions.

    Raises:
        ConfigurationError: If an account is invalid or the default account
            id names an unknown account.
    """

    settings = settings or get_settings()
    env = dict(environ) if environ is not None else read_environ(settings)
    store = identity_store or AccountIdentityStore()

    cfg = MultiAccountConfig(
        files_root=settings.files_root,
        cache_max_size=settings.cache_max_size,
        max_attachment_size=settings.max_attachment_size,
    )

    account_ids = discover_account_ids(env)
    if not account_ids:
        logger.warning("no_accounts_configured", files_root=str(settings.files_root))
        return cfg

    run_migrations(settings.files_root, configured_account_emails(env), store)

    for account_id in account_ids:
        account = load_account_config(account_id, env, settings.files_root)
        _prepare_account_dirs(account, store)
        cfg.accounts[account_id] = account

    default_id = settings.default_account_id
    if default_id:
        if default_id not in cfg.accounts:
            raise ConfigurationError(f"default account {default_id} not found in configured accounts")
        cfg.default_account_id = default_id
    else:
        cfg.default_account_id = account_ids[0]
        logger.info("default_account_selected", account_id=cfg.default_account_id)

    logger.info(
        "config_loaded",
        accounts=cfg.list_account_ids(),
        default_account_id=cfg.default_account_id,
        files_root=str(cfg.files_root),
    )
    return cfg


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
