# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Service settings loaded once at startup.

Settings come from an INI file (default: ``config.ini``, overridable with
``COCO_CONFIG``) with environment variables as fallbacks. The result is an
immutable :class:`MailSettings`; the delivery policy only ever tests its
fields and never reads the environment on its own.

Environment variables:
    COCO_CONFIG - Path to config.ini file (default: config.ini)
    COCO_DB_PATH - Database path (default: /data/cocoinbox_mail.db)
    COCO_HOST, COCO_PORT - HTTP bind address (default: 0.0.0.0:4000)
    COCO_API_TOKEN - API authentication token
    COCO_LOG_DELIVERY_ACTIVITY - Log every delivery at INFO (default: False)
    MAILCHIMP_API_KEY, MAILCHIMP_SERVER_PREFIX - Premium provider credentials
    SENDER_EMAIL - Default sender (default: no-reply@cocoinbox.app)
    SMTP_HOST, SMTP_PORT, SMTP_USERNAME, SMTP_PASSWORD - Static SMTP fallback
    SMTPDEV_API_KEY, SMTPDEV_ACCOUNT_ID, SMTPDEV_MAILBOX_ID - smtp.dev mailbox

Config file sections/keys:
    [storage] db_path
    [server] host, port, api_token
    [logging] delivery_activity
    [premium] api_key, server_prefix
    [delivery] sender_email
    [smtp] host, port, username, password
    [smtpdev] api_key, account_id, mailbox_id
"""

from __future__ import annotations

import configparser
import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_validator

DEFAULT_SENDER = "no-reply@cocoinbox.app"
DEFAULT_DB_PATH = "/data/cocoinbox_mail.db"


class MailSettings(BaseModel):
    """Immutable configuration of the mail service.

    Every credential is independently optional; which ones are present
    decides which delivery strategies are reachable.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    db_path: str = DEFAULT_DB_PATH
    http_host: str = "0.0.0.0"
    http_port: int = 4000
    api_token: str | None = None
    log_delivery_activity: bool = False
    config_path: str | None = None

    premium_api_key: str | None = None
    premium_server: str | None = None
    sender_email: str | None = None

    smtp_host: str | None = None
    smtp_port: int | None = None
    smtp_username: str | None = None
    smtp_password: str | None = None

    smtpdev_api_key: str | None = None
    smtpdev_account_id: str | None = None
    smtpdev_mailbox_id: str | None = None

    @field_validator(
        "api_token",
        "premium_api_key",
        "premium_server",
        "sender_email",
        "smtp_host",
        "smtp_username",
        "smtp_password",
        "smtpdev_api_key",
        "smtpdev_account_id",
        "smtpdev_mailbox_id",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("smtp_port", mode="before")
    @classmethod
    def blank_port_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def default_sender(self) -> str:
        return self.sender_email or DEFAULT_SENDER

    @property
    def premium_configured(self) -> bool:
        return bool(self.premium_api_key and self.premium_server)

    @property
    def static_smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_port and self.smtp_username and self.smtp_password)

    @property
    def smtpdev_configured(self) -> bool:
        return bool(self.smtpdev_api_key and self.smtpdev_account_id and self.smtpdev_mailbox_id)


def load_settings(config_path: str | os.PathLike | None = None) -> MailSettings:
    """Load settings from an INI file with environment variables as fallbacks.

    Args:
        config_path: Path to the INI file. Defaults to ``COCO_CONFIG`` or
            ``config.ini``. A missing file is not an error.

    Returns:
        A validated, frozen :class:`MailSettings`.
    """
    path = Path(config_path or os.getenv("COCO_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool = False) -> bool:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    db_path = get("storage", "db_path", os.getenv("COCO_DB_PATH", DEFAULT_DB_PATH))

    return MailSettings(
        db_path=os.path.expanduser(db_path) if db_path != ":memory:" else db_path,
        http_host=get("server", "host", os.getenv("COCO_HOST", "0.0.0.0")),
        http_port=get("server", "port", os.getenv("COCO_PORT", "4000")),
        api_token=get("server", "api_token", os.getenv("COCO_API_TOKEN")),
        log_delivery_activity=get_bool("logging", "delivery_activity", os.getenv("COCO_LOG_DELIVERY_ACTIVITY")),
        config_path=str(path) if path.exists() else None,
        premium_api_key=get("premium", "api_key", os.getenv("MAILCHIMP_API_KEY")),
        premium_server=get("premium", "server_prefix", os.getenv("MAILCHIMP_SERVER_PREFIX")),
        sender_email=get("delivery", "sender_email", os.getenv("SENDER_EMAIL")),
        smtp_host=get("smtp", "host", os.getenv("SMTP_HOST")),
        smtp_port=get("smtp", "port", os.getenv("SMTP_PORT")),
        smtp_username=get("smtp", "username", os.getenv("SMTP_USERNAME")),
        smtp_password=get("smtp", "password", os.getenv("SMTP_PASSWORD")),
        smtpdev_api_key=get("smtpdev", "api_key", os.getenv("SMTPDEV_API_KEY")),
        smtpdev_account_id=get("smtpdev", "account_id", os.getenv("SMTPDEV_ACCOUNT_ID")),
        smtpdev_mailbox_id=get("smtpdev", "mailbox_id", os.getenv("SMTPDEV_MAILBOX_ID")),
    )
