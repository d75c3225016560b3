# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Transports used by the delivery policy.

Three ways to get a message out:

- :class:`SmtpTransport`: SMTP through pooled aiosmtplib connections, used
  both for rotated domains and for the static fallback relay.
- :class:`PremiumTransport`: Mailchimp Transactional ``messages/send`` over
  HTTPS, for premium users.
- :class:`SmtpDevTransport`: the smtp.dev test mailbox API, used as the last
  resort for sending and as the free tier inbox.

Transports raise whatever their client library raises; the delivery policy
decides whether a failure falls through or surfaces.
"""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any

import aiohttp

from .logger import get_logger
from .models import OutgoingMessage
from .smtp_pool import SMTPPool

MANDRILL_SEND_URL = "https://mandrillapp.com/api/1.0/messages/send"
SMTPDEV_BASE_URL = "https://api.smtp.dev"

logger = get_logger("Transports")


def build_email(sender: str, message: OutgoingMessage) -> EmailMessage:
    """Build an EmailMessage with a plain and/or HTML body."""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = message.to
    msg["Subject"] = message.subject
    msg["Message-ID"] = make_msgid(domain=sender.rpartition("@")[2] or None)
    if message.text and message.html:
        msg.set_content(message.text)
        msg.add_alternative(message.html, subtype="html")
    elif message.html:
        msg.set_content(message.html, subtype="html")
    else:
        msg.set_content(message.text or "")
    return msg


class SmtpTransport:
    """Send messages over SMTP using connections from an :class:`SMTPPool`."""

    def __init__(self, pool: SMTPPool, send_timeout: float = 30.0):
        self.pool = pool
        self.send_timeout = send_timeout

    async def send(
        self,
        *,
        host: str,
        port: int,
        secure: bool,
        username: str | None,
        password: str | None,
        sender: str,
        message: OutgoingMessage,
    ) -> dict[str, Any]:
        """Deliver a message and return a receipt.

        Returns:
            Dict with ``message_id``, ``accepted``, ``rejected`` and the
            server ``response``.

        Raises:
            aiosmtplib.SMTPException: On protocol or authentication errors.
            asyncio.TimeoutError: If connecting or sending times out.
            OSError: On network errors.
        """
        email_msg = build_email(sender, message)
        smtp = await self.pool.get_connection(host, port, username, password, secure=secure)
        try:
            errors, response = await asyncio.wait_for(
                smtp.send_message(email_msg, sender=sender), timeout=self.send_timeout
            )
        except BaseException:
            await self.pool.discard(smtp)
            raise
        await self.pool.release(smtp)
        rejected = sorted(errors)
        return {
            "message_id": email_msg["Message-ID"],
            "accepted": [addr for addr in [message.to] if addr not in errors],
            "rejected": rejected,
            "response": response,
        }


class PremiumTransport:
    """Mailchimp Transactional client for premium users.

    Both the API key and the server prefix are required, mirroring the
    provider client configuration; the Transactional endpoint itself is
    global.
    """

    def __init__(self, api_key: str, server: str, url: str = MANDRILL_SEND_URL):
        self.api_key = api_key
        self.server = server
        self.url = url

    async def send(self, *, sender: str, message: OutgoingMessage) -> Any:
        """Send through the provider and return its JSON response."""
        body = {
            "key": self.api_key,
            "message": {
                "from_email": sender,
                "subject": message.subject,
                "text": message.text or None,
                "html": message.html or None,
                "to": [{"email": message.to, "type": "to"}],
            },
        }
        logger.debug("Posting premium message to %s (server=%s)", self.url, self.server)
        async with aiohttp.ClientSession() as session:
            async with session.post(self.url, json=body) as resp:
                resp.raise_for_status()
                return await resp.json()


class SmtpDevTransport:
    """smtp.dev test mailbox: last resort sender and free tier inbox."""

    def __init__(self, api_key: str, account_id: str, mailbox_id: str, base_url: str = SMTPDEV_BASE_URL):
        self.api_key = api_key
        self.account_id = account_id
        self.mailbox_id = mailbox_id
        self.base_url = base_url.rstrip("/")

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/accounts/{self.account_id}/mailboxes/{self.mailbox_id}/messages"

    async def send(self, *, sender: str, message: OutgoingMessage) -> Any:
        """POST the message to the mailbox and return the JSON response."""
        payload = {
            "to": message.to,
            "from": sender,
            "subject": message.subject,
            "text": message.text or "",
            "html": message.html or "",
        }
        headers = {"X-API-KEY": self.api_key, "Content-Type": "application/json"}
        async with aiohttp.ClientSession() as session:
            async with session.post(self.messages_url, json=payload, headers=headers) as resp:
                resp.raise_for_status()
                return await resp.json()

    async def list_messages(self) -> list[Any]:
        """Return the message resources of the mailbox."""
        headers = {"X-API-KEY": self.api_key, "Accept": "application/json"}
        async with aiohttp.ClientSession() as session:
            async with session.get(self.messages_url, headers=headers) as resp:
                resp.raise_for_status()
                data = await resp.json()
        if isinstance(data, dict):
            return data.get("member") or []
        return []
