# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tiered delivery policy for outbound and inbound mail.

This module provides the MailService class, which decides how a message
leaves the system depending on the sender's tier and on which transports
are configured. Strategies are tried in strict order and the first success
wins:

1. ``premium``: premium users only, through the Mailchimp Transactional
   API. Missing credentials are fatal; premium users are never downgraded
   to free tier relays.
2. ``domain``: a rotated SMTP domain picked by the
   :class:`~cocoinbox_mail.domains.DomainAllocator`. Usage is recorded only
   after the relay accepted the message.
3. ``static_smtp``: the SMTP relay configured in settings.
4. ``smtpdev``: the smtp.dev test mailbox API.

Failures of strategies 2 and 3 are logged and fall through. A failure of
the last reachable strategy is raised as
:class:`~cocoinbox_mail.errors.TransportFailure`, and when nothing is
reachable :class:`~cocoinbox_mail.errors.TransportExhausted` is raised.

Example:
    Sending for a free tier user::

        service = MailService(load_settings())
        await service.start()
        result = await service.send_email(
            MailUser(id="u1", roles=[]),
            OutgoingMessage(to="dest@example.com", subject="Hi", text="Hello"),
        )
        await service.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

from .config import MailSettings
from .config_loader import load_domains_from_config
from .domains import DomainAllocator
from .errors import ConfigurationError, TransportExhausted, TransportFailure
from .logger import get_logger
from .models import DeliveryTier, DomainConfig, MailUser, OutgoingMessage
from .persistence import Persistence
from .prometheus import MailMetrics
from .smtp_pool import SMTPPool
from .transports import PremiumTransport, SmtpDevTransport, SmtpTransport


class MailService:
    """Send and receive mail for Cocoinbox users according to their tier.

    Every collaborator is created once here (or injected) and reused for
    all calls; nothing is looked up from the environment per call.

    Attributes:
        settings: Immutable service configuration.
        persistence: Database layer for domains and usage counters.
        allocator: Domain allocator used by the free tier.
        pool: SMTP connection pool shared by all SMTP sends.
        smtp: SMTP transport bound to ``pool``.
        premium: Premium transport, or None when not configured.
        smtpdev: smtp.dev transport, or None when not configured.
        metrics: Prometheus metrics collector.
        logger: Logger instance for diagnostic output.
    """

    def __init__(
        self,
        settings: MailSettings,
        *,
        persistence: Persistence | None = None,
        allocator: DomainAllocator | None = None,
        pool: SMTPPool | None = None,
        metrics: MailMetrics | None = None,
        logger=None,
        cleanup_interval: float = 60.0,
    ):
        """Wire the service from settings.

        Args:
            settings: Service configuration, validated once at startup.
            persistence: Optional persistence layer; built from
                ``settings.db_path`` when omitted.
            allocator: Optional allocator; built on ``persistence`` when omitted.
            pool: Optional SMTP pool.
            metrics: Optional metrics collector.
            logger: Custom logger instance. If None, uses default logger.
            cleanup_interval: Seconds between SMTP pool cleanups.
        """
        self.settings = settings
        self.logger = logger or get_logger("MailService")
        self.persistence = persistence or Persistence(settings.db_path)
        self.allocator = allocator or DomainAllocator(self.persistence)
        self.pool = pool or SMTPPool()
        self.metrics = metrics or MailMetrics()
        self.smtp = SmtpTransport(self.pool)
        self.premium: PremiumTransport | None = None
        if settings.premium_configured:
            self.premium = PremiumTransport(settings.premium_api_key, settings.premium_server)
        self.smtpdev: SmtpDevTransport | None = None
        if settings.smtpdev_configured:
            self.smtpdev = SmtpDevTransport(
                settings.smtpdev_api_key,
                settings.smtpdev_account_id,
                settings.smtpdev_mailbox_id,
            )
        self._cleanup_interval = cleanup_interval
        self._stop = asyncio.Event()
        self._task_cleanup: asyncio.Task | None = None

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Create the schema and seed domains from the ``[domains]`` config section."""
        await self.persistence.init_db()
        if self.settings.config_path:
            loaded = await load_domains_from_config(self.settings.config_path, self.allocator)
            if loaded:
                self.logger.info("Seeded %d SMTP domain(s) from %s", loaded, self.settings.config_path)

    async def start(self) -> None:
        """Initialize storage and start the SMTP pool cleanup loop."""
        await self.init()
        self._stop.clear()
        self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="smtp-pool-cleanup")

    async def stop(self) -> None:
        """Stop background work and close pooled SMTP connections."""
        self._stop.set()
        if self._task_cleanup is not None:
            self._task_cleanup.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task_cleanup
            self._task_cleanup = None
        await self.pool.close_all()

    async def _cleanup_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._cleanup_interval)
            except asyncio.TimeoutError:
                pass
            try:
                await self.pool.cleanup()
            except Exception as exc:
                self.logger.exception("SMTP pool cleanup failed: %s", exc)

    # ------------------------------------------------------------------- sending
    async def send_email(self, user: MailUser, message: OutgoingMessage) -> dict[str, Any]:
        """Deliver a message on behalf of a user.

        Args:
            user: The sending user; its roles decide the tier.
            message: Recipient, subject and text and/or HTML body.

        Returns:
            Dict with the ``strategy`` that delivered the message, the
            ``domain_id`` when a rotated domain was used, and the
            transport ``result``.

        Raises:
            ConfigurationError: Premium user without premium credentials.
            TransportFailure: The premium send, or the last reachable free
                tier strategy, failed.
            TransportExhausted: No free tier strategy was reachable. Failures
                recovered along the way are in its ``failures``, the last one
                chained as ``__cause__``.
        """
        if user.tier is DeliveryTier.PREMIUM:
            return await self._send_premium(user, message)

        failures: list[TransportFailure] = []
        delivered = await self._send_via_domain(user, message, failures)
        if delivered is not None:
            return delivered

        delivered = await self._send_via_static_smtp(user, message, failures)
        if delivered is not None:
            return delivered

        if self.smtpdev is not None:
            try:
                result = await self.smtpdev.send(sender=self.settings.default_sender, message=message)
            except Exception as exc:
                self.metrics.inc_error("smtpdev")
                self.logger.error("smtp.dev send failed for user %s: %s", user.id, exc)
                raise TransportFailure("smtpdev", exc) from exc
            return self._delivered(user, message, "smtpdev", result)

        self.metrics.inc_exhausted()
        self.logger.error(
            "No transport available for user %s (to=%s), %d failed attempt(s)",
            user.id, message.to, len(failures),
        )
        raise TransportExhausted(failures=failures) from (failures[-1] if failures else None)

    async def _send_premium(self, user: MailUser, message: OutgoingMessage) -> dict[str, Any]:
        if self.premium is None:
            raise ConfigurationError()
        try:
            result = await self.premium.send(sender=self.settings.default_sender, message=message)
        except Exception as exc:
            self.metrics.inc_error("premium")
            self.logger.error("Premium send failed for user %s: %s", user.id, exc)
            raise TransportFailure("premium", exc) from exc
        return self._delivered(user, message, "premium", result)

    async def _send_via_domain(
        self, user: MailUser, message: OutgoingMessage, failures: list[TransportFailure]
    ) -> dict[str, Any] | None:
        """Try the rotated domain pool, returning None to fall through.

        A failed attempt is appended to ``failures``.
        """
        domain: DomainConfig | None = None
        try:
            domain = await self.allocator.select_available_domain()
            if domain is None:
                self.logger.info("No SMTP domain with available quota, trying fallbacks")
                return None
            result = await self.smtp.send(
                host=domain.host,
                port=domain.port,
                secure=domain.secure,
                username=domain.username,
                password=domain.password,
                sender=domain.from_addr,
                message=message,
            )
        except Exception as exc:
            self.metrics.inc_error("domain")
            self.logger.warning(
                "Error sending via configured domain %s: %s",
                domain.id if domain else "-",
                exc,
            )
            failures.append(TransportFailure("domain", exc))
            return None

        try:
            await self.allocator.record_usage(domain.id)
            self.metrics.inc_domain_usage(domain.id)
        except Exception:
            # The message is already out; resending would duplicate it.
            self.logger.exception("Failed to record usage for domain %s", domain.id)
        delivered = self._delivered(user, message, "domain", result)
        delivered["domain_id"] = domain.id
        return delivered

    async def _send_via_static_smtp(
        self, user: MailUser, message: OutgoingMessage, failures: list[TransportFailure]
    ) -> dict[str, Any] | None:
        """Try the statically configured SMTP relay, returning None to fall through."""
        settings = self.settings
        if not settings.static_smtp_configured:
            return None
        try:
            result = await self.smtp.send(
                host=settings.smtp_host,
                port=settings.smtp_port,
                secure=settings.smtp_port == 465,
                username=settings.smtp_username,
                password=settings.smtp_password,
                sender=settings.default_sender,
                message=message,
            )
        except Exception as exc:
            self.metrics.inc_error("static_smtp")
            self.logger.warning("Error sending via static SMTP relay %s: %s", settings.smtp_host, exc)
            failures.append(TransportFailure("static_smtp", exc))
            return None
        return self._delivered(user, message, "static_smtp", result)

    def _delivered(self, user: MailUser, message: OutgoingMessage, strategy: str, result: Any) -> dict[str, Any]:
        self.metrics.inc_sent(strategy)
        if self.settings.log_delivery_activity:
            self.logger.info("Delivered message for user %s to %s via %s", user.id, message.to, strategy)
        else:
            self.logger.debug("Delivered message for user %s to %s via %s", user.id, message.to, strategy)
        return {"strategy": strategy, "result": result}

    # ----------------------------------------------------------------- receiving
    async def receive_emails(self, user: MailUser) -> list[Any]:
        """Return the inbox of a user.

        Premium inbound mail is not implemented and always yields an empty
        list. Free tier users read the smtp.dev mailbox when it is
        configured, otherwise the inbox is empty.

        Raises:
            TransportFailure: The smtp.dev mailbox could not be read.
        """
        if user.tier is DeliveryTier.PREMIUM:
            return []
        if self.smtpdev is None:
            return []
        try:
            return await self.smtpdev.list_messages()
        except Exception as exc:
            self.logger.error("Failed to fetch smtp.dev mailbox for user %s: %s", user.id, exc)
            raise TransportFailure("smtpdev", exc) from exc
