# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Priority-ordered domain allocator with rolling hourly quotas.

Free tier mail is sent through a pool of outbound SMTP relays ("domains").
Each domain allows at most ``limit`` sends per one-hour window; the window
starts on first use and is reset, persistently, once an hour has elapsed.
The allocator walks the domains in ascending ``order`` and returns the first
one with spare quota. Lower ``order`` always wins while it has quota: there
is no load balancing between equally available domains.

Example:
    Using the allocator around a send::

        allocator = DomainAllocator(persistence)
        domain = await allocator.select_available_domain()
        if domain is not None:
            await send_through(domain)
            await allocator.record_usage(domain.id)

The selection and the later :meth:`DomainAllocator.record_usage` are not
atomic together: two concurrent senders can both see the last free slot of
a domain and overshoot its limit by one each. Individual counter writes are
atomic, so no recorded send is ever lost.
"""

from __future__ import annotations

import time
import uuid
from typing import Any

from .logger import get_logger
from .models import DomainConfig, DomainCreate, DomainUsage
from .persistence import WINDOW_SECONDS, Persistence

logger = get_logger("DomainAllocator")


class DomainAllocator:
    """Select outbound domains with spare quota and account for their use.

    Attributes:
        persistence: The Persistence instance holding domains and counters.
    """

    def __init__(self, persistence: Persistence):
        self.persistence = persistence

    @staticmethod
    def _to_domain(row: dict[str, Any]) -> DomainConfig:
        return DomainConfig(
            id=row["id"],
            host=row["host"],
            port=row["port"],
            secure=row["secure"],
            username=row["username"],
            password=row["password"],
            from_addr=row["from_addr"],
            limit=row["limit"],
            order=row["order"],
            created_at=row.get("created_at"),
        )

    async def add_domain(self, payload: DomainCreate) -> DomainConfig:
        """Register a new outbound domain.

        When ``order`` is omitted the domain is appended to the end of the
        priority list (its order becomes the number of existing domains).

        Args:
            payload: Validated domain definition.

        Returns:
            The stored DomainConfig.
        """
        order = payload.order
        if order is None:
            order = await self.persistence.count_domains()
        row = await self.persistence.add_domain(
            {
                "id": payload.id or uuid.uuid4().hex,
                "host": payload.host,
                "port": payload.port,
                "secure": payload.secure,
                "username": payload.username,
                "password": payload.password,
                "from_addr": payload.from_addr,
                "limit": payload.limit,
                "order": order,
            }
        )
        logger.info("Added SMTP domain %s (%s:%s, order=%s, limit=%s/h)",
                    row["id"], row["host"], row["port"], row["order"], row["limit"])
        return self._to_domain(row)

    async def list_domains_by_priority(self) -> list[DomainConfig]:
        """Return all configured domains, lowest ``order`` first."""
        rows = await self.persistence.list_domains()
        return [self._to_domain(row) for row in rows]

    async def get_domain(self, domain_id: str) -> DomainConfig:
        """Return one domain by id.

        Raises:
            ValueError: If no domain has this id.
        """
        return self._to_domain(await self.persistence.get_domain(domain_id))

    async def get_usage(self, domain_id: str) -> DomainUsage | None:
        """Return the stored counter of a domain without touching it."""
        row = await self.persistence.get_usage(domain_id)
        return DomainUsage(**row) if row else None

    async def check_availability(self, domain: DomainConfig) -> tuple[bool, DomainUsage]:
        """Tell whether a domain has quota left in its current window.

        Loads the usage counter, creating it with a zero count on first
        check. An expired window (an hour or more old) is reset to
        ``count = 0, window_start = now`` and the reset is persisted before
        the count is compared with the limit.

        Args:
            domain: The domain to check.

        Returns:
            Tuple of (available, usage) where ``available`` is
            ``usage.count < domain.limit``.
        """
        now = time.time()
        row = await self.persistence.ensure_usage(domain.id, now)
        if now - float(row["window_start"]) >= WINDOW_SECONDS:
            await self.persistence.reset_expired_usage(domain.id, now)
            row = await self.persistence.get_usage(domain.id)
            logger.debug("Usage window of domain %s expired, counter reset", domain.id)
        usage = DomainUsage(**row)
        return usage.count < domain.limit, usage

    async def select_available_domain(self) -> DomainConfig | None:
        """Return the highest priority domain with spare quota.

        Returns:
            The first available domain in priority order, or None when the
            pool is empty or every domain is exhausted.
        """
        for domain in await self.list_domains_by_priority():
            available, usage = await self.check_availability(domain)
            if available:
                return domain
            logger.debug("Domain %s exhausted (%d/%d)", domain.id, usage.count, domain.limit)
        return None

    async def record_usage(self, domain_id: str) -> None:
        """Count one successful send through a domain.

        Must be called exactly once per successful send. If the window has
        expired a new one starts with ``count = 1``.

        Args:
            domain_id: The domain the message was sent through.
        """
        await self.persistence.increment_usage(domain_id, time.time())
