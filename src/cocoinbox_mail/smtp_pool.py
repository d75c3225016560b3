# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Lightweight asyncio-friendly SMTP connection pool.

Connections are pooled per relay (host, port, credentials and TLS mode), so
a request that falls back from one domain to another never reuses a session
authenticated against the wrong relay.

A connection is checked out with :meth:`SMTPPool.get_connection` and is used
by one sender at a time. After a successful send it goes back to the pool
with :meth:`SMTPPool.release`; after a failure it is closed with
:meth:`SMTPPool.discard`. Concurrent senders on the same relay each get
their own connection, and at most ``max_idle`` of them are kept per relay
once they are released.

The pool handles:
- TTL-based connection expiration
- Health checking via SMTP NOOP commands
- Reconnection when connections become stale or broken
- Closing of all connections at shutdown

Example:
    Sending through a domain::

        pool = SMTPPool(ttl=300)
        smtp = await pool.get_connection(
            "smtp.example.com", 465, "mailer", "secret", secure=True
        )
        try:
            await smtp.send_message(message)
        except Exception:
            await pool.discard(smtp)
            raise
        await pool.release(smtp)
"""

import asyncio
import time

import aiosmtplib

from .logger import get_logger

logger = get_logger("SMTPPool")

_Params = tuple[str, int, str | None, str | None, bool]


class SMTPPool:
    """Asyncio-compatible SMTP connection pool with checkout/release semantics.

    Attributes:
        ttl: Maximum age in seconds for idle connections before expiration.
        max_idle: Maximum number of idle connections kept per relay.
        idle: Idle connections per relay, as (smtp, last_used) pairs.
        in_use: Checked out connections by ``id(smtp)``, with their relay.
        lock: Asyncio lock guarding pool access.
    """

    def __init__(self, ttl: int = 300, max_idle: int = 4):
        self.ttl = ttl
        self.max_idle = max_idle
        self.idle: dict[_Params, list[tuple[aiosmtplib.SMTP, float]]] = {}
        self.in_use: dict[int, tuple[aiosmtplib.SMTP, _Params]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, host: str, port: int, user: str | None, password: str | None, secure: bool) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed.

        ``secure`` selects implicit TLS. Otherwise the connection is plain
        and upgraded with STARTTLS when the server offers it.

        Raises:
            asyncio.TimeoutError: If connection takes longer than 15 seconds.
            aiosmtplib.SMTPException: If connection or authentication fails.
        """
        if secure:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, use_tls=True, start_tls=False, timeout=10.0)
        else:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, use_tls=False, start_tls=None, timeout=10.0)

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=15.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except Exception:
            return False

    async def _quit(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except Exception as exc:
            logger.debug("Ignoring error while closing SMTP connection: %s", exc)

    async def _take_idle(self, params: _Params) -> aiosmtplib.SMTP | None:
        """Check out the most recently used healthy idle connection of a relay."""
        while True:
            async with self.lock:
                entries = self.idle.get(params)
                if not entries:
                    return None
                smtp, last_used = entries.pop()
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                return smtp
            await self._quit(smtp)

    async def get_connection(self, host: str, port: int, user: str | None, password: str | None, *, secure: bool) -> aiosmtplib.SMTP:
        """Check out a connection to a relay for exclusive use.

        An idle connection is reused when it is within TTL and passes a
        NOOP check; otherwise a new one is opened. The caller must hand it
        back with :meth:`release` or :meth:`discard`.
        """
        params: _Params = (host, port, user, password, secure)
        smtp = await self._take_idle(params)
        if smtp is None:
            smtp = await self._connect(host, port, user, password, secure)
        async with self.lock:
            self.in_use[id(smtp)] = (smtp, params)
        return smtp

    async def release(self, smtp: aiosmtplib.SMTP) -> None:
        """Return a healthy connection to the pool after a successful send."""
        async with self.lock:
            entry = self.in_use.pop(id(smtp), None)
            keep = False
            if entry is not None:
                entries = self.idle.setdefault(entry[1], [])
                if len(entries) < self.max_idle:
                    entries.append((smtp, time.time()))
                    keep = True
        if not keep:
            await self._quit(smtp)

    async def discard(self, smtp: aiosmtplib.SMTP) -> None:
        """Close a connection after a failed send instead of pooling it."""
        async with self.lock:
            self.in_use.pop(id(smtp), None)
            for params, entries in self.idle.items():
                self.idle[params] = [(conn, ts) for conn, ts in entries if conn is not smtp]
        await self._quit(smtp)

    async def cleanup(self) -> None:
        """Close idle connections that expired or no longer answer NOOP."""
        now = time.time()
        async with self.lock:
            snapshot = {params: list(entries) for params, entries in self.idle.items()}

        expired: list[aiosmtplib.SMTP] = []
        for entries in snapshot.values():
            for smtp, last_used in entries:
                if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                    expired.append(smtp)

        if not expired:
            return
        removed: list[aiosmtplib.SMTP] = []
        async with self.lock:
            # Connections checked out since the snapshot are no longer idle and stay open.
            for params in list(self.idle):
                kept = []
                for conn, ts in self.idle[params]:
                    if any(conn is smtp for smtp in expired):
                        removed.append(conn)
                    else:
                        kept.append((conn, ts))
                if kept:
                    self.idle[params] = kept
                else:
                    del self.idle[params]
        for smtp in removed:
            await self._quit(smtp)

    async def close_all(self) -> None:
        """Close every connection, idle or checked out, used at shutdown."""
        async with self.lock:
            connections = [smtp for entries in self.idle.values() for smtp, _ in entries]
            connections.extend(smtp for smtp, _ in self.in_use.values())
            self.idle.clear()
            self.in_use.clear()
        for smtp in connections:
            await self._quit(smtp)
