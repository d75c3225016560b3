# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed persistence for the domain registry and quota store.

This module provides the Persistence class holding the two collections
used by the domain allocator:

- ``smtp_domains``: outbound SMTP relays with their hourly limit and
  priority rank
- ``smtp_domain_usage``: one counter row per domain tracking the current
  one-hour window

The persistence layer uses aiosqlite for async SQLite operations. Each
operation opens and closes its own connection, making it safe for
concurrent use. Counter updates that depend on the stored window are
expressed as single conditional UPDATE statements so that SQLite evaluates
the expiry test and the write together.

Example:
    Basic usage of the persistence layer::

        persistence = Persistence("/data/cocoinbox_mail.db")
        await persistence.init_db()

        await persistence.add_domain({
            "id": "relay-a",
            "host": "smtp.example.com",
            "port": 465,
            "secure": True,
            "username": "mailer",
            "password": "secret",
            "from_addr": "no-reply@example.com",
            "limit": 100,
            "order": 0,
        })
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiosqlite

WINDOW_SECONDS = 3600

_DOMAIN_COLUMNS = 'id, host, port, secure, username, password, from_addr, "limit", "order", created_at'


class Persistence:
    """Async SQLite persistence layer for domains and their usage counters.

    Attributes:
        db_path: Path to the SQLite database file, or ":memory:" for
            an in-memory database.
    """

    def __init__(self, db_path: str = "/data/cocoinbox_mail.db"):
        """Initialize the persistence layer with a database path.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the ``smtp_domains`` and ``smtp_domain_usage`` tables.

        This method is idempotent.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS smtp_domains (
                    id TEXT PRIMARY KEY,
                    host TEXT NOT NULL,
                    port INTEGER NOT NULL,
                    secure INTEGER NOT NULL DEFAULT 0,
                    username TEXT NOT NULL,
                    password TEXT NOT NULL,
                    from_addr TEXT NOT NULL,
                    "limit" INTEGER NOT NULL CHECK ("limit" > 0),
                    "order" INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS smtp_domain_usage (
                    domain_id TEXT PRIMARY KEY,
                    window_start REAL NOT NULL,
                    count INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            await db.execute(
                'CREATE INDEX IF NOT EXISTS idx_smtp_domains_order ON smtp_domains("order")'
            )
            await db.commit()

    # Domains ------------------------------------------------------------------
    @staticmethod
    def _decode_domain(row: Dict[str, Any]) -> Dict[str, Any]:
        row["secure"] = bool(row.get("secure"))
        return row

    async def count_domains(self) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM smtp_domains") as cur:
                (count,) = await cur.fetchone()
        return int(count)

    async def add_domain(self, domain: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a new domain, returning the stored row.

        ``created_at`` is set here. Inserting an existing id raises
        ``aiosqlite.IntegrityError``: domains are immutable once created.
        """
        created_at = domain.get("created_at") or datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        row = {
            "id": domain["id"],
            "host": domain["host"],
            "port": int(domain["port"]),
            "secure": 1 if domain.get("secure") else 0,
            "username": domain["username"],
            "password": domain["password"],
            "from_addr": domain["from_addr"],
            "limit": int(domain["limit"]),
            "order": int(domain.get("order") or 0),
            "created_at": created_at,
        }
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO smtp_domains ({_DOMAIN_COLUMNS})
                VALUES (:id, :host, :port, :secure, :username, :password, :from_addr, :limit, :order, :created_at)
                """,
                row,
            )
            await db.commit()
        return self._decode_domain(dict(row))

    async def list_domains(self) -> List[Dict[str, Any]]:
        """Return all domains ordered by ``order``, ties in insertion order."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f'SELECT {_DOMAIN_COLUMNS} FROM smtp_domains ORDER BY "order" ASC, rowid ASC'
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_domain(dict(zip(cols, row))) for row in rows]

    async def get_domain(self, domain_id: str) -> Dict[str, Any]:
        """Fetch a single domain or raise if it does not exist."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT {_DOMAIN_COLUMNS} FROM smtp_domains WHERE id=?", (domain_id,)
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    raise ValueError(f"Domain '{domain_id}' not found")
                cols = [c[0] for c in cur.description]
        return self._decode_domain(dict(zip(cols, row)))

    # Usage --------------------------------------------------------------------
    async def get_usage(self, domain_id: str) -> Optional[Dict[str, Any]]:
        """Return the usage row of a domain, or None if never checked."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT domain_id, window_start, count FROM smtp_domain_usage WHERE domain_id=?",
                (domain_id,),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def list_usage(self) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT domain_id, window_start, count FROM smtp_domain_usage ORDER BY domain_id"
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def ensure_usage(self, domain_id: str, now: float) -> Optional[Dict[str, Any]]:
        """Return the usage row, creating it with a zero count if missing."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO smtp_domain_usage (domain_id, window_start, count)
                VALUES (?, ?, 0)
                ON CONFLICT (domain_id) DO NOTHING
                """,
                (domain_id, now),
            )
            await db.commit()
        return await self.get_usage(domain_id)

    async def reset_expired_usage(self, domain_id: str, now: float) -> bool:
        """Start a new empty window if the stored one has expired.

        Returns:
            True when a reset was persisted.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE smtp_domain_usage
                SET window_start = :now, count = 0
                WHERE domain_id = :domain_id AND :now - window_start >= :window
                """,
                {"domain_id": domain_id, "now": now, "window": WINDOW_SECONDS},
            )
            await db.commit()
            return cursor.rowcount > 0

    async def increment_usage(self, domain_id: str, now: float) -> None:
        """Count one send, restarting the window with ``count = 1`` if it expired.

        The expiry test and the increment are one statement, so concurrent
        increments are never lost.
        """
        params = {"domain_id": domain_id, "now": now, "window": WINDOW_SECONDS}
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO smtp_domain_usage (domain_id, window_start, count)
                VALUES (:domain_id, :now, 0)
                ON CONFLICT (domain_id) DO NOTHING
                """,
                params,
            )
            await db.execute(
                """
                UPDATE smtp_domain_usage
                SET count = CASE WHEN :now - window_start >= :window THEN 1 ELSE count + 1 END,
                    window_start = CASE WHEN :now - window_start >= :window THEN :now ELSE window_start END
                WHERE domain_id = :domain_id
                """,
                params,
            )
            await db.commit()
