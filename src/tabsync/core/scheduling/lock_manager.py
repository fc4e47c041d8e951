"""TTL advisory locks for sync scopes.

Manifesto:
    Two invocations that read the same checkpoint and write the same
    pages corrupt each other's progress. Every critical section on a
    scope (the batch loop, discovery, reconciliation, reset) holds the
    scope's lock from the first checkpoint read to the last checkpoint
    write. Locks carry a TTL equal to the host's hard ceiling, so a lock
    left behind by a killed invocation expires on its own instead of
    needing a manual "is running" flag to be cleared.

This module provides atomic acquire/release on a ``sync_locks`` table.
INSERT-or-ignore semantics give O(1) conflict detection.

Tags:
    locks, TTL, concurrency, safety, tabsync

Lock flow::

    invocation A: acquire("scope:season-2024") ──► LockToken
    invocation B: acquire("scope:season-2024") ──► polls, wait_ms elapses ──► None
                                                   (scheduled: SKIP busy,
                                                    interactive: LockBusyError)
    invocation A: release(token)
    killed invocation: lock expires after ttl_seconds, next acquire reclaims it
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from tabsync.core.logging import get_logger
from tabsync.core.protocols import Connection
from tabsync.core.timestamps import utc_now
from tabsync.execution.retry import Sleep

logger = get_logger(__name__)

LOCK_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_locks (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    holder TEXT NOT NULL DEFAULT '',
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
)
"""

POLL_INTERVAL_MS = 100


@dataclass(frozen=True, slots=True)
class LockToken:
    """Proof of ownership returned by a successful acquire."""

    name: str
    owner: str
    holder: str
    acquired_at: datetime
    expires_at: datetime


class LockManager:
    """Named TTL locks stored in SQLite.

    Each acquisition gets a fresh owner id, so two invocations in the same
    process contend exactly as two processes would.

    Example:
        >>> manager = LockManager(conn, ttl_seconds=360)
        >>> token = await manager.acquire("scope:season-2024", wait_ms=1000)
        >>> if token is None:
        ...     print("busy")
        ... else:
        ...     try:
        ...         ...  # critical section
        ...     finally:
        ...         manager.release(token)
    """

    def __init__(
        self,
        conn: Connection,
        *,
        ttl_seconds: float = 360,
        now: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
        poll_interval_ms: int = POLL_INTERVAL_MS,
    ) -> None:
        """Initialize lock manager.

        Args:
            conn: Database connection
            ttl_seconds: Lock expiry; set to the host's hard ceiling
            now: Clock returning aware UTC datetimes
            sleep: Awaitable sleep used while polling a held lock
            poll_interval_ms: Delay between acquire attempts
        """
        self.conn = conn
        self.ttl_seconds = ttl_seconds
        self.now = now
        self.sleep = sleep
        self.poll_interval_ms = poll_interval_ms
        self.ensure_schema()

    def ensure_schema(self) -> None:
        self.conn.execute(LOCK_SCHEMA)
        self.conn.commit()

    # === Acquire / release ===

    def try_acquire(self, name: str, holder: str = "") -> LockToken | None:
        """Single non-blocking acquire attempt.

        Expired locks on *name* are reclaimed first.

        Returns:
            A token if acquired, ``None`` if another owner holds the lock
        """
        now = self.now()
        expires = now + timedelta(seconds=self.ttl_seconds)
        owner = uuid4().hex

        self.conn.execute(
            "DELETE FROM sync_locks WHERE name = ? AND expires_at <= ?",
            (name, now.isoformat()),
        )
        cursor = self.conn.execute(
            "INSERT OR IGNORE INTO sync_locks (name, owner, holder, acquired_at, expires_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (name, owner, holder, now.isoformat(), expires.isoformat()),
        )
        acquired = cursor.rowcount > 0
        self.conn.commit()

        if not acquired:
            logger.debug("lock_held", lock=name, holder=self.holder(name))
            return None

        logger.debug("lock_acquired", lock=name, holder=holder, ttl=self.ttl_seconds)
        return LockToken(name=name, owner=owner, holder=holder, acquired_at=now, expires_at=expires)

    async def acquire(self, name: str, wait_ms: int = 0, holder: str = "") -> LockToken | None:
        """Acquire *name*, polling for up to *wait_ms* while it is held.

        Returns:
            A token if acquired, ``None`` if still held when the wait ran out
        """
        attempts = 1 + math.ceil(max(0, wait_ms) / self.poll_interval_ms)
        for attempt in range(attempts):
            token = self.try_acquire(name, holder)
            if token is not None:
                return token
            if attempt < attempts - 1:
                await self.sleep(self.poll_interval_ms / 1000)
        logger.info("lock_busy", lock=name, waited_ms=wait_ms, holder=self.holder(name))
        return None

    def release(self, token: LockToken) -> bool:
        """Release *token*. Idempotent: releasing twice returns ``False``.

        A token whose lock expired and was reclaimed by another owner
        releases nothing.
        """
        cursor = self.conn.execute(
            "DELETE FROM sync_locks WHERE name = ? AND owner = ?",
            (token.name, token.owner),
        )
        released = cursor.rowcount > 0
        self.conn.commit()
        if released:
            logger.debug("lock_released", lock=token.name)
        return released

    # === Inspection ===

    def is_locked(self, name: str) -> bool:
        return self.holder(name) is not None

    def holder(self, name: str) -> str | None:
        """Holder label of the live lock on *name*, ``None`` if unlocked."""
        row = self.conn.execute(
            "SELECT holder FROM sync_locks WHERE name = ? AND expires_at > ?",
            (name, self.now().isoformat()),
        ).fetchone()
        return row[0] if row else None

    def list_active(self) -> list[dict]:
        """List all active (non-expired) locks."""
        rows = self.conn.execute(
            "SELECT name, holder, acquired_at, expires_at FROM sync_locks "
            "WHERE expires_at > ? ORDER BY acquired_at",
            (self.now().isoformat(),),
        ).fetchall()
        return [
            {"name": row[0], "holder": row[1], "acquired_at": row[2], "expires_at": row[3]}
            for row in rows
        ]

    # === Maintenance ===

    def cleanup_expired(self) -> int:
        """Remove all expired locks. Returns the number removed."""
        cursor = self.conn.execute(
            "DELETE FROM sync_locks WHERE expires_at <= ?", (self.now().isoformat(),)
        )
        count = cursor.rowcount
        self.conn.commit()
        if count > 0:
            logger.info("locks_expired_cleaned", count=count)
        return count

    def force_release(self, name: str | None = None) -> int:
        """Drop the lock on *name*, or every lock when *name* is ``None``.

        Operator recovery only; a running invocation loses its protection.
        """
        if name is None:
            cursor = self.conn.execute("DELETE FROM sync_locks")
        else:
            cursor = self.conn.execute("DELETE FROM sync_locks WHERE name = ?", (name,))
        count = cursor.rowcount
        self.conn.commit()
        logger.warning("locks_force_released", lock=name or "*", count=count)
        return count
