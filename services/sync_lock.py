"""
Sync Lock

Lease-based single-flight lock over one named resource, stored as a single
row in the shared SQLite database so it serializes callers across threads
and processes.

Acquisition is one conditional UPDATE judged by its rowcount; it never
waits or retries. Expiry is a wall-clock comparison against release_at.
"""

import logging
import sqlite3
from datetime import timedelta
from typing import Optional

from models.device import DEFAULT_LOCK_KEY, LockAcquisition, SyncLockState
from services.database import Clock, Database, from_epoch_ms, to_epoch_ms, utc_now

logger = logging.getLogger(__name__)


def _row_to_state(row: sqlite3.Row) -> SyncLockState:
    return SyncLockState(
        key=row["key"],
        locked=bool(row["locked"]),
        lock_id=row["lock_id"],
        locked_at=from_epoch_ms(row["locked_at"]),
        release_at=from_epoch_ms(row["release_at"]),
    )


class SyncLock:
    def __init__(self, database: Database, key: str = DEFAULT_LOCK_KEY, clock: Clock = utc_now):
        self.database = database
        self.key = key
        self.clock = clock

    def _read(self, conn) -> Optional[SyncLockState]:
        row = conn.execute("SELECT * FROM sync_locks WHERE key = ?", (self.key,)).fetchone()
        return _row_to_state(row) if row else None

    def acquire(self, lock_id: str, ttl_ms: int) -> LockAcquisition:
        """Take the lease if it is free or expired.

        Returns LockAcquisition(acquired=False, lock=<current holder>) when
        another holder owns an unexpired lease.
        """
        now = self.clock()
        now_ms = to_epoch_ms(now)
        release_ms = to_epoch_ms(now + timedelta(milliseconds=ttl_ms))

        with self.database.connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO sync_locks (key, locked) VALUES (?, 0)",
                (self.key,),
            )
            cursor = conn.execute(
                """UPDATE sync_locks
                   SET locked = 1, lock_id = ?, locked_at = ?, release_at = ?
                   WHERE key = ? AND (locked = 0 OR release_at <= ?)""",
                (lock_id, now_ms, release_ms, self.key, now_ms),
            )
            conn.commit()
            won = cursor.rowcount == 1
            state = self._read(conn)

        acquired = won and state is not None and state.lock_id == lock_id
        if acquired:
            logger.info(f"Sync lock '{self.key}' acquired by {lock_id} until {state.release_at.isoformat()}")
        else:
            holder = state.lock_id if state else None
            logger.info(f"Sync lock '{self.key}' busy (held by {holder})")
        return LockAcquisition(acquired=acquired, lock=state)

    def release(self, lock_id: str) -> bool:
        """Release the lease if ``lock_id`` still holds it. Returns True if released."""
        now_ms = to_epoch_ms(self.clock())
        with self.database.connection() as conn:
            cursor = conn.execute(
                """UPDATE sync_locks
                   SET locked = 0, lock_id = NULL, locked_at = NULL, release_at = ?
                   WHERE key = ? AND lock_id = ?""",
                (now_ms, self.key, lock_id),
            )
            conn.commit()
            released = cursor.rowcount == 1

        if released:
            logger.info(f"Sync lock '{self.key}' released by {lock_id}")
        else:
            logger.debug(f"Sync lock '{self.key}' release by {lock_id} ignored (not the holder)")
        return released

    def get_current(self) -> Optional[SyncLockState]:
        with self.database.connection() as conn:
            return self._read(conn)

    def is_held(self, lock_id: str) -> bool:
        """True while ``lock_id`` holds an unexpired lease."""
        state = self.get_current()
        if state is None or not state.locked or state.lock_id != lock_id:
            return False
        return state.release_at is not None and state.release_at > self.clock()

    def force_release(self) -> Optional[SyncLockState]:
        """Clear the lock regardless of holder. Returns the state before the reset."""
        now_ms = to_epoch_ms(self.clock())
        with self.database.connection() as conn:
            previous = self._read(conn)
            conn.execute(
                """UPDATE sync_locks
                   SET locked = 0, lock_id = NULL, locked_at = NULL, release_at = ?
                   WHERE key = ?""",
                (now_ms, self.key),
            )
            conn.commit()
        if previous and previous.locked:
            logger.warning(f"Sync lock '{self.key}' force-released (was held by {previous.lock_id})")
        return previous
