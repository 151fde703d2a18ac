"""
Tests for the lease-based sync lock.
"""

import threading
from datetime import timedelta

from services.sync_lock import SyncLock

TTL_MS = 60_000


class TestAcquire:
    """Tests for SyncLock.acquire."""

    def test_acquire_free_lock(self, database, clock):
        lock = SyncLock(database, clock=clock)

        result = lock.acquire("run-a", TTL_MS)

        assert result.acquired is True
        assert result.lock.locked is True
        assert result.lock.lock_id == "run-a"
        assert result.lock.locked_at == clock.now
        assert result.lock.release_at == clock.now + timedelta(milliseconds=TTL_MS)

    def test_second_caller_is_rejected(self, database, clock):
        """A live lease blocks other callers and reports the current holder."""
        lock = SyncLock(database, clock=clock)
        lock.acquire("run-a", TTL_MS)

        result = lock.acquire("run-b", TTL_MS)

        assert result.acquired is False
        assert result.lock.lock_id == "run-a"

    def test_same_holder_cannot_reacquire_live_lease(self, database, clock):
        lock = SyncLock(database, clock=clock)
        lock.acquire("run-a", TTL_MS)

        assert lock.acquire("run-a", TTL_MS).acquired is False

    def test_expired_lease_can_be_taken(self, database, clock):
        """A lease past release_at is free without an explicit release."""
        lock = SyncLock(database, clock=clock)
        lock.acquire("run-a", TTL_MS)
        clock.advance(milliseconds=TTL_MS)

        result = lock.acquire("run-b", TTL_MS)

        assert result.acquired is True
        assert result.lock.lock_id == "run-b"

    def test_lease_just_before_expiry_is_held(self, database, clock):
        lock = SyncLock(database, clock=clock)
        lock.acquire("run-a", TTL_MS)
        clock.advance(milliseconds=TTL_MS - 1)

        assert lock.acquire("run-b", TTL_MS).acquired is False

    def test_separate_keys_are_independent(self, database, clock):
        SyncLock(database, key="device-sync", clock=clock).acquire("run-a", TTL_MS)

        result = SyncLock(database, key="other", clock=clock).acquire("run-b", TTL_MS)

        assert result.acquired is True

    def test_concurrent_callers_single_winner(self, database):
        """Racing callers on one key: exactly one acquires."""
        callers = 8
        barrier = threading.Barrier(callers)
        results = []
        results_lock = threading.Lock()

        def contend(index):
            lock = SyncLock(database)
            barrier.wait()
            outcome = lock.acquire(f"run-{index}", TTL_MS)
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=contend, args=(index,)) for index in range(callers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [outcome for outcome in results if outcome.acquired]
        assert len(results) == callers
        assert len(winners) == 1
        holder = SyncLock(database).get_current()
        assert holder.lock_id == winners[0].lock.lock_id


class TestRelease:
    """Tests for SyncLock.release."""

    def test_release_by_holder(self, database, clock):
        lock = SyncLock(database, clock=clock)
        lock.acquire("run-a", TTL_MS)

        assert lock.release("run-a") is True

        state = lock.get_current()
        assert state.locked is False
        assert state.lock_id is None
        assert state.release_at == clock.now
        assert lock.acquire("run-b", TTL_MS).acquired is True

    def test_foreign_release_is_noop(self, database, clock):
        """Releasing with another caller's id leaves the lock untouched."""
        lock = SyncLock(database, clock=clock)
        lock.acquire("run-a", TTL_MS)
        before = lock.get_current()

        assert lock.release("run-b") is False

        assert lock.get_current() == before

    def test_stale_holder_cannot_release_new_lease(self, database, clock):
        lock = SyncLock(database, clock=clock)
        lock.acquire("run-a", TTL_MS)
        clock.advance(milliseconds=TTL_MS + 1)
        lock.acquire("run-b", TTL_MS)

        assert lock.release("run-a") is False
        assert lock.get_current().lock_id == "run-b"

    def test_release_without_lock_row(self, database, clock):
        assert SyncLock(database, clock=clock).release("run-a") is False


class TestLockState:
    """Tests for is_held, get_current and force_release."""

    def test_get_current_before_first_acquire(self, database):
        assert SyncLock(database).get_current() is None

    def test_is_held(self, database, clock):
        lock = SyncLock(database, clock=clock)
        lock.acquire("run-a", TTL_MS)

        assert lock.is_held("run-a") is True
        assert lock.is_held("run-b") is False

        clock.advance(milliseconds=TTL_MS)
        assert lock.is_held("run-a") is False

    def test_force_release(self, database, clock):
        lock = SyncLock(database, clock=clock)
        lock.acquire("run-a", TTL_MS)

        previous = lock.force_release()

        assert previous.lock_id == "run-a"
        assert lock.get_current().locked is False
        assert lock.acquire("run-b", TTL_MS).acquired is True

    def test_to_dict(self, database, clock):
        lock = SyncLock(database, clock=clock)
        lock.acquire("run-a", TTL_MS)

        data = lock.get_current().to_dict()

        assert data["key"] == "device-sync"
        assert data["locked"] is True
        assert data["lockId"] == "run-a"
        assert data["releaseAt"].startswith("2025-01-01T00:01:00")
