"""
Unit tests for row write locks.

Tests cover:
- Exclusive ownership and re-entrancy
- Blocking until release
- Timeouts
- Deadlock detection
"""

import threading
import time

import pytest

from verso.transaction.locks import RowLockTable
from verso.utils.errors import DeadlockError, LockTimeoutError


@pytest.fixture
def locks():
    return RowLockTable()


class TestOwnership:
    """Tests for basic acquire/release."""

    def test_acquire_free_lock(self, locks):
        """A free lock should be granted without waiting."""
        assert locks.acquire(1, ("t", 1)) is False
        assert locks.holder(("t", 1)) == 1

    def test_reacquire_is_noop(self, locks):
        """The holder can acquire its own lock again."""
        locks.acquire(1, ("t", 1))
        assert locks.acquire(1, ("t", 1), timeout_ms=0) is False

    def test_release(self, locks):
        """release should free the lock for others."""
        locks.acquire(1, ("t", 1))
        assert locks.release(1, ("t", 1)) is True
        assert locks.holder(("t", 1)) is None
        locks.acquire(2, ("t", 1), timeout_ms=0)

    def test_release_by_non_owner(self, locks):
        """Only the owner can release a lock."""
        locks.acquire(1, ("t", 1))
        assert locks.release(2, ("t", 1)) is False
        assert locks.holder(("t", 1)) == 1

    def test_release_all(self, locks):
        """release_all should drop every lock of a transaction."""
        locks.acquire(1, ("t", 1))
        locks.acquire(1, ("t", 2))
        locks.acquire(2, ("t", 3))

        assert locks.release_all(1) == 2
        assert locks.held_by(1) == set()
        assert locks.held_by(2) == {("t", 3)}


class TestWaiting:
    """Tests for blocking behavior."""

    def test_timeout_zero_fails_immediately(self, locks):
        """timeout_ms=0 should not wait."""
        locks.acquire(1, ("t", 1))

        with pytest.raises(LockTimeoutError) as exc_info:
            locks.acquire(2, ("t", 1), timeout_ms=0)

        assert exc_info.value.holder_txn_id == 1
        assert locks.holder(("t", 1)) == 1

    def test_timeout_expires(self, locks):
        """A waiter should give up after its timeout."""
        locks.acquire(1, ("t", 1))

        start = time.monotonic()
        with pytest.raises(LockTimeoutError):
            locks.acquire(2, ("t", 1), timeout_ms=50)

        assert time.monotonic() - start >= 0.04
        assert locks.waiting_count == 0

    def test_waiter_gets_lock_after_release(self, locks):
        """A blocked waiter should acquire the lock once it is released."""
        locks.acquire(1, ("t", 1))
        result = {}

        def waiter():
            result["waited"] = locks.acquire(2, ("t", 1), timeout_ms=2000)

        thread = threading.Thread(target=waiter)
        thread.start()

        deadline = time.monotonic() + 2
        while locks.waiting_count == 0 and time.monotonic() < deadline:
            time.sleep(0.005)

        locks.release_all(1)
        thread.join(timeout=2)

        assert result["waited"] is True
        assert locks.holder(("t", 1)) == 2


class TestDeadlockDetection:
    """Tests for wait-for cycle detection."""

    def test_two_transaction_cycle(self, locks):
        """Closing a two-party cycle should raise DeadlockError."""
        locks.acquire(1, ("t", 1))
        locks.acquire(2, ("t", 2))
        errors = []

        def first():
            try:
                locks.acquire(1, ("t", 2), timeout_ms=2000)
            except LockTimeoutError as exc:
                errors.append(exc)

        thread = threading.Thread(target=first)
        thread.start()

        deadline = time.monotonic() + 2
        while locks.waiting_count == 0 and time.monotonic() < deadline:
            time.sleep(0.005)

        with pytest.raises(DeadlockError) as exc_info:
            locks.acquire(2, ("t", 1), timeout_ms=2000)
        assert exc_info.value.conflicting_txn_id == 1

        # The victim gives up its locks, unblocking the other side
        locks.release_all(2)
        thread.join(timeout=2)

        assert errors == []
        assert locks.holder(("t", 2)) == 1

    def test_detection_disabled_times_out(self):
        """Without detection the cycle ends in a timeout."""
        locks = RowLockTable(deadlock_detection=False)
        locks.acquire(1, ("t", 1))
        locks.acquire(2, ("t", 2))

        thread = threading.Thread(
            target=lambda: pytest.raises(LockTimeoutError, locks.acquire, 1, ("t", 2), 200)
        )
        thread.start()

        deadline = time.monotonic() + 2
        while locks.waiting_count == 0 and time.monotonic() < deadline:
            time.sleep(0.005)

        with pytest.raises(LockTimeoutError):
            locks.acquire(2, ("t", 1), timeout_ms=50)
        thread.join(timeout=2)

    def test_repr(self, locks):
        """Should show lock and waiter counts."""
        locks.acquire(1, ("t", 1))
        assert "locks=1" in repr(locks)
