"""
Row write locks.

Each row identity has at most one owner: the transaction holding an
uncommitted version of it. Other writers wait on a condition variable
until the owner ends, a timeout expires, or waiting would deadlock.

Locks are held until the owning transaction commits or rolls back, so
one transaction can hold many rows. A waiter only waits for a single
row at a time, so the wait-for graph is a set of chains; a new wait
that would reach back to the waiter closes a cycle and is refused with
DeadlockError.

Thread Safety: Thread-safe via a single condition variable.
"""

from collections import defaultdict
from typing import Dict, Hashable, Optional, Set
import threading
import time

from verso.utils.errors import DeadlockError, LockTimeoutError


class RowLockTable:
    """Exclusive per-row write locks with timeout and deadlock detection."""

    __slots__ = ("_cond", "_owners", "_held", "_waits_for", "_deadlock_detection")

    def __init__(self, deadlock_detection: bool = True) -> None:
        """
        Initialize the lock table.

        Args:
            deadlock_detection: Refuse waits that would close a wait-for cycle
        """
        self._cond = threading.Condition(threading.Lock())
        self._owners: Dict[Hashable, int] = {}
        self._held: Dict[int, Set[Hashable]] = defaultdict(set)
        # Wait-for graph: waiting txn_id -> txn_id it waits on
        self._waits_for: Dict[int, int] = {}
        self._deadlock_detection = deadlock_detection

    def acquire(
        self,
        txn_id: int,
        resource: Hashable,
        timeout_ms: Optional[int] = None,
    ) -> bool:
        """
        Acquire the write lock on a resource, waiting if another transaction holds it.

        Re-acquiring a lock already held is a no-op.

        Args:
            txn_id: The requesting transaction
            resource: Resource key, e.g. (table, row_id)
            timeout_ms: Max time to wait (None = forever, 0 = do not wait)

        Returns:
            True if the call had to wait before acquiring.

        Raises:
            LockTimeoutError: If the timeout expired
            DeadlockError: If waiting would deadlock
        """
        deadline = None if timeout_ms is None else time.monotonic() + timeout_ms / 1000.0
        waited = False

        with self._cond:
            try:
                while True:
                    holder = self._owners.get(resource)
                    if holder is None or holder == txn_id:
                        self._owners[resource] = txn_id
                        self._held[txn_id].add(resource)
                        return waited

                    if self._deadlock_detection and self._reaches(holder, txn_id):
                        raise DeadlockError(txn_id, holder)

                    remaining = None
                    if deadline is not None:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            raise LockTimeoutError(txn_id, holder, repr(resource), timeout_ms)

                    self._waits_for[txn_id] = holder
                    waited = True
                    self._cond.wait(remaining)
            finally:
                self._waits_for.pop(txn_id, None)

    def _reaches(self, start: int, target: int) -> bool:
        """Check whether following wait-for edges from start arrives at target."""
        seen = set()
        current: Optional[int] = start
        while current is not None and current not in seen:
            if current == target:
                return True
            seen.add(current)
            current = self._waits_for.get(current)
        return False

    def release(self, txn_id: int, resource: Hashable) -> bool:
        """
        Release one lock.

        Returns:
            True if the lock was held by txn_id and is now released
        """
        with self._cond:
            if self._owners.get(resource) != txn_id:
                return False
            del self._owners[resource]
            held = self._held.get(txn_id)
            if held is not None:
                held.discard(resource)
                if not held:
                    del self._held[txn_id]
            self._cond.notify_all()
            return True

    def release_all(self, txn_id: int) -> int:
        """
        Release every lock held by a transaction and wake waiters.

        Returns:
            Number of locks released
        """
        with self._cond:
            resources = self._held.pop(txn_id, set())
            for resource in resources:
                if self._owners.get(resource) == txn_id:
                    del self._owners[resource]
            if resources:
                self._cond.notify_all()
            return len(resources)

    def holder(self, resource: Hashable) -> Optional[int]:
        """Get the transaction holding a resource, if any."""
        return self._owners.get(resource)

    def held_by(self, txn_id: int) -> Set[Hashable]:
        """Get a copy of the resources held by a transaction."""
        with self._cond:
            return set(self._held.get(txn_id, ()))

    @property
    def waiting_count(self) -> int:
        """Number of transactions currently waiting for a lock."""
        return len(self._waits_for)

    def __repr__(self) -> str:
        return f"RowLockTable(locks={len(self._owners)}, waiting={len(self._waits_for)})"
