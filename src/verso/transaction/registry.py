"""
Shared transaction state: identifiers, commit sequence, active set.

The registry is the only process-wide mutable state of the engine. The
commit-sequence counter and the active-transaction set change together
under one lock, so commit visibility and active-set membership move
atomically. The registry is owned by a Database and injected into the
coordinator; there is no module-level instance.

Thread Safety: Thread-safe via internal locking. Callers composing
several steps into one atomic unit hold `registry.lock` around them
(the lock is reentrant).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple
import threading
import time

from verso.utils.config import MAX_SEQUENCE
from verso.utils.errors import CapacityExceededError


class TransactionState(Enum):
    """Lifecycle states. ACTIVE is the only non-terminal state."""

    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass(eq=False)
class Transaction:
    """
    A transaction record.

    Row versions reference the record of the transaction that created
    (or deleted) them. Flipping `state` therefore stamps every version
    of the transaction at once.

    Tracks:
    - txn_id: Unique transaction ID
    - start_seq: Commit sequence current at begin (vacuum horizon)
    - state: ACTIVE, COMMITTED or ROLLED_BACK
    - commit_seq: Assigned at successful commit, else None
    - write_set: (table, row_id) pairs touched by this transaction
    - deleted_versions: Versions this transaction marked deleted
    - write_step: Count of row writes so far; stamps its delete markers
    """

    __slots__ = (
        "txn_id",
        "start_seq",
        "state",
        "commit_seq",
        "began_at",
        "write_set",
        "deleted_versions",
        "write_step",
    )

    txn_id: int
    start_seq: int
    state: TransactionState
    commit_seq: Optional[int]
    began_at: float
    write_set: Set[Tuple[str, int]]
    deleted_versions: int
    write_step: int

    @property
    def is_active(self) -> bool:
        return self.state is TransactionState.ACTIVE

    def __repr__(self) -> str:
        return (
            f"Transaction(id={self.txn_id}, state={self.state.value}, "
            f"commit_seq={self.commit_seq})"
        )


class TransactionRegistry:
    """
    Owns transaction identity, the global commit sequence and the active set.

    Identifiers and commit sequence numbers come from simple counters
    starting after `initial_seq`. Exhausting either raises
    CapacityExceededError before any state changes.
    """

    __slots__ = (
        "_lock",
        "_next_txn_id",
        "_commit_seq",
        "_active",
        "_max_txn_id",
        "_max_commit_seq",
    )

    def __init__(
        self,
        max_transaction_id: int = MAX_SEQUENCE,
        max_commit_seq: int = MAX_SEQUENCE,
        initial_seq: int = 0,
    ) -> None:
        """
        Initialize registry.

        Args:
            max_transaction_id: Highest transaction ID that may be issued
            max_commit_seq: Highest commit sequence that may be issued
            initial_seq: Initial commit sequence value (default 0)
        """
        self._lock = threading.RLock()
        self._next_txn_id = 1
        self._commit_seq = initial_seq
        self._active: Dict[int, Transaction] = {}
        self._max_txn_id = max_transaction_id
        self._max_commit_seq = max_commit_seq

    @property
    def lock(self) -> threading.RLock:
        """The lock guarding commit sequence and active set."""
        return self._lock

    def register(self) -> Transaction:
        """
        Allocate a transaction ID and add a new ACTIVE transaction.

        Raises:
            CapacityExceededError: If transaction IDs are exhausted
        """
        with self._lock:
            txn_id = self._next_txn_id
            if txn_id > self._max_txn_id:
                raise CapacityExceededError("transaction_id", self._max_txn_id)
            self._next_txn_id += 1

            txn = Transaction(
                txn_id=txn_id,
                start_seq=self._commit_seq,
                state=TransactionState.ACTIVE,
                commit_seq=None,
                began_at=time.perf_counter(),
                write_set=set(),
                deleted_versions=0,
                write_step=0,
            )
            self._active[txn_id] = txn
            return txn

    def reserve_commit_seq(self) -> int:
        """
        Return the next commit sequence without publishing it.

        Must be called with `lock` held; publish with publish_commit_seq().

        Raises:
            CapacityExceededError: If commit sequence numbers are exhausted
        """
        seq = self._commit_seq + 1
        if seq > self._max_commit_seq:
            raise CapacityExceededError("commit_seq", self._max_commit_seq)
        return seq

    def publish_commit_seq(self, seq: int) -> None:
        """Make `seq` the current commit sequence. Must be called with `lock` held."""
        self._commit_seq = seq

    def deactivate(self, txn: Transaction) -> None:
        """Remove a transaction from the active set."""
        with self._lock:
            self._active.pop(txn.txn_id, None)

    def current_commit_seq(self) -> int:
        """
        Get the highest published commit sequence.

        Readers call this without the lock; an int read is atomic.
        """
        return self._commit_seq

    def horizon(self) -> int:
        """
        Lowest commit sequence any active or future statement can read at.

        Versions deleted by a commit at or below the horizon are invisible
        to everyone.
        """
        with self._lock:
            if not self._active:
                return self._commit_seq
            return min(txn.start_seq for txn in self._active.values())

    def get(self, txn_id: int) -> Optional[Transaction]:
        """Get an active transaction by ID."""
        return self._active.get(txn_id)

    def is_active(self, txn_id: int) -> bool:
        """Check if a transaction is active."""
        return txn_id in self._active

    def active_transactions(self) -> List[Transaction]:
        """Snapshot of the active set."""
        with self._lock:
            return list(self._active.values())

    @property
    def active_count(self) -> int:
        """Get the number of active transactions."""
        return len(self._active)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"TransactionRegistry(commit_seq={self._commit_seq}, "
            f"active={len(self._active)})"
        )
