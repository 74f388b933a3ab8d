"""
Transaction coordinator.

Sole authority over transaction lifecycle and commit order:

    begin()    -> new ACTIVE transaction in the active set
    commit()   -> next commit sequence, state flip, locks released
    rollback() -> state flip, versions discarded, locks released

Commit assigns the sequence number, records it on the transaction and
flips the state inside one critical section on the registry lock;
readers see either none or all of the transaction's writes. The
sequence is published only after the flip, so a statement that
captures boundary >= S always finds the committing transaction
COMMITTED.

Thread Safety: Thread-safe. A Transaction object itself is used by one
caller at a time.
"""

import time
from typing import List, Optional

from verso.observability.logging import get_logger
from verso.observability.metrics import DatabaseMetrics
from verso.storage.versions import VersionStore
from verso.transaction.registry import (
    Transaction,
    TransactionRegistry,
    TransactionState,
)
from verso.utils.errors import InvalidTransactionStateError, TransactionClosedError


class TransactionCoordinator:
    """Manages begin/commit/rollback over a shared registry and version store."""

    __slots__ = ("_registry", "_store", "_metrics", "_log")

    def __init__(
        self,
        registry: TransactionRegistry,
        store: VersionStore,
        metrics: Optional[DatabaseMetrics] = None,
    ) -> None:
        """
        Initialize coordinator.

        Args:
            registry: Shared commit sequence and active set
            store: Version store holding the transactions' writes
            metrics: Metrics sink (optional)
        """
        self._registry = registry
        self._store = store
        self._metrics = metrics
        self._log = get_logger(__name__)

    # ─────────────────────────────────────────────────────────────────────────
    # Transaction Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def begin(self) -> Transaction:
        """
        Begin a new transaction.

        Raises:
            CapacityExceededError: If transaction IDs are exhausted
        """
        txn = self._registry.register()
        if self._metrics:
            self._metrics.record_begin()
        self._log.debug("transaction_begin", txn_id=txn.txn_id, start_seq=txn.start_seq)
        return txn

    def commit(self, txn: Transaction) -> int:
        """
        Commit a transaction, making all its writes visible at once.

        Args:
            txn: Transaction to commit

        Returns:
            The commit sequence number assigned

        Raises:
            InvalidTransactionStateError: If txn is not ACTIVE
            CapacityExceededError: If commit sequence numbers are exhausted;
                the transaction stays ACTIVE
        """
        with self._registry.lock:
            self._require_state(txn, "commit")

            seq = self._registry.reserve_commit_seq()
            txn.commit_seq = seq
            txn.state = TransactionState.COMMITTED
            self._registry.publish_commit_seq(seq)

            self._store.finish_commit(txn)
            self._registry.deactivate(txn)

        self._finished(txn, "commit")
        return seq

    def rollback(self, txn: Transaction) -> None:
        """
        Roll back a transaction, discarding all its writes.

        Raises:
            InvalidTransactionStateError: If txn is not ACTIVE
        """
        with self._registry.lock:
            self._require_state(txn, "roll back")
            txn.state = TransactionState.ROLLED_BACK
            self._registry.deactivate(txn)

        # Discard runs outside the registry lock: the writes are already
        # invisible and their row locks keep other writers out until release.
        self._store.discard(txn)
        self._finished(txn, "rollback")

    def rollback_all(self) -> List[int]:
        """
        Roll back every active transaction.

        Returns:
            IDs of the transactions rolled back
        """
        rolled_back = []
        for txn in self._registry.active_transactions():
            try:
                self.rollback(txn)
            except InvalidTransactionStateError:
                continue  # finished concurrently
            rolled_back.append(txn.txn_id)
        return rolled_back

    def ensure_active(self, txn: Transaction) -> None:
        """
        Check that a statement may run under txn.

        Raises:
            TransactionClosedError: If txn is COMMITTED or ROLLED_BACK
        """
        if txn.state is not TransactionState.ACTIVE:
            raise TransactionClosedError(txn.txn_id, txn.state.value)

    # ─────────────────────────────────────────────────────────────────────────
    # Snapshots
    # ─────────────────────────────────────────────────────────────────────────

    def snapshot_boundary(self) -> int:
        """Boundary for a statement starting now: the latest published commit."""
        return self._registry.current_commit_seq()

    def vacuum_horizon(self) -> int:
        """Oldest boundary any active or future statement can use."""
        return self._registry.horizon()

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _require_state(txn: Transaction, operation: str) -> None:
        if txn.state is not TransactionState.ACTIVE:
            raise InvalidTransactionStateError(txn.txn_id, txn.state.value, operation)

    def _finished(self, txn: Transaction, status: str) -> None:
        duration = time.perf_counter() - txn.began_at
        if self._metrics:
            self._metrics.record_transaction(status, duration)
        self._log.debug(
            "transaction_" + ("committed" if status == "commit" else "rolled_back"),
            txn_id=txn.txn_id,
            commit_seq=txn.commit_seq,
            writes=len(txn.write_set),
            duration_ms=round(duration * 1000, 3),
        )

    @property
    def registry(self) -> TransactionRegistry:
        return self._registry

    @property
    def active_transaction_count(self) -> int:
        """Get the number of active transactions."""
        return self._registry.active_count

    def is_active(self, txn_id: int) -> bool:
        """Check if a transaction is active."""
        return self._registry.is_active(txn_id)

    def __repr__(self) -> str:
        """String representation."""
        return f"TransactionCoordinator(active_txns={self._registry.active_count})"
