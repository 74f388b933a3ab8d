"""
Multi-version row storage.

Every logical row (table, row_id) owns a chain of RowVersions, oldest
first. A version references the Transaction records that created and
deleted it, so its commit stamps are whatever those records say at the
moment of the read: one state flip in the coordinator commits or
discards all versions of a transaction at once.

Visibility rule (read committed, boundary fixed per statement):
    a transaction T's write is in effect for reader R at boundary B iff
        T is R, or
        T is COMMITTED and T.commit_seq <= B
    a version is visible iff its creation is in effect and its deletion
    (if any) is not.

Chains are immutable tuples replaced under the owning table's lock
(copy-on-write). Readers grab the current tuple and never lock it.
Writers to a row first take the row's write lock, so each row has at
most one uncommitted writer.

Thread Safety: Thread-safe.
"""

from enum import Enum, auto
from typing import Dict, Iterator, List, Optional, Tuple, Union
import itertools
import threading

from verso.catalog.schema import Payload
from verso.observability.logging import get_logger
from verso.observability.metrics import DatabaseMetrics
from verso.transaction.locks import RowLockTable
from verso.transaction.registry import Transaction, TransactionState
from verso.utils.errors import (
    ExecutionError,
    LockTimeoutError,
    DeadlockError,
    TableExistsError,
    TableNotFoundError,
    TransactionClosedError,
)


# Boundary that admits every committed write
LATEST = float("inf")

# Sentinel meaning "use the store's configured lock timeout"
DEFAULT_TIMEOUT = object()

# Lock wait in milliseconds, None (wait forever) or DEFAULT_TIMEOUT
Timeout = Union[Optional[int], object]


class WriteOp(Enum):
    """Kinds of row writes."""

    INSERT = auto()
    UPDATE = auto()
    DELETE = auto()


class RowVersion:
    """
    One immutable snapshot of a row's data plus its transaction metadata.

    Only `deleter` is ever changed after creation: set by the deleting
    transaction under the row lock, or cleared when that transaction
    rolls back. `deleted_step` is the deleter's write_step when it set
    the marker.
    """

    __slots__ = ("payload", "creator", "deleter", "deleted_step")

    def __init__(
        self,
        payload: Payload,
        creator: Transaction,
        deleter: Optional[Transaction] = None,
    ) -> None:
        self.payload = payload
        self.creator = creator
        self.deleter = deleter
        self.deleted_step = 0

    @property
    def created_by(self) -> int:
        return self.creator.txn_id

    @property
    def created_at(self) -> Optional[int]:
        return _commit_stamp(self.creator)

    @property
    def deleted_by(self) -> Optional[int]:
        deleter = self.deleter
        return deleter.txn_id if deleter is not None else None

    @property
    def deleted_at(self) -> Optional[int]:
        deleter = self.deleter
        return _commit_stamp(deleter) if deleter is not None else None

    def __repr__(self) -> str:
        return (
            f"RowVersion({self.payload!r}, created_by={self.created_by}, "
            f"deleted_by={self.deleted_by})"
        )


def _commit_stamp(txn: Transaction) -> Optional[int]:
    if txn.state is TransactionState.COMMITTED:
        return txn.commit_seq
    return None


def _in_effect(txn: Transaction, reader: Transaction, boundary: float) -> bool:
    """Whether writes of txn are in effect for reader at boundary."""
    if txn is reader:
        return True
    # commit_seq is set before state flips to COMMITTED
    if txn.state is TransactionState.COMMITTED:
        return txn.commit_seq <= boundary
    return False


def is_visible(
    version: RowVersion,
    reader: Transaction,
    boundary: float,
    own_step: Optional[int] = None,
) -> bool:
    """
    Check if a version is visible to reader at a snapshot boundary.

    With own_step given, delete markers reader set after that write step
    are ignored.
    """
    if not _in_effect(version.creator, reader, boundary):
        return False
    deleter = version.deleter
    if deleter is None:
        return True
    if deleter is reader and own_step is not None and version.deleted_step > own_step:
        return True
    return not _in_effect(deleter, reader, boundary)


def _is_dead(version: RowVersion, horizon: int) -> bool:
    """A version no active or future reader can see."""
    if version.creator.state is TransactionState.ROLLED_BACK:
        return True
    deleter = version.deleter
    return (
        deleter is not None
        and deleter.state is TransactionState.COMMITTED
        and deleter.commit_seq <= horizon
    )


class TableVersions:
    """
    Version chains of one table.

    Row IDs are allocated monotonically and never reused.
    """

    __slots__ = ("name", "_chains", "_row_ids", "_lock")

    def __init__(self, name: str) -> None:
        self.name = name
        self._chains: Dict[int, Tuple[RowVersion, ...]] = {}
        self._row_ids = itertools.count(1)
        self._lock = threading.Lock()

    def chain(self, row_id: int) -> Tuple[RowVersion, ...]:
        """Current chain of a row (empty if unknown)."""
        return self._chains.get(row_id, ())

    def snapshot(self) -> List[Tuple[int, Tuple[RowVersion, ...]]]:
        """Every (row_id, chain) present now, in insertion order."""
        with self._lock:
            return list(self._chains.items())

    def insert(self, version: RowVersion) -> int:
        """Create a new row holding a single version."""
        with self._lock:
            row_id = next(self._row_ids)
            self._chains[row_id] = (version,)
            return row_id

    def append(self, row_id: int, version: RowVersion) -> None:
        with self._lock:
            self._chains[row_id] = self._chains.get(row_id, ()) + (version,)

    def replace(self, row_id: int, old: RowVersion, new: RowVersion) -> None:
        with self._lock:
            self._chains[row_id] = tuple(
                new if v is old else v for v in self._chains.get(row_id, ())
            )

    def discard(self, txn: Transaction, row_id: int) -> None:
        """Drop versions created by txn and undo its delete markers on one row."""
        with self._lock:
            kept = tuple(v for v in self._chains.get(row_id, ()) if v.creator is not txn)
            for version in kept:
                if version.deleter is txn:
                    version.deleter = None
                    version.deleted_step = 0
            if kept:
                self._chains[row_id] = kept
            else:
                self._chains.pop(row_id, None)

    def vacuum(self, horizon: int) -> int:
        """
        Remove dead versions and empty rows.

        Returns:
            Number of versions removed
        """
        removed = 0
        with self._lock:
            for row_id, chain in list(self._chains.items()):
                kept = tuple(v for v in chain if not _is_dead(v, horizon))
                if len(kept) == len(chain):
                    continue
                removed += len(chain) - len(kept)
                if kept:
                    self._chains[row_id] = kept
                else:
                    del self._chains[row_id]
        return removed

    def version_count(self) -> int:
        with self._lock:
            return sum(len(chain) for chain in self._chains.values())

    def __len__(self) -> int:
        return len(self._chains)


class VersionStore:
    """
    Stores all row versions, answers visibility-filtered reads and
    arbitrates write conflicts through row write locks.
    """

    __slots__ = (
        "_tables",
        "_locks",
        "_lock_timeout_ms",
        "_ddl_lock",
        "_dead_versions",
        "_metrics",
        "_log",
    )

    def __init__(
        self,
        locks: Optional[RowLockTable] = None,
        lock_timeout_ms: Optional[int] = 5000,
        metrics: Optional[DatabaseMetrics] = None,
    ) -> None:
        """
        Initialize the version store.

        Args:
            locks: Row lock table (creates one if not provided)
            lock_timeout_ms: Default wait for a row lock (None = forever)
            metrics: Metrics sink for lock waits and vacuum
        """
        self._tables: Dict[str, TableVersions] = {}
        self._locks = locks or RowLockTable()
        self._lock_timeout_ms = lock_timeout_ms
        self._ddl_lock = threading.Lock()
        self._dead_versions = 0
        self._metrics = metrics
        self._log = get_logger(__name__)

    # ─────────────────────────────────────────────────────────────────────────
    # Tables
    # ─────────────────────────────────────────────────────────────────────────

    def create_table(self, name: str) -> None:
        with self._ddl_lock:
            if name in self._tables:
                raise TableExistsError(name)
            self._tables[name] = TableVersions(name)

    def drop_table(self, name: str) -> None:
        with self._ddl_lock:
            if self._tables.pop(name, None) is None:
                raise TableNotFoundError(name)

    def has_table(self, name: str) -> bool:
        return name in self._tables

    def _table(self, name: str) -> TableVersions:
        table = self._tables.get(name)
        if table is None:
            raise TableNotFoundError(name)
        return table

    # ─────────────────────────────────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────────────────────────────────

    def lock_row(
        self,
        txn: Transaction,
        table: str,
        row_id: int,
        timeout_ms: Timeout = DEFAULT_TIMEOUT,
    ) -> bool:
        """
        Take the write lock of a row, blocking while another transaction holds it.

        Returns:
            True if the lock is newly acquired, False if txn already held it

        Raises:
            LockTimeoutError: If the lock was not granted in time
            DeadlockError: If waiting would deadlock
        """
        self._require_active(txn)
        self._table(table)
        resource = (table, row_id)
        if self._locks.holder(resource) == txn.txn_id:
            return False

        if timeout_ms is DEFAULT_TIMEOUT:
            timeout_ms = self._lock_timeout_ms

        try:
            waited = self._locks.acquire(txn.txn_id, resource, timeout_ms)
        except LockTimeoutError as exc:
            self._log.warning(
                "row_lock_timeout",
                txn_id=txn.txn_id,
                table=table,
                row_id=row_id,
                holder=exc.holder_txn_id,
                timeout_ms=timeout_ms,
            )
            self._record_lock_wait("timeout")
            raise
        except DeadlockError as exc:
            self._log.warning(
                "row_lock_deadlock",
                txn_id=txn.txn_id,
                table=table,
                row_id=row_id,
                holder=exc.conflicting_txn_id,
            )
            self._record_lock_wait("deadlock")
            raise

        if waited:
            self._log.debug("row_lock_waited", txn_id=txn.txn_id, table=table, row_id=row_id)
            self._record_lock_wait("acquired")
        return True

    def unlock_rows(self, txn: Transaction, table: str, row_ids: List[int]) -> None:
        """Release locks on rows txn locked but did not write."""
        for row_id in row_ids:
            if (table, row_id) not in txn.write_set:
                self._locks.release(txn.txn_id, (table, row_id))

    def write(
        self,
        txn: Transaction,
        table: str,
        row_id: Optional[int],
        payload: Optional[Payload],
        op: WriteOp,
        timeout_ms: Timeout = DEFAULT_TIMEOUT,
    ) -> Optional[int]:
        """
        Write a new version of a row on behalf of txn.

        INSERT ignores row_id and allocates a new row. UPDATE replaces the
        row's current version with payload; DELETE marks it deleted. Both
        wait for the row's write lock first, then re-evaluate against the
        latest committed (or own) version.

        Args:
            txn: Writing transaction (must be ACTIVE)
            table: Table name
            row_id: Target row (UPDATE/DELETE)
            payload: New row data (INSERT/UPDATE)
            op: Kind of write
            timeout_ms: Lock wait override

        Returns:
            The row ID written, or None if the row no longer exists

        Raises:
            TransactionClosedError: If txn is not ACTIVE
            LockTimeoutError: If the row lock was not granted in time
            DeadlockError: If waiting for the row lock would deadlock
        """
        self._require_active(txn)
        versions = self._table(table)

        if op is WriteOp.INSERT:
            if payload is None:
                raise ExecutionError("INSERT requires a payload")
            row_id = versions.insert(RowVersion(payload, txn))
            self._locks.acquire(txn.txn_id, (table, row_id), 0)
            txn.write_set.add((table, row_id))
            return row_id

        if row_id is None:
            raise ExecutionError(f"{op.name} requires a row id")
        if op is WriteOp.UPDATE and payload is None:
            raise ExecutionError("UPDATE requires a payload")

        self.lock_row(txn, table, row_id, timeout_ms)

        current = self._current_version(versions.chain(row_id), txn)
        if current is None:
            return None

        txn.write_step += 1

        if op is WriteOp.UPDATE:
            new_version = RowVersion(payload, txn)
            if current.creator is txn:
                # At most one uncommitted version per row per transaction
                versions.replace(row_id, current, new_version)
            else:
                current.deleter = txn
                current.deleted_step = txn.write_step
                txn.deleted_versions += 1
                versions.append(row_id, new_version)
        else:
            current.deleter = txn
            current.deleted_step = txn.write_step
            txn.deleted_versions += 1

        txn.write_set.add((table, row_id))
        return row_id

    @staticmethod
    def _current_version(
        chain: Tuple[RowVersion, ...], txn: Transaction
    ) -> Optional[RowVersion]:
        for version in reversed(chain):
            if is_visible(version, txn, LATEST):
                return version
        return None

    # ─────────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────────

    def read(
        self,
        table: str,
        row_id: int,
        txn: Transaction,
        boundary: float,
    ) -> Optional[Payload]:
        """
        Read the latest version of a row visible to txn at boundary.

        Returns:
            Row data if visible, None if absent or deleted
        """
        for version in reversed(self._table(table).chain(row_id)):
            if is_visible(version, txn, boundary):
                return version.payload
        return None

    def read_all(
        self,
        table: str,
        txn: Transaction,
        boundary: float,
    ) -> Iterator[Tuple[int, Payload]]:
        """
        Lazily scan every row visible to txn at boundary.

        The row chains and txn's write step are captured by this call,
        not on the first fetch. Commits after the boundary and writes txn
        makes while the scan is open are not reflected.

        Returns:
            Iterator of (row_id, payload) pairs in row ID order
        """
        chains = self._table(table).snapshot()
        return self._scan(chains, txn, boundary, txn.write_step)

    @staticmethod
    def _scan(
        chains: List[Tuple[int, Tuple[RowVersion, ...]]],
        txn: Transaction,
        boundary: float,
        own_step: int,
    ) -> Iterator[Tuple[int, Payload]]:
        for row_id, chain in chains:
            for version in reversed(chain):
                if is_visible(version, txn, boundary, own_step):
                    yield row_id, version.payload
                    break

    # ─────────────────────────────────────────────────────────────────────────
    # Transaction end
    # ─────────────────────────────────────────────────────────────────────────

    def finish_commit(self, txn: Transaction) -> None:
        """Release write locks of a transaction that just committed."""
        self._dead_versions += txn.deleted_versions
        self._locks.release_all(txn.txn_id)

    def discard(self, txn: Transaction) -> None:
        """
        Undo a rolled-back transaction: drop its versions, restore the
        versions it deleted, release its write locks.
        """
        for table, row_id in txn.write_set:
            versions = self._tables.get(table)
            if versions is not None:
                versions.discard(txn, row_id)
        self._locks.release_all(txn.txn_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Garbage collection
    # ─────────────────────────────────────────────────────────────────────────

    def vacuum(self, horizon: int) -> int:
        """
        Remove versions invisible to every reader at or after horizon.

        Args:
            horizon: Oldest commit sequence an active or future statement can read at

        Returns:
            Number of versions removed
        """
        removed = 0
        for versions in list(self._tables.values()):
            removed += versions.vacuum(horizon)
        self._dead_versions = max(0, self._dead_versions - removed)

        if removed:
            self._log.info("vacuum_completed", horizon=horizon, removed=removed)
            if self._metrics:
                self._metrics.versions_vacuumed.inc(removed)
        return removed

    @property
    def dead_version_count(self) -> int:
        """Committed deletions not yet vacuumed (approximate)."""
        return self._dead_versions

    def version_count(self, table: str) -> int:
        """Total stored versions of a table, dead or alive."""
        return self._table(table).version_count()

    def row_count(self, table: str) -> int:
        """Row identities present in a table, visible or not."""
        return len(self._table(table))

    @property
    def locks(self) -> RowLockTable:
        return self._locks

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _require_active(txn: Transaction) -> None:
        if txn.state is not TransactionState.ACTIVE:
            raise TransactionClosedError(txn.txn_id, txn.state.value)

    def _record_lock_wait(self, outcome: str) -> None:
        if self._metrics:
            self._metrics.record_lock_wait(outcome)

    def __repr__(self) -> str:
        return f"VersionStore(tables={list(self._tables)})"
