"""
Unit tests for transaction management.

Tests cover:
- Transaction registry (IDs, commit sequence, active set, horizon)
- Coordinator lifecycle (begin, commit, rollback)
- Commit atomicity and terminal states
- Capacity limits
"""

import pytest

from verso.storage.versions import VersionStore, WriteOp
from verso.transaction.coordinator import TransactionCoordinator
from verso.transaction.registry import TransactionRegistry, TransactionState
from verso.observability.metrics import MetricsCollector, DatabaseMetrics
from verso.utils.errors import (
    CapacityExceededError,
    InvalidTransactionStateError,
    TransactionClosedError,
)


@pytest.fixture
def registry():
    return TransactionRegistry()


@pytest.fixture
def store():
    s = VersionStore(lock_timeout_ms=100)
    s.create_table("x")
    return s


@pytest.fixture
def coordinator(registry, store):
    return TransactionCoordinator(registry, store)


class TestTransactionRegistry:
    """Tests for TransactionRegistry."""

    def test_ids_are_unique_and_increasing(self, registry):
        """Transaction IDs should increase with every register()."""
        t1 = registry.register()
        t2 = registry.register()
        t3 = registry.register()

        assert [t1.txn_id, t2.txn_id, t3.txn_id] == [1, 2, 3]

    def test_new_transaction_is_active(self, registry):
        """A registered transaction should be ACTIVE and in the active set."""
        txn = registry.register()

        assert txn.state is TransactionState.ACTIVE
        assert txn.commit_seq is None
        assert registry.is_active(txn.txn_id)
        assert registry.get(txn.txn_id) is txn
        assert registry.active_count == 1

    def test_start_seq_is_current_commit_seq(self):
        """start_seq should capture the commit sequence at begin."""
        registry = TransactionRegistry(initial_seq=10)
        txn = registry.register()
        assert txn.start_seq == 10

    def test_reserve_does_not_publish(self, registry):
        """reserve_commit_seq should not move the published sequence."""
        with registry.lock:
            seq = registry.reserve_commit_seq()
            assert seq == 1
            assert registry.current_commit_seq() == 0
            registry.publish_commit_seq(seq)
        assert registry.current_commit_seq() == 1

    def test_deactivate(self, registry):
        """deactivate should remove the transaction from the active set."""
        txn = registry.register()
        registry.deactivate(txn)

        assert not registry.is_active(txn.txn_id)
        assert registry.active_transactions() == []

    def test_horizon_without_active(self):
        """Horizon should be the current sequence when nothing is active."""
        registry = TransactionRegistry(initial_seq=5)
        assert registry.horizon() == 5

    def test_horizon_is_oldest_start(self, registry):
        """Horizon should be the smallest start_seq of active transactions."""
        old = registry.register()
        with registry.lock:
            registry.publish_commit_seq(registry.reserve_commit_seq())
        registry.register()

        assert registry.horizon() == old.start_seq == 0

        registry.deactivate(old)
        assert registry.horizon() == 1

    def test_transaction_id_capacity(self):
        """Exhausting transaction IDs should raise CapacityExceededError."""
        registry = TransactionRegistry(max_transaction_id=2)
        registry.register()
        registry.register()

        with pytest.raises(CapacityExceededError) as exc_info:
            registry.register()
        assert exc_info.value.resource == "transaction_id"
        assert registry.active_count == 2

    def test_repr(self, registry):
        """Should show commit sequence and active count."""
        assert "commit_seq=0" in repr(registry)


class TestCoordinatorLifecycle:
    """Tests for begin/commit/rollback."""

    def test_begin(self, coordinator):
        """begin should return an ACTIVE transaction."""
        txn = coordinator.begin()

        assert txn.is_active
        assert coordinator.is_active(txn.txn_id)
        assert coordinator.active_transaction_count == 1

    def test_commit_assigns_sequence(self, coordinator):
        """commit should assign consecutive sequence numbers."""
        t1 = coordinator.begin()
        t2 = coordinator.begin()

        assert coordinator.commit(t2) == 1
        assert coordinator.commit(t1) == 2
        assert t1.commit_seq == 2
        assert t1.state is TransactionState.COMMITTED
        assert coordinator.snapshot_boundary() == 2

    def test_commit_removes_from_active_set(self, coordinator):
        """A committed transaction should leave the active set."""
        txn = coordinator.begin()
        coordinator.commit(txn)

        assert not coordinator.is_active(txn.txn_id)
        assert coordinator.active_transaction_count == 0

    def test_rollback(self, coordinator):
        """rollback should mark the transaction ROLLED_BACK."""
        txn = coordinator.begin()
        coordinator.rollback(txn)

        assert txn.state is TransactionState.ROLLED_BACK
        assert txn.commit_seq is None
        assert coordinator.active_transaction_count == 0

    def test_rollback_does_not_consume_sequence(self, coordinator):
        """Rolling back should leave the commit sequence unchanged."""
        txn = coordinator.begin()
        coordinator.rollback(txn)
        assert coordinator.snapshot_boundary() == 0

    def test_rollback_all(self, coordinator):
        """rollback_all should roll back every active transaction."""
        t1 = coordinator.begin()
        t2 = coordinator.begin()
        done = coordinator.begin()
        coordinator.commit(done)

        rolled_back = coordinator.rollback_all()

        assert sorted(rolled_back) == [t1.txn_id, t2.txn_id]
        assert t1.state is TransactionState.ROLLED_BACK
        assert done.state is TransactionState.COMMITTED

    def test_ensure_active(self, coordinator):
        """ensure_active should reject terminal transactions."""
        txn = coordinator.begin()
        coordinator.ensure_active(txn)
        coordinator.commit(txn)

        with pytest.raises(TransactionClosedError):
            coordinator.ensure_active(txn)


class TestTerminalStates:
    """A second commit or rollback must fail without side effects."""

    def test_double_commit(self, coordinator):
        """Second commit should raise and keep the first commit sequence."""
        txn = coordinator.begin()
        seq = coordinator.commit(txn)

        with pytest.raises(InvalidTransactionStateError) as exc_info:
            coordinator.commit(txn)

        assert exc_info.value.state == "committed"
        assert txn.commit_seq == seq
        assert coordinator.snapshot_boundary() == seq

    def test_rollback_after_commit(self, coordinator):
        """Rollback of a committed transaction should raise."""
        txn = coordinator.begin()
        coordinator.commit(txn)

        with pytest.raises(InvalidTransactionStateError):
            coordinator.rollback(txn)
        assert txn.state is TransactionState.COMMITTED

    def test_commit_after_rollback(self, coordinator):
        """Commit of a rolled-back transaction should raise."""
        txn = coordinator.begin()
        coordinator.rollback(txn)

        with pytest.raises(InvalidTransactionStateError):
            coordinator.commit(txn)
        assert txn.state is TransactionState.ROLLED_BACK
        assert coordinator.snapshot_boundary() == 0

    def test_double_rollback(self, coordinator):
        """Second rollback should raise."""
        txn = coordinator.begin()
        coordinator.rollback(txn)

        with pytest.raises(InvalidTransactionStateError):
            coordinator.rollback(txn)


class TestCommitEffects:
    """Tests for commit and rollback effects on the store."""

    def test_commit_releases_locks(self, coordinator, store):
        """Row locks should be released at commit."""
        txn = coordinator.begin()
        row_id = store.write(txn, "x", None, (1,), WriteOp.INSERT)
        assert store.locks.holder(("x", row_id)) == txn.txn_id

        coordinator.commit(txn)
        assert store.locks.holder(("x", row_id)) is None

    def test_rollback_discards_versions(self, coordinator, store):
        """A rolled-back insert should leave no version behind."""
        txn = coordinator.begin()
        store.write(txn, "x", None, (1,), WriteOp.INSERT)
        coordinator.rollback(txn)

        assert store.version_count("x") == 0
        assert store.locks.held_by(txn.txn_id) == set()

    def test_commit_makes_all_writes_visible_at_once(self, coordinator, store):
        """Every write should become visible at the same boundary."""
        writer = coordinator.begin()
        for value in range(5):
            store.write(writer, "x", None, (value,), WriteOp.INSERT)

        reader = coordinator.begin()
        before = coordinator.snapshot_boundary()
        seq = coordinator.commit(writer)

        assert list(store.read_all("x", reader, before)) == []
        assert len(list(store.read_all("x", reader, seq))) == 5

    def test_commit_seq_capacity(self, store):
        """Exhausted commit sequence should leave the transaction ACTIVE."""
        registry = TransactionRegistry(max_commit_seq=1)
        coordinator = TransactionCoordinator(registry, store)
        coordinator.commit(coordinator.begin())

        txn = coordinator.begin()
        with pytest.raises(CapacityExceededError):
            coordinator.commit(txn)

        assert txn.is_active
        coordinator.rollback(txn)

    def test_metrics_recorded(self, registry, store):
        """Lifecycle should update transaction metrics."""
        metrics = DatabaseMetrics(MetricsCollector())
        coordinator = TransactionCoordinator(registry, store, metrics)

        coordinator.commit(coordinator.begin())
        txn = coordinator.begin()
        assert metrics.active_transactions.get() == 1
        coordinator.rollback(txn)

        assert metrics.transactions_total.get({"status": "commit"}) == 1
        assert metrics.transactions_total.get({"status": "rollback"}) == 1
        assert metrics.active_transactions.get() == 0
