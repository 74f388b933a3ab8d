"""
Public API for Verso DB.

Provides a high-level interface for database operations.

Usage:
    from verso.client.api import Database

    db = Database("inventory")
    db.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, qty TINYINT)")

    with db.begin() as txn:
        txn.execute("INSERT INTO items VALUES (1, 42)")
        print(txn.query("SELECT COUNT(*) FROM items").scalar())

    db.close()

Statements outside an explicit transaction run in autocommit mode.
"""

from typing import Iterator, Dict, Any, Optional, List
import threading

from verso.catalog.schema import Catalog
from verso.execution.executor import StatementExecutor
from verso.observability.logging import get_logger, setup_logging
from verso.observability.metrics import MetricsCollector, DatabaseMetrics
from verso.query.parser import DDL_STATEMENTS, SelectStmt, SQLParser
from verso.storage.versions import VersionStore
from verso.transaction.coordinator import TransactionCoordinator
from verso.transaction.locks import RowLockTable
from verso.transaction.registry import Transaction, TransactionRegistry, TransactionState
from verso.transaction.vacuum import VacuumWorker
from verso.utils.config import DatabaseConfig
from verso.utils.errors import ExecutionError, SessionError


class ResultSet:
    """
    Single-pass cursor over query results.

    Rows are tuples in `columns` order. A result set returned by a
    transaction handle is lazy: rows are read as they are fetched, and
    fetching after the transaction ended raises TransactionClosedError.
    """

    __slots__ = ("_columns", "_rows", "_closed")

    def __init__(self, columns: List[str], rows: Iterator[tuple]) -> None:
        self._columns = columns
        self._rows = rows
        self._closed = False

    @property
    def columns(self) -> List[str]:
        return list(self._columns)

    def __iter__(self) -> "ResultSet":
        return self

    def __next__(self) -> tuple:
        if self._closed:
            raise StopIteration
        try:
            return next(self._rows)
        except StopIteration:
            self.close()
            raise

    def fetchone(self) -> Optional[tuple]:
        """Next row, or None when exhausted."""
        return next(self, None)

    def fetchall(self) -> List[tuple]:
        """All remaining rows."""
        return list(self)

    def scalar(self) -> Any:
        """
        First column of the first row, or None if there are no rows.

        Consumes and closes the result set.
        """
        try:
            row = self.fetchone()
            return row[0] if row is not None else None
        finally:
            self.close()

    def as_dicts(self) -> List[Dict[str, Any]]:
        """All remaining rows as column name -> value mappings."""
        return [dict(zip(self._columns, row)) for row in self]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        close = getattr(self._rows, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> "ResultSet":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ResultSet(columns={self._columns}, closed={self._closed})"


class TransactionHandle:
    """
    Caller-facing handle of one transaction.

    Used as a context manager it commits on clean exit and rolls back
    when the block raises.
    """

    __slots__ = ("_db", "_txn")

    def __init__(self, db: "Database", txn: Transaction) -> None:
        self._db = db
        self._txn = txn

    @property
    def id(self) -> int:
        return self._txn.txn_id

    @property
    def state(self) -> TransactionState:
        return self._txn.state

    @property
    def is_active(self) -> bool:
        return self._txn.is_active

    def execute(self, sql: str) -> int:
        """
        Execute a DDL or DML statement in this transaction.

        DDL takes effect immediately and is not undone by rollback.

        Returns:
            Number of affected rows (0 for DDL)
        """
        self._db._coordinator.ensure_active(self._txn)
        stmt = self._db._parse(sql)
        return self._db._executor.execute(self._txn, stmt)

    def query(self, sql: str) -> ResultSet:
        """
        Run a SELECT in this transaction.

        The statement sees every write committed before this call plus
        this transaction's own writes.
        """
        self._db._coordinator.ensure_active(self._txn)
        stmt = self._db._parse(sql)
        columns, rows = self._db._executor.query(self._txn, stmt)
        return ResultSet(columns, rows)

    def commit(self) -> int:
        """
        Commit the transaction.

        Returns:
            The commit sequence number assigned

        Raises:
            InvalidTransactionStateError: If already committed or rolled back
        """
        return self._db._coordinator.commit(self._txn)

    def rollback(self) -> None:
        """
        Roll back the transaction.

        Raises:
            InvalidTransactionStateError: If already committed or rolled back
        """
        self._db._coordinator.rollback(self._txn)

    def __enter__(self) -> "TransactionHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if not self._txn.is_active:
            return
        if exc_type is not None:
            self.rollback()
            return
        try:
            self.commit()
        except BaseException:
            if self._txn.is_active:
                self.rollback()
            raise

    def __repr__(self) -> str:
        return f"TransactionHandle(id={self.id}, state={self.state.value})"


class Connection:
    """
    A database session.

    Holds at most one explicit transaction. Without one, statements run
    in autocommit mode; with autocommit disabled the first statement
    begins a transaction implicitly.
    """

    __slots__ = ("_db", "_txn", "_autocommit", "_closed", "_lock")

    def __init__(self, db: "Database", autocommit: bool = True) -> None:
        self._db = db
        self._txn: Optional[TransactionHandle] = None
        self._autocommit = autocommit
        self._closed = False
        self._lock = threading.Lock()

    def execute(self, sql: str) -> int:
        """
        Execute a DDL or DML statement.

        Returns:
            Number of affected rows
        """
        self._check_open()
        handle = self._current()
        if handle is None:
            return self._db.execute(sql)
        return handle.execute(sql)

    def query(self, sql: str) -> ResultSet:
        """Execute a SELECT and return its rows."""
        self._check_open()
        handle = self._current()
        if handle is None:
            return self._db.query(sql)
        return handle.query(sql)

    def begin(self) -> TransactionHandle:
        """Begin an explicit transaction."""
        self._check_open()
        with self._lock:
            if self._txn is not None and self._txn.is_active:
                raise SessionError("Transaction already in progress")
            self._txn = self._db.begin()
            return self._txn

    def commit(self) -> int:
        """Commit the current transaction."""
        self._check_open()
        with self._lock:
            handle = self._take()
            try:
                return handle.commit()
            except BaseException:
                # The session no longer tracks the handle
                if handle.is_active:
                    handle.rollback()
                raise

    def rollback(self) -> None:
        """Rollback the current transaction."""
        self._check_open()
        with self._lock:
            handle = self._take()
            handle.rollback()

    def close(self) -> None:
        """Close the connection, rolling back an open transaction."""
        with self._lock:
            if self._txn is not None and self._txn.is_active:
                self._txn.rollback()
            self._txn = None
            self._closed = True

    def _current(self) -> Optional[TransactionHandle]:
        with self._lock:
            if self._txn is not None and self._txn.is_active:
                return self._txn
            self._txn = None
            if not self._autocommit:
                self._txn = self._db.begin()
            return self._txn

    def _take(self) -> TransactionHandle:
        handle = self._txn
        self._txn = None
        if handle is None:
            raise SessionError("No transaction in progress")
        return handle

    def _check_open(self) -> None:
        """Check that connection is open."""
        if self._closed:
            raise SessionError("Connection is closed")

    @property
    def in_transaction(self) -> bool:
        """Check if in a transaction."""
        return self._txn is not None and self._txn.is_active

    @property
    def autocommit(self) -> bool:
        return self._autocommit

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class Database:
    """
    Main database interface.

    Owns the catalog, the version store, the transaction registry and
    coordinator, and the optional background vacuum.
    """

    __slots__ = (
        "_name",
        "_config",
        "_catalog",
        "_registry",
        "_store",
        "_coordinator",
        "_parser",
        "_executor",
        "_vacuum",
        "_metrics_collector",
        "_metrics",
        "_lock",
        "_closed",
        "_log",
    )

    def __init__(self, name: str = "verso", config: Optional[DatabaseConfig] = None) -> None:
        """
        Create an in-memory database.

        Args:
            name: Database name (used in logs)
            config: Configuration (defaults to DatabaseConfig.default())
        """
        self._name = name
        self._config = config or DatabaseConfig.default()
        txn_config = self._config.transaction
        obs_config = self._config.observability

        setup_logging(obs_config.log_level, obs_config.log_format)
        self._log = get_logger(__name__, database=name)

        # Metrics
        if obs_config.enable_metrics:
            self._metrics_collector = MetricsCollector()
            self._metrics = DatabaseMetrics(self._metrics_collector)
        else:
            self._metrics_collector = None
            self._metrics = None

        # Transaction management
        self._catalog = Catalog()
        self._registry = TransactionRegistry(
            max_transaction_id=txn_config.max_transaction_id,
            max_commit_seq=txn_config.max_commit_seq,
        )
        self._store = VersionStore(
            locks=RowLockTable(deadlock_detection=txn_config.deadlock_detection_enabled),
            lock_timeout_ms=txn_config.lock_timeout_ms,
            metrics=self._metrics,
        )
        self._coordinator = TransactionCoordinator(self._registry, self._store, self._metrics)

        # Query processing
        self._parser = SQLParser(max_query_length=self._config.query.max_query_length)
        self._executor = StatementExecutor(
            self._catalog, self._store, self._coordinator, self._metrics
        )

        self._vacuum = VacuumWorker(
            self._store,
            self._coordinator,
            interval_seconds=txn_config.vacuum_interval_seconds,
            threshold=txn_config.vacuum_threshold,
        )
        if txn_config.auto_vacuum:
            self._vacuum.start()

        self._lock = threading.Lock()
        self._closed = False
        self._log.info("database_opened", auto_vacuum=txn_config.auto_vacuum)

    def begin(self) -> TransactionHandle:
        """
        Begin a transaction.

        Raises:
            CapacityExceededError: If transaction IDs are exhausted
        """
        self._check_open()
        return TransactionHandle(self, self._coordinator.begin())

    def execute(self, sql: str) -> int:
        """
        Execute a DDL or DML statement in autocommit mode.

        Args:
            sql: SQL statement

        Returns:
            Number of affected rows (0 for DDL)
        """
        self._check_open()
        stmt = self._parse(sql)
        if isinstance(stmt, SelectStmt):
            raise ExecutionError("SELECT returns rows; use query()")
        if isinstance(stmt, DDL_STATEMENTS):
            return self._executor.execute(None, stmt)

        txn = self._coordinator.begin()
        try:
            count = self._executor.execute(txn, stmt)
            self._coordinator.commit(txn)
        except BaseException:
            if txn.is_active:
                self._coordinator.rollback(txn)
            raise
        return count

    def query(self, sql: str) -> ResultSet:
        """
        Execute a SELECT in autocommit mode.

        The rows are materialized before the implicit transaction commits.
        """
        self._check_open()
        stmt = self._parse(sql)
        txn = self._coordinator.begin()
        try:
            columns, rows = self._executor.query(txn, stmt)
            materialized = list(rows)
            self._coordinator.commit(txn)
        except BaseException:
            if txn.is_active:
                self._coordinator.rollback(txn)
            raise
        return ResultSet(columns, iter(materialized))

    def connect(self, autocommit: bool = True) -> Connection:
        """
        Get a session on the database.

        Args:
            autocommit: Auto-commit each statement outside begin()/commit()

        Returns:
            Connection object
        """
        self._check_open()
        return Connection(self, autocommit)

    def vacuum(self) -> int:
        """
        Remove row versions no active or future transaction can see.

        Returns:
            Number of versions removed
        """
        self._check_open()
        return self._vacuum.run_once()

    def _parse(self, sql: str):
        self._check_open()
        return self._parser.parse(sql)

    def _check_open(self) -> None:
        """Check that database is open."""
        if self._closed:
            raise SessionError("Database is closed")

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> DatabaseConfig:
        return self._config

    @property
    def tables(self) -> List[str]:
        """Get list of table names."""
        return self._catalog.table_names

    @property
    def active_transaction_count(self) -> int:
        return self._coordinator.active_transaction_count

    @property
    def store(self) -> VersionStore:
        return self._store

    @property
    def metrics(self) -> Optional[DatabaseMetrics]:
        """Get metrics collector."""
        return self._metrics

    def export_metrics(self) -> str:
        """Export metrics in Prometheus format."""
        if self._metrics_collector:
            return self._metrics_collector.export_prometheus()
        return ""

    def close(self) -> None:
        """Close the database, rolling back every open transaction."""
        with self._lock:
            if self._closed:
                return
            self._vacuum.stop()
            rolled_back = self._coordinator.rollback_all()
            self._closed = True
        self._log.info("database_closed", rolled_back=len(rolled_back))

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Database(name={self._name!r}, tables={len(self._catalog.table_names)})"


# Convenience function
def open_database(name: str = "verso", **kwargs) -> Database:
    """
    Open a new in-memory database.

    Args:
        name: Database name
        **kwargs: Additional options passed to Database

    Returns:
        Database instance
    """
    return Database(name, **kwargs)
