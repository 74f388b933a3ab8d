"""
Unit tests for statement execution.

Tests cover:
- Volcano operators (filter, sort, limit, aggregate)
- Expression evaluation
- DDL and DML through StatementExecutor
- Statement atomicity and write re-evaluation
"""

import pytest

from verso.catalog.schema import Catalog
from verso.execution.executor import (
    AggregateExecutor,
    Executor,
    ExpressionEvaluator,
    LimitExecutor,
    SortExecutor,
    StatementExecutor,
    expression_name,
)
from verso.observability.metrics import DatabaseMetrics, MetricsCollector
from verso.query.parser import Expr, SQLParser
from verso.storage.versions import VersionStore
from verso.transaction.coordinator import TransactionCoordinator
from verso.transaction.registry import TransactionRegistry
from verso.utils.errors import (
    ColumnNotFoundError,
    ConstraintViolationError,
    ExecutionError,
    LockTimeoutError,
    TableExistsError,
    TableNotFoundError,
    TransactionClosedError,
)


class ListExecutor(Executor):
    """Executor over a fixed list of rows."""

    __slots__ = ("_rows", "_index")

    def __init__(self, rows):
        super().__init__()
        self._rows = rows
        self._index = 0

    def open(self):
        self._index = 0
        self._is_open = True

    def next(self):
        if self._index >= len(self._rows):
            return None
        row = self._rows[self._index]
        self._index += 1
        return row

    def close(self):
        self._is_open = False


def col(name):
    return Expr("column", [], (None, name))


def lit(value):
    return Expr("literal", [], value)


class Engine:
    """Wires catalog, store, coordinator and executor together."""

    def __init__(self, lock_timeout_ms=100):
        self.parser = SQLParser()
        self.catalog = Catalog()
        self.store = VersionStore(lock_timeout_ms=lock_timeout_ms)
        self.coordinator = TransactionCoordinator(TransactionRegistry(), self.store)
        self.metrics = DatabaseMetrics(MetricsCollector())
        self.executor = StatementExecutor(
            self.catalog, self.store, self.coordinator, self.metrics
        )

    def begin(self):
        return self.coordinator.begin()

    def run(self, txn, sql):
        return self.executor.execute(txn, self.parser.parse(sql))

    def rows(self, txn, sql):
        _, rows = self.executor.query(txn, self.parser.parse(sql))
        return list(rows)

    def autocommit(self, sql):
        txn = self.begin()
        count = self.run(txn, sql)
        self.coordinator.commit(txn)
        return count


@pytest.fixture
def engine():
    e = Engine()
    e.run(None, "CREATE TABLE items (id INT PRIMARY KEY, name VARCHAR(10), qty TINYINT)")
    e.autocommit("INSERT INTO items VALUES (1, 'bolt', 10), (2, 'nut', 20), (3, 'gear', NULL)")
    return e


class TestOperators:
    """Tests for individual Volcano operators."""

    def test_sort_multiple_keys(self):
        """Sort honours each key's direction; NULLs first ascending."""
        rows = [{"a": 1, "b": 2}, {"a": None, "b": 1}, {"a": 1, "b": 3}, {"a": 0, "b": 0}]
        sort = SortExecutor(ListExecutor(rows), [(col("a"), "ASC"), (col("b"), "DESC")])

        assert [(r["a"], r["b"]) for r in sort] == [(None, 1), (0, 0), (1, 3), (1, 2)]

    def test_limit_offset(self):
        """Limit skips offset rows and stops at the limit."""
        rows = [{"a": i} for i in range(10)]
        limit = LimitExecutor(ListExecutor(rows), 3, 4)

        assert [r["a"] for r in limit] == [4, 5, 6]

    def test_aggregates(self):
        """Aggregates ignore NULLs; COUNT(*) counts rows."""
        rows = [{"a": 1}, {"a": 4}, {"a": None}, {"a": 4}]
        aggs = [
            Expr("function", [Expr("star", [], "*")], "COUNT"),
            Expr("function", [col("a")], "COUNT"),
            Expr("function", [Expr("distinct", [col("a")], "DISTINCT")], "COUNT"),
            Expr("function", [col("a")], "SUM"),
            Expr("function", [col("a")], "AVG"),
            Expr("function", [col("a")], "MIN"),
            Expr("function", [col("a")], "MAX"),
        ]
        result = next(iter(AggregateExecutor(ListExecutor(rows), aggs)))

        assert result == {
            "COUNT(*)": 4,
            "COUNT(a)": 3,
            "COUNT(DISTINCT a)": 2,
            "SUM(a)": 9,
            "AVG(a)": 3.0,
            "MIN(a)": 1,
            "MAX(a)": 4,
        }

    def test_aggregates_over_empty_input(self):
        """COUNT is 0 and other aggregates are NULL over no rows."""
        aggs = [
            Expr("function", [Expr("star", [], "*")], "COUNT"),
            Expr("function", [col("a")], "SUM"),
        ]
        result = next(iter(AggregateExecutor(ListExecutor([]), aggs)))
        assert result == {"COUNT(*)": 0, "SUM(a)": None}


class TestExpressionEvaluator:
    """Tests for ExpressionEvaluator."""

    def test_null_comparison(self):
        """Comparisons with NULL yield NULL, which does not match."""
        expr = Expr("binary", [col("a"), lit(1)], "=")
        assert ExpressionEvaluator.evaluate(expr, {"a": None}) is None
        assert ExpressionEvaluator.matches(expr, {"a": None}) is False

    def test_three_valued_logic(self):
        """FALSE AND NULL is FALSE; TRUE OR NULL is TRUE."""
        null_cmp = Expr("binary", [col("a"), lit(1)], "=")
        false = lit(False)
        true = lit(True)

        assert ExpressionEvaluator.evaluate(Expr("binary", [false, null_cmp], "AND"), {"a": None}) is False
        assert ExpressionEvaluator.evaluate(Expr("binary", [true, null_cmp], "OR"), {"a": None}) is True

    def test_like(self):
        """LIKE supports % and _ wildcards and escapes regex characters."""
        like = lambda value, pattern: ExpressionEvaluator._like(value, pattern)
        assert like("bolt", "b%")
        assert like("nut", "n_t")
        assert not like("nut", "n_")
        assert like("a.b", "a.b")
        assert not like("axb", "a.b")

    def test_division_by_zero(self):
        """Division by zero is an execution error."""
        expr = Expr("binary", [lit(1), lit(0)], "/")
        with pytest.raises(ExecutionError):
            ExpressionEvaluator.evaluate(expr, {})

    def test_scalar_functions(self):
        """UPPER/LENGTH/ABS evaluate per row."""
        assert ExpressionEvaluator.evaluate(Expr("function", [col("s")], "UPPER"), {"s": "ab"}) == "AB"
        assert ExpressionEvaluator.evaluate(Expr("function", [col("s")], "LENGTH"), {"s": "ab"}) == 2
        assert ExpressionEvaluator.evaluate(Expr("function", [lit(-3)], "ABS"), {}) == 3

    def test_expression_name(self):
        """Result columns are named after their expressions."""
        assert expression_name(Expr("function", [Expr("star", [], "*")], "COUNT")) == "COUNT(*)"
        assert expression_name(Expr("binary", [col("a"), lit(1)], "+")) == "a + 1"


class TestDDL:
    """Tests for CREATE/DROP TABLE."""

    def test_create_table(self, engine):
        """CREATE TABLE registers the schema and the store table."""
        assert engine.catalog.table_exists("items")
        assert engine.store.has_table("items")

    def test_create_existing(self, engine):
        """Creating an existing table raises TableExistsError."""
        with pytest.raises(TableExistsError):
            engine.run(None, "CREATE TABLE items (a INT)")

    def test_invalid_default(self):
        """Defaults are checked against the column type."""
        e = Engine()
        with pytest.raises(ConstraintViolationError):
            e.run(None, "CREATE TABLE t (a TINYINT DEFAULT 300)")
        assert not e.catalog.table_exists("t")

    def test_drop_table(self, engine):
        """DROP TABLE removes the table; IF EXISTS tolerates absence."""
        engine.run(None, "DROP TABLE items")
        assert not engine.catalog.table_exists("items")
        assert engine.run(None, "DROP TABLE IF EXISTS items") == 0

        with pytest.raises(TableNotFoundError):
            engine.run(None, "DROP TABLE items")

    def test_ddl_inside_transaction_is_immediate(self, engine):
        """DDL takes effect even if the surrounding transaction rolls back."""
        txn = engine.begin()
        engine.run(txn, "CREATE TABLE extra (a INT)")
        engine.coordinator.rollback(txn)

        assert engine.catalog.table_exists("extra")

    def test_dml_requires_transaction(self, engine):
        """DML cannot run without a transaction."""
        with pytest.raises(ExecutionError):
            engine.run(None, "DELETE FROM items")


class TestSelect:
    """Tests for SELECT execution."""

    def test_select_all(self, engine):
        """SELECT * returns every visible row in column order."""
        txn = engine.begin()
        columns, rows = engine.executor.query(txn, engine.parser.parse("SELECT * FROM items"))

        assert columns == ["id", "name", "qty"]
        assert list(rows) == [(1, "bolt", 10), (2, "nut", 20), (3, "gear", None)]

    def test_where_order_limit(self, engine):
        """WHERE, ORDER BY and LIMIT compose."""
        txn = engine.begin()
        rows = engine.rows(txn, "SELECT name FROM items WHERE id >= 2 ORDER BY name LIMIT 1")
        assert rows == [("gear",)]

    def test_order_by_alias(self, engine):
        """ORDER BY may name a select-list alias."""
        txn = engine.begin()
        rows = engine.rows(txn, "SELECT id, qty * 2 AS double_qty FROM items WHERE qty IS NOT NULL ORDER BY double_qty DESC")
        assert rows == [(2, 40), (1, 20)]

    def test_count(self, engine):
        """COUNT(*) counts visible rows."""
        txn = engine.begin()
        assert engine.rows(txn, "SELECT COUNT(*) FROM items") == [(3,)]
        assert engine.rows(txn, "SELECT COUNT(qty), SUM(qty), MAX(name) FROM items") == [(2, 30, "nut")]

    def test_aggregate_with_bare_column(self, engine):
        """Mixing aggregates and bare columns without GROUP BY is rejected."""
        txn = engine.begin()
        with pytest.raises(ExecutionError):
            engine.rows(txn, "SELECT id, COUNT(*) FROM items")

    def test_unknown_column(self, engine):
        """Unknown columns raise ColumnNotFoundError."""
        txn = engine.begin()
        with pytest.raises(ColumnNotFoundError):
            engine.rows(txn, "SELECT missing FROM items")
        with pytest.raises(ColumnNotFoundError):
            engine.rows(txn, "SELECT * FROM items WHERE other.id = 1")

    def test_unknown_table(self, engine):
        """Unknown tables raise TableNotFoundError."""
        txn = engine.begin()
        with pytest.raises(TableNotFoundError):
            engine.rows(txn, "SELECT * FROM missing")

    def test_select_via_execute(self, engine):
        """execute() refuses SELECT; query() refuses everything else."""
        txn = engine.begin()
        with pytest.raises(ExecutionError):
            engine.run(txn, "SELECT * FROM items")
        with pytest.raises(ExecutionError):
            engine.executor.query(txn, engine.parser.parse("DELETE FROM items"))

    def test_cursor_after_commit(self, engine):
        """A cursor fails once its transaction has ended."""
        txn = engine.begin()
        _, rows = engine.executor.query(txn, engine.parser.parse("SELECT * FROM items"))
        assert next(rows) == (1, "bolt", 10)

        engine.coordinator.commit(txn)
        with pytest.raises(TransactionClosedError):
            next(rows)

    def test_select_metrics(self, engine):
        """Consumed queries record rows read."""
        txn = engine.begin()
        engine.rows(txn, "SELECT * FROM items")
        assert engine.metrics.rows_read.get() == 3
        assert engine.metrics.statements_total.get({"kind": "select"}) == 1


class TestDML:
    """Tests for INSERT/UPDATE/DELETE."""

    def test_insert_columns_and_defaults(self, engine):
        """Omitted columns are NULL or their default."""
        txn = engine.begin()
        assert engine.run(txn, "INSERT INTO items (id) VALUES (4)") == 1
        assert engine.rows(txn, "SELECT * FROM items WHERE id = 4") == [(4, None, None)]

    def test_insert_value_count_mismatch(self, engine):
        """Each row must supply one value per column."""
        txn = engine.begin()
        with pytest.raises(ExecutionError):
            engine.run(txn, "INSERT INTO items (id, name) VALUES (4)")

    def test_insert_out_of_range_is_atomic(self, engine):
        """A bad row rejects the whole statement."""
        txn = engine.begin()
        with pytest.raises(ConstraintViolationError):
            engine.run(txn, "INSERT INTO items VALUES (4, 'a', 1), (5, 'b', 999)")

        assert engine.rows(txn, "SELECT COUNT(*) FROM items") == [(3,)]
        assert txn.is_active

    def test_duplicate_primary_key(self, engine):
        """Primary keys must be unique among visible rows and the batch."""
        txn = engine.begin()
        with pytest.raises(ConstraintViolationError):
            engine.run(txn, "INSERT INTO items VALUES (1, 'dup', 1)")
        with pytest.raises(ConstraintViolationError):
            engine.run(txn, "INSERT INTO items VALUES (7, 'a', 1), (7, 'b', 2)")

    def test_update(self, engine):
        """UPDATE rewrites matching rows using their current values."""
        txn = engine.begin()
        assert engine.run(txn, "UPDATE items SET qty = qty + 1 WHERE qty IS NOT NULL") == 2
        assert engine.rows(txn, "SELECT qty FROM items ORDER BY id") == [(11,), (21,), (None,)]

    def test_update_constraint_is_atomic(self, engine):
        """An UPDATE failing on one row writes nothing and frees its locks."""
        txn = engine.begin()
        with pytest.raises(ConstraintViolationError):
            engine.run(txn, "UPDATE items SET qty = qty * 13 WHERE qty IS NOT NULL")

        assert engine.rows(txn, "SELECT qty FROM items ORDER BY id") == [(10,), (20,), (None,)]
        assert engine.store.locks.held_by(txn.txn_id) == set()

    def test_update_primary_key_collision(self, engine):
        """Updating a key onto an existing key is rejected."""
        txn = engine.begin()
        with pytest.raises(ConstraintViolationError):
            engine.run(txn, "UPDATE items SET id = 1 WHERE id = 2")

    def test_update_unknown_column(self, engine):
        """SET on an unknown column raises ColumnNotFoundError."""
        txn = engine.begin()
        with pytest.raises(ColumnNotFoundError):
            engine.run(txn, "UPDATE items SET missing = 1")

    def test_delete(self, engine):
        """DELETE removes matching rows."""
        txn = engine.begin()
        assert engine.run(txn, "DELETE FROM items WHERE name LIKE 'b%'") == 1
        assert engine.rows(txn, "SELECT id FROM items") == [(2,), (3,)]

    def test_blocked_update_times_out(self, engine):
        """An UPDATE of a row locked by another transaction times out cleanly."""
        t1 = engine.begin()
        t2 = engine.begin()
        engine.run(t1, "UPDATE items SET qty = 1 WHERE id = 1")

        with pytest.raises(LockTimeoutError):
            engine.run(t2, "UPDATE items SET qty = 2")

        # Rows t2 locked before the timeout are released
        assert engine.store.locks.held_by(t2.txn_id) == set()
        assert t2.write_set == set()

    def test_update_ignores_committed_delete(self, engine):
        """Rows deleted by an earlier commit are not updated."""
        deleter = engine.begin()
        engine.run(deleter, "DELETE FROM items WHERE id = 2")
        engine.coordinator.commit(deleter)

        txn = engine.begin()
        assert engine.run(txn, "UPDATE items SET qty = 0") == 2

    def test_dml_metrics(self, engine):
        """DML records rows written per kind."""
        assert engine.metrics.statements_total.get({"kind": "insert"}) == 1
        assert engine.metrics.rows_written.get() == 3
