"""
Statement execution over the version store.

Queries run as a Volcano (iterator) pipeline: each operator pulls one
row at a time from its child.

Interface:
- open(): Initialize the operator
- next(): Return the next row, or None if done
- close(): Clean up resources

Operators:
- SeqScanExecutor: Visible-row scan at a fixed snapshot boundary
- FilterExecutor: Predicate evaluation
- AggregateExecutor: COUNT/SUM/MIN/MAX/AVG over the whole input
- SortExecutor: ORDER BY (materializing)
- ProjectExecutor: Select list evaluation, produces tuples
- LimitExecutor: LIMIT/OFFSET

Writes run in two phases. Phase one locks every target row, re-reads
its latest committed (or own) version, re-checks the predicate and
validates the new values; phase two writes the versions. A statement
that fails in phase one releases the row locks it took and leaves no
versions behind.
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any, Iterator, Tuple, Callable
import operator as op_module
import re
import time

import numpy as np

from verso.catalog.schema import Catalog, Column, Payload, Table
from verso.observability.logging import get_logger
from verso.observability.metrics import DatabaseMetrics
from verso.query.parser import (
    CreateTableStmt,
    DeleteStmt,
    DropTableStmt,
    Expr,
    InsertStmt,
    SelectStmt,
    Statement,
    UpdateStmt,
)
from verso.storage.versions import LATEST, VersionStore, WriteOp
from verso.transaction.coordinator import TransactionCoordinator
from verso.transaction.registry import Transaction, TransactionState
from verso.utils.errors import (
    ColumnNotFoundError,
    ConstraintViolationError,
    ExecutionError,
    TransactionClosedError,
)


# Type alias for a row flowing between operators
Row = Dict[str, Any]

SCALAR_FUNCTIONS = frozenset({"UPPER", "LOWER", "LENGTH", "ABS"})


def expression_name(expr: Expr) -> str:
    """Display name of an expression, used for result columns."""
    if expr.op == "column":
        return expr.value[1]
    if expr.op == "literal":
        return "NULL" if expr.value is None else str(expr.value)
    if expr.op == "star":
        return "*"
    if expr.op == "distinct":
        return "DISTINCT " + expression_name(expr.operands[0])
    if expr.op == "function":
        args = ", ".join(expression_name(arg) for arg in expr.operands)
        return f"{expr.value}({args})"
    if expr.op == "binary":
        left, right = expr.operands
        return f"{expression_name(left)} {expr.value} {expression_name(right)}"
    if expr.op == "unary":
        if expr.value in ("IS NULL", "IS NOT NULL"):
            return f"{expression_name(expr.operands[0])} {expr.value}"
        return f"{expr.value} {expression_name(expr.operands[0])}"
    return "expr"


class Executor(ABC):
    """
    Base class for Volcano-style executors.

    Each executor produces rows one at a time via the next() method.
    """

    __slots__ = ("_is_open",)

    def __init__(self) -> None:
        self._is_open = False

    @abstractmethod
    def open(self) -> None:
        """Initialize the executor."""
        pass

    @abstractmethod
    def next(self) -> Optional[Any]:
        """Return the next row, or None if done."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Clean up resources."""
        pass

    def __iter__(self) -> Iterator[Any]:
        """Allow using executor as an iterator."""
        self.open()
        try:
            while True:
                row = self.next()
                if row is None:
                    break
                yield row
        finally:
            self.close()


class SeqScanExecutor(Executor):
    """
    Scan of the rows visible to a transaction at a snapshot boundary.

    The scan is taken when the operator is built, so rows written after
    planning are not returned. Every advance checks that the transaction
    is still ACTIVE; a cursor outliving its transaction fails with
    TransactionClosedError.
    """

    __slots__ = ("_table", "_txn", "_rows", "_iterator")

    def __init__(
        self,
        store: VersionStore,
        table: Table,
        txn: Transaction,
        boundary: float,
    ) -> None:
        super().__init__()
        self._table = table
        self._txn = txn
        self._rows = store.read_all(table.name, txn, boundary)
        self._iterator = None

    def open(self) -> None:
        self._iterator = self._rows
        self._is_open = True

    def next(self) -> Optional[Row]:
        if not self._is_open:
            return None
        if self._txn.state is not TransactionState.ACTIVE:
            raise TransactionClosedError(self._txn.txn_id, self._txn.state.value)

        try:
            _, payload = next(self._iterator)
        except StopIteration:
            return None
        return self._table.to_dict(payload)

    def close(self) -> None:
        self._iterator = None
        self._is_open = False


class FilterExecutor(Executor):
    """Filter rows based on a predicate. NULL counts as false."""

    __slots__ = ("_child", "_predicate")

    def __init__(self, child: Executor, predicate: Expr) -> None:
        super().__init__()
        self._child = child
        self._predicate = predicate

    def open(self) -> None:
        self._child.open()
        self._is_open = True

    def next(self) -> Optional[Row]:
        if not self._is_open:
            return None

        while True:
            row = self._child.next()
            if row is None:
                return None

            if ExpressionEvaluator.matches(self._predicate, row):
                return row

    def close(self) -> None:
        self._child.close()
        self._is_open = False


class AggregateExecutor(Executor):
    """
    Whole-input aggregation (no GROUP BY).

    Produces exactly one row mapping each aggregate's expression name to
    its value. COUNT over no rows is 0; SUM/MIN/MAX/AVG over no
    non-NULL values are NULL.
    """

    __slots__ = ("_child", "_aggregates", "_result", "_done")

    def __init__(self, child: Executor, aggregates: List[Expr]) -> None:
        super().__init__()
        self._child = child
        self._aggregates = aggregates
        self._result: Optional[Row] = None
        self._done = False

    def open(self) -> None:
        self._child.open()

        rows = []
        while True:
            row = self._child.next()
            if row is None:
                break
            rows.append(row)

        self._result = {expression_name(agg): self._compute(agg, rows) for agg in self._aggregates}
        self._done = False
        self._is_open = True

    def _compute(self, agg: Expr, rows: List[Row]) -> Any:
        func = agg.value
        arg = agg.operands[0] if agg.operands else None

        if func == "COUNT" and (arg is None or arg.op == "star"):
            return len(rows)

        distinct = arg is not None and arg.op == "distinct"
        if distinct:
            arg = arg.operands[0]
        if arg is None or arg.op == "star":
            raise ExecutionError(f"{func} requires an argument")

        values = [ExpressionEvaluator.evaluate(arg, row) for row in rows]
        values = [v for v in values if v is not None]
        if distinct:
            values = list(dict.fromkeys(values))

        if func == "COUNT":
            return len(values)
        if not values:
            return None

        numeric = all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values)
        if func in ("SUM", "AVG") and not numeric:
            raise ExecutionError(f"{func} requires numeric values")

        if not numeric:
            return min(values) if func == "MIN" else max(values)

        if func == "AVG":
            return float(np.mean(np.array(values, dtype=np.float64)))

        # Integers stay exact (object dtype) so BIGINT sums do not wrap
        exact = all(isinstance(v, int) for v in values)
        data = np.array(values, dtype=object if exact else np.float64)
        if func == "SUM":
            return _scalar(data.sum())
        if func == "MIN":
            return _scalar(data.min())
        return _scalar(data.max())

    def next(self) -> Optional[Row]:
        if not self._is_open or self._done:
            return None
        self._done = True
        return self._result

    def close(self) -> None:
        self._child.close()
        self._result = None
        self._is_open = False


class SortExecutor(Executor):
    """Sort rows (materializing). NULLs sort first ascending, last descending."""

    __slots__ = ("_child", "_sort_keys", "_sorted_rows", "_index")

    def __init__(self, child: Executor, sort_keys: List[Tuple[Expr, str]]) -> None:
        super().__init__()
        self._child = child
        self._sort_keys = sort_keys
        self._sorted_rows: List[Row] = []
        self._index = 0

    def open(self) -> None:
        self._child.open()

        # Materialize all rows
        rows = []
        while True:
            row = self._child.next()
            if row is None:
                break
            rows.append(row)

        # Stable sort, least significant key first
        for expr, direction in reversed(self._sort_keys):
            rows.sort(
                key=lambda r, e=expr: _null_safe_key(ExpressionEvaluator.evaluate(e, r)),
                reverse=direction == "DESC",
            )

        self._sorted_rows = rows
        self._index = 0
        self._is_open = True

    def next(self) -> Optional[Row]:
        if not self._is_open or self._index >= len(self._sorted_rows):
            return None

        row = self._sorted_rows[self._index]
        self._index += 1
        return row

    def close(self) -> None:
        self._child.close()
        self._sorted_rows = []
        self._index = 0
        self._is_open = False


def _scalar(value: Any) -> Any:
    return value.item() if isinstance(value, np.generic) else value


def _null_safe_key(value: Any) -> Tuple[bool, Any]:
    return (value is not None, value if value is not None else 0)


class ProjectExecutor(Executor):
    """Evaluate the select list, producing one tuple per row."""

    __slots__ = ("_child", "_expressions")

    def __init__(self, child: Executor, expressions: List[Expr]) -> None:
        super().__init__()
        self._child = child
        self._expressions = expressions

    def open(self) -> None:
        self._child.open()
        self._is_open = True

    def next(self) -> Optional[tuple]:
        if not self._is_open:
            return None

        row = self._child.next()
        if row is None:
            return None

        return tuple(ExpressionEvaluator.evaluate(expr, row) for expr in self._expressions)

    def close(self) -> None:
        self._child.close()
        self._is_open = False


class LimitExecutor(Executor):
    """Limit and offset rows."""

    __slots__ = ("_child", "_limit", "_offset", "_count", "_skipped")

    def __init__(self, child: Executor, limit: Optional[int], offset: int = 0) -> None:
        super().__init__()
        self._child = child
        self._limit = limit
        self._offset = offset
        self._count = 0
        self._skipped = 0

    def open(self) -> None:
        self._child.open()
        self._count = 0
        self._skipped = 0
        self._is_open = True

    def next(self) -> Optional[Any]:
        if not self._is_open:
            return None

        # Skip offset rows
        while self._skipped < self._offset:
            row = self._child.next()
            if row is None:
                return None
            self._skipped += 1

        # Return up to limit rows
        if self._limit is not None and self._count >= self._limit:
            return None

        row = self._child.next()
        if row is not None:
            self._count += 1
        return row

    def close(self) -> None:
        self._child.close()
        self._is_open = False


class ExpressionEvaluator:
    """Evaluate expressions on rows."""

    # Comparison operators
    _COMPARISONS = {
        "=": op_module.eq,
        "!=": op_module.ne,
        "<": op_module.lt,
        ">": op_module.gt,
        "<=": op_module.le,
        ">=": op_module.ge,
    }

    # Arithmetic operators
    _ARITHMETIC = {
        "+": op_module.add,
        "-": op_module.sub,
        "*": op_module.mul,
        "/": op_module.truediv,
        "%": op_module.mod,
    }

    @classmethod
    def matches(cls, predicate: Optional[Expr], row: Row) -> bool:
        """Evaluate a WHERE predicate; NULL and false both reject the row."""
        if predicate is None:
            return True
        return cls.evaluate(predicate, row) is True

    @classmethod
    def evaluate(cls, expr: Expr, row: Row) -> Any:
        """
        Evaluate an expression on a row.

        Args:
            expr: Expression to evaluate
            row: Row data (column name -> value)

        Returns:
            The result of evaluating the expression

        Raises:
            ExecutionError: On type errors or division by zero
        """
        if expr.op == "literal":
            return expr.value

        elif expr.op == "column":
            return row.get(expr.value[1])

        elif expr.op == "binary":
            op = expr.value
            left = cls.evaluate(expr.operands[0], row)
            right = cls.evaluate(expr.operands[1], row)

            if op == "AND":
                # Three-valued logic
                if left is False or right is False:
                    return False
                if left is None or right is None:
                    return None
                return bool(left) and bool(right)

            if op == "OR":
                if left is True or right is True:
                    return True
                if left is None or right is None:
                    return None
                return bool(left) or bool(right)

            if left is None or right is None:
                return None

            try:
                if op in cls._COMPARISONS:
                    return cls._COMPARISONS[op](left, right)
                if op in cls._ARITHMETIC:
                    return cls._ARITHMETIC[op](left, right)
                if op == "LIKE":
                    return cls._like(str(left), str(right))
            except ZeroDivisionError:
                raise ExecutionError("division by zero") from None
            except TypeError as exc:
                raise ExecutionError(f"cannot apply '{op}' to {left!r} and {right!r}") from exc

        elif expr.op == "unary":
            operand = cls.evaluate(expr.operands[0], row)
            op = expr.value

            if op == "NOT":
                return None if operand is None else not bool(operand)
            elif op == "-":
                return -operand if operand is not None else None
            elif op == "IS NULL":
                return operand is None
            elif op == "IS NOT NULL":
                return operand is not None

        elif expr.op == "between":
            value = cls.evaluate(expr.operands[0], row)
            low = cls.evaluate(expr.operands[1], row)
            high = cls.evaluate(expr.operands[2], row)
            if any(v is None for v in [value, low, high]):
                return None
            return low <= value <= high

        elif expr.op == "in":
            value = cls.evaluate(expr.operands[0], row)
            if value is None:
                return None
            values = [cls.evaluate(e, row) for e in expr.operands[1:]]
            return value in values

        elif expr.op == "function":
            # Aggregates were computed upstream and stored under their name
            if expr.is_aggregate:
                return row.get(expression_name(expr))

            func_name = expr.value
            args = [cls.evaluate(arg, row) for arg in expr.operands]
            if len(args) != 1:
                raise ExecutionError(f"{func_name} takes exactly one argument")
            if args[0] is None:
                return None

            if func_name == "UPPER":
                return str(args[0]).upper()
            elif func_name == "LOWER":
                return str(args[0]).lower()
            elif func_name == "LENGTH":
                return len(str(args[0]))
            elif func_name == "ABS":
                return abs(args[0])

        raise ExecutionError(f"cannot evaluate expression {expression_name(expr)}")

    @staticmethod
    def _like(value: str, pattern: str) -> bool:
        regex = "".join(
            ".*" if ch == "%" else "." if ch == "_" else re.escape(ch)
            for ch in pattern
        )
        return re.fullmatch(regex, value, re.DOTALL) is not None


class StatementExecutor:
    """
    Runs parsed statements on behalf of transactions.

    DDL mutates the catalog and the version store immediately and is not
    part of any transaction. DML writes row versions under the calling
    transaction; SELECT reads at a boundary captured when query() is called.

    Thread Safety: Thread-safe; one transaction is used by one caller at a time.
    """

    __slots__ = ("_catalog", "_store", "_coordinator", "_metrics", "_log")

    def __init__(
        self,
        catalog: Catalog,
        store: VersionStore,
        coordinator: TransactionCoordinator,
        metrics: Optional[DatabaseMetrics] = None,
    ) -> None:
        """
        Initialize the executor.

        Args:
            catalog: Table schemas
            store: Row versions
            coordinator: Transaction lifecycle and snapshot boundaries
            metrics: Metrics sink (optional)
        """
        self._catalog = catalog
        self._store = store
        self._coordinator = coordinator
        self._metrics = metrics
        self._log = get_logger(__name__)

    # ─────────────────────────────────────────────────────────────────────────
    # Entry points
    # ─────────────────────────────────────────────────────────────────────────

    def execute(self, txn: Optional[Transaction], stmt: Statement) -> int:
        """
        Execute a DDL or DML statement.

        Args:
            txn: Transaction to write under (None allowed for DDL only)
            stmt: Parsed statement

        Returns:
            Number of rows affected (0 for DDL)

        Raises:
            TransactionClosedError: If txn is not ACTIVE
            SchemaViolationError: Unknown table/column or constraint violation
            LockTimeoutError: If a row lock was not granted in time
            DeadlockError: If waiting for a row lock would deadlock
            ExecutionError: For SELECT or invalid statements
        """
        if isinstance(stmt, SelectStmt):
            raise ExecutionError("SELECT returns rows; use query()")

        if txn is not None:
            self._coordinator.ensure_active(txn)

        started = time.perf_counter()
        if isinstance(stmt, CreateTableStmt):
            kind, affected = "create", self._create_table(stmt)
        elif isinstance(stmt, DropTableStmt):
            kind, affected = "drop", self._drop_table(stmt)
        else:
            if txn is None:
                raise ExecutionError("DML requires a transaction")
            if isinstance(stmt, InsertStmt):
                kind, affected = "insert", self._insert(txn, stmt)
            elif isinstance(stmt, UpdateStmt):
                kind, affected = "update", self._update(txn, stmt)
            elif isinstance(stmt, DeleteStmt):
                kind, affected = "delete", self._delete(txn, stmt)
            else:
                raise ExecutionError(f"Unsupported statement: {type(stmt).__name__}")

        duration = time.perf_counter() - started
        if self._metrics:
            self._metrics.record_statement(kind, duration, affected)
        self._log.debug(
            "statement_executed",
            kind=kind,
            txn_id=txn.txn_id if txn is not None else None,
            rows=affected,
            duration_ms=round(duration * 1000, 3),
        )
        return affected

    def query(self, txn: Transaction, stmt: Statement) -> Tuple[List[str], Iterator[tuple]]:
        """
        Run a SELECT under txn.

        The snapshot boundary is the latest published commit at the time
        of this call and stays fixed while the rows are consumed.

        Returns:
            (column names, lazy iterator of row tuples)

        Raises:
            TransactionClosedError: If txn is not ACTIVE (also raised while
                iterating once txn has ended)
            SchemaViolationError: Unknown table or column
            ExecutionError: For non-SELECT statements
        """
        if not isinstance(stmt, SelectStmt):
            raise ExecutionError("Only SELECT returns rows; use execute()")
        self._coordinator.ensure_active(txn)

        table = self._catalog.require_table(stmt.table)
        columns, executor = self._plan_select(txn, table, stmt)
        return columns, self._instrumented(executor, time.perf_counter())

    def _instrumented(self, executor: Executor, started: float) -> Iterator[tuple]:
        rows = 0
        try:
            for row in executor:
                rows += 1
                yield row
        finally:
            if self._metrics:
                self._metrics.record_statement("select", time.perf_counter() - started, rows)

    # ─────────────────────────────────────────────────────────────────────────
    # SELECT planning
    # ─────────────────────────────────────────────────────────────────────────

    def _plan_select(
        self,
        txn: Transaction,
        table: Table,
        stmt: SelectStmt,
    ) -> Tuple[List[str], Executor]:
        if stmt.is_select_all:
            items = [(Expr("column", [], (None, name)), None) for name in table.column_names]
        else:
            items = stmt.columns

        expressions = [expr for expr, _ in items]
        names = [alias or expression_name(expr) for expr, alias in items]

        for expr in expressions:
            self._validate_expr(table, expr, allow_aggregates=True)
        if stmt.where is not None:
            self._validate_expr(table, stmt.where)

        aggregates = [
            node for expr in expressions for node in expr.walk() if node.is_aggregate
        ]
        if aggregates:
            for expr in expressions:
                if self._has_bare_column(expr):
                    raise ExecutionError(
                        f"column in '{expression_name(expr)}' must appear in an aggregate"
                    )

        boundary = self._coordinator.snapshot_boundary()
        executor: Executor = SeqScanExecutor(self._store, table, txn, boundary)
        if stmt.where is not None:
            executor = FilterExecutor(executor, stmt.where)

        if aggregates:
            executor = AggregateExecutor(executor, aggregates)
        elif stmt.order_by:
            aliases = {alias: expr for expr, alias in items if alias}
            sort_keys = []
            for key, direction in stmt.order_by:
                key = self._resolve_alias(table, key, aliases)
                self._validate_expr(table, key)
                sort_keys.append((key, direction))
            executor = SortExecutor(executor, sort_keys)

        executor = ProjectExecutor(executor, expressions)
        if stmt.limit is not None or stmt.offset:
            executor = LimitExecutor(executor, stmt.limit, stmt.offset)
        return names, executor

    @staticmethod
    def _resolve_alias(table: Table, key: Expr, aliases: Dict[str, Expr]) -> Expr:
        if key.op == "column" and key.value[0] is None:
            name = key.value[1]
            if name in aliases and table.get_column(name) is None:
                return aliases[name]
        return key

    @staticmethod
    def _has_bare_column(expr: Expr) -> bool:
        if expr.op == "column":
            return True
        if expr.is_aggregate:
            return False
        return any(
            isinstance(operand, Expr) and StatementExecutor._has_bare_column(operand)
            for operand in expr.operands
        )

    def _validate_expr(self, table: Table, expr: Expr, allow_aggregates: bool = False) -> None:
        """
        Check column references and function names before execution.

        Raises:
            ColumnNotFoundError: If a column is unknown
            ExecutionError: For misplaced aggregates or unknown functions
        """
        for node in expr.walk():
            if node.op == "column":
                qualifier, name = node.value
                if qualifier is not None and qualifier != table.name:
                    raise ColumnNotFoundError(table.name, f"{qualifier}.{name}")
                table.require_column(name)
            elif node.op == "function":
                if node.is_aggregate:
                    if not allow_aggregates:
                        raise ExecutionError(f"aggregate {node.value} not allowed here")
                    nested = [n for arg in node.operands for n in arg.walk() if n.is_aggregate]
                    if nested:
                        raise ExecutionError("aggregates cannot be nested")
                    if len(node.operands) != 1:
                        raise ExecutionError(f"{node.value} takes exactly one argument")
                elif node.value not in SCALAR_FUNCTIONS:
                    raise ExecutionError(f"unknown function {node.value}")
            elif node.op == "star" and not allow_aggregates:
                raise ExecutionError("'*' is only valid in COUNT(*)")

    # ─────────────────────────────────────────────────────────────────────────
    # DDL
    # ─────────────────────────────────────────────────────────────────────────

    def _create_table(self, stmt: CreateTableStmt) -> int:
        columns = []
        for col_def in stmt.columns:
            column = Column(
                name=col_def["name"],
                data_type=col_def["type"],
                nullable=col_def["nullable"],
                max_length=col_def["max_length"],
                primary_key=col_def["name"] in stmt.primary_key,
            )
            if col_def["default"] is not None:
                default = ExpressionEvaluator.evaluate(col_def["default"], {})
                column.default = column.coerce(default, stmt.table)
            columns.append(column)

        table = Table(stmt.table, columns, stmt.primary_key)
        self._catalog.create_table(table)
        try:
            self._store.create_table(table.name)
        except Exception:
            self._catalog.drop_table(table.name)
            raise

        self._log.info("table_created", table=table.name, columns=table.column_names)
        return 0

    def _drop_table(self, stmt: DropTableStmt) -> int:
        if stmt.if_exists and not self._catalog.table_exists(stmt.table):
            return 0
        table = self._catalog.drop_table(stmt.table)
        self._store.drop_table(table.name)
        self._log.info("table_dropped", table=table.name)
        return 0

    # ─────────────────────────────────────────────────────────────────────────
    # DML
    # ─────────────────────────────────────────────────────────────────────────

    def _insert(self, txn: Transaction, stmt: InsertStmt) -> int:
        table = self._catalog.require_table(stmt.table)
        names = stmt.columns or table.column_names
        for name in names:
            table.require_column(name)
        if len(set(names)) != len(names):
            raise ExecutionError("duplicate column in INSERT column list")

        payloads = []
        for values in stmt.values:
            if len(values) != len(names):
                raise ExecutionError(
                    f"INSERT has {len(values)} values for {len(names)} columns"
                )
            row = {}
            for name, expr in zip(names, values):
                if any(node.op == "column" for node in expr.walk()):
                    raise ExecutionError("column references are not allowed in VALUES")
                row[name] = ExpressionEvaluator.evaluate(expr, {})
            payloads.append(table.build_payload(row))

        self._check_primary_key(txn, table, payloads, replaced=())

        for payload in payloads:
            self._store.write(txn, table.name, None, payload, WriteOp.INSERT)
        return len(payloads)

    def _update(self, txn: Transaction, stmt: UpdateStmt) -> int:
        table = self._catalog.require_table(stmt.table)
        for name, expr in stmt.assignments:
            table.require_column(name)
            self._validate_expr(table, expr)
        if stmt.where is not None:
            self._validate_expr(table, stmt.where)

        def new_payload(payload: Payload) -> Payload:
            row = table.to_dict(payload)
            changes = {
                name: ExpressionEvaluator.evaluate(expr, row)
                for name, expr in stmt.assignments
            }
            return table.replace_values(payload, changes)

        staged = self._stage(txn, table, stmt.where, new_payload)

        pk_columns = set(table.primary_key)
        if pk_columns & {name for name, _ in stmt.assignments}:
            try:
                self._check_primary_key(
                    txn,
                    table,
                    [payload for _, payload in staged],
                    replaced={row_id for row_id, _ in staged},
                )
            except ConstraintViolationError:
                self._store.unlock_rows(txn, table.name, [row_id for row_id, _ in staged])
                raise

        for row_id, payload in staged:
            self._store.write(txn, table.name, row_id, payload, WriteOp.UPDATE)
        return len(staged)

    def _delete(self, txn: Transaction, stmt: DeleteStmt) -> int:
        table = self._catalog.require_table(stmt.table)
        if stmt.where is not None:
            self._validate_expr(table, stmt.where)

        staged = self._stage(txn, table, stmt.where, None)
        for row_id, _ in staged:
            self._store.write(txn, table.name, row_id, None, WriteOp.DELETE)
        return len(staged)

    def _stage(
        self,
        txn: Transaction,
        table: Table,
        where: Optional[Expr],
        transform: Optional[Callable[[Payload], Payload]],
    ) -> List[Tuple[int, Optional[Payload]]]:
        """
        Lock and re-check the rows an UPDATE or DELETE targets.

        Candidates are the rows matching `where` at the statement boundary.
        Each is locked, re-read at its latest committed (or own) version
        and re-checked, so concurrent committed changes are honoured and
        concurrently deleted rows are skipped.

        Returns:
            (row_id, new payload) for every row to write; payload is None
            when transform is None
        """
        boundary = self._coordinator.snapshot_boundary()
        candidates = [
            row_id
            for row_id, payload in self._store.read_all(table.name, txn, boundary)
            if ExpressionEvaluator.matches(where, table.to_dict(payload))
        ]

        newly_locked: List[int] = []
        staged: List[Tuple[int, Optional[Payload]]] = []
        try:
            for row_id in candidates:
                if self._store.lock_row(txn, table.name, row_id):
                    newly_locked.append(row_id)

                latest = self._store.read(table.name, row_id, txn, LATEST)
                if latest is None:
                    continue
                if not ExpressionEvaluator.matches(where, table.to_dict(latest)):
                    continue
                staged.append((row_id, transform(latest) if transform else None))
        except BaseException:
            self._store.unlock_rows(txn, table.name, newly_locked)
            raise

        # Rows skipped after locking are not written; free them
        skipped = set(newly_locked) - {row_id for row_id, _ in staged}
        if skipped:
            self._store.unlock_rows(txn, table.name, sorted(skipped))
        return staged

    def _check_primary_key(
        self,
        txn: Transaction,
        table: Table,
        payloads: List[Payload],
        replaced,
    ) -> None:
        """
        Reject payloads whose primary key duplicates a visible row or each other.

        Args:
            replaced: Row IDs being overwritten by the statement (ignored)

        Raises:
            ConstraintViolationError: On a duplicate key
        """
        if not table.primary_key:
            return

        boundary = self._coordinator.snapshot_boundary()
        seen = {
            table.primary_key_of(payload)
            for row_id, payload in self._store.read_all(table.name, txn, boundary)
            if row_id not in replaced
        }
        for payload in payloads:
            key = table.primary_key_of(payload)
            if key in seen:
                raise ConstraintViolationError(
                    table.name,
                    ",".join(table.primary_key),
                    f"duplicate primary key {key if len(key) > 1 else key[0]!r}",
                )
            seen.add(key)

    def __repr__(self) -> str:
        return f"StatementExecutor(tables={self._catalog.table_names})"
