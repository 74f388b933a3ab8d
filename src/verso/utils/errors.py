"""
Custom exception hierarchy for Verso DB.

Every error the engine raises derives from VersoError so callers can
catch the whole family in one place. Subclasses carry the identifiers
involved (transaction id, table, column) as attributes.

Retriable: LockTimeoutError, DeadlockError.
Non-retriable: everything else (caller must fix the statement or stop
using the transaction).
"""

from typing import Any


class VersoError(Exception):
    """Base exception for all Verso database errors."""

    pass


# Transaction Layer Exceptions


class TransactionError(VersoError):
    """Base exception for transaction-related errors."""

    pass


class InvalidTransactionStateError(TransactionError):
    """Raised when an operation requires an Active transaction and it is not."""

    def __init__(self, txn_id: int, state: str, operation: str):
        super().__init__(
            f"Cannot {operation} transaction {txn_id}: transaction is {state}"
        )
        self.txn_id = txn_id
        self.state = state
        self.operation = operation


class TransactionClosedError(InvalidTransactionStateError):
    """Raised when a statement is submitted against a terminal handle."""

    def __init__(self, txn_id: int, state: str):
        super().__init__(txn_id, state, "execute statements on")


class LockTimeoutError(TransactionError):
    """Raised when a row write lock could not be acquired in time."""

    def __init__(self, txn_id: int, holder_txn_id: int, resource: str, timeout_ms: int):
        super().__init__(
            f"Lock timeout: transaction {txn_id} waited {timeout_ms}ms for "
            f"{resource} held by transaction {holder_txn_id}"
        )
        self.txn_id = txn_id
        self.holder_txn_id = holder_txn_id
        self.resource = resource
        self.timeout_ms = timeout_ms


class DeadlockError(TransactionError):
    """Raised when waiting for a row lock would close a wait-for cycle."""

    def __init__(self, txn_id: int, conflicting_txn_id: int):
        super().__init__(
            f"Deadlock detected: transaction {txn_id} "
            f"conflicts with transaction {conflicting_txn_id}"
        )
        self.txn_id = txn_id
        self.conflicting_txn_id = conflicting_txn_id


class CapacityExceededError(TransactionError):
    """Raised when transaction-id or commit-sequence space is exhausted."""

    def __init__(self, resource: str, limit: int):
        super().__init__(f"Capacity exceeded: {resource} reached limit {limit}")
        self.resource = resource
        self.limit = limit


# Query Layer Exceptions


class QueryError(VersoError):
    """Base exception for query-related errors."""

    pass


class ParseError(QueryError):
    """Raised when SQL parsing fails."""

    def __init__(self, sql: str, position: int, reason: str):
        super().__init__(f"Parse error at position {position}: {reason}\nSQL: {sql}")
        self.sql = sql
        self.position = position
        self.reason = reason


class ExecutionError(QueryError):
    """Raised when statement execution fails."""

    def __init__(self, reason: str):
        super().__init__(f"Statement execution failed: {reason}")
        self.reason = reason


# Schema Exceptions


class SchemaViolationError(VersoError):
    """Raised when a statement references unknown schema objects or breaks constraints."""

    pass


class TableNotFoundError(SchemaViolationError):
    """Raised when table does not exist."""

    def __init__(self, table_name: str):
        super().__init__(f"Table not found: {table_name}")
        self.table_name = table_name


class TableExistsError(SchemaViolationError):
    """Raised when creating a table whose name is taken."""

    def __init__(self, table_name: str):
        super().__init__(f"Table already exists: {table_name}")
        self.table_name = table_name


class ColumnNotFoundError(SchemaViolationError):
    """Raised when column does not exist."""

    def __init__(self, table_name: str, column_name: str):
        super().__init__(f"Column '{column_name}' not found in table '{table_name}'")
        self.table_name = table_name
        self.column_name = column_name


class ConstraintViolationError(SchemaViolationError):
    """Raised when a value breaks a column type or declared constraint."""

    def __init__(self, table_name: str, column_name: str, reason: str):
        super().__init__(
            f"Constraint violation on {table_name}.{column_name}: {reason}"
        )
        self.table_name = table_name
        self.column_name = column_name
        self.reason = reason


# Client Exceptions


class SessionError(VersoError):
    """Raised when a database or connection is used in the wrong state."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


# Validation Exceptions


class ValidationError(VersoError):
    """Raised when input validation fails."""

    pass


class ConfigurationError(ValidationError):
    """Raised when configuration is invalid."""

    def __init__(self, key: str, value: Any, reason: str):
        super().__init__(f"Invalid configuration '{key}={value}': {reason}")
        self.key = key
        self.value = value
        self.reason = reason
