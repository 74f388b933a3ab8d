"""
Schema definitions for the database catalog.

Provides data types, column definitions, and table schemas.
The catalog is the source of truth for table metadata; it is mutated
only by DDL, which takes effect immediately (auto-commit).

Key Components:
- DataType: Supported data types (TINYINT, VARCHAR, etc.)
- Column: Column definition with name, type, constraints and value coercion
- Table: Table schema with columns and primary key
- Catalog: Thread-safe in-memory catalog manager
"""

from enum import Enum, auto
from typing import Optional, Dict, List, Any, Tuple
import threading

from verso.utils.errors import (
    ColumnNotFoundError,
    ConstraintViolationError,
    SchemaViolationError,
    TableExistsError,
    TableNotFoundError,
)


class DataType(Enum):
    """Supported data types."""

    TINYINT = auto()  # Unsigned 8-bit integer (0..255)
    SMALLINT = auto()  # 2-byte signed integer
    INTEGER = auto()  # 4-byte signed integer
    BIGINT = auto()  # 8-byte signed integer
    FLOAT = auto()  # Double precision
    BOOLEAN = auto()
    VARCHAR = auto()  # Variable-length string (with max length)
    TEXT = auto()  # Unlimited length string


# Inclusive value ranges for integer types
INTEGER_RANGES = {
    DataType.TINYINT: (0, 255),
    DataType.SMALLINT: (-(2**15), 2**15 - 1),
    DataType.INTEGER: (-(2**31), 2**31 - 1),
    DataType.BIGINT: (-(2**63), 2**63 - 1),
}


# Row payloads are stored as tuples in column order
Payload = Tuple[Any, ...]


class Column:
    """
    Column definition in a table schema.

    Attributes:
        name: Column name (lower case)
        data_type: Data type
        nullable: Whether NULL values are allowed
        max_length: Maximum length for VARCHAR
        default: Default value used when an INSERT omits the column
        primary_key: Is this column part of the primary key
    """

    __slots__ = ("name", "data_type", "nullable", "max_length", "default", "primary_key")

    def __init__(
        self,
        name: str,
        data_type: DataType,
        nullable: bool = True,
        max_length: Optional[int] = None,
        default: Optional[Any] = None,
        primary_key: bool = False,
    ) -> None:
        self.name = name.lower()
        self.data_type = data_type
        self.nullable = nullable
        self.max_length = max_length
        self.default = default
        self.primary_key = primary_key

        if self.data_type == DataType.VARCHAR and self.max_length is None:
            raise SchemaViolationError(f"VARCHAR column '{self.name}' requires max_length")
        if self.primary_key:
            self.nullable = False

    def coerce(self, value: Any, table_name: str) -> Any:
        """
        Validate a value against this column and convert it to canonical form.

        Raises:
            ConstraintViolationError: If the value does not fit the column
        """
        if value is None:
            if not self.nullable:
                raise ConstraintViolationError(table_name, self.name, "cannot be NULL")
            return None

        if self.data_type in INTEGER_RANGES:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise self._type_error(value, table_name)
            if isinstance(value, float):
                if not value.is_integer():
                    raise self._type_error(value, table_name)
                value = int(value)
            low, high = INTEGER_RANGES[self.data_type]
            if not low <= value <= high:
                raise ConstraintViolationError(
                    table_name,
                    self.name,
                    f"value {value} out of range for {self.data_type.name} [{low}, {high}]",
                )
            return value

        if self.data_type == DataType.FLOAT:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise self._type_error(value, table_name)
            return float(value)

        if self.data_type == DataType.BOOLEAN:
            if not isinstance(value, bool):
                raise self._type_error(value, table_name)
            return value

        # VARCHAR / TEXT
        if not isinstance(value, str):
            raise self._type_error(value, table_name)
        if self.max_length is not None and len(value) > self.max_length:
            raise ConstraintViolationError(
                table_name,
                self.name,
                f"value too long: {len(value)} > {self.max_length}",
            )
        return value

    def _type_error(self, value: Any, table_name: str) -> ConstraintViolationError:
        return ConstraintViolationError(
            table_name,
            self.name,
            f"{value!r} is not a valid {self.data_type.name}",
        )

    def __repr__(self) -> str:
        return f"Column({self.name}, {self.data_type.name})"


class Table:
    """
    Table schema definition.

    Attributes:
        name: Table name (lower case)
        columns: Ordered list of columns
        primary_key: List of primary key column names
    """

    __slots__ = ("name", "columns", "primary_key", "_column_map")

    def __init__(
        self,
        name: str,
        columns: List[Column],
        primary_key: Optional[List[str]] = None,
    ) -> None:
        self.name = name.lower()
        self.columns = columns
        self.primary_key = [c.lower() for c in (primary_key or [])]

        if not self.columns:
            raise SchemaViolationError(f"Table '{self.name}' must have at least one column")

        self._column_map: Dict[str, Tuple[int, Column]] = {}
        for i, col in enumerate(self.columns):
            if col.name in self._column_map:
                raise SchemaViolationError(
                    f"Duplicate column '{col.name}' in table '{self.name}'"
                )
            self._column_map[col.name] = (i, col)

        for pk_col in self.primary_key:
            if pk_col not in self._column_map:
                raise ColumnNotFoundError(self.name, pk_col)
            column = self._column_map[pk_col][1]
            column.primary_key = True
            column.nullable = False

    def get_column(self, name: str) -> Optional[Column]:
        """Get column by name."""
        entry = self._column_map.get(name.lower())
        return entry[1] if entry else None

    def get_column_index(self, name: str) -> Optional[int]:
        """Get column position by name."""
        entry = self._column_map.get(name.lower())
        return entry[0] if entry else None

    def require_column(self, name: str) -> int:
        """Get column position by name or raise ColumnNotFoundError."""
        index = self.get_column_index(name)
        if index is None:
            raise ColumnNotFoundError(self.name, name)
        return index

    def build_payload(self, values: Dict[str, Any]) -> Payload:
        """
        Build a row payload from column values.

        Omitted columns take their default. Every value is coerced.

        Raises:
            ColumnNotFoundError: If values names an unknown column
            ConstraintViolationError: If a value breaks a column constraint
        """
        for name in values:
            self.require_column(name)

        lowered = {k.lower(): v for k, v in values.items()}
        return tuple(
            col.coerce(lowered.get(col.name, col.default), self.name)
            for col in self.columns
        )

    def replace_values(self, payload: Payload, changes: Dict[str, Any]) -> Payload:
        """Return a copy of payload with some columns changed and coerced."""
        row = list(payload)
        for name, value in changes.items():
            index = self.require_column(name)
            row[index] = self.columns[index].coerce(value, self.name)
        return tuple(row)

    def primary_key_of(self, payload: Payload) -> Optional[Tuple[Any, ...]]:
        """Extract the primary key tuple from a payload, or None if the table has no key."""
        if not self.primary_key:
            return None
        return tuple(payload[self._column_map[name][0]] for name in self.primary_key)

    def to_dict(self, payload: Payload) -> Dict[str, Any]:
        """Map a payload to column name -> value."""
        return dict(zip(self.column_names, payload))

    @property
    def column_count(self) -> int:
        """Get number of columns."""
        return len(self.columns)

    @property
    def column_names(self) -> List[str]:
        """Get list of column names."""
        return [col.name for col in self.columns]

    def __repr__(self) -> str:
        return f"Table({self.name}, {len(self.columns)} columns)"


class Catalog:
    """
    In-memory database catalog.

    Manages table schemas and provides metadata lookup.

    Thread Safety: Thread-safe via internal locking.
    """

    __slots__ = ("_tables", "_lock")

    def __init__(self) -> None:
        """Initialize empty catalog."""
        self._tables: Dict[str, Table] = {}
        self._lock = threading.Lock()

    def create_table(self, table: Table) -> None:
        """
        Register a new table.

        Raises:
            TableExistsError: If table already exists
        """
        with self._lock:
            if table.name in self._tables:
                raise TableExistsError(table.name)
            self._tables[table.name] = table

    def drop_table(self, name: str) -> Table:
        """
        Remove a table from the catalog.

        Raises:
            TableNotFoundError: If table doesn't exist
        """
        with self._lock:
            table = self._tables.pop(name.lower(), None)
        if table is None:
            raise TableNotFoundError(name)
        return table

    def get_table(self, name: str) -> Optional[Table]:
        """Get table schema by name."""
        return self._tables.get(name.lower())

    def require_table(self, name: str) -> Table:
        """Get table schema by name or raise TableNotFoundError."""
        table = self.get_table(name)
        if table is None:
            raise TableNotFoundError(name)
        return table

    def table_exists(self, name: str) -> bool:
        """Check if a table exists."""
        return name.lower() in self._tables

    @property
    def table_names(self) -> List[str]:
        """Get list of all table names."""
        with self._lock:
            return list(self._tables.keys())

    def __repr__(self) -> str:
        """String representation."""
        return f"Catalog(tables={self.table_names})"
