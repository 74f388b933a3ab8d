"""
SQL Parser using Lark grammar.

Parses SQL statement text into statement objects consumed by the
statement executor.

Supported Statements:
- SELECT (projection, aggregates, WHERE, ORDER BY, LIMIT/OFFSET)
- INSERT (multi-row VALUES)
- UPDATE
- DELETE
- CREATE TABLE
- DROP TABLE [IF EXISTS]

Identifiers are case-insensitive and folded to lower case.
"""

from dataclasses import dataclass
from typing import List, Optional, Any, Union
from lark import Lark, Transformer
from lark.exceptions import LarkError, UnexpectedInput

from verso.catalog.schema import DataType
from verso.utils.errors import ParseError


# SQL Grammar definition
SQL_GRAMMAR = r"""
    ?start: statement

    ?statement: select_stmt
              | insert_stmt
              | update_stmt
              | delete_stmt
              | create_table_stmt
              | drop_table_stmt

    // SELECT
    select_stmt: "SELECT"i select_list "FROM"i NAME where_clause? order_by_clause? limit_clause?

    select_list: "*" -> select_all
               | select_item ("," select_item)* -> select_columns

    select_item: expr alias? -> select_expr

    alias: "AS"i? NAME

    where_clause: "WHERE"i expr

    order_by_clause: "ORDER"i "BY"i order_item ("," order_item)*
    order_item: expr order_direction?
    order_direction: "ASC"i -> asc
                   | "DESC"i -> desc

    limit_clause: "LIMIT"i NUMBER ("OFFSET"i NUMBER)?

    // INSERT
    insert_stmt: "INSERT"i "INTO"i NAME column_list? "VALUES"i row_values ("," row_values)*

    column_list: "(" NAME ("," NAME)* ")"

    row_values: "(" expr ("," expr)* ")"

    // UPDATE
    update_stmt: "UPDATE"i NAME "SET"i set_clause ("," set_clause)* where_clause?

    set_clause: NAME "=" expr

    // DELETE
    delete_stmt: "DELETE"i "FROM"i NAME where_clause?

    // CREATE TABLE
    create_table_stmt: "CREATE"i "TABLE"i NAME "(" column_def ("," column_def)* ("," table_constraint)* ")"

    column_def: NAME data_type column_constraint*

    data_type: "TINYINT"i -> type_tinyint
             | "SMALLINT"i -> type_smallint
             | "INTEGER"i -> type_int
             | "INT"i -> type_int
             | "BIGINT"i -> type_bigint
             | "FLOAT"i -> type_float
             | "DOUBLE"i -> type_float
             | "REAL"i -> type_float
             | "BOOLEAN"i -> type_bool
             | "BOOL"i -> type_bool
             | "VARCHAR"i "(" NUMBER ")" -> type_varchar
             | "NVARCHAR"i "(" NUMBER ")" -> type_varchar
             | "TEXT"i -> type_text

    column_constraint: "NOT"i "NULL"i -> not_null
                     | "NULL"i -> nullable
                     | "PRIMARY"i "KEY"i -> primary_key
                     | "DEFAULT"i expr -> default_value

    table_constraint: "PRIMARY"i "KEY"i "(" NAME ("," NAME)* ")" -> pk_constraint

    // DROP TABLE
    drop_table_stmt: "DROP"i "TABLE"i "IF"i "EXISTS"i NAME -> drop_if_exists
                   | "DROP"i "TABLE"i NAME -> drop_table

    // Expressions
    ?expr: or_expr

    ?or_expr: and_expr
            | or_expr "OR"i and_expr -> or_op

    ?and_expr: not_expr
             | and_expr "AND"i not_expr -> and_op

    ?not_expr: "NOT"i not_expr -> not_op
             | comparison

    ?comparison: add_expr
               | comparison "=" add_expr -> eq
               | comparison "!=" add_expr -> ne
               | comparison "<>" add_expr -> ne
               | comparison "<" add_expr -> lt
               | comparison ">" add_expr -> gt
               | comparison "<=" add_expr -> le
               | comparison ">=" add_expr -> ge
               | comparison "IS"i "NULL"i -> is_null
               | comparison "IS"i "NOT"i "NULL"i -> is_not_null
               | comparison "LIKE"i add_expr -> like
               | comparison "IN"i "(" expr ("," expr)* ")" -> in_list
               | comparison "BETWEEN"i add_expr "AND"i add_expr -> between

    ?add_expr: mul_expr
             | add_expr "+" mul_expr -> add
             | add_expr "-" mul_expr -> sub

    ?mul_expr: unary_expr
             | mul_expr "*" unary_expr -> mul
             | mul_expr "/" unary_expr -> div
             | mul_expr "%" unary_expr -> mod

    ?unary_expr: "-" unary_expr -> neg
              | atom

    ?atom: literal
         | column_ref
         | func_call
         | "(" expr ")"

    column_ref: NAME "." NAME -> qualified_column
              | NAME -> simple_column

    func_call: NAME "(" func_args? ")"

    func_args: "*" -> count_all
             | "DISTINCT"i expr -> distinct_arg
             | expr ("," expr)* -> arg_list

    ?literal: NUMBER -> number
            | ESCAPED_STRING -> string
            | "TRUE"i -> true
            | "FALSE"i -> false
            | "NULL"i -> null

    NAME: /[a-zA-Z_][a-zA-Z0-9_]*/
    NUMBER: /[0-9]+(\.[0-9]+)?/
    ESCAPED_STRING: "'" /([^']|'')*/ "'"

    COMMENT: /--[^\n]*/

    %import common.WS
    %ignore WS
    %ignore COMMENT
"""


AGGREGATE_FUNCTIONS = frozenset({"COUNT", "SUM", "MIN", "MAX", "AVG"})


@dataclass
class Expr:
    """
    Expression node.

    op is one of 'literal', 'column', 'binary', 'unary', 'between',
    'in', 'function', 'star', 'distinct'.
    """

    __slots__ = ("op", "operands", "value")

    op: str
    operands: List[Any]
    value: Any

    @property
    def is_aggregate(self) -> bool:
        return self.op == "function" and self.value in AGGREGATE_FUNCTIONS

    def walk(self):
        """Yield this node and every nested expression."""
        yield self
        for operand in self.operands:
            if isinstance(operand, Expr):
                yield from operand.walk()


@dataclass
class SelectStmt:
    """SELECT statement representation."""

    __slots__ = (
        "columns",
        "table",
        "where",
        "order_by",
        "limit",
        "offset",
        "is_select_all",
    )

    columns: List[tuple]  # [(expr, alias), ...]
    table: str
    where: Optional[Expr]
    order_by: Optional[List[tuple]]  # [(expr, 'ASC'|'DESC'), ...]
    limit: Optional[int]
    offset: int
    is_select_all: bool


@dataclass
class InsertStmt:
    """INSERT statement representation."""

    __slots__ = ("table", "columns", "values")

    table: str
    columns: Optional[List[str]]
    values: List[List[Expr]]


@dataclass
class UpdateStmt:
    """UPDATE statement representation."""

    __slots__ = ("table", "assignments", "where")

    table: str
    assignments: List[tuple]  # [(column, expr), ...]
    where: Optional[Expr]


@dataclass
class DeleteStmt:
    """DELETE statement representation."""

    __slots__ = ("table", "where")

    table: str
    where: Optional[Expr]


@dataclass
class CreateTableStmt:
    """CREATE TABLE statement representation."""

    __slots__ = ("table", "columns", "primary_key")

    table: str
    columns: List[dict]  # [{name, type, nullable, default, pk, max_length}, ...]
    primary_key: List[str]


@dataclass
class DropTableStmt:
    """DROP TABLE statement representation."""

    __slots__ = ("table", "if_exists")

    table: str
    if_exists: bool


Statement = Union[SelectStmt, InsertStmt, UpdateStmt, DeleteStmt, CreateTableStmt, DropTableStmt]

DDL_STATEMENTS = (CreateTableStmt, DropTableStmt)


def _name(token) -> str:
    return token.value.lower()


class SQLTransformer(Transformer):
    """Transform Lark parse tree to statement objects."""

    # Literals
    def number(self, items):
        val = items[0].value
        return Expr("literal", [], float(val) if "." in val else int(val))

    def string(self, items):
        return Expr("literal", [], items[0].value[1:-1].replace("''", "'"))

    def true(self, _):
        return Expr("literal", [], True)

    def false(self, _):
        return Expr("literal", [], False)

    def null(self, _):
        return Expr("literal", [], None)

    # Column references
    def simple_column(self, items):
        return Expr("column", [], (None, _name(items[0])))

    def qualified_column(self, items):
        return Expr("column", [], (_name(items[0]), _name(items[1])))

    # Binary operations
    def _binary(op):
        def build(self, items):
            return Expr("binary", [items[0], items[1]], op)
        return build

    eq = _binary("=")
    ne = _binary("!=")
    lt = _binary("<")
    gt = _binary(">")
    le = _binary("<=")
    ge = _binary(">=")
    add = _binary("+")
    sub = _binary("-")
    mul = _binary("*")
    div = _binary("/")
    mod = _binary("%")
    and_op = _binary("AND")
    or_op = _binary("OR")
    like = _binary("LIKE")

    del _binary

    def between(self, items):
        return Expr("between", [items[0], items[1], items[2]], "BETWEEN")

    def in_list(self, items):
        return Expr("in", list(items), "IN")

    # Unary operations
    def not_op(self, items):
        return Expr("unary", [items[0]], "NOT")

    def neg(self, items):
        operand = items[0]
        if operand.op == "literal" and isinstance(operand.value, (int, float)):
            return Expr("literal", [], -operand.value)
        return Expr("unary", [operand], "-")

    def is_null(self, items):
        return Expr("unary", [items[0]], "IS NULL")

    def is_not_null(self, items):
        return Expr("unary", [items[0]], "IS NOT NULL")

    # Function calls
    def func_call(self, items):
        name = items[0].value.upper()
        args = items[1] if len(items) > 1 else []
        return Expr("function", args, name)

    def count_all(self, _):
        return [Expr("star", [], "*")]

    def distinct_arg(self, items):
        return [Expr("distinct", [items[0]], "DISTINCT")]

    def arg_list(self, items):
        return list(items)

    # SELECT
    def select_all(self, _):
        return ("*", None)

    def select_columns(self, items):
        return list(items)

    def alias(self, items):
        return _name(items[0])

    def select_expr(self, items):
        expr = items[0]
        alias = items[1] if len(items) > 1 else None
        return (expr, alias)

    def where_clause(self, items):
        return ("where", items[0])

    def order_by_clause(self, items):
        return ("order_by", list(items))

    def order_item(self, items):
        expr = items[0]
        direction = items[1] if len(items) > 1 else "ASC"
        return (expr, direction)

    def asc(self, _):
        return "ASC"

    def desc(self, _):
        return "DESC"

    def limit_clause(self, items):
        limit = int(items[0].value)
        offset = int(items[1].value) if len(items) > 1 else 0
        return ("limit", (limit, offset))

    def select_stmt(self, items):
        select_list = items[0]
        clauses = dict(items[2:])
        limit, offset = clauses.get("limit", (None, 0))

        is_select_all = select_list == ("*", None)

        return SelectStmt(
            columns=[] if is_select_all else select_list,
            table=_name(items[1]),
            where=clauses.get("where"),
            order_by=clauses.get("order_by"),
            limit=limit,
            offset=offset,
            is_select_all=is_select_all,
        )

    # INSERT
    def column_list(self, items):
        return [_name(item) for item in items]

    def row_values(self, items):
        return ("row", list(items))

    def insert_stmt(self, items):
        columns = None
        values = []
        for item in items[1:]:
            if isinstance(item, tuple) and item[0] == "row":
                values.append(item[1])
            else:
                columns = item
        return InsertStmt(table=_name(items[0]), columns=columns, values=values)

    # UPDATE
    def set_clause(self, items):
        return (_name(items[0]), items[1])

    def update_stmt(self, items):
        assignments = []
        where = None
        for item in items[1:]:
            if item[0] == "where":
                where = item[1]
            else:
                assignments.append(item)
        return UpdateStmt(table=_name(items[0]), assignments=assignments, where=where)

    # DELETE
    def delete_stmt(self, items):
        where = items[1][1] if len(items) > 1 else None
        return DeleteStmt(table=_name(items[0]), where=where)

    # CREATE TABLE
    def type_tinyint(self, _):
        return DataType.TINYINT

    def type_smallint(self, _):
        return DataType.SMALLINT

    def type_int(self, _):
        return DataType.INTEGER

    def type_bigint(self, _):
        return DataType.BIGINT

    def type_float(self, _):
        return DataType.FLOAT

    def type_bool(self, _):
        return DataType.BOOLEAN

    def type_varchar(self, items):
        return (DataType.VARCHAR, int(items[0].value))

    def type_text(self, _):
        return DataType.TEXT

    def not_null(self, _):
        return ("nullable", False)

    def nullable(self, _):
        return ("nullable", True)

    def primary_key(self, _):
        return ("pk", True)

    def default_value(self, items):
        return ("default", items[0])

    def column_def(self, items):
        dtype = items[1]
        max_length = None
        if isinstance(dtype, tuple):
            dtype, max_length = dtype

        column = {
            "name": _name(items[0]),
            "type": dtype,
            "nullable": True,
            "default": None,
            "pk": False,
            "max_length": max_length,
        }
        for key, val in items[2:]:
            column[key] = val
        if column["pk"]:
            column["nullable"] = False
        return column

    def pk_constraint(self, items):
        return ("pk_constraint", [_name(item) for item in items])

    def create_table_stmt(self, items):
        columns = []
        primary_key = []

        for item in items[1:]:
            if isinstance(item, dict):
                columns.append(item)
                if item["pk"]:
                    primary_key.append(item["name"])
            else:
                primary_key = item[1]

        return CreateTableStmt(table=_name(items[0]), columns=columns, primary_key=primary_key)

    # DROP TABLE
    def drop_table(self, items):
        return DropTableStmt(table=_name(items[0]), if_exists=False)

    def drop_if_exists(self, items):
        return DropTableStmt(table=_name(items[0]), if_exists=True)


class SQLParser:
    """
    SQL Parser.

    Parses SQL statements into statement objects.

    Thread Safety: Thread-safe (parser is stateless).
    """

    __slots__ = ("_parser", "_transformer", "_max_length")

    def __init__(self, max_query_length: int = 1024 * 1024) -> None:
        """Initialize parser."""
        self._parser = Lark(SQL_GRAMMAR, start="start", parser="lalr")
        self._transformer = SQLTransformer()
        self._max_length = max_query_length

    def parse(self, sql: str) -> Statement:
        """
        Parse a SQL statement.

        Args:
            sql: SQL statement string (a trailing ';' is allowed)

        Returns:
            Parsed statement object

        Raises:
            ParseError: If SQL is invalid or too long
        """
        if len(sql) > self._max_length:
            raise ParseError(sql[:80], self._max_length, f"statement longer than {self._max_length} characters")

        text = sql.strip()
        if text.endswith(";"):
            text = text[:-1]

        try:
            tree = self._parser.parse(text)
            return self._transformer.transform(tree)
        except UnexpectedInput as exc:
            reason = (str(exc).strip().splitlines() or ["unexpected input"])[0]
            raise ParseError(sql, max(exc.pos_in_stream or 0, 0), reason) from exc
        except LarkError as exc:
            raise ParseError(sql, 0, str(exc)) from exc

    def __repr__(self) -> str:
        return "SQLParser()"
