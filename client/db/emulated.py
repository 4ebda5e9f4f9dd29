"""In-process encrypted-column server and the encryption-aware driver for it.

The server stores ciphertext in a SQLAlchemy-managed database and never holds
a column key.  Like SQL Server it can describe which parameters of a statement
target encrypted columns, it compares deterministic ciphertext byte for byte,
and it refuses predicates an encryption scheme cannot support.  The driver
(``EmulatedConnection``) does the client half: it asks for parameter metadata,
encrypts bound values and decrypts result columns when the column encryption
setting is enabled.

Only the T-SQL the demo issues is understood::

    SELECT * FROM <table> [WHERE <column> <op> @param]
    SELECT COUNT(*) FROM <table> [WHERE <column> <op> @param]
    INSERT INTO <table> [(<columns>)] VALUES (@a, @b, ...)
"""

from __future__ import annotations

import logging
import operator
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import sqlalchemy as sa
from sqlalchemy import func, insert, select
from sqlalchemy.engine import make_url
from sqlalchemy.pool import StaticPool

from config import Settings
from crypto import decrypt_value, encrypt_value
from db.commands import (
    Command,
    CommandType,
    DatabaseConnection,
    Parameter,
    ParameterBinder,
    ParameterDirection,
    SqlType,
    describe_type,
)
from db.encrypted_type import Ciphertext, EncryptedColumn
from errors import encryption_scheme_mismatch, parameter_type_mismatch, unsupported
from models.database import Base, Customer, EncryptionType, encrypted_columns
from models.schemas import ConnectionConfig

logger = logging.getLogger(__name__)

_PREDICATE = r"(?:\s+WHERE\s+(?P<column>\w+)\s*(?P<op><>|!=|>=|<=|=|>|<)\s*(?P<param>@\w+))?"

_SELECT_RE = re.compile(
    r"^\s*SELECT\s+(?P<projection>\*|COUNT\s*\(\s*\*\s*\))\s+FROM\s+(?P<table>\w+)" + _PREDICATE + r"\s*;?\s*$",
    re.IGNORECASE,
)
_INSERT_RE = re.compile(
    r"^\s*INSERT\s+INTO\s+(?P<table>\w+)\s*(?:\((?P<columns>[^)]*)\))?\s*VALUES\s*\((?P<values>[^)]*)\)\s*;?\s*$",
    re.IGNORECASE,
)

EQUALITY_OPERATORS = {"=": operator.eq, "<>": operator.ne, "!=": operator.ne}
RANGE_OPERATORS = {">": operator.gt, ">=": operator.ge, "<": operator.lt, "<=": operator.le}


# ─── Statement analysis ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class Predicate:
    column: sa.Column
    operator: str
    parameter: str

    @property
    def is_range(self) -> bool:
        return self.operator in RANGE_OPERATORS


@dataclass(frozen=True)
class ParsedStatement:
    kind: str  # "select", "count" or "insert"
    table: sa.Table
    predicate: Predicate | None = None
    insert_targets: tuple[tuple[str, sa.Column], ...] = ()

    def targets(self) -> dict[str, sa.Column]:
        """Map each parameter to the column it is compared with or written to."""
        if self.predicate is not None:
            return {self.predicate.parameter: self.predicate.column}
        return dict(self.insert_targets)


@dataclass(frozen=True)
class ParameterEncryption:
    """What the server tells the driver about a parameter bound to an encrypted column."""

    parameter: str
    column: EncryptedColumn
    sql_type: SqlType
    size: int | None

    @property
    def encryption_type(self) -> EncryptionType:
        return self.column.encryption_type


def _column_sql_type(column_type) -> tuple[SqlType, int | None]:
    plaintext = column_type.plaintext_type if isinstance(column_type, EncryptedColumn) else column_type
    if isinstance(plaintext, sa.Integer):
        return SqlType.INT, None
    if isinstance(plaintext, sa.NVARCHAR):
        return SqlType.NVARCHAR, plaintext.length
    return SqlType.VARCHAR, getattr(plaintext, "length", None)


def _encryption_for(parameter: str, column: sa.Column | None) -> ParameterEncryption | None:
    if column is None or not isinstance(column.type, EncryptedColumn):
        return None
    sql_type, size = _column_sql_type(column.type)
    return ParameterEncryption(parameter=parameter, column=column.type, sql_type=sql_type, size=size)


def _unwrap(value: Any) -> Any:
    return value.data if isinstance(value, Ciphertext) else value


def _declared_operand(command: Command, parameter: str) -> str | None:
    try:
        return command[parameter].sql_type.sql_name
    except KeyError:
        return None


def check_predicate(predicate: Predicate | None) -> None:
    """Refuse comparisons the column's encryption scheme cannot answer."""
    if predicate is None or not isinstance(predicate.column.type, EncryptedColumn):
        return
    column_type = predicate.column.type
    if predicate.is_range:
        raise encryption_scheme_mismatch(predicate.parameter, column_type.describe(), "PLAINTEXT")
    if column_type.encryption_type is EncryptionType.RANDOMIZED:
        raise encryption_scheme_mismatch(predicate.parameter, column_type.describe(), "DETERMINISTIC, or PLAINTEXT")


# ─── Stored procedures ───────────────────────────────────────────────────────


@dataclass
class ServerResult:
    columns: list[str] = field(default_factory=list)
    rows: list[tuple] = field(default_factory=list)
    encrypted: dict[str, EncryptedColumn] = field(default_factory=dict)
    rowcount: int = -1
    outputs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProcedureParameter:
    name: str
    sql_type: SqlType
    size: int | None = None
    column: str | None = None
    direction: ParameterDirection = ParameterDirection.INPUT


@dataclass(frozen=True)
class StoredProcedure:
    name: str
    parameters: tuple[ProcedureParameter, ...]
    body: Callable[[sa.Connection, sa.Table, dict[str, Any]], ServerResult]

    @property
    def input_parameters(self) -> tuple[ProcedureParameter, ...]:
        return tuple(p for p in self.parameters if p.direction is ParameterDirection.INPUT)


def _rows_result(table: sa.Table, result) -> ServerResult:
    columns = list(result.keys())
    encrypted = encrypted_columns(table)
    return ServerResult(
        columns=columns,
        rows=[tuple(row) for row in result],
        encrypted={name: encrypted[name] for name in columns if name in encrypted},
    )


def _select_customers(conn, table, values):
    return _rows_result(table, conn.execute(select(table)))


def _select_customers_by_ssn(conn, table, values):
    ssn = sa.literal(values["@SSN"], table.c.SSN.type)
    return _rows_result(table, conn.execute(select(table).where(table.c.SSN == ssn)))


def _insert_customer(conn, table, values):
    result = conn.execute(
        insert(table).values(Name=values["@Name"], SSN=values["@SSN"], City=values["@City"])
    )
    return ServerResult(rowcount=result.rowcount, outputs={"@CustomerId": result.inserted_primary_key[0]})


DEFAULT_PROCEDURES = (
    StoredProcedure("SelectCustomers", (), _select_customers),
    StoredProcedure(
        "SelectCustomersBySsn",
        (ProcedureParameter("@SSN", SqlType.VARCHAR, 20, column="SSN"),),
        _select_customers_by_ssn,
    ),
    StoredProcedure(
        "InsertCustomer",
        (
            ProcedureParameter("@Name", SqlType.VARCHAR, 20, column="Name"),
            ProcedureParameter("@SSN", SqlType.VARCHAR, 20, column="SSN"),
            ProcedureParameter("@City", SqlType.VARCHAR, None, column="City"),
            ProcedureParameter("@CustomerId", SqlType.INT, direction=ParameterDirection.OUTPUT),
        ),
        _insert_customer,
    ),
)


# ─── Server ──────────────────────────────────────────────────────────────────


def _create_engine(database_url: str, echo: bool) -> sa.Engine:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
        # every connection must see the same in-memory database
        return sa.create_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return sa.create_engine(url, echo=echo, pool_pre_ping=True)


class EmulatedServer:
    """Stores ciphertext and enforces what each encryption scheme allows."""

    def __init__(
        self,
        database_url: str = "sqlite://",
        *,
        database_name: str = "MyEncryptedDB",
        echo: bool = False,
        procedures: tuple[StoredProcedure, ...] = DEFAULT_PROCEDURES,
    ):
        self.database_name = database_name
        self.engine = _create_engine(database_url, echo)
        self.metadata = Base.metadata
        self.procedures = {p.name.lower(): p for p in procedures}

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmulatedServer":
        return cls(settings.emulated_database_url, database_name=settings.database, echo=settings.debug)

    def connect(self) -> sa.Connection:
        return self.engine.connect()

    def dispose(self) -> None:
        self.engine.dispose()

    # ── parsing ──

    def _table(self, name: str) -> sa.Table:
        for table in self.metadata.sorted_tables:
            if table.name.lower() == name.lower():
                return table
        raise unsupported(code="unsupported_statement", message=f"Invalid object name '{name}'.")

    @staticmethod
    def _column(table: sa.Table, name: str) -> sa.Column:
        for column in table.columns:
            if column.name.lower() == name.lower():
                return column
        raise unsupported(code="unsupported_statement", message=f"Invalid column name '{name}'.")

    def parse(self, text: str) -> ParsedStatement:
        match = _SELECT_RE.match(text)
        if match:
            table = self._table(match["table"])
            predicate = None
            if match["column"]:
                predicate = Predicate(self._column(table, match["column"]), match["op"], match["param"])
            kind = "select" if match["projection"] == "*" else "count"
            return ParsedStatement(kind=kind, table=table, predicate=predicate)

        match = _INSERT_RE.match(text)
        if match:
            table = self._table(match["table"])
            values = [v.strip() for v in match["values"].split(",") if v.strip()]
            if match["columns"]:
                columns = [self._column(table, c.strip()) for c in match["columns"].split(",") if c.strip()]
            else:
                columns = [c for c in table.columns if not (c.primary_key and c.autoincrement)]
            if len(columns) != len(values):
                raise unsupported(
                    code="unsupported_statement",
                    message="Column name or number of supplied values does not match table definition.",
                )
            for value in values:
                if not value.startswith("@"):
                    raise unsupported(
                        code="unsupported_statement",
                        message=f"Only parameters are accepted in VALUES, got {value!r}.",
                    )
            return ParsedStatement(kind="insert", table=table, insert_targets=tuple(zip(values, columns)))

        raise unsupported(code="unsupported_statement", message=f"Statement is not supported: {text.strip()!r}")

    def _procedure(self, name: str) -> StoredProcedure:
        procedure = self.procedures.get(name.strip().lower())
        if procedure is None:
            raise unsupported(code="unknown_procedure", message=f"Could not find stored procedure '{name.strip()}'.")
        return procedure

    # ── parameter metadata ──

    def describe_parameter_encryption(self, command: Command) -> dict[str, ParameterEncryption | None]:
        """Encryption metadata for each input parameter of ``command``.

        Plaintext targets map to None.  Raises ``UnsupportedOperation`` when the
        statement compares an encrypted column in a way its scheme forbids.
        """
        if command.command_type is CommandType.STORED_PROCEDURE:
            procedure = self._procedure(command.text)
            table = Customer.__table__
            return {
                p.name: _encryption_for(p.name, table.c[p.column] if p.column else None)
                for p in procedure.input_parameters
            }

        statement = self.parse(command.text)
        check_predicate(statement.predicate)
        targets = {name.lower(): column for name, column in statement.targets().items()}
        return {
            p.name: _encryption_for(p.name, targets.get(p.name.lower()))
            for p in command.input_parameters
        }

    # ── execution ──

    @staticmethod
    def _check_operands(targets: dict[str, sa.Column], values: dict[str, Any], command: Command) -> None:
        supplied = {name.lower(): value for name, value in values.items()}
        for parameter, column in targets.items():
            if parameter.lower() not in supplied:
                raise unsupported(
                    code="unsupported_statement",
                    message=f'Must declare the scalar variable "{parameter}".',
                )
            if isinstance(column.type, EncryptedColumn):
                column.type.check_operand(
                    supplied[parameter.lower()],
                    parameter=parameter,
                    operand=_declared_operand(command, parameter),
                )

    def execute(self, conn: sa.Connection, command: Command, values: dict[str, Any]) -> ServerResult:
        if command.command_type is CommandType.STORED_PROCEDURE:
            return self._call(conn, command, values)

        statement = self.parse(command.text)
        self._check_operands(statement.targets(), values, command)
        check_predicate(statement.predicate)
        supplied = {name.lower(): _unwrap(value) for name, value in values.items()}
        table = statement.table
        logger.debug("Executing %s on %s", statement.kind, table.name)

        if statement.kind == "insert":
            result = conn.execute(
                insert(table).values(
                    {column.name: supplied[param.lower()] for param, column in statement.insert_targets}
                )
            )
            return ServerResult(rowcount=result.rowcount)

        query = select(func.count()).select_from(table) if statement.kind == "count" else select(table)
        predicate = statement.predicate
        if predicate is not None:
            compare = EQUALITY_OPERATORS.get(predicate.operator) or RANGE_OPERATORS[predicate.operator]
            # a bound NULL compares with "=" and matches nothing, as under ANSI_NULLS
            operand = sa.literal(supplied[predicate.parameter.lower()], predicate.column.type)
            query = query.where(compare(predicate.column, operand))
        return _rows_result(table, conn.execute(query))

    def _call(self, conn: sa.Connection, command: Command, values: dict[str, Any]) -> ServerResult:
        procedure = self._procedure(command.text)
        table = Customer.__table__
        supplied = {name.lower(): value for name, value in values.items()}
        arguments = {}
        for p in procedure.input_parameters:
            if p.name.lower() not in supplied:
                raise unsupported(
                    code="unsupported_statement",
                    message=(
                        f"Procedure or function '{procedure.name}' expects parameter "
                        f"'{p.name}', which was not supplied."
                    ),
                )
            arguments[p.name] = supplied[p.name.lower()]
        self._check_operands(
            {p.name: table.c[p.column] for p in procedure.input_parameters if p.column},
            arguments,
            command,
        )
        logger.debug("Calling stored procedure %s", procedure.name)
        return procedure.body(conn, table, {name: _unwrap(value) for name, value in arguments.items()})


# ─── Driver ──────────────────────────────────────────────────────────────────


class PlaintextBinder(ParameterBinder):
    """Column encryption disabled: values go to the server as they are."""

    def bind(self, parameter, declared_type, declared_size, plaintext_value):
        return plaintext_value


class EncryptingBinder(ParameterBinder):
    """Column encryption enabled: encrypt values bound to encrypted columns.

    The declared type and size must match the target exactly; inferred
    bindings never do.
    """

    def __init__(self, metadata: dict[str, ParameterEncryption | None]):
        self.metadata = {name.lower(): info for name, info in metadata.items()}

    def bind(self, parameter: Parameter, declared_type, declared_size, plaintext_value):
        target = self.metadata.get(parameter.name.lower())
        if target is None:
            return plaintext_value
        if parameter.inferred or declared_type is not target.sql_type or declared_size != target.size:
            raise parameter_type_mismatch(
                parameter.name,
                describe_type(declared_type, declared_size),
                target.column.describe(),
            )
        return Ciphertext(encrypt_value(plaintext_value, target.encryption_type))


class EmulatedConnection(DatabaseConnection):
    """Driver connection to an ``EmulatedServer``."""

    def __init__(self, server: EmulatedServer, config: ConnectionConfig):
        super().__init__(config)
        self.server = server
        self._conn: sa.Connection | None = server.connect()
        logger.debug("Opened emulated connection '%s' (%s)", config.name, config.redacted())

    def _binder(self, command: Command) -> ParameterBinder:
        if not self.encryption_enabled:
            return PlaintextBinder()
        if not command.input_parameters and command.command_type is CommandType.TEXT:
            return PlaintextBinder()
        return EncryptingBinder(self.server.describe_parameter_encryption(command))

    def _decrypt_rows(self, result: ServerResult) -> list[dict[str, Any]]:
        rows = []
        for raw in result.rows:
            row = dict(zip(result.columns, raw))
            if self.encryption_enabled:
                for name, column_type in result.encrypted.items():
                    row[name] = decrypt_value(row[name], column_type.encryption_type)
            rows.append(row)
        return rows

    def _run(self, command: Command) -> ServerResult:
        if self._conn is None:
            raise RuntimeError("Connection is closed")
        values = self._binder(command).bind_all(command.parameters)
        try:
            result = self.server.execute(self._conn, command, values)
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise
        for parameter in command.output_parameters:
            parameter.value = result.outputs.get(parameter.name)
        return result

    def execute_reader(self, command: Command) -> list[dict[str, Any]]:
        return self._decrypt_rows(self._run(command))

    def execute_scalar(self, command: Command) -> Any:
        rows = self._decrypt_rows(self._run(command))
        if not rows:
            return None
        return next(iter(rows[0].values()))

    def execute_non_query(self, command: Command) -> int:
        return self._run(command).rowcount

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("Closed emulated connection '%s'", self.config.name)

