"""SQL Server backend through pyodbc.

With ``ColumnEncryption=Enabled`` in the connection string the ODBC driver
itself encrypts parameters and decrypts results; all this module has to do is
bind every parameter with its declared SQL type and size so the driver can
match it to the encrypted column.  pyodbc is imported when a connection is
opened, so the rest of the demo runs without an ODBC driver manager.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import Any

from db.commands import Command, CommandType, DatabaseConnection, Parameter, ParameterBinder, SqlType, describe_type
from errors import unsupported
from models.schemas import ConnectionConfig

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"(?<!@)@(\w+)")
_DRIVER_PREFIX_RE = re.compile(r"^(?:\s*\[[^\]]*\])+")
_DRIVER_SUFFIX_RE = re.compile(r"\s*\(\d+\)\s*\(\w+\)\s*$")


def to_qmark(text: str) -> tuple[str, list[str]]:
    """Rewrite ``@name`` placeholders to ``?`` and return names in binding order."""
    names: list[str] = []

    def _sub(match):
        names.append(f"@{match.group(1)}")
        return "?"

    return _PLACEHOLDER_RE.sub(_sub, text), names


def _output_variable(parameter: Parameter) -> str:
    return f"@out_{parameter.name[1:]}"


def render_procedure_call(command: Command) -> str:
    """Build the batch that runs a stored procedure.

    Inputs are bound positionally.  Output parameters are captured in local
    variables and returned by a trailing SELECT, since pyodbc has no output
    parameter support.
    """
    inputs = command.input_parameters
    outputs = command.output_parameters
    name = command.text.strip()
    if not outputs:
        placeholders = ", ".join("?" for _ in inputs)
        return f"{{CALL {name} ({placeholders})}}" if inputs else f"{{CALL {name}}}"

    lines = ["SET NOCOUNT ON;"]
    for p in outputs:
        lines.append(f"DECLARE {_output_variable(p)} {describe_type(p.sql_type, p.size)};")
    arguments = [f"{p.name} = ?" for p in inputs] + [f"{p.name} = {_output_variable(p)} OUTPUT" for p in outputs]
    lines.append(f"EXEC {name} {', '.join(arguments)};")
    lines.append("SELECT " + ", ".join(f"{_output_variable(p)} AS [{p.name[1:]}]" for p in outputs) + ";")
    return "\n".join(lines)


def driver_message(exc: Exception) -> str:
    """Strip the ODBC vendor prefixes and native error suffix from a driver error."""
    raw = exc.args[1] if len(exc.args) > 1 else (exc.args[0] if exc.args else str(exc))
    message = _DRIVER_PREFIX_RE.sub("", str(raw))
    return _DRIVER_SUFFIX_RE.sub("", message).strip()


def _error_code(message: str) -> str:
    if "Operand type clash" in message:
        return "operand_type_clash"
    if "Encryption scheme mismatch" in message:
        return "encryption_scheme_mismatch"
    if "Could not find stored procedure" in message:
        return "unknown_procedure"
    return "unsupported_operation"


class OdbcParameterBinder(ParameterBinder):
    """Pair each value with the ``setinputsizes`` entry for its declared type."""

    def bind(self, parameter, declared_type, declared_size, plaintext_value):
        if declared_type is None:
            declared_type = SqlType.NVARCHAR
            declared_size = len(str(plaintext_value)) if plaintext_value is not None else 0
        size = 0 if declared_type is SqlType.INT else (declared_size or 0)
        return plaintext_value, (declared_type.value, size, 0)


class MssqlConnection(DatabaseConnection):
    """Connection to SQL Server through an ODBC driver."""

    def __init__(self, raw_connection, config: ConnectionConfig, driver):
        super().__init__(config)
        self._raw = raw_connection
        self._driver = driver
        self._binder = OdbcParameterBinder()

    @classmethod
    def open(cls, config: ConnectionConfig) -> "MssqlConnection":
        import pyodbc

        logger.debug("Connecting to SQL Server: %s", config.redacted())
        raw = pyodbc.connect(config.connection_string(), autocommit=True)
        return cls(raw, config, pyodbc)

    @contextmanager
    def _translate_errors(self):
        try:
            yield
        except (self._driver.ProgrammingError, self._driver.DataError) as exc:
            message = driver_message(exc)
            raise unsupported(code=_error_code(message), message=message) from exc

    def _render(self, command: Command) -> tuple[str, list[Parameter]]:
        if command.command_type is CommandType.STORED_PROCEDURE:
            return render_procedure_call(command), command.input_parameters
        sql, names = to_qmark(command.text)
        return sql, [command[name] for name in names]

    def _run(self, command: Command) -> tuple[list[tuple[list[str], list[tuple]]], int]:
        if self._raw is None:
            raise RuntimeError("Connection is closed")
        sql, ordered = self._render(command)
        bound = [self._binder.bind(p, p.sql_type, p.size, p.value) for p in ordered]
        cursor = self._raw.cursor()
        try:
            with self._translate_errors():
                if bound:
                    cursor.setinputsizes([sizes for _, sizes in bound])
                cursor.execute(sql, [value for value, _ in bound])
                rowcount = cursor.rowcount
                result_sets = []
                while True:
                    if cursor.description:
                        columns = [c[0] for c in cursor.description]
                        result_sets.append((columns, [tuple(row) for row in cursor.fetchall()]))
                    if not cursor.nextset():
                        break
        finally:
            cursor.close()

        outputs = command.output_parameters
        if outputs and result_sets:
            columns, rows = result_sets.pop()
            values = dict(zip(columns, rows[0])) if rows else {}
            for p in outputs:
                p.value = values.get(p.name[1:])
        return result_sets, rowcount

    def execute_reader(self, command: Command) -> list[dict[str, Any]]:
        result_sets, _ = self._run(command)
        if not result_sets:
            return []
        columns, rows = result_sets[0]
        return [dict(zip(columns, row)) for row in rows]

    def execute_scalar(self, command: Command) -> Any:
        result_sets, _ = self._run(command)
        if not result_sets or not result_sets[0][1]:
            return None
        return result_sets[0][1][0][0]

    def execute_non_query(self, command: Command) -> int:
        _, rowcount = self._run(command)
        return rowcount

    def close(self) -> None:
        if self._raw is not None:
            self._raw.close()
            self._raw = None
            logger.debug("Closed SQL Server connection '%s'", self.config.name)
