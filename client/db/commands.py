"""Command model shared by every backend.

Scenarios build ``Command`` objects with typed ``Parameter`` values and run
them through a ``DatabaseConnection``.  How a parameter reaches the driver is
the job of a ``ParameterBinder``, so the scenario code never depends on which
encrypted-database client is underneath.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from models.schemas import ConnectionConfig


class SqlType(int, enum.Enum):
    """Declared parameter types; values are the ODBC SQL type codes."""

    VARCHAR = 12
    NVARCHAR = -9
    INT = 4

    @property
    def sql_name(self) -> str:
        return self.name.lower()


class ParameterDirection(str, enum.Enum):
    INPUT = "input"
    OUTPUT = "output"


class CommandType(str, enum.Enum):
    TEXT = "text"
    STORED_PROCEDURE = "stored_procedure"


def describe_type(sql_type: SqlType | None, size: int | None) -> str:
    """Render a declared type the way SQL Server prints it, e.g. ``varchar(20)``."""
    if sql_type is None:
        return "sql_variant"
    if sql_type is SqlType.INT:
        return "int"
    return f"{sql_type.sql_name}({size if size is not None else 'max'})"


def parameter_name(name: str) -> str:
    return name if name.startswith("@") else f"@{name}"


@dataclass
class Parameter:
    name: str
    sql_type: SqlType | None
    size: int | None = None
    value: Any = None
    direction: ParameterDirection = ParameterDirection.INPUT
    inferred: bool = False

    def __post_init__(self):
        self.name = parameter_name(self.name)

    @classmethod
    def with_value(cls, name: str, value: Any) -> "Parameter":
        """Infer type and size from ``value``.

        Strings become ``nvarchar`` sized to the value, which never matches an
        encrypted ``varchar(n)`` column.
        """
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(name, SqlType.INT, None, value, inferred=True)
        text = str(value)
        return cls(name, SqlType.NVARCHAR, len(text), text, inferred=True)

    @property
    def declared(self) -> str:
        return describe_type(self.sql_type, self.size)

    @property
    def is_output(self) -> bool:
        return self.direction is ParameterDirection.OUTPUT


@dataclass
class Command:
    text: str
    command_type: CommandType = CommandType.TEXT
    parameters: list[Parameter] = field(default_factory=list)

    def add(self, parameter: Parameter) -> Parameter:
        self.parameters.append(parameter)
        return parameter

    def __getitem__(self, name: str) -> Parameter:
        wanted = parameter_name(name)
        for parameter in self.parameters:
            if parameter.name.lower() == wanted.lower():
                return parameter
        raise KeyError(name)

    @property
    def input_parameters(self) -> list[Parameter]:
        return [p for p in self.parameters if not p.is_output]

    @property
    def output_parameters(self) -> list[Parameter]:
        return [p for p in self.parameters if p.is_output]


class ParameterBinder(ABC):
    """Turns a declared, plaintext parameter into what the driver sends."""

    @abstractmethod
    def bind(self, parameter: Parameter, declared_type: SqlType | None, declared_size: int | None, plaintext_value: Any) -> Any:
        ...

    def bind_all(self, parameters: list[Parameter]) -> dict[str, Any]:
        return {
            p.name: self.bind(p, p.sql_type, p.size, p.value)
            for p in parameters
            if not p.is_output
        }


class DatabaseConnection(ABC):
    """One open connection under a single ``ConnectionConfig``."""

    def __init__(self, config: ConnectionConfig):
        self.config = config

    @property
    def encryption_enabled(self) -> bool:
        return self.config.column_encryption

    @abstractmethod
    def execute_reader(self, command: Command) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    def execute_scalar(self, command: Command) -> Any:
        ...

    @abstractmethod
    def execute_non_query(self, command: Command) -> int:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
