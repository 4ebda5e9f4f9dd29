"""The three demo scenarios and the outcome records they produce.

Every step states up front whether it is expected to succeed or fail.  Running
a step never raises for the failures the demo studies: an
``UnsupportedOperation`` becomes a failed ``Outcome`` carrying its code and
message, so the contract of which operations fail is data the transcript and
tests can read.  Any other exception is a real problem and propagates.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any

from config import Settings, get_settings
from db.commands import Command, CommandType, DatabaseConnection, Parameter, ParameterDirection, SqlType
from db.connection import encrypted_config, plain_config
from errors import UnsupportedOperation
from models.schemas import ConnectionConfig, CustomerRecord

logger = logging.getLogger(__name__)

Connect = Callable[[ConnectionConfig], AbstractContextManager[DatabaseConnection]]


class Expect(str, enum.Enum):
    SUCCEED = "succeed"
    FAIL = "fail"


class FailureReason(str, enum.Enum):
    """Why the client refused a step; one member per ``UnsupportedOperation`` code."""

    OPERAND_TYPE_CLASH = "operand_type_clash"
    ENCRYPTION_SCHEME_MISMATCH = "encryption_scheme_mismatch"
    PARAMETER_TYPE_MISMATCH = "parameter_type_mismatch"
    UNSUPPORTED_STATEMENT = "unsupported_statement"
    UNKNOWN_PROCEDURE = "unknown_procedure"
    DECRYPTION_FAILED = "decryption_failed"
    UNSUPPORTED_OPERATION = "unsupported_operation"

    @classmethod
    def from_code(cls, code: str) -> "FailureReason":
        try:
            return cls(code)
        except ValueError:
            return cls.UNSUPPORTED_OPERATION


class ResultKind(str, enum.Enum):
    ROWS = "rows"
    COUNT = "count"
    INSERTED = "inserted"
    CREATED = "created"


@dataclass(frozen=True)
class Step:
    description: str
    failure_message: str
    expect: Expect
    kind: ResultKind
    run: Callable[[DatabaseConnection], Any]
    label: str = ""


@dataclass
class Outcome:
    step: Step
    succeeded: bool
    value: Any = None
    failure: FailureReason | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def as_expected(self) -> bool:
        return self.succeeded == (self.step.expect is Expect.SUCCEED)


@dataclass(frozen=True)
class Scenario:
    key: str
    title: str
    config: Callable[[Settings], ConnectionConfig]
    steps: tuple[Step, ...]


@dataclass
class ScenarioReport:
    scenario: Scenario
    config: ConnectionConfig
    outcomes: list[Outcome] = field(default_factory=list)

    @property
    def as_expected(self) -> bool:
        return all(o.as_expected for o in self.outcomes)


# ─── Commands ─────────────────────────────────────────────────────────────────


def _varchar(name: str, value: str | None, size: int | None = 20) -> Parameter:
    return Parameter(name, SqlType.VARCHAR, size, value)


def select_all_command() -> Command:
    return Command("SELECT * FROM Customer")


def count_by_name_command(name: str) -> Command:
    return Command("SELECT COUNT(*) FROM Customer WHERE Name = @Name", parameters=[_varchar("@Name", name)])


def count_by_ssn_command(ssn: str, op: str = "=") -> Command:
    return Command(f"SELECT COUNT(*) FROM Customer WHERE SSN {op} @SSN", parameters=[_varchar("@SSN", ssn)])


def insert_command(name: str, ssn: str, city: str) -> Command:
    return Command(
        "INSERT INTO Customer VALUES(@Name, @SSN, @City)",
        parameters=[_varchar("@Name", name), _varchar("@SSN", ssn), _varchar("@City", city)],
    )


def select_customers_proc() -> Command:
    return Command("SelectCustomers", CommandType.STORED_PROCEDURE)


def select_customers_by_ssn_proc(ssn: str, *, inferred: bool = False) -> Command:
    # Parameter.with_value guesses nvarchar(len), which never matches an encrypted varchar(20)
    parameter = Parameter.with_value("@SSN", ssn) if inferred else _varchar("@SSN", ssn)
    return Command("SelectCustomersBySsn", CommandType.STORED_PROCEDURE, [parameter])


def insert_customer_proc(name: str, ssn: str, city: str) -> Command:
    # Name and SSN lengths must match the table definition
    return Command(
        "InsertCustomer",
        CommandType.STORED_PROCEDURE,
        [
            _varchar("@Name", name),
            _varchar("@SSN", ssn),
            _varchar("@City", city, size=None),
            Parameter("@CustomerId", SqlType.INT, direction=ParameterDirection.OUTPUT),
        ],
    )


def _read_customers(command_factory: Callable[[], Command]) -> Callable[[DatabaseConnection], list[CustomerRecord]]:
    def run(conn: DatabaseConnection) -> list[CustomerRecord]:
        return [CustomerRecord.from_row(row) for row in conn.execute_reader(command_factory())]

    return run


def _scalar(command_factory: Callable[[], Command]) -> Callable[[DatabaseConnection], Any]:
    return lambda conn: conn.execute_scalar(command_factory())


def _non_query(command_factory: Callable[[], Command]) -> Callable[[DatabaseConnection], int]:
    return lambda conn: conn.execute_non_query(command_factory())


def _created_id(command_factory: Callable[[], Command]) -> Callable[[DatabaseConnection], Any]:
    def run(conn: DatabaseConnection) -> Any:
        command = command_factory()
        conn.execute_non_query(command)
        return command["@CustomerId"].value

    return run


NEW_CUSTOMER = ("Steven Jacobs", "333-22-4444", "Los Angeles")
PROC_CUSTOMER = ("Marcy Jones", "888-88-8888", "Atlanta")


# ─── Scenarios ────────────────────────────────────────────────────────────────


WITHOUT_ENCRYPTION = Scenario(
    key="A",
    title="Without Encryption Setting",
    config=plain_config,
    steps=(
        # Can query, but encrypted columns come back as ciphertext
        Step("Select all customers", "Failed to select customers", Expect.SUCCEED,
             ResultKind.ROWS, _read_customers(select_all_command)),
        Step("Query on Name column", "Failed to run query on Name column", Expect.FAIL,
             ResultKind.COUNT, _scalar(lambda: count_by_name_command("John Smith")), label="Name 'John Smith'"),
        Step("Query on SSN column", "Failed to run query on SSN column", Expect.FAIL,
             ResultKind.COUNT, _scalar(lambda: count_by_ssn_command("n/a")), label="SSN 'n/a'"),
        Step("Insert row with encrypted data", "Failed to insert new row with encrypted data", Expect.FAIL,
             ResultKind.INSERTED, _non_query(lambda: insert_command(*NEW_CUSTOMER))),
    ),
)

WITH_ENCRYPTION_TSQL = Scenario(
    key="B",
    title="With Encryption Setting (T-SQL)",
    config=encrypted_config,
    steps=(
        Step("Select all customers", "Failed to select customers", Expect.SUCCEED,
             ResultKind.ROWS, _read_customers(select_all_command)),
        # Name uses randomized encryption, so no equality even with the setting on
        Step("Query on Name column", "Failed to run query on Name column", Expect.FAIL,
             ResultKind.COUNT, _scalar(lambda: count_by_name_command("John Smith")), label="Name 'John Smith'"),
        # SSN uses deterministic encryption; the match is on ciphertext, so case-sensitive
        Step("Query on SSN column for 'n/a'", "Failed to run query on SSN column", Expect.SUCCEED,
             ResultKind.COUNT, _scalar(lambda: count_by_ssn_command("n/a")), label="SSN 'n/a'"),
        Step("Query on SSN column for 'N/A'", "Failed to run query on SSN column", Expect.SUCCEED,
             ResultKind.COUNT, _scalar(lambda: count_by_ssn_command("N/A")), label="SSN 'N/A'"),
        Step("Range query on SSN column", "Failed to run range query on SSN column", Expect.FAIL,
             ResultKind.COUNT, _scalar(lambda: count_by_ssn_command("500-000-0000", ">=")), label="SSN >= '500-000-0000'"),
        Step("Insert row with encrypted data", "Failed to insert new row with encrypted data", Expect.SUCCEED,
             ResultKind.INSERTED, _non_query(lambda: insert_command(*NEW_CUSTOMER))),
    ),
)

WITH_ENCRYPTION_PROCS = Scenario(
    key="C",
    title="With Encryption Setting (stored procedures)",
    config=encrypted_config,
    steps=(
        Step("Select customers with SelectCustomers", "Failed to run SelectCustomers", Expect.SUCCEED,
             ResultKind.ROWS, _read_customers(select_customers_proc)),
        Step("Select customers by SSN with SelectCustomersBySsn", "Failed to run SelectCustomersBySsn",
             Expect.SUCCEED, ResultKind.ROWS, _read_customers(lambda: select_customers_by_ssn_proc("n/a"))),
        Step("Select customers by SSN with an inferred parameter type",
             "Failed to run SelectCustomersBySsn with an inferred parameter type", Expect.FAIL,
             ResultKind.ROWS, _read_customers(lambda: select_customers_by_ssn_proc("n/a", inferred=True))),
        Step("Insert customer with InsertCustomer", "Failed to run InsertCustomer", Expect.SUCCEED,
             ResultKind.CREATED, _created_id(lambda: insert_customer_proc(*PROC_CUSTOMER))),
    ),
)

SCENARIOS = (WITHOUT_ENCRYPTION, WITH_ENCRYPTION_TSQL, WITH_ENCRYPTION_PROCS)


# ─── Running ──────────────────────────────────────────────────────────────────


def attempt(step: Step, conn: DatabaseConnection) -> Outcome:
    """Run one step, turning an unsupported operation into a failed outcome."""
    try:
        value = step.run(conn)
    except UnsupportedOperation as exc:
        logger.info("%s: %s (%s)", step.failure_message, exc.code, "expected" if step.expect is Expect.FAIL else "unexpected")
        outcome = Outcome(
            step=step,
            succeeded=False,
            failure=FailureReason.from_code(exc.code),
            error_code=exc.code,
            error_message=exc.message,
        )
    else:
        outcome = Outcome(step=step, succeeded=True, value=value)

    if not outcome.as_expected:
        logger.warning("Step %r was expected to %s", step.description, step.expect.value)
    return outcome


def run_scenario(scenario: Scenario, connect: Connect, settings: Settings | None = None) -> ScenarioReport:
    """Open one connection for the scenario, run every step, release the connection."""
    settings = settings or get_settings()
    config = scenario.config(settings)
    report = ScenarioReport(scenario=scenario, config=config)
    logger.info("Running scenario %s: %s", scenario.key, scenario.title, extra={"scenario": scenario.key})
    with connect(config) as conn:
        for step in scenario.steps:
            report.outcomes.append(attempt(step, conn))
    return report


def run_demo(connect: Connect, settings: Settings | None = None, scenarios=SCENARIOS) -> list[ScenarioReport]:
    """Run the scenarios in order, each on a fresh connection."""
    return [run_scenario(scenario, connect, settings) for scenario in scenarios]
