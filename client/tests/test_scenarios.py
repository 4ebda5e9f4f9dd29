"""Tests for the demo scenarios and their transcript.

Each scenario's steps carry an expected outcome; these tests check the
outcomes the emulated backend produces against that contract, the values the
successful steps return, and the console lines they render to.
"""

import io
from contextlib import contextmanager

import pytest

from db.provisioning import SEED_CUSTOMERS
from errors import unsupported
from models.schemas import CustomerRecord
from services.scenarios import (
    PROC_CUSTOMER,
    SCENARIOS,
    Scenario,
    ScenarioReport,
    WITH_ENCRYPTION_PROCS,
    WITH_ENCRYPTION_TSQL,
    WITHOUT_ENCRYPTION,
    Expect,
    FailureReason,
    Outcome,
    ResultKind,
    Step,
    attempt,
    run_demo,
    run_scenario,
    select_customers_by_ssn_proc,
)
from services.transcript import format_customer, format_value, report_lines, write_transcript


@pytest.fixture()
def reports(connect, settings):
    return run_demo(connect, settings)


def _by_description(report):
    return {o.step.description: o for o in report.outcomes}


# ─── Scenario A ───────────────────────────────────────────────────────────────


class TestWithoutEncryption:
    def test_every_outcome_matches_expectation(self, connect, settings):
        report = run_scenario(WITHOUT_ENCRYPTION, connect, settings)
        assert report.as_expected
        assert report.config.column_encryption is False

    def test_select_returns_ciphertext(self, connect, settings):
        outcome = run_scenario(WITHOUT_ENCRYPTION, connect, settings).outcomes[0]
        assert outcome.succeeded
        assert len(outcome.value) == len(SEED_CUSTOMERS)
        assert all(isinstance(r.name, bytes) and isinstance(r.ssn, bytes) for r in outcome.value)
        assert [r.city for r in outcome.value] == [c[2] for c in SEED_CUSTOMERS]

    def test_failures_are_unsupported_operations(self, connect, settings):
        outcomes = run_scenario(WITHOUT_ENCRYPTION, connect, settings).outcomes[1:]
        assert [o.succeeded for o in outcomes] == [False, False, False]
        assert {o.failure for o in outcomes} == {FailureReason.OPERAND_TYPE_CLASH}
        assert {o.error_code for o in outcomes} == {"operand_type_clash"}
        assert all(o.error_message for o in outcomes)


# ─── Scenario B ───────────────────────────────────────────────────────────────


class TestWithEncryptionTSql:
    def test_every_outcome_matches_expectation(self, connect, settings):
        assert run_scenario(WITH_ENCRYPTION_TSQL, connect, settings).as_expected

    def test_select_is_decrypted(self, connect, settings):
        outcome = run_scenario(WITH_ENCRYPTION_TSQL, connect, settings).outcomes[0]
        assert [(r.name, r.ssn, r.city) for r in outcome.value] == list(SEED_CUSTOMERS)

    def test_ssn_counts_are_case_sensitive(self, connect, settings):
        outcomes = _by_description(run_scenario(WITH_ENCRYPTION_TSQL, connect, settings))
        lower = outcomes["Query on SSN column for 'n/a'"].value
        upper = outcomes["Query on SSN column for 'N/A'"].value
        assert (lower, upper) == (2, 1)

    def test_name_and_range_fail(self, connect, settings):
        outcomes = _by_description(run_scenario(WITH_ENCRYPTION_TSQL, connect, settings))
        assert outcomes["Query on Name column"].error_code == "encryption_scheme_mismatch"
        assert outcomes["Range query on SSN column"].error_code == "encryption_scheme_mismatch"
        assert outcomes["Query on Name column"].failure is FailureReason.ENCRYPTION_SCHEME_MISMATCH

    def test_insert_succeeds(self, connect, settings):
        outcome = _by_description(run_scenario(WITH_ENCRYPTION_TSQL, connect, settings))["Insert row with encrypted data"]
        assert outcome.succeeded
        assert outcome.value == 1


# ─── Scenario C ───────────────────────────────────────────────────────────────


class TestWithEncryptionStoredProcs:
    def test_every_outcome_matches_expectation(self, connect, settings):
        assert run_scenario(WITH_ENCRYPTION_PROCS, connect, settings).as_expected

    def test_lookup_by_ssn(self, connect, settings):
        outcome = run_scenario(WITH_ENCRYPTION_PROCS, connect, settings).outcomes[1]
        assert sorted(r.name for r in outcome.value) == ["Doug Nichols", "Joe Anonymous"]
        assert {r.ssn for r in outcome.value} == {"n/a"}

    def test_inferred_parameter_fails(self, connect, settings):
        outcome = run_scenario(WITH_ENCRYPTION_PROCS, connect, settings).outcomes[2]
        assert not outcome.succeeded
        assert outcome.failure is FailureReason.PARAMETER_TYPE_MISMATCH
        assert outcome.error_code == "parameter_type_mismatch"

    def test_insert_then_lookup_returns_that_row(self, connect, settings, encrypted):
        outcome = run_scenario(WITH_ENCRYPTION_PROCS, connect, settings).outcomes[3]
        customer_id = outcome.value
        assert customer_id is not None

        with connect(encrypted) as conn:
            rows = conn.execute_reader(select_customers_by_ssn_proc(PROC_CUSTOMER[1]))
        assert [CustomerRecord.from_row(r) for r in rows] == [
            CustomerRecord(customer_id=customer_id, name="Marcy Jones", ssn="888-88-8888", city="Atlanta")
        ]


# ─── Whole demo ───────────────────────────────────────────────────────────────


class TestRunDemo:
    def test_runs_scenarios_in_order(self, reports):
        assert [r.scenario.key for r in reports] == ["A", "B", "C"]
        assert all(r.as_expected for r in reports)

    def test_scenario_c_sees_row_inserted_by_b(self, reports):
        rows = reports[2].outcomes[0].value
        assert len(rows) == len(SEED_CUSTOMERS) + 1
        assert rows[-1].name == "Steven Jacobs"

    def test_created_id_follows_existing_rows(self, reports):
        assert reports[2].outcomes[3].value == len(SEED_CUSTOMERS) + 2

    def test_one_connection_per_scenario_released(self, settings):
        opened, closed = [], []

        class FakeConnection:
            def __init__(self, config):
                self.config = config

        @contextmanager
        def connect(config):
            conn = FakeConnection(config)
            opened.append(conn)
            try:
                yield conn
            finally:
                closed.append(conn)

        def boom(conn):
            raise RuntimeError("driver exploded")

        scenario = Scenario(
            key="X",
            title="Broken",
            config=WITHOUT_ENCRYPTION.config,
            steps=(Step("Explode", "Failed", Expect.SUCCEED, ResultKind.COUNT, boom),),
        )
        with pytest.raises(RuntimeError):
            run_demo(connect, settings, scenarios=(scenario,))
        assert opened == closed
        assert len(opened) == 1


class TestAttempt:
    def test_unexpected_success_is_flagged(self, caplog):
        step = Step("Works", "Failed", Expect.FAIL, ResultKind.COUNT, lambda conn: 3)
        with caplog.at_level("WARNING", logger="services.scenarios"):
            outcome = attempt(step, conn=None)
        assert outcome.succeeded
        assert not outcome.as_expected
        assert "expected to fail" in caplog.text

    def test_other_errors_propagate(self):
        def run(conn):
            raise KeyError("x")

        step = Step("Breaks", "Failed", Expect.FAIL, ResultKind.COUNT, run)
        with pytest.raises(KeyError):
            attempt(step, conn=None)

    def test_failure_reason_follows_error_code(self):
        def run(conn):
            raise unsupported(code="unknown_procedure", message="Could not find stored procedure 'X'.")

        outcome = attempt(Step("Call", "Failed", Expect.FAIL, ResultKind.ROWS, run), conn=None)
        assert outcome.failure is FailureReason.UNKNOWN_PROCEDURE

    def test_unrecognised_code_falls_back(self):
        assert FailureReason.from_code("something_new") is FailureReason.UNSUPPORTED_OPERATION


# ─── Transcript ───────────────────────────────────────────────────────────────


class TestTranscript:
    def test_format_value(self):
        assert format_value(b"\x01\xab") == "0x01AB"
        assert format_value(None) == "NULL"
        assert format_value(7) == "7"

    def test_format_customer(self):
        record = CustomerRecord(customer_id=1, name="John Smith", ssn="123-45-6789", city="New York")
        assert format_customer(record) == "CustomerId: 1; Name: John Smith; SSN: 123-45-6789; City: New York"

    def test_failure_lines(self):
        step = Step("Query on SSN column", "Failed to run query on SSN column", Expect.FAIL, ResultKind.COUNT, None)
        outcome = Outcome(step=step, succeeded=False, error_message="Operand type clash: ...")
        report = ScenarioReport(scenario=WITHOUT_ENCRYPTION, config=None, outcomes=[outcome])
        lines = report_lines(report)
        assert lines == [
            "*** Without Encryption Setting ***",
            "",
            "Failed to run query on SSN column",
            "Operand type clash: ...",
            "",
        ]

    def test_full_transcript(self, reports):
        stream = io.StringIO()
        write_transcript(reports, stream)
        text = stream.getvalue()

        for scenario in SCENARIOS:
            assert f"*** {scenario.title} ***" in text
        assert "Failed to run query on Name column" in text
        assert "Failed to insert new row with encrypted data" in text
        assert "SSN 'n/a' count = 2\nSSN 'N/A' count = 1\n\nFailed to run range query on SSN column" in text
        assert "Successfully inserted new row with encrypted data" in text
        assert f"Created new customer: {len(SEED_CUSTOMERS) + 2}" in text
        assert "CustomerId: 1; Name: John Smith; SSN: 123-45-6789; City: New York" in text
        assert "CustomerId: 1; Name: 0x" in text
