"""Console transcript for scenario reports."""

import sys
from typing import TextIO

from models.schemas import CustomerRecord
from services.scenarios import Outcome, ResultKind, ScenarioReport


def format_value(value) -> str:
    """Render a field; ciphertext shows as hex the way SQL Server tools print varbinary."""
    if value is None:
        return "NULL"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex().upper()
    return str(value)


def format_customer(record: CustomerRecord) -> str:
    return "CustomerId: {0}; Name: {1}; SSN: {2}; City: {3}".format(
        record.customer_id,
        format_value(record.name),
        format_value(record.ssn),
        format_value(record.city),
    )


def outcome_lines(outcome: Outcome) -> list[str]:
    step = outcome.step
    if not outcome.succeeded:
        return [step.failure_message, outcome.error_message or "", ""]

    kind = step.kind
    if kind is ResultKind.ROWS:
        return [format_customer(record) for record in outcome.value] + [""]
    if kind is ResultKind.COUNT:
        return [f"{step.label} count = {outcome.value}"]
    if kind is ResultKind.INSERTED:
        return ["Successfully inserted new row with encrypted data", ""]
    return [f"Created new customer: {outcome.value}", ""]


def report_lines(report: ScenarioReport) -> list[str]:
    lines = [f"*** {report.scenario.title} ***", ""]
    previous, previous_ok = None, False
    for outcome in report.outcomes:
        # a run of counts is followed by one blank line
        continues_counts = outcome.step.kind is ResultKind.COUNT and outcome.succeeded
        if previous is ResultKind.COUNT and previous_ok and not continues_counts:
            lines.append("")
        lines.extend(outcome_lines(outcome))
        previous, previous_ok = outcome.step.kind, outcome.succeeded
    if previous is ResultKind.COUNT and previous_ok:
        lines.append("")
    return lines


def write_transcript(reports: list[ScenarioReport], stream: TextIO | None = None) -> None:
    stream = stream or sys.stdout
    for report in reports:
        for line in report_lines(report):
            stream.write(line + "\n")
    stream.flush()
