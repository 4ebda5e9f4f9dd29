"""Error surface for operations the client cannot encrypt or decrypt.

Every failure the demo studies is an ``UnsupportedOperation``.  The helpers
below build each variant with a stable ``code`` and a message worded the way
SQL Server reports it, so transcripts read the same on either backend.
"""

from __future__ import annotations

DEFAULT_MESSAGES = {
    "operand_type_clash": "Operand type clash.",
    "encryption_scheme_mismatch": "Encryption scheme mismatch.",
    "parameter_type_mismatch": "Parameter type does not match the encrypted column.",
    "unsupported_statement": "Statement is not supported.",
    "unknown_procedure": "Could not find stored procedure.",
    "decryption_failed": "Failed to decrypt a column value.",
    "unsupported_operation": "Operation is not supported under the current configuration.",
}


class UnsupportedOperation(Exception):
    """The client cannot process a parameter or column under the current configuration."""

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str = "unsupported_operation",
        details: dict | None = None,
    ):
        self.code = code
        self.message = message or DEFAULT_MESSAGES.get(code, DEFAULT_MESSAGES["unsupported_operation"])
        self.details = details or {}
        super().__init__(self.message)


def unsupported(*, code: str, message: str, details: dict | None = None) -> UnsupportedOperation:
    return UnsupportedOperation(message, code=code, details=details)


def operand_type_clash(operand: str, column_description: str, *, parameter: str | None = None) -> UnsupportedOperation:
    details = {"parameter": parameter} if parameter else None
    return unsupported(
        code="operand_type_clash",
        message=f"Operand type clash: {operand} is incompatible with {column_description}",
        details=details,
    )


def encryption_scheme_mismatch(parameter: str, column_description: str, expected: str) -> UnsupportedOperation:
    return unsupported(
        code="encryption_scheme_mismatch",
        message=(
            f"Encryption scheme mismatch for columns/variables '{parameter}'. "
            f"The encryption scheme for the columns/variables is {column_description} "
            f"and the expression near line '1' expects it to be {expected}."
        ),
        details={"parameter": parameter},
    )


def parameter_type_mismatch(parameter: str, declared: str, column_description: str) -> UnsupportedOperation:
    return unsupported(
        code="parameter_type_mismatch",
        message=(
            f"Operand type clash: {declared} encrypted with the column encryption key of "
            f"'{parameter}' is incompatible with {column_description}"
        ),
        details={"parameter": parameter, "declared": declared},
    )
