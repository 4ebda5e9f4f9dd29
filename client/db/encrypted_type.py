"""SQLAlchemy custom column type for client-side encrypted columns.

The server only ever stores and compares ciphertext; encryption happens in the
driver.  The type carries the column's encryption metadata so the emulated
server can describe parameters and reject plaintext operands.
"""

from dataclasses import dataclass

from sqlalchemy import LargeBinary, TypeDecorator

from errors import operand_type_clash

ENCRYPTION_ALGORITHM = "AEAD_AES_256_CBC_HMAC_SHA_256"


@dataclass(frozen=True)
class Ciphertext:
    """A parameter value the driver encrypted for an encrypted column.

    ``data`` is None for an encrypted NULL.
    """

    data: bytes | None


class EncryptedColumn(TypeDecorator):
    """A column whose values arrive already encrypted by the client.

    ``plaintext_type`` is the declared SQL type of the decrypted value.  Any
    parameter bound against the column must declare exactly that type.
    """

    impl = LargeBinary
    cache_ok = True

    def __init__(self, plaintext_type, encryption_type, key_name="CEK_Auto1", key_database="MyEncryptedDB"):
        super().__init__()
        self.plaintext_type = plaintext_type
        self.encryption_type = encryption_type
        self.key_name = key_name
        self.key_database = key_database

    @property
    def plaintext_length(self):
        return getattr(self.plaintext_type, "length", None)

    def plaintext_sql(self) -> str:
        name = self.plaintext_type.__visit_name__.lower()
        length = self.plaintext_length
        return f"{name}({length if length is not None else 'max'})"

    def describe(self) -> str:
        """SQL Server-style description used in error messages."""
        return (
            f"{self.plaintext_sql()} encrypted with "
            f"(encryption_type = '{self.encryption_type.value}', "
            f"encryption_algorithm_name = '{ENCRYPTION_ALGORITHM}', "
            f"column_encryption_key_name = '{self.key_name}', "
            f"column_encryption_key_database_name = '{self.key_database}')"
        )

    def check_operand(self, value, parameter=None, operand=None):
        """Reject anything that is not ciphertext produced by an encryption-aware client.

        The check goes by how the value was sent, so a plaintext NULL is
        rejected too.  ``operand`` is the declared type named in the error.
        """
        if isinstance(value, Ciphertext):
            return
        if operand is None:
            operand = "int" if isinstance(value, int) else "varchar"
        raise operand_type_clash(operand, self.describe(), parameter=parameter)

    def process_bind_param(self, value, dialect):
        if isinstance(value, Ciphertext):
            value = value.data
        if value is None:
            return None
        if not isinstance(value, (bytes, bytearray, memoryview)):
            self.check_operand(value)
        return bytes(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return bytes(value)
