"""SQLAlchemy models for the emulated encrypted-column server."""

import enum

from sqlalchemy import VARCHAR, Column, Integer
from sqlalchemy.orm import DeclarativeBase

from db.encrypted_type import EncryptedColumn


class Base(DeclarativeBase):
    pass


# ─── Enums ────────────────────────────────────────────────────────────────────


class EncryptionType(str, enum.Enum):
    DETERMINISTIC = "DETERMINISTIC"
    RANDOMIZED = "RANDOMIZED"


# ─── Models ───────────────────────────────────────────────────────────────────


class Customer(Base):
    """Customer row as the server stores it: ciphertext for Name and SSN.

    Name uses randomized encryption and SSN deterministic encryption, matching
    the sample MyEncryptedDB database.  City is plaintext.
    """

    __tablename__ = "Customer"

    customer_id = Column("CustomerId", Integer, primary_key=True, autoincrement=True)
    name = Column("Name", EncryptedColumn(VARCHAR(20), EncryptionType.RANDOMIZED), nullable=True)
    ssn = Column("SSN", EncryptedColumn(VARCHAR(20), EncryptionType.DETERMINISTIC), nullable=True)
    city = Column("City", VARCHAR(20), nullable=True)


def encrypted_columns(table) -> dict:
    """Map column name to its ``EncryptedColumn`` type for every encrypted column of ``table``."""
    return {
        column.name: column.type
        for column in table.columns
        if isinstance(column.type, EncryptedColumn)
    }
