"""Pydantic schemas for connection configuration and result rows."""

import enum
from collections.abc import Mapping

from pydantic import BaseModel, Field


# ─── Connection ───────────────────────────────────────────────────────────────


class AuthMode(str, enum.Enum):
    INTEGRATED = "integrated"
    SQL_PASSWORD = "sql_password"


class ConnectionConfig(BaseModel):
    """A named set of connection options.

    The column encryption setting is appended to the base connection string,
    so two configurations that differ only in that flag share everything else.
    """

    name: str
    driver: str = "ODBC Driver 18 for SQL Server"
    server: str = Field(..., min_length=1)
    database: str = Field(..., min_length=1)
    auth_mode: AuthMode = AuthMode.INTEGRATED
    username: str = ""
    password: str = ""
    trust_server_certificate: bool = True
    column_encryption: bool = False

    model_config = {"frozen": True}

    def base_connection_string(self) -> str:
        parts = [
            f"Driver={{{self.driver}}}",
            f"Server={self.server}",
            f"Database={self.database}",
        ]
        if self.auth_mode is AuthMode.INTEGRATED:
            parts.append("Trusted_Connection=yes")
        else:
            parts.append(f"UID={self.username}")
            parts.append(f"PWD={self.password}")
        parts.append(f"TrustServerCertificate={'yes' if self.trust_server_certificate else 'no'}")
        return ";".join(parts) + ";"

    def connection_string(self) -> str:
        base = self.base_connection_string()
        if self.column_encryption:
            return base + "ColumnEncryption=Enabled"
        return base

    def redacted(self) -> str:
        """Connection string safe to log."""
        if self.auth_mode is AuthMode.SQL_PASSWORD and self.password:
            return self.connection_string().replace(f"PWD={self.password}", "PWD=***")
        return self.connection_string()


# ─── Customer ─────────────────────────────────────────────────────────────────


class CustomerRecord(BaseModel):
    """A Customer row as returned to the caller.

    Encrypted fields are ``bytes`` when the connection did not decrypt them.
    """

    customer_id: int
    name: str | bytes | None
    ssn: str | bytes | None
    city: str | None

    @classmethod
    def from_row(cls, row: Mapping) -> "CustomerRecord":
        return cls(
            customer_id=row["CustomerId"],
            name=row["Name"],
            ssn=row["SSN"],
            city=row["City"],
        )
