from contextlib import contextmanager
from functools import lru_cache

from config import Settings, get_settings
from db.commands import DatabaseConnection
from db.emulated import EmulatedConnection, EmulatedServer
from db.mssql import MssqlConnection
from db.provisioning import create_emulated_server
from models.schemas import AuthMode, ConnectionConfig


def build_connection_config(settings: Settings, *, name: str, column_encryption: bool) -> ConnectionConfig:
    return ConnectionConfig(
        name=name,
        driver=settings.odbc_driver,
        server=settings.server,
        database=settings.database,
        auth_mode=AuthMode.INTEGRATED if settings.integrated_security else AuthMode.SQL_PASSWORD,
        username=settings.username,
        password=settings.password,
        trust_server_certificate=settings.trust_server_certificate,
        column_encryption=column_encryption,
    )


def plain_config(settings: Settings) -> ConnectionConfig:
    """Connection without the column encryption setting."""
    return build_connection_config(settings, name="plain", column_encryption=False)


def encrypted_config(settings: Settings) -> ConnectionConfig:
    """The same connection with ``ColumnEncryption=Enabled`` appended."""
    return build_connection_config(settings, name="column-encryption", column_encryption=True)


@lru_cache
def get_emulated_server() -> EmulatedServer:
    """Process-wide emulated server, provisioned on first use."""
    return create_emulated_server(get_settings())


@contextmanager
def open_connection(config: ConnectionConfig, settings: Settings | None = None, *, server: EmulatedServer | None = None):
    """Open a connection on the configured backend; it is always closed on exit."""
    settings = settings or get_settings()
    conn: DatabaseConnection
    if settings.backend == "mssql":
        conn = MssqlConnection.open(config)
    else:
        conn = EmulatedConnection(server or get_emulated_server(), config)
    try:
        yield conn
    finally:
        conn.close()
