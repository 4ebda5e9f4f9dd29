from typing import Literal

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Demo configuration loaded from environment variables."""

    # Application
    app_name: str = "Always Encrypted Client Demo"
    debug: bool = False

    # Which driver runs the scenarios: the built-in emulated server or SQL Server via ODBC
    backend: Literal["emulated", "mssql"] = "emulated"

    # SQL Server target
    server: str = "."
    database: str = "MyEncryptedDB"
    integrated_security: bool = True
    username: str = ""
    password: str = ""
    trust_server_certificate: bool = True
    odbc_driver: str = "ODBC Driver 18 for SQL Server"

    # Emulated server storage; the default lives only for the process
    emulated_database_url: str = "sqlite://"
    seed_emulated_database: bool = True

    # Column master key for the emulated driver (url-safe base64, 32 bytes)
    # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    column_master_key: str = ""

    # Console
    pause_at_end: bool = False

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()
