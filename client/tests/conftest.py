from functools import partial
from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet

from config import Settings
from db.connection import encrypted_config, open_connection, plain_config
from db.emulated import EmulatedServer
from db.provisioning import provision


@pytest.fixture(autouse=True)
def _reset_column_keys():
    """Reset the module-level column key cache between tests."""
    import crypto
    crypto._column_keys = None
    yield
    crypto._column_keys = None


@pytest.fixture()
def master_key():
    return Fernet.generate_key().decode()


@pytest.fixture()
def settings(master_key):
    return Settings(_env_file=None, backend="emulated", column_master_key=master_key)


@pytest.fixture(autouse=True)
def _crypto_settings(settings):
    """Point the crypto module at the test settings."""
    with patch("crypto.get_settings", return_value=settings):
        yield


@pytest.fixture()
def server():
    """A fresh in-memory emulated server seeded with the sample customers."""
    server = EmulatedServer("sqlite://")
    provision(server)
    yield server
    server.dispose()


@pytest.fixture()
def connect(settings, server):
    return partial(open_connection, settings=settings, server=server)


@pytest.fixture()
def plain(settings):
    return plain_config(settings)


@pytest.fixture()
def encrypted(settings):
    return encrypted_config(settings)
