"""Client-side column encryption used by the emulated driver.

Two column encryption keys are derived from the configured column master key
with HKDF-SHA256:

- deterministic columns use AES-SIV, so equal plaintexts give equal
  ciphertexts and the server can answer equality predicates;
- randomized columns use Fernet (AES-128-CBC with HMAC-SHA256 and a fresh IV),
  so the server cannot compare them at all.

The master key is loaded from the COLUMN_MASTER_KEY environment variable.
Generate one with:

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

import base64
import binascii
import logging
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESSIV
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from config import get_settings
from errors import unsupported
from models.database import EncryptionType

logger = logging.getLogger(__name__)

MASTER_KEY_BYTES = 32


@dataclass(frozen=True)
class ColumnKeys:
    deterministic: AESSIV
    randomized: Fernet


_column_keys: ColumnKeys | None = None


def _derive(master: bytes, info: bytes, length: int) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=None, info=info).derive(master)


def _decode_master_key(key: str) -> bytes:
    try:
        raw = base64.urlsafe_b64decode(key.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError("COLUMN_MASTER_KEY is not valid url-safe base64") from exc
    if len(raw) != MASTER_KEY_BYTES:
        raise ValueError(f"COLUMN_MASTER_KEY must decode to {MASTER_KEY_BYTES} bytes, got {len(raw)}")
    return raw


def _get_column_keys() -> ColumnKeys:
    """Lazily derive the column encryption keys from the configured master key."""
    global _column_keys
    if _column_keys is not None:
        return _column_keys

    key = get_settings().column_master_key
    if not key:
        logger.warning(
            "COLUMN_MASTER_KEY is not set; using an ephemeral key. Encrypted values "
            "will not be readable after this process exits."
        )
        key = Fernet.generate_key().decode()

    master = _decode_master_key(key)
    _column_keys = ColumnKeys(
        deterministic=AESSIV(_derive(master, b"column-key:deterministic", 64)),
        randomized=Fernet(base64.urlsafe_b64encode(_derive(master, b"column-key:randomized", 32))),
    )
    return _column_keys


def encrypt_value(plaintext: str | None, encryption_type: EncryptionType) -> bytes | None:
    """Encrypt a column value.  Returns None if input is None."""
    if plaintext is None:
        return None
    keys = _get_column_keys()
    data = str(plaintext).encode("utf-8")
    if encryption_type is EncryptionType.DETERMINISTIC:
        return keys.deterministic.encrypt(data, None)
    return keys.randomized.encrypt(data)


def decrypt_value(ciphertext: bytes | None, encryption_type: EncryptionType) -> str | None:
    """Decrypt a column value.  Returns None if input is None.

    Unlike plaintext passthrough, a value that does not decrypt under the
    configured key is an error: the driver has no way to present it.
    """
    if ciphertext is None:
        return None
    keys = _get_column_keys()
    try:
        if encryption_type is EncryptionType.DETERMINISTIC:
            data = keys.deterministic.decrypt(bytes(ciphertext), None)
        else:
            data = keys.randomized.decrypt(bytes(ciphertext))
    except (InvalidTag, InvalidToken, ValueError) as exc:
        raise unsupported(
            code="decryption_failed",
            message=(
                f"Failed to decrypt a column value encrypted with "
                f"encryption_type = '{encryption_type.value}'. The column encryption key "
                f"does not match the one used to encrypt the value."
            ),
        ) from exc
    return data.decode("utf-8")
