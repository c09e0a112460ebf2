"""Field encryption and keyed hashing for PHI and link tokens."""

import hashlib
import hmac
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from intakeai.core.config import settings

ENCRYPTED_PREFIX = "enc:"


@lru_cache(maxsize=1)
def get_data_fernet() -> Fernet:
    """Fernet for column-level PHI encryption (DATA_ENCRYPTION_KEY)."""
    if not settings.DATA_ENCRYPTION_KEY:
        raise RuntimeError(
            "DATA_ENCRYPTION_KEY not configured. "
            'Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
        )
    return Fernet(settings.DATA_ENCRYPTION_KEY.encode())


def encrypt_value(value: str) -> str:
    """Encrypt a plaintext value; already-encrypted and empty values pass through."""
    if not value or value.startswith(ENCRYPTED_PREFIX):
        return value
    return ENCRYPTED_PREFIX + get_data_fernet().encrypt(value.encode()).decode()


def decrypt_value(value: str) -> str:
    if not value:
        return value
    if not value.startswith(ENCRYPTED_PREFIX):
        raise ValueError("Encrypted data is missing prefix")
    try:
        return get_data_fernet().decrypt(value[len(ENCRYPTED_PREFIX):].encode()).decode()
    except InvalidToken:
        raise ValueError("Invalid or corrupted encrypted data")


def keyed_hash(value: str, purpose: str) -> str:
    """HMAC-SHA256 of ``value`` under TOKEN_HASH_KEY, namespaced by purpose."""
    if not settings.TOKEN_HASH_KEY:
        raise RuntimeError("TOKEN_HASH_KEY not configured.")
    data = f"{purpose}:{value}".encode()
    return hmac.new(settings.TOKEN_HASH_KEY.encode(), data, hashlib.sha256).hexdigest()
