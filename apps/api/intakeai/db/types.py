"""Column types that encrypt PHI at rest.

Each type serializes its Python value to text, then stores the Fernet
ciphertext. Encrypted columns cannot be filtered or indexed.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any

from sqlalchemy.types import Text, TypeDecorator

from intakeai.core.encryption import decrypt_value, encrypt_value


class _EncryptedText(TypeDecorator):
    impl = Text
    cache_ok = True

    def serialize(self, value: Any) -> str:
        return value if isinstance(value, str) else str(value)

    def deserialize(self, value: str) -> Any:
        return value

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        plaintext = self.serialize(value)
        return encrypt_value(plaintext) if plaintext else ""

    def process_result_value(self, value, dialect):
        if not value:
            return self.empty_value(value)
        return self.deserialize(decrypt_value(value))

    def empty_value(self, value):
        return value


class EncryptedString(_EncryptedText):
    """Free-text PHI (names, phone numbers, emails)."""


class EncryptedDate(_EncryptedText):
    """Dates of birth, stored as ISO strings. Unreadable values load as None."""

    def serialize(self, value: Any) -> str:
        if isinstance(value, datetime):
            value = value.date()
        if isinstance(value, date):
            return value.isoformat()
        return str(value)

    def deserialize(self, value: str) -> date | None:
        try:
            return date.fromisoformat(value)
        except ValueError:
            return None

    def empty_value(self, value):
        return None


class EncryptedJSON(_EncryptedText):
    """A JSON document stored as a single ciphertext blob."""

    def serialize(self, value: Any) -> str:
        return json.dumps(value, sort_keys=True, separators=(",", ":"))

    def deserialize(self, value: str) -> Any:
        return json.loads(value)

    def empty_value(self, value):
        return None
