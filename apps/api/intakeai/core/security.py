"""Security utilities for session tokens, intake link tokens and form access grants."""

import hmac
import secrets
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt

from intakeai.core.config import settings
from intakeai.core.encryption import keyed_hash

LINK_TOKEN_BYTES = 32  # 256 bits of entropy, base64url encoded
FORM_ACCESS_PURPOSE = "intake_form"


# =============================================================================
# Provider Session Token (JWT, issued by the auth collaborator)
# =============================================================================


def create_session_token(provider_id: UUID, expires_hours: int | None = None) -> str:
    """
    Create signed provider session JWT.

    Always signs with current secret (JWT_SECRET).
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(provider_id),
        "iat": now,
        "exp": now + timedelta(hours=expires_hours or settings.JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_session_token(token: str) -> dict:
    """
    Decode and verify session JWT.

    Tries current secret first, then previous (for rotation support).

    Raises:
        jwt.InvalidTokenError: If token invalid with all secrets
    """
    last_error = None
    for secret in settings.jwt_secrets:
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
    raise last_error  # type: ignore


# =============================================================================
# Intake Link Tokens
# =============================================================================


def generate_link_token() -> str:
    """Opaque, URL-safe link token. Carries no embedded identifiers."""
    return secrets.token_urlsafe(LINK_TOKEN_BYTES)


def hash_link_token(token: str) -> str:
    """Keyed hash stored in place of the raw token."""
    return keyed_hash(token, purpose="intake_link")


def link_token_matches(token: str, stored_hash: str) -> bool:
    """Constant-time comparison of a presented token against a stored hash."""
    return hmac.compare_digest(hash_link_token(token), stored_hash)


# =============================================================================
# Form Access Grant (issued after DOB verification)
# =============================================================================


def create_form_access_token(link_id: UUID, expires_at: datetime) -> str:
    """Grant form access for the remaining lifetime of a verified link."""
    payload = {
        "sub": str(link_id),
        "purpose": FORM_ACCESS_PURPOSE,
        "iat": datetime.now(timezone.utc),
        "exp": expires_at,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def form_access_granted(token: str | None, link_id: UUID) -> bool:
    """True when ``token`` is a valid, unexpired grant for ``link_id``."""
    if not token:
        return False
    try:
        payload = decode_session_token(token)
    except jwt.InvalidTokenError:
        return False
    if payload.get("purpose") != FORM_ACCESS_PURPOSE:
        return False
    return hmac.compare_digest(str(payload.get("sub", "")), str(link_id))
