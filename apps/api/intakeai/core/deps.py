"""FastAPI dependencies for authentication, database access and AI providers."""

from typing import Generator
from uuid import UUID

import jwt
from fastapi import HTTPException, Request
from sqlalchemy.orm import Session, sessionmaker

from intakeai.core.security import decode_session_token
from intakeai.db.session import SessionLocal
from intakeai.services.ai_provider import AIProvider, get_configured_provider


# Cookie and header names
COOKIE_NAME = "intakeai_session"
FORM_ACCESS_HEADER = "X-Intake-Access"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """Session factory for work that outlives the request (summary streams)."""
    return SessionLocal


def get_ai_provider() -> AIProvider:
    return get_configured_provider()


def _session_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get(COOKIE_NAME)


def get_current_provider(request: Request) -> UUID:
    """
    Authenticated provider id from the session token.

    Accepts a Bearer header or the session cookie. Form-access grants are
    signed with the same key but carry a ``purpose`` claim and are refused.

    Raises:
        HTTPException 401: Authentication failed
    """
    token = _session_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = decode_session_token(token)
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid session")

    if "purpose" in payload:
        raise HTTPException(status_code=401, detail="Invalid session")

    try:
        return UUID(str(payload["sub"]))
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid session")


def get_form_access_token(request: Request) -> str | None:
    return request.headers.get(FORM_ACCESS_HEADER)

