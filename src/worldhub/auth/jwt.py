"""Session context tokens.

A token binds one device to one hub session after its access code was
validated. It carries only the session id and the device id; the access code
itself never appears in it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from worldhub.config import Settings, get_settings


@dataclass(frozen=True)
class SessionContext:
    session_id: str
    device_id: str


def create_session_token(session_id: str, device_id: str, settings: Settings | None = None) -> str:
    """Create a signed session token for ``device_id``."""
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": session_id,
        "device": device_id,
        "iat": now,
        "exp": now + timedelta(minutes=settings.session_token_expire_minutes),
        "iss": settings.token_issuer,
        "type": "session",
    }
    return jwt.encode(payload, settings.session_token_secret, algorithm=settings.session_token_algorithm)


def verify_session_token(token: str, settings: Settings | None = None) -> SessionContext:
    """
    Verify and decode a session token.

    Raises:
        jwt.InvalidTokenError: If the token is invalid, expired, or wrong type.
    """
    settings = settings or get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.session_token_secret,
            algorithms=[settings.session_token_algorithm],
            issuer=settings.token_issuer,
        )
    except jwt.ExpiredSignatureError:
        msg = "Token has expired"
        raise jwt.InvalidTokenError(msg) from None

    if payload.get("type") != "session":
        msg = f"Expected token type 'session', got '{payload.get('type')}'"
        raise jwt.InvalidTokenError(msg)
    if not payload.get("device"):
        msg = "Token has no device claim"
        raise jwt.InvalidTokenError(msg)

    return SessionContext(session_id=payload["sub"], device_id=payload["device"])
