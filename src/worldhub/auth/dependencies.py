"""FastAPI session dependencies."""

from __future__ import annotations

import jwt
from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from worldhub.auth.jwt import SessionContext, verify_session_token

_bearer = HTTPBearer()


async def get_session_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Security(_bearer),
) -> SessionContext:
    """Verify the session token and return the session and device it names.

    Raises 401 on failure.
    """
    try:
        return verify_session_token(credentials.credentials, request.app.state.services.settings)
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e
