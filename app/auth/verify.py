"""
verify.py
---------
Purpose:
    Request authentication for the report engine API.

Notes:
    - User routes: Supabase JWTs verified against the project JWKS (ES256).
      The JWKS client is created on first use so the app starts without it.
    - Cron/admin routes: shared CRON_SECRET bearer, compared in constant time.
"""

import hmac

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from app.config import settings

SUPABASE_AUDIENCE = "authenticated"

_jwk_client: PyJWKClient | None = None
_security = HTTPBearer()


def _get_jwk_client() -> PyJWKClient:
    global _jwk_client
    if _jwk_client is None:
        jwks_url = settings.jwks_url()
        if not jwks_url:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="User authentication is not configured",
            )
        _jwk_client = PyJWKClient(jwks_url)
    return _jwk_client


def verify_jwt(token: str) -> dict:
    jwk_client = _get_jwk_client()
    try:
        signing_key = jwk_client.get_signing_key_from_jwt(token)
        decoded = jwt.decode(
            token,
            signing_key.key,
            algorithms=["ES256"],
            audience=SUPABASE_AUDIENCE,
            options={"verify_exp": True},
        )
        return decoded
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def auth_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> dict:
    token = credentials.credentials
    return verify_jwt(token)


def current_user_id(claims: dict = Depends(auth_dependency)) -> str:
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token: missing user ID"
        )
    return user_id


def cron_auth_dependency(
    credentials: HTTPAuthorizationCredentials = Depends(_security),
) -> None:
    """Authorize scheduler and admin triggers with the shared CRON_SECRET."""
    if not settings.CRON_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRON_SECRET not configured",
        )
    if not hmac.compare_digest(credentials.credentials.encode(), settings.CRON_SECRET.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
