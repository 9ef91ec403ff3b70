"""
Auth Middleware — bearer JWT validation for backend API routes.

Validates access tokens with the identity provider's JWKS (JSON Web Key
Set) endpoint when ``JWKS_URL`` is configured, falling back to an HS256
shared secret (``JWT_SECRET``).

Provides ``get_current_user`` / ``require_auth`` FastAPI dependencies.
"""

import logging
import jwt
from jwt import PyJWKClient
from typing import Optional

from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from config import JWKS_URL, JWT_SECRET, JWT_AUDIENCE

logger = logging.getLogger(__name__)

_jwks_client: Optional[PyJWKClient] = None

# Fallback: HS256 shared secret
_legacy_secret = JWT_SECRET

security = HTTPBearer(auto_error=False)


def _get_jwks_client() -> Optional[PyJWKClient]:
    """Lazy-init the JWKS client (caches keys for 10 min)."""
    global _jwks_client
    if _jwks_client is None and JWKS_URL:
        _jwks_client = PyJWKClient(JWKS_URL, cache_jwk_set=True, lifespan=600)
    return _jwks_client


class AuthUser(BaseModel):
    """Authenticated user extracted from the JWT."""
    id: str
    email: Optional[str] = None
    role: Optional[str] = None


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate an access token.

    Tries JWKS (asymmetric) first, falls back to the HS256 secret.
    """
    # --- Try JWKS (RS256 / ES256) ---
    client = _get_jwks_client()
    if client is not None:
        try:
            signing_key = client.get_signing_key_from_jwt(token)
            return jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256", "ES256"],
                audience=JWT_AUDIENCE,
                options={"verify_exp": True},
            )
        except (jwt.exceptions.PyJWKClientError, jwt.InvalidTokenError) as e:
            logger.debug("JWKS verification failed (%s), trying HS256 fallback", e)

    # --- Fallback: HS256 shared secret ---
    if _legacy_secret:
        try:
            return jwt.decode(
                token,
                _legacy_secret,
                algorithms=["HS256"],
                audience=JWT_AUDIENCE,
                options={"verify_exp": True},
            )
        except jwt.InvalidTokenError:
            pass

    return None


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[AuthUser]:
    """Extract the current user from the Authorization header.

    Returns ``None`` if no valid token is present (anonymous access).
    Use ``require_auth`` instead to enforce authentication.
    """
    if not credentials:
        return None

    payload = decode_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        return None

    email = payload.get("email")
    return AuthUser(
        id=payload["sub"],
        email=email.lower() if email else None,
        role=payload.get("role"),
    )


async def require_auth(
    user: Optional[AuthUser] = Depends(get_current_user),
) -> AuthUser:
    """Dependency that enforces authentication.

    Raises 401 if no valid user is found.
    """
    if not user:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
