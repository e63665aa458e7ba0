"""
Bearer token verification for the credits API.

Tokens are issued by the AssignSavvy web app and signed with the shared
JWT_SECRET. `sub` is the user id; `email` and `name` seed the account on
the user's first request.
"""
from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
import logging

from assignsavvy.config import JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRATION_HOURS

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


class AuthError(Exception):
    """Missing or unverifiable credentials. The message is safe to return to the client."""
    pass


def issue_token(
    user_id: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
    ttl: Optional[timedelta] = None,
) -> str:
    """Sign a token for user_id (local tooling and tests)."""
    issued_at = datetime.now(timezone.utc)
    claims: Dict[str, Any] = {
        "sub": user_id,
        "iat": issued_at,
        "exp": issued_at + (ttl or timedelta(hours=JWT_EXPIRATION_HOURS)),
    }
    if email:
        claims["email"] = email
    if name:
        claims["name"] = name
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def claims_from_header(authorization: Optional[str]) -> Dict[str, Any]:
    """Verified claims from an Authorization header. Raises AuthError."""
    if not authorization:
        raise AuthError("Authorization header required")
    if not authorization.startswith(BEARER_PREFIX):
        raise AuthError("Invalid authorization format")

    token = authorization[len(BEARER_PREFIX):].strip()
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.info(f"Rejected bearer token: {e}")
        raise AuthError("Invalid or expired token") from e

    if not claims.get("sub"):
        raise AuthError("Invalid or expired token")
    return claims
