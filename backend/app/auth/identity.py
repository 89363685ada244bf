"""Principal resolution for inbound requests.

The login flow sets an HS256 JWT in the ``token`` cookie; API clients may
send the same token as ``Authorization: Bearer <token>``.  The token's
``userId`` claim (or ``sub``) identifies the principal that owns uploads.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Request
from pydantic import BaseModel

from app.config import get_config
from app.uploads.errors import Unauthorized

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "token"


class Principal(BaseModel):
    """Authenticated caller."""
    user_id: str
    email: Optional[str] = None


def create_access_token(
    user_id: str,
    secret_key: str,
    algorithm: str = "HS256",
    expires_minutes: int = 60,
    email: Optional[str] = None,
) -> str:
    """Sign a token carrying *user_id* (used by the login flow and tests)."""
    now = datetime.now(timezone.utc)
    claims = {
        "userId": user_id,
        "sub": user_id,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, secret_key, algorithm=algorithm)


def decode_principal(token: Optional[str], secret_key: str, algorithm: str = "HS256") -> Principal:
    """Verify *token* and return its principal.

    Raises:
        Unauthorized: If the token is missing, expired, badly signed, or
                      carries no user id.
    """
    if not token:
        raise Unauthorized("Missing credentials")
    try:
        claims = jwt.decode(token, secret_key, algorithms=[algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise Unauthorized("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("Rejected token: %s", exc)
        raise Unauthorized("Invalid token") from exc

    user_id = claims.get("userId") or claims.get("sub")
    if not user_id:
        raise Unauthorized("Token carries no user id")
    return Principal(user_id=str(user_id), email=claims.get("email"))


def _extract_token(request: Request) -> Optional[str]:
    token = request.cookies.get(TOKEN_COOKIE)
    if token:
        return token
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value.strip()
    return None


async def get_principal(request: Request) -> Principal:
    """FastAPI dependency: resolve the caller or raise ``Unauthorized``."""
    jwt_cfg = get_config().secrets.jwt
    return decode_principal(_extract_token(request), jwt_cfg.secret_key, jwt_cfg.algorithm)
