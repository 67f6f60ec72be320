from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict

import jwt
from fastapi import Header, HTTPException

from app.core.config import settings


class InvalidToken(Exception):
    pass


@dataclass(frozen=True)
class TokenPayload:
    user_id: str
    role: str
    email: str


# -------- Access tokens --------
def create_access_token(
    user_id: str, role: str, email: str, expires_in: timedelta | None = None
) -> str:
    """Mint an access token. Login lives in another service; this is for ops scripts and tests."""
    ttl = expires_in or timedelta(minutes=settings.JWT_ACCESS_EXPIRES_MINUTES)
    claims: Dict[str, Any] = {
        "userId": user_id,
        "role": role,
        "email": email,
        "exp": datetime.now(timezone.utc) + ttl,
    }
    return jwt.encode(claims, settings.JWT_ACCESS_SECRET, algorithm=settings.JWT_ALGORITHM)


def verify_access_token(token: str) -> TokenPayload:
    try:
        claims = jwt.decode(
            token, settings.JWT_ACCESS_SECRET, algorithms=[settings.JWT_ALGORITHM]
        )
    except jwt.PyJWTError as e:
        raise InvalidToken(str(e)) from e
    try:
        return TokenPayload(
            user_id=str(claims["userId"]),
            role=str(claims["role"]),
            email=str(claims.get("email", "")),
        )
    except KeyError as e:
        raise InvalidToken(f"missing claim {e}") from e


# -------- Role dependency --------
def require_roles(*roles: str) -> Callable[..., TokenPayload]:
    allowed = set(roles)

    def _dependency(authorization: str | None = Header(default=None)) -> TokenPayload:
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="No token provided")
        try:
            user = verify_access_token(authorization[len("Bearer "):])
        except InvalidToken:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        if allowed and user.role not in allowed:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user

    return _dependency
