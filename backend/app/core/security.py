from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
from jose import JWTError, jwt

from app.core.config import settings
from app.core.tracking import utcnow

bearer_scheme = HTTPBearer(auto_error=True)

_UNAUTHORIZED = {"error": "UNAUTHORIZED", "message": "Invalid token"}


def _normalize_token(token: str | None) -> str:
    """
    Strip whitespace, surrounding quotes and an accidental 'Bearer ' prefix.
    """
    if token is None:
        return ""

    t = token.strip()
    if (t.startswith('"') and t.endswith('"')) or (t.startswith("'") and t.endswith("'")):
        t = t[1:-1].strip()
    if t.lower().startswith("bearer "):
        t = t[7:].strip()
    return t


def create_access_token(
    subject: str,
    role: Optional[str] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    """
    Mint a bearer token for a marketer or admin.

    Issuance is not exposed over HTTP; operators and the test-suite call this directly.
    """
    now = utcnow()
    expire_dt = now + timedelta(minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode: dict[str, Any] = {
        "sub": str(subject),
        "exp": int(expire_dt.timestamp()),
        "iat": int(now.timestamp()),
    }
    if role:
        to_encode["role"] = role

    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> str:
    """Return the token subject (user id). Raises 401 on anything invalid or expired."""
    token = _normalize_token(token)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=_UNAUTHORIZED)

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=_UNAUTHORIZED)

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=_UNAUTHORIZED)
    return str(sub)
