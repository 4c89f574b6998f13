from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException
import jwt

from .config import settings

ROLES = frozenset(
    {
        "admin",
        "doctor",
        "nurse",
        "receptionist",
        "pharmacist",
        "lab_technician",
        "patient",
    }
)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    role: str
    hospital_id: str


def create_access_token(user_id: str, role: str, hospital_id: str, expires_minutes: int = 60) -> str:
    """Mint a token shaped like the ones the auth backend issues. Used by tooling and tests."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "hospital_id": hospital_id,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> AuthContext:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=401, detail="Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    user_id = payload.get("sub")
    role = payload.get("role")
    hospital_id = payload.get("hospital_id")
    if not user_id or not hospital_id or role not in ROLES:
        raise HTTPException(status_code=401, detail="Malformed token payload")

    return AuthContext(user_id=str(user_id), role=str(role), hospital_id=str(hospital_id))


def get_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    return parts[1].strip()


def auth_context_from_header(authorization: Optional[str] = Header(default=None)) -> AuthContext:
    token = get_bearer_token(authorization)
    return decode_token(token)


def optional_auth_context(authorization: Optional[str] = Header(default=None)) -> Optional[AuthContext]:
    """Like :func:`auth_context_from_header` but yields ``None`` for anonymous or bad credentials."""
    if not authorization:
        return None
    try:
        return decode_token(get_bearer_token(authorization))
    except HTTPException:
        return None
