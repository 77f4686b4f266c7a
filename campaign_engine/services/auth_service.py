from datetime import datetime, timedelta, timezone
from enum import Enum
import os

import jwt

JWT_ALGORITHM = "HS256"
JWT_EXP_HOURS = 8


class Role(Enum):
    """Campaign roles in ascending rank."""

    VIEWER = "VIEWER"
    OPERATOR = "OPERATOR"
    ADMIN = "ADMIN"


ROLE_RANK = {
    Role.VIEWER: 1,
    Role.OPERATOR: 2,
    Role.ADMIN: 3,
}

# Tokens minted before roles were carried in the claims act as operators.
DEFAULT_ROLE = Role.OPERATOR


def _get_jwt_secret() -> str:
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise ValueError("JWT_SECRET is required")
    if len(secret) < 32:
        raise ValueError("JWT_SECRET must be at least 32 characters")
    return secret


def parse_role(value) -> Role:
    """Role from a claim or request value; empty means DEFAULT_ROLE."""
    if value is None or not str(value).strip():
        return DEFAULT_ROLE
    try:
        return Role(str(value).strip().upper())
    except ValueError as exc:
        raise ValueError(f"Unknown role: {value}") from exc


def create_access_token(user_id: str, org_id: int, role: str = DEFAULT_ROLE.value) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "org_id": int(org_id),
        "role": parse_role(role).value,
        "exp": now + timedelta(hours=JWT_EXP_HOURS),
    }
    return jwt.encode(payload, _get_jwt_secret(), algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, _get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except Exception as exc:
        raise ValueError("Invalid or expired token") from exc

    if "sub" not in payload or "org_id" not in payload:
        raise ValueError("Invalid token claims")

    return payload
