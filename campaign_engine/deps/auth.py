"""Request authentication for the campaign API.

Every call carries a bearer token and an X-Org-Id header naming the
organization it acts on; the two must agree. The resolved caller is kept on
request.state for the routers.
"""
from dataclasses import dataclass, field
from typing import Any, Dict

from fastapi import HTTPException, Request

from campaign_engine.services.auth_service import Role, parse_role, verify_token

ORG_HEADER = "X-Org-Id"


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    org_id: int
    role: Role
    claims: Dict[str, Any] = field(default_factory=dict)


def _bearer_token(request: Request) -> str:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if not scheme:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    return token.strip()


def _requested_org_id(request: Request) -> int:
    raw = request.headers.get(ORG_HEADER)
    if raw is None:
        raise HTTPException(status_code=403, detail=f"Missing {ORG_HEADER} header")
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=403, detail=f"Invalid {ORG_HEADER} header") from exc


def require_auth(request: Request) -> AuthContext:
    try:
        claims = verify_token(_bearer_token(request))
        token_org_id = int(claims["org_id"])
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=401, detail=str(exc) or "Invalid token claims") from exc

    if _requested_org_id(request) != token_org_id:
        raise HTTPException(status_code=403, detail="Organization mismatch")

    try:
        role = parse_role(claims.get("role"))
    except ValueError as exc:
        raise HTTPException(status_code=403, detail="Invalid role claim") from exc

    ctx = AuthContext(user_id=str(claims["sub"]), org_id=token_org_id, role=role, claims=claims)
    request.state.auth = ctx
    request.state.org_id = ctx.org_id
    return ctx
