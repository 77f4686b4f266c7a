from fastapi import Depends, HTTPException

from campaign_engine.deps.auth import AuthContext, require_auth
from campaign_engine.services.auth_service import ROLE_RANK, Role

__all__ = ["Role", "require_role"]


def require_role(role: Role):
    """Dependency admitting callers whose role ranks at least `role`."""

    def dependency(ctx: AuthContext = Depends(require_auth)) -> AuthContext:
        if ROLE_RANK[ctx.role] < ROLE_RANK[role]:
            raise HTTPException(status_code=403, detail="Insufficient role")
        return ctx

    return dependency
