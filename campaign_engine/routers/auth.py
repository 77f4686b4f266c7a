from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from campaign_engine.core.config import get_settings
from campaign_engine.services.auth_service import DEFAULT_ROLE, create_access_token

router = APIRouter(prefix="/auth", tags=["auth"])


class TokenRequest(BaseModel):
    user_id: str
    org_id: int
    role: str = DEFAULT_ROLE.value


@router.post("/token")
def issue_token(payload: TokenRequest):
    if get_settings().env not in {"dev", "local", "test"}:
        raise HTTPException(status_code=404, detail="Not Found")
    try:
        token = create_access_token(
            user_id=str(payload.user_id),
            org_id=int(payload.org_id),
            role=payload.role,
        )
    except Exception as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return {
        "access_token": token,
        "token_type": "bearer",
    }
