from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request

from campaign_engine.core.authorization import Role, require_role
from campaign_engine.database import SessionLocal
from campaign_engine.services import analytics_service

router = APIRouter(prefix="/analytics", tags=["Analytics"])


@router.get("/summary")
def org_summary(
    request: Request,
    date_start: Optional[datetime] = None,
    date_end: Optional[datetime] = None,
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        return analytics_service.org_summary(
            org_id=int(request.state.org_id),
            date_start=date_start,
            date_end=date_end,
            db=db,
        )
    finally:
        db.close()


@router.get("/sequences/{sequence_id}")
def sequence_performance(
    sequence_id: int,
    request: Request,
    date_start: Optional[datetime] = None,
    date_end: Optional[datetime] = None,
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        return analytics_service.sequence_performance(
            org_id=int(request.state.org_id),
            sequence_id=sequence_id,
            date_start=date_start,
            date_end=date_end,
            db=db,
        )
    finally:
        db.close()
