from fastapi import APIRouter, Depends, Request

from campaign_engine.core.authorization import Role, require_role
from campaign_engine.core.errors import NotFoundError
from campaign_engine.database import SessionLocal
from campaign_engine.schemas.subject import GoalAchieved, SubjectResponse, SubjectUpsert
from campaign_engine.services import subject_service

router = APIRouter(prefix="/subjects", tags=["Subjects"])


@router.put("/{subject_type}/{subject_id}", response_model=SubjectResponse)
def upsert_subject(
    subject_type: str,
    subject_id: str,
    payload: SubjectUpsert,
    request: Request,
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        row = subject_service.upsert_subject(
            org_id=int(request.state.org_id),
            subject_type=subject_type,
            subject_id=subject_id,
            db=db,
            **payload.model_dump(exclude_unset=True),
        )
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


@router.get("/{subject_type}/{subject_id}", response_model=SubjectResponse)
def get_subject(
    subject_type: str,
    subject_id: str,
    request: Request,
    _role=Depends(require_role(Role.VIEWER)),
):
    db = SessionLocal()
    try:
        row = subject_service.get_subject(
            org_id=int(request.state.org_id),
            subject_type=subject_type,
            subject_id=subject_id,
            db=db,
        )
        if row is None:
            raise NotFoundError(f"Campaign subject not found: {subject_type}:{subject_id}")
        return row
    finally:
        db.close()


@router.post("/{subject_type}/{subject_id}/goal", response_model=SubjectResponse)
def mark_goal_achieved(
    subject_type: str,
    subject_id: str,
    request: Request,
    payload: GoalAchieved = GoalAchieved(),
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        row = subject_service.mark_goal_achieved(
            org_id=int(request.state.org_id),
            subject_type=subject_type,
            subject_id=subject_id,
            stop_active=payload.stop_active,
            db=db,
        )
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()
