from typing import List

from fastapi import APIRouter, Depends, Request

from campaign_engine.core.authorization import Role, require_role
from campaign_engine.database import SessionLocal
from campaign_engine.schemas.sequence import (
    SequenceCreate,
    SequenceResponse,
    SequenceUpdate,
    StepCreate,
    StepResponse,
)
from campaign_engine.services import sequence_service
from campaign_engine.services.sequence_service import StepInput

router = APIRouter(prefix="/sequences", tags=["Sequences"])


def _step_input(step: StepCreate) -> StepInput:
    return StepInput(
        step_number=step.step_number,
        delay_hours=step.delay_hours,
        channel=step.channel,
        body_template=step.body_template,
        subject_template=step.subject_template,
    )


@router.post("", response_model=SequenceResponse, status_code=201)
def create_sequence(
    payload: SequenceCreate,
    request: Request,
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        row = sequence_service.create_sequence(
            org_id=int(request.state.org_id),
            name=payload.name,
            description=payload.description,
            trigger_event=payload.trigger_event,
            is_default=payload.is_default,
            steps=[_step_input(s) for s in payload.steps],
            db=db,
        )
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


@router.get("", response_model=List[SequenceResponse])
def list_sequences(
    request: Request,
    active_only: bool = False,
    _role=Depends(require_role(Role.VIEWER)),
):
    db = SessionLocal()
    try:
        return sequence_service.list_sequences(
            org_id=int(request.state.org_id),
            active_only=active_only,
            db=db,
        )
    finally:
        db.close()


@router.get("/default", response_model=SequenceResponse)
def get_default_sequence(
    request: Request,
    _role=Depends(require_role(Role.VIEWER)),
):
    db = SessionLocal()
    try:
        row = sequence_service.get_default_sequence(org_id=int(request.state.org_id), db=db)
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


@router.get("/{sequence_id}", response_model=SequenceResponse)
def get_sequence(
    sequence_id: int,
    request: Request,
    _role=Depends(require_role(Role.VIEWER)),
):
    db = SessionLocal()
    try:
        return sequence_service.get_sequence(
            org_id=int(request.state.org_id),
            sequence_id=sequence_id,
            db=db,
        )
    finally:
        db.close()


@router.patch("/{sequence_id}", response_model=SequenceResponse)
def update_sequence(
    sequence_id: int,
    payload: SequenceUpdate,
    request: Request,
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        row = sequence_service.update_sequence(
            org_id=int(request.state.org_id),
            sequence_id=sequence_id,
            db=db,
            **payload.model_dump(exclude_unset=True),
        )
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


@router.post("/{sequence_id}/default", response_model=SequenceResponse)
def set_default_sequence(
    sequence_id: int,
    request: Request,
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        row = sequence_service.set_default(
            org_id=int(request.state.org_id),
            sequence_id=sequence_id,
            db=db,
        )
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


@router.delete("/{sequence_id}", response_model=SequenceResponse)
def deactivate_sequence(
    sequence_id: int,
    request: Request,
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        row = sequence_service.deactivate_sequence(
            org_id=int(request.state.org_id),
            sequence_id=sequence_id,
            db=db,
        )
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


@router.post("/{sequence_id}/steps", response_model=StepResponse, status_code=201)
def add_step(
    sequence_id: int,
    payload: StepCreate,
    request: Request,
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        row = sequence_service.add_step(
            org_id=int(request.state.org_id),
            sequence_id=sequence_id,
            step=_step_input(payload),
            db=db,
        )
        db.commit()
        return row
    finally:
        db.close()


@router.delete("/{sequence_id}/steps/{step_id}", response_model=StepResponse)
def remove_step(
    sequence_id: int,
    step_id: int,
    request: Request,
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        row = sequence_service.remove_step(
            org_id=int(request.state.org_id),
            sequence_id=sequence_id,
            step_id=step_id,
            db=db,
        )
        db.commit()
        return row
    finally:
        db.close()
