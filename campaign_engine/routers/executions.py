from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from campaign_engine.core.authorization import Role, require_role
from campaign_engine.database import SessionLocal
from campaign_engine.schemas.execution import (
    DeliveryEventCreate,
    ExecutionDetailResponse,
    ExecutionResponse,
    ExecutionStart,
    ExecutionStop,
    PurgeRequest,
    StepExecutionResponse,
    StuckExecutionResponse,
)
from campaign_engine.services import dispatch_service, execution_service, sequence_service
from campaign_engine.services.stuck_detector import find_stuck_executions

router = APIRouter(prefix="/executions", tags=["Executions"])


def _detail(db, org_id: int, execution_id: int):
    row = execution_service.get_execution(org_id=org_id, execution_id=execution_id, db=db)
    # Load steps before the session closes.
    _ = list(row.step_executions)
    return row


@router.post("", response_model=ExecutionDetailResponse)
def start_execution(
    payload: ExecutionStart,
    request: Request,
    _role=Depends(require_role(Role.OPERATOR)),
):
    org_id = int(request.state.org_id)
    db = SessionLocal()
    try:
        sequence_id = payload.sequence_id
        if sequence_id is None:
            sequence_id = sequence_service.get_default_sequence(org_id=org_id, db=db).id

        row = execution_service.start(
            org_id=org_id,
            sequence_id=sequence_id,
            subject_type=payload.subject_type,
            subject_id=payload.subject_id,
            override=payload.override,
            db=db,
        )
        db.commit()
        return _detail(db, org_id, row.id)
    finally:
        db.close()


@router.get("", response_model=List[ExecutionResponse])
def list_executions(
    request: Request,
    status: Optional[str] = None,
    sequence_id: Optional[int] = None,
    subject_type: Optional[str] = None,
    subject_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0, le=1_000_000),
    _role=Depends(require_role(Role.VIEWER)),
):
    db = SessionLocal()
    try:
        return execution_service.list_executions(
            org_id=int(request.state.org_id),
            status=status,
            sequence_id=sequence_id,
            subject_type=subject_type,
            subject_id=subject_id,
            limit=limit,
            offset=offset,
            db=db,
        )
    finally:
        db.close()


@router.get("/failed-steps", response_model=List[StepExecutionResponse])
def list_failed_steps(
    request: Request,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0, le=1_000_000),
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        return execution_service.list_failed_steps(
            org_id=int(request.state.org_id),
            limit=limit,
            offset=offset,
            db=db,
        )
    finally:
        db.close()


@router.post("/failed-steps/{step_execution_id}/retry", response_model=StepExecutionResponse)
def retry_failed_step(
    step_execution_id: int,
    request: Request,
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        row = dispatch_service.retry_failed_step(
            org_id=int(request.state.org_id),
            step_execution_id=step_execution_id,
            db=db,
        )
        db.commit()
        return row
    finally:
        db.close()


@router.get("/stuck", response_model=List[StuckExecutionResponse])
def list_stuck_executions(
    request: Request,
    threshold_minutes: Optional[int] = Query(None, ge=1),
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        return find_stuck_executions(
            org_id=int(request.state.org_id),
            threshold_minutes=threshold_minutes,
            db=db,
        )
    finally:
        db.close()


@router.post("/purge")
def purge_finished_executions(
    payload: PurgeRequest,
    request: Request,
    _role=Depends(require_role(Role.ADMIN)),
):
    db = SessionLocal()
    try:
        deleted = execution_service.purge_finished_executions(
            org_id=int(request.state.org_id),
            older_than=payload.older_than,
            db=db,
        )
        db.commit()
        return {"deleted": deleted}
    finally:
        db.close()


@router.post("/step-executions/{step_execution_id}/events", response_model=StepExecutionResponse)
def record_delivery_event(
    step_execution_id: int,
    payload: DeliveryEventCreate,
    request: Request,
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        row = execution_service.record_delivery_event(
            org_id=int(request.state.org_id),
            step_execution_id=step_execution_id,
            event=payload.event,
            db=db,
        )
        db.commit()
        return row
    finally:
        db.close()


@router.get("/{execution_id}", response_model=ExecutionDetailResponse)
def get_execution(
    execution_id: int,
    request: Request,
    _role=Depends(require_role(Role.VIEWER)),
):
    db = SessionLocal()
    try:
        return _detail(db, int(request.state.org_id), execution_id)
    finally:
        db.close()


@router.post("/{execution_id}/stop", response_model=ExecutionDetailResponse)
def stop_execution(
    execution_id: int,
    request: Request,
    payload: Optional[ExecutionStop] = None,
    _role=Depends(require_role(Role.OPERATOR)),
):
    org_id = int(request.state.org_id)
    db = SessionLocal()
    try:
        reason = (payload.reason if payload else None) or execution_service.DEFAULT_STOP_REASON
        execution_service.stop(org_id=org_id, execution_id=execution_id, reason=reason, db=db)
        db.commit()
        return _detail(db, org_id, execution_id)
    finally:
        db.close()


@router.post("/{execution_id}/cancel", response_model=ExecutionDetailResponse)
def cancel_execution(
    execution_id: int,
    request: Request,
    payload: Optional[ExecutionStop] = None,
    _role=Depends(require_role(Role.OPERATOR)),
):
    org_id = int(request.state.org_id)
    db = SessionLocal()
    try:
        reason = (payload.reason if payload else None) or execution_service.DEFAULT_CANCEL_REASON
        execution_service.cancel(org_id=org_id, execution_id=execution_id, reason=reason, db=db)
        db.commit()
        return _detail(db, org_id, execution_id)
    finally:
        db.close()
