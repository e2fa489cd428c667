import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..auth.actor import get_current_employee
from ..db import get_db
from ..errors import AuthorizationError
from ..models.models import EmployeeAccount
from ..schemas.finance import CollectionBulkApprove, CollectionCreate, CollectionReject
from ..services.finance import FinanceApprovalEngine, serialize_entry
from ..services.time_rules import Clock, get_clock


logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/finance", tags=["finance"])


@router.post("/collections", status_code=status.HTTP_201_CREATED)
def submit_collection(
    body: CollectionCreate,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    entry = FinanceApprovalEngine(db, clock=clock).submit_collection(
        task_id=body.task_id,
        submitter_id=me.id,
        finance_type=body.finance_type,
        amount=body.amount,
        payment_mode=body.payment_mode,
        transaction_reference=body.transaction_reference,
        customer_name=body.customer_name,
        customer_contact=body.customer_contact,
        remarks=body.remarks,
        photos=body.photos,
        gps_latitude=body.gps_latitude,
        gps_longitude=body.gps_longitude,
    )
    return serialize_entry(entry)


@router.get("/collections/pending")
def pending_collections(
    finance_type: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    entries = FinanceApprovalEngine(db, clock=clock).get_pending_for_reviewer(me.id, finance_type, limit=limit)
    return [serialize_entry(e) for e in entries]


@router.post("/collections/bulk-approve")
def bulk_approve_collections(
    body: CollectionBulkApprove,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = FinanceApprovalEngine(db, clock=clock).bulk_approve(body.entry_ids, me.id)
    return {
        "approved": [serialize_entry(e) for e in result["approved"]],
        "failed": result["failed"],
    }


@router.post("/collections/{entry_id}/approve")
def approve_collection(
    entry_id: uuid.UUID,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return serialize_entry(FinanceApprovalEngine(db, clock=clock).approve(entry_id, me.id))


@router.post("/collections/{entry_id}/reject")
def reject_collection(
    entry_id: uuid.UUID,
    body: CollectionReject,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return serialize_entry(FinanceApprovalEngine(db, clock=clock).reject(entry_id, me.id, body.remarks))


@router.get("/tasks/{task_id}/summary")
def finance_summary(
    task_id: uuid.UUID,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    engine = FinanceApprovalEngine(db, clock=clock)
    task = engine.repo.get_task(task_id)
    if engine.repo.find_assignment_for(task.id, me.id) is None and not engine.guard.can_manage_task(me.id, task):
        logger.info("authorization_denied", check="finance_summary", actor_id=str(me.id), task_id=str(task.id))
        raise AuthorizationError()
    return engine.finance_summary(task.id)
