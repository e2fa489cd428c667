import uuid

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.actor import get_current_employee
from ..db import get_db
from ..errors import AuthorizationError
from ..models.models import EmployeeAccount
from ..schemas.tasks import ProgressUpdate, ReviewReject
from ..services.progress import ProgressEngine
from ..services.time_rules import Clock, get_clock


logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/assignments", tags=["assignments"])


@router.get("/pending-review")
def pending_review(
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return ProgressEngine(db, clock=clock).pending_reviews(me.id)


@router.get("/{assignment_id}")
def get_assignment(
    assignment_id: uuid.UUID,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    engine = ProgressEngine(db, clock=clock)
    assignment = engine.repo.get_assignment(assignment_id)
    if assignment.employee_id != me.id and not engine.guard.can_review_account(me.id, assignment.employee_id):
        logger.info("authorization_denied", check="view_assignment", actor_id=str(me.id), assignment_id=str(assignment.id))
        raise AuthorizationError()
    return engine.assignment_view(assignment)


@router.post("/{assignment_id}/progress")
def update_progress(
    assignment_id: uuid.UUID,
    body: ProgressUpdate,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return ProgressEngine(db, clock=clock).update_progress(assignment_id, body.category, body.delta, me.id)


@router.post("/{assignment_id}/submit")
def submit_for_review(
    assignment_id: uuid.UUID,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return ProgressEngine(db, clock=clock).submit_for_review(assignment_id, me.id)


@router.post("/{assignment_id}/approve")
def approve_assignment(
    assignment_id: uuid.UUID,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return ProgressEngine(db, clock=clock).approve(assignment_id, me.id)


@router.post("/{assignment_id}/reject")
def reject_assignment(
    assignment_id: uuid.UUID,
    body: ReviewReject,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return ProgressEngine(db, clock=clock).reject(assignment_id, me.id, body.reason)
