import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..auth.actor import get_current_employee
from ..db import get_db
from ..errors import AuthorizationError
from ..models.models import EmployeeAccount
from ..schemas.tasks import TaskCreate, TaskStatusUpdate, TeamMemberTargets
from ..services.progress import ProgressEngine, serialize_task
from ..services.time_rules import Clock, get_clock


logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("/mine")
def my_assigned_tasks(
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return ProgressEngine(db, clock=clock).my_assigned_tasks(me.id)


@router.get("/report")
def hierarchical_report(
    employee_id: Optional[uuid.UUID] = Query(default=None),
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return ProgressEngine(db, clock=clock).hierarchical_report(employee_id or me.id, me.id)


@router.post("", status_code=status.HTTP_201_CREATED)
def create_task(
    body: TaskCreate,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    engine = ProgressEngine(db, clock=clock)
    task = engine.repo.create_task(
        creator_id=me.id,
        name=body.name,
        location=body.location,
        circle=body.circle,
        zone=body.zone,
        start_date=body.start_date,
        end_date=body.end_date,
        targets=body.targets,
        status=body.status,
        assigned_to_id=body.assigned_to,
        key_insight=body.key_insight,
        est_hours=body.est_hours,
    )
    return engine.task_summary(task.id)


@router.get("/{task_id}")
def get_task(
    task_id: uuid.UUID,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    engine = ProgressEngine(db, clock=clock)
    task = engine.repo.get_task(task_id)
    if engine.repo.find_assignment_for(task.id, me.id) is None and not engine.guard.can_manage_task(me.id, task):
        logger.info("authorization_denied", check="view_task", actor_id=str(me.id), task_id=str(task.id))
        raise AuthorizationError()
    return engine.task_summary(task.id)


@router.get("/{task_id}/available-members")
def available_team_members(
    task_id: uuid.UUID,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return ProgressEngine(db, clock=clock).repo.available_team_members(task_id, me.id)


@router.post("/{task_id}/status")
def update_task_status(
    task_id: uuid.UUID,
    body: TaskStatusUpdate,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    engine = ProgressEngine(db, clock=clock)
    task = engine.repo.update_task_status(task_id, body.status, me.id)
    return serialize_task(task, clock.today())


@router.put("/{task_id}/team/{employee_id}")
def assign_team_member(
    task_id: uuid.UUID,
    employee_id: uuid.UUID,
    body: TeamMemberTargets,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    engine = ProgressEngine(db, clock=clock)
    assignment = engine.repo.add_team_member(task_id, employee_id, body.targets, me.id)
    return engine.assignment_view(assignment)


@router.patch("/{task_id}/team/{employee_id}")
def update_team_member_targets(
    task_id: uuid.UUID,
    employee_id: uuid.UUID,
    body: TeamMemberTargets,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    engine = ProgressEngine(db, clock=clock)
    assignment = engine.repo.update_member_targets(task_id, employee_id, body.targets, me.id)
    return engine.assignment_view(assignment)


@router.delete("/{task_id}/team/{employee_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_team_member(
    task_id: uuid.UUID,
    employee_id: uuid.UUID,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    ProgressEngine(db, clock=clock).repo.remove_team_member(task_id, employee_id, me.id)
