import uuid
from collections import defaultdict
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..categories import (
    AssignmentRole,
    Category,
    CategoryKind,
    SubmissionStatus,
    TaskStatus,
    TERMINAL_TASK_STATUSES,
    parse_category,
)
from ..db import unit_of_work
from ..errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from ..models.models import (
    Assignment,
    AssignmentProgress,
    EmployeeAccount,
    Task,
    TaskCategory,
)
from .audit import create_audit_log, compute_diff
from .permissions import ReviewAuthorizationGuard, is_admin
from .time_rules import Clock, SystemClock


logger = structlog.get_logger(__name__)

# Targets of a member cannot change while a reviewer holds the assignment
LOCKED_SUBMISSION_STATUSES = (SubmissionStatus.submitted.value, SubmissionStatus.approved.value)


def as_uuid(value: Any, what: str = "Record") -> uuid.UUID:
    """Coerce an id; malformed ids are reported as missing records."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFoundError(f"{what} not found")


def _parse_target(category: Category, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Target for {category.label} must be a whole number", category=category.value)
    if value < 0:
        raise ValidationError(f"Target for {category.label} cannot be negative", category=category.value)
    return value


def _in_circle(account: EmployeeAccount, task: Task) -> bool:
    if not task.circle:
        return True
    return (account.circle or "").strip().lower() == task.circle.strip().lower()


def parse_targets(targets: Optional[Dict[str, Any]]) -> Dict[Category, int]:
    parsed: Dict[Category, int] = {}
    for key, value in (targets or {}).items():
        category = parse_category(key)
        parsed[category] = _parse_target(category, value)
    return parsed


class TaskRepository:
    """Storage of tasks, their categories and per-employee assignments."""

    def __init__(self, db: Session, clock: Optional[Clock] = None, guard: Optional[ReviewAuthorizationGuard] = None):
        self.db = db
        self.clock = clock or SystemClock()
        self.guard = guard or ReviewAuthorizationGuard(db)

    # ---- lookups ----

    def get_account(self, account_id: Any) -> EmployeeAccount:
        account = self.db.get(EmployeeAccount, as_uuid(account_id, "Employee"))
        if account is None:
            raise NotFoundError("Employee not found")
        return account

    def get_task(self, task_id: Any) -> Task:
        task = self.db.get(Task, as_uuid(task_id, "Task"))
        if task is None:
            raise NotFoundError("Task not found")
        return task

    def get_assignment(self, assignment_id: Any, lock: bool = False) -> Assignment:
        query = self.db.query(Assignment).filter(Assignment.id == as_uuid(assignment_id, "Assignment"))
        if lock:
            query = query.with_for_update()
        assignment = query.first()
        if assignment is None:
            raise NotFoundError("Assignment not found")
        return assignment

    def find_assignment_for(self, task_id: Any, employee_id: Any) -> Optional[Assignment]:
        return (
            self.db.query(Assignment)
            .filter(
                Assignment.task_id == as_uuid(task_id, "Task"),
                Assignment.employee_id == as_uuid(employee_id, "Employee"),
            )
            .first()
        )

    def get_assignment_for(self, task_id: Any, employee_id: Any) -> Assignment:
        assignment = self.find_assignment_for(task_id, employee_id)
        if assignment is None:
            raise NotFoundError("Assignment not found")
        return assignment

    def list_assignments(self, task_id: Any) -> List[Assignment]:
        return (
            self.db.query(Assignment)
            .filter(Assignment.task_id == as_uuid(task_id, "Task"))
            .order_by(Assignment.created_at)
            .all()
        )

    def list_assignments_for_employee(self, employee_id: Any) -> List[Assignment]:
        return (
            self.db.query(Assignment)
            .join(Task, Task.id == Assignment.task_id)
            .filter(Assignment.employee_id == as_uuid(employee_id, "Employee"))
            .order_by(Task.created_at.desc(), Task.start_date.desc())
            .all()
        )

    def task_categories(self, task_id: Any) -> List[TaskCategory]:
        return self.db.query(TaskCategory).filter(TaskCategory.task_id == as_uuid(task_id, "Task")).all()

    def task_category(self, task_id: Any, category: str) -> Optional[TaskCategory]:
        return (
            self.db.query(TaskCategory)
            .filter(TaskCategory.task_id == as_uuid(task_id, "Task"), TaskCategory.category == category)
            .first()
        )

    def assignment_progress(self, assignment_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, List[AssignmentProgress]]:
        ids = list(set(assignment_ids))
        grouped: Dict[uuid.UUID, List[AssignmentProgress]] = defaultdict(list)
        if not ids:
            return grouped
        rows = self.db.query(AssignmentProgress).filter(AssignmentProgress.assignment_id.in_(ids)).all()
        for row in rows:
            grouped[row.assignment_id].append(row)
        return grouped

    def progress_for_task(self, task_id: Any) -> List[AssignmentProgress]:
        return (
            self.db.query(AssignmentProgress)
            .join(Assignment, Assignment.id == AssignmentProgress.assignment_id)
            .filter(Assignment.task_id == as_uuid(task_id, "Task"))
            .all()
        )

    def available_team_members(self, task_id: Any, actor_id: Any) -> List[Dict[str, Any]]:
        """
        Accounts the actor can put on the task: active accounts linked to the
        actor's direct reports in the task's circle, in org-chart order.
        Admins see every active account in the circle. Members already on
        the task are listed with ``is_assigned`` set.
        """
        task = self.get_task(task_id)
        self.guard.require_manage_task(actor_id, task)
        actor = self.get_account(actor_id)
        store = self.guard.store

        if is_admin(actor):
            query = self.db.query(EmployeeAccount).filter(EmployeeAccount.is_active.is_(True))
            if task.circle:
                query = query.filter(func.lower(EmployeeAccount.circle) == task.circle.strip().lower())
            candidates = query.order_by(EmployeeAccount.name).all()
            pers_nos = {a.id: a.pers_no for a in candidates}
        else:
            record = store.record_for_account(actor)
            reports = store.direct_reports(record.pers_no) if record is not None else []
            linked = store.accounts_by_id(r.linked_account_id for r in reports)
            candidates, pers_nos = [], {}
            for report in reports:
                account = linked.get(report.linked_account_id)
                if account is None or not account.is_active or not _in_circle(account, task):
                    continue
                candidates.append(account)
                pers_nos[account.id] = report.pers_no

        assigned = {a.employee_id for a in self.list_assignments(task.id)}
        return [
            {
                "id": str(account.id),
                "name": account.name,
                "role": account.role,
                "circle": account.circle,
                "pers_no": pers_nos.get(account.id),
                "is_assigned": account.id in assigned,
            }
            for account in candidates
        ]

    # ---- guards ----

    @staticmethod
    def ensure_open(task: Task) -> None:
        if task.status in TERMINAL_TASK_STATUSES:
            raise StateConflictError(f"Task is {task.status}; no further changes are accepted", rule="task_closed")

    def ensure_assignable(self, task: Task, employee: EmployeeAccount, actor_id: Any) -> None:
        """A new member must be active, in the task's circle and under the actor's review."""
        if not employee.is_active:
            raise ValidationError("Employee is inactive and cannot be assigned", field="employee_id")
        actor = self.get_account(actor_id)
        if not _in_circle(employee, task) or not (
            is_admin(actor) or self.guard.can_review_account(actor.id, employee.id)
        ):
            logger.info(
                "authorization_denied",
                check="assign_member",
                actor_id=str(actor.id),
                employee_id=str(employee.id),
                task_id=str(task.id),
            )
            raise AuthorizationError()

    # ---- mutations ----

    def create_task(
        self,
        creator_id: Any,
        name: str,
        location: Optional[str],
        circle: Optional[str],
        zone: Optional[str],
        start_date: date,
        end_date: date,
        targets: Dict[str, Any],
        status: Optional[str] = None,
        assigned_to_id: Optional[Any] = None,
        key_insight: Optional[str] = None,
        est_hours: Optional[Dict[str, Any]] = None,
    ) -> Task:
        creator = self.get_account(creator_id)
        if not self.guard.can_create_task(creator):
            logger.info("authorization_denied", check="create_task", actor_id=str(creator.id), role=creator.role)
            raise AuthorizationError()
        if not name or not name.strip():
            raise ValidationError("Task name is required", field="name")
        if start_date is None or end_date is None:
            raise ValidationError("Start and end dates are required", field="start_date")
        if end_date < start_date:
            raise ValidationError("End date cannot be before start date", field="end_date")
        parsed = parse_targets(targets)
        if not parsed:
            raise ValidationError("At least one category is required", field="targets")
        if status is not None:
            try:
                status = TaskStatus(status).value
            except ValueError:
                raise ValidationError(f"Unknown task status '{status}'", field="status")
        hours: Dict[Category, float] = {}
        for key, value in (est_hours or {}).items():
            category = parse_category(key)
            if category not in parsed or category.kind is not CategoryKind.maintenance:
                raise ValidationError("Estimated hours apply to active maintenance categories only", category=category.value)
            hours[category] = float(value)
        manager = self.get_account(assigned_to_id) if assigned_to_id else None

        now = self.clock.utcnow()
        with unit_of_work(self.db):
            task = Task(
                name=name.strip(),
                location=location,
                circle=circle or creator.circle,
                zone=zone or creator.zone,
                start_date=start_date,
                end_date=end_date,
                status=status,
                key_insight=key_insight,
                created_by=creator.id,
                assigned_to=manager.id if manager else None,
                created_at=now,
            )
            self.db.add(task)
            self.db.flush()
            for category, target in parsed.items():
                self.db.add(
                    TaskCategory(
                        task_id=task.id,
                        category=category.value,
                        target=target,
                        est_hours=hours.get(category),
                    )
                )
            self.db.add(Assignment(
                task_id=task.id,
                employee_id=creator.id,
                role_in_task=AssignmentRole.creator.value,
                assigned_by=creator.id,
                created_at=now,
            ))
            if manager is not None and manager.id != creator.id:
                self.db.add(Assignment(
                    task_id=task.id,
                    employee_id=manager.id,
                    role_in_task=AssignmentRole.manager.value,
                    assigned_by=creator.id,
                    created_at=now,
                ))
            create_audit_log(
                self.db,
                entity_type="task",
                entity_id=task.id,
                action="CREATE_TASK",
                actor_id=creator.id,
                actor_role=creator.role,
                context={"name": task.name, "targets": {c.value: t for c, t in parsed.items()}},
                timestamp_utc=now,
            )
        logger.info("task_created", task_id=str(task.id), created_by=str(creator.id), categories=len(parsed))
        return task

    def _validate_member_targets(self, task: Task, targets: Dict[str, Any]) -> Dict[Category, int]:
        parsed = parse_targets(targets)
        if not parsed:
            raise ValidationError("At least one category target is required", field="targets")
        active = {tc.category for tc in self.task_categories(task.id)}
        for category in parsed:
            if category.is_finance:
                raise ValidationError(
                    f"{category.label} is a finance category and is not assigned per member", category=category.value
                )
            if category.value not in active:
                raise ValidationError(f"{category.label} is not active on this task", category=category.value)
        return parsed

    def _check_distribution(self, task: Task, employee_id: uuid.UUID, parsed: Dict[Category, int]) -> None:
        """Sales targets handed out may not exceed the task's own target."""
        declared = {tc.category: tc.target or 0 for tc in self.task_categories(task.id)}
        own = self.find_assignment_for(task.id, employee_id)
        assigned_elsewhere: Dict[str, int] = defaultdict(int)
        for row in self.progress_for_task(task.id):
            if own is None or row.assignment_id != own.id:
                assigned_elsewhere[row.category] += row.target or 0
        for category, target in parsed.items():
            if category.kind is not CategoryKind.sales:
                continue
            available = max(declared[category.value] - assigned_elsewhere[category.value], 0)
            if target > available:
                raise ValidationError(
                    f"{category.label}: only {available} of {declared[category.value]} left to distribute",
                    category=category.value,
                    available=available,
                )

    def _apply_targets(self, assignment: Assignment, parsed: Dict[Category, int]) -> Dict[str, Any]:
        existing = {row.category: row for row in self.assignment_progress([assignment.id]).get(assignment.id, [])}
        changes: Dict[str, Any] = {}
        for category, target in parsed.items():
            row = existing.get(category.value)
            if row is None:
                self.db.add(AssignmentProgress(
                    assignment_id=assignment.id, category=category.value, target=target, completed=0
                ))
                changes[category.value] = {"before": None, "after": target}
                continue
            if target < (row.completed or 0):
                raise StateConflictError(
                    f"{category.label} target cannot be set below the {row.completed} already recorded",
                    rule="target_below_completed",
                    category=category.value,
                )
            if row.target != target:
                changes[category.value] = {"before": row.target, "after": target}
                row.target = target
                row.updated_at = self.clock.utcnow()
        return changes

    def add_team_member(self, task_id: Any, employee_id: Any, targets: Dict[str, Any], actor_id: Any) -> Assignment:
        """Assign an employee to the task, or update the targets of an existing member."""
        with unit_of_work(self.db):
            task = self.get_task(task_id)
            self.ensure_open(task)
            self.guard.require_manage_task(actor_id, task)
            employee = self.get_account(employee_id)
            assignment = self.find_assignment_for(task.id, employee.id)
            created = assignment is None
            if created:
                self.ensure_assignable(task, employee, actor_id)
            parsed = self._validate_member_targets(task, targets)
            self._check_distribution(task, employee.id, parsed)

            now = self.clock.utcnow()
            if created:
                assignment = Assignment(
                    task_id=task.id,
                    employee_id=employee.id,
                    role_in_task=AssignmentRole.team_member.value,
                    assigned_by=as_uuid(actor_id, "Employee"),
                    created_at=now,
                )
                self.db.add(assignment)
                self.db.flush()
            elif assignment.submission_status in LOCKED_SUBMISSION_STATUSES:
                raise StateConflictError(
                    f"Assignment is {assignment.submission_status}; targets cannot change", rule="assignment_locked"
                )
            changes = self._apply_targets(assignment, parsed)
            assignment.updated_at = now
            create_audit_log(
                self.db,
                entity_type="assignment",
                entity_id=assignment.id,
                action="ASSIGN_TEAM_MEMBER" if created else "UPDATE_TEAM_TARGETS",
                actor_id=as_uuid(actor_id, "Employee"),
                changes_json=changes,
                context={"task_id": str(task.id), "employee_id": str(employee.id)},
                timestamp_utc=now,
            )
        logger.info("team_member_assigned", task_id=str(task.id), employee_id=str(employee.id), created=created)
        return assignment

    def update_member_targets(self, task_id: Any, employee_id: Any, targets: Dict[str, Any], actor_id: Any) -> Assignment:
        with unit_of_work(self.db):
            task = self.get_task(task_id)
            self.ensure_open(task)
            self.guard.require_manage_task(actor_id, task)
            assignment = self.get_assignment_for(task.id, employee_id)
            if assignment.submission_status in LOCKED_SUBMISSION_STATUSES:
                raise StateConflictError(
                    f"Assignment is {assignment.submission_status}; targets cannot change", rule="assignment_locked"
                )
            parsed = self._validate_member_targets(task, targets)
            self._check_distribution(task, assignment.employee_id, parsed)
            changes = self._apply_targets(assignment, parsed)
            now = self.clock.utcnow()
            assignment.updated_at = now
            create_audit_log(
                self.db,
                entity_type="assignment",
                entity_id=assignment.id,
                action="UPDATE_TEAM_TARGETS",
                actor_id=as_uuid(actor_id, "Employee"),
                changes_json=changes,
                context={"task_id": str(task.id)},
                timestamp_utc=now,
            )
        logger.info("team_targets_updated", task_id=str(task.id), assignment_id=str(assignment.id))
        return assignment

    def remove_team_member(self, task_id: Any, employee_id: Any, actor_id: Any) -> None:
        with unit_of_work(self.db):
            task = self.get_task(task_id)
            self.ensure_open(task)
            self.guard.require_manage_task(actor_id, task)
            assignment = self.get_assignment_for(task.id, employee_id)
            if assignment.role_in_task == AssignmentRole.creator.value:
                raise StateConflictError("The task creator cannot be removed", rule="creator_not_removable")
            rows = self.assignment_progress([assignment.id]).get(assignment.id, [])
            if any((r.completed or 0) > 0 for r in rows) or assignment.submission_status in LOCKED_SUBMISSION_STATUSES:
                raise StateConflictError(
                    "Cannot remove a member who has recorded progress", rule="member_has_progress"
                )
            for row in rows:
                self.db.delete(row)
            self.db.delete(assignment)
            create_audit_log(
                self.db,
                entity_type="assignment",
                entity_id=assignment.id,
                action="REMOVE_TEAM_MEMBER",
                actor_id=as_uuid(actor_id, "Employee"),
                context={"task_id": str(task.id), "employee_id": str(assignment.employee_id)},
                timestamp_utc=self.clock.utcnow(),
            )
        logger.info("team_member_removed", task_id=str(task.id), employee_id=str(employee_id))

    def update_task_status(self, task_id: Any, status: str, actor_id: Any) -> Task:
        """Set the explicit lifecycle status. Tasks are never deleted, only cancelled."""
        try:
            new_status = TaskStatus(status).value
        except ValueError:
            raise ValidationError(f"Unknown task status '{status}'", field="status")
        with unit_of_work(self.db):
            task = self.get_task(task_id)
            self.guard.require_manage_task(actor_id, task)
            before = task.status
            if before in TERMINAL_TASK_STATUSES and new_status != before:
                raise StateConflictError(f"A {before} task cannot be reopened", rule="task_closed")
            now = self.clock.utcnow()
            task.status = new_status
            task.updated_at = now
            create_audit_log(
                self.db,
                entity_type="task",
                entity_id=task.id,
                action="UPDATE_TASK_STATUS",
                actor_id=as_uuid(actor_id, "Employee"),
                changes_json=compute_diff({"status": before}, {"status": new_status}),
                timestamp_utc=now,
            )
        logger.info("task_status_updated", task_id=str(task.id), before=before, after=new_status)
        return task
