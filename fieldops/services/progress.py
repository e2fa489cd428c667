"""
Assignment progress and review workflow.

State machine per assignment:

    not_started -> in_progress   assignee (or a reviewer) records progress
    rejected    -> in_progress   same
    in_progress -> submitted     assignee, once every assigned category is achieved
    submitted   -> approved      authorised reviewer
    submitted   -> rejected      authorised reviewer, with a reason

Status flips are compare-and-swap updates guarded on the expected status, and
counters are incremented in the database, so concurrent requests never lose
writes. A completed or cancelled task freezes every assignment on it.
"""
import uuid
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Session

from ..categories import (
    CATEGORY_ORDER,
    Category,
    CategoryKind,
    MUTABLE_SUBMISSION_STATUSES,
    SubmissionStatus,
    TERMINAL_TASK_STATUSES,
    parse_category,
    sort_categories,
)
from ..db import unit_of_work
from ..errors import AuthorizationError, StateConflictError, ValidationError
from ..models.models import Assignment, AssignmentProgress, EmployeeAccount, Task, TaskCategory
from .aggregation import (
    all_targets_achieved,
    assignment_percentage,
    category_totals,
    effective_task_status,
    first_deficient_category,
    percentage,
    task_overall_percentage,
)
from .audit import create_audit_log
from .finance import FinanceApprovalEngine
from .hierarchy import HierarchyResolver
from .notifications import record_notification
from .permissions import ReviewAuthorizationGuard, is_admin
from .task_service import TaskRepository, as_uuid
from .time_rules import Clock, SystemClock


logger = structlog.get_logger(__name__)


def serialize_task(task: Task, today) -> Dict[str, Any]:
    return {
        "id": str(task.id),
        "name": task.name,
        "location": task.location,
        "circle": task.circle,
        "zone": task.zone,
        "start_date": task.start_date.isoformat() if task.start_date else None,
        "end_date": task.end_date.isoformat() if task.end_date else None,
        "status": task.status,
        "effective_status": effective_task_status(task.status, task.start_date, task.end_date, today),
        "key_insight": task.key_insight,
        "created_by": str(task.created_by),
        "assigned_to": str(task.assigned_to) if task.assigned_to else None,
    }


def _progress_dict(row: AssignmentProgress) -> Dict[str, Any]:
    category = Category(row.category)
    target = row.target or 0
    completed = row.completed or 0
    return {
        "category": category.value,
        "label": category.label,
        "kind": category.kind.value,
        "target": target,
        "completed": completed,
        "percentage": percentage(completed, target),
        "achieved": target > 0 and completed >= target,
    }


class ProgressEngine:
    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        repo: Optional[TaskRepository] = None,
        guard: Optional[ReviewAuthorizationGuard] = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.guard = guard or ReviewAuthorizationGuard(db)
        self.repo = repo or TaskRepository(db, clock=self.clock, guard=self.guard)
        self.resolver: HierarchyResolver = self.guard.resolver

    # ---- helpers ----

    def _cas_status(self, assignment_id: uuid.UUID, expected: Iterable[str], values: Dict[str, Any]) -> bool:
        """Move the assignment only if its status is still one of ``expected``."""
        stmt = (
            update(Assignment)
            .where(Assignment.id == assignment_id, Assignment.submission_status.in_(list(expected)))
            .values(version=Assignment.version + 1, updated_at=self.clock.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def _current_status(self, assignment_id: uuid.UUID) -> Optional[str]:
        return self.db.execute(
            select(Assignment.submission_status).where(Assignment.id == assignment_id)
        ).scalar_one_or_none()

    def _nearest_linked_manager(self, employee: EmployeeAccount) -> Optional[EmployeeAccount]:
        record = self.resolver.store.record_for_account(employee)
        if record is None:
            return None
        for node in self.resolver.resolve_ancestors(record.pers_no):
            if node.account is not None:
                return self.resolver.store.get_account(node.account["id"])
        return None

    def _load_for_review(self, assignment_id: Any, reviewer_id: Any):
        assignment = self.repo.get_assignment(assignment_id, lock=True)
        task = self.repo.get_task(assignment.task_id)
        self.guard.require_review_account(reviewer_id, assignment.employee_id)
        self.repo.ensure_open(task)
        return assignment, task

    # ---- mutations ----

    def update_progress(self, assignment_id: Any, category: str, delta: Any, actor_id: Any) -> Dict[str, Any]:
        """
        Apply a signed delta to one category counter of an assignment.

        The counter is floored at 0 and has no ceiling. Categories the
        assignment was not given are refused as an authorization error.
        """
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise ValidationError("delta must be a non-zero whole number", field="delta")
        cat = parse_category(category)
        actor_uuid = as_uuid(actor_id, "Employee")

        with unit_of_work(self.db):
            assignment = self.repo.get_assignment(assignment_id, lock=True)
            task = self.repo.get_task(assignment.task_id)
            self.repo.ensure_open(task)
            if assignment.submission_status not in MUTABLE_SUBMISSION_STATUSES:
                raise StateConflictError(
                    f"Assignment is {assignment.submission_status}; progress is locked until a reviewer acts"
                    if assignment.submission_status == SubmissionStatus.submitted.value
                    else f"Assignment is {assignment.submission_status}; progress is closed",
                    rule="assignment_locked",
                )
            if actor_uuid != assignment.employee_id and not self.guard.can_review_account(actor_uuid, assignment.employee_id):
                logger.info("authorization_denied", check="update_progress", actor_id=str(actor_uuid), assignment_id=str(assignment.id))
                raise AuthorizationError()
            cell = (
                self.db.query(AssignmentProgress)
                .filter(AssignmentProgress.assignment_id == assignment.id, AssignmentProgress.category == cat.value)
                .first()
            )
            if cell is None:
                logger.info("authorization_denied", check="category_not_assigned", actor_id=str(actor_uuid), category=cat.value)
                raise AuthorizationError()

            bumped = AssignmentProgress.completed + delta
            self.db.execute(
                update(AssignmentProgress)
                .where(AssignmentProgress.id == cell.id)
                .values(completed=case((bumped < 0, 0), else_=bumped), updated_at=self.clock.utcnow())
                .execution_options(synchronize_session=False)
            )
            total = self.db.execute(
                select(func.coalesce(func.sum(AssignmentProgress.completed), 0)).where(
                    AssignmentProgress.assignment_id == assignment.id
                )
            ).scalar_one()
            # Guarded on every mutable status; a concurrent update on another
            # category lands in the same state.
            values: Dict[str, Any] = {}
            new_status = assignment.submission_status
            if total > 0 or new_status != SubmissionStatus.not_started.value:
                new_status = SubmissionStatus.in_progress.value
                values["submission_status"] = new_status
            if not self._cas_status(assignment.id, MUTABLE_SUBMISSION_STATUSES, values):
                current = self._current_status(assignment.id)
                raise StateConflictError(
                    f"Assignment is {current}; progress is locked until a reviewer acts", rule="assignment_locked"
                )
            completed = self.db.execute(
                select(AssignmentProgress.completed).where(AssignmentProgress.id == cell.id)
            ).scalar_one()
            create_audit_log(
                self.db,
                entity_type="assignment",
                entity_id=assignment.id,
                action="UPDATE_PROGRESS",
                actor_id=actor_uuid,
                context={"task_id": str(task.id), "category": cat.value, "delta": delta, "completed": completed},
                timestamp_utc=self.clock.utcnow(),
            )
        logger.info(
            "progress_updated",
            assignment_id=str(assignment.id),
            category=cat.value,
            delta=delta,
            completed=completed,
            status=new_status,
        )
        return self.assignment_view(self.repo.get_assignment(assignment.id))

    def submit_for_review(self, assignment_id: Any, actor_id: Any) -> Dict[str, Any]:
        actor_uuid = as_uuid(actor_id, "Employee")
        with unit_of_work(self.db):
            assignment = self.repo.get_assignment(assignment_id, lock=True)
            task = self.repo.get_task(assignment.task_id)
            self.repo.ensure_open(task)
            if actor_uuid != assignment.employee_id:
                logger.info("authorization_denied", check="submit", actor_id=str(actor_uuid), assignment_id=str(assignment.id))
                raise AuthorizationError()
            status = assignment.submission_status
            if status != SubmissionStatus.in_progress.value:
                raise StateConflictError(
                    f"Only an in-progress assignment can be submitted (current: {status})", rule="not_in_progress"
                )
            rows = self.repo.assignment_progress([assignment.id]).get(assignment.id, [])
            if not any((r.target or 0) > 0 for r in rows):
                raise StateConflictError("Assignment has no targets to submit", rule="no_targets")
            deficient = first_deficient_category(rows)
            if deficient is not None:
                raise StateConflictError(
                    f"Targets not met: {Category(deficient).label}", rule="targets_not_met", category=deficient
                )
            now = self.clock.utcnow()
            if not self._cas_status(
                assignment.id,
                [SubmissionStatus.in_progress.value],
                {"submission_status": SubmissionStatus.submitted.value, "submitted_at": now, "rejection_reason": None},
            ):
                raise StateConflictError("Assignment changed concurrently; reload and retry", rule="concurrent_update")
            employee = self.repo.get_account(assignment.employee_id)
            manager = self._nearest_linked_manager(employee)
            if manager is not None:
                record_notification(
                    self.db,
                    manager.id,
                    "TASK_SUBMITTED",
                    payload={"task_id": str(task.id), "task_name": task.name, "assignment_id": str(assignment.id), "employee_name": employee.name},
                    dedupe_key=f"TASK_SUBMITTED:{assignment.id}:{assignment.version + 1}",
                    created_at=now,
                )
            create_audit_log(
                self.db,
                entity_type="assignment",
                entity_id=assignment.id,
                action="SUBMIT_TASK",
                actor_id=actor_uuid,
                context={"task_id": str(task.id)},
                timestamp_utc=now,
            )
        logger.info("assignment_submitted", assignment_id=str(assignment.id), task_id=str(task.id))
        return self.assignment_view(self.repo.get_assignment(assignment.id))

    def _review(self, assignment_id: Any, reviewer_id: Any, approve: bool, reason: Optional[str] = None) -> Dict[str, Any]:
        reviewer_uuid = as_uuid(reviewer_id, "Employee")
        with unit_of_work(self.db):
            assignment, task = self._load_for_review(assignment_id, reviewer_uuid)
            now = self.clock.utcnow()
            new_status = SubmissionStatus.approved.value if approve else SubmissionStatus.rejected.value
            values: Dict[str, Any] = {"submission_status": new_status, "reviewed_at": now, "reviewed_by": reviewer_uuid}
            if not approve:
                values["rejection_reason"] = reason
            if not self._cas_status(assignment.id, [SubmissionStatus.submitted.value], values):
                current = self._current_status(assignment.id)
                raise StateConflictError(
                    f"Assignment is {current}; only a submitted assignment can be reviewed",
                    rule="already_approved" if current == SubmissionStatus.approved.value else "not_submitted",
                )
            template = "TASK_APPROVED" if approve else "TASK_REJECTED"
            payload = {"task_id": str(task.id), "task_name": task.name, "assignment_id": str(assignment.id)}
            if reason:
                payload["reason"] = reason
            record_notification(
                self.db,
                assignment.employee_id,
                template,
                payload=payload,
                dedupe_key=f"{template}:{assignment.id}:{assignment.version + 1}",
                created_at=now,
            )
            create_audit_log(
                self.db,
                entity_type="assignment",
                entity_id=assignment.id,
                action="APPROVE_TASK" if approve else "REJECT_TASK",
                actor_id=reviewer_uuid,
                context={"task_id": str(task.id), "reason": reason},
                timestamp_utc=now,
            )
        logger.info("assignment_reviewed", assignment_id=str(assignment.id), reviewer_id=str(reviewer_uuid), status=new_status)
        return self.assignment_view(self.repo.get_assignment(assignment.id))

    def approve(self, assignment_id: Any, reviewer_id: Any) -> Dict[str, Any]:
        return self._review(assignment_id, reviewer_id, approve=True)

    def reject(self, assignment_id: Any, reviewer_id: Any, reason: Optional[str]) -> Dict[str, Any]:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", field="reason")
        return self._review(assignment_id, reviewer_id, approve=False, reason=reason.strip())

    # ---- views ----

    def assignment_view(
        self,
        assignment: Assignment,
        task: Optional[Task] = None,
        rows: Optional[List[AssignmentProgress]] = None,
    ) -> Dict[str, Any]:
        """Task fields, per-category progress and submit readiness for one assignment."""
        today = self.clock.today()
        if task is None:
            task = self.repo.get_task(assignment.task_id)
        if rows is None:
            rows = self.repo.assignment_progress([assignment.id]).get(assignment.id, [])
        rows = sorted(rows, key=lambda r: CATEGORY_ORDER[Category(r.category)])
        achieved = all_targets_achieved(rows)
        task_open = task.status not in TERMINAL_TASK_STATUSES
        return {
            "assignment_id": str(assignment.id),
            "employee_id": str(assignment.employee_id),
            "role_in_task": assignment.role_in_task,
            "submission_status": assignment.submission_status,
            "submitted_at": assignment.submitted_at.isoformat() if assignment.submitted_at else None,
            "reviewed_at": assignment.reviewed_at.isoformat() if assignment.reviewed_at else None,
            "reviewed_by": str(assignment.reviewed_by) if assignment.reviewed_by else None,
            "rejection_reason": assignment.rejection_reason,
            "task": serialize_task(task, today),
            "categories": [_progress_dict(r) for r in rows],
            "overall_percentage": assignment_percentage(rows),
            "all_targets_achieved": achieved,
            "can_submit": task_open and achieved and assignment.submission_status == SubmissionStatus.in_progress.value,
        }

    def my_assigned_tasks(self, employee_id: Any) -> List[Dict[str, Any]]:
        assignments = self.repo.list_assignments_for_employee(employee_id)
        progress = self.repo.assignment_progress(a.id for a in assignments)
        tasks = {t.id: t for t in self.db.query(Task).filter(Task.id.in_([a.task_id for a in assignments])).all()} if assignments else {}
        return [self.assignment_view(a, task=tasks[a.task_id], rows=progress.get(a.id, [])) for a in assignments]

    def task_summary(self, task_id: Any) -> Dict[str, Any]:
        """Task-level roll-up across every assignment."""
        task = self.repo.get_task(task_id)
        assignments = self.repo.list_assignments(task.id)
        progress = self.repo.assignment_progress(a.id for a in assignments)
        all_rows = [row for rows in progress.values() for row in rows]
        totals = category_totals(self.repo.task_categories(task.id), all_rows)
        accounts = self.resolver.store.accounts_by_id(a.employee_id for a in assignments)
        team = []
        for a in assignments:
            rows = progress.get(a.id, [])
            account = accounts.get(a.employee_id)
            team.append({
                "assignment_id": str(a.id),
                "employee_id": str(a.employee_id),
                "name": account.name if account else None,
                "role_in_task": a.role_in_task,
                "submission_status": a.submission_status,
                "categories": [_progress_dict(r) for r in rows],
                "percentage": assignment_percentage(rows),
            })
        finance = FinanceApprovalEngine(self.db, clock=self.clock, repo=self.repo, guard=self.guard)
        return {
            "task": serialize_task(task, self.clock.today()),
            "categories": [t.to_dict() for t in totals if t.kind != "finance"],
            "overall_percentage": task_overall_percentage(totals),
            "team": team,
            "finance": finance.finance_summary(task.id),
        }

    def hierarchical_report(self, employee_id: Any, viewer_id: Any) -> Dict[str, Any]:
        """
        Allocated, distributed, completed and remaining counts per work
        category across every task the employee created or manages.

        Visible to the employee, to admins and to anyone who may review them.
        """
        employee = self.repo.get_account(employee_id)
        viewer = self.repo.get_account(viewer_id)
        if viewer.id != employee.id and not is_admin(viewer) and not self.guard.can_review_account(viewer.id, employee.id):
            logger.info("authorization_denied", check="hierarchical_report", actor_id=str(viewer.id), employee_id=str(employee.id))
            raise AuthorizationError()

        tasks = (
            self.db.query(Task)
            .filter(or_(Task.created_by == employee.id, Task.assigned_to == employee.id))
            .order_by(Task.start_date.desc(), Task.created_at.desc())
            .all()
        )
        task_ids = [t.id for t in tasks]
        declared: Dict[uuid.UUID, List[Any]] = defaultdict(list)
        progress: Dict[uuid.UUID, List[AssignmentProgress]] = defaultdict(list)
        team_counts: Dict[uuid.UUID, int] = {}
        if task_ids:
            for tc in self.db.query(TaskCategory).filter(TaskCategory.task_id.in_(task_ids)).all():
                declared[tc.task_id].append(tc)
            rows = (
                self.db.query(Assignment.task_id, AssignmentProgress)
                .join(AssignmentProgress, AssignmentProgress.assignment_id == Assignment.id)
                .filter(Assignment.task_id.in_(task_ids))
                .all()
            )
            for task_id, row in rows:
                progress[task_id].append(row)
            team_counts = dict(
                self.db.query(Assignment.task_id, func.count(Assignment.id))
                .filter(Assignment.task_id.in_(task_ids))
                .group_by(Assignment.task_id)
                .all()
            )

        today = self.clock.today()
        summary: Dict[str, Dict[str, int]] = {}
        reports = []
        for task in tasks:
            distributed: Dict[str, int] = defaultdict(int)
            for row in progress[task.id]:
                distributed[row.category] += row.target or 0
            categories = []
            for total in category_totals(declared[task.id], progress[task.id]):
                if total.kind == CategoryKind.finance.value:
                    continue
                line = {
                    "allocated": total.target,
                    "distributed": distributed[total.category],
                    "completed": total.completed,
                    "remaining": max(total.target - total.completed, 0),
                }
                categories.append({"category": total.category, "label": total.label, **line})
                bucket = summary.setdefault(total.category, dict.fromkeys(line, 0))
                for key, value in line.items():
                    bucket[key] += value
            reports.append({
                "task": serialize_task(task, today),
                "is_creator": task.created_by == employee.id,
                "is_manager": task.assigned_to == employee.id,
                "team_count": int(team_counts.get(task.id, 0)),
                "categories": categories,
            })

        return {
            "employee": {"id": str(employee.id), "name": employee.name, "role": employee.role, "circle": employee.circle},
            "tasks_managed": len(reports),
            "summary": [
                {"category": code, "label": Category(code).label, **summary[code]}
                for code in sort_categories(summary)
            ],
            "tasks": reports,
        }

    def pending_reviews(self, reviewer_id: Any) -> List[Dict[str, Any]]:
        """Submitted assignments the reviewer may act on, newest submission first."""
        candidates = (
            self.db.query(Assignment)
            .filter(Assignment.submission_status == SubmissionStatus.submitted.value)
            .order_by(Assignment.submitted_at.desc())
            .all()
        )
        allowed: Dict[uuid.UUID, bool] = {}
        visible = []
        for assignment in candidates:
            if assignment.employee_id not in allowed:
                allowed[assignment.employee_id] = self.guard.can_review_account(reviewer_id, assignment.employee_id)
            if allowed[assignment.employee_id]:
                visible.append(assignment)
        progress = self.repo.assignment_progress(a.id for a in visible)
        return [self.assignment_view(a, rows=progress.get(a.id, [])) for a in visible]
