"""
Review and management authorization.

One policy answers "may X review Y" for both the progress workflow and the
finance workflow. Denials raise a generic AuthorizationError; the reason goes
to the log only.
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.orm import Session

from ..categories import Rank, rank_at_least
from ..config import settings
from ..errors import AuthorizationError
from ..models.models import EmployeeAccount, Task
from .hierarchy import HierarchyResolver
from .hierarchy_store import HierarchyStore


logger = structlog.get_logger(__name__)


def _same_circle(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()


def is_admin(account: Optional[EmployeeAccount]) -> bool:
    return account is not None and (account.role or "").upper() == Rank.ADMIN.value


class ReviewAuthorizationGuard:
    def __init__(self, db: Session, resolver: Optional[HierarchyResolver] = None):
        self.db = db
        self.resolver = resolver or HierarchyResolver(db)
        self.store: HierarchyStore = self.resolver.store
        self._ancestors: Dict[str, set] = {}

    def _active_account(self, account_id: Any) -> Optional[EmployeeAccount]:
        account = self.store.get_account(account_id)
        if account is None or not account.is_active:
            return None
        return account

    def _pers_no_of(self, account: EmployeeAccount) -> Optional[str]:
        record = self.store.record_for_account(account)
        return record.pers_no if record is not None else account.pers_no

    def _ancestor_set(self, pers_no: str) -> set:
        # Per-guard memo; a guard lives for one request
        if pers_no not in self._ancestors:
            self._ancestors[pers_no] = self.resolver.ancestor_pers_nos(pers_no)
        return self._ancestors[pers_no]

    def _management_in_circle(self, reviewer: EmployeeAccount, circle: Optional[str]) -> bool:
        return rank_at_least(reviewer.role, settings.review_min_rank) and _same_circle(reviewer.circle, circle)

    def can_review(self, reviewer_id: Any, subject_pers_no: str) -> bool:
        """
        True when the reviewer is an ancestor of the subject, or holds a
        management rank in the subject's circle. Nobody reviews themselves.
        """
        reviewer = self._active_account(reviewer_id)
        if reviewer is None or not subject_pers_no:
            return False
        reviewer_pers_no = self._pers_no_of(reviewer)
        if reviewer_pers_no and reviewer_pers_no == subject_pers_no:
            return False
        if reviewer_pers_no and reviewer_pers_no in self._ancestor_set(subject_pers_no):
            return True

        subject_circle = None
        record = self.store.get(subject_pers_no)
        if record is not None:
            subject_circle = record.circle
        if not subject_circle:
            account = self.store.account_for_pers_no(subject_pers_no)
            subject_circle = account.circle if account is not None else None
        return self._management_in_circle(reviewer, subject_circle)

    def can_review_account(self, reviewer_id: Any, subject_account_id: Any) -> bool:
        if reviewer_id is None or subject_account_id is None or str(reviewer_id) == str(subject_account_id):
            return False
        subject = self.store.get_account(subject_account_id)
        if subject is None:
            return False
        subject_pers_no = self._pers_no_of(subject)
        if subject_pers_no:
            return self.can_review(reviewer_id, subject_pers_no)
        reviewer = self._active_account(reviewer_id)
        return reviewer is not None and self._management_in_circle(reviewer, subject.circle)

    def can_manage_task(self, actor_id: Any, task: Task) -> bool:
        actor = self._active_account(actor_id)
        if actor is None:
            return False
        if is_admin(actor):
            return True
        if actor.id == task.created_by or (task.assigned_to is not None and actor.id == task.assigned_to):
            return True
        return self._management_in_circle(actor, task.circle)

    def can_create_task(self, actor: Optional[EmployeeAccount]) -> bool:
        return actor is not None and actor.is_active and rank_at_least(actor.role, settings.task_creator_min_rank)

    def require_review_account(self, reviewer_id: Any, subject_account_id: Any) -> None:
        if not self.can_review_account(reviewer_id, subject_account_id):
            logger.info(
                "authorization_denied",
                check="review_account",
                actor_id=str(reviewer_id),
                subject_account_id=str(subject_account_id),
            )
            raise AuthorizationError()

    def require_manage_task(self, actor_id: Any, task: Task) -> None:
        if not self.can_manage_task(actor_id, task):
            logger.info("authorization_denied", check="manage_task", actor_id=str(actor_id), task_id=str(task.id))
            raise AuthorizationError()
