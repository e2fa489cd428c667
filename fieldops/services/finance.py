"""
Finance collection entries and their review.

An entry is created pending and is decided exactly once. Approval flips the
status with a compare-and-swap and adds the amount to the task's collected
total in the same transaction; rejection never touches totals.
"""
import uuid
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from ..categories import (
    CATEGORY_ORDER,
    Category,
    EntryStatus,
    PaymentMode,
    parse_finance_type,
    parse_payment_mode,
)
from ..db import unit_of_work
from ..errors import (
    AuthorizationError,
    DependencyTimeoutError,
    FieldOpsError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from ..models.models import FinanceCollectionEntry, TaskCategory
from .aggregation import percentage
from .audit import create_audit_log
from .notifications import record_notification
from .permissions import ReviewAuthorizationGuard
from .task_service import TaskRepository, as_uuid
from .time_rules import Clock, SystemClock


logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")
# Numeric(14, 2) holds at most twelve integer digits
MAX_AMOUNT = Decimal("999999999999.99")
BULK_APPROVE_LIMIT = 100


def parse_amount(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError("Amount must be a number", field="amount")
    try:
        amount = Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Amount must be a number", field="amount")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be greater than zero", field="amount")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"Amount cannot exceed {MAX_AMOUNT}", field="amount")
    return amount


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def serialize_entry(entry: FinanceCollectionEntry) -> Dict[str, Any]:
    category = Category(entry.finance_type)
    return {
        "id": str(entry.id),
        "task_id": str(entry.task_id),
        "submitter_id": str(entry.submitter_id),
        "finance_type": category.value,
        "finance_label": category.label,
        "amount_collected": entry.amount_collected,
        "payment_mode": entry.payment_mode,
        "transaction_reference": entry.transaction_reference,
        "customer_name": entry.customer_name,
        "customer_contact": entry.customer_contact,
        "remarks": entry.remarks,
        "photos": entry.photos or [],
        "gps_latitude": entry.gps_latitude,
        "gps_longitude": entry.gps_longitude,
        "status": entry.status,
        "reviewer_id": str(entry.reviewer_id) if entry.reviewer_id else None,
        "reviewed_at": entry.reviewed_at.isoformat() if entry.reviewed_at else None,
        "review_remarks": entry.review_remarks,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


class FinanceApprovalEngine:
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

    def get_entry(self, entry_id: Any) -> FinanceCollectionEntry:
        entry = self.db.get(FinanceCollectionEntry, as_uuid(entry_id, "Collection entry"))
        if entry is None:
            raise NotFoundError("Collection entry not found")
        return entry

    def _cas_status(self, entry_id: uuid.UUID, values: Dict[str, Any]) -> bool:
        stmt = (
            update(FinanceCollectionEntry)
            .where(FinanceCollectionEntry.id == entry_id, FinanceCollectionEntry.status == EntryStatus.pending.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def _ensure_category_total(self, task_id: uuid.UUID, category: str) -> None:
        """Create the task's total row for a finance type it never declared; a concurrent insert wins quietly."""
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(TaskCategory)
        elif dialect == "sqlite":
            stmt = sqlite_insert(TaskCategory)
        else:
            raise ValueError(f"Unsupported database dialect: {dialect}")
        self.db.execute(
            stmt.values(id=uuid.uuid4(), task_id=task_id, category=category, target=0, collected=Decimal("0"))
            .on_conflict_do_nothing(index_elements=["task_id", "category"])
        )

    def _already_processed(self, entry_id: uuid.UUID) -> StateConflictError:
        self.db.expire_all()
        current = self.get_entry(entry_id).status
        return StateConflictError(f"Collection entry is already {current}", rule="entry_already_processed", status=current)

    def submit_collection(
        self,
        task_id: Any,
        submitter_id: Any,
        finance_type: str,
        amount: Any,
        payment_mode: str,
        transaction_reference: Optional[str] = None,
        customer_name: Optional[str] = None,
        customer_contact: Optional[str] = None,
        remarks: Optional[str] = None,
        photos: Optional[List[str]] = None,
        gps_latitude: Optional[float] = None,
        gps_longitude: Optional[float] = None,
    ) -> FinanceCollectionEntry:
        amount_value = parse_amount(amount)
        category = parse_finance_type(finance_type)
        mode = parse_payment_mode(payment_mode)
        reference = _clean(transaction_reference)
        if mode is not PaymentMode.CASH and not reference:
            raise ValidationError("Transaction reference required for non-cash payments", field="transaction_reference")
        if gps_latitude is not None and not -90 <= gps_latitude <= 90:
            raise ValidationError("Latitude out of range", field="gps_latitude")
        if gps_longitude is not None and not -180 <= gps_longitude <= 180:
            raise ValidationError("Longitude out of range", field="gps_longitude")

        submitter_uuid = as_uuid(submitter_id, "Employee")
        with unit_of_work(self.db):
            task = self.repo.get_task(task_id)
            self.repo.ensure_open(task)
            if self.repo.find_assignment_for(task.id, submitter_uuid) is None:
                logger.info("authorization_denied", check="submit_collection", actor_id=str(submitter_uuid), task_id=str(task.id))
                raise AuthorizationError()
            now = self.clock.utcnow()
            entry = FinanceCollectionEntry(
                task_id=task.id,
                submitter_id=submitter_uuid,
                finance_type=category.value,
                amount_collected=amount_value,
                payment_mode=mode.value,
                transaction_reference=reference,
                customer_name=_clean(customer_name),
                customer_contact=_clean(customer_contact),
                remarks=_clean(remarks),
                photos=list(photos or []),
                gps_latitude=gps_latitude,
                gps_longitude=gps_longitude,
                status=EntryStatus.pending.value,
                created_at=now,
            )
            self.db.add(entry)
            self.db.flush()
            create_audit_log(
                self.db,
                entity_type="finance_entry",
                entity_id=entry.id,
                action="SUBMIT_FINANCE_COLLECTION",
                actor_id=submitter_uuid,
                context={"task_id": str(task.id), "finance_type": category.value, "amount": str(amount_value), "payment_mode": mode.value},
                timestamp_utc=now,
            )
        logger.info("finance_entry_submitted", entry_id=str(entry.id), task_id=str(task.id), finance_type=category.value)
        return entry

    def approve(self, entry_id: Any, reviewer_id: Any) -> FinanceCollectionEntry:
        """Approve a pending entry and add its amount to the task total, exactly once."""
        reviewer_uuid = as_uuid(reviewer_id, "Employee")
        with unit_of_work(self.db):
            entry = self.get_entry(entry_id)
            self.guard.require_review_account(reviewer_uuid, entry.submitter_id)
            task = self.repo.get_task(entry.task_id)
            self.repo.ensure_open(task)
            now = self.clock.utcnow()
            if not self._cas_status(
                entry.id,
                {"status": EntryStatus.approved.value, "reviewer_id": reviewer_uuid, "reviewed_at": now},
            ):
                raise self._already_processed(entry.id)

            if self.repo.task_category(task.id, entry.finance_type) is None:
                self._ensure_category_total(task.id, entry.finance_type)
            self.db.execute(
                update(TaskCategory)
                .where(TaskCategory.task_id == task.id, TaskCategory.category == entry.finance_type)
                .values(collected=TaskCategory.collected + entry.amount_collected)
                .execution_options(synchronize_session=False)
            )
            record_notification(
                self.db,
                entry.submitter_id,
                "FINANCE_APPROVED",
                payload={"entry_id": str(entry.id), "task_id": str(task.id), "amount": str(entry.amount_collected)},
                dedupe_key=f"FINANCE_APPROVED:{entry.id}",
                created_at=now,
            )
            create_audit_log(
                self.db,
                entity_type="finance_entry",
                entity_id=entry.id,
                action="APPROVE_FINANCE_COLLECTION",
                actor_id=reviewer_uuid,
                context={"task_id": str(task.id), "finance_type": entry.finance_type, "amount": str(entry.amount_collected)},
                timestamp_utc=now,
            )
        logger.info("finance_entry_approved", entry_id=str(entry.id), reviewer_id=str(reviewer_uuid))
        return self.get_entry(entry.id)

    def bulk_approve(self, entry_ids: List[Any], reviewer_id: Any) -> Dict[str, Any]:
        """
        Approve many entries, each in its own transaction.

        Each entry is authorized and compare-and-swapped like a single
        approval. Refused entries are reported in ``failed`` with their error;
        a store timeout stops the batch and keeps the approvals already made.
        """
        ids: List[Any] = []
        for entry_id in entry_ids or []:
            if entry_id not in ids:
                ids.append(entry_id)
        if not ids:
            raise ValidationError("At least one collection entry is required", field="entry_ids")
        if len(ids) > BULK_APPROVE_LIMIT:
            raise ValidationError(f"At most {BULK_APPROVE_LIMIT} entries can be approved at once", field="entry_ids")

        approved: List[FinanceCollectionEntry] = []
        failed: List[Dict[str, Any]] = []
        for entry_id in ids:
            try:
                approved.append(self.approve(entry_id, reviewer_id))
            except DependencyTimeoutError:
                raise
            except FieldOpsError as exc:
                failed.append({"entry_id": str(entry_id), **exc.to_dict()})
        logger.info(
            "finance_bulk_approved",
            reviewer_id=str(reviewer_id),
            approved=len(approved),
            failed=len(failed),
        )
        return {"approved": approved, "failed": failed}

    def reject(self, entry_id: Any, reviewer_id: Any, remarks: Optional[str]) -> FinanceCollectionEntry:
        remarks = _clean(remarks)
        if not remarks:
            raise ValidationError("Remarks are required to reject a collection", field="remarks")
        reviewer_uuid = as_uuid(reviewer_id, "Employee")
        with unit_of_work(self.db):
            entry = self.get_entry(entry_id)
            self.guard.require_review_account(reviewer_uuid, entry.submitter_id)
            now = self.clock.utcnow()
            if not self._cas_status(
                entry.id,
                {
                    "status": EntryStatus.rejected.value,
                    "reviewer_id": reviewer_uuid,
                    "reviewed_at": now,
                    "review_remarks": remarks,
                },
            ):
                raise self._already_processed(entry.id)
            record_notification(
                self.db,
                entry.submitter_id,
                "FINANCE_REJECTED",
                payload={"entry_id": str(entry.id), "task_id": str(entry.task_id), "remarks": remarks},
                dedupe_key=f"FINANCE_REJECTED:{entry.id}",
                created_at=now,
            )
            create_audit_log(
                self.db,
                entity_type="finance_entry",
                entity_id=entry.id,
                action="REJECT_FINANCE_COLLECTION",
                actor_id=reviewer_uuid,
                context={"task_id": str(entry.task_id), "remarks": remarks},
                timestamp_utc=now,
            )
        logger.info("finance_entry_rejected", entry_id=str(entry.id), reviewer_id=str(reviewer_uuid))
        return self.get_entry(entry.id)

    def get_pending_for_reviewer(
        self, reviewer_id: Any, finance_type: Optional[str] = None, limit: int = 100
    ) -> List[FinanceCollectionEntry]:
        """Pending entries the reviewer may decide, newest first."""
        query = self.db.query(FinanceCollectionEntry).filter(FinanceCollectionEntry.status == EntryStatus.pending.value)
        if finance_type:
            query = query.filter(FinanceCollectionEntry.finance_type == parse_finance_type(finance_type).value)
        allowed: Dict[uuid.UUID, bool] = {}
        visible: List[FinanceCollectionEntry] = []
        for entry in query.order_by(FinanceCollectionEntry.created_at.desc()).all():
            if entry.submitter_id not in allowed:
                allowed[entry.submitter_id] = self.guard.can_review_account(reviewer_id, entry.submitter_id)
            if allowed[entry.submitter_id]:
                visible.append(entry)
                if len(visible) >= limit:
                    break
        return visible

    def finance_summary(self, task_id: Any) -> Dict[str, Any]:
        """Per finance category: target, approved total, percentage and pending amount."""
        task = self.repo.get_task(task_id)
        pending = dict(
            self.db.query(FinanceCollectionEntry.finance_type, func.sum(FinanceCollectionEntry.amount_collected))
            .filter(
                FinanceCollectionEntry.task_id == task.id,
                FinanceCollectionEntry.status == EntryStatus.pending.value,
            )
            .group_by(FinanceCollectionEntry.finance_type)
            .all()
        )
        rows = {tc.category: tc for tc in self.repo.task_categories(task.id) if Category(tc.category).is_finance}
        categories = []
        total_collected = Decimal("0")
        total_pending = Decimal("0")
        for code in sorted(set(rows) | set(pending), key=lambda c: CATEGORY_ORDER[Category(c)]):
            tc = rows.get(code)
            target = tc.target if tc is not None else 0
            collected = Decimal(tc.collected) if tc is not None and tc.collected is not None else Decimal("0")
            waiting = Decimal(pending.get(code) or 0).quantize(CENTS)
            total_collected += collected
            total_pending += waiting
            categories.append({
                "category": code,
                "label": Category(code).label,
                "target": target,
                "collected": collected,
                "percentage": percentage(collected, target),
                "pending": waiting,
            })
        return {
            "task_id": str(task.id),
            "categories": categories,
            "total_collected": total_collected,
            "total_pending": total_pending,
        }
