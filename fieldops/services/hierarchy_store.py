"""
Employee master storage.

Read helpers used by the hierarchy resolver and the review guard, plus the
import primitives (idempotent upsert, account linking, explicit purge of
unlinked rows). Parsing of import files happens upstream; rows arrive here as
dicts.
"""
from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..db import unit_of_work
from ..errors import NotFoundError, StateConflictError, ValidationError
from ..models.models import EmployeeAccount, EmployeeMasterRecord
from .audit import create_audit_log
from .time_rules import Clock, SystemClock


logger = structlog.get_logger(__name__)

MASTER_FIELDS = (
    "name",
    "designation",
    "circle",
    "zone",
    "division",
    "office_name",
    "building_name",
    "emp_group",
    "reporting_pers_no",
    "reporting_officer_name",
    "reporting_officer_designation",
    "sort_order",
)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _clean_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = {key: _blank_to_none(fields.get(key)) for key in MASTER_FIELDS if key in fields}
    if "sort_order" in cleaned and cleaned["sort_order"] is not None:
        try:
            cleaned["sort_order"] = int(cleaned["sort_order"])
        except (TypeError, ValueError):
            raise ValidationError(f"sort_order must be an integer, got '{fields.get('sort_order')}'", field="sort_order")
    return cleaned


class HierarchyStore:
    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or SystemClock()

    # ---- reads ----

    def get(self, pers_no: Optional[str]) -> Optional[EmployeeMasterRecord]:
        if not pers_no:
            return None
        return self.db.query(EmployeeMasterRecord).filter(EmployeeMasterRecord.pers_no == pers_no).first()

    def _ordered(self, query):
        return query.order_by(
            EmployeeMasterRecord.sort_order.is_(None),
            EmployeeMasterRecord.sort_order,
            EmployeeMasterRecord.name,
            EmployeeMasterRecord.pers_no,
        )

    def direct_reports(self, pers_no: str) -> List[EmployeeMasterRecord]:
        query = self.db.query(EmployeeMasterRecord).filter(
            EmployeeMasterRecord.reporting_pers_no == pers_no,
            EmployeeMasterRecord.pers_no != pers_no,
        )
        return self._ordered(query).all()

    def direct_reports_of_many(self, pers_nos: Iterable[str]) -> List[EmployeeMasterRecord]:
        keys = [p for p in set(pers_nos) if p]
        if not keys:
            return []
        query = self.db.query(EmployeeMasterRecord).filter(
            EmployeeMasterRecord.reporting_pers_no.in_(keys),
            EmployeeMasterRecord.pers_no != EmployeeMasterRecord.reporting_pers_no,
        )
        return self._ordered(query).all()

    def count_direct_reports(self, pers_nos: Iterable[str]) -> Dict[str, int]:
        """Direct report counts for many managers in one grouping pass."""
        keys = [p for p in set(pers_nos) if p]
        if not keys:
            return {}
        rows = (
            self.db.query(EmployeeMasterRecord.reporting_pers_no, func.count(EmployeeMasterRecord.id))
            .filter(
                EmployeeMasterRecord.reporting_pers_no.in_(keys),
                EmployeeMasterRecord.pers_no != EmployeeMasterRecord.reporting_pers_no,
            )
            .group_by(EmployeeMasterRecord.reporting_pers_no)
            .all()
        )
        counts = {key: 0 for key in keys}
        counts.update({manager: int(count) for manager, count in rows})
        return counts

    def get_account(self, account_id: Any) -> Optional[EmployeeAccount]:
        try:
            aid = uuid.UUID(str(account_id))
        except (TypeError, ValueError):
            return None
        return self.db.get(EmployeeAccount, aid)

    def accounts_by_id(self, account_ids: Iterable[Any]) -> Dict[uuid.UUID, EmployeeAccount]:
        ids = [a for a in set(account_ids) if a]
        if not ids:
            return {}
        rows = self.db.query(EmployeeAccount).filter(EmployeeAccount.id.in_(ids)).all()
        return {r.id: r for r in rows}

    def record_for_account(self, account: Optional[EmployeeAccount]) -> Optional[EmployeeMasterRecord]:
        if account is None:
            return None
        record = (
            self.db.query(EmployeeMasterRecord)
            .filter(EmployeeMasterRecord.linked_account_id == account.id)
            .first()
        )
        if record is None and account.pers_no:
            record = self.get(account.pers_no)
        return record

    def account_for_pers_no(self, pers_no: str) -> Optional[EmployeeAccount]:
        record = self.get(pers_no)
        if record is not None and record.linked_account_id:
            return self.db.get(EmployeeAccount, record.linked_account_id)
        return self.db.query(EmployeeAccount).filter(EmployeeAccount.pers_no == pers_no).first() if pers_no else None

    def stats(self) -> Dict[str, int]:
        total = self.db.query(func.count(EmployeeMasterRecord.id)).scalar() or 0
        linked = (
            self.db.query(func.count(EmployeeMasterRecord.id))
            .filter(EmployeeMasterRecord.linked_account_id.isnot(None))
            .scalar()
            or 0
        )
        return {"total": int(total), "linked": int(linked), "unlinked": int(total) - int(linked)}

    def list_records(
        self,
        search: Optional[str] = None,
        linked: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[EmployeeMasterRecord], int]:
        query = self.db.query(EmployeeMasterRecord)
        if linked is True:
            query = query.filter(EmployeeMasterRecord.linked_account_id.isnot(None))
        elif linked is False:
            query = query.filter(EmployeeMasterRecord.linked_account_id.is_(None))
        if search and search.strip():
            like = f"%{search.strip().lower()}%"
            query = query.filter(
                or_(
                    func.lower(EmployeeMasterRecord.name).like(like),
                    func.lower(EmployeeMasterRecord.pers_no).like(like),
                )
            )
        total = query.count()
        rows = self._ordered(query).limit(limit).offset(offset).all()
        return rows, total

    # ---- writes ----

    def _upsert(self, pers_no: str, fields: Dict[str, Any]) -> Tuple[EmployeeMasterRecord, bool]:
        pers_no = (pers_no or "").strip()
        if not pers_no:
            raise ValidationError("pers_no is required", field="pers_no")
        cleaned = _clean_fields(fields)
        now = self.clock.utcnow()
        record = self.get(pers_no)
        if record is None:
            if not cleaned.get("name"):
                raise ValidationError("name is required", field="name")
            record = EmployeeMasterRecord(pers_no=pers_no, created_at=now, **cleaned)
            self.db.add(record)
            self.db.flush()
            return record, True
        if "name" in cleaned and not cleaned["name"]:
            raise ValidationError("name is required", field="name")
        for key, value in cleaned.items():
            setattr(record, key, value)
        record.updated_at = now
        self.db.flush()
        return record, False

    def upsert_master_record(self, pers_no: str, fields: Dict[str, Any]) -> EmployeeMasterRecord:
        """Insert or update one row; re-running with the same input changes nothing."""
        with unit_of_work(self.db):
            record, created = self._upsert(pers_no, fields)
        logger.info("master_record_upserted", pers_no=record.pers_no, created=created)
        return record

    def import_master_records(self, rows: List[Dict[str, Any]], uploaded_by: Any = None) -> Dict[str, Any]:
        """
        Upsert a batch of parsed rows.

        Rows failing validation are reported in ``errors`` and skipped; the
        valid rows of the batch are still applied.
        """
        imported = 0
        updated = 0
        errors: List[str] = []
        actor = self.get_account(uploaded_by) if uploaded_by else None
        with unit_of_work(self.db):
            for index, row in enumerate(rows, start=1):
                pers_no = _blank_to_none(row.get("pers_no"))
                try:
                    _, created = self._upsert(pers_no or "", row)
                except ValidationError as exc:
                    errors.append(f"Row {pers_no or index}: {exc.detail}")
                    continue
                if created:
                    imported += 1
                else:
                    updated += 1
            create_audit_log(
                self.db,
                entity_type="employee_master",
                entity_id=str(uploaded_by or "import"),
                action="IMPORT_EMPLOYEE_MASTER",
                actor_id=actor.id if actor else None,
                actor_role=actor.role if actor else None,
                source="import",
                context={"imported": imported, "updated": updated, "errors": len(errors)},
                timestamp_utc=self.clock.utcnow(),
            )
        logger.info("master_records_imported", imported=imported, updated=updated, errors=len(errors))
        return {"imported": imported, "updated": updated, "errors": errors}

    def link_master_record_to_account(self, pers_no: str, account_id: Any) -> EmployeeMasterRecord:
        with unit_of_work(self.db):
            record = self.get(pers_no)
            if record is None:
                raise NotFoundError(f"pers_no '{pers_no}' not found in employee master data")
            account = self.get_account(account_id)
            if account is None:
                raise NotFoundError("Employee account not found")
            if record.linked_account_id is not None and record.linked_account_id != account.id:
                raise StateConflictError(
                    "This pers_no is already linked to another account", rule="pers_no_already_linked"
                )
            other = (
                self.db.query(EmployeeMasterRecord)
                .filter(
                    EmployeeMasterRecord.linked_account_id == account.id,
                    EmployeeMasterRecord.pers_no != record.pers_no,
                )
                .first()
            )
            if other is not None:
                raise StateConflictError(
                    "This account is already linked to another pers_no", rule="account_already_linked"
                )
            if record.linked_account_id == account.id and account.pers_no == record.pers_no:
                return record
            now = self.clock.utcnow()
            record.linked_account_id = account.id
            record.linked_at = now
            record.updated_at = now
            account.pers_no = record.pers_no
            account.updated_at = now
            create_audit_log(
                self.db,
                entity_type="employee_master",
                entity_id=record.pers_no,
                action="LINK_EMPLOYEE_PROFILE",
                actor_id=account.id,
                actor_role=account.role,
                context={"pers_no": record.pers_no},
                timestamp_utc=now,
            )
        logger.info("master_record_linked", pers_no=record.pers_no, account_id=str(account.id))
        return record

    def delete_master_record(self, pers_no: str, actor_id: Any = None) -> None:
        actor = self.get_account(actor_id) if actor_id else None
        with unit_of_work(self.db):
            record = self.get(pers_no)
            if record is None:
                raise NotFoundError(f"pers_no '{pers_no}' not found")
            if record.linked_account_id is not None:
                raise StateConflictError("Cannot delete a linked employee record", rule="record_linked")
            self.db.delete(record)
            create_audit_log(
                self.db,
                entity_type="employee_master",
                entity_id=pers_no,
                action="DELETE_EMPLOYEE_MASTER",
                actor_id=actor.id if actor else None,
                actor_role=actor.role if actor else None,
                timestamp_utc=self.clock.utcnow(),
            )
        logger.info("master_record_deleted", pers_no=pers_no)

    def purge_unlinked(self, actor_id: Any = None) -> int:
        """Administrative purge of every unlinked row. Linked rows are kept."""
        actor = self.get_account(actor_id) if actor_id else None
        with unit_of_work(self.db):
            removed = (
                self.db.query(EmployeeMasterRecord)
                .filter(EmployeeMasterRecord.linked_account_id.is_(None))
                .delete(synchronize_session=False)
            )
            create_audit_log(
                self.db,
                entity_type="employee_master",
                entity_id="unlinked",
                action="PURGE_EMPLOYEE_MASTER",
                actor_id=actor.id if actor else None,
                actor_role=actor.role if actor else None,
                context={"removed": removed},
                timestamp_utc=self.clock.utcnow(),
            )
        logger.info("master_records_purged", removed=removed)
        return removed
