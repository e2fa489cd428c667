from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.actor import get_current_employee, require_admin
from ..db import get_db
from ..errors import AuthorizationError
from ..models.models import EmployeeAccount
from ..schemas.admin import LinkRequest, MasterImportRequest, MasterImportResult, MasterRecordResponse, MasterStats
from ..services.audit import get_audit_logs
from ..services.hierarchy_store import HierarchyStore
from ..services.permissions import is_admin
from ..services.time_rules import Clock, get_clock


logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/employee-master/import", response_model=MasterImportResult)
def import_employee_master(
    body: MasterImportRequest,
    admin: EmployeeAccount = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    rows = [row.model_dump() for row in body.rows]
    return HierarchyStore(db, clock=clock).import_master_records(rows, uploaded_by=admin.id)


@router.get("/employee-master/stats", response_model=MasterStats)
def employee_master_stats(admin: EmployeeAccount = Depends(require_admin), db: Session = Depends(get_db)):
    return HierarchyStore(db).stats()


@router.get("/employee-master")
def list_employee_master(
    search: Optional[str] = Query(default=None),
    linked: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    admin: EmployeeAccount = Depends(require_admin),
    db: Session = Depends(get_db),
):
    rows, total = HierarchyStore(db).list_records(search=search, linked=linked, limit=limit, offset=offset)
    return {"data": [MasterRecordResponse.model_validate(r) for r in rows], "total": total}


@router.post("/employee-master/{pers_no}/link", response_model=MasterRecordResponse)
def link_employee_profile(
    pers_no: str,
    body: LinkRequest,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    # Employees link their own account; admins may link any
    if body.account_id != me.id and not is_admin(me):
        logger.info("authorization_denied", check="link_profile", actor_id=str(me.id))
        raise AuthorizationError()
    record = HierarchyStore(db, clock=clock).link_master_record_to_account(pers_no, body.account_id)
    return MasterRecordResponse.model_validate(record)


@router.delete("/employee-master/{pers_no}")
def delete_employee_master(
    pers_no: str,
    admin: EmployeeAccount = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    HierarchyStore(db, clock=clock).delete_master_record(pers_no, actor_id=admin.id)
    return {"success": True}


@router.post("/employee-master/purge-unlinked")
def purge_unlinked(
    admin: EmployeeAccount = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    removed = HierarchyStore(db, clock=clock).purge_unlinked(actor_id=admin.id)
    return {"removed": removed}


@router.get("/audit-logs")
def list_audit_logs(
    entity_type: Optional[str] = Query(default=None),
    entity_id: Optional[str] = Query(default=None),
    action: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    admin: EmployeeAccount = Depends(require_admin),
    db: Session = Depends(get_db),
):
    logs = get_audit_logs(db, entity_type=entity_type, entity_id=entity_id, action=action, limit=limit, offset=offset)
    return [
        {
            "id": str(log.id),
            "entity_type": log.entity_type,
            "entity_id": log.entity_id,
            "action": log.action,
            "actor_id": str(log.actor_id) if log.actor_id else None,
            "actor_role": log.actor_role,
            "source": log.source,
            "changes": log.changes_json,
            "context": log.context,
            "timestamp_utc": log.timestamp_utc.isoformat() if log.timestamp_utc else None,
            "integrity_hash": log.integrity_hash,
        }
        for log in logs
    ]
