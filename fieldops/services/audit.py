"""
Audit logging service.
Append-only audit log with integrity hashing. Rows are written inside the
caller's transaction; the caller's unit of work commits them together with
the mutation they describe.
"""
import hashlib
import json
from datetime import datetime
from typing import Optional, Dict, Any, List
from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings


def _integrity_hash(canonical_data: Dict[str, Any], secret: str) -> str:
    # Remove None values and sort keys for consistency
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: Any,
    action: str,
    actor_id: Optional[Any] = None,
    actor_role: Optional[str] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    timestamp_utc: Optional[datetime] = None,
    integrity_secret: Optional[str] = None,
) -> AuditLog:
    """
    Add an append-only audit entry to the session.

    Args:
        db: Database session (not committed here)
        entity_type: task|assignment|finance_entry|employee_master
        entity_id: Entity UUID or pers_no
        action: CREATE_TASK, APPROVE_TASK, APPROVE_FINANCE_COLLECTION, ...
        actor_id: Employee account who performed the action
        actor_role: Rank of the actor at the time of the action
        source: api|import|system
        changes_json: Before/after diff
        context: Additional context (task_id, category, amount, ...)
        timestamp_utc: Naive UTC timestamp (defaults to now)
        integrity_secret: Secret for integrity hash (defaults to AUDIT_SECRET)

    Returns:
        The pending AuditLog object
    """
    if timestamp_utc is None:
        timestamp_utc = datetime.utcnow()
    timestamp_utc = timestamp_utc.replace(tzinfo=None)
    if integrity_secret is None:
        integrity_secret = settings.audit_secret

    integrity_hash = None
    if integrity_secret:
        integrity_hash = _integrity_hash(
            {
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action,
                "actor_id": str(actor_id) if actor_id else None,
                "actor_role": actor_role,
                "source": source,
                "timestamp_utc": timestamp_utc.isoformat(),
                "changes": changes_json,
                "context": context,
            },
            integrity_secret,
        )

    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        source=source or "api",
        changes_json=changes_json,
        timestamp_utc=timestamp_utc,
        context=context,
        integrity_hash=integrity_hash,
    )
    db.add(audit_log)
    return audit_log


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[Any] = None,
    action: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[AuditLog]:
    """Audit logs with optional filtering, newest first."""
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == str(entity_id))
    if action:
        query = query.filter(AuditLog.action == action)
    query = query.order_by(AuditLog.timestamp_utc.desc())
    return query.limit(limit).offset(offset).all()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """Before/after values for changed fields only."""
    diff = {}
    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)
        if before_val != after_val:
            diff[key] = {"before": before_val, "after": after_val}
    return diff
