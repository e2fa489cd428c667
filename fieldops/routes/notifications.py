import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.actor import get_current_employee
from ..db import get_db, unit_of_work
from ..models.models import EmployeeAccount, Notification
from ..services.notifications import list_notifications, mark_read
from ..services.time_rules import Clock, get_clock


router = APIRouter(prefix="/notifications", tags=["notifications"])


def _serialize(n: Notification):
    return {
        "id": str(n.id),
        "template_key": n.template_key,
        "payload": n.payload_json or {},
        "read": n.read_at is not None,
        "read_at": n.read_at.isoformat() if n.read_at else None,
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


@router.get("")
def my_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
):
    return [_serialize(n) for n in list_notifications(db, me.id, unread_only=unread_only, limit=limit)]


@router.post("/{notification_id}/read")
def read_notification(
    notification_id: uuid.UUID,
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    with unit_of_work(db):
        notification = mark_read(db, notification_id, me.id, read_at=clock.utcnow())
    return _serialize(notification)
