"""
In-app notification records.
Rows are added inside the caller's transaction; delivery channels read them elsewhere.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..errors import NotFoundError
from ..models.models import Notification


logger = structlog.get_logger(__name__)


def record_notification(
    db: Session,
    user_id: Any,
    template_key: str,
    payload: Optional[Dict[str, Any]] = None,
    dedupe_key: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> Notification:
    """
    Add a notification unless one with the same dedupe_key already exists.

    Args:
        db: Database session (not committed here)
        user_id: Recipient employee account
        template_key: TASK_SUBMITTED|TASK_APPROVED|TASK_REJECTED|FINANCE_APPROVED|FINANCE_REJECTED
        payload: JSON-safe payload for the renderer
        dedupe_key: Stable key of the triggering event
    """
    if dedupe_key:
        existing = db.query(Notification).filter(Notification.dedupe_key == dedupe_key).first()
        if existing:
            return existing
    notification = Notification(
        user_id=user_id,
        template_key=template_key,
        payload_json=payload or {},
        dedupe_key=dedupe_key,
        created_at=created_at or datetime.utcnow(),
    )
    db.add(notification)
    logger.info("notification_recorded", user_id=str(user_id), template_key=template_key)
    return notification


def list_notifications(db: Session, user_id: Any, unread_only: bool = False, limit: int = 50) -> List[Notification]:
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.read_at.is_(None))
    return query.order_by(Notification.created_at.desc()).limit(limit).all()


def mark_read(db: Session, notification_id: Any, user_id: Any, read_at: Optional[datetime] = None) -> Notification:
    notification = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .first()
    )
    if notification is None:
        raise NotFoundError("Notification not found")
    if notification.read_at is None:
        notification.read_at = read_at or datetime.utcnow()
    return notification
