"""
In-app notification writer.

Deduplication is enforced by the unique ``dedupe_key`` index: each insert runs
in a SAVEPOINT and an IntegrityError means an identical notification was
already written.
"""
from typing import List, Optional

from sqlalchemy import desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fleetdesk.core.clock import utcnow
from fleetdesk.core.errors import NotFoundError
from fleetdesk.core.logging import get_logger
from fleetdesk.db.models import Notification, NotificationType, User, UserRole

logger = get_logger(__name__)


def create_notification(
    db: Session,
    *,
    user_id: int,
    organization_id: int,
    notification_type: NotificationType,
    title: str,
    message: Optional[str] = None,
    metadata: Optional[dict] = None,
    dedupe_key: Optional[str] = None,
    created_at=None,
) -> Optional[Notification]:
    """
    Write one notification.

    Returns the new row, or None when ``dedupe_key`` was already used.
    """
    notification = Notification(
        user_id=user_id,
        organization_id=organization_id,
        notification_type=NotificationType(notification_type).value,
        title=title,
        message=message,
        extra_data=metadata or {},
        dedupe_key=dedupe_key,
        created_at=created_at or utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(notification)
    except IntegrityError:
        logger.debug(f"Notification suppressed by dedupe key {dedupe_key}")
        return None
    return notification


def list_admin_ids(db: Session, organization_id: int) -> List[int]:
    rows = db.query(User.id).filter(
        User.organization_id == organization_id,
        User.role == UserRole.ADMIN.value,
        User.is_active == True,  # noqa: E712
    ).order_by(User.id).all()
    return [row.id for row in rows]


def create_admin_notification(
    db: Session,
    *,
    organization_id: int,
    notification_type: NotificationType,
    title: str,
    message: Optional[str] = None,
    metadata: Optional[dict] = None,
    dedupe_key: Optional[str] = None,
    created_at=None,
) -> List[Notification]:
    """Fan a notification out to every active admin of the organization."""
    created = []
    for admin_id in list_admin_ids(db, organization_id):
        row = create_notification(
            db,
            user_id=admin_id,
            organization_id=organization_id,
            notification_type=notification_type,
            title=title,
            message=message,
            metadata=metadata,
            dedupe_key=f"{dedupe_key}:{admin_id}" if dedupe_key else None,
            created_at=created_at,
        )
        if row is not None:
            created.append(row)
    return created


def list_notifications(
    db: Session,
    user_id: int,
    unread_only: bool = False,
    limit: int = 50,
) -> List[Notification]:
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read == False)  # noqa: E712
    return query.order_by(desc(Notification.created_at), desc(Notification.id)).limit(limit).all()


def mark_read(db: Session, user_id: int, notification_id: int, is_read: bool = True) -> Notification:
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.user_id == user_id,
    ).first()
    if not notification:
        raise NotFoundError("Notification not found")
    notification.is_read = is_read
    db.commit()
    db.refresh(notification)
    return notification
