"""
Notification API routes - the caller's in-app inbox.
"""
from typing import List, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from fleetdesk.db.session import get_db
from fleetdesk.core.rbac import require_member
from fleetdesk.services import notifications as notification_service

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


class NotificationResponse(BaseModel):
    id: int
    notification_type: str
    title: str
    message: Optional[str]
    metadata: dict
    is_read: bool
    created_at: datetime


class NotificationUpdate(BaseModel):
    is_read: bool = True


def _to_response(n) -> NotificationResponse:
    return NotificationResponse(
        id=n.id,
        notification_type=n.notification_type,
        title=n.title,
        message=n.message,
        metadata=n.extra_data or {},
        is_read=bool(n.is_read),
        created_at=n.created_at,
    )


@router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, le=200),
    user_context: dict = Depends(require_member),
    db: Session = Depends(get_db)
):
    rows = notification_service.list_notifications(db, user_context["user_id"], unread_only, limit)
    return [_to_response(n) for n in rows]


@router.patch("/{notification_id}", response_model=NotificationResponse)
async def update_notification(
    notification_id: int,
    update: NotificationUpdate,
    user_context: dict = Depends(require_member),
    db: Session = Depends(get_db)
):
    """Mark a notification read or unread."""
    row = notification_service.mark_read(db, user_context["user_id"], notification_id, update.is_read)
    return _to_response(row)
