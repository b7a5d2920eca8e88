"""
Audit timeline routes: the recorded admin and buyer actions on one entity.
"""
from typing import List, Literal, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from fleetdesk.db.session import get_db
from fleetdesk.core.rbac import require_admin
from fleetdesk.services import audit

router = APIRouter(prefix="/api/admin", tags=["Audit"])


class AuditActor(BaseModel):
    id: int
    email: str
    full_name: Optional[str]
    role: str


class AuditEntry(BaseModel):
    id: int
    timestamp: datetime
    action: str
    entity_type: Optional[str]
    entity_id: Optional[int]
    details: Optional[dict]
    user: Optional[AuditActor]


def _to_entry(log) -> AuditEntry:
    actor = None
    if log.user is not None:
        actor = AuditActor(
            id=log.user.id,
            email=log.user.email,
            full_name=log.user.full_name,
            role=log.user.role,
        )
    return AuditEntry(
        id=log.id,
        timestamp=log.timestamp,
        action=log.action,
        entity_type=log.entity_type,
        entity_id=log.entity_id,
        details=log.details,
        user=actor,
    )


@router.get("/audit-logs", response_model=List[AuditEntry])
async def entity_timeline(
    entity_id: int = Query(..., ge=1),
    scope: Literal["rfq", "policy", "automation"] = Query("rfq"),
    limit: int = Query(20, ge=1, le=audit.MAX_TIMELINE_ENTRIES),
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """
    Newest-first history of one entity.

    The ``rfq`` scope covers the RFQ's own actions and those on its offers.
    """
    logs = audit.entity_timeline(db, user_context["org_id"], entity_id, scope=scope, limit=limit)
    return [_to_entry(log) for log in logs]
