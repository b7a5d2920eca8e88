"""
Ops task service: remediation work items opened by automation or by admins.
"""
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import case, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fleetdesk.core.clock import utcnow
from fleetdesk.core.errors import NotFoundError, ValidationError
from fleetdesk.core.logging import get_logger
from fleetdesk.db.models import (
    OpsTask, RFQ, User, TaskStatus, TaskPriority, ACTIVE_TASK_STATUSES
)

logger = get_logger(__name__)


def find_active_task(
    db: Session,
    organization_id: int,
    rfq_id: Optional[int],
    source: str,
) -> Optional[OpsTask]:
    return db.query(OpsTask).filter(
        OpsTask.organization_id == organization_id,
        OpsTask.rfq_id == rfq_id,
        OpsTask.source == source,
        OpsTask.status.in_([s.value for s in ACTIVE_TASK_STATUSES]),
    ).first()


def ensure_open_task(
    db: Session,
    *,
    organization_id: int,
    rfq_id: int,
    source: str,
    title: str,
    details: Optional[str] = None,
    priority: TaskPriority = TaskPriority.MEDIUM,
    due_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Tuple[OpsTask, bool]:
    """
    Open a task for (organization, rfq, source) unless one is already active.

    Returns ``(task, created)``. The partial unique index on active tasks
    decides races between concurrent scans: the losing insert is rolled back
    to its savepoint and the winner's row is returned.
    """
    existing = find_active_task(db, organization_id, rfq_id, source)
    if existing:
        return existing, False

    now = now or utcnow()
    task = OpsTask(
        organization_id=organization_id,
        rfq_id=rfq_id,
        title=title,
        details=details,
        priority=TaskPriority(priority).value,
        source=source,
        status=TaskStatus.OPEN.value,
        due_at=due_at,
        created_at=now,
        updated_at=now,
    )
    try:
        with db.begin_nested():
            db.add(task)
    except IntegrityError:
        logger.info(
            f"Active task for source {source} already exists",
            extra={"rfq_id": rfq_id, "org_id": organization_id},
        )
        return find_active_task(db, organization_id, rfq_id, source), False
    return task, True


def _validate_assignee(db: Session, organization_id: int, assignee_id: Optional[int]):
    if assignee_id is None:
        return
    assignee = db.query(User).filter(
        User.id == assignee_id,
        User.organization_id == organization_id,
    ).first()
    if not assignee:
        raise ValidationError("Assignee is not a member of this organization")


def create_task(
    db: Session,
    organization_id: int,
    *,
    title: str,
    details: Optional[str] = None,
    priority: str = TaskPriority.MEDIUM.value,
    rfq_id: Optional[int] = None,
    assignee_id: Optional[int] = None,
    due_at: Optional[datetime] = None,
    source: str = "manual",
    now: Optional[datetime] = None,
) -> OpsTask:
    """Create a task by hand."""
    title = (title or "").strip()
    if len(title) < 3 or len(title) > 180:
        raise ValidationError("Task title must be 3-180 characters")
    try:
        priority = TaskPriority(priority).value
    except ValueError:
        raise ValidationError(f"Unknown priority: {priority}")

    if rfq_id is not None:
        rfq = db.query(RFQ).filter(
            RFQ.id == rfq_id,
            RFQ.organization_id == organization_id,
        ).first()
        if not rfq:
            raise NotFoundError("RFQ not found")
    _validate_assignee(db, organization_id, assignee_id)

    if rfq_id is not None and find_active_task(db, organization_id, rfq_id, source):
        raise ValidationError(f"An open task with source '{source}' already exists for this RFQ")

    now = now or utcnow()
    task = OpsTask(
        organization_id=organization_id,
        rfq_id=rfq_id,
        title=title,
        details=details,
        priority=priority,
        source=source,
        status=TaskStatus.OPEN.value,
        assignee_id=assignee_id,
        due_at=due_at,
        created_at=now,
        updated_at=now,
    )
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def update_task(
    db: Session,
    organization_id: int,
    task_id: int,
    changes: dict,
    now: Optional[datetime] = None,
) -> OpsTask:
    """
    Apply a partial update.

    Moving to RESOLVED stamps ``resolved_at``; any other status clears it.
    """
    task = db.query(OpsTask).filter(
        OpsTask.id == task_id,
        OpsTask.organization_id == organization_id,
    ).first()
    if not task:
        raise NotFoundError("Ops task not found")

    now = now or utcnow()

    if "status" in changes and changes["status"] is not None:
        try:
            new_status = TaskStatus(changes["status"])
        except ValueError:
            raise ValidationError(f"Unknown task status: {changes['status']}")
        if new_status in ACTIVE_TASK_STATUSES and task.status not in ACTIVE_TASK_STATUSES:
            clash = find_active_task(db, organization_id, task.rfq_id, task.source)
            if task.rfq_id is not None and clash and clash.id != task.id:
                raise ValidationError("Another active task already covers this RFQ and source")
        task.status = new_status.value
        task.resolved_at = now if new_status == TaskStatus.RESOLVED else None

    if changes.get("priority") is not None:
        try:
            task.priority = TaskPriority(changes["priority"]).value
        except ValueError:
            raise ValidationError(f"Unknown priority: {changes['priority']}")

    if "assignee_id" in changes:
        _validate_assignee(db, organization_id, changes["assignee_id"])
        task.assignee_id = changes["assignee_id"]

    if "due_at" in changes:
        task.due_at = changes["due_at"]

    if changes.get("details") is not None:
        task.details = changes["details"]

    task.updated_at = now
    db.commit()
    db.refresh(task)
    return task


def list_tasks(
    db: Session,
    organization_id: int,
    status: Optional[str] = None,
    rfq_id: Optional[int] = None,
    limit: int = 100,
) -> List[OpsTask]:
    """Active work first, then by priority and due date."""
    query = db.query(OpsTask).filter(OpsTask.organization_id == organization_id)
    if status:
        try:
            query = query.filter(OpsTask.status == TaskStatus(status).value)
        except ValueError:
            raise ValidationError(f"Unknown task status: {status}")
    if rfq_id is not None:
        query = query.filter(OpsTask.rfq_id == rfq_id)

    priority_rank = case(
        (OpsTask.priority == TaskPriority.CRITICAL.value, 0),
        (OpsTask.priority == TaskPriority.HIGH.value, 1),
        (OpsTask.priority == TaskPriority.MEDIUM.value, 2),
        else_=3,
    )
    status_rank = case((OpsTask.status == TaskStatus.RESOLVED.value, 1), else_=0)
    return query.order_by(
        status_rank, priority_rank, OpsTask.due_at, desc(OpsTask.created_at)
    ).limit(limit).all()
