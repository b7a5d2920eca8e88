"""
Automation API routes - rules, run history, ops tasks and the escalation queue.
Requires the admin role for all endpoints.
"""
from typing import List, Literal, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from fleetdesk.db.session import get_db
from fleetdesk.core.clock import get_clock, to_naive_utc
from fleetdesk.core.rbac import require_admin
from fleetdesk.services import automation, ops_tasks

router = APIRouter(prefix="/api/admin", tags=["Automation"])


# ============= SCHEMAS =============

class RuleConditionIn(BaseModel):
    service_tier: Optional[Literal["standard", "priority", "enterprise"]] = None
    escalation_level: Optional[Literal["warning", "critical"]] = None
    min_age_hours: Optional[int] = Field(None, ge=0, le=720)


class ActionConfigIn(BaseModel):
    title_prefix: Optional[str] = Field(None, max_length=80)
    message_suffix: Optional[str] = Field(None, max_length=200)


class RuleCreate(BaseModel):
    name: str = Field(min_length=3, max_length=120)
    trigger_type: Literal["sla_escalation"] = "sla_escalation"
    action_type: Literal["notify_admin"] = "notify_admin"
    condition: RuleConditionIn = RuleConditionIn()
    action_config: ActionConfigIn = ActionConfigIn()
    active: bool = True


class RuleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=120)
    condition: Optional[RuleConditionIn] = None
    action_config: Optional[ActionConfigIn] = None
    active: Optional[bool] = None


class RuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    trigger_type: str
    action_type: str
    condition: dict
    action_config: dict
    active: bool
    last_run_at: Optional[datetime]
    created_at: Optional[datetime]


class RunResponse(BaseModel):
    id: int
    trigger_type: str
    source: str
    status: str
    notifications: int
    tasks_created: int
    deduped_count: int
    retries: int
    error_message: Optional[str]
    metadata: dict
    created_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(min_length=3, max_length=180)
    details: Optional[str] = None
    priority: Literal["low", "medium", "high", "critical"] = "medium"
    rfq_id: Optional[int] = None
    assignee_id: Optional[int] = None
    due_at: Optional[datetime] = None


class TaskUpdate(BaseModel):
    id: int
    status: Optional[Literal["open", "acknowledged", "resolved"]] = None
    priority: Optional[Literal["low", "medium", "high", "critical"]] = None
    assignee_id: Optional[int] = None
    due_at: Optional[datetime] = None
    details: Optional[str] = None


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    rfq_id: Optional[int]
    title: str
    details: Optional[str]
    priority: str
    source: str
    status: str
    assignee_id: Optional[int]
    due_at: Optional[datetime]
    resolved_at: Optional[datetime]
    created_at: Optional[datetime]


# ============= RULES & RUNS =============

@router.get("/automation-rules", response_model=List[RuleResponse])
async def list_rules(
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db)
):
    return automation.list_rules(db, user_context["org_id"])


@router.post("/automation-rules", response_model=RuleResponse, status_code=201)
async def create_rule(
    rule_data: RuleCreate,
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Create an automation rule."""
    return automation.create_rule(
        db, user_context["org_id"], rule_data.model_dump(exclude_none=True),
        actor_id=user_context["user_id"], clock=clock,
    )


@router.patch("/automation-rules/{rule_id}", response_model=RuleResponse)
async def update_rule(
    rule_id: int,
    update: RuleUpdate,
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Rename, retarget or toggle a rule."""
    changes = update.model_dump(exclude_unset=True)
    for key in ("condition", "action_config"):
        if changes.get(key) is not None:
            changes[key] = {k: v for k, v in changes[key].items() if v is not None}
    return automation.update_rule(
        db, user_context["org_id"], rule_id, changes,
        actor_id=user_context["user_id"], clock=clock,
    )


@router.get("/automation-runs", response_model=List[RunResponse])
async def list_runs(
    limit: int = Query(50, le=200),
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Recent escalation scan runs, newest first."""
    return [
        RunResponse(
            id=run.id,
            trigger_type=run.trigger_type,
            source=run.source,
            status=run.status,
            notifications=run.notifications,
            tasks_created=run.tasks_created,
            deduped_count=run.deduped_count,
            retries=run.retries,
            error_message=run.error_message,
            metadata=run.extra_data or {},
            created_at=run.created_at,
        )
        for run in automation.list_runs(db, user_context["org_id"], limit)
    ]


# ============= OPS TASKS =============

@router.get("/ops-tasks", response_model=List[TaskResponse])
async def list_tasks(
    status: Optional[str] = Query(None),
    rfq_id: Optional[int] = Query(None),
    limit: int = Query(100, le=500),
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db)
):
    return ops_tasks.list_tasks(db, user_context["org_id"], status=status, rfq_id=rfq_id, limit=limit)


@router.post("/ops-tasks", response_model=TaskResponse, status_code=201)
async def create_task(
    task_data: TaskCreate,
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Open a manual ops task."""
    return ops_tasks.create_task(
        db,
        user_context["org_id"],
        title=task_data.title,
        details=task_data.details,
        priority=task_data.priority,
        rfq_id=task_data.rfq_id,
        assignee_id=task_data.assignee_id,
        due_at=to_naive_utc(task_data.due_at),
        now=clock.now(),
    )


@router.patch("/ops-tasks", response_model=TaskResponse)
async def update_task(
    update: TaskUpdate,
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Change status, priority, assignee or due date of a task."""
    changes = update.model_dump(exclude={"id"}, exclude_unset=True)
    if "due_at" in changes:
        changes["due_at"] = to_naive_utc(changes["due_at"])
    return ops_tasks.update_task(db, user_context["org_id"], update.id, changes, now=clock.now())


# ============= ESCALATIONS =============

@router.get("/queue/escalations")
async def escalation_queue(
    limit: Optional[int] = Query(None, ge=1, le=200),
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Ranked escalation queue with the organization-wide summary. Read-only."""
    queue = automation.get_escalation_queue(db, user_context["org_id"], clock=clock, limit=limit)
    return {
        "generated_at": queue["generated_at"],
        "total_escalated": queue["total_escalated"],
        "summary": queue["summary"],
        "items": [item.to_dict() for item in queue["items"]],
    }


@router.post("/queue/escalations")
async def run_escalations(
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Run one escalation scan now."""
    result = automation.trigger_escalation_scan(db, user_context, clock=clock)
    return {"success": True, **result.to_dict()}


@router.post("/notifications/sla-check")
async def sla_check(
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Send SLA reminders for RFQs still waiting on an offer."""
    created = automation.run_sla_reminder_sweep(db, user_context["org_id"], clock=clock)
    return {"success": True, "created": created}
