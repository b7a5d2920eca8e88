"""
Admin API routes - approval policies and threshold impact tooling.
Requires the admin role for all endpoints.
"""
from typing import List, Literal, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.orm import Session

from fleetdesk.db.session import get_db
from fleetdesk.core.clock import get_clock
from fleetdesk.core.rbac import require_admin
from fleetdesk.services import approval_policy

router = APIRouter(prefix="/api/admin", tags=["Admin"])

Tier = Literal["standard", "priority", "enterprise"]


# ============= SCHEMAS =============

class PolicyUpsert(BaseModel):
    service_tier: Tier
    required_approvals: Optional[int] = Field(None, ge=1, le=5)
    approver_team_role: Optional[Literal["approver", "manager", "owner"]] = None
    auto_assign_enabled: Optional[bool] = None
    warning_threshold_ratio: Optional[float] = Field(None, ge=0.5, le=3.0)
    critical_threshold_ratio: Optional[float] = Field(None, ge=1.0, le=4.0)
    active: Optional[bool] = None

    @model_validator(mode='after')
    def check_ratio_order(self):
        if (
            self.warning_threshold_ratio is not None
            and self.critical_threshold_ratio is not None
            and self.critical_threshold_ratio < self.warning_threshold_ratio
        ):
            raise ValueError('critical_threshold_ratio must be >= warning_threshold_ratio')
        return self


class PolicyResponse(BaseModel):
    id: Optional[int]
    service_tier: str
    required_approvals: int
    approver_team_role: str
    auto_assign_enabled: bool
    warning_threshold_ratio: float
    critical_threshold_ratio: float
    active: bool
    is_default: bool
    updated_at: Optional[datetime]


# ============= ROUTES =============

@router.get("/approval-policies", response_model=List[PolicyResponse])
async def list_policies(
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Policy for every tier, defaults included."""
    return approval_policy.list_policies(db, user_context["org_id"])


@router.post("/approval-policies", response_model=PolicyResponse)
async def upsert_policy(
    policy_data: PolicyUpsert,
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Create or partially update the policy of a tier."""
    changes = policy_data.model_dump(exclude={"service_tier"}, exclude_unset=True)
    policy = approval_policy.upsert_policy(
        db,
        user_context["org_id"],
        policy_data.service_tier,
        changes,
        actor_id=user_context["user_id"],
        clock=clock,
    )
    return approval_policy.serialize_policy(policy, policy.service_tier)


@router.get("/approval-policies/impact")
async def preview_impact(
    service_tier: Tier = Query(...),
    warning_threshold_ratio: Optional[float] = Query(None, ge=0.5, le=3.0),
    critical_threshold_ratio: Optional[float] = Query(None, ge=1.0, le=4.0),
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Escalation counts candidate thresholds would produce right now.

    Omitted ratios fall back to the tier's stored policy.
    """
    return approval_policy.preview_impact(
        db, user_context["org_id"], service_tier,
        warning_threshold_ratio, critical_threshold_ratio, clock=clock,
    )


@router.get("/approval-policies/simulate")
async def simulate(
    service_tier: Tier = Query(...),
    warning_threshold_ratio: float = Query(..., ge=0.5, le=3.0),
    critical_threshold_ratio: float = Query(..., ge=1.0, le=4.0),
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Current vs candidate thresholds side by side."""
    return approval_policy.simulate(
        db, user_context["org_id"], service_tier,
        warning_threshold_ratio, critical_threshold_ratio, clock=clock,
    )


@router.get("/approval-policies/routing")
async def approval_routing(
    service_tier: Tier = Query(...),
    requester_id: Optional[int] = Query(None),
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Approvers a request of this tier would be routed to."""
    return approval_policy.resolve_approval_routing(
        db, user_context["org_id"], service_tier, requester_id=requester_id
    )
