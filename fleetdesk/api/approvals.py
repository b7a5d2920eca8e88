"""
Approval API routes - requesting sign-off on an RFQ and recording votes.
"""
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from fleetdesk.db.session import get_db
from fleetdesk.core.clock import get_clock
from fleetdesk.core.rbac import require_member
from fleetdesk.services import approvals as approval_service

router = APIRouter(prefix="/api/rfqs", tags=["Approvals"])


# ============= SCHEMAS =============

class ApprovalRequestCreate(BaseModel):
    note: Optional[str] = Field(None, max_length=2000)
    required_approvals: Optional[int] = Field(None, ge=1, le=5)


class ApprovalDecisionCreate(BaseModel):
    status: Literal["approved", "rejected"]
    decision_note: Optional[str] = Field(None, max_length=2000)


# ============= HELPERS =============

def serialize_approval(approval) -> dict:
    return {
        "id": approval.id,
        "rfq_id": approval.rfq_id,
        "status": approval.status,
        "requester_id": approval.requester_id,
        "approver_id": approval.approver_id,
        "policy_id": approval.policy_id,
        "required_approvals": approval.required_approvals,
        "candidate_approver_ids": approval.candidate_approver_ids or [],
        "note": approval.note,
        "decision_note": approval.decision_note,
        "created_at": approval.created_at,
        "decided_at": approval.decided_at,
        "decisions": [
            {
                "approver_id": d.approver_id,
                "status": d.status,
                "note": d.note,
                "updated_at": d.updated_at,
            }
            for d in approval.decisions
        ],
    }


# ============= ROUTES =============

@router.get("/{rfq_id}/approval")
async def list_approvals(
    rfq_id: int,
    user_context: dict = Depends(require_member),
    db: Session = Depends(get_db),
):
    """Newest approval requests on an RFQ (admins or the RFQ owner)."""
    approvals = approval_service.list_approvals(db, user_context, rfq_id)
    return {"approvals": [serialize_approval(a) for a in approvals]}


@router.post("/{rfq_id}/approval", status_code=201)
async def request_approval(
    rfq_id: int,
    data: ApprovalRequestCreate,
    user_context: dict = Depends(require_member),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """
    Ask for sign-off on your own RFQ.

    Approvers are routed from the tier's approval policy; ``required_approvals``
    overrides the policy's count.
    """
    result = approval_service.request_approval(
        db, user_context, rfq_id,
        note=data.note,
        required_approvals=data.required_approvals,
        clock=clock,
    )
    return {"approval": serialize_approval(result["approval"]), "routing": result["routing"]}


@router.patch("/{rfq_id}/approval/{approval_id}")
async def decide_approval(
    rfq_id: int,
    approval_id: int,
    decision: ApprovalDecisionCreate,
    user_context: dict = Depends(require_member),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Approve or reject a pending request."""
    approval = approval_service.decide_approval(
        db, user_context, rfq_id, approval_id,
        decision.status,
        decision_note=decision.decision_note,
        clock=clock,
    )
    return {"approval": serialize_approval(approval)}
