"""
RFQ approval requests: a buyer asks for sign-off, routed approvers vote.

Routing comes from the tier's approval policy. Each approver holds one
decision per request which they may change while the request is pending.
A single rejection rejects the request; it is approved once enough approvals
are in.
"""
from typing import List, Optional

from sqlalchemy import desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from fleetdesk.core.clock import system_clock
from fleetdesk.core.errors import ForbiddenError, NotFoundError, StateConflictError, ValidationError
from fleetdesk.core.logging import get_logger
from fleetdesk.core.rbac import is_admin
from fleetdesk.db.models import (
    RFQ, User, ApprovalRequest, ApprovalDecision, ApprovalStatus, NotificationType, TeamRole,
    DECISION_STATUSES
)
from fleetdesk.services import audit
from fleetdesk.services.approval_policy import resolve_approval_routing
from fleetdesk.services.audit import record_audit
from fleetdesk.services.notifications import create_admin_notification, create_notification
from fleetdesk.services.rfq_lifecycle import get_rfq

logger = get_logger(__name__)

MAX_NOTE_LENGTH = 2000
MAX_REQUIRED_APPROVALS = 5
LISTED_REQUESTS = 20

DECIDING_TEAM_ROLES = (TeamRole.APPROVER, TeamRole.MANAGER, TeamRole.OWNER)


def _clean_note(note: Optional[str], label: str) -> Optional[str]:
    note = (note or "").strip()
    if len(note) > MAX_NOTE_LENGTH:
        raise ValidationError(f"{label} must be at most {MAX_NOTE_LENGTH} characters")
    return note or None


def _find_pending(db: Session, rfq_id: int) -> Optional[ApprovalRequest]:
    return db.query(ApprovalRequest).filter(
        ApprovalRequest.rfq_id == rfq_id,
        ApprovalRequest.status == ApprovalStatus.PENDING.value,
    ).first()


def request_approval(
    db: Session,
    user_context: dict,
    rfq_id: int,
    note: Optional[str] = None,
    required_approvals: Optional[int] = None,
    clock=system_clock,
) -> dict:
    """
    Open an approval request on the caller's own RFQ.

    Returns ``{"approval": ApprovalRequest, "routing": dict}``. Only one
    request per RFQ may be pending at a time.
    """
    rfq = get_rfq(db, user_context, rfq_id)
    if rfq.user_id != user_context["user_id"]:
        raise ForbiddenError("Only the RFQ owner can request approval")
    if rfq.is_closed:
        raise StateConflictError("Cannot request approval on a closed RFQ")
    if required_approvals is not None and not 1 <= required_approvals <= MAX_REQUIRED_APPROVALS:
        raise ValidationError(f"required_approvals must be between 1 and {MAX_REQUIRED_APPROVALS}")
    note = _clean_note(note, "note")
    if _find_pending(db, rfq.id):
        raise StateConflictError("There is already a pending approval for this RFQ")

    routing = resolve_approval_routing(
        db, rfq.organization_id, rfq.service_tier,
        requester_id=rfq.user_id,
        required_approvals_override=required_approvals,
    )
    now = clock.now()
    approval = ApprovalRequest(
        rfq_id=rfq.id,
        organization_id=rfq.organization_id,
        requester_id=user_context["user_id"],
        approver_id=routing["primary_approver_id"],
        policy_id=routing["policy_id"],
        required_approvals=routing["required_approvals"],
        candidate_approver_ids=routing["approver_ids"],
        status=ApprovalStatus.PENDING.value,
        note=note,
        created_at=now,
        updated_at=now,
    )
    try:
        with db.begin_nested():
            db.add(approval)
    except IntegrityError:
        db.rollback()
        raise StateConflictError("There is already a pending approval for this RFQ")

    try:
        create_admin_notification(
            db,
            organization_id=rfq.organization_id,
            notification_type=NotificationType.RFQ,
            title="Approval requested",
            message=f"RFQ {rfq.reference} needs {approval.required_approvals} approval(s).",
            metadata={"rfq_id": rfq.id, "approval_id": approval.id},
            created_at=now,
        )
        record_audit(
            db,
            organization_id=rfq.organization_id,
            user_id=user_context["user_id"],
            action=audit.RFQ_APPROVAL_REQUESTED,
            entity_type="rfq",
            entity_id=rfq.id,
            details={
                "approval_id": approval.id,
                "required_approvals": approval.required_approvals,
                "policy_source": routing["policy_source"],
            },
            timestamp=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(approval)
    logger.info(
        f"Approval {approval.id} requested on RFQ {rfq.reference}",
        extra={"rfq_id": rfq.id, "org_id": rfq.organization_id},
    )
    return {"approval": approval, "routing": routing}


def list_approvals(db: Session, user_context: dict, rfq_id: int) -> List[ApprovalRequest]:
    """Newest requests on an RFQ with their decisions; admins or the owner."""
    rfq = get_rfq(db, user_context, rfq_id)
    return db.query(ApprovalRequest).options(
        selectinload(ApprovalRequest.decisions)
    ).filter(
        ApprovalRequest.rfq_id == rfq.id,
    ).order_by(
        desc(ApprovalRequest.created_at), desc(ApprovalRequest.id)
    ).limit(LISTED_REQUESTS).all()


def _ensure_can_decide(db: Session, user_context: dict, approval: ApprovalRequest):
    user_id = user_context["user_id"]
    if user_id == approval.requester_id:
        raise ForbiddenError("Requesters cannot decide their own approval")
    if is_admin(user_context) or user_id == approval.approver_id:
        return
    if user_id in (approval.candidate_approver_ids or []):
        return
    actor = db.query(User).filter(
        User.id == user_id,
        User.organization_id == approval.organization_id,
        User.is_active == True,  # noqa: E712
    ).first()
    if actor is None or actor.team_role not in [r.value for r in DECIDING_TEAM_ROLES]:
        raise ForbiddenError("Not allowed to decide this approval")


def _tally(decisions: List[ApprovalDecision], required: int):
    approved = sum(1 for d in decisions if d.status == ApprovalStatus.APPROVED)
    if any(d.status == ApprovalStatus.REJECTED for d in decisions):
        return ApprovalStatus.REJECTED, approved
    if approved >= required:
        return ApprovalStatus.APPROVED, approved
    return ApprovalStatus.PENDING, approved


def decide_approval(
    db: Session,
    user_context: dict,
    rfq_id: int,
    approval_id: int,
    status,
    decision_note: Optional[str] = None,
    clock=system_clock,
) -> ApprovalRequest:
    """
    Record the caller's vote on a pending request.

    A repeat vote by the same approver replaces the earlier one. The RFQ
    owner is notified of progress and of the final outcome.
    """
    try:
        decision_status = ApprovalStatus(status)
    except ValueError:
        raise ValidationError(f"Invalid decision: {status}")
    if decision_status not in DECISION_STATUSES:
        raise ValidationError("Decision must be approved or rejected")
    decision_note = _clean_note(decision_note, "decision_note")

    approval = db.query(ApprovalRequest).filter(
        ApprovalRequest.id == approval_id,
        ApprovalRequest.rfq_id == rfq_id,
        ApprovalRequest.organization_id == user_context["org_id"],
    ).with_for_update().first()
    if not approval:
        raise NotFoundError("Approval request not found")
    if approval.status != ApprovalStatus.PENDING:
        raise StateConflictError("Approval already decided")
    _ensure_can_decide(db, user_context, approval)

    rfq = db.query(RFQ).filter(RFQ.id == approval.rfq_id).first()
    now = clock.now()
    user_id = user_context["user_id"]
    try:
        decision = db.query(ApprovalDecision).filter(
            ApprovalDecision.approval_request_id == approval.id,
            ApprovalDecision.approver_id == user_id,
        ).first()
        if decision is None:
            decision = ApprovalDecision(
                approval_request_id=approval.id,
                approver_id=user_id,
                created_at=now,
            )
            db.add(decision)
        decision.status = decision_status.value
        decision.note = decision_note
        decision.updated_at = now
        db.flush()

        decisions = db.query(ApprovalDecision).filter(
            ApprovalDecision.approval_request_id == approval.id
        ).all()
        outcome, approved = _tally(decisions, approval.required_approvals)

        approval.status = outcome.value
        approval.updated_at = now
        if outcome != ApprovalStatus.PENDING:
            approval.decision_note = decision_note
            approval.approver_id = user_id
            approval.decided_at = now

        if outcome == ApprovalStatus.PENDING:
            title = "Approval step recorded"
            message = (f"RFQ {rfq.reference} approval progress: "
                       f"{approved}/{approval.required_approvals}.")
        else:
            title = f"RFQ {outcome.value}"
            message = f"Approval request for RFQ {rfq.reference} was {outcome.value}."
        create_notification(
            db,
            user_id=rfq.user_id,
            organization_id=rfq.organization_id,
            notification_type=NotificationType.RFQ,
            title=title,
            message=message,
            metadata={"rfq_id": rfq.id, "approval_id": approval.id, "status": outcome.value},
            created_at=now,
        )
        record_audit(
            db,
            organization_id=rfq.organization_id,
            user_id=user_id,
            action=audit.RFQ_APPROVAL_DECIDED,
            entity_type="rfq",
            entity_id=rfq.id,
            details={
                "approval_id": approval.id,
                "decision": decision_status.value,
                "status": outcome.value,
                "approved": approved,
                "required_approvals": approval.required_approvals,
            },
            timestamp=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(approval)
    logger.info(
        f"Approval {approval.id} on RFQ {rfq.reference}: {decision_status.value} by user {user_id}, "
        f"now {approval.status}",
        extra={"rfq_id": rfq.id, "org_id": rfq.organization_id},
    )
    return approval
