"""
Audit trail: one row in ``audit_logs`` plus a structured ``audit`` log line.

Actions are dotted and prefixed by what they concern. Everything that
happens to an RFQ or its offers is recorded against the RFQ
(``entity_type="rfq"``, ``entity_id=rfq.id``) so one query returns its whole
history.
"""
from typing import List, Optional

from sqlalchemy import desc, or_
from sqlalchemy.orm import Session, joinedload

from fleetdesk.core.clock import utcnow
from fleetdesk.core.errors import ValidationError
from fleetdesk.core.logging import audit_logger
from fleetdesk.db.models import AuditLog

RFQ_STATUS_UPDATE = "rfq.status_update"
RFQ_CLOSE = "rfq.close"
RFQ_MESSAGE = "rfq.message"
RFQ_APPROVAL_REQUESTED = "rfq.approval.requested"
RFQ_APPROVAL_DECIDED = "rfq.approval.decided"
OFFER_CREATE = "offer.create"
OFFER_UPDATE = "offer.update"
POLICY_CREATE = "policy.create"
POLICY_UPDATE = "policy.update"
RULE_CREATE = "automation_rule.create"
RULE_UPDATE = "automation_rule.update"
SCAN_TRIGGERED = "automation.scan"

SCOPE_PREFIXES = {
    "rfq": ("rfq.", "offer."),
    "policy": ("policy.",),
    "automation": ("automation_rule.", "automation."),
}

MAX_TIMELINE_ENTRIES = 50


def record_audit(
    db: Session,
    *,
    organization_id: int,
    user_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id: Optional[int] = None,
    details: Optional[dict] = None,
    timestamp=None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction."""
    entry = AuditLog(
        organization_id=organization_id,
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details or {},
        timestamp=timestamp or utcnow(),
    )
    db.add(entry)
    audit_logger.log(
        action=action,
        user_id=user_id,
        org_id=organization_id,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
    )
    return entry


def entity_timeline(
    db: Session,
    organization_id: int,
    entity_id: int,
    scope: str = "rfq",
    limit: int = 20,
) -> List[AuditLog]:
    """Newest-first audit history of one entity, limited to its scope's actions."""
    prefixes = SCOPE_PREFIXES.get(scope)
    if prefixes is None:
        raise ValidationError(f"Unknown audit scope: {scope}")
    if not 1 <= limit <= MAX_TIMELINE_ENTRIES:
        raise ValidationError(f"limit must be between 1 and {MAX_TIMELINE_ENTRIES}")

    return db.query(AuditLog).options(joinedload(AuditLog.user)).filter(
        AuditLog.organization_id == organization_id,
        AuditLog.entity_id == entity_id,
        or_(*[AuditLog.action.startswith(prefix) for prefix in prefixes]),
    ).order_by(desc(AuditLog.timestamp), desc(AuditLog.id)).limit(limit).all()
