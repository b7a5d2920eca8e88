"""
RFQ lifecycle: creation, the status state machine, closing, and the
buyer/admin message thread.

Every status move appends to the RFQ's event log. Validation and state checks
run before anything is staged so a rejected call never leaves partial writes.
"""
import uuid
from datetime import datetime, timedelta
from typing import List, Mapping, Optional

from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from fleetdesk.core.clock import system_clock, to_naive_utc
from fleetdesk.core.errors import NotFoundError, StateConflictError, ValidationError
from fleetdesk.core.logging import get_logger
from fleetdesk.core.rbac import ensure_admin, is_admin
from fleetdesk.db.models import (
    RFQ, RFQEvent, RFQMessage, RFQEventType, RFQStatus, ServiceTier, ServicePackage,
    NotificationType, TaskPriority, CLOSED_RFQ_STATUSES
)
from fleetdesk.services import audit
from fleetdesk.services.audit import record_audit
from fleetdesk.services.notifications import create_admin_notification, create_notification
from fleetdesk.services.ops_tasks import ensure_open_task

logger = get_logger(__name__)

SLA_TARGET_HOURS = {
    ServiceTier.STANDARD: 72,
    ServiceTier.PRIORITY: 24,
    ServiceTier.ENTERPRISE: 8,
}

CATEGORIES = ("Trailer", "Truck", "Heavy Equipment")
URGENCIES = ("Normal", "Urgent")
RISK_TOLERANCES = ("Low", "Medium", "High")
BUDGET_CONFIDENCES = ("Fixed", "Flexible", "Exploratory")
PACKAGE_ADDONS = ("Verification", "Logistics", "Financing", "Compliance", "DedicatedManager")

# Admin-driven moves; offer and close actions drive the rest.
ADMIN_TRANSITIONS = {
    RFQStatus.RECEIVED: {RFQStatus.IN_PROGRESS, RFQStatus.OFFER_SENT},
    RFQStatus.IN_PROGRESS: {RFQStatus.OFFER_SENT},
}

UPSELL_SOURCE = "auto_upsell_core"
UPSELL_MIN_COMPLETENESS = 80


def generate_reference(now: datetime) -> str:
    return f"RFQ-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:6].upper()}"


def _text_len(value) -> int:
    return len(value.strip()) if isinstance(value, str) else 0


def compute_mandate_completeness(payload: Mapping) -> int:
    """Percentage of the six mandate checks the payload passes."""
    checks = [
        _text_len(payload.get("key_specs")) >= 10,
        _text_len(payload.get("delivery_country")) >= 2,
        _text_len(payload.get("condition_tolerance")) >= 3,
        _text_len(payload.get("business_goal")) >= 5,
        bool(payload.get("risk_tolerance")),
        bool(payload.get("budget_confidence")),
    ]
    return round(100 * sum(checks) / len(checks))


def sla_target_for_tier(service_tier) -> int:
    return SLA_TARGET_HOURS[ServiceTier(service_tier)]


def append_event(
    db: Session,
    rfq: RFQ,
    event_type: RFQEventType,
    payload: Optional[dict] = None,
    timestamp: Optional[datetime] = None,
) -> RFQEvent:
    """Append the next event in the RFQ's log."""
    last = db.query(func.max(RFQEvent.sequence)).filter(RFQEvent.rfq_id == rfq.id).scalar()
    event = RFQEvent(
        rfq_id=rfq.id,
        sequence=(last or 0) + 1,
        event_type=RFQEventType(event_type).value,
        payload=payload or {},
        timestamp=timestamp or system_clock.now(),
    )
    db.add(event)
    db.flush()
    return event


def get_rfq(db: Session, user_context: dict, rfq_id: int, for_update: bool = False) -> RFQ:
    """
    Load an RFQ visible to the caller.

    Admins see every RFQ of their organization, members only their own.
    Anything else is reported as not found.
    """
    query = db.query(RFQ).filter(
        RFQ.id == rfq_id,
        RFQ.organization_id == user_context["org_id"],
    )
    if not is_admin(user_context):
        query = query.filter(RFQ.user_id == user_context["user_id"])
    if for_update:
        query = query.with_for_update()
    rfq = query.first()
    if not rfq:
        raise NotFoundError("RFQ not found")
    return rfq


def list_rfqs(
    db: Session,
    user_context: dict,
    status: Optional[str] = None,
    service_tier: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[RFQ]:
    query = db.query(RFQ).filter(RFQ.organization_id == user_context["org_id"])
    if not is_admin(user_context):
        query = query.filter(RFQ.user_id == user_context["user_id"])
    if status:
        query = query.filter(RFQ.status == _parse_status(status).value)
    if service_tier:
        query = query.filter(RFQ.service_tier == _parse_choice(ServiceTier, service_tier, "service tier").value)
    return query.order_by(desc(RFQ.created_at), desc(RFQ.id)).offset(offset).limit(limit).all()


def _parse_status(value) -> RFQStatus:
    try:
        return RFQStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown RFQ status: {value}")


def _parse_choice(enum_cls, value, label):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown {label}: {value}")


def validate_rfq_payload(data: Mapping) -> dict:
    """Normalize a creation payload or raise ValidationError."""
    cleaned = dict(data)

    for field, minimum in (("key_specs", 10), ("delivery_country", 2), ("condition_tolerance", 3)):
        if _text_len(cleaned.get(field)) < minimum:
            raise ValidationError(f"{field} must be at least {minimum} characters")
        cleaned[field] = cleaned[field].strip()

    cleaned["category"] = cleaned.get("category") or "Truck"
    if cleaned["category"] not in CATEGORIES:
        raise ValidationError(f"Unknown category: {cleaned['category']}")

    cleaned["urgency"] = cleaned.get("urgency") or "Normal"
    if cleaned["urgency"] not in URGENCIES:
        raise ValidationError(f"Unknown urgency: {cleaned['urgency']}")

    if cleaned.get("risk_tolerance") and cleaned["risk_tolerance"] not in RISK_TOLERANCES:
        raise ValidationError(f"Unknown risk tolerance: {cleaned['risk_tolerance']}")
    if cleaned.get("budget_confidence") and cleaned["budget_confidence"] not in BUDGET_CONFIDENCES:
        raise ValidationError(f"Unknown budget confidence: {cleaned['budget_confidence']}")

    cleaned["service_tier"] = _parse_choice(
        ServiceTier, cleaned.get("service_tier") or ServiceTier.STANDARD.value, "service tier"
    ).value
    cleaned["service_package"] = _parse_choice(
        ServicePackage, cleaned.get("service_package") or ServicePackage.CORE.value, "service package"
    ).value

    addons = list(cleaned.get("package_addons") or [])
    unknown = [a for a in addons if a not in PACKAGE_ADDONS]
    if unknown:
        raise ValidationError(f"Unknown package add-ons: {', '.join(unknown)}")
    cleaned["package_addons"] = sorted(set(addons), key=addons.index)

    year_min, year_max = cleaned.get("year_min"), cleaned.get("year_max")
    if year_min is not None and year_max is not None and year_min > year_max:
        raise ValidationError("year_min cannot be after year_max")

    budget_min, budget_max = cleaned.get("budget_min"), cleaned.get("budget_max")
    if budget_min is not None and budget_max is not None and budget_min > budget_max:
        raise ValidationError("budget_min cannot exceed budget_max")

    cleaned["pickup_deadline"] = to_naive_utc(cleaned.get("pickup_deadline"))
    cleaned["required_documents"] = list(cleaned.get("required_documents") or [])
    return cleaned


def create_rfq(db: Session, user_context: dict, data: Mapping, clock=system_clock) -> RFQ:
    """Create an RFQ in Received state and fire its side effects."""
    payload = validate_rfq_payload(data)
    now = clock.now()

    completeness = compute_mandate_completeness(payload)
    tier = payload["service_tier"]

    rfq = RFQ(
        reference=generate_reference(now),
        user_id=user_context["user_id"],
        organization_id=user_context["org_id"],
        listing_id=payload.get("listing_id"),
        category=payload["category"],
        service_tier=tier,
        service_package=payload["service_package"],
        package_addons=payload["package_addons"],
        key_specs=payload["key_specs"],
        preferred_brands=payload.get("preferred_brands"),
        year_min=payload.get("year_min"),
        year_max=payload.get("year_max"),
        budget_min=payload.get("budget_min"),
        budget_max=payload.get("budget_max"),
        delivery_country=payload["delivery_country"],
        pickup_deadline=payload["pickup_deadline"],
        urgency=payload["urgency"],
        condition_tolerance=payload["condition_tolerance"],
        required_documents=payload["required_documents"],
        notes=payload.get("notes"),
        business_goal=payload.get("business_goal"),
        risk_tolerance=payload.get("risk_tolerance"),
        budget_confidence=payload.get("budget_confidence"),
        mandate_completeness=completeness,
        status=RFQStatus.RECEIVED.value,
        sla_target_hours=sla_target_for_tier(tier),
        last_offer_version=0,
        created_at=now,
        updated_at=now,
    )
    db.add(rfq)
    db.flush()

    append_event(db, rfq, RFQEventType.STATUS_CHANGE,
                 {"from": None, "to": RFQStatus.RECEIVED.value}, now)
    snapshot = {
        k: (v.isoformat() if isinstance(v, datetime) else v)
        for k, v in payload.items()
    }
    snapshot["mandate_completeness"] = completeness
    append_event(db, rfq, RFQEventType.RFQ_CREATED, snapshot, now)

    create_admin_notification(
        db,
        organization_id=rfq.organization_id,
        notification_type=NotificationType.RFQ,
        title="New RFQ received",
        message=f"RFQ {rfq.reference} submitted by user {rfq.user_id} ({tier}).",
        metadata={
            "rfq_id": rfq.id,
            "urgency": rfq.urgency,
            "service_tier": tier,
            "service_package": rfq.service_package,
            "package_addons": rfq.package_addons,
            "sla_target_hours": rfq.sla_target_hours,
        },
        created_at=now,
    )

    if (
        rfq.service_package == ServicePackage.CORE.value
        and tier in (ServiceTier.PRIORITY.value, ServiceTier.ENTERPRISE.value)
        and completeness >= UPSELL_MIN_COMPLETENESS
    ):
        ensure_open_task(
            db,
            organization_id=rfq.organization_id,
            rfq_id=rfq.id,
            source=UPSELL_SOURCE,
            title="Upsell review for high-potential Core RFQ",
            details=(
                f"RFQ {rfq.reference} is {tier} with {completeness}% mandate completeness. "
                "Consider package upgrade outreach."
            ),
            priority=TaskPriority.CRITICAL if tier == ServiceTier.ENTERPRISE.value else TaskPriority.HIGH,
            due_at=now + timedelta(hours=6),
            now=now,
        )

    db.commit()
    db.refresh(rfq)
    logger.info(f"RFQ {rfq.reference} created", extra={"rfq_id": rfq.id, "org_id": rfq.organization_id})
    return rfq


def update_rfq_status(
    db: Session,
    user_context: dict,
    rfq_id: int,
    status: str,
    clock=system_clock,
    internal_ops_notes: Optional[str] = None,
) -> RFQ:
    """
    Admin status move. Re-applying the current status changes nothing.

    Won/Lost go through ``close_rfq`` because they need a reason.
    """
    ensure_admin(user_context)
    target = _parse_status(status)
    if target in CLOSED_RFQ_STATUSES:
        raise ValidationError("Closing an RFQ requires the close action with a reason")

    rfq = get_rfq(db, user_context, rfq_id, for_update=True)
    if rfq.is_closed:
        raise StateConflictError(f"RFQ is closed ({rfq.status})")

    now = clock.now()
    if internal_ops_notes is not None:
        rfq.internal_ops_notes = internal_ops_notes

    current = RFQStatus(rfq.status)
    if target == current:
        if internal_ops_notes is not None:
            rfq.updated_at = now
            db.commit()
        return rfq

    if target not in ADMIN_TRANSITIONS.get(current, set()):
        raise StateConflictError(f"Cannot move RFQ from {current.label} to {target.label}")

    rfq.status = target.value
    rfq.updated_at = now
    append_event(db, rfq, RFQEventType.STATUS_CHANGE,
                 {"from": current.value, "to": target.value}, now)
    create_notification(
        db,
        user_id=rfq.user_id,
        organization_id=rfq.organization_id,
        notification_type=NotificationType.RFQ,
        title="RFQ status updated",
        message=f"RFQ {rfq.reference} moved to {target.label}.",
        metadata={"rfq_id": rfq.id, "status": target.value},
        created_at=now,
    )
    record_audit(
        db,
        organization_id=rfq.organization_id,
        user_id=user_context["user_id"],
        action=audit.RFQ_STATUS_UPDATE,
        entity_type="rfq",
        entity_id=rfq.id,
        details={"from": current.value, "to": target.value},
        timestamp=now,
    )
    db.commit()
    db.refresh(rfq)
    return rfq


def close_rfq(
    db: Session,
    user_context: dict,
    rfq_id: int,
    outcome: str,
    reason: Optional[str],
    clock=system_clock,
) -> RFQ:
    """Close an open RFQ as Won or Lost."""
    ensure_admin(user_context)
    target = _parse_status(outcome)
    if target not in CLOSED_RFQ_STATUSES:
        raise ValidationError("Close outcome must be won or lost")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A close reason is required")

    rfq = get_rfq(db, user_context, rfq_id, for_update=True)
    if rfq.is_closed:
        if rfq.status == target:
            return rfq
        raise StateConflictError(f"RFQ is already closed as {RFQStatus(rfq.status).label}")

    now = clock.now()
    previous = rfq.status
    rfq.status = target.value
    rfq.close_reason = reason
    rfq.updated_at = now

    append_event(db, rfq, RFQEventType.STATUS_CHANGE, {"from": previous, "to": target.value}, now)
    append_event(db, rfq, RFQEventType.RFQ_CLOSED, {"outcome": target.value, "reason": reason}, now)

    create_admin_notification(
        db,
        organization_id=rfq.organization_id,
        notification_type=NotificationType.RFQ,
        title=f"RFQ closed as {target.label}",
        message=f"RFQ {rfq.reference} was closed.",
        metadata={"rfq_id": rfq.id, "outcome": target.value},
        created_at=now,
    )
    create_notification(
        db,
        user_id=rfq.user_id,
        organization_id=rfq.organization_id,
        notification_type=NotificationType.RFQ,
        title=f"Request closed as {target.label}",
        message=f"Your RFQ {rfq.reference} has been closed.",
        metadata={"rfq_id": rfq.id, "outcome": target.value},
        created_at=now,
    )
    record_audit(
        db,
        organization_id=rfq.organization_id,
        user_id=user_context["user_id"],
        action=audit.RFQ_CLOSE,
        entity_type="rfq",
        entity_id=rfq.id,
        details={"outcome": target.value, "reason": reason},
        timestamp=now,
    )
    db.commit()
    db.refresh(rfq)
    logger.info(f"RFQ {rfq.reference} closed as {target.value}", extra={"rfq_id": rfq.id})
    return rfq


def post_message(
    db: Session,
    user_context: dict,
    rfq_id: int,
    body: str,
    clock=system_clock,
) -> RFQMessage:
    """Add to the RFQ thread and notify the other side."""
    body = (body or "").strip()
    if not body or len(body) > 5000:
        raise ValidationError("Message must be 1-5000 characters")

    rfq = get_rfq(db, user_context, rfq_id)
    now = clock.now()
    from_admin = is_admin(user_context)
    sender_type = "admin" if from_admin else "buyer"

    message = RFQMessage(
        rfq_id=rfq.id,
        author_id=user_context["user_id"],
        sender_type=sender_type,
        body=body,
        created_at=now,
    )
    db.add(message)
    append_event(db, rfq, RFQEventType.MESSAGE,
                 {"message": body, "author": "Admin" if from_admin else "Buyer"}, now)

    if from_admin:
        create_notification(
            db,
            user_id=rfq.user_id,
            organization_id=rfq.organization_id,
            notification_type=NotificationType.RFQ,
            title="Admin replied",
            message=f"Admin sent a new message on RFQ {rfq.reference}.",
            metadata={"rfq_id": rfq.id},
            created_at=now,
        )
        db.flush()
        record_audit(
            db,
            organization_id=rfq.organization_id,
            user_id=user_context["user_id"],
            action=audit.RFQ_MESSAGE,
            entity_type="rfq",
            entity_id=rfq.id,
            details={"message_id": message.id},
            timestamp=now,
        )
    else:
        create_admin_notification(
            db,
            organization_id=rfq.organization_id,
            notification_type=NotificationType.RFQ,
            title="Buyer message",
            message=f"New buyer message on RFQ {rfq.reference}.",
            metadata={"rfq_id": rfq.id},
            created_at=now,
        )

    db.commit()
    db.refresh(message)
    return message


def compute_cycle_metrics(rfq: RFQ) -> dict:
    """First-offer latency and close cycle time in hours, from the event log."""
    first_offer = next(
        (e.timestamp for e in rfq.events if e.event_type == RFQEventType.OFFER_SENT), None
    )
    closed = next(
        (e.timestamp for e in rfq.events if e.event_type == RFQEventType.RFQ_CLOSED), None
    )

    def hours_since_created(moment):
        if moment is None:
            return None
        return round((moment - rfq.created_at).total_seconds() / 3600.0, 2)

    return {
        "first_offer_hours": hours_since_created(first_offer),
        "cycle_hours": hours_since_created(closed),
    }
