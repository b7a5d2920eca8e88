"""
Offer ledger: versioned quotes against an RFQ and the buyer's accept/decline.
"""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Mapping, Optional

from sqlalchemy.orm import Session

from fleetdesk.core.clock import system_clock, to_naive_utc
from fleetdesk.core.config import settings
from fleetdesk.core.errors import NotFoundError, StateConflictError, ValidationError
from fleetdesk.core.logging import get_logger
from fleetdesk.core.rbac import ensure_admin
from fleetdesk.db.models import (
    RFQ, Offer, OfferStatus, RFQStatus, RFQEventType, NotificationType
)
from fleetdesk.services import audit
from fleetdesk.services.audit import record_audit
from fleetdesk.services.notifications import create_admin_notification, create_notification
from fleetdesk.services.rfq_lifecycle import append_event, get_rfq

logger = get_logger(__name__)

SIBLING_DECLINE_REASON = "Another offer was accepted."


def format_price(price: Optional[float], currency: Optional[str] = None) -> Optional[str]:
    """'USD 65,000.00' style display string; None when there is no price."""
    if price is None:
        return None
    amount = Decimal(str(price)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{currency or settings.DEFAULT_CURRENCY} {amount:,.2f}"


def _validate_offer_fields(data: Mapping, now: datetime) -> dict:
    cleaned = dict(data)

    title = (cleaned.get("title") or "").strip()
    if not title or len(title) > 140:
        raise ValidationError("Offer title must be 1-140 characters")
    cleaned["title"] = title

    valid_until = to_naive_utc(cleaned.get("valid_until"))
    if valid_until is None:
        raise ValidationError("valid_until is required")
    if valid_until <= now:
        raise ValidationError("valid_until must be in the future")
    cleaned["valid_until"] = valid_until

    price = cleaned.get("price")
    if price is not None:
        if price < 0:
            raise ValidationError("price cannot be negative")
        currency = (cleaned.get("currency") or settings.DEFAULT_CURRENCY).strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError(f"Invalid currency code: {currency}")
        cleaned["currency"] = currency
    else:
        cleaned["currency"] = (cleaned.get("currency") or "").strip().upper() or None

    flags = cleaned.get("included_flags") or {}
    cleaned["included_flags"] = {str(k): bool(v) for k, v in flags.items()}
    return cleaned


def create_offer(
    db: Session,
    user_context: dict,
    rfq_id: int,
    data: Mapping,
    clock=system_clock,
) -> Offer:
    """
    Issue the next offer version on an open RFQ.

    The RFQ row is locked while the version is allocated from its counter,
    and the RFQ moves to Offer sent.
    """
    ensure_admin(user_context)
    now = clock.now()
    fields = _validate_offer_fields(data, now)

    rfq = get_rfq(db, user_context, rfq_id, for_update=True)
    if rfq.is_closed:
        raise StateConflictError("Cannot create an offer on a closed RFQ")

    version = (rfq.last_offer_version or 0) + 1
    rfq.last_offer_version = version

    offer = Offer(
        rfq_id=rfq.id,
        listing_id=fields.get("listing_id"),
        title=fields["title"],
        price=fields.get("price"),
        currency=fields["currency"],
        terms=fields.get("terms"),
        location=fields.get("location"),
        availability_text=fields.get("availability_text"),
        valid_until=fields["valid_until"],
        included_flags=fields["included_flags"],
        notes=fields.get("notes"),
        status=OfferStatus.SENT.value,
        version_number=version,
        created_at=now,
        sent_at=now,
    )
    db.add(offer)
    db.flush()

    previous = rfq.status
    if previous != RFQStatus.OFFER_SENT:
        rfq.status = RFQStatus.OFFER_SENT.value
        append_event(db, rfq, RFQEventType.STATUS_CHANGE,
                     {"from": previous, "to": RFQStatus.OFFER_SENT.value}, now)
    rfq.updated_at = now
    append_event(db, rfq, RFQEventType.OFFER_SENT, {
        "offer_id": offer.id,
        "version_number": version,
        "title": offer.title,
        "price": format_price(offer.price, offer.currency),
    }, now)

    create_notification(
        db,
        user_id=rfq.user_id,
        organization_id=rfq.organization_id,
        notification_type=NotificationType.OFFER,
        title="New offer received",
        message=f"A new offer was sent for RFQ {rfq.reference}.",
        metadata={"rfq_id": rfq.id, "offer_id": offer.id, "version_number": version},
        created_at=now,
    )
    record_audit(
        db,
        organization_id=rfq.organization_id,
        user_id=user_context["user_id"],
        action=audit.OFFER_CREATE,
        entity_type="rfq",
        entity_id=rfq.id,
        details={"offer_id": offer.id, "version_number": version, "title": offer.title},
        timestamp=now,
    )
    db.commit()
    db.refresh(offer)
    logger.info(f"Offer v{version} sent on RFQ {rfq.reference}", extra={"rfq_id": rfq.id})
    return offer


def _load_offer_and_rfq(db: Session, user_context: dict, offer_id: int):
    offer = db.query(Offer).filter(Offer.id == offer_id).first()
    if not offer:
        raise NotFoundError("Offer not found")
    try:
        rfq = get_rfq(db, user_context, offer.rfq_id, for_update=True)
    except NotFoundError:
        raise NotFoundError("Offer not found")
    return offer, rfq


def _record_offer_update(db: Session, user_context: dict, rfq: RFQ, offer: Offer,
                         now: datetime, **details):
    record_audit(
        db,
        organization_id=rfq.organization_id,
        user_id=user_context["user_id"],
        action=audit.OFFER_UPDATE,
        entity_type="rfq",
        entity_id=rfq.id,
        details={"offer_id": offer.id, "status": offer.status, **details},
        timestamp=now,
    )


def accept_offer(db: Session, user_context: dict, offer_id: int, clock=system_clock) -> Offer:
    """
    Accept a Sent offer.

    In one transaction: this offer becomes Accepted, every other Sent offer
    on the RFQ is Declined, and the RFQ moves to Pending execution.
    """
    offer, rfq = _load_offer_and_rfq(db, user_context, offer_id)
    now = clock.now()

    if rfq.is_closed:
        raise StateConflictError("Cannot accept an offer on a closed RFQ")
    if offer.status != OfferStatus.SENT:
        raise StateConflictError(f"Only sent offers can be accepted (offer is {offer.status})")
    if offer.valid_until is not None and offer.valid_until < now:
        raise StateConflictError("Offer has expired")
    already_accepted = db.query(Offer.id).filter(
        Offer.rfq_id == rfq.id,
        Offer.status == OfferStatus.ACCEPTED.value,
    ).first()
    if already_accepted:
        raise StateConflictError("Another offer on this RFQ is already accepted")

    try:
        siblings: List[Offer] = db.query(Offer).filter(
            Offer.rfq_id == rfq.id,
            Offer.id != offer.id,
            Offer.status == OfferStatus.SENT.value,
        ).all()
        for sibling in siblings:
            sibling.status = OfferStatus.DECLINED.value
            sibling.decline_reason = SIBLING_DECLINE_REASON

        offer.status = OfferStatus.ACCEPTED.value

        previous = rfq.status
        if previous != RFQStatus.PENDING_EXECUTION:
            rfq.status = RFQStatus.PENDING_EXECUTION.value
            append_event(db, rfq, RFQEventType.STATUS_CHANGE,
                         {"from": previous, "to": RFQStatus.PENDING_EXECUTION.value}, now)
        rfq.updated_at = now
        append_event(db, rfq, RFQEventType.OFFER_ACCEPTED, {
            "offer_id": offer.id,
            "version_number": offer.version_number,
            "declined_offer_ids": [s.id for s in siblings],
        }, now)

        create_admin_notification(
            db,
            organization_id=rfq.organization_id,
            notification_type=NotificationType.OFFER,
            title="Offer accepted",
            message=f"Offer v{offer.version_number} on RFQ {rfq.reference} was accepted by buyer.",
            metadata={"rfq_id": rfq.id, "offer_id": offer.id},
            created_at=now,
        )
        _record_offer_update(db, user_context, rfq, offer, now,
                             declined_offer_ids=[s.id for s in siblings])
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(offer)
    logger.info(f"Offer {offer.id} accepted on RFQ {rfq.reference}", extra={"rfq_id": rfq.id})
    return offer


def decline_offer(
    db: Session,
    user_context: dict,
    offer_id: int,
    reason: Optional[str] = None,
    clock=system_clock,
) -> Offer:
    """Decline a Sent offer; the RFQ status is left alone."""
    offer, rfq = _load_offer_and_rfq(db, user_context, offer_id)
    now = clock.now()

    if rfq.is_closed:
        raise StateConflictError("Cannot decline an offer on a closed RFQ")
    if offer.status != OfferStatus.SENT:
        raise StateConflictError(f"Only sent offers can be declined (offer is {offer.status})")

    reason = (reason or "").strip()
    offer.status = OfferStatus.DECLINED.value
    offer.decline_reason = reason or None
    append_event(db, rfq, RFQEventType.OFFER_DECLINED, {"offer_id": offer.id, "reason": reason}, now)

    create_admin_notification(
        db,
        organization_id=rfq.organization_id,
        notification_type=NotificationType.OFFER,
        title="Offer declined",
        message=f"Offer v{offer.version_number} on RFQ {rfq.reference} was declined by buyer.",
        metadata={"rfq_id": rfq.id, "offer_id": offer.id, "reason": reason},
        created_at=now,
    )
    _record_offer_update(db, user_context, rfq, offer, now, reason=reason or None)
    db.commit()
    db.refresh(offer)
    return offer


def expire_offers(db: Session, clock=system_clock, organization_id: Optional[int] = None) -> int:
    """Mark Sent offers past their valid_until as Expired. Returns the count."""
    now = clock.now()
    query = db.query(Offer).join(RFQ, Offer.rfq_id == RFQ.id).filter(
        Offer.status == OfferStatus.SENT.value,
        Offer.valid_until < now,
    )
    if organization_id is not None:
        query = query.filter(RFQ.organization_id == organization_id)

    expired = 0
    for offer in query.order_by(Offer.rfq_id, Offer.version_number).all():
        offer.status = OfferStatus.EXPIRED.value
        append_event(db, offer.rfq, RFQEventType.OFFER_EXPIRED, {
            "offer_id": offer.id,
            "version_number": offer.version_number,
        }, now)
        expired += 1

    db.commit()
    if expired:
        logger.info(f"Expired {expired} offers")
    return expired
