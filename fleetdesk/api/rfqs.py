"""
RFQ API routes - intake, status moves, closing and the message thread.
"""
from typing import List, Literal, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from fleetdesk.db.session import get_db
from fleetdesk.db.models import RFQ, RFQStatus
from fleetdesk.core.clock import get_clock
from fleetdesk.core.rbac import require_admin, require_member, is_admin
from fleetdesk.services import rfq_lifecycle
from fleetdesk.services.offers import format_price

router = APIRouter(prefix="/api/rfqs", tags=["RFQs"])


# ============= SCHEMAS =============

class RFQCreate(BaseModel):
    listing_id: Optional[str] = None
    category: Literal["Trailer", "Truck", "Heavy Equipment"] = "Truck"
    service_tier: Literal["standard", "priority", "enterprise"] = "standard"
    service_package: Literal["core", "concierge", "command"] = "core"
    package_addons: List[Literal["Verification", "Logistics", "Financing", "Compliance", "DedicatedManager"]] = []
    key_specs: str = Field(min_length=10, max_length=5000)
    preferred_brands: Optional[str] = None
    year_min: Optional[int] = Field(None, ge=1950, le=2100)
    year_max: Optional[int] = Field(None, ge=1950, le=2100)
    budget_min: Optional[float] = Field(None, ge=0)
    budget_max: Optional[float] = Field(None, ge=0)
    delivery_country: str = Field(min_length=2, max_length=100)
    pickup_deadline: Optional[datetime] = None
    urgency: Literal["Normal", "Urgent"] = "Normal"
    condition_tolerance: str = Field(min_length=3, max_length=255)
    required_documents: List[str] = []
    notes: Optional[str] = None
    business_goal: Optional[str] = None
    risk_tolerance: Optional[Literal["Low", "Medium", "High"]] = None
    budget_confidence: Optional[Literal["Fixed", "Flexible", "Exploratory"]] = None

    @field_validator('key_specs', 'delivery_country', 'condition_tolerance')
    @classmethod
    def strip_required(cls, v: str) -> str:
        return v.strip()


class StatusUpdate(BaseModel):
    status: Literal["received", "in_progress", "offer_sent", "pending_execution"]
    internal_ops_notes: Optional[str] = None


class CloseRequest(BaseModel):
    outcome: Literal["won", "lost"]
    reason: str = Field(min_length=1, max_length=2000)


class MessageCreate(BaseModel):
    message: str = Field(min_length=1, max_length=5000)


class RFQSummary(BaseModel):
    id: int
    reference: str
    category: str
    service_tier: str
    service_package: str
    status: str
    status_label: str
    urgency: str
    delivery_country: str
    sla_target_hours: int
    mandate_completeness: int
    created_at: datetime
    offer_count: int


class RFQDetail(RFQSummary):
    user_id: int
    listing_id: Optional[str]
    package_addons: List[str]
    key_specs: str
    preferred_brands: Optional[str]
    year_min: Optional[int]
    year_max: Optional[int]
    budget_min: Optional[float]
    budget_max: Optional[float]
    pickup_deadline: Optional[datetime]
    condition_tolerance: str
    required_documents: List[str]
    notes: Optional[str]
    business_goal: Optional[str]
    risk_tolerance: Optional[str]
    budget_confidence: Optional[str]
    close_reason: Optional[str]
    internal_ops_notes: Optional[str]
    updated_at: Optional[datetime]
    metrics: dict
    offers: List[dict]
    events: List[dict]
    messages: List[dict]


# ============= HELPERS =============

def serialize_offer(offer) -> dict:
    return {
        "id": offer.id,
        "rfq_id": offer.rfq_id,
        "listing_id": offer.listing_id,
        "title": offer.title,
        "price": offer.price,
        "currency": offer.currency,
        "price_display": format_price(offer.price, offer.currency),
        "terms": offer.terms,
        "location": offer.location,
        "availability_text": offer.availability_text,
        "valid_until": offer.valid_until,
        "included_flags": offer.included_flags or {},
        "notes": offer.notes,
        "status": offer.status,
        "version_number": offer.version_number,
        "decline_reason": offer.decline_reason,
        "created_at": offer.created_at,
        "sent_at": offer.sent_at,
    }


def _summary_fields(rfq: RFQ) -> dict:
    return dict(
        id=rfq.id,
        reference=rfq.reference,
        category=rfq.category,
        service_tier=rfq.service_tier,
        service_package=rfq.service_package,
        status=rfq.status,
        status_label=RFQStatus(rfq.status).label,
        urgency=rfq.urgency,
        delivery_country=rfq.delivery_country,
        sla_target_hours=rfq.sla_target_hours,
        mandate_completeness=rfq.mandate_completeness,
        created_at=rfq.created_at,
        offer_count=len(rfq.offers),
    )


def _build_rfq_detail(rfq: RFQ, include_internal: bool) -> RFQDetail:
    return RFQDetail(
        **_summary_fields(rfq),
        user_id=rfq.user_id,
        listing_id=rfq.listing_id,
        package_addons=rfq.package_addons or [],
        key_specs=rfq.key_specs,
        preferred_brands=rfq.preferred_brands,
        year_min=rfq.year_min,
        year_max=rfq.year_max,
        budget_min=rfq.budget_min,
        budget_max=rfq.budget_max,
        pickup_deadline=rfq.pickup_deadline,
        condition_tolerance=rfq.condition_tolerance,
        required_documents=rfq.required_documents or [],
        notes=rfq.notes,
        business_goal=rfq.business_goal,
        risk_tolerance=rfq.risk_tolerance,
        budget_confidence=rfq.budget_confidence,
        close_reason=rfq.close_reason,
        internal_ops_notes=rfq.internal_ops_notes if include_internal else None,
        updated_at=rfq.updated_at,
        metrics=rfq_lifecycle.compute_cycle_metrics(rfq),
        offers=[serialize_offer(o) for o in rfq.offers],
        events=[
            {"sequence": e.sequence, "type": e.event_type, "payload": e.payload, "timestamp": e.timestamp}
            for e in rfq.events
        ],
        messages=[
            {"id": m.id, "sender_type": m.sender_type, "body": m.body, "created_at": m.created_at}
            for m in rfq.messages
        ],
    )


# ============= ROUTES =============

@router.get("", response_model=List[RFQSummary])
async def list_rfqs(
    status: Optional[str] = Query(None, description="Filter by status"),
    service_tier: Optional[str] = Query(None, description="Filter by service tier"),
    limit: int = Query(50, le=200),
    offset: int = Query(0),
    user_context: dict = Depends(require_member),
    db: Session = Depends(get_db)
):
    """List RFQs visible to the caller."""
    rfqs = rfq_lifecycle.list_rfqs(db, user_context, status, service_tier, limit, offset)
    return [RFQSummary(**_summary_fields(r)) for r in rfqs]


@router.post("", response_model=RFQDetail, status_code=201)
async def create_rfq(
    rfq_data: RFQCreate,
    user_context: dict = Depends(require_member),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Submit a new RFQ."""
    rfq = rfq_lifecycle.create_rfq(db, user_context, rfq_data.model_dump(), clock=clock)
    return _build_rfq_detail(rfq, include_internal=False)


@router.get("/{rfq_id}", response_model=RFQDetail)
async def get_rfq(
    rfq_id: int,
    user_context: dict = Depends(require_member),
    db: Session = Depends(get_db)
):
    """Get RFQ details with offers, events and messages."""
    rfq = rfq_lifecycle.get_rfq(db, user_context, rfq_id)
    return _build_rfq_detail(rfq, include_internal=is_admin(user_context))


@router.patch("/{rfq_id}/status", response_model=RFQDetail)
async def update_status(
    rfq_id: int,
    update: StatusUpdate,
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Move an open RFQ forward (admin only)."""
    rfq = rfq_lifecycle.update_rfq_status(
        db, user_context, rfq_id, update.status, clock=clock,
        internal_ops_notes=update.internal_ops_notes,
    )
    return _build_rfq_detail(rfq, include_internal=True)


@router.post("/{rfq_id}/close", response_model=RFQDetail)
async def close_rfq(
    rfq_id: int,
    request: CloseRequest,
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Close an RFQ as won or lost (admin only)."""
    rfq = rfq_lifecycle.close_rfq(db, user_context, rfq_id, request.outcome, request.reason, clock=clock)
    return _build_rfq_detail(rfq, include_internal=True)


@router.post("/{rfq_id}/messages", status_code=201)
async def post_message(
    rfq_id: int,
    message: MessageCreate,
    user_context: dict = Depends(require_member),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Add a message to the RFQ thread."""
    created = rfq_lifecycle.post_message(db, user_context, rfq_id, message.message, clock=clock)
    return {
        "id": created.id,
        "rfq_id": created.rfq_id,
        "sender_type": created.sender_type,
        "body": created.body,
        "created_at": created.created_at,
    }
