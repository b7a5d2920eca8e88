"""
Offer API routes - issuing offers and the buyer's accept/decline.
"""
from typing import Dict, Literal, Optional
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from fleetdesk.db.session import get_db
from fleetdesk.core.clock import get_clock
from fleetdesk.core.rbac import require_admin, require_member
from fleetdesk.services import offers as offer_service
from fleetdesk.api.rfqs import serialize_offer

router = APIRouter(prefix="/api", tags=["Offers"])


# ============= SCHEMAS =============

class OfferCreate(BaseModel):
    listing_id: Optional[str] = None
    title: str = Field(min_length=1, max_length=140)
    price: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    terms: Optional[str] = None
    location: Optional[str] = Field(None, max_length=120)
    availability_text: Optional[str] = None
    valid_until: datetime
    included_flags: Dict[str, bool] = {}
    notes: Optional[str] = None


class OfferDecision(BaseModel):
    status: Literal["accepted", "declined"]
    reason: Optional[str] = Field(None, max_length=2000)


# ============= ROUTES =============

@router.post("/rfqs/{rfq_id}/offers", status_code=201)
async def create_offer(
    rfq_id: int,
    offer_data: OfferCreate,
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Issue the next offer version on an RFQ (admin only)."""
    offer = offer_service.create_offer(db, user_context, rfq_id, offer_data.model_dump(), clock=clock)
    return serialize_offer(offer)


@router.patch("/offers/{offer_id}")
async def decide_offer(
    offer_id: int,
    decision: OfferDecision,
    user_context: dict = Depends(require_member),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Accept or decline a sent offer."""
    if decision.status == "accepted":
        offer = offer_service.accept_offer(db, user_context, offer_id, clock=clock)
    else:
        offer = offer_service.decline_offer(db, user_context, offer_id, decision.reason, clock=clock)
    return serialize_offer(offer)
