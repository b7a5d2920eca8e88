"""
SLA escalation scoring.

Everything here except ``load_scoring_inputs`` is pure: thresholds are passed
in explicitly, "now" is an argument, and nothing is written. The approval
policy preview/simulate code reuses ``classify_ratio`` so that what an admin
previews is exactly what the scan will do.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from sqlalchemy import desc, exists
from sqlalchemy.orm import Session

from fleetdesk.db.models import (
    RFQ, Offer, OfferStatus, EscalationLevel, ServiceTier, OPEN_RFQ_STATUSES
)


@dataclass(frozen=True)
class TierThresholds:
    warning_ratio: float = 1.0
    critical_ratio: float = 1.5


DEFAULT_THRESHOLDS = TierThresholds()


@dataclass(frozen=True)
class ScoringInput:
    """Snapshot of the RFQ fields the scorer needs."""
    rfq_id: int
    reference: str
    service_tier: str
    status: str
    created_at: datetime
    sla_target_hours: int
    has_offer: bool = False


@dataclass(frozen=True)
class EscalationItem:
    rfq_id: int
    reference: str
    service_tier: str
    status: str
    age_hours: int
    sla_target_hours: int
    escalation_level: str
    has_offer: bool
    ratio: float

    def to_dict(self) -> dict:
        return {
            "rfq_id": self.rfq_id,
            "reference": self.reference,
            "service_tier": self.service_tier,
            "status": self.status,
            "age_hours": self.age_hours,
            "sla_target_hours": self.sla_target_hours,
            "escalation_level": self.escalation_level,
            "has_offer": self.has_offer,
            "ratio": round(self.ratio, 4),
        }


def age_in_hours(created_at: datetime, now: datetime) -> float:
    return (now - created_at).total_seconds() / 3600.0


def escalation_ratio(age_hours: float, sla_target_hours: Optional[int]) -> float:
    """Age over SLA target; targets below one hour are treated as one."""
    return age_hours / max(1, sla_target_hours or 0)


def classify_ratio(ratio: float, thresholds: TierThresholds) -> Optional[EscalationLevel]:
    if ratio >= thresholds.critical_ratio:
        return EscalationLevel.CRITICAL
    if ratio >= thresholds.warning_ratio:
        return EscalationLevel.WARNING
    return None


def score_rfq(
    item: ScoringInput,
    thresholds: TierThresholds,
    now: datetime,
) -> Optional[EscalationItem]:
    """Score a single RFQ; returns None when it is closed or not escalated."""
    if item.status not in OPEN_RFQ_STATUSES:
        return None

    age = age_in_hours(item.created_at, now)
    ratio = escalation_ratio(age, item.sla_target_hours)
    level = classify_ratio(ratio, thresholds)
    if level is None:
        return None

    return EscalationItem(
        rfq_id=item.rfq_id,
        reference=item.reference,
        service_tier=item.service_tier,
        status=item.status,
        age_hours=int(age // 1),
        sla_target_hours=item.sla_target_hours,
        escalation_level=level.value,
        has_offer=item.has_offer,
        ratio=ratio,
    )


def score_population(
    items: Iterable[ScoringInput],
    thresholds_by_tier: Mapping[str, TierThresholds],
    now: datetime,
) -> List[EscalationItem]:
    """Every escalated item, oldest first."""
    ranked = []
    for item in items:
        thresholds = thresholds_by_tier.get(item.service_tier, DEFAULT_THRESHOLDS)
        scored = score_rfq(item, thresholds, now)
        if scored is not None:
            ranked.append((age_in_hours(item.created_at, now), scored))
    ranked.sort(key=lambda pair: (-pair[0], pair[1].rfq_id))
    return [scored for _, scored in ranked]


def rank_escalations(
    items: Iterable[ScoringInput],
    thresholds_by_tier: Mapping[str, TierThresholds],
    now: datetime,
    limit: int = 20,
) -> List[EscalationItem]:
    return score_population(items, thresholds_by_tier, now)[:limit]


def summarize_escalations(
    escalated: Iterable[EscalationItem],
    thresholds_by_tier: Optional[Mapping[str, TierThresholds]] = None,
) -> Dict[str, dict]:
    """
    Warning/critical counts per tier.

    Pass the full escalated population here, not a ranked/capped queue.
    Every tier is present in the result even when it has no escalations.
    With ``thresholds_by_tier`` each tier also reports the ratios that
    produced its counts.
    """
    summary = {
        tier.value: {EscalationLevel.WARNING.value: 0, EscalationLevel.CRITICAL.value: 0}
        for tier in ServiceTier
    }
    for item in escalated:
        bucket = summary.setdefault(
            item.service_tier,
            {EscalationLevel.WARNING.value: 0, EscalationLevel.CRITICAL.value: 0},
        )
        bucket[item.escalation_level] += 1

    if thresholds_by_tier is not None:
        for tier, bucket in summary.items():
            thresholds = thresholds_by_tier.get(tier, DEFAULT_THRESHOLDS)
            bucket["warning_threshold_ratio"] = thresholds.warning_ratio
            bucket["critical_threshold_ratio"] = thresholds.critical_ratio
    return summary


def load_scoring_inputs(
    db: Session,
    organization_id: int,
    service_tier: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[ScoringInput]:
    """Read open RFQs of an organization as scorer inputs, newest first."""
    has_offer = exists().where(
        Offer.rfq_id == RFQ.id,
        Offer.status.in_([OfferStatus.SENT.value, OfferStatus.ACCEPTED.value]),
    )

    query = db.query(
        RFQ.id, RFQ.reference, RFQ.service_tier, RFQ.status,
        RFQ.created_at, RFQ.sla_target_hours, has_offer.label("has_offer"),
    ).filter(
        RFQ.organization_id == organization_id,
        RFQ.status.in_([s.value for s in OPEN_RFQ_STATUSES]),
    )
    if service_tier:
        query = query.filter(RFQ.service_tier == service_tier)

    query = query.order_by(desc(RFQ.created_at), desc(RFQ.id))
    if limit:
        query = query.limit(limit)

    return [
        ScoringInput(
            rfq_id=row.id,
            reference=row.reference,
            service_tier=row.service_tier,
            status=row.status,
            created_at=row.created_at,
            sla_target_hours=row.sla_target_hours,
            has_offer=bool(row.has_offer),
        )
        for row in query.all()
    ]
