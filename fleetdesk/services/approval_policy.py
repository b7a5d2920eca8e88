"""
Approval policy store, threshold resolution and impact simulation.

Policies are per (organization, service tier). When an organization has no
row for a tier the defaults below apply. Preview and simulate classify with
``escalation.classify_ratio``, the same function the scan uses.
"""
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from fleetdesk.core.clock import system_clock
from fleetdesk.core.config import settings
from fleetdesk.core.errors import ValidationError
from fleetdesk.core.logging import get_logger
from fleetdesk.db.models import (
    ApprovalPolicy, ServiceTier, TeamRole, User, UserRole, EscalationLevel
)
from fleetdesk.services import audit
from fleetdesk.services.audit import record_audit
from fleetdesk.services.escalation import (
    TierThresholds, ScoringInput, score_rfq, load_scoring_inputs
)

logger = get_logger(__name__)

TIER_APPROVER_ROLE = {
    ServiceTier.STANDARD: TeamRole.APPROVER,
    ServiceTier.PRIORITY: TeamRole.MANAGER,
    ServiceTier.ENTERPRISE: TeamRole.OWNER,
}

APPROVER_FALLBACK_ROLES = {
    TeamRole.APPROVER: [TeamRole.APPROVER, TeamRole.MANAGER, TeamRole.OWNER],
    TeamRole.MANAGER: [TeamRole.MANAGER, TeamRole.OWNER],
    TeamRole.OWNER: [TeamRole.OWNER],
}

POLICY_FIELDS = (
    "required_approvals",
    "approver_team_role",
    "auto_assign_enabled",
    "warning_threshold_ratio",
    "critical_threshold_ratio",
    "active",
)

MAX_ROUTED_APPROVERS = 20


def _parse_tier(value) -> ServiceTier:
    try:
        return ServiceTier(value)
    except ValueError:
        raise ValidationError(f"Unknown service tier: {value}")


def default_policy_values(service_tier) -> dict:
    tier = _parse_tier(service_tier)
    return {
        "required_approvals": 2 if tier == ServiceTier.ENTERPRISE else 1,
        "approver_team_role": TIER_APPROVER_ROLE[tier].value,
        "auto_assign_enabled": True,
        "warning_threshold_ratio": 1.0,
        "critical_threshold_ratio": 1.5,
        "active": True,
    }


def validate_thresholds(warning_ratio: float, critical_ratio: float):
    if not 0.5 <= warning_ratio <= 3.0:
        raise ValidationError("warning_threshold_ratio must be between 0.5 and 3.0")
    if not 1.0 <= critical_ratio <= 4.0:
        raise ValidationError("critical_threshold_ratio must be between 1.0 and 4.0")
    if critical_ratio < warning_ratio:
        raise ValidationError("critical_threshold_ratio must be >= warning_threshold_ratio")


def validate_policy_values(values: Mapping):
    required = values["required_approvals"]
    if not isinstance(required, int) or isinstance(required, bool) or not 1 <= required <= 5:
        raise ValidationError("required_approvals must be between 1 and 5")
    role = values["approver_team_role"]
    if role not in {r.value for r in APPROVER_FALLBACK_ROLES}:
        raise ValidationError(f"Invalid approver team role: {role}")
    validate_thresholds(values["warning_threshold_ratio"], values["critical_threshold_ratio"])


def get_policy(db: Session, organization_id: int, service_tier) -> Optional[ApprovalPolicy]:
    return db.query(ApprovalPolicy).filter(
        ApprovalPolicy.organization_id == organization_id,
        ApprovalPolicy.service_tier == _parse_tier(service_tier).value,
    ).first()


def serialize_policy(policy: Optional[ApprovalPolicy], service_tier) -> dict:
    tier = _parse_tier(service_tier)
    if policy is None:
        data = default_policy_values(tier)
        data.update({"id": None, "service_tier": tier.value, "is_default": True, "updated_at": None})
        return data
    data = {field: getattr(policy, field) for field in POLICY_FIELDS}
    data.update({
        "id": policy.id,
        "service_tier": policy.service_tier,
        "is_default": False,
        "updated_at": policy.updated_at,
    })
    return data


def list_policies(db: Session, organization_id: int) -> List[dict]:
    """One entry per tier; tiers without a stored row report their defaults."""
    stored = {
        p.service_tier: p
        for p in db.query(ApprovalPolicy).filter(ApprovalPolicy.organization_id == organization_id).all()
    }
    return [serialize_policy(stored.get(tier.value), tier) for tier in ServiceTier]


def resolve_thresholds(db: Session, organization_id: int) -> Dict[str, TierThresholds]:
    """
    Threshold mapping for the scorer.

    Inactive or missing policies fall back to the default ratios.
    """
    thresholds = {tier.value: TierThresholds() for tier in ServiceTier}
    policies = db.query(ApprovalPolicy).filter(
        ApprovalPolicy.organization_id == organization_id,
        ApprovalPolicy.active == True,  # noqa: E712
    ).all()
    for policy in policies:
        thresholds[policy.service_tier] = TierThresholds(
            warning_ratio=policy.warning_threshold_ratio,
            critical_ratio=policy.critical_threshold_ratio,
        )
    return thresholds


def upsert_policy(
    db: Session,
    organization_id: int,
    service_tier,
    changes: Mapping,
    actor_id: Optional[int] = None,
    clock=system_clock,
) -> ApprovalPolicy:
    """Merge partial changes onto the stored row, or onto the tier defaults."""
    tier = _parse_tier(service_tier)
    unknown = set(changes) - set(POLICY_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown policy fields: {', '.join(sorted(unknown))}")

    policy = get_policy(db, organization_id, tier)
    merged = default_policy_values(tier) if policy is None else {
        field: getattr(policy, field) for field in POLICY_FIELDS
    }
    merged.update({k: v for k, v in changes.items() if v is not None})
    if isinstance(merged["approver_team_role"], TeamRole):
        merged["approver_team_role"] = merged["approver_team_role"].value
    validate_policy_values(merged)

    now = clock.now()
    created = policy is None
    if created:
        policy = ApprovalPolicy(
            organization_id=organization_id,
            service_tier=tier.value,
            created_by_id=actor_id,
            created_at=now,
        )
        db.add(policy)
    for field, value in merged.items():
        setattr(policy, field, value)
    policy.updated_at = now
    db.flush()

    record_audit(
        db,
        organization_id=organization_id,
        user_id=actor_id,
        action=audit.POLICY_CREATE if created else audit.POLICY_UPDATE,
        entity_type="approval_policy",
        entity_id=policy.id,
        details={"service_tier": tier.value, **{k: v for k, v in changes.items() if v is not None}},
        timestamp=now,
    )
    db.commit()
    db.refresh(policy)
    return policy


def _count_levels(inputs: List[ScoringInput], thresholds: TierThresholds, now: datetime) -> dict:
    counts = {EscalationLevel.WARNING.value: 0, EscalationLevel.CRITICAL.value: 0}
    for item in inputs:
        scored = score_rfq(item, thresholds, now)
        if scored is not None:
            counts[scored.escalation_level] += 1
    return {
        "warning": counts[EscalationLevel.WARNING.value],
        "critical": counts[EscalationLevel.CRITICAL.value],
        "escalated": counts[EscalationLevel.WARNING.value] + counts[EscalationLevel.CRITICAL.value],
    }


def _sample(db: Session, organization_id: int, tier: ServiceTier) -> List[ScoringInput]:
    return load_scoring_inputs(
        db, organization_id, service_tier=tier.value, limit=settings.POLICY_SAMPLE_LIMIT
    )


def preview_impact(
    db: Session,
    organization_id: int,
    service_tier,
    warning_ratio: Optional[float] = None,
    critical_ratio: Optional[float] = None,
    clock=system_clock,
) -> dict:
    """
    Counts the candidate thresholds would produce right now. Writes nothing.

    An omitted ratio is taken from the tier's active policy, or the default.
    """
    tier = _parse_tier(service_tier)
    if warning_ratio is None or critical_ratio is None:
        current = resolve_thresholds(db, organization_id)[tier.value]
        if warning_ratio is None:
            warning_ratio = current.warning_ratio
        if critical_ratio is None:
            critical_ratio = current.critical_ratio
    validate_thresholds(warning_ratio, critical_ratio)
    inputs = _sample(db, organization_id, tier)
    counts = _count_levels(inputs, TierThresholds(warning_ratio, critical_ratio), clock.now())
    return {
        "service_tier": tier.value,
        "warning_threshold_ratio": warning_ratio,
        "critical_threshold_ratio": critical_ratio,
        "total_active": len(inputs),
        **counts,
    }


def simulate(
    db: Session,
    organization_id: int,
    service_tier,
    warning_ratio: float,
    critical_ratio: float,
    clock=system_clock,
) -> dict:
    """Current vs candidate counts over the same sample, with deltas."""
    tier = _parse_tier(service_tier)
    validate_thresholds(warning_ratio, critical_ratio)

    now = clock.now()
    inputs = _sample(db, organization_id, tier)
    current_thresholds = resolve_thresholds(db, organization_id)[tier.value]

    current = _count_levels(inputs, current_thresholds, now)
    proposed = _count_levels(inputs, TierThresholds(warning_ratio, critical_ratio), now)
    return {
        "service_tier": tier.value,
        "sample_size": len(inputs),
        "current": {
            "warning_threshold_ratio": current_thresholds.warning_ratio,
            "critical_threshold_ratio": current_thresholds.critical_ratio,
            **current,
        },
        "proposed": {
            "warning_threshold_ratio": warning_ratio,
            "critical_threshold_ratio": critical_ratio,
            **proposed,
        },
        "delta": {key: proposed[key] - current[key] for key in current},
    }


def resolve_approval_routing(
    db: Session,
    organization_id: int,
    service_tier,
    requester_id: Optional[int] = None,
    required_approvals_override: Optional[int] = None,
) -> dict:
    """
    Who should approve a request of this tier.

    Approvers are picked by the policy's team role, widening to more senior
    roles; with nobody eligible the organization's admins are used. The
    required count is clamped to the number of approvers found.
    An explicit ``required_approvals_override`` wins over the policy value.
    """
    tier = _parse_tier(service_tier)
    policy = db.query(ApprovalPolicy).filter(
        ApprovalPolicy.organization_id == organization_id,
        ApprovalPolicy.service_tier == tier.value,
        ApprovalPolicy.active == True,  # noqa: E712
    ).first()

    values = default_policy_values(tier)
    approver_ids: List[int] = []
    if policy is not None:
        values["required_approvals"] = policy.required_approvals
        values["auto_assign_enabled"] = policy.auto_assign_enabled
        values["approver_team_role"] = policy.approver_team_role

        if policy.auto_assign_enabled:
            roles = APPROVER_FALLBACK_ROLES.get(
                TeamRole(policy.approver_team_role), APPROVER_FALLBACK_ROLES[TeamRole.APPROVER]
            )
            query = db.query(User).filter(
                User.organization_id == organization_id,
                User.is_active == True,  # noqa: E712
                User.team_role.in_([r.value for r in roles]),
            )
            if requester_id is not None:
                query = query.filter(User.id != requester_id)
            rank = {r.value: i for i, r in enumerate(roles)}
            users = sorted(query.all(), key=lambda u: (rank[u.team_role], u.created_at or datetime.min, u.id))
            approver_ids = [u.id for u in users[:MAX_ROUTED_APPROVERS]]

    if not approver_ids:
        query = db.query(User.id).filter(
            User.organization_id == organization_id,
            User.role == UserRole.ADMIN.value,
            User.is_active == True,  # noqa: E712
        )
        if requester_id is not None:
            query = query.filter(User.id != requester_id)
        approver_ids = [row.id for row in query.order_by(User.id).limit(MAX_ROUTED_APPROVERS).all()]

    if required_approvals_override is not None:
        values["required_approvals"] = required_approvals_override
    required = max(1, values["required_approvals"])
    if approver_ids and required > len(approver_ids):
        required = len(approver_ids)

    return {
        "service_tier": tier.value,
        "policy_id": policy.id if policy else None,
        "policy_source": "organization" if policy else "default",
        "required_approvals": required,
        "approver_team_role": values["approver_team_role"],
        "approver_ids": approver_ids,
        "primary_approver_id": approver_ids[0] if approver_ids else None,
    }
