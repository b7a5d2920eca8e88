"""
Automation rule engine.

``run_escalation_scan`` is one scan cycle for an organization: score open
RFQs, notify admins (through the organization's active rules, or the
default alert when it has none), make sure every escalated RFQ has an open
ops task, and write one run log entry. Items are committed one at a time, so
work done before a failure stands; the failure itself is recorded as a
FAILED run and surfaced as ``EscalationScanError``.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Mapping, Optional

from sqlalchemy import desc, exists
from sqlalchemy.orm import Session

from fleetdesk.core.clock import system_clock
from fleetdesk.core.config import settings
from fleetdesk.core.errors import EscalationScanError, NotFoundError, ValidationError
from fleetdesk.core.logging import get_logger
from fleetdesk.core.rbac import ensure_admin
from fleetdesk.db.models import (
    AutomationRule, AutomationRunLog, RFQ, Offer, OfferStatus,
    TriggerType, ActionType, RunStatus, EscalationLevel, ServiceTier,
    NotificationType, TaskPriority, OPEN_RFQ_STATUSES
)
from fleetdesk.services.approval_policy import resolve_thresholds
from fleetdesk.services import audit
from fleetdesk.services.audit import record_audit
from fleetdesk.services.escalation import (
    EscalationItem, load_scoring_inputs, score_population, summarize_escalations,
    age_in_hours
)
from fleetdesk.services.notifications import create_admin_notification, list_admin_ids
from fleetdesk.services.ops_tasks import ensure_open_task

logger = get_logger(__name__)

BASE_TITLES = {
    EscalationLevel.CRITICAL.value: "Critical SLA escalation",
    EscalationLevel.WARNING.value: "SLA escalation warning",
}

TASK_TITLES = {
    EscalationLevel.CRITICAL.value: "Critical SLA breach requires action",
    EscalationLevel.WARNING.value: "SLA warning requires follow-up",
}

TASK_PRIORITY = {
    EscalationLevel.CRITICAL.value: TaskPriority.CRITICAL,
    EscalationLevel.WARNING.value: TaskPriority.HIGH,
}

TASK_DUE_MINUTES = {
    EscalationLevel.CRITICAL.value: 60,
    EscalationLevel.WARNING.value: 240,
}


# ============= RULE SHAPES =============

@dataclass(frozen=True)
class RuleCondition:
    """Closed set of rule filters; an unset field matches everything."""
    service_tier: Optional[str] = None
    escalation_level: Optional[str] = None
    min_age_hours: Optional[int] = None

    @classmethod
    def from_json(cls, data: Optional[Mapping]) -> "RuleCondition":
        data = data or {}
        condition = cls(
            service_tier=data.get("service_tier") or None,
            escalation_level=data.get("escalation_level") or None,
            min_age_hours=data.get("min_age_hours"),
        )
        condition.validate()
        return condition

    def validate(self):
        if self.service_tier is not None and self.service_tier not in {t.value for t in ServiceTier}:
            raise ValidationError(f"Unknown service tier: {self.service_tier}")
        if self.escalation_level is not None and self.escalation_level not in {
            lvl.value for lvl in EscalationLevel
        }:
            raise ValidationError(f"Unknown escalation level: {self.escalation_level}")
        if self.min_age_hours is not None:
            if not isinstance(self.min_age_hours, int) or isinstance(self.min_age_hours, bool):
                raise ValidationError("min_age_hours must be an integer")
            if not 0 <= self.min_age_hours <= 720:
                raise ValidationError("min_age_hours must be between 0 and 720")

    def to_json(self) -> dict:
        return {
            key: value for key, value in (
                ("service_tier", self.service_tier),
                ("escalation_level", self.escalation_level),
                ("min_age_hours", self.min_age_hours),
            ) if value is not None
        }

    def matches(self, item: EscalationItem) -> bool:
        if self.service_tier is not None and self.service_tier != item.service_tier:
            return False
        if self.escalation_level is not None and self.escalation_level != item.escalation_level:
            return False
        if self.min_age_hours is not None and item.age_hours < self.min_age_hours:
            return False
        return True


@dataclass(frozen=True)
class ActionConfig:
    title_prefix: Optional[str] = None
    message_suffix: Optional[str] = None

    @classmethod
    def from_json(cls, data: Optional[Mapping]) -> "ActionConfig":
        data = data or {}
        config = cls(
            title_prefix=(data.get("title_prefix") or "").strip() or None,
            message_suffix=(data.get("message_suffix") or "").strip() or None,
        )
        config.validate()
        return config

    def validate(self):
        if self.title_prefix and len(self.title_prefix) > 80:
            raise ValidationError("title_prefix must be at most 80 characters")
        if self.message_suffix and len(self.message_suffix) > 200:
            raise ValidationError("message_suffix must be at most 200 characters")

    def to_json(self) -> dict:
        data = {}
        if self.title_prefix:
            data["title_prefix"] = self.title_prefix
        if self.message_suffix:
            data["message_suffix"] = self.message_suffix
        return data

    def render_title(self, base: str) -> str:
        if not self.title_prefix:
            return base
        return f"{self.title_prefix} {base}".strip()

    def render_message(self, base: str) -> str:
        if not self.message_suffix:
            return base
        return f"{base} {self.message_suffix}"


# ============= RULE CRUD =============

def _validate_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not 3 <= len(name) <= 120:
        raise ValidationError("Rule name must be 3-120 characters")
    return name


def _validate_kinds(trigger_type, action_type):
    try:
        TriggerType(trigger_type)
        ActionType(action_type)
    except ValueError:
        raise ValidationError(f"Unsupported trigger/action: {trigger_type}/{action_type}")


def create_rule(
    db: Session,
    organization_id: int,
    data: Mapping,
    actor_id: Optional[int] = None,
    clock=system_clock,
) -> AutomationRule:
    name = _validate_name(data.get("name"))
    trigger_type = data.get("trigger_type") or TriggerType.SLA_ESCALATION.value
    action_type = data.get("action_type") or ActionType.NOTIFY_ADMIN.value
    _validate_kinds(trigger_type, action_type)
    condition = RuleCondition.from_json(data.get("condition"))
    action_config = ActionConfig.from_json(data.get("action_config"))

    now = clock.now()
    rule = AutomationRule(
        organization_id=organization_id,
        name=name,
        trigger_type=TriggerType(trigger_type).value,
        action_type=ActionType(action_type).value,
        condition=condition.to_json(),
        action_config=action_config.to_json(),
        active=data.get("active", True) is not False,
        created_by_id=actor_id,
        created_at=now,
    )
    db.add(rule)
    db.flush()
    record_audit(
        db,
        organization_id=organization_id,
        user_id=actor_id,
        action=audit.RULE_CREATE,
        entity_type="automation_rule",
        entity_id=rule.id,
        details={"name": name, "condition": rule.condition, "action_config": rule.action_config},
        timestamp=now,
    )
    db.commit()
    db.refresh(rule)
    return rule


def update_rule(
    db: Session,
    organization_id: int,
    rule_id: int,
    changes: Mapping,
    actor_id: Optional[int] = None,
    clock=system_clock,
) -> AutomationRule:
    """Partial update; typically toggling ``active``."""
    rule = db.query(AutomationRule).filter(
        AutomationRule.id == rule_id,
        AutomationRule.organization_id == organization_id,
    ).first()
    if not rule:
        raise NotFoundError("Automation rule not found")

    if changes.get("name") is not None:
        rule.name = _validate_name(changes["name"])
    if "condition" in changes and changes["condition"] is not None:
        rule.condition = RuleCondition.from_json(changes["condition"]).to_json()
    if "action_config" in changes and changes["action_config"] is not None:
        rule.action_config = ActionConfig.from_json(changes["action_config"]).to_json()
    if changes.get("active") is not None:
        rule.active = bool(changes["active"])

    record_audit(
        db,
        organization_id=organization_id,
        user_id=actor_id,
        action=audit.RULE_UPDATE,
        entity_type="automation_rule",
        entity_id=rule.id,
        details={k: v for k, v in changes.items() if v is not None},
        timestamp=clock.now(),
    )
    db.commit()
    db.refresh(rule)
    return rule


def list_rules(db: Session, organization_id: int) -> List[AutomationRule]:
    return db.query(AutomationRule).filter(
        AutomationRule.organization_id == organization_id
    ).order_by(desc(AutomationRule.created_at), desc(AutomationRule.id)).all()


def list_runs(db: Session, organization_id: int, limit: int = 50) -> List[AutomationRunLog]:
    return db.query(AutomationRunLog).filter(
        AutomationRunLog.organization_id == organization_id
    ).order_by(desc(AutomationRunLog.created_at), desc(AutomationRunLog.id)).limit(limit).all()


# ============= ESCALATION SCAN =============

def day_stamp(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def default_dedupe_key(day: str, item: EscalationItem) -> str:
    return f"escalation:{day}:{item.rfq_id}:{item.escalation_level}"


def rule_dedupe_key(day: str, rule_id: int, item: EscalationItem) -> str:
    return f"escalation:{day}:{rule_id}:{item.rfq_id}:{item.escalation_level}"


def base_message(item: EscalationItem) -> str:
    return f"RFQ {item.reference} is {item.age_hours}h old (target {item.sla_target_hours}h)."


def get_escalation_queue(
    db: Session,
    organization_id: int,
    clock=system_clock,
    limit: Optional[int] = None,
) -> dict:
    """Ranked, capped queue plus the per-tier summary over every escalated RFQ."""
    now = clock.now()
    thresholds = resolve_thresholds(db, organization_id)
    escalated = score_population(load_scoring_inputs(db, organization_id), thresholds, now)
    limit = limit or settings.ESCALATION_QUEUE_LIMIT
    return {
        "generated_at": now,
        "items": escalated[:limit],
        "total_escalated": len(escalated),
        "summary": summarize_escalations(escalated, thresholds),
    }


@dataclass
class ScanResult:
    run_id: Optional[int] = None
    status: str = RunStatus.SUCCESS.value
    matched_items: int = 0
    active_rules: int = 0
    notifications_sent: int = 0
    tasks_created: int = 0
    deduped: int = 0
    retries: int = 0
    error_message: Optional[str] = None
    items: List[EscalationItem] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "matched_items": self.matched_items,
            "active_rules": self.active_rules,
            "notifications_sent": self.notifications_sent,
            "tasks_created": self.tasks_created,
            "deduped": self.deduped,
            "retries": self.retries,
            "items": [item.to_dict() for item in self.items],
        }


def _notify(db: Session, organization_id: int, item: EscalationItem, title: str,
            message: str, dedupe_key: str, now: datetime, rule_id: Optional[int] = None):
    metadata = {
        "rfq_id": item.rfq_id,
        "service_tier": item.service_tier,
        "escalation_level": item.escalation_level,
        "age_hours": item.age_hours,
        "sla_target_hours": item.sla_target_hours,
    }
    if rule_id is not None:
        metadata["rule_id"] = rule_id
    create_admin_notification(
        db,
        organization_id=organization_id,
        notification_type=NotificationType.SLA,
        title=title,
        message=message,
        metadata=metadata,
        dedupe_key=dedupe_key,
        created_at=now,
    )


def _ensure_escalation_task(db: Session, organization_id: int, item: EscalationItem, now: datetime) -> bool:
    level = item.escalation_level
    _, created = ensure_open_task(
        db,
        organization_id=organization_id,
        rfq_id=item.rfq_id,
        source=f"sla_escalation:{level}",
        title=TASK_TITLES[level],
        details=(
            f"RFQ {item.reference} is {item.age_hours}h old vs "
            f"{item.sla_target_hours}h target ({item.service_tier})."
        ),
        priority=TASK_PRIORITY[level],
        due_at=now + timedelta(minutes=TASK_DUE_MINUTES[level]),
        now=now,
    )
    return created


def _record_run(db: Session, organization_id: int, source: str, result: ScanResult,
                now: datetime) -> AutomationRunLog:
    run = AutomationRunLog(
        organization_id=organization_id,
        trigger_type=TriggerType.SLA_ESCALATION.value,
        source=source,
        status=result.status,
        notifications=result.notifications_sent,
        tasks_created=result.tasks_created,
        deduped_count=result.deduped,
        retries=result.retries,
        error_message=result.error_message,
        extra_data={
            "matched_items": result.matched_items,
            "active_rules": result.active_rules,
        },
        created_at=now,
    )
    db.add(run)
    db.commit()
    result.run_id = run.id
    return run


def _stamp_rules(rules: List[AutomationRule], now: datetime):
    """Every active rule counts as run, matched or not."""
    for rule in rules:
        rule.last_run_at = now


def run_escalation_scan(
    db: Session,
    organization_id: int,
    clock=system_clock,
    source: str = "manual",
) -> ScanResult:
    """
    One scan cycle.

    With at least one active rule only rules produce notifications, even for
    items no rule matches. Without rules every item gets the default alert.
    """
    now = clock.now()
    day = day_stamp(now)
    result = ScanResult()
    rules: List[AutomationRule] = []

    try:
        thresholds = resolve_thresholds(db, organization_id)
        inputs = load_scoring_inputs(db, organization_id)
        escalated = score_population(inputs, thresholds, now)[:settings.ESCALATION_QUEUE_LIMIT]
        result.items = escalated
        result.matched_items = len(escalated)

        rules = db.query(AutomationRule).filter(
            AutomationRule.organization_id == organization_id,
            AutomationRule.active == True,  # noqa: E712
            AutomationRule.trigger_type == TriggerType.SLA_ESCALATION.value,
        ).order_by(AutomationRule.id).all()
        result.active_rules = len(rules)
        compiled = [
            (rule, RuleCondition.from_json(rule.condition), ActionConfig.from_json(rule.action_config))
            for rule in rules
        ]

        for item in escalated:
            base_title = BASE_TITLES[item.escalation_level]
            message = base_message(item)

            # Counts are taken only once the rows they describe are committed.
            sent = 0
            if not compiled:
                _notify(db, organization_id, item, base_title, message,
                        default_dedupe_key(day, item), now)
                sent += 1
            else:
                for rule, condition, action in compiled:
                    if not condition.matches(item):
                        continue
                    _notify(db, organization_id, item, action.render_title(base_title),
                            action.render_message(message),
                            rule_dedupe_key(day, rule.id, item), now, rule_id=rule.id)
                    sent += 1
            db.commit()
            result.notifications_sent += sent

            created = _ensure_escalation_task(db, organization_id, item, now)
            db.commit()
            if created:
                result.tasks_created += 1

        _stamp_rules(rules, now)
        _record_run(db, organization_id, source, result, now)

    except Exception as exc:
        db.rollback()
        logger.exception(
            f"Escalation scan failed for organization {organization_id}",
            extra={"org_id": organization_id},
        )
        result.status = RunStatus.FAILED.value
        result.error_message = str(exc) or exc.__class__.__name__
        _stamp_rules(rules, now)
        _record_run(db, organization_id, source, result, now)
        raise EscalationScanError() from exc

    logger.info(
        f"Escalation scan ({source}): {result.matched_items} items, "
        f"{result.notifications_sent} notifications, {result.tasks_created} tasks",
        extra={"org_id": organization_id, "run_id": result.run_id},
    )
    return result


def trigger_escalation_scan(db: Session, user_context: dict, clock=system_clock) -> ScanResult:
    """Admin-initiated scan."""
    ensure_admin(user_context)
    result = run_escalation_scan(db, user_context["org_id"], clock=clock, source="manual")
    record_audit(
        db,
        organization_id=user_context["org_id"],
        user_id=user_context["user_id"],
        action=audit.SCAN_TRIGGERED,
        entity_type="automation_run",
        entity_id=result.run_id,
        details={"notifications": result.notifications_sent, "tasks_created": result.tasks_created},
        timestamp=clock.now(),
    )
    db.commit()
    return result


# ============= SLA REMINDERS =============

def run_sla_reminder_sweep(db: Session, organization_id: int, clock=system_clock) -> int:
    """
    Remind admins about open RFQs past their SLA target without a sent offer.

    Returns the number of notifications written; reminders already sent
    today are suppressed by their dedupe key.
    """
    if not list_admin_ids(db, organization_id):
        return 0

    now = clock.now()
    day = day_stamp(now)
    has_sent_offer = exists().where(
        Offer.rfq_id == RFQ.id,
        Offer.status == OfferStatus.SENT.value,
    )
    rfqs = db.query(RFQ).filter(
        RFQ.organization_id == organization_id,
        RFQ.status.in_([s.value for s in OPEN_RFQ_STATUSES]),
        ~has_sent_offer,
    ).order_by(RFQ.created_at).all()

    created = 0
    for rfq in rfqs:
        target = rfq.sla_target_hours or 72
        age = age_in_hours(rfq.created_at, now)
        if age < target:
            continue
        overdue = age >= target * 2
        rows = create_admin_notification(
            db,
            organization_id=organization_id,
            notification_type=NotificationType.SLA,
            title="RFQ overdue for offer" if overdue else "RFQ nearing SLA breach",
            message=f"RFQ {rfq.reference} has no offer after {int(age)}h (target {target}h).",
            metadata={
                "rfq_id": rfq.id,
                "age_hours": int(age),
                "target_hours": target,
                "urgency": "High" if overdue else "Medium",
            },
            dedupe_key=f"sla:{day}:{rfq.id}",
            created_at=now,
        )
        created += len(rows)

    db.commit()
    return created
