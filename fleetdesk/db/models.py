"""
SQLAlchemy ORM models for FleetDesk Sourcing.
All models are scoped to an organization for multi-tenancy.
"""
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Float,
    ForeignKey, Enum, JSON, UniqueConstraint, Index, CheckConstraint, event, text
)
from sqlalchemy.orm import relationship, validates
import enum

from fleetdesk.core.clock import utcnow
from fleetdesk.db.session import Base


# ============= ENUMS =============

class UserRole(str, enum.Enum):
    MEMBER = "member"
    ADMIN = "admin"


class TeamRole(str, enum.Enum):
    REQUESTER = "requester"
    APPROVER = "approver"
    MANAGER = "manager"
    OWNER = "owner"


class ServiceTier(str, enum.Enum):
    STANDARD = "standard"
    PRIORITY = "priority"
    ENTERPRISE = "enterprise"


class ServicePackage(str, enum.Enum):
    CORE = "core"
    CONCIERGE = "concierge"
    COMMAND = "command"


class RFQStatus(str, enum.Enum):
    RECEIVED = "received"
    IN_PROGRESS = "in_progress"
    OFFER_SENT = "offer_sent"
    PENDING_EXECUTION = "pending_execution"
    WON = "won"
    LOST = "lost"

    @property
    def label(self) -> str:
        return RFQ_STATUS_LABELS[self]


RFQ_STATUS_LABELS = {
    RFQStatus.RECEIVED: "Received",
    RFQStatus.IN_PROGRESS: "In progress",
    RFQStatus.OFFER_SENT: "Offer sent",
    RFQStatus.PENDING_EXECUTION: "Pending execution",
    RFQStatus.WON: "Won",
    RFQStatus.LOST: "Lost",
}

OPEN_RFQ_STATUSES = (
    RFQStatus.RECEIVED,
    RFQStatus.IN_PROGRESS,
    RFQStatus.OFFER_SENT,
    RFQStatus.PENDING_EXECUTION,
)
CLOSED_RFQ_STATUSES = (RFQStatus.WON, RFQStatus.LOST)


class RFQEventType(str, enum.Enum):
    STATUS_CHANGE = "status_change"
    MESSAGE = "message"
    OFFER_SENT = "offer_sent"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_DECLINED = "offer_declined"
    OFFER_EXPIRED = "offer_expired"
    RFQ_CREATED = "rfq_created"
    RFQ_CLOSED = "rfq_closed"


class OfferStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class EscalationLevel(str, enum.Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class TriggerType(str, enum.Enum):
    SLA_ESCALATION = "sla_escalation"


class ActionType(str, enum.Enum):
    NOTIFY_ADMIN = "notify_admin"


class RunStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"


class TaskPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskStatus(str, enum.Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


ACTIVE_TASK_STATUSES = (TaskStatus.OPEN, TaskStatus.ACKNOWLEDGED)


class NotificationType(str, enum.Enum):
    RFQ = "rfq"
    OFFER = "offer"
    SLA = "sla"
    SYSTEM = "system"


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


DECISION_STATUSES = (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED)


# Stored as VARCHAR of the enum values so the same schema runs on
# PostgreSQL and SQLite.
def enum_values(enum_cls):
    return [e.value for e in enum_cls]


def _enum_type(enum_cls, name):
    return Enum(*enum_values(enum_cls), name=name, native_enum=False, length=32)


UserRoleType = _enum_type(UserRole, 'userrole')
TeamRoleType = _enum_type(TeamRole, 'teamrole')
ServiceTierType = _enum_type(ServiceTier, 'servicetier')
ServicePackageType = _enum_type(ServicePackage, 'servicepackage')
RFQStatusType = _enum_type(RFQStatus, 'rfqstatus')
RFQEventTypeType = _enum_type(RFQEventType, 'rfqeventtype')
OfferStatusType = _enum_type(OfferStatus, 'offerstatus')
TriggerTypeType = _enum_type(TriggerType, 'triggertype')
ActionTypeType = _enum_type(ActionType, 'actiontype')
RunStatusType = _enum_type(RunStatus, 'runstatus')
TaskPriorityType = _enum_type(TaskPriority, 'taskpriority')
TaskStatusType = _enum_type(TaskStatus, 'taskstatus')
NotificationTypeType = _enum_type(NotificationType, 'notificationtype')
ApprovalStatusType = _enum_type(ApprovalStatus, 'approvalstatus')


# ============= AUTH & MULTI-TENANCY =============

class Organization(Base):
    """Organization for multi-tenancy."""
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    users = relationship("User", back_populates="organization")
    audit_logs = relationship("AuditLog", back_populates="organization")


class User(Base):
    """Mirror of identities issued by the external auth layer."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255))
    role = Column(UserRoleType, nullable=False, default=UserRole.MEMBER.value)
    team_role = Column(TeamRoleType, nullable=False, default=TeamRole.REQUESTER.value)
    is_active = Column(Boolean, default=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    organization = relationship("Organization", back_populates="users")


# ============= AUDIT LOG =============

class AuditLog(Base):
    """Audit trail of admin actions."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    action = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(100), index=True)
    entity_id = Column(Integer)
    details = Column(JSON)

    # Relationships
    user = relationship("User")
    organization = relationship("Organization", back_populates="audit_logs")

    __table_args__ = (
        Index('ix_audit_logs_org_timestamp', 'organization_id', 'timestamp'),
    )


# ============= RFQ LIFECYCLE =============

class RFQ(Base):
    """A buyer's sourcing request."""
    __tablename__ = "rfqs"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(32), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    listing_id = Column(String(64))

    # Classification
    category = Column(String(40), nullable=False, default="Truck")
    service_tier = Column(ServiceTierType, nullable=False, default=ServiceTier.STANDARD.value)
    service_package = Column(ServicePackageType, nullable=False, default=ServicePackage.CORE.value)
    package_addons = Column(JSON, default=list)

    # Requirement payload
    key_specs = Column(Text, nullable=False)
    preferred_brands = Column(String(255))
    year_min = Column(Integer)
    year_max = Column(Integer)
    budget_min = Column(Float)
    budget_max = Column(Float)
    delivery_country = Column(String(100), nullable=False)
    pickup_deadline = Column(DateTime)
    urgency = Column(String(20), nullable=False, default="Normal")
    condition_tolerance = Column(String(255), nullable=False)
    required_documents = Column(JSON, default=list)
    notes = Column(Text)
    business_goal = Column(Text)
    risk_tolerance = Column(String(20))
    budget_confidence = Column(String(20))
    mandate_completeness = Column(Integer, nullable=False, default=0)

    # Lifecycle
    status = Column(RFQStatusType, nullable=False, default=RFQStatus.RECEIVED.value, index=True)
    sla_target_hours = Column(Integer, nullable=False)
    close_reason = Column(Text)
    internal_ops_notes = Column(Text)
    last_offer_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    owner = relationship("User")
    events = relationship("RFQEvent", back_populates="rfq", order_by="RFQEvent.sequence")
    offers = relationship("Offer", back_populates="rfq", order_by="Offer.version_number")
    messages = relationship("RFQMessage", back_populates="rfq", order_by="RFQMessage.id")

    __table_args__ = (
        CheckConstraint(
            "(status IN ('won', 'lost') AND close_reason IS NOT NULL) "
            "OR (status NOT IN ('won', 'lost') AND close_reason IS NULL)",
            name='ck_rfq_close_reason',
        ),
        Index('ix_rfqs_org_status_tier', 'organization_id', 'status', 'service_tier'),
    )

    @validates("sla_target_hours")
    def _validate_sla_target(self, key, value):
        current = self.__dict__.get("sla_target_hours")
        if current is not None and value != current:
            raise ValueError("sla_target_hours is fixed at creation")
        return value

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_RFQ_STATUSES


class RFQEvent(Base):
    """Append-only lifecycle event log entry."""
    __tablename__ = "rfq_events"

    id = Column(Integer, primary_key=True, index=True)
    rfq_id = Column(Integer, ForeignKey("rfqs.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    event_type = Column(RFQEventTypeType, nullable=False)
    payload = Column(JSON, default=dict)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    rfq = relationship("RFQ", back_populates="events")

    __table_args__ = (
        UniqueConstraint('rfq_id', 'sequence', name='uq_rfq_event_sequence'),
    )


@event.listens_for(RFQEvent, "before_update")
def _refuse_event_update(mapper, connection, target):
    raise ValueError("RFQ events are append-only")


@event.listens_for(RFQEvent, "before_delete")
def _refuse_event_delete(mapper, connection, target):
    raise ValueError("RFQ events are append-only")


class RFQMessage(Base):
    """Buyer/admin conversation thread on an RFQ."""
    __tablename__ = "rfq_messages"

    id = Column(Integer, primary_key=True, index=True)
    rfq_id = Column(Integer, ForeignKey("rfqs.id"), nullable=False, index=True)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    sender_type = Column(String(10), nullable=False)  # buyer, admin
    body = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    rfq = relationship("RFQ", back_populates="messages")


class Offer(Base):
    """Versioned quote issued against an RFQ."""
    __tablename__ = "offers"

    id = Column(Integer, primary_key=True, index=True)
    rfq_id = Column(Integer, ForeignKey("rfqs.id"), nullable=False, index=True)
    listing_id = Column(String(64))
    title = Column(String(140), nullable=False)
    price = Column(Float)
    currency = Column(String(8))
    terms = Column(Text)
    location = Column(String(120))
    availability_text = Column(Text)
    valid_until = Column(DateTime, nullable=False)
    included_flags = Column(JSON, default=dict)
    notes = Column(Text)
    status = Column(OfferStatusType, nullable=False, default=OfferStatus.SENT.value, index=True)
    version_number = Column(Integer, nullable=False)
    decline_reason = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    sent_at = Column(DateTime)

    rfq = relationship("RFQ", back_populates="offers")

    __table_args__ = (
        UniqueConstraint('rfq_id', 'version_number', name='uq_offer_rfq_version'),
    )


# ============= POLICIES & AUTOMATION =============

class ApprovalPolicy(Base):
    """Per-organization, per-tier approval depth and escalation thresholds."""
    __tablename__ = "approval_policies"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    service_tier = Column(ServiceTierType, nullable=False)
    required_approvals = Column(Integer, nullable=False, default=1)
    approver_team_role = Column(TeamRoleType, nullable=False, default=TeamRole.APPROVER.value)
    auto_assign_enabled = Column(Boolean, nullable=False, default=True)
    warning_threshold_ratio = Column(Float, nullable=False, default=1.0)
    critical_threshold_ratio = Column(Float, nullable=False, default=1.5)
    active = Column(Boolean, nullable=False, default=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('organization_id', 'service_tier', name='uq_policy_org_tier'),
    )


class AutomationRule(Base):
    """Organization-scoped trigger -> action binding."""
    __tablename__ = "automation_rules"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(120), nullable=False)
    trigger_type = Column(TriggerTypeType, nullable=False, default=TriggerType.SLA_ESCALATION.value)
    action_type = Column(ActionTypeType, nullable=False, default=ActionType.NOTIFY_ADMIN.value)
    condition = Column(JSON, default=dict)
    action_config = Column(JSON, default=dict)
    active = Column(Boolean, nullable=False, default=True)
    last_run_at = Column(DateTime)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class AutomationRunLog(Base):
    """One escalation-scan execution. Never updated after insert."""
    __tablename__ = "automation_run_logs"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    trigger_type = Column(TriggerTypeType, nullable=False)
    source = Column(String(80), nullable=False)
    status = Column(RunStatusType, nullable=False)
    notifications = Column(Integer, nullable=False, default=0)
    tasks_created = Column(Integer, nullable=False, default=0)
    deduped_count = Column(Integer, nullable=False, default=0)
    retries = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    extra_data = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index('ix_automation_runs_org_created', 'organization_id', 'created_at'),
    )


@event.listens_for(AutomationRunLog, "before_update")
def _refuse_run_log_update(mapper, connection, target):
    raise ValueError("Automation run logs are append-only")


class OpsTask(Base):
    """Operational remediation work item."""
    __tablename__ = "ops_tasks"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    rfq_id = Column(Integer, ForeignKey("rfqs.id"), nullable=True)
    title = Column(String(180), nullable=False)
    details = Column(Text)
    priority = Column(TaskPriorityType, nullable=False, default=TaskPriority.MEDIUM.value)
    source = Column(String(80), nullable=False, default="manual")
    status = Column(TaskStatusType, nullable=False, default=TaskStatus.OPEN.value)
    assignee_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    due_at = Column(DateTime)
    resolved_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    assignee = relationship("User")
    rfq = relationship("RFQ")

    __table_args__ = (
        # One open/acknowledged task per (org, rfq, source signature).
        Index(
            'uq_ops_task_active_source',
            'organization_id', 'rfq_id', 'source',
            unique=True,
            postgresql_where=text("status IN ('open', 'acknowledged')"),
            sqlite_where=text("status IN ('open', 'acknowledged')"),
        ),
    )


class ApprovalRequest(Base):
    """A buyer's request for sign-off on an RFQ, routed by the tier's policy."""
    __tablename__ = "approval_requests"

    id = Column(Integer, primary_key=True, index=True)
    rfq_id = Column(Integer, ForeignKey("rfqs.id"), nullable=False, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    requester_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    approver_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    policy_id = Column(Integer, ForeignKey("approval_policies.id"), nullable=True)
    required_approvals = Column(Integer, nullable=False, default=1)
    candidate_approver_ids = Column(JSON, default=list)
    status = Column(ApprovalStatusType, nullable=False, default=ApprovalStatus.PENDING.value)
    note = Column(Text)
    decision_note = Column(Text)
    decided_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    rfq = relationship("RFQ")
    requester = relationship("User", foreign_keys=[requester_id])
    approver = relationship("User", foreign_keys=[approver_id])
    decisions = relationship(
        "ApprovalDecision", back_populates="approval_request", order_by="ApprovalDecision.id"
    )

    __table_args__ = (
        # At most one pending request per RFQ.
        Index(
            'uq_approval_request_pending_rfq',
            'rfq_id',
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )


class ApprovalDecision(Base):
    """One approver's current vote on an approval request."""
    __tablename__ = "approval_decisions"

    id = Column(Integer, primary_key=True, index=True)
    approval_request_id = Column(Integer, ForeignKey("approval_requests.id"), nullable=False, index=True)
    approver_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(ApprovalStatusType, nullable=False)
    note = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    approval_request = relationship("ApprovalRequest", back_populates="decisions")
    approver = relationship("User")

    __table_args__ = (
        UniqueConstraint('approval_request_id', 'approver_id', name='uq_approval_decision_approver'),
    )


class Notification(Base):
    """In-app notification record."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    notification_type = Column(NotificationTypeType, nullable=False)
    title = Column(String(300), nullable=False)
    message = Column(Text)
    extra_data = Column(JSON, default=dict)
    dedupe_key = Column(String(255), unique=True, nullable=True)
    is_read = Column(Boolean, default=False, index=True)
    created_at = Column(DateTime, default=utcnow, index=True)
