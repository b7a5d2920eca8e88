"""
Background job definitions.
"""
from redis import Redis
from rq import Queue
from rq_scheduler import Scheduler
from datetime import timedelta

from fleetdesk.core.clock import utcnow
from fleetdesk.core.config import settings
from fleetdesk.core.errors import EscalationScanError
from fleetdesk.core.logging import get_logger

logger = get_logger(__name__)


def get_queue(name: str = "default") -> Queue:
    """Get RQ queue."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Queue(name, connection=redis_conn)


def get_scheduler() -> Scheduler:
    """Get RQ scheduler."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Scheduler(connection=redis_conn)


def _organization_ids(db, org_id: int = None):
    from fleetdesk.db.models import Organization

    if org_id:
        return [org_id]
    return [row.id for row in db.query(Organization.id).order_by(Organization.id).all()]


# ============= JOB FUNCTIONS =============

def escalation_scan_job(org_id: int = None):
    """
    Scheduled escalation scan for one or all organizations.

    A failing organization is logged (and has its FAILED run log) without
    stopping the others.
    """
    from fleetdesk.db.session import get_db_context
    from fleetdesk.services.automation import run_escalation_scan

    logger.info(f"Running escalation scan for org {org_id or 'all'}")

    failed = []
    with get_db_context() as db:
        for organization_id in _organization_ids(db, org_id):
            try:
                run_escalation_scan(db, organization_id, source="scheduled")
            except EscalationScanError:
                failed.append(organization_id)

    if failed:
        logger.warning(f"Escalation scan failed for organizations {failed}")
    return {"failed": failed}


def expire_offers_job():
    """Background job to expire offers past their validity."""
    from fleetdesk.db.session import get_db_context
    from fleetdesk.services.offers import expire_offers

    with get_db_context() as db:
        return expire_offers(db)


def sla_reminder_job(org_id: int = None):
    """Background job to remind admins about RFQs waiting on an offer."""
    from fleetdesk.db.session import get_db_context
    from fleetdesk.services.automation import run_sla_reminder_sweep

    created = 0
    with get_db_context() as db:
        for organization_id in _organization_ids(db, org_id):
            created += run_sla_reminder_sweep(db, organization_id)
    logger.info(f"SLA reminder sweep wrote {created} notifications")
    return created


# ============= QUEUE HELPERS =============

def enqueue_escalation_scan(org_id: int = None):
    """Queue an escalation scan."""
    queue = get_queue("high")
    return queue.enqueue(escalation_scan_job, org_id)


def enqueue_offer_expiry():
    """Queue the offer expiry sweep."""
    queue = get_queue("default")
    return queue.enqueue(expire_offers_job)


def setup_scheduled_jobs():
    """Register the recurring jobs under fixed ids."""
    scheduler = get_scheduler()
    now = utcnow()

    scheduler.schedule(
        scheduled_time=now,
        func=escalation_scan_job,
        id="fleetdesk:escalation-scan",
        interval=settings.ESCALATION_SCAN_INTERVAL_SECONDS,
        repeat=None,
        queue_name="high",
    )

    scheduler.schedule(
        scheduled_time=now + timedelta(minutes=5),
        func=expire_offers_job,
        id="fleetdesk:offer-expiry",
        interval=settings.OFFER_EXPIRY_INTERVAL_SECONDS,
        repeat=None,
    )

    scheduler.schedule(
        scheduled_time=now + timedelta(minutes=10),
        func=sla_reminder_job,
        id="fleetdesk:sla-reminders",
        interval=settings.SLA_REMINDER_INTERVAL_SECONDS,
        repeat=None,
        queue_name="low",
    )

    logger.info("Scheduled jobs configured")
