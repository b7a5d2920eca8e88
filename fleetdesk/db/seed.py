"""
Database seeding for local development (``SEED_DEMO=true`` with ``DEBUG=true``).
"""
from datetime import timedelta
from sqlalchemy.orm import Session

from fleetdesk.core.clock import FixedClock, utcnow
from fleetdesk.core.logging import get_logger
from fleetdesk.db.session import SessionLocal, init_db
from fleetdesk.db.models import Organization, User, UserRole, TeamRole

logger = get_logger(__name__)

DEMO_ORG_SLUG = "northwind-haulage"

DEMO_USERS = [
    ("ops@northwind.example", "Operations Admin", UserRole.ADMIN, TeamRole.OWNER),
    ("manager@northwind.example", "Fleet Manager", UserRole.MEMBER, TeamRole.MANAGER),
    ("approver@northwind.example", "Procurement Approver", UserRole.MEMBER, TeamRole.APPROVER),
    ("buyer@northwind.example", "Site Buyer", UserRole.MEMBER, TeamRole.REQUESTER),
]

DEMO_RFQS = [
    # (hours ago, tier, package, key specs, country)
    (2, "standard", "core", "Tri-axle lowboy trailer, 55t capacity, hydraulic gooseneck", "Germany"),
    (10, "enterprise", "core", "Two 40t articulated haulers, under 8000 hours, full service history", "Norway"),
    (30, "priority", "concierge", "Tracked excavator 30-35t class, Stage V engine, quick coupler", "Poland"),
    (90, "standard", "command", "6x4 tractor unit with PTO and tipper hydraulics, Euro 6", "Netherlands"),
]


def seed_demo_data(db: Session):
    """Create a demo organization with users, policies, rules and RFQs. Idempotent."""
    from fleetdesk.services import rfq_lifecycle, offers, approval_policy, automation

    if db.query(Organization).filter(Organization.slug == DEMO_ORG_SLUG).first():
        logger.info("Demo data already present, skipping")
        return

    org = Organization(name="Northwind Haulage", slug=DEMO_ORG_SLUG)
    db.add(org)
    db.flush()

    users = {}
    for email, name, role, team_role in DEMO_USERS:
        user = User(
            email=email,
            full_name=name,
            role=role.value,
            team_role=team_role.value,
            organization_id=org.id,
            is_active=True,
        )
        db.add(user)
        db.flush()
        users[team_role] = user
    db.commit()

    admin = users[TeamRole.OWNER]
    buyer = users[TeamRole.REQUESTER]
    admin_ctx = {"user_id": admin.id, "org_id": org.id, "role": UserRole.ADMIN.value}
    buyer_ctx = {"user_id": buyer.id, "org_id": org.id, "role": UserRole.MEMBER.value}

    for tier in ("standard", "priority", "enterprise"):
        approval_policy.upsert_policy(db, org.id, tier, {}, actor_id=admin.id)

    automation.create_rule(db, org.id, {
        "name": "Critical enterprise breaches",
        "condition": {"service_tier": "enterprise", "escalation_level": "critical"},
        "action_config": {"title_prefix": "[ENT]", "message_suffix": "Call the account owner."},
    }, actor_id=admin.id)

    now = utcnow()
    created = []
    for hours_ago, tier, package, specs, country in DEMO_RFQS:
        clock = FixedClock(now - timedelta(hours=hours_ago))
        rfq = rfq_lifecycle.create_rfq(db, buyer_ctx, {
            "category": "Heavy Equipment" if "excavator" in specs.lower() else "Truck",
            "service_tier": tier,
            "service_package": package,
            "key_specs": specs,
            "delivery_country": country,
            "condition_tolerance": "Good working order",
            "business_goal": "Replace ageing fleet units before peak season",
            "risk_tolerance": "Medium",
            "budget_confidence": "Flexible",
            "budget_min": 60000,
            "budget_max": 120000,
        }, clock=clock)
        created.append((rfq, clock))

    rfq, clock = created[2]
    clock.advance(hours=4)
    offers.create_offer(db, admin_ctx, rfq.id, {
        "title": "CAT 330 (2021), 4,100h, Stage V",
        "price": 65000,
        "currency": "EUR",
        "location": "Poznan, PL",
        "valid_until": now + timedelta(days=14),
        "included_flags": {"inspection": True, "transport": False},
    }, clock=clock)

    logger.info(f"Seeded demo organization {org.slug} with {len(created)} RFQs")


def seed_database():
    """Seed the database with demo data."""
    init_db()
    db = SessionLocal()

    try:
        seed_demo_data(db)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Error seeding database")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed_database()
