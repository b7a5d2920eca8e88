"""
Shared fixtures: an in-memory SQLite database rebuilt per test, a pinned
clock, demo tenants and an API client wired to both.
"""
import os

os.environ["DEBUG"] = "true"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SEED_DEMO"] = "false"
os.environ.setdefault("SECRET_KEY", "fleetdesk-test-suite-signing-key-7f3a9c21d8e4b6")

from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from fleetdesk.core.clock import FixedClock  # noqa: E402
from fleetdesk.core.rbac import Role  # noqa: E402
from fleetdesk.core.security import create_access_token  # noqa: E402
from fleetdesk.db.session import Base, SessionLocal, engine  # noqa: E402
from fleetdesk.db import models  # noqa: E402,F401
from fleetdesk.db.models import Organization, User, UserRole, TeamRole  # noqa: E402

NOW = datetime(2026, 3, 2, 12, 0, 0)


# ============= DATABASE =============

@pytest.fixture
def db():
    """Fresh schema and session for each test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return FixedClock(NOW)


# ============= TENANTS =============

def _make_user(db: Session, org: Organization, email: str, role: UserRole,
               team_role: TeamRole = TeamRole.REQUESTER, created_at=None) -> User:
    user = User(
        email=email,
        full_name=email.split("@")[0].title(),
        role=role.value,
        team_role=team_role.value,
        organization_id=org.id,
        is_active=True,
        created_at=created_at or NOW,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def org(db: Session):
    org = Organization(name="Northwind Haulage", slug="northwind")
    db.add(org)
    db.commit()
    db.refresh(org)
    return org


@pytest.fixture
def other_org(db: Session):
    org = Organization(name="Contoso Earthworks", slug="contoso")
    db.add(org)
    db.commit()
    db.refresh(org)
    return org


@pytest.fixture
def admin_user(db: Session, org: Organization):
    return _make_user(db, org, "ops@northwind.test", UserRole.ADMIN, TeamRole.OWNER)


@pytest.fixture
def member_user(db: Session, org: Organization):
    return _make_user(db, org, "buyer@northwind.test", UserRole.MEMBER)


@pytest.fixture
def second_member(db: Session, org: Organization):
    return _make_user(db, org, "planner@northwind.test", UserRole.MEMBER)


@pytest.fixture
def outsider(db: Session, other_org: Organization):
    return _make_user(db, other_org, "admin@contoso.test", UserRole.ADMIN, TeamRole.OWNER)


@pytest.fixture
def make_user(db: Session):
    return lambda org, email, role=UserRole.MEMBER, team_role=TeamRole.REQUESTER, created_at=None: \
        _make_user(db, org, email, role, team_role, created_at)


def context_for(user: User) -> dict:
    return {
        "user_id": user.id,
        "org_id": user.organization_id,
        "role": Role(user.role),
    }


@pytest.fixture
def admin_ctx(admin_user: User):
    return context_for(admin_user)


@pytest.fixture
def member_ctx(member_user: User):
    return context_for(member_user)


# ============= DOMAIN FACTORIES =============

VALID_RFQ = {
    "category": "Truck",
    "service_tier": "standard",
    "service_package": "concierge",
    "key_specs": "6x4 tipper, 400hp+, under 300k km",
    "delivery_country": "Germany",
    "condition_tolerance": "Good working order",
    "business_goal": "Expand quarry haulage capacity",
    "risk_tolerance": "Medium",
    "budget_confidence": "Flexible",
}


@pytest.fixture
def rfq_factory(db: Session, clock: FixedClock, member_ctx: dict):
    """Create an RFQ that is ``hours_old`` hours old at the fixture clock's now."""
    from fleetdesk.services.rfq_lifecycle import create_rfq

    def factory(hours_old: float = 0, ctx: dict = None, **overrides):
        payload = dict(VALID_RFQ, **overrides)
        created_clock = FixedClock(clock.now() - timedelta(hours=hours_old))
        return create_rfq(db, ctx or member_ctx, payload, clock=created_clock)

    return factory


@pytest.fixture
def offer_factory(db: Session, clock: FixedClock, admin_ctx: dict):
    from fleetdesk.services.offers import create_offer

    def factory(rfq, **overrides):
        payload = {
            "title": "Volvo FMX 460 6x4 (2020)",
            "price": 65000,
            "currency": "EUR",
            "valid_until": clock.now() + timedelta(days=7),
        }
        payload.update(overrides)
        return create_offer(db, admin_ctx, rfq.id, payload, clock=clock)

    return factory


# ============= API =============

def auth_headers(user: User) -> dict:
    token = create_access_token({
        "sub": str(user.id),
        "org_id": user.organization_id,
        "role": user.role,
    })
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(db: Session, clock: FixedClock):
    from fastapi.testclient import TestClient
    from fleetdesk.core.clock import get_clock
    from fleetdesk.db.session import get_db
    from fleetdesk.main import create_app

    app = create_app(run_startup=False)
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_clock] = lambda: clock

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def ctx_of():
    return context_for


@pytest.fixture
def headers_for():
    return auth_headers


@pytest.fixture
def valid_rfq():
    return dict(VALID_RFQ)
