"""
Print a bearer token for a local user.

Identity is issued upstream in production; this is for poking the API in
development. Run: python -m scripts.issue_dev_token ops@northwind.example
"""
import sys
from datetime import timedelta

from fleetdesk.core.config import settings
from fleetdesk.core.security import create_access_token
from fleetdesk.db.session import SessionLocal
from fleetdesk.db.models import User


def issue_token(email: str, hours: int = 12) -> str:
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        if not user:
            raise SystemExit(f"No user with email {email}")
        return create_access_token(
            {"sub": str(user.id), "org_id": user.organization_id, "role": user.role},
            expires_delta=timedelta(hours=hours),
        )
    finally:
        db.close()


if __name__ == "__main__":
    if not settings.DEBUG:
        raise SystemExit("Refusing to mint tokens with DEBUG disabled")
    if len(sys.argv) < 2:
        raise SystemExit("usage: python -m scripts.issue_dev_token <email>")
    print(issue_token(sys.argv[1]))
