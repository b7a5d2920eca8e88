"""
Role-Based Access Control (RBAC) dependencies and service-level checks.
"""
from enum import Enum
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPAuthorizationCredentials

from fleetdesk.core.errors import ForbiddenError
from fleetdesk.core.security import decode_token, security


class Role(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"


# Role hierarchy: higher index = more permissions
ROLE_HIERARCHY = {
    Role.MEMBER: 0,
    Role.ADMIN: 1,
}


def has_permission(user_role: Role, required_role: Role) -> bool:
    """Check if user role has sufficient permissions."""
    return ROLE_HIERARCHY.get(user_role, 0) >= ROLE_HIERARCHY.get(required_role, 0)


def _parse_role(raw) -> Role:
    try:
        return Role(str(raw or "member").lower())
    except ValueError:
        return Role.MEMBER


def _context_from_payload(payload: dict) -> dict:
    user_id_raw = payload.get("sub") or payload.get("user_id")
    if user_id_raw is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user identifier (sub)",
        )
    if payload.get("org_id") is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing organization",
        )
    return {
        "user_id": int(user_id_raw),
        "org_id": int(payload["org_id"]),
        "role": _parse_role(payload.get("role")),
    }


async def get_current_user_context(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> dict:
    """Resolve the verified (user_id, org_id, role) context of the caller."""
    payload = decode_token(credentials.credentials)
    return _context_from_payload(payload)


class RBACChecker:
    """Dependency for checking role-based access."""

    def __init__(self, required_role: Role):
        self.required_role = required_role

    async def __call__(
        self,
        credentials: HTTPAuthorizationCredentials = Depends(security)
    ) -> dict:
        context = _context_from_payload(decode_token(credentials.credentials))

        if not has_permission(context["role"], self.required_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required: {self.required_role.value}",
            )

        return context


require_member = RBACChecker(Role.MEMBER)
require_admin = RBACChecker(Role.ADMIN)


def is_admin(user_context: dict) -> bool:
    return has_permission(_parse_role(user_context.get("role")), Role.ADMIN)


def ensure_admin(user_context: dict):
    """Service-level guard for admin-only operations."""
    if not is_admin(user_context):
        raise ForbiddenError("Admin role required")
