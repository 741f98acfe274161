"""
Role-based access gate for the progress dashboards.

Roles form a closed set and allowed-role sets are plain sets of that enum, so
authorization is a pure membership test. A denial is a normal outcome that
carries a reason, letting the routing layer choose between the sign-in page
and the caller's own dashboard.
"""

from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet, Dict, Optional, Union


class Role(str, Enum):
    """Roles attached to an authenticated session."""
    STUDENT = "student"
    TEACHER = "teacher"
    HEADTEACHER = "headteacher"


class AccessReason(str, Enum):
    """Why an authorization check came out the way it did."""
    OK = "ok"
    UNAUTHENTICATED = "unauthenticated"
    WRONG_ROLE = "wrong_role"


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of ``authorize``. Truthy only when access is granted."""
    allowed: bool
    reason: AccessReason

    def __bool__(self) -> bool:
        return self.allowed


SIGN_IN_PATH = "/"

ROUTE_ROLES: Dict[str, AbstractSet[Role]] = {
    "/student/dashboard": frozenset({Role.STUDENT}),
    "/teacher/dashboard": frozenset({Role.TEACHER}),
    "/headteacher/dashboard": frozenset({Role.HEADTEACHER}),
}

_DASHBOARDS: Dict[Role, str] = {
    Role.STUDENT: "/student/dashboard",
    Role.TEACHER: "/teacher/dashboard",
    Role.HEADTEACHER: "/headteacher/dashboard",
}


def parse_role(value: Union[str, Role, None]) -> Optional[Role]:
    """
    Parse a raw role string into a Role.

    Empty or missing values mean "no session" and return None. Unknown
    strings raise ValueError so a corrupt session is not mistaken for an
    anonymous one.
    """
    if value is None or isinstance(value, Role):
        return value

    normalized = value.strip().lower().replace("_", "").replace("-", "").replace(" ", "")
    if not normalized:
        return None

    try:
        return Role(normalized)
    except ValueError:
        raise ValueError(f"Unknown role: {value!r}") from None


def authorize(session_role: Optional[Role], allowed_roles: AbstractSet[Role]) -> AccessDecision:
    """Return whether ``session_role`` is a member of ``allowed_roles``."""
    if not session_role:
        return AccessDecision(allowed=False, reason=AccessReason.UNAUTHENTICATED)
    if session_role in allowed_roles:
        return AccessDecision(allowed=True, reason=AccessReason.OK)
    return AccessDecision(allowed=False, reason=AccessReason.WRONG_ROLE)


def authorize_route(session_role: Optional[Role], path: str) -> AccessDecision:
    """Check a role against one of the dashboard routes in ROUTE_ROLES."""
    return authorize(session_role, ROUTE_ROLES.get(path, frozenset()))


def dashboard_path(role: Role) -> str:
    """Home dashboard for a role."""
    return _DASHBOARDS[role]


def redirect_target(decision: AccessDecision, session_role: Optional[Role]) -> Optional[str]:
    """
    Where the routing layer should send a caller after a check.

    Returns None when access was granted, the sign-in page when the caller is
    unauthenticated, and the caller's own dashboard on a wrong role.
    """
    if decision.allowed:
        return None
    if decision.reason == AccessReason.UNAUTHENTICATED or session_role is None:
        return SIGN_IN_PATH
    return dashboard_path(session_role)
