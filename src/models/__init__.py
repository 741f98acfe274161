"""
Core data models for the classroom progress core.

This package contains:
- Database models mapping to the progress tables
- Role and access gate models
"""

from .database import ClassAverage, ClassDescriptor, ProgressEntry, SubjectDescriptor
from .permissions import (
    AccessDecision,
    AccessReason,
    Role,
    ROUTE_ROLES,
    SIGN_IN_PATH,
    authorize,
    authorize_route,
    dashboard_path,
    parse_role,
    redirect_target,
)

__all__ = [
    # Database models
    "ClassAverage",
    "ClassDescriptor",
    "ProgressEntry",
    "SubjectDescriptor",

    # Access gate
    "AccessDecision",
    "AccessReason",
    "Role",
    "ROUTE_ROLES",
    "SIGN_IN_PATH",
    "authorize",
    "authorize_route",
    "dashboard_path",
    "parse_role",
    "redirect_target",
]
