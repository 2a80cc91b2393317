from __future__ import annotations

from enum import Enum
from typing import FrozenSet

from classgate.storage.models import Role


class Permission(str, Enum):
    """Capabilities checked by the authorization guard."""

    ALL = "*"

    COURSE_CREATE = "course:create"
    COURSE_READ = "course:read"
    COURSE_UPDATE = "course:update"
    COURSE_DELETE = "course:delete"

    STUDENT_READ = "student:read"

    GRADE_CREATE = "grade:create"
    GRADE_READ = "grade:read"
    GRADE_UPDATE = "grade:update"

    ASSIGNMENT_CREATE = "assignment:create"
    ASSIGNMENT_READ = "assignment:read"
    ASSIGNMENT_UPDATE = "assignment:update"
    ASSIGNMENT_DELETE = "assignment:delete"

    CONTENT_CREATE = "content:create"
    CONTENT_READ = "content:read"
    CONTENT_UPDATE = "content:update"
    CONTENT_DELETE = "content:delete"

    PROFILE_READ = "profile:read"
    PROFILE_UPDATE = "profile:update"

    # administration; only reachable through the wildcard
    USER_READ = "user:read"
    USER_MANAGE = "user:manage"
    AUDIT_READ = "audit:read"
    SYSTEM_CONFIGURE = "system:configure"
    DATA_EXPORT = "data:export"


ROLE_PERMISSIONS: dict[Role, FrozenSet[Permission]] = {
    Role.ADMIN: frozenset({Permission.ALL}),
    Role.INSTRUCTOR: frozenset({
        Permission.COURSE_CREATE, Permission.COURSE_READ,
        Permission.COURSE_UPDATE, Permission.COURSE_DELETE,
        Permission.STUDENT_READ,
        Permission.GRADE_CREATE, Permission.GRADE_READ, Permission.GRADE_UPDATE,
        Permission.ASSIGNMENT_CREATE, Permission.ASSIGNMENT_READ,
        Permission.ASSIGNMENT_UPDATE, Permission.ASSIGNMENT_DELETE,
        Permission.CONTENT_CREATE, Permission.CONTENT_READ,
        Permission.CONTENT_UPDATE, Permission.CONTENT_DELETE,
        Permission.PROFILE_READ, Permission.PROFILE_UPDATE,
    }),
    Role.STUDENT: frozenset({
        Permission.COURSE_READ,
        Permission.ASSIGNMENT_READ,
        Permission.GRADE_READ,
        Permission.PROFILE_READ,
        Permission.PROFILE_UPDATE,
    }),
}


def get_permissions_for_role(role: Role) -> FrozenSet[Permission]:
    """
    Get the permissions granted to a role.

    Raises:
        KeyError: if the role has no mapping. Every Role must be listed above.
    """
    return ROLE_PERMISSIONS[Role(role)]


def has_permission(role: Role, permission: Permission) -> bool:
    """
    Check if a role holds a permission, directly or through the wildcard.

    Args:
        role: Role to check
        permission: Permission to check

    Returns:
        True if role has the permission
    """
    granted = get_permissions_for_role(role)
    return Permission.ALL in granted or Permission(permission) in granted
