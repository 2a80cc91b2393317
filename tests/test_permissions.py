import pytest

from classgate.service.permissions import (
    ROLE_PERMISSIONS,
    Permission,
    get_permissions_for_role,
    has_permission,
)
from classgate.storage.models import Role

ADMIN_ONLY = [
    Permission.USER_READ,
    Permission.USER_MANAGE,
    Permission.AUDIT_READ,
    Permission.SYSTEM_CONFIGURE,
    Permission.DATA_EXPORT,
]


def test_every_role_is_mapped():
    assert set(ROLE_PERMISSIONS) == set(Role)
    for role in Role:
        assert get_permissions_for_role(role)


def test_admin_holds_wildcard():
    assert get_permissions_for_role(Role.ADMIN) == frozenset({Permission.ALL})
    for permission in Permission:
        assert has_permission(Role.ADMIN, permission)


@pytest.mark.parametrize("permission", ADMIN_ONLY)
@pytest.mark.parametrize("role", [Role.INSTRUCTOR, Role.STUDENT])
def test_admin_only_permissions(role, permission):
    assert not has_permission(role, permission)


def test_instructor_permissions():
    assert has_permission(Role.INSTRUCTOR, Permission.COURSE_CREATE)
    assert has_permission(Role.INSTRUCTOR, Permission.GRADE_UPDATE)
    assert has_permission(Role.INSTRUCTOR, Permission.STUDENT_READ)
    assert has_permission(Role.INSTRUCTOR, Permission.CONTENT_DELETE)


def test_student_permissions_are_read_mostly():
    granted = get_permissions_for_role(Role.STUDENT)
    assert granted == frozenset({
        Permission.COURSE_READ,
        Permission.ASSIGNMENT_READ,
        Permission.GRADE_READ,
        Permission.PROFILE_READ,
        Permission.PROFILE_UPDATE,
    })
    assert not has_permission(Role.STUDENT, Permission.COURSE_CREATE)
    assert not has_permission(Role.STUDENT, Permission.GRADE_UPDATE)


def test_role_accepts_plain_string():
    assert has_permission("student", Permission.COURSE_READ)
