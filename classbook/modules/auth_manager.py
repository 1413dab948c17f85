"""
Authorization Module - Classbook

Role checks for the acting user. Authentication happens outside Classbook;
callers hand in who the user is and these helpers decide what the user may do.

Features:
- Explicit role assertions
- Role permission table
- Student data visibility rules (self, linked parents, staff)
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from classbook.modules.errors import AuthorizationError

ROLES = ('admin', 'teacher', 'student', 'parent')

PERMISSIONS: Dict[str, List[str]] = {
    'admin': [
        'record_attendance', 'view_all_attendance', 'view_school_stats', 'view_timetables',
        'manage_timetables', 'send_announcements', 'export_reports', 'manage_own_notifications'
    ],
    'teacher': [
        'record_attendance', 'take_current_class', 'view_all_attendance', 'view_timetables',
        'export_reports', 'manage_own_notifications'
    ],
    'student': [
        'view_own_attendance', 'manage_own_notifications'
    ],
    'parent': [
        'view_child_attendance', 'manage_own_notifications'
    ],
}


@dataclass
class ActingUser:
    """The authenticated user on whose behalf an operation runs."""
    user_id: str
    role: str
    school_id: str
    children_ids: Optional[List[str]] = None


def assert_role(user: Optional[ActingUser], allowed_roles: Iterable[str]) -> ActingUser:
    """
    Require the user to hold one of the allowed roles.

    Args:
        user (ActingUser): Acting user, or None when nobody is signed in
        allowed_roles: Roles that may proceed

    Returns:
        ActingUser: The same user, for chaining

    Raises:
        AuthorizationError: If there is no user or the role is not allowed
    """
    allowed = tuple(allowed_roles)
    if user is None or not user.user_id:
        raise AuthorizationError("Authentication required")
    if user.role not in allowed:
        raise AuthorizationError(f"Role '{user.role}' may not perform this action (allowed: {', '.join(allowed)})")
    return user


def get_user_permissions(role: str) -> List[str]:
    return PERMISSIONS.get(role, [])


def has_permission(role: str, permission: str) -> bool:
    return permission in get_user_permissions(role)


def roles_with_permission(*permissions: str) -> Tuple[str, ...]:
    """Roles granted at least one of the given permissions"""
    return tuple(role for role in ROLES if any(has_permission(role, p) for p in permissions))


class AuthManager:
    """
    Loads acting users from the store and applies visibility rules.
    """

    def __init__(self, database_manager):
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

    def load_user(self, school_id: str, user_id: str) -> Optional[ActingUser]:
        """
        Build an ActingUser from the stored user document.

        Returns:
            ActingUser: The user, or None if the document does not exist
        """
        user = self.db.get(school_id, 'users', user_id)
        if not user:
            return None
        return ActingUser(
            user_id=user_id,
            role=user.get('role', ''),
            school_id=school_id,
            children_ids=list(user.get('children_ids') or [])
        )

    def assert_can_view_student(self, user: ActingUser, student_id: str) -> None:
        """
        Students see their own data, parents see their linked children,
        teachers and admins see everyone in their school.

        Raises:
            AuthorizationError: If the user may not see the student's data
        """
        assert_role(user, ROLES)
        if user.role in ('admin', 'teacher'):
            return
        if user.role == 'student' and user.user_id == student_id:
            return
        if user.role == 'parent':
            children = user.children_ids
            if children is None:
                loaded = self.load_user(user.school_id, user.user_id)
                children = loaded.children_ids if loaded else []
            if student_id in children:
                return

        self.logger.warning(f"User {user.user_id} ({user.role}) denied access to student {student_id}")
        raise AuthorizationError(f"Not allowed to view data of student {student_id}")
