"""
Notification Templates Module - Classbook

Maps every notification type to a formatter that turns a parameter bag into
a title, message, category, priority, icon and color. New types are added by
registering one more formatter in NOTIFICATION_TEMPLATES.

Features:
- Closed set of notification types, categories and priorities
- Per-type message formatting
- Category and priority fallbacks derived from the type name
- Priority based expiry
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from classbook.modules.errors import UnknownNotificationTypeError

CATEGORIES = ('assignments', 'quizzes', 'grades', 'attendance', 'feedback', 'system', 'messages')
PRIORITIES = ('low', 'medium', 'high', 'urgent')

# Days until a notification expires, by priority
EXPIRY_DAYS = {
    'urgent': 1,
    'high': 3,
    'medium': 7,
    'low': 14,
}

_HIGH_PRIORITY_TYPES = {'assignment-due-soon', 'quiz-due-soon', 'attendance-absent', 'student-review'}
_LOW_PRIORITY_TYPES = {'grade-comment', 'attendance-excused', 'account-updated'}
_FEEDBACK_TYPES = {'student-review', 'teacher-feedback', 'parent-comment'}


@dataclass
class NotificationTemplate:
    """Rendered presentation of one notification."""
    title: str
    message: str
    category: str
    priority: str
    icon: Optional[str] = None
    color: Optional[str] = None
    actions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _days(count) -> str:
    return f"{count} day" if count == 1 else f"{count} days"


def _graded_suffix(params: Dict[str, Any]) -> str:
    return f" with {params['grade']}" if params.get('grade') else ''


def _subject_line(params: Dict[str, Any]) -> str:
    return f"\"{params.get('title', '')}\" in {params.get('subject_name', '')}"


def _who(params: Dict[str, Any]) -> str:
    if params.get('is_for_student'):
        return 'You have'
    return f"Your child {params.get('student_name', '')} has"


def _lesson(params: Dict[str, Any]) -> str:
    return f"in {params.get('subject_name', '')} on {params.get('date', '')}, period {params.get('period_number', '')}"


def _grade_color(grade) -> str:
    try:
        value = float(grade)
    except (TypeError, ValueError):
        return '#ef4444'
    if value >= 4.5:
        return '#10b981'
    if value >= 3:
        return '#f59e0b'
    return '#ef4444'


def _student_review(params: Dict[str, Any]) -> NotificationTemplate:
    positive = params.get('review_type') == 'positive'
    tone = 'positive' if positive else 'negative'
    return NotificationTemplate(
        title='Positive remark' if positive else 'Negative remark',
        message=f"{_who(params)} a {tone} remark: {params.get('title', '')}",
        category='feedback',
        priority='medium' if positive else 'high',
        icon='👍' if positive else '⚠️',
        color='#10b981' if positive else '#ef4444'
    )


NOTIFICATION_TEMPLATES: Dict[str, Callable[[Dict[str, Any]], NotificationTemplate]] = {
    # Assignments
    'new-assignment': lambda p: NotificationTemplate(
        'New assignment', f"You have a new assignment {_subject_line(p)}",
        'assignments', 'medium', '📝', '#4f46e5'),
    'assignment-due-soon': lambda p: NotificationTemplate(
        'Deadline approaching',
        f"The deadline for assignment {_subject_line(p)} is in {_days(p.get('days_left'))}",
        'assignments', 'high', '⏰', '#f59e0b'),
    'assignment-graded': lambda p: NotificationTemplate(
        'Assignment graded', f"Your assignment {_subject_line(p)} was graded{_graded_suffix(p)}",
        'assignments', 'medium', '✅', '#10b981'),
    'assignment-feedback': lambda p: NotificationTemplate(
        'Assignment feedback', f"You received feedback on assignment {_subject_line(p)}",
        'assignments', 'medium', '💬', '#4f46e5'),
    'late-submission': lambda p: NotificationTemplate(
        'Late submission', f"Assignment {_subject_line(p)} was submitted after the deadline",
        'assignments', 'medium', '⚠️', '#f97316'),
    'assignment-updated': lambda p: NotificationTemplate(
        'Assignment updated', f"Assignment {_subject_line(p)} was updated",
        'assignments', 'medium', '🔄', '#4f46e5'),
    'assignment-reminder': lambda p: NotificationTemplate(
        'Assignment reminder', f"Assignment {_subject_line(p)} has not been submitted yet",
        'assignments', 'medium', '🔔', '#f59e0b'),

    # Quizzes
    'quiz-published': lambda p: NotificationTemplate(
        'New quiz', f"A new quiz {_subject_line(p)} was published",
        'quizzes', 'medium', '📋', '#4f46e5'),
    'quiz-updated': lambda p: NotificationTemplate(
        'Quiz updated', f"Quiz {_subject_line(p)} was updated",
        'quizzes', 'medium', '🔄', '#4f46e5'),
    'quiz-graded': lambda p: NotificationTemplate(
        'Quiz graded', f"Your quiz {_subject_line(p)} was graded{_graded_suffix(p)}",
        'quizzes', 'medium', '✅', '#10b981'),
    'quiz-reminder': lambda p: NotificationTemplate(
        'Quiz reminder', f"Quiz {_subject_line(p)} has not been completed yet",
        'quizzes', 'medium', '🔔', '#f59e0b'),
    'quiz-due-soon': lambda p: NotificationTemplate(
        'Quiz deadline approaching',
        f"The deadline for quiz {_subject_line(p)} is in {_days(p.get('days_left'))}",
        'quizzes', 'high', '⏰', '#f59e0b'),

    # Grades
    'new-grade': lambda p: NotificationTemplate(
        'New grade',
        f"You have a new grade {p.get('grade', '')} in {p.get('subject_name', '')}: {p.get('title', '')}",
        'grades', 'medium', '🎓', _grade_color(p.get('grade'))),
    'edited-grade': lambda p: NotificationTemplate(
        'Grade changed',
        f"Your grade in {p.get('subject_name', '')}: {p.get('title', '')} was changed to {p.get('grade', '')}",
        'grades', 'medium', '✏️', '#4f46e5'),
    'deleted-grade': lambda p: NotificationTemplate(
        'Grade deleted',
        f"Your grade {p.get('grade', '')} in {p.get('subject_name', '')}: {p.get('title', '')} was deleted",
        'grades', 'medium', '🗑️', '#ef4444'),
    'grade-comment': lambda p: NotificationTemplate(
        'Grade comment',
        f"You received a comment on a grade in {p.get('subject_name', '')}: {p.get('title', '')}",
        'grades', 'low', '💬', '#4f46e5'),

    # Feedback
    'student-review': _student_review,
    'teacher-feedback': lambda p: NotificationTemplate(
        'Teacher feedback',
        f"You received feedback from {p.get('teacher_name', '')}: {p.get('summary', '')}",
        'feedback', 'medium', '👨‍🏫', '#4f46e5'),
    'parent-comment': lambda p: NotificationTemplate(
        'Parent comment',
        f"The parent of {p.get('student_name', '')} left a comment: {p.get('summary', '')}",
        'feedback', 'medium', '👨‍👩‍👧‍👦', '#4f46e5'),

    # Attendance
    'attendance-absent': lambda p: NotificationTemplate(
        'Absence', f"{_who(p)} an absence {_lesson(p)}",
        'attendance', 'high', '❌', '#ef4444'),
    'attendance-late': lambda p: NotificationTemplate(
        'Late arrival', f"{_who(p)} a late arrival {_lesson(p)}",
        'attendance', 'medium', '⏰', '#f59e0b'),
    'attendance-excused': lambda p: NotificationTemplate(
        'Excused absence', f"{_who(p)} an excused absence {_lesson(p)}",
        'attendance', 'low', '📝', '#4f46e5'),
    'attendance-updated': lambda p: NotificationTemplate(
        'Attendance updated',
        f"Attendance in {p.get('subject_name', '')} on {p.get('date', '')} was updated",
        'attendance', 'medium', '🔄', '#4f46e5'),

    # System
    'system-announcement': lambda p: NotificationTemplate(
        'System announcement', str(p.get('message', '')),
        'system', p.get('priority') or 'medium', '📢', '#4b5563'),
    'system-maintenance': lambda p: NotificationTemplate(
        'Scheduled maintenance',
        f"The system will be unavailable on {p.get('date', '')} from {p.get('start_time', '')} "
        f"to {p.get('end_time', '')} for scheduled maintenance",
        'system', 'medium', '🔧', '#f59e0b'),
    'password-changed': lambda p: NotificationTemplate(
        'Password changed', 'Your password was changed successfully',
        'system', 'medium', '🔒', '#10b981'),
    'account-updated': lambda p: NotificationTemplate(
        'Profile updated', 'Your profile was updated successfully',
        'system', 'low', '👤', '#4f46e5'),

    # Messages
    'new-message': lambda p: NotificationTemplate(
        'New message', f"You received a new message from {p.get('sender_name', '')}",
        'messages', 'medium', '✉️', '#4f46e5'),
    'message-reply': lambda p: NotificationTemplate(
        'Message reply', f"{p.get('sender_name', '')} replied to your message",
        'messages', 'medium', '↩️', '#4f46e5'),
}

NOTIFICATION_TYPES = tuple(NOTIFICATION_TEMPLATES)


def is_known_type(notification_type: str) -> bool:
    return notification_type in NOTIFICATION_TEMPLATES


def apply_template(notification_type: str, params: Optional[Dict[str, Any]] = None) -> NotificationTemplate:
    """
    Render the template registered for a notification type.

    Args:
        notification_type (str): One of NOTIFICATION_TYPES
        params (Dict[str, Any]): Values interpolated into the message

    Returns:
        NotificationTemplate: Rendered template

    Raises:
        UnknownNotificationTypeError: If no template is registered for the type
    """
    formatter = NOTIFICATION_TEMPLATES.get(notification_type)
    if formatter is None:
        raise UnknownNotificationTypeError(f"Unknown notification type: {notification_type}")
    return formatter(params or {})


def get_category_from_type(notification_type: str) -> str:
    """Derive a category from the type name; unknown names fall back to 'system'."""
    if 'assignment' in notification_type or notification_type == 'late-submission':
        return 'assignments'
    if 'quiz' in notification_type:
        return 'quizzes'
    if 'grade' in notification_type:
        return 'grades'
    if 'attendance' in notification_type:
        return 'attendance'
    if notification_type in _FEEDBACK_TYPES:
        return 'feedback'
    if 'system' in notification_type or notification_type in ('password-changed', 'account-updated'):
        return 'system'
    if 'message' in notification_type:
        return 'messages'
    return 'system'


def get_priority_from_type(notification_type: str) -> str:
    if notification_type in _HIGH_PRIORITY_TYPES:
        return 'high'
    if notification_type in _LOW_PRIORITY_TYPES:
        return 'low'
    return 'medium'


def get_default_expiry_time(priority: str, now: Optional[datetime] = None) -> datetime:
    """Expiry moment for a notification of the given priority created at `now`."""
    now = now or datetime.now()
    return now + timedelta(days=EXPIRY_DAYS.get(priority, EXPIRY_DAYS['medium']))
