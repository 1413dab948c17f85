"""
Notification System Module - Classbook

This module creates, lists and maintains user notifications. Notifications
are stored in the recipient's ``users/<user_id>/notifications`` collection,
rendered from the template table, filtered through the recipient's
preferences and optionally pushed to the recipient's devices.

Features:
- Single-recipient notifications with template merge and suppression checks
- Bulk fan-out with de-duplication, chunked atomic batches and per-recipient opt-out
- Role-aware deep links
- Listing, counting, read-state changes and deletion
- Retention cleanup sweep
- Push side channel delivered after the write
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from classbook.modules.database_manager import MAX_BATCH_OPERATIONS, Where
from classbook.modules.errors import UnknownNotificationTypeError, ValidationError
from classbook.modules.notification_settings import NotificationSettingsManager
from classbook.modules.notification_templates import (
    CATEGORIES, PRIORITIES, apply_template, get_category_from_type,
    get_default_expiry_time, get_priority_from_type, is_known_type
)

_ASSIGNMENT_LINK_TYPES = {
    'new-assignment', 'assignment-due-soon', 'assignment-graded', 'assignment-feedback',
    'late-submission', 'assignment-updated', 'assignment-reminder',
}
_QUIZ_LINK_TYPES = {'quiz-published', 'quiz-updated', 'quiz-graded', 'quiz-reminder', 'quiz-due-soon'}
_MESSAGE_LINK_TYPES = {'new-message', 'message-reply'}


def notifications_collection(user_id: str) -> str:
    return f"users/{user_id}/notifications"


@dataclass
class NotificationDraft:
    """
    Input for creating a notification.

    Explicit fields override the values rendered from the type's template;
    fields left as None fall through to the template and then to the
    type-derived defaults.
    """
    type: str
    params: Optional[Dict[str, Any]] = None
    title: Optional[str] = None
    message: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    related_id: Optional[str] = None
    link: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    actions: Optional[List[Dict[str, Any]]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[Union[datetime, str]] = None
    send_push: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationDraft':
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Unknown notification fields: {', '.join(sorted(unknown))}")
        if not data.get('type'):
            raise ValidationError("Notification type is required")
        return cls(**data)


class NotificationSystem:
    """
    Notification dispatch and housekeeping for one store.
    """

    def __init__(self, database_manager, settings_manager: Optional[NotificationSettingsManager] = None,
                 push_dispatcher=None, clock: Optional[Callable[[], datetime]] = None,
                 batch_size: int = MAX_BATCH_OPERATIONS, retention_days: int = 30):
        """
        Initialize the notification system.

        Args:
            database_manager: Document store
            settings_manager (NotificationSettingsManager): Preference checks
            push_dispatcher (PushDispatcher): Push side channel, or None to disable pushes
            clock (callable): Returns the current datetime
            batch_size (int): Recipients per atomic batch in bulk fan-out
            retention_days (int): Default age limit for cleanup_notifications
        """
        self.db = database_manager
        self.clock = clock or datetime.now
        self.settings = settings_manager or NotificationSettingsManager(database_manager, clock=self.clock)
        self.push_dispatcher = push_dispatcher
        self.batch_size = max(1, min(int(batch_size), MAX_BATCH_OPERATIONS))
        self.retention_days = retention_days
        self.logger = logging.getLogger(__name__)

        self.logger.info("Notification system initialized")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _render_content(self, draft: NotificationDraft) -> Dict[str, Any]:
        """Merge draft, template and type defaults into the recipient-independent fields."""
        template = apply_template(draft.type, draft.params) if draft.params is not None else None

        title = draft.title or (template.title if template else None)
        message = draft.message or (template.message if template else None)
        if not title or not message:
            raise ValidationError(f"Notification {draft.type} needs a title and message or template params")

        category = draft.category or (template.category if template else None) or get_category_from_type(draft.type)
        priority = draft.priority or (template.priority if template else None) or get_priority_from_type(draft.type)
        if category not in CATEGORIES:
            raise ValidationError(f"Unknown notification category: {category}")
        if priority not in PRIORITIES:
            raise ValidationError(f"Unknown notification priority: {priority}")

        return {
            'type': draft.type,
            'title': title,
            'message': message,
            'category': category,
            'priority': priority,
            'related_id': draft.related_id,
            'icon': draft.icon or (template.icon if template else None),
            'color': draft.color or (template.color if template else None),
            'actions': draft.actions if draft.actions is not None else (template.actions if template else []),
            'metadata': dict(draft.metadata or {}),
        }

    def _build_notification(self, user_id: str, content: Dict[str, Any], draft: NotificationDraft,
                            now: datetime) -> Dict[str, Any]:
        """Stamp rendered content for one recipient (without link)."""
        expires_at = draft.expires_at or get_default_expiry_time(content['priority'], now)
        if isinstance(expires_at, datetime):
            expires_at = expires_at.isoformat()

        data = dict(content)
        data.update({
            'user_id': user_id,
            'actions': list(content['actions'] or []),
            'metadata': dict(content['metadata']),
            'created_at': now.isoformat(),
            'expires_at': expires_at,
            'read': False,
        })
        return data

    def _check_type(self, draft: NotificationDraft) -> None:
        if not is_known_type(draft.type):
            raise UnknownNotificationTypeError(f"Unknown notification type: {draft.type}")

    def create_notification(self, school_id: str, user_id: str, draft: NotificationDraft) -> str:
        """
        Create a notification for a single user.

        Args:
            school_id (str): School identifier
            user_id (str): Recipient
            draft (NotificationDraft): Notification content

        Returns:
            str: New notification id, or '' when the recipient's preferences suppress it

        Raises:
            ValidationError: On unknown type, category or priority
        """
        self._check_type(draft)
        if not user_id:
            raise ValidationError("Recipient is required")

        now = self.clock()
        data = self._build_notification(user_id, self._render_content(draft), draft, now)

        if not self.settings.should_send_notification(school_id, user_id, data['category'], data['priority'], now):
            self.logger.info(f"Notification suppressed by user preferences: {draft.type} for user {user_id}")
            return ''

        data['link'] = draft.link or self.generate_notification_link(
            school_id, user_id, draft.type, draft.related_id
        )

        notification_id = self.db.new_id()
        data['id'] = notification_id
        self.db.set(school_id, notifications_collection(user_id), notification_id, data)

        if draft.send_push:
            self._push(school_id, user_id, data)

        self.logger.debug(f"Notification {notification_id} ({draft.type}) created for user {user_id}")
        return notification_id

    def create_notification_bulk(self, school_id: str, user_ids: List[str], draft: NotificationDraft) -> List[str]:
        """
        Create the same notification for many users.

        Recipients are de-duplicated in order and processed in chunks; each
        chunk is committed as one atomic batch. The draft is rendered once up
        front, so an invalid draft raises before anything is written.
        Recipients who disabled the category are skipped, as are recipients
        whose notification fails to build. A failed commit propagates. Pushes
        are sent after the commit.

        Returns:
            List[str]: Ids of the created notifications

        Raises:
            ValidationError: On unknown type, category or priority, or missing content
        """
        self._check_type(draft)
        content = self._render_content(draft)

        unique_ids = list(dict.fromkeys(uid for uid in user_ids if uid))
        created: List[str] = []

        for start in range(0, len(unique_ids), self.batch_size):
            chunk = unique_ids[start:start + self.batch_size]
            batch = self.db.batch()
            pending = []

            for user_id in chunk:
                try:
                    now = self.clock()
                    data = self._build_notification(user_id, content, draft, now)
                    if not self.settings.is_category_enabled(school_id, user_id, data['category']):
                        self.logger.debug(f"User {user_id} opted out of {data['category']} notifications")
                        continue

                    data['link'] = draft.link or self.generate_notification_link(
                        school_id, user_id, draft.type, draft.related_id
                    )
                    data['id'] = self.db.new_id()
                    batch.set(school_id, notifications_collection(user_id), data['id'], data)
                    pending.append(data)

                except Exception as e:
                    self.logger.warning(f"Skipping notification for user {user_id}: {str(e)}")

            if pending:
                batch.commit()

            for data in pending:
                created.append(data['id'])
                if draft.send_push:
                    self._push(school_id, data['user_id'], data)

        self.logger.info(f"Bulk notification {draft.type} created for {len(created)} of {len(unique_ids)} users")
        return created

    def create_assignment_due_soon_notifications(self, school_id: str, student_ids: List[str],
                                                 assignment_id: str, title: str,
                                                 subject_name: str, days_left: int) -> List[str]:
        """Remind students that an assignment deadline is approaching."""
        draft = NotificationDraft(
            type='assignment-due-soon',
            params={'title': title, 'subject_name': subject_name, 'days_left': days_left},
            related_id=assignment_id,
            send_push=True
        )
        return self.create_notification_bulk(school_id, student_ids, draft)

    def _push(self, school_id: str, user_id: str, data: Dict[str, Any]) -> None:
        if self.push_dispatcher is None:
            return
        try:
            if not self.settings.wants_push(school_id, user_id, data['category']):
                return
            email = None
            if self.settings.wants_email(school_id, user_id, data['category']):
                user = self.db.get(school_id, 'users', user_id) or {}
                email = user.get('email')
            self.push_dispatcher.send_push(user_id, data['title'], data['message'], data['link'], email=email)
        except Exception as e:
            self.logger.error(f"Failed to queue push notification for {user_id}: {str(e)}")

    def generate_notification_link(self, school_id: str, user_id: str, notification_type: str,
                                   related_id: Optional[str] = None) -> str:
        """
        Build the in-app link for a notification.

        Links are prefixed with the recipient's role. Parents are sent to the
        school dashboard for system notifications; items with a related id
        link to their detail page where one exists.
        """
        role = ''
        try:
            user = self.db.get(school_id, 'users', user_id)
            if user and user.get('role'):
                role = user['role']
        except Exception as e:
            self.logger.error(f"Error fetching user role for notification link: {str(e)}")

        prefix = f"/{role}" if role else ''

        if role == 'parent' and notification_type == 'system-announcement':
            return f"/parent/dashboard/{school_id}"

        category = get_category_from_type(notification_type)
        if category == 'system':
            url = f"/parent/dashboard/{school_id}" if role == 'parent' else f"{prefix}/dashboard"
        else:
            url = f"{prefix}/{category}"

        if related_id:
            if notification_type in _ASSIGNMENT_LINK_TYPES:
                url = f"{prefix}/assignments/{related_id}"
            elif notification_type in _QUIZ_LINK_TYPES:
                url = f"{prefix}/quizzes/{related_id}"
            elif notification_type in _MESSAGE_LINK_TYPES:
                url = f"{prefix}/messages/{related_id}"

        return url

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def get_user_notifications(self, school_id: str, user_id: str, limit: int = 50,
                               category: Optional[str] = None, only_unread: bool = False,
                               start_after: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List a user's notifications, newest first.

        Args:
            school_id (str): School identifier
            user_id (str): Recipient
            limit (int): Maximum number of notifications
            category (str): Only this category
            only_unread (bool): Only unread notifications
            start_after (str): created_at of the last item of the previous page

        Returns:
            List[Dict[str, Any]]: Notifications
        """
        try:
            predicates = []
            if category:
                predicates.append(Where('category', '==', category))
            if only_unread:
                predicates.append(Where('read', '==', False))
            if start_after:
                predicates.append(Where('created_at', '<', start_after))

            return self.db.query(
                school_id, notifications_collection(user_id), *predicates,
                order_by='created_at', descending=True, limit=limit
            )

        except Exception as e:
            self.logger.error(f"Error fetching notifications for {user_id}: {str(e)}")
            return []

    def get_unread_count(self, school_id: str, user_id: str) -> int:
        try:
            return self.db.count(school_id, notifications_collection(user_id), Where('read', '==', False))
        except Exception as e:
            self.logger.error(f"Error counting unread notifications: {str(e)}")
            return 0

    def get_notification_counts_by_category(self, school_id: str, user_id: str,
                                            only_unread: bool = False) -> Dict[str, int]:
        """Notification counts for every category, zero included."""
        counts = {category: 0 for category in CATEGORIES}
        try:
            predicates = [Where('read', '==', False)] if only_unread else []
            for notification in self.db.query(school_id, notifications_collection(user_id), *predicates):
                category = notification.get('category')
                if category in counts:
                    counts[category] += 1
        except Exception as e:
            self.logger.error(f"Error counting notifications by category: {str(e)}")
            return {category: 0 for category in CATEGORIES}
        return counts

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def mark_as_read(self, school_id: str, user_id: str, notification_id: str) -> None:
        self.db.update(school_id, notifications_collection(user_id), notification_id, {'read': True})

    def _apply_in_batches(self, school_id: str, user_id: str, notifications: List[Dict[str, Any]],
                          action: str) -> int:
        collection = notifications_collection(user_id)
        for start in range(0, len(notifications), self.batch_size):
            batch = self.db.batch()
            for notification in notifications[start:start + self.batch_size]:
                if action == 'delete':
                    batch.delete(school_id, collection, notification['id'])
                else:
                    batch.update(school_id, collection, notification['id'], {'read': True})
            batch.commit()
        return len(notifications)

    def mark_all_as_read(self, school_id: str, user_id: str, category: Optional[str] = None) -> int:
        """
        Mark every unread notification (optionally of one category) as read.

        Returns:
            int: Number of notifications changed
        """
        predicates = [Where('read', '==', False)]
        if category:
            predicates.append(Where('category', '==', category))
        unread = self.db.query(school_id, notifications_collection(user_id), *predicates)
        return self._apply_in_batches(school_id, user_id, unread, 'read')

    def delete_notification(self, school_id: str, user_id: str, notification_id: str) -> None:
        self.db.delete(school_id, notifications_collection(user_id), notification_id)

    def delete_all_read(self, school_id: str, user_id: str) -> int:
        read = self.db.query(school_id, notifications_collection(user_id), Where('read', '==', True))
        return self._apply_in_batches(school_id, user_id, read, 'delete')

    def cleanup_notifications(self, school_id: str, user_id: str, max_age_days: Optional[int] = None,
                              now: Optional[datetime] = None) -> int:
        """
        Delete notifications older than the retention window or past their expiry.

        Args:
            school_id (str): School identifier
            user_id (str): Recipient whose notifications are swept
            max_age_days (int): Retention window, defaults to the configured one
            now (datetime): Reference time

        Returns:
            int: Number of notifications deleted
        """
        now = now or self.clock()
        max_age_days = self.retention_days if max_age_days is None else max_age_days
        cutoff = (now - timedelta(days=max_age_days)).isoformat()
        current = now.isoformat()

        stale = [
            notification
            for notification in self.db.query(school_id, notifications_collection(user_id))
            if (notification.get('created_at') or '') < cutoff
            or (notification.get('expires_at') and notification['expires_at'] < current)
        ]

        deleted = self._apply_in_batches(school_id, user_id, stale, 'delete')
        if deleted:
            self.logger.info(f"Cleaned up {deleted} notifications for user {user_id}")
        return deleted
