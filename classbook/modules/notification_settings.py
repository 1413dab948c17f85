"""
Notification Settings Module - Classbook

Per-user notification preferences: channel switches, per-category opt-outs
and a do-not-disturb window. Settings live in the user's
``users/<user_id>/settings`` collection under the id ``notifications``.

Features:
- Lazy creation of default settings on first read
- Validated partial updates
- Suppression checks (category opt-out, do-not-disturb window)
- Push and email channel checks
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from classbook.modules.errors import ValidationError
from classbook.modules.notification_templates import CATEGORIES
from classbook.modules.schedule_clock import (
    is_valid_clock, minutes_since_midnight, parse_clock, standardize_day_name, weekday_name
)

SETTINGS_DOC_ID = 'notifications'


def settings_collection(user_id: str) -> str:
    return f"users/{user_id}/settings"


@dataclass
class CategoryPreference:
    enabled: bool = True
    email: bool = True
    push: bool = True


@dataclass
class NotificationSettings:
    """Notification preferences of one user."""
    user_id: str
    email_enabled: bool = True
    push_enabled: bool = True
    category_preferences: Dict[str, CategoryPreference] = field(
        default_factory=lambda: {category: CategoryPreference() for category in CATEGORIES}
    )
    do_not_disturb_start: Optional[str] = None
    do_not_disturb_end: Optional[str] = None
    do_not_disturb_days: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, user_id: str, data: Dict[str, Any]) -> 'NotificationSettings':
        settings = cls(user_id=user_id)
        settings.email_enabled = bool(data.get('email_enabled', True))
        settings.push_enabled = bool(data.get('push_enabled', True))
        for category, preference in (data.get('category_preferences') or {}).items():
            settings.category_preferences[category] = CategoryPreference(**preference)
        settings.do_not_disturb_start = data.get('do_not_disturb_start')
        settings.do_not_disturb_end = data.get('do_not_disturb_end')
        settings.do_not_disturb_days = list(data.get('do_not_disturb_days') or [])
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def category_enabled(self, category: str) -> bool:
        preference = self.category_preferences.get(category)
        return bool(preference and preference.enabled)


def is_within_do_not_disturb(settings: NotificationSettings, now: datetime) -> bool:
    """
    Check whether `now` falls inside the user's do-not-disturb window.

    The window applies only when both start and end are set. An empty day list
    means every day. A start later than the end spans midnight. Both
    boundaries are inclusive.
    """
    if not (settings.do_not_disturb_start and settings.do_not_disturb_end):
        return False

    if settings.do_not_disturb_days and weekday_name(now) not in settings.do_not_disturb_days:
        return False

    start = parse_clock(settings.do_not_disturb_start)
    end = parse_clock(settings.do_not_disturb_end)
    current = minutes_since_midnight(now)

    if end < start:
        return current >= start or current <= end
    return start <= current <= end


class NotificationSettingsManager:
    """Reads and writes notification preferences and answers suppression checks."""

    def __init__(self, database_manager, clock: Optional[Callable[[], datetime]] = None):
        self.db = database_manager
        self.clock = clock or datetime.now
        self.logger = logging.getLogger(__name__)

    def _load(self, school_id: str, user_id: str) -> Optional[NotificationSettings]:
        data = self.db.get(school_id, settings_collection(user_id), SETTINGS_DOC_ID)
        if data is None:
            return None
        return NotificationSettings.from_dict(user_id, data)

    def get_notification_settings(self, school_id: str, user_id: str) -> NotificationSettings:
        """
        Get a user's settings, creating and persisting the defaults on first read.

        Args:
            school_id (str): School identifier
            user_id (str): User identifier

        Returns:
            NotificationSettings: Stored or default settings
        """
        settings = self._load(school_id, user_id)
        if settings is not None:
            return settings

        settings = NotificationSettings(user_id=user_id)
        self.db.set(school_id, settings_collection(user_id), SETTINGS_DOC_ID, settings.to_dict())
        self.logger.info(f"Created default notification settings for user {user_id}")
        return settings

    def get_users_notification_settings(self, school_id: str, user_ids: List[str]) -> List[NotificationSettings]:
        """Settings for several users; users without stored settings get defaults (not persisted)."""
        result = []
        for user_id in user_ids:
            try:
                result.append(self._load(school_id, user_id) or NotificationSettings(user_id=user_id))
            except Exception as e:
                self.logger.error(f"Error fetching notification settings for {user_id}: {str(e)}")
                result.append(NotificationSettings(user_id=user_id))
        return result

    def update_notification_settings(self, school_id: str, user_id: str,
                                     changes: Dict[str, Any]) -> NotificationSettings:
        """
        Apply a partial update to a user's settings.

        Args:
            school_id (str): School identifier
            user_id (str): User identifier
            changes (Dict[str, Any]): Fields to change. category_preferences may
                hold partial per-category dicts.

        Returns:
            NotificationSettings: Settings after the update

        Raises:
            ValidationError: On unknown fields, categories, bad times or weekdays
        """
        settings = self.get_notification_settings(school_id, user_id)
        allowed = {'email_enabled', 'push_enabled', 'category_preferences',
                   'do_not_disturb_start', 'do_not_disturb_end', 'do_not_disturb_days'}

        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unknown settings fields: {', '.join(sorted(unknown))}")

        for key in ('email_enabled', 'push_enabled'):
            if key in changes:
                setattr(settings, key, bool(changes[key]))

        for category, preference in (changes.get('category_preferences') or {}).items():
            if category not in CATEGORIES:
                raise ValidationError(f"Unknown notification category: {category}")
            if not isinstance(preference, dict):
                raise ValidationError(f"Preference for {category} must be an object")
            current = asdict(settings.category_preferences.get(category, CategoryPreference()))
            for flag, value in preference.items():
                if flag not in current:
                    raise ValidationError(f"Unknown preference flag: {flag}")
                current[flag] = bool(value)
            settings.category_preferences[category] = CategoryPreference(**current)

        for key in ('do_not_disturb_start', 'do_not_disturb_end'):
            if key in changes:
                value = changes[key] or None
                if value is not None and not is_valid_clock(value):
                    raise ValidationError(f"Invalid time for {key}: {value}")
                setattr(settings, key, value)

        if 'do_not_disturb_days' in changes:
            try:
                settings.do_not_disturb_days = [
                    standardize_day_name(day) for day in (changes['do_not_disturb_days'] or [])
                ]
            except ValueError as e:
                raise ValidationError(str(e))

        self.db.set(school_id, settings_collection(user_id), SETTINGS_DOC_ID, settings.to_dict())
        self.logger.info(f"Notification settings updated for user {user_id}")
        return settings

    def should_send_notification(self, school_id: str, user_id: str, category: str,
                                 priority: str, now: Optional[datetime] = None) -> bool:
        """
        Decide whether a notification reaches the user.

        Returns False when the category is disabled, or when the priority is
        not urgent and `now` is inside the do-not-disturb window. Errors while
        reading settings default to sending.
        """
        try:
            settings = self._load(school_id, user_id)
            if settings is None:
                return True

            if not settings.category_enabled(category):
                return False

            if priority != 'urgent' and is_within_do_not_disturb(settings, now or self.clock()):
                return False

            return True

        except Exception as e:
            self.logger.error(f"Error checking notification settings for {user_id}: {str(e)}")
            return True

    def is_category_enabled(self, school_id: str, user_id: str, category: str) -> bool:
        try:
            settings = self._load(school_id, user_id)
            return settings is None or settings.category_enabled(category)
        except Exception as e:
            self.logger.error(f"Error reading category preference for {user_id}: {str(e)}")
            return True

    def _wants_channel(self, school_id: str, user_id: str, category: str, channel: str) -> bool:
        try:
            settings = self._load(school_id, user_id)
        except Exception as e:
            self.logger.error(f"Error reading channel preference for {user_id}: {str(e)}")
            return False
        if settings is None:
            return True
        if not getattr(settings, f"{channel}_enabled"):
            return False
        preference = settings.category_preferences.get(category)
        return bool(preference and preference.enabled and getattr(preference, channel))

    def wants_push(self, school_id: str, user_id: str, category: str) -> bool:
        return self._wants_channel(school_id, user_id, category, 'push')

    def wants_email(self, school_id: str, user_id: str, category: str) -> bool:
        return self._wants_channel(school_id, user_id, category, 'email')
