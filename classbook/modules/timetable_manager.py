"""
Timetable Manager Module - Classbook

This module maintains class timetables and answers the scheduling questions
the attendance workflow depends on: is a lesson actually scheduled, and which
lessons does a teacher teach.

Features:
- Timetable creation and replacement with slot validation
- Session existence guard for manual attendance entry
- Teacher session listing with class and subject names
- Class slot and teacher double-booking conflict checks
"""

import logging
from typing import Dict, List, Any, Optional

from classbook.modules.database_manager import Where
from classbook.modules.errors import TimetableConflictError, ValidationError
from classbook.modules.schedule_clock import (
    ClassSession, Period, is_valid_clock, period_lookup, standardize_day_name,
    weekday_name, from_day_key
)


class TimetableManager:
    """
    Timetable storage and lookups.
    Timetables are full-scanned on every call; results are never cached.
    """

    def __init__(self, database_manager):
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _day(value: str) -> str:
        try:
            return standardize_day_name(value)
        except ValueError:
            return value

    @staticmethod
    def _periods(timetable: Dict[str, Any]) -> List[Period]:
        return [Period.from_dict(p) for p in timetable.get('periods') or []]

    def does_class_session_exist(self, school_id: str, class_id: str, subject_id: str,
                                 day_of_week: str, period_number: int) -> bool:
        """
        Check whether a lesson is scheduled in the class's timetable.

        Args:
            school_id (str): School identifier
            class_id (str): Homeroom class
            subject_id (str): Subject taught
            day_of_week (str): Weekday name (English or Bulgarian)
            period_number (int): Period number

        Returns:
            bool: True if a matching timetable entry exists
        """
        day = self._day(day_of_week)
        timetables = self.db.query(school_id, 'timetables', Where('homeroom_class_id', '==', class_id))

        if not timetables:
            self.logger.debug(f"No timetable found for class {class_id}")
            return False

        for timetable in timetables:
            for entry in timetable.get('entries') or []:
                if (entry.get('subject_id') == subject_id
                        and self._day(entry.get('day', '')) == day
                        and entry.get('period') == period_number):
                    return True

        return False

    def check_class_session_exists(self, school_id: str, class_id: str, subject_id: str,
                                   date: str, period_number: int) -> bool:
        """Same as does_class_session_exist, with the weekday taken from a calendar date."""
        return self.does_class_session_exist(
            school_id, class_id, subject_id, weekday_name(from_day_key(date)), period_number
        )

    def get_classes_taught_by_teacher(self, school_id: str, teacher_id: str) -> List[ClassSession]:
        """
        List every lesson the teacher teaches, across all timetables.

        Entries whose class or subject document is missing are skipped.
        Entries without their own start/end time take the times of the
        timetable's bell schedule, or of DEFAULT_PERIODS.

        Returns:
            List[ClassSession]: Lessons in timetable order
        """
        sessions = []
        class_cache: Dict[str, Optional[Dict[str, Any]]] = {}
        subject_cache: Dict[str, Optional[Dict[str, Any]]] = {}

        for timetable in self.db.query(school_id, 'timetables'):
            entries = [e for e in timetable.get('entries') or [] if e.get('teacher_id') == teacher_id]
            if not entries:
                continue

            class_id = timetable.get('homeroom_class_id') or ''
            if class_id not in class_cache:
                class_cache[class_id] = self.db.get(school_id, 'classes', class_id)
            class_data = class_cache[class_id]
            if not class_data:
                self.logger.warning(f"Class data not found for class ID: {class_id}")
                continue

            bell = period_lookup(self._periods(timetable))

            for entry in entries:
                subject_id = entry.get('subject_id')
                if subject_id not in subject_cache:
                    subject_cache[subject_id] = self.db.get(school_id, 'subjects', subject_id)
                subject_data = subject_cache[subject_id]
                if not subject_data:
                    self.logger.warning(f"Subject data not found for subject ID: {subject_id}")
                    continue

                slot = bell.get(entry.get('period'))
                sessions.append(ClassSession(
                    class_id=class_id,
                    class_name=class_data.get('class_name', ''),
                    subject_id=subject_id,
                    subject_name=subject_data.get('name', ''),
                    teacher_id=teacher_id,
                    day=self._day(entry.get('day', '')),
                    period=entry.get('period'),
                    start_time=entry.get('start_time') or (slot.start_time if slot else ''),
                    end_time=entry.get('end_time') or (slot.end_time if slot else '')
                ))

        self.logger.info(f"Found {len(sessions)} class sessions taught by teacher {teacher_id}")
        return sessions

    def get_timetable(self, school_id: str, class_id: str) -> Optional[Dict[str, Any]]:
        timetables = self.db.query(school_id, 'timetables', Where('homeroom_class_id', '==', class_id))
        return timetables[0] if timetables else None

    def get_all_timetables(self, school_id: str) -> List[Dict[str, Any]]:
        return self.db.query(school_id, 'timetables')

    def _normalize_entries(self, entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        normalized = []
        for index, entry in enumerate(entries):
            try:
                day = standardize_day_name(entry.get('day', ''))
            except ValueError as e:
                raise ValidationError(f"Entry {index}: {str(e)}")

            period = entry.get('period')
            if not isinstance(period, int) or isinstance(period, bool) or period < 1:
                raise ValidationError(f"Entry {index}: period must be a positive integer")

            is_free = bool(entry.get('is_free_period'))
            if not is_free and not entry.get('subject_id'):
                raise ValidationError(f"Entry {index}: subject_id is required")

            for key in ('start_time', 'end_time'):
                if entry.get(key) and not is_valid_clock(entry[key]):
                    raise ValidationError(f"Entry {index}: invalid {key} {entry[key]!r}")

            normalized.append({
                'day': day,
                'period': period,
                'subject_id': entry.get('subject_id'),
                'teacher_id': entry.get('teacher_id'),
                'start_time': entry.get('start_time'),
                'end_time': entry.get('end_time'),
                'is_free_period': is_free,
            })
        return normalized

    def _normalize_periods(self, periods: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        result = []
        for data in periods or []:
            try:
                period = Period.from_dict(data)
            except (KeyError, TypeError, ValueError):
                raise ValidationError(f"Invalid bell schedule period: {data!r}")
            if not (is_valid_clock(period.start_time) and is_valid_clock(period.end_time)):
                raise ValidationError(f"Invalid times for period {period.period}")
            result.append(period.to_dict())
        return result

    def create_or_update_timetable(self, school_id: str, homeroom_class_id: str,
                                   entries: List[Dict[str, Any]],
                                   periods: Optional[List[Dict[str, Any]]] = None) -> str:
        """
        Create the class's timetable, or replace it if one exists.

        Args:
            school_id (str): School identifier
            homeroom_class_id (str): Owning class
            entries (List[Dict]): Lessons (day, period, subject_id, teacher_id, times)
            periods (List[Dict]): Bell schedule

        Returns:
            str: Timetable id

        Raises:
            ValidationError: On malformed entries or periods
            TimetableConflictError: If two entries share a (day, period) slot
        """
        if not homeroom_class_id:
            raise ValidationError("homeroom_class_id is required")

        normalized = self._normalize_entries(entries or [])
        bell = self._normalize_periods(periods)

        seen = {}
        conflicts = []
        for entry in normalized:
            slot = (entry['day'], entry['period'])
            if slot in seen:
                conflicts.append({
                    'day': entry['day'],
                    'period': entry['period'],
                    'existing_subject': seen[slot].get('subject_id'),
                    'new_subject': entry.get('subject_id'),
                })
            else:
                seen[slot] = entry
        if conflicts:
            raise TimetableConflictError(
                f"Timetable for class {homeroom_class_id} has {len(conflicts)} double-booked slots",
                conflicts
            )

        existing = self.get_timetable(school_id, homeroom_class_id)
        timetable_id = existing['id'] if existing else self.db.new_id()

        self.db.set(school_id, 'timetables', timetable_id, {
            'homeroom_class_id': homeroom_class_id,
            'entries': normalized,
            'periods': bell,
        })

        self.logger.info(f"Timetable {timetable_id} saved for class {homeroom_class_id} "
                         f"with {len(normalized)} entries")
        return timetable_id

    def delete_timetable(self, school_id: str, timetable_id: str) -> None:
        self.db.delete(school_id, 'timetables', timetable_id)
        self.logger.info(f"Timetable {timetable_id} deleted")

    def _name_map(self, school_id: str, collection: str, *predicates: Where) -> Dict[str, Dict[str, Any]]:
        return {doc['id']: doc for doc in self.db.query(school_id, collection, *predicates)}

    def check_timetable_conflicts(self, school_id: str, homeroom_class_id: str,
                                  entries: List[Dict[str, Any]],
                                  exclude_timetable_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Compare new entries against the class's stored timetables.

        Returns:
            List[Dict]: One item per slot already taken (day, period, existing_subject, new_subject)
        """
        timetables = [
            t for t in self.db.query(school_id, 'timetables', Where('homeroom_class_id', '==', homeroom_class_id or ''))
            if not exclude_timetable_id or t['id'] != exclude_timetable_id
        ]
        if not timetables:
            return []

        subjects = self._name_map(school_id, 'subjects')

        def subject_name(subject_id):
            return (subjects.get(subject_id) or {}).get('name') or 'Unknown Subject'

        conflicts = []
        for new_entry in entries:
            day = self._day(new_entry.get('day', ''))
            for timetable in timetables:
                existing = next(
                    (e for e in timetable.get('entries') or []
                     if self._day(e.get('day', '')) == day and e.get('period') == new_entry.get('period')),
                    None
                )
                if existing:
                    conflicts.append({
                        'day': day,
                        'period': new_entry.get('period'),
                        'existing_subject': subject_name(existing.get('subject_id')),
                        'new_subject': subject_name(new_entry.get('subject_id')),
                    })
        return conflicts

    def check_teacher_conflicts(self, school_id: str, entries: List[Dict[str, Any]],
                                exclude_timetable_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Find teachers the new entries would double-book in another timetable.

        Returns:
            List[Dict]: teacher_id, teacher_name, day, period and class_name per conflict
        """
        timetables = [
            t for t in self.db.query(school_id, 'timetables')
            if not exclude_timetable_id or t['id'] != exclude_timetable_id
        ]
        classes = self._name_map(school_id, 'classes')
        teachers = self._name_map(school_id, 'users', Where('role', '==', 'teacher'))

        conflicts = []
        for new_entry in entries:
            teacher_id = new_entry.get('teacher_id')
            if not teacher_id:
                continue
            day = self._day(new_entry.get('day', ''))

            for timetable in timetables:
                clash = any(
                    e.get('teacher_id') == teacher_id
                    and self._day(e.get('day', '')) == day
                    and e.get('period') == new_entry.get('period')
                    for e in timetable.get('entries') or []
                )
                if not clash:
                    continue

                teacher = teachers.get(teacher_id)
                teacher_name = (f"{teacher.get('first_name', '')} {teacher.get('last_name', '')}".strip()
                                if teacher else '') or 'Unknown Teacher'
                class_data = classes.get(timetable.get('homeroom_class_id') or '')
                conflicts.append({
                    'teacher_id': teacher_id,
                    'teacher_name': teacher_name,
                    'day': day,
                    'period': new_entry.get('period'),
                    'class_name': (class_data or {}).get('class_name') or 'Unknown Class',
                })
        return conflicts
