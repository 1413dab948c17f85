"""
Attendance Manager Module - Classbook

This module records per-lesson attendance and keeps students and parents
informed about absences. Records are stored in the school's ``attendance``
collection and carry denormalized teacher, class, subject and student names
so that reports never need a join.

Features:
- Idempotent attendance upsert keyed by class, subject, date, period and student
- Change-only notifications for absent, late and excused students (student and parents)
- Concurrent per-student processing
- Manual entry guarded by the timetable
- Current-class detection for teachers
- Roster prefill with stored statuses
- Class, session and child attendance lookups

Known limitation: the upsert reads existing records before writing and is not
atomic; two simultaneous submissions for the same lesson can both insert.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from classbook.modules.database_manager import Where
from classbook.modules.errors import AuthorizationError, SessionNotScheduledError, ValidationError
from classbook.modules.notification_system import NotificationDraft
from classbook.modules.schedule_clock import detect_current_class, to_day_key

ATTENDANCE_STATUSES = ('present', 'absent', 'late', 'excused')
NOTIFY_STATUSES = ('absent', 'late', 'excused')


@dataclass
class LessonContext:
    """Resolved names shared by every record of one submission."""
    school_id: str
    teacher_id: str
    teacher_name: str
    class_id: str
    class_name: str
    subject_id: str
    subject_name: str
    date: str
    period_number: int


def full_name(user: Optional[Dict[str, Any]], placeholder: str) -> str:
    if not user:
        return placeholder
    name = f"{user.get('first_name', '')} {user.get('last_name', '')}".strip()
    return name or placeholder


class AttendanceManager:
    """
    Attendance recording and lookups.
    """

    def __init__(self, database_manager, notification_system, timetable_manager,
                 clock: Optional[Callable[[], datetime]] = None, max_workers: int = 8):
        """
        Initialize the attendance manager.

        Args:
            database_manager: Document store
            notification_system (NotificationSystem): Used for absence notifications
            timetable_manager (TimetableManager): Used for session checks and teacher schedules
            clock (callable): Returns the current datetime
            max_workers (int): Threads used for per-student processing
        """
        self.db = database_manager
        self.notifications = notification_system
        self.timetables = timetable_manager
        self.clock = clock or datetime.now
        self.max_workers = max(1, int(max_workers))
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    @staticmethod
    def _normalize_records(records: Union[Dict[str, str], Iterable[Dict[str, Any]]]) -> Dict[str, str]:
        if isinstance(records, dict):
            pairs = list(records.items())
        else:
            pairs = [(item.get('student_id'), item.get('status')) for item in records]

        normalized: Dict[str, str] = {}
        for student_id, status in pairs:
            if not student_id:
                raise ValidationError("Every attendance record needs a student_id")
            if status not in ATTENDANCE_STATUSES:
                raise ValidationError(f"Invalid attendance status for {student_id}: {status!r}")
            # A student listed twice keeps the last status
            normalized[student_id] = status
        return normalized

    def _validate_lesson(self, school_id, teacher_id, class_id, subject_id, date, period) -> str:
        for name, value in (('school_id', school_id), ('teacher_id', teacher_id),
                            ('class_id', class_id), ('subject_id', subject_id)):
            if not value:
                raise ValidationError(f"{name} is required")
        if not isinstance(period, int) or isinstance(period, bool) or period < 1:
            raise ValidationError("period must be a positive integer")
        try:
            return to_day_key(date)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid date: {date!r}")

    def _resolve_context(self, school_id, teacher_id, class_id, subject_id, date, period) -> LessonContext:
        teacher = self.db.get(school_id, 'users', teacher_id)
        subject = self.db.get(school_id, 'subjects', subject_id)
        class_data = self.db.get(school_id, 'classes', class_id)

        return LessonContext(
            school_id=school_id,
            teacher_id=teacher_id,
            teacher_name=full_name(teacher, 'Unknown Teacher'),
            class_id=class_id,
            class_name=(class_data or {}).get('class_name') or 'Unknown Class',
            subject_id=subject_id,
            subject_name=(subject or {}).get('name') or 'Unknown Subject',
            date=date,
            period_number=period
        )

    def record_class_attendance(self, school_id: str, teacher_id: str, class_id: str, subject_id: str,
                                date, period: int,
                                records: Union[Dict[str, str], Iterable[Dict[str, Any]]]) -> Dict[str, int]:
        """
        Record attendance for one lesson.

        Existing records for the lesson are updated in place, new ones are
        inserted. Students marked absent, late or excused are notified (with
        their parents) only when the status is new or changed. Students are
        processed concurrently; the call returns once all of them are done.

        Args:
            school_id (str): School identifier
            teacher_id (str): Teacher taking attendance
            class_id (str): Homeroom class
            subject_id (str): Subject of the lesson
            date: Lesson date (date, datetime or YYYY-MM-DD)
            period (int): Period number
            records: {student_id: status} or a list of {'student_id', 'status'}

        Returns:
            Dict[str, int]: Counts of created, updated and notified records

        Raises:
            ValidationError: On invalid input, before anything is written
        """
        day_key = self._validate_lesson(school_id, teacher_id, class_id, subject_id, date, period)
        statuses = self._normalize_records(records)

        context = self._resolve_context(school_id, teacher_id, class_id, subject_id, day_key, period)

        existing_by_student = {
            record['student_id']: record
            for record in self.get_class_session_attendance(school_id, class_id, subject_id, day_key, period)
        }

        summary = {'created': 0, 'updated': 0, 'notified': 0}
        first_error = None

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [
                pool.submit(self._record_student, context, student_id, status,
                            existing_by_student.get(student_id))
                for student_id, status in statuses.items()
            ]

            for future in futures:
                try:
                    outcome = future.result()
                except Exception as e:
                    self.logger.error(f"Failed to record attendance: {str(e)}")
                    if first_error is None:
                        first_error = e
                    continue
                summary[outcome['action']] += 1
                if outcome['notified']:
                    summary['notified'] += 1

        if first_error is not None:
            raise first_error

        self.logger.info(
            f"Attendance recorded for class {class_id}, subject {subject_id}, {day_key} period {period}: "
            f"{summary['created']} created, {summary['updated']} updated, {summary['notified']} notified"
        )
        return summary

    def _record_student(self, context: LessonContext, student_id: str, status: str,
                        existing: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        now = self.clock().isoformat()
        school_id = context.school_id

        student_name = full_name(self.db.get(school_id, 'users', student_id), 'Unknown Student')
        payload = {
            'student_id': student_id,
            'student_name': student_name,
            'teacher_id': context.teacher_id,
            'teacher_name': context.teacher_name,
            'class_id': context.class_id,
            'class_name': context.class_name,
            'subject_id': context.subject_id,
            'subject_name': context.subject_name,
            'date': context.date,
            'period_number': context.period_number,
            'status': status,
            'justified': status == 'excused',
            'updated_at': now,
        }

        if existing:
            record_id = existing['id']
            self.db.update(school_id, 'attendance', record_id, payload)
            action = 'updated'
        else:
            record_id = self.db.new_id()
            self.db.set(school_id, 'attendance', record_id, dict(
                payload, attendance_id=record_id, notified_parent=False, created_at=now
            ))
            action = 'created'

        notified = False
        status_changed = existing is None or existing.get('status') != status
        if status in NOTIFY_STATUSES and status_changed:
            parents_notified = self._notify_attendance(
                school_id, student_id, student_name, context.class_name, context.subject_name,
                status, context.date, context.period_number, related_id=record_id
            )
            notified = parents_notified is not None
            if parents_notified:
                try:
                    self.db.update(school_id, 'attendance', record_id, {'notified_parent': True})
                except Exception as e:
                    self.logger.error(f"Failed to flag notified record {record_id}: {str(e)}")

        return {'action': action, 'notified': notified}

    def create_attendance_notification(self, school_id: str, student_id: str, student_name: str,
                                       class_name: str, subject_name: str, status: str,
                                       date: str, period_number: int,
                                       related_id: Optional[str] = None) -> bool:
        """
        Notify a student and all of their parents about an absence, late arrival or excused absence.

        Failures are logged and reported as False, never raised.

        Returns:
            bool: True if every notification was processed
        """
        if status not in NOTIFY_STATUSES:
            return False
        return self._notify_attendance(school_id, student_id, student_name, class_name, subject_name,
                                       status, date, period_number, related_id) is not None

    def _notify_attendance(self, school_id, student_id, student_name, class_name, subject_name,
                           status, date, period_number, related_id=None) -> Optional[int]:
        """Returns the number of parent notifications stored, or None on failure."""
        params = {
            'student_name': student_name,
            'class_name': class_name,
            'subject_name': subject_name,
            'date': date,
            'period_number': period_number,
        }
        notification_type = f"attendance-{status}"

        try:
            self.notifications.create_notification(school_id, student_id, NotificationDraft(
                type=notification_type,
                params={**params, 'is_for_student': True},
                related_id=related_id,
                link='/student/attendance',
                metadata={'student_id': student_id, 'status': status},
                send_push=True
            ))

            parents = self.db.query(
                school_id, 'users',
                Where('role', '==', 'parent'),
                Where('children_ids', 'array-contains', student_id)
            )
            stored = 0
            for parent in parents:
                notification_id = self.notifications.create_notification(school_id, parent['id'], NotificationDraft(
                    type=notification_type,
                    params={**params, 'is_for_student': False},
                    related_id=related_id,
                    link='/parent/attendance',
                    metadata={'student_id': student_id, 'status': status},
                    send_push=True
                ))
                if notification_id:
                    stored += 1
            return stored

        except Exception as e:
            self.logger.error(f"Error creating attendance notification for {student_id}: {str(e)}")
            return None

    def submit_manual_attendance(self, school_id: str, teacher_id: str, class_id: str, subject_id: str,
                                 date, period: int, records) -> Dict[str, int]:
        """
        Record attendance for a lesson chosen by hand.

        Raises:
            SessionNotScheduledError: If the lesson is not in the class's timetable
        """
        day_key = self._validate_lesson(school_id, teacher_id, class_id, subject_id, date, period)
        if not self.timetables.check_class_session_exists(school_id, class_id, subject_id, day_key, period):
            raise SessionNotScheduledError(class_id, subject_id, day_key, period)
        return self.record_class_attendance(school_id, teacher_id, class_id, subject_id, day_key, period, records)

    def submit_current_class_attendance(self, school_id: str, teacher_id: str, records,
                                        now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Record attendance for the lesson the teacher is teaching right now.

        Raises:
            ValidationError: If the teacher has no lesson in progress
        """
        now = now or self.clock()
        sessions = self.timetables.get_classes_taught_by_teacher(school_id, teacher_id)
        current = detect_current_class(sessions, now)
        if current is None:
            raise ValidationError("No class is in session for this teacher")

        summary = self.record_class_attendance(
            school_id, teacher_id, current.class_id, current.subject_id,
            to_day_key(now), current.period, records
        )
        return {'current_class': current.to_dict(), **summary}

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_class_session_attendance(self, school_id: str, class_id: str, subject_id: str,
                                     date, period_number: int) -> List[Dict[str, Any]]:
        """Attendance records of one lesson."""
        return self.db.query(
            school_id, 'attendance',
            Where('class_id', '==', class_id),
            Where('subject_id', '==', subject_id),
            Where('date', '==', to_day_key(date)),
            Where('period_number', '==', period_number)
        )

    def get_class_attendance(self, school_id: str, class_id: str, date) -> List[Dict[str, Any]]:
        """All attendance records of a class on one day, ordered by period."""
        return self.db.query(
            school_id, 'attendance',
            Where('class_id', '==', class_id),
            Where('date', '==', to_day_key(date)),
            order_by='period_number'
        )

    def get_child_attendance(self, school_id: str, student_id: str, start_date=None, end_date=None,
                             parent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        A student's attendance history, newest first.

        Args:
            school_id (str): School identifier
            student_id (str): Student
            start_date: Inclusive lower bound
            end_date: Inclusive upper bound
            parent_id (str): When given, the parent must be linked to the student

        Raises:
            AuthorizationError: If parent_id is not a parent of the student
        """
        if parent_id:
            parent = self.db.get(school_id, 'users', parent_id)
            if not parent or student_id not in (parent.get('children_ids') or []):
                raise AuthorizationError(f"User {parent_id} is not a parent of student {student_id}")

        predicates = [Where('student_id', '==', student_id)]
        if start_date:
            predicates.append(Where('date', '>=', to_day_key(start_date)))
        if end_date:
            predicates.append(Where('date', '<=', to_day_key(end_date)))

        return self.db.query(school_id, 'attendance', *predicates, order_by='date', descending=True)

    def get_class_students(self, school_id: str, class_id: str) -> List[Dict[str, Any]]:
        class_data = self.db.get(school_id, 'classes', class_id) or {}
        students = []
        for student_id in class_data.get('student_ids') or []:
            student = self.db.get(school_id, 'users', student_id)
            if student:
                students.append(student)
        return students

    def check_existing_attendance_records(self, school_id: str, class_id: str, subject_id: Optional[str] = None,
                                          date=None, period_number: Optional[int] = None) -> Dict[str, Any]:
        """
        Build the attendance form for a lesson.

        Every student of the class starts as present; stored records override
        that when subject, date and period are all given.
        """
        students = self.get_class_students(school_id, class_id)
        attendance_data = {student['id']: 'present' for student in students}
        existing = []

        if subject_id and date and period_number:
            try:
                existing = self.get_class_session_attendance(school_id, class_id, subject_id, date, period_number)
            except Exception as e:
                self.logger.error(f"Error loading existing attendance: {str(e)}")
                existing = []
            for record in existing:
                attendance_data[record['student_id']] = record['status']

        return {
            'students': students,
            'attendance_data': attendance_data,
            'has_existing_records': bool(existing),
            'existing_records': existing,
        }

    def load_teacher_class_data(self, school_id: str, teacher_id: str,
                                now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Everything a teacher's attendance page needs: sessions, the distinct
        classes and subjects taught, and the lesson in progress.
        """
        sessions = self.timetables.get_classes_taught_by_teacher(school_id, teacher_id)

        classes: Dict[str, Dict[str, str]] = {}
        subjects: Dict[str, Dict[str, str]] = {}
        for session in sessions:
            classes[session.class_id] = {'class_id': session.class_id, 'class_name': session.class_name}
            subjects[session.subject_id] = {'subject_id': session.subject_id, 'name': session.subject_name}

        current = detect_current_class(sessions, now or self.clock())

        return {
            'class_sessions': [session.to_dict() for session in sessions],
            'classes': list(classes.values()),
            'subjects': list(subjects.values()),
            'current_class': current.to_dict() if current else None,
        }
