# tests/conftest.py
"""
Shared fixtures: an in-memory document store seeded with one school, a
controllable clock and a push sender that records what it was asked to send.

Seeded school ``school-1``:
- class ``c1`` (10A) with students s1, s2, s3
- teacher t1 teaching Mathematics (Monday 3, Tuesday 1) and Biology (Monday 4)
- parents p1 (child s1) and p2 (children s1, s2), admin a1
"""

from datetime import datetime, timedelta

import pytest

from classbook.modules.database_manager import DatabaseManager
from classbook.modules.notification_settings import NotificationSettingsManager
from classbook.modules.notification_system import NotificationSystem
from classbook.modules.push_service import PushDispatcher
from classbook.modules.timetable_manager import TimetableManager
from classbook.modules.attendance_manager import AttendanceManager
from classbook.modules.report_generator import ReportGenerator

SCHOOL = 'school-1'

# 2025-03-03 is a Monday; 09:30 falls in period 3 (09:10-09:50)
MONDAY_0930 = datetime(2025, 3, 3, 9, 30)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def set(self, moment):
        self.now = moment

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingSender:
    def __init__(self):
        self.messages = []

    def __call__(self, push):
        self.messages.append(push)


def seed_school(db, school_id=SCHOOL):
    users = {
        't1': {'first_name': 'Ivan', 'last_name': 'Petrov', 'role': 'teacher', 'email': 't1@example.org'},
        's1': {'first_name': 'Maria', 'last_name': 'Ivanova', 'role': 'student', 'email': 's1@example.org'},
        's2': {'first_name': 'Georgi', 'last_name': 'Dimitrov', 'role': 'student'},
        's3': {'first_name': 'Elena', 'last_name': 'Koleva', 'role': 'student'},
        'p1': {'first_name': 'Anna', 'last_name': 'Ivanova', 'role': 'parent', 'children_ids': ['s1']},
        'p2': {'first_name': 'Petar', 'last_name': 'Dimitrov', 'role': 'parent', 'children_ids': ['s1', 's2']},
        'a1': {'first_name': 'Admin', 'last_name': 'User', 'role': 'admin'},
    }
    for user_id, data in users.items():
        db.set(school_id, 'users', user_id, data)

    db.set(school_id, 'classes', 'c1', {'class_name': '10A', 'student_ids': ['s1', 's2', 's3']})
    db.set(school_id, 'subjects', 'math', {'name': 'Mathematics'})
    db.set(school_id, 'subjects', 'bio', {'name': 'Biology'})

    TimetableManager(db).create_or_update_timetable(school_id, 'c1', [
        {'day': 'Monday', 'period': 3, 'subject_id': 'math', 'teacher_id': 't1'},
        {'day': 'Monday', 'period': 4, 'subject_id': 'bio', 'teacher_id': 't1'},
        {'day': 'Вторник', 'period': 1, 'subject_id': 'math', 'teacher_id': 't1',
         'start_time': '07:30', 'end_time': '08:10'},
    ])


def notifications_of(db, user_id, school_id=SCHOOL):
    return db.query(school_id, f"users/{user_id}/notifications", order_by='created_at')


@pytest.fixture
def db():
    manager = DatabaseManager(':memory:')
    yield manager
    manager.close_all_connections()


@pytest.fixture
def clock():
    return FixedClock(MONDAY_0930)


@pytest.fixture
def seeded_db(db):
    seed_school(db)
    return db


@pytest.fixture
def push_sender():
    return RecordingSender()


@pytest.fixture
def push_dispatcher(push_sender, clock):
    dispatcher = PushDispatcher(sender=push_sender, clock=clock)
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture
def settings_manager(seeded_db, clock):
    return NotificationSettingsManager(seeded_db, clock=clock)


@pytest.fixture
def notification_system(seeded_db, settings_manager, push_dispatcher, clock):
    return NotificationSystem(seeded_db, settings_manager=settings_manager,
                              push_dispatcher=push_dispatcher, clock=clock)


@pytest.fixture
def timetable_manager(seeded_db):
    return TimetableManager(seeded_db)


@pytest.fixture
def attendance_manager(seeded_db, notification_system, timetable_manager, clock):
    return AttendanceManager(seeded_db, notification_system, timetable_manager, clock=clock, max_workers=4)


@pytest.fixture
def report_generator(seeded_db, tmp_path):
    return ReportGenerator(seeded_db, output_dir=str(tmp_path / 'reports'))
