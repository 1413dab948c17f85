# tests/test_timetable_manager.py
import pytest

from classbook.modules.errors import TimetableConflictError, ValidationError

from conftest import SCHOOL


def test_session_exists_only_for_scheduled_lessons(timetable_manager):
    assert timetable_manager.does_class_session_exist(SCHOOL, 'c1', 'math', 'Monday', 3)
    assert timetable_manager.does_class_session_exist(SCHOOL, 'c1', 'math', 'понеделник', 3)
    assert not timetable_manager.does_class_session_exist(SCHOOL, 'c1', 'math', 'Monday', 4)
    assert not timetable_manager.does_class_session_exist(SCHOOL, 'c1', 'bio', 'Tuesday', 1)
    assert not timetable_manager.does_class_session_exist(SCHOOL, 'c2', 'math', 'Monday', 3)


def test_session_exists_by_date(timetable_manager):
    assert timetable_manager.check_class_session_exists(SCHOOL, 'c1', 'math', '2025-03-03', 3)
    assert timetable_manager.check_class_session_exists(SCHOOL, 'c1', 'math', '2025-03-04', 1)
    assert not timetable_manager.check_class_session_exists(SCHOOL, 'c1', 'math', '2025-03-05', 3)


def test_classes_taught_by_teacher(timetable_manager):
    sessions = timetable_manager.get_classes_taught_by_teacher(SCHOOL, 't1')

    assert [(s.day, s.period, s.subject_name) for s in sessions] == [
        ('Monday', 3, 'Mathematics'),
        ('Monday', 4, 'Biology'),
        ('Tuesday', 1, 'Mathematics'),
    ]
    assert all(s.class_name == '10A' for s in sessions)
    # default bell schedule fills in missing times
    assert (sessions[0].start_time, sessions[0].end_time) == ('09:10', '09:50')
    assert timetable_manager.get_classes_taught_by_teacher(SCHOOL, 'nobody') == []


def test_teacher_sessions_use_timetable_bell_and_skip_missing_documents(timetable_manager, seeded_db):
    seeded_db.set(SCHOOL, 'classes', 'c2', {'class_name': '11B', 'student_ids': []})
    timetable_manager.create_or_update_timetable(SCHOOL, 'c2', [
        {'day': 'Wednesday', 'period': 1, 'subject_id': 'math', 'teacher_id': 't2'},
        {'day': 'Wednesday', 'period': 2, 'subject_id': 'chemistry', 'teacher_id': 't2'},
    ], periods=[{'period': 1, 'start_time': '08:00', 'end_time': '08:45'}])
    timetable_manager.create_or_update_timetable(SCHOOL, 'ghost-class', [
        {'day': 'Thursday', 'period': 1, 'subject_id': 'math', 'teacher_id': 't2'},
    ])

    sessions = timetable_manager.get_classes_taught_by_teacher(SCHOOL, 't2')

    assert len(sessions) == 1
    assert (sessions[0].class_name, sessions[0].start_time, sessions[0].end_time) == ('11B', '08:00', '08:45')


def test_create_or_update_replaces_existing(timetable_manager):
    original = timetable_manager.get_timetable(SCHOOL, 'c1')

    timetable_id = timetable_manager.create_or_update_timetable(SCHOOL, 'c1', [
        {'day': 'Friday', 'period': 2, 'subject_id': 'bio', 'teacher_id': 't1'},
        {'day': 'Friday', 'period': 3, 'is_free_period': True},
    ])

    assert timetable_id == original['id']
    assert len(timetable_manager.get_all_timetables(SCHOOL)) == 1
    assert not timetable_manager.does_class_session_exist(SCHOOL, 'c1', 'math', 'Monday', 3)
    assert timetable_manager.does_class_session_exist(SCHOOL, 'c1', 'bio', 'Friday', 2)


def test_duplicate_slot_is_rejected(timetable_manager):
    with pytest.raises(TimetableConflictError) as excinfo:
        timetable_manager.create_or_update_timetable(SCHOOL, 'c1', [
            {'day': 'Monday', 'period': 1, 'subject_id': 'math', 'teacher_id': 't1'},
            {'day': 'понеделник', 'period': 1, 'subject_id': 'bio', 'teacher_id': 't1'},
        ])

    assert excinfo.value.conflicts == [
        {'day': 'Monday', 'period': 1, 'existing_subject': 'math', 'new_subject': 'bio'}
    ]
    # the stored timetable is untouched
    assert timetable_manager.does_class_session_exist(SCHOOL, 'c1', 'math', 'Monday', 3)


@pytest.mark.parametrize('entry', [
    {'day': 'Someday', 'period': 1, 'subject_id': 'math'},
    {'day': 'Monday', 'period': 0, 'subject_id': 'math'},
    {'day': 'Monday', 'period': '1', 'subject_id': 'math'},
    {'day': 'Monday', 'period': 1},
    {'day': 'Monday', 'period': 1, 'subject_id': 'math', 'start_time': '8am'},
])
def test_invalid_entries(timetable_manager, entry):
    with pytest.raises(ValidationError):
        timetable_manager.create_or_update_timetable(SCHOOL, 'c1', [entry])


def test_invalid_bell_schedule(timetable_manager):
    with pytest.raises(ValidationError):
        timetable_manager.create_or_update_timetable(SCHOOL, 'c1', [], periods=[{'period': 1}])


def test_delete_timetable(timetable_manager):
    timetable = timetable_manager.get_timetable(SCHOOL, 'c1')
    timetable_manager.delete_timetable(SCHOOL, timetable['id'])
    assert timetable_manager.get_timetable(SCHOOL, 'c1') is None


def test_check_timetable_conflicts(timetable_manager):
    conflicts = timetable_manager.check_timetable_conflicts(SCHOOL, 'c1', [
        {'day': 'Monday', 'period': 3, 'subject_id': 'bio'},
        {'day': 'Monday', 'period': 5, 'subject_id': 'bio'},
        {'day': 'Tuesday', 'period': 1, 'subject_id': 'art'},
    ])
    assert conflicts == [
        {'day': 'Monday', 'period': 3, 'existing_subject': 'Mathematics', 'new_subject': 'Biology'},
        {'day': 'Tuesday', 'period': 1, 'existing_subject': 'Mathematics', 'new_subject': 'Unknown Subject'},
    ]

    existing_id = timetable_manager.get_timetable(SCHOOL, 'c1')['id']
    assert timetable_manager.check_timetable_conflicts(
        SCHOOL, 'c1', [{'day': 'Monday', 'period': 3, 'subject_id': 'bio'}], exclude_timetable_id=existing_id
    ) == []
    assert timetable_manager.check_timetable_conflicts(SCHOOL, 'c9', [{'day': 'Monday', 'period': 3}]) == []


def test_check_teacher_conflicts(timetable_manager):
    conflicts = timetable_manager.check_teacher_conflicts(SCHOOL, [
        {'day': 'Monday', 'period': 4, 'subject_id': 'math', 'teacher_id': 't1'},
        {'day': 'Monday', 'period': 5, 'subject_id': 'math', 'teacher_id': 't1'},
        {'day': 'Monday', 'period': 4, 'subject_id': 'math', 'teacher_id': 't9'},
        {'day': 'Monday', 'period': 4, 'subject_id': 'math'},
    ])
    assert conflicts == [{
        'teacher_id': 't1', 'teacher_name': 'Ivan Petrov', 'day': 'Monday', 'period': 4, 'class_name': '10A'
    }]
