# tests/test_app.py
import pytest

from app import create_app
from config import TestingConfig, validate_config

from conftest import SCHOOL, MONDAY_0930, FixedClock, RecordingSender, notifications_of, seed_school


@pytest.fixture
def push_messages():
    return RecordingSender()


@pytest.fixture
def app(push_messages, tmp_path, monkeypatch):
    monkeypatch.setattr(TestingConfig, 'REPORTS_FOLDER', tmp_path / 'reports')
    application = create_app('testing', clock=FixedClock(MONDAY_0930), push_sender=push_messages)
    seed_school(application.extensions['classbook'].db)
    yield application
    svc = application.extensions['classbook']
    if svc.push is not None:
        svc.push.shutdown()
    svc.db.close_all_connections()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    def _login(user_id, role, school_id=SCHOOL):
        with client.session_transaction() as sess:
            sess['user_id'] = user_id
            sess['role'] = role
            sess['school_id'] = school_id
    return _login


def test_health(client):
    r = client.get('/health')
    assert r.status_code == 200
    assert r.get_json() == {'success': True, 'status': 'ok'}


def test_testing_config_is_valid():
    assert validate_config(TestingConfig) == []


def test_requires_session(client):
    r = client.get('/api/notifications')
    assert r.status_code == 403
    assert r.get_json()['success'] is False


def test_students_cannot_record_attendance(client, login):
    login('s1', 'student')
    r = client.post('/api/attendance', json={
        'class_id': 'c1', 'subject_id': 'math', 'date': '2025-03-03', 'period': 3, 'records': {'s1': 'present'}
    })
    assert r.status_code == 403


def test_record_attendance_and_parent_inbox(app, client, login, push_messages):
    login('t1', 'teacher')
    r = client.post('/api/attendance', json={
        'class_id': 'c1', 'subject_id': 'math', 'date': '2025-03-03', 'period': 3,
        'records': [{'student_id': 's1', 'status': 'absent'}, {'student_id': 's2', 'status': 'present'}]
    })
    assert r.status_code == 200
    assert r.get_json()['data'] == {'created': 2, 'updated': 0, 'notified': 1}

    login('p1', 'parent')
    r = client.get('/api/notifications')
    inbox = r.get_json()['data']
    assert [n['type'] for n in inbox] == ['attendance-absent']
    assert inbox[0]['link'] == '/parent/attendance'

    r = client.get('/api/notifications/counts')
    assert r.get_json()['unread'] == 1
    assert r.get_json()['by_category']['attendance'] == 1

    r = client.post(f"/api/notifications/{inbox[0]['id']}/read")
    assert r.status_code == 200
    assert client.get('/api/notifications/counts').get_json()['unread'] == 0

    app.extensions['classbook'].push.flush()
    assert sorted(m.user_id for m in push_messages.messages) == ['p1', 'p2', 's1']


def test_bad_attendance_payloads(client, login):
    login('t1', 'teacher')

    r = client.post('/api/attendance', json={'class_id': 'c1'})
    assert r.status_code == 400
    assert 'Missing required fields' in r.get_json()['message']

    r = client.post('/api/attendance', json={
        'class_id': 'c1', 'subject_id': 'math', 'date': '2025-03-03', 'period': 'third', 'records': {}
    })
    assert r.status_code == 400

    r = client.post('/api/attendance', data='not json', content_type='text/plain')
    assert r.status_code == 400


def test_manual_attendance_for_unscheduled_lesson(client, login):
    login('t1', 'teacher')
    r = client.post('/api/attendance/manual', json={
        'class_id': 'c1', 'subject_id': 'bio', 'date': '2025-03-03', 'period': 1, 'records': {'s1': 'present'}
    })
    assert r.status_code == 400
    assert 'No scheduled session' in r.get_json()['message']


def test_current_class_and_teacher_schedule(client, login):
    login('t1', 'teacher')

    r = client.get('/api/teachers/me/classes')
    assert r.get_json()['data']['current_class']['subject_name'] == 'Mathematics'

    r = client.post('/api/attendance/current', json={'records': {'s3': 'late'}})
    assert r.status_code == 200
    assert r.get_json()['data']['current_class']['period'] == 3

    r = client.get('/api/attendance/form', query_string={
        'class_id': 'c1', 'subject_id': 'math', 'date': '2025-03-03', 'period': 3
    })
    assert r.get_json()['data']['attendance_data']['s3'] == 'late'

    r = client.get('/api/attendance/session-exists', query_string={
        'class_id': 'c1', 'subject_id': 'math', 'date': '2025-03-04', 'period': 1
    })
    assert r.get_json()['exists'] is True


def test_student_data_visibility(client, login):
    login('p1', 'parent')
    assert client.get('/api/students/s1/attendance').status_code == 200
    assert client.get('/api/students/s2/attendance').status_code == 403

    r = client.get('/api/students/s1/report', query_string={'start_date': '2025-03-01', 'end_date': '2025-03-31'})
    assert r.status_code == 200
    assert r.get_json()['data']['total_days'] == 0


def test_school_stats_with_export(client, login):
    login('a1', 'admin')
    r = client.get('/api/school/attendance-stats', query_string={
        'start_date': '2025-03-01', 'end_date': '2025-03-31', 'format': 'csv'
    })
    body = r.get_json()
    assert r.status_code == 200
    assert body['data']['total_students'] == 3
    assert body['export']['success'] is True

    login('t1', 'teacher')
    assert client.get('/api/school/attendance-stats', query_string={
        'start_date': '2025-03-01', 'end_date': '2025-03-31'
    }).status_code == 403


def test_timetable_endpoints(client, login):
    login('a1', 'admin')

    assert client.get('/api/timetables/c1').get_json()['data']['homeroom_class_id'] == 'c1'
    assert client.get('/api/timetables/c9').status_code == 404

    r = client.post('/api/timetables', json={'homeroom_class_id': 'c2', 'entries': [
        {'day': 'Monday', 'period': 1, 'subject_id': 'math', 'teacher_id': 't1'},
        {'day': 'Monday', 'period': 1, 'subject_id': 'bio', 'teacher_id': 't1'},
    ]})
    assert r.status_code == 400
    assert len(r.get_json()['conflicts']) == 1

    r = client.post('/api/timetables/conflicts', json={'homeroom_class_id': 'c1', 'entries': [
        {'day': 'Monday', 'period': 3, 'subject_id': 'bio', 'teacher_id': 't1'},
    ]})
    body = r.get_json()
    assert body['class_conflicts'][0]['existing_subject'] == 'Mathematics'
    assert body['teacher_conflicts'][0]['teacher_name'] == 'Ivan Petrov'


def test_notification_settings(client, login):
    login('s1', 'student')

    r = client.get('/api/notifications/settings')
    assert r.get_json()['data']['push_enabled'] is True

    r = client.put('/api/notifications/settings', json={'push_enabled': False})
    assert r.get_json()['data']['push_enabled'] is False

    r = client.put('/api/notifications/settings', json={'do_not_disturb_start': 'noon'})
    assert r.status_code == 400


def test_announcement_by_role(app, client, login):
    login('a1', 'admin')
    r = client.post('/api/announcements', json={'message': 'Parent meeting on Thursday', 'roles': ['parent']})
    assert r.get_json()['count'] == 2

    db = app.extensions['classbook'].db
    assert notifications_of(db, 'p1')[0]['link'] == '/parent/dashboard/school-1'
    assert notifications_of(db, 's1') == []

    assert client.post('/api/announcements', json={'message': 'Nobody'}).status_code == 400


def test_notification_housekeeping(app, client, login):
    login('a1', 'admin')
    client.post('/api/announcements', json={'message': 'One', 'user_ids': ['s1']})
    client.post('/api/announcements', json={'message': 'Two', 'user_ids': ['s1']})

    login('s1', 'student')
    assert client.post('/api/notifications/read-all', json={}).get_json()['count'] == 2
    assert client.delete('/api/notifications/read').get_json()['count'] == 2
    assert client.get('/api/notifications').get_json()['data'] == []
    assert client.post('/api/notifications/cleanup').get_json()['count'] == 0


def test_announcement_with_unknown_priority_is_rejected(app, client, login):
    login('a1', 'admin')
    r = client.post('/api/announcements', json={'message': 'Hi', 'user_ids': ['s1', 's2'], 'priority': 'critical'})
    assert r.status_code == 400
    assert 'priority' in r.get_json()['message']
    assert notifications_of(app.extensions['classbook'].db, 's1') == []


def test_report_export_needs_export_permission(client, login):
    query = {'start_date': '2025-03-01', 'end_date': '2025-03-31', 'format': 'csv'}

    login('p1', 'parent')
    assert client.get('/api/students/s1/report', query_string=query).status_code == 403

    login('t1', 'teacher')
    r = client.get('/api/students/s1/report', query_string=query)
    assert r.status_code == 200
    assert r.get_json()['export']['success'] is True


def test_unknown_role_is_refused_everywhere(client, login):
    login('x1', 'janitor')
    assert client.get('/api/notifications').status_code == 403
    assert client.get('/api/timetables/c1').status_code == 403
