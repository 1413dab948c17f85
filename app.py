"""
Classbook - Main Application

This module builds the Flask application that exposes the Classbook core as a
JSON API: attendance recording, timetable checks, attendance reports and
user notifications. Sign-in is handled elsewhere; the session is expected to
carry user_id, role and school_id.

Features:
- Attendance recording (current class, manual entry, explicit lesson)
- Session existence checks and teacher schedules
- Student reports and school statistics with Excel/CSV export
- Notification listing, counting, read state, deletion and settings
- Admin announcements fanned out to many users
"""

from flask import Flask, Blueprint, current_app, g, jsonify, request, session
from werkzeug.exceptions import HTTPException
from datetime import datetime
from functools import wraps
import logging

from config import LOG_FORMAT, get_config, init_config
from classbook.modules.database_manager import DatabaseManager, Where
from classbook.modules.errors import (
    AuthorizationError, ClassbookError, DocumentNotFoundError, TimetableConflictError, ValidationError
)
from classbook.modules.auth_manager import ActingUser, AuthManager, assert_role, has_permission, roles_with_permission
from classbook.modules.notification_settings import NotificationSettingsManager
from classbook.modules.notification_system import NotificationDraft, NotificationSystem
from classbook.modules.push_service import EmailSender, PushDispatcher
from classbook.modules.timetable_manager import TimetableManager
from classbook.modules.attendance_manager import AttendanceManager
from classbook.modules.report_generator import ReportGenerator

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')


class Services:
    """Core components shared by the request handlers."""

    def __init__(self, app_config, clock=None, push_sender=None):
        self.clock = clock or datetime.now
        self.db = DatabaseManager(app_config['DATABASE_PATH'])
        self.auth = AuthManager(self.db)
        self.settings = NotificationSettingsManager(self.db, clock=self.clock)

        self.push = None
        if app_config['NOTIFICATIONS_PUSH_ENABLED'] or push_sender is not None:
            email_sender = None
            if app_config['NOTIFICATIONS_EMAIL_ENABLED']:
                email_sender = EmailSender({
                    'smtp_server': app_config['MAIL_SERVER'],
                    'smtp_port': app_config['MAIL_PORT'],
                    'username': app_config['MAIL_USERNAME'],
                    'password': app_config['MAIL_PASSWORD'],
                    'sender': app_config['MAIL_DEFAULT_SENDER'],
                    'use_tls': app_config['MAIL_USE_TLS'],
                }, base_url=app_config['APP_BASE_URL'])
            self.push = PushDispatcher(sender=push_sender, email_sender=email_sender, clock=self.clock)

        self.notifications = NotificationSystem(
            self.db,
            settings_manager=self.settings,
            push_dispatcher=self.push,
            clock=self.clock,
            batch_size=app_config['NOTIFICATION_BATCH_SIZE'],
            retention_days=app_config['NOTIFICATION_RETENTION_DAYS']
        )
        self.timetables = TimetableManager(self.db)
        self.attendance = AttendanceManager(
            self.db, self.notifications, self.timetables,
            clock=self.clock, max_workers=app_config['ATTENDANCE_MAX_WORKERS']
        )
        self.reports = ReportGenerator(self.db, output_dir=str(app_config['REPORTS_FOLDER']))


def services() -> Services:
    return current_app.extensions['classbook']


def permission_required(*permissions):
    """Decorator that resolves the acting user from the session and checks the role holds one of the permissions"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = None
            if 'user_id' in session:
                user = ActingUser(
                    user_id=session['user_id'],
                    role=session.get('role', ''),
                    school_id=session.get('school_id', '')
                )
            g.user = assert_role(user, roles_with_permission(*permissions))
            if not g.user.school_id:
                raise AuthorizationError("No school selected for this session")
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _int(value, name):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _required(data, *names):
    missing = [name for name in names if data.get(name) in (None, '')]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    return [data[name] for name in names]


def _flag(value):
    return str(value).lower() in ['true', 'on', '1']


# ----------------------------------------------------------------------
# Attendance
# ----------------------------------------------------------------------

@api.route('/attendance', methods=['POST'])
@permission_required('record_attendance')
def record_attendance():
    """Record attendance for an explicit lesson"""
    data = _json_body()
    class_id, subject_id, date, period, records = _required(
        data, 'class_id', 'subject_id', 'date', 'period', 'records'
    )
    summary = services().attendance.record_class_attendance(
        g.user.school_id, g.user.user_id, class_id, subject_id, date, _int(period, 'period'), records
    )
    return jsonify({'success': True, 'data': summary})


@api.route('/attendance/manual', methods=['POST'])
@permission_required('record_attendance')
def submit_manual_attendance():
    """Record attendance for a lesson picked by hand; the lesson must be scheduled"""
    data = _json_body()
    class_id, subject_id, date, period, records = _required(
        data, 'class_id', 'subject_id', 'date', 'period', 'records'
    )
    summary = services().attendance.submit_manual_attendance(
        g.user.school_id, g.user.user_id, class_id, subject_id, date, _int(period, 'period'), records
    )
    return jsonify({'success': True, 'data': summary})


@api.route('/attendance/current', methods=['POST'])
@permission_required('take_current_class')
def submit_current_class_attendance():
    """Record attendance for the lesson the teacher is teaching now"""
    records, = _required(_json_body(), 'records')
    result = services().attendance.submit_current_class_attendance(g.user.school_id, g.user.user_id, records)
    return jsonify({'success': True, 'data': result})


@api.route('/attendance/form')
@permission_required('record_attendance')
def attendance_form():
    """Roster of a class with stored statuses for a lesson"""
    class_id, = _required(request.args, 'class_id')
    period = request.args.get('period')
    result = services().attendance.check_existing_attendance_records(
        g.user.school_id, class_id,
        request.args.get('subject_id'),
        request.args.get('date'),
        _int(period, 'period') if period else None
    )
    return jsonify({'success': True, 'data': result})


@api.route('/attendance/session-exists')
@permission_required('record_attendance')
def session_exists():
    """Check whether a lesson is in the class's timetable"""
    class_id, subject_id, date, period = _required(request.args, 'class_id', 'subject_id', 'date', 'period')
    exists = services().timetables.check_class_session_exists(
        g.user.school_id, class_id, subject_id, date, _int(period, 'period')
    )
    return jsonify({'success': True, 'exists': exists})


@api.route('/attendance/class/<class_id>')
@permission_required('view_all_attendance')
def class_attendance(class_id):
    date, = _required(request.args, 'date')
    records = services().attendance.get_class_attendance(g.user.school_id, class_id, date)
    return jsonify({'success': True, 'data': records})


@api.route('/teachers/me/classes')
@permission_required('take_current_class')
def teacher_classes():
    """Lessons, classes and subjects of the signed-in teacher, with the lesson in progress"""
    data = services().attendance.load_teacher_class_data(g.user.school_id, g.user.user_id)
    return jsonify({'success': True, 'data': data})


@api.route('/students/<student_id>/attendance')
@permission_required('view_all_attendance', 'view_own_attendance', 'view_child_attendance')
def student_attendance(student_id):
    svc = services()
    svc.auth.assert_can_view_student(g.user, student_id)
    records = svc.attendance.get_child_attendance(
        g.user.school_id, student_id,
        request.args.get('start_date'), request.args.get('end_date')
    )
    return jsonify({'success': True, 'data': records})


# ----------------------------------------------------------------------
# Reports
# ----------------------------------------------------------------------

@api.route('/students/<student_id>/report')
@permission_required('view_all_attendance', 'view_own_attendance', 'view_child_attendance')
def student_report(student_id):
    """Attendance report of one student; ?format=excel|csv also writes an export file"""
    svc = services()
    svc.auth.assert_can_view_student(g.user, student_id)
    start_date, end_date = _required(request.args, 'start_date', 'end_date')
    report = svc.reports.generate_attendance_report(g.user.school_id, student_id, start_date, end_date)

    response = {'success': True, 'data': report.to_dict()}
    output_format = request.args.get('format')
    if output_format and not has_permission(g.user.role, 'export_reports'):
        raise AuthorizationError(f"Role '{g.user.role}' may not export reports")
    if output_format:
        response['export'] = svc.reports.export_attendance_report(report, output_format)
    return jsonify(response)


@api.route('/school/attendance-stats')
@permission_required('view_school_stats')
def school_stats():
    start_date, end_date = _required(request.args, 'start_date', 'end_date')
    svc = services()
    stats = svc.reports.get_school_attendance_stats(g.user.school_id, start_date, end_date)

    response = {'success': True, 'data': stats}
    output_format = request.args.get('format')
    if output_format and not has_permission(g.user.role, 'export_reports'):
        raise AuthorizationError(f"Role '{g.user.role}' may not export reports")
    if output_format:
        response['export'] = svc.reports.export_attendance_report(stats, output_format)
    return jsonify(response)


# ----------------------------------------------------------------------
# Timetables
# ----------------------------------------------------------------------

@api.route('/timetables/<class_id>')
@permission_required('view_timetables')
def get_timetable(class_id):
    timetable = services().timetables.get_timetable(g.user.school_id, class_id)
    if timetable is None:
        raise DocumentNotFoundError(g.user.school_id, 'timetables', class_id)
    return jsonify({'success': True, 'data': timetable})


@api.route('/timetables', methods=['POST'])
@permission_required('manage_timetables')
def save_timetable():
    data = _json_body()
    class_id, = _required(data, 'homeroom_class_id')
    timetable_id = services().timetables.create_or_update_timetable(
        g.user.school_id, class_id, data.get('entries') or [], data.get('periods')
    )
    return jsonify({'success': True, 'timetable_id': timetable_id})


@api.route('/timetables/conflicts', methods=['POST'])
@permission_required('manage_timetables')
def timetable_conflicts():
    data = _json_body()
    entries = data.get('entries') or []
    svc = services()
    return jsonify({
        'success': True,
        'class_conflicts': svc.timetables.check_timetable_conflicts(
            g.user.school_id, data.get('homeroom_class_id'), entries, data.get('exclude_timetable_id')
        ),
        'teacher_conflicts': svc.timetables.check_teacher_conflicts(
            g.user.school_id, entries, data.get('exclude_timetable_id')
        ),
    })


# ----------------------------------------------------------------------
# Notifications
# ----------------------------------------------------------------------

@api.route('/notifications')
@permission_required('manage_own_notifications')
def list_notifications():
    notifications = services().notifications.get_user_notifications(
        g.user.school_id, g.user.user_id,
        limit=_int(request.args.get('limit', 50), 'limit'),
        category=request.args.get('category'),
        only_unread=_flag(request.args.get('only_unread', 'false')),
        start_after=request.args.get('start_after')
    )
    return jsonify({'success': True, 'data': notifications})


@api.route('/notifications/counts')
@permission_required('manage_own_notifications')
def notification_counts():
    svc = services()
    return jsonify({
        'success': True,
        'unread': svc.notifications.get_unread_count(g.user.school_id, g.user.user_id),
        'by_category': svc.notifications.get_notification_counts_by_category(
            g.user.school_id, g.user.user_id, only_unread=_flag(request.args.get('only_unread', 'false'))
        ),
    })


@api.route('/notifications/<notification_id>/read', methods=['POST'])
@permission_required('manage_own_notifications')
def mark_notification_read(notification_id):
    services().notifications.mark_as_read(g.user.school_id, g.user.user_id, notification_id)
    return jsonify({'success': True})


@api.route('/notifications/read-all', methods=['POST'])
@permission_required('manage_own_notifications')
def mark_all_notifications_read():
    data = request.get_json(silent=True) or {}
    count = services().notifications.mark_all_as_read(g.user.school_id, g.user.user_id, data.get('category'))
    return jsonify({'success': True, 'count': count})


@api.route('/notifications/read', methods=['DELETE'])
@permission_required('manage_own_notifications')
def delete_read_notifications():
    count = services().notifications.delete_all_read(g.user.school_id, g.user.user_id)
    return jsonify({'success': True, 'count': count})


@api.route('/notifications/<notification_id>', methods=['DELETE'])
@permission_required('manage_own_notifications')
def delete_notification(notification_id):
    services().notifications.delete_notification(g.user.school_id, g.user.user_id, notification_id)
    return jsonify({'success': True})


@api.route('/notifications/settings', methods=['GET', 'PUT'])
@permission_required('manage_own_notifications')
def notification_settings():
    manager = services().settings
    if request.method == 'PUT':
        settings = manager.update_notification_settings(g.user.school_id, g.user.user_id, _json_body())
    else:
        settings = manager.get_notification_settings(g.user.school_id, g.user.user_id)
    return jsonify({'success': True, 'data': settings.to_dict()})


@api.route('/notifications/cleanup', methods=['POST'])
@permission_required('manage_own_notifications')
def cleanup_notifications():
    count = services().notifications.cleanup_notifications(g.user.school_id, g.user.user_id)
    return jsonify({'success': True, 'count': count})


@api.route('/announcements', methods=['POST'])
@permission_required('send_announcements')
def send_announcement():
    """Send a system announcement to listed users, or to every user with one of the listed roles"""
    data = _json_body()
    message, = _required(data, 'message')
    svc = services()

    user_ids = list(data.get('user_ids') or [])
    roles = data.get('roles') or []
    if roles:
        user_ids += [user['id'] for user in svc.db.query(g.user.school_id, 'users', Where('role', 'in', roles))]
    if not user_ids:
        raise ValidationError("No recipients given")

    draft = NotificationDraft(
        type='system-announcement',
        params={'message': message, 'priority': data.get('priority')},
        title=data.get('title'),
        send_push=True
    )
    created = svc.notifications.create_notification_bulk(g.user.school_id, user_ids, draft)
    return jsonify({'success': True, 'count': len(created)})


# ----------------------------------------------------------------------
# Error handling
# ----------------------------------------------------------------------

def _error(message, status):
    return jsonify({'success': False, 'message': message}), status


def register_error_handlers(app):
    @app.errorhandler(TimetableConflictError)
    def handle_conflict(e):
        return jsonify({'success': False, 'message': str(e), 'conflicts': e.conflicts}), 400

    @app.errorhandler(ValidationError)
    def handle_validation(e):
        return _error(str(e), 400)

    @app.errorhandler(AuthorizationError)
    def handle_authorization(e):
        return _error(str(e), 403)

    @app.errorhandler(DocumentNotFoundError)
    def handle_not_found(e):
        return _error(str(e), 404)

    @app.errorhandler(ClassbookError)
    def handle_classbook_error(e):
        logger.error(f"Request failed: {str(e)}")
        return _error(str(e), 500)

    @app.errorhandler(HTTPException)
    def handle_http(e):
        return _error(e.description, e.code)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception(f"Unexpected error: {str(e)}")
        return _error('An unexpected error occurred', 500)


def create_app(config_name=None, clock=None, push_sender=None):
    """
    Build the Flask application.

    Args:
        config_name (str): 'development', 'testing' or 'production'
        clock (callable): Returns the current datetime (injected in tests)
        push_sender (callable): Receives PushMessage objects; enables pushes when given

    Returns:
        Flask: Configured application
    """
    app = Flask(__name__)
    config_class = init_config(app, config_name)

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, str(config_class.LOG_LEVEL).upper(), logging.INFO),
        format=LOG_FORMAT
    )

    app.extensions['classbook'] = Services(app.config, clock=clock, push_sender=push_sender)
    app.register_blueprint(api)
    register_error_handlers(app)

    @app.route('/health')
    def health():
        return jsonify({'success': True, 'status': 'ok'})

    logger.info(f"Classbook application created ({config_name or get_config().__name__})")
    return app


if __name__ == '__main__':
    application = create_app()

    # Run the application
    application.run(debug=application.config['DEBUG'], host='0.0.0.0', port=5000)
