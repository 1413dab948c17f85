# Classbook - Core Package
"""
Attendance, timetable and notification core of the Classbook school
management application.
"""

__version__ = "1.0.0"
__description__ = "Attendance recording, timetable checks and user notifications for schools"

# Import core components for easy access
from .modules.database_manager import DatabaseManager
from .modules.attendance_manager import AttendanceManager
from .modules.report_generator import ReportGenerator
from .modules.notification_system import NotificationSystem
from .modules.notification_settings import NotificationSettingsManager
from .modules.timetable_manager import TimetableManager
from .modules.auth_manager import AuthManager

__all__ = [
    'DatabaseManager',
    'AttendanceManager',
    'ReportGenerator',
    'NotificationSystem',
    'NotificationSettingsManager',
    'TimetableManager',
    'AuthManager'
]
